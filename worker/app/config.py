# worker/app/config.py
from __future__ import annotations

from pathlib import Path
from typing import List

from pydantic_settings import BaseSettings, SettingsConfigDict

# Resolve repo root: repo/ (since this file is repo/worker/app/config.py)
REPO_ENV = Path(__file__).resolve().parents[2] / ".env"

ASSET_STRATEGIES = ("mirror", "passthrough")


class ConfigError(RuntimeError):
    """Raised when a required setting is missing; fatal for the invocation."""

    def __init__(self, missing: List[str]):
        self.missing = list(missing)
        super().__init__(f"missing configuration: {', '.join(self.missing)}")


class Settings(BaseSettings):
    """
    Central config for the sync worker. Uses Pydantic v2 + pydantic-settings.

    - Loads env from the repo root .env if present
    - Ignores unknown env vars
    - Case-insensitive env keys
    - Secrets default to "" so the app can boot; `require_sync()` decides
      whether an invocation may proceed
    """

    model_config = SettingsConfigDict(
        env_file=str(REPO_ENV),
        extra="ignore",
        case_sensitive=False,
    )

    # --- Remote file store (Dropbox) ------------------------------------------
    DROPBOX_APP_KEY: str = ""
    DROPBOX_APP_SECRET: str = ""
    DROPBOX_REFRESH_TOKEN: str = ""
    DROPBOX_ACCESS_TOKEN: str = ""  # optional; refreshed when it expires
    DROPBOX_ROOT_PATH: str = ""
    DROPBOX_API_URL: str = "https://api.dropboxapi.com"

    # --- Catalogue + blob store (Supabase) ------------------------------------
    SUPABASE_URL: str = ""
    SUPABASE_KEY: str = ""
    SUPABASE_BUCKET: str = ""
    IMAGES_TABLE: str = "portfolio_images"
    META_TABLE: str = "portfolio_meta"

    # --- Pipeline knobs -------------------------------------------------------
    ASSET_STRATEGY: str = "mirror"  # mirror|passthrough
    MAX_DEPTH: int = 3
    WRITE_BATCH_SIZE: int = 25
    MATERIALIZE_LIMIT: int = 12
    LINK_CONCURRENCY: int = 3

    # --- Timeouts / budgets (ms unless noted) ---------------------------------
    SYNC_TIME_BUDGET_MS: int = 9000  # hard wall clock per invocation
    HTTP_TIMEOUT_MS: int = 4000  # per network operation, clamped to budget
    LINK_TTL_SECONDS: int = 14400  # Dropbox temporary links live ~4h
    LINK_REFRESH_MARGIN_SECONDS: int = 1800
    DIMENSION_RETRY_HOURS: int = 24
    SYNC_INTERVAL_MINUTES: int = 60

    # --- Read endpoint --------------------------------------------------------
    READ_BATCH_SIZE: int = 20
    READ_CACHE_SECONDS: int = 60

    # --- Service --------------------------------------------------------------
    WORKER_AUTH_TOKEN: str = ""
    CORS_ORIGINS: str = "http://localhost:3000,http://127.0.0.1:3000"
    SYNC_LOG_DIR: str = "data/logs"

    @property
    def write_batch_size(self) -> int:
        # backing store rejects large payloads; keep batches in 3..100
        return max(3, min(100, int(self.WRITE_BATCH_SIZE)))

    @property
    def asset_strategy(self) -> str:
        s = (self.ASSET_STRATEGY or "").strip().lower()
        return s if s in ASSET_STRATEGIES else "mirror"

    @property
    def cors_origins(self) -> List[str]:
        return [o.strip() for o in self.CORS_ORIGINS.split(",") if o.strip()]

    def missing_for_sync(self) -> List[str]:
        names = [
            "DROPBOX_APP_KEY",
            "DROPBOX_APP_SECRET",
            "DROPBOX_REFRESH_TOKEN",
            "DROPBOX_ROOT_PATH",
            "SUPABASE_URL",
            "SUPABASE_KEY",
            "SUPABASE_BUCKET",
        ]
        return [n for n in names if not str(getattr(self, n, "") or "").strip()]

    def missing_for_read(self) -> List[str]:
        return [
            n
            for n in ("SUPABASE_URL", "SUPABASE_KEY")
            if not str(getattr(self, n, "") or "").strip()
        ]

    def require_sync(self) -> None:
        missing = self.missing_for_sync()
        if missing:
            raise ConfigError(missing)

    def require_read(self) -> None:
        missing = self.missing_for_read()
        if missing:
            raise ConfigError(missing)


# Singleton-style instance used by the app/tests
settings = Settings()
