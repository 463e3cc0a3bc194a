# worker/tests/conftest.py
from __future__ import annotations

# Import/bootstrap so "import worker.app" works when running pytest from repo root
import os
import sys
import tempfile
from pathlib import Path

import pytest

TESTS_DIR = Path(__file__).resolve().parent  # .../worker/tests
WORKER_DIR = TESTS_DIR.parent  # .../worker
REPO_ROOT = WORKER_DIR.parent  # repo root

# Repo root for "worker.app", tests dir for the shared fakes module
for p in (str(TESTS_DIR), str(REPO_ROOT)):
    if p not in sys.path:
        sys.path.insert(0, p)

# Keep telemetry writes out of the working tree; never talk to real services.
os.environ.setdefault("SYNC_LOG_DIR", tempfile.mkdtemp(prefix="foliosync-logs-"))
os.environ.setdefault("WORKER_AUTH_TOKEN", "")

from fakes import FakeBlobStore, FakeCatalogue, FakeDropbox  # noqa: E402
from worker.app.config import Settings  # noqa: E402

ROOT = "/Portfolio"


def make_settings(**overrides) -> Settings:
    values = dict(
        DROPBOX_APP_KEY="key",
        DROPBOX_APP_SECRET="secret",
        DROPBOX_REFRESH_TOKEN="refresh",
        DROPBOX_ROOT_PATH=ROOT,
        DROPBOX_API_URL="https://api.dropbox.test",
        SUPABASE_URL="https://db.supabase.test",
        SUPABASE_KEY="service-key",
        SUPABASE_BUCKET="portfolio",
        SYNC_TIME_BUDGET_MS=60_000,
        HTTP_TIMEOUT_MS=4000,
        WORKER_AUTH_TOKEN="",
    )
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
def cfg() -> Settings:
    return make_settings()


@pytest.fixture
def catalogue() -> FakeCatalogue:
    return FakeCatalogue()


@pytest.fixture
def blobs() -> FakeBlobStore:
    return FakeBlobStore()


@pytest.fixture
def dropbox_factory():
    def _make(tree, **kw) -> FakeDropbox:
        return FakeDropbox(tree, root=ROOT, **kw)

    return _make
