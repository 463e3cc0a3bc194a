# worker/app/services/dropbox_client.py
"""
Minimal Dropbox API v2 client over plain HTTP.

Only what the sync pipeline needs:
- OAuth2 refresh-token exchange (on first use, and once more on a 401)
- list_folder + list_folder/continue (cursor pagination)
- get_temporary_link (~4h signed URL)
- download of a temporary link

Every failure surfaces as DropboxError; callers decide at which granularity
(file, folder, project) to skip and carry on.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

import requests

from worker.app.config import Settings, settings as default_settings

log = logging.getLogger(__name__)

DOWNLOAD_CHUNK = 64 * 1024


class DropboxError(RuntimeError):
    def __init__(
        self, message: str, *, status: Optional[int] = None, path: Optional[str] = None
    ):
        super().__init__(message)
        self.status = status
        self.path = path


@dataclass(frozen=True)
class RemoteEntry:
    name: str
    path: str  # display path, used for listing children
    is_folder: bool
    path_lower: str = ""
    size: Optional[int] = None
    modified_at: Optional[str] = None  # server_modified, ISO-8601

    @classmethod
    def from_api(cls, item: Dict[str, Any]) -> "RemoteEntry":
        return cls(
            name=item.get("name", ""),
            path=item.get("path_display") or item.get("path_lower") or "",
            is_folder=item.get(".tag") == "folder",
            path_lower=item.get("path_lower") or "",
            size=item.get("size"),
            modified_at=item.get("server_modified") or item.get("client_modified"),
        )


@dataclass(frozen=True)
class TemporaryLink:
    url: str
    expires_in: int


def _api_path(path: str) -> str:
    # Dropbox addresses the root as "" rather than "/"
    p = (path or "").strip()
    return "" if p in ("", "/") else p


def _summary(r: requests.Response) -> str:
    return (r.text or "")[:200]


class DropboxClient:
    def __init__(
        self,
        cfg: Optional[Settings] = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.cfg = cfg or default_settings
        self._clock = clock
        self.base = self.cfg.DROPBOX_API_URL.rstrip("/")
        self.timeout = self.cfg.HTTP_TIMEOUT_MS / 1000.0
        self._access_token = self.cfg.DROPBOX_ACCESS_TOKEN.strip() or None
        self._token_lock = threading.Lock()

    # --- auth -----------------------------------------------------------------

    def refresh_access_token(self, *, timeout: Optional[float] = None) -> str:
        """Exchange the long-lived refresh token for a fresh access token."""
        with self._token_lock:
            return self._refresh_locked(timeout)

    def _refresh_locked(self, timeout: Optional[float]) -> str:
        try:
            r = requests.post(
                f"{self.base}/oauth2/token",
                data={
                    "grant_type": "refresh_token",
                    "refresh_token": self.cfg.DROPBOX_REFRESH_TOKEN,
                },
                auth=(self.cfg.DROPBOX_APP_KEY, self.cfg.DROPBOX_APP_SECRET),
                timeout=timeout or self.timeout,
            )
        except requests.RequestException as e:
            raise DropboxError(f"dropbox token refresh failed: {e}") from e
        if r.status_code != 200:
            raise DropboxError(
                f"dropbox token refresh failed: status {r.status_code} {_summary(r)}",
                status=r.status_code,
            )
        token = (r.json() or {}).get("access_token")
        if not token:
            raise DropboxError("dropbox token refresh returned no access_token")
        self._access_token = token
        log.info("dropbox access token refreshed")
        return token

    def _token(self, timeout: Optional[float]) -> str:
        token = self._access_token
        if token:
            return token
        with self._token_lock:
            # another link-minting thread may have refreshed while we waited
            return self._access_token or self._refresh_locked(timeout)

    # --- rpc ------------------------------------------------------------------

    def _rpc(
        self,
        endpoint: str,
        payload: Dict[str, Any],
        *,
        timeout: Optional[float] = None,
        path: Optional[str] = None,
    ) -> Dict[str, Any]:
        t = timeout or self.timeout
        url = f"{self.base}/2/{endpoint}"
        refreshed = False
        while True:
            headers = {
                "Authorization": f"Bearer {self._token(t)}",
                "Content-Type": "application/json",
            }
            try:
                r = requests.post(url, json=payload, headers=headers, timeout=t)
            except requests.RequestException as e:
                raise DropboxError(f"dropbox {endpoint} failed: {e}", path=path) from e

            if r.status_code == 401 and not refreshed:
                # expired or revoked short-lived token; retry once
                self._access_token = None
                refreshed = True
                continue
            if r.status_code != 200:
                raise DropboxError(
                    f"dropbox {endpoint} failed: status {r.status_code} {_summary(r)}",
                    status=r.status_code,
                    path=path,
                )
            return r.json() or {}

    # --- operations -----------------------------------------------------------

    def list_children(
        self, path: str, *, timeout: Optional[float] = None
    ) -> List[RemoteEntry]:
        """All direct children of a folder, following the pagination cursor."""
        data = self._rpc(
            "files/list_folder",
            {"path": _api_path(path), "recursive": False},
            timeout=timeout,
            path=path,
        )
        entries = [RemoteEntry.from_api(it) for it in data.get("entries", [])]
        while data.get("has_more") and data.get("cursor"):
            data = self._rpc(
                "files/list_folder/continue",
                {"cursor": data["cursor"]},
                timeout=timeout,
                path=path,
            )
            entries.extend(RemoteEntry.from_api(it) for it in data.get("entries", []))
        return entries

    def get_temporary_link(
        self, path: str, *, timeout: Optional[float] = None
    ) -> TemporaryLink:
        data = self._rpc(
            "files/get_temporary_link", {"path": path}, timeout=timeout, path=path
        )
        link = data.get("link")
        if not link:
            raise DropboxError("dropbox get_temporary_link returned no link", path=path)
        return TemporaryLink(url=link, expires_in=self.cfg.LINK_TTL_SECONDS)

    def download(self, url: str, *, timeout: Optional[float] = None) -> bytes:
        """Bytes behind a temporary link.

        `timeout` bounds the whole transfer: requests only limits each socket
        read, so a body that keeps trickling in is cut off here.
        """
        t = timeout or self.timeout
        deadline = self._clock() + t
        try:
            r = requests.get(url, timeout=t, stream=True)
        except requests.RequestException as e:
            raise DropboxError(f"download failed: {e}") from e
        try:
            if r.status_code != 200:
                raise DropboxError(
                    f"download failed: status {r.status_code}", status=r.status_code
                )
            parts: List[bytes] = []
            for part in r.iter_content(chunk_size=DOWNLOAD_CHUNK):
                parts.append(part)
                if self._clock() > deadline:
                    raise DropboxError(
                        f"download exceeded {t:.1f}s after {sum(map(len, parts))} bytes"
                    )
            return b"".join(parts)
        except requests.RequestException as e:
            raise DropboxError(f"download failed: {e}") from e
        finally:
            r.close()


__all__ = ["DropboxClient", "DropboxError", "RemoteEntry", "TemporaryLink"]
