# worker/app/services/supabase_client.py
"""
Supabase over plain HTTP: PostgREST for the catalogue tables and the Storage
API for the mirror bucket.

Filters are passed straight through as PostgREST operators, e.g.
{"project": "eq.Alpha", "width": "is.null"}.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import requests

from worker.app.config import Settings, settings as default_settings

log = logging.getLogger(__name__)

_OK = (200, 201, 204, 206)


class SupabaseError(RuntimeError):
    def __init__(self, message: str, *, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


def pg_quote(value: Any) -> str:
    """Quote a value for use inside a PostgREST list/or expression."""
    s = str(value).replace("\\", "\\\\").replace('"', '\\"')
    return f'"{s}"'


def pg_in(values) -> str:
    return "in.(" + ",".join(pg_quote(v) for v in values) + ")"


def _parse_content_range(header: Optional[str]) -> int:
    # "0-0/42" or "*/0"
    if not header or "/" not in header:
        return 0
    total = header.rsplit("/", 1)[1]
    return int(total) if total.isdigit() else 0


class SupabaseClient:
    def __init__(self, cfg: Optional[Settings] = None):
        self.cfg = cfg or default_settings
        self.base = self.cfg.SUPABASE_URL.rstrip("/")
        self.timeout = self.cfg.HTTP_TIMEOUT_MS / 1000.0

    def _headers(self, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        h = {
            "apikey": self.cfg.SUPABASE_KEY,
            "Authorization": f"Bearer {self.cfg.SUPABASE_KEY}",
            "Content-Type": "application/json",
        }
        if extra:
            h.update(extra)
        return h

    def _request(
        self, method: str, url: str, *, what: str, timeout: Optional[float] = None, **kw
    ) -> requests.Response:
        try:
            r = requests.request(method, url, timeout=timeout or self.timeout, **kw)
        except requests.RequestException as e:
            raise SupabaseError(f"supabase {what} failed: {e}") from e
        if r.status_code not in _OK:
            raise SupabaseError(
                f"supabase {what} failed: status {r.status_code} {(r.text or '')[:200]}",
                status=r.status_code,
            )
        return r

    # --- PostgREST ------------------------------------------------------------

    def _table_url(self, table: str) -> str:
        return f"{self.base}/rest/v1/{table}"

    def select(
        self,
        table: str,
        *,
        columns: str = "*",
        filters: Optional[Dict[str, str]] = None,
        order: Optional[str] = None,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
        timeout: Optional[float] = None,
    ) -> List[Dict[str, Any]]:
        params: Dict[str, Any] = {"select": columns, **(filters or {})}
        if order:
            params["order"] = order
        if limit is not None:
            params["limit"] = limit
        if offset:
            params["offset"] = offset
        r = self._request(
            "GET",
            self._table_url(table),
            what=f"select {table}",
            params=params,
            headers=self._headers(),
            timeout=timeout,
        )
        return r.json() or []

    def count(
        self,
        table: str,
        *,
        filters: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
    ) -> int:
        r = self._request(
            "GET",
            self._table_url(table),
            what=f"count {table}",
            params={"select": "id", **(filters or {})},
            headers=self._headers(
                {"Prefer": "count=exact", "Range-Unit": "items", "Range": "0-0"}
            ),
            timeout=timeout,
        )
        return _parse_content_range(r.headers.get("Content-Range"))

    def insert(
        self, table: str, rows: List[Dict[str, Any]], *, timeout: Optional[float] = None
    ) -> None:
        self._request(
            "POST",
            self._table_url(table),
            what=f"insert {table}",
            json=rows,
            headers=self._headers({"Prefer": "return=minimal"}),
            timeout=timeout,
        )

    def upsert(
        self,
        table: str,
        rows: List[Dict[str, Any]],
        *,
        on_conflict: str = "id",
        timeout: Optional[float] = None,
    ) -> None:
        """Insert or merge; columns absent from the payload keep their stored values."""
        self._request(
            "POST",
            self._table_url(table),
            what=f"upsert {table}",
            params={"on_conflict": on_conflict},
            json=rows,
            headers=self._headers(
                {"Prefer": "resolution=merge-duplicates,return=minimal"}
            ),
            timeout=timeout,
        )

    def update(
        self,
        table: str,
        values: Dict[str, Any],
        *,
        filters: Dict[str, str],
        timeout: Optional[float] = None,
    ) -> None:
        if not filters:
            raise ValueError("refusing unfiltered update")
        self._request(
            "PATCH",
            self._table_url(table),
            what=f"update {table}",
            params=filters,
            json=values,
            headers=self._headers({"Prefer": "return=minimal"}),
            timeout=timeout,
        )

    def delete(
        self,
        table: str,
        *,
        filters: Dict[str, str],
        timeout: Optional[float] = None,
    ) -> int:
        """Delete matching rows; returns how many went."""
        if not filters:
            raise ValueError("refusing unfiltered delete")
        r = self._request(
            "DELETE",
            self._table_url(table),
            what=f"delete {table}",
            params={**filters, "select": "id"},
            headers=self._headers({"Prefer": "return=representation"}),
            timeout=timeout,
        )
        try:
            return len(r.json() or [])
        except ValueError:
            return 0

    # --- Storage --------------------------------------------------------------

    def upload(
        self,
        bucket: str,
        path: str,
        data: bytes,
        *,
        content_type: str = "application/octet-stream",
        timeout: Optional[float] = None,
    ) -> None:
        self._request(
            "POST",
            f"{self.base}/storage/v1/object/{bucket}/{quote(path)}",
            what=f"upload {bucket}/{path}",
            data=data,
            headers=self._headers({"Content-Type": content_type, "x-upsert": "true"}),
            timeout=timeout,
        )

    def public_url(self, bucket: str, path: str) -> str:
        return f"{self.base}/storage/v1/object/public/{bucket}/{quote(path)}"

    def list_objects(
        self,
        bucket: str,
        prefix: str = "",
        *,
        limit: int = 100,
        offset: int = 0,
        timeout: Optional[float] = None,
    ) -> List[Dict[str, Any]]:
        r = self._request(
            "POST",
            f"{self.base}/storage/v1/object/list/{bucket}",
            what=f"list {bucket}",
            json={"prefix": prefix, "limit": limit, "offset": offset},
            headers=self._headers(),
            timeout=timeout,
        )
        return r.json() or []


__all__ = ["SupabaseClient", "SupabaseError", "pg_in", "pg_quote"]
