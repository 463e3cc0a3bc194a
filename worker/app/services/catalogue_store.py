# worker/app/services/catalogue_store.py
"""
Catalogue persistence: `portfolio_images` rows and the `portfolio_meta`
singleton, on top of SupabaseClient.

The pending-materialization query here mirrors
`materialize.needs_materialization`; keep the two in step.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from worker.app.config import Settings, settings as default_settings
from worker.app.schema.catalogue_schema import CatalogueEntry, SyncMeta
from worker.app.services.supabase_client import SupabaseClient, pg_in

log = logging.getLogger(__name__)

PAGE_SIZE = 1000  # PostgREST default max-rows
META_ID = 1


def pg_timestamp(dt: datetime) -> str:
    # no fractional seconds or offsets: keeps `or=(...)` expressions unambiguous
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def pending_filter(
    strategy: str, *, stale_before: datetime, retry_before: datetime
) -> str:
    """PostgREST `or` expression selecting rows that still need asset/dimension work."""
    retry = pg_timestamp(retry_before)
    terms = ["asset_url.is.null", "asset_url_kind.is.null"]
    if strategy == "mirror":
        terms.append("asset_url_kind.eq.temporary")
    else:
        terms.append(
            f"and(asset_url_kind.eq.temporary,or(asset_url_fetched_at.is.null,"
            f"asset_url_fetched_at.lt.{pg_timestamp(stale_before)}))"
        )
    terms.append("and(width.is.null,dimensions_attempted_at.is.null)")
    terms.append(f"and(width.is.null,dimensions_attempted_at.lt.{retry})")
    return "(" + ",".join(terms) + ")"


class CatalogueStore:
    def __init__(self, client: SupabaseClient, cfg: Optional[Settings] = None):
        self.client = client
        self.cfg = cfg or default_settings
        self.images = self.cfg.IMAGES_TABLE
        self.meta_table = self.cfg.META_TABLE

    # --- reads ----------------------------------------------------------------

    def _select_all(
        self, filters: Dict[str, str], *, columns: str = "*", timeout=None
    ) -> List[Dict[str, Any]]:
        rows: List[Dict[str, Any]] = []
        offset = 0
        while True:
            page = self.client.select(
                self.images,
                columns=columns,
                filters=filters,
                order="id.asc",
                limit=PAGE_SIZE,
                offset=offset,
                timeout=timeout,
            )
            rows.extend(page)
            if len(page) < PAGE_SIZE:
                return rows
            offset += PAGE_SIZE

    def rows_for_project(
        self, project: str, *, timeout: Optional[float] = None
    ) -> List[CatalogueEntry]:
        rows = self._select_all({"project": f"eq.{project}"}, timeout=timeout)
        return [CatalogueEntry.model_validate(r) for r in rows]

    def get_entries(
        self, ids: Iterable[str], *, timeout: Optional[float] = None
    ) -> List[CatalogueEntry]:
        ids = list(ids)
        if not ids:
            return []
        rows = self.client.select(
            self.images, filters={"id": pg_in(ids)}, timeout=timeout
        )
        return [CatalogueEntry.model_validate(r) for r in rows]

    def list_projects(self, *, timeout: Optional[float] = None) -> Set[str]:
        rows = self._select_all({}, columns="id,project", timeout=timeout)
        return {r["project"] for r in rows if r.get("project")}

    def pending_entries(
        self,
        strategy: str,
        *,
        stale_before: datetime,
        retry_before: datetime,
        limit: int,
        project: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> List[CatalogueEntry]:
        filters = {
            "or": pending_filter(
                strategy, stale_before=stale_before, retry_before=retry_before
            )
        }
        if project:
            filters["project"] = f"eq.{project}"
        rows = self.client.select(
            self.images,
            filters=filters,
            # rows that failed recently go to the back of the queue
            order="dimensions_attempted_at.asc.nullsfirst,id.asc",
            limit=limit,
            timeout=timeout,
        )
        return [CatalogueEntry.model_validate(r) for r in rows]

    def count_pending(
        self,
        strategy: str,
        *,
        stale_before: datetime,
        retry_before: datetime,
        timeout: Optional[float] = None,
    ) -> int:
        return self.client.count(
            self.images,
            filters={
                "or": pending_filter(
                    strategy, stale_before=stale_before, retry_before=retry_before
                )
            },
            timeout=timeout,
        )

    def page(
        self, offset: int, limit: int, *, timeout: Optional[float] = None
    ) -> Tuple[List[CatalogueEntry], int]:
        total = self.client.count(self.images, timeout=timeout)
        rows = self.client.select(
            self.images,
            order="project.asc,tool.asc,name.asc,id.asc",
            limit=limit,
            offset=offset,
            timeout=timeout,
        )
        return [CatalogueEntry.model_validate(r) for r in rows], total

    def counts(self, *, timeout: Optional[float] = None) -> Dict[str, int]:
        return {
            "total": self.client.count(self.images, timeout=timeout),
            "with_asset": self.client.count(
                self.images, filters={"asset_url": "not.is.null"}, timeout=timeout
            ),
            "with_dimensions": self.client.count(
                self.images, filters={"width": "not.is.null"}, timeout=timeout
            ),
        }

    # --- writes ---------------------------------------------------------------

    def upsert_rows(
        self, rows: List[Dict[str, Any]], *, timeout: Optional[float] = None
    ) -> None:
        """One request; partial rows merge into existing ones by id."""
        if rows:
            self.client.upsert(self.images, rows, on_conflict="id", timeout=timeout)

    def update_entry(
        self, entry_id: str, values: Dict[str, Any], *, timeout: Optional[float] = None
    ) -> None:
        self.client.update(
            self.images, values, filters={"id": f"eq.{entry_id}"}, timeout=timeout
        )

    def delete_ids(self, ids: Iterable[str], *, timeout: Optional[float] = None) -> int:
        ids = list(ids)
        if not ids:
            return 0
        return self.client.delete(
            self.images, filters={"id": pg_in(ids)}, timeout=timeout
        )

    def delete_projects(
        self, projects: Iterable[str], *, timeout: Optional[float] = None
    ) -> int:
        projects = sorted(set(projects))
        if not projects:
            return 0
        return self.client.delete(
            self.images, filters={"project": pg_in(projects)}, timeout=timeout
        )

    # --- meta -----------------------------------------------------------------

    def get_meta(self, *, timeout: Optional[float] = None) -> Optional[SyncMeta]:
        rows = self.client.select(
            self.meta_table, filters={"id": f"eq.{META_ID}"}, limit=1, timeout=timeout
        )
        return SyncMeta.model_validate(rows[0]) if rows else None

    def save_meta(self, meta: SyncMeta, *, timeout: Optional[float] = None) -> None:
        row = meta.model_dump(mode="json")
        row["id"] = META_ID
        self.client.upsert(self.meta_table, [row], on_conflict="id", timeout=timeout)


__all__ = ["CatalogueStore", "pending_filter", "pg_timestamp"]
