# worker/app/services/materialize.py
"""
Asset materializer: gives catalogue rows a usable asset URL and, from the
downloaded bytes, measured pixel dimensions.

Strategies (one per deployment, `ASSET_STRATEGY`):
- mirror:      temp link -> download -> upload to the bucket -> durable public URL
- passthrough: temp link stored as-is; re-minted once older than
               LINK_TTL_SECONDS - LINK_REFRESH_MARGIN_SECONDS

Only asset and dimension columns are ever written here.

Dimensions:
- measured values come from `image_sniff.sniff` and always win
- unparseable bytes stamp `dimensions_attempted_at`; the row is not retried
  before DIMENSION_RETRY_HOURS
- AVIF/WebP variants the sniffer cannot read, with no earlier ratio, get a
  size-based estimate flagged `aspect_ratio_estimated = true`
"""

from __future__ import annotations

import logging
import mimetypes
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Iterable, List, Optional, Union

from worker.app.config import Settings, settings as default_settings
from worker.app.schema.catalogue_schema import CatalogueEntry, ItemFailure
from worker.app.services.catalogue_store import CatalogueStore
from worker.app.services.dropbox_client import DropboxClient, DropboxError, TemporaryLink
from worker.app.services.image_sniff import sniff
from worker.app.services.supabase_client import SupabaseClient, SupabaseError
from worker.app.utils.batching import batched
from worker.app.utils.budget import TimeBudget, unbounded
from worker.app.utils.entry_ids import storage_path_for

log = logging.getLogger(__name__)

ESTIMABLE_EXTS = frozenset({"avif", "webp"})
LARGE_FILE_BYTES = 2 * 1024 * 1024
SMALL_FILE_BYTES = 200 * 1024

_CONTENT_TYPES = {
    "avif": "image/avif",
    "heic": "image/heic",
    "heif": "image/heif",
    "webp": "image/webp",
    "jfif": "image/jpeg",
    "pjpeg": "image/jpeg",
    "pjp": "image/jpeg",
    "svg": "image/svg+xml",
}


def content_type_for(extension: str) -> str:
    ext = (extension or "").lower().lstrip(".")
    return (
        _CONTENT_TYPES.get(ext)
        or mimetypes.types_map.get(f".{ext}")
        or "application/octet-stream"
    )


def estimate_aspect_ratio(size_bytes: Optional[int]) -> float:
    """Placeholder ratio from file size; never stored without the estimated flag."""
    size = size_bytes or 0
    if size > LARGE_FILE_BYTES:
        return 16 / 9
    if 0 < size < SMALL_FILE_BYTES:
        return 1.0
    return 4 / 3


def _aware(dt: Optional[datetime]) -> Optional[datetime]:
    if dt is None:
        return None
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def needs_asset(entry: CatalogueEntry, strategy: str, *, stale_before: datetime) -> bool:
    if not entry.asset_url or entry.asset_url_kind is None:
        return True
    if entry.asset_url_kind == "durable":
        return False
    if strategy == "mirror":
        return True
    fetched = _aware(entry.asset_url_fetched_at)
    return fetched is None or fetched < stale_before


def needs_dimensions(entry: CatalogueEntry, *, retry_before: datetime) -> bool:
    if entry.width is not None:
        return False
    attempted = _aware(entry.dimensions_attempted_at)
    return attempted is None or attempted < retry_before


def needs_materialization(
    entry: CatalogueEntry,
    strategy: str,
    *,
    stale_before: datetime,
    retry_before: datetime,
) -> bool:
    return needs_asset(entry, strategy, stale_before=stale_before) or needs_dimensions(
        entry, retry_before=retry_before
    )


@dataclass
class MaterializeReport:
    processed: int = 0
    materialized: int = 0
    measured: int = 0
    estimated: int = 0
    failures: List[ItemFailure] = field(default_factory=list)
    exhausted: bool = False
    remaining: Optional[int] = None


class AssetMaterializer:
    def __init__(
        self,
        dropbox: DropboxClient,
        store: CatalogueStore,
        blobs: Optional[SupabaseClient] = None,
        cfg: Optional[Settings] = None,
        *,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.dropbox = dropbox
        self.store = store
        self.blobs = blobs
        self.cfg = cfg or default_settings
        self.strategy = self.cfg.asset_strategy
        self._now = now
        if self.strategy == "mirror" and blobs is None:
            raise ValueError("mirror strategy needs a blob store client")

    # --- policy ---------------------------------------------------------------

    def cutoffs(self, now: datetime) -> Dict[str, datetime]:
        ttl = max(0, self.cfg.LINK_TTL_SECONDS - self.cfg.LINK_REFRESH_MARGIN_SECONDS)
        return {
            "stale_before": now - timedelta(seconds=ttl),
            "retry_before": now - timedelta(hours=self.cfg.DIMENSION_RETRY_HOURS),
        }

    def pending(
        self, *, limit: Optional[int] = None, project: Optional[str] = None, timeout=None
    ) -> List[CatalogueEntry]:
        return self.store.pending_entries(
            self.strategy,
            limit=limit or self.cfg.MATERIALIZE_LIMIT,
            project=project,
            timeout=timeout,
            **self.cutoffs(self._now()),
        )

    def count_remaining(self, *, timeout=None) -> int:
        return self.store.count_pending(
            self.strategy, timeout=timeout, **self.cutoffs(self._now())
        )

    # --- passes ---------------------------------------------------------------

    def run(
        self,
        budget: Optional[TimeBudget] = None,
        *,
        limit: Optional[int] = None,
        project: Optional[str] = None,
        count_remaining: bool = False,
    ) -> MaterializeReport:
        """One pass over pending rows, as many as the budget allows."""
        budget = budget or unbounded()
        report = MaterializeReport()
        if budget.exhausted():
            report.exhausted = True
            return report
        try:
            entries = self.pending(
                limit=limit, project=project, timeout=budget.op_timeout()
            )
        except SupabaseError as e:
            log.warning("pending lookup failed: %s", e)
            report.failures.append(ItemFailure(stage="lookup", error=str(e)))
            return report

        self._process(entries, budget, report, force_asset=False)

        if count_remaining and not budget.exhausted():
            try:
                report.remaining = self.count_remaining(timeout=budget.op_timeout())
            except SupabaseError as e:
                log.warning("pending count failed: %s", e)
        return report

    def refresh_links(
        self, ids: Iterable[str], budget: Optional[TimeBudget] = None
    ) -> MaterializeReport:
        """Re-mint (passthrough) or re-mirror (mirror) specific rows regardless of age."""
        budget = budget or unbounded()
        report = MaterializeReport()
        wanted = list(dict.fromkeys(ids))
        try:
            entries = self.store.get_entries(wanted, timeout=budget.op_timeout())
        except SupabaseError as e:
            report.failures.append(ItemFailure(stage="lookup", error=str(e)))
            return report
        found = {e.id for e in entries}
        for missing in wanted:
            if missing not in found:
                report.failures.append(
                    ItemFailure(id=missing, stage="lookup", error="not in catalogue")
                )
        self._process(entries, budget, report, force_asset=True)
        return report

    def materialize(
        self, entry: CatalogueEntry, budget: Optional[TimeBudget] = None
    ) -> CatalogueEntry:
        """Single row; returns the updated entry or raises DropboxError/SupabaseError."""
        budget = budget or unbounded()
        link = self.dropbox.get_temporary_link(
            entry.remote_path, timeout=budget.op_timeout()
        )
        updates = self._build_updates(entry, link, budget, force_asset=False)
        if updates:
            self.store.update_entry(entry.id, updates, timeout=budget.op_timeout())
        return CatalogueEntry.model_validate({**entry.to_row(), **updates})

    # --- internals ------------------------------------------------------------

    def _mint_links(
        self, group: List[CatalogueEntry], budget: TimeBudget
    ) -> Dict[str, Union[TemporaryLink, Exception]]:
        """Temp links for a group, minted concurrently; independent reads only."""
        timeout = budget.op_timeout()
        out: Dict[str, Union[TemporaryLink, Exception]] = {}
        workers = max(1, min(len(group), self.cfg.LINK_CONCURRENCY))
        with ThreadPoolExecutor(max_workers=workers) as pool:
            futures = {
                e.id: pool.submit(
                    self.dropbox.get_temporary_link, e.remote_path, timeout=timeout
                )
                for e in group
            }
            for entry_id, fut in futures.items():
                try:
                    out[entry_id] = fut.result()
                except DropboxError as e:
                    out[entry_id] = e
        return out

    def _process(
        self,
        entries: List[CatalogueEntry],
        budget: TimeBudget,
        report: MaterializeReport,
        *,
        force_asset: bool,
    ) -> None:
        for group in batched(entries, self.cfg.LINK_CONCURRENCY):
            if budget.exhausted():
                report.exhausted = True
                return
            links = self._mint_links(group, budget)
            for entry in group:
                if budget.exhausted():
                    report.exhausted = True
                    return
                report.processed += 1
                link = links[entry.id]
                if isinstance(link, Exception):
                    self._fail(entry, "link", link, report, budget)
                    continue
                try:
                    updates = self._build_updates(
                        entry, link, budget, force_asset=force_asset
                    )
                except DropboxError as e:
                    self._fail(entry, "download", e, report, budget)
                    continue
                except SupabaseError as e:
                    self._fail(entry, "upload", e, report, budget)
                    continue
                if not updates:
                    continue
                try:
                    self.store.update_entry(
                        entry.id, updates, timeout=budget.op_timeout()
                    )
                except SupabaseError as e:
                    report.failures.append(
                        ItemFailure(
                            id=entry.id,
                            path=entry.remote_path,
                            stage="update",
                            error=str(e),
                        )
                    )
                    continue
                if "asset_url" in updates:
                    report.materialized += 1
                if updates.get("dimensions_calculated_at"):
                    report.measured += 1
                if updates.get("aspect_ratio_estimated"):
                    report.estimated += 1

    def _build_updates(
        self,
        entry: CatalogueEntry,
        link: TemporaryLink,
        budget: TimeBudget,
        *,
        force_asset: bool,
    ) -> Dict[str, object]:
        now = self._now()
        cut = self.cutoffs(now)
        stamp = now.isoformat()
        updates: Dict[str, object] = {}
        data: Optional[bytes] = None

        if force_asset or needs_asset(entry, self.strategy, stale_before=cut["stale_before"]):
            if self.strategy == "mirror":
                data = self.dropbox.download(link.url, timeout=budget.op_timeout())
                path = storage_path_for(
                    entry.project, entry.tool, entry.name, entry.extension
                )
                bucket = self.cfg.SUPABASE_BUCKET
                self.blobs.upload(
                    bucket,
                    path,
                    data,
                    content_type=content_type_for(entry.extension),
                    timeout=budget.op_timeout(),
                )
                updates.update(
                    asset_url=self.blobs.public_url(bucket, path),
                    asset_url_kind="durable",
                    asset_url_fetched_at=stamp,
                    storage_path=path,
                )
            else:
                updates.update(
                    asset_url=link.url,
                    asset_url_kind="temporary",
                    asset_url_fetched_at=stamp,
                )

        # bytes already in hand are always worth sniffing
        if entry.width is None and (
            data is not None or needs_dimensions(entry, retry_before=cut["retry_before"])
        ):
            if data is None:
                data = self.dropbox.download(link.url, timeout=budget.op_timeout())
            updates.update(self._dimension_updates(entry, data, stamp))
        return updates

    def _dimension_updates(
        self, entry: CatalogueEntry, data: bytes, stamp: str
    ) -> Dict[str, object]:
        info = sniff(data)
        if info is not None:
            return {
                "width": info.width,
                "height": info.height,
                "aspect_ratio_measured": info.aspect_ratio,
                "aspect_ratio_estimated": False,
                "dimensions_calculated_at": stamp,
                "dimensions_attempted_at": stamp,
            }
        log.info("dimensions unknown for %s; deferring", entry.remote_path)
        out: Dict[str, object] = {"dimensions_attempted_at": stamp}
        if entry.aspect_ratio_measured is None and entry.extension in ESTIMABLE_EXTS:
            out["aspect_ratio_measured"] = estimate_aspect_ratio(entry.size_bytes)
            out["aspect_ratio_estimated"] = True
        return out

    def _fail(
        self,
        entry: CatalogueEntry,
        stage: str,
        err: Exception,
        report: MaterializeReport,
        budget: TimeBudget,
    ) -> None:
        log.warning("materialize %s failed at %s: %s", entry.remote_path, stage, err)
        report.failures.append(
            ItemFailure(id=entry.id, path=entry.remote_path, stage=stage, error=str(err))
        )
        # push the row to the back of the pending queue
        try:
            self.store.update_entry(
                entry.id,
                {"dimensions_attempted_at": self._now().isoformat()},
                timeout=budget.op_timeout(),
            )
        except SupabaseError as e:
            log.debug("could not stamp attempt for %s: %s", entry.id, e)


__all__ = [
    "AssetMaterializer",
    "MaterializeReport",
    "content_type_for",
    "estimate_aspect_ratio",
    "needs_asset",
    "needs_dimensions",
    "needs_materialization",
]
