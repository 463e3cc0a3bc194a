# worker/app/services/scheduler.py
"""
Chunked run scheduler.

A campaign is a pass over every project folder under the root, one project
(chunk) per invocation:

    Idle -> Scanning(i) -> Scanning(i+1) | Idle(complete) | Idle(partial)

Each `run_chunk(i)` walks project i, derives candidates, reconciles them and
spends whatever budget is left materializing that project's rows. Nothing is
kept in process memory between invocations: the resume point lives in the
`portfolio_meta` row (`next_chunk`, plus `walk` while a project is only
partly walked and `failed_projects` for the running campaign).

A project too large for one budget is walked in pieces. The walk gets a
share of the budget; when it runs out, the folders not yet listed are saved
as a checkpoint, the rows found so far are written, and the same chunk
continues from the checkpoint next time. Rows confirmed earlier in the same
scan are not rewritten, and tombstones wait for the piece that ends the walk.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional, Sequence

from worker.app.config import Settings, settings as default_settings
from worker.app.models import ChunkResult
from worker.app.schema.catalogue_schema import (
    ItemFailure,
    SyncMeta,
    WalkCheckpoint,
    WalkFrame,
)
from worker.app.services.catalogue_store import CatalogueStore
from worker.app.services.discovery import TreeWalk, list_scopes
from worker.app.services.dropbox_client import DropboxClient, DropboxError, RemoteEntry
from worker.app.services.materialize import AssetMaterializer
from worker.app.services.metadata import derive
from worker.app.services.reconcile import reconcile
from worker.app.services.supabase_client import SupabaseError
from worker.app.telemetry import telemetry
from worker.app.utils.budget import TimeBudget

log = logging.getLogger(__name__)

DEFAULT_MAX_CHUNKS = 50
DEFAULT_MAX_REPEATS = 3
# share of the remaining budget the walk may use; the rest is for writes
WALK_SHARE = 0.5


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def is_sync_due(
    meta: Optional[SyncMeta], *, now: datetime, interval_minutes: int
) -> bool:
    """A campaign is due when none ran yet, the last one stopped part-way, or it is stale."""
    if meta is None or meta.last_sync_at is None:
        return True
    if meta.status != "complete":
        return True
    last = meta.last_sync_at
    if last.tzinfo is None:
        last = last.replace(tzinfo=timezone.utc)
    return now - last >= timedelta(minutes=interval_minutes)


def _frames(frames) -> List[WalkFrame]:
    return [WalkFrame(path=p, tool=t, depth=d) for p, t, d in frames]


class SyncScheduler:
    def __init__(
        self,
        dropbox: DropboxClient,
        store: CatalogueStore,
        materializer: Optional[AssetMaterializer] = None,
        cfg: Optional[Settings] = None,
        *,
        now: Callable[[], datetime] = _utcnow,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.dropbox = dropbox
        self.store = store
        self.materializer = materializer
        self.cfg = cfg or default_settings
        self._now = now
        self._clock = clock

    def new_budget(self) -> TimeBudget:
        return TimeBudget(
            self.cfg.SYNC_TIME_BUDGET_MS,
            op_timeout_ms=self.cfg.HTTP_TIMEOUT_MS,
            clock=self._clock,
        )

    def load_meta(self, *, timeout: Optional[float] = None) -> Optional[SyncMeta]:
        try:
            return self.store.get_meta(timeout=timeout)
        except SupabaseError as e:
            log.warning("could not read sync meta: %s", e)
            return None

    def is_due(self) -> bool:
        return is_sync_due(
            self.load_meta(),
            now=self._now(),
            interval_minutes=self.cfg.SYNC_INTERVAL_MINUTES,
        )

    # --- one step -------------------------------------------------------------

    def run_chunk(
        self, chunk: Optional[int] = None, *, budget: Optional[TimeBudget] = None
    ) -> ChunkResult:
        """Process one project scope. Raises ConfigError, or DropboxError if the root cannot be listed."""
        self.cfg.require_sync()
        budget = budget or self.new_budget()

        meta = self.load_meta(timeout=budget.op_timeout())
        if chunk is None:
            chunk = meta.next_chunk if meta else 0

        telemetry.increment("chunks_total")
        telemetry.log_json("sync_chunk_start", chunk=chunk)

        try:
            scopes = list_scopes(
                self.dropbox, self.cfg.DROPBOX_ROOT_PATH, timeout=budget.op_timeout()
            )
        except DropboxError as e:
            telemetry.increment("chunks_failed")
            telemetry.set_error(f"root listing: {e}")
            telemetry.log_json(
                "sync_chunk_failure", level="error", chunk=chunk, error=str(e)
            )
            raise

        total = len(scopes)
        result = ChunkResult(chunk=chunk, total_chunks=total)

        prior: Optional[WalkCheckpoint] = None
        if meta and meta.walk and chunk < total and meta.walk.project == scopes[chunk].name:
            prior = meta.walk
        # chunk 0 from scratch opens a new campaign
        fresh_campaign = chunk == 0 and prior is None
        failed = [] if fresh_campaign or meta is None else list(meta.failed_projects)

        checkpoint: Optional[WalkCheckpoint] = None
        if chunk < total:
            scope = scopes[chunk]
            result.project = scope.name
            checkpoint = self._scan_scope(scope, result, budget, prior)
            next_chunk = chunk if checkpoint else chunk + 1
            if result.scope_failed:
                if scope.name not in failed:
                    failed.append(scope.name)
            elif checkpoint is None and scope.name in failed:
                failed.remove(scope.name)
        else:
            next_chunk = total

        result.has_more_chunks = next_chunk < total
        result.next_chunk = next_chunk if result.has_more_chunks else None
        if not result.has_more_chunks and chunk < total:
            self._finish_campaign(scopes, result, budget)
            remote = {s.name for s in scopes}
            failed = [p for p in failed if p in remote]
        result.status = (
            "partial" if result.has_more_chunks or failed else "complete"
        )

        self._save_meta(result, next_chunk, total, budget, checkpoint, failed)

        result.duration_ms = budget.elapsed_ms
        result.ok = not result.failures
        self._record(result)
        return result

    def _scan_scope(
        self,
        scope: RemoteEntry,
        result: ChunkResult,
        budget: TimeBudget,
        prior: Optional[WalkCheckpoint] = None,
    ) -> Optional[WalkCheckpoint]:
        """Walk + reconcile + materialize one scope.

        Returns the checkpoint to continue from when the scope is not done
        yet, None when the chunk may advance.
        """
        started_at = prior.started_at if prior else self._now()
        walk = TreeWalk(
            self.dropbox,
            scope,
            max_depth=self.cfg.MAX_DEPTH,
            budget=budget.portion(WALK_SHARE),
            pending=[(f.path, f.tool, f.depth) for f in prior.pending] if prior else None,
        )
        files = list(walk)
        result.failures.extend(walk.errors)

        if walk.root_failed:
            # nothing observed, so nothing may be tombstoned; move on
            result.scope_failed = True
            log.warning("scope %s failed to list; skipping", scope.name)
            return None

        incomplete = bool(prior and prior.incomplete) or bool(walk.errors)
        rec = None
        # an exhausted walk with nothing found has nothing to write yet
        if files or not walk.exhausted:
            now = self._now()
            candidates = [derive(f.entry, f.project, f.tool, now=now) for f in files]
            try:
                rec = reconcile(
                    self.store,
                    scope.name,
                    candidates,
                    complete=not (walk.exhausted or incomplete),
                    batch_size=self.cfg.write_batch_size,
                    budget=budget,
                    scan_started=started_at if prior else None,
                )
            except SupabaseError as e:
                log.warning("reconcile %s failed: %s", scope.name, e)
                result.scope_failed = True
                result.failures.append(
                    ItemFailure(path=scope.path, stage="reconcile", error=str(e))
                )
                return None

            result.created = rec.created
            result.updated = rec.updated
            result.unchanged = rec.unchanged
            result.deleted_stale = rec.deleted_stale
            result.images_processed = rec.processed
            result.failures.extend(rec.failures)
            incomplete = incomplete or bool(rec.failures)

        if rec is not None and rec.exhausted:
            # this piece is walked again; rows it managed to write are skipped then
            result.budget_exhausted = True
            result.checkpointed = rec.written > 0
            return WalkCheckpoint(
                project=scope.name,
                started_at=started_at,
                pending=_frames(walk.start),
                incomplete=incomplete,
            )
        if walk.exhausted:
            result.budget_exhausted = True
            result.checkpointed = walk.folders_listed > 0
            log.info(
                "walk of %s continues next run (%d folder(s) pending)",
                scope.name,
                len(walk.pending),
            )
            return WalkCheckpoint(
                project=scope.name,
                started_at=started_at,
                pending=_frames(walk.pending),
                incomplete=incomplete,
            )

        if self.materializer is not None:
            report = self.materializer.run(budget, project=scope.name)
            result.materialized = report.materialized
            result.measured = report.measured
            result.failures.extend(report.failures)
            telemetry.increment("assets_failed", len(report.failures))
            # leftovers are picked up by the next pass; the chunk still advances
            if report.exhausted:
                result.budget_exhausted = True
        return None

    def _finish_campaign(
        self, scopes: Sequence[RemoteEntry], result: ChunkResult, budget: TimeBudget
    ) -> None:
        """Last chunk: drop rows of projects that no longer exist remotely."""
        if not scopes:
            return
        if budget.exhausted():
            log.info("skipping orphan prune: budget exhausted")
            return
        remote = {s.name for s in scopes}
        try:
            known = self.store.list_projects(timeout=budget.op_timeout())
            orphans = sorted(known - remote)
            if orphans:
                result.pruned = self.store.delete_projects(
                    orphans, timeout=budget.op_timeout()
                )
                log.info("pruned %d row(s) of vanished projects %s", result.pruned, orphans)
        except SupabaseError as e:
            log.warning("orphan prune failed: %s", e)
            result.failures.append(ItemFailure(stage="prune", error=str(e)))

    def _save_meta(
        self,
        result: ChunkResult,
        next_chunk: int,
        total: int,
        budget: TimeBudget,
        walk: Optional[WalkCheckpoint] = None,
        failed_projects: Sequence[str] = (),
    ) -> None:
        meta = SyncMeta(
            last_sync_at=self._now(),
            projects_synced=min(next_chunk, total),
            total_projects=total,
            status=result.status,
            next_chunk=next_chunk if result.has_more_chunks else 0,
            walk=walk,
            failed_projects=list(failed_projects),
        )
        try:
            self.store.save_meta(meta, timeout=budget.op_timeout())
        except SupabaseError as e:
            log.warning("could not save sync meta: %s", e)
            result.failures.append(ItemFailure(stage="meta", error=str(e)))

    def _record(self, result: ChunkResult) -> None:
        telemetry.increment("entries_created", result.created)
        telemetry.increment("entries_updated", result.updated)
        telemetry.increment("entries_deleted", result.deleted_stale + result.pruned)
        telemetry.increment("assets_materialized", result.materialized)
        telemetry.increment("dimensions_measured", result.measured)
        summary = {
            "chunk": result.chunk,
            "project": result.project,
            "created": result.created,
            "updated": result.updated,
            "deleted": result.deleted_stale,
            "pruned": result.pruned,
            "materialized": result.materialized,
            "failures": len(result.failures),
            "budget_exhausted": result.budget_exhausted,
            "checkpointed": result.checkpointed,
            "next_chunk": result.next_chunk,
            "duration_ms": result.duration_ms,
        }
        if result.scope_failed:
            telemetry.increment("chunks_failed")
            telemetry.set_error(f"scope {result.project} failed")
        telemetry.record_chunk(summary)
        telemetry.log_json("sync_chunk_done", **summary)

    # --- campaign -------------------------------------------------------------

    def run_campaign(
        self,
        *,
        force: bool = False,
        max_chunks: int = DEFAULT_MAX_CHUNKS,
    ) -> Optional["CampaignSummary"]:
        """In-process driver; None when no campaign is due and not forced."""
        meta = self.load_meta()
        if not force and not is_sync_due(
            meta, now=self._now(), interval_minutes=self.cfg.SYNC_INTERVAL_MINUTES
        ):
            log.info("sync not due (last %s)", meta.last_sync_at if meta else None)
            return None
        start = meta.next_chunk if meta and meta.status == "partial" else 0
        return drive_chunks(lambda c: self.run_chunk(c), start=start, max_chunks=max_chunks)


@dataclass
class CampaignSummary:
    results: List[ChunkResult] = field(default_factory=list)
    stop_reason: str = "complete"  # complete | stuck | max_chunks

    @property
    def created(self) -> int:
        return sum(r.created for r in self.results)

    @property
    def updated(self) -> int:
        return sum(r.updated for r in self.results)

    @property
    def deleted(self) -> int:
        return sum(r.deleted_stale + r.pruned for r in self.results)

    @property
    def failures(self) -> int:
        return sum(len(r.failures) for r in self.results)


def drive_chunks(
    step: Callable[[int], ChunkResult],
    *,
    start: int = 0,
    max_chunks: int = DEFAULT_MAX_CHUNKS,
    max_repeats: int = DEFAULT_MAX_REPEATS,
) -> CampaignSummary:
    """Call `step` with advancing chunk indexes until no chunks remain.

    Stops at `max_chunks` calls, or when `step` hands back the same chunk
    `max_repeats` times in a row without saving any progress (a chunk that
    reports `checkpointed` is continuing a large project, not stuck).
    """
    summary = CampaignSummary()
    chunk = start
    repeats = 0
    for _ in range(max(1, max_chunks)):
        res = step(chunk)
        summary.results.append(res)
        if not res.has_more_chunks or res.next_chunk is None:
            summary.stop_reason = "complete"
            return summary
        if res.next_chunk == chunk and not res.checkpointed:
            repeats += 1
            if repeats >= max_repeats:
                log.warning("chunk %d did not advance after %d runs; stopping", chunk, repeats)
                summary.stop_reason = "stuck"
                return summary
        else:
            repeats = 0
        chunk = res.next_chunk
    summary.stop_reason = "max_chunks"
    return summary


__all__ = [
    "CampaignSummary",
    "SyncScheduler",
    "drive_chunks",
    "is_sync_due",
]
