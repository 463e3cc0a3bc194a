# worker/app/routers/sync.py
from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse

from worker.app.config import ConfigError
from worker.app.dependencies.auth import require_auth
from worker.app.dependencies.services import get_materializer, get_scheduler
from worker.app.models import (
    ChunkResult,
    MaterializeRequest,
    MaterializeResponse,
    RefreshLinksRequest,
    TriggerRequest,
)
from worker.app.services.dropbox_client import DropboxError
from worker.app.services.materialize import AssetMaterializer, MaterializeReport
from worker.app.services.scheduler import SyncScheduler
from worker.app.telemetry import telemetry
from worker.app.utils.budget import TimeBudget

log = logging.getLogger(__name__)

router = APIRouter(prefix="/sync", tags=["sync"])


def _config_error(e: ConfigError) -> JSONResponse:
    log.error("sync refused: %s", e)
    telemetry.set_error(str(e))
    return JSONResponse(
        {"ok": False, "error": str(e), "missing": e.missing}, status_code=500
    )


def _report_response(
    materializer: AssetMaterializer, report: MaterializeReport, event: str
) -> MaterializeResponse:
    telemetry.increment("assets_materialized", report.materialized)
    telemetry.increment("dimensions_measured", report.measured)
    telemetry.increment("assets_failed", len(report.failures))
    telemetry.log_json(
        event,
        strategy=materializer.strategy,
        processed=report.processed,
        materialized=report.materialized,
        measured=report.measured,
        failures=len(report.failures),
        remaining=report.remaining,
    )
    return MaterializeResponse(
        ok=not report.failures,
        strategy=materializer.strategy,
        processed=report.processed,
        materialized=report.materialized,
        measured=report.measured,
        estimated=report.estimated,
        remaining=report.remaining,
        budget_exhausted=report.exhausted,
        failures=report.failures,
    )


def _budget(materializer: AssetMaterializer) -> TimeBudget:
    cfg = materializer.cfg
    return TimeBudget(cfg.SYNC_TIME_BUDGET_MS, op_timeout_ms=cfg.HTTP_TIMEOUT_MS)


@router.post("", response_model=ChunkResult)
def trigger_chunk(
    body: Optional[TriggerRequest] = None,
    chunk: Optional[int] = Query(default=None, ge=0),
    _: bool = Depends(require_auth),
    scheduler: SyncScheduler = Depends(get_scheduler),
):
    """Run one scheduler step. Body `{"chunk": n}` wins over `?chunk=n`; neither resumes."""
    target = body.chunk if body and body.chunk is not None else chunk
    try:
        return scheduler.run_chunk(target)
    except ConfigError as e:
        return _config_error(e)
    except DropboxError as e:
        # root listing failed: chunk indexes are meaningless without it
        return JSONResponse(
            {"ok": False, "error": str(e), "chunk": target}, status_code=502
        )


@router.post("/materialize", response_model=MaterializeResponse)
def materialize_pass(
    body: Optional[MaterializeRequest] = None,
    _: bool = Depends(require_auth),
    materializer: AssetMaterializer = Depends(get_materializer),
):
    """Fill asset URLs and dimensions without walking the tree."""
    try:
        materializer.cfg.require_sync()
    except ConfigError as e:
        return _config_error(e)
    report = materializer.run(
        _budget(materializer),
        limit=body.limit if body else None,
        count_remaining=True,
    )
    return _report_response(materializer, report, "materialize_done")


@router.post("/refresh-links", response_model=MaterializeResponse)
def refresh_links(
    body: RefreshLinksRequest,
    _: bool = Depends(require_auth),
    materializer: AssetMaterializer = Depends(get_materializer),
):
    """Re-mint or re-mirror specific rows regardless of link age."""
    try:
        materializer.cfg.require_sync()
    except ConfigError as e:
        return _config_error(e)
    report = materializer.refresh_links(body.ids, _budget(materializer))
    return _report_response(materializer, report, "refresh_links_done")
