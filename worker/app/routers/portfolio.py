# worker/app/routers/portfolio.py
from __future__ import annotations

import logging
import math
import time

from fastapi import APIRouter, Depends, Query, Response
from fastapi.responses import JSONResponse

from worker.app.config import ConfigError, Settings
from worker.app.dependencies.services import get_settings, get_store
from worker.app.models import BatchInfo, PortfolioResponse, PortfolioStats
from worker.app.services.catalogue_store import CatalogueStore
from worker.app.services.supabase_client import SupabaseError
from worker.app.telemetry import telemetry

log = logging.getLogger(__name__)

router = APIRouter()


@router.get("/portfolio", response_model=PortfolioResponse)
def portfolio(
    response: Response,
    batch: int = Query(default=0, ge=0),
    cfg: Settings = Depends(get_settings),
    store: CatalogueStore = Depends(get_store),
):
    """
    Catalogue page for the gallery, whatever its sync state.

    Serves what is stored even while a sync is stalled; `meta` tells the
    caller how fresh it is.
    """
    t0 = time.time()
    try:
        cfg.require_read()
    except ConfigError as e:
        return JSONResponse({"ok": False, "error": str(e)}, status_code=500)

    size = max(1, cfg.READ_BATCH_SIZE)
    try:
        images, total = store.page(batch * size, size)
    except SupabaseError as e:
        log.warning("portfolio read failed: %s", e)
        telemetry.set_error(f"portfolio read: {e}")
        return JSONResponse({"ok": False, "error": str(e)}, status_code=502)

    try:
        meta = store.get_meta()
    except SupabaseError as e:
        log.debug("portfolio meta unavailable: %s", e)
        meta = None

    total_batches = math.ceil(total / size) if total else 0
    has_more = batch < total_batches - 1
    response.headers["Cache-Control"] = (
        f"public, max-age={cfg.READ_CACHE_SECONDS}"
    )
    return PortfolioResponse(
        images=images,
        meta=meta,
        batch=BatchInfo(
            current=batch,
            total=total_batches,
            has_more=has_more,
            next_batch=batch + 1 if has_more else None,
        ),
        stats=PortfolioStats(
            total_images=total,
            batch_size=size,
            processing_time_ms=int((time.time() - t0) * 1000),
        ),
    )
