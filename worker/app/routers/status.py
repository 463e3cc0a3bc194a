# worker/app/routers/status.py
from __future__ import annotations

import time
from datetime import datetime, timezone

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from worker.app.config import Settings
from worker.app.dependencies.services import get_settings, get_store
from worker.app.services.catalogue_store import CatalogueStore
from worker.app.services.scheduler import is_sync_due
from worker.app.services.supabase_client import SupabaseError
from worker.app.telemetry import telemetry

router = APIRouter()

# Module-level memoization for bucket reachability (15s cache)
_bucket_cache: tuple = (0.0, False)


def _bucket_reachable(store: CatalogueStore, bucket: str) -> bool:
    """
    Check the mirror bucket answers a one-item listing, memoized for 15s.
    """
    global _bucket_cache
    now = time.time()
    last_ts, last_bool = _bucket_cache

    if now - last_ts < 15.0:
        return last_bool

    try:
        store.client.list_objects(bucket, limit=1, timeout=2.0)
        reachable = True
    except SupabaseError:
        reachable = False

    _bucket_cache = (now, reachable)
    return reachable


@router.get("/health")
def health():
    return {"ok": True}


@router.get("/status")
def status(
    cfg: Settings = Depends(get_settings),
    store: CatalogueStore = Depends(get_store),
):
    """
    Returns config completeness, sync meta, catalogue counts and telemetry.
    """
    missing_sync = cfg.missing_for_sync()
    missing_read = cfg.missing_for_read()

    meta = None
    counts = None
    bucket = None
    errors = []
    if not missing_read:
        try:
            meta = store.get_meta()
            counts = store.counts()
        except SupabaseError as e:
            errors.append(str(e))
            telemetry.set_error(f"status: {e}")
        if cfg.asset_strategy == "mirror" and cfg.SUPABASE_BUCKET:
            bucket = {
                "name": cfg.SUPABASE_BUCKET,
                "reachable": _bucket_reachable(store, cfg.SUPABASE_BUCKET),
            }

    due = is_sync_due(
        meta,
        now=datetime.now(timezone.utc),
        interval_minutes=cfg.SYNC_INTERVAL_MINUTES,
    )

    data = {
        "ok": not errors,
        "config": {
            "sync_ready": not missing_sync,
            "read_ready": not missing_read,
            "missing": missing_sync,
            "asset_strategy": cfg.asset_strategy,
            "root_path": cfg.DROPBOX_ROOT_PATH,
            "time_budget_ms": cfg.SYNC_TIME_BUDGET_MS,
        },
        "meta": meta.model_dump(mode="json", by_alias=True) if meta else None,
        "sync_due": due,
        "counts": counts,
        "bucket": bucket,
        "errors": errors,
        "telemetry": telemetry.get_stats(),
    }
    return JSONResponse(data)
