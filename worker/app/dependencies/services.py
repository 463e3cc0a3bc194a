# worker/app/dependencies/services.py
"""
Builders for the sync pipeline, used as FastAPI dependencies and by the CLI.

Routes depend on these functions, so tests can swap in fakes through
`app.dependency_overrides`.
"""

from __future__ import annotations

from typing import Optional

from worker.app.config import Settings, settings as default_settings
from worker.app.services.catalogue_store import CatalogueStore
from worker.app.services.dropbox_client import DropboxClient
from worker.app.services.materialize import AssetMaterializer
from worker.app.services.scheduler import SyncScheduler
from worker.app.services.supabase_client import SupabaseClient


def get_settings() -> Settings:
    return default_settings


def build_store(cfg: Optional[Settings] = None) -> CatalogueStore:
    cfg = cfg or default_settings
    return CatalogueStore(SupabaseClient(cfg), cfg)


def build_materializer(
    cfg: Optional[Settings] = None, store: Optional[CatalogueStore] = None
) -> AssetMaterializer:
    cfg = cfg or default_settings
    store = store or build_store(cfg)
    return AssetMaterializer(DropboxClient(cfg), store, store.client, cfg)


def build_scheduler(cfg: Optional[Settings] = None) -> SyncScheduler:
    cfg = cfg or default_settings
    store = build_store(cfg)
    dropbox = DropboxClient(cfg)
    materializer = AssetMaterializer(dropbox, store, store.client, cfg)
    return SyncScheduler(dropbox, store, materializer, cfg)


def get_store() -> CatalogueStore:
    return build_store()


def get_materializer() -> AssetMaterializer:
    return build_materializer()


def get_scheduler() -> SyncScheduler:
    return build_scheduler()
