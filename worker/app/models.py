# worker/app/models.py
from __future__ import annotations

from typing import List, Literal, Optional

from pydantic import Field

from worker.app.schema.catalogue_schema import CamelModel, CatalogueEntry, ItemFailure, SyncMeta


class TriggerRequest(CamelModel):
    # None = resume from the persisted next_chunk
    chunk: Optional[int] = Field(default=None, ge=0)


class ChunkResult(CamelModel):
    ok: bool = True
    chunk: int
    project: Optional[str] = None
    total_chunks: int = 0
    has_more_chunks: bool = False
    next_chunk: Optional[int] = None
    images_processed: int = 0
    created: int = 0
    updated: int = 0
    unchanged: int = 0
    deleted_stale: int = 0
    pruned: int = 0
    materialized: int = 0
    measured: int = 0
    scope_failed: bool = False
    budget_exhausted: bool = False
    # stopped part-way with progress saved; the same chunk continues next time
    checkpointed: bool = False
    status: Literal["complete", "partial"] = "partial"
    failures: List[ItemFailure] = Field(default_factory=list)
    duration_ms: int = 0


class MaterializeRequest(CamelModel):
    limit: Optional[int] = Field(default=None, ge=1, le=500)


class RefreshLinksRequest(CamelModel):
    ids: List[str] = Field(min_length=1, max_length=500)


class MaterializeResponse(CamelModel):
    ok: bool = True
    strategy: str
    processed: int = 0
    materialized: int = 0
    measured: int = 0
    estimated: int = 0
    remaining: Optional[int] = None
    budget_exhausted: bool = False
    failures: List[ItemFailure] = Field(default_factory=list)


class BatchInfo(CamelModel):
    current: int
    total: int
    has_more: bool
    next_batch: Optional[int] = None


class PortfolioStats(CamelModel):
    total_images: int
    batch_size: int
    processing_time_ms: int


class PortfolioResponse(CamelModel):
    success: bool = True
    images: List[CatalogueEntry]
    meta: Optional[SyncMeta] = None
    batch: BatchInfo
    stats: PortfolioStats
