from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

AssetUrlKind = Literal["durable", "temporary"]
SyncStatus = Literal["complete", "partial"]

DEFAULT_ASPECT_RATIO = 4 / 3

# Columns the reconciler may rewrite on an existing row. Asset and dimension
# columns are never in this list; they belong to the materializer.
MUTABLE_COLUMNS = (
    "name",
    "project",
    "tool",
    "type",
    "time_bucket",
    "aspect_ratio_guess",
    "remote_path",
    "extension",
    "size_bytes",
    "remote_modified_at",
)
ASSET_COLUMNS = ("asset_url", "asset_url_kind", "asset_url_fetched_at", "storage_path")
DIMENSION_COLUMNS = (
    "width",
    "height",
    "aspect_ratio_measured",
    "aspect_ratio_estimated",
    "dimensions_calculated_at",
    "dimensions_attempted_at",
)


class CamelModel(BaseModel):
    """Snake_case in Python and in the catalogue tables, camelCase on the wire."""

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="ignore"
    )


class CatalogueEntry(CamelModel):
    # Deterministic slug of project-tool-filename (see utils/entry_ids.py)
    id: str = Field(min_length=1)
    name: str
    project: str
    tool: str
    type: str = "Design"
    time_bucket: str
    aspect_ratio_guess: float = DEFAULT_ASPECT_RATIO
    remote_path: str = Field(min_length=1)  # canonical, lower-cased join key
    extension: str = ""
    size_bytes: Optional[int] = None
    remote_modified_at: Optional[datetime] = None

    asset_url: Optional[str] = None
    asset_url_kind: Optional[AssetUrlKind] = None
    asset_url_fetched_at: Optional[datetime] = None
    storage_path: Optional[str] = None

    width: Optional[int] = None
    height: Optional[int] = None
    aspect_ratio_measured: Optional[float] = None
    aspect_ratio_estimated: bool = False
    dimensions_calculated_at: Optional[datetime] = None
    dimensions_attempted_at: Optional[datetime] = None

    scanned_at: Optional[datetime] = None

    @property
    def aspect_ratio(self) -> float:
        """Measured (or flagged estimate) wins over the filename guess."""
        if self.aspect_ratio_measured:
            return self.aspect_ratio_measured
        return self.aspect_ratio_guess

    @property
    def has_durable_asset(self) -> bool:
        return bool(self.asset_url) and self.asset_url_kind == "durable"

    def to_row(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")

    def create_row(self) -> Dict[str, Any]:
        """Payload for a path not yet in the catalogue.

        Asset and dimension columns are left out so a merge-upsert onto a
        row that already holds this id (slug collision) cannot null them.
        """
        return self.model_dump(
            mode="json", exclude=set(ASSET_COLUMNS + DIMENSION_COLUMNS)
        )

    def mutable_row(self) -> Dict[str, Any]:
        """Payload for updating an existing row: classification + scan stamp only."""
        row = self.model_dump(mode="json", include=set(MUTABLE_COLUMNS))
        row["id"] = self.id
        row["scanned_at"] = self.to_row()["scanned_at"]
        return row


class WalkFrame(CamelModel):
    """A folder still to be listed: path, inherited tool, depth below the project."""

    path: str
    tool: str
    depth: int = Field(ge=0)


class WalkCheckpoint(CamelModel):
    # Where a project's walk stopped when the budget ran out.
    project: str
    started_at: datetime
    pending: List[WalkFrame] = Field(default_factory=list)
    # a folder listing or row write failed in an earlier piece: no tombstones
    incomplete: bool = False


class SyncMeta(CamelModel):
    id: int = 1
    last_sync_at: Optional[datetime] = None
    projects_synced: int = Field(default=0, ge=0)
    total_projects: int = Field(default=0, ge=0)
    status: Optional[SyncStatus] = None
    next_chunk: int = Field(default=0, ge=0)
    walk: Optional[WalkCheckpoint] = None
    # projects of the running campaign that could not be scanned
    failed_projects: List[str] = Field(default_factory=list)


class ItemFailure(CamelModel):
    """One unit of work (file, folder, row) that failed; siblings carried on."""

    id: Optional[str] = None
    path: str = ""
    stage: str
    error: str
