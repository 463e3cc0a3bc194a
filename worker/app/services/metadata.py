# worker/app/services/metadata.py
"""
Turn a discovered remote file into a catalogue candidate.

Classification (type, aspect guess) is keyword matching on the lower-cased
file name. It is allowed to be wrong: the measured aspect ratio supersedes
the guess once the materializer has read the bytes.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional, Sequence, Tuple

from worker.app.schema.catalogue_schema import DEFAULT_ASPECT_RATIO, CatalogueEntry
from worker.app.services.dropbox_client import RemoteEntry
from worker.app.utils.entry_ids import canonical_remote_path, entry_id_for

log = logging.getLogger(__name__)

# first match wins
TYPE_KEYWORDS: Sequence[Tuple[str, Sequence[str]]] = (
    ("Brand", ("logo", "brand", "identity")),
    ("Typography", ("type", "font", "text")),
    ("3D", ("3d", "render", "model")),
    ("Photography", ("photo", "img_", "dsc_")),
    ("Web", ("web", "site", "ui")),
    ("Packaging", ("pack", "box", "container")),
)
DEFAULT_TYPE = "Design"

ASPECT_KEYWORDS: Sequence[Tuple[float, Sequence[str]]] = (
    (3 / 4, ("portrait", "vertical")),
    (1.0, ("square", "1x1")),
    (16 / 9, ("wide", "banner")),
    (16 / 10, ("screen", "desktop")),
)


def guess_type(filename: str) -> str:
    lower = (filename or "").lower()
    for label, words in TYPE_KEYWORDS:
        if any(w in lower for w in words):
            return label
    return DEFAULT_TYPE


def guess_aspect_ratio(filename: str) -> float:
    lower = (filename or "").lower()
    for ratio, words in ASPECT_KEYWORDS:
        if any(w in lower for w in words):
            return ratio
    return DEFAULT_ASPECT_RATIO


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        dt = datetime.fromisoformat(str(value).strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def time_bucket(modified: Optional[datetime], *, now: Optional[datetime] = None) -> str:
    """`YYYY-Qn`; a missing timestamp falls back to the current quarter."""
    dt = modified or now or datetime.now(timezone.utc)
    return f"{dt.year}-Q{(dt.month - 1) // 3 + 1}"


def split_name(filename: str) -> Tuple[str, str]:
    """('hero', 'png') for 'hero.PNG'; dotfiles keep their name."""
    if "." not in filename.lstrip("."):
        return filename, ""
    stem, ext = filename.rsplit(".", 1)
    return stem, ext.lower()


def derive(
    entry: RemoteEntry,
    project: str,
    tool: str,
    *,
    now: Optional[datetime] = None,
) -> CatalogueEntry:
    now = now or datetime.now(timezone.utc)
    name, ext = split_name(entry.name)
    modified = parse_timestamp(entry.modified_at)
    if entry.modified_at and modified is None:
        log.debug("unparseable modified time %r for %s", entry.modified_at, entry.path)
    return CatalogueEntry(
        id=entry_id_for(project, tool, entry.name),
        name=name,
        project=project,
        tool=tool,
        type=guess_type(entry.name),
        time_bucket=time_bucket(modified, now=now),
        aspect_ratio_guess=guess_aspect_ratio(entry.name),
        remote_path=canonical_remote_path(entry.path_lower or entry.path),
        extension=ext,
        size_bytes=entry.size,
        remote_modified_at=modified,
        scanned_at=now,
    )


__all__ = [
    "derive",
    "guess_aspect_ratio",
    "guess_type",
    "parse_timestamp",
    "split_name",
    "time_bucket",
]
