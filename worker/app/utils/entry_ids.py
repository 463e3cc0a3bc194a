"""Single source of truth for catalogue ids and canonical paths.

Centralizes:
  * entry_id_for(project, tool, filename) -> stable slug id
  * canonical_remote_path(path) -> lower-cased POSIX join key
  * storage_path_for(project, tool, name, extension) -> blob object key

Ids are slugs, not random identifiers, so a rescan of the same logical file
always lands on the same row. Two different triples that slug to the same id
overwrite each other (last write wins); this is not detected.
"""

from __future__ import annotations

import re

_ID_UNSAFE = re.compile(r"[^A-Za-z0-9-]")
_STORAGE_UNSAFE = re.compile(r"[^a-z0-9_-]")


def entry_id_for(project: str, tool: str, filename: str) -> str:
    return _ID_UNSAFE.sub("-", f"{project}-{tool}-{filename}")


def canonical_remote_path(path: str) -> str:
    p = (path or "").strip().replace("\\", "/").lower()
    while "//" in p:
        p = p.replace("//", "/")
    if p and not p.startswith("/"):
        p = "/" + p
    if len(p) > 1 and p.endswith("/"):
        p = p[:-1]
    return p


def _storage_segment(value: str, fallback: str = "unknown") -> str:
    seg = _STORAGE_UNSAFE.sub("-", (value or "").strip().lower())
    return seg or fallback


def storage_path_for(project: str, tool: str, name: str, extension: str) -> str:
    ext = _storage_segment((extension or "").lstrip("."), "bin")
    return (
        f"{_storage_segment(project)}/{_storage_segment(tool)}/"
        f"{_storage_segment(name, 'image')}.{ext}"
    )


__all__ = [
    "entry_id_for",
    "canonical_remote_path",
    "storage_path_for",
]
