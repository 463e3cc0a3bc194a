"""Remote tree discovery: project scopes and the image files inside them.

Contract:
    list_scopes(client, root_path, timeout) -> list[RemoteEntry]
    TreeWalk(client, scope, max_depth, budget) -> lazy iterable of DiscoveredFile

Layout of the remote tree:
    <root>/<project>/<tool>/.../<file>

    * Top-level folders are scopes (projects); files sitting directly in the
      root are ignored.
    * Files directly inside a project folder get tool "Mixed".
    * The first folder below the project names the tool; deeper folders
      inherit it.
    * Folders deeper than `max_depth` below the project are skipped silently.

A folder that fails to list is recorded on the walk and its siblings are
still visited. The walk is `complete` only when every folder listed and the
budget never ran out; only a complete walk may tombstone rows.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterator, List, Optional, Sequence, Tuple

from worker.app.schema.catalogue_schema import ItemFailure
from worker.app.services.dropbox_client import DropboxClient, DropboxError, RemoteEntry
from worker.app.utils.budget import TimeBudget, unbounded

log = logging.getLogger(__name__)

IMAGE_EXTS = frozenset(
    {
        "jpg",
        "jpeg",
        "png",
        "gif",
        "bmp",
        "webp",
        "tiff",
        "svg",
        "avif",
        "heic",
        "heif",
        "ico",
        "jfif",
        "pjpeg",
        "pjp",
    }
)

MIXED_TOOL = "Mixed"
DEFAULT_MAX_DEPTH = 3

Frame = Tuple[str, str, int]


def is_image_file(name: str) -> bool:
    if not name or "." not in name:
        return False
    return name.rsplit(".", 1)[1].lower() in IMAGE_EXTS


@dataclass(frozen=True)
class DiscoveredFile:
    entry: RemoteEntry
    project: str
    tool: str
    depth: int = 0


def list_scopes(
    client: DropboxClient, root_path: str, *, timeout: Optional[float] = None
) -> List[RemoteEntry]:
    """Project folders under the root, ordered by lower-cased name.

    A stable order keeps chunk indexes meaning the same project across
    invocations. DropboxError propagates: without the root listing there is
    nothing to index.
    """
    children = client.list_children(root_path, timeout=timeout)
    skipped = [c.name for c in children if not c.is_folder]
    if skipped:
        log.debug("ignoring %d file(s) in root: %s", len(skipped), skipped)
    scopes = [c for c in children if c.is_folder]
    return sorted(scopes, key=lambda c: (c.name.lower(), c.name))


class TreeWalk:
    """Explicit-stack walk of one project scope.

    Iterate to get files; afterwards inspect `errors`, `root_failed`,
    `exhausted` and `complete`. When the budget runs out, `pending` holds the
    folders not yet listed; pass it back as `pending=` to continue the walk
    in a later invocation.
    """

    def __init__(
        self,
        client: DropboxClient,
        scope: RemoteEntry,
        *,
        max_depth: int = DEFAULT_MAX_DEPTH,
        budget: Optional[TimeBudget] = None,
        pending: Optional[Sequence[Frame]] = None,
    ):
        self.client = client
        self.scope = scope
        self.max_depth = max_depth
        self.budget = budget or unbounded()
        self.errors: List[ItemFailure] = []
        self.root_failed = False
        self.exhausted = False
        self.folders_listed = 0
        self.files_seen = 0
        # (path, tool, depth) frames; the scope root unless resuming
        self.start: List[Frame] = (
            [tuple(f) for f in pending] if pending else [(scope.path, MIXED_TOOL, 0)]
        )
        self.pending: List[Frame] = list(self.start)

    @property
    def project(self) -> str:
        return self.scope.name

    @property
    def complete(self) -> bool:
        return not (self.errors or self.root_failed or self.exhausted)

    def __iter__(self) -> Iterator[DiscoveredFile]:
        stack = self.pending = list(self.start)
        while stack:
            if self.budget.exhausted():
                log.info(
                    "budget exhausted walking %s (%d folder(s) left)",
                    self.project,
                    len(stack),
                )
                self.exhausted = True
                return
            path, tool, depth = stack.pop()
            try:
                children = self.client.list_children(
                    path, timeout=self.budget.op_timeout()
                )
            except DropboxError as e:
                log.warning("listing %s failed: %s", path, e)
                self.errors.append(ItemFailure(path=path, stage="list", error=str(e)))
                if depth == 0:
                    self.root_failed = True
                continue
            self.folders_listed += 1

            subfolders: List[RemoteEntry] = []
            for child in children:
                if child.is_folder:
                    subfolders.append(child)
                elif is_image_file(child.name):
                    self.files_seen += 1
                    yield DiscoveredFile(child, self.project, tool, depth)

            if depth >= self.max_depth:
                if subfolders:
                    log.debug("max depth reached at %s; skipping %d", path, len(subfolders))
                continue
            # reversed so folders pop in listing order
            for folder in reversed(subfolders):
                child_tool = folder.name if depth == 0 else tool
                stack.append((folder.path, child_tool, depth + 1))


def walk_scope(
    client: DropboxClient,
    scope: RemoteEntry,
    *,
    max_depth: int = DEFAULT_MAX_DEPTH,
    budget: Optional[TimeBudget] = None,
) -> Tuple[List[DiscoveredFile], TreeWalk]:
    """Drain a TreeWalk; returns (files, walk) so callers can check completeness."""
    walk = TreeWalk(client, scope, max_depth=max_depth, budget=budget)
    files = list(walk)
    return files, walk


__all__ = [
    "IMAGE_EXTS",
    "MIXED_TOOL",
    "DiscoveredFile",
    "TreeWalk",
    "is_image_file",
    "list_scopes",
    "walk_scope",
]
