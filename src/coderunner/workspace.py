"""Workspace store.

Every submission is materialized into its own freshly created directory
under a configurable root.  The directory is owned by exactly one execution
session and removed when that session ends, whatever the reason.

Paths supplied by the client are untrusted: they are normalized before
anything is written, and any path that is absolute or climbs out of the
workspace root is rejected.
"""

from __future__ import annotations

import logging
import os
import shutil
import tempfile
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Iterable, List, Tuple

from .errors import WorkspaceError
from .models import SourceFile

logger = logging.getLogger(__name__)


@dataclass
class Workspace:
    """A materialized set of files in an isolated directory."""

    id: str
    root: Path
    files: List[Tuple[str, str]] = field(default_factory=list)
    destroyed: bool = False

    @property
    def paths(self) -> List[str]:
        return [path for path, _ in self.files]


def normalize_path(relative_path: str) -> str:
    """Return ``relative_path`` as a clean POSIX path inside the workspace.

    Raises :class:`WorkspaceError` for empty, absolute or escaping paths.
    """
    raw = (relative_path or "").replace("\\", "/").strip()
    if not raw:
        raise WorkspaceError("Empty file path")
    pure = PurePosixPath(raw)
    if pure.is_absolute():
        raise WorkspaceError(f"Absolute paths are not allowed: {relative_path}")
    parts: List[str] = []
    for part in pure.parts:
        if part in ("", "."):
            continue
        if part == "..":
            raise WorkspaceError(f"Path escapes the workspace: {relative_path}")
        parts.append(part)
    if not parts:
        raise WorkspaceError(f"Invalid file path: {relative_path}")
    return "/".join(parts)


class WorkspaceStore:
    """Create and destroy per-session workspace directories."""

    def __init__(self, base_dir: str | os.PathLike[str]) -> None:
        self.base_dir = Path(base_dir)
        self.base_dir.mkdir(parents=True, exist_ok=True)

    def create(self, files: Iterable[SourceFile], prefix: str = "ws-") -> Workspace:
        """Materialize ``files`` into a new directory.

        All paths are validated before the directory is created, so a
        rejected submission leaves nothing behind on disk.
        """
        normalized: List[Tuple[str, str]] = []
        seen = set()
        for source in files:
            rel = normalize_path(source.path)
            if rel in seen:
                raise WorkspaceError(f"Duplicate file path: {rel}")
            seen.add(rel)
            normalized.append((rel, source.content or ""))

        try:
            root = Path(tempfile.mkdtemp(prefix=prefix, dir=str(self.base_dir)))
        except OSError as exc:
            raise WorkspaceError(f"Unable to create workspace: {exc}") from exc

        workspace = Workspace(id=root.name, root=root, files=normalized)
        try:
            for rel, content in normalized:
                dest = self.resolve(workspace, rel)
                dest.parent.mkdir(parents=True, exist_ok=True)
                dest.write_text(content, encoding="utf-8")
        except OSError as exc:
            self.destroy(workspace)
            raise WorkspaceError(f"Unable to write workspace files: {exc}") from exc

        logger.info("Created workspace %s with %d file(s)", workspace.id, len(normalized))
        return workspace

    def resolve(self, workspace: Workspace, relative_path: str) -> Path:
        """Return the on-disk path of ``relative_path``, contained in ``workspace``."""
        root = workspace.root.resolve()
        dest = (root / normalize_path(relative_path)).resolve()
        if dest != root and root not in dest.parents:
            # A symlink written by the program may point outside the root.
            raise WorkspaceError(f"Path escapes the workspace: {relative_path}")
        return dest

    def destroy(self, workspace: Workspace) -> None:
        """Remove the workspace directory.  Calling this twice is a no-op."""
        if workspace.destroyed:
            return
        workspace.destroyed = True
        shutil.rmtree(workspace.root, ignore_errors=True)
        if workspace.root.exists():
            logger.warning("Workspace %s could not be fully removed", workspace.id)
        else:
            logger.info("Destroyed workspace %s", workspace.id)
