"""
Path Utilities - Canonical path handling for the workspace boundary

Sandboxed code sees a virtual filesystem rooted at ``/workspace``. Every
path it hands us goes through the same three steps:

1. Lexical normalization against a virtual working directory
   (``..`` and ``.`` collapsed, backslashes treated as separators)
2. Virtual containment: the normalized path must be ``/workspace`` or below
3. Host canonicalization: the mapped host path is passed through
   ``realpath`` so symlinks are followed exactly once, here, and the result
   must still sit under the canonical workspace root

Security principles:
1. Absolute paths outside ``/workspace`` are denied, never remapped
2. Symlinks are followed only to check where they land, never trusted
3. Nothing is cached: a link swapped between two calls is caught on the second
"""

import os
import posixpath
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional

VIRTUAL_ROOT = "/workspace"


class PathViolation(Enum):
    """Path boundary violation reasons."""
    PATH_TRAVERSAL = "path_traversal"
    OUTSIDE_WORKSPACE = "outside_workspace"
    SYMLINK_ESCAPE = "symlink_escape"
    INVALID_PATH = "invalid_path"


VIOLATION_REASONS = {
    PathViolation.PATH_TRAVERSAL: "traverses outside the workspace",
    PathViolation.OUTSIDE_WORKSPACE: "is outside the workspace",
    PathViolation.SYMLINK_ESCAPE: "resolves through a symlink outside the workspace",
    PathViolation.INVALID_PATH: "is not a valid workspace path",
}


@dataclass
class CanonicalPathResult:
    """Result of path canonicalization."""
    virtual_path: str  # Normalized path as sandboxed code sees it
    host_path: Optional[Path]  # Lexical host path (before following symlinks)
    canonical_path: Optional[Path]  # Host path with symlinks resolved
    within_workspace: bool
    violation: Optional[PathViolation] = None

    @property
    def reason(self) -> str:
        if self.violation is None:
            return ""
        return VIOLATION_REASONS[self.violation]


def normalize_virtual_path(path: str, cwd: str = VIRTUAL_ROOT) -> str:
    """Collapse ``path`` into an absolute virtual path.

    Relative paths are joined to ``cwd``; the result may lie outside the
    virtual root, callers check containment separately.
    """
    raw = str(path).replace("\\", "/").strip()
    if not raw:
        raw = cwd
    if not raw.startswith("/"):
        raw = posixpath.join(cwd or VIRTUAL_ROOT, raw)
    normalized = posixpath.normpath(raw)
    # normpath keeps a leading "//"
    if normalized.startswith("//"):
        normalized = "/" + normalized.lstrip("/")
    return normalized


def is_virtual_within(virtual_path: str) -> bool:
    return virtual_path == VIRTUAL_ROOT or virtual_path.startswith(VIRTUAL_ROOT + "/")


def is_within(path: Path, root: Path) -> bool:
    return path == root or root in path.parents


def virtual_to_relative(virtual_path: str) -> str:
    return virtual_path[len(VIRTUAL_ROOT):].lstrip("/")


def canonicalize_path(
    path: str | Path,
    workspace_root: Path,
    cwd: str = VIRTUAL_ROOT,
) -> CanonicalPathResult:
    """
    Canonicalize a sandbox path with security checks.

    Args:
        path: Virtual path (relative to ``cwd`` or absolute under /workspace)
        workspace_root: Host directory backing the workspace
        cwd: Virtual working directory used for relative paths

    Returns:
        CanonicalPathResult with validation info
    """
    raw = str(path)
    if "\x00" in raw:
        return CanonicalPathResult(
            virtual_path=raw,
            host_path=None,
            canonical_path=None,
            within_workspace=False,
            violation=PathViolation.INVALID_PATH,
        )

    virtual = normalize_virtual_path(raw, cwd)
    if not is_virtual_within(virtual):
        traversal = ".." in raw.replace("\\", "/").split("/")
        return CanonicalPathResult(
            virtual_path=virtual,
            host_path=None,
            canonical_path=None,
            within_workspace=False,
            violation=PathViolation.PATH_TRAVERSAL if traversal else PathViolation.OUTSIDE_WORKSPACE,
        )

    root = Path(os.path.realpath(workspace_root))
    relative = virtual_to_relative(virtual)
    host = root / relative if relative else root

    try:
        canonical = Path(os.path.realpath(host))
    except (OSError, ValueError):
        return CanonicalPathResult(
            virtual_path=virtual,
            host_path=host,
            canonical_path=None,
            within_workspace=False,
            violation=PathViolation.INVALID_PATH,
        )

    within = is_within(canonical, root)
    return CanonicalPathResult(
        virtual_path=virtual,
        host_path=host,
        canonical_path=canonical,
        within_workspace=within,
        violation=None if within else PathViolation.SYMLINK_ESCAPE,
    )
