from workspace.bridge import WorkspaceFS
from workspace.path_utils import (
    VIRTUAL_ROOT,
    CanonicalPathResult,
    PathViolation,
    canonicalize_path,
    normalize_virtual_path,
)

__all__ = [
    "VIRTUAL_ROOT",
    "CanonicalPathResult",
    "PathViolation",
    "WorkspaceFS",
    "canonicalize_path",
    "normalize_virtual_path",
]
