from __future__ import annotations

import re
from fnmatch import fnmatchcase
from typing import List

from protocol.errors import SandboxError
from workspace.bridge import WorkspaceFS

GLOB_CHARS = frozenset("*?[")


def has_glob(text: str) -> bool:
    return any(ch in GLOB_CHARS for ch in text)


def glob_escape(text: str) -> str:
    return re.sub(r"([*?[])", r"[\1]", text)


def glob_to_regex(pattern: str) -> str:
    """Unanchored regex for a glob pattern (used by ``${var/pat/rep}``)."""
    out = []
    i = 0
    while i < len(pattern):
        ch = pattern[i]
        if ch == "*":
            out.append(".*")
        elif ch == "?":
            out.append(".")
        elif ch == "[":
            end = pattern.find("]", i + 2)
            if end == -1:
                out.append(re.escape(ch))
            else:
                body = pattern[i + 1:end]
                if body.startswith("!"):
                    body = "^" + body[1:]
                out.append(f"[{body}]")
                i = end
        elif ch == "\\" and i + 1 < len(pattern):
            out.append(re.escape(pattern[i + 1]))
            i += 1
        else:
            out.append(re.escape(ch))
        i += 1
    return "".join(out)


def _join(base: str, name: str) -> str:
    if not base:
        return name
    if base.endswith("/"):
        return base + name
    return f"{base}/{name}"


def glob_paths(fs: WorkspaceFS, pattern: str, cwd: str) -> List[str]:
    """Expand ``pattern`` against the workspace; paths keep the pattern's form.

    Hidden entries only match components that start with a dot. Anything
    the bridge refuses to list simply produces no match.
    """
    parts = [part for part in pattern.split("/") if part]
    if not parts:
        return []
    candidates = ["/" if pattern.startswith("/") else ""]
    for index, part in enumerate(parts):
        last = index == len(parts) - 1
        matched: List[str] = []
        for base in candidates:
            if not has_glob(part):
                matched.append(_join(base, part))
                continue
            try:
                entries = fs.list_dir(base or ".", cwd)
            except SandboxError:
                continue
            for entry in entries:
                if entry.name.startswith(".") and not part.startswith("."):
                    continue
                if not fnmatchcase(entry.name, part):
                    continue
                if not last and not entry.is_directory:
                    continue
                matched.append(_join(base, entry.name))
        candidates = matched
    existing = []
    for candidate in candidates:
        try:
            if fs.lexists(candidate, cwd):
                existing.append(candidate)
        except SandboxError:
            continue
    return sorted(existing)
