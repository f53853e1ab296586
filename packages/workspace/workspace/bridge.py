"""Workspace filesystem bridge.

The only component allowed to touch host storage on behalf of sandboxed code.
Both interpreters and the coordinator's file API go through ``WorkspaceFS``;
every call re-validates its path with ``canonicalize_path`` before any host
side effect happens.
"""
from __future__ import annotations

import io
import logging
import os
import posixpath
import shutil
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List, Optional, Tuple

from protocol.errors import (
    DirectoryNotEmpty,
    FileNotFoundInWorkspace,
    FilesystemError,
    SecurityViolation,
)
from protocol.workspace import FileEntry, WorkspaceTreeNode
from workspace.path_utils import (
    VIRTUAL_ROOT,
    canonicalize_path,
    is_virtual_within,
    is_within,
    normalize_virtual_path,
)

logger = logging.getLogger(__name__)


class WorkspaceFS:
    def __init__(self, root: str | Path, *, create: bool = True) -> None:
        root_path = Path(root).expanduser()
        if create:
            root_path.mkdir(parents=True, exist_ok=True)
        if not root_path.is_dir():
            raise FilesystemError(f"Workspace root is not a directory: {root_path}")
        self._root = Path(os.path.realpath(root_path))

    @property
    def root(self) -> Path:
        return self._root

    # ------------------------------------------------------------------
    # path validation
    # ------------------------------------------------------------------

    def resolve(self, path: str, cwd: str = VIRTUAL_ROOT) -> Path:
        """Map a virtual path to its canonical host path, following symlinks.

        Raises:
            SecurityViolation: the path (or a symlink on it) leaves the workspace.
        """
        result = canonicalize_path(path, self._root, cwd)
        if result.violation is not None or result.canonical_path is None:
            logger.warning(f"Blocked workspace escape: {path!r} ({result.reason})")
            raise SecurityViolation(str(path), result.reason)
        return result.canonical_path

    def resolve_link(self, path: str, cwd: str = VIRTUAL_ROOT) -> Tuple[str, Path]:
        """Resolve the parent directory but not the final component.

        Used for operations that act on a symlink itself (delete, rename,
        creating a link) rather than on its target.
        """
        virtual = normalize_virtual_path(path, cwd)
        if virtual == VIRTUAL_ROOT or not is_virtual_within(virtual):
            return virtual, self.resolve(path, cwd)
        parent_virtual, name = posixpath.split(virtual)
        parent = self.resolve(parent_virtual)
        return virtual, parent / name

    def virtual_path(self, path: str, cwd: str = VIRTUAL_ROOT) -> str:
        return normalize_virtual_path(path, cwd)

    def to_virtual(self, host_path: str | Path) -> str:
        host = Path(host_path)
        if not is_within(host, self._root):
            raise SecurityViolation(str(host_path))
        relative = host.relative_to(self._root).as_posix()
        if relative in ("", "."):
            return VIRTUAL_ROOT
        return f"{VIRTUAL_ROOT}/{relative}"

    @contextmanager
    def _translate_errors(self, virtual: str) -> Iterator[None]:
        try:
            yield
        except FileNotFoundError as exc:
            raise FileNotFoundInWorkspace(f"No such file or directory: {virtual}", path=virtual) from exc
        except IsADirectoryError as exc:
            raise FilesystemError(f"Is a directory: {virtual}", path=virtual) from exc
        except NotADirectoryError as exc:
            raise FilesystemError(f"Not a directory: {virtual}", path=virtual) from exc
        except FileExistsError as exc:
            raise FilesystemError(f"File exists: {virtual}", path=virtual) from exc
        except PermissionError as exc:
            raise FilesystemError(f"Permission denied: {virtual}", path=virtual) from exc
        except OSError as exc:
            raise FilesystemError(f"{exc.strerror or 'I/O error'}: {virtual}", path=virtual) from exc

    # ------------------------------------------------------------------
    # queries
    # ------------------------------------------------------------------

    def exists(self, path: str, cwd: str = VIRTUAL_ROOT) -> bool:
        return self.resolve(path, cwd).exists()

    def is_file(self, path: str, cwd: str = VIRTUAL_ROOT) -> bool:
        return self.resolve(path, cwd).is_file()

    def is_dir(self, path: str, cwd: str = VIRTUAL_ROOT) -> bool:
        return self.resolve(path, cwd).is_dir()

    def lexists(self, path: str, cwd: str = VIRTUAL_ROOT) -> bool:
        _, host = self.resolve_link(path, cwd)
        return os.path.lexists(host)

    def stat(self, path: str, cwd: str = VIRTUAL_ROOT) -> os.stat_result:
        host = self.resolve(path, cwd)
        with self._translate_errors(self.virtual_path(path, cwd)):
            return host.stat()

    def read_text(self, path: str, cwd: str = VIRTUAL_ROOT, encoding: str = "utf-8") -> str:
        host = self.resolve(path, cwd)
        with self._translate_errors(self.virtual_path(path, cwd)):
            return host.read_text(encoding=encoding, errors="replace")

    def read_bytes(self, path: str, cwd: str = VIRTUAL_ROOT) -> bytes:
        host = self.resolve(path, cwd)
        with self._translate_errors(self.virtual_path(path, cwd)):
            return host.read_bytes()

    def list_dir(self, path: str = "", cwd: str = VIRTUAL_ROOT) -> List[FileEntry]:
        """Entries of a directory, sorted by name.

        A symlink pointing outside the workspace is listed with its own size
        and reported as a file; its target is never read.
        """
        host = self.resolve(path, cwd)
        virtual = self.virtual_path(path, cwd)
        if not host.exists():
            raise FileNotFoundInWorkspace(f"No such file or directory: {virtual}", path=virtual)
        if not host.is_dir():
            raise FilesystemError(f"Not a directory: {virtual}", path=virtual)
        entries: List[FileEntry] = []
        with self._translate_errors(virtual):
            children = sorted(os.scandir(host), key=lambda child: child.name)
        for child in children:
            entries.append(self._entry_for(child.name, Path(child.path)))
        return entries

    def _entry_for(self, name: str, host: Path) -> FileEntry:
        if host.is_symlink():
            target = Path(os.path.realpath(host))
            if not is_within(target, self._root) or not target.exists():
                return FileEntry(name=name, is_directory=False, size=host.lstat().st_size)
        if host.is_dir():
            return FileEntry(name=name, is_directory=True, size=0)
        return FileEntry(name=name, is_directory=False, size=host.stat().st_size)

    def walk(self, path: str = "", cwd: str = VIRTUAL_ROOT) -> Iterator[Tuple[str, List[str], List[str]]]:
        """``os.walk`` over the workspace yielding virtual directory paths.

        Symlinked directories are reported but not descended into.
        """
        host = self.resolve(path, cwd)
        for dirpath, dirnames, filenames in os.walk(host):
            dirnames.sort()
            filenames.sort()
            yield self.to_virtual(dirpath), dirnames, filenames

    def tree(self, path: str = "", cwd: str = VIRTUAL_ROOT, max_depth: Optional[int] = None) -> WorkspaceTreeNode:
        host = self.resolve(path, cwd)
        virtual = self.virtual_path(path, cwd)
        if not host.exists():
            raise FileNotFoundInWorkspace(f"No such file or directory: {virtual}", path=virtual)
        return self._tree_node(host, virtual, max_depth)

    def _tree_node(self, host: Path, virtual: str, depth: Optional[int]) -> WorkspaceTreeNode:
        name = posixpath.basename(virtual) or virtual
        entry = self._entry_for(name, host)
        node = WorkspaceTreeNode(name=name, path=virtual, is_directory=entry.is_directory, size=entry.size)
        if not entry.is_directory or host.is_symlink() or depth == 0:
            return node
        next_depth = None if depth is None else depth - 1
        for child in sorted(host.iterdir(), key=lambda p: p.name):
            node.children.append(self._tree_node(child, posixpath.join(virtual, child.name), next_depth))
        return node

    # ------------------------------------------------------------------
    # mutations
    # ------------------------------------------------------------------

    def write_text(
        self,
        path: str,
        content: str,
        cwd: str = VIRTUAL_ROOT,
        *,
        append: bool = False,
        create_parents: bool = False,
    ) -> None:
        self.write_bytes(path, content.encode("utf-8"), cwd, append=append, create_parents=create_parents)

    def write_bytes(
        self,
        path: str,
        data: bytes,
        cwd: str = VIRTUAL_ROOT,
        *,
        append: bool = False,
        create_parents: bool = False,
    ) -> None:
        host = self.resolve(path, cwd)
        virtual = self.virtual_path(path, cwd)
        with self._translate_errors(virtual):
            if create_parents:
                host.parent.mkdir(parents=True, exist_ok=True)
            with open(host, "ab" if append else "wb") as fh:
                fh.write(data)

    def mkdir(self, path: str, cwd: str = VIRTUAL_ROOT, *, parents: bool = False, exist_ok: bool = False) -> None:
        host = self.resolve(path, cwd)
        with self._translate_errors(self.virtual_path(path, cwd)):
            host.mkdir(parents=parents, exist_ok=exist_ok)

    def touch(self, path: str, cwd: str = VIRTUAL_ROOT) -> None:
        host = self.resolve(path, cwd)
        with self._translate_errors(self.virtual_path(path, cwd)):
            host.touch(exist_ok=True)

    def delete(self, path: str, cwd: str = VIRTUAL_ROOT) -> None:
        """Remove a file, symlink or empty directory. Never recursive."""
        virtual, host = self.resolve_link(path, cwd)
        if host == self._root:
            raise FilesystemError("Cannot delete the workspace root", path=virtual)
        with self._translate_errors(virtual):
            if host.is_symlink() or host.is_file():
                host.unlink()
            elif host.is_dir():
                if any(host.iterdir()):
                    raise DirectoryNotEmpty(f"Directory not empty: {virtual}", path=virtual)
                host.rmdir()
            else:
                raise FileNotFoundInWorkspace(f"No such file or directory: {virtual}", path=virtual)

    def delete_tree(self, path: str, cwd: str = VIRTUAL_ROOT) -> None:
        virtual, host = self.resolve_link(path, cwd)
        if host == self._root:
            raise FilesystemError("Cannot delete the workspace root", path=virtual)
        with self._translate_errors(virtual):
            if host.is_symlink() or not host.is_dir():
                host.unlink()
            else:
                shutil.rmtree(host)

    def rename(self, src: str, dst: str, cwd: str = VIRTUAL_ROOT) -> None:
        src_virtual, src_host = self.resolve_link(src, cwd)
        dst_virtual, dst_host = self.resolve_link(dst, cwd)
        if src_host == self._root:
            raise FilesystemError("Cannot move the workspace root", path=src_virtual)
        with self._translate_errors(src_virtual):
            os.replace(src_host, dst_host)
        logger.debug(f"Renamed {src_virtual} -> {dst_virtual}")

    def copy_file(self, src: str, dst: str, cwd: str = VIRTUAL_ROOT) -> None:
        src_host = self.resolve(src, cwd)
        dst_host = self.resolve(dst, cwd)
        with self._translate_errors(self.virtual_path(src, cwd)):
            shutil.copyfile(src_host, dst_host)

    def symlink(self, link: str, target: str, cwd: str = VIRTUAL_ROOT) -> None:
        """Create ``link`` pointing at ``target``.

        Only the link location is validated here. Absolute targets under
        /workspace are rewritten relative to the link so they work on the
        host; any other target is stored as given and checked each time the
        link is accessed.
        """
        virtual, host = self.resolve_link(link, cwd)
        if os.path.lexists(host):
            raise FilesystemError(f"File exists: {virtual}", path=virtual)
        stored = target
        if target.startswith("/"):
            target_virtual = normalize_virtual_path(target)
            if is_virtual_within(target_virtual):
                stored = posixpath.relpath(target_virtual, posixpath.dirname(virtual))
        with self._translate_errors(virtual):
            os.symlink(stored, host)

    def readlink(self, path: str, cwd: str = VIRTUAL_ROOT) -> str:
        virtual, host = self.resolve_link(path, cwd)
        with self._translate_errors(virtual):
            return os.readlink(host)

    def open(
        self,
        path: str,
        mode: str = "r",
        cwd: str = VIRTUAL_ROOT,
        buffering: int = -1,
        encoding: Optional[str] = None,
        errors: Optional[str] = None,
        newline: Optional[str] = None,
    ):
        """Open a workspace file and return a regular file object.

        OS errors keep their builtin type (so ``except FileNotFoundError``
        works in sandboxed code) but name the virtual path.
        """
        host = self.resolve(path, cwd)
        virtual = self.virtual_path(path, cwd)
        try:
            return io.open(host, mode, buffering, encoding, errors, newline)
        except OSError as exc:
            raise type(exc)(exc.errno, exc.strerror, virtual) from None
