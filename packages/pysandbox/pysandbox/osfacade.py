"""Stand-ins for ``os`` and ``os.path`` that only see the workspace.

Every function takes virtual paths (``/workspace/...`` or relative to it) and
goes through ``WorkspaceFS``. Bridge errors are re-raised as the ``OSError``
subclasses ordinary Python code expects.
"""
from __future__ import annotations

import errno
import posixpath
import types
from contextlib import contextmanager
from typing import Dict, Iterator, Optional

from protocol.errors import (
    DirectoryNotEmpty,
    FileNotFoundInWorkspace,
    SandboxError,
    SecurityViolation,
)
from workspace.bridge import WorkspaceFS
from workspace.path_utils import VIRTUAL_ROOT, normalize_virtual_path

SANDBOX_ENVIRON = {
    "HOME": VIRTUAL_ROOT,
    "PATH": "/usr/bin:/bin",
    "PWD": VIRTUAL_ROOT,
    "USER": "sandbox",
    "LANG": "C.UTF-8",
}


def os_error(exc: SandboxError, path: str) -> OSError:
    """Translate a bridge error into the matching builtin ``OSError``."""
    cause = exc.__cause__
    if isinstance(cause, OSError):
        return type(cause)(cause.errno, cause.strerror, path)
    if isinstance(exc, SecurityViolation):
        return PermissionError(errno.EACCES, exc.message, path)
    if isinstance(exc, FileNotFoundInWorkspace):
        return FileNotFoundError(errno.ENOENT, "No such file or directory", path)
    if isinstance(exc, DirectoryNotEmpty):
        return OSError(errno.ENOTEMPTY, "Directory not empty", path)
    return OSError(errno.EIO, exc.message, path)


@contextmanager
def translated(path: str) -> Iterator[None]:
    try:
        yield
    except SandboxError as exc:
        raise os_error(exc, path) from None


def _text(path) -> str:
    if isinstance(path, bytes):
        return path.decode("utf-8", errors="surrogateescape")
    if isinstance(path, int):
        raise PermissionError(errno.EACCES, "file descriptors are not available in the sandbox")
    return str(path)


def build_os_path(fs: WorkspaceFS) -> types.ModuleType:
    module = types.ModuleType("os.path", "Workspace view of os.path.")

    def abspath(path) -> str:
        return normalize_virtual_path(_text(path))

    def exists(path) -> bool:
        try:
            return fs.exists(_text(path))
        except SandboxError:
            return False

    def isfile(path) -> bool:
        try:
            return fs.is_file(_text(path))
        except SandboxError:
            return False

    def isdir(path) -> bool:
        try:
            return fs.is_dir(_text(path))
        except SandboxError:
            return False

    def islink(path) -> bool:
        try:
            _, host = fs.resolve_link(_text(path))
        except SandboxError:
            return False
        return host.is_symlink()

    def lexists(path) -> bool:
        try:
            return fs.lexists(_text(path))
        except SandboxError:
            return False

    def getsize(path) -> int:
        text = _text(path)
        with translated(text):
            return fs.stat(text).st_size

    def getmtime(path) -> float:
        text = _text(path)
        with translated(text):
            return fs.stat(text).st_mtime

    def realpath(path) -> str:
        text = _text(path)
        with translated(text):
            return fs.to_virtual(fs.resolve(text))

    def relpath(path, start=None) -> str:
        return posixpath.relpath(abspath(path), abspath(start or VIRTUAL_ROOT))

    def expanduser(path) -> str:
        text = _text(path)
        if text == "~" or text.startswith("~/"):
            return VIRTUAL_ROOT + text[1:]
        return text

    for name, fn in {
        "join": posixpath.join,
        "basename": posixpath.basename,
        "dirname": posixpath.dirname,
        "split": posixpath.split,
        "splitext": posixpath.splitext,
        "normpath": posixpath.normpath,
        "isabs": posixpath.isabs,
        "commonpath": posixpath.commonpath,
        "commonprefix": posixpath.commonprefix,
        "abspath": abspath,
        "exists": exists,
        "isfile": isfile,
        "isdir": isdir,
        "islink": islink,
        "lexists": lexists,
        "getsize": getsize,
        "getmtime": getmtime,
        "realpath": realpath,
        "relpath": relpath,
        "expanduser": expanduser,
    }.items():
        setattr(module, name, fn)
    module.sep = "/"
    return module


def build_os(fs: WorkspaceFS, environ: Optional[Dict[str, str]] = None) -> types.ModuleType:
    """A module object named ``os`` exposing only workspace operations.

    There is no ``system``, ``popen``, ``fork``, ``exec*``, ``chdir`` or
    ``kill``; ``environ`` is a sanitized copy owned by the session.
    """
    module = types.ModuleType("os", "Workspace view of os.")
    env = dict(SANDBOX_ENVIRON if environ is None else environ)
    path_module = build_os_path(fs)

    def getcwd() -> str:
        return VIRTUAL_ROOT

    def listdir(path=".") -> list:
        text = _text(path)
        with translated(text):
            return [entry.name for entry in fs.list_dir(text)]

    def mkdir(path, mode=0o777) -> None:
        text = _text(path)
        with translated(text):
            fs.mkdir(text)

    def makedirs(name, mode=0o777, exist_ok=False) -> None:
        text = _text(name)
        with translated(text):
            fs.mkdir(text, parents=True, exist_ok=exist_ok)

    def remove(path) -> None:
        text = _text(path)
        if path_module.isdir(text) and not path_module.islink(text):
            raise IsADirectoryError(errno.EISDIR, "Is a directory", text)
        with translated(text):
            fs.delete(text)

    def rmdir(path) -> None:
        text = _text(path)
        if not path_module.isdir(text) or path_module.islink(text):
            if not path_module.lexists(text):
                raise FileNotFoundError(errno.ENOENT, "No such file or directory", text)
            raise NotADirectoryError(errno.ENOTDIR, "Not a directory", text)
        with translated(text):
            fs.delete(text)

    def rename(src, dst) -> None:
        src_text, dst_text = _text(src), _text(dst)
        with translated(src_text):
            fs.rename(src_text, dst_text)

    def symlink(src, dst, target_is_directory=False) -> None:
        dst_text = _text(dst)
        with translated(dst_text):
            fs.symlink(dst_text, _text(src))

    def readlink(path) -> str:
        text = _text(path)
        with translated(text):
            return fs.readlink(text)

    def stat(path):
        text = _text(path)
        with translated(text):
            return fs.stat(text)

    def walk(top=".", topdown=True, onerror=None, followlinks=False):
        text = _text(top)
        try:
            entries = list(fs.walk(text))
        except SandboxError as exc:
            if onerror is not None:
                onerror(os_error(exc, text))
            return
        if not topdown:
            entries.reverse()
        yield from entries

    def getenv(key, default=None):
        return env.get(key, default)

    for name, fn in {
        "getcwd": getcwd,
        "listdir": listdir,
        "mkdir": mkdir,
        "makedirs": makedirs,
        "remove": remove,
        "unlink": remove,
        "rmdir": rmdir,
        "rename": rename,
        "replace": rename,
        "symlink": symlink,
        "readlink": readlink,
        "stat": stat,
        "walk": walk,
        "getenv": getenv,
        "fspath": _text,
    }.items():
        setattr(module, name, fn)
    module.path = path_module
    module.environ = env
    module.sep = "/"
    module.altsep = None
    module.extsep = "."
    module.pathsep = ":"
    module.linesep = "\n"
    module.curdir = "."
    module.pardir = ".."
    module.devnull = "/dev/null"
    module.name = "posix"
    module.error = OSError
    return module
