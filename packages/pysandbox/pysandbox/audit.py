"""Process-wide audit hook that polices host access from sandboxed code.

``sys.addaudithook`` cannot be undone, so the hook is installed once per
process and stays inert unless the current ``contextvars`` context carries an
``AuditPolicy``. Only code started by the Python runtime runs in such a
context, which lets the hook also catch third-party libraries that bypass the
``os``/``open`` facades.
"""
from __future__ import annotations

import logging
import os
import site
import sys
import sysconfig
import threading
from contextvars import ContextVar
from pathlib import Path
from typing import Any, Iterable, Optional, Tuple

logger = logging.getLogger(__name__)

DENIED_EVENTS = frozenset(
    {
        "subprocess.Popen",
        "os.system",
        "os.exec",
        "os.posix_spawn",
        "os.spawn",
        "os.fork",
        "os.forkpty",
        "os.kill",
        "os.killpg",
        "os.putenv",
        "os.unsetenv",
        "os.chdir",
        "os.startfile",
        "os.add_dll_directory",
        "pty.spawn",
        "sys.addaudithook",
        "sys.settrace",
        "sys.setprofile",
        "sys._current_frames",
        "sys._current_exceptions",
        "gc.get_objects",
        "gc.get_referrers",
        "gc.get_referents",
        "pickle.find_class",
        "mmap.__new__",
        "resource.setrlimit",
        "resource.prlimit",
        "signal.pthread_kill",
        "webbrowser.open",
        "urllib.Request",
        "code.__new__",
        "function.__new__",
    }
)

DENIED_PREFIXES = ("socket.", "ctypes.", "fcntl.", "syslog.", "winreg.", "_winapi.", "msvcrt.")

READ_DEVICES = frozenset({"/dev/null", "/dev/zero", "/dev/random", "/dev/urandom"})

# event -> (positions of paths that are read, positions of paths that are written)
PATH_EVENTS = {
    "os.listdir": ((0,), ()),
    "os.scandir": ((0,), ()),
    "os.getxattr": ((0,), ()),
    "os.listxattr": ((0,), ()),
    "os.mkdir": ((), (0,)),
    "os.remove": ((), (0,)),
    "os.rmdir": ((), (0,)),
    "os.rename": ((), (0, 1)),
    "os.link": ((0,), (1,)),
    "os.symlink": ((), (1,)),
    "os.truncate": ((), (0,)),
    "os.chmod": ((), (0,)),
    "os.chown": ((), (0,)),
    "os.chflags": ((), (0,)),
    "os.lchflags": ((), (0,)),
    "os.utime": ((), (0,)),
    "os.setxattr": ((), (0,)),
    "os.removexattr": ((), (0,)),
    "shutil.copyfile": ((0,), (1,)),
    "shutil.copymode": ((0,), (1,)),
    "shutil.copystat": ((0,), (1,)),
    "shutil.copytree": ((0,), (1,)),
    "shutil.move": ((), (0, 1)),
    "shutil.rmtree": ((), (0,)),
    "shutil.chown": ((), (0,)),
    "shutil.make_archive": ((), (0,)),
    "shutil.unpack_archive": ((0,), (1,)),
    "tempfile.mkstemp": ((), (0,)),
    "tempfile.mkdtemp": ((), (0,)),
    "sqlite3.connect": ((), (0,)),
}

# Operations on a link itself: the final component is not resolved.
LINK_EVENTS = frozenset({"os.remove", "os.rmdir", "os.rename", "os.symlink", "os.link", "shutil.move", "shutil.rmtree"})

WRITE_FLAGS = os.O_WRONLY | os.O_RDWR | os.O_CREAT | os.O_APPEND | os.O_TRUNC

_POLICY: ContextVar[Optional["AuditPolicy"]] = ContextVar("pysandbox_audit_policy", default=None)
_install_lock = threading.Lock()
_installed = False
_reentry = threading.local()


def default_read_roots(extra: Iterable[Path] = ()) -> Tuple[Path, ...]:
    """Directories the interpreter itself must read to import libraries."""
    candidates = [sys.prefix, sys.base_prefix, sys.exec_prefix, "/usr/share/zoneinfo"]
    candidates.extend(sysconfig.get_paths().values())
    try:
        candidates.extend(site.getsitepackages())
    except AttributeError:
        pass
    user_site = site.getusersitepackages() if site.ENABLE_USER_SITE else None
    if user_site:
        candidates.append(user_site)
    candidates.extend(str(path) for path in extra)
    roots = []
    for candidate in candidates:
        real = Path(os.path.realpath(candidate))
        if real != Path(real.anchor) and real not in roots:
            roots.append(real)
    return tuple(roots)


def _within(path: str, root: Path) -> bool:
    root_text = str(root)
    return path == root_text or path.startswith(root_text.rstrip("/") + "/")


class AuditPolicy:
    def __init__(self, workspace_root: Path, read_roots: Iterable[Path] = ()) -> None:
        self.workspace_root = Path(os.path.realpath(workspace_root))
        self.read_roots = tuple(read_roots)

    def check(self, event: str, args: Tuple[Any, ...]) -> None:
        if event in DENIED_EVENTS or event.startswith(DENIED_PREFIXES):
            self._deny(event, f"{event} is not permitted in the sandbox")
        if event == "open":
            self._check_open(args)
            return
        spec = PATH_EVENTS.get(event)
        if spec is None:
            return
        if event == "sqlite3.connect" and args and args[0] in (":memory:", b":memory:", ""):
            return
        reads, writes = spec
        link = event in LINK_EVENTS
        for index in reads:
            if index < len(args) and args[index] is not None:
                self._check_read(event, args[index])
        for index in writes:
            if index < len(args):
                self._check_write(event, args[index], link=link)

    def _check_open(self, args: Tuple[Any, ...]) -> None:
        path, mode, flags = (tuple(args) + (None, None, None))[:3]
        if isinstance(path, int):
            return
        if isinstance(mode, str):
            writing = any(flag in mode for flag in "wax+")
        else:
            writing = bool((flags or 0) & WRITE_FLAGS)
        if writing:
            self._check_write("open", path)
        else:
            self._check_read("open", path)

    def _check_read(self, event: str, path: Any) -> None:
        if isinstance(path, int):
            return
        resolved = self._resolve(event, path)
        if resolved in READ_DEVICES or _within(resolved, self.workspace_root):
            return
        if any(_within(resolved, root) for root in self.read_roots):
            return
        self._deny(event, f"{event} of '{resolved}' is not permitted in the sandbox")

    def _check_write(self, event: str, path: Any, *, link: bool = False) -> None:
        if isinstance(path, int):
            return
        resolved = self._resolve(event, path, link=link)
        if resolved == "/dev/null" or _within(resolved, self.workspace_root):
            return
        self._deny(event, f"{event} of '{resolved}' is not permitted in the sandbox")

    def _resolve(self, event: str, path: Any, *, link: bool = False) -> str:
        if path is None:
            self._deny(event, f"{event} of the current directory is not permitted in the sandbox")
        try:
            text = os.fsdecode(os.fspath(path))
        except TypeError:
            self._deny(event, f"{event} with a non-path argument is not permitted in the sandbox")
        if not os.path.isabs(text):
            self._deny(event, f"{event} of relative path '{text}' is not permitted in the sandbox")
        if link:
            parent, name = os.path.split(os.path.normpath(text))
            return os.path.join(os.path.realpath(parent), name)
        return os.path.realpath(text)

    def _deny(self, event: str, message: str) -> None:
        logger.warning(f"Sandbox audit hook blocked {event}")
        raise PermissionError(message)


def _audit_hook(event: str, args: Tuple[Any, ...]) -> None:
    policy = _POLICY.get()
    if policy is None or getattr(_reentry, "active", False):
        return
    _reentry.active = True
    try:
        policy.check(event, args)
    finally:
        _reentry.active = False


def install_audit_hook() -> None:
    global _installed
    with _install_lock:
        if _installed:
            return
        sys.addaudithook(_audit_hook)
        _installed = True
        logger.info("Sandbox audit hook installed")


def activate(policy: AuditPolicy) -> None:
    """Bind ``policy`` to the current context. Call inside ``Context.run``."""
    _POLICY.set(policy)
