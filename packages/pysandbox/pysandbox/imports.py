"""The ``__import__`` used by sandboxed code, and the proxies it hands out.

Modules reach user code only as ``ModuleProxy`` objects: private names are
hidden, attributes cannot be set, and any module reachable through an
attribute goes through the same allow/deny check as an import statement.
"""
from __future__ import annotations

import importlib
import logging
import sys
import types
from typing import Any, Callable, Dict, FrozenSet, Iterable, Mapping, Optional

logger = logging.getLogger(__name__)

ALLOWED_STDLIB = frozenset(
    {
        "__future__",
        "math",
        "cmath",
        "json",
        "re",
        "datetime",
        "zoneinfo",
        "collections",
        "itertools",
        "functools",
        "typing",
        "random",
        "string",
        "copy",
        "hashlib",
        "hmac",
        "base64",
        "binascii",
        "decimal",
        "fractions",
        "statistics",
        "textwrap",
        "time",
        "asyncio",
        "csv",
        "io",
        "enum",
        "dataclasses",
        "heapq",
        "bisect",
        "array",
        "struct",
        "difflib",
        "pprint",
        "calendar",
        "zlib",
        "gzip",
        "html",
        "unicodedata",
        "abc",
        "numbers",
        "contextlib",
        "secrets",
        "warnings",
        "uuid",
    }
)

# Packages whose submodules are never importable on their own.
LEAF_ONLY = frozenset({"asyncio", "io", "time", "typing", "random", "uuid"})

DENIED_MODULES = frozenset(
    {
        "subprocess",
        "socket",
        "socketserver",
        "ssl",
        "select",
        "selectors",
        "ctypes",
        "cffi",
        "sys",
        "importlib",
        "imp",
        "pkgutil",
        "runpy",
        "inspect",
        "gc",
        "pickle",
        "cPickle",
        "dill",
        "cloudpickle",
        "marshal",
        "shelve",
        "types",
        "code",
        "codeop",
        "threading",
        "_thread",
        "multiprocessing",
        "concurrent",
        "contextvars",
        "signal",
        "pty",
        "tty",
        "termios",
        "fcntl",
        "resource",
        "mmap",
        "shutil",
        "pathlib",
        "glob",
        "tempfile",
        "http",
        "urllib",
        "urllib3",
        "ftplib",
        "smtplib",
        "telnetlib",
        "xmlrpc",
        "webbrowser",
        "requests",
        "httpx",
        "httpcore",
        "aiohttp",
        "websockets",
        "operator",
        "builtins",
        "posix",
        "nt",
        "site",
        "sysconfig",
        "platform",
        "traceback",
        "linecache",
        "pip",
        "setuptools",
        "pkg_resources",
        "distutils",
        "pytest",
        "fastapi",
        "starlette",
        "uvicorn",
        "anyio",
        "protocol",
        "workspace",
        "runtime",
        "pysandbox",
        "shellemu",
        "app",
    }
)

# Attributes removed from specific allowed modules.
HIDDEN_ATTRIBUTES: Dict[str, FrozenSet[str]] = {
    "io": frozenset({"open", "open_code", "FileIO", "BufferedReader", "BufferedWriter", "BufferedRandom"}),
    "string": frozenset({"Formatter"}),
    "typing": frozenset({"get_type_hints", "ForwardRef", "evaluate_forward_ref"}),
    "asyncio": frozenset(
        {
            "run",
            "Runner",
            "run_coroutine_threadsafe",
            "get_event_loop",
            "get_running_loop",
            "new_event_loop",
            "set_event_loop",
            "get_event_loop_policy",
            "set_event_loop_policy",
            "DefaultEventLoopPolicy",
            "AbstractEventLoopPolicy",
            "AbstractEventLoop",
            "BaseEventLoop",
            "SelectorEventLoop",
            "EventLoop",
            "to_thread",
            "all_tasks",
            "create_subprocess_exec",
            "create_subprocess_shell",
            "open_connection",
            "start_server",
            "open_unix_connection",
            "start_unix_server",
            "subprocess",
            "events",
            "base_events",
            "runners",
            "streams",
            "unix_events",
            "selector_events",
            "threads",
            "Handle",
            "TimerHandle",
            "StreamReader",
            "StreamWriter",
            "StreamReaderProtocol",
            "AbstractServer",
            "Server",
        }
    ),
}

PROXY_DUNDERS = frozenset({"__name__", "__doc__", "__version__"})


def _is_stdlib(top: str) -> bool:
    return top in sys.stdlib_module_names or top in sys.builtin_module_names


def import_denied(name: str) -> Optional[str]:
    """Reason ``name`` may not be imported from the sandbox, or None."""
    parts = name.split(".")
    top = parts[0]
    if name in ALLOWED_STDLIB:
        return None
    if any(part in DENIED_MODULES for part in parts):
        return f"import of '{name}' is not allowed in the sandbox"
    if any(part.startswith("_") for part in parts):
        return f"import of private module '{name}' is not allowed in the sandbox"
    if _is_stdlib(top):
        if top not in ALLOWED_STDLIB or (len(parts) > 1 and top in LEAF_ONLY):
            return f"import of '{name}' is not allowed in the sandbox"
    return None


class ModuleProxy:
    """Read-only view of a module for sandboxed code."""

    __slots__ = ("_module", "_guard", "_overrides", "_hidden")

    def __init__(
        self,
        module: types.ModuleType,
        guard: "ImportGuard",
        overrides: Optional[Mapping[str, Any]] = None,
        hidden: Iterable[str] = (),
    ) -> None:
        object.__setattr__(self, "_module", module)
        object.__setattr__(self, "_guard", guard)
        object.__setattr__(self, "_overrides", dict(overrides or {}))
        object.__setattr__(self, "_hidden", frozenset(hidden))

    def __getattribute__(self, name: str) -> Any:
        module = object.__getattribute__(self, "_module")
        guard = object.__getattribute__(self, "_guard")
        overrides = object.__getattribute__(self, "_overrides")
        hidden = object.__getattribute__(self, "_hidden")
        module_name = module.__name__
        if name == "__all__":
            return _public_names(module, overrides, hidden)
        if name in PROXY_DUNDERS:
            return getattr(module, name)
        if name.startswith("_") or name in hidden:
            raise _not_available(module_name, name)
        if name in overrides:
            return overrides[name]
        try:
            value = getattr(module, name)
        except AttributeError:
            submodule = sys.modules.get(f"{module_name}.{name}")
            if submodule is None:
                raise AttributeError(f"module '{module_name}' has no attribute '{name}'") from None
            value = submodule
        if isinstance(value, types.ModuleType):
            return guard.wrap(value)
        return value

    def __setattr__(self, name: str, value: Any) -> None:
        module = object.__getattribute__(self, "_module")
        raise AttributeError(f"module '{module.__name__}' is read-only in the sandbox")

    def __delattr__(self, name: str) -> None:
        module = object.__getattribute__(self, "_module")
        raise AttributeError(f"module '{module.__name__}' is read-only in the sandbox")

    def __dir__(self):
        module = object.__getattribute__(self, "_module")
        overrides = object.__getattribute__(self, "_overrides")
        hidden = object.__getattribute__(self, "_hidden")
        return sorted(_public_names(module, overrides, hidden))

    def __repr__(self) -> str:
        module = object.__getattribute__(self, "_module")
        return f"<module '{module.__name__}' (sandboxed)>"


def _public_names(module: types.ModuleType, overrides: Mapping[str, Any], hidden: FrozenSet[str]) -> list:
    exported = getattr(module, "__all__", None)
    names = list(exported) if exported is not None else list(vars(module))
    names.extend(name for name in overrides if name not in names)
    return [name for name in names if not name.startswith("_") and name not in hidden]


def _not_available(module_name: str, name: str) -> Exception:
    # A submodule that is already loaded must not be reachable through the
    # interpreter's ``from pkg import sub`` fallback to sys.modules.
    if f"{module_name}.{name}" in sys.modules:
        return ImportError(f"'{module_name}.{name}' is not available in the sandbox")
    return AttributeError(f"module '{module_name}' has no attribute '{name}'")


class ImportGuard:
    """Session-scoped import policy.

    ``os`` and ``os.path`` resolve to the workspace facades; every other
    allowed module is imported normally and wrapped in a cached proxy.
    """

    def __init__(
        self,
        os_module: types.ModuleType,
        overrides: Optional[Mapping[str, Mapping[str, Any]]] = None,
        importer: Callable[[str], types.ModuleType] = importlib.import_module,
    ) -> None:
        self._os = os_module
        self._overrides = {name: dict(values) for name, values in (overrides or {}).items()}
        self._importer = importer
        self._proxies: Dict[str, ModuleProxy] = {}

    def wrap(self, module: types.ModuleType) -> ModuleProxy:
        name = module.__name__
        if module is self._os or name == "os":
            return self._proxy("os", self._os)
        if module is self._os.path or name in ("os.path", "posixpath", "ntpath"):
            return self._proxy("os.path", self._os.path)
        reason = import_denied(name)
        if reason is not None:
            raise ImportError(reason)
        return self._proxy(name, module)

    def _proxy(self, name: str, module: types.ModuleType) -> ModuleProxy:
        proxy = self._proxies.get(name)
        if proxy is None:
            proxy = ModuleProxy(
                module,
                self,
                overrides=self._overrides.get(name),
                hidden=HIDDEN_ATTRIBUTES.get(name, ()),
            )
            self._proxies[name] = proxy
        return proxy

    def __call__(self, name, globals=None, locals=None, fromlist=(), level=0):
        if level:
            raise ImportError("relative imports are not supported in the sandbox")
        if name == "os" or name == "os.path":
            if fromlist and name == "os.path":
                return self._proxy("os.path", self._os.path)
            return self._proxy("os", self._os)
        reason = import_denied(name)
        if reason is not None:
            logger.warning(f"Blocked sandbox import: {name}")
            raise ImportError(reason, name=name)
        module = self._importer(name)
        if fromlist:
            return self.wrap(module)
        return self.wrap(sys.modules[name.partition(".")[0]])
