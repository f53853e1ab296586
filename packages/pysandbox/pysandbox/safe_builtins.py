from __future__ import annotations

import builtins
from typing import Any, Callable, Dict

from pysandbox.errors import SandboxViolation
from pysandbox.validator import FORMAT_METHODS, check_attribute, is_dunder

REMOVED_BUILTINS = frozenset(
    {
        "eval",
        "exec",
        "compile",
        "input",
        "breakpoint",
        "help",
        "vars",
        "exit",
        "quit",
        "copyright",
        "credits",
        "license",
    }
)

# The loader and spec of the builtins module would hand out real modules.
KEPT_DUNDERS = frozenset({"__build_class__", "__name__", "__debug__"})


def _attribute_name(name: Any, *, store: bool = False) -> Any:
    if not isinstance(name, str):
        return name
    # A str subclass could answer the checks below differently from the lookup.
    name = str.__str__(name)
    check_attribute(name, store=store)
    if not store and name in FORMAT_METHODS:
        raise SandboxViolation(f"access to attribute '{name}' is not allowed; use an f-string")
    return name


def safe_getattr(obj: Any, name: Any, *default: Any) -> Any:
    return getattr(obj, _attribute_name(name), *default)


def safe_hasattr(obj: Any, name: Any) -> bool:
    return hasattr(obj, _attribute_name(name))


def safe_setattr(obj: Any, name: Any, value: Any) -> None:
    setattr(obj, _attribute_name(name, store=True), value)


def safe_delattr(obj: Any, name: Any) -> None:
    delattr(obj, _attribute_name(name, store=True))


def build_builtins(
    *,
    open_fn: Callable[..., Any],
    import_fn: Callable[..., Any],
    print_fn: Callable[..., Any],
) -> Dict[str, Any]:
    """The ``__builtins__`` mapping for a sandbox namespace."""
    namespace = {
        name: value
        for name, value in vars(builtins).items()
        if name not in REMOVED_BUILTINS and (not is_dunder(name) or name in KEPT_DUNDERS)
    }
    namespace.update(
        {
            "getattr": safe_getattr,
            "hasattr": safe_hasattr,
            "setattr": safe_setattr,
            "delattr": safe_delattr,
            "open": open_fn,
            "__import__": import_fn,
            "print": print_fn,
        }
    )
    return namespace
