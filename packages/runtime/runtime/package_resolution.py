"""Work out which distributions a snippet needs before it runs."""
from __future__ import annotations

import ast
import importlib.util
import re
import sys
from typing import Callable, Iterable, List, Optional, Set, Tuple

# Import name -> distribution name, where the two differ.
IMPORT_TO_DISTRIBUTION = {
    "sklearn": "scikit-learn",
    "skimage": "scikit-image",
    "PIL": "Pillow",
    "cv2": "opencv-python",
    "yaml": "PyYAML",
    "bs4": "beautifulsoup4",
    "dateutil": "python-dateutil",
    "attr": "attrs",
    "Crypto": "pycryptodome",
    "dotenv": "python-dotenv",
    "jwt": "PyJWT",
    "docx": "python-docx",
    "magic": "python-magic",
    "serial": "pyserial",
}

REQUIREMENT_RE = re.compile(r"^\s*([A-Za-z0-9][A-Za-z0-9._-]*)\s*(?:(==)\s*([A-Za-z0-9.+!_-]+))?\s*$")


def canonical_name(name: str) -> str:
    """PEP 503 normalization: case-folded, runs of ``-_.`` become ``-``."""
    return re.sub(r"[-_.]+", "-", name).lower()


def parse_requirement(requirement: str) -> Tuple[str, Optional[str]]:
    """Split ``name`` or ``name==version`` into ``(name, version | None)``."""
    match = REQUIREMENT_RE.match(requirement)
    if not match:
        raise ValueError(f"Unsupported requirement: {requirement!r}")
    return match.group(1), match.group(3)


def requirement_name(requirement: str) -> str:
    return parse_requirement(requirement)[0]


def imported_modules(code: str) -> List[str]:
    """Top-level module names imported by ``code``, in first-seen order.

    Relative imports are skipped. Code that does not parse yields nothing;
    the syntax error is reported when the code is executed.
    """
    try:
        tree = ast.parse(code)
    except SyntaxError:
        return []
    seen: List[str] = []
    for node in ast.walk(tree):
        if isinstance(node, ast.Import):
            names = [alias.name for alias in node.names]
        elif isinstance(node, ast.ImportFrom):
            if node.level or not node.module:
                continue
            names = [node.module]
        else:
            continue
        for name in names:
            top = name.split(".")[0]
            if top not in seen:
                seen.append(top)
    return seen


def is_stdlib(module: str) -> bool:
    return module in sys.stdlib_module_names or module in sys.builtin_module_names


def host_importable(module: str) -> bool:
    try:
        return importlib.util.find_spec(module) is not None
    except (ImportError, ValueError):
        return False


def resolve_packages(
    code: str,
    installed: Iterable[str] = (),
    explicit: Iterable[str] = (),
    is_available: Optional[Callable[[str], bool]] = None,
) -> List[str]:
    """Distributions to install before running ``code``.

    Explicit requirements come first, in the order given, followed by
    distributions inferred from imports. Stdlib modules, names already
    installed in the session and modules ``is_available`` reports as
    importable are dropped; duplicates are removed by canonical name.
    """
    available = host_importable if is_available is None else is_available
    installed_names: Set[str] = {canonical_name(name) for name in installed}
    chosen: List[str] = []
    chosen_names: Set[str] = set()

    def add(requirement: str) -> None:
        try:
            key = canonical_name(requirement_name(requirement))
        except ValueError:
            # Left for the installer to report as a failed outcome.
            key = requirement.strip()
        if key in chosen_names:
            return
        chosen_names.add(key)
        chosen.append(requirement.strip())

    for requirement in explicit:
        if not requirement or not requirement.strip():
            continue
        add(requirement)

    for module in imported_modules(code):
        if is_stdlib(module):
            continue
        distribution = IMPORT_TO_DISTRIBUTION.get(module, module)
        if canonical_name(distribution) in installed_names or available(module):
            continue
        add(distribution)
    return chosen
