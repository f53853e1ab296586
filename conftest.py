import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent

PYTHON_PATHS = [
    ROOT / "apps" / "heimdall-api",
    ROOT / "packages" / "protocol",
    ROOT / "packages" / "workspace",
    ROOT / "packages" / "runtime",
    ROOT / "packages" / "pysandbox",
    ROOT / "packages" / "shellemu",
]

for path in PYTHON_PATHS:
    sys.path.insert(0, str(path))
