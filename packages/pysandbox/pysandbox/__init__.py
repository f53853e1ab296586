from pysandbox.errors import ExecutionInterrupted, SandboxViolation
from pysandbox.imports import ImportGuard, ModuleProxy, import_denied
from pysandbox.runtime import PythonRuntime, RunResult
from pysandbox.validator import CodeValidator

__all__ = [
    "CodeValidator",
    "ExecutionInterrupted",
    "ImportGuard",
    "ModuleProxy",
    "PythonRuntime",
    "RunResult",
    "SandboxViolation",
    "import_denied",
]
