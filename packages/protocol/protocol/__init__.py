from protocol.errors import (
    DirectoryNotEmpty,
    ExecutionTimeout,
    FileNotFoundInWorkspace,
    FilesystemError,
    InterpreterError,
    PackageInstallError,
    ResourceLimitExceeded,
    RuntimeInitError,
    SandboxError,
    SecurityViolation,
)
from protocol.execution import (
    ExecutionOptions,
    ExecutionRequest,
    ExecutionResult,
    Language,
    PackageInstallOutcome,
    ShellResult,
)
from protocol.workspace import FileEntry, WorkspaceTreeNode


def schema_for(model: type) -> dict:
    """Lightweight JSON schema helper."""
    return model.model_json_schema()


__all__ = [
    "DirectoryNotEmpty",
    "ExecutionOptions",
    "ExecutionRequest",
    "ExecutionResult",
    "ExecutionTimeout",
    "FileEntry",
    "FileNotFoundInWorkspace",
    "FilesystemError",
    "InterpreterError",
    "Language",
    "PackageInstallError",
    "PackageInstallOutcome",
    "ResourceLimitExceeded",
    "RuntimeInitError",
    "SandboxError",
    "SecurityViolation",
    "ShellResult",
    "WorkspaceTreeNode",
    "schema_for",
]
