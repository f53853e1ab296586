"""Error taxonomy shared by the bridge, the controllers and the HTTP adapter.

Every error carries a stable ``code`` and a human readable ``message``;
``to_reason()`` is the structured form returned to callers.
"""
from __future__ import annotations


class SandboxError(Exception):
    code: str = "SANDBOX_ERROR"
    http_status: int = 500

    def __init__(self, message: str, code: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code

    def to_reason(self) -> dict:
        return {"code": self.code, "message": self.message}


class SecurityViolation(SandboxError):
    """A path resolved (lexically or through a symlink) outside the workspace."""

    code = "SECURITY_VIOLATION"
    http_status = 403

    def __init__(self, path: str, reason: str = "resolves outside the workspace") -> None:
        super().__init__(f"security violation: path '{path}' {reason}")
        self.path = path
        self.reason = reason


class FilesystemError(SandboxError):
    code = "FILESYSTEM_ERROR"
    http_status = 400

    def __init__(self, message: str, path: str | None = None, code: str | None = None) -> None:
        super().__init__(message, code)
        self.path = path


class FileNotFoundInWorkspace(FilesystemError):
    code = "FILE_NOT_FOUND"
    http_status = 404


class DirectoryNotEmpty(FilesystemError):
    code = "DIRECTORY_NOT_EMPTY"
    http_status = 409


class ExecutionTimeout(SandboxError):
    code = "EXECUTION_TIMEOUT"
    http_status = 408

    def __init__(self, timeout_ms: int) -> None:
        super().__init__(f"Execution timed out after {timeout_ms}ms")
        self.timeout_ms = timeout_ms


class ResourceLimitExceeded(SandboxError):
    """A shell circuit breaker (loop iterations or command count) tripped."""

    code = "RESOURCE_LIMIT_EXCEEDED"
    http_status = 429

    def __init__(self, limit: str, value: int) -> None:
        super().__init__(f"{limit} exceeded (limit {value})")
        self.limit = limit
        self.value = value


class InterpreterError(SandboxError):
    code = "INTERPRETER_ERROR"


class PackageInstallError(SandboxError):
    code = "PACKAGE_INSTALL_ERROR"
    http_status = 502

    def __init__(self, package: str, reason: str) -> None:
        super().__init__(f"Failed to install '{package}': {reason}")
        self.package = package
        self.reason = reason


class RuntimeInitError(SandboxError):
    """The embedded runtime could not be brought up. Fatal for the session."""

    code = "RUNTIME_INIT_ERROR"
