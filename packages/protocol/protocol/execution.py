from __future__ import annotations

from enum import Enum
from typing import List, Optional

from pydantic import Field

from protocol.base import BaseModel, FrozenModel


class Language(str, Enum):
    PYTHON = "python"
    SHELL = "shell"


class ExecutionOptions(FrozenModel):
    packages: List[str] = Field(default_factory=list)
    cwd: Optional[str] = None


class ExecutionRequest(FrozenModel):
    """One unit of work submitted by a caller. Immutable once built."""

    code: str
    language: Language
    options: ExecutionOptions = Field(default_factory=ExecutionOptions)


class ExecutionResult(BaseModel):
    """Outcome of one request.

    ``result`` is the repr of the final expression for Python code and is
    absent for shell commands. ``exit_code`` is only set for shell commands.
    """

    success: bool
    stdout: str = ""
    stderr: str = ""
    result: Optional[str] = None
    error: Optional[str] = None
    exit_code: Optional[int] = None

    @classmethod
    def failure(cls, error: str, *, stdout: str = "", stderr: str = "") -> "ExecutionResult":
        return cls(success=False, stdout=stdout, stderr=stderr, error=error)


class ShellResult(BaseModel):
    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def success(self) -> bool:
        return self.exit_code == 0

    def to_execution_result(self) -> ExecutionResult:
        return ExecutionResult(
            success=self.success,
            stdout=self.stdout,
            stderr=self.stderr,
            exit_code=self.exit_code,
            error=None if self.success else f"Command exited with code {self.exit_code}",
        )


class PackageInstallOutcome(BaseModel):
    package: str
    success: bool
    error: Optional[str] = None
