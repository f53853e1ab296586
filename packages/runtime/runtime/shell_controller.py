from __future__ import annotations

import logging
from typing import Optional

from protocol.errors import InterpreterError, SandboxError
from protocol.execution import ShellResult
from runtime.policy import ResourceLimitPolicy, truncate_output
from shellemu import ExecutionLimits, ShellInterpreter
from workspace.bridge import WorkspaceFS

logger = logging.getLogger(__name__)


class ShellExecutionController:
    """Runs shell scripts against one persistent interpreter.

    Variables, functions and the working directory carry over between calls.
    A per-call ``cwd`` scopes a single call and never moves the session
    directory.
    """

    def __init__(self, fs: WorkspaceFS, policy: Optional[ResourceLimitPolicy] = None) -> None:
        self._fs = fs
        self._policy = policy or ResourceLimitPolicy()
        self._interpreter: Optional[ShellInterpreter] = None

    @property
    def initialized(self) -> bool:
        return self._interpreter is not None

    @property
    def cwd(self) -> str:
        return self._ensure_interpreter().cwd

    def _ensure_interpreter(self) -> ShellInterpreter:
        if self._interpreter is None:
            self._interpreter = ShellInterpreter(self._fs)
            logger.info(f"Shell interpreter started (workspace {self._fs.root})")
        return self._interpreter

    def execute(self, command: str, cwd: Optional[str] = None) -> ShellResult:
        interpreter = self._ensure_interpreter()
        policy = self._policy
        if cwd is not None:
            failure = self._check_cwd(cwd, interpreter.cwd)
            if failure is not None:
                return failure
        limits = ExecutionLimits(
            max_loop_iterations=policy.max_loop_iterations,
            max_command_count=policy.max_command_count,
            max_output_bytes=policy.max_output_bytes,
        )
        logger.debug(f"Running shell command ({len(command)} chars) in {cwd or interpreter.cwd}")
        try:
            outcome = interpreter.run(command, cwd=cwd, limits=limits)
        except Exception as exc:
            logger.exception("Shell interpreter failed")
            error = InterpreterError(f"{type(exc).__name__}: {exc}" if str(exc) else type(exc).__name__)
            return ShellResult(exit_code=1, stderr=f"bash: internal error: {error.message}\n")
        if outcome.limit_exceeded is not None:
            logger.warning(f"Shell circuit breaker tripped: {outcome.limit_exceeded}")
        return ShellResult(
            exit_code=outcome.exit_code,
            stdout=truncate_output(outcome.stdout, policy.max_output_bytes),
            stderr=truncate_output(outcome.stderr, policy.max_output_bytes),
        )

    def _check_cwd(self, cwd: str, session_cwd: str) -> Optional[ShellResult]:
        try:
            is_dir = self._fs.is_dir(cwd, session_cwd)
        except SandboxError as exc:
            logger.warning(f"Rejected shell cwd {cwd!r}: {exc.message}")
            return ShellResult(exit_code=1, stderr=f"cd: {cwd}: {exc.message}\n")
        if not is_dir:
            return ShellResult(exit_code=1, stderr=f"cd: {cwd}: No such file or directory\n")
        return None

    def dispose(self) -> None:
        if self._interpreter is not None:
            logger.info("Shell interpreter disposed")
        self._interpreter = None
