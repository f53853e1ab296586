from __future__ import annotations

import importlib
import logging
from enum import Enum
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Set

from protocol.errors import ExecutionTimeout, InterpreterError, PackageInstallError, RuntimeInitError
from protocol.execution import ExecutionResult, PackageInstallOutcome
from pysandbox import PythonRuntime
from runtime.interrupt import InterruptSignal
from runtime.package_fetch import PackageFetcher, PyPIWheelFetcher
from runtime.package_resolution import canonical_name, host_importable, parse_requirement, resolve_packages
from runtime.policy import ResourceLimitPolicy, truncate_output
from workspace.bridge import WorkspaceFS

logger = logging.getLogger(__name__)


class ControllerState(str, Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"
    EXECUTING = "executing"
    DISPOSED = "disposed"


class PythonExecutionController:
    """Owns the session's embedded Python runtime and its installed packages.

    Not reentrant: callers serialize ``execute`` and ``install_packages``
    (the coordinator runs both on one lane).
    """

    def __init__(
        self,
        fs: WorkspaceFS,
        policy: Optional[ResourceLimitPolicy] = None,
        *,
        site_dir: Optional[Path] = None,
        fetcher: Optional[PackageFetcher] = None,
        allow_package_install: bool = True,
        is_available: Callable[[str], bool] = host_importable,
    ) -> None:
        self._fs = fs
        self._policy = policy or ResourceLimitPolicy()
        self._site_dir = site_dir
        self._fetcher = fetcher or PyPIWheelFetcher()
        self._allow_install = allow_package_install
        self._is_available = is_available
        self._runtime: Optional[PythonRuntime] = None
        self._installed: Set[str] = set()
        self.state = ControllerState.UNINITIALIZED

    @property
    def installed_packages(self) -> List[str]:
        return sorted(self._installed)

    def initialize(self) -> PythonRuntime:
        if self._runtime is not None and self.state in (ControllerState.READY, ControllerState.EXECUTING):
            return self._runtime
        if self.state == ControllerState.DISPOSED:
            raise RuntimeInitError("Python controller has been disposed")
        self.state = ControllerState.INITIALIZING
        runtime = PythonRuntime(self._fs, site_dir=self._site_dir)
        try:
            runtime.start()
        except Exception as exc:
            self.state = ControllerState.UNINITIALIZED
            logger.exception("Python runtime failed to start")
            raise RuntimeInitError(f"Failed to start Python runtime: {exc}") from exc
        self._runtime = runtime
        self.state = ControllerState.READY
        return runtime

    async def execute(self, code: str, packages: Iterable[str] = ()) -> ExecutionResult:
        runtime = self.initialize()
        policy = self._policy

        missing = resolve_packages(code, self._installed, packages, self._is_available)
        if missing:
            for outcome in await self._install(runtime, missing):
                if not outcome.success:
                    logger.warning(f"Continuing without {outcome.package}: {outcome.error}")

        self.state = ControllerState.EXECUTING
        try:
            with InterruptSignal(policy.timeout_seconds) as signal:
                run = await runtime.run(code, signal, max_output_bytes=policy.max_output_bytes)
        except Exception as exc:
            logger.exception("Python runtime failed")
            error = InterpreterError(f"{type(exc).__name__}: {exc}" if str(exc) else type(exc).__name__)
            return ExecutionResult.failure(error.message)
        finally:
            self.state = ControllerState.READY

        stdout = truncate_output(run.stdout, policy.max_output_bytes)
        stderr = truncate_output(run.stderr, policy.max_output_bytes)
        if run.timed_out:
            timeout = ExecutionTimeout(policy.wall_clock_timeout_ms)
            logger.warning(timeout.message)
            return ExecutionResult.failure(timeout.message, stdout=stdout, stderr=stderr)
        if run.error is not None:
            logger.debug(f"Python execution failed: {run.error}")
            return ExecutionResult.failure(run.error, stdout=stdout, stderr=stderr)
        return ExecutionResult(success=True, stdout=stdout, stderr=stderr, result=run.result)

    async def install_packages(self, packages: Iterable[str]) -> List[PackageInstallOutcome]:
        runtime = self.initialize()
        return await self._install(runtime, list(packages))

    async def _install(self, runtime: PythonRuntime, packages: List[str]) -> List[PackageInstallOutcome]:
        outcomes: List[PackageInstallOutcome] = []
        fetched = False
        for requirement in packages:
            requirement = requirement.strip()
            try:
                name, version = parse_requirement(requirement)
            except ValueError as exc:
                outcomes.append(PackageInstallOutcome(package=requirement, success=False, error=str(exc)))
                continue
            key = canonical_name(name)
            if key in self._installed or (version is None and self._is_available(key.replace("-", "_"))):
                outcomes.append(PackageInstallOutcome(package=requirement, success=True))
                continue
            if not self._allow_install:
                outcomes.append(
                    PackageInstallOutcome(package=requirement, success=False, error="package installation is disabled")
                )
                continue
            try:
                new = await self._fetcher.install(requirement, runtime.site_dir, self._installed)
            except PackageInstallError as exc:
                logger.warning(exc.message)
                outcomes.append(PackageInstallOutcome(package=requirement, success=False, error=exc.reason))
                continue
            fetched = fetched or bool(new)
            outcomes.append(PackageInstallOutcome(package=requirement, success=True))
        if fetched:
            importlib.invalidate_caches()
        return outcomes

    def dispose(self) -> None:
        if self._runtime is not None:
            self._runtime.close()
            self._runtime = None
        self._installed.clear()
        self.state = ControllerState.DISPOSED
