from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional

from protocol.execution import ExecutionRequest, ExecutionResult, Language, PackageInstallOutcome, ShellResult
from protocol.workspace import FileEntry, WorkspaceTreeNode
from runtime.config import SandboxConfig
from runtime.lane_queue import LaneQueue
from runtime.package_fetch import PackageFetcher, PyPIWheelFetcher
from runtime.python_controller import PythonExecutionController
from runtime.shell_controller import ShellExecutionController
from workspace.bridge import WorkspaceFS

logger = logging.getLogger(__name__)

PYTHON_LANE = "python"
SHELL_LANE = "shell"


@dataclass
class Session:
    fs: WorkspaceFS
    python: PythonExecutionController
    shell: ShellExecutionController


class SandboxCoordinator:
    """Single entry point for a sandbox session.

    Python and shell work run on separate lanes of a ``LaneQueue``: calls for
    one language are handled one at a time in arrival order. File operations
    go straight to the workspace bridge and raise ``SandboxError`` subclasses.
    """

    def __init__(self, config: Optional[SandboxConfig] = None, *, fetcher: Optional[PackageFetcher] = None) -> None:
        self.config = config or SandboxConfig()
        fs = WorkspaceFS(self.config.workspace_root)
        limits = self.config.limits
        python = PythonExecutionController(
            fs,
            limits,
            site_dir=self.config.site_packages_dir,
            fetcher=fetcher or PyPIWheelFetcher(self.config.package_index_url),
            allow_package_install=self.config.allow_package_install,
        )
        self.session = Session(fs=fs, python=python, shell=ShellExecutionController(fs, limits))
        self._queue = LaneQueue(max_concurrency=2)
        logger.info(f"Sandbox session opened on {fs.root}")

    @property
    def fs(self) -> WorkspaceFS:
        return self.session.fs

    async def execute(self, request: ExecutionRequest) -> ExecutionResult:
        if request.language == Language.SHELL:
            shell_result = await self.execute_shell(request.code, request.options.cwd)
            return shell_result.to_execution_result()
        return await self.execute_python(request.code, request.options.packages)

    async def execute_python(self, code: str, packages: Optional[Iterable[str]] = None) -> ExecutionResult:
        requested = list(packages or ())
        return await self._queue.submit(PYTHON_LANE, lambda: self.session.python.execute(code, requested))

    async def install_packages(self, packages: Iterable[str]) -> List[PackageInstallOutcome]:
        requested = list(packages)
        return await self._queue.submit(PYTHON_LANE, lambda: self.session.python.install_packages(requested))

    async def execute_shell(self, command: str, cwd: Optional[str] = None) -> ShellResult:
        return await self._queue.submit(SHELL_LANE, lambda: self.session.shell.execute(command, cwd))

    def write_file(self, path: str, content: str) -> None:
        self.fs.write_text(path, content, create_parents=True)

    def read_file(self, path: str) -> str:
        return self.fs.read_text(path)

    def list_files(self, path: Optional[str] = None) -> List[FileEntry]:
        return self.fs.list_dir(path or "")

    def delete_file(self, path: str) -> None:
        self.fs.delete(path)

    def file_tree(self, path: Optional[str] = None, max_depth: Optional[int] = None) -> WorkspaceTreeNode:
        return self.fs.tree(path or "", max_depth=max_depth)

    async def aclose(self) -> None:
        await self._queue.close()
        self.session.python.dispose()
        self.session.shell.dispose()
        logger.info("Sandbox session closed")

    async def __aenter__(self) -> "SandboxCoordinator":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()
