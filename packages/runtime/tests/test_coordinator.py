import asyncio
from pathlib import Path
from typing import List, Set

import pytest

from protocol.errors import DirectoryNotEmpty, FileNotFoundInWorkspace, SecurityViolation
from protocol.execution import ExecutionOptions, ExecutionRequest, Language
from runtime.config import SandboxConfig
from runtime.coordinator import SandboxCoordinator
from runtime.package_resolution import canonical_name
from runtime.policy import ResourceLimitPolicy


class RecordingFetcher:
    def __init__(self) -> None:
        self.calls: List[str] = []

    async def install(self, requirement: str, target: Path, installed: Set[str]) -> List[str]:
        self.calls.append(requirement)
        key = canonical_name(requirement)
        installed.add(key)
        return [key]


def make_config(tmp_path, **limits) -> SandboxConfig:
    return SandboxConfig(
        workspace_root=tmp_path / "nested" / "workspace",
        limits=ResourceLimitPolicy(**limits),
        site_packages_dir=tmp_path / "site",
    )


@pytest.fixture
def coordinator(tmp_path):
    coord = SandboxCoordinator(make_config(tmp_path), fetcher=RecordingFetcher())
    yield coord
    coord.session.python.dispose()
    coord.session.shell.dispose()


ESCAPES = ["../outside.txt", "/etc/passwd", "/workspace/../../etc/passwd", "a/../../x"]


class TestFileOperations:
    def test_workspace_root_created_with_parents(self, coordinator, tmp_path):
        assert (tmp_path / "nested" / "workspace").is_dir()

    def test_round_trip(self, coordinator):
        coordinator.write_file("notes/today.txt", "hello")
        assert coordinator.read_file("notes/today.txt") == "hello"
        assert coordinator.read_file("/workspace/notes/today.txt") == "hello"

    def test_listing_is_idempotent(self, coordinator):
        coordinator.write_file("b.txt", "bb")
        coordinator.write_file("a/one.txt", "1")
        first = coordinator.list_files()
        assert [(e.name, e.is_directory) for e in first] == [("a", True), ("b.txt", False)]
        assert coordinator.list_files() == first
        assert coordinator.list_files("/workspace") == first

    def test_tree(self, coordinator):
        coordinator.write_file("src/app.py", "print(1)")
        tree = coordinator.file_tree()
        assert "/workspace/src/app.py" in list(tree.iter_paths())
        assert coordinator.file_tree(max_depth=0).children == []

    def test_delete(self, coordinator):
        coordinator.write_file("dir/file.txt", "x")
        with pytest.raises(DirectoryNotEmpty):
            coordinator.delete_file("dir")
        coordinator.delete_file("dir/file.txt")
        coordinator.delete_file("dir")
        with pytest.raises(FileNotFoundInWorkspace):
            coordinator.read_file("dir/file.txt")

    @pytest.mark.parametrize("path", ESCAPES)
    def test_escapes_rejected(self, coordinator, path):
        with pytest.raises(SecurityViolation):
            coordinator.write_file(path, "owned")
        with pytest.raises(SecurityViolation):
            coordinator.read_file(path)
        with pytest.raises(SecurityViolation):
            coordinator.list_files(path)
        with pytest.raises(SecurityViolation):
            coordinator.delete_file(path)
        with pytest.raises(SecurityViolation):
            coordinator.file_tree(path)

    def test_symlink_from_shell_is_not_followed(self, coordinator):
        async def run_test():
            result = await coordinator.execute_shell("ln -s /etc etc_link")
            assert result.exit_code == 0

        asyncio.run(run_test())
        with pytest.raises(SecurityViolation):
            coordinator.read_file("etc_link/passwd")
        with pytest.raises(SecurityViolation):
            coordinator.list_files("etc_link")
        with pytest.raises(SecurityViolation):
            coordinator.write_file("etc_link/evil", "x")
        assert "etc_link" in [entry.name for entry in coordinator.list_files()]


class TestExecution:
    def test_shell_pipeline(self, coordinator):
        async def run_test():
            request = ExecutionRequest(code="echo 'hello world' | grep world", language=Language.SHELL)
            result = await coordinator.execute(request)
            assert result.success
            assert result.stdout == "hello world\n"
            assert result.exit_code == 0

        asyncio.run(run_test())

    def test_shell_failure(self, coordinator):
        async def run_test():
            result = await coordinator.execute(ExecutionRequest(code="false", language=Language.SHELL))
            assert not result.success
            assert result.exit_code == 1

        asyncio.run(run_test())

    def test_shell_cwd_option(self, coordinator):
        coordinator.write_file("sub/marker.txt", "m")

        async def run_test():
            options = ExecutionOptions(cwd="sub")
            result = await coordinator.execute(ExecutionRequest(code="ls", language=Language.SHELL, options=options))
            assert result.stdout == "marker.txt\n"

        asyncio.run(run_test())

    def test_shell_loop_limit(self, tmp_path):
        async def run_test():
            async with SandboxCoordinator(make_config(tmp_path, max_loop_iterations=50)) as coord:
                result = await coord.execute_shell("while true; do :; done")
                assert result.exit_code == 126
                assert "maxLoopIterations" in result.stderr

        asyncio.run(run_test())

    def test_python_sum(self, coordinator):
        async def run_test():
            result = await coordinator.execute(ExecutionRequest(code="sum(range(10))", language=Language.PYTHON))
            assert result.success
            assert result.result == "45"

        asyncio.run(run_test())

    def test_python_timeout(self, tmp_path):
        async def run_test():
            async with SandboxCoordinator(make_config(tmp_path, wall_clock_timeout_ms=150)) as coord:
                result = await coord.execute_python("import asyncio\nawait asyncio.sleep(30)")
                assert not result.success
                assert result.error == "Execution timed out after 150ms"

        asyncio.run(run_test())

    def test_python_sees_shell_files(self, coordinator):
        async def run_test():
            await coordinator.execute_shell("echo shared > shared.txt")
            result = await coordinator.execute_python("open('shared.txt').read()")
            assert result.result == "'shared\\n'"

        asyncio.run(run_test())

    def test_install_is_idempotent(self, coordinator):
        async def run_test():
            first = await coordinator.install_packages(["fancy-widgets"])
            second = await coordinator.install_packages(["fancy-widgets"])
            assert first[0].success and second[0].success

        asyncio.run(run_test())
        assert coordinator.session.python._fetcher.calls == ["fancy-widgets"]

    def test_healthy_after_escape(self, coordinator):
        async def run_test():
            escape = await coordinator.execute_python("import subprocess")
            assert not escape.success
            shell = await coordinator.execute_shell("cat /etc/passwd")
            assert shell.exit_code != 0
            result = await coordinator.execute_python("print('Server is healthy: 42')")
            assert result.stdout == "Server is healthy: 42\n"

        asyncio.run(run_test())

    def test_same_language_calls_run_in_order(self, coordinator):
        async def run_test():
            await coordinator.execute_python("log = []")
            first = coordinator.execute_python("import asyncio\nawait asyncio.sleep(0.05)\nlog.append('first')")
            second = coordinator.execute_python("log.append('second')\nlog")
            _, result = await asyncio.gather(first, second)
            assert result.result == "['first', 'second']"

        asyncio.run(run_test())


def test_closed_coordinator_rejects_work(tmp_path):
    async def run_test():
        coord = SandboxCoordinator(make_config(tmp_path))
        await coord.aclose()
        with pytest.raises(Exception, match="closed"):
            await coord.execute_shell("echo hi")

    asyncio.run(run_test())
