import pytest

from runtime.policy import ResourceLimitPolicy
from runtime.shell_controller import ShellExecutionController
from shellemu import ShellInterpreter
from workspace import WorkspaceFS


@pytest.fixture
def fs(tmp_path):
    return WorkspaceFS(tmp_path / "ws")


@pytest.fixture
def controller(fs):
    return ShellExecutionController(fs)


class TestShellExecutionController:
    def test_lazy_interpreter(self, controller):
        assert not controller.initialized
        result = controller.execute("echo 'x' | grep 'x'")
        assert controller.initialized
        assert result.exit_code == 0
        assert result.stdout == "x\n"
        assert result.stderr == ""

    def test_false_is_failure(self, controller):
        result = controller.execute("false")
        assert result.exit_code == 1
        assert not result.success

    def test_state_persists_between_calls(self, controller, fs):
        fs.mkdir("data")
        controller.execute("GREETING=hello; cd data")
        result = controller.execute('echo "$GREETING from $(pwd)"')
        assert result.stdout == "hello from /workspace/data\n"

    def test_cwd_override_does_not_move_session(self, controller, fs):
        fs.mkdir("sub")
        fs.write_text("sub/note.txt", "hi\n")
        assert controller.execute("cat note.txt", cwd="/workspace/sub").stdout == "hi\n"
        assert controller.execute("pwd").stdout == "/workspace\n"

    def test_missing_cwd_override(self, controller):
        result = controller.execute("pwd", cwd="/workspace/nope")
        assert result.exit_code == 1
        assert result.stderr == "cd: /workspace/nope: No such file or directory\n"

    def test_escaping_cwd_override(self, controller):
        result = controller.execute("pwd", cwd="/etc")
        assert result.exit_code == 1
        assert "security violation" in result.stderr

    def test_unbounded_loop_hits_limit(self, fs):
        controller = ShellExecutionController(fs, ResourceLimitPolicy(max_loop_iterations=100))
        result = controller.execute("while true; do :; done")
        assert result.exit_code == 126
        assert "maxLoopIterations exceeded (limit 100)" in result.stderr

    def test_command_count_limit(self, fs):
        controller = ShellExecutionController(fs, ResourceLimitPolicy(max_command_count=5))
        result = controller.execute("for i in 1 2 3 4 5 6 7 8; do echo $i; done")
        assert result.exit_code == 126
        assert "maxCommandCount exceeded (limit 5)" in result.stderr

    def test_session_survives_limit(self, fs):
        controller = ShellExecutionController(fs, ResourceLimitPolicy(max_loop_iterations=10))
        controller.execute("X=kept; while :; do :; done")
        assert controller.execute("echo $X").stdout == "kept\n"

    def test_output_truncated(self, fs):
        controller = ShellExecutionController(fs, ResourceLimitPolicy(max_output_bytes=16))
        result = controller.execute("seq 1 100")
        assert result.stdout.startswith("1\n2\n3\n")
        assert "truncated" in result.stdout

    def test_dispose_drops_state(self, controller):
        controller.execute("X=1")
        controller.dispose()
        assert not controller.initialized
        assert controller.execute("echo ${X:-unset}").stdout == "unset\n"

    def test_interpreter_fault_becomes_failure(self, controller, monkeypatch):
        def broken_run(self, command, **kwargs):
            raise RecursionError("maximum recursion depth exceeded")

        controller.execute("X=kept")
        monkeypatch.setattr(ShellInterpreter, "run", broken_run)
        result = controller.execute("echo hi")
        assert result.exit_code == 1
        assert result.stderr == "bash: internal error: RecursionError: maximum recursion depth exceeded\n"
        monkeypatch.undo()
        assert controller.execute("echo $X").stdout == "kept\n"
