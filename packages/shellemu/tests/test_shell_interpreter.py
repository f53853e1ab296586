import pytest

from shellemu import LIMIT_EXIT_CODE, ExecutionLimits, ShellInterpreter
from workspace import WorkspaceFS


@pytest.fixture
def fs(tmp_path):
    return WorkspaceFS(tmp_path / "ws")


@pytest.fixture
def shell(fs):
    return ShellInterpreter(fs)


def out(shell, script, **kwargs):
    outcome = shell.run(script, **kwargs)
    assert outcome.exit_code == 0, outcome.stderr
    return outcome.stdout


class TestBasics:
    def test_echo(self, shell):
        assert out(shell, "echo hello world") == "hello world\n"

    def test_variables_and_quotes(self, shell):
        assert out(shell, 'name=sandbox; echo "hi $name" \'$name\'') == "hi sandbox $name\n"

    def test_exit_status_variable(self, shell):
        assert out(shell, "false; echo $?") == "1\n"

    def test_and_or_lists(self, shell):
        assert out(shell, "true && echo yes || echo no") == "yes\n"
        assert out(shell, "false && echo yes || echo no") == "no\n"

    def test_failing_command_is_contained(self, shell):
        def explode(ctx, args):
            raise MemoryError

        shell.commands["explode"] = explode
        outcome = shell.run("explode; echo after $?")
        assert outcome.stdout == "after 1\n"
        assert outcome.stderr == "explode: MemoryError\n"

    def test_command_not_found(self, shell):
        outcome = shell.run("no_such_tool --flag")
        assert outcome.exit_code == 127
        assert "no_such_tool: command not found" in outcome.stderr

    def test_exit_stops_script(self, shell):
        outcome = shell.run("echo a; exit 3; echo b")
        assert outcome.exit_code == 3
        assert outcome.stdout == "a\n"

    def test_syntax_error_exit_code(self, shell):
        outcome = shell.run("if true; then echo")
        assert outcome.exit_code == 2
        assert outcome.stderr.startswith("bash: ")

    def test_errexit(self, shell):
        outcome = shell.run("set -e; false; echo after")
        assert outcome.exit_code == 1
        assert outcome.stdout == ""

    def test_errexit_ignores_conditions(self, shell):
        assert out(shell, "set -e; if false; then :; fi; false || true; echo ok") == "ok\n"

    def test_pipefail(self, shell):
        assert shell.run("false | true").exit_code == 0
        assert shell.run("set -o pipefail; false | true").exit_code == 1

    def test_negation(self, shell):
        assert shell.run("! false").exit_code == 0
        assert shell.run("! true").exit_code == 1


class TestExpansion:
    def test_command_substitution(self, shell):
        assert out(shell, 'x=$(echo hi); echo "[$x]"') == "[hi]\n"

    def test_backticks(self, shell):
        assert out(shell, "echo `echo tick`") == "tick\n"

    def test_arithmetic(self, shell):
        assert out(shell, "echo $((2 + 3 * 4))") == "14\n"
        assert out(shell, "n=7; echo $((n / 2)) $((n % 4)) $((-7 / 2))") == "3 3 -3\n"

    def test_arithmetic_wraps_to_64_bits(self, shell):
        assert out(shell, "echo $((2**64)) $((1<<64)) $((2**63))") == "0 1 -9223372036854775808\n"
        assert out(shell, "echo $((9223372036854775807 + 1))") == "-9223372036854775808\n"
        assert out(shell, "big=18446744073709551617; echo $((big))") == "1\n"

    def test_arithmetic_huge_operands(self, shell):
        assert out(shell, "echo $((1 << 99999999999))") == "-9223372036854775808\n"
        assert out(shell, "echo $((2 ** 99999999999))") == "0\n"

    def test_arithmetic_too_deep(self, shell):
        outcome = shell.run("echo $((" + "-" * 200000 + "1))")
        assert outcome.exit_code == 1
        assert outcome.stderr.startswith("bash: ")
        assert out(shell, "echo ok") == "ok\n"

    def test_parameter_defaults(self, shell):
        script = 'echo "${missing:-fallback}"; empty=; echo "${empty:-d1}" "${empty-d2}"'
        assert out(shell, script) == "fallback\nd1 \n"

    def test_assign_default(self, shell):
        assert out(shell, 'echo "${v:=set}"; echo $v') == "set\nset\n"

    def test_length_and_trimming(self, shell):
        script = 'f=archive.tar.gz; echo ${#f} ${f%.gz} ${f%%.*} ${f#*.} ${f/tar/zip}'
        assert out(shell, script) == "14 archive.tar archive tar.gz archive.zip.gz\n"

    def test_field_splitting(self, shell):
        assert out(shell, 'list="a b  c"; for w in $list; do echo "<$w>"; done') == "<a>\n<b>\n<c>\n"

    def test_quoted_variable_is_one_field(self, shell):
        assert out(shell, 'list="a b"; for w in "$list"; do echo "<$w>"; done') == "<a b>\n"

    def test_glob_expansion(self, shell, fs):
        for name in ("b.txt", "a.txt", "c.log"):
            fs.write_text(name, "")
        assert out(shell, "echo *.txt") == "a.txt b.txt\n"
        assert out(shell, "echo '*.txt'") == "*.txt\n"
        assert out(shell, "echo *.none") == "*.none\n"

    def test_error_expansion(self, shell):
        outcome = shell.run('echo "${nothing:?is required}"')
        assert outcome.exit_code == 1
        assert "nothing: is required" in outcome.stderr


class TestControlFlow:
    def test_if_else(self, shell):
        script = "x=5; if [ $x -gt 3 ]; then echo big; else echo small; fi"
        assert out(shell, script) == "big\n"

    def test_while_counter(self, shell):
        script = "i=0; while [ $i -lt 3 ]; do i=$((i + 1)); done; echo $i"
        assert out(shell, script) == "3\n"

    def test_until(self, shell):
        assert out(shell, "n=0; until [ $n -ge 2 ]; do echo $n; n=$((n+1)); done") == "0\n1\n"

    def test_break_and_continue(self, shell):
        script = "for i in 1 2 3 4 5; do if [ $i = 2 ]; then continue; fi; if [ $i = 4 ]; then break; fi; echo $i; done"
        assert out(shell, script) == "1\n3\n"

    def test_functions_with_arguments_and_return(self, shell):
        script = 'greet() { echo "hi $1 ($#)"; return 4; }; greet bob extra; echo $?'
        assert out(shell, script) == "hi bob (2)\n4\n"

    def test_local_variables(self, shell):
        script = "x=outer; f() { local x=inner; echo $x; }; f; echo $x"
        assert out(shell, script) == "inner\nouter\n"

    def test_subshell_isolation(self, shell, fs):
        fs.mkdir("sub")
        assert out(shell, '(cd sub; x=1); pwd; echo "${x:-unset}"') == "/workspace\nunset\n"

    def test_while_read_from_pipe(self, shell):
        script = "printf 'a\\nb\\n' | while read line; do echo \"got $line\"; done"
        assert out(shell, script) == "got a\ngot b\n"

    def test_eval_and_bash_c(self, shell):
        assert out(shell, "cmd='echo evaluated'; eval $cmd") == "evaluated\n"
        assert out(shell, "bash -c 'echo nested'") == "nested\n"


class TestRedirection:
    def test_write_and_append(self, shell, fs):
        out(shell, "echo a > f.txt; echo b >> f.txt")
        assert fs.read_text("f.txt") == "a\nb\n"

    def test_truncate_on_redirect(self, shell, fs):
        fs.write_text("f.txt", "old contents\n")
        out(shell, "echo new > f.txt")
        assert fs.read_text("f.txt") == "new\n"

    def test_input_redirect(self, shell, fs):
        fs.write_text("in.txt", "x\ny\n")
        assert out(shell, "wc -l < in.txt") == "2\n"

    def test_stderr_redirects(self, shell, fs):
        outcome = shell.run("cat missing.txt 2> err.txt; echo after")
        assert outcome.stderr == ""
        assert "missing.txt" in fs.read_text("err.txt")
        merged = shell.run("cat missing.txt 2>&1")
        assert "No such file or directory" in merged.stdout
        assert merged.stderr == ""

    def test_echo_to_stderr(self, shell):
        outcome = shell.run("echo oops >&2")
        assert outcome.stdout == ""
        assert outcome.stderr == "oops\n"

    def test_dev_null(self, shell):
        assert out(shell, "echo hidden > /dev/null; cat missing 2>/dev/null; echo shown") == "shown\n"

    def test_heredoc_expands(self, shell):
        script = "NAME=world\ncat <<EOF\nhello $NAME\nEOF\n"
        assert out(shell, script) == "hello world\n"

    def test_quoted_heredoc_is_literal(self, shell):
        script = "NAME=world\ncat <<'EOF'\nhello $NAME\nEOF\n"
        assert out(shell, script) == "hello $NAME\n"

    def test_loop_output_redirect(self, shell, fs):
        out(shell, "for i in 1 2; do echo $i; done > nums.txt")
        assert fs.read_text("nums.txt") == "1\n2\n"


class TestSessionState:
    def test_cd_persists(self, shell, fs):
        fs.mkdir("sub")
        out(shell, "cd sub")
        assert out(shell, "pwd") == "/workspace/sub\n"
        assert shell.cwd == "/workspace/sub"

    def test_cwd_override_is_scoped(self, shell, fs):
        fs.mkdir("sub")
        assert out(shell, "pwd", cwd="/workspace/sub") == "/workspace/sub\n"
        assert shell.cwd == "/workspace"

    def test_exported_variables_persist(self, shell):
        out(shell, "export GREETING=hello")
        assert out(shell, "echo $GREETING; printenv GREETING") == "hello\nhello\n"

    def test_functions_persist(self, shell):
        out(shell, "twice() { echo $1$1; }")
        assert out(shell, "twice ab") == "abab\n"

    def test_cd_missing(self, shell):
        outcome = shell.run("cd nowhere")
        assert outcome.exit_code == 1
        assert "cd: nowhere: No such file or directory" in outcome.stderr

    def test_default_environment(self, shell):
        assert out(shell, "echo $HOME $USER") == "/workspace sandbox\n"


class TestLimits:
    def test_loop_iteration_limit(self, shell):
        limits = ExecutionLimits(max_loop_iterations=50, max_command_count=100_000)
        outcome = shell.run("while true; do :; done", limits=limits)
        assert outcome.exit_code == LIMIT_EXIT_CODE
        assert "maxLoopIterations exceeded (limit 50)" in outcome.stderr
        assert outcome.limit_exceeded.limit == "maxLoopIterations"

    def test_command_count_limit(self, shell):
        limits = ExecutionLimits(max_loop_iterations=100_000, max_command_count=20)
        outcome = shell.run("for i in $(seq 1 100); do echo $i; done", limits=limits)
        assert outcome.exit_code == LIMIT_EXIT_CODE
        assert "maxCommandCount exceeded (limit 20)" in outcome.stderr
        assert outcome.stdout.startswith("1\n2\n")

    def test_limits_reset_between_runs(self, shell):
        limits = ExecutionLimits(max_loop_iterations=5)
        shell.run("for i in 1 2 3; do :; done", limits=ExecutionLimits(max_loop_iterations=5))
        assert shell.run("for i in 1 2 3; do :; done", limits=limits).exit_code == 0

    def test_runaway_recursion(self, shell):
        outcome = shell.run("f() { f; }; f")
        assert outcome.exit_code != 0
        assert "maximum function nesting level" in outcome.stderr


class TestWorkspaceBoundary:
    @pytest.mark.parametrize(
        "script",
        ["cat /etc/passwd", "cat ../../../../etc/passwd", "ls /", "cd / && ls", "cd .. && ls"],
    )
    def test_reads_outside_workspace_fail(self, shell, script):
        outcome = shell.run(script)
        assert outcome.exit_code != 0
        assert "root:" not in outcome.stdout

    def test_writes_outside_workspace_fail(self, shell, tmp_path):
        outcome = shell.run(f"echo pwned > {tmp_path}/escape.txt")
        assert outcome.exit_code == 1
        assert not (tmp_path / "escape.txt").exists()

    def test_symlink_escape_is_blocked_on_use(self, shell, tmp_path):
        secret = tmp_path / "secret.txt"
        secret.write_text("top secret")
        outcome = shell.run(f"ln -s {secret} link && cat link")
        assert outcome.exit_code == 1
        assert "top secret" not in outcome.stdout
        assert "security violation" in outcome.stderr
