import pytest
from pydantic import ValidationError

from protocol import (
    ExecutionRequest,
    ExecutionResult,
    ExecutionTimeout,
    FileEntry,
    Language,
    ResourceLimitExceeded,
    SecurityViolation,
    ShellResult,
    WorkspaceTreeNode,
    schema_for,
)


def test_protocol_models_can_instantiate():
    request = ExecutionRequest(code="print(1)", language="python")
    result = ExecutionResult(success=True, stdout="1\n")
    shell = ShellResult(exit_code=0, stdout="hi\n")
    entry = FileEntry(name="a.txt", is_directory=False, size=3)

    assert request.language is Language.PYTHON
    assert request.options.packages == []
    assert request.options.cwd is None
    assert result.result is None
    assert shell.success
    assert entry.size == 3


def test_execution_request_is_frozen():
    request = ExecutionRequest(code="ls", language=Language.SHELL)
    with pytest.raises(ValidationError):
        request.code = "rm -r /"


def test_execution_request_rejects_unknown_language():
    with pytest.raises(ValidationError):
        ExecutionRequest(code="puts 1", language="ruby")


def test_failure_result_has_empty_fields():
    result = ExecutionResult.failure("boom")
    assert result.success is False
    assert result.stdout == ""
    assert result.stderr == ""
    assert result.result is None
    assert result.error == "boom"


def test_shell_result_maps_to_execution_result():
    failed = ShellResult(exit_code=2, stderr="nope\n").to_execution_result()
    assert failed.success is False
    assert failed.exit_code == 2
    assert failed.stderr == "nope\n"

    ok = ShellResult(exit_code=0, stdout="x\n").to_execution_result()
    assert ok.success is True
    assert ok.error is None


def test_tree_node_iter_paths():
    tree = WorkspaceTreeNode(
        name="workspace",
        path="/workspace",
        is_directory=True,
        children=[
            WorkspaceTreeNode(name="a.txt", path="/workspace/a.txt", is_directory=False, size=1),
        ],
    )
    assert list(tree.iter_paths()) == ["/workspace", "/workspace/a.txt"]


def test_error_reasons_are_structured():
    violation = SecurityViolation("../etc/passwd")
    assert violation.to_reason()["code"] == "SECURITY_VIOLATION"
    assert "security violation" in violation.message

    timeout = ExecutionTimeout(2000)
    assert str(timeout) == "Execution timed out after 2000ms"

    limit = ResourceLimitExceeded("maxLoopIterations", 10)
    assert limit.limit == "maxLoopIterations"
    assert "maxLoopIterations" in limit.message


def test_schema_for_returns_json_schema():
    schema = schema_for(ExecutionRequest)
    assert schema["title"] == "ExecutionRequest"
    assert "code" in schema["properties"]
