from __future__ import annotations

from pathlib import Path

import pytest

from action_runtime.tools.builtin import register_builtin_tools
from action_runtime.tools.protocol import ToolCall, ToolResult
from action_runtime.tools.registry import ToolExecutionContext, ToolRegistry


@pytest.fixture()
def registry(tmp_path: Path) -> ToolRegistry:
    ws = tmp_path / "ws"
    ws.mkdir()
    reg = ToolRegistry(ctx=ToolExecutionContext(workspace_root=ws, task_dir=tmp_path / "task"))
    register_builtin_tools(reg)
    return reg


def _edit(registry: ToolRegistry, **args) -> ToolResult:
    return registry.dispatch(ToolCall(call_id="c1", name="edit_file", args=args))


def _read_output(registry: ToolRegistry, **args) -> ToolResult:
    return registry.dispatch(ToolCall(call_id="c2", name="read_command_output", args=args))


def _data(result: ToolResult) -> dict:
    assert result.details is not None
    return result.details["data"]


def test_edit_file_creates_new_file(registry: ToolRegistry) -> None:
    result = _edit(registry, file_path="pkg/new.txt", old_string="", new_string="hello\n")
    assert result.ok is True
    assert result.details["stdout"] == "Created new file: pkg/new.txt"
    assert _data(result) == {"path": "pkg/new.txt", "created": True}
    assert (registry.ctx.workspace_root / "pkg" / "new.txt").read_text(encoding="utf-8") == "hello\n"


def test_edit_file_applies_fuzzy_replacement(registry: ToolRegistry) -> None:
    target = registry.ctx.workspace_root / "a.py"
    target.write_bytes(b"def f():\r\n    return  1\r\n")
    result = _edit(registry, file_path="a.py", old_string="return 1", new_string="return 2")
    assert result.ok is True
    assert _data(result) == {"path": "a.py", "created": False, "strategy": "whitespace-tolerant", "occurrences": 1}
    assert "using whitespace-tolerant matching (1 replacement(s))" in result.details["stdout"]
    assert target.read_bytes() == b"def f():\r\n    return 2\r\n"


def test_edit_file_refuses_to_overwrite_existing_file(registry: ToolRegistry) -> None:
    (registry.ctx.workspace_root / "a.txt").write_text("content", encoding="utf-8")
    result = _edit(registry, file_path="a.txt", old_string="", new_string="x")
    assert result.ok is False
    assert result.error_kind == "conflict"
    assert _data(result)["code"] == "EDIT_FILE_EXISTS"
    assert (registry.ctx.workspace_root / "a.txt").read_text(encoding="utf-8") == "content"


def test_edit_file_missing_file(registry: ToolRegistry) -> None:
    result = _edit(registry, file_path="missing.txt", old_string="a", new_string="b")
    assert result.error_kind == "not_found"
    assert "File does not exist at path:" in result.details["stderr"]


def test_edit_file_escalates_on_repeated_failures(registry: ToolRegistry) -> None:
    target = registry.ctx.workspace_root / "a.txt"
    target.write_text("alpha\n", encoding="utf-8")

    first = _edit(registry, file_path="a.txt", old_string="zzz", new_string="y")
    assert first.error_kind == "validation"
    assert "<error_details>" in first.details["stderr"]
    assert _data(first)["escalate"] is False
    assert _data(first)["consecutive_failures"] == 1

    second = _edit(registry, file_path="a.txt", old_string="zzz", new_string="y")
    assert _data(second)["escalate"] is True
    assert _data(second)["code"] == "EDIT_NO_MATCH"

    ok = _edit(registry, file_path="a.txt", old_string="alpha", new_string="beta")
    assert ok.ok is True
    assert registry.ctx.edit_failures.failures("a.txt") == 0


def test_edit_file_occurrence_mismatch(registry: ToolRegistry) -> None:
    (registry.ctx.workspace_root / "a.txt").write_text("x x x", encoding="utf-8")
    result = _edit(registry, file_path="a.txt", old_string="x", new_string="y")
    assert _data(result)["code"] == "EDIT_OCCURRENCE_MISMATCH"
    ok = _edit(registry, file_path="a.txt", old_string="x", new_string="y", expected_replacements=3)
    assert _data(ok)["occurrences"] == 3


def test_edit_file_rejects_paths_outside_workspace(registry: ToolRegistry) -> None:
    result = _edit(registry, file_path="../escape.txt", old_string="", new_string="x")
    assert result.error_kind == "permission"


@pytest.mark.parametrize(
    "args",
    [{}, {"file_path": "  ", "old_string": "", "new_string": "x"}, {"file_path": "a", "bogus": 1}],
)
def test_edit_file_argument_validation(registry: ToolRegistry, args: dict) -> None:
    assert _edit(registry, **args).error_kind == "validation"


def test_edit_file_unreadable_file(registry: ToolRegistry) -> None:
    (registry.ctx.workspace_root / "bin.dat").write_bytes(b"\xff\xfe\x00")
    result = _edit(registry, file_path="bin.dat", old_string="a", new_string="b")
    assert result.error_kind == "unknown"
    assert result.details["stderr"].startswith("Failed to read file:")
    assert _data(result)["code"] == "EDIT_READ_FAILED"


def _spilled_artifact(registry: ToolRegistry) -> tuple:
    text = "\n".join(f"line {i}" for i in range(3000))
    buf = registry.ctx.output_store.open_buffer(execution_id="100", command="seq")
    buf.write(text)
    result = buf.finalize()
    assert result.truncated is True
    return result.artifact_id, len(text.encode("utf-8"))


def test_read_command_output_pages(registry: ToolRegistry) -> None:
    artifact_id, total = _spilled_artifact(registry)
    result = _read_output(registry, artifact_id=artifact_id, limit=100)
    assert result.ok is True
    assert result.details["truncated"] is True
    assert _data(result) == {"artifact_id": "cmd-100.txt", "read_start": 0, "read_end": 100, "total_bytes": total}
    assert result.details["stdout"].startswith("[Command Output: cmd-100.txt]\n")


def test_read_command_output_search(registry: ToolRegistry) -> None:
    artifact_id, total = _spilled_artifact(registry)
    result = _read_output(registry, artifact_id=artifact_id, search="LINE 2999$")
    assert result.ok is True
    data = _data(result)
    assert data["match_count"] == 1
    assert data["search_pattern"] == "LINE 2999$"
    assert data["total_bytes"] == total
    assert "3000 | line 2999" in result.details["stdout"]


@pytest.mark.parametrize(
    "args,kind,code",
    [
        ({"artifact_id": "../secret"}, "validation", "INVALID_ARTIFACT_ID"),
        ({"artifact_id": "cmd-5.txt"}, "not_found", "ARTIFACT_NOT_FOUND"),
        ({"artifact_id": "cmd-100.txt", "offset": 10**9}, "validation", "INVALID_ARTIFACT_RANGE"),
    ],
)
def test_read_command_output_errors(registry: ToolRegistry, args: dict, kind: str, code: str) -> None:
    _spilled_artifact(registry)
    result = _read_output(registry, **args)
    assert result.error_kind == kind
    assert _data(result)["code"] == code
    assert result.details["stderr"].startswith("Error: ")


def test_read_command_output_requires_artifact_id(registry: ToolRegistry) -> None:
    assert _read_output(registry).error_kind == "validation"
    assert _read_output(registry, artifact_id="").error_kind == "validation"


def test_missing_context_dependencies_are_reported(registry: ToolRegistry) -> None:
    registry.ctx.output_store = None
    registry.ctx.edit_failures = None

    read = _read_output(registry, artifact_id="cmd-1.txt")
    assert read.error_kind == "validation"
    assert "requires output_store" in read.details["stderr"]

    edit = _edit(registry, file_path="a.txt", old_string="", new_string="x")
    assert edit.error_kind == "validation"
    assert "requires edit_failures tracker" in edit.details["stderr"]
    assert not (registry.ctx.workspace_root / "a.txt").exists()
