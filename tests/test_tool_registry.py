from __future__ import annotations

from pathlib import Path

import pytest

from action_runtime.config import load_config_dicts
from action_runtime.core.errors import UserError
from action_runtime.tools.builtin import register_builtin_tools
from action_runtime.tools.protocol import ToolCall, ToolResult, ToolSpec, ToolUse, tool_spec_to_openai_tool
from action_runtime.tools.registry import ToolExecutionContext, ToolRegistry


def _ctx(tmp_path: Path, **kwargs) -> ToolExecutionContext:
    return ToolExecutionContext(workspace_root=tmp_path / "ws", task_dir=tmp_path / "task", **kwargs)


def _spec(name: str) -> ToolSpec:
    return ToolSpec(name=name, description=f"{name} tool", parameters={"type": "object", "properties": {}})


def _echo(call: ToolCall, ctx: ToolExecutionContext) -> ToolResult:
    return ToolResult.ok_payload(stdout="echo", data=dict(call.args))


def test_context_defaults_follow_config(tmp_path: Path) -> None:
    cfg = load_config_dicts([{"output": {"storage_subdir": "outs"}, "edits": {"escalate_after_failures": 1}}])
    ctx = _ctx(tmp_path, config=cfg)
    assert ctx.output_store is not None
    assert ctx.output_store.storage_dir == tmp_path / "task" / "outs"
    assert ctx.edit_failures is not None
    assert ctx.edit_failures.record_failure("a.py") is True


def test_resolve_path_stays_inside_workspace(tmp_path: Path) -> None:
    ctx = _ctx(tmp_path)
    (tmp_path / "ws").mkdir()
    inside = ctx.resolve_path("src/a.py")
    assert ctx.relative_path(inside) == "src/a.py"
    with pytest.raises(UserError):
        ctx.resolve_path("../outside.txt")
    with pytest.raises(UserError):
        ctx.resolve_path(str(tmp_path / "task" / "x"))


def test_register_rejects_duplicates(tmp_path: Path) -> None:
    registry = ToolRegistry(ctx=_ctx(tmp_path))
    registry.register(_spec("echo"), _echo)
    with pytest.raises(UserError):
        registry.register(_spec("echo"), _echo)
    registry.register(_spec("echo"), _echo, override=True)
    assert [s.name for s in registry.list_specs()] == ["echo"]
    assert registry.get_spec("echo").description == "echo tool"
    with pytest.raises(UserError):
        registry.get_spec("missing")


def test_custom_tool_names_exclude_builtins(tmp_path: Path) -> None:
    registry = ToolRegistry(ctx=_ctx(tmp_path))
    register_builtin_tools(registry)
    registry.register(_spec("echo"), _echo)
    assert registry.custom_tool_names() == ["echo"]
    assert {s.name for s in registry.list_specs()} == {"edit_file", "read_command_output", "echo"}


def test_name_resolver_tracks_registry_and_config(tmp_path: Path) -> None:
    cfg = load_config_dicts([{"tools": {"aliases": {"mk": "write_to_file"}, "custom": ["external"]}}])
    registry = ToolRegistry(ctx=_ctx(tmp_path, config=cfg))
    resolver = registry.name_resolver()

    assert resolver.resolve("mk").name == "write_to_file"
    assert resolver.resolve("write_file").name == "write_to_file"
    assert resolver.resolve("external").kind == "custom"

    registry.register(_spec("late"), _echo)
    assert resolver.resolve("late").kind == "custom"


def test_dispatch_results(tmp_path: Path) -> None:
    registry = ToolRegistry(ctx=_ctx(tmp_path))

    def _raises_user_error(call: ToolCall, ctx: ToolExecutionContext) -> ToolResult:
        raise UserError("bad input")

    def _crashes(call: ToolCall, ctx: ToolExecutionContext) -> ToolResult:
        raise RuntimeError("boom")

    registry.register(_spec("echo"), _echo)
    registry.register(_spec("strict"), _raises_user_error)
    registry.register(_spec("crash"), _crashes)

    ok = registry.dispatch(ToolCall(call_id="1", name="echo", args={"a": 1}))
    assert ok.ok is True
    assert ok.details["data"] == {"a": 1}

    missing = registry.dispatch(ToolCall(call_id="2", name="nope"))
    assert (missing.ok, missing.error_kind) == (False, "not_found")

    invalid = registry.dispatch(ToolCall(call_id="3", name="strict"))
    assert invalid.error_kind == "validation"
    assert "bad input" in invalid.details["stderr"]

    crashed = registry.dispatch(ToolCall(call_id="4", name="crash"))
    assert crashed.error_kind == "unknown"


def test_dispatch_tool_use_refuses_partial(tmp_path: Path) -> None:
    registry = ToolRegistry(ctx=_ctx(tmp_path))
    registry.register(_spec("echo"), _echo)
    with pytest.raises(ValueError):
        registry.dispatch_tool_use(ToolUse(id="1", name="echo", partial=True))
    result = registry.dispatch_tool_use(ToolUse(id="1", name="echo", native_args={"x": "y"}))
    assert result.details["data"] == {"x": "y"}


def test_tool_spec_to_openai_tool() -> None:
    spec = _spec("echo")
    assert tool_spec_to_openai_tool(spec) == {
        "type": "function",
        "function": {"name": "echo", "description": "echo tool", "parameters": {"type": "object", "properties": {}}},
    }


def test_user_error_converts_to_issue() -> None:
    err = UserError("bad input", code="BAD_INPUT", details={"field": "path"})
    issue = err.to_issue()
    assert (issue.code, issue.message, issue.details) == ("BAD_INPUT", "bad input", {"field": "path"})
    assert str(err) == "BAD_INPUT: bad input"
