from __future__ import annotations

import asyncio
import json
from pathlib import Path

import pytest

from action_runtime.core.errors import ToolArgumentsParseError, ToolNameResolutionError
from action_runtime.llm.chat_sse import ChatStreamEvent, aiter_chat_completions_stream_events
from action_runtime.tools.arguments import EditFileArgs, ReadFileArgs
from action_runtime.tools.builtin import register_builtin_tools
from action_runtime.tools.names import ToolNameResolver
from action_runtime.tools.protocol import DynamicIntegrationToolUse, RawToolCallChunk, ToolUse
from action_runtime.tools.registry import ToolExecutionContext, ToolRegistry
from action_runtime.tools.streaming import ToolCallAccumulator, ToolCallAssembler


async def _aiter(items):
    for item in items:
        yield item


def _collect(agen) -> list:
    async def _run() -> list:
        return [x async for x in agen]

    return asyncio.run(_run())


def test_chunked_arguments_match_single_shot() -> None:
    text = '{"path": "src/a.py", "offset": 3}'

    chunked = ToolCallAccumulator()
    assert chunked.start("c1", "read_file") is True
    assert chunked.start("c1", "read_file") is False
    partial = chunked.append_chunk("c1", text[:12])
    assert isinstance(partial, ToolUse)
    assert partial.partial is True
    assert partial.native_args.path == "sr"
    chunked.append_chunk("c1", text[12:])
    final = chunked.finalize("c1")

    whole = ToolCallAccumulator()
    whole.start("c1", "read_file")
    whole.append_chunk("c1", text)
    expected = whole.finalize("c1")

    assert isinstance(final, ToolUse)
    assert final.partial is False
    assert isinstance(final.native_args, ReadFileArgs)
    assert final.native_args == expected.native_args
    assert final.native_args.offset == 3
    assert "c1" not in chunked
    assert len(chunked) == 0


def test_integration_calls_only_surface_on_finalize() -> None:
    acc = ToolCallAccumulator()
    acc.start("c2", "mcp__github__create_issue")
    assert acc.append_chunk("c2", '{"title": "x"}') is None
    final = acc.finalize("c2")
    assert isinstance(final, DynamicIntegrationToolUse)
    assert final.name == "mcp__github__create_issue"
    assert final.server_name == "github"
    assert final.tool_name == "create_issue"
    assert final.arguments == {"title": "x"}


def test_hyphenated_integration_names_are_decoded() -> None:
    acc = ToolCallAccumulator()
    acc.start("c1", "mcp--my___server--get___data")
    final = acc.finalize("c1")
    assert isinstance(final, DynamicIntegrationToolUse)
    assert (final.server_name, final.tool_name) == ("my-server", "get-data")
    assert final.arguments == {}


def test_unknown_tool_name_fails_closed() -> None:
    acc = ToolCallAccumulator()
    acc.start("c3", "nope")
    assert acc.append_chunk("c3", "{}") is None
    with pytest.raises(ToolNameResolutionError):
        acc.finalize("c3")
    assert "c3" not in acc


@pytest.mark.parametrize("text", ['{"path": "a"', "[1, 2]", '"just a string"'])
def test_malformed_arguments_are_rejected_and_discarded(text: str) -> None:
    acc = ToolCallAccumulator()
    acc.start("c4", "read_file")
    acc.append_chunk("c4", text)
    with pytest.raises(ToolArgumentsParseError) as ei:
        acc.finalize("c4")
    assert ei.value.code == "MALFORMED_TOOL_ARGUMENTS"
    assert len(acc) == 0


def test_unparseable_partial_text_yields_nothing() -> None:
    acc = ToolCallAccumulator()
    acc.start("c1", "read_file")
    assert acc.append_chunk("c1", '{"path" 1') is None


def test_partial_arguments_keep_truncated_trailing_string() -> None:
    acc = ToolCallAccumulator()
    acc.start("c1", "read_file")
    partial = acc.append_chunk("c1", '{"path": "src/ma')
    assert partial.native_args.path == "src/ma"
    partial = acc.append_chunk("c1", 'in.py", "offset": 1')
    assert partial.native_args.path == "src/main.py"


def test_deeply_nested_partial_arguments_yield_nothing() -> None:
    acc = ToolCallAccumulator()
    acc.start("c1", "read_file")
    assert acc.append_chunk("c1", '{"files": ' + "[" * 5000) is None
    assert "c1" in acc


def test_deeply_nested_final_arguments_are_rejected() -> None:
    deep = '{"files": ' + "[" * 5000 + "]" * 5000 + "}"
    asm = ToolCallAssembler()
    asm.begin_request()
    assert asm.feed_chunk(RawToolCallChunk(index=0, id="c1", name="mcp--srv--tool", arguments=deep)) == []
    updates = asm.feed_finish_reason("tool_calls")
    assert [u.kind for u in updates] == ["rejected"]
    assert updates[0].error.code == "MALFORMED_TOOL_ARGUMENTS"
    assert len(asm.accumulator) == 0


def test_alias_records_original_name_in_partial_and_final() -> None:
    acc = ToolCallAccumulator()
    acc.start("c6", "write_file")
    partial = acc.append_chunk("c6", '{"path": "a", "content": "b"}')
    assert partial.name == "write_to_file"
    assert partial.original_name == "write_file"
    final = acc.finalize("c6")
    assert final.name == "write_to_file"
    assert final.original_name == "write_file"


def test_custom_tool_with_empty_arguments() -> None:
    acc = ToolCallAccumulator(resolver=ToolNameResolver(custom_names=["ping"]))
    acc.start("c7", "ping")
    final = acc.finalize("c7")
    assert isinstance(final, ToolUse)
    assert final.native_args == {}
    assert final.to_tool_call().args == {}


def test_unknown_ids_are_ignored() -> None:
    acc = ToolCallAccumulator()
    assert acc.append_chunk("missing", "{}") is None
    assert acc.finalize("missing") is None


def test_assembler_sync_flow() -> None:
    asm = ToolCallAssembler()
    asm.begin_request()
    first = asm.feed_chunk(RawToolCallChunk(index=0, id="c1", name="read_file", arguments='{"path": "a.py"'))
    second = asm.feed_chunk(RawToolCallChunk(index=0, arguments="}"))
    ended = asm.feed_finish_reason("tool_calls")

    assert [u.kind for u in first] == ["partial"]
    assert [u.kind for u in second] == ["partial"]
    assert [u.kind for u in ended] == ["final"]
    assert ended[0].tool_use.native_args.path == "a.py"
    assert asm.finish() == []


def test_assembler_rejects_unknown_tools() -> None:
    asm = ToolCallAssembler()
    asm.begin_request()
    assert asm.feed_chunk(RawToolCallChunk(index=0, id="c1", name="nope", arguments="{}")) == []
    updates = asm.finish()
    assert len(updates) == 1
    assert updates[0].kind == "rejected"
    assert updates[0].tool_use is None
    assert updates[0].error.code == "UNKNOWN_TOOL"


def test_assembler_ignores_text_and_completion_events() -> None:
    asm = ToolCallAssembler()
    assert asm.feed(ChatStreamEvent(type="text_delta", text="hi")) == []
    assert asm.feed(ChatStreamEvent(type="completed", finish_reason="done")) == []


def test_begin_request_clears_previous_state() -> None:
    asm = ToolCallAssembler()
    asm.feed_chunk(RawToolCallChunk(index=0, id="old", name="read_file", arguments='{"path": '))
    assert len(asm.tracker) == 1
    assert "old" in asm.accumulator
    asm.begin_request()
    assert len(asm.tracker) == 0
    assert len(asm.accumulator) == 0
    assert asm.finish() == []


def test_assemble_stops_on_cancel_without_finalizing() -> None:
    cancelled = {"v": False}

    async def _stream():
        yield RawToolCallChunk(index=0, id="c1", name="read_file", arguments='{"path": "a"')
        cancelled["v"] = True
        yield RawToolCallChunk(index=0, arguments="}")

    asm = ToolCallAssembler()
    updates = _collect(asm.assemble(_stream(), cancel_checker=lambda: cancelled["v"]))
    assert [u.kind for u in updates] == ["partial"]
    assert len(asm.accumulator) == 1


def _sse_lines() -> list:
    deltas = [
        {"index": 0, "id": "call_1", "function": {"name": "edit_file", "arguments": ""}},
        {"index": 0, "function": {"arguments": '{"file_path": "a.txt", '}},
        {"index": 0, "function": {"arguments": '"old_string": "hello", "new_string": "bye"}'}},
    ]
    lines = [json.dumps({"choices": [{"delta": {"tool_calls": [d]}}]}) for d in deltas]
    lines.append(json.dumps({"choices": [{"delta": {}, "finish_reason": "tool_calls"}]}))
    lines.append("[DONE]")
    return lines


def test_sse_stream_to_dispatch_end_to_end(tmp_path: Path) -> None:
    ws = tmp_path / "ws"
    ws.mkdir()
    (ws / "a.txt").write_text("hello world\n", encoding="utf-8")
    registry = ToolRegistry(ctx=ToolExecutionContext(workspace_root=ws, task_dir=tmp_path / "task"))
    register_builtin_tools(registry)

    asm = ToolCallAssembler(resolver=registry.name_resolver())
    events = aiter_chat_completions_stream_events(_aiter(_sse_lines()))
    updates = _collect(asm.assemble(events))

    assert [u.kind for u in updates] == ["partial", "partial", "final"]
    final = updates[-1].tool_use
    assert isinstance(final.native_args, EditFileArgs)
    assert final.id == "call_1"

    result = registry.dispatch_tool_use(final)
    assert result.ok is True
    assert (ws / "a.txt").read_text(encoding="utf-8") == "bye world\n"
