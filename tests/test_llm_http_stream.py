from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from action_runtime.llm.http_stream import sse_data_payload, stream_chat_completion_events
from action_runtime.tools.streaming import ToolCallAssembler

_URL = "http://llm.test/v1/chat/completions"


def _sse_body(*payloads: str) -> bytes:
    lines = []
    for payload in payloads:
        lines.append(": keep-alive")
        lines.append("event: message")
        lines.append(f"data: {payload}")
        lines.append("")
    return "\n".join(lines).encode("utf-8")


def _run(handler, coro_factory):
    async def _main():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            return await coro_factory(client)

    return asyncio.run(_main())


def test_sse_data_payload() -> None:
    assert sse_data_payload("data: {}") == "{}"
    assert sse_data_payload("data:[DONE]") == "[DONE]"
    assert sse_data_payload("event: message") is None
    assert sse_data_payload(": comment") is None
    assert sse_data_payload("") is None


def test_stream_events_from_http_response() -> None:
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["body"] = json.loads(request.content)
        seen["auth"] = request.headers.get("authorization")
        body = _sse_body(json.dumps({"choices": [{"delta": {"content": "hi"}}]}), "[DONE]")
        return httpx.Response(200, content=body, headers={"content-type": "text/event-stream"})

    async def _collect(client: httpx.AsyncClient) -> list:
        stream = stream_chat_completion_events(
            client, _URL, payload={"model": "m", "stream": True}, headers={"Authorization": "Bearer k"}
        )
        return [ev async for ev in stream]

    events = _run(handler, _collect)
    assert [(e.type, e.text) for e in events] == [("text_delta", "hi"), ("completed", None)]
    assert seen == {"body": {"model": "m", "stream": True}, "auth": "Bearer k"}


def test_http_error_status_raises_with_body() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(429, json={"error": {"message": "slow down"}})

    async def _collect(client: httpx.AsyncClient) -> list:
        return [ev async for ev in stream_chat_completion_events(client, _URL, payload={})]

    with pytest.raises(httpx.HTTPStatusError) as ei:
        _run(handler, _collect)
    assert ei.value.response.status_code == 429
    assert ei.value.response.json() == {"error": {"message": "slow down"}}


def test_http_stream_feeds_tool_call_assembler() -> None:
    deltas = [
        {"index": 0, "id": "call_9", "function": {"name": "read_file", "arguments": '{"path": '}},
        {"index": 0, "function": {"arguments": '"README.md"}'}},
    ]
    payloads = [json.dumps({"choices": [{"delta": {"tool_calls": [d]}}]}) for d in deltas]
    payloads.append(json.dumps({"choices": [{"delta": {}, "finish_reason": "tool_calls"}]}))

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=_sse_body(*payloads))

    async def _assemble(client: httpx.AsyncClient) -> list:
        asm = ToolCallAssembler()
        events = stream_chat_completion_events(client, _URL, payload={"stream": True})
        return [u async for u in asm.assemble(events)]

    updates = _run(handler, _assemble)
    finals = [u for u in updates if u.kind == "final"]
    assert len(finals) == 1
    assert finals[0].call_id == "call_9"
    assert finals[0].tool_use.native_args.path == "README.md"
