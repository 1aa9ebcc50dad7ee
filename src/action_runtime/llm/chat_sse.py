"""
Chat Completions Streaming SSE 解析器。

职责：
- 把 `data: ...` payload 转换为文本增量、tool_call 原始增量（`RawToolCallChunk`）与 finish_reason 事件；
- 为缺少 `index`/`id` 的 provider 增量补齐归属（index 推断 + 合成 id），保证下游按 index 追踪。

实现边界：
- 支持终止哨兵：`[DONE]` 与 `DONE`
- 支持 `choices[].delta.content` 文本增量（str 或 content blocks）
- `finish_reason="length"` 抛 `ContextLengthExceededError`
- arguments 不在此处拼接与解析（由 `RawChunkTracker` / `ToolCallAccumulator` 负责）
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterable, AsyncIterator, Dict, Iterable, Iterator, List, Optional, Set

from action_runtime.llm.errors import ContextLengthExceededError
from action_runtime.tools.protocol import RawToolCallChunk

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChatStreamEvent:
    """
    Chat streaming 解析输出事件。

    type:
    - `text_delta`：assistant 文本增量
    - `tool_call_chunk`：一条 tool_call 原始增量（见 `chunk`）
    - `finish`：provider 给出的 finish_reason（例如 `tool_calls`）
    - `completed`：流已完成（stop/[DONE]/EOF）
    """

    type: str
    text: Optional[str] = None
    chunk: Optional[RawToolCallChunk] = None
    finish_reason: Optional[str] = None


class ChatCompletionsSseParser:
    """
    OpenAI-compatible chat.completions SSE parser（仅处理 data: JSON 的 payload）。

    用法：
    - 每次收到一条 `data: ...` 的 data 字符串，调用 `feed_data(data)`，获取 0..N 个 `ChatStreamEvent`
    - 流结束时调用 `finish()`，保证最终会得到 `completed` 事件
    """

    def __init__(self) -> None:
        """初始化 index 推断状态与 completed 哨兵标记。"""

        self._index_by_id: Dict[str, int] = {}
        self._named_indexes: Set[int] = set()
        self._known_indexes: Set[int] = set()
        self._last_index: Optional[int] = None
        self._next_index: int = 0
        self._completed_sent: bool = False

    def feed_data(self, data: str) -> List[ChatStreamEvent]:
        """
        处理单条 SSE data 字符串，返回解析得到的事件列表。

        说明：
        - 对 JSON 解析失败的 data：跳过（返回空列表），不终止
        - 对 `[DONE]` / `DONE`：返回 completed（若尚未发出）
        """

        data_s = (data or "").strip()
        if not data_s:
            return []

        if data_s in ("[DONE]", "DONE"):
            return self._complete("done")

        try:
            obj = json.loads(data_s)
        except json.JSONDecodeError:
            logger.debug("Skipping non-JSON SSE payload: %r", data_s[:200])
            return []
        if not isinstance(obj, dict):
            return []

        choices = obj.get("choices")
        if not isinstance(choices, list):
            return []

        out: List[ChatStreamEvent] = []
        for choice in choices:
            if not isinstance(choice, dict):
                continue
            delta = choice.get("delta") or {}
            if isinstance(delta, dict):
                out.extend(self._handle_delta(delta))

            finish_reason = choice.get("finish_reason")
            if finish_reason == "length":
                raise ContextLengthExceededError("context_length_exceeded")
            if isinstance(finish_reason, str) and finish_reason:
                out.append(ChatStreamEvent(type="finish", finish_reason=finish_reason))
                if finish_reason == "tool_calls":
                    self._reset_indexes()
                elif finish_reason == "stop":
                    out.extend(self._complete("stop"))

        return out

    def finish(self) -> List[ChatStreamEvent]:
        """
        在底层 stream EOF 时调用，确保发出 completed 事件。

        注意：
        - 某些 provider 不会发送 `[DONE]`，因此不能依赖哨兵。
        """

        return self._complete("eof")

    def _complete(self, reason: str) -> List[ChatStreamEvent]:
        """发出 completed（每个流最多一次）。"""

        if self._completed_sent:
            return []
        self._completed_sent = True
        return [ChatStreamEvent(type="completed", finish_reason=reason)]

    def _handle_delta(self, delta: Dict[str, Any]) -> List[ChatStreamEvent]:
        """
        解析单个 `choices[].delta` 并产出 0..N 个事件。

        处理范围：
        - `delta.content`：文本增量（str 或 content blocks）
        - `delta.tool_calls[]`：每条增量转换为一个 `tool_call_chunk`
        """

        out: List[ChatStreamEvent] = []

        content = delta.get("content")
        if isinstance(content, str) and content:
            out.append(ChatStreamEvent(type="text_delta", text=content))
        elif isinstance(content, list):
            for item in content:
                if isinstance(item, dict):
                    text = item.get("text")
                    if isinstance(text, str) and text:
                        out.append(ChatStreamEvent(type="text_delta", text=text))

        tool_calls = delta.get("tool_calls")
        if isinstance(tool_calls, list):
            for tool_call in tool_calls:
                if isinstance(tool_call, dict):
                    out.append(ChatStreamEvent(type="tool_call_chunk", chunk=self._to_chunk(tool_call)))

        return out

    def _alloc_index(self) -> int:
        """分配一个未被占用的 tool_call 索引（用于 provider 未提供 index 的情况）。"""

        while self._next_index in self._known_indexes:
            self._next_index += 1
        idx = self._next_index
        self._next_index += 1
        return idx

    def _resolve_index(self, tool_call_delta: Dict[str, Any]) -> int:
        """
        为单条 `tool_call` 增量决定归属的 index。

        优先级：
        1) `tool_call_delta.index`（若为 int）
        2) `tool_call_delta.id`（若曾出现过，复用历史映射）
        3) `tool_call_delta.id`（若为新 id 且缺 index：视为新 call，分配新 index）
        4) 上一条增量的 index（尽量把连续分片拼到同一 call）
        5) 新分配 index

        额外启发式：
        - 缺 index 且缺 id、但携带 `function.name`，且上一条 call 已经有 name 时，视为新 call。
        """

        index_val = tool_call_delta.get("index")
        idx: Optional[int] = index_val if isinstance(index_val, int) and not isinstance(index_val, bool) else None

        call_id = tool_call_delta.get("id")
        has_id = isinstance(call_id, str) and bool(call_id)
        if has_id and call_id in self._index_by_id:
            idx = self._index_by_id[call_id]

        if idx is None:
            idx = self._alloc_index() if has_id else self._last_index

        if idx is not None and not isinstance(index_val, int) and not has_id:
            fn = tool_call_delta.get("function")
            name = fn.get("name") if isinstance(fn, dict) else None
            if isinstance(name, str) and name and self._last_index in self._named_indexes:
                idx = self._alloc_index()

        if idx is None:
            idx = self._alloc_index()

        if has_id and call_id not in self._index_by_id:
            self._index_by_id[call_id] = idx

        self._last_index = idx
        return idx

    def _to_chunk(self, tool_call_delta: Dict[str, Any]) -> RawToolCallChunk:
        """把一条 provider 增量转换为 `RawToolCallChunk`（首个增量缺 id 时合成 id）。"""

        idx = self._resolve_index(tool_call_delta)

        call_id = tool_call_delta.get("id")
        chunk_id: Optional[str] = call_id if isinstance(call_id, str) and call_id else None
        if idx not in self._known_indexes:
            self._known_indexes.add(idx)
            if chunk_id is None:
                chunk_id = f"tool-call-{idx}"

        name: Optional[str] = None
        arguments: Optional[str] = None
        fn = tool_call_delta.get("function")
        if isinstance(fn, dict):
            raw_name = fn.get("name")
            if isinstance(raw_name, str) and raw_name:
                name = raw_name
                self._named_indexes.add(idx)
            raw_args = fn.get("arguments")
            if isinstance(raw_args, str) and raw_args:
                arguments = raw_args

        return RawToolCallChunk(index=idx, id=chunk_id, name=name, arguments=arguments)

    def _reset_indexes(self) -> None:
        """一个 tool_calls 批次结束后清空 index 推断状态。"""

        self._index_by_id.clear()
        self._named_indexes.clear()
        self._known_indexes.clear()
        self._last_index = None
        self._next_index = 0


def iter_chat_completions_stream_events(data_lines: Iterable[str]) -> Iterator[ChatStreamEvent]:
    """
    便捷函数：将一组 `data:` payload 行解析为事件流。

    参数：
    - data_lines：每条都是 SSE 中 `data: ...` 的 `...` 部分（不含前缀）
    """

    parser = ChatCompletionsSseParser()
    for data in data_lines:
        yield from parser.feed_data(data)
    yield from parser.finish()


async def aiter_chat_completions_stream_events(data_lines: AsyncIterable[str]) -> AsyncIterator[ChatStreamEvent]:
    """`iter_chat_completions_stream_events` 的异步版本（上游为 async 的 HTTP 流）。"""

    parser = ChatCompletionsSseParser()
    async for data in data_lines:
        for ev in parser.feed_data(data):
            yield ev
    for ev in parser.finish():
        yield ev
