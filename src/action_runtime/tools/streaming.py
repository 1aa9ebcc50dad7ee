"""
流式 tool call 组装：RawChunkTracker + ToolCallAccumulator + ToolCallAssembler。

数据流：
- provider 增量（按 index）→ `RawChunkTracker` → start/delta/end 事件（按 call id）
- 事件 → `ToolCallAccumulator`：每个 call id 一个 arguments 缓冲
  - delta：best-effort 部分解析 → `ToolUse(partial=True)`（仅供展示）
  - end：严格解析 + 名称解析 + 参数映射 → 最终 `ToolUse` / `DynamicIntegrationToolUse`

约束：
- 状态由调用方持有的实例承载（每个 task 一个 `ToolCallAssembler`）；
- 每次新请求前必须调用 `begin_request()` 清空状态，否则上一轮的 call id 会泄漏到下一轮；
- 单线程协作式处理：同一实例不得被并发喂入增量。
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import AsyncIterable, AsyncIterator, Callable, Dict, List, Literal, Optional, Union

from pydantic_core import from_json

from action_runtime.core.errors import ToolArgumentsParseError, ToolCallError
from action_runtime.llm.chat_sse import ChatStreamEvent
from action_runtime.tools.arguments import ArgumentMapperRegistry, default_argument_registry
from action_runtime.tools.names import ToolNameResolver, clean_tool_name, is_integration_tool_name
from action_runtime.tools.protocol import (
    AnyToolUse,
    DynamicIntegrationToolUse,
    RawToolCallChunk,
    ToolCallStreamEvent,
    ToolUse,
)

logger = logging.getLogger(__name__)


@dataclass
class _RawChunkTrack:
    """单个 stream index 的追踪状态。"""

    index: int
    id: str
    name: Optional[str] = None
    has_started: bool = False
    has_ended: bool = False
    delta_buffer: List[str] = field(default_factory=list)


class RawChunkTracker:
    """
    把按 index 归属的 provider 增量转换为有序的 start/delta/end 事件。

    规则：
    - 带 id 的增量首次出现时创建追踪条目；name 以首个非空值为准
    - name 已知的瞬间发出 start（每个条目恰好一次），随后按原顺序回放此前缓冲的 delta
    - `process_finish_reason("tool_calls")` 为每个已开始、未结束的条目发出 end
    - `finalize()` 为剩余已开始、未结束的条目发出 end 并清空全部状态
    """

    def __init__(self) -> None:
        """创建空追踪表。"""

        self._tracks: Dict[int, _RawChunkTrack] = {}

    def __len__(self) -> int:
        """当前追踪的条目数。"""

        return len(self._tracks)

    def process_chunk(self, chunk: RawToolCallChunk) -> List[ToolCallStreamEvent]:
        """
        处理一条增量，返回 0..N 个事件。

        说明：
        - 尚未追踪的 index 且增量不带 id：丢弃（debug 日志）
        - 已结束条目收到新 id：视为同一 index 上的新 call，重建条目
        """

        events: List[ToolCallStreamEvent] = []
        track = self._tracks.get(chunk.index)
        if chunk.id and (track is None or (track.has_ended and chunk.id != track.id)):
            track = _RawChunkTrack(index=chunk.index, id=chunk.id)
            self._tracks[chunk.index] = track
        if track is None:
            logger.debug("Dropping tool call chunk for untracked index %s", chunk.index)
            return events
        if track.has_ended:
            logger.debug("Dropping tool call chunk for ended call %s", track.id)
            return events

        if chunk.name and not track.name:
            track.name = chunk.name

        if not track.has_started and track.name:
            track.has_started = True
            events.append(ToolCallStreamEvent(type="tool_call_start", id=track.id, name=track.name))
            for buffered in track.delta_buffer:
                events.append(ToolCallStreamEvent(type="tool_call_delta", id=track.id, delta=buffered))
            track.delta_buffer.clear()

        if chunk.arguments:
            if track.has_started:
                events.append(ToolCallStreamEvent(type="tool_call_delta", id=track.id, delta=chunk.arguments))
            else:
                track.delta_buffer.append(chunk.arguments)
        return events

    def process_finish_reason(self, finish_reason: Optional[str]) -> List[ToolCallStreamEvent]:
        """finish_reason 为 `tool_calls` 时，为已开始、未结束的条目发出 end。"""

        if finish_reason != "tool_calls":
            return []
        return self._end_started()

    def finalize(self) -> List[ToolCallStreamEvent]:
        """
        流结束：补发 end 并清空全部状态（幂等：连续调用第二次不产出事件）。

        说明：
        - 从未得到 name 的条目不会产生任何事件，直接丢弃
        """

        events = self._end_started()
        dropped = [t.id for t in self._tracks.values() if not t.has_started]
        if dropped:
            logger.warning("Dropping tool calls that never received a name: %s", dropped)
        self._tracks.clear()
        return events

    def clear(self) -> None:
        """丢弃全部状态（不发事件）。"""

        self._tracks.clear()

    def _end_started(self) -> List[ToolCallStreamEvent]:
        """为已开始、未结束的条目发出 end 并标记结束。"""

        events: List[ToolCallStreamEvent] = []
        for track in self._tracks.values():
            if track.has_started and not track.has_ended:
                track.has_ended = True
                events.append(ToolCallStreamEvent(type="tool_call_end", id=track.id))
        return events


@dataclass
class _Accumulator:
    """单个 call id 的 arguments 缓冲。"""

    id: str
    raw_name: str
    name: str
    original_name: Optional[str]
    arguments: str = ""


def _parse_partial_arguments(text: str) -> object:
    """
    best-effort 解析尚未写完的 arguments（末尾未闭合的字符串保留已接收部分）。

    异常：
    - `ValueError`：文本不是任何合法 JSON 的前缀，或嵌套超过解析器深度上限
    """

    return from_json(text, allow_partial="trailing-strings")


def _parse_final_arguments(acc: _Accumulator) -> Dict[str, object]:
    """严格解析完整 arguments（空文本视为 `{}`；必须是 JSON object）。"""

    text = acc.arguments
    if not text.strip():
        return {}
    try:
        parsed = json.loads(text, strict=False)
    except json.JSONDecodeError as e:
        raise ToolArgumentsParseError(call_id=acc.id, name=acc.raw_name, reason=e.msg) from e
    except RecursionError as e:
        raise ToolArgumentsParseError(call_id=acc.id, name=acc.raw_name, reason="arguments nested too deeply") from e
    if not isinstance(parsed, dict):
        raise ToolArgumentsParseError(call_id=acc.id, name=acc.raw_name, reason="arguments must be a JSON object")
    return parsed


class ToolCallAccumulator:
    """
    按 call id 累积 arguments，并在中间态/终态产出动作对象。

    参数：
    - resolver：名称解析器（别名、builtin/custom/integration）
    - arguments：参数映射注册表
    """

    def __init__(
        self,
        *,
        resolver: Optional[ToolNameResolver] = None,
        arguments: Optional[ArgumentMapperRegistry] = None,
    ) -> None:
        """绑定解析依赖并创建空缓冲表。"""

        self._resolver = resolver or ToolNameResolver()
        self._arguments = arguments or default_argument_registry()
        self._accumulators: Dict[str, _Accumulator] = {}

    def __len__(self) -> int:
        """当前在途的 call 数。"""

        return len(self._accumulators)

    def __contains__(self, call_id: object) -> bool:
        """是否存在该 call id 的缓冲。"""

        return call_id in self._accumulators

    def start(self, call_id: str, name: str) -> bool:
        """
        开始一个 call（已存在则为 no-op）。

        返回：
        - 是否新建了缓冲
        """

        if call_id in self._accumulators:
            logger.debug("Duplicate start for tool call %s ignored", call_id)
            return False
        cleaned = clean_tool_name(name)
        canonical, original = self._resolver.canonicalize(cleaned)
        self._accumulators[call_id] = _Accumulator(
            id=call_id,
            raw_name=cleaned,
            name=canonical,
            original_name=original,
        )
        return True

    def append_chunk(self, call_id: str, text: str) -> Optional[ToolUse]:
        """
        追加 arguments 分片，并尝试产出中间态 `ToolUse`。

        返回：
        - `ToolUse(partial=True)`；未知 id、integration 动作、部分解析失败、名称未知时返回 None
        """

        acc = self._accumulators.get(call_id)
        if acc is None:
            logger.warning("Received tool call chunk for unknown id %s", call_id)
            return None
        acc.arguments += text

        if is_integration_tool_name(acc.name):
            return None
        try:
            parsed = _parse_partial_arguments(acc.arguments)
        except (ValueError, RecursionError) as e:
            logger.debug("Partial arguments for %s not parseable yet: %s", call_id, e)
            return None
        if not isinstance(parsed, dict):
            return None

        custom = self._resolver.is_custom(acc.name)
        if not (self._resolver.is_builtin(acc.name) or custom):
            return None
        return self._arguments.build_tool_use(
            call_id=call_id,
            name=acc.name,
            args=parsed,
            partial=True,
            custom=custom,
            original_name=acc.original_name,
        )

    def finalize(self, call_id: str) -> Optional[AnyToolUse]:
        """
        结束一个 call：严格解析、解析名称、构造最终动作对象，并删除缓冲。

        返回：
        - 最终动作对象；未知 id 时记录 warning 并返回 None

        异常（缓冲无论成功与否都会被删除）：
        - `ToolArgumentsParseError`：arguments 不是合法 JSON object
        - `ToolNameResolutionError` / `IntegrationToolNameError`：名称无法解析
        - `InvalidToolArgumentsError`：参数与该动作的已知形状不匹配
        """

        acc = self._accumulators.pop(call_id, None)
        if acc is None:
            logger.warning("Finalize requested for unknown tool call id %s", call_id)
            return None

        args = _parse_final_arguments(acc)
        resolved = self._resolver.resolve(acc.raw_name)
        if resolved.kind == "integration" and resolved.integration is not None:
            return DynamicIntegrationToolUse(
                id=call_id,
                name=acc.raw_name,
                server_name=resolved.integration.server_name,
                tool_name=resolved.integration.tool_name,
                arguments=args,
                partial=False,
            )
        return self._arguments.build_tool_use(
            call_id=call_id,
            name=resolved.name,
            args=args,
            partial=False,
            custom=resolved.kind == "custom",
            original_name=resolved.original_name,
        )

    def clear(self) -> None:
        """丢弃全部缓冲。"""

        self._accumulators.clear()


@dataclass(frozen=True)
class ToolCallUpdate:
    """
    组装器对外输出。

    kind:
    - `partial`：中间态（仅供展示，不得据此执行）
    - `final`：最终动作对象（每个完成的 call 恰好一个）
    - `rejected`：call 被丢弃（见 `error`），不得执行
    """

    kind: Literal["partial", "final", "rejected"]
    call_id: str
    tool_use: Optional[AnyToolUse] = None
    error: Optional[ToolCallError] = None


StreamItem = Union[RawToolCallChunk, ChatStreamEvent]


class ToolCallAssembler:
    """
    provider 增量 → 动作对象的组装器（每个 task 一个实例）。

    用法：
    - 同步：`begin_request()` → 逐条 `feed_chunk()` / `feed_finish_reason()` → `finish()`
    - 异步：`async for update in assembler.assemble(stream)`（内部自动 begin/finish）
    """

    def __init__(
        self,
        *,
        resolver: Optional[ToolNameResolver] = None,
        arguments: Optional[ArgumentMapperRegistry] = None,
    ) -> None:
        """创建 tracker 与 accumulator。"""

        self.tracker = RawChunkTracker()
        self.accumulator = ToolCallAccumulator(resolver=resolver, arguments=arguments)

    def begin_request(self) -> None:
        """新请求边界：清空 tracker 与 accumulator（必须调用）。"""

        self.tracker.clear()
        self.accumulator.clear()

    def feed_chunk(self, chunk: RawToolCallChunk) -> List[ToolCallUpdate]:
        """处理一条 provider 增量。"""

        return self._apply(self.tracker.process_chunk(chunk))

    def feed_finish_reason(self, finish_reason: Optional[str]) -> List[ToolCallUpdate]:
        """处理 finish_reason。"""

        return self._apply(self.tracker.process_finish_reason(finish_reason))

    def feed(self, item: StreamItem) -> List[ToolCallUpdate]:
        """处理原始增量或 SSE 解析事件（文本增量与 completed 忽略）。"""

        if isinstance(item, RawToolCallChunk):
            return self.feed_chunk(item)
        if item.type == "tool_call_chunk" and item.chunk is not None:
            return self.feed_chunk(item.chunk)
        if item.type == "finish":
            return self.feed_finish_reason(item.finish_reason)
        return []

    def finish(self) -> List[ToolCallUpdate]:
        """流结束：补发 end 并产出剩余的最终动作对象。"""

        updates = self._apply(self.tracker.finalize())
        self.accumulator.clear()
        return updates

    async def assemble(
        self,
        stream: AsyncIterable[StreamItem],
        *,
        cancel_checker: Optional[Callable[[], bool]] = None,
    ) -> AsyncIterator[ToolCallUpdate]:
        """
        消费一个有序的异步增量序列并产出组装结果。

        参数：
        - stream：`RawToolCallChunk` 或 `ChatStreamEvent` 的异步序列
        - cancel_checker：返回 True 时停止消费（不会补发 end，未完成的 call 不产出）
        """

        self.begin_request()
        async for item in stream:
            if cancel_checker is not None and cancel_checker():
                logger.info("Tool call assembly cancelled; %d call(s) left unfinished", len(self.accumulator))
                return
            for update in self.feed(item):
                yield update
        for update in self.finish():
            yield update

    def _apply(self, events: List[ToolCallStreamEvent]) -> List[ToolCallUpdate]:
        """把 tracker 事件应用到 accumulator。"""

        updates: List[ToolCallUpdate] = []
        for ev in events:
            if ev.type == "tool_call_start":
                self.accumulator.start(ev.id, ev.name or "")
            elif ev.type == "tool_call_delta":
                partial = self.accumulator.append_chunk(ev.id, ev.delta or "")
                if partial is not None:
                    updates.append(ToolCallUpdate(kind="partial", call_id=ev.id, tool_use=partial))
            elif ev.type == "tool_call_end":
                try:
                    final = self.accumulator.finalize(ev.id)
                except ToolCallError as e:
                    logger.warning("Dropping tool call %s: %s", ev.id, e)
                    updates.append(ToolCallUpdate(kind="rejected", call_id=ev.id, error=e))
                    continue
                if final is not None:
                    updates.append(ToolCallUpdate(kind="final", call_id=ev.id, tool_use=final))
        return updates
