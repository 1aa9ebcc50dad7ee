"""
Tool 协议（流式输入、解析产物、执行 envelope）。

本模块定义“可实现级”的最小协议：
- RawToolCallChunk：provider 的 tool_call 增量（按 index 归属，id/name 可能稍后才出现）
- ToolCallStreamEvent：RawChunkTracker 产出的 start/delta/end 事件
- ToolUse / DynamicIntegrationToolUse：解析完成（或部分解析）的动作对象，交给外部 dispatcher
- ToolSpec / ToolCall / ToolResultPayload / ToolResult：注册表与工具执行的统一结构
- tool_spec_to_openai_tool：将 ToolSpec 映射为 chat.completions tools[] 形状
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


@dataclass(frozen=True)
class RawToolCallChunk:
    """
    provider 的单条 tool_call 增量。

    字段：
    - index：流内位置（同一个 call 的所有增量共享 index）
    - id：call 标识（通常只在首个增量出现）
    - name：工具名（可能晚于 id 出现，也可能分多次出现）
    - arguments：arguments JSON 文本分片
    """

    index: int
    id: Optional[str] = None
    name: Optional[str] = None
    arguments: Optional[str] = None


ToolCallStreamEventType = Literal["tool_call_start", "tool_call_delta", "tool_call_end"]


@dataclass(frozen=True)
class ToolCallStreamEvent:
    """
    tool call 的流式生命周期事件。

    type:
    - `tool_call_start`：name 已知，call 开始（每个 call 恰好一次）
    - `tool_call_delta`：arguments 分片（start 之后，按原始顺序）
    - `tool_call_end`：call 结束（finish_reason=tool_calls 或 finalize）
    """

    type: ToolCallStreamEventType
    id: str
    name: Optional[str] = None
    delta: Optional[str] = None


class ToolUse(BaseModel):
    """
    解析后的动作对象（builtin 或 custom）。

    字段：
    - id：call 标识
    - name：规范动作名（已做清洗与别名解析）
    - params：参数的字符串形式（仅包含已知参数名；给展示层/旧协议使用）
    - native_args：类型化参数记录（由参数映射表构造；partial 时可能为 None）
    - partial：True 表示流式中间态，仅供展示，不得据此产生副作用
    - original_name：模型使用了别名时，记录其原始名称
    - used_legacy_format：参数使用了旧形状（例如 read_file 的旧区间写法）
    """

    model_config = ConfigDict(extra="forbid")

    id: str
    name: str
    params: Dict[str, str] = Field(default_factory=dict)
    native_args: Optional[Any] = None
    partial: bool = False
    original_name: Optional[str] = None
    used_legacy_format: bool = False

    def to_tool_call(self) -> "ToolCall":
        """
        转换为 `ToolCall`，供 `ToolRegistry.dispatch` 执行。

        约束：
        - partial=True 的对象不得执行，调用会抛 `ValueError`
        """

        if self.partial:
            raise ValueError(f"partial tool use cannot be dispatched: {self.id}")
        args: Dict[str, Any]
        if isinstance(self.native_args, BaseModel):
            args = self.native_args.model_dump(exclude_none=True, exclude={"legacy_format"})
        elif isinstance(self.native_args, dict):
            args = dict(self.native_args)
        else:
            args = {}
        return ToolCall(call_id=self.id, name=self.name, args=args)


class DynamicIntegrationToolUse(BaseModel):
    """
    integration（外部 server/tool）动作对象。

    字段：
    - name：模型输出的名称（仅做清洗；回放历史时需与模型看到的名称一致）
    - server_name / tool_name：解码后的原始名称（`___` 还原为 `-`）
    - arguments：完整 JSON object（integration 只在 finalize 时产出）
    """

    model_config = ConfigDict(extra="forbid")

    id: str
    name: str
    server_name: str
    tool_name: str
    arguments: Dict[str, Any] = Field(default_factory=dict)
    partial: bool = False


AnyToolUse = Union[ToolUse, DynamicIntegrationToolUse]


class ToolSpec(BaseModel):
    """
    Tool 注册信息（function calling 兼容）。

    字段：
    - name：工具名（全局唯一，稳定）
    - description：工具说明
    - parameters：JSON Schema（必须为 object schema）
    - requires_approval：可选；提示该 tool 通常需要审批（最终由外部 approval 流程决定）
    - idempotency：可选；用于审计（safe|unsafe|unknown）
    """

    model_config = ConfigDict(extra="forbid")

    name: str
    description: str
    parameters: Dict[str, Any] = Field(default_factory=dict)
    requires_approval: Optional[bool] = None
    idempotency: Optional[str] = None


class ToolCall(BaseModel):
    """
    Tool 调用（派发输入）。

    字段：
    - call_id：本次调用的唯一 id（用于关联 tool output 回注）
    - name：工具名
    - args：参数 dict
    - raw_arguments：原始 arguments 字符串（可选；用于 debug/错误恢复）
    """

    model_config = ConfigDict(extra="forbid")

    call_id: str
    name: str
    args: Dict[str, Any] = Field(default_factory=dict)
    raw_arguments: Optional[str] = None


class ToolResultPayload(BaseModel):
    """
    Tool 执行结果 payload（统一输出封装）。

    说明：
    - 回注模型时作为 JSON 字符串写入 tool message content；
    - `data` 承载结构化结果（例如 edit_file 的新内容、read_command_output 的读取区间）。
    """

    model_config = ConfigDict(extra="forbid")

    ok: bool
    stdout: str = ""
    stderr: str = ""
    exit_code: Optional[int] = None
    duration_ms: int = Field(default=0, ge=0)
    truncated: bool = False
    data: Optional[Dict[str, Any]] = None
    error_kind: Optional[str] = None
    retryable: bool = False


class ToolResult(BaseModel):
    """
    Tool 执行结果（统一 envelope）。

    字段：
    - ok：是否成功
    - content：回注给 LLM 的内容（JSON 字符串）
    - error_kind：错误分类（validation/not_found/permission/conflict/unknown...）
    - message：面向开发者/调用方的一句话说明
    - details：结构化结果（payload 的 object 形式）
    """

    model_config = ConfigDict(extra="forbid")

    ok: bool
    content: str
    error_kind: Optional[str] = None
    message: Optional[str] = None
    details: Optional[Dict[str, Any]] = None

    @classmethod
    def from_payload(cls, payload: ToolResultPayload, *, message: Optional[str] = None) -> "ToolResult":
        """
        从 ToolResultPayload 构造 ToolResult。

        参数：
        - payload：统一结构化结果（会被序列化为 JSON 字符串写入 content）
        - message：可选的一句话说明
        """

        obj = payload.model_dump(exclude_none=True)
        return cls(
            ok=payload.ok,
            content=json.dumps(obj, ensure_ascii=False),
            error_kind=payload.error_kind,
            message=message,
            details=obj,
        )

    @classmethod
    def ok_payload(
        cls,
        *,
        stdout: str = "",
        data: Optional[Dict[str, Any]] = None,
        duration_ms: int = 0,
        truncated: bool = False,
    ) -> "ToolResult":
        """便捷构造：成功结果。"""

        return cls.from_payload(
            ToolResultPayload(
                ok=True,
                stdout=stdout,
                stderr="",
                exit_code=0,
                duration_ms=duration_ms,
                truncated=truncated,
                data=data,
            )
        )

    @classmethod
    def error_payload(
        cls,
        *,
        error_kind: str,
        stderr: str,
        data: Optional[Dict[str, Any]] = None,
        duration_ms: int = 0,
        retryable: bool = False,
    ) -> "ToolResult":
        """便捷构造：失败结果（错误信息放入 stderr）。"""

        return cls.from_payload(
            ToolResultPayload(
                ok=False,
                stdout="",
                stderr=stderr,
                exit_code=None,
                duration_ms=duration_ms,
                truncated=False,
                data=data,
                error_kind=error_kind,
                retryable=retryable,
            )
        )


def tool_spec_to_openai_tool(spec: ToolSpec) -> Dict[str, Any]:
    """
    将 `ToolSpec` 映射为 OpenAI chat.completions 的 tools[] entry。

    返回形状（function calling）：
    {
      "type": "function",
      "function": { "name": "...", "description": "...", "parameters": {...} }
    }
    """

    return {
        "type": "function",
        "function": {
            "name": spec.name,
            "description": spec.description,
            "parameters": spec.parameters,
        },
    }
