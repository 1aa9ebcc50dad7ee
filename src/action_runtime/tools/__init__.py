"""Tool 层（协议 + 名称解析 + 参数映射 + 流式组装 + 注册表 + 内置工具）。"""

from __future__ import annotations

from action_runtime.tools.protocol import (
    DynamicIntegrationToolUse,
    RawToolCallChunk,
    ToolCall,
    ToolCallStreamEvent,
    ToolResult,
    ToolResultPayload,
    ToolSpec,
    ToolUse,
)

__all__ = [
    "arguments",
    "names",
    "protocol",
    "registry",
    "streaming",
    "DynamicIntegrationToolUse",
    "RawToolCallChunk",
    "ToolCall",
    "ToolCallStreamEvent",
    "ToolResult",
    "ToolResultPayload",
    "ToolSpec",
    "ToolUse",
]
