"""
内置工具：read_command_output（读取被截断命令的完整输出）。

两种模式：
- 分页：`offset` + `limit`（字节），返回带行号的区间
- 搜索：`search`（大小写不敏感正则；非法正则按字面匹配），返回命中行
"""

from __future__ import annotations

import time
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, ValidationError

from action_runtime.core.errors import ArtifactError, ArtifactNotFoundError
from action_runtime.tools.protocol import ToolCall, ToolResult, ToolSpec
from action_runtime.tools.registry import ToolExecutionContext


class _ReadCommandOutputArgs(BaseModel):
    """read_command_output 输入参数。"""

    model_config = ConfigDict(extra="forbid")

    artifact_id: str
    search: Optional[str] = None
    offset: int = 0
    limit: Optional[int] = None


READ_COMMAND_OUTPUT_SPEC = ToolSpec(
    name="read_command_output",
    description=(
        "Read the full output of a command whose output was truncated. "
        "Use offset/limit to page through it, or search to find matching lines."
    ),
    parameters={
        "type": "object",
        "properties": {
            "artifact_id": {"type": "string", "description": 'Artifact file name, e.g. "cmd-1706119234567.txt"'},
            "search": {"type": "string", "description": "Case-insensitive regex; only matching lines are returned"},
            "offset": {"type": "integer", "minimum": 0, "description": "Byte offset to start reading from (default 0)"},
            "limit": {"type": "integer", "minimum": 1, "description": "Maximum bytes to return (default 40KB)"},
        },
        "required": ["artifact_id"],
        "additionalProperties": False,
    },
    requires_approval=False,
    idempotency="safe",
)


def read_command_output(call: ToolCall, ctx: ToolExecutionContext) -> ToolResult:
    """
    执行 read_command_output。

    返回：
    - ok=true：stdout 为带 header 的文本；data 含读取区间与总大小
    - ok=false：validation（id/区间非法）/ not_found（artifact 不存在）/ unknown（I/O 错误）
    """

    start = time.monotonic()
    try:
        args = _ReadCommandOutputArgs.model_validate(call.args)
    except ValidationError as e:
        return ToolResult.error_payload(error_kind="validation", stderr=str(e))
    if not args.artifact_id:
        return ToolResult.error_payload(
            error_kind="validation", stderr="Error: Missing value for required parameter 'artifact_id'."
        )

    if ctx.output_store is None:
        return ToolResult.error_payload(error_kind="validation", stderr="read_command_output requires output_store")
    reader = ctx.output_store.reader
    data: Dict[str, Any]
    try:
        if args.search:
            found = reader.search(args.artifact_id, args.search, limit=args.limit)
            stdout = found.content
            data = {
                "artifact_id": args.artifact_id,
                "read_start": 0,
                "read_end": found.total_size,
                "total_bytes": found.total_size,
                "search_pattern": args.search,
                "match_count": found.match_count,
            }
            truncated = found.hit_limit
        else:
            page = reader.read(args.artifact_id, offset=args.offset, limit=args.limit)
            stdout = page.content
            data = {
                "artifact_id": args.artifact_id,
                "read_start": page.start,
                "read_end": page.end,
                "total_bytes": page.total_size,
            }
            truncated = page.truncated
    except ArtifactError as e:
        kind = "not_found" if isinstance(e, ArtifactNotFoundError) else "validation"
        return ToolResult.error_payload(
            error_kind=kind,
            stderr=f"Error: {e.message}",
            data={"code": e.code, **e.details},
            duration_ms=int((time.monotonic() - start) * 1000),
        )
    except OSError as e:
        return ToolResult.error_payload(error_kind="unknown", stderr=f"Error reading command output: {e}")

    return ToolResult.ok_payload(
        stdout=stdout,
        data=data,
        truncated=truncated,
        duration_ms=int((time.monotonic() - start) * 1000),
    )
