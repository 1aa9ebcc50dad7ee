"""
内置工具：edit_file（三级模糊替换）。

语义：
- old_string 为空：创建新文件（文件已存在则拒绝）
- old_string 非空：按 exact → whitespace-tolerant → token 顺序匹配并替换
- 同一文件连续失败达到阈值时，在结果中标记 `escalate=true`（第一次失败只记录）
"""

from __future__ import annotations

import logging
import time
from typing import Optional

from pydantic import BaseModel, ConfigDict, ValidationError

from action_runtime.core.errors import EditError, UserError
from action_runtime.edits.replace import plan_edit
from action_runtime.tools.protocol import ToolCall, ToolResult, ToolSpec
from action_runtime.tools.registry import ToolExecutionContext

logger = logging.getLogger(__name__)

_ERROR_KIND_BY_CODE = {
    "EDIT_FILE_NOT_FOUND": "not_found",
    "EDIT_FILE_EXISTS": "conflict",
}


class _EditFileArgs(BaseModel):
    """edit_file 输入参数。"""

    model_config = ConfigDict(extra="forbid")

    file_path: str
    old_string: str = ""
    new_string: str = ""
    expected_replacements: Optional[int] = None


EDIT_FILE_SPEC = ToolSpec(
    name="edit_file",
    description=(
        "Replace text in a file. old_string is matched exactly first, then with whitespace tolerance, "
        "then token by token. An empty old_string creates a new file containing new_string."
    ),
    parameters={
        "type": "object",
        "properties": {
            "file_path": {"type": "string", "description": "Path of the file to edit (relative to the workspace)"},
            "old_string": {"type": "string", "description": "Text to replace; empty to create a new file"},
            "new_string": {"type": "string", "description": "Replacement text (inserted literally)"},
            "expected_replacements": {
                "type": "integer",
                "minimum": 1,
                "description": "Number of occurrences to replace (default 1)",
            },
        },
        "required": ["file_path", "old_string", "new_string"],
        "additionalProperties": False,
    },
    requires_approval=True,
    idempotency="unsafe",
)


def _read_failure(path: str, error: Exception) -> str:
    """读取失败时回注给模型的文本。"""

    return (
        f"Failed to read file: {path}\n\n<error_details>\nRead error: {error}\n\nRecovery suggestions:\n"
        "1. Verify the file exists and is readable\n2. Check file permissions\n"
        "3. If the file may have changed, use read_file to confirm its current contents\n</error_details>"
    )


def edit_file(call: ToolCall, ctx: ToolExecutionContext) -> ToolResult:
    """
    执行 edit_file。

    返回：
    - ok=true：stdout 为一句话说明；data 含 path/created/strategy/occurrences
    - ok=false：stderr 为带 `<error_details>` 的错误文本；data.escalate 指示是否需要对用户可见地升级
    """

    start = time.monotonic()
    try:
        args = _EditFileArgs.model_validate(call.args)
    except ValidationError as e:
        return ToolResult.error_payload(error_kind="validation", stderr=str(e))
    if not args.file_path.strip():
        return ToolResult.error_payload(error_kind="validation", stderr="Missing value for required parameter 'file_path'.")

    try:
        target = ctx.resolve_path(args.file_path)
    except UserError as e:
        return ToolResult.error_payload(error_kind="permission", stderr=str(e))
    tracker = ctx.edit_failures
    if tracker is None:
        return ToolResult.error_payload(error_kind="validation", stderr="edit_file requires edit_failures tracker")
    rel = ctx.relative_path(target)

    def _fail(error_kind: str, stderr: str, code: str) -> ToolResult:
        """记录失败次数并构造错误结果。"""

        escalate = tracker.record_failure(rel)
        if escalate:
            logger.warning("edit_file failed %d times in a row for %s: %s", tracker.failures(rel), rel, code)
        return ToolResult.error_payload(
            error_kind=error_kind,
            stderr=stderr,
            data={"path": rel, "code": code, "escalate": escalate, "consecutive_failures": tracker.failures(rel)},
            duration_ms=int((time.monotonic() - start) * 1000),
        )

    current: Optional[str] = None
    if target.exists():
        try:
            current = target.read_bytes().decode("utf-8")
        except (OSError, UnicodeDecodeError) as e:
            return _fail("unknown", _read_failure(str(target), e), "EDIT_READ_FAILED")

    try:
        plan = plan_edit(str(target), current, args.old_string, args.new_string, args.expected_replacements)
    except EditError as e:
        return _fail(_ERROR_KIND_BY_CODE.get(e.code, "validation"), e.formatted, e.code)

    duration_ms = int((time.monotonic() - start) * 1000)
    if not plan.changed:
        tracker.reset(rel)
        return ToolResult.ok_payload(stdout=f"No changes needed for '{rel}'", data={"path": rel}, duration_ms=duration_ms)

    try:
        if plan.created:
            target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(plan.new_content.encode("utf-8"))
    except OSError as e:
        return ToolResult.error_payload(error_kind="unknown", stderr=f"Failed to write file: {target}: {e}")

    tracker.reset(rel)
    if plan.created:
        message = f"Created new file: {rel}"
        data = {"path": rel, "created": True}
    else:
        assert plan.match is not None
        message = (
            f"Applied edit to {rel} using {plan.match.strategy} matching "
            f"({plan.match.occurrence_count} replacement(s))"
        )
        data = {
            "path": rel,
            "created": False,
            "strategy": plan.match.strategy,
            "occurrences": plan.match.occurrence_count,
        }
    return ToolResult.ok_payload(stdout=message, data=data, duration_ms=int((time.monotonic() - start) * 1000))
