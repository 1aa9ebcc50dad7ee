"""
action_runtime 内部错误分类（异常类型）。

说明：
- 流式解析、名称解析、参数映射、编辑引擎、artifact 读取各自有稳定的错误码（英文大写下划线）。
- 对外工具返回建议使用 `ToolResult.error_kind`，异常用于模块间控制流与测试断言。
- 编辑类错误额外携带 `formatted`：面向模型的错误文本（包含 `<error_details>` 与恢复建议）。
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict


class ActionRuntimeError(Exception):
    """action_runtime 内部错误基类（不建议直接抛出）。"""


@dataclass(frozen=True)
class FrameworkIssue:
    """框架结构化问题对象（可用于诊断报告中的 errors/warnings）。"""

    code: str
    message: str
    details: Dict[str, Any]


class FrameworkError(ActionRuntimeError):
    """框架层结构化错误（英文 `code/message/details`）。"""

    def __init__(self, *, code: str, message: str, details: Dict[str, Any] | None = None) -> None:
        """创建框架错误。

        参数：
        - `code`：稳定错误码（英文大写下划线）
        - `message`：英文错误消息
        - `details`：结构化上下文信息
        """

        super().__init__(message)
        self.code = code
        self.message = message
        self.details: Dict[str, Any] = details or {}

    def __str__(self) -> str:
        """返回用于日志的字符串表示。"""

        return f"{self.code}: {self.message}"

    def to_issue(self) -> FrameworkIssue:
        """把异常转换为可序列化问题对象。"""

        return FrameworkIssue(code=self.code, message=self.message, details=dict(self.details))


class UserError(FrameworkError):
    """用户输入/配置导致的错误（本质属于框架错误）。"""

    def __init__(self, message: str, *, code: str = "USER_ERROR", details: Dict[str, Any] | None = None) -> None:
        """创建 `UserError`。

        参数：
        - `message`：可读错误信息
        - `code`：错误码（默认 `USER_ERROR`）
        - `details`：结构化补充信息
        """

        super().__init__(code=code, message=message, details=details or {})


class LlmError(ActionRuntimeError):
    """LLM 通信/协议错误（wire 解析、finish_reason 异常等）。"""


# --- tool call 组装 ---


class ToolCallError(FrameworkError):
    """tool call 组装失败的基类：该 call 会被丢弃，不得执行。"""


class ToolNameResolutionError(ToolCallError):
    """模型给出的 tool 名无法解析为 builtin/custom/integration 中的任何一个（fail-closed）。"""

    def __init__(self, name: str, *, details: Dict[str, Any] | None = None) -> None:
        """创建名称解析错误。

        参数：
        - `name`：模型原始输出的 tool 名
        - `details`：可选补充信息（例如清洗/别名解析后的名称）
        """

        merged = {"name": name, **(details or {})}
        super().__init__(code="UNKNOWN_TOOL", message=f"Unknown tool name: {name!r}", details=merged)


class IntegrationToolNameError(ToolCallError):
    """integration 复合名格式错误（缺前缀、缺分隔符、server/tool 为空）。"""

    def __init__(self, name: str) -> None:
        """创建 integration 名称错误。"""

        super().__init__(
            code="INVALID_INTEGRATION_TOOL_NAME",
            message=f"Invalid integration tool name format: {name!r}",
            details={"name": name},
        )


class ToolArgumentsParseError(ToolCallError):
    """完整 arguments 文本不是合法 JSON object（finalize 阶段严格解析失败）。"""

    def __init__(self, *, call_id: str, name: str, reason: str) -> None:
        """创建 arguments 解析错误。"""

        super().__init__(
            code="MALFORMED_TOOL_ARGUMENTS",
            message=f"Malformed arguments for tool {name!r}: {reason}",
            details={"call_id": call_id, "name": name},
        )


class InvalidToolArgumentsError(ToolCallError):
    """arguments 可解析，但与该 tool 的任何已知形状都不匹配。"""

    def __init__(self, name: str, *, details: Dict[str, Any] | None = None) -> None:
        """创建参数形状错误。"""

        super().__init__(
            code="INVALID_TOOL_ARGUMENTS",
            message=f"Invalid arguments for tool {name!r}: the payload matches no known shape",
            details={"name": name, **(details or {})},
        )


# --- 编辑引擎 ---


class EditError(FrameworkError):
    """
    编辑失败的基类。

    字段：
    - `formatted`：回注给模型的完整错误文本（首行摘要 + `<error_details>` 块）
    """

    def __init__(self, *, code: str, message: str, formatted: str, details: Dict[str, Any] | None = None) -> None:
        """创建编辑错误。"""

        super().__init__(code=code, message=message, details=details)
        self.formatted = formatted


class EditNoChangesError(EditError):
    """old_string 与 new_string（换行归一化后）完全相同。"""


class EditFileExistsError(EditError):
    """old_string 为空（表示创建文件），但目标文件已存在。"""


class EditFileNotFoundError(EditError):
    """old_string 非空，但目标文件不存在。"""


class EditNoMatchError(EditError):
    """三种匹配策略都没有找到任何匹配。"""


class EditOccurrenceMismatchError(EditError):
    """找到了匹配，但没有任何策略的匹配次数等于 expected_replacements。"""


# --- artifact ---


class ArtifactError(FrameworkError):
    """命令输出 artifact 访问错误的基类。"""


class InvalidArtifactIdError(ArtifactError):
    """artifact_id 不符合 `cmd-<digits>.txt`（在任何文件系统访问之前拒绝）。"""

    def __init__(self, artifact_id: str) -> None:
        """创建非法 artifact id 错误。"""

        super().__init__(
            code="INVALID_ARTIFACT_ID",
            message=(
                f'Invalid artifact_id format: "{artifact_id}". '
                'Expected format: cmd-{timestamp}.txt (e.g., "cmd-1706119234567.txt")'
            ),
            details={"artifact_id": artifact_id},
        )


class ArtifactNotFoundError(ArtifactError):
    """artifact 文件不存在。"""

    def __init__(self, artifact_id: str) -> None:
        """创建 artifact 不存在错误。"""

        super().__init__(
            code="ARTIFACT_NOT_FOUND",
            message=(
                f'Artifact not found: "{artifact_id}". Please verify the artifact_id from the command output '
                "message. Available artifacts are created when command output exceeds the preview size."
            ),
            details={"artifact_id": artifact_id},
        )


class InvalidArtifactRangeError(ArtifactError):
    """offset 不在 `[0, size)` 范围内。"""

    def __init__(self, *, artifact_id: str, offset: int, size: int) -> None:
        """创建非法读取区间错误。"""

        super().__init__(
            code="INVALID_ARTIFACT_RANGE",
            message=(
                f"Invalid offset: {offset}. File size is {size} bytes. "
                f"Offset must be between 0 and {max(size - 1, 0)}."
            ),
            details={"artifact_id": artifact_id, "offset": offset, "size": size},
        )
