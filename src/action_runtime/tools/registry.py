"""
ToolRegistry：工具注册表与派发（dispatch）。

本模块提供：
- 注册：`register/get_spec/list_specs`
- 执行：`dispatch(ToolCall) -> ToolResult`、`dispatch_tool_use(ToolUse) -> ToolResult`
- 执行上下文：workspace 内路径解析、task 目录、命令输出存储、编辑失败计数
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional

from action_runtime.config.loader import ActionRuntimeConfig
from action_runtime.core.errors import UserError
from action_runtime.edits.replace import EditFailureTracker
from action_runtime.output.store import CommandOutputStore
from action_runtime.tools.names import BUILTIN_TOOL_NAMES, DEFAULT_TOOL_ALIASES, ToolNameResolver
from action_runtime.tools.protocol import ToolCall, ToolResult, ToolSpec, ToolUse

logger = logging.getLogger(__name__)

ToolHandler = Callable[[ToolCall, "ToolExecutionContext"], ToolResult]


@dataclass
class ToolExecutionContext:
    """
    Tool 执行上下文（派发层注入）。

    字段：
    - workspace_root：相对路径解析基准目录
    - task_dir：task 私有目录（命令输出 artifact 位于其下）
    - config：运行时配置
    - edit_failures：按文件的编辑失败计数（为 None 时按配置创建）
    - output_store：命令输出存储（为 None 时按 task_dir + 配置创建）
    - cancel_checker：可选；返回 True 表示调用方已取消
    """

    workspace_root: Path
    task_dir: Path
    config: ActionRuntimeConfig = field(default_factory=ActionRuntimeConfig)
    edit_failures: Optional[EditFailureTracker] = None
    output_store: Optional[CommandOutputStore] = None
    cancel_checker: Optional[Callable[[], bool]] = None

    def __post_init__(self) -> None:
        """按配置补齐可选依赖。"""

        self.workspace_root = Path(self.workspace_root)
        self.task_dir = Path(self.task_dir)
        if self.edit_failures is None:
            self.edit_failures = EditFailureTracker(escalate_after=self.config.edits.escalate_after_failures)
        if self.output_store is None:
            self.output_store = CommandOutputStore.for_task(self.task_dir, self.config)

    def resolve_path(self, path: str) -> Path:
        """
        将用户提供的 path 解析为绝对路径，并限制在 workspace_root 下。

        参数：
        - path：相对或绝对路径

        返回：
        - 解析后的绝对路径（已 resolve）

        异常：
        - `UserError`：当路径逃逸 workspace_root 时抛出
        """

        root = self.workspace_root.resolve()
        p = Path(path)
        if not p.is_absolute():
            p = root / p
        p = p.resolve()
        if not p.is_relative_to(root):
            raise UserError(f"禁止访问 workspace_root 之外的路径：{p}")
        return p

    def relative_path(self, path: Path) -> str:
        """workspace 内的相对路径（POSIX 形式，用作编辑失败计数的 key）。"""

        return path.relative_to(self.workspace_root.resolve()).as_posix()


class ToolRegistry:
    """工具注册表。"""

    def __init__(self, *, ctx: ToolExecutionContext) -> None:
        """创建注册表并绑定执行上下文。"""

        self._ctx = ctx
        self._specs: Dict[str, ToolSpec] = {}
        self._handlers: Dict[str, ToolHandler] = {}

    @property
    def ctx(self) -> ToolExecutionContext:
        """执行上下文。"""

        return self._ctx

    def register(self, spec: ToolSpec, handler: ToolHandler, *, override: bool = False) -> None:
        """
        注册工具。

        参数：
        - spec：工具规格
        - handler：工具执行函数
        - override：是否允许覆盖同名工具；默认 False（重复注册抛 UserError）
        """

        name = spec.name
        if name in self._specs and not override:
            raise UserError(f"重复注册 tool：{name}")
        self._specs[name] = spec
        self._handlers[name] = handler

    def get_spec(self, name: str) -> ToolSpec:
        """获取工具规格；不存在则抛 `UserError`。"""

        try:
            return self._specs[name]
        except KeyError as e:
            raise UserError(f"未注册的 tool：{name}") from e

    def list_specs(self) -> List[ToolSpec]:
        """按注册顺序返回所有工具规格。"""

        return list(self._specs.values())

    def custom_tool_names(self) -> List[str]:
        """已注册、且不属于 builtin 名称集合的工具名（即 custom 工具）。"""

        return [name for name in self._specs if name not in BUILTIN_TOOL_NAMES]

    def name_resolver(self) -> ToolNameResolver:
        """
        构造与本注册表联动的名称解析器。

        说明：
        - custom 名称集合按调用时的注册状态动态读取，并合并配置中的 `tools.custom`
        - 配置中的 `tools.aliases` 覆盖内置别名表中的同名条目
        """

        aliases = {**DEFAULT_TOOL_ALIASES, **self._ctx.config.tools.aliases}
        configured = list(self._ctx.config.tools.custom)
        return ToolNameResolver(aliases=aliases, custom_names=lambda: [*self.custom_tool_names(), *configured])

    def dispatch(self, call: ToolCall) -> ToolResult:
        """
        派发执行一个 ToolCall。

        返回：
        - ToolResult（handler 抛出的 UserError 映射为 validation，其它异常映射为 unknown）
        """

        handler = self._handlers.get(call.name)
        if handler is None:
            logger.warning("Dispatch requested for unregistered tool %r (call %s)", call.name, call.call_id)
            return ToolResult.error_payload(
                error_kind="not_found",
                stderr=f"未注册的 tool：{call.name}",
                data={"tool": call.name},
            )

        logger.debug("Dispatching tool %r (call %s)", call.name, call.call_id)
        try:
            result = handler(call, self._ctx)
        except UserError as e:
            result = ToolResult.error_payload(error_kind="validation", stderr=str(e))
        except Exception as e:  # pragma: no cover（兜底：handler 缺陷不得中断 turn）
            logger.exception("Tool %r crashed (call %s)", call.name, call.call_id)
            result = ToolResult.error_payload(error_kind="unknown", stderr=str(e))
        return result

    def dispatch_tool_use(self, tool_use: ToolUse) -> ToolResult:
        """
        派发一个最终态 `ToolUse`。

        异常：
        - `ValueError`：tool_use 仍是 partial
        """

        return self.dispatch(tool_use.to_tool_call())
