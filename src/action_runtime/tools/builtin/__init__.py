"""
内置工具（builtin tools）。

本包提供：
- edit_file：三级模糊替换（创建/编辑文件）
- read_command_output：分页/搜索读取命令输出 artifact

其余 builtin 动作（execute_command、read_file 等）由宿主实现并通过 `ToolRegistry.register` 注册；
本包只负责与编辑引擎、命令输出存储直接相关的两个工具。
"""

from __future__ import annotations

from action_runtime.tools.builtin.edit_file import EDIT_FILE_SPEC, edit_file
from action_runtime.tools.builtin.read_command_output import READ_COMMAND_OUTPUT_SPEC, read_command_output
from action_runtime.tools.registry import ToolRegistry

__all__ = ["register_builtin_tools"]

_BUILTIN_TOOL_ENTRIES = [
    (EDIT_FILE_SPEC, edit_file),
    (READ_COMMAND_OUTPUT_SPEC, read_command_output),
]


def register_builtin_tools(registry: ToolRegistry, *, override: bool = False) -> None:
    """
    注册 builtin tools 集合。

    参数：
    - registry：工具注册表
    - override：是否允许覆盖同名工具（默认 False）
    """

    for spec, handler in _BUILTIN_TOOL_ENTRIES:
        registry.register(spec, handler, override=override)
