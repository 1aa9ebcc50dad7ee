"""
action_runtime：coding agent 的动作执行底座。

子包：
- `tools`：流式 tool call 组装、名称解析、类型化参数映射、注册表与内置工具
- `edits`：三级模糊替换引擎
- `output`：命令输出的有界 preview、落盘与 artifact 读取
- `llm`：chat.completions SSE 解析与 httpx 流式适配
- `config`：YAML 配置加载
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
