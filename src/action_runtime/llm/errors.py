"""
LLM 错误类型（可分类、可回归）。

说明：
- 这些异常用于模块间传递“可程序化处理”的失败原因；
- 上层（agent loop）决定如何恢复，本包不做重试/退避。
"""

from __future__ import annotations

from action_runtime.core.errors import LlmError


class ContextLengthExceededError(LlmError):
    """
    上下文长度超限（finish_reason=length）。

    说明：
    - 该错误通常不可通过“重试同一请求”解决；
    - 流中已累积但未结束的 tool call 不得执行，调用方应在下一次请求前清空组装状态。
    """
