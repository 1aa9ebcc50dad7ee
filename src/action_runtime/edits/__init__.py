"""
文件编辑：三级模糊替换引擎与按文件的失败计数。
"""

from __future__ import annotations

from action_runtime.edits.replace import (
    DEFAULT_STRATEGIES,
    EditFailureTracker,
    EditMatchResult,
    EditPlan,
    ExactStrategy,
    TokenStrategy,
    WhitespaceTolerantStrategy,
    apply_replacement,
    plan_edit,
)

__all__ = [
    "DEFAULT_STRATEGIES",
    "EditFailureTracker",
    "EditMatchResult",
    "EditPlan",
    "ExactStrategy",
    "TokenStrategy",
    "WhitespaceTolerantStrategy",
    "apply_replacement",
    "plan_edit",
]
