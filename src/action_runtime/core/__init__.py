"""Core：错误分类与共享工具函数。"""

from __future__ import annotations

__all__ = ["errors", "utils"]
