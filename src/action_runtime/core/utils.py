"""共享工具函数（UTF-8 字节切分、字节数格式化）。"""
from __future__ import annotations


def _is_continuation_byte(value: int) -> bool:
    """判断是否为 UTF-8 续字节（10xxxxxx）。"""
    return (value & 0xC0) == 0x80


def utf8_head_cut(data: bytes, max_bytes: int) -> int:
    """
    返回不超过 `max_bytes` 的切分位置，保证 `data[:cut]` 不会截断多字节字符。

    说明：
    - 若 `max_bytes >= len(data)`，直接返回 `len(data)`；
    - 否则向前回退，直到切分点落在字符起始字节上。
    """
    if max_bytes >= len(data):
        return len(data)
    cut = max(max_bytes, 0)
    while cut > 0 and _is_continuation_byte(data[cut]):
        cut -= 1
    return cut


def utf8_tail_start(data: bytes, start: int) -> int:
    """返回不小于 `start` 的起点，保证 `data[start:]` 不以续字节开头。"""
    pos = max(start, 0)
    while pos < len(data) and _is_continuation_byte(data[pos]):
        pos += 1
    return pos


def format_bytes(size: int) -> str:
    """把字节数格式化为 `N bytes` / `x.xKB` / `x.xMB`。"""
    if size < 1024:
        return f"{size} bytes"
    if size < 1024 * 1024:
        return f"{size / 1024:.1f}KB"
    return f"{size / (1024 * 1024):.1f}MB"
