"""
模糊文本替换引擎（exact → whitespace-tolerant → token）。

规则：
- 先把文件内容与 old/new 的换行统一为 LF，输出时恢复文件原有换行（CRLF 或 LF）；
- 按固定顺序尝试三种策略，第一个“匹配次数恰好等于 expected_replacements”的策略生效；
- 替换文本永远按字面处理（`\\1`、`\\g<0>`、`$&` 等都不会被展开）；
- 失败时区分“完全没有匹配”与“匹配次数不符”，并分别报告三种策略的计数。

文件语义（`plan_edit`）：
- old_string 为空 + 文件不存在：创建文件，内容恰好为 new_string
- old_string 为空 + 文件已存在：拒绝
- old_string 非空 + 文件不存在：拒绝
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Dict, Literal, Optional, Pattern, Tuple

from action_runtime.core.errors import (
    EditFileExistsError,
    EditFileNotFoundError,
    EditNoChangesError,
    EditNoMatchError,
    EditOccurrenceMismatchError,
)

StrategyName = Literal["exact", "whitespace-tolerant", "token-based"]

_NEVER_MATCH = re.compile(r"(?!)")
_WS_OR_TEXT_RE = re.compile(r"\s+|\S+")


def detect_line_ending(content: str) -> str:
    """内容中出现过 CRLF 即视为 CRLF 文件。"""

    return "\r\n" if "\r\n" in content else "\n"


def normalize_to_lf(content: str) -> str:
    """CRLF → LF。"""

    return content.replace("\r\n", "\n")


def restore_line_ending(content_lf: str, eol: str) -> str:
    """LF → 文件原有换行。"""

    if eol == "\n":
        return content_lf
    return content_lf.replace("\n", eol)


def count_occurrences(haystack: str, needle: str) -> int:
    """非重叠子串计数（空 needle 计 0）。"""

    if not needle:
        return 0
    return haystack.count(needle)


def build_whitespace_tolerant_pattern(needle: str) -> Pattern[str]:
    """
    构造空白容忍的正则。

    说明：
    - 含换行的空白段 → `\\s+`（容忍折行变化）
    - 不含换行的空白段 → `[\\t ]+`（不吞掉缩进前的换行）
    - 非空白段按字面转义
    """

    if not needle:
        return _NEVER_MATCH
    parts = []
    for part in _WS_OR_TEXT_RE.findall(needle):
        if part.isspace():
            parts.append(r"\s+" if "\n" in part else r"[\t ]+")
        else:
            parts.append(re.escape(part))
    return re.compile("".join(parts))


def build_token_pattern(needle: str) -> Pattern[str]:
    """把非空白 token 用 `\\s+` 连接（needle 全为空白时永不匹配）。"""

    tokens = needle.split()
    if not tokens:
        return _NEVER_MATCH
    return re.compile(r"\s+".join(re.escape(t) for t in tokens))


class ExactStrategy:
    """字面子串匹配。"""

    name: StrategyName = "exact"

    def count(self, haystack: str, needle: str) -> int:
        """非重叠出现次数。"""

        return count_occurrences(haystack, needle)

    def apply(self, haystack: str, needle: str, replacement: str) -> str:
        """替换全部出现（`str.replace` 本身即字面替换）。"""

        if not needle:
            return haystack
        return haystack.replace(needle, replacement)


class _RegexStrategy:
    """基于正则的策略基类（子类提供 `build`）。"""

    name: StrategyName

    def build(self, needle: str) -> Pattern[str]:
        """由 needle 构造正则。"""

        raise NotImplementedError

    def count(self, haystack: str, needle: str) -> int:
        """正则的非重叠匹配次数。"""

        return sum(1 for _ in self.build(needle).finditer(haystack))

    def apply(self, haystack: str, needle: str, replacement: str) -> str:
        """用函数形式替换，避免 replacement 中的反斜杠/分组引用被解释。"""

        return self.build(needle).sub(lambda _m: replacement, haystack)


class WhitespaceTolerantStrategy(_RegexStrategy):
    """空白容忍匹配（缩进与折行差异）。"""

    name: StrategyName = "whitespace-tolerant"

    def build(self, needle: str) -> Pattern[str]:
        """见 `build_whitespace_tolerant_pattern`。"""

        return build_whitespace_tolerant_pattern(needle)


class TokenStrategy(_RegexStrategy):
    """token 序列匹配（任意空白分隔）。"""

    name: StrategyName = "token-based"

    def build(self, needle: str) -> Pattern[str]:
        """见 `build_token_pattern`。"""

        return build_token_pattern(needle)


DEFAULT_STRATEGIES: Tuple[ExactStrategy | _RegexStrategy, ...] = (
    ExactStrategy(),
    WhitespaceTolerantStrategy(),
    TokenStrategy(),
)


@dataclass(frozen=True)
class EditMatchResult:
    """
    一次成功替换的结果。

    字段：
    - strategy：生效的策略名
    - occurrence_count：该策略的匹配次数（= expected_replacements）
    - applied_content：替换后的内容（已恢复原有换行）
    """

    strategy: StrategyName
    occurrence_count: int
    applied_content: str


@dataclass(frozen=True)
class EditPlan:
    """
    `plan_edit` 的输出：调用方据此写文件。

    字段：
    - path：目标路径（仅用于消息）
    - created：是否为新建文件
    - original_content：原内容（新建时为 None）
    - new_content：写入内容
    - match：替换结果（新建时为 None）
    """

    path: str
    created: bool
    original_content: Optional[str]
    new_content: str
    match: Optional[EditMatchResult] = None

    @property
    def changed(self) -> bool:
        """写入内容是否与原内容不同。"""

        return self.created or self.new_content != self.original_content


def _details_block(body: str, suggestions: Tuple[str, ...]) -> str:
    """拼接 `<error_details>` 块（正文 + 编号的恢复建议）。"""

    numbered = "\n".join(f"{i}. {s}" for i, s in enumerate(suggestions, start=1))
    return f"<error_details>\n{body}\n\nRecovery suggestions:\n{numbered}\n</error_details>"


def _format(summary: str, body: str, suggestions: Tuple[str, ...]) -> str:
    """首行摘要 + 空行 + `<error_details>` 块。"""

    return f"{summary}\n\n{_details_block(body, suggestions)}"


def _no_changes_error(path: str) -> EditNoChangesError:
    """old/new 相同。"""

    summary = f"No changes to apply for file: {path}"
    return EditNoChangesError(
        code="EDIT_NO_CHANGES",
        message=summary,
        formatted=_format(
            summary,
            "The provided old_string and new_string are identical (after normalizing line endings), "
            "so there is nothing to change.",
            (
                "Update new_string to the intended replacement text",
                "If you intended to verify file state only, use read_file instead",
            ),
        ),
        details={"path": path},
    )


def _no_match_error(path: str) -> EditNoMatchError:
    """三种策略都是 0 次。"""

    summary = f"No match found in file: {path}"
    return EditNoMatchError(
        code="EDIT_NO_MATCH",
        message=summary,
        formatted=_format(
            summary,
            "The provided old_string could not be found using exact, whitespace-tolerant, or token-based matching.",
            (
                "Use read_file to confirm the file's current contents",
                "Ensure old_string matches exactly (including whitespace/indentation and line endings)",
                "Provide more surrounding context in old_string to make the match unique",
                "If the file has changed since you constructed old_string, re-read and retry",
            ),
        ),
        details={"path": path, "exact": 0, "whitespace_tolerant": 0, "token_based": 0},
    )


def _mismatch_error(path: str, expected: int, counts: Dict[str, int]) -> EditOccurrenceMismatchError:
    """有匹配但次数不符（exact 有匹配时只报告 exact 计数）。"""

    summary = f"Occurrence count mismatch in file: {path}"
    exact = counts["exact"]
    if exact > 0:
        body = f"Expected {expected} occurrence(s) but found {exact} exact match(es)."
        suggestions: Tuple[str, ...] = (
            "Provide a more specific old_string so it matches exactly once",
            f"If you intend to replace all occurrences, set expected_replacements to {exact}",
            "Use read_file to confirm the exact text and counts",
        )
    else:
        body = (
            f"Expected {expected} occurrence(s), but matching found {counts['whitespace-tolerant']} "
            f"(whitespace-tolerant) and {counts['token-based']} (token-based)."
        )
        suggestions = (
            "Provide more surrounding context in old_string to make the match unique",
            "If multiple replacements are intended, adjust expected_replacements to the intended count",
            "Use read_file to confirm the current file contents and refine the match",
        )
    return EditOccurrenceMismatchError(
        code="EDIT_OCCURRENCE_MISMATCH",
        message=summary,
        formatted=_format(summary, body, suggestions),
        details={
            "path": path,
            "expected": expected,
            "exact": exact,
            "whitespace_tolerant": counts["whitespace-tolerant"],
            "token_based": counts["token-based"],
        },
    )


def apply_replacement(
    content: str,
    old_string: str,
    new_string: str,
    expected_replacements: Optional[int] = 1,
    *,
    path: str = "<memory>",
    strategies: Tuple[ExactStrategy | _RegexStrategy, ...] = DEFAULT_STRATEGIES,
) -> EditMatchResult:
    """
    在 content 中按策略级联替换 old_string。

    参数：
    - expected_replacements：期望替换次数（None 视为 1；小于 1 时按 1 处理）
    - path：仅用于错误消息
    - strategies：按优先级排列的策略

    异常：
    - `EditNoChangesError` / `EditNoMatchError` / `EditOccurrenceMismatchError`
    """

    expected = max(1, expected_replacements or 1)
    eol = detect_line_ending(content)
    content_lf = normalize_to_lf(content)
    old_lf = normalize_to_lf(old_string)
    new_lf = normalize_to_lf(new_string)
    if old_lf == new_lf:
        raise _no_changes_error(path)

    counts: Dict[str, int] = {}
    for strategy in strategies:
        occurrences = strategy.count(content_lf, old_lf)
        counts[strategy.name] = occurrences
        if occurrences == expected:
            applied = strategy.apply(content_lf, old_lf, new_lf)
            return EditMatchResult(
                strategy=strategy.name,
                occurrence_count=occurrences,
                applied_content=restore_line_ending(applied, eol),
            )

    if not any(counts.values()):
        raise _no_match_error(path)
    counts.setdefault("exact", 0)
    counts.setdefault("whitespace-tolerant", 0)
    counts.setdefault("token-based", 0)
    raise _mismatch_error(path, expected, counts)


def plan_edit(
    path: str,
    current_content: Optional[str],
    old_string: str,
    new_string: str,
    expected_replacements: Optional[int] = 1,
) -> EditPlan:
    """
    计算一次编辑的结果（不做文件 I/O）。

    参数：
    - current_content：文件当前内容；文件不存在时传 None

    异常：
    - `EditFileExistsError` / `EditFileNotFoundError` 以及 `apply_replacement` 的异常
    """

    if current_content is None:
        if old_string == "":
            return EditPlan(path=path, created=True, original_content=None, new_content=new_string)
        summary = f"File does not exist at path: {path}"
        raise EditFileNotFoundError(
            code="EDIT_FILE_NOT_FOUND",
            message=summary,
            formatted=_format(
                summary,
                "The specified file could not be found, so the replacement could not be performed.",
                (
                    "Verify the file path is correct",
                    "If you intended to create a new file, set old_string to an empty string",
                    "Use list_files or read_file to confirm the correct path",
                ),
            ),
            details={"path": path},
        )

    if old_string == "":
        summary = f"File already exists: {path}"
        raise EditFileExistsError(
            code="EDIT_FILE_EXISTS",
            message=summary,
            formatted=_format(
                summary,
                "You provided an empty old_string, which indicates file creation, but the target file already exists.",
                (
                    "To modify an existing file, provide a non-empty old_string that matches the current file contents",
                    "Use read_file to confirm the exact text to match",
                    "If you intended to overwrite the entire file, use write_to_file instead",
                ),
            ),
            details={"path": path},
        )

    match = apply_replacement(current_content, old_string, new_string, expected_replacements, path=path)
    return EditPlan(
        path=path,
        created=False,
        original_content=current_content,
        new_content=match.applied_content,
        match=match,
    )


class EditFailureTracker:
    """
    按文件统计连续编辑失败次数。

    说明：
    - 第一次失败只记录（模型常会自行纠正）；达到 `escalate_after` 次时 `record_failure` 返回 True
    - 成功编辑后调用 `reset(path)` 清零
    """

    def __init__(self, *, escalate_after: int = 2) -> None:
        """创建计数表。"""

        self._escalate_after = max(1, int(escalate_after))
        self._counts: Dict[str, int] = {}

    def record_failure(self, path: str) -> bool:
        """记录一次失败；返回是否需要对用户可见地升级。"""

        count = self._counts.get(path, 0) + 1
        self._counts[path] = count
        return count >= self._escalate_after

    def failures(self, path: str) -> int:
        """当前连续失败次数。"""

        return self._counts.get(path, 0)

    def reset(self, path: str) -> None:
        """清零（成功编辑后调用）。"""

        self._counts.pop(path, None)
