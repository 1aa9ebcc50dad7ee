"""
Tool 名称解析：清洗、别名、integration 复合名编解码与 fail-closed 解析。

integration 复合名：`mcp--<server>--<tool>`
- server/tool 中的 `-` 编码为 `___`，使 `--` 只作为层级分隔符出现；
- 部分模型会把 `-` 改写为 `_`（`mcp__server__tool`），解析前需归一化，且不得破坏 `___` 编码；
- 复合名最长 64 字符，截断时保证前缀与两个分隔符仍然存在（可再次解析）。

解析顺序（`ToolNameResolver.resolve`）：
1) 清洗模型输出的分隔符残片（`<tool_call>` 等）
2) 别名解析（在 integration 检测之前）
3) 分隔符归一化 + integration 检测
4) builtin 精确匹配
5) custom 精确匹配
6) 否则抛 `ToolNameResolutionError`
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Callable, Iterable, Literal, Mapping, Optional, Tuple

from action_runtime.core.errors import IntegrationToolNameError, ToolNameResolutionError

INTEGRATION_TOOL_PREFIX = "mcp"
INTEGRATION_TOOL_SEPARATOR = "--"
HYPHEN_ENCODING = "___"
MAX_TOOL_NAME_LENGTH = 64

_INTEGRATION_HEAD = INTEGRATION_TOOL_PREFIX + INTEGRATION_TOOL_SEPARATOR
_MANGLED_HEAD = INTEGRATION_TOOL_PREFIX + "__"
_ENCODING_PLACEHOLDER = "\x00"
_DELIMITER_ARTIFACTS = ("<tool_call>", "</tool_call>", "<arg_value>")
_INVALID_NAME_CHARS_RE = re.compile(r"[^A-Za-z0-9_\-]")
_REPEATED_HYPHENS_RE = re.compile(r"-{2,}")
_VALID_SEGMENT_RE = re.compile(r"[A-Za-z_][A-Za-z0-9_\-]*")
_AMBIGUOUS_SEQUENCES = ("--", "_-", "-_", HYPHEN_ENCODING)

BUILTIN_TOOL_NAMES: Tuple[str, ...] = (
    "execute_command",
    "read_file",
    "read_command_output",
    "write_to_file",
    "apply_diff",
    "edit_file",
    "search_and_replace",
    "search_replace",
    "apply_patch",
    "search_files",
    "list_files",
    "codebase_search",
    "browser_action",
    "use_mcp_tool",
    "access_mcp_resource",
    "ask_followup_question",
    "ask_multiple_choice",
    "attempt_completion",
    "switch_mode",
    "new_task",
    "fetch_instructions",
    "update_todo_list",
    "run_slash_command",
    "generate_image",
    "skill",
)

# 旧名/常见变体 → 规范名；可通过配置 `tools.aliases` 覆盖或扩展。
DEFAULT_TOOL_ALIASES: Mapping[str, str] = {
    "write_file": "write_to_file",
    "create_file": "write_to_file",
    "run_command": "execute_command",
    "shell": "execute_command",
    "str_replace": "edit_file",
    "str_replace_editor": "edit_file",
    "grep": "search_files",
    "list_dir": "list_files",
    "read_output": "read_command_output",
    "ask_question": "ask_followup_question",
    "complete": "attempt_completion",
}


@dataclass(frozen=True)
class IntegrationToolName:
    """解析后的 integration 复合名（server/tool 已解码）。"""

    server_name: str
    tool_name: str


@dataclass(frozen=True)
class ResolvedToolName:
    """
    名称解析结果。

    字段：
    - kind：builtin / custom / integration
    - name：规范名（integration 为归一化后的复合名）
    - original_name：经过别名解析时记录模型原始名称
    - integration：kind=integration 时的 server/tool
    """

    kind: Literal["builtin", "custom", "integration"]
    name: str
    original_name: Optional[str] = None
    integration: Optional[IntegrationToolName] = None


def clean_tool_name(name: str) -> str:
    """
    去掉模型把协议分隔符写进 tool 名的残片。

    规则：
    - 名称中出现 `<tool_call>` / `</tool_call>` / `<arg_value>` 时，按这些标记切分，取最长片段
    - 其余情况只去掉首尾空白
    """

    text = (name or "").strip()
    if not any(marker in text for marker in _DELIMITER_ARTIFACTS):
        return text
    pieces = [text]
    for marker in _DELIMITER_ARTIFACTS:
        pieces = [part for piece in pieces for part in piece.split(marker)]
    longest = max((p.strip() for p in pieces), key=len, default="")
    return longest


def is_integration_tool_name(name: str) -> bool:
    """是否为（已归一化的）integration 复合名。"""

    return name.startswith(_INTEGRATION_HEAD)


def normalize_integration_tool_name(name: str) -> str:
    """
    把模型改写过的 `mcp__server__tool` 还原为 `mcp--server--tool`。

    说明：
    - 先把 `___`（hyphen 编码）替换为占位符，再把 `__` 还原为 `--`，最后恢复占位符；
    - 替换从左到右贪心进行：`a_____b` 视为 `a___` + `--` + `b`。
    """

    if not name.startswith(_MANGLED_HEAD):
        return name
    protected = name.replace(HYPHEN_ENCODING, _ENCODING_PLACEHOLDER)
    restored = protected.replace("__", INTEGRATION_TOOL_SEPARATOR)
    return restored.replace(_ENCODING_PLACEHOLDER, HYPHEN_ENCODING)


def is_valid_integration_name(name: str) -> bool:
    """
    判断 server/tool 原始名称是否可被无损编码。

    合法名称：以字母或下划线开头；只含字母、数字、下划线、连字符；
    不含 `--`、`___`，连字符两侧不紧邻下划线。
    """

    if not _VALID_SEGMENT_RE.fullmatch(name or ""):
        return False
    return not any(seq in name for seq in _AMBIGUOUS_SEQUENCES)


def encode_integration_name(name: str) -> str:
    """
    把 server/tool 名称编码为 API 可接受的形式（`[A-Za-z0-9_]`，`-` → `___`）。

    步骤：
    - 空白 → `_`；去掉 `[A-Za-z0-9_-]` 之外的字符
    - 连续 `-` 折叠为一个（避免凭空产生层级分隔）
    - `-` → `___`
    - 非字母/下划线开头时补 `_` 前缀；清洗后为空时返回 `_unnamed`
    """

    if not name:
        return "_"
    text = re.sub(r"\s+", "_", name)
    text = _INVALID_NAME_CHARS_RE.sub("", text)
    text = _REPEATED_HYPHENS_RE.sub("-", text)
    text = text.replace("-", HYPHEN_ENCODING)
    if text and not (text[0].isalpha() or text[0] == "_"):
        text = "_" + text
    return text or "_unnamed"


def decode_integration_name(encoded: str) -> str:
    """把 `___` 还原为 `-`（`encode_integration_name` 的逆操作）。"""

    return encoded.replace(HYPHEN_ENCODING, "-")


def _truncate_segments(server: str, tool: str) -> Tuple[str, str]:
    """在总长超限时缩短 server/tool 段，保证两段都非空。"""

    available = MAX_TOOL_NAME_LENGTH - len(_INTEGRATION_HEAD) - len(INTEGRATION_TOOL_SEPARATOR)
    if len(server) + len(tool) <= available:
        return server, tool
    server_room = max(available // 2, available - len(tool))
    if len(server) > server_room:
        # 截断点可能落在 `___` 中间，去掉残留的下划线
        server = server[:server_room].rstrip("_") or server[:1]
    tool_room = available - len(server)
    if len(tool) > tool_room:
        tool = tool[:tool_room].rstrip("_") or tool[:1]
    return server, tool


def build_integration_tool_name(server_name: str, tool_name: str) -> str:
    """
    构造 integration 复合名 `mcp--<server>--<tool>`（最长 64 字符）。

    参数：
    - server_name / tool_name：原始名称（会先做 `encode_integration_name`）
    """

    server, tool = _truncate_segments(encode_integration_name(server_name), encode_integration_name(tool_name))
    return f"{_INTEGRATION_HEAD}{server}{INTEGRATION_TOOL_SEPARATOR}{tool}"


def parse_integration_tool_name(name: str) -> Optional[IntegrationToolName]:
    """
    解析（已归一化的）integration 复合名。

    返回：
    - 解码后的 server/tool；缺前缀、缺分隔符或任一段为空时返回 None
    """

    if not is_integration_tool_name(name):
        return None
    remainder = name[len(_INTEGRATION_HEAD) :]
    server, sep, tool = remainder.partition(INTEGRATION_TOOL_SEPARATOR)
    if not sep or not server or not tool:
        return None
    return IntegrationToolName(server_name=decode_integration_name(server), tool_name=decode_integration_name(tool))


def normalize_for_comparison(name: str) -> str:
    """比较用的规范形式：`-` 与 `_` 视为相同。"""

    return name.replace("-", "_")


def tool_names_match(left: str, right: str) -> bool:
    """比较两个 tool 名（容忍模型把 `-` 改写为 `_`）。"""

    return normalize_for_comparison(left) == normalize_for_comparison(right)


class ToolNameResolver:
    """
    tool 名称解析器（fail-closed）。

    参数：
    - aliases：别名表（alias → 规范名）
    - builtin_names：builtin 规范名集合
    - custom_names：custom 工具名集合，或返回当前集合的 callable（注册表可在运行期变化）
    """

    def __init__(
        self,
        *,
        aliases: Optional[Mapping[str, str]] = None,
        builtin_names: Iterable[str] = BUILTIN_TOOL_NAMES,
        custom_names: Optional[Iterable[str] | Callable[[], Iterable[str]]] = None,
    ) -> None:
        """保存别名表与名称集合。"""

        self._aliases = dict(DEFAULT_TOOL_ALIASES if aliases is None else aliases)
        self._builtin = frozenset(builtin_names)
        self._custom_source = custom_names

    def custom_names(self) -> frozenset[str]:
        """返回当前 custom 工具名集合。"""

        source = self._custom_source
        if source is None:
            return frozenset()
        if callable(source):
            return frozenset(source())
        return frozenset(source)

    def resolve_alias(self, name: str) -> str:
        """别名 → 规范名；非别名原样返回。"""

        return self._aliases.get(name, name)

    def is_builtin(self, name: str) -> bool:
        """是否为 builtin 规范名。"""

        return name in self._builtin

    def is_custom(self, name: str) -> bool:
        """是否为已注册的 custom 工具名。"""

        return name in self.custom_names()

    def canonicalize(self, raw_name: str) -> Tuple[str, Optional[str]]:
        """
        只做清洗、别名与分隔符归一化，不判断是否已知。

        返回：
        - (name, original_name)：original_name 仅在别名生效时非空
        """

        cleaned = clean_tool_name(raw_name)
        aliased = self.resolve_alias(cleaned)
        original = cleaned if aliased != cleaned else None
        return normalize_integration_tool_name(aliased), original

    def resolve(self, raw_name: str) -> ResolvedToolName:
        """
        把模型输出的 tool 名解析为唯一的规范名。

        异常：
        - `IntegrationToolNameError`：integration 前缀存在但复合名格式错误
        - `ToolNameResolutionError`：不是 builtin/custom/integration 中的任何一个
        """

        name, original = self.canonicalize(raw_name)
        if is_integration_tool_name(name):
            parsed = parse_integration_tool_name(name)
            if parsed is None:
                raise IntegrationToolNameError(name)
            return ResolvedToolName(kind="integration", name=name, original_name=original, integration=parsed)
        if self.is_builtin(name):
            return ResolvedToolName(kind="builtin", name=name, original_name=original)
        if self.is_custom(name):
            return ResolvedToolName(kind="custom", name=name, original_name=original)
        raise ToolNameResolutionError(raw_name, details={"resolved": name})
