"""
类型化参数映射（tool 名 → extractor 注册表）。

本模块提供：
- 各 builtin 动作的类型化参数记录（pydantic，字段全部可选，便于流式中间态）
- `ArgumentMapperRegistry`：`register/extract/build_tool_use`
- 标量纠正：字符串形式的布尔/数字、被二次 JSON 编码的字符串、JSON 字符串形式的数组/对象

extractor 约定：
- 签名 `(args, partial) -> record | None`，纯函数
- partial=True：缺字段可容忍，只要出现过“门控字段”就返回记录
- partial=False：必填字段必须齐全；否则返回 None，由注册表对已识别的非 integration 动作报错
"""

from __future__ import annotations

import json
import logging
import math
import re
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple, Type

from pydantic import BaseModel, ConfigDict, ValidationError

from action_runtime.core.errors import InvalidToolArgumentsError, UserError
from action_runtime.tools.protocol import ToolUse

logger = logging.getLogger(__name__)

ArgumentExtractor = Callable[[Mapping[str, Any], bool], Optional[BaseModel]]

DEFAULT_MODE_SLUG = "code"

# 模型原样给出的文本载荷：不做“二次编码字符串”展开，避免改变文件内容语义。
VERBATIM_FIELDS = frozenset({"content", "diff", "patch", "old_string", "new_string"})

TOOL_PARAM_NAMES = frozenset(
    {
        "action",
        "args",
        "arguments",
        "artifact_id",
        "command",
        "content",
        "coordinate",
        "cwd",
        "diff",
        "expected_replacements",
        "file_path",
        "file_pattern",
        "files",
        "follow_up",
        "image",
        "indentation",
        "limit",
        "message",
        "mode",
        "mode_slug",
        "new_string",
        "offset",
        "old_string",
        "operations",
        "patch",
        "path",
        "prompt",
        "query",
        "question",
        "questions",
        "reason",
        "recursive",
        "regex",
        "result",
        "search",
        "server_name",
        "size",
        "skill",
        "task",
        "text",
        "title",
        "todos",
        "tool_name",
        "uri",
        "url",
    }
)

_LEGACY_RANGE_RE = re.compile(r"^(\d+)-(\d+)$")


class _NativeArgs(BaseModel):
    """类型化参数记录基类。"""

    model_config = ConfigDict(extra="forbid", frozen=True)


class LineRange(_NativeArgs):
    """闭区间行号范围（1-based）。"""

    start: int
    end: int


class FileEntry(_NativeArgs):
    """read_file 旧格式中的单个文件条目。"""

    path: Optional[str] = None
    line_ranges: Optional[List[LineRange]] = None


class IndentationOptions(_NativeArgs):
    """read_file 按缩进块读取的选项。"""

    anchor_line: Optional[int] = None
    max_levels: Optional[int] = None
    max_lines: Optional[int] = None
    include_siblings: Optional[bool] = None
    include_header: Optional[bool] = None


class ReadFileArgs(_NativeArgs):
    """read_file：新格式（path/mode/offset/limit/indentation）或旧格式（files[]）。"""

    path: Optional[str] = None
    mode: Optional[str] = None
    offset: Optional[int] = None
    limit: Optional[int] = None
    indentation: Optional[IndentationOptions] = None
    files: Optional[List[FileEntry]] = None
    legacy_format: bool = False


class ExecuteCommandArgs(_NativeArgs):
    """execute_command 参数。"""

    command: Optional[str] = None
    cwd: Optional[str] = None


class ReadCommandOutputArgs(_NativeArgs):
    """read_command_output 参数。"""

    artifact_id: Optional[str] = None
    search: Optional[str] = None
    offset: Optional[int] = None
    limit: Optional[int] = None


class WriteToFileArgs(_NativeArgs):
    """write_to_file 参数。"""

    path: Optional[str] = None
    content: Optional[str] = None


class ApplyDiffArgs(_NativeArgs):
    """apply_diff 参数。"""

    path: Optional[str] = None
    diff: Optional[str] = None


class EditFileArgs(_NativeArgs):
    """edit_file 参数。"""

    file_path: Optional[str] = None
    old_string: Optional[str] = None
    new_string: Optional[str] = None
    expected_replacements: Optional[int] = None


class SearchReplaceArgs(_NativeArgs):
    """search_replace 参数。"""

    file_path: Optional[str] = None
    old_string: Optional[str] = None
    new_string: Optional[str] = None


class SearchAndReplaceArgs(_NativeArgs):
    """search_and_replace 参数。"""

    path: Optional[str] = None
    operations: Optional[List[Any]] = None


class ApplyPatchArgs(_NativeArgs):
    """apply_patch 参数。"""

    patch: Optional[str] = None


class SearchFilesArgs(_NativeArgs):
    """search_files 参数。"""

    path: Optional[str] = None
    regex: Optional[str] = None
    file_pattern: Optional[str] = None


class ListFilesArgs(_NativeArgs):
    """list_files 参数。"""

    path: Optional[str] = None
    recursive: Optional[bool] = None


class CodebaseSearchArgs(_NativeArgs):
    """codebase_search 参数。"""

    query: Optional[str] = None
    path: Optional[str] = None


class BrowserActionArgs(_NativeArgs):
    """browser_action 参数。"""

    action: Optional[str] = None
    url: Optional[str] = None
    coordinate: Optional[Any] = None
    size: Optional[Any] = None
    text: Optional[str] = None
    path: Optional[str] = None


class UseMcpToolArgs(_NativeArgs):
    """use_mcp_tool 参数。"""

    server_name: Optional[str] = None
    tool_name: Optional[str] = None
    arguments: Optional[Dict[str, Any]] = None


class AccessMcpResourceArgs(_NativeArgs):
    """access_mcp_resource 参数。"""

    server_name: Optional[str] = None
    uri: Optional[str] = None


class AskFollowupQuestionArgs(_NativeArgs):
    """ask_followup_question 参数。"""

    question: Optional[str] = None
    follow_up: Optional[List[Any]] = None


class AskMultipleChoiceArgs(_NativeArgs):
    """ask_multiple_choice 参数。"""

    title: Optional[str] = None
    questions: Optional[List[Any]] = None


class AttemptCompletionArgs(_NativeArgs):
    """attempt_completion 参数。"""

    result: Optional[str] = None


class SwitchModeArgs(_NativeArgs):
    """switch_mode 参数。"""

    mode_slug: Optional[str] = None
    reason: Optional[str] = None


class NewTaskArgs(_NativeArgs):
    """new_task 参数。"""

    mode: Optional[str] = None
    message: Optional[str] = None
    todos: Optional[Any] = None


class FetchInstructionsArgs(_NativeArgs):
    """fetch_instructions 参数。"""

    task: Optional[str] = None


class UpdateTodoListArgs(_NativeArgs):
    """update_todo_list 参数。"""

    todos: Optional[Any] = None


class RunSlashCommandArgs(_NativeArgs):
    """run_slash_command 参数。"""

    command: Optional[str] = None
    args: Optional[str] = None


class GenerateImageArgs(_NativeArgs):
    """generate_image 参数。"""

    prompt: Optional[str] = None
    path: Optional[str] = None
    image: Optional[str] = None


class SkillArgs(_NativeArgs):
    """skill 参数。"""

    skill: Optional[str] = None
    args: Optional[str] = None


# --- 标量纠正 ---


def coerce_optional_boolean(value: Any) -> Optional[bool]:
    """布尔原样返回；`"true"/"false"`（忽略大小写与首尾空白）转换为布尔；其它返回 None。"""

    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered == "true":
            return True
        if lowered == "false":
            return False
    return None


def coerce_optional_int(value: Any) -> Optional[int]:
    """
    把数字或数字字符串转换为 int。

    规则：
    - 布尔不视为数字
    - 整数值的 float（例如 `10.0`）转换为 int；非整数或非有限值返回 None
    - 字符串先去空白再按数字解析
    """

    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            return int(text)
        except ValueError:
            try:
                value = float(text)
            except ValueError:
                return None
    if isinstance(value, float):
        if math.isfinite(value) and value.is_integer():
            return int(value)
    return None


def normalize_type_value(value: Any) -> Any:
    """
    展开被二次 JSON 编码的字符串（`'"hello"'` → `'hello'`）。

    说明：
    - 只展开“解析结果仍是字符串”的情况；`'[1,2]'`、`'{...}'` 保持原样
    - 非字符串、普通字符串、解析失败的字符串都原样返回
    """

    if not isinstance(value, str):
        return value
    trimmed = value.strip()
    looks_encoded = (
        (trimmed.startswith("{") and trimmed.endswith("}"))
        or (trimmed.startswith("[") and trimmed.endswith("]"))
        or (len(trimmed) >= 2 and trimmed.startswith('"') and trimmed.endswith('"'))
    )
    if not looks_encoded:
        return value
    try:
        parsed = json.loads(trimmed)
    except json.JSONDecodeError:
        return value
    return parsed if isinstance(parsed, str) else value


def normalize_arguments(args: Mapping[str, Any]) -> Dict[str, Any]:
    """对顶层参数逐个做 `normalize_type_value`（跳过 `VERBATIM_FIELDS`）。"""

    return {key: value if key in VERBATIM_FIELDS else normalize_type_value(value) for key, value in args.items()}


def _coerce_json_container(value: Any, expected: Type[Any]) -> Any:
    """字段声明为数组/对象时，把 JSON 字符串形式的值解码为对应容器；否则原样返回。"""

    if isinstance(value, str):
        try:
            parsed = json.loads(value)
        except json.JSONDecodeError:
            return value
        if isinstance(parsed, expected):
            return parsed
    return value


def coerce_list(value: Any) -> Any:
    """数组字段：`'[...]'` → list。"""

    return _coerce_json_container(value, list)


def coerce_mapping(value: Any) -> Any:
    """对象字段：`'{...}'` → dict。"""

    return _coerce_json_container(value, dict)


def _present(args: Mapping[str, Any], key: str) -> bool:
    """字段是否出现（值不为 None）。"""

    return args.get(key) is not None


def _gated(
    args: Mapping[str, Any],
    partial: bool,
    *,
    required: Tuple[str, ...],
    any_of: Optional[Tuple[str, ...]] = None,
) -> bool:
    """partial：任一门控字段出现即可；final：required 全部出现。"""

    if partial:
        return any(_present(args, key) for key in (any_of or required))
    return all(_present(args, key) for key in required)


def _simple_extractor(
    model: Type[_NativeArgs],
    *,
    required: Tuple[str, ...],
    any_of: Optional[Tuple[str, ...]] = None,
    coerce: Optional[Mapping[str, Callable[[Any], Any]]] = None,
) -> ArgumentExtractor:
    """
    生成“门控 + 取字段 + 可选纠正”的通用 extractor。

    参数：
    - model：目标记录类型（字段名即 wire 参数名）
    - required：final 模式的必填字段
    - any_of：partial 模式的门控字段（默认与 required 相同）
    - coerce：字段级纠正函数；返回 None 视为未提供
    """

    fields = tuple(name for name in model.model_fields if name != "legacy_format")
    coercions = dict(coerce or {})

    def _extract(args: Mapping[str, Any], partial: bool) -> Optional[BaseModel]:
        """按门控规则构造记录。"""

        if not _gated(args, partial, required=required, any_of=any_of):
            return None
        values: Dict[str, Any] = {}
        for name in fields:
            value = args.get(name)
            if name in coercions and value is not None:
                value = coercions[name](value)
            if value is not None:
                values[name] = value
        return model(**values)

    return _extract


def _to_line_range(raw: Any) -> Optional[LineRange]:
    """把 `[s, e]` / `{start, end}` / `"s-e"` 三种写法统一为 `LineRange`。"""

    try:
        if isinstance(raw, (list, tuple)) and len(raw) >= 2:
            return LineRange(start=int(raw[0]), end=int(raw[1]))
        if isinstance(raw, Mapping) and "start" in raw and "end" in raw:
            return LineRange(start=int(raw["start"]), end=int(raw["end"]))
    except (TypeError, ValueError):
        return None
    if isinstance(raw, str):
        match = _LEGACY_RANGE_RE.match(raw.strip())
        if match:
            return LineRange(start=int(match.group(1)), end=int(match.group(2)))
    return None


def convert_file_entries(files: Iterable[Any]) -> List[FileEntry]:
    """把旧格式 `files[]` 条目转换为 `FileEntry`（字符串条目视为 path）。"""

    entries: List[FileEntry] = []
    for item in files:
        if isinstance(item, str):
            entries.append(FileEntry(path=item))
            continue
        if not isinstance(item, Mapping):
            continue
        path = item.get("path")
        ranges_raw = item.get("line_ranges")
        ranges: Optional[List[LineRange]] = None
        if isinstance(ranges_raw, list):
            ranges = [r for r in (_to_line_range(x) for x in ranges_raw) if r is not None]
        entries.append(FileEntry(path=path if isinstance(path, str) else None, line_ranges=ranges))
    return entries


def _extract_read_file(args: Mapping[str, Any], partial: bool) -> Optional[BaseModel]:
    """
    read_file：优先识别旧格式 `files[]`（允许被字符串化），否则走新格式 `path`。

    说明：
    - 旧格式记录带 `legacy_format=True`，上层据此设置 `ToolUse.used_legacy_format`
    """

    files = coerce_list(args.get("files"))
    if isinstance(files, list) and files:
        return ReadFileArgs(files=convert_file_entries(files), legacy_format=True)
    if not _present(args, "path"):
        return None
    indentation = args.get("indentation")
    options: Optional[IndentationOptions] = None
    if isinstance(indentation, Mapping):
        options = IndentationOptions(
            anchor_line=coerce_optional_int(indentation.get("anchor_line")),
            max_levels=coerce_optional_int(indentation.get("max_levels")),
            max_lines=coerce_optional_int(indentation.get("max_lines")),
            include_siblings=coerce_optional_boolean(indentation.get("include_siblings")),
            include_header=coerce_optional_boolean(indentation.get("include_header")),
        )
    return ReadFileArgs(
        path=args.get("path"),
        mode=args.get("mode"),
        offset=coerce_optional_int(args.get("offset")),
        limit=coerce_optional_int(args.get("limit")),
        indentation=options,
    )


def _extract_execute_command(args: Mapping[str, Any], partial: bool) -> Optional[BaseModel]:
    """execute_command：command 非空才构造（两种模式相同）。"""

    if not args.get("command"):
        return None
    return ExecuteCommandArgs(command=args.get("command"), cwd=args.get("cwd"))


def _extract_attempt_completion(args: Mapping[str, Any], partial: bool) -> Optional[BaseModel]:
    """attempt_completion：result 非空才构造。"""

    if not args.get("result"):
        return None
    return AttemptCompletionArgs(result=args.get("result"))


def _extract_ask_multiple_choice(args: Mapping[str, Any], partial: bool) -> Optional[BaseModel]:
    """ask_multiple_choice：final 要求 questions 至少包含一个非空问题对象。"""

    questions = coerce_list(args.get("questions"))
    if partial:
        if questions is None:
            return None
        return AskMultipleChoiceArgs(
            title=args.get("title"),
            questions=questions if isinstance(questions, list) else None,
        )
    if not isinstance(questions, list) or not any(isinstance(q, Mapping) and q for q in questions):
        return None
    return AskMultipleChoiceArgs(title=args.get("title"), questions=questions)


def _extract_new_task(args: Mapping[str, Any], partial: bool) -> Optional[BaseModel]:
    """new_task：final 要求 message；mode 缺省为默认模式。"""

    if partial:
        if not (_present(args, "mode") or _present(args, "message")):
            return None
        return NewTaskArgs(mode=args.get("mode"), message=args.get("message"), todos=args.get("todos"))
    if not _present(args, "message"):
        return None
    return NewTaskArgs(
        mode=args.get("mode") or DEFAULT_MODE_SLUG,
        message=args.get("message"),
        todos=args.get("todos"),
    )


_BUILTIN_EXTRACTOR_ENTRIES: List[Tuple[str, ArgumentExtractor]] = [
    ("read_file", _extract_read_file),
    ("execute_command", _extract_execute_command),
    (
        "read_command_output",
        _simple_extractor(
            ReadCommandOutputArgs,
            required=("artifact_id",),
            coerce={"offset": coerce_optional_int, "limit": coerce_optional_int},
        ),
    ),
    ("write_to_file", _simple_extractor(WriteToFileArgs, required=("path", "content"))),
    ("apply_diff", _simple_extractor(ApplyDiffArgs, required=("path", "diff"))),
    (
        "edit_file",
        _simple_extractor(
            EditFileArgs,
            required=("file_path", "old_string", "new_string"),
            coerce={"expected_replacements": coerce_optional_int},
        ),
    ),
    ("search_replace", _simple_extractor(SearchReplaceArgs, required=("file_path", "old_string", "new_string"))),
    (
        "search_and_replace",
        _simple_extractor(SearchAndReplaceArgs, required=("path", "operations"), coerce={"operations": coerce_list}),
    ),
    ("apply_patch", _simple_extractor(ApplyPatchArgs, required=("patch",))),
    ("search_files", _simple_extractor(SearchFilesArgs, required=("path", "regex"))),
    (
        "list_files",
        _simple_extractor(ListFilesArgs, required=("path",), coerce={"recursive": coerce_optional_boolean}),
    ),
    ("codebase_search", _simple_extractor(CodebaseSearchArgs, required=("query",))),
    ("browser_action", _simple_extractor(BrowserActionArgs, required=("action",))),
    (
        "use_mcp_tool",
        _simple_extractor(UseMcpToolArgs, required=("server_name", "tool_name"), coerce={"arguments": coerce_mapping}),
    ),
    ("access_mcp_resource", _simple_extractor(AccessMcpResourceArgs, required=("server_name", "uri"))),
    (
        "ask_followup_question",
        _simple_extractor(AskFollowupQuestionArgs, required=("question", "follow_up"), coerce={"follow_up": coerce_list}),
    ),
    ("ask_multiple_choice", _extract_ask_multiple_choice),
    ("attempt_completion", _extract_attempt_completion),
    ("switch_mode", _simple_extractor(SwitchModeArgs, required=("mode_slug", "reason"))),
    ("new_task", _extract_new_task),
    ("fetch_instructions", _simple_extractor(FetchInstructionsArgs, required=("task",))),
    ("update_todo_list", _simple_extractor(UpdateTodoListArgs, required=("todos",))),
    ("run_slash_command", _simple_extractor(RunSlashCommandArgs, required=("command",))),
    ("generate_image", _simple_extractor(GenerateImageArgs, required=("prompt", "path"), any_of=("prompt", "path"))),
    ("skill", _simple_extractor(SkillArgs, required=("skill",))),
]


def _stringify_params(args: Mapping[str, Any], *, allow_unknown: bool, warn: bool, tool: str) -> Dict[str, str]:
    """把参数转换为字符串形式（只保留已知参数名，custom 工具除外）。"""

    params: Dict[str, str] = {}
    for key, value in args.items():
        if key not in TOOL_PARAM_NAMES and not allow_unknown:
            if warn:
                logger.warning("Unknown parameter %r for tool %r", key, tool)
            continue
        params[key] = value if isinstance(value, str) else json.dumps(value, ensure_ascii=False)
    return params


class ArgumentMapperRegistry:
    """
    参数映射注册表（tool 名 → extractor）。

    说明：
    - 新动作的扩展单位是一条 `register(name, extractor)`，不需要修改中心分派逻辑
    - 重复注册抛 `UserError`（除非 override=True）
    """

    def __init__(self) -> None:
        """创建空注册表。"""

        self._extractors: Dict[str, ArgumentExtractor] = {}

    def register(self, name: str, extractor: ArgumentExtractor, *, override: bool = False) -> None:
        """
        注册 extractor。

        参数：
        - name：规范动作名
        - extractor：`(args, partial) -> record | None`
        - override：是否允许覆盖已有条目
        """

        if name in self._extractors and not override:
            raise UserError(f"重复注册参数映射：{name}")
        self._extractors[name] = extractor

    def has(self, name: str) -> bool:
        """是否存在该动作的 extractor。"""

        return name in self._extractors

    def names(self) -> List[str]:
        """按注册顺序返回所有动作名。"""

        return list(self._extractors)

    def extract(self, name: str, args: Mapping[str, Any], *, partial: bool) -> Optional[BaseModel]:
        """
        调用 extractor 构造类型化记录。

        返回：
        - 记录；无 extractor 或门控未通过时返回 None

        异常：
        - `InvalidToolArgumentsError`：final 模式下字段类型不合法（partial 模式返回 None）
        """

        extractor = self._extractors.get(name)
        if extractor is None:
            return None
        try:
            return extractor(args, partial)
        except ValidationError as e:
            if partial:
                logger.debug("Partial arguments for %r not yet valid: %s", name, e)
                return None
            raise InvalidToolArgumentsError(name, details={"reason": str(e)}) from e

    def build_tool_use(
        self,
        *,
        call_id: str,
        name: str,
        args: Mapping[str, Any],
        partial: bool,
        custom: bool = False,
        original_name: Optional[str] = None,
    ) -> ToolUse:
        """
        由（部分或完整的）参数 dict 构造 `ToolUse`。

        参数：
        - name：规范动作名（已解析）
        - args：JSON object
        - partial：是否为流式中间态
        - custom：该动作是否为 custom 注册的工具（允许透传参数）
        - original_name：别名生效时的模型原始名称

        异常：
        - `InvalidToolArgumentsError`：final 模式下无法为非 custom 动作构造记录
        """

        if partial:
            native: Any = self.extract(name, args, partial=True)
            params = _stringify_params(args, allow_unknown=custom, warn=False, tool=name)
        else:
            normalized = normalize_arguments(args)
            params = _stringify_params(args, allow_unknown=custom, warn=True, tool=name)
            native = self.extract(name, normalized, partial=False)
            if native is None:
                if not custom:
                    raise InvalidToolArgumentsError(name, details={"received_keys": sorted(args)})
                native = dict(normalized)

        return ToolUse(
            id=call_id,
            name=name,
            params=params,
            native_args=native,
            partial=partial,
            original_name=original_name,
            used_legacy_format=bool(getattr(native, "legacy_format", False)),
        )


def register_builtin_extractors(registry: ArgumentMapperRegistry, *, override: bool = False) -> None:
    """把所有 builtin 动作的 extractor 注册到 registry。"""

    for name, extractor in _BUILTIN_EXTRACTOR_ENTRIES:
        registry.register(name, extractor, override=override)


def default_argument_registry() -> ArgumentMapperRegistry:
    """返回已注册全部 builtin extractor 的新注册表。"""

    registry = ArgumentMapperRegistry()
    register_builtin_extractors(registry)
    return registry
