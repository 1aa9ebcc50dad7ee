"""
命令输出 artifact 读取（按字节区间分页 / 正则搜索）。

约束：
- artifact_id 必须符合 `cmd-<digits>.txt`，在访问文件系统之前校验（防止路径穿越）；
- 文件按固定大小（默认 64KB）分块顺序读取，内存占用与 artifact 大小无关；
- offset 必须落在 `[0, size)`。
"""

from __future__ import annotations

import codecs
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Pattern, Tuple, Union

from action_runtime.core.errors import ArtifactNotFoundError, InvalidArtifactIdError, InvalidArtifactRangeError
from action_runtime.core.utils import format_bytes, utf8_head_cut, utf8_tail_start

logger = logging.getLogger(__name__)

DEFAULT_READ_LIMIT = 40 * 1024
DEFAULT_CHUNK_SIZE = 64 * 1024

_ARTIFACT_ID_RE = re.compile(r"^cmd-\d+\.txt$")


def is_valid_artifact_id(artifact_id: str) -> bool:
    """是否为合法 artifact 文件名。"""

    return bool(_ARTIFACT_ID_RE.fullmatch(artifact_id or ""))


def validate_artifact_id(artifact_id: str) -> str:
    """校验 artifact_id；非法时抛 `InvalidArtifactIdError`。"""

    if not is_valid_artifact_id(artifact_id):
        raise InvalidArtifactIdError(artifact_id)
    return artifact_id


def compile_search_pattern(pattern: str) -> Pattern[str]:
    """大小写不敏感的正则；非法正则按字面匹配。"""

    try:
        return re.compile(pattern, re.IGNORECASE)
    except re.error:
        return re.compile(re.escape(pattern), re.IGNORECASE)


def add_line_numbers(content: str, start_line: int) -> str:
    """逐行加行号（宽度按最大行号对齐）：`  9 | ...`。"""

    lines = content.split("\n")
    width = len(str(start_line + len(lines) - 1))
    return "\n".join(f"{str(start_line + i).rjust(width)} | {line}" for i, line in enumerate(lines))


@dataclass(frozen=True)
class ArtifactReadResult:
    """
    分页读取结果。

    字段：
    - content：带 header 与行号的文本（回注给模型）
    - start / end：实际读取的字节区间 `[start, end)`
    - total_size：artifact 总字节数
    - truncated：`end < total_size`
    """

    artifact_id: str
    content: str
    start: int
    end: int
    total_size: int
    truncated: bool


@dataclass(frozen=True)
class ArtifactSearchMatch:
    """单条命中行。"""

    line_number: int
    text: str


@dataclass(frozen=True)
class ArtifactSearchResult:
    """
    搜索结果。

    字段：
    - hit_limit：命中行字节数达到上限而提前停止
    """

    artifact_id: str
    pattern: str
    content: str
    matches: Tuple[ArtifactSearchMatch, ...]
    total_size: int
    hit_limit: bool

    @property
    def match_count(self) -> int:
        """返回的命中行数。"""

        return len(self.matches)


class ArtifactReader:
    """
    `<storage_dir>` 下命令输出 artifact 的读取器。

    参数：
    - storage_dir：artifact 目录（通常为 `<task-dir>/command-output`）
    - default_limit：未指定 limit 时的字节上限
    - chunk_size：顺序读取的块大小
    """

    def __init__(
        self,
        storage_dir: Union[str, Path],
        *,
        default_limit: int = DEFAULT_READ_LIMIT,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ) -> None:
        """保存目录与读取参数。"""

        if chunk_size <= 0:
            raise ValueError("chunk_size must be > 0")
        self.storage_dir = Path(storage_dir)
        self.default_limit = int(default_limit)
        self.chunk_size = int(chunk_size)

    def path_for(self, artifact_id: str) -> Path:
        """校验 id 并返回 artifact 路径（不检查存在性）。"""

        return self.storage_dir / validate_artifact_id(artifact_id)

    def size(self, artifact_id: str) -> int:
        """
        返回 artifact 字节数。

        异常：
        - `InvalidArtifactIdError` / `ArtifactNotFoundError`
        """

        path = self.path_for(artifact_id)
        try:
            return path.stat().st_size
        except FileNotFoundError as e:
            raise ArtifactNotFoundError(artifact_id) from e

    def _check_offset(self, artifact_id: str, offset: int) -> int:
        """校验 offset 并返回总大小。"""

        total = self.size(artifact_id)
        if offset < 0 or offset >= total:
            raise InvalidArtifactRangeError(artifact_id=artifact_id, offset=offset, size=total)
        return total

    def read_range(self, artifact_id: str, offset: int = 0, limit: Optional[int] = None) -> bytes:
        """
        读取原始字节区间 `[offset, offset + limit)`（不做解码与格式化）。

        异常：
        - `InvalidArtifactIdError` / `ArtifactNotFoundError` / `InvalidArtifactRangeError`
        """

        total = self._check_offset(artifact_id, offset)
        want = min(self._limit(limit), total - offset)
        out = bytearray()
        with self.path_for(artifact_id).open("rb") as f:
            f.seek(offset)
            while len(out) < want:
                block = f.read(min(self.chunk_size, want - len(out)))
                if not block:
                    break
                out += block
        return bytes(out)

    def count_lines_before(self, artifact_id: str, offset: int) -> int:
        """offset 之前的换行数 + 1（即 offset 所在行的 1-based 行号）。"""

        newlines = 0
        remaining = offset
        with self.path_for(artifact_id).open("rb") as f:
            while remaining > 0:
                block = f.read(min(self.chunk_size, remaining))
                if not block:
                    break
                newlines += block.count(b"\n")
                remaining -= len(block)
        return newlines + 1

    def read(self, artifact_id: str, *, offset: int = 0, limit: Optional[int] = None) -> ArtifactReadResult:
        """
        分页读取并格式化。

        返回 content 形如：
        ```
        [Command Output: cmd-1.txt]
        Total size: 1.5KB | Showing bytes 0-1536 | COMPLETE
        1 | first line
        ...
        ```
        """

        data = self.read_range(artifact_id, offset, limit)
        total = self.size(artifact_id)
        offset, data = self._snap_to_characters(artifact_id, offset, data, total)
        end = offset + len(data)
        truncated = end < total
        start_line = self.count_lines_before(artifact_id, offset) if offset > 0 else 1

        header = "\n".join(
            [
                f"[Command Output: {artifact_id}]",
                f"Total size: {format_bytes(total)} | Showing bytes {offset}-{end} | "
                f"{'TRUNCATED' if truncated else 'COMPLETE'}",
                "",
            ]
        )
        text = data.decode("utf-8", errors="replace")
        return ArtifactReadResult(
            artifact_id=artifact_id,
            content=header + add_line_numbers(text, start_line),
            start=offset,
            end=end,
            total_size=total,
            truncated=truncated,
        )

    def _snap_to_characters(self, artifact_id: str, offset: int, data: bytes, total: int) -> Tuple[int, bytes]:
        """
        把读取窗口收缩到 UTF-8 字符边界（起点前移跳过续字节，终点回退到字符起始）。

        窗口落在单个多字节字符内部时原样返回。
        """

        skip = utf8_tail_start(data, 0)
        if 0 < skip < len(data):
            offset, data = offset + skip, data[skip:]
        end = offset + len(data)
        if end < total:
            peeked = data + self.read_range(artifact_id, end, 1)
            cut = utf8_head_cut(peeked, len(data))
            if cut > 0:
                data = data[:cut]
        return offset, data

    def search(self, artifact_id: str, pattern: str, *, limit: Optional[int] = None) -> ArtifactSearchResult:
        """
        逐行正则搜索（大小写不敏感）。

        说明：
        - 按块读取，跨块的不完整行会拼接到下一块
        - 命中行的累计字节数超过 limit 时停止
        - artifact 为空时按非法区间处理（与分页读取一致）
        """

        total = self._check_offset(artifact_id, 0)
        budget = self._limit(limit)
        regex = compile_search_pattern(pattern)
        matches, hit_limit = self._scan(self.path_for(artifact_id), regex, budget)

        title = f'[Command Output: {artifact_id}] (search: "{pattern}")'
        if not matches:
            content = "\n".join([title, f"Total size: {format_bytes(total)}", "", "No matches found for the search pattern."])
        else:
            body = "\n".join(f"{m.line_number:5d} | {m.text}" for m in matches)
            status = "TRUNCATED" if hit_limit else "COMPLETE"
            summary = f"Total matches: {len(matches)} | Showing first {len(matches)} | {status}"
            content = "\n".join([title, summary, "", body])
        return ArtifactSearchResult(
            artifact_id=artifact_id,
            pattern=pattern,
            content=content,
            matches=tuple(matches),
            total_size=total,
            hit_limit=hit_limit,
        )

    def _scan(self, path: Path, regex: Pattern[str], budget: int) -> Tuple[List[ArtifactSearchMatch], bool]:
        """顺序扫描文件，返回 (命中行, 是否因上限停止)。"""

        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        matches: List[ArtifactSearchMatch] = []
        used = 0
        line_number = 0
        partial = ""

        with path.open("rb") as f:
            while True:
                block = f.read(self.chunk_size)
                if not block:
                    break
                lines = (partial + decoder.decode(block)).split("\n")
                partial = lines.pop()
                for line in lines:
                    line_number += 1
                    if not regex.search(line):
                        continue
                    size = len(line.encode("utf-8"))
                    if used + size > budget:
                        return matches, True
                    matches.append(ArtifactSearchMatch(line_number=line_number, text=line))
                    used += size

        partial += decoder.decode(b"", final=True)
        if partial:
            line_number += 1
            if regex.search(partial):
                size = len(partial.encode("utf-8"))
                if used + size > budget:
                    return matches, True
                matches.append(ArtifactSearchMatch(line_number=line_number, text=partial))
        return matches, False

    def _limit(self, limit: Optional[int]) -> int:
        """None/非正数 → 默认上限。"""

        if limit is None or limit <= 0:
            return self.default_limit
        return int(limit)
