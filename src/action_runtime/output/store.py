"""
task 级命令输出存储：分配 execution id、创建缓冲、读取与清理 artifact。

目录布局：`<task-dir>/<storage_subdir>/cmd-<execution_id>.txt`（storage_subdir 默认为 `command-output`）。
"""

from __future__ import annotations

import logging
import re
import time
from pathlib import Path
from typing import TYPE_CHECKING, Iterable, List, Optional, Union

from action_runtime.output.artifacts import DEFAULT_CHUNK_SIZE, DEFAULT_READ_LIMIT, ArtifactReader
from action_runtime.output.buffer import ARTIFACT_PREFIX, PREVIEW_SIZE_BYTES, BoundedOutputBuffer

if TYPE_CHECKING:  # pragma: no cover
    from action_runtime.config.loader import ActionRuntimeConfig

logger = logging.getLogger(__name__)

DEFAULT_STORAGE_SUBDIR = "command-output"

_ARTIFACT_NAME_RE = re.compile(r"^cmd-(\d+)\.txt$")


class CommandOutputStore:
    """
    单个 task 的命令输出存储。

    参数：
    - storage_dir：artifact 目录（按需创建）
    - preview_bytes：新缓冲的 preview 预算
    - default_read_limit / chunk_size：读取器参数
    """

    def __init__(
        self,
        storage_dir: Union[str, Path],
        *,
        preview_bytes: int = PREVIEW_SIZE_BYTES["medium"],
        default_read_limit: int = DEFAULT_READ_LIMIT,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ) -> None:
        """保存目录与参数。"""

        self.storage_dir = Path(storage_dir)
        self.preview_bytes = int(preview_bytes)
        self._last_execution_id = 0
        self._reader = ArtifactReader(self.storage_dir, default_limit=default_read_limit, chunk_size=chunk_size)

    @classmethod
    def for_task(
        cls, task_dir: Union[str, Path], config: Optional["ActionRuntimeConfig"] = None
    ) -> "CommandOutputStore":
        """
        在 `<task_dir>/<storage_subdir>` 下创建存储。

        参数：
        - config：运行时配置；为 None 时使用默认值（`command-output`、medium 档位）
        """

        if config is None:
            return cls(Path(task_dir) / DEFAULT_STORAGE_SUBDIR)
        return cls(
            Path(task_dir) / config.output.storage_subdir,
            preview_bytes=config.output.resolved_preview_bytes(),
            default_read_limit=config.artifacts.default_read_limit,
            chunk_size=config.artifacts.chunk_size,
        )

    @property
    def reader(self) -> ArtifactReader:
        """artifact 读取器。"""

        return self._reader

    def next_execution_id(self) -> str:
        """
        分配 execution id（毫秒时间戳；同一存储内严格递增）。
        """

        candidate = int(time.time() * 1000)
        if candidate <= self._last_execution_id:
            candidate = self._last_execution_id + 1
        self._last_execution_id = candidate
        return str(candidate)

    def open_buffer(self, *, execution_id: Optional[str] = None, command: str = "") -> BoundedOutputBuffer:
        """为一次命令执行创建缓冲。"""

        return BoundedOutputBuffer(
            execution_id=execution_id or self.next_execution_id(),
            storage_dir=self.storage_dir,
            preview_bytes=self.preview_bytes,
            command=command,
        )

    def list_artifacts(self) -> List[str]:
        """按文件名排序返回现有 artifact id。"""

        if not self.storage_dir.is_dir():
            return []
        return sorted(p.name for p in self.storage_dir.iterdir() if _ARTIFACT_NAME_RE.match(p.name))

    def cleanup(self) -> int:
        """
        删除目录下所有 `cmd-*` 文件。

        返回：
        - 删除的文件数（单个文件删除失败只记录 warning）
        """

        return self._remove(p for p in self._entries() if p.name.startswith(ARTIFACT_PREFIX))

    def cleanup_except(self, keep_execution_ids: Iterable[str]) -> int:
        """
        删除 execution id 不在保留集合中的 artifact（只处理 `cmd-<digits>.txt`）。

        参数：
        - keep_execution_ids：需要保留的 execution id（不含 `cmd-` 前缀与 `.txt` 后缀）
        """

        keep = {str(x) for x in keep_execution_ids}
        victims = []
        for path in self._entries():
            match = _ARTIFACT_NAME_RE.match(path.name)
            if match and match.group(1) not in keep:
                victims.append(path)
        return self._remove(victims)

    def _entries(self) -> List[Path]:
        """目录下的文件（目录不存在时为空）。"""

        if not self.storage_dir.is_dir():
            return []
        return [p for p in self.storage_dir.iterdir() if p.is_file()]

    def _remove(self, paths: Iterable[Path]) -> int:
        """逐个删除；失败记录 warning 后继续。"""

        removed = 0
        for path in paths:
            try:
                path.unlink()
            except FileNotFoundError:
                continue
            except OSError as e:
                logger.warning("Failed to remove command output artifact %s: %s", path, e)
                continue
            removed += 1
        return removed
