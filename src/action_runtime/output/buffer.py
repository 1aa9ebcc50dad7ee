"""
命令输出的有界 head/tail 缓冲，超过预算时整体落盘。

预算划分：
- head = floor(preview_bytes / 2)，先填满后冻结
- tail = 剩余部分，滚动保留最近的输出（从前端淘汰）
- 所有被丢弃的字节计入 `omitted_bytes`；按 UTF-8 字节计数，不拆分多字节字符

落盘：
- 累计字节数超过预算之前，所有 chunk 暂存在 pending 队列；
- 一旦超过预算，pending 全部写入 `<storage_dir>/cmd-<execution_id>.txt`，之后的 chunk 直接追加；
- 落盘失败不影响 preview，只记录 `spill_error`。
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Dict, List, Optional, Union

from action_runtime.core.utils import utf8_head_cut, utf8_tail_start
from action_runtime.output.artifacts import validate_artifact_id

logger = logging.getLogger(__name__)

PREVIEW_SIZE_BYTES: Dict[str, int] = {
    "small": 5 * 1024,
    "medium": 10 * 1024,
    "large": 20 * 1024,
}

ARTIFACT_PREFIX = "cmd-"
ARTIFACT_SUFFIX = ".txt"


def artifact_file_name(execution_id: str) -> str:
    """`cmd-<execution_id>.txt`。"""

    return f"{ARTIFACT_PREFIX}{execution_id}{ARTIFACT_SUFFIX}"


def omission_marker(omitted_bytes: int) -> str:
    """preview 中 head 与 tail 之间的省略标记。"""

    return f"\n[...{omitted_bytes} bytes omitted...]\n"


@dataclass(frozen=True)
class PersistedCommandOutput:
    """
    `BoundedOutputBuffer.finalize()` 的结果。

    字段：
    - preview：head + 省略标记 + tail（无丢弃时没有标记）
    - total_bytes：写入的总字节数（UTF-8）
    - artifact_path：完整输出文件；未落盘（或落盘失败）时为 None
    - truncated：总字节数是否超过预算
    - omitted_bytes：preview 中被省略的字节数
    - spill_error：落盘失败原因（成功或未落盘时为 None）
    """

    preview: str
    total_bytes: int
    artifact_path: Optional[Path]
    truncated: bool
    omitted_bytes: int = 0
    spill_error: Optional[str] = None

    @property
    def artifact_id(self) -> Optional[str]:
        """artifact 文件名（供 read_command_output 使用）。"""

        return self.artifact_path.name if self.artifact_path is not None else None


class BoundedOutputBuffer:
    """
    单次命令执行的输出缓冲。

    参数：
    - execution_id：执行标识（十进制数字串，决定 artifact 文件名）
    - storage_dir：artifact 目录（首次落盘时创建）
    - preview_bytes：preview 预算（字节）
    - command：命令文本（仅用于日志）
    """

    def __init__(
        self,
        *,
        execution_id: str,
        storage_dir: Union[str, Path],
        preview_bytes: int = PREVIEW_SIZE_BYTES["medium"],
        command: str = "",
    ) -> None:
        """
        初始化预算与落盘状态。

        异常：
        - `InvalidArtifactIdError`：execution_id 不是数字串（此时不触碰文件系统）
        """

        if preview_bytes < 0:
            raise ValueError("preview_bytes must be >= 0")
        self.execution_id = execution_id
        self.command = command
        self._artifact_path = Path(storage_dir) / validate_artifact_id(artifact_file_name(execution_id))
        self._preview_bytes = int(preview_bytes)
        self._head_budget = self._preview_bytes // 2
        self._tail_budget = self._preview_bytes - self._head_budget

        self._head = bytearray()
        self._head_closed = False
        self._tail = bytearray()
        self._omitted_bytes = 0
        self._total_bytes = 0

        self._pending: List[bytes] = []
        self._stream: Optional[BinaryIO] = None
        self._spilled = False
        self._spill_error: Optional[str] = None
        self._result: Optional[PersistedCommandOutput] = None

    @property
    def artifact_path(self) -> Path:
        """artifact 的目标路径（不代表已落盘）。"""

        return self._artifact_path

    @property
    def preview_bytes(self) -> int:
        """preview 预算。"""

        return self._preview_bytes

    @property
    def total_bytes(self) -> int:
        """已写入的总字节数。"""

        return self._total_bytes

    @property
    def omitted_bytes(self) -> int:
        """已从 preview 中丢弃的字节数。"""

        return self._omitted_bytes

    @property
    def spilled(self) -> bool:
        """是否已成功落盘。"""

        return self._spilled

    @property
    def spill_error(self) -> Optional[str]:
        """落盘失败原因。"""

        return self._spill_error

    def write(self, chunk: Union[str, bytes]) -> None:
        """
        追加一段输出。

        异常：
        - `ValueError`：在 `finalize()` 之后写入
        """

        if self._result is not None:
            raise ValueError(f"output buffer already finalized: {self.execution_id}")
        data = chunk.encode("utf-8") if isinstance(chunk, str) else bytes(chunk)
        if not data:
            return
        self._total_bytes += len(data)
        self._add_to_preview(data)

        if self._spilled:
            self._write_to_artifact(data)
        elif self._spill_error is None:
            self._pending.append(data)
            if self._total_bytes > self._preview_bytes:
                self._spill()

    def snapshot(self) -> str:
        """当前 head + tail（不含省略标记；供实时展示）。"""

        return (bytes(self._head) + bytes(self._tail)).decode("utf-8", errors="replace")

    def finalize(self) -> PersistedCommandOutput:
        """
        关闭 artifact 并返回结果（幂等：重复调用返回同一结果）。
        """

        if self._result is not None:
            return self._result
        self._close_stream()
        self._pending = []

        head = bytes(self._head).decode("utf-8", errors="replace")
        tail = bytes(self._tail).decode("utf-8", errors="replace")
        if self._omitted_bytes > 0:
            preview = head + omission_marker(self._omitted_bytes) + tail
        else:
            preview = head + tail

        self._result = PersistedCommandOutput(
            preview=preview,
            total_bytes=self._total_bytes,
            artifact_path=self._artifact_path if self._spilled else None,
            truncated=self._total_bytes > self._preview_bytes,
            omitted_bytes=self._omitted_bytes,
            spill_error=self._spill_error,
        )
        return self._result

    # --- preview ---

    def _add_to_preview(self, data: bytes) -> None:
        """先填 head，剩余进入 tail。"""

        if not self._head_closed:
            room = self._head_budget - len(self._head)
            if len(data) <= room:
                self._head += data
                return
            cut = utf8_head_cut(data, room)
            self._head += data[:cut]
            self._head_closed = True
            data = data[cut:]
        self._add_to_tail(data)

    def _add_to_tail(self, data: bytes) -> None:
        """滚动 tail：超预算时从前端淘汰，淘汰量计入 omitted。"""

        if self._tail_budget == 0:
            self._omitted_bytes += len(data)
            return
        if len(data) >= self._tail_budget:
            start = utf8_tail_start(data, len(data) - self._tail_budget)
            self._omitted_bytes += len(self._tail) + start
            self._tail = bytearray(data[start:])
            return
        self._tail += data
        excess = len(self._tail) - self._tail_budget
        if excess > 0:
            start = utf8_tail_start(self._tail, excess)
            self._omitted_bytes += start
            del self._tail[:start]

    # --- artifact ---

    def _spill(self) -> None:
        """把 pending 全部写入 artifact，之后直接追加。"""

        try:
            self._artifact_path.parent.mkdir(parents=True, exist_ok=True)
            self._stream = self._artifact_path.open("wb")
            for data in self._pending:
                self._stream.write(data)
        except OSError as e:
            self._fail_spill(e)
        else:
            self._spilled = True
            logger.debug(
                "Command output %s exceeded %d bytes; spilled to %s",
                self.execution_id,
                self._preview_bytes,
                self._artifact_path,
            )
        self._pending = []

    def _write_to_artifact(self, data: bytes) -> None:
        """追加写入 artifact。"""

        if self._stream is None:
            return
        try:
            self._stream.write(data)
        except OSError as e:
            self._fail_spill(e)

    def _fail_spill(self, error: OSError) -> None:
        """记录落盘失败并放弃 artifact（preview 不受影响）。"""

        self._spill_error = str(error)
        self._spilled = False
        logger.warning("Failed to persist command output %s to %s: %s", self.execution_id, self._artifact_path, error)
        self._close_stream()

    def _close_stream(self) -> None:
        """关闭 artifact 文件句柄。"""

        stream, self._stream = self._stream, None
        if stream is None:
            return
        try:
            stream.close()
        except OSError as e:
            if self._spill_error is None:
                self._spill_error = str(e)
                self._spilled = False
                logger.warning("Failed to close command output artifact %s: %s", self._artifact_path, e)
