"""
命令输出：有界 preview 缓冲、artifact 落盘、分页/搜索读取与清理。
"""

from __future__ import annotations

from action_runtime.output.artifacts import (
    ArtifactReader,
    ArtifactReadResult,
    ArtifactSearchMatch,
    ArtifactSearchResult,
    is_valid_artifact_id,
    validate_artifact_id,
)
from action_runtime.output.buffer import PREVIEW_SIZE_BYTES, BoundedOutputBuffer, PersistedCommandOutput
from action_runtime.output.store import CommandOutputStore

__all__ = [
    "ArtifactReadResult",
    "ArtifactReader",
    "ArtifactSearchMatch",
    "ArtifactSearchResult",
    "BoundedOutputBuffer",
    "CommandOutputStore",
    "PREVIEW_SIZE_BYTES",
    "PersistedCommandOutput",
    "is_valid_artifact_id",
    "validate_artifact_id",
]
