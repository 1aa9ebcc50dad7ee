"""
配置加载器（YAML）。

默认配置：`action_runtime/assets/default.yaml`

设计目标：
- 支持加载多个 YAML，并按顺序做深度合并（后者覆盖前者）。
- 使用 pydantic 做 schema 校验；默认拒绝未知字段（避免拼写错误与误配置被静默吞掉）。
"""

from __future__ import annotations

from copy import deepcopy
from importlib.resources import files
from pathlib import Path
from typing import Any, Dict, List, Literal, Mapping, MutableMapping, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator

from action_runtime.output.buffer import PREVIEW_SIZE_BYTES


def _deep_merge(base: MutableMapping[str, Any], overlay: Mapping[str, Any]) -> MutableMapping[str, Any]:
    """
    深度合并两个 dict（overlay 覆盖 base）。

    合并规则：
    - dict + dict：递归合并
    - 其它类型：overlay 直接覆盖
    - list：整体覆盖（不做去重/拼接）
    """

    for key, overlay_value in overlay.items():
        if key in base and isinstance(base[key], dict) and isinstance(overlay_value, Mapping):
            _deep_merge(base[key], overlay_value)  # type: ignore[arg-type]
            continue
        base[key] = deepcopy(overlay_value)
    return base


class ToolsConfig(BaseModel):
    """tool 名称解析配置。"""

    model_config = ConfigDict(extra="forbid")

    aliases: Dict[str, str] = Field(default_factory=dict)
    custom: List[str] = Field(default_factory=list)

    @field_validator("aliases")
    @classmethod
    def _validate_aliases(cls, v: Dict[str, str]) -> Dict[str, str]:
        """别名两侧都不得为空白。"""

        cleaned: Dict[str, str] = {}
        for alias, target in v.items():
            a, t = str(alias).strip(), str(target).strip()
            if not a or not t:
                raise ValueError("tools.aliases entries must be non-empty")
            cleaned[a] = t
        return cleaned

    @field_validator("custom")
    @classmethod
    def _validate_custom(cls, v: List[str]) -> List[str]:
        """custom 工具名去空白、去重（保持顺序）。"""

        out: List[str] = []
        for raw in v:
            name = str(raw).strip()
            if not name:
                raise ValueError("tools.custom must not contain empty names")
            if name not in out:
                out.append(name)
        return out


class OutputConfig(BaseModel):
    """命令输出 preview 与落盘配置。"""

    model_config = ConfigDict(extra="forbid")

    preview_size: Literal["small", "medium", "large"] = "medium"
    preview_bytes: Optional[int] = Field(default=None, ge=0)
    storage_subdir: str = "command-output"

    @field_validator("storage_subdir")
    @classmethod
    def _validate_storage_subdir(cls, v: str) -> str:
        """只允许单层相对目录名。"""

        name = str(v or "").strip()
        if not name or name in (".", "..") or "/" in name or "\\" in name:
            raise ValueError("output.storage_subdir must be a plain directory name")
        return name

    def resolved_preview_bytes(self) -> int:
        """显式 preview_bytes 优先，否则按 preview_size 档位。"""

        if self.preview_bytes is not None:
            return self.preview_bytes
        return PREVIEW_SIZE_BYTES[self.preview_size]


class ArtifactsConfig(BaseModel):
    """artifact 读取配置。"""

    model_config = ConfigDict(extra="forbid")

    default_read_limit: int = Field(default=40 * 1024, ge=1)
    chunk_size: int = Field(default=64 * 1024, ge=1)


class EditsConfig(BaseModel):
    """编辑引擎配置。"""

    model_config = ConfigDict(extra="forbid")

    escalate_after_failures: int = Field(default=2, ge=1)


class ActionRuntimeConfig(BaseModel):
    """配置根对象。"""

    model_config = ConfigDict(extra="forbid")

    config_version: int = Field(default=1, ge=1)
    tools: ToolsConfig = Field(default_factory=ToolsConfig)
    output: OutputConfig = Field(default_factory=OutputConfig)
    artifacts: ArtifactsConfig = Field(default_factory=ArtifactsConfig)
    edits: EditsConfig = Field(default_factory=EditsConfig)


def _parse_yaml_mapping(text: str, *, source: str) -> Dict[str, Any]:
    """解析 YAML 文本为 dict；空文档返回空 dict。"""

    data = yaml.safe_load(text)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"配置文件根节点必须为 mapping(dict)：{source}")
    return data


def _load_yaml_file(path: Path) -> Dict[str, Any]:
    """读取 YAML 文件为 dict；空文件返回空 dict。"""

    if not path.exists():
        raise FileNotFoundError(f"配置文件不存在：{path}")
    return _parse_yaml_mapping(path.read_text(encoding="utf-8"), source=str(path))


def load_default_config_dict() -> Dict[str, Any]:
    """读取包内默认配置（`assets/default.yaml`）。"""

    text = files("action_runtime.assets").joinpath("default.yaml").read_text(encoding="utf-8")
    return _parse_yaml_mapping(text, source="action_runtime/assets/default.yaml")


def load_config_dicts(config_dicts: List[Dict[str, Any]], *, include_defaults: bool = True) -> ActionRuntimeConfig:
    """
    加载并合并多个 dict 配置，返回校验后的 `ActionRuntimeConfig`。

    参数：
    - config_dicts：按顺序做深度合并（后者覆盖前者）
    - include_defaults：是否以包内默认配置作为最底层
    """

    merged: Dict[str, Any] = load_default_config_dict() if include_defaults else {}
    for overlay in config_dicts:
        if not overlay:
            continue
        _deep_merge(merged, overlay)
    return ActionRuntimeConfig.model_validate(merged)


def load_config(config_paths: List[Path], *, include_defaults: bool = True) -> ActionRuntimeConfig:
    """
    加载并合并多个配置文件，返回校验后的 `ActionRuntimeConfig`。

    参数：
    - config_paths：YAML 路径列表；按顺序合并（后者覆盖前者）
    """

    overlays: List[Dict[str, Any]] = []
    for path in config_paths:
        overlays.append(_load_yaml_file(Path(path)))
    return load_config_dicts(overlays, include_defaults=include_defaults)
