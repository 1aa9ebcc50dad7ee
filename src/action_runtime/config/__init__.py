"""
配置：YAML 深度合并 + pydantic 校验。
"""

from __future__ import annotations

from action_runtime.config.loader import (
    ActionRuntimeConfig,
    ArtifactsConfig,
    EditsConfig,
    OutputConfig,
    ToolsConfig,
    load_config,
    load_config_dicts,
    load_default_config_dict,
)

__all__ = [
    "ActionRuntimeConfig",
    "ArtifactsConfig",
    "EditsConfig",
    "OutputConfig",
    "ToolsConfig",
    "load_config",
    "load_config_dicts",
    "load_default_config_dict",
]
