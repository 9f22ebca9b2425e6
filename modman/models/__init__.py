"""
ModMan 数据模型包

包含配置模型、锁文件模型和 API 模型定义。
"""

from modman.models.config import (
    Source,
    DependencyKind,
    ReleaseChannel,
    ModLoader,
    DeclaredMod,
    VersionConstraint,
    Config,
    parse_mod_spec,
)
from modman.models.lockfile import (
    DependencyRef,
    ResolvedMod,
)
from modman.models.api import (
    FileInfo,
    DependencyInfo,
    VersionInfo,
)

__all__ = [
    # 配置模型
    "Source",
    "DependencyKind",
    "ReleaseChannel",
    "ModLoader",
    "DeclaredMod",
    "VersionConstraint",
    "Config",
    "parse_mod_spec",
    # 锁文件模型
    "DependencyRef",
    "ResolvedMod",
    # API 模型
    "FileInfo",
    "DependencyInfo",
    "VersionInfo",
]
