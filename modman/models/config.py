"""
配置数据模型

定义模组来源、加载器、发布渠道等枚举，以及用户声明的配置文件结构。
"""

import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from modman.exceptions import ConfigValidationError


class _ClosedEnum(Enum):
    """封闭枚举：显式的解析与显示，不依赖字符串贯穿匹配"""

    @classmethod
    def parse(cls, value: Any):
        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            raise ValueError(f"无效的 {cls.__name__}: {value!r}")
        try:
            return cls(value.strip().lower())
        except ValueError:
            valid = ", ".join(member.value for member in cls)
            raise ValueError(
                f"无效的 {cls.__name__}: '{value}' (可选: {valid})"
            ) from None

    def __str__(self) -> str:
        return self.value


class Source(_ClosedEnum):
    """模组来源"""

    MODRINTH = "modrinth"
    CURSEFORGE = "curseforge"
    LOCAL = "local"  # 磁盘上存在但无法确定注册表来源的文件

    @property
    def is_registry(self) -> bool:
        return self is not Source.LOCAL

    @property
    def display_name(self) -> str:
        return _SOURCE_DISPLAY[self]


_SOURCE_DISPLAY = {
    Source.MODRINTH: "Modrinth",
    Source.CURSEFORGE: "CurseForge",
    Source.LOCAL: "Local",
}


class DependencyKind(_ClosedEnum):
    """依赖类型"""

    REQUIRED = "required"
    OPTIONAL = "optional"
    INCOMPATIBLE = "incompatible"
    EMBEDDED = "embedded"


class ReleaseChannel(_ClosedEnum):
    """发布渠道"""

    RELEASE = "release"
    BETA = "beta"
    ALPHA = "alpha"


class ModLoader(_ClosedEnum):
    """模组加载器"""

    FABRIC = "fabric"
    QUILT = "quilt"
    FORGE = "forge"
    NEOFORGE = "neoforge"


@dataclass(frozen=True)
class DeclaredMod:
    """用户在配置文件中声明的根模组"""

    source: Source
    id: str
    name: str

    @classmethod
    def from_dict(cls, data: dict) -> "DeclaredMod":
        try:
            mod_id = data["id"]
            source = Source.parse(data.get("source", Source.MODRINTH.value))
        except (KeyError, TypeError, ValueError) as e:
            raise ConfigValidationError(
                f"无效的模组条目: {data!r} ({e})", context={"entry": data}
            )
        return cls(source=source, id=str(mod_id), name=str(data.get("name", mod_id)))

    def to_dict(self) -> dict:
        return {"source": str(self.source), "id": self.id, "name": self.name}


@dataclass(frozen=True)
class VersionConstraint:
    """传递给注册表的版本约束"""

    game_version: str
    loader: ModLoader
    release_channels: Tuple[ReleaseChannel, ...] = tuple(ReleaseChannel)


@dataclass
class Config:
    """
    配置文件 (modman.toml) 结构
    """

    game_version: str
    loader: ModLoader
    allowed_release_channels: List[ReleaseChannel] = field(
        default_factory=lambda: list(ReleaseChannel)
    )
    mods_folder: str = "./mods"
    mods: List[DeclaredMod] = field(default_factory=list)

    @property
    def constraint(self) -> VersionConstraint:
        return VersionConstraint(
            game_version=self.game_version,
            loader=self.loader,
            release_channels=tuple(self.allowed_release_channels),
        )

    def mods_path(self, base_dir: str) -> str:
        """模组目录的绝对路径（相对路径以配置文件所在目录为基准）"""
        return os.path.normpath(os.path.join(base_dir, self.mods_folder))

    def find_mod(self, mod_id: str) -> Optional[DeclaredMod]:
        for mod in self.mods:
            if mod.id == mod_id:
                return mod
        return None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Config":
        if not isinstance(data, dict):
            raise ConfigValidationError("配置文件顶层必须是表")

        game_version = data.get("game_version")
        if not game_version:
            raise ConfigValidationError("请配置 game_version")

        try:
            loader = ModLoader.parse(data.get("game_loader"))
            channels = [
                ReleaseChannel.parse(channel)
                for channel in data.get(
                    "allowed_release_types", [c.value for c in ReleaseChannel]
                )
            ]
        except ValueError as e:
            raise ConfigValidationError(str(e))

        if not channels:
            raise ConfigValidationError("allowed_release_types 不能为空")

        mods = [DeclaredMod.from_dict(entry) for entry in data.get("mods", [])]

        return cls(
            game_version=str(game_version),
            loader=loader,
            allowed_release_channels=channels,
            mods_folder=str(data.get("mods_folder", "./mods")),
            mods=mods,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "game_version": self.game_version,
            "game_loader": str(self.loader),
            "allowed_release_types": [str(c) for c in self.allowed_release_channels],
            "mods_folder": self.mods_folder,
            "mods": [mod.to_dict() for mod in self.mods],
        }


def parse_mod_spec(spec: str) -> Tuple[str, Source]:
    """
    解析命令行模组参数 ``[source@]id``

    未指定来源时默认使用 Modrinth。
    """
    if "@" in spec:
        source_str, _, mod_id = spec.partition("@")
        if not source_str or not mod_id:
            raise ValueError(f"无效的模组参数: '{spec}'")
        return mod_id, Source.parse(source_str)

    if not spec:
        raise ValueError("模组参数不能为空")
    return spec, Source.MODRINTH
