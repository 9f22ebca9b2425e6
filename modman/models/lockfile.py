"""
锁文件数据模型

锁文件 (modman.lock) 记录每个已解析模组的具体版本、文件名与内容哈希。
"""

from dataclasses import dataclass, field, replace
from typing import Any, Dict, List

from modman.models.config import DependencyKind, Source


@dataclass(frozen=True)
class DependencyRef:
    """依赖引用"""

    source: Source
    target_id: str
    kind: DependencyKind

    @classmethod
    def from_dict(cls, data: dict) -> "DependencyRef":
        return cls(
            source=Source.parse(data.get("source", Source.MODRINTH.value)),
            target_id=str(data["project_id"]),
            kind=DependencyKind.parse(data.get("dependency_type", "required")),
        )

    def to_dict(self) -> dict:
        return {
            "source": str(self.source),
            "project_id": self.target_id,
            "dependency_type": str(self.kind),
        }


@dataclass(frozen=True)
class ResolvedMod:
    """
    锁文件条目

    表示一个可安装的具体文件。条目只会被整体替换，不会被局部修改。
    """

    name: str
    source: Source
    id: str
    version: str
    file_name: str
    content_hash: str
    download_url: str = ""
    published_at: str = "Unknown"
    size: int = 0
    dependencies: List[DependencyRef] = field(default_factory=list)

    @property
    def required_ids(self) -> List[str]:
        """所有必需依赖的 ID"""
        return [
            dep.target_id
            for dep in self.dependencies
            if dep.kind is DependencyKind.REQUIRED
        ]

    def requires(self, mod_id: str) -> bool:
        return mod_id in self.required_ids

    def with_changes(self, **changes) -> "ResolvedMod":
        return replace(self, **changes)

    @classmethod
    def local(cls, file_name: str, content_hash: str, size: int) -> "ResolvedMod":
        """为无法匹配来源的本地文件创建条目"""
        return cls(
            name=file_name,
            source=Source.LOCAL,
            id=file_name,
            version="0",
            file_name=file_name,
            content_hash=content_hash,
            download_url="Unknown",
            published_at="Unknown",
            size=size,
        )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ResolvedMod":
        return cls(
            name=str(data.get("name", data["id"])),
            source=Source.parse(data["source"]),
            id=str(data["id"]),
            version=str(data.get("version", "0")),
            file_name=str(data["file_name"]),
            content_hash=str(data["sha512"]),
            download_url=str(data.get("download_url", "")),
            published_at=str(data.get("release_date", "Unknown")),
            size=int(data.get("size", 0)),
            dependencies=[
                DependencyRef.from_dict(dep) for dep in data.get("dependencies", [])
            ],
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "source": str(self.source),
            "id": self.id,
            "version": self.version,
            "file_name": self.file_name,
            "release_date": self.published_at,
            "sha512": self.content_hash,
            "download_url": self.download_url,
            "size": self.size,
            "dependencies": [dep.to_dict() for dep in self.dependencies],
        }
