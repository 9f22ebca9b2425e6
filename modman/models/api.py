"""
API 数据模型

定义注册表返回的版本信息、文件信息与依赖信息。
"""

from dataclasses import dataclass, field
from typing import Optional, List, Dict

from loguru import logger

from modman.models.config import DependencyKind, Source
from modman.models.lockfile import DependencyRef, ResolvedMod


@dataclass
class FileInfo:
    """文件信息"""

    url: str
    filename: str
    size: int
    hashes: Dict[str, str] = field(default_factory=dict)
    primary: bool = False

    @property
    def sha512(self) -> str:
        return self.hashes.get("sha512", "")


@dataclass
class DependencyInfo:
    """依赖信息"""

    project_id: str
    dependency_type: DependencyKind


@dataclass
class VersionInfo:
    """
    模组版本信息。

    ``project_id`` 是模组本身的规范 ID，``version_id`` 是该版本在注册表中的 ID。
    """

    project_id: str
    version_id: str
    display_name: str
    version: str
    files: List[FileInfo]
    dependencies: List[DependencyInfo] = field(default_factory=list)
    published_at: str = "Unknown"
    version_type: str = "release"
    loaders: List[str] = field(default_factory=list)
    game_versions: List[str] = field(default_factory=list)

    @property
    def primary_file(self) -> Optional[FileInfo]:
        """获取主文件信息"""
        if not self.files:
            return None

        # 优先选择 primary 文件
        for file in self.files:
            if file.primary:
                return file

        # 否则返回第一个文件
        return self.files[0]

    def to_resolved_mod(self, source: Source) -> ResolvedMod:
        """
        转换为锁文件条目（使用主文件）。

        Raises:
            ValueError: 该版本没有任何文件
        """
        file = self.primary_file
        if file is None:
            raise ValueError(f"版本 {self.version_id} 没有可下载的文件")

        return ResolvedMod(
            name=self.display_name,
            source=source,
            id=self.project_id,
            version=self.version,
            file_name=file.filename,
            content_hash=file.sha512,
            download_url=file.url,
            published_at=self.published_at,
            size=file.size,
            dependencies=[
                DependencyRef(
                    source=source,
                    target_id=dep.project_id,
                    kind=dep.dependency_type,
                )
                for dep in self.dependencies
            ],
        )

    @classmethod
    def from_modrinth(
        cls, data: dict, display_name: Optional[str] = None
    ) -> "VersionInfo":
        """
        将 Modrinth API 返回的版本信息转换为 VersionInfo 对象。
        """
        files = [
            FileInfo(
                url=file["url"],
                filename=file["filename"],
                size=file.get("size", 0),
                hashes=file.get("hashes") or {},
                primary=file.get("primary", False),
            )
            for file in data.get("files", [])
        ]

        dependencies = []
        for dep in data.get("dependencies", []):
            # 只指定 version_id 的依赖无法按项目去重，跳过
            if not dep.get("project_id"):
                logger.debug(f"[依赖] 跳过未指定 project_id 的依赖: {dep}")
                continue
            dependencies.append(
                DependencyInfo(
                    project_id=dep["project_id"],
                    dependency_type=DependencyKind.parse(
                        dep.get("dependency_type", "required")
                    ),
                )
            )

        return cls(
            project_id=data.get("project_id", ""),
            version_id=data.get("id", ""),
            display_name=display_name or data.get("name", ""),
            version=data.get("version_number", ""),
            files=files,
            dependencies=dependencies,
            published_at=data.get("date_published", "Unknown"),
            version_type=data.get("version_type", "release"),
            loaders=list(data.get("loaders", [])),
            game_versions=list(data.get("game_versions", [])),
        )
