"""
版本匹配服务

从注册表返回的候选版本中选出符合游戏版本、加载器与发布渠道约束的最佳版本。
"""

from typing import Iterable, List, Optional, Union

from modman.models import VersionConstraint, VersionInfo


class VersionMatcher:
    """版本匹配器"""

    def matches(
        self,
        version: str,
        target_versions: Union[str, List[str]],
    ) -> bool:
        """
        检查版本是否匹配目标版本列表

        Args:
            version: 要检查的版本
            target_versions: 目标版本或版本列表

        Returns:
            是否匹配
        """
        if isinstance(target_versions, str):
            target_versions = [target_versions]

        return version in target_versions

    def is_compatible(self, info: VersionInfo, constraint: VersionConstraint) -> bool:
        """检查单个版本是否满足约束（注册表未返回的字段视为满足）"""
        if info.game_versions and not self.matches(
            constraint.game_version, info.game_versions
        ):
            return False

        if info.loaders and constraint.loader.value not in info.loaders:
            return False

        channels = {channel.value for channel in constraint.release_channels}
        return info.version_type in channels

    def select(
        self,
        candidates: Iterable[VersionInfo],
        constraint: VersionConstraint,
    ) -> Optional[VersionInfo]:
        """
        选出最佳版本

        注册表按发布时间倒序返回，取第一个满足约束且带有文件的版本。
        """
        for info in candidates:
            if not info.files:
                continue
            if self.is_compatible(info, constraint):
                return info
        return None
