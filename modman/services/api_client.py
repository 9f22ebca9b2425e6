"""
API 客户端抽象

提供统一的注册表客户端接口，以及 Modrinth 实现。
"""

import asyncio
import json
import os
from abc import ABC, abstractmethod
from typing import Optional

import aiohttp
from loguru import logger

from modman import USER_AGENT
from modman.models import Source, VersionConstraint, VersionInfo
from modman.exceptions import (
    APIRateLimitError,
    APIServerError,
    NotFoundError,
    TransportError,
)
from modman.services.version_matcher import VersionMatcher


MODRINTH_BASE_URL = os.environ.get("MODMAN_API_URL", "https://api.modrinth.com/v2")


class RegistryClient(ABC):
    """注册表客户端接口"""

    source: Source

    @abstractmethod
    async def resolve_version(
        self, mod_id: str, constraint: VersionConstraint
    ) -> VersionInfo:
        """
        获取模组在给定约束下的规范版本。

        Raises:
            NotFoundError: 模组不存在或没有兼容版本
            TransportError: 网络错误
        """

    @abstractmethod
    async def resolve_by_hash(self, content_hash: str) -> VersionInfo:
        """
        通过文件 SHA512 反查版本。

        Raises:
            NotFoundError: 注册表中没有该文件
            TransportError: 网络错误
        """

    async def close(self):
        """关闭客户端"""


class ModrinthClient(RegistryClient):
    """Modrinth API 客户端"""

    source = Source.MODRINTH

    def __init__(
        self,
        session: Optional[aiohttp.ClientSession] = None,
        base_url: str = MODRINTH_BASE_URL,
        timeout: float = 30.0,
        matcher: Optional[VersionMatcher] = None,
    ):
        self._session = session
        self._owned_session = session is None
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.matcher = matcher or VersionMatcher()

    @property
    def session(self) -> aiohttp.ClientSession:
        """获取或创建 aiohttp session"""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                headers={"User-Agent": USER_AGENT},
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            )
            self._owned_session = True
        return self._session

    async def _request(
        self, endpoint: str, missing_id: str, params: Optional[dict] = None
    ):
        """发送 API 请求"""
        url = f"{self.base_url}{endpoint}"
        try:
            async with self.session.get(url, params=params) as response:
                if response.status == 200:
                    return await response.json()
                elif response.status == 404:
                    raise NotFoundError(missing_id, response=response)
                elif response.status == 429:
                    raise APIRateLimitError(
                        f"API 速率限制 (URL: {url})", response=response
                    )
                elif response.status >= 500:
                    raise APIServerError(
                        f"API 服务器错误 (状态码: {response.status})",
                        response=response,
                    )
                else:
                    raise TransportError(
                        f"API 请求失败 (状态码: {response.status})",
                        response=response,
                    )
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            raise TransportError(
                f"API 请求失败: {e or type(e).__name__}",
                context={"url": url},
            ) from e

    async def get_project(self, idx: str) -> dict:
        """获取项目信息"""
        return await self._request(f"/project/{idx}", idx)

    async def resolve_version(
        self, mod_id: str, constraint: VersionConstraint
    ) -> VersionInfo:
        """获取兼容的版本信息"""
        params = {
            "game_versions": json.dumps([constraint.game_version]),
            "loaders": json.dumps([constraint.loader.value]),
        }
        results = await asyncio.gather(
            self.get_project(mod_id),
            self._request(f"/project/{mod_id}/version", mod_id, params),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, BaseException):
                raise result
        project, versions = results

        candidates = [
            VersionInfo.from_modrinth(version, display_name=project.get("title"))
            for version in versions or []
        ]
        selected = self.matcher.select(candidates, constraint)
        if selected is None:
            raise NotFoundError(
                mod_id,
                f"模组 '{mod_id}' 没有兼容 {constraint.game_version}"
                f"/{constraint.loader} 的版本",
            )

        if not selected.project_id:
            selected.project_id = project.get("id", mod_id)

        logger.debug(
            f"[解析] {selected.display_name} -> {selected.version} ({selected.version_id})"
        )
        return selected

    async def resolve_by_hash(self, content_hash: str) -> VersionInfo:
        """通过 SHA512 反查版本"""
        version = await self._request(
            f"/version_file/{content_hash}",
            content_hash,
            {"algorithm": "sha512"},
        )

        title = None
        try:
            project = await self.get_project(version["project_id"])
            title = project.get("title")
        except NotFoundError:
            logger.debug(f"[反查] 项目 {version.get('project_id')} 不存在，使用版本名")

        info = VersionInfo.from_modrinth(version, display_name=title)

        # 多文件版本中，以哈希命中的文件作为主文件
        if any(file.sha512 == content_hash for file in info.files):
            for file in info.files:
                file.primary = file.sha512 == content_hash
        return info

    async def close(self):
        """关闭客户端"""
        if self._owned_session and self._session and not self._session.closed:
            await self._session.close()

    async def __aenter__(self):
        """异步上下文管理器入口"""
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """异步上下文管理器出口"""
        await self.close()
