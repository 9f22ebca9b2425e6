"""
下载管理器

并发下载安装计划中的文件，边写入边计算 SHA512，逐项报告校验结果。
只有校验通过的文件才会出现在目标路径上。
"""

import asyncio
import os
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional

import aiohttp
import aiofiles
from loguru import logger

from modman import USER_AGENT
from modman.download.verifier import FileVerifier
from modman.exceptions import (
    DownloadChecksumError,
    DownloadFileError,
    DownloadNetworkError,
)


PART_SUFFIX = ".part"


class DownloadStatus(Enum):
    """单个下载项的结果"""

    VERIFIED = "verified"
    CHECKSUM_MISMATCH = "checksum_mismatch"
    TRANSPORT_FAILURE = "transport_failure"


@dataclass
class DownloadItem:
    """安装计划中的一项"""

    url: str
    destination: str
    display_name: str
    expected_hash: str
    mod_id: str = ""


@dataclass
class DownloadOutcome:
    """下载结果"""

    item: DownloadItem
    status: DownloadStatus
    detail: str = ""
    actual_hash: Optional[str] = None

    @property
    def verified(self) -> bool:
        return self.status is DownloadStatus.VERIFIED


@dataclass
class DownloadStats:
    """下载统计"""

    total: int = 0
    completed: int = 0
    failed: int = 0
    skipped: int = 0
    bytes_downloaded: int = 0


class DownloadManager:
    """下载管理器"""

    def __init__(
        self,
        max_concurrent: int = 5,
        max_retries: int = 3,
        retry_delay: float = 1.0,
        session: Optional[aiohttp.ClientSession] = None,
        progress_callback: Optional[Callable[[str, float], None]] = None,
        timeout: float = 300.0,
    ):
        self.max_concurrent = max_concurrent
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.timeout = timeout
        self.verifier = FileVerifier()
        self.stats = DownloadStats()
        self._session = session
        self._owned_session = session is None
        self._progress_callback = progress_callback

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

    async def download(self, plan: List[DownloadItem]) -> List[DownloadOutcome]:
        """
        下载整个计划

        每一项独立运行到结束，某一项失败不会中止其他项。

        Returns:
            与 plan 顺序一致的结果列表
        """
        if not plan:
            return []

        self.stats.total += len(plan)
        semaphore = asyncio.Semaphore(self.max_concurrent)
        logger.info(f"[启动] 开始下载 {len(plan)} 个文件，最大并发数: {self.max_concurrent}")

        async def run(item: DownloadItem) -> DownloadOutcome:
            async with semaphore:
                return await self.download_item(item)

        outcomes = await asyncio.gather(*(run(item) for item in plan))

        logger.info(
            f"[完成] 下载结束: {self.stats.completed} 成功, "
            f"{self.stats.failed} 失败, {self.stats.skipped} 跳过"
        )
        return list(outcomes)

    async def download_item(self, item: DownloadItem) -> DownloadOutcome:
        """下载单个文件（传输错误按指数退避重试，校验失败不重试）"""
        if item.expected_hash and await self.verifier.verify(
            item.destination, item.expected_hash
        ):
            self.stats.skipped += 1
            logger.info(f"[跳过] '{item.display_name}' 已存在且校验通过")
            return DownloadOutcome(
                item, DownloadStatus.VERIFIED, actual_hash=item.expected_hash.lower()
            )

        logger.info(f"[开始] 下载: {item.display_name}")

        for attempt in range(self.max_retries + 1):
            try:
                actual = await self._fetch(item)
            except DownloadChecksumError as e:
                self.stats.failed += 1
                self._discard_destination(item)
                logger.error(
                    f"[校验] '{item.display_name}' SHA512 不匹配，已删除文件"
                )
                return DownloadOutcome(
                    item,
                    DownloadStatus.CHECKSUM_MISMATCH,
                    detail=str(e),
                    actual_hash=e.actual,
                )
            except (DownloadNetworkError, DownloadFileError) as e:
                if isinstance(e, DownloadNetworkError) and attempt < self.max_retries:
                    delay = self.retry_delay * (2**attempt)
                    logger.warning(
                        f"[重试] 下载 '{item.display_name}' 失败 (第 {attempt + 1} 次): {e}. "
                        f"{delay:.1f}s 后重试..."
                    )
                    await asyncio.sleep(delay)
                    continue

                self.stats.failed += 1
                self._discard_destination(item)
                logger.error(f"[错误] 下载 '{item.display_name}' 最终失败: {e}")
                return DownloadOutcome(
                    item, DownloadStatus.TRANSPORT_FAILURE, detail=str(e)
                )

            self.stats.completed += 1
            logger.success(f"[完成] '{item.display_name}' 下载完成")
            return DownloadOutcome(item, DownloadStatus.VERIFIED, actual_hash=actual)

        # max_retries < 0 时不会进入循环
        self.stats.failed += 1
        self._discard_destination(item)
        return DownloadOutcome(
            item, DownloadStatus.TRANSPORT_FAILURE, detail="未尝试下载"
        )

    @staticmethod
    def _discard_destination(item: DownloadItem):
        """删除目标路径上未通过校验的旧文件（已校验通过的文件在下载前就会被跳过）"""
        if not os.path.exists(item.destination):
            return
        try:
            os.remove(item.destination)
        except OSError as e:
            logger.warning(f"[清理] 无法删除未通过校验的文件 {item.destination}: {e}")
        else:
            logger.debug(f"[清理] 已删除未通过校验的文件: {item.destination}")

    async def _fetch(self, item: DownloadItem) -> str:
        """
        流式下载到临时文件并校验，通过后原子移动到目标路径

        Returns:
            实际的 SHA512 值
        """
        directory = os.path.dirname(item.destination)
        tmp_path = item.destination + PART_SUFFIX
        hasher = self.verifier.new_hasher()
        committed = False

        try:
            if directory:
                os.makedirs(directory, exist_ok=True)

            async with self.session.get(item.url) as response:
                if response.status != 200:
                    raise DownloadNetworkError(
                        f"HTTP {response.status}",
                        context={"url": item.url, "status": response.status},
                    )

                total_size = int(response.headers.get("Content-Length", 0))
                async with aiofiles.open(tmp_path, "wb") as f:
                    downloaded = 0
                    last_percent = 0.0

                    async for chunk in response.content.iter_chunked(8192):
                        await f.write(chunk)
                        hasher.update(chunk)
                        downloaded += len(chunk)
                        self.stats.bytes_downloaded += len(chunk)

                        # 进度回调
                        if total_size > 0:
                            percent = (downloaded / total_size) * 100
                            if percent - last_percent >= 5:
                                if self._progress_callback:
                                    self._progress_callback(item.display_name, percent)
                                logger.debug(
                                    f"[进度] {item.display_name}: {percent:.1f}%"
                                )
                                last_percent = percent

            actual = hasher.hexdigest()
            expected = (item.expected_hash or "").lower()
            if actual != expected:
                raise DownloadChecksumError(
                    item.mod_id or item.display_name, expected, actual
                )

            os.replace(tmp_path, item.destination)
            committed = True
            return actual

        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise DownloadNetworkError(
                f"网络错误: {e or type(e).__name__}", context={"url": item.url}
            ) from e
        except OSError as e:
            raise DownloadFileError(
                f"文件写入失败: {e}", context={"file": item.destination}
            ) from e
        finally:
            if not committed and os.path.exists(tmp_path):
                try:
                    os.remove(tmp_path)
                except OSError as e:
                    logger.warning(f"[清理] 无法删除临时文件 {tmp_path}: {e}")

    def get_stats(self) -> DownloadStats:
        """获取下载统计"""
        return self.stats

    async def close(self):
        """关闭 session"""
        if self._owned_session and self._session and not self._session.closed:
            await self._session.close()

    async def __aenter__(self):
        """异步上下文管理器入口"""
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """异步上下文管理器出口"""
        await self.close()
