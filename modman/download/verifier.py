"""
文件校验器

实现 SHA512 计算与文件完整性验证。
"""

import hashlib
import os
from typing import Optional

import aiofiles


HASH_ALGORITHM = "sha512"


class FileVerifier:
    """文件校验器"""

    @staticmethod
    def new_hasher():
        """创建与锁文件一致的哈希对象"""
        return hashlib.new(HASH_ALGORITHM)

    @staticmethod
    async def calc_hash(file_path: str) -> Optional[str]:
        """
        计算文件的 SHA512 值

        Args:
            file_path: 文件路径

        Returns:
            SHA512 哈希值或 None（如果文件不存在）
        """
        if not os.path.exists(file_path):
            return None

        hasher = FileVerifier.new_hasher()
        try:
            async with aiofiles.open(file_path, "rb") as f:
                while True:
                    data = await f.read(65536)
                    if not data:
                        break
                    hasher.update(data)
            return hasher.hexdigest()
        except (IOError, OSError):
            return None

    @staticmethod
    async def verify(file_path: str, expected_hash: Optional[str]) -> bool:
        """
        校验文件的 SHA512 是否匹配

        Args:
            file_path: 文件路径
            expected_hash: 预期的 SHA512 值

        Returns:
            是否匹配（如果没有预期值则返回 True）
        """
        if not expected_hash:
            return True

        current = await FileVerifier.calc_hash(file_path)
        if current is None:
            return False

        return current == expected_hash.lower()

    @staticmethod
    def get_size(file_path: str) -> int:
        """获取文件大小"""
        try:
            return os.path.getsize(file_path)
        except (IOError, OSError):
            return 0
