"""
ModMan 下载层

包含下载管理与文件校验功能。
"""

from modman.download.manager import (
    DownloadItem,
    DownloadManager,
    DownloadOutcome,
    DownloadStats,
    DownloadStatus,
)
from modman.download.verifier import FileVerifier

__all__ = [
    "DownloadItem",
    "DownloadManager",
    "DownloadOutcome",
    "DownloadStats",
    "DownloadStatus",
    "FileVerifier",
]
