"""
日志模块

控制台输出面向用户，只显示级别与消息；可选的日志文件记录完整时间戳，
便于事后追查某次同步删除、改名或安装了哪些模组。
"""

import os
import sys
from typing import Optional

from loguru import logger

CONSOLE_FORMAT = "<level>{level: <8}</level> | {message}"
FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {name}:{line} | {message}"


def _default_level() -> str:
    return "DEBUG" if os.environ.get("MODMAN_DEBUG", "0") == "1" else "INFO"


def setup_logger(
    level: Optional[str] = None,
    sink=sys.stderr,
    log_file: Optional[str] = None,
    colorize: bool = True,
) -> None:
    """
    设置日志记录器

    Args:
        level: 控制台日志级别，未指定时读取 MODMAN_DEBUG
        sink: 控制台输出目标
        log_file: 追加写入的日志文件，始终记录 DEBUG 级别
        colorize: 控制台是否启用颜色
    """
    level = level or _default_level()
    debug = level == "DEBUG"

    logger.remove()
    logger.add(
        sink=sink,
        format=CONSOLE_FORMAT,
        level=level,
        colorize=colorize,
        backtrace=debug,
        diagnose=debug,
    )

    if log_file:
        directory = os.path.dirname(log_file)
        if directory:
            os.makedirs(directory, exist_ok=True)
        logger.add(
            log_file,
            format=FILE_FORMAT,
            level="DEBUG",
            encoding="utf-8",
            colorize=False,
            backtrace=True,
            diagnose=False,
        )

    if debug:
        logger.debug("DEBUG 模式已启用")


__all__ = ["logger", "setup_logger"]
