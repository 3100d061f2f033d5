"""
日志模块

控制台输出面向交互使用；指定日志文件时额外记录完整的 DEBUG 级别日志，
便于事后排查中断的同步事务。
"""

import os
import sys
from typing import Optional

from loguru import logger

CONSOLE_FORMAT = "{time:HH:mm:ss} | {level: <8} | {message}"
FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {name}:{function}:{line} | {message}"


def resolve_level(level: Optional[str] = None) -> str:
    """显式级别优先，其次 MODSYNC_LOG_LEVEL，MODSYNC_DEBUG=1 等同 DEBUG"""
    if level:
        return level.upper()
    env_level = os.environ.get("MODSYNC_LOG_LEVEL")
    if env_level:
        return env_level.upper()
    return "DEBUG" if os.environ.get("MODSYNC_DEBUG", "0") == "1" else "INFO"


def setup_logger(
    level: Optional[str] = None,
    sink=sys.stderr,
    log_file: Optional[str] = None,
    enqueue: bool = True,
    colorize: Optional[bool] = None,
) -> None:
    """
    设置日志记录器

    Args:
        level: 控制台日志级别 (DEBUG, INFO, WARNING, ERROR)
        sink: 控制台输出目标；stdout 留给命令输出
        log_file: 额外写入的日志文件，按 10 MB 轮转
        enqueue: 是否启用队列（线程安全）
        colorize: 是否启用颜色，默认仅在终端中启用
    """
    level = resolve_level(level)
    debug = level == "DEBUG"

    logger.remove()

    logger.add(
        sink=sink,
        format=CONSOLE_FORMAT,
        enqueue=enqueue,
        level=level,
        colorize=colorize,
        backtrace=debug,
        diagnose=debug,
    )

    if log_file:
        logger.add(
            log_file,
            format=FILE_FORMAT,
            enqueue=enqueue,
            level="DEBUG",
            rotation="10 MB",
            retention=5,
            encoding="utf-8",
            backtrace=True,
            diagnose=False,
        )

    if debug:
        logger.debug("DEBUG 模式已启用")


__all__ = ["logger", "setup_logger", "resolve_level"]
