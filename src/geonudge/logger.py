"""日志模块

先调用 setup_logging 配置 sink，之后各模块直接 `from geonudge.logger import logger` 使用。
未调用 setup_logging 时沿用 loguru 的默认 stderr 输出（测试场景即如此）。

uvicorn / httpx / aiosqlite 等第三方库走标准库 logging，setup_logging 会把它们转接到 loguru，
统一格式与落盘位置。
"""

from __future__ import annotations

import inspect
import logging
import sys
from pathlib import Path
from typing import Literal, Union

from loguru import logger

LogLevel = Literal["TRACE", "DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL", "FATAL"]

CONSOLE_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
    "<level>{level:<8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
    "<level>{message}</level>"
)

FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level:<8} | {name}:{function}:{line} - {message}"

# 这些库的 DEBUG 输出过于嘈杂（每个请求/每条 SQL 一行）
NOISY_LOGGERS = {
    "httpx": "WARNING",
    "httpcore": "WARNING",
    "hpack": "WARNING",
    "aiosqlite": "INFO",
    "uvicorn.access": "WARNING",
}

_LEVEL_ALIAS = {"FATAL": "CRITICAL"}


def _normalize_level(level: Union[str, LogLevel]) -> str:
    return _LEVEL_ALIAS.get(str(level).upper(), str(level).upper())


class InterceptHandler(logging.Handler):
    """把标准库 logging 记录转发给 loguru"""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level: str | int = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        # 回溯到真正调用 logging 的栈帧，保证 {name}:{function}:{line} 指向第三方库代码
        frame, depth = inspect.currentframe(), 0
        while frame and (depth == 0 or frame.f_code.co_filename == logging.__file__):
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def _file_handler(path: Path, *, level: str, retention: str) -> dict:
    return {
        "sink": path,
        "level": level,
        "format": FILE_FORMAT,
        "rotation": "10 MB",
        "retention": retention,
        "compression": "zip",
        "encoding": "utf-8",
        "enqueue": True,
    }


def setup_logging(
    log_level: LogLevel,
    log_file: Union[str, Path],
    console_level: LogLevel = "INFO",
) -> None:
    log_file = Path(log_file)
    log_file.parent.mkdir(parents=True, exist_ok=True)
    error_log_file = log_file.with_name(f"{log_file.stem}_error{log_file.suffix}")

    logger.configure(
        handlers=[
            {
                "sink": sys.stderr,
                "level": _normalize_level(console_level),
                "format": CONSOLE_FORMAT,
                "colorize": True,
            },
            _file_handler(log_file, level=_normalize_level(log_level), retention="30 days"),
            _file_handler(error_log_file, level="ERROR", retention="90 days"),
        ]
    )

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
    for name, level in NOISY_LOGGERS.items():
        logging.getLogger(name).setLevel(level)


__all__ = ["setup_logging", "InterceptHandler", "logger"]
