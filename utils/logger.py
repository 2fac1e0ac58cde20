"""
统一日志系统
所有模块通过 ``from loguru import logger`` 记录日志, 这里只负责配置 sink。
"""
import logging
import sys
from pathlib import Path
from typing import Union

from loguru import logger

CONSOLE_FORMAT = (
    "<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>"
)
FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {name}:{line} | {extra} | {message}"

MAIN_LOG = "bridge.log"
ERROR_LOG = "bridge.error.log"

# 需要接管的标准库 logger
INTERCEPTED_LOGGERS = ("uvicorn", "uvicorn.access", "uvicorn.error", "fastapi")
# 调试级别下逐帧输出的库
NOISY_LOGGERS = ("websockets", "aiohttp.access")


class InterceptHandler(logging.Handler):
    """把标准库 logging 的记录转发给 loguru"""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        # 跳过 logging 模块自身的帧, 让日志显示真正的调用位置
        frame, depth = logging.currentframe(), 2
        while frame and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def intercept_stdlib_logging() -> None:
    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)

    for name in INTERCEPTED_LOGGERS:
        std_logger = logging.getLogger(name)
        std_logger.handlers = [InterceptHandler()]
        std_logger.propagate = False

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.INFO)


def setup_logger(log_dir: Union[str, Path] = "logs", level: str = "INFO"):
    """
    配置全局 Logger
    :param log_dir: 日志目录 (通常是 ~/.clawdbot)
    :param level: 控制台日志级别; 文件始终记录 DEBUG
    """
    logger.remove()

    log_dir = Path(log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)

    # 以守护进程运行时 stderr 被重定向到 bridge.out
    logger.add(sys.stderr, level=level, format=CONSOLE_FORMAT)

    logger.add(
        log_dir / MAIN_LOG,
        rotation="00:00",
        retention="10 days",
        compression="zip",
        enqueue=True,
        level="DEBUG",
        format=FILE_FORMAT,
    )

    logger.add(
        log_dir / ERROR_LOG,
        rotation="10 MB",
        retention="30 days",
        level="ERROR",
        backtrace=True,
        diagnose=False,  # 不展开局部变量, token 不落盘
    )

    intercept_stdlib_logging()

    logger.bind(log_dir=str(log_dir)).info(f"Logging to {log_dir / MAIN_LOG} (console level {level})")
    return logger
