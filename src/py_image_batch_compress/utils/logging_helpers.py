"""日志工具模块。

提供统一的日志记录功能，标准化日志格式和配置。
"""

import inspect
import logging
from logging.handlers import RotatingFileHandler


PACKAGE_LOGGER = "py_image_batch_compress"


def get_logger(name: str | None = None) -> logging.Logger:
    """获取标准化配置的日志记录器。

    Args:
        name: 日志记录器名称，默认使用调用模块的 __name__

    Returns:
        logging.Logger: 配置好的日志记录器
    """
    if name is None:
        # 获取调用者的模块名
        frame = inspect.currentframe()
        if frame and frame.f_back:
            name = frame.f_back.f_globals.get("__name__", "unknown")
        else:
            name = "unknown"

    return logging.getLogger(name)


def configure_logging(settings=None) -> logging.Logger:
    """按 LoggingDefaults 配置包级日志记录器。

    重复调用不会叠加处理器。

    Args:
        settings: LoggingDefaults 实例，默认读取全局配置

    Returns:
        logging.Logger: 包级日志记录器
    """
    if settings is None:
        from ..config import get_config

        settings = get_config().logging

    package_logger = logging.getLogger(PACKAGE_LOGGER)
    package_logger.setLevel(settings.LOG_LEVEL)
    formatter = logging.Formatter(settings.LOG_FORMAT)

    if not any(
        getattr(h, "_pic_managed", False) for h in package_logger.handlers
    ):
        handlers: list[logging.Handler] = [logging.StreamHandler()]
        if settings.ENABLE_FILE_LOGGING:
            handlers.append(
                RotatingFileHandler(
                    settings.LOG_FILE_PATH,
                    maxBytes=settings.LOG_FILE_MAX_SIZE,
                    backupCount=settings.LOG_FILE_BACKUP_COUNT,
                    encoding="utf-8",
                )
            )
        for handler in handlers:
            handler.setFormatter(formatter)
            handler._pic_managed = True  # type: ignore[attr-defined]
            package_logger.addHandler(handler)

    return package_logger
