"""统一配置管理模块。

提供应用程序的全局配置管理，包括默认值、环境变量支持等。
"""

import os
from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class CompressionDefaults:
    """压缩相关的默认配置"""

    # 质量设置，取值范围 [0.0, 1.0]
    SEED_QUALITY: float = 1.0  # 首次压缩始终使用满质量
    DEFAULT_QUALITY: float = 1.0
    DEFAULT_OUTPUT_FORMAT: str = "webp"

    # 编码器参数
    JPEG_MAX_QUALITY: int = 98  # 100 会禁用部分 JPEG 压缩算法
    JPEG_PROGRESSIVE: bool = True
    WEBP_METHOD: int = 4
    PNG_COMPRESS_LEVEL: int = 9

    # 尺寸限制
    MAX_DIMENSION: int = 50000

    # 并发设置
    MAX_WORKERS: int = 4

    def get_format_defaults(self, format_name: str) -> dict[str, Any]:
        """获取格式特定的默认参数"""
        defaults = {
            "JPEG": {
                "optimize": True,
                "progressive": self.JPEG_PROGRESSIVE,
            },
            "WEBP": {
                "method": self.WEBP_METHOD,
            },
            "PNG": {
                "compress_level": self.PNG_COMPRESS_LEVEL,
                "optimize": True,
            },
        }
        return dict(defaults.get(format_name.upper(), {}))


@dataclass(frozen=True)
class PipelineDefaults:
    """流水线相关的默认配置"""

    # 防抖窗口（毫秒）
    DEBOUNCE_WINDOW_MS: int = 300

    # 执行器类型：thread / process
    EXECUTOR_TYPE: str = "thread"

    # 导出设置
    ARCHIVE_NAME: str = "compressed_images.zip"
    DISAMBIGUATE_FILENAMES: bool = True

    @property
    def debounce_window(self) -> float:
        """防抖窗口（秒）"""
        return self.DEBOUNCE_WINDOW_MS / 1000.0


@dataclass(frozen=True)
class LoggingDefaults:
    """日志相关的默认配置"""

    # 日志级别
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    # 文件日志
    ENABLE_FILE_LOGGING: bool = False
    LOG_FILE_PATH: str = "py_image_batch_compress.log"
    LOG_FILE_MAX_SIZE: int = 10 * 1024 * 1024  # 10MB
    LOG_FILE_BACKUP_COUNT: int = 5


class AppConfig:
    """应用程序配置管理器

    支持环境变量覆盖默认配置
    """

    def __init__(self):
        self.compression = CompressionDefaults()
        self.pipeline = PipelineDefaults()
        self.logging = LoggingDefaults()

        # 从环境变量加载配置
        self._load_from_env()

    def _load_from_env(self):
        """从环境变量加载配置"""
        # 压缩配置
        if default_quality := os.getenv("PIC_DEFAULT_QUALITY"):
            object.__setattr__(
                self.compression, "DEFAULT_QUALITY", float(default_quality)
            )

        if output_format := os.getenv("PIC_OUTPUT_FORMAT"):
            object.__setattr__(
                self.compression, "DEFAULT_OUTPUT_FORMAT", output_format.lower()
            )

        if max_workers := os.getenv("PIC_MAX_WORKERS"):
            object.__setattr__(self.compression, "MAX_WORKERS", int(max_workers))

        # 流水线配置
        if executor_type := os.getenv("PIC_EXECUTOR_TYPE"):
            object.__setattr__(self.pipeline, "EXECUTOR_TYPE", executor_type.lower())

        if debounce_ms := os.getenv("PIC_DEBOUNCE_MS"):
            object.__setattr__(self.pipeline, "DEBOUNCE_WINDOW_MS", int(debounce_ms))

        if archive_name := os.getenv("PIC_ARCHIVE_NAME"):
            object.__setattr__(self.pipeline, "ARCHIVE_NAME", archive_name)

        # 日志配置
        if log_level := os.getenv("PIC_LOG_LEVEL"):
            object.__setattr__(self.logging, "LOG_LEVEL", log_level.upper())

        if enable_file_log := os.getenv("PIC_ENABLE_FILE_LOGGING"):
            object.__setattr__(
                self.logging,
                "ENABLE_FILE_LOGGING",
                enable_file_log.lower() in ("true", "1", "yes"),
            )


# 全局配置实例
config = AppConfig()


def get_config() -> AppConfig:
    """获取全局配置实例"""
    return config


def reset_config():
    """重置配置（主要用于测试）"""
    global config
    config = AppConfig()
