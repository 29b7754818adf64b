"""批量重压缩异常处理模块。

定义统一的异常类和错误处理机制，包含图像边界的异常转换装饰器。
"""

from collections.abc import Callable
from functools import wraps
from typing import TypeVar

from PIL.Image import DecompressionBombError, UnidentifiedImageError

from .utils.logging_helpers import get_logger
from .utils.message_formatter import MessageFormatter


logger = get_logger()
T = TypeVar("T")


# 统一的异常类型
class CompressionError(Exception):
    """压缩相关错误基类"""

    def __init__(self, message: str, key: str | None = None):
        super().__init__(message)
        self.message = message
        self.key = key


class ValidationError(CompressionError):
    """参数验证错误 - 调用方传入了非法参数"""

    pass


class DecodeError(CompressionError):
    """源图像无法解码"""

    pass


class EncodeError(CompressionError):
    """目标参数非法或编码器失败"""

    pass


class MetadataError(CompressionError):
    """读取元数据时容器损坏"""

    pass


class CollisionError(CompressionError):
    """导出时文件名冲突且未启用自动消歧"""

    pass


class ExportError(CompressionError):
    """单个导出条目无法打包"""

    pass


class RecordNotFoundError(CompressionError, KeyError):
    """批次中不存在该记录"""

    def __str__(self) -> str:
        return self.message


class BatchClosedError(CompressionError):
    """批次已关闭，不再接受写入"""

    pass


def handle_image_errors(
    operation_name: str = "图像处理",
    error_cls: type[CompressionError] = EncodeError,
):
    """统一的图像处理异常处理装饰器

    Args:
        operation_name: 操作名称，用于日志记录
        error_cls: 非识别类错误转换成的领域异常类型
    """

    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        def wrapper(*args, **kwargs) -> T:
            try:
                return func(*args, **kwargs)
            except CompressionError:
                raise
            except UnidentifiedImageError as e:
                logger.debug(f"{operation_name} - 无法识别图像格式: {e}")
                raise (
                    DecodeError if error_cls is EncodeError else error_cls
                )(f"不支持的图像格式: {e}") from e
            except DecompressionBombError as e:
                logger.debug(f"{operation_name} - 图像过大: {e}")
                raise DecodeError(f"图像尺寸过大，可能存在安全风险: {e}") from e
            except (OSError, ValueError, TypeError, KeyError) as e:
                logger.debug(f"{operation_name} - 处理失败: {e}")
                raise error_cls(f"{operation_name}失败: {e}") from e

        return wrapper

    return decorator


class ErrorHandler:
    """统一错误处理器

    提供标准化的错误日志记录，失败只记入记录状态，不中断整个批次。
    """

    @staticmethod
    def log_error(
        operation: str, key: str, error: Exception, level: str = "error"
    ) -> None:
        """标准化的错误日志记录

        Args:
            operation: 操作名称（如"重压缩"、"导出"等）
            key: 相关记录标识
            error: 异常对象
            level: 日志级别 ("error", "warning", "debug")
        """
        log_msg = MessageFormatter.format_error(operation, key, error)
        getattr(logger, level, logger.error)(log_msg)

    @staticmethod
    def describe_failure(error: Exception, key: str, operation: str) -> str:
        """按异常类型分级记录日志，返回写入记录的错误描述"""
        match error:
            case DecodeError() | MetadataError():
                ErrorHandler.log_error(f"{operation} - 解码", key, error, "warning")
            case EncodeError() | ValidationError():
                ErrorHandler.log_error(f"{operation} - 编码", key, error, "warning")
            case _:
                ErrorHandler.log_error(operation, key, error, "error")
        return f"{operation}: {error}"
