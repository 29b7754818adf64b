"""工具模块包。

提供纯工具函数，不包含业务逻辑。
"""

from .file_helpers import collect_image_files, find_image_files, write_output
from .logging_helpers import configure_logging, get_logger
from .message_formatter import MessageFormatter
from .naming_helpers import FileNamingStrategy


__all__ = [
    "FileNamingStrategy",
    "MessageFormatter",
    "collect_image_files",
    "configure_logging",
    "find_image_files",
    "get_logger",
    "write_output",
]
