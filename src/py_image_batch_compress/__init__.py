"""批量图像重压缩库。

基于 Pillow 的批量重压缩流水线：防抖合并的参数变更、最后请求优先的结果写入、
确定性的 zip 导出。
"""

__version__ = "0.1.0"
__description__ = "批量图像重压缩流水线，基于 Pillow 11"

from .engine.pipeline import CompressionPipeline
from .models.constants import OutputFormat
from .models.export_result import ExportArchive, ExportArtifact
from .models.image_record import BatchParameters, ImageRecord, RecordStatus
from .session import BatchSession


__all__ = [
    "BatchParameters",
    "BatchSession",
    "CompressionPipeline",
    "ExportArchive",
    "ExportArtifact",
    "ImageRecord",
    "OutputFormat",
    "RecordStatus",
    "get_version",
]


def get_version() -> str:
    """获取版本号。"""
    return __version__
