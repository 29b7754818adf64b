"""数据模型包。

定义批次记录、批次参数和导出结果等数据结构。
"""

from .constants import (
    METADATA_FIELDS,
    ExifTags,
    ImageFormats,
    OutputFormat,
    QualityDefaults,
    get_extension,
    get_mime_type,
    to_pillow_quality,
)
from .export_result import ArchiveEntry, ExportArchive, ExportArtifact, SkippedEntry
from .image_record import (
    BatchParameters,
    ImageRecord,
    ProcessingParams,
    RecordStatus,
    empty_metadata,
)


__all__ = [
    "METADATA_FIELDS",
    "ArchiveEntry",
    "BatchParameters",
    "ExifTags",
    "ExportArchive",
    "ExportArtifact",
    "ImageFormats",
    "ImageRecord",
    "OutputFormat",
    "ProcessingParams",
    "QualityDefaults",
    "RecordStatus",
    "SkippedEntry",
    "empty_metadata",
    "get_extension",
    "get_mime_type",
    "to_pillow_quality",
]
