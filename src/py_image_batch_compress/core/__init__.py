"""核心模块包。

图像编解码和元数据读写。
"""

from .codec import ImageCodec
from .metadata import MetadataExtractor


__all__ = [
    "ImageCodec",
    "MetadataExtractor",
]
