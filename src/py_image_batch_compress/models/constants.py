"""图像处理相关常量定义。

输出格式、元数据字段等业务常量集中在这里，避免硬编码重复。
"""

from enum import Enum
from typing import Final


class OutputFormat(str, Enum):
    """批次支持的输出格式"""

    JPEG = "jpeg"
    PNG = "png"
    WEBP = "webp"

    @classmethod
    def parse(cls, value: "str | OutputFormat") -> "OutputFormat":
        """解析格式名称，支持常见别名（如 jpg）"""
        if isinstance(value, OutputFormat):
            return value
        normalized = str(value).strip().lower().lstrip(".")
        normalized = ImageFormats.ALIASES.get(normalized, normalized)
        return cls(normalized)

    @property
    def pillow_format(self) -> str:
        """Pillow 使用的格式名称"""
        return self.value.upper()

    @property
    def extension(self) -> str:
        """规范扩展名（不含点）"""
        return ImageFormats.EXTENSIONS[self.value]

    @property
    def mime_type(self) -> str:
        """MIME 类型"""
        return f"image/{self.value}"

    @property
    def is_lossy(self) -> bool:
        """质量参数是否生效"""
        return self.value in ImageFormats.LOSSY_FORMATS


class ImageFormats:
    """格式相关的静态映射"""

    # 用户友好的别名
    ALIASES: Final[dict[str, str]] = {
        "jpg": "jpeg",
    }

    # 规范扩展名，与原始上传扩展名无关
    EXTENSIONS: Final[dict[str, str]] = {
        "jpeg": "jpeg",
        "png": "png",
        "webp": "webp",
    }

    # 质量参数仅对有损格式生效
    LOSSY_FORMATS: Final[set[str]] = {"jpeg", "webp"}


# 可编辑的元数据字段，顺序即展示顺序
METADATA_FIELDS: Final[tuple[str, ...]] = (
    "title",
    "subject",
    "rating",
    "tags",
    "comments",
    "authors",
    "copyright",
)


class ExifTags:
    """元数据字段对应的 EXIF 标签"""

    IMAGE_DESCRIPTION: Final[int] = 0x010E
    ARTIST: Final[int] = 0x013B
    RATING: Final[int] = 0x4746
    COPYRIGHT: Final[int] = 0x8298
    XP_TITLE: Final[int] = 0x9C9B
    XP_COMMENT: Final[int] = 0x9C9C
    XP_AUTHOR: Final[int] = 0x9C9D
    XP_KEYWORDS: Final[int] = 0x9C9E
    XP_SUBJECT: Final[int] = 0x9C9F

    # Windows XP 标签使用 UTF-16LE 编码
    XP_FIELDS: Final[dict[str, int]] = {
        "title": XP_TITLE,
        "subject": XP_SUBJECT,
        "tags": XP_KEYWORDS,
        "comments": XP_COMMENT,
        "authors": XP_AUTHOR,
    }

    # XP 标签缺失时的 ASCII 后备标签
    ASCII_FALLBACKS: Final[dict[str, int]] = {
        "title": IMAGE_DESCRIPTION,
        "authors": ARTIST,
    }


class QualityDefaults:
    """质量相关默认值"""

    MIN_QUALITY: Final[float] = 0.0
    MAX_QUALITY: Final[float] = 1.0

    # Pillow 质量范围
    PILLOW_MIN: Final[int] = 1
    PILLOW_MAX: Final[int] = 100


def to_pillow_quality(quality: float) -> int:
    """将 [0, 1] 质量映射到 Pillow 的 1-100 质量"""
    scaled = round(quality * QualityDefaults.PILLOW_MAX)
    return max(QualityDefaults.PILLOW_MIN, min(QualityDefaults.PILLOW_MAX, scaled))


def get_mime_type(format_str: str) -> str:
    """获取格式的MIME类型"""
    return OutputFormat.parse(format_str).mime_type


def get_extension(format_str: str) -> str:
    """获取格式的规范扩展名"""
    return OutputFormat.parse(format_str).extension
