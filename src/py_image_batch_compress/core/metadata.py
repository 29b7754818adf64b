"""图片描述性元数据提取器。

读取标题、主题、评分、标签、备注、作者、版权等字段，并能把编辑后的字段
重新打包成 EXIF 写入产物。
"""

from collections.abc import Mapping
from io import BytesIO
from typing import Any

from PIL import Image

from ..exceptions import MetadataError, handle_image_errors
from ..models.constants import ExifTags
from ..models.image_record import empty_metadata
from ..utils.logging_helpers import get_logger


logger = get_logger()


class MetadataExtractor:
    """元数据提取器

    缺失字段总是映射为空字符串，只有容器损坏时才抛出 MetadataError。
    """

    @handle_image_errors("读取元数据", MetadataError)
    def extract(self, blob: bytes) -> dict[str, str]:
        """提取固定字段集合

        Args:
            blob: 图像内容

        Returns:
            dict[str, str]: 字段名到字符串值的映射，包含全部字段
        """
        if not blob:
            raise MetadataError("图像内容为空")

        with Image.open(BytesIO(blob)) as img:
            exif = img.getexif()

        metadata = empty_metadata()
        if not exif:
            return metadata

        for field, tag in ExifTags.XP_FIELDS.items():
            value = self._decode_xp(exif.get(tag))
            if not value and field in ExifTags.ASCII_FALLBACKS:
                value = self._decode_ascii(exif.get(ExifTags.ASCII_FALLBACKS[field]))
            metadata[field] = value

        rating = exif.get(ExifTags.RATING)
        metadata["rating"] = "" if rating is None else str(rating).strip()
        metadata["copyright"] = self._decode_ascii(exif.get(ExifTags.COPYRIGHT))

        return metadata

    def build_exif(self, metadata: Mapping[str, str]) -> bytes:
        """将元数据映射打包为 EXIF 字节

        空字段不会写入；评分只接受 0-5 的整数。
        """
        exif = Image.Exif()

        for field, tag in ExifTags.XP_FIELDS.items():
            value = metadata.get(field, "")
            if value:
                exif[tag] = value.encode("utf-16-le") + b"\x00\x00"

        if rating := metadata.get("rating", "").strip():
            try:
                exif[ExifTags.RATING] = max(0, min(5, int(rating)))
            except ValueError:
                logger.debug(f"忽略无法解析的评分: {rating!r}")

        if copyright_text := metadata.get("copyright", ""):
            exif[ExifTags.COPYRIGHT] = copyright_text

        return exif.tobytes()

    @staticmethod
    def _decode_xp(value: Any) -> str:
        if value is None:
            return ""
        if isinstance(value, str):
            return value.rstrip("\x00").strip()
        if isinstance(value, tuple | list):
            value = bytes(value)
        if isinstance(value, bytes):
            return value.decode("utf-16-le", errors="ignore").rstrip("\x00").strip()
        return str(value)

    @staticmethod
    def _decode_ascii(value: Any) -> str:
        if value is None:
            return ""
        if isinstance(value, bytes):
            value = value.decode("utf-8", errors="ignore")
        # 版权字段可能以 NUL 分隔摄影师与编辑
        return " ".join(part.strip() for part in str(value).split("\x00") if part.strip())
