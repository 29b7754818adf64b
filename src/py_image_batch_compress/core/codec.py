"""图像编解码模块。

解码尺寸、缩放并按目标格式与质量重新编码。无状态，不了解批次概念。
"""

from io import BytesIO
from typing import Any

from PIL import Image, ImageOps

from ..config import CompressionDefaults, get_config
from ..exceptions import DecodeError, EncodeError, handle_image_errors
from ..models.constants import OutputFormat, to_pillow_quality
from ..utils.logging_helpers import get_logger


logger = get_logger()

ORIENTATION_TAG = 0x0112


class ImageCodec:
    """基于 Pillow 的图像编解码器"""

    def __init__(self, defaults: CompressionDefaults | None = None) -> None:
        self.defaults = defaults or get_config().compression

    @handle_image_errors("解码图像尺寸", DecodeError)
    def decode_dimensions(self, blob: bytes) -> tuple[int, int]:
        """返回按 EXIF 方向校正后的 (宽, 高)，只读取文件头"""
        with self._open(blob) as img:
            width, height = img.size
            # 方向 5-8 包含 90 度旋转
            if img.getexif().get(ORIENTATION_TAG, 1) in (5, 6, 7, 8):
                return height, width
            return width, height

    def transcode(
        self,
        blob: bytes,
        target_width: int | None,
        target_height: int | None,
        output_format: str | OutputFormat,
        quality: float,
        exif: bytes | None = None,
    ) -> bytes:
        """重新编码图像

        两个目标尺寸都缺省时保留源尺寸；只给出一个时另一个保持源尺寸，
        编码器本身从不推断宽高比。

        Args:
            blob: 源图像内容
            target_width: 目标宽度
            target_height: 目标高度
            output_format: 输出格式 jpeg/png/webp
            quality: 质量 [0, 1]，png 忽略
            exif: 要写入产物的 EXIF 数据

        Returns:
            bytes: 编码后的内容

        Raises:
            DecodeError: 源图像无法解码
            EncodeError: 目标参数非法或编码失败
        """
        fmt = self._validate_target(output_format, target_width, target_height, quality)
        image = self._load(blob)
        image = self._resize(image, target_width, target_height)
        return self._encode(image, fmt, quality, exif)

    def _validate_target(
        self,
        output_format: str | OutputFormat,
        target_width: int | None,
        target_height: int | None,
        quality: float,
    ) -> OutputFormat:
        try:
            fmt = OutputFormat.parse(output_format)
        except ValueError as e:
            raise EncodeError(f"不支持的输出格式: {output_format}") from e

        for label, value in (("宽度", target_width), ("高度", target_height)):
            if value is None:
                continue
            if value <= 0:
                raise EncodeError(f"目标{label}必须大于 0，当前值: {value}")
            if value > self.defaults.MAX_DIMENSION:
                raise EncodeError(
                    f"目标{label}超过限制 {self.defaults.MAX_DIMENSION}，当前值: {value}"
                )

        if not 0.0 <= quality <= 1.0:
            raise EncodeError(f"质量必须在 0-1 之间，当前值: {quality}")
        return fmt

    @staticmethod
    def _open(blob: bytes) -> Image.Image:
        if not blob:
            raise DecodeError("图像内容为空")
        return Image.open(BytesIO(blob))

    @handle_image_errors("解码图像", DecodeError)
    def _load(self, blob: bytes) -> Image.Image:
        with self._open(blob) as img:
            img.load()
            # exif_transpose 总是返回新图像，脱离原始缓冲区
            return ImageOps.exif_transpose(img)

    @staticmethod
    def _resize(
        img: Image.Image, target_width: int | None, target_height: int | None
    ) -> Image.Image:
        if target_width is None and target_height is None:
            return img
        size = (target_width or img.width, target_height or img.height)
        if size == img.size:
            return img
        return img.resize(size, Image.Resampling.LANCZOS)

    @handle_image_errors("编码图像", EncodeError)
    def _encode(
        self,
        img: Image.Image,
        fmt: OutputFormat,
        quality: float,
        exif: bytes | None,
    ) -> bytes:
        prepared = prepare_for_format(img, fmt)
        params = self.get_save_parameters(fmt, quality)
        if exif:
            params["exif"] = exif

        buffer = BytesIO()
        prepared.save(buffer, format=fmt.pillow_format, **params)
        return buffer.getvalue()

    def get_save_parameters(self, fmt: OutputFormat, quality: float) -> dict[str, Any]:
        """获取保存参数"""
        params = self.defaults.get_format_defaults(fmt.pillow_format)
        pillow_quality = to_pillow_quality(quality)

        match fmt:
            case OutputFormat.JPEG:
                if pillow_quality > self.defaults.JPEG_MAX_QUALITY:
                    logger.debug(
                        f"JPEG质量 {pillow_quality} 调整为 {self.defaults.JPEG_MAX_QUALITY}"
                    )
                    pillow_quality = self.defaults.JPEG_MAX_QUALITY
                params["quality"] = pillow_quality
                # 高质量使用 4:2:2，否则 4:2:0
                params["subsampling"] = 1 if pillow_quality >= 85 else 2
            case OutputFormat.WEBP:
                params["quality"] = pillow_quality
                if pillow_quality >= 85:
                    params["alpha_quality"] = 100
                elif pillow_quality >= 70:
                    params["alpha_quality"] = min(100, pillow_quality + 10)
                else:
                    params["alpha_quality"] = pillow_quality
            case OutputFormat.PNG:
                pass

        return params


def prepare_for_format(img: Image.Image, fmt: OutputFormat) -> Image.Image:
    """为目标格式转换色彩模式"""
    match fmt:
        case OutputFormat.JPEG:
            return _prepare_for_jpeg(img)
        case OutputFormat.PNG:
            return _prepare_for_png(img)
        case OutputFormat.WEBP:
            return _prepare_for_webp(img)
    return img


def _prepare_for_jpeg(img: Image.Image) -> Image.Image:
    # JPEG 不支持透明度，合成到白色背景
    if img.mode == "P":
        if "transparency" not in img.info:
            return img.convert("RGB")
        img = img.convert("RGBA")

    if img.mode in ("RGBA", "LA", "PA"):
        rgba = img.convert("RGBA")
        background = Image.new("RGB", rgba.size, (255, 255, 255))
        background.paste(rgba, mask=rgba.getchannel("A"))
        return background

    if img.mode != "RGB":
        return img.convert("RGB")
    return img


def _prepare_for_png(img: Image.Image) -> Image.Image:
    if img.mode == "P":
        if "transparency" in img.info:
            return img.convert("RGBA")
        return img.convert("RGB")
    if img.mode in ("CMYK", "YCbCr", "I;16", "F"):
        return img.convert("RGB")
    return img


def _prepare_for_webp(img: Image.Image) -> Image.Image:
    # WebP 只支持 RGB 和 RGBA
    if img.mode in ("RGB", "RGBA"):
        return img
    if img.mode in ("LA", "PA") or (img.mode == "P" and "transparency" in img.info):
        return img.convert("RGBA")
    return img.convert("RGB")
