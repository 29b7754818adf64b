"""测试配置文件。

提供测试所需的fixtures和配置。所有测试图片都在内存中生成。
"""

import asyncio
import tempfile
import threading
import time
from io import BytesIO
from pathlib import Path

import pytest
from PIL import Image, ImageDraw

from py_image_batch_compress.core.codec import ImageCodec
from py_image_batch_compress.engine.pipeline import CompressionPipeline
from py_image_batch_compress.exceptions import EncodeError
from py_image_batch_compress.models.image_record import ImageRecord


TEST_WINDOW = 0.05


def make_image(size: tuple[int, int], mode: str = "RGB") -> Image.Image:
    """创建带噪声和色块的图片，接近真实照片的压缩特性"""
    width, height = size
    noise = Image.effect_noise(size, 64).convert("L")
    img = Image.merge(
        "RGB",
        (noise, noise.rotate(90, expand=False), Image.linear_gradient("L").resize(size)),
    )
    draw = ImageDraw.Draw(img)
    for i in range(12):
        x, y = (i * width // 12), (i * height // 12)
        color = (i * 20 % 256, i * 37 % 256, i * 53 % 256)
        draw.rectangle([x, y, x + width // 6, y + height // 8], fill=color)

    if mode == "RGBA":
        img = img.convert("RGBA")
        alpha = Image.new("L", size, 255)
        ImageDraw.Draw(alpha).ellipse([0, 0, width // 2, height // 2], fill=64)
        img.putalpha(alpha)
    return img


def encode(img: Image.Image, fmt: str, **params) -> bytes:
    buffer = BytesIO()
    img.save(buffer, format=fmt, **params)
    return buffer.getvalue()


def make_image_bytes(size: tuple[int, int], fmt: str = "PNG", mode: str = "RGB") -> bytes:
    """生成指定尺寸和格式的图片内容"""
    return encode(make_image(size, mode), fmt)


def decoded_size(blob: bytes) -> tuple[int, int]:
    with Image.open(BytesIO(blob)) as img:
        return img.size


def decoded_format(blob: bytes) -> str | None:
    with Image.open(BytesIO(blob)) as img:
        return img.format


def make_record(key: str, filename: str | None = None, **kwargs) -> ImageRecord:
    """创建用于导出测试的记录"""
    defaults = {
        "filename": filename or key,
        "upload_index": 0,
        "original_blob": b"original",
    }
    defaults.update(kwargs)
    return ImageRecord(key=key, **defaults)


class GatedCodec(ImageCodec):
    """可控的编解码器

    记录每次 transcode 调用；为某个质量设置闸门后，该质量的调用会阻塞到闸门打开，
    用来模拟慢速和乱序完成。
    """

    def __init__(self) -> None:
        super().__init__()
        self.calls: list[dict] = []
        self.finished: list[float] = []
        self.fail_qualities: set[float] = set()
        self._gates: dict[float, threading.Event] = {}
        self._lock = threading.Lock()

    def gate(self, quality: float) -> threading.Event:
        event = threading.Event()
        self._gates[quality] = event
        return event

    def release_all(self) -> None:
        for event in self._gates.values():
            event.set()

    def qualities(self) -> list[float]:
        with self._lock:
            return [call["quality"] for call in self.calls]

    def started(self, quality: float) -> bool:
        return quality in self.qualities()

    def reset(self) -> None:
        with self._lock:
            self.calls.clear()
            self.finished.clear()

    def transcode(self, blob, target_width, target_height, output_format, quality, exif=None):
        with self._lock:
            self.calls.append(
                {
                    "quality": quality,
                    "width": target_width,
                    "height": target_height,
                    "format": str(output_format),
                }
            )
        gate = self._gates.get(quality)
        if gate is not None:
            gate.wait(timeout=10)
        try:
            if quality in self.fail_qualities:
                raise EncodeError(f"模拟编码失败: {quality}")
            return super().transcode(
                blob, target_width, target_height, output_format, quality, exif=exif
            )
        finally:
            with self._lock:
                self.finished.append(quality)


async def wait_for(predicate, timeout: float = 5.0) -> None:
    """轮询直到条件成立"""
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("等待条件超时")
        await asyncio.sleep(0.01)


def run(coro):
    """在新的事件循环中运行协程"""
    return asyncio.run(coro)


@pytest.fixture
def temp_dir():
    """临时目录fixture"""
    with tempfile.TemporaryDirectory() as temp_dir:
        yield Path(temp_dir)


@pytest.fixture(scope="session")
def square_png() -> bytes:
    """500x500 PNG"""
    return make_image_bytes((500, 500), "PNG")


@pytest.fixture(scope="session")
def landscape_jpg() -> bytes:
    """1000x800 JPEG"""
    return make_image_bytes((1000, 800), "JPEG")


@pytest.fixture(scope="session")
def transparent_png() -> bytes:
    """带透明通道的 400x300 PNG"""
    return make_image_bytes((400, 300), "PNG", mode="RGBA")


@pytest.fixture(scope="session")
def photo_png() -> bytes:
    """用于质量比较的 320x240 噪声图片"""
    return make_image_bytes((320, 240), "PNG")


@pytest.fixture
def corrupt_bytes() -> bytes:
    return b"this is not an image" * 10


@pytest.fixture
def codec() -> ImageCodec:
    return ImageCodec()


@pytest.fixture
def gated_codec() -> GatedCodec:
    codec = GatedCodec()
    yield codec
    codec.release_all()


@pytest.fixture
def make_pipeline():
    """创建使用短防抖窗口的流水线工厂"""

    def factory(**kwargs) -> CompressionPipeline:
        kwargs.setdefault("debounce_window", TEST_WINDOW)
        return CompressionPipeline(**kwargs)

    return factory
