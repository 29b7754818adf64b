"""批次记录模型。

定义每张图片的可变记录、批次级参数以及产物对应的处理参数。
"""

from enum import Enum

from humanize import naturalsize
from pydantic import BaseModel, Field, field_validator, model_validator

from .constants import METADATA_FIELDS, OutputFormat


class RecordStatus(str, Enum):
    """记录状态

    合法迁移：Idle→Pending→Processing→{Ready, Failed}，任意状态→Pending。
    """

    IDLE = "idle"
    PENDING = "pending"
    PROCESSING = "processing"
    READY = "ready"
    FAILED = "failed"

    @property
    def is_settled(self) -> bool:
        """是否没有待完成的工作"""
        return self in (RecordStatus.IDLE, RecordStatus.READY, RecordStatus.FAILED)


def empty_metadata() -> dict[str, str]:
    """所有字段均为空字符串的元数据映射"""
    return dict.fromkeys(METADATA_FIELDS, "")


class BatchParameters(BaseModel):
    """批次级参数，对所有记录生效"""

    target_width: int | None = Field(None, gt=0, description="目标宽度，None 保留原尺寸")
    target_height: int | None = Field(
        None, gt=0, description="目标高度，None 保留原尺寸"
    )
    output_format: OutputFormat = Field(OutputFormat.WEBP, description="输出格式")
    quality: float = Field(1.0, ge=0.0, le=1.0, description="全局质量")

    @field_validator("output_format", mode="before")
    @classmethod
    def parse_output_format(cls, v: str | OutputFormat) -> OutputFormat:
        return OutputFormat.parse(v)


class ProcessingParams(BaseModel):
    """产生某个产物时使用的全部参数，用于判断产物是否过期"""

    model_config = {"frozen": True}

    quality: float
    width: int | None = None
    height: int | None = None
    output_format: OutputFormat
    metadata: tuple[tuple[str, str], ...] = ()


class ImageRecord(BaseModel):
    """单张图片的记录"""

    key: str = Field(description="批次内唯一标识")
    filename: str = Field(description="上传时的文件名")
    upload_index: int = Field(ge=0, description="上传顺序")

    # 原始数据，创建后不可变
    original_blob: bytes = Field(repr=False, description="原始二进制内容")
    original_size: int = Field(0, ge=0, description="原始大小（字节）")
    width: int = Field(0, ge=0, description="原始宽度")
    height: int = Field(0, ge=0, description="原始高度")

    # 当前产物
    processed_blob: bytes | None = Field(None, repr=False, description="当前产物")
    processed_size: int = Field(0, ge=0, description="产物大小（字节）")
    processed_params: ProcessingParams | None = Field(
        None, description="产生当前产物的参数"
    )

    # 质量设置
    quality: float = Field(1.0, ge=0.0, le=1.0, description="最近一次请求的有效质量")
    quality_override: float | None = Field(
        None, ge=0.0, le=1.0, description="单张图片的显式质量"
    )
    requested_width: int | None = Field(None, gt=0, description="最近一次请求的目标宽度")
    requested_height: int | None = Field(
        None, gt=0, description="最近一次请求的目标高度"
    )

    # 用户编辑
    metadata: dict[str, str] = Field(default_factory=empty_metadata)
    rename_target: str | None = Field(None, description="导出时使用的基础文件名")

    # 处理状态
    status: RecordStatus = Field(RecordStatus.IDLE, description="处理状态")
    request_seq: int = Field(0, ge=0, description="单调递增的请求序号")
    error: str | None = Field(None, description="最近一次失败的原因")

    @model_validator(mode="after")
    def derive_original_size(self) -> "ImageRecord":
        if not self.original_size:
            self.original_size = len(self.original_blob)
        return self

    @property
    def has_override(self) -> bool:
        """是否有单张图片的显式质量"""
        return self.quality_override is not None

    def metadata_items(self) -> tuple[tuple[str, str], ...]:
        """元数据的稳定快照，用于参数比较"""
        return tuple((field, self.metadata.get(field, "")) for field in METADATA_FIELDS)

    def resolve_quality(self, global_quality: float) -> float:
        """显式质量优先，否则回退到全局质量"""
        if self.quality_override is not None:
            return self.quality_override
        return global_quality

    def get_size_saved(self) -> int:
        """节省的字节数"""
        if self.processed_blob is None:
            return 0
        return max(0, self.original_size - self.processed_size)

    def get_compression_ratio(self) -> float:
        """压缩比例（百分比）"""
        if self.original_size == 0:
            return 0.0
        return self.get_size_saved() / self.original_size * 100

    def get_summary(self) -> str:
        """记录摘要"""
        original = naturalsize(self.original_size, binary=True)
        if self.processed_blob is None:
            return f"{self.filename}: {original} ({self.status.value})"
        processed = naturalsize(self.processed_size, binary=True)
        return (
            f"{self.filename}: {original} → {processed} "
            f"({self.get_compression_ratio():.1f}% 压缩, {self.status.value})"
        )
