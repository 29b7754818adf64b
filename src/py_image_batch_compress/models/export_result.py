"""导出结果模型。

定义单文件导出和批量归档导出的结果数据结构。
"""

from humanize import naturalsize
from pydantic import BaseModel, Field


class ExportArtifact(BaseModel):
    """单个导出产物"""

    key: str = Field(description="记录标识")
    filename: str = Field(description="导出文件名")
    data: bytes = Field(repr=False, description="文件内容")
    mime_type: str = Field(description="MIME 类型")
    stale: bool = Field(False, description="产物可能未反映最新参数")

    @property
    def size(self) -> int:
        return len(self.data)

    def get_size_human(self) -> str:
        """人类可读的文件大小"""
        return naturalsize(self.size, binary=True)


class ArchiveEntry(BaseModel):
    """归档中的一个条目"""

    key: str
    filename: str
    size: int = Field(ge=0)


class SkippedEntry(BaseModel):
    """批量导出中被跳过的记录"""

    key: str
    reason: str


class ExportArchive(BaseModel):
    """批量导出的归档"""

    filename: str = Field(description="归档文件名")
    data: bytes = Field(repr=False, description="zip 内容")
    entries: list[ArchiveEntry] = Field(default_factory=list)
    skipped: list[SkippedEntry] = Field(default_factory=list)
    stale: bool = Field(False, description="部分条目可能未反映最新参数")

    @property
    def skipped_keys(self) -> list[str]:
        return [entry.key for entry in self.skipped]

    def get_summary(self) -> str:
        """批量导出摘要"""
        total = len(self.entries) + len(self.skipped)
        size = naturalsize(len(self.data), binary=True)
        summary = f"导出 {len(self.entries)}/{total} 个文件到 {self.filename} ({size})"
        if self.skipped:
            summary += f"，跳过: {', '.join(self.skipped_keys)}"
        return summary
