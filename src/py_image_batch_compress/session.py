"""批次会话模块。

把一条 CompressionPipeline 包装成面向文件系统的接口：从路径装载图片、修改参数、
编辑单张图片、查询状态、导出到目录。所有结果都是可直接序列化的字典。
"""

from collections.abc import Iterable, Mapping
from pathlib import Path
from typing import Any

from humanize import naturalsize

from .engine.pipeline import CompressionPipeline
from .exceptions import ExportError
from .models.image_record import ImageRecord
from .utils.file_helpers import collect_image_files, write_output
from .utils.logging_helpers import get_logger


logger = get_logger()


class BatchSession:
    """批次会话

    必须在同一个事件循环中使用。
    """

    def __init__(self, pipeline: CompressionPipeline | None = None):
        self.pipeline = pipeline or CompressionPipeline()

    async def load(
        self, paths: Iterable[str | Path], recursive: bool = True, wait: bool = True
    ) -> dict[str, Any]:
        """装载图片文件或目录，替换当前批次

        Args:
            paths: 文件或目录路径
            recursive: 目录是否递归
            wait: 是否等待首次压缩完成
        """
        files = collect_image_files(paths, recursive=recursive)
        keys = await self.pipeline.load((path.name, path.read_bytes()) for path in files)
        if wait:
            await self.pipeline.wait_idle(keys)
        return {"loaded": keys, **self.status()}

    async def update_parameters(
        self,
        output_format: str | None = None,
        quality: float | None = None,
        width: int | None = None,
        height: int | None = None,
        reset_size: bool = False,
        wait: bool = True,
    ) -> dict[str, Any]:
        """修改批次参数

        只给出 width 或 height 之一时，另一边按每张图片的宽高比推断。
        reset_size 为真时恢复原始尺寸。
        """
        requested: list[str] = []
        if output_format is not None:
            requested += self.pipeline.set_output_format(output_format)
        if reset_size:
            requested += self.pipeline.set_target_size(None, None)
        elif width is not None or height is not None:
            requested += self.pipeline.set_target_size(width, height)
        if quality is not None:
            requested += self.pipeline.set_global_quality(quality)

        requested = list(dict.fromkeys(requested))
        if wait:
            await self.pipeline.wait_idle(requested)
        return {"reprocessed": requested, **self.status()}

    async def update_image(
        self,
        name: str,
        quality: float | None = None,
        reset_quality: bool = False,
        rename: str | None = None,
        metadata: Mapping[str, str] | None = None,
        wait: bool = True,
    ) -> dict[str, Any]:
        """编辑单张图片

        元数据和重命名不会触发重压缩，导出时才会按新元数据重新编码。
        """
        for field, value in (metadata or {}).items():
            self.pipeline.set_metadata_field(name, field, value)
        if rename is not None:
            self.pipeline.set_rename_target(name, rename)

        if reset_quality:
            self.pipeline.clear_item_quality(name)
        elif quality is not None:
            self.pipeline.set_item_quality(name, quality)

        if wait:
            await self.pipeline.wait_idle([name])
        return self.describe(self.pipeline.get_record(name))

    def status(self) -> dict[str, Any]:
        """当前批次参数和全部记录的状态"""
        params = self.pipeline.parameters
        records = self.pipeline.snapshot()
        original = sum(r.original_size for r in records)
        processed = sum(r.processed_size for r in records if r.processed_blob)
        return {
            "parameters": {
                "output_format": params.output_format.value,
                "quality": params.quality,
                "target_width": params.target_width,
                "target_height": params.target_height,
            },
            "total": len(records),
            "total_original_size": naturalsize(original, binary=True),
            "total_processed_size": naturalsize(processed, binary=True),
            "images": [self.describe(record) for record in records],
        }

    def describe(self, record: ImageRecord) -> dict[str, Any]:
        """单条记录的可序列化描述"""
        assembler = self.pipeline.assembler
        output = record.processed_params
        return {
            "name": record.key,
            "filename": record.filename,
            "export_name": assembler.build_filename(
                record, self.pipeline.parameters.output_format
            ),
            "status": record.status.value,
            "width": record.width,
            "height": record.height,
            "output_width": output.width if output else None,
            "output_height": output.height if output else None,
            "quality": record.resolve_quality(self.pipeline.parameters.quality),
            "quality_override": record.quality_override,
            "original_size": record.original_size,
            "processed_size": record.processed_size,
            "compression_ratio": round(record.get_compression_ratio(), 2),
            "stale": record.processed_blob is not None
            and self.pipeline.is_stale(record),
            "metadata": dict(record.metadata),
            "error": record.error,
            "summary": record.get_summary(),
        }

    async def export(
        self,
        output_dir: str | Path,
        names: Iterable[str] | None = None,
        archive: bool = True,
        wait: bool = True,
        overwrite: bool = False,
    ) -> dict[str, Any]:
        """导出到目录

        Args:
            output_dir: 输出目录
            names: 要导出的记录，None 表示全部
            archive: True 写一个 zip 归档，False 逐个写文件
            wait: 先等待所有相关压缩完成
            overwrite: 是否覆盖目录中已存在的文件
        """
        directory = Path(output_dir)
        if archive:
            result = await self.pipeline.export_batch(names, wait=wait)
            path = write_output(directory, result.filename, result.data, overwrite)
            logger.info(f"{result.get_summary()} -> {path}")
            return {
                "archive": str(path),
                "entries": [entry.model_dump() for entry in result.entries],
                "skipped": [entry.model_dump() for entry in result.skipped],
                "stale": result.stale,
            }

        keys = self.pipeline.store.keys() if names is None else list(names)
        written: list[dict[str, Any]] = []
        skipped: list[dict[str, str]] = []
        stale = False
        for key in keys:
            try:
                artifact = await self.pipeline.export_single(key, wait=wait)
            except ExportError as e:
                logger.warning(f"跳过导出 [{key}]: {e.message}")
                skipped.append({"key": key, "reason": e.message})
                continue
            path = write_output(directory, artifact.filename, artifact.data, overwrite)
            stale = stale or artifact.stale
            written.append(
                {
                    "key": key,
                    "path": str(path),
                    "size": artifact.size,
                    "size_human": artifact.get_size_human(),
                    "mime_type": artifact.mime_type,
                }
            )
        return {"files": written, "skipped": skipped, "stale": stale}

    async def clear(self) -> int:
        return self.pipeline.clear()

    async def aclose(self) -> None:
        await self.pipeline.aclose()
