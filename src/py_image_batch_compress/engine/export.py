"""导出组装模块。

把记录快照打包成单个文件或 zip 归档，处理重命名与文件名冲突。
"""

import zipfile
from collections.abc import Sequence
from io import BytesIO

from ..config import PipelineDefaults, get_config
from ..exceptions import CollisionError, CompressionError, ErrorHandler, ExportError
from ..models.constants import OutputFormat
from ..models.export_result import (
    ArchiveEntry,
    ExportArchive,
    ExportArtifact,
    SkippedEntry,
)
from ..models.image_record import ImageRecord
from ..utils.logging_helpers import get_logger
from ..utils.message_formatter import MessageFormatter
from ..utils.naming_helpers import FileNamingStrategy


logger = get_logger()

# 固定时间戳，保证相同输入产生相同的归档字节
ZIP_TIMESTAMP = (1980, 1, 1, 0, 0, 0)


class ExportAssembler:
    """导出组装器

    只读取传入的记录快照，不触发任何压缩。
    """

    def __init__(
        self,
        archive_name: str | None = None,
        disambiguate: bool | None = None,
        defaults: PipelineDefaults | None = None,
    ):
        defaults = defaults or get_config().pipeline
        self.archive_name = archive_name or defaults.ARCHIVE_NAME
        self.disambiguate = (
            defaults.DISAMBIGUATE_FILENAMES if disambiguate is None else disambiguate
        )

    def build_filename(self, record: ImageRecord, output_format: OutputFormat) -> str:
        """重命名优先，否则原始基础名，扩展名为输出格式的规范扩展名"""
        return FileNamingStrategy.generate_output_name(
            record.filename, output_format, record.rename_target
        )

    def export_single(
        self,
        record: ImageRecord,
        output_format: OutputFormat,
        stale: bool = False,
    ) -> ExportArtifact:
        """打包单条记录的当前产物

        Raises:
            ExportError: 记录还没有任何可用产物
        """
        data = self._artifact_bytes(record)
        fmt = self._artifact_format(record, output_format)
        return ExportArtifact(
            key=record.key,
            filename=self.build_filename(record, fmt),
            data=data,
            mime_type=fmt.mime_type,
            stale=stale,
        )

    def export_batch(
        self,
        records: Sequence[ImageRecord],
        output_format: OutputFormat,
        stale: bool = False,
    ) -> ExportArchive:
        """按记录顺序打包 zip 归档

        单个条目失败只跳过该条目，其余条目照常写入，跳过的键列在结果中。
        """
        taken: set[str] = set()
        entries: list[ArchiveEntry] = []
        skipped: list[SkippedEntry] = []
        buffer = BytesIO()

        with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_STORED) as archive:
            for record in records:
                try:
                    data = self._artifact_bytes(record)
                    fmt = self._artifact_format(record, output_format)
                    filename = self._resolve_name(
                        self.build_filename(record, fmt), taken, record.key
                    )
                except CompressionError as e:
                    ErrorHandler.log_error("批量导出", record.key, e, "warning")
                    skipped.append(SkippedEntry(key=record.key, reason=e.message))
                    continue

                info = zipfile.ZipInfo(filename, date_time=ZIP_TIMESTAMP)
                info.compress_type = zipfile.ZIP_STORED
                info.external_attr = 0o644 << 16
                archive.writestr(info, data)
                entries.append(
                    ArchiveEntry(key=record.key, filename=filename, size=len(data))
                )

        result = ExportArchive(
            filename=self.archive_name,
            data=buffer.getvalue(),
            entries=entries,
            skipped=skipped,
            stale=stale,
        )
        logger.info(result.get_summary())
        return result

    def _resolve_name(self, filename: str, taken: set[str], key: str) -> str:
        if self.disambiguate:
            return FileNamingStrategy.ensure_unique_name(filename, taken)
        if filename.casefold() in taken:
            raise CollisionError(f"导出文件名冲突: {filename}", key)
        taken.add(filename.casefold())
        return filename

    @staticmethod
    def _artifact_format(
        record: ImageRecord, output_format: OutputFormat
    ) -> OutputFormat:
        # 刷新失败时保留的旧产物可能是另一种格式
        if record.processed_params is not None:
            return record.processed_params.output_format
        return output_format

    @staticmethod
    def _artifact_bytes(record: ImageRecord) -> bytes:
        if record.processed_blob is None:
            reason = record.error or f"没有可用的产物 (状态: {record.status.value})"
            logger.debug(MessageFormatter.entry_skipped(record.key, reason))
            raise ExportError(reason, record.key)
        return record.processed_blob
