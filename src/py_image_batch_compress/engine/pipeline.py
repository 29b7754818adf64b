"""重压缩流水线模块。

协调元数据提取、编解码、防抖合并和记录存储，回答"用参数 P 重新压缩图片 X"
的请求。每条记录维护单调递增的请求序号，结果只有在序号仍是最新时才会写入，
因此记录总是反映最后一次请求的参数，而不是最后完成的那次。

流水线对象绑定在一个事件循环上：除 seed/load/wait_idle/export_* 外的方法都是
同步的，但必须在运行中的事件循环里调用。
"""

import asyncio
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from functools import partial
from typing import cast

from ..config import AppConfig, get_config
from ..core.codec import ImageCodec
from ..core.metadata import MetadataExtractor
from ..exceptions import (
    BatchClosedError,
    DecodeError,
    ErrorHandler,
    MetadataError,
    RecordNotFoundError,
    ValidationError,
)
from ..models.constants import METADATA_FIELDS, OutputFormat
from ..models.export_result import ExportArchive, ExportArtifact
from ..models.image_record import (
    BatchParameters,
    ImageRecord,
    ProcessingParams,
    RecordStatus,
    empty_metadata,
)
from ..utils.logging_helpers import get_logger
from ..utils.message_formatter import MessageFormatter
from ..utils.naming_helpers import FileNamingStrategy
from .concurrent_executor import ConcurrentExecutor
from .debounce import DebounceCoalescer
from .export import ExportAssembler
from .store import ItemStore, Listener


logger = get_logger()


@dataclass(frozen=True)
class RecompressionRequest:
    """一次重压缩请求的全部输入，在请求时刻确定"""

    seq: int
    generation: int
    quality: float
    width: int | None
    height: int | None
    output_format: OutputFormat


def resolve_target_dimensions(
    source_width: int,
    source_height: int,
    width: int | None,
    height: int | None,
) -> tuple[int | None, int | None]:
    """只给出一个目标尺寸时按源宽高比推断另一个"""
    if width is None and height is None:
        return None, None
    if width is not None and height is not None:
        return width, height
    if source_width <= 0 or source_height <= 0:
        return width, height
    if width is not None:
        return width, max(1, round(source_height * width / source_width))
    if height is not None:
        return max(1, round(source_width * height / source_height)), height
    return width, height


def inspect_blob(
    codec: ImageCodec, extractor: MetadataExtractor, blob: bytes
) -> tuple[tuple[int, int], dict[str, str]]:
    """读取尺寸和元数据，元数据损坏时返回空映射"""
    dimensions = codec.decode_dimensions(blob)
    try:
        metadata = extractor.extract(blob)
    except MetadataError as e:
        logger.warning(f"元数据读取失败，使用空元数据: {e}")
        metadata = empty_metadata()
    return dimensions, metadata


def transcode_blob(
    codec: ImageCodec,
    extractor: MetadataExtractor,
    blob: bytes,
    width: int | None,
    height: int | None,
    output_format: OutputFormat,
    quality: float,
    metadata: Mapping[str, str],
) -> bytes:
    """编码并写入元数据"""
    exif = extractor.build_exif(metadata)
    return codec.transcode(blob, width, height, output_format, quality, exif=exif)


class CompressionPipeline:
    """批量重压缩流水线"""

    def __init__(
        self,
        codec: ImageCodec | None = None,
        extractor: MetadataExtractor | None = None,
        store: ItemStore | None = None,
        executor: ConcurrentExecutor | None = None,
        assembler: ExportAssembler | None = None,
        parameters: BatchParameters | None = None,
        debounce_window: float | None = None,
        app_config: AppConfig | None = None,
    ):
        """初始化流水线

        Args:
            codec: 编解码器
            extractor: 元数据提取器
            store: 记录存储
            executor: 阻塞操作的执行器
            assembler: 导出组装器
            parameters: 初始批次参数
            debounce_window: 防抖窗口（秒），默认读取配置
            app_config: 应用配置，默认使用全局配置
        """
        cfg = app_config or get_config()
        self.codec = codec or ImageCodec(cfg.compression)
        self.extractor = extractor or MetadataExtractor()
        self.store = store or ItemStore()
        self.executor = executor or ConcurrentExecutor(
            cfg.compression.MAX_WORKERS, cfg.pipeline.EXECUTOR_TYPE
        )
        self.assembler = assembler or ExportAssembler(defaults=cfg.pipeline)
        self.parameters = parameters or BatchParameters(
            output_format=cfg.compression.DEFAULT_OUTPUT_FORMAT,
            quality=cfg.compression.DEFAULT_QUALITY,
        )
        self.seed_quality = cfg.compression.SEED_QUALITY

        window = cfg.pipeline.debounce_window if debounce_window is None else debounce_window
        self._coalescer: DebounceCoalescer[str, RecompressionRequest] = (
            DebounceCoalescer(window, self._deliver)
        )
        self._tasks: dict[str, set[asyncio.Task]] = {}
        self._generation = 0
        self._closed = False

    async def __aenter__(self) -> "CompressionPipeline":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    # ------------------------------------------------------------------
    # 批次装载
    # ------------------------------------------------------------------

    async def seed(self, filename: str, blob: bytes) -> str:
        """为上传的文件创建记录并发起首次压缩

        记录在第一次挂起前创建，所以并发调用时记录顺序就是调用顺序。

        Returns:
            str: 记录的唯一键
        """
        self._ensure_open()
        record = self.store.create(filename, blob)
        await self._initialize(record.key, blob, self._generation)
        return record.key

    async def load(self, files: Iterable[tuple[str, bytes]]) -> list[str]:
        """用一组新文件替换当前批次，按上传顺序返回记录键"""
        self._ensure_open()
        self.clear()
        generation = self._generation
        records = [self.store.create(name, blob) for name, blob in files]
        await asyncio.gather(
            *(self._initialize(r.key, r.original_blob, generation) for r in records)
        )
        logger.info(f"已装载 {len(records)} 张图片")
        return [record.key for record in records]

    async def _initialize(self, key: str, blob: bytes, generation: int) -> None:
        try:
            (width, height), metadata = await self.executor.run(
                inspect_blob, self.codec, self.extractor, blob
            )
        except DecodeError as e:
            error = ErrorHandler.describe_failure(e, key, "读取图片")
            self._commit(key, generation, partial(_mark_undecodable, error=error))
            return

        def apply(record: ImageRecord) -> ImageRecord:
            record.width, record.height = width, height
            record.metadata = metadata
            return record

        record = self._commit(key, generation, apply)
        if record is None:
            return

        if record.request_seq > 0:
            # 读取期间已有请求，按该请求的参数和刚读出的尺寸重新投递
            self._reissue(key)
            return

        width_target, height_target = self._target_dimensions()
        self.request_recompression(
            key, self.seed_quality, width_target, height_target, immediate=True
        )

    # ------------------------------------------------------------------
    # 重压缩请求
    # ------------------------------------------------------------------

    def request_recompression(
        self,
        name: str,
        quality: float,
        width: int | None = None,
        height: int | None = None,
        *,
        immediate: bool = False,
    ) -> int:
        """请求用给定参数重新压缩记录

        请求经过防抖合并，同一记录在静默窗口内只执行最后一次。

        Args:
            name: 记录键
            quality: 质量 [0, 1]
            width: 目标宽度，None 表示按另一边推断或保留原尺寸
            height: 目标高度
            immediate: 跳过防抖立即投递

        Returns:
            int: 本次请求的序号
        """
        self._ensure_open()
        quality = _validate_quality(quality)
        width = _validate_dimension("width", width)
        height = _validate_dimension("height", height)
        output_format = self.parameters.output_format

        def mark_pending(record: ImageRecord) -> ImageRecord:
            record.request_seq += 1
            record.quality = quality
            record.requested_width = width
            record.requested_height = height
            record.status = RecordStatus.PENDING
            return record

        record = cast(ImageRecord, self.store.upsert(name, mark_pending))
        request = RecompressionRequest(
            seq=record.request_seq,
            generation=self._generation,
            quality=quality,
            width=width,
            height=height,
            output_format=output_format,
        )

        if immediate:
            self._coalescer.cancel(name)
            self._deliver(name, request)
        else:
            self._coalescer.submit(name, request)
        return request.seq

    def refresh(self, name: str, *, immediate: bool = False) -> int:
        """按当前有效参数重新压缩记录"""
        record = self.store.get(name)
        width, height = self._target_dimensions()
        return self.request_recompression(
            name,
            record.resolve_quality(self.parameters.quality),
            width,
            height,
            immediate=immediate,
        )

    def _deliver(self, key: str, request: RecompressionRequest) -> None:
        if self._closed or request.generation != self._generation:
            return
        task = asyncio.get_running_loop().create_task(self._process(key, request))
        self._tasks.setdefault(key, set()).add(task)
        task.add_done_callback(partial(self._forget_task, key))

    def _forget_task(self, key: str, task: asyncio.Task) -> None:
        tasks = self._tasks.get(key)
        if tasks is None:
            return
        tasks.discard(task)
        if not tasks:
            del self._tasks[key]

    async def _process(self, key: str, request: RecompressionRequest) -> None:
        def start(record: ImageRecord) -> ImageRecord | None:
            if record.request_seq != request.seq:
                return None
            record.status = RecordStatus.PROCESSING
            return record

        record = self._commit(key, request.generation, start)
        if record is None:
            logger.debug(f"请求已被取代，跳过执行: {key} #{request.seq}")
            return

        width, height = resolve_target_dimensions(
            record.width, record.height, request.width, request.height
        )
        params = ProcessingParams(
            quality=request.quality,
            width=width,
            height=height,
            output_format=request.output_format,
            metadata=record.metadata_items(),
        )

        try:
            blob = await self.executor.run(
                transcode_blob,
                self.codec,
                self.extractor,
                record.original_blob,
                width,
                height,
                request.output_format,
                request.quality,
                dict(params.metadata),
            )
        except Exception as e:
            error = ErrorHandler.describe_failure(e, key, "重压缩")
            self._commit(
                key,
                request.generation,
                partial(_apply_failure, seq=request.seq, error=error),
            )
            return

        self._commit(
            key,
            request.generation,
            partial(_apply_success, seq=request.seq, blob=blob, params=params),
        )

    def _commit(
        self,
        key: str,
        generation: int,
        mutator: Callable[[ImageRecord], ImageRecord | None],
    ) -> ImageRecord | None:
        """写入属于某个批次代的结果，批次已被清除时丢弃"""
        if self._closed or generation != self._generation:
            logger.debug(f"批次已清除，丢弃结果: {key}")
            return None
        try:
            return self.store.upsert(key, mutator)
        except (RecordNotFoundError, BatchClosedError) as e:
            logger.debug(f"丢弃结果 [{key}]: {e}")
            return None

    # ------------------------------------------------------------------
    # 参数变更
    # ------------------------------------------------------------------

    def set_output_format(self, output_format: str | OutputFormat) -> list[str]:
        """修改输出格式，所有记录都会重新压缩"""
        try:
            fmt = OutputFormat.parse(output_format)
        except ValueError as e:
            raise ValidationError(
                MessageFormatter.validation_error("output_format", output_format)
            ) from e
        if fmt == self.parameters.output_format:
            return []
        self.parameters = self.parameters.model_copy(update={"output_format": fmt})
        return self._rerequest(lambda record: True)

    def set_target_size(self, width: int | None, height: int | None) -> list[str]:
        """修改目标尺寸，只重新压缩没有显式质量的记录"""
        width = _validate_dimension("width", width)
        height = _validate_dimension("height", height)
        if (width, height) == self._target_dimensions():
            return []
        self.parameters = self.parameters.model_copy(
            update={"target_width": width, "target_height": height}
        )
        return self._rerequest(lambda record: not record.has_override)

    def set_global_quality(self, quality: float) -> list[str]:
        """修改全局质量，只重新压缩没有显式质量的记录"""
        quality = _validate_quality(quality)
        if quality == self.parameters.quality:
            return []
        self.parameters = self.parameters.model_copy(update={"quality": quality})
        return self._rerequest(lambda record: not record.has_override)

    def set_item_quality(self, name: str, quality: float) -> int:
        """设置单张图片的显式质量并重新压缩"""
        quality = _validate_quality(quality)

        def apply(record: ImageRecord) -> ImageRecord:
            record.quality_override = quality
            return record

        self.store.upsert(name, apply)
        width, height = self._target_dimensions()
        return self.request_recompression(name, quality, width, height)

    def clear_item_quality(self, name: str) -> int:
        """移除显式质量，回退到全局质量并重新压缩"""

        def apply(record: ImageRecord) -> ImageRecord:
            record.quality_override = None
            return record

        self.store.upsert(name, apply)
        return self.refresh(name)

    def _rerequest(self, predicate: Callable[[ImageRecord], bool]) -> list[str]:
        keys = []
        width, height = self._target_dimensions()
        for record in self.store.snapshot():
            # 尚未读出尺寸的记录会在初始化完成时使用当时的参数
            if record.width == 0 or not predicate(record):
                continue
            self.request_recompression(
                record.key,
                record.resolve_quality(self.parameters.quality),
                width,
                height,
            )
            keys.append(record.key)
        return keys

    def _target_dimensions(self) -> tuple[int | None, int | None]:
        return self.parameters.target_width, self.parameters.target_height

    # ------------------------------------------------------------------
    # 用户编辑（不触发重压缩）
    # ------------------------------------------------------------------

    def set_metadata_field(self, name: str, field: str, value: str) -> ImageRecord:
        """修改一个元数据字段"""
        if field not in METADATA_FIELDS:
            raise ValidationError(
                MessageFormatter.validation_error(
                    "metadata", field, f"可用字段: {', '.join(METADATA_FIELDS)}"
                ),
                name,
            )

        def apply(record: ImageRecord) -> ImageRecord:
            record.metadata[field] = "" if value is None else str(value)
            return record

        return cast(ImageRecord, self.store.upsert(name, apply))

    def set_rename_target(self, name: str, value: str | None) -> ImageRecord:
        """设置导出时使用的基础文件名，空值表示取消重命名"""
        rename_target = FileNamingStrategy.sanitize_base_name(value)

        def apply(record: ImageRecord) -> ImageRecord:
            record.rename_target = rename_target
            return record

        return cast(ImageRecord, self.store.upsert(name, apply))

    # ------------------------------------------------------------------
    # 读取与订阅
    # ------------------------------------------------------------------

    def snapshot(self) -> list[ImageRecord]:
        """按上传顺序返回时间点一致的记录副本"""
        return self.store.snapshot()

    def get_record(self, name: str) -> ImageRecord:
        return self.store.get(name)

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """订阅记录变更，返回取消订阅的函数"""
        self.store.add_listener(listener)
        return partial(self.store.remove_listener, listener)

    def desired_params(self, record: ImageRecord) -> ProcessingParams:
        """记录应当产出的产物参数

        质量和尺寸取自该记录最近一次请求，格式和元数据取自当前状态。
        还没有任何请求的记录使用当前的有效参数。
        """
        if record.request_seq > 0:
            quality = record.quality
            requested = (record.requested_width, record.requested_height)
        else:
            quality = record.resolve_quality(self.parameters.quality)
            requested = self._target_dimensions()
        width, height = resolve_target_dimensions(record.width, record.height, *requested)
        return ProcessingParams(
            quality=quality,
            width=width,
            height=height,
            output_format=self.parameters.output_format,
            metadata=record.metadata_items(),
        )

    def is_stale(self, record: ImageRecord) -> bool:
        """产物是否与当前参数不符"""
        return record.processed_params != self.desired_params(record)

    def is_busy(self, name: str) -> bool:
        """记录是否还有待投递或执行中的请求"""
        return self._coalescer.is_pending(name) or bool(self._tasks.get(name))

    async def wait_idle(self, names: Iterable[str] | None = None) -> None:
        """立即投递待处理的防抖请求，并等待相关记录的全部任务结束"""
        targets = None if names is None else set(names)
        while True:
            pending = self._coalescer.pending_keys()
            self._coalescer.flush(
                pending if targets is None else [k for k in pending if k in targets]
            )
            tasks = [
                task
                for key, key_tasks in self._tasks.items()
                if targets is None or key in targets
                for task in key_tasks
            ]
            if not tasks:
                return
            await asyncio.wait(tasks)

    # ------------------------------------------------------------------
    # 导出
    # ------------------------------------------------------------------

    async def export_single(self, name: str, *, wait: bool = True) -> ExportArtifact:
        """导出单张图片

        Args:
            name: 记录键
            wait: 先刷新过期产物并等待完成；False 时直接使用最新可用产物

        Raises:
            ExportError: 记录没有任何可用产物
        """
        self.store.get(name)
        if wait:
            await self._settle([name])
        record = self.store.get(name)
        return self.assembler.export_single(
            record, self.parameters.output_format, stale=self._needs_flag(record)
        )

    async def export_batch(
        self, names: Iterable[str] | None = None, *, wait: bool = True
    ) -> ExportArchive:
        """把多张图片打包为 zip 归档，顺序为上传顺序"""
        keys = self.store.keys() if names is None else list(dict.fromkeys(names))
        for key in keys:
            self.store.get(key)
        if wait:
            await self._settle(keys)
        records = self.store.snapshot(keys)
        return self.assembler.export_batch(
            records,
            self.parameters.output_format,
            stale=any(self._needs_flag(record) for record in records),
        )

    async def _settle(self, keys: list[str]) -> None:
        await self.wait_idle(keys)
        stale = [
            record.key
            for record in self.store.snapshot(keys)
            if record.width and self.is_stale(record)
        ]
        for key in stale:
            self._reissue(key)
        if stale:
            logger.debug(f"导出前刷新过期产物: {', '.join(stale)}")
            await self.wait_idle(keys)

    def _reissue(self, key: str) -> int:
        """按最近一次请求的质量和尺寸立即重新压缩"""
        record = self.store.get(key)
        if record.request_seq == 0:
            return self.refresh(key, immediate=True)
        return self.request_recompression(
            key,
            record.quality,
            record.requested_width,
            record.requested_height,
            immediate=True,
        )

    def _needs_flag(self, record: ImageRecord) -> bool:
        return (
            self.is_busy(record.key)
            or not record.status.is_settled
            or (record.processed_blob is not None and self.is_stale(record))
        )

    # ------------------------------------------------------------------
    # 清理
    # ------------------------------------------------------------------

    def clear(self) -> int:
        """清空批次，取消全部防抖窗口和执行中的任务"""
        self._generation += 1
        self._coalescer.cancel_all()
        for tasks in self._tasks.values():
            for task in tasks:
                task.cancel()
        self._tasks.clear()
        return self.store.clear()

    def close(self) -> None:
        """关闭流水线，之后拒绝任何请求"""
        if self._closed:
            return
        self.clear()
        self._closed = True
        self._coalescer.close()
        self.store.close()
        self.executor.shutdown(wait=False)

    async def aclose(self) -> None:
        """关闭流水线并等待被取消的任务退出"""
        tasks = [task for key_tasks in self._tasks.values() for task in key_tasks]
        self.close()
        if tasks:
            await asyncio.wait(tasks)

    def _ensure_open(self) -> None:
        if self._closed:
            raise BatchClosedError("流水线已关闭")


def _mark_undecodable(record: ImageRecord, error: str) -> ImageRecord:
    record.status = RecordStatus.FAILED
    record.error = error
    return record


def _apply_success(
    record: ImageRecord, seq: int, blob: bytes, params: ProcessingParams
) -> ImageRecord | None:
    if record.request_seq != seq:
        logger.debug(MessageFormatter.stale_result(record.key, seq, record.request_seq))
        return None
    record.processed_blob = blob
    record.processed_size = len(blob)
    record.processed_params = params
    record.status = RecordStatus.READY
    record.error = None
    return record


def _apply_failure(record: ImageRecord, seq: int, error: str) -> ImageRecord | None:
    if record.request_seq != seq:
        logger.debug(MessageFormatter.stale_result(record.key, seq, record.request_seq))
        return None
    # 保留上一次成功的产物
    record.status = RecordStatus.FAILED
    record.error = error
    return record


def _validate_quality(quality: float) -> float:
    if isinstance(quality, bool) or not isinstance(quality, int | float):
        raise ValidationError(MessageFormatter.validation_error("quality", quality))
    if not 0.0 <= quality <= 1.0:
        raise ValidationError(
            MessageFormatter.validation_error("quality", quality, "期望: 0-1")
        )
    return float(quality)


def _validate_dimension(label: str, value: int | None) -> int | None:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValidationError(
            MessageFormatter.validation_error(label, value, "期望: 正整数")
        )
    return value
