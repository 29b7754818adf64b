"""批次记录存储模块。

以键索引的记录集合，同一个键的修改严格串行，快照总是时间点一致的副本。
"""

import itertools
import threading
from collections.abc import Callable, Iterable

from ..exceptions import BatchClosedError, RecordNotFoundError
from ..models.image_record import ImageRecord
from ..utils.logging_helpers import get_logger
from ..utils.message_formatter import MessageFormatter


logger = get_logger()

Mutator = Callable[[ImageRecord], ImageRecord | None]
Listener = Callable[[ImageRecord], None]


class ItemStore:
    """记录存储

    所有修改都通过 upsert 完成：修改函数拿到记录的副本，返回要提交的记录；
    返回 None 表示放弃本次修改。修改函数抛出异常时存储保持不变。
    """

    def __init__(self) -> None:
        self._records: dict[str, ImageRecord] = {}
        self._locks: dict[str, threading.Lock] = {}
        self._registry_lock = threading.RLock()
        self._listeners: list[Listener] = []
        self._next_index = 0
        self._closed = False

    def __len__(self) -> int:
        with self._registry_lock:
            return len(self._records)

    def __contains__(self, key: object) -> bool:
        with self._registry_lock:
            return key in self._records

    @property
    def closed(self) -> bool:
        return self._closed

    def keys(self) -> list[str]:
        """按上传顺序返回全部键"""
        with self._registry_lock:
            return list(self._records)

    def create(self, filename: str, blob: bytes) -> ImageRecord:
        """为上传的文件创建记录

        文件名重复时生成 "<文件名>#<n>" 形式的唯一键。
        """
        with self._registry_lock:
            self._ensure_open()
            key = self._allocate_key(filename)
            record = ImageRecord(
                key=key,
                filename=filename,
                upload_index=self._next_index,
                original_blob=blob,
            )
            self._next_index += 1
            self._records[key] = record
            self._locks[key] = threading.Lock()
            committed = record.model_copy(deep=True)

        self._notify(committed)
        return committed

    def upsert(self, key: str, mutator: Mutator) -> ImageRecord | None:
        """对单条记录做原子的读-改-写

        Returns:
            ImageRecord | None: 提交后的记录副本，放弃修改时为 None

        Raises:
            RecordNotFoundError: 记录不存在或在修改期间被清除
            BatchClosedError: 存储已关闭
        """
        with self._lock_for(key):
            with self._registry_lock:
                current = self._records.get(key)
            if current is None:
                raise RecordNotFoundError(MessageFormatter.record_not_found(key), key)

            result = mutator(current.model_copy(deep=True))
            if result is None:
                return None

            with self._registry_lock:
                self._ensure_open()
                if self._records.get(key) is not current:
                    raise RecordNotFoundError(
                        MessageFormatter.record_not_found(key), key
                    )
                self._records[key] = result
                committed = result.model_copy(deep=True)

        self._notify(committed)
        return committed

    def get(self, key: str) -> ImageRecord:
        """获取单条记录的副本"""
        with self._registry_lock:
            record = self._records.get(key)
            if record is None:
                raise RecordNotFoundError(MessageFormatter.record_not_found(key), key)
            return record.model_copy(deep=True)

    def snapshot(self, keys: Iterable[str] | None = None) -> list[ImageRecord]:
        """按上传顺序返回记录副本

        Args:
            keys: 只包含这些键，None 表示全部；不存在的键被忽略
        """
        with self._registry_lock:
            if keys is None:
                records = list(self._records.values())
            else:
                wanted = set(keys)
                records = [r for k, r in self._records.items() if k in wanted]
            return [record.model_copy(deep=True) for record in records]

    def clear(self) -> int:
        """清空全部记录，返回清除数量"""
        with self._registry_lock:
            count = len(self._records)
            self._records.clear()
            self._locks.clear()
            self._next_index = 0
        if count:
            logger.debug(f"已清空 {count} 条记录")
        return count

    def close(self) -> None:
        """清空并关闭存储，之后拒绝任何写入"""
        self.clear()
        with self._registry_lock:
            self._closed = True

    def add_listener(self, listener: Listener) -> None:
        """订阅记录变更，每次提交后收到记录副本"""
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _lock_for(self, key: str) -> threading.Lock:
        with self._registry_lock:
            self._ensure_open()
            lock = self._locks.get(key)
            if lock is None:
                raise RecordNotFoundError(MessageFormatter.record_not_found(key), key)
            return lock

    def _allocate_key(self, filename: str) -> str:
        if filename not in self._records:
            return filename
        for counter in itertools.count(2):
            candidate = f"{filename}#{counter}"
            if candidate not in self._records:
                return candidate
        raise AssertionError("unreachable")  # pragma: no cover

    def _ensure_open(self) -> None:
        if self._closed:
            raise BatchClosedError("记录存储已关闭")

    def _notify(self, record: ImageRecord) -> None:
        for listener in list(self._listeners):
            try:
                listener(record)
            except Exception:
                logger.exception(f"记录变更监听器执行失败: {record.key}")
