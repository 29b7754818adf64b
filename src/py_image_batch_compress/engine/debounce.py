"""按键防抖合并器。

同一个键在静默窗口内的多次提交只投递最后一次；不同键之间互不影响。
"""

import asyncio
from collections.abc import Callable, Hashable, Iterable
from typing import Generic, TypeVar

from ..exceptions import BatchClosedError
from ..utils.logging_helpers import get_logger


logger = get_logger()

K = TypeVar("K", bound=Hashable)
P = TypeVar("P")


class DebounceCoalescer(Generic[K, P]):
    """基于事件循环定时器的防抖合并器

    投递回调在事件循环线程中同步调用，回调自行负责启动异步工作。
    """

    def __init__(self, window: float, deliver: Callable[[K, P], None]):
        """初始化合并器

        Args:
            window: 静默窗口（秒）
            deliver: 投递回调，参数为 (键, 载荷)
        """
        if window < 0:
            raise ValueError(f"静默窗口不能为负数: {window}")
        self.window = window
        self._deliver = deliver
        self._pending: dict[K, tuple[asyncio.TimerHandle, P]] = {}
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def submit(self, key: K, payload: P) -> None:
        """提交载荷，重置该键的静默窗口"""
        if self._closed:
            raise BatchClosedError("防抖合并器已关闭")

        loop = asyncio.get_running_loop()
        previous = self._pending.pop(key, None)
        if previous is not None:
            previous[0].cancel()
            logger.debug(f"合并请求: {key}")

        handle = loop.call_later(self.window, self._fire, key)
        self._pending[key] = (handle, payload)

    def cancel(self, key: K) -> P | None:
        """取消该键的待投递载荷，返回被取消的载荷"""
        entry = self._pending.pop(key, None)
        if entry is None:
            return None
        entry[0].cancel()
        return entry[1]

    def flush(self, keys: Iterable[K] | None = None) -> int:
        """立即投递待处理的载荷，返回投递数量"""
        targets = list(self._pending) if keys is None else list(keys)
        delivered = 0
        for key in targets:
            entry = self._pending.pop(key, None)
            if entry is None:
                continue
            entry[0].cancel()
            self._deliver(key, entry[1])
            delivered += 1
        return delivered

    def is_pending(self, key: K) -> bool:
        return key in self._pending

    def pending_keys(self) -> list[K]:
        return list(self._pending)

    def cancel_all(self) -> int:
        """取消全部待投递载荷，合并器仍可继续使用"""
        count = len(self._pending)
        for handle, _ in self._pending.values():
            handle.cancel()
        self._pending.clear()
        return count

    def close(self) -> None:
        """关闭合并器，之后不会再有任何投递"""
        self.cancel_all()
        self._closed = True

    def _fire(self, key: K) -> None:
        entry = self._pending.pop(key, None)
        if entry is None or self._closed:
            return
        self._deliver(key, entry[1])
