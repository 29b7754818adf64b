"""并发执行器模块。

把解码、编码、元数据读取等阻塞操作交给线程池或进程池，事件循环只负责调度。
"""

import asyncio
import logging
from collections.abc import Callable
from concurrent.futures import Executor, ProcessPoolExecutor, ThreadPoolExecutor
from functools import partial
from typing import Any, TypeVar

from ..exceptions import ValidationError


logger = logging.getLogger(__name__)

T = TypeVar("T")

EXECUTOR_TYPES = {"thread", "process"}


class ConcurrentExecutor:
    """通用并发执行器

    延迟创建底层执行器，关闭后可以再次使用（会重新创建）。
    """

    def __init__(self, max_workers: int = 4, executor_type: str = "thread"):
        """初始化并发执行器

        Args:
            max_workers: 最大并发数
            executor_type: 执行器类型 ('thread'/'process')
        """
        if max_workers <= 0:
            raise ValidationError("max_workers 必须大于 0")
        if executor_type not in EXECUTOR_TYPES:
            raise ValidationError("executor_type 必须是 'thread' 或 'process'")

        self.max_workers = max_workers
        self.executor_type = executor_type
        self._executor: Executor | None = None

    async def run(self, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """在执行器中运行阻塞函数并等待结果"""
        loop = asyncio.get_running_loop()
        if kwargs:
            func = partial(func, **kwargs)
        return await loop.run_in_executor(self._ensure_executor(), func, *args)

    def shutdown(self, wait: bool = False) -> None:
        """关闭底层执行器并取消尚未开始的任务"""
        if self._executor is None:
            return
        self._executor.shutdown(wait=wait, cancel_futures=True)
        self._executor = None
        logger.debug(f"已关闭{self.executor_type}执行器")

    def _ensure_executor(self) -> Executor:
        if self._executor is None:
            executor_class = (
                ProcessPoolExecutor
                if self.executor_type == "process"
                else ThreadPoolExecutor
            )
            logger.debug(
                f"使用{executor_class.__name__}: max_workers={self.max_workers}"
            )
            self._executor = executor_class(max_workers=self.max_workers)
        return self._executor
