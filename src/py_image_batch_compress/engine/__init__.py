"""批量重压缩处理引擎模块。

包含防抖合并、记录存储、并发执行、流水线调度和导出组装。
"""

from .concurrent_executor import ConcurrentExecutor
from .debounce import DebounceCoalescer
from .export import ExportAssembler
from .pipeline import CompressionPipeline, resolve_target_dimensions
from .store import ItemStore


__all__ = [
    "CompressionPipeline",
    "ConcurrentExecutor",
    "DebounceCoalescer",
    "ExportAssembler",
    "ItemStore",
    "resolve_target_dimensions",
]
