"""消息格式化工具模块。

提供统一的错误消息、状态消息格式化功能。
"""

from pathlib import Path
from typing import Any


class MessageFormatter:
    """统一的消息格式化器"""

    @staticmethod
    def file_not_found(file_path: str | Path) -> str:
        """文件不存在错误消息"""
        return f"文件不存在: {file_path}"

    @staticmethod
    def path_not_directory(path: str | Path) -> str:
        """路径不是目录错误消息"""
        return f"路径不是目录: {path}"

    @staticmethod
    def record_not_found(key: str) -> str:
        """记录不存在错误消息"""
        return f"批次中不存在该图片: {key}"

    @staticmethod
    def operation_failed(
        operation: str, target: str | Path, error: Exception | None = None
    ) -> str:
        """操作失败消息"""
        msg = f"{operation}失败: {target}"
        if error:
            msg += f" - {error}"
        return msg

    @staticmethod
    def validation_error(field: str, value: Any, reason: str | None = None) -> str:
        """参数验证错误消息"""
        msg = f"参数验证失败 - {field}: {value}"
        if reason:
            msg += f" ({reason})"
        return msg

    @staticmethod
    def stale_result(key: str, seq: int, latest: int) -> str:
        """过期结果丢弃消息"""
        return f"丢弃过期结果 [{key}]: 序号 {seq} 已被 {latest} 取代"

    @staticmethod
    def entry_skipped(key: str, reason: str) -> str:
        """导出条目跳过消息"""
        return f"跳过导出条目 [{key}]: {reason}"

    @staticmethod
    def format_error(operation: str, target: str | Path, error: Exception) -> str:
        """格式化通用错误消息"""
        return f"{operation}失败 [{target}]: {error}"
