"""文件命名工具模块。

提供导出文件名生成和冲突消歧功能。
"""

import itertools
import re
from pathlib import PurePath

from ..models.constants import OutputFormat


# 重命名中不允许出现的路径字符
_UNSAFE_CHARS = re.compile(r'[\\/:*?"<>|\x00-\x1f]')


class FileNamingStrategy:
    """文件命名策略类"""

    @staticmethod
    def sanitize_base_name(value: str | None) -> str | None:
        """清理用户输入的基础文件名，空白输入视为未设置"""
        if value is None:
            return None
        cleaned = _UNSAFE_CHARS.sub("_", value).strip().strip(".")
        return cleaned or None

    @staticmethod
    def generate_output_name(
        filename: str,
        output_format: OutputFormat,
        rename_target: str | None = None,
    ) -> str:
        """生成导出文件名

        重命名优先，否则使用原文件名去掉扩展名，扩展名替换为输出格式的规范扩展名。

        Args:
            filename: 上传时的文件名
            output_format: 输出格式
            rename_target: 用户设置的基础文件名

        Returns:
            str: 生成的文件名（不含路径）
        """
        base_name = FileNamingStrategy.sanitize_base_name(rename_target)
        if base_name is None:
            base_name = PurePath(filename).stem or filename
        return f"{base_name}.{output_format.extension}"

    @staticmethod
    def ensure_unique_name(filename: str, taken: set[str]) -> str:
        """确保文件名在 taken 中唯一，冲突时添加数字后缀

        比较忽略大小写，避免在不区分大小写的文件系统上解压时互相覆盖。
        返回的名字会加入 taken。

        Args:
            filename: 原始文件名
            taken: 已占用的文件名（小写折叠后）

        Returns:
            str: 唯一的文件名
        """
        if filename.casefold() not in taken:
            taken.add(filename.casefold())
            return filename

        path = PurePath(filename)
        base, suffix = path.stem, path.suffix

        for counter in itertools.count(1):
            candidate = f"{base}_{counter}{suffix}"
            if candidate.casefold() not in taken:
                taken.add(candidate.casefold())
                return candidate

        # 理论上永远不会到达这里，但为了类型检查器
        return filename  # pragma: no cover
