"""文件工具模块。

提供输入图片收集和导出文件写入等文件系统操作。
"""

import itertools
from collections.abc import Iterable, Iterator
from pathlib import Path

from PIL import Image

from .logging_helpers import get_logger
from .message_formatter import MessageFormatter


logger = get_logger()


def find_image_files(
    directory: str | Path,
    recursive: bool = True,
    exclude_dirs: list[str] | None = None,
) -> Iterator[Path]:
    """查找目录中的图像文件。

    Args:
        directory: 搜索目录
        recursive: 是否递归搜索子目录
        exclude_dirs: 要排除的目录名列表

    Yields:
        Path: 图像文件路径，按路径排序
    """
    directory = Path(directory)
    exclude_dirs = exclude_dirs or []

    if not directory.is_dir():
        logger.warning(MessageFormatter.path_not_directory(directory))
        return

    pattern = "**/*" if recursive else "*"
    supported_extensions = set(Image.registered_extensions())

    for file_path in sorted(directory.glob(pattern)):
        if (
            file_path.is_file()
            and file_path.suffix.lower() in supported_extensions
            and not any(exclude_dir in file_path.parts for exclude_dir in exclude_dirs)
        ):
            yield file_path


def collect_image_files(
    paths: Iterable[str | Path], recursive: bool = True
) -> list[Path]:
    """展开文件和目录参数，保持给定顺序

    Raises:
        FileNotFoundError: 路径不存在
    """
    files: list[Path] = []
    for raw in paths:
        path = Path(raw)
        if path.is_dir():
            files.extend(find_image_files(path, recursive=recursive))
        elif path.is_file():
            files.append(path)
        else:
            raise FileNotFoundError(MessageFormatter.file_not_found(path))
    return files


def ensure_unique_path(path: Path) -> Path:
    """确保路径唯一，如果文件已存在则添加数字后缀"""
    if not path.exists():
        return path

    base, suffix, parent = path.stem, path.suffix, path.parent
    for counter in itertools.count(1):
        new_path = parent / f"{base}_{counter}{suffix}"
        if not new_path.exists():
            return new_path

    return path  # pragma: no cover


def write_output(directory: Path, filename: str, data: bytes, overwrite: bool = False) -> Path:
    """把导出内容写入目录

    Args:
        directory: 输出目录，不存在时创建
        filename: 文件名
        data: 文件内容
        overwrite: 是否覆盖已存在的文件

    Returns:
        Path: 实际写入的路径
    """
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / filename
    if not overwrite:
        path = ensure_unique_path(path)
    path.write_bytes(data)
    logger.debug(f"已写入 {path}")
    return path
