"""批量图像重压缩 MCP 服务器。

通过 FastMCP 工具暴露一个批次会话：装载、调参、编辑、查询和导出。
"""

from typing import Any

from fastmcp import FastMCP

from .exceptions import (
    CompressionError,
    ExportError,
    RecordNotFoundError,
    ValidationError,
)
from .session import BatchSession
from .utils.logging_helpers import configure_logging, get_logger
from .utils.message_formatter import MessageFormatter


MCPResponse = dict[str, Any]


class MCPResponseBuilder:
    """MCP 服务器响应构建器，专门用于构建符合 MCP 协议的响应格式。"""

    @staticmethod
    def success(**payload: Any) -> MCPResponse:
        return {"success": True, **payload}

    @staticmethod
    def error(
        message: str,
        error_type: str = "general",
        details: dict[str, Any] | None = None,
    ) -> MCPResponse:
        """构建错误结果。

        Args:
            message: 错误消息
            error_type: 错误类型
            details: 额外的错误详情

        Returns:
            dict: 标准化的错误响应
        """
        result: MCPResponse = {
            "success": False,
            "error": message,
            "error_type": error_type,
        }
        if details:
            result["details"] = details
        return result

    @staticmethod
    def from_exception(error: CompressionError, operation: str) -> MCPResponse:
        """把领域异常映射为错误响应"""
        details: dict[str, Any] = {"operation": operation}
        if error.key:
            details["name"] = error.key

        match error:
            case ValidationError():
                error_type = "validation"
            case RecordNotFoundError():
                error_type = "not_found"
            case ExportError():
                error_type = "export"
            case _:
                error_type = "processing"
        return MCPResponseBuilder.error(error.message, error_type, details)


logger = get_logger()

mcp: FastMCP[Any] = FastMCP("批量图像重压缩服务")

_session: BatchSession | None = None


def get_session() -> BatchSession:
    """获取全局批次会话，首次调用时创建"""
    global _session
    if _session is None:
        _session = BatchSession()
    return _session


@mcp.tool()
async def load_images(paths: list[str], recursive: bool = True) -> MCPResponse:
    """装载图片，替换当前批次

    每张图片会以满质量和当前批次参数完成首次压缩。

    Args:
        paths: 图片文件或目录路径
        recursive: 目录是否递归子目录
    """
    try:
        result = await get_session().load(paths, recursive=recursive)
        return MCPResponseBuilder.success(**result)
    except CompressionError as e:
        logger.error(MessageFormatter.operation_failed("装载图片", ", ".join(paths), e))
        return MCPResponseBuilder.from_exception(e, "装载图片")
    except OSError as e:
        logger.error(MessageFormatter.operation_failed("读取文件", ", ".join(paths), e))
        return MCPResponseBuilder.error(str(e), "file")


@mcp.tool()
async def update_batch_parameters(
    output_format: str | None = None,
    quality: float | None = None,
    width: int | None = None,
    height: int | None = None,
    reset_size: bool = False,
) -> MCPResponse:
    """修改批次参数并等待重压缩完成

    格式变化会重新压缩全部图片；质量和尺寸变化只影响没有单独设置质量的图片。

    Args:
        output_format: 输出格式 jpeg/png/webp
        quality: 全局质量 0-1
        width: 目标宽度，只给宽度时高度按比例推断
        height: 目标高度
        reset_size: 恢复原始尺寸
    """
    try:
        result = await get_session().update_parameters(
            output_format=output_format,
            quality=quality,
            width=width,
            height=height,
            reset_size=reset_size,
        )
        return MCPResponseBuilder.success(**result)
    except CompressionError as e:
        return MCPResponseBuilder.from_exception(e, "修改批次参数")


@mcp.tool()
async def update_image(
    name: str,
    quality: float | None = None,
    reset_quality: bool = False,
    rename: str | None = None,
    metadata: dict[str, str] | None = None,
) -> MCPResponse:
    """编辑单张图片

    Args:
        name: 图片标识（get_batch_status 中的 name）
        quality: 单张图片的质量 0-1
        reset_quality: 取消单独质量，回到全局质量
        rename: 导出时使用的文件名（不含扩展名），空字符串表示取消
        metadata: 要修改的元数据字段，可用字段：
            title, subject, rating, tags, comments, authors, copyright
    """
    try:
        result = await get_session().update_image(
            name,
            quality=quality,
            reset_quality=reset_quality,
            rename=rename,
            metadata=metadata,
        )
        return MCPResponseBuilder.success(image=result)
    except CompressionError as e:
        return MCPResponseBuilder.from_exception(e, "编辑图片")


@mcp.tool()
async def get_batch_status() -> MCPResponse:
    """获取批次参数和每张图片的状态"""
    return MCPResponseBuilder.success(**get_session().status())


@mcp.tool()
async def export_images(
    output_dir: str,
    names: list[str] | None = None,
    archive: bool = True,
    overwrite: bool = False,
) -> MCPResponse:
    """导出图片

    导出前会按当前参数刷新过期的图片并等待全部完成。

    Args:
        output_dir: 输出目录
        names: 要导出的图片，默认全部
        archive: True 打包为 zip，False 逐个写文件
        overwrite: 是否覆盖已存在的文件
    """
    try:
        result = await get_session().export(
            output_dir, names=names, archive=archive, overwrite=overwrite
        )
        return MCPResponseBuilder.success(**result)
    except CompressionError as e:
        return MCPResponseBuilder.from_exception(e, "导出")
    except OSError as e:
        logger.error(MessageFormatter.operation_failed("写入文件", output_dir, e))
        return MCPResponseBuilder.error(str(e), "file", {"output_dir": output_dir})


# ============================================================================
# 应用入口
# ============================================================================


def main() -> None:
    """启动 MCP 服务器"""
    configure_logging()
    logger.info("启动批量图像重压缩 MCP 服务器")
    mcp.run()


if __name__ == "__main__":
    main()
