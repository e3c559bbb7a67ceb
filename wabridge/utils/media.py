"""
媒体载荷适配 - 将传输层给出的媒体数据统一转换为 MediaPayload。

只接受一组封闭的输入形态：
- bytes / bytearray / memoryview：原始字节
- str：base64 编码的字节
- dict：{"data": <base64 或字节>, "mimetype": ..., "filename": ...}

其他任何形态直接抛出 MediaFormatError，不做"尽力而为"的猜测转换。
"""

import base64
import binascii
from typing import Any

from wabridge.bus.events import MediaPayload
from wabridge.errors import MediaFormatError

DEFAULT_MIMETYPE = "application/octet-stream"


def _decode_bytes(value: Any) -> bytes:
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value)
    if isinstance(value, str):
        try:
            return base64.b64decode(value, validate=True)
        except (binascii.Error, ValueError) as e:
            raise MediaFormatError(f"Invalid base64 media data: {e}") from e
    raise MediaFormatError(f"Unsupported media data type: {type(value).__name__}")


def coerce_media(
    value: Any,
    mimetype: str | None = None,
    filename: str | None = None,
) -> MediaPayload:
    """
    将媒体数据转换为 MediaPayload。

    参数:
        value: 传输层给出的媒体数据（见模块说明中的封闭形态集合）
        mimetype: 显式指定的 MIME 类型（dict 形态中的值优先）
        filename: 显式指定的文件名（dict 形态中的值优先）

    返回:
        MediaPayload 对象

    异常:
        MediaFormatError: 输入不属于任何已知形态
    """
    if isinstance(value, MediaPayload):
        return value

    if isinstance(value, dict):
        if "data" not in value:
            raise MediaFormatError("Media dict is missing the 'data' field")
        return MediaPayload(
            data=_decode_bytes(value["data"]),
            mimetype=value.get("mimetype") or mimetype or DEFAULT_MIMETYPE,
            filename=value.get("filename") or filename,
        )

    return MediaPayload(
        data=_decode_bytes(value),
        mimetype=mimetype or DEFAULT_MIMETYPE,
        filename=filename,
    )
