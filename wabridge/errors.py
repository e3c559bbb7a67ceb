"""
异常类型定义 - wabridge 全局使用的错误层级。

- WabridgeError：所有自定义异常的基类
- DisconnectError：协议会话断开的原因（携带状态码和原因标识）
- NotReadyError：会话未处于 OPEN 状态时调用发送接口
- MediaFormatError：无法识别的媒体载荷形态
- BridgeRequestError：桥接服务对请求返回了失败的 ack
"""


class WabridgeError(Exception):
    """wabridge 异常基类。"""


class DisconnectError(WabridgeError):
    """
    协议会话断开错误。

    属性:
        status_code: 协议层给出的类 HTTP 状态码（如 401、408、515），未知时为 None
        reason: 协议层给出的原因标识（如 "logged_out"），未知时为 None
    """

    def __init__(self, message: str = "", status_code: int | None = None, reason: str | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.reason = reason

    def __repr__(self) -> str:
        return f"DisconnectError({str(self)!r}, status_code={self.status_code}, reason={self.reason!r})"


class NotReadyError(WabridgeError):
    """会话未连接（state != OPEN）时拒绝发送。"""


class MediaFormatError(WabridgeError):
    """媒体载荷不属于已知的输入形态。"""


class BridgeRequestError(WabridgeError):
    """桥接服务以失败 ack 响应了某个请求。"""
