"""
重试策略 - 计算退避延迟并判断断线是否值得重试。

本模块是纯函数式的：不持有计数器、不做 I/O，所有状态由调用方
（ConnectionController）传入，因此可以独立测试。

错误分类（DisconnectKind）：
- TRANSIENT：普通传输错误，按指数退避重试
- TERMINAL：鉴权类终止错误（forbidden、401/403/404/405 等），不重试
- LOGGED_OUT：远端登出/未授权，TERMINAL 的子集；恢复时不能回滚到旧凭据
- PAIRING_TIMEOUT：配对（二维码）握手超时，属于预期事件，立即重新配对
"""

import random
from enum import Enum

from wabridge.config.schema import RetryConfig
from wabridge.errors import DisconnectError

# 不可重试的状态码：401 未授权 / 403 禁止 / 404 未找到 / 405 方法不允许（通常是 IP 被限流）
NON_RETRYABLE_STATUS_CODES = frozenset({401, 403, 404, 405})

# 不可重试的错误关键字（匹配小写后的错误消息或原因标识）
NON_RETRYABLE_MARKERS = ("logged_out", "logged out", "not-authorized", "forbidden", "unauthorized")

# 表示远端登出的状态码和关键字
LOGGED_OUT_STATUS_CODES = frozenset({401})
LOGGED_OUT_MARKERS = ("logged_out", "logged out", "not-authorized", "unauthorized")

# 配对超时：408 或二维码刷新次数耗尽
PAIRING_TIMEOUT_STATUS_CODES = frozenset({408})
PAIRING_TIMEOUT_MARKERS = ("qr refs attempts ended", "pairing timed out", "qr timeout")

JITTER_RATIO = 0.1


class DisconnectKind(str, Enum):
    TRANSIENT = "transient"
    TERMINAL = "terminal"
    LOGGED_OUT = "logged_out"
    PAIRING_TIMEOUT = "pairing_timeout"


def _status_code(error: BaseException | None) -> int | None:
    return getattr(error, "status_code", None) if error is not None else None


def _error_text(error: BaseException | None) -> str:
    if error is None:
        return ""
    parts = [str(error)]
    reason = getattr(error, "reason", None)
    if reason:
        parts.append(str(reason))
    return " ".join(parts).lower()


class RetryPolicy:
    """
    重试策略。

    delay = min(initial * multiplier^attempt, max) + jitter，jitter ∈ [0, 10%·delay]，
    因此任何 attempt 下延迟都不超过 max * 1.1。
    """

    def __init__(
        self,
        initial_delay_ms: int = 5000,
        max_delay_ms: int = 300000,
        multiplier: float = 2.0,
        rng: random.Random | None = None,
    ):
        self.initial_delay_ms = initial_delay_ms
        self.max_delay_ms = max_delay_ms
        self.multiplier = multiplier
        self._rng = rng or random.Random()

    @classmethod
    def from_config(cls, config: RetryConfig, rng: random.Random | None = None) -> "RetryPolicy":
        return cls(
            initial_delay_ms=config.initial_reconnect_delay_ms,
            max_delay_ms=config.max_reconnect_delay_ms,
            multiplier=config.reconnect_backoff_multiplier,
            rng=rng,
        )

    def base_delay(self, attempt: int) -> float:
        """不含抖动的退避延迟（毫秒）。"""
        attempt = max(0, attempt)
        try:
            raw = self.initial_delay_ms * (self.multiplier ** attempt)
        except OverflowError:
            raw = float(self.max_delay_ms)
        return min(raw, self.max_delay_ms)

    def next_delay(self, attempt: int) -> int:
        """
        计算第 attempt 次重试前的等待时间（毫秒，整数）。

        参数:
            attempt: 从 0 开始的重试序号

        返回:
            带抖动的延迟毫秒数
        """
        capped = self.base_delay(attempt)
        jitter = self._rng.random() * JITTER_RATIO * capped
        return int(capped + jitter)

    @staticmethod
    def is_terminal(error: BaseException | None) -> bool:
        """错误是否属于鉴权类终止错误（登出、未授权、禁止访问等）。"""
        if error is None:
            return False
        if _status_code(error) in NON_RETRYABLE_STATUS_CODES:
            return True
        text = _error_text(error)
        return any(marker in text for marker in NON_RETRYABLE_MARKERS)

    def should_retry(
        self,
        error: BaseException | None,
        consecutive_failures: int,
        max_consecutive_failures: int,
    ) -> bool:
        """终止错误或连续失败次数达到上限时返回 False，其余情况返回 True。"""
        if self.is_terminal(error):
            return False
        if consecutive_failures >= max_consecutive_failures:
            return False
        return True

    @staticmethod
    def classify(error: BaseException | None, pairing: bool = False) -> DisconnectKind:
        """
        对断线原因进行分类。

        参数:
            error: 断线错误（可为 None，表示原因未知）
            pairing: 断线发生时是否仍处于配对阶段

        返回:
            DisconnectKind 分类结果
        """
        status = _status_code(error)
        text = _error_text(error)

        if pairing and (
            status in PAIRING_TIMEOUT_STATUS_CODES
            or any(marker in text for marker in PAIRING_TIMEOUT_MARKERS)
        ):
            return DisconnectKind.PAIRING_TIMEOUT

        if status in LOGGED_OUT_STATUS_CODES or any(marker in text for marker in LOGGED_OUT_MARKERS):
            return DisconnectKind.LOGGED_OUT

        if RetryPolicy.is_terminal(error):
            return DisconnectKind.TERMINAL

        return DisconnectKind.TRANSIENT


__all__ = ["RetryPolicy", "DisconnectKind", "DisconnectError"]
