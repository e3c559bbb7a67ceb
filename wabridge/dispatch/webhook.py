"""
Webhook 分发器 - 把总线上已完成的事件以 HTTP POST 投递给外部服务。

订阅关系：
- 事件订阅：InboundEvent / AlbumEvent → POST on_message_url（to_webhook_record() 的 JSON）
- 通知订阅：ready 从 True 变为 False → POST on_down_url（掉线告警）

投递语义：尽力而为、最多一次。失败只记录日志，不重试，
也不会影响总线上的其他订阅者。

依赖：
- httpx：异步 HTTP 客户端
"""

from datetime import datetime
from typing import Any

import httpx
from loguru import logger

from wabridge import __version__
from wabridge.bus.events import Notice
from wabridge.bus.queue import BusEvent, EventBus
from wabridge.config.schema import WebhookConfig

USER_AGENT = f"wabridge/{__version__}"


class WebhookDispatcher:
    """
    Webhook 分发器。

    属性:
        config: Webhook 配置（地址、超时、附加请求头）
        bus: 事件总线，构造时自动订阅事件与通知
        _http: 共享的 httpx 异步客户端，在 start() 中创建，stop() 中关闭
    """

    def __init__(self, config: WebhookConfig, bus: EventBus, http: httpx.AsyncClient | None = None):
        self.config = config
        self.bus = bus
        self._http = http
        self._owns_http = http is None
        self.delivered = 0
        self.failed = 0

        bus.subscribe_events(self.on_event)
        bus.subscribe_notices(self.on_notice)

    async def start(self) -> None:
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=self.config.timeout_s)
            self._owns_http = True
        if not self.config.on_message_url:
            logger.warning("No onMessage webhook configured, inbound events will be dropped")

    async def stop(self) -> None:
        if self._http and self._owns_http:
            await self._http.aclose()
            self._http = None

    async def post(self, url: str, payload: dict[str, Any]) -> bool:
        """
        POST 一条 JSON 负载。

        返回:
            True 表示对方返回 2xx；网络错误或非 2xx 返回 False
        """
        if self._http is None:
            await self.start()
        headers = {"User-Agent": USER_AGENT, **self.config.headers}
        try:
            response = await self._http.post(url, json=payload, headers=headers, timeout=self.config.timeout_s)
            response.raise_for_status()
        except httpx.HTTPError as e:
            self.failed += 1
            logger.error(f"Webhook delivery to {url} failed: {e}")
            return False
        self.delivered += 1
        return True

    async def on_event(self, event: BusEvent) -> None:
        url = self.config.on_message_url
        if not url:
            return
        logger.debug(f"Delivering {event.id} to webhook")
        await self.post(url, event.to_webhook_record())

    async def on_notice(self, notice: Notice) -> None:
        url = self.config.on_down_url
        if not url or notice.name != "ready" or notice.data.get("ready", True):
            return
        logger.info("Session down, notifying onDown webhook")
        await self.post(url, {
            "event": "session_down",
            "timestamp": notice.timestamp.isoformat(),
            "notifiedAt": datetime.now().isoformat(),
        })
