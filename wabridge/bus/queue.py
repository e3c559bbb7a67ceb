"""
事件总线模块 - 连接控制器与外部协作方之间的订阅接口。

控制器只负责"发布"，不直接调用 HTTP 或仪表盘推送：

事件流程（协议会话 → Webhook）：
  控制器 → publish_event() → events 队列 → dispatch_events() → 事件订阅者

通知流程（控制器 → 仪表盘）：
  控制器 → publish_notice() → notices 有界队列 → dispatch_notices() → 通知订阅者

【核心设计】
- events 队列无界：已完成去重和聚合的消息不能静默丢失
- notices 队列有界：仪表盘消费者随时可能不存在，队列满时丢弃最旧的通知，
  发布方永远不会被阻塞
- 单个订阅者的异常只记录日志，不影响其他订阅者和后续消息
"""

import asyncio
from typing import Awaitable, Callable

from loguru import logger

from wabridge.bus.events import AlbumEvent, InboundEvent, Notice

BusEvent = InboundEvent | AlbumEvent
EventCallback = Callable[[BusEvent], Awaitable[None]]
NoticeCallback = Callable[[Notice], Awaitable[None]]

DEFAULT_NOTICE_QUEUE_SIZE = 256


class EventBus:
    """
    异步事件总线。

    属性:
        events: 已完成的入站事件队列（InboundEvent / AlbumEvent）
        notices: 仪表盘通知的有界队列
        _event_subscribers: 事件订阅者回调列表
        _notice_subscribers: 通知订阅者回调列表
        _running: 分发器运行状态标志
    """

    def __init__(self, notice_queue_size: int = DEFAULT_NOTICE_QUEUE_SIZE):
        self.events: asyncio.Queue[BusEvent] = asyncio.Queue()
        self.notices: asyncio.Queue[Notice] = asyncio.Queue(maxsize=notice_queue_size)
        self._event_subscribers: list[EventCallback] = []
        self._notice_subscribers: list[NoticeCallback] = []
        self._running = False

    async def publish_event(self, event: BusEvent) -> None:
        """发布一条已完成去重和聚合的入站事件。"""
        await self.events.put(event)

    def publish_notice(self, notice: Notice) -> None:
        """
        发布仪表盘通知（非阻塞）。

        队列已满时丢弃最旧的一条通知，再放入新通知。
        """
        if self.notices.full():
            try:
                dropped = self.notices.get_nowait()
                logger.debug(f"Notice queue full, dropped '{dropped.name}'")
            except asyncio.QueueEmpty:
                pass
        self.notices.put_nowait(notice)

    def subscribe_events(self, callback: EventCallback) -> None:
        """注册事件订阅者（如 Webhook 分发器）。"""
        self._event_subscribers.append(callback)

    def subscribe_notices(self, callback: NoticeCallback) -> None:
        """注册通知订阅者（如仪表盘推送通道）。"""
        self._notice_subscribers.append(callback)

    async def _deliver(self, subscribers: list, item, label: str) -> None:
        for callback in subscribers:
            try:
                await callback(item)
            except Exception as e:
                logger.error(f"Error dispatching {label}: {e}")

    async def dispatch_events(self) -> None:
        """
        事件分发器（后台常驻任务）。

        使用 wait_for 超时机制（1秒）避免在 stop() 时长时间阻塞。
        """
        self._running = True
        while self._running:
            try:
                event = await asyncio.wait_for(self.events.get(), timeout=1.0)
            except asyncio.TimeoutError:
                continue
            await self._deliver(self._event_subscribers, event, f"event {event.id}")

    async def dispatch_notices(self) -> None:
        """通知分发器（后台常驻任务），结构与 dispatch_events 相同。"""
        self._running = True
        while self._running:
            try:
                notice = await asyncio.wait_for(self.notices.get(), timeout=1.0)
            except asyncio.TimeoutError:
                continue
            await self._deliver(self._notice_subscribers, notice, f"notice {notice.name}")

    async def drain_events(self) -> int:
        """
        把队列中剩余的事件同步投递给订阅者（停机时在分发器退出后调用）。

        返回:
            投递的事件数量
        """
        count = 0
        while not self.events.empty():
            event = self.events.get_nowait()
            await self._deliver(self._event_subscribers, event, f"event {event.id}")
            count += 1
        return count

    def stop(self) -> None:
        """停止分发器：循环会在下次超时检查时退出。"""
        self._running = False

    @property
    def events_size(self) -> int:
        return self.events.qsize()

    @property
    def notices_size(self) -> int:
        return self.notices.qsize()
