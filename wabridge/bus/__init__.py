"""
事件总线模块 - 实现连接控制器与外部协作方之间的解耦通信。

事件流向：
  协议会话 → 控制器（去重、相册聚合）→ InboundEvent/AlbumEvent → 事件总线 → Webhook 分发器
  控制器状态变化 → Notice → 事件总线 → 仪表盘推送通道

控制器在构造时接收 EventBus 实例（依赖注入），而不是写入全局的日志/通知通道。
"""

from wabridge.bus.events import (
    AlbumEvent,
    InboundEvent,
    MediaPayload,
    MessageContext,
    Notice,
    PayloadKind,
    SendRequest,
)
from wabridge.bus.queue import EventBus

__all__ = [
    "EventBus",
    "InboundEvent",
    "AlbumEvent",
    "MediaPayload",
    "MessageContext",
    "Notice",
    "PayloadKind",
    "SendRequest",
]
