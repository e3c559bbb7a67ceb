"""投递模块：把总线上的事件和掉线通知转发到外部 Webhook。"""

from wabridge.dispatch.webhook import WebhookDispatcher

__all__ = ["WebhookDispatcher"]
