"""连接模块：协议接口、重试策略与连接控制器。"""

from wabridge.connection.controller import ConnectionController, ConnectionState, RetryCounters
from wabridge.connection.protocol import ProtocolClient, ProtocolSession, SessionListener
from wabridge.connection.retry import DisconnectKind, RetryPolicy

__all__ = [
    "ConnectionController",
    "ConnectionState",
    "RetryCounters",
    "ProtocolClient",
    "ProtocolSession",
    "SessionListener",
    "DisconnectKind",
    "RetryPolicy",
]
