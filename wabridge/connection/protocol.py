"""
协议客户端接口 - 连接控制器与外部协议库之间的契约。

协议库本身（配对码生成、端到端加密、多设备同步）不在本项目范围内，
控制器只通过下面三个抽象与它交互：

- ProtocolClient：打开一个新会话 open(credentials_dir, listener) -> ProtocolSession
- ProtocolSession：会话句柄，提供 is_open / send_presence / send / accept_call / reject_call / logout / close
- SessionListener：协议库回调控制器的入口（生命周期、配对码、入站消息、来电）

只有 ConnectionController 可以调用 open / close；其他组件一律通过控制器间接操作。
"""

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Protocol

from wabridge.bus.events import InboundEvent, IncomingCall, SendRequest

# 生命周期状态取值
LIFECYCLE_OPEN = "open"
LIFECYCLE_CLOSE = "close"


class SessionListener(Protocol):
    """协议库回调接口。所有回调都在事件循环中执行。"""

    async def on_lifecycle(self, state: str, error: BaseException | None = None) -> None:
        """state 为 "open" 或 "close"；关闭时 error 携带断线原因。"""
        ...

    async def on_pairing_code(self, code: str) -> None:
        ...

    async def on_message(self, event: InboundEvent) -> None:
        ...

    async def on_call(self, call: IncomingCall) -> None:
        ...


class ProtocolSession(ABC):
    """一个已打开的协议会话句柄。"""

    @property
    @abstractmethod
    def is_open(self) -> bool:
        """底层传输是否仍处于打开状态。"""
        pass

    @abstractmethod
    async def send_presence(self) -> None:
        """发送轻量级的在线状态更新（用作存活探测）。"""
        pass

    @abstractmethod
    async def send(self, request: SendRequest) -> str:
        """发送一条消息，返回协议层分配的消息 ID。"""
        pass

    @abstractmethod
    async def accept_call(self, call: IncomingCall) -> None:
        """接听来电。"""
        pass

    @abstractmethod
    async def reject_call(self, call: IncomingCall) -> None:
        """拒接来电。"""
        pass

    @abstractmethod
    async def logout(self) -> None:
        """在协议层注销当前设备。"""
        pass

    @abstractmethod
    async def close(self) -> None:
        """关闭会话。重复调用应当是安全的。"""
        pass


class ProtocolClient(ABC):
    """协议会话工厂。"""

    @abstractmethod
    async def open(self, credentials_dir: Path, listener: SessionListener) -> ProtocolSession:
        """
        使用 credentials_dir 中的凭据打开一个新会话。

        凭据为空时协议库进入配对流程并通过 listener.on_pairing_code 推送配对码。
        打开失败时抛出异常，控制器按断线处理。
        """
        pass
