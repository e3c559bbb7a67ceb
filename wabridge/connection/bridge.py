"""
桥接协议客户端 - 通过 WebSocket 与协议桥接进程通信的 ProtocolClient 实现。

架构特点：
- 桥接模式：Python <-> WebSocket <-> 桥接进程 <-> 聊天网络
- 桥接进程持有真正的协议库（配对、加密、多设备同步），并把凭据写入 authDir
- 每次 open() 建立一条新的 WebSocket 连接，对应一个 BridgeSession

消息协议（Python -> Bridge）：
- auth：发送认证令牌
- open：以 authDir 中的凭据打开协议会话
- presence：在线状态更新（健康检查的存活探测）
- send：发送消息
- call_accept / call_reject：接听 / 拒接来电（携带 callId 与 from）
- logout：注销当前设备

消息协议（Bridge -> Python）：
- qr：配对二维码 / 配对码
- status：connected / disconnected（携带 statusCode、error、reason）
- message：入站消息
- call：来电（callId、from、isVideo、isGroup、status）
- ack：请求结果（按 id 关联，ok=false 时携带 error）
- error：桥接服务报告的错误

依赖：
- websockets：Python WebSocket 客户端库
"""

import asyncio
import json
import time
import uuid
from pathlib import Path
from typing import Any

from loguru import logger
from websockets.protocol import State

from wabridge.bus.events import InboundEvent, IncomingCall, MessageContext, PayloadKind, SendRequest
from wabridge.config.schema import BridgeConfig
from wabridge.connection.protocol import (
    LIFECYCLE_CLOSE,
    LIFECYCLE_OPEN,
    ProtocolClient,
    ProtocolSession,
    SessionListener,
)
from wabridge.errors import BridgeRequestError, DisconnectError, MediaFormatError
from wabridge.utils.helpers import truncate_string
from wabridge.utils.media import coerce_media


def parse_message_frame(data: dict[str, Any]) -> InboundEvent:
    """
    把桥接服务的 message 帧解析为 InboundEvent。

    兼容旧版字段：chatId 缺失时使用 sender，body 缺失时使用 content。
    媒体数据无法识别时只记录警告并丢弃媒体部分，消息本身照常投递。
    """
    chat_id = data.get("chatId") or data.get("sender", "")
    sender_id = data.get("senderId") or data.get("pn") or data.get("sender", "")

    context = None
    raw_ctx = data.get("context")
    if isinstance(raw_ctx, dict):
        context = MessageContext(
            album_id=raw_ctx.get("albumId") or raw_ctx.get("productId"),
            business_owner_id=raw_ctx.get("businessOwnerJid"),
            is_forwarded=bool(raw_ctx.get("isForwarded")),
        )

    media = None
    if data.get("media") is not None:
        try:
            media = coerce_media(data["media"])
        except MediaFormatError as e:
            logger.warning(f"Dropping media of message {data.get('id')}: {e}")

    return InboundEvent(
        id=str(data.get("id", "")),
        chat_id=chat_id,
        sender_id=sender_id.split("@")[0] if "@" in sender_id else sender_id,
        timestamp=float(data.get("timestamp") or 0),
        kind=PayloadKind.parse(data.get("kind", "chat")),
        body=data.get("body", data.get("content", "")) or "",
        from_me=bool(data.get("fromMe", False)),
        context=context,
        media=media,
    )


def parse_call_frame(data: dict[str, Any]) -> IncomingCall:
    """把桥接服务的 call 帧解析为 IncomingCall；缺少时间戳时取当前时间。"""
    return IncomingCall(
        call_id=str(data.get("callId") or data.get("id", "")),
        caller=data.get("from", ""),
        timestamp=float(data.get("timestamp") or time.time()),
        is_video=bool(data.get("isVideo", False)),
        is_group=bool(data.get("isGroup", False)),
        status=data.get("status") or "offer",
    )


class BridgeSession(ProtocolSession):
    """
    一条到桥接服务的 WebSocket 会话。

    后台读取任务持续接收桥接帧并分发给 listener；请求类操作
    （presence / send / 来电应答 / logout）通过 id 与 ack 帧关联。
    """

    def __init__(self, ws, listener: SessionListener, request_timeout_s: float = 60.0):
        self._ws = ws
        self._listener = listener
        self._request_timeout_s = request_timeout_s
        self._pending: dict[str, asyncio.Future] = {}
        self._reader: asyncio.Task | None = None
        self._closing = False
        self._close_reported = False

    def start_reader(self) -> None:
        self._reader = asyncio.create_task(self._read_loop())

    @property
    def is_open(self) -> bool:
        if self._closing or self._close_reported:
            return False
        return self._ws.state is State.OPEN

    async def _read_loop(self) -> None:
        error: BaseException | None = None
        try:
            async for raw in self._ws:
                try:
                    await self._handle_frame(raw)
                except Exception as e:
                    logger.error(f"Error handling bridge frame: {e}")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            error = e
        finally:
            self._fail_pending(DisconnectError("bridge connection closed"))

        if not self._closing:
            await self._report_close(DisconnectError(f"bridge connection lost: {error or 'closed'}"))

    async def _report_close(self, error: BaseException | None) -> None:
        if self._close_reported:
            return
        self._close_reported = True
        await self._listener.on_lifecycle(LIFECYCLE_CLOSE, error)

    async def _handle_frame(self, raw: str | bytes) -> None:
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning(f"Invalid JSON from bridge: {truncate_string(str(raw))}")
            return

        msg_type = data.get("type")

        if msg_type == "message":
            await self._listener.on_message(parse_message_frame(data))

        elif msg_type == "status":
            status = data.get("status")
            logger.info(f"Bridge status: {status}")
            if status == "connected":
                await self._listener.on_lifecycle(LIFECYCLE_OPEN, None)
            elif status == "disconnected":
                await self._report_close(DisconnectError(
                    data.get("error", "disconnected"),
                    status_code=data.get("statusCode"),
                    reason=data.get("reason"),
                ))

        elif msg_type == "call":
            await self._listener.on_call(parse_call_frame(data))

        elif msg_type == "qr":
            await self._listener.on_pairing_code(data.get("qr", ""))

        elif msg_type == "ack":
            future = self._pending.pop(str(data.get("id")), None)
            if future is None or future.done():
                return
            if data.get("ok", True):
                future.set_result(data.get("messageId", ""))
            else:
                future.set_exception(BridgeRequestError(data.get("error", "request failed")))

        elif msg_type == "error":
            logger.error(f"Bridge error: {data.get('error')}")

    def _fail_pending(self, error: Exception) -> None:
        for future in self._pending.values():
            if not future.done():
                future.set_exception(error)
        self._pending.clear()

    async def _request(self, frame: dict[str, Any]) -> str:
        if not self.is_open:
            raise DisconnectError("bridge session is not open")
        request_id = uuid.uuid4().hex
        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        try:
            await self._ws.send(json.dumps({**frame, "id": request_id}))
            return await asyncio.wait_for(future, timeout=self._request_timeout_s)
        finally:
            self._pending.pop(request_id, None)

    async def send_presence(self) -> None:
        await self._request({"type": "presence", "state": "available"})

    async def send(self, request: SendRequest) -> str:
        return await self._request({"type": "send", **request.to_frame()})

    async def accept_call(self, call: IncomingCall) -> None:
        await self._request({"type": "call_accept", "callId": call.call_id, "from": call.caller})

    async def reject_call(self, call: IncomingCall) -> None:
        await self._request({"type": "call_reject", "callId": call.call_id, "from": call.caller})

    async def logout(self) -> None:
        await self._request({"type": "logout"})

    async def close(self) -> None:
        if self._closing:
            return
        self._closing = True
        # close() 可能由读取任务内部的回调链调用，此时不能取消自己
        if self._reader and self._reader is not asyncio.current_task():
            self._reader.cancel()
        self._fail_pending(DisconnectError("bridge session closed"))
        try:
            await self._ws.close()
        except Exception as e:
            logger.debug(f"Error closing bridge socket: {e}")


class BridgeClient(ProtocolClient):
    """通过 WebSocket 桥接服务打开协议会话。"""

    def __init__(self, config: BridgeConfig):
        self.config = config

    async def open(self, credentials_dir: Path, listener: SessionListener) -> ProtocolSession:
        import websockets

        logger.info(f"Connecting to bridge at {self.config.url}...")
        ws = await websockets.connect(self.config.url, open_timeout=self.config.connect_timeout_s)
        try:
            if self.config.token:
                await ws.send(json.dumps({"type": "auth", "token": self.config.token}))
            await ws.send(json.dumps({"type": "open", "authDir": str(credentials_dir)}))
        except Exception:
            await ws.close()
            raise

        session = BridgeSession(ws, listener, request_timeout_s=self.config.request_timeout_s)
        session.start_reader()
        logger.info("Connected to bridge")
        return session
