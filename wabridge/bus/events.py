"""
事件类型定义模块 - 定义事件总线中传输的数据结构。

本模块定义了桥接服务中所有数据流转的"货币"：
- InboundEvent：协议会话收到的一条消息（经过去重前的原始形态），来电也以 CALL 类型的 InboundEvent 投递
- IncomingCall：来电信息（通话 ID、来电方、是否视频）
- AlbumEvent：相册聚合器把多张图片合并后的单个逻辑事件
- SendRequest：发送接口接收的出站请求
- Notice：推送给仪表盘的命名事件（就绪状态、配对码、状态变更）

InboundEvent 和 AlbumEvent 都提供 to_webhook_record()，
输出 Webhook 分发器使用的扁平结构：
{chatId, senderId, id, timestamp, kind, body, hasMedia, mediaPayload?, callData?}
"""

import base64
import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class PayloadKind(str, Enum):
    """入站消息的载荷类型。"""
    CHAT = "chat"
    IMAGE = "image"
    VIDEO = "video"
    AUDIO = "audio"
    DOCUMENT = "document"
    LOCATION = "location"
    CONTACT = "contact"
    STICKER = "sticker"
    ALBUM = "album"
    CALL = "call"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: Any) -> "PayloadKind":
        """宽松解析：未知取值映射为 UNKNOWN 而不是抛错。"""
        try:
            return cls(str(value).lower())
        except ValueError:
            return cls.UNKNOWN


@dataclass
class MediaPayload:
    """已解码的媒体数据。"""
    data: bytes
    mimetype: str = "application/octet-stream"
    filename: str | None = None

    def to_record(self) -> dict[str, Any]:
        return {
            "mimetype": self.mimetype,
            "filename": self.filename,
            "data": base64.b64encode(self.data).decode("ascii"),
        }


@dataclass
class MessageContext:
    """
    消息上下文信息（用于相册判定）。

    属性:
        album_id: 显式的相册关联标识（协议层的 productId 等），没有则为 None
        business_owner_id: 商业账号的所有者 ID，同样视为相册指示
        is_forwarded: 是否为转发消息（转发图片不参与相册聚合）
    """
    album_id: str | None = None
    business_owner_id: str | None = None
    is_forwarded: bool = False


@dataclass
class IncomingCall:
    """
    来电信息。

    属性:
        call_id: 协议层的通话 ID
        caller: 来电方 ID（完整 JID）
        timestamp: 来电时间（Unix 秒）
        is_video: 是否为视频通话
        is_group: 是否为群组通话
        status: 通话状态，只有 "offer"（响铃）会被处理
        accepted: 控制器的应答结果，应答前为 None
    """
    call_id: str
    caller: str
    timestamp: float
    is_video: bool = False
    is_group: bool = False
    status: str = "offer"
    accepted: bool | None = None

    def to_record(self) -> dict[str, Any]:
        return {
            "callId": self.call_id,
            "status": self.status,
            "callType": "video" if self.is_video else "voice",
            "isVideo": self.is_video,
            "isGroup": self.is_group,
            "accepted": bool(self.accepted),
        }


@dataclass
class InboundEvent:
    """
    入站事件 - 协议会话收到的一条消息。

    事件标识为 id；唯一性只在去重器的保留窗口内得到保证，并非全局唯一。

    属性:
        id: 协议层消息 ID
        chat_id: 聊天 ID（单聊或群组）
        sender_id: 发送者 ID
        timestamp: 消息时间戳（Unix 秒）
        kind: 载荷类型
        body: 文本内容或说明文字
        from_me: 是否为本账号自己发出的消息
        context: 相册判定所需的上下文，可为空
        media: 已解码的媒体数据，可为空
        call: 来电信息，仅 kind 为 CALL 时存在
    """
    id: str
    chat_id: str
    sender_id: str
    timestamp: float
    kind: PayloadKind = PayloadKind.CHAT
    body: str = ""
    from_me: bool = False
    context: MessageContext | None = None
    media: MediaPayload | None = None
    call: IncomingCall | None = None

    @property
    def has_media(self) -> bool:
        return self.media is not None

    def to_webhook_record(self) -> dict[str, Any]:
        """转换为 Webhook 投递使用的扁平记录。"""
        record: dict[str, Any] = {
            "chatId": self.chat_id,
            "senderId": self.sender_id,
            "id": self.id,
            "timestamp": self.timestamp,
            "kind": self.kind.value,
            "body": self.body,
            "hasMedia": self.has_media,
        }
        if self.media is not None:
            record["mediaPayload"] = self.media.to_record()
        if self.call is not None:
            record["callData"] = self.call.to_record()
        return record


@dataclass
class AlbumEvent:
    """
    相册事件 - 多张同属一个相册的图片合并后的单个逻辑事件。

    属性:
        album_key: 聚合桶的分组键
        chat_id: 聊天 ID（取第一张图片）
        sender_id: 发送者 ID（取第一张图片）
        timestamp: 第一张图片的时间戳
        items: 按到达顺序排列的图片事件
    """
    album_key: str
    chat_id: str
    sender_id: str
    timestamp: float
    items: list[InboundEvent] = field(default_factory=list)

    @property
    def id(self) -> str:
        return f"album_{self.album_key}"

    @property
    def caption(self) -> str:
        """相册说明文字：取第一张图片的 body。"""
        return self.items[0].body if self.items else ""

    def _image_records(self) -> list[dict[str, Any]]:
        images = []
        for index, item in enumerate(self.items):
            media = item.media
            images.append({
                "id": item.id,
                "caption": item.body if index == 0 else "",
                "mimetype": media.mimetype if media else "image/jpeg",
                "filename": (media.filename if media and media.filename else f"image_{index + 1}.jpg"),
            })
        return images

    def to_webhook_record(self) -> dict[str, Any]:
        """转换为 Webhook 记录：body 为 JSON 字符串，mediaPayload 携带图片清单。"""
        images = self._image_records()
        return {
            "chatId": self.chat_id,
            "senderId": self.sender_id,
            "id": self.id,
            "timestamp": self.timestamp,
            "kind": PayloadKind.ALBUM.value,
            "body": json.dumps({
                "images": images,
                "totalImages": len(images),
                "caption": self.caption,
            }),
            "hasMedia": True,
            "mediaPayload": {
                "albumId": self.album_key,
                "totalImages": len(images),
                "images": images,
            },
        }


@dataclass
class SendRequest:
    """
    出站发送请求。

    属性:
        target: 目标聊天 ID
        kind: 消息类型（chat / image / document 等）
        body: 文本内容或说明文字
        media: 可选的媒体数据
    """
    target: str
    kind: PayloadKind = PayloadKind.CHAT
    body: str = ""
    media: MediaPayload | None = None

    def to_frame(self) -> dict[str, Any]:
        frame: dict[str, Any] = {"to": self.target, "kind": self.kind.value, "text": self.body}
        if self.media is not None:
            frame["media"] = self.media.to_record()
        return frame


@dataclass
class Notice:
    """
    仪表盘通知 - 一次离散的命名事件。

    常用名称：ready（就绪状态变化）、pairing_code（新配对码）、state（状态机变更）
    """
    name: str
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.now)
