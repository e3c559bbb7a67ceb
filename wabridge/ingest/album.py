"""
相册聚合器 - 把同一相册的多张图片合并为一个逻辑事件。

用户一次发送多张图片时，协议层会逐张投递；如果逐张转发，Webhook
会收到 N 次调用。本模块按分组键把这些图片收集到"相册桶"中，
到期或达到上限后一次性发出 AlbumEvent。

分组规则：
- 事件带有显式相册 ID 时：键为 "{chat_id}_{album_id}"
- 否则按 30 秒时间窗口分组：键为 "{chat_id}_{floor(timestamp / 30)}"

刷新规则：
- 桶内图片数达到 max_items 时立即刷新，并取消定时器
- 否则在桶创建时启动一次定时器（timeout 后刷新），之后的图片不会重置或延长它
- 时间窗口只决定图片归入哪个桶，何时刷新只由定时器决定；
  桶刷新后，同一窗口内再到达的图片会以相同的键开启一个新桶

过期清理：
- 定时器因异常丢失时，桶可能永远不会被刷新。sweep() 删除
  超过 timeout + stale_after 仍未刷新的桶，start() 会周期性执行它。
"""

import asyncio
import math
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable

from loguru import logger

from wabridge.bus.events import AlbumEvent, InboundEvent, PayloadKind
from wabridge.config.schema import IngestConfig

AlbumCallback = Callable[[AlbumEvent], Awaitable[None]]


@dataclass
class AlbumBucket:
    """一个进行中的相册桶。"""
    album_key: str
    opened_at: float
    items: list[InboundEvent] = field(default_factory=list)
    timer: asyncio.Task | None = None


class AlbumAggregator:
    """
    相册聚合器。

    所有桶的读写都在同一个事件循环中进行，并由一把 asyncio.Lock 保护，
    避免定时器回调与新图片到达交错修改同一个桶。
    """

    def __init__(
        self,
        on_album: AlbumCallback,
        timeout_s: float = 10.0,
        max_items: int = 30,
        window_s: int = 30,
        stale_after_s: float = 30.0,
        sweep_interval_s: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        参数:
            on_album: 刷新时调用的异步回调，接收聚合后的 AlbumEvent
            timeout_s: 桶创建后多久刷新
            max_items: 桶内图片达到该数量时立即刷新
            window_s: 无显式相册 ID 时的分组时间窗口（秒）
            stale_after_s: 超过刷新时间多久视为过期
            sweep_interval_s: 过期清理周期
            clock: 单调时钟（测试可替换）
        """
        self.on_album = on_album
        self.timeout_s = timeout_s
        self.max_items = max_items
        self.window_s = window_s
        self.stale_after_s = stale_after_s
        self.sweep_interval_s = sweep_interval_s
        self._clock = clock
        self._buckets: dict[str, AlbumBucket] = {}
        self._lock = asyncio.Lock()
        self._sweep_task: asyncio.Task | None = None
        self._running = False

    @classmethod
    def from_config(cls, config: IngestConfig, on_album: AlbumCallback) -> "AlbumAggregator":
        return cls(
            on_album=on_album,
            timeout_s=config.album_wait_timeout_ms / 1000.0,
            max_items=config.album_max_images,
            window_s=config.album_window_s,
            stale_after_s=config.album_stale_after_ms / 1000.0,
            sweep_interval_s=config.album_sweep_interval_s,
        )

    # ---- 纯判定 ---------------------------------------------------------------

    def group_key(self, event: InboundEvent) -> str:
        if event.context and event.context.album_id:
            return f"{event.chat_id}_{event.context.album_id}"
        window = math.floor(event.timestamp / self.window_s)
        return f"{event.chat_id}_{window}"

    @staticmethod
    def is_album_candidate(event: InboundEvent) -> bool:
        """图片消息 + 有相册指示 + 非转发，才参与相册聚合。"""
        if event.kind != PayloadKind.IMAGE or event.context is None:
            return False
        ctx = event.context
        return not ctx.is_forwarded and bool(ctx.album_id or ctx.business_owner_id)

    # ---- 聚合 -----------------------------------------------------------------

    async def add(self, event: InboundEvent) -> None:
        """
        把一张图片加入对应的相册桶。

        达到 max_items 时立即刷新；否则只在桶创建时启动一次刷新定时器。
        """
        key = self.group_key(event)
        flush_now = False
        async with self._lock:
            bucket = self._buckets.get(key)
            if bucket is None:
                bucket = AlbumBucket(album_key=key, opened_at=self._clock())
                self._buckets[key] = bucket
            bucket.items.append(event)
            logger.debug(f"Album {key}: {len(bucket.items)} images received")

            if len(bucket.items) >= self.max_items:
                logger.info(f"Album {key} reached {self.max_items} images, flushing")
                flush_now = True
            elif bucket.timer is None:
                bucket.timer = asyncio.create_task(self._flush_after(key, bucket))

        if flush_now:
            await self.flush(key)

    async def _flush_after(self, key: str, bucket: AlbumBucket) -> None:
        await asyncio.sleep(self.timeout_s)
        logger.debug(f"Album {key} timeout reached")
        await self._flush_bucket(key, bucket)

    async def flush(self, key: str) -> AlbumEvent | None:
        """立即刷新指定桶：发出一个聚合事件并清除该桶。桶不存在时返回 None。"""
        async with self._lock:
            bucket = self._buckets.get(key)
        if bucket is None:
            return None
        return await self._flush_bucket(key, bucket)

    async def _flush_bucket(self, key: str, bucket: AlbumBucket) -> AlbumEvent | None:
        async with self._lock:
            # 桶已被刷新或清理，或键已被新桶占用
            if self._buckets.get(key) is not bucket:
                return None
            del self._buckets[key]
            current = asyncio.current_task()
            if bucket.timer and bucket.timer is not current:
                bucket.timer.cancel()
            bucket.timer = None
            items = bucket.items[:]

        if not items:
            return None

        first = items[0]
        album = AlbumEvent(
            album_key=key,
            chat_id=first.chat_id,
            sender_id=first.sender_id,
            timestamp=first.timestamp,
            items=items,
        )
        logger.info(f"Album {key} flushed with {len(items)} images")
        try:
            await self.on_album(album)
        except Exception as e:
            logger.error(f"Error emitting album {key}: {e}")
        return album

    async def flush_all(self) -> list[AlbumEvent]:
        """刷新所有进行中的桶（停机前调用，避免丢失已收到的图片）。"""
        async with self._lock:
            keys = list(self._buckets)
        albums = []
        for key in keys:
            album = await self.flush(key)
            if album:
                albums.append(album)
        return albums

    # ---- 过期清理 -------------------------------------------------------------

    async def sweep(self, now: float | None = None) -> int:
        """
        删除过期桶（创建后超过 timeout + stale_after 仍未刷新）。

        返回:
            被删除的桶数量
        """
        now = self._clock() if now is None else now
        limit = self.timeout_s + self.stale_after_s
        async with self._lock:
            expired = [k for k, b in self._buckets.items() if now - b.opened_at > limit]
            for key in expired:
                bucket = self._buckets.pop(key)
                if bucket.timer:
                    bucket.timer.cancel()
                logger.debug(f"Expired album dropped: {key}")
        if expired:
            logger.info(f"Dropped {len(expired)} expired albums")
        return len(expired)

    async def start(self) -> None:
        self._running = True
        self._sweep_task = asyncio.create_task(self._sweep_loop())

    async def stop(self) -> None:
        """停止清理循环并取消所有桶的定时器（不刷新）。"""
        self._running = False
        if self._sweep_task:
            self._sweep_task.cancel()
            self._sweep_task = None
        async with self._lock:
            for bucket in self._buckets.values():
                if bucket.timer:
                    bucket.timer.cancel()
            self._buckets.clear()

    async def _sweep_loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self.sweep_interval_s)
                await self.sweep()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Album sweep error: {e}")

    @property
    def pending(self) -> int:
        return len(self._buckets)
