"""
入站处理模块 - 在事件交给 Webhook 之前的去重与相册聚合。

- Deduplicator：有界的最近消息 ID 集合，丢弃协议层的重复投递
- AlbumAggregator：把同一相册的多张图片合并为一个 AlbumEvent
"""

from wabridge.ingest.album import AlbumAggregator, AlbumBucket
from wabridge.ingest.dedup import Deduplicator

__all__ = ["Deduplicator", "AlbumAggregator", "AlbumBucket"]
