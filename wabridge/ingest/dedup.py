"""
消息去重器 - 丢弃协议层重复投递的消息。

协议层在重连后可能重新投递相同 ID 的消息；多丢一条冗余的重复消息
总好过把它转发两次。这是尽力而为的去重：被淘汰的旧 ID 再次出现时
会被当作新消息（假阴性是可接受的折中）。

实现：按插入顺序保存 ID 的 dict（Python dict 保持插入顺序），
超过 max_size 后只保留最近的 keep_size 个。
"""


class Deduplicator:
    """
    有界的"最近见过的消息 ID"集合。

    属性:
        max_size: 集合上限，超过后触发裁剪
        keep_size: 裁剪后保留的最近 ID 数量
    """

    def __init__(self, max_size: int = 1000, keep_size: int = 500):
        if keep_size > max_size:
            raise ValueError("keep_size must not exceed max_size")
        self.max_size = max_size
        self.keep_size = keep_size
        self._ids: dict[str, None] = {}

    def seen(self, message_id: str) -> bool:
        return message_id in self._ids

    def mark_seen(self, message_id: str) -> None:
        """记录一个 ID。已存在的 ID 会被移到"最新"位置。"""
        self._ids.pop(message_id, None)
        self._ids[message_id] = None
        if len(self._ids) > self.max_size:
            recent = list(self._ids)[-self.keep_size:]
            self._ids = dict.fromkeys(recent)

    def check_and_mark(self, message_id: str) -> bool:
        """
        检查并记录。

        返回:
            True 表示该 ID 之前已见过（应丢弃），False 表示首次出现
        """
        duplicate = self.seen(message_id)
        self.mark_seen(message_id)
        return duplicate

    def clear(self) -> None:
        self._ids.clear()

    def __len__(self) -> int:
        return len(self._ids)
