"""
凭据存储模块 - 协议会话凭据的持久化与恢复。

本模块提供 SessionStore：管理凭据目录（唯一可写副本）与快照目录
（按时间命名的不可变副本，保留最近 3 份）。
"""

from wabridge.session.store import BackupSnapshot, SessionStore

__all__ = ["SessionStore", "BackupSnapshot"]
