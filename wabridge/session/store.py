"""
凭据存储 - 管理协议会话凭据目录的备份、恢复与损坏处理。

目录布局：
- credentials_dir：当前会话的凭据文件（唯一可写副本，由协议库读写）
- backups_dir/<label>：不可变快照，label 形如 2026-10-19_06-36-00_123456
- backups_dir/corrupted_<label>：清理前留存的疑似损坏凭据（仅供排查，永不用于恢复）

【错误处理约定】
本组件的所有公开方法都不会向外抛出异常：存储故障只记录日志并返回
"失败"的结果值。丢失一次备份不能阻止会话继续运行。

【并发约定】
所有方法都是阻塞 I/O，调用方应通过 asyncio.to_thread 在线程池中执行；
方法之间由同一把可重入锁串行化（恢复与备份同一目录交叉执行的结果是未定义的）。
"""

import re
import shutil
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable

from loguru import logger

from wabridge.config.schema import SessionConfig
from wabridge.utils.helpers import ensure_dir, snapshot_label

SNAPSHOT_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}_\d{2}-\d{2}-\d{2}_\d{6}$")
SNAPSHOT_FORMAT = "%Y-%m-%d_%H-%M-%S_%f"
CORRUPTED_PREFIX = "corrupted_"


@dataclass(frozen=True)
class BackupSnapshot:
    """一个快照：label 由创建时间生成，path 为快照目录。"""
    label: str
    path: Path

    @property
    def created_at(self) -> datetime:
        return datetime.strptime(self.label, SNAPSHOT_FORMAT).replace(tzinfo=timezone.utc)


def _has_files(path: Path) -> bool:
    return path.is_dir() and any(path.iterdir())


class SessionStore:
    """
    凭据存储管理器。

    属性:
        credentials_dir: 当前会话凭据目录
        backups_dir: 快照根目录
        retention: 保留的快照数量（损坏留存单独按同一数量保留）
        min_backup_age: 非强制备份的最小间隔
    """

    def __init__(
        self,
        credentials_dir: Path,
        backups_dir: Path,
        retention: int = 3,
        min_backup_age: timedelta = timedelta(hours=24),
        clock: Callable[[], datetime] | None = None,
    ):
        self.credentials_dir = Path(credentials_dir)
        self.backups_dir = Path(backups_dir)
        self.retention = max(1, retention)
        self.min_backup_age = min_backup_age
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._lock = threading.RLock()

        try:
            ensure_dir(self.credentials_dir)
            ensure_dir(self.backups_dir)
        except OSError as e:
            logger.error(f"Failed to prepare session directories: {e}")

    @classmethod
    def from_config(cls, config: SessionConfig) -> "SessionStore":
        return cls(
            credentials_dir=config.credentials_path,
            backups_dir=config.backups_path,
            retention=config.retention,
            min_backup_age=timedelta(hours=config.backup_min_age_hours),
        )

    # ---- 查询 -----------------------------------------------------------------

    def list_snapshots(self) -> list[BackupSnapshot]:
        """列出所有可用于恢复的快照，按时间从旧到新排序。"""
        try:
            if not self.backups_dir.is_dir():
                return []
            snapshots = [
                BackupSnapshot(label=p.name, path=p)
                for p in self.backups_dir.iterdir()
                if p.is_dir() and SNAPSHOT_PATTERN.match(p.name)
            ]
        except OSError as e:
            logger.error(f"Failed to list snapshots: {e}")
            return []
        return sorted(snapshots, key=lambda s: s.label)

    def list_forensic_copies(self) -> list[Path]:
        try:
            if not self.backups_dir.is_dir():
                return []
            return sorted(
                p for p in self.backups_dir.iterdir()
                if p.is_dir() and p.name.startswith(CORRUPTED_PREFIX)
            )
        except OSError as e:
            logger.error(f"Failed to list forensic copies: {e}")
            return []

    def latest_snapshot(self) -> BackupSnapshot | None:
        snapshots = self.list_snapshots()
        return snapshots[-1] if snapshots else None

    def has_credentials(self) -> bool:
        try:
            return _has_files(self.credentials_dir)
        except OSError as e:
            logger.error(f"Failed to inspect credentials: {e}")
            return False

    def is_corrupted(self) -> bool:
        """凭据目录不存在或为空时视为损坏。"""
        return not self.has_credentials()

    # ---- 备份 -----------------------------------------------------------------

    def backup(self, force: bool = False) -> Path | None:
        """
        为当前凭据创建快照。

        以下情况跳过（返回 None）：
        - 凭据目录不存在或为空
        - 非强制模式下，已有未超过 min_backup_age 的快照

        参数:
            force: 为 True 时忽略最近快照的时间检查

        返回:
            新快照目录路径；跳过或失败时返回 None
        """
        with self._lock:
            try:
                if not self.credentials_dir.exists():
                    logger.debug("No session to back up")
                    return None
                if not _has_files(self.credentials_dir):
                    logger.debug("Session directory is empty, skipping backup")
                    return None

                now = self._clock()
                if not force:
                    latest = self.latest_snapshot()
                    if latest and now - latest.created_at < self.min_backup_age:
                        logger.debug(f"Recent backup found ({latest.label}), skipping")
                        return None

                target = self.backups_dir / snapshot_label(now)
                shutil.copytree(self.credentials_dir, target)
                logger.info(f"Session backup created: {target}")
            except (OSError, shutil.Error) as e:
                logger.error(f"Error creating session backup: {e}")
                return None

            self._prune()
            return target

    def _prune(self) -> None:
        """删除超出保留数量的快照和损坏留存（最旧的先删）。"""
        snapshots = self.list_snapshots()
        forensic = self.list_forensic_copies()
        stale = [s.path for s in snapshots[: max(0, len(snapshots) - self.retention)]]
        stale += forensic[: max(0, len(forensic) - self.retention)]

        for path in stale:
            try:
                shutil.rmtree(path)
                logger.debug(f"Old backup removed: {path.name}")
            except OSError as e:
                logger.error(f"Error removing old backup {path.name}: {e}")

        if stale:
            logger.info(f"Backup cleanup completed: {len(stale)} old backups removed")

    # ---- 恢复 -----------------------------------------------------------------

    def restore_latest(self) -> bool:
        """
        用最新快照覆盖当前凭据目录（复制，快照本身保持不变）。

        返回:
            True 表示已恢复；没有快照或复制失败时返回 False
        """
        with self._lock:
            latest = self.latest_snapshot()
            if latest is None:
                logger.info("No backup available to restore")
                return False
            try:
                if self.credentials_dir.exists():
                    shutil.rmtree(self.credentials_dir)
                shutil.copytree(latest.path, self.credentials_dir)
            except (OSError, shutil.Error) as e:
                logger.error(f"Error restoring session from backup: {e}")
                try:
                    ensure_dir(self.credentials_dir)
                except OSError:
                    pass
                return False
            logger.info(f"Session restored from backup: {latest.label}")
            return True

    def clear(self) -> None:
        """清空凭据目录（不留存副本）。用于配对超时等本就没有有效凭据的场景。"""
        with self._lock:
            try:
                if self.credentials_dir.exists():
                    shutil.rmtree(self.credentials_dir)
                ensure_dir(self.credentials_dir)
                logger.info("Session directory cleared")
            except OSError as e:
                logger.error(f"Error clearing session: {e}")

    def wipe_and_recover(self, restore_after: bool = True) -> bool:
        """
        清理疑似损坏的凭据，并可选地从最新快照恢复。

        流程：
        1. 把当前凭据复制到 corrupted_<label> 留存（若有文件）
        2. 删除凭据目录并重新创建空目录
        3. restore_after=True 时调用 restore_latest()

        参数:
            restore_after: 是否在清理后尝试从快照恢复

        返回:
            True 表示已从快照恢复
        """
        with self._lock:
            try:
                if _has_files(self.credentials_dir):
                    forensic = self.backups_dir / f"{CORRUPTED_PREFIX}{snapshot_label(self._clock())}"
                    shutil.copytree(self.credentials_dir, forensic)
                    logger.info(f"Corrupted session preserved at: {forensic}")
            except (OSError, shutil.Error) as e:
                logger.error(f"Error preserving corrupted session: {e}")

            try:
                if self.credentials_dir.exists():
                    shutil.rmtree(self.credentials_dir)
                ensure_dir(self.credentials_dir)
                logger.info("Corrupted session removed")
            except OSError as e:
                logger.error(f"Error removing corrupted session: {e}")

            self._prune()

            if restore_after:
                return self.restore_latest()
            return False
