"""
工具函数集合 - wabridge 项目全局通用的辅助函数。

函数分类：
- 路径管理：ensure_dir, get_data_path, expand_path
- 字符串工具：truncate_string
- 时间工具：snapshot_label
"""

from datetime import datetime, timezone
from pathlib import Path


def ensure_dir(path: Path) -> Path:
    """
    确保目录存在，不存在则递归创建。

    参数:
        path: 目标目录路径

    返回:
        创建后的目录路径（原样返回）
    """
    path.mkdir(parents=True, exist_ok=True)
    return path


def get_data_path() -> Path:
    """获取 wabridge 数据目录（~/.wabridge）。自动创建不存在的目录。"""
    return ensure_dir(Path.home() / ".wabridge")


def expand_path(value: str | Path) -> Path:
    """展开 ~ 并返回 Path 对象（不创建目录）。"""
    return Path(value).expanduser()


def snapshot_label(now: datetime | None = None) -> str:
    """
    生成快照目录名，格式为 YYYY-MM-DD_HH-MM-SS_ffffff（UTC）。

    字典序与时间序一致，因此排序即可得到新旧顺序。
    """
    now = now or datetime.now(timezone.utc)
    return now.strftime("%Y-%m-%d_%H-%M-%S_%f")


def truncate_string(s: str, max_len: int = 100, suffix: str = "...") -> str:
    """
    截断字符串到指定最大长度，超出时添加后缀。

    参数:
        s: 原始字符串
        max_len: 最大长度（包含后缀），默认 100
        suffix: 截断后缀，默认 "..."

    返回:
        截断后的字符串
    """
    if len(s) <= max_len:
        return s
    return s[: max_len - len(suffix)] + suffix
