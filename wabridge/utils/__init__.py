"""
工具函数模块 - 提供 wabridge 项目全局通用的辅助函数。

本模块包含：
- ensure_dir：确保目录存在
- get_data_path：获取数据存储路径
- expand_path：展开用户目录
"""

from wabridge.utils.helpers import ensure_dir, expand_path, get_data_path

__all__ = ["ensure_dir", "expand_path", "get_data_path"]
