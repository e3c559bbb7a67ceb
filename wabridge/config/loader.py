"""
配置加载工具模块 (config/loader.py)
=================================
本模块负责 wabridge 配置文件的加载、保存和格式转换：
- 配置文件默认路径: ~/.wabridge/config.json
- 配置文件使用 camelCase（驼峰命名），Python 内部使用 snake_case（下划线命名）
- 加载时自动将 camelCase → snake_case，保存时自动将 snake_case → camelCase
- 支持旧版配置格式的自动迁移
"""

import json
from pathlib import Path
from typing import Any

from loguru import logger

from wabridge.config.schema import Config
from wabridge.utils.helpers import get_data_path


def get_config_path() -> Path:
    """获取默认配置文件路径: ~/.wabridge/config.json"""
    return get_data_path() / "config.json"


def load_config(config_path: Path | None = None) -> Config:
    """
    从 JSON 文件加载配置，若文件不存在则返回默认配置。

    加载流程：
    1. 确定配置文件路径（传入的路径 或 默认路径）
    2. 读取 JSON 文件内容
    3. 执行旧版配置格式迁移（_migrate_config）
    4. 将 camelCase 键名转换为 snake_case（convert_keys）
    5. 使用 Pydantic 的 model_validate 进行类型验证和反序列化

    参数:
        config_path: 可选的配置文件路径。为 None 时使用默认路径。

    返回:
        Config 配置对象实例
    """
    path = config_path or get_config_path()

    if path.exists():
        try:
            with open(path) as f:
                data = json.load(f)
            data = _migrate_config(data)
            return Config.model_validate(convert_keys(data))
        except (json.JSONDecodeError, ValueError) as e:
            # 配置文件损坏时降级使用默认配置，而非直接报错退出
            logger.warning(f"Failed to load config from {path}: {e}. Using default configuration.")

    return Config()


def save_config(config: Config, config_path: Path | None = None) -> None:
    """
    将配置对象保存为 JSON 文件（camelCase 键名，带缩进）。

    参数:
        config: 要保存的配置对象
        config_path: 可选的保存路径。为 None 时使用默认路径。
    """
    path = config_path or get_config_path()
    path.parent.mkdir(parents=True, exist_ok=True)

    data = convert_to_camel(config.model_dump())

    with open(path, "w") as f:
        json.dump(data, f, indent=2)


def _migrate_config(data: dict) -> dict:
    """
    旧版配置格式迁移。

    迁移规则：早期版本把 Webhook 地址放在根级别的 onMessage / onDown，
    现在统一放到 webhook.onMessageUrl / webhook.onDownUrl 下。
    """
    webhook = data.setdefault("webhook", {})
    if "onMessage" in data and "onMessageUrl" not in webhook:
        webhook["onMessageUrl"] = data.pop("onMessage")
    if "onDown" in data and "onDownUrl" not in webhook:
        webhook["onDownUrl"] = data.pop("onDown")
    return data


# 这些键下的字典原样保留（如 HTTP 请求头名称）
VERBATIM_KEYS = {"headers"}


def convert_keys(data: Any) -> Any:
    """递归地将字典中所有 camelCase 键名转换为 snake_case。"""
    if isinstance(data, dict):
        return {
            camel_to_snake(k): (v if k in VERBATIM_KEYS else convert_keys(v))
            for k, v in data.items()
        }
    if isinstance(data, list):
        return [convert_keys(item) for item in data]
    return data


def convert_to_camel(data: Any) -> Any:
    """递归地将字典中所有 snake_case 键名转换为 camelCase。"""
    if isinstance(data, dict):
        return {
            snake_to_camel(k): (v if k in VERBATIM_KEYS else convert_to_camel(v))
            for k, v in data.items()
        }
    if isinstance(data, list):
        return [convert_to_camel(item) for item in data]
    return data


def camel_to_snake(name: str) -> str:
    """
    将 camelCase 字符串转换为 snake_case。
    例: "maxDelayMs" → "max_delay_ms"
    """
    result = []
    for i, char in enumerate(name):
        if char.isupper() and i > 0:
            result.append("_")
        result.append(char.lower())
    return "".join(result)


def snake_to_camel(name: str) -> str:
    """
    将 snake_case 字符串转换为 camelCase。
    例: "max_delay_ms" → "maxDelayMs"
    """
    components = name.split("_")
    return components[0] + "".join(x.title() for x in components[1:])
