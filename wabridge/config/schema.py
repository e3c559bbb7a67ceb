"""
配置数据模型定义 (config/schema.py)
=================================
本模块使用 Pydantic 定义 wabridge 的完整配置结构。
所有配置项都有默认值，用户只需在 config.json 中覆盖需要修改的部分。

整体配置结构（树形）：
Config (根配置)
├── bridge    - 协议桥接服务连接参数（WebSocket 地址、令牌、超时）
├── session   - 凭据目录与备份目录、保留数量、备份间隔
├── retry     - 重连退避策略（初始延迟、上限、倍数、最大尝试次数）
├── ingest    - 去重集合容量、相册聚合窗口与上限
├── health    - 健康检查间隔、探测超时、最大静默时长
├── calls     - 来电处理（自动接听或拒接）
├── webhook   - 消息 Webhook 与掉线通知地址
└── logging   - 日志级别与可选的滚动日志文件

时间单位沿用协议侧习惯：退避与相册相关参数使用毫秒（*_ms），
周期类参数使用秒（*_s）。
"""

from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field
from pydantic_settings import BaseSettings


class BridgeConfig(BaseModel):
    """协议桥接服务配置。通过 WebSocket 连接到持有协议会话的桥接进程。"""
    url: str = "ws://localhost:3001"  # 桥接服务的 WebSocket 地址
    token: str = ""  # 桥接认证令牌（可选但推荐设置）
    connect_timeout_s: float = 60.0  # 建立连接的超时时间（秒）
    request_timeout_s: float = 60.0  # 单个请求等待 ack 的超时时间（秒）


class SessionConfig(BaseModel):
    """凭据存储配置。"""
    credentials_dir: str = "~/.wabridge/sessions"  # 当前会话凭据目录（唯一可写副本）
    backups_dir: str = "~/.wabridge/backups"  # 快照目录（每个快照一个子目录）
    retention: int = 3  # 保留的快照数量（最旧的先删除）
    backup_min_age_hours: float = 24.0  # 非强制备份时，最近快照小于该时长则跳过
    backup_delay_s: float = 5.0  # 会话打开后延迟多久做一次非强制备份

    @property
    def credentials_path(self) -> Path:
        return Path(self.credentials_dir).expanduser()

    @property
    def backups_path(self) -> Path:
        return Path(self.backups_dir).expanduser()


class RetryConfig(BaseModel):
    """重连退避策略配置。"""
    max_reconnect_attempts: int = 10  # 单轮最大重连次数，超出后升级为凭据清理
    initial_reconnect_delay_ms: int = 5000  # 初始重连延迟（毫秒）
    max_reconnect_delay_ms: int = 300000  # 最大重连延迟（毫秒，5 分钟）
    reconnect_backoff_multiplier: float = 2.0  # 指数退避倍数
    max_consecutive_failures: int = 3  # 连续失败上限，达到后不再普通重试
    escalation_delay_ms: int = 5000  # 升级恢复（清理凭据）后重新配对前的固定延迟


class IngestConfig(BaseModel):
    """入站消息处理配置（去重 + 相册聚合）。"""
    dedup_max_size: int = 1000  # 去重集合上限
    dedup_keep_size: int = 500  # 溢出后保留的最近 ID 数量
    album_wait_timeout_ms: int = 10000  # 相册桶创建后多久刷新
    album_max_images: int = 30  # 相册桶达到该数量立即刷新
    album_window_s: int = 30  # 无显式相册 ID 时按时间窗口分组（秒）
    album_stale_after_ms: int = 30000  # 超过刷新时间多久视为过期桶
    album_sweep_interval_s: float = 60.0  # 过期桶清理周期（秒）


class HealthConfig(BaseModel):
    """健康检查配置。"""
    enabled: bool = True
    interval_s: float = 30.0  # 检查间隔（秒）
    probe_timeout_s: float = 15.0  # 在线状态探测超时（秒）
    max_silence_minutes: float = 0.0  # 最长无入站消息时长，0 表示关闭静默检测


class CallConfig(BaseModel):
    """来电处理配置。响铃（offer）状态的来电会被自动应答，并作为 call 事件投递。"""
    accept: bool = False  # 为 True 时自动接听，否则自动拒接
    notify: bool = True  # 是否把来电作为 call 事件发布到事件总线


class WebhookConfig(BaseModel):
    """Webhook 投递配置。"""
    on_message_url: str = ""  # 入站消息/相册事件的投递地址（为空则不投递）
    on_down_url: str = ""  # 会话掉线时的通知地址（为空则不通知）
    timeout_s: float = 10.0  # 单次 POST 超时（秒）
    headers: dict[str, str] = Field(default_factory=dict)  # 额外请求头（如鉴权）


class LoggingConfig(BaseModel):
    """日志配置（由 CLI 在启动时应用到 loguru）。"""
    level: str = "INFO"
    file: str = ""  # 为空表示只输出到 stderr
    rotation: str = "10 MB"
    retention: str = "7 days"


class Config(BaseSettings):
    """
    wabridge 根配置类。

    继承自 Pydantic 的 BaseSettings，除了支持从 JSON 文件加载外，
    还支持从环境变量读取配置：
    - 环境变量前缀: WABRIDGE_
    - 嵌套分隔符: __ (双下划线)
    - 示例: WABRIDGE_RETRY__MAX_CONSECUTIVE_FAILURES=5 可覆盖 retry.max_consecutive_failures
    """
    bridge: BridgeConfig = Field(default_factory=BridgeConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    ingest: IngestConfig = Field(default_factory=IngestConfig)
    health: HealthConfig = Field(default_factory=HealthConfig)
    calls: CallConfig = Field(default_factory=CallConfig)
    webhook: WebhookConfig = Field(default_factory=WebhookConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = ConfigDict(
        env_prefix="WABRIDGE_",
        env_nested_delimiter="__",
    )
