"""健康检查服务：定期探测会话存活并在需要时强制重连。"""

from wabridge.health.monitor import HealthAction, HealthMonitor

__all__ = ["HealthMonitor", "HealthAction"]
