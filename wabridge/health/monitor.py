"""
健康检查服务 - 定期确认协议会话仍然可用，必要时强制重连。

协议层的 WebSocket 可能"看起来打开、实际已死"（僵尸连接）：
没有 close 事件，消息也不再到达。本服务按固定间隔执行一次检查：

1. 控制器就绪但底层传输已关闭 → 强制重连
2. 控制器未就绪、没有重连在进行、也未被手动停止 → 调用 start()
3. 控制器就绪 → 发送在线状态探测（独立超时），失败或超时 → 强制重连
4. 探测成功且配置了最大静默时长 → 距最后一条入站消息（或最近一次重新打开）超时 → 强制重连

每次检查返回一个 HealthAction，便于日志和测试观察。
"""

import asyncio
from enum import Enum

from loguru import logger

from wabridge.config.schema import HealthConfig
from wabridge.connection.controller import ConnectionController

DEFAULT_HEALTH_INTERVAL_S = 30


class HealthAction(str, Enum):
    HEALTHY = "healthy"        # 探测成功，无需处理
    STARTED = "started"        # 控制器空闲，已调用 start()
    RECONNECTED = "reconnected"  # 已强制重连
    SKIPPED = "skipped"        # 重连进行中或已手动停止


class HealthMonitor:
    """会话健康检查服务，结构与周期性后台服务一致：start / stop / _run_loop / _tick。"""

    def __init__(
        self,
        controller: ConnectionController,
        interval_s: float = DEFAULT_HEALTH_INTERVAL_S,
        probe_timeout_s: float = 15.0,
        max_silence_s: float = 0.0,
        enabled: bool = True,
    ):
        """
        参数:
            controller: 被检查的连接控制器
            interval_s: 检查间隔秒数
            probe_timeout_s: 在线状态探测的超时时间
            max_silence_s: 最长无入站消息时长，0 表示关闭静默检测
            enabled: 是否启用
        """
        self.controller = controller
        self.interval_s = interval_s
        self.probe_timeout_s = probe_timeout_s
        self.max_silence_s = max_silence_s
        self.enabled = enabled
        self._running = False
        self._task: asyncio.Task | None = None

    @classmethod
    def from_config(cls, config: HealthConfig, controller: ConnectionController) -> "HealthMonitor":
        return cls(
            controller,
            interval_s=config.interval_s,
            probe_timeout_s=config.probe_timeout_s,
            max_silence_s=config.max_silence_minutes * 60,
            enabled=config.enabled,
        )

    async def start(self) -> None:
        if not self.enabled:
            logger.info("Health monitor disabled")
            return

        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info(f"Health monitor started (every {self.interval_s}s)")

    def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            self._task = None

    async def _run_loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self.interval_s)
                if self._running:
                    await self._tick()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Health check error: {e}")

    async def _reconnect(self, reason: str) -> HealthAction:
        if await self.controller.force_reconnect(reason):
            return HealthAction.RECONNECTED
        return HealthAction.SKIPPED

    async def _tick(self) -> HealthAction:
        controller = self.controller

        if controller.is_ready and not controller.transport_open:
            logger.warning("Health check: session marked ready but transport is closed")
            return await self._reconnect("transport closed while ready")

        if not controller.is_ready:
            if controller.is_reconnecting or controller.is_manually_stopped:
                logger.debug("Health check: not ready, reconnect in progress or stopped")
                return HealthAction.SKIPPED
            logger.info("Health check: session not ready, starting")
            await controller.start()
            return HealthAction.STARTED

        try:
            await controller.probe(self.probe_timeout_s)
        except asyncio.TimeoutError:
            logger.warning(f"Health check: presence probe timed out after {self.probe_timeout_s}s")
            return await self._reconnect("presence probe timed out")
        except Exception as e:
            logger.warning(f"Health check: presence probe failed: {e}")
            return await self._reconnect(f"presence probe failed: {e}")

        if self.max_silence_s > 0:
            # 以最近一条入站消息与最近一次成功打开中较晚者为基准
            marks = [t for t in (controller.last_message_at, controller.counters.last_success_at) if t is not None]
            if marks:
                last = max(marks)
                silence = controller.clock() - last
                if silence > self.max_silence_s:
                    logger.warning(f"Health check: no inbound messages for {silence:.0f}s")
                    return await self._reconnect(f"silent for {silence:.0f}s")

        logger.debug("Health check: OK")
        return HealthAction.HEALTHY

    async def trigger_now(self) -> HealthAction:
        """手动执行一次检查。"""
        return await self._tick()
