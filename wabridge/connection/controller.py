"""
连接控制器 - 协议会话的状态机，负责打开、重连、升级恢复与停止。

状态流转：
  IDLE/STOPPED --start()--> PAIRING --open--> OPEN
  OPEN/PAIRING --close--> CLOSING --> RECONNECTING --定时器--> PAIRING
  任意状态 --stop()/logout()--> STOPPED

断线处理（按顺序判定）：
1. 手动停止导致的关闭：进入 STOPPED，不重试
2. 配对超时：清空凭据、重置计数器、立即重新配对（不计为失败）
3. 可重试且 attempt < max_reconnect_attempts：按退避延迟重连
4. 其余情况升级：wipe_and_recover（LOGGED_OUT 时不回滚旧凭据），
   重置计数器，固定延迟后重新配对

【并发约定】
- 所有状态修改都在同一把 asyncio.Lock 内完成；协议 I/O（open / close / 探测）在锁外执行
- 每次打开会话都会生成新的 generation，过期会话的回调一律忽略
- SessionStore 的阻塞操作通过 asyncio.to_thread 执行

来电：响铃中的来电按配置自动接听或拒接，并作为 CALL 事件发布。

控制器只向 EventBus 发布事件和通知，不直接发起任何 HTTP 请求。
"""

import asyncio
import time
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Callable

from loguru import logger

from wabridge.bus.events import InboundEvent, IncomingCall, Notice, PayloadKind, SendRequest
from wabridge.bus.queue import EventBus
from wabridge.config.schema import Config
from wabridge.connection.protocol import (
    LIFECYCLE_CLOSE,
    LIFECYCLE_OPEN,
    ProtocolClient,
    ProtocolSession,
)
from wabridge.connection.retry import DisconnectKind, RetryPolicy
from wabridge.errors import NotReadyError
from wabridge.ingest.album import AlbumAggregator
from wabridge.ingest.dedup import Deduplicator
from wabridge.session.store import SessionStore

BROADCAST_SUFFIX = "@broadcast"


class ConnectionState(str, Enum):
    IDLE = "idle"
    PAIRING = "pairing"
    OPEN = "open"
    CLOSING = "closing"
    RECONNECTING = "reconnecting"
    STOPPED = "stopped"


@dataclass
class RetryCounters:
    """重试计数器。会话成功打开时 attempt 与 consecutive_failures 归零。"""
    attempt: int = 0
    consecutive_failures: int = 0
    last_success_at: float | None = None
    escalations: int = 0  # 升级恢复的累计次数（仅用于状态展示）

    def reset(self) -> None:
        self.attempt = 0
        self.consecutive_failures = 0


class _SessionListener:
    """绑定到某一代会话的回调适配器。"""

    def __init__(self, controller: "ConnectionController", generation: int):
        self._controller = controller
        self._generation = generation

    async def on_lifecycle(self, state: str, error: BaseException | None = None) -> None:
        if state == LIFECYCLE_OPEN:
            await self._controller._handle_open(self._generation)
        elif state == LIFECYCLE_CLOSE:
            await self._controller._handle_close(self._generation, error)
        else:
            logger.warning(f"Unknown lifecycle state: {state}")

    async def on_pairing_code(self, code: str) -> None:
        await self._controller._handle_pairing_code(self._generation, code)

    async def on_message(self, event: InboundEvent) -> None:
        await self._controller._handle_message(self._generation, event)

    async def on_call(self, call: IncomingCall) -> None:
        await self._controller._handle_call(self._generation, call)


class ConnectionController:
    """
    协议会话控制器。

    所有协作方都通过构造函数注入，便于在测试中替换为假实现：
    client（协议客户端）、store（凭据存储）、policy（重试策略）、
    bus（事件总线）、dedup（去重器）、albums（相册聚合器）。
    """

    def __init__(
        self,
        config: Config,
        client: ProtocolClient,
        store: SessionStore,
        policy: RetryPolicy | None = None,
        bus: EventBus | None = None,
        dedup: Deduplicator | None = None,
        albums: AlbumAggregator | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config
        self.client = client
        self.store = store
        self.policy = policy or RetryPolicy.from_config(config.retry)
        self.bus = bus or EventBus()
        self.dedup = dedup or Deduplicator(config.ingest.dedup_max_size, config.ingest.dedup_keep_size)
        self.albums = albums or AlbumAggregator.from_config(config.ingest, self.bus.publish_event)
        self.clock = clock

        self.state = ConnectionState.IDLE
        self.counters = RetryCounters()
        self._ready = False
        self._handle: ProtocolSession | None = None
        self._generation = 0
        self._opening = False
        self._manual_stop = False
        self._lock = asyncio.Lock()
        self._reconnect_task: asyncio.Task | None = None
        self._backup_task: asyncio.Task | None = None
        self._call_tasks: set[asyncio.Task] = set()
        self._pairing_code: str | None = None
        self._last_message_at: float | None = None

    # ---- 状态查询 -------------------------------------------------------------

    @property
    def is_ready(self) -> bool:
        return self.state == ConnectionState.OPEN and self._ready

    @property
    def transport_open(self) -> bool:
        return self._handle is not None and self._handle.is_open

    @property
    def is_reconnecting(self) -> bool:
        """是否已有重连在进行中（定时器挂起、会话打开中或正在配对）。"""
        if self._reconnect_task is not None or self._opening:
            return True
        if self.state in (ConnectionState.CLOSING, ConnectionState.RECONNECTING):
            return True
        return self.state == ConnectionState.PAIRING and self.transport_open

    @property
    def is_manually_stopped(self) -> bool:
        return self._manual_stop

    @property
    def last_message_at(self) -> float | None:
        return self._last_message_at

    @property
    def current_pairing_code(self) -> str | None:
        return self._pairing_code

    @property
    def generation(self) -> int:
        return self._generation

    def status(self) -> dict[str, Any]:
        return {
            "status": "connected" if self.is_ready else "disconnected",
            "state": self.state.value,
            "ready": self.is_ready,
            "transportOpen": self.transport_open,
            "attempt": self.counters.attempt,
            "consecutiveFailures": self.counters.consecutive_failures,
            "escalations": self.counters.escalations,
            "lastSuccessAt": self.counters.last_success_at,
            "lastMessageAt": self._last_message_at,
            "pairingCode": self._pairing_code,
            "queuedEvents": self.bus.events_size,
        }

    # ---- 内部状态变更（调用方须持有锁） -----------------------------------------

    def _set_state(self, state: ConnectionState) -> None:
        if state == self.state:
            return
        logger.debug(f"Connection state: {self.state.value} -> {state.value}")
        self.state = state
        self.bus.publish_notice(Notice("state", {"state": state.value}))

    def _set_ready(self, ready: bool) -> None:
        if ready == self._ready:
            return
        self._ready = ready
        self.bus.publish_notice(Notice("ready", {"ready": ready}))

    def _cancel_timers(self) -> None:
        if self._reconnect_task and self._reconnect_task is not asyncio.current_task():
            self._reconnect_task.cancel()
        self._reconnect_task = None
        if self._backup_task:
            self._backup_task.cancel()
            self._backup_task = None

    # ---- 打开会话 -------------------------------------------------------------

    async def start(self) -> None:
        """
        启动（或重新启动）会话。

        已打开、配对进行中或重连已挂起时直接返回；凭据目录缺失或为空时
        先尝试从最新快照恢复。
        """
        async with self._lock:
            if self.state == ConnectionState.OPEN or self._opening or self._reconnect_task is not None:
                logger.debug(f"Start ignored, controller is {self.state.value}")
                return
            if self.state == ConnectionState.PAIRING and self.transport_open:
                logger.debug("Start ignored, pairing already in progress")
                return
            self._manual_stop = False

        if await asyncio.to_thread(self.store.is_corrupted):
            logger.warning("Session credentials missing, attempting restore from backup")
            await asyncio.to_thread(self.store.restore_latest)

        await self._open_session()

    async def _open_session(self) -> None:
        async with self._lock:
            if self._manual_stop:
                return
            self._generation += 1
            generation = self._generation
            self._opening = True
            self._set_state(ConnectionState.PAIRING)

        logger.info(f"Opening protocol session (generation {generation})")
        listener = _SessionListener(self, generation)
        try:
            handle = await self.client.open(self.store.credentials_dir, listener)
        except Exception as e:
            logger.error(f"Failed to open protocol session: {e}")
            async with self._lock:
                if generation == self._generation:
                    self._opening = False
            await self._handle_close(generation, e)
            return

        late = False
        async with self._lock:
            if generation == self._generation:
                self._opening = False
            if generation != self._generation or self._manual_stop:
                late = True
            else:
                self._handle = handle

        if late:
            logger.debug(f"Discarding late session (generation {generation})")
            await self._close_handle(handle)

    async def _close_handle(self, handle: ProtocolSession) -> None:
        try:
            await handle.close()
        except Exception as e:
            logger.warning(f"Error closing protocol session: {e}")

    # ---- 生命周期回调 ---------------------------------------------------------

    async def _handle_open(self, generation: int) -> None:
        async with self._lock:
            if generation != self._generation or self._manual_stop:
                return
            self.counters.reset()
            self.counters.last_success_at = self.clock()
            self._pairing_code = None
            self._set_state(ConnectionState.OPEN)
            self._set_ready(True)
            if self._backup_task:
                self._backup_task.cancel()
            self._backup_task = asyncio.create_task(self._deferred_backup())
        logger.info("Protocol session open")

    async def _deferred_backup(self) -> None:
        await asyncio.sleep(self.config.session.backup_delay_s)
        try:
            await asyncio.to_thread(self.store.backup, False)
        except Exception as e:
            logger.error(f"Deferred backup failed: {e}")
        finally:
            if self._backup_task is asyncio.current_task():
                self._backup_task = None

    async def _handle_close(self, generation: int, error: BaseException | None) -> None:
        retry = self.config.retry
        old_handle = None
        async with self._lock:
            if generation != self._generation:
                logger.debug(f"Ignoring close from stale session (generation {generation})")
                return
            if self._manual_stop:
                self._set_ready(False)
                self._set_state(ConnectionState.STOPPED)
                return
            if self._reconnect_task is not None:
                logger.debug("Reconnect already scheduled, ignoring close")
                return

            was_pairing = self.state == ConnectionState.PAIRING
            self._set_ready(False)
            self._set_state(ConnectionState.CLOSING)
            old_handle, self._handle = self._handle, None

            kind = self.policy.classify(error, pairing=was_pairing)
            logger.warning(f"Protocol session closed ({kind.value}): {error!r}")

            if kind == DisconnectKind.PAIRING_TIMEOUT:
                logger.info("Pairing timed out, clearing session and re-pairing")
                await asyncio.to_thread(self.store.clear)
                self.counters.reset()
                delay_s = 0.0
            elif (
                self.policy.should_retry(error, self.counters.consecutive_failures, retry.max_consecutive_failures)
                and self.counters.attempt < retry.max_reconnect_attempts
            ):
                self.counters.attempt += 1
                self.counters.consecutive_failures += 1
                delay_s = self.policy.next_delay(self.counters.attempt - 1) / 1000.0
                logger.info(
                    f"Reconnecting in {delay_s:.1f}s "
                    f"(attempt {self.counters.attempt}/{retry.max_reconnect_attempts})"
                )
            else:
                restore = kind != DisconnectKind.LOGGED_OUT
                logger.error(f"Session unrecoverable, wiping credentials (restore={restore})")
                await asyncio.to_thread(self.store.wipe_and_recover, restore)
                self.counters.reset()
                self.counters.escalations += 1
                delay_s = retry.escalation_delay_ms / 1000.0

            self._set_state(ConnectionState.RECONNECTING)
            self._reconnect_task = asyncio.create_task(self._reconnect_after(delay_s))

        if old_handle is not None:
            await self._close_handle(old_handle)

    async def _reconnect_after(self, delay_s: float) -> None:
        try:
            await asyncio.sleep(delay_s)
        except asyncio.CancelledError:
            return

        old_handle = None
        async with self._lock:
            if self._reconnect_task is asyncio.current_task():
                self._reconnect_task = None
            if self._manual_stop:
                return
            old_handle, self._handle = self._handle, None

        if old_handle is not None:
            await self._close_handle(old_handle)
        await self._open_session()

    async def _handle_pairing_code(self, generation: int, code: str) -> None:
        if generation != self._generation:
            return
        self._pairing_code = code
        logger.info("Pairing code received, scan it with the phone app")
        self.bus.publish_notice(Notice("pairing_code", {"code": code}))

    # ---- 入站消息 -------------------------------------------------------------

    async def _handle_message(self, generation: int, event: InboundEvent) -> None:
        if generation != self._generation:
            return
        self._last_message_at = self.clock()

        if event.from_me:
            return
        if event.chat_id.endswith(BROADCAST_SUFFIX):
            logger.debug(f"Ignoring broadcast message {event.id}")
            return
        if self.dedup.check_and_mark(event.id):
            logger.debug(f"Duplicate message dropped: {event.id}")
            return

        if self.albums.is_album_candidate(event):
            await self.albums.add(event)
        else:
            await self.bus.publish_event(event)

    # ---- 来电 -----------------------------------------------------------------

    async def _handle_call(self, generation: int, call: IncomingCall) -> None:
        """
        自动应答响铃中的来电，并按配置发布一条 CALL 事件。

        应答请求在独立任务中执行，回调所在的会话读取任务须继续接收 ack。
        """
        if generation != self._generation:
            return
        if call.status != "offer":
            logger.debug(f"Ignoring call {call.call_id} in state {call.status}")
            return
        if self.dedup.check_and_mark(f"call_{call.call_id}"):
            return

        calls = self.config.calls
        call = replace(call, accepted=calls.accept)
        handle = self._handle
        if handle is not None:
            task = asyncio.create_task(self._answer_call(handle, call))
            self._call_tasks.add(task)
            task.add_done_callback(self._call_tasks.discard)

        if calls.notify:
            caller = call.caller.split("@")[0]
            await self.bus.publish_event(InboundEvent(
                id=f"call_{call.call_id}",
                chat_id=call.caller,
                sender_id=caller,
                timestamp=call.timestamp,
                kind=PayloadKind.CALL,
                body=f"Incoming call {'accepted' if call.accepted else 'rejected'} automatically",
                call=call,
            ))

    async def _answer_call(self, handle: ProtocolSession, call: IncomingCall) -> None:
        action = "accept" if call.accepted else "reject"
        logger.info(f"Incoming {'video' if call.is_video else 'voice'} call from {call.caller}, {action}ing")
        try:
            if call.accepted:
                await handle.accept_call(call)
            else:
                await handle.reject_call(call)
        except Exception as e:
            logger.warning(f"Failed to {action} call {call.call_id}: {e}")

    # ---- 外部控制 -------------------------------------------------------------

    async def force_reconnect(self, reason: str) -> bool:
        """
        强制关闭当前会话并立即重连（供健康检查使用）。

        重连已在进行中或控制器已手动停止时不做任何事。

        返回:
            True 表示本次调用触发了重连
        """
        old_handle = None
        async with self._lock:
            if self._manual_stop:
                return False
            if self._reconnect_task is not None or self._opening:
                logger.debug(f"Reconnect already in flight, ignoring: {reason}")
                return False
            logger.warning(f"Forcing reconnect: {reason}")
            self._generation += 1
            old_handle, self._handle = self._handle, None
            self._set_ready(False)
            self._set_state(ConnectionState.RECONNECTING)
            self._reconnect_task = asyncio.create_task(self._reconnect_after(0))

        if old_handle is not None:
            await self._close_handle(old_handle)
        return True

    async def stop(self) -> None:
        """停止会话：取消所有定时器，关闭会话句柄，进入 STOPPED。"""
        async with self._lock:
            self._manual_stop = True
            self._generation += 1
            self._opening = False
            self._cancel_timers()
            old_handle, self._handle = self._handle, None
            self._set_ready(False)
            self._set_state(ConnectionState.STOPPED)

        if old_handle is not None:
            await self._close_handle(old_handle)
        logger.info("Connection controller stopped")

    async def logout(self) -> None:
        """
        在协议层注销，停止会话并清除凭据（不回滚）。再次 start() 之前不会重新配对。

        注销请求发出前已标记手动停止并作废当前 generation，
        协议层随注销报告的 401 断线因此不会进入升级恢复。
        """
        async with self._lock:
            self._manual_stop = True
            self._generation += 1
            self._opening = False
            self._cancel_timers()
            handle = self._handle

        if handle is not None:
            try:
                await handle.logout()
            except Exception as e:
                logger.warning(f"Protocol logout failed: {e}")
        await self.stop()
        await asyncio.to_thread(self.store.wipe_and_recover, False)
        self._pairing_code = None
        logger.info("Logged out, credentials wiped")

    async def send(self, request: SendRequest) -> str:
        """发送一条消息。会话未处于 OPEN 状态时立即抛出 NotReadyError。"""
        handle = self._handle
        if self.state != ConnectionState.OPEN or handle is None:
            raise NotReadyError(f"session is {self.state.value}")
        return await handle.send(request)

    async def probe(self, timeout_s: float) -> None:
        """发送在线状态探测，超时抛出 asyncio.TimeoutError。"""
        handle = self._handle
        if handle is None:
            raise NotReadyError("no protocol session")
        await asyncio.wait_for(handle.send_presence(), timeout=timeout_s)
