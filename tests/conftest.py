"""
测试公共夹具：假的协议客户端 / 会话、缩短定时器的配置、记录调用的凭据存储。
"""

import asyncio
from pathlib import Path

import pytest

from wabridge.bus.events import IncomingCall, SendRequest
from wabridge.bus.queue import EventBus
from wabridge.config.schema import Config
from wabridge.connection.controller import ConnectionController
from wabridge.connection.protocol import (
    LIFECYCLE_CLOSE,
    LIFECYCLE_OPEN,
    ProtocolClient,
    ProtocolSession,
)
from wabridge.connection.retry import RetryPolicy
from wabridge.session.store import SessionStore


class FakeSession(ProtocolSession):
    """可由测试驱动的协议会话：手动触发 open / close / 消息回调。"""

    def __init__(self, listener):
        self.listener = listener
        self.transport_open = True
        self.closed = False
        self.logged_out = False
        self.presence_calls = 0
        self.presence_error: BaseException | None = None
        self.presence_hang = False
        self.sent: list[SendRequest] = []
        self.accepted_calls: list[IncomingCall] = []
        self.rejected_calls: list[IncomingCall] = []

    @property
    def is_open(self) -> bool:
        return self.transport_open and not self.closed

    async def send_presence(self) -> None:
        self.presence_calls += 1
        if self.presence_hang:
            await asyncio.sleep(3600)
        if self.presence_error:
            raise self.presence_error

    async def send(self, request: SendRequest) -> str:
        self.sent.append(request)
        return f"msg-{len(self.sent)}"

    async def accept_call(self, call: IncomingCall) -> None:
        self.accepted_calls.append(call)

    async def reject_call(self, call: IncomingCall) -> None:
        self.rejected_calls.append(call)

    async def logout(self) -> None:
        self.logged_out = True

    async def close(self) -> None:
        self.closed = True

    # 测试驱动的回调
    async def emit_open(self) -> None:
        await self.listener.on_lifecycle(LIFECYCLE_OPEN, None)

    async def emit_close(self, error: BaseException | None = None) -> None:
        await self.listener.on_lifecycle(LIFECYCLE_CLOSE, error)

    async def emit_message(self, event) -> None:
        await self.listener.on_message(event)

    async def emit_pairing_code(self, code: str) -> None:
        await self.listener.on_pairing_code(code)

    async def emit_call(self, call: IncomingCall) -> None:
        await self.listener.on_call(call)


class FakeClient(ProtocolClient):
    """
    假协议客户端。

    auto_open=True 时，open() 返回后立即在后台发出 "open" 生命周期事件；
    fail_with 非空时 open() 直接抛出该异常；session_class 可替换为 FakeSession 的子类。
    """

    def __init__(self, auto_open: bool = False):
        self.auto_open = auto_open
        self.fail_with: BaseException | None = None
        self.session_class: type[FakeSession] = FakeSession
        self.sessions: list[FakeSession] = []
        self._tasks: list[asyncio.Task] = []

    @property
    def open_calls(self) -> int:
        return len(self.sessions)

    @property
    def last(self) -> FakeSession:
        return self.sessions[-1]

    async def open(self, credentials_dir: Path, listener) -> ProtocolSession:
        if self.fail_with is not None:
            raise self.fail_with
        session = self.session_class(listener)
        self.sessions.append(session)
        if self.auto_open:
            self._tasks.append(asyncio.create_task(session.emit_open()))
        return session


class RecordingStore(SessionStore):
    """记录 wipe_and_recover / clear / restore_latest 调用参数的真实存储。"""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.wipe_calls: list[bool] = []
        self.clear_calls = 0
        self.restore_calls = 0

    def wipe_and_recover(self, restore_after: bool = True) -> bool:
        self.wipe_calls.append(restore_after)
        return super().wipe_and_recover(restore_after)

    def clear(self) -> None:
        self.clear_calls += 1
        super().clear()

    def restore_latest(self) -> bool:
        self.restore_calls += 1
        return super().restore_latest()


class FixedRandom:
    """抖动固定为 0 的随机源。"""

    def random(self) -> float:
        return 0.0


async def wait_until(predicate, timeout: float = 2.0) -> None:
    """轮询直到 predicate() 为真，超时则让测试失败。"""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


@pytest.fixture
def fast_config(tmp_path) -> Config:
    """所有定时器缩短到毫秒级的配置。"""
    config = Config()
    config.session.credentials_dir = str(tmp_path / "sessions")
    config.session.backups_dir = str(tmp_path / "backups")
    config.session.backup_delay_s = 0.01
    config.retry.initial_reconnect_delay_ms = 10
    config.retry.max_reconnect_delay_ms = 40
    config.retry.escalation_delay_ms = 10
    config.ingest.album_wait_timeout_ms = 50
    return config


@pytest.fixture
def store(fast_config) -> RecordingStore:
    return RecordingStore(
        fast_config.session.credentials_path,
        fast_config.session.backups_path,
        retention=fast_config.session.retention,
    )


@pytest.fixture
def client() -> FakeClient:
    return FakeClient()


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest.fixture
def controller(fast_config, client, store, bus) -> ConnectionController:
    policy = RetryPolicy.from_config(fast_config.retry, rng=FixedRandom())
    return ConnectionController(fast_config, client=client, store=store, policy=policy, bus=bus)


def seed_credentials(store: SessionStore, content: str = "{}") -> None:
    store.credentials_dir.mkdir(parents=True, exist_ok=True)
    (store.credentials_dir / "creds.json").write_text(content)
