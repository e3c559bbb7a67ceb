"""ConnectionController 状态机测试：打开、重连、升级恢复、停止、入站过滤与来电应答。"""

import asyncio
import shutil

import pytest

from conftest import FakeClient, FakeSession, FixedRandom, seed_credentials, wait_until
from wabridge.bus.events import (
    AlbumEvent,
    InboundEvent,
    IncomingCall,
    MessageContext,
    PayloadKind,
    SendRequest,
)
from wabridge.connection.controller import ConnectionController, ConnectionState
from wabridge.connection.retry import RetryPolicy
from wabridge.errors import DisconnectError, NotReadyError


def drain(queue: asyncio.Queue) -> list:
    items = []
    while not queue.empty():
        items.append(queue.get_nowait())
    return items


def text(msg_id: str, chat: str = "123@s.whatsapp.net", from_me: bool = False) -> InboundEvent:
    return InboundEvent(id=msg_id, chat_id=chat, sender_id="123", timestamp=1000.0,
                        body="hi", from_me=from_me)


async def open_session(controller: ConnectionController, client: FakeClient) -> None:
    await controller.start()
    await client.last.emit_open()
    assert controller.is_ready


class TestOpen:
    """Starting and opening a session."""

    @pytest.mark.asyncio
    async def test_start_enters_pairing_then_open(self, controller, client, bus):
        await controller.start()
        assert client.open_calls == 1
        assert controller.state == ConnectionState.PAIRING
        assert not controller.is_ready

        await client.last.emit_open()

        assert controller.state == ConnectionState.OPEN
        assert controller.is_ready
        assert controller.counters.last_success_at is not None
        ready = [n.data["ready"] for n in drain(bus.notices) if n.name == "ready"]
        assert ready == [True]
        await controller.stop()

    @pytest.mark.asyncio
    async def test_start_is_noop_while_pairing_or_open(self, controller, client):
        await controller.start()
        await controller.start()
        assert client.open_calls == 1
        await client.last.emit_open()
        await controller.start()
        assert client.open_calls == 1
        await controller.stop()

    @pytest.mark.asyncio
    async def test_startup_restores_missing_credentials(self, controller, client, store):
        seed_credentials(store, "saved")
        store.backup(force=True)
        store.clear()

        await controller.start()

        assert store.restore_calls == 1
        assert (store.credentials_dir / "creds.json").read_text() == "saved"
        await controller.stop()

    @pytest.mark.asyncio
    async def test_open_schedules_deferred_backup(self, controller, client, store):
        seed_credentials(store)
        await open_session(controller, client)
        await wait_until(lambda: len(store.list_snapshots()) == 1)
        await controller.stop()

    @pytest.mark.asyncio
    async def test_pairing_code_is_published(self, controller, client, bus):
        await controller.start()
        await client.last.emit_pairing_code("2@abc,def")
        assert controller.current_pairing_code == "2@abc,def"
        codes = [n.data["code"] for n in drain(bus.notices) if n.name == "pairing_code"]
        assert codes == ["2@abc,def"]
        await controller.stop()


class TestReconnect:
    """Close handling: backoff, pairing timeout and escalation."""

    @pytest.mark.asyncio
    async def test_transient_close_reconnects_with_backoff(self, controller, client):
        await open_session(controller, client)
        first = client.last

        await first.emit_close(DisconnectError("connection reset", status_code=500))

        assert controller.state == ConnectionState.RECONNECTING
        assert controller.counters.attempt == 1
        assert controller.counters.consecutive_failures == 1
        assert first.closed
        await wait_until(lambda: client.open_calls == 2)

        await client.last.emit_open()
        assert controller.counters.attempt == 0
        assert controller.counters.consecutive_failures == 0
        await controller.stop()

    @pytest.mark.asyncio
    async def test_close_publishes_not_ready(self, controller, client, bus):
        await open_session(controller, client)
        drain(bus.notices)
        await client.last.emit_close(DisconnectError("reset"))
        ready = [n.data["ready"] for n in drain(bus.notices) if n.name == "ready"]
        assert ready == [False]
        assert controller.status()["status"] == "disconnected"
        await controller.stop()

    @pytest.mark.asyncio
    async def test_pairing_timeout_clears_and_repairs_without_counting(self, controller, client, store):
        await controller.start()
        await client.last.emit_close(DisconnectError("QR refs attempts ended", status_code=408))

        assert store.clear_calls == 1
        assert store.wipe_calls == []
        assert controller.counters.attempt == 0
        assert controller.counters.consecutive_failures == 0
        await wait_until(lambda: client.open_calls == 2)
        await controller.stop()

    @pytest.mark.asyncio
    async def test_exhausted_failures_escalate_to_wipe_and_restore(self, controller, client, store):
        client.fail_with = DisconnectError("connection refused")

        await controller.start()
        await wait_until(lambda: len(store.wipe_calls) >= 1)

        assert store.wipe_calls[0] is True
        assert controller.counters.escalations >= 1
        assert client.open_calls == 0
        await controller.stop()

    @pytest.mark.asyncio
    async def test_unauthorized_wipes_without_restore_and_repairs(self, controller, client, store):
        await open_session(controller, client)

        await client.last.emit_close(DisconnectError("Connection Failure: unauthorized"))

        assert store.wipe_calls == [False]
        assert controller.counters.escalations == 1
        await wait_until(lambda: client.open_calls == 2)
        await controller.stop()

    @pytest.mark.asyncio
    async def test_escalation_survives_storage_faults(self, controller, client, store, monkeypatch):
        await open_session(controller, client)

        def broken(*args, **kwargs):
            raise OSError("disk full")

        monkeypatch.setattr(shutil, "copytree", broken)
        monkeypatch.setattr(shutil, "rmtree", broken)
        await client.last.emit_close(DisconnectError("Connection Failure: unauthorized"))

        assert store.wipe_calls == [False]
        assert controller.counters.escalations == 1
        assert controller.state == ConnectionState.RECONNECTING
        await wait_until(lambda: client.open_calls == 2)
        await controller.stop()

    @pytest.mark.asyncio
    async def test_generic_terminal_error_wipes_with_restore(self, controller, client, store):
        await open_session(controller, client)

        await client.last.emit_close(DisconnectError("stream errored", status_code=403))

        assert store.wipe_calls == [True]
        await wait_until(lambda: client.open_calls == 2)
        await controller.stop()

    @pytest.mark.asyncio
    async def test_callbacks_from_stale_session_are_ignored(self, controller, client, bus):
        await open_session(controller, client)
        stale = client.last
        await stale.emit_close(DisconnectError("reset"))
        await wait_until(lambda: client.open_calls == 2)
        drain(bus.events)

        await stale.emit_message(text("late"))
        await stale.emit_close(DisconnectError("reset again"))

        assert bus.events.empty()
        assert controller.state == ConnectionState.PAIRING
        assert controller.counters.attempt == 1
        await controller.stop()

    @pytest.mark.asyncio
    async def test_force_reconnect_is_idempotent(self, controller, client):
        await open_session(controller, client)

        assert await controller.force_reconnect("probe failed") is True
        assert await controller.force_reconnect("probe failed again") is False

        await wait_until(lambda: client.open_calls == 2)
        await asyncio.sleep(0.02)
        assert client.open_calls == 2
        assert client.sessions[0].closed
        await controller.stop()


class TestStop:
    """Manual stop and logout."""

    @pytest.mark.asyncio
    async def test_stop_closes_session_and_prevents_retry(self, controller, client):
        await open_session(controller, client)
        session = client.last

        await controller.stop()

        assert controller.state == ConnectionState.STOPPED
        assert controller.is_manually_stopped
        assert session.closed
        await session.emit_close(DisconnectError("closed"))
        await asyncio.sleep(0.05)
        assert client.open_calls == 1

    @pytest.mark.asyncio
    async def test_logout_while_reconnecting_cancels_timer(self, fast_config, client, store, bus):
        fast_config.retry.initial_reconnect_delay_ms = 10_000
        fast_config.retry.max_reconnect_delay_ms = 20_000
        policy = RetryPolicy.from_config(fast_config.retry, rng=FixedRandom())
        controller = ConnectionController(fast_config, client=client, store=store, policy=policy, bus=bus)
        await open_session(controller, client)
        await client.last.emit_close(DisconnectError("reset"))
        assert controller.state == ConnectionState.RECONNECTING

        await controller.logout()

        assert controller.state == ConnectionState.STOPPED
        assert not controller.is_reconnecting
        assert store.wipe_calls == [False]
        await asyncio.sleep(0.05)
        assert client.open_calls == 1

        await controller.start()
        assert client.open_calls == 2
        await controller.stop()

    @pytest.mark.asyncio
    async def test_logout_asks_session_to_log_out(self, controller, client, store):
        seed_credentials(store)
        await open_session(controller, client)
        session = client.last

        await controller.logout()

        assert session.logged_out
        assert session.closed
        assert not store.has_credentials()

    @pytest.mark.asyncio
    async def test_logout_reported_as_disconnect_goes_straight_to_stopped(self, controller, client, store, bus):
        class LogoutClosingSession(FakeSession):
            async def logout(self):
                await super().logout()
                await self.emit_close(DisconnectError("logged out", status_code=401))

        client.session_class = LogoutClosingSession
        seed_credentials(store)
        await open_session(controller, client)
        drain(bus.notices)

        await controller.logout()

        states = [n.data["state"] for n in drain(bus.notices) if n.name == "state"]
        assert states == ["stopped"]
        assert store.wipe_calls == [False]
        assert controller.counters.escalations == 0
        await asyncio.sleep(0.05)
        assert client.open_calls == 1

    @pytest.mark.asyncio
    async def test_late_open_after_stop_is_closed(self, fast_config, store, bus):
        gate = asyncio.Event()

        class GatedClient(FakeClient):
            async def open(self, credentials_dir, listener):
                await gate.wait()
                return await super().open(credentials_dir, listener)

        client = GatedClient()
        controller = ConnectionController(fast_config, client=client, store=store, bus=bus)
        task = asyncio.create_task(controller.start())
        await wait_until(lambda: controller.state == ConnectionState.PAIRING)

        await controller.stop()
        gate.set()
        await task

        assert client.last.closed
        assert controller.state == ConnectionState.STOPPED


class TestSendAndIngest:
    """Send API and inbound filtering."""

    @pytest.mark.asyncio
    async def test_send_requires_open_session(self, controller, client):
        with pytest.raises(NotReadyError):
            await controller.send(SendRequest(target="123", body="hi"))

        await open_session(controller, client)
        message_id = await controller.send(SendRequest(target="123", body="hi"))

        assert message_id == "msg-1"
        assert client.last.sent[0].body == "hi"
        await controller.stop()

    @pytest.mark.asyncio
    async def test_inbound_filtering_and_dedup(self, controller, client, bus):
        await open_session(controller, client)
        session = client.last

        await session.emit_message(text("m1"))
        await session.emit_message(text("m1"))
        await session.emit_message(text("m2", from_me=True))
        await session.emit_message(text("m3", chat="status@broadcast"))

        events = drain(bus.events)
        assert [e.id for e in events] == ["m1"]
        assert controller.last_message_at is not None
        await controller.stop()

    @pytest.mark.asyncio
    async def test_album_images_are_aggregated(self, controller, client, bus):
        await open_session(controller, client)
        session = client.last
        for i in range(3):
            await session.emit_message(InboundEvent(
                id=f"img{i}", chat_id="123@s.whatsapp.net", sender_id="123", timestamp=1000.0 + i,
                kind=PayloadKind.IMAGE, context=MessageContext(album_id="p1"),
            ))
        assert bus.events.empty()

        await wait_until(lambda: not bus.events.empty())

        album = bus.events.get_nowait()
        assert isinstance(album, AlbumEvent)
        assert [item.id for item in album.items] == ["img0", "img1", "img2"]
        await controller.stop()


def ringing(call_id: str = "c1", status: str = "offer") -> IncomingCall:
    return IncomingCall(call_id=call_id, caller="123@s.whatsapp.net", timestamp=1000.0,
                        is_video=True, status=status)


class TestCalls:
    """Automatic answering of incoming calls."""

    @pytest.mark.asyncio
    async def test_incoming_call_is_rejected_and_published(self, controller, client, bus):
        await open_session(controller, client)
        session = client.last

        await session.emit_call(ringing())
        await wait_until(lambda: session.rejected_calls)

        assert session.accepted_calls == []
        events = drain(bus.events)
        assert len(events) == 1
        event = events[0]
        assert event.kind == PayloadKind.CALL
        assert event.sender_id == "123"
        record = event.to_webhook_record()
        assert record["callData"]["callId"] == "c1"
        assert record["callData"]["callType"] == "video"
        assert record["callData"]["accepted"] is False
        await controller.stop()

    @pytest.mark.asyncio
    async def test_accept_mode_answers_the_call(self, fast_config, controller, client, bus):
        fast_config.calls.accept = True
        await open_session(controller, client)
        session = client.last

        await session.emit_call(ringing())
        await wait_until(lambda: session.accepted_calls)

        assert session.rejected_calls == []
        assert drain(bus.events)[0].call.accepted is True
        await controller.stop()

    @pytest.mark.asyncio
    async def test_repeated_and_finished_calls_are_ignored(self, controller, client, bus):
        await open_session(controller, client)
        session = client.last

        await session.emit_call(ringing("c1"))
        await session.emit_call(ringing("c1"))
        await session.emit_call(ringing("c2", status="timeout"))
        await wait_until(lambda: session.rejected_calls)
        await asyncio.sleep(0.01)

        assert [c.call_id for c in session.rejected_calls] == ["c1"]
        assert [e.id for e in drain(bus.events)] == ["call_c1"]
        await controller.stop()

    @pytest.mark.asyncio
    async def test_call_events_can_be_silenced(self, fast_config, controller, client, bus):
        fast_config.calls.notify = False
        await open_session(controller, client)
        session = client.last

        await session.emit_call(ringing())
        await wait_until(lambda: session.rejected_calls)

        assert bus.events.empty()
        await controller.stop()

    @pytest.mark.asyncio
    async def test_call_from_stale_session_is_ignored(self, controller, client, bus):
        await open_session(controller, client)
        stale = client.last
        await controller.force_reconnect("test")
        await wait_until(lambda: client.open_calls == 2)

        await stale.emit_call(ringing())
        await asyncio.sleep(0.01)

        assert stale.rejected_calls == []
        assert bus.events.empty()
        await controller.stop()
