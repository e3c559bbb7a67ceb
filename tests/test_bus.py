"""EventBus、事件记录格式、媒体适配与 Webhook 分发器测试。"""

import asyncio
import base64
import json

import httpx
import pytest

from conftest import wait_until
from wabridge.bus.events import InboundEvent, MediaPayload, Notice, PayloadKind, SendRequest
from wabridge.bus.queue import EventBus
from wabridge.config.schema import WebhookConfig
from wabridge.dispatch.webhook import USER_AGENT, WebhookDispatcher
from wabridge.errors import MediaFormatError
from wabridge.utils.media import DEFAULT_MIMETYPE, coerce_media


class TestEventBus:
    """Bounded notices and isolated subscribers."""

    def test_notice_queue_drops_oldest_when_full(self):
        bus = EventBus(notice_queue_size=2)
        for i in range(3):
            bus.publish_notice(Notice("state", {"n": i}))
        assert bus.notices_size == 2
        assert bus.notices.get_nowait().data["n"] == 1
        assert bus.notices.get_nowait().data["n"] == 2

    @pytest.mark.asyncio
    async def test_failing_subscriber_does_not_block_others(self):
        bus = EventBus()
        received = []

        async def broken(event):
            raise RuntimeError("boom")

        async def healthy(event):
            received.append(event.id)

        bus.subscribe_events(broken)
        bus.subscribe_events(healthy)
        task = asyncio.create_task(bus.dispatch_events())
        await bus.publish_event(InboundEvent(id="e1", chat_id="c", sender_id="s", timestamp=1.0))
        await wait_until(lambda: received == ["e1"])
        bus.stop()
        await asyncio.wait_for(task, timeout=2.0)

    @pytest.mark.asyncio
    async def test_drain_delivers_events_left_in_queue(self):
        bus = EventBus()
        received = []

        async def collect(event):
            received.append(event.id)

        bus.subscribe_events(collect)
        for i in range(3):
            await bus.publish_event(InboundEvent(id=f"e{i}", chat_id="c", sender_id="s", timestamp=1.0))

        assert await bus.drain_events() == 3
        assert received == ["e0", "e1", "e2"]
        assert bus.events_size == 0


class TestRecords:
    """Wire records produced for webhooks and the bridge."""

    def test_inbound_record_with_media(self):
        event = InboundEvent(
            id="m1", chat_id="c", sender_id="s", timestamp=5.0, kind=PayloadKind.IMAGE,
            body="look", media=MediaPayload(b"\x89PNG", "image/png", "a.png"),
        )
        record = event.to_webhook_record()
        assert record["hasMedia"] is True
        assert record["kind"] == "image"
        assert base64.b64decode(record["mediaPayload"]["data"]) == b"\x89PNG"

    def test_inbound_record_without_media(self):
        record = InboundEvent(id="m1", chat_id="c", sender_id="s", timestamp=5.0).to_webhook_record()
        assert record["hasMedia"] is False
        assert "mediaPayload" not in record

    def test_send_request_frame(self):
        frame = SendRequest(target="123", body="hi").to_frame()
        assert frame == {"to": "123", "kind": "chat", "text": "hi"}

    def test_unknown_kind_parses_as_unknown(self):
        assert PayloadKind.parse("hologram") == PayloadKind.UNKNOWN
        assert PayloadKind.parse("IMAGE") == PayloadKind.IMAGE


class TestCoerceMedia:
    """Closed set of accepted media shapes."""

    def test_bytes_like(self):
        assert coerce_media(b"abc").data == b"abc"
        assert coerce_media(bytearray(b"abc")).data == b"abc"
        assert coerce_media(memoryview(b"abc")).mimetype == DEFAULT_MIMETYPE

    def test_base64_string(self):
        payload = coerce_media(base64.b64encode(b"hello").decode(), mimetype="text/plain")
        assert payload.data == b"hello"
        assert payload.mimetype == "text/plain"

    def test_dict_shape(self):
        payload = coerce_media({"data": base64.b64encode(b"x").decode(), "mimetype": "image/jpeg",
                                "filename": "x.jpg"})
        assert (payload.data, payload.mimetype, payload.filename) == (b"x", "image/jpeg", "x.jpg")

    @pytest.mark.parametrize("value", [123, None, ["a"], {"mimetype": "image/png"}, "not base64!!"])
    def test_unknown_shapes_rejected(self, value):
        with pytest.raises(MediaFormatError):
            coerce_media(value)


class TestWebhookDispatcher:
    """HTTP delivery of finished events and down notices."""

    @pytest.fixture
    def requests(self):
        return []

    @pytest.fixture
    def http(self, requests):
        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            if "fail" in str(request.url):
                return httpx.Response(500)
            return httpx.Response(200)

        return httpx.AsyncClient(transport=httpx.MockTransport(handler))

    @pytest.mark.asyncio
    async def test_event_is_posted_to_message_url(self, http, requests):
        bus = EventBus()
        config = WebhookConfig(on_message_url="http://hooks.test/msg", headers={"X-Token": "t"})
        dispatcher = WebhookDispatcher(config, bus, http=http)

        await dispatcher.on_event(InboundEvent(id="m1", chat_id="c", sender_id="s", timestamp=1.0))

        assert len(requests) == 1
        body = json.loads(requests[0].content)
        assert body["id"] == "m1"
        assert requests[0].headers["User-Agent"] == USER_AGENT
        assert requests[0].headers["X-Token"] == "t"
        assert dispatcher.delivered == 1
        await http.aclose()

    @pytest.mark.asyncio
    async def test_failed_delivery_is_logged_not_raised(self, http, requests):
        dispatcher = WebhookDispatcher(WebhookConfig(on_message_url="http://hooks.test/fail"), EventBus(), http=http)

        ok = await dispatcher.post("http://hooks.test/fail", {"a": 1})

        assert ok is False
        assert dispatcher.failed == 1
        await http.aclose()

    @pytest.mark.asyncio
    async def test_down_notice_posts_once_per_ready_drop(self, http, requests):
        config = WebhookConfig(on_down_url="http://hooks.test/down")
        dispatcher = WebhookDispatcher(config, EventBus(), http=http)

        await dispatcher.on_notice(Notice("ready", {"ready": True}))
        await dispatcher.on_notice(Notice("state", {"state": "closing"}))
        await dispatcher.on_notice(Notice("ready", {"ready": False}))

        assert len(requests) == 1
        assert str(requests[0].url) == "http://hooks.test/down"
        assert json.loads(requests[0].content)["event"] == "session_down"
        await http.aclose()

    @pytest.mark.asyncio
    async def test_nothing_posted_without_urls(self, http, requests):
        dispatcher = WebhookDispatcher(WebhookConfig(), EventBus(), http=http)
        await dispatcher.on_event(InboundEvent(id="m1", chat_id="c", sender_id="s", timestamp=1.0))
        await dispatcher.on_notice(Notice("ready", {"ready": False}))
        assert requests == []
        await http.aclose()
