"""
Tests for the Pusher deposit notification channel
"""
import asyncio
import json

import httpx
import pytest

from payout_bot.core.exceptions import NotificationChannelError
from payout_bot.domain.services.notifications import pusher_channel
from payout_bot.domain.services.notifications.base_channel import SubscriptionStatus
from payout_bot.domain.services.notifications.pusher_channel import (
    PusherNotificationChannel,
    channel_name_for,
    parse_deposit_event,
)

AUTH_URL = "https://copperx.test/api/notifications/auth"
CHANNEL = "private-org-org-1"


class FakeSocket:
    """Websocket double fed frame by frame from the test"""

    def __init__(self):
        self.sent: list[dict] = []
        self.closed = False
        self._frames: asyncio.Queue = asyncio.Queue()

    def feed(self, event: str, data=None, channel=None):
        frame = {"event": event, "data": json.dumps(data if data is not None else {})}
        if channel:
            frame["channel"] = channel
        self._frames.put_nowait(json.dumps(frame))

    def feed_raw(self, raw: str):
        self._frames.put_nowait(raw)

    async def send(self, raw: str):
        self.sent.append(json.loads(raw))

    async def close(self):
        self.closed = True
        self._frames.put_nowait(None)

    def __aiter__(self):
        return self

    async def __anext__(self):
        frame = await self._frames.get()
        if frame is None:
            raise StopAsyncIteration
        return frame


class FakeConnector:
    def __init__(self):
        self.urls: list[str] = []
        self.sockets: list[FakeSocket] = []
        self.error: Exception | None = None

    async def __call__(self, url):
        self.urls.append(url)
        if self.error is not None:
            raise self.error
        socket = FakeSocket()
        self.sockets.append(socket)
        return socket

    @property
    def socket(self) -> FakeSocket:
        return self.sockets[-1]


async def eventually(predicate, timeout=1.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


@pytest.fixture
def auth_requests():
    return []


@pytest.fixture
def auth_response():
    return {"status_code": 200, "json": {"auth": "key:signature"}}


@pytest.fixture
async def http_client(auth_requests, auth_response):
    def handler(request: httpx.Request) -> httpx.Response:
        auth_requests.append(request)
        return httpx.Response(auth_response["status_code"], json=auth_response["json"])

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    yield client
    await client.aclose()


@pytest.fixture
def connector():
    return FakeConnector()


@pytest.fixture
async def channel(http_client, connector, monkeypatch):
    monkeypatch.setattr(pusher_channel, "RECONNECT_BACKOFF_SECONDS", 0)
    pusher = PusherNotificationChannel(
        app_key="app-key",
        cluster="mt1",
        auth_url=AUTH_URL,
        http_client=http_client,
        connect=connector,
    )
    yield pusher
    await pusher.close_all()


class Recorder:
    def __init__(self):
        self.deposits = []
        self.statuses = []

    async def on_deposit(self, event):
        self.deposits.append(event)

    async def on_status(self, status):
        self.statuses.append(status)


@pytest.fixture
def recorder():
    return Recorder()


async def open_subscription(channel, recorder, conversation_id=1):
    return await channel.open(
        conversation_id, "org-1", "user-token", recorder.on_deposit, recorder.on_status
    )


async def handshake(connector, recorder):
    await eventually(lambda: connector.sockets)
    connector.socket.feed("pusher:connection_established", {"socket_id": "123.456"})
    await eventually(lambda: connector.socket.sent)
    connector.socket.feed("pusher_internal:subscription_succeeded", channel=CHANNEL)
    await eventually(lambda: recorder.statuses)


class TestHelpers:

    @pytest.mark.unit
    def test_channel_name(self):
        assert channel_name_for("org-1") == CHANNEL

    @pytest.mark.unit
    async def test_url(self, channel):
        assert channel.url == "wss://ws-mt1.pusher.com/app/app-key?protocol=7&client=payout-bot&version=1.0.0"

    @pytest.mark.unit
    def test_parse_deposit_event(self):
        event = parse_deposit_event(json.dumps({
            "amount": "25.5",
            "currency": "USDC",
            "network": "Polygon",
            "walletAddress": "0x1234567890abcdef",
            "txId": "0xaaaabbbbccccddddeeee",
        }))

        assert event.amount == "25.5"
        assert event.network == "Polygon"
        assert event.wallet_address_suffix == "abcdef"
        assert event.tx_id_suffix == "ccddddeeee"

    @pytest.mark.unit
    def test_parse_deposit_event_defaults(self):
        event = parse_deposit_event({"amount": 10})

        assert event.amount == "10"
        assert event.currency == "USDC"
        assert event.network == "Solana"
        assert event.wallet_address_suffix is None
        assert event.tx_id_suffix is None

    @pytest.mark.unit
    def test_parse_malformed_deposit_event(self):
        event = parse_deposit_event("{not json")

        assert event.amount == ""
        assert event.currency == "USDC"


class TestAuthorize:

    @pytest.mark.unit
    async def test_returns_signature(self, channel, auth_requests):
        auth = await channel.authorize("user-token", "123.456", CHANNEL)

        assert auth == "key:signature"
        request = auth_requests[0]
        assert str(request.url) == AUTH_URL
        assert request.headers["Authorization"] == "Bearer user-token"
        assert json.loads(request.content) == {"socket_id": "123.456", "channel_name": CHANNEL}

    @pytest.mark.unit
    async def test_rejected(self, channel, auth_response):
        auth_response.update(status_code=403, json={"message": "Forbidden"})

        with pytest.raises(NotificationChannelError) as exc_info:
            await channel.authorize("user-token", "123.456", CHANNEL)

        assert exc_info.value.details["status_code"] == 403

    @pytest.mark.unit
    async def test_missing_signature(self, channel, auth_response):
        auth_response["json"] = {}

        with pytest.raises(NotificationChannelError):
            await channel.authorize("user-token", "123.456", CHANNEL)

    @pytest.mark.unit
    async def test_network_failure(self, connector):
        def handler(request):
            raise httpx.ConnectError("unreachable")

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            pusher = PusherNotificationChannel(
                app_key="k", cluster="mt1", auth_url=AUTH_URL, http_client=client, connect=connector,
            )
            with pytest.raises(NotificationChannelError) as exc_info:
                await pusher.authorize("user-token", "1.2", CHANNEL)

        assert "Channel authorization request failed" in exc_info.value.message


class TestSubscription:

    @pytest.mark.unit
    async def test_handshake_subscribes(self, channel, connector, recorder):
        handle = await open_subscription(channel, recorder)

        await handshake(connector, recorder)

        assert connector.urls == [channel.url]
        assert connector.socket.sent[0] == {
            "event": "pusher:subscribe",
            "data": {"channel": CHANNEL, "auth": "key:signature"},
        }
        assert recorder.statuses == [SubscriptionStatus.SUBSCRIBED]
        assert handle.subscribed
        assert channel.is_open(1)

    @pytest.mark.unit
    async def test_open_twice_returns_existing_handle(self, channel, recorder):
        first = await open_subscription(channel, recorder)
        second = await open_subscription(channel, recorder)

        assert first is second

    @pytest.mark.unit
    async def test_ping_is_answered(self, channel, connector, recorder):
        await open_subscription(channel, recorder)
        await handshake(connector, recorder)

        connector.socket.feed("pusher:ping")
        await eventually(lambda: len(connector.socket.sent) == 2)

        assert connector.socket.sent[1] == {"event": "pusher:pong", "data": {}}

    @pytest.mark.unit
    async def test_deposit_is_forwarded(self, channel, connector, recorder):
        await open_subscription(channel, recorder)
        await handshake(connector, recorder)

        connector.socket.feed("deposit", {"amount": "100", "network": "Solana"}, channel=CHANNEL)
        await eventually(lambda: recorder.deposits)

        assert recorder.deposits[0].amount == "100"

    @pytest.mark.unit
    async def test_deposit_on_other_channel_is_ignored(self, channel, connector, recorder):
        await open_subscription(channel, recorder)
        await handshake(connector, recorder)

        connector.socket.feed("deposit", {"amount": "1"}, channel="private-org-someone-else")
        connector.socket.feed("pusher:ping")
        await eventually(lambda: len(connector.socket.sent) == 2)

        assert recorder.deposits == []

    @pytest.mark.unit
    async def test_failing_deposit_callback_keeps_listening(self, channel, connector, recorder):
        async def on_deposit(event):
            raise RuntimeError("telegram down")

        await channel.open(1, "org-1", "user-token", on_deposit, recorder.on_status)
        await handshake(connector, recorder)

        connector.socket.feed("deposit", {"amount": "1"}, channel=CHANNEL)
        connector.socket.feed("pusher:ping")
        await eventually(lambda: len(connector.socket.sent) == 2)

        assert channel.is_open(1)

    @pytest.mark.unit
    async def test_malformed_frame_is_dropped(self, channel, connector, recorder):
        await open_subscription(channel, recorder)
        await eventually(lambda: connector.sockets)

        connector.socket.feed_raw("not json")
        await handshake(connector, recorder)

        assert recorder.statuses == [SubscriptionStatus.SUBSCRIBED]

    @pytest.mark.unit
    async def test_subscription_error_is_final(self, channel, connector, recorder):
        await open_subscription(channel, recorder)
        await eventually(lambda: connector.sockets)

        connector.socket.feed("pusher:subscription_error", {"status": 403})
        await eventually(lambda: recorder.statuses)

        assert recorder.statuses == [SubscriptionStatus.FAILED]
        assert connector.socket.closed
        assert len(connector.urls) == 1

    @pytest.mark.unit
    async def test_authorization_failure_is_final(self, channel, connector, recorder, auth_response):
        auth_response.update(status_code=401, json={"message": "Token expired"})
        await open_subscription(channel, recorder)
        await eventually(lambda: connector.sockets)

        connector.socket.feed("pusher:connection_established", {"socket_id": "1.2"})
        await eventually(lambda: recorder.statuses)

        assert recorder.statuses == [SubscriptionStatus.FAILED]
        assert connector.socket.sent == []

    @pytest.mark.unit
    async def test_refusing_pusher_error_is_final(self, channel, connector, recorder):
        await open_subscription(channel, recorder)
        await eventually(lambda: connector.sockets)

        connector.socket.feed("pusher:error", {"code": 4001, "message": "App disabled"})
        await eventually(lambda: recorder.statuses)

        assert recorder.statuses == [SubscriptionStatus.FAILED]
        assert len(connector.urls) == 1

    @pytest.mark.unit
    async def test_other_pusher_error_is_tolerated(self, channel, connector, recorder):
        await open_subscription(channel, recorder)
        await eventually(lambda: connector.sockets)

        connector.socket.feed("pusher:error", {"code": 4200, "message": "Reconnect"})
        await handshake(connector, recorder)

        assert recorder.statuses == [SubscriptionStatus.SUBSCRIBED]

    @pytest.mark.unit
    async def test_dropped_connection_reconnects(self, channel, connector, recorder):
        await open_subscription(channel, recorder)
        await eventually(lambda: connector.sockets)

        await connector.socket.close()
        await eventually(lambda: len(connector.sockets) == 2)

        assert channel.is_open(1)

    @pytest.mark.unit
    async def test_gives_up_after_repeated_connect_failures(self, channel, connector, recorder):
        connector.error = OSError("connection refused")

        await open_subscription(channel, recorder)
        await eventually(lambda: recorder.statuses)

        assert recorder.statuses == [SubscriptionStatus.FAILED]
        assert len(connector.urls) == pusher_channel.MAX_RECONNECT_ATTEMPTS


class TestClose:

    @pytest.mark.unit
    async def test_close_stops_listening(self, channel, connector, recorder):
        handle = await open_subscription(channel, recorder)
        await handshake(connector, recorder)

        await channel.close(handle)

        assert handle.closed
        assert not channel.is_open(1)
        assert connector.socket.closed

    @pytest.mark.unit
    async def test_close_twice_is_harmless(self, channel, recorder):
        handle = await open_subscription(channel, recorder)

        await channel.close(handle)
        await channel.close(handle)

        assert not channel.is_open(1)

    @pytest.mark.unit
    async def test_reopen_after_close(self, channel, recorder):
        first = await open_subscription(channel, recorder)
        await channel.close(first)

        second = await open_subscription(channel, recorder)

        assert second is not first
        assert channel.is_open(1)

    @pytest.mark.unit
    async def test_close_all(self, channel, recorder):
        await open_subscription(channel, recorder, conversation_id=1)
        await open_subscription(channel, recorder, conversation_id=2)

        await channel.close_all()

        assert not channel.is_open(1)
        assert not channel.is_open(2)
