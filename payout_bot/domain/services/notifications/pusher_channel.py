"""
Pusher deposit notifications over websockets.

Speaks the Pusher channels protocol (version 7) directly:

1. connect to ``wss://ws-<cluster>.pusher.com/app/<key>``
2. on ``pusher:connection_established`` authorize the private channel
   ``private-org-<organizationId>`` against the payments API
3. send ``pusher:subscribe`` with the returned signature
4. answer ``pusher:ping`` and forward ``deposit`` events

Each subscription runs as its own asyncio task; a dropped connection is
re-established a few times with backoff, an authorization failure is final.
"""
import asyncio
import json
from typing import Any, Callable, Optional

import httpx
import websockets
from websockets.exceptions import ConnectionClosed

from payout_bot.core.config import settings
from payout_bot.core.exceptions import NotificationChannelError
from payout_bot.core.logging import get_logger
from payout_bot.domain.models import DepositEvent
from payout_bot.domain.services.notifications.base_channel import (
    BaseNotificationChannel,
    ConversationId,
    DepositCallback,
    NotificationHandle,
    StatusCallback,
    SubscriptionStatus,
)

logger = get_logger(__name__)

PROTOCOL_VERSION = 7
CLIENT_NAME = "payout-bot"
CLIENT_VERSION = "1.0.0"
CONNECT_TIMEOUT_SECONDS = 10.0
MAX_RECONNECT_ATTEMPTS = 5
RECONNECT_BACKOFF_SECONDS = 2.0


def channel_name_for(organization_id: str) -> str:
    return f"private-org-{organization_id}"


def _decode_data(data: Any) -> dict[str, Any]:
    """Pusher double-encodes event data as a JSON string"""
    if isinstance(data, str):
        try:
            data = json.loads(data)
        except ValueError:
            return {}
    return data if isinstance(data, dict) else {}


def parse_deposit_event(data: Any) -> DepositEvent:
    payload = _decode_data(data)
    wallet_address = payload.get("walletAddress") or ""
    tx_id = payload.get("txId") or payload.get("transactionId") or ""
    return DepositEvent(
        amount=str(payload.get("amount", "")),
        currency=payload.get("currency") or "USDC",
        network=payload.get("network") or "Solana",
        wallet_address_suffix=wallet_address[-6:] or None,
        tx_id_suffix=tx_id[-10:] or None,
    )


class PusherNotificationChannel(BaseNotificationChannel):
    """One websocket per subscribed conversation"""

    def __init__(
        self,
        app_key: Optional[str] = None,
        cluster: Optional[str] = None,
        auth_url: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        connect: Callable[..., Any] = websockets.connect,
    ):
        self._app_key = app_key or settings.PUSHER_KEY
        self._cluster = cluster or settings.PUSHER_CLUSTER
        self._auth_url = auth_url or f"{settings.COPPERX_API_BASE_URL}/api/notifications/auth"
        self._http = http_client or httpx.AsyncClient(timeout=settings.COPPERX_API_TIMEOUT_SECONDS)
        self._owns_http = http_client is None
        self._connect = connect
        self._handles: dict[ConversationId, NotificationHandle] = {}
        self._tasks: dict[ConversationId, asyncio.Task] = {}

    @property
    def url(self) -> str:
        return (
            f"wss://ws-{self._cluster}.pusher.com/app/{self._app_key}"
            f"?protocol={PROTOCOL_VERSION}&client={CLIENT_NAME}&version={CLIENT_VERSION}"
        )

    def is_open(self, conversation_id: ConversationId) -> bool:
        handle = self._handles.get(conversation_id)
        return handle is not None and not handle.closed

    async def open(
        self,
        conversation_id: ConversationId,
        organization_id: str,
        token: str,
        on_deposit: DepositCallback,
        on_status: Optional[StatusCallback] = None,
    ) -> NotificationHandle:
        existing = self._handles.get(conversation_id)
        if existing is not None and not existing.closed:
            return existing

        handle = NotificationHandle(
            conversation_id=conversation_id,
            organization_id=organization_id,
            channel_name=channel_name_for(organization_id),
        )
        self._handles[conversation_id] = handle
        self._tasks[conversation_id] = asyncio.create_task(
            self._run(handle, token, on_deposit, on_status),
            name=f"pusher:{conversation_id}",
        )
        logger.info(
            "Opening deposit subscription",
            extra_data={"conversation_id": conversation_id, "channel": handle.channel_name}
        )
        return handle

    async def close(self, handle: NotificationHandle) -> None:
        handle.closed = True
        if self._handles.get(handle.conversation_id) is handle:
            del self._handles[handle.conversation_id]
        task = self._tasks.pop(handle.conversation_id, None)
        # A status callback may close the handle from inside its own task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        logger.info(
            "Closed deposit subscription",
            extra_data={"conversation_id": handle.conversation_id, "channel": handle.channel_name}
        )

    async def close_all(self) -> None:
        for handle in list(self._handles.values()):
            await self.close(handle)
        if self._owns_http:
            await self._http.aclose()

    # ── protocol ──

    async def authorize(self, token: str, socket_id: str, channel_name: str) -> str:
        """Sign a private-channel subscription through the payments API"""
        try:
            response = await self._http.post(
                self._auth_url,
                json={"socket_id": socket_id, "channel_name": channel_name},
                headers={"Authorization": f"Bearer {token}"},
            )
        except httpx.HTTPError as e:
            raise NotificationChannelError(
                "Channel authorization request failed",
                details={"channel": channel_name, "error": str(e)},
            ) from e

        if response.status_code != 200:
            raise NotificationChannelError(
                "Channel authorization was rejected",
                details={"channel": channel_name, "status_code": response.status_code},
            )
        auth = (response.json() or {}).get("auth")
        if not auth:
            raise NotificationChannelError(
                "Channel authorization returned no signature",
                details={"channel": channel_name},
            )
        return auth

    async def _run(
        self,
        handle: NotificationHandle,
        token: str,
        on_deposit: DepositCallback,
        on_status: Optional[StatusCallback],
    ) -> None:
        attempts = 0
        while not handle.closed:
            try:
                await self._listen(handle, token, on_deposit, on_status)
                attempts = 0
            except NotificationChannelError as e:
                logger.error(
                    "Deposit subscription failed",
                    extra_data={
                        "conversation_id": handle.conversation_id,
                        "error": e.message,
                        **e.details,
                    }
                )
                await self._report(on_status, SubscriptionStatus.FAILED, handle)
                return
            except (ConnectionClosed, OSError, asyncio.TimeoutError) as e:
                attempts += 1
                logger.warning(
                    "Pusher connection lost",
                    extra_data={
                        "conversation_id": handle.conversation_id,
                        "attempt": attempts,
                        "error": str(e),
                    }
                )
            if handle.closed:
                return
            if attempts >= MAX_RECONNECT_ATTEMPTS:
                await self._report(on_status, SubscriptionStatus.FAILED, handle)
                return
            await asyncio.sleep(RECONNECT_BACKOFF_SECONDS * max(attempts, 1))

    async def _listen(
        self,
        handle: NotificationHandle,
        token: str,
        on_deposit: DepositCallback,
        on_status: Optional[StatusCallback],
    ) -> None:
        websocket = await asyncio.wait_for(self._connect(self.url), timeout=CONNECT_TIMEOUT_SECONDS)
        try:
            async for raw in websocket:
                try:
                    message = json.loads(raw)
                except ValueError:
                    logger.warning("Dropping malformed Pusher frame")
                    continue
                event = message.get("event")

                if event == "pusher:connection_established":
                    socket_id = _decode_data(message.get("data")).get("socket_id")
                    if not socket_id:
                        raise NotificationChannelError("Connection established without a socket id")
                    auth = await self.authorize(token, socket_id, handle.channel_name)
                    await websocket.send(json.dumps({
                        "event": "pusher:subscribe",
                        "data": {"channel": handle.channel_name, "auth": auth},
                    }))

                elif event == "pusher:ping":
                    await websocket.send(json.dumps({"event": "pusher:pong", "data": {}}))

                elif event == "pusher_internal:subscription_succeeded":
                    handle.subscribed = True
                    logger.info(
                        "Subscribed to deposit notifications",
                        extra_data={
                            "conversation_id": handle.conversation_id,
                            "channel": handle.channel_name,
                        }
                    )
                    await self._report(on_status, SubscriptionStatus.SUBSCRIBED, handle)

                elif event == "pusher:subscription_error":
                    raise NotificationChannelError(
                        "Subscription was refused",
                        details={"channel": handle.channel_name, "data": _decode_data(message.get("data"))},
                    )

                elif event == "pusher:error":
                    data = _decode_data(message.get("data"))
                    code = data.get("code") or 0
                    # 4000-4099: the connection must not be re-established
                    if 4000 <= code < 4100:
                        raise NotificationChannelError(
                            data.get("message") or "Pusher refused the connection",
                            details={"code": code},
                        )
                    logger.warning("Pusher error", extra_data={"code": code, "data": data})

                elif event == "deposit" and message.get("channel") == handle.channel_name:
                    deposit = parse_deposit_event(message.get("data"))
                    logger.info(
                        "Deposit notification received",
                        extra_data={
                            "conversation_id": handle.conversation_id,
                            "currency": deposit.currency,
                        }
                    )
                    try:
                        await on_deposit(deposit)
                    except Exception as e:
                        logger.error(
                            "Deposit callback failed",
                            extra_data={"conversation_id": handle.conversation_id, "error": str(e)},
                            exc_info=True,
                        )
        finally:
            await websocket.close()

    async def _report(
        self,
        on_status: Optional[StatusCallback],
        status: SubscriptionStatus,
        handle: NotificationHandle,
    ) -> None:
        if on_status is None or handle.closed:
            return
        try:
            await on_status(status)
        except Exception as e:
            logger.error(
                "Subscription status callback failed",
                extra_data={"conversation_id": handle.conversation_id, "error": str(e)},
            )
