"""
Telegram Bot API transport over httpx with circuit breaker protection.
"""
from typing import Any, Optional

import httpx

from payout_bot.core.circuit_breaker import CircuitBreaker, get_telegram_circuit_breaker
from payout_bot.core.config import settings
from payout_bot.core.exceptions import TelegramError, TelegramUnavailableError
from payout_bot.core.logging import get_logger
from payout_bot.domain.services.chat.base_transport import (
    BaseChatTransport,
    ChatId,
    ReplyOptions,
)

logger = get_logger(__name__)


def build_reply_markup(options: ReplyOptions) -> Optional[dict[str, Any]]:
    """Translate ReplyOptions into Telegram's reply_markup object"""
    if options.buttons:
        inline_keyboard = []
        for row in options.buttons:
            inline_row = []
            for button in row:
                item: dict[str, Any] = {"text": button.label}
                if button.url:
                    item["url"] = button.url
                else:
                    item["callback_data"] = button.callback_data or button.label
                inline_row.append(item)
            inline_keyboard.append(inline_row)
        return {"inline_keyboard": inline_keyboard}

    if options.force_reply:
        markup: dict[str, Any] = {"force_reply": True}
        if options.placeholder:
            markup["input_field_placeholder"] = options.placeholder
        return markup

    return None


class TelegramTransport(BaseChatTransport):
    """Sends replies through the Telegram Bot API"""

    def __init__(
        self,
        bot_token: Optional[str] = None,
        api_url: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
    ):
        token = bot_token or settings.TELEGRAM_BOT_TOKEN
        self._base_url = f"{api_url or settings.TELEGRAM_API_URL}/bot{token}"
        self._client = client or httpx.AsyncClient(timeout=30.0)
        self._owns_client = client is None
        self._circuit_breaker = circuit_breaker or get_telegram_circuit_breaker()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _call(self, method: str, payload: dict[str, Any]) -> dict[str, Any]:
        async def _send() -> dict[str, Any]:
            response = await self._client.post(f"{self._base_url}/{method}", json=payload)
            if response.status_code == 400 and "message is not modified" in response.text:
                # The message already shows this content
                return {"ok": True, "result": True}
            if response.status_code >= 500 or response.status_code == 429:
                raise TelegramUnavailableError.from_response(method, response)
            if response.status_code != 200:
                raise TelegramError.from_response(method, response)
            return response.json()

        return await self._circuit_breaker.execute(_send)

    async def _safe_call(
        self,
        method: str,
        payload: dict[str, Any],
        log_context: dict[str, Any],
    ) -> Optional[dict[str, Any]]:
        try:
            return await self._call(method, payload)
        except Exception as e:
            logger.error(
                f"Telegram {method} failed",
                extra_data={**log_context, "error": str(e)},
                exc_info=not isinstance(e, TelegramError),
            )
            return None

    async def send_message(
        self,
        chat_id: ChatId,
        text: str,
        options: Optional[ReplyOptions] = None,
    ) -> Optional[int]:
        options = options or ReplyOptions()
        payload: dict[str, Any] = {
            "chat_id": chat_id,
            "text": text,
            "disable_web_page_preview": True,
        }
        if options.parse_mode:
            payload["parse_mode"] = options.parse_mode
        reply_markup = build_reply_markup(options)
        if reply_markup:
            payload["reply_markup"] = reply_markup

        body = await self._safe_call("sendMessage", payload, {"chat_id": chat_id})
        if not body:
            return None
        return (body.get("result") or {}).get("message_id")

    async def edit_message(
        self,
        chat_id: ChatId,
        message_id: int,
        text: Optional[str] = None,
        options: Optional[ReplyOptions] = None,
    ) -> bool:
        options = options or ReplyOptions()
        payload: dict[str, Any] = {"chat_id": chat_id, "message_id": message_id}
        reply_markup = build_reply_markup(options)
        if reply_markup:
            payload["reply_markup"] = reply_markup

        if text is None:
            method = "editMessageReplyMarkup"
        else:
            method = "editMessageText"
            payload["text"] = text
            if options.parse_mode:
                payload["parse_mode"] = options.parse_mode

        body = await self._safe_call(
            method, payload, {"chat_id": chat_id, "message_id": message_id}
        )
        return body is not None

    async def delete_message(self, chat_id: ChatId, message_id: int) -> bool:
        body = await self._safe_call(
            "deleteMessage",
            {"chat_id": chat_id, "message_id": message_id},
            {"chat_id": chat_id, "message_id": message_id},
        )
        return body is not None

    async def answer_callback(
        self,
        callback_query_id: str,
        text: Optional[str] = None,
        show_alert: bool = False,
    ) -> bool:
        payload: dict[str, Any] = {"callback_query_id": callback_query_id}
        if text:
            payload["text"] = text
            payload["show_alert"] = show_alert
        body = await self._safe_call(
            "answerCallbackQuery", payload, {"callback_query_id": callback_query_id}
        )
        return body is not None
