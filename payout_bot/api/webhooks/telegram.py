"""
Telegram Webhook Handler - Bot Gateway Layer

Parses Telegram updates and hands them to the conversation controller as
commands, free text or button presses. Processing happens in a background
task so Telegram gets its 200 immediately.
"""
from dataclasses import dataclass
from typing import List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends
from pydantic import BaseModel, ConfigDict, Field

from payout_bot.api.dependencies.bot import get_controller
from payout_bot.api.dependencies.webhook_auth import verify_telegram_webhook_token
from payout_bot.core.logging import get_logger, set_correlation_id, update_correlation_id
from payout_bot.state_machine.controller import ConversationController

logger = get_logger(__name__)

router = APIRouter()


class TelegramUser(BaseModel):
    id: int
    first_name: str
    last_name: Optional[str] = None
    username: Optional[str] = None


class TelegramChat(BaseModel):
    id: int
    type: str


class TelegramMessageEntity(BaseModel):
    type: str
    offset: int
    length: int


class TelegramMessage(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    message_id: int
    from_user: Optional[TelegramUser] = Field(default=None, alias="from")
    chat: TelegramChat
    text: Optional[str] = None
    entities: Optional[List[TelegramMessageEntity]] = None
    date: int


class TelegramCallbackQuery(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    from_user: Optional[TelegramUser] = Field(default=None, alias="from")
    message: Optional[TelegramMessage] = None
    data: Optional[str] = None


class TelegramUpdate(BaseModel):
    update_id: int
    message: Optional[TelegramMessage] = None
    edited_message: Optional[TelegramMessage] = None
    callback_query: Optional[TelegramCallbackQuery] = None


@dataclass(frozen=True)
class InboundTelegramEvent:
    """Normalized inbound event"""
    chat_id: int
    kind: str  # "command", "text" or "callback"
    payload: str
    message_id: Optional[int] = None
    callback_query_id: Optional[str] = None


def _is_command(message: TelegramMessage) -> bool:
    text = message.text or ""
    if message.entities:
        return any(entity.type == "bot_command" and entity.offset == 0 for entity in message.entities)
    return text.startswith("/")


def parse_inbound_event(update: TelegramUpdate) -> Optional[InboundTelegramEvent]:
    """Normalize an update to a command, text or button event; None if irrelevant"""
    if update.callback_query:
        callback = update.callback_query
        if callback.message is None:
            # Inline-mode callbacks carry no chat to answer in
            return None
        return InboundTelegramEvent(
            chat_id=callback.message.chat.id,
            kind="callback",
            payload=callback.data or "",
            message_id=callback.message.message_id,
            callback_query_id=callback.id,
        )

    message = update.message
    if message is None or message.text is None:
        return None
    if _is_command(message):
        return InboundTelegramEvent(
            chat_id=message.chat.id,
            kind="command",
            payload=message.text,
            message_id=message.message_id,
        )
    return InboundTelegramEvent(
        chat_id=message.chat.id,
        kind="text",
        payload=message.text,
        message_id=message.message_id,
    )


async def dispatch_event(
    controller: ConversationController,
    event: InboundTelegramEvent,
    correlation_id: str,
) -> None:
    """Run one inbound event through the controller"""
    set_correlation_id(correlation_id)
    if event.kind == "command":
        await controller.on_command(event.payload, event.chat_id)
    elif event.kind == "callback":
        await controller.on_callback(
            event.chat_id,
            event.payload,
            message_id=event.message_id,
            callback_query_id=event.callback_query_id,
        )
    else:
        await controller.on_text(event.chat_id, event.payload)


@router.post(
    "/webhook",
    summary="Telegram webhook (inbound updates)",
    description="Entry point for Telegram Bot API updates: text messages, commands and button presses.",
)
async def telegram_webhook(
    update: TelegramUpdate,
    background_tasks: BackgroundTasks,
    controller: ConversationController = Depends(get_controller),
    _: None = Depends(verify_telegram_webhook_token),
):
    event = parse_inbound_event(update)
    if event is None:
        logger.debug("Ignoring Telegram update", extra_data={"update_id": update.update_id})
        return {"ok": True}

    correlation_id = set_correlation_id(update_correlation_id(update.update_id))
    logger.info(
        "Telegram update received",
        extra_data={"update_id": update.update_id, "chat_id": event.chat_id, "kind": event.kind}
    )
    background_tasks.add_task(dispatch_event, controller, event, correlation_id)
    return {"ok": True}
