"""
Payout Bot - Main FastAPI Application
"""
from fastapi import FastAPI

from payout_bot.api.routes import router as api_router
from payout_bot.core.config import settings
from payout_bot.core.logging import get_logger, setup_logging
from payout_bot.core.middleware import setup_exception_handlers, setup_middleware
from payout_bot.domain.services.chat.telegram_transport import TelegramTransport
from payout_bot.domain.services.notifications.pusher_channel import PusherNotificationChannel
from payout_bot.domain.services.payments.copperx_gateway import CopperxGateway
from payout_bot.state_machine.controller import ConversationController
from payout_bot.state_machine.scheduler import DeferredTaskScheduler
from payout_bot.state_machine.store import SessionStore

# Setup logging before anything else
setup_logging(
    level="DEBUG" if settings.DEBUG else "INFO",
    json_format=not settings.DEBUG,
)

logger = get_logger(__name__)


_OPENAPI_TAGS = [
    {"name": "Webhooks", "description": "Inbound Telegram Bot API updates."},
    {"name": "Health", "description": "Liveness check."},
]


app = FastAPI(
    title=settings.APP_NAME,
    version="1.0.0",
    description=(
        "Telegram bot for a stablecoin payments platform: login, balances, "
        "transfers, bank withdrawals and deposit notifications."
    ),
    openapi_tags=_OPENAPI_TAGS,
)

# Setup middleware (correlation ID, request logging, webhook rate limit)
setup_middleware(app)
setup_exception_handlers(app)

app.include_router(api_router, prefix="/api")


@app.on_event("startup")
async def startup() -> None:
    """Build the conversation controller and its collaborators"""
    logger.info("Starting application", extra_data={"app_name": settings.APP_NAME})

    channel = None
    if settings.notifications_configured:
        channel = PusherNotificationChannel()
    else:
        logger.warning("PUSHER_KEY not set, deposit notifications are disabled")

    if not settings.TELEGRAM_WEBHOOK_SECRET_TOKEN:
        logger.warning("TELEGRAM_WEBHOOK_SECRET_TOKEN not set, webhook requests are not verified")

    gateway = CopperxGateway()
    transport = TelegramTransport()
    app.state.gateway = gateway
    app.state.transport = transport
    app.state.channel = channel
    app.state.controller = ConversationController(
        store=SessionStore(ttl_seconds=settings.SESSION_TTL_SECONDS),
        gateway=gateway,
        transport=transport,
        channel=channel,
        scheduler=DeferredTaskScheduler(),
    )
    logger.info("Conversation controller ready")


@app.on_event("shutdown")
async def shutdown() -> None:
    """Close subscriptions and HTTP clients"""
    logger.info("Shutting down application")
    controller = getattr(app.state, "controller", None)
    if controller is not None:
        await controller.shutdown()
    channel = getattr(app.state, "channel", None)
    if channel is not None:
        await channel.close_all()
    for client in (getattr(app.state, "gateway", None), getattr(app.state, "transport", None)):
        if client is not None:
            await client.aclose()
    logger.info("Shutdown complete")


@app.get(
    "/health",
    summary="Liveness check",
    description="Lightweight check that the process is up. Does not call external services.",
    tags=["Health"],
)
async def health_check() -> dict[str, str]:
    """Liveness check"""
    return {"status": "healthy"}
