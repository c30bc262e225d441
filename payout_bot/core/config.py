"""
Application Configuration
"""
import warnings
from decimal import Decimal

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    APP_NAME: str = "Copperx Payout Bot"
    DEBUG: bool = False

    # Telegram
    # Without a bot token the process must not start
    TELEGRAM_BOT_TOKEN: str
    TELEGRAM_API_URL: str = "https://api.telegram.org"
    TELEGRAM_WEBHOOK_SECRET_TOKEN: str = ""  # openssl rand -hex 32

    # Webhook rate limiting (per client IP, sliding window)
    WEBHOOK_RATE_LIMIT_MAX_REQUESTS: int = 100
    WEBHOOK_RATE_LIMIT_WINDOW_SECONDS: int = 60

    # Copperx payments API
    COPPERX_API_BASE_URL: str = "https://income-api.copperx.io"
    COPPERX_API_TIMEOUT_SECONDS: float = 15.0
    COPPERX_PLATFORM_URL: str = "https://payout.copperx.io/app/"

    # Pusher (deposit notifications)
    PUSHER_KEY: str = ""
    PUSHER_CLUSTER: str = "ap1"
    NOTIFICATIONS_ENABLED: bool = True

    # Circuit breakers (Copperx API and Telegram Bot API)
    CIRCUIT_BREAKER_FAILURE_THRESHOLD: int = 5
    CIRCUIT_BREAKER_RECOVERY_SECONDS: float = 30.0

    # Money
    DEFAULT_CURRENCY: str = "USD"
    WITHDRAWAL_MIN_AMOUNT: Decimal = Decimal("50")
    WITHDRAWAL_MAX_AMOUNT: Decimal = Decimal("50000")

    # Conversation sessions
    SESSION_TTL_SECONDS: int = 0  # 0 = sessions never expire
    OTP_RESEND_PROMPT_DELAY_SECONDS: float = 25.0
    NOTICE_AUTO_DELETE_SECONDS: float = 5.0
    HISTORY_PAGE_SIZE: int = 10

    SUPPORT_URL: str = "https://t.me/copperxcommunity/2183"

    @field_validator("TELEGRAM_BOT_TOKEN", mode="after")
    @classmethod
    def validate_bot_token(cls, v: str) -> str:
        """A blank token is as fatal as a missing one"""
        if not v.strip():
            raise ValueError("TELEGRAM_BOT_TOKEN is required")
        return v.strip()

    @field_validator("COPPERX_API_BASE_URL", "TELEGRAM_API_URL", mode="before")
    @classmethod
    def normalize_base_url(cls, v: str) -> str:
        if v and not v.startswith("http"):
            v = f"https://{v}"
        return v.rstrip("/")

    @field_validator("DEFAULT_CURRENCY", mode="before")
    @classmethod
    def normalize_currency(cls, v: str) -> str:
        return v.strip().upper()

    @field_validator("SESSION_TTL_SECONDS", "HISTORY_PAGE_SIZE", "CIRCUIT_BREAKER_RECOVERY_SECONDS", mode="after")
    @classmethod
    def validate_non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("value must not be negative")
        return v

    @field_validator("CIRCUIT_BREAKER_FAILURE_THRESHOLD", mode="after")
    @classmethod
    def validate_failure_threshold(cls, v: int) -> int:
        if v < 1:
            raise ValueError("a breaker must allow at least one failure")
        return v

    @model_validator(mode="after")
    def validate_withdrawal_limits(self) -> "Settings":
        """Withdrawal bounds must describe a non-empty range"""
        if self.WITHDRAWAL_MIN_AMOUNT <= 0:
            raise ValueError("WITHDRAWAL_MIN_AMOUNT must be positive")
        if self.WITHDRAWAL_MAX_AMOUNT < self.WITHDRAWAL_MIN_AMOUNT:
            raise ValueError(
                "WITHDRAWAL_MAX_AMOUNT must be greater than or equal to WITHDRAWAL_MIN_AMOUNT"
            )

        if not self.TELEGRAM_WEBHOOK_SECRET_TOKEN and not self.DEBUG:
            warnings.warn(
                "TELEGRAM_WEBHOOK_SECRET_TOKEN is empty - the Telegram webhook is not authenticated. "
                "Set: export TELEGRAM_WEBHOOK_SECRET_TOKEN=$(openssl rand -hex 32)",
                stacklevel=2,
            )
        return self

    @property
    def notifications_configured(self) -> bool:
        return self.NOTIFICATIONS_ENABLED and bool(self.PUSHER_KEY)

    class Config:
        env_file = ".env"
        case_sensitive = True


settings = Settings()
