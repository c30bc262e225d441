"""
Input Validation Utilities

Validation for the free-text inputs a conversation collects:
- Email addresses (login and transfer recipients)
- Wallet addresses (bulk recipients)
- OTP codes
- Monetary amounts and their base-unit representation

All functions are pure: they never touch session state or the network.
"""
import html
import re
from decimal import Decimal, InvalidOperation
from enum import Enum

from payout_bot.core.exceptions import ErrorCode, ValidationException

# Amounts travel to the payments API as integers on this fixed scale
BASE_UNIT_DECIMALS = 8
_BASE_UNIT_QUANTUM = Decimal(1)

# Keeps integer digits + decimals well inside the 28-digit Decimal context
MAX_AMOUNT_INTEGER_DIGITS = 15


class ValidationPatterns:
    """Regex patterns for validation"""

    EMAIL = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

    # EVM style address: 0x followed by 40 hex digits
    WALLET_ADDRESS = re.compile(r"^0x[a-fA-F0-9]{40}$")

    # digits[.digits] - no sign, no exponent, no thousands separators
    AMOUNT = re.compile(r"^[0-9]+(\.[0-9]+)?$")


class RecipientType(str, Enum):
    """How a bulk recipient is addressed"""
    EMAIL = "email"
    WALLET = "wallet"


class EmailValidator:
    """Email validation utilities"""

    @staticmethod
    def validate(email: str) -> bool:
        if not email:
            return False
        return bool(ValidationPatterns.EMAIL.match(email.strip()))

    @staticmethod
    def mask(email: str) -> str:
        """
        Mask an email for logging (privacy).

        Returns:
            Masked email (e.g., us***@example.com)
        """
        local, sep, domain = (email or "").partition("@")
        if not sep:
            return "****"
        return f"{local[:2]}***@{domain}"


class AmountValidator:
    """Monetary amount validation"""

    @staticmethod
    def parse(text: str) -> Decimal:
        """
        Parse a user-typed amount.

        Args:
            text: Raw message text

        Returns:
            The amount as an exact Decimal

        Raises:
            ValidationException: if the text is not a positive decimal number
                that converts to base units exactly
        """
        cleaned = (text or "").strip()
        if not ValidationPatterns.AMOUNT.match(cleaned):
            raise ValidationException(
                "Please enter a valid amount (e.g. 10 or 10.5)",
                field="amount",
                details={"code": ErrorCode.INVALID_AMOUNT.value},
            )
        integer_part, _, fraction = cleaned.partition(".")
        if len(fraction) > BASE_UNIT_DECIMALS:
            raise ValidationException(
                f"Amount can have at most {BASE_UNIT_DECIMALS} decimal places",
                field="amount",
                details={"code": ErrorCode.INVALID_AMOUNT.value},
            )
        if len(integer_part.lstrip("0")) > MAX_AMOUNT_INTEGER_DIGITS:
            raise ValidationException(
                "Amount is too large",
                field="amount",
                details={"code": ErrorCode.INVALID_AMOUNT.value},
            )
        value = Decimal(cleaned)
        if value <= 0:
            raise ValidationException(
                "Amount must be greater than zero",
                field="amount",
                details={"code": ErrorCode.INVALID_AMOUNT.value},
            )
        return value

    @staticmethod
    def validate_range(
        amount: Decimal,
        min_value: Decimal,
        max_value: Decimal,
        currency: str = "USD"
    ) -> tuple[bool, str | None]:
        """
        Validate that an amount falls inside [min_value, max_value].

        Returns:
            Tuple of (is_valid, error_message)
        """
        if amount < min_value:
            return False, f"Minimum amount is {min_value} {currency}"
        if amount > max_value:
            return False, f"Maximum amount is {max_value} {currency}"
        return True, None


def is_valid_email(text: str) -> bool:
    return EmailValidator.validate(text)


def is_valid_wallet_address(text: str) -> bool:
    if not text:
        return False
    return bool(ValidationPatterns.WALLET_ADDRESS.match(text.strip()))


def is_valid_otp(text: str) -> bool:
    """Length is the only enforced constraint; the API rejects a wrong code"""
    return text is not None and len(text.strip()) == 6


def is_valid_amount(text: str) -> bool:
    try:
        AmountValidator.parse(text)
    except ValidationException:
        return False
    return True


def parse_amount(text: str) -> Decimal:
    return AmountValidator.parse(text)


def classify_recipient(text: str) -> RecipientType | None:
    """Return how a bulk recipient is addressed, or None if it is neither"""
    if is_valid_email(text):
        return RecipientType.EMAIL
    if is_valid_wallet_address(text):
        return RecipientType.WALLET
    return None


def convert_to_base_unit(amount: Decimal | str | int) -> str:
    """
    Convert a display amount to its integer base-unit string.

    Amounts that do not fit the 8-decimal scale exactly are rejected rather
    than rounded, so the submitted value always equals the confirmed one.

    >>> convert_to_base_unit("10.5")
    '1050000000'
    """
    try:
        scaled = Decimal(str(amount)).scaleb(BASE_UNIT_DECIMALS)
        if not scaled.is_finite() or scaled != scaled.to_integral_value():
            raise ValidationException(
                f"Amount {amount!s} has more than {BASE_UNIT_DECIMALS} decimal places",
                field="amount",
            )
        return str(scaled.quantize(_BASE_UNIT_QUANTUM))
    except InvalidOperation as e:
        raise ValidationException(f"Invalid amount: {amount!r}", field="amount") from e


def convert_from_base_unit(value: Decimal | str | int) -> Decimal:
    """
    Convert a base-unit amount back to a display Decimal.

    >>> convert_from_base_unit("1050000000")
    Decimal('10.50000000')
    """
    try:
        base = Decimal(str(value))
    except InvalidOperation as e:
        raise ValidationException(f"Invalid base-unit amount: {value!r}", field="amount") from e
    return base.scaleb(-BASE_UNIT_DECIMALS)


def format_amount(amount: Decimal) -> str:
    """Human readable amount without trailing zeros (10.50000000 -> 10.5)"""
    normalized = amount.normalize()
    # normalize() turns 100 into 1E+2
    if normalized == normalized.to_integral_value():
        return str(normalized.quantize(_BASE_UNIT_QUANTUM))
    return format(normalized, "f")


def mask_email(email: str) -> str:
    return EmailValidator.mask(email)


def escape_html(text: str) -> str:
    """Escape user-provided text before it goes into an HTML formatted reply"""
    if not text:
        return ""
    return html.escape(text)
