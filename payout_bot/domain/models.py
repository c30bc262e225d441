"""
Payments API models

Typed payloads exchanged with the Copperx API. Field names follow Python
conventions; the camelCase wire names are handled by the alias generator.
Amounts on these models are display amounts unless the field name says
``base_amount``; the gateway converts at the wire boundary.
"""
import json
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from payout_bot.core.validation import RecipientType, convert_from_base_unit


class CopperxModel(BaseModel):
    """Base model for Copperx payloads"""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


# ==================== Auth ====================


class OtpRequestResult(CopperxModel):
    request_id: str = Field(alias="sid")


class AuthResult(CopperxModel):
    """Outcome of a successful OTP verification"""
    token: str
    user_id: Optional[str] = None
    organization_id: Optional[str] = None


class UserProfile(CopperxModel):
    id: Optional[str] = None
    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    status: Optional[str] = None
    role: Optional[str] = None
    type: Optional[str] = None
    organization_id: Optional[str] = None
    relayer_address: Optional[str] = None
    wallet_address: Optional[str] = None
    wallet_id: Optional[str] = None
    wallet_account_type: Optional[str] = None


class KycRecord(CopperxModel):
    id: Optional[str] = None
    status: str = "unknown"
    type: Optional[str] = None

    @property
    def is_approved(self) -> bool:
        return self.status.lower() == "approved"


# ==================== Wallets ====================


class Wallet(CopperxModel):
    id: str
    wallet_type: Optional[str] = None
    network: Optional[str] = None
    wallet_address: Optional[str] = None
    is_default: bool = False


class TokenBalance(CopperxModel):
    symbol: str
    balance: Decimal = Decimal("0")
    decimals: Optional[int] = None
    address: Optional[str] = None


class WalletBalance(CopperxModel):
    wallet_id: str
    is_default: bool = False
    network: Optional[str] = None
    balances: list[TokenBalance] = Field(default_factory=list)

    def balance_for(self, symbol: str) -> Decimal:
        """Balance of one token; zero when the wallet does not hold it"""
        for token in self.balances:
            if token.symbol.upper() == symbol.upper():
                return token.balance
        return Decimal("0")


# ==================== Bank accounts and withdrawals ====================


class BankAccountDetails(CopperxModel):
    bank_name: Optional[str] = None
    bank_account_number: Optional[str] = None
    bank_beneficiary_name: Optional[str] = None


class BankAccount(CopperxModel):
    id: str
    country: Optional[str] = None
    status: Optional[str] = None
    is_default: bool = False
    bank_account: Optional[BankAccountDetails] = None


class OffRampQuoteParams(CopperxModel):
    """Body of POST /api/quotes/offramp; ``amount`` is in base units"""
    amount: str
    preferred_bank_account_id: str
    source_country: str = "none"
    destination_country: str = "usa"
    currency: str = "USD"
    only_remittance: bool = True


class QuoteBreakdown(BaseModel):
    """Display figures decoded from a quote payload"""
    amount: Decimal
    to_amount: Decimal
    total_fee: Decimal
    to_currency: Optional[str] = None
    fee_percentage: Optional[str] = None
    destination_method: Optional[str] = None


class OffRampQuote(CopperxModel):
    quote_payload: str
    quote_signature: str
    arrival_time: Optional[str] = None

    def breakdown(self) -> QuoteBreakdown:
        """
        Decode the signed quote payload.

        The payload is an opaque JSON string that is sent back verbatim with
        the withdrawal; only the display figures are read from it here.
        """
        payload = json.loads(self.quote_payload)
        return QuoteBreakdown(
            amount=convert_from_base_unit(payload.get("amount", 0)),
            to_amount=convert_from_base_unit(payload.get("toAmount", 0)),
            total_fee=convert_from_base_unit(payload.get("totalFee", 0)),
            to_currency=payload.get("toCurrency"),
            fee_percentage=(
                str(payload["feePercentage"]) if payload.get("feePercentage") is not None else None
            ),
            destination_method=payload.get("destinationMethod"),
        )


class WithdrawalParams(CopperxModel):
    """Body of POST /api/transfers/offramp"""
    purpose_code: str
    quote_payload: str
    quote_signature: str
    preferred_wallet_id: Optional[str] = None


# ==================== Transfers ====================


class TransferRequest(BaseModel):
    """A single email transfer; ``amount`` is a display amount"""
    recipient: str
    amount: Decimal
    currency: str
    purpose_code: str
    note: Optional[str] = None


class BulkTransferEntry(BaseModel):
    """One finalized line of a bulk transfer"""
    request_id: str
    recipient: str
    recipient_type: RecipientType
    amount: Decimal
    purpose_code: str
    currency: str


class TransferResult(CopperxModel):
    """Response of a transfer, withdrawal or batch submission"""
    id: Optional[str] = None
    status: Optional[str] = None
    amount: Optional[str] = None
    currency: Optional[str] = None
    purpose_code: Optional[str] = None


class Transaction(CopperxModel):
    id: str
    type: Optional[str] = None
    status: Optional[str] = None
    amount: Decimal = Decimal("0")  # display amount
    currency: Optional[str] = None
    created_at: Optional[str] = None
    note: Optional[str] = None
    recipient_email: Optional[str] = None


class TransactionPage(BaseModel):
    page: int
    limit: int
    items: list[Transaction] = Field(default_factory=list)

    @property
    def has_more(self) -> bool:
        return len(self.items) >= self.limit


# ==================== Notifications ====================


class DepositEvent(BaseModel):
    """A deposit pushed on the organization's private channel"""
    amount: str
    currency: str = "USDC"
    network: str = "Solana"
    wallet_address_suffix: Optional[str] = None
    tx_id_suffix: Optional[str] = None
