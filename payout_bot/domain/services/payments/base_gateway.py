"""
Payments gateway interface - Dependency Inversion.

The conversation controller depends on this interface only. Every operation
either returns a typed payload or raises ``RemoteApiError`` carrying a
human-readable ``message`` and a ``status_code``; transport-level failures
(5xx, timeouts, network errors) raise the ``RemoteTransportError`` subclass.
Amounts passed in and returned are display amounts unless noted otherwise.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional

from payout_bot.domain.models import (
    AuthResult,
    BankAccount,
    BulkTransferEntry,
    KycRecord,
    OffRampQuote,
    OffRampQuoteParams,
    OtpRequestResult,
    TransactionPage,
    TransferRequest,
    TransferResult,
    UserProfile,
    Wallet,
    WalletBalance,
    WithdrawalParams,
)


class BasePaymentsGateway(ABC):
    """Authenticated operations against the remote payments API"""

    # ── authentication ──

    @abstractmethod
    async def request_otp(self, email: str) -> OtpRequestResult:
        """Email a one-time code; the result carries the request id to verify against."""

    @abstractmethod
    async def verify_otp(self, email: str, otp: str, request_id: str) -> AuthResult:
        """Exchange the code for a bearer token."""

    # ── profile ──

    @abstractmethod
    async def get_profile(self, token: str) -> UserProfile:
        ...

    @abstractmethod
    async def get_kyc_status(self, token: str) -> Optional[KycRecord]:
        """Latest KYC record, or None when the user never started KYC."""

    # ── wallets ──

    @abstractmethod
    async def get_wallets(self, token: str) -> list[Wallet]:
        ...

    @abstractmethod
    async def get_balances(self, token: str) -> list[WalletBalance]:
        ...

    @abstractmethod
    async def get_default_wallet(self, token: str) -> Optional[Wallet]:
        ...

    @abstractmethod
    async def set_default_wallet(self, token: str, wallet_id: str) -> Wallet:
        ...

    # ── withdrawals ──

    @abstractmethod
    async def get_default_bank_account(self, token: str) -> Optional[BankAccount]:
        """The default, active bank account, or None."""

    @abstractmethod
    async def get_off_ramp_quote(self, token: str, params: OffRampQuoteParams) -> OffRampQuote:
        """Quote a bank withdrawal; ``params.amount`` is in base units."""

    @abstractmethod
    async def submit_withdrawal(self, token: str, params: WithdrawalParams) -> TransferResult:
        ...

    # ── transfers ──

    @abstractmethod
    async def send_transfer(self, token: str, request: TransferRequest) -> TransferResult:
        ...

    @abstractmethod
    async def send_bulk_transfer(
        self,
        token: str,
        entries: list[BulkTransferEntry],
    ) -> TransferResult:
        ...

    @abstractmethod
    async def get_transfer_history(self, token: str, page: int, limit: int) -> TransactionPage:
        ...
