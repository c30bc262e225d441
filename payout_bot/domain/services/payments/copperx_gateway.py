"""
Copperx API gateway over httpx.

Normalizes every failure to ``RemoteApiError`` / ``RemoteTransportError``,
converts display amounts to base units on the way out and back on the way
in, and routes all calls through the ``copperx`` circuit breaker. There are
no automatic retries; every retry is user initiated.
"""
import uuid
from typing import Any, Optional

import httpx

from payout_bot.core.circuit_breaker import CircuitBreaker, get_copperx_circuit_breaker
from payout_bot.core.config import settings
from payout_bot.core.exceptions import (
    CircuitBreakerOpenError,
    RemoteApiError,
    RemoteTransportError,
)
from payout_bot.core.logging import get_logger, log_async_operation
from payout_bot.core.validation import (
    RecipientType,
    convert_from_base_unit,
    convert_to_base_unit,
    mask_email,
)
from payout_bot.domain.models import (
    AuthResult,
    BankAccount,
    BulkTransferEntry,
    KycRecord,
    OffRampQuote,
    OffRampQuoteParams,
    OtpRequestResult,
    Transaction,
    TransactionPage,
    TransferRequest,
    TransferResult,
    UserProfile,
    Wallet,
    WalletBalance,
    WithdrawalParams,
)
from payout_bot.domain.services.payments.base_gateway import BasePaymentsGateway

logger = get_logger(__name__)

UNEXPECTED_ERROR_MESSAGE = "An unexpected error occurred"


def _items(body: Any) -> list[Any]:
    """Copperx wraps most lists in {"data": [...]}; a few endpoints return bare lists"""
    if isinstance(body, dict):
        return body.get("data") or []
    return body or []


class CopperxGateway(BasePaymentsGateway):
    """Payments gateway backed by the Copperx REST API"""

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
    ):
        self._client = client or httpx.AsyncClient(
            base_url=base_url or settings.COPPERX_API_BASE_URL,
            timeout=timeout_seconds or settings.COPPERX_API_TIMEOUT_SECONDS,
            headers={"Accept": "application/json"},
        )
        self._owns_client = client is None
        self._circuit_breaker = circuit_breaker or get_copperx_circuit_breaker()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        token: Optional[str] = None,
        json: Optional[dict[str, Any]] = None,
        params: Optional[dict[str, Any]] = None,
    ) -> Any:
        headers = {"Authorization": f"Bearer {token}"} if token else None

        async def _send() -> Any:
            try:
                response = await self._client.request(
                    method, path, json=json, params=params, headers=headers
                )
            except httpx.TimeoutException as e:
                raise RemoteTransportError(
                    "Connection timed out. Please try again.",
                    status_code=504,
                    details={"operation": f"{method} {path}"},
                ) from e
            except httpx.HTTPError as e:
                raise RemoteTransportError(
                    UNEXPECTED_ERROR_MESSAGE,
                    status_code=503,
                    details={"operation": f"{method} {path}", "error": str(e)},
                ) from e

            if response.status_code >= 400:
                raise RemoteApiError.from_response(f"{method} {path}", response)
            if not response.content:
                return None
            try:
                return response.json()
            except ValueError as e:
                raise RemoteTransportError(
                    UNEXPECTED_ERROR_MESSAGE,
                    status_code=502,
                    details={"operation": f"{method} {path}", "error": "invalid JSON body"},
                ) from e

        try:
            return await self._circuit_breaker.execute(_send)
        except CircuitBreakerOpenError as e:
            raise RemoteTransportError(
                "The payments service is temporarily unavailable. Please try again shortly.",
                status_code=503,
                details=e.details,
            ) from e

    # ── authentication ──

    @log_async_operation("copperx.request_otp")
    async def request_otp(self, email: str) -> OtpRequestResult:
        logger.info("Requesting email OTP", extra_data={"email": mask_email(email)})
        body = await self._request(
            "POST", "/api/auth/email-otp/request", json={"email": email.strip()}
        )
        return OtpRequestResult.model_validate(body)

    @log_async_operation("copperx.verify_otp")
    async def verify_otp(self, email: str, otp: str, request_id: str) -> AuthResult:
        body = await self._request(
            "POST",
            "/api/auth/email-otp/authenticate",
            json={"email": email.strip(), "otp": otp.strip(), "sid": request_id},
        )
        if not isinstance(body, dict) or not body.get("accessToken"):
            raise RemoteApiError("Invalid or expired OTP", status_code=401)
        user = body.get("user") or {}
        return AuthResult(
            token=body["accessToken"],
            user_id=user.get("id"),
            organization_id=user.get("organizationId"),
        )

    # ── profile ──

    @log_async_operation("copperx.get_profile")
    async def get_profile(self, token: str) -> UserProfile:
        body = await self._request("GET", "/api/auth/me", token=token)
        return UserProfile.model_validate(body)

    @log_async_operation("copperx.get_kyc_status")
    async def get_kyc_status(self, token: str) -> Optional[KycRecord]:
        body = await self._request("GET", "/api/kycs", token=token)
        records = _items(body)
        if not records:
            return None
        return KycRecord.model_validate(records[0])

    # ── wallets ──

    @log_async_operation("copperx.get_wallets")
    async def get_wallets(self, token: str) -> list[Wallet]:
        body = await self._request("GET", "/api/wallets", token=token)
        return [Wallet.model_validate(item) for item in _items(body)]

    @log_async_operation("copperx.get_balances")
    async def get_balances(self, token: str) -> list[WalletBalance]:
        body = await self._request("GET", "/api/wallets/balances", token=token)
        return [WalletBalance.model_validate(item) for item in _items(body)]

    async def get_default_wallet(self, token: str) -> Optional[Wallet]:
        wallets = await self.get_wallets(token)
        return next((wallet for wallet in wallets if wallet.is_default), None)

    @log_async_operation("copperx.set_default_wallet")
    async def set_default_wallet(self, token: str, wallet_id: str) -> Wallet:
        body = await self._request(
            "POST", "/api/wallets/default", token=token, json={"walletId": wallet_id}
        )
        return Wallet.model_validate(body)

    # ── withdrawals ──

    @log_async_operation("copperx.get_default_bank_account")
    async def get_default_bank_account(self, token: str) -> Optional[BankAccount]:
        body = await self._request("GET", "/api/accounts", token=token)
        for item in _items(body):
            account = BankAccount.model_validate(item)
            if account.is_default and account.bank_account and account.status == "active":
                return account
        return None

    @log_async_operation("copperx.get_off_ramp_quote")
    async def get_off_ramp_quote(self, token: str, params: OffRampQuoteParams) -> OffRampQuote:
        body = await self._request(
            "POST",
            "/api/quotes/offramp",
            token=token,
            json=params.model_dump(by_alias=True),
        )
        if not body or not body.get("quotePayload"):
            raise RemoteApiError("Failed to get withdrawal quote.", status_code=422)
        return OffRampQuote.model_validate(body)

    @log_async_operation("copperx.submit_withdrawal")
    async def submit_withdrawal(self, token: str, params: WithdrawalParams) -> TransferResult:
        body = await self._request(
            "POST",
            "/api/transfers/offramp",
            token=token,
            json=params.model_dump(by_alias=True, exclude_none=True),
        )
        return TransferResult.model_validate(body or {})

    # ── transfers ──

    @log_async_operation("copperx.send_transfer")
    async def send_transfer(self, token: str, request: TransferRequest) -> TransferResult:
        payload: dict[str, Any] = {
            "email": request.recipient,
            "amount": convert_to_base_unit(request.amount),
            "purposeCode": request.purpose_code,
            "currency": request.currency,
        }
        if request.note:
            payload["note"] = request.note
        body = await self._request("POST", "/api/transfers/send", token=token, json=payload)
        return TransferResult.model_validate(body or {})

    @log_async_operation("copperx.send_bulk_transfer")
    async def send_bulk_transfer(
        self,
        token: str,
        entries: list[BulkTransferEntry],
    ) -> TransferResult:
        requests = []
        for entry in entries:
            recipient_key = "email" if entry.recipient_type == RecipientType.EMAIL else "walletAddress"
            requests.append({
                "requestId": entry.request_id or str(uuid.uuid4()),
                "request": {
                    recipient_key: entry.recipient,
                    "amount": convert_to_base_unit(entry.amount),
                    "purposeCode": entry.purpose_code,
                    "currency": entry.currency,
                },
            })
        body = await self._request(
            "POST", "/api/transfers/send-batch", token=token, json={"requests": requests}
        )
        return TransferResult.model_validate(body or {})

    @log_async_operation("copperx.get_transfer_history")
    async def get_transfer_history(self, token: str, page: int, limit: int) -> TransactionPage:
        body = await self._request(
            "GET", "/api/transfers", token=token, params={"page": page, "limit": limit}
        )
        items = []
        for item in _items(body):
            data = dict(item)
            data["amount"] = convert_from_base_unit(data.get("amount") or 0)
            items.append(Transaction.model_validate(data))
        return TransactionPage(page=page, limit=limit, items=items)
