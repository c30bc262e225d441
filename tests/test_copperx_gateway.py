"""
Tests for the Copperx gateway: request shapes, response mapping and error normalization
"""
import json
from decimal import Decimal

import httpx
import pytest

from payout_bot.core.circuit_breaker import CircuitBreaker, CircuitBreakerConfig
from payout_bot.core.exceptions import RemoteApiError, RemoteTransportError
from payout_bot.core.validation import RecipientType
from payout_bot.domain.models import (
    BulkTransferEntry,
    OffRampQuoteParams,
    TransferRequest,
    WithdrawalParams,
)
from payout_bot.domain.services.payments import CopperxGateway

BASE_URL = "https://copperx.test"


class FakeCopperx:
    """Routes requests to canned responses and records what was sent"""

    def __init__(self):
        self.routes: dict[tuple[str, str], object] = {}
        self.requests: list[httpx.Request] = []

    def on(self, method: str, path: str, response) -> None:
        self.routes[(method, path)] = response

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        response = self.routes.get((request.method, request.url.path))
        if response is None:
            return httpx.Response(404, json={"message": "Not found"})
        if isinstance(response, Exception):
            raise response
        if callable(response):
            return response(request)
        return response

    @property
    def last_json(self) -> dict:
        return json.loads(self.requests[-1].content)


@pytest.fixture
def copperx() -> FakeCopperx:
    return FakeCopperx()


@pytest.fixture
def breaker() -> CircuitBreaker:
    return CircuitBreaker(
        "copperx-test",
        CircuitBreakerConfig(failure_threshold=2, timeout_seconds=60, counted_exceptions=(RemoteTransportError,)),
    )


@pytest.fixture
async def gateway(copperx, breaker):
    client = httpx.AsyncClient(base_url=BASE_URL, transport=httpx.MockTransport(copperx.handler))
    gw = CopperxGateway(client=client, circuit_breaker=breaker)
    yield gw
    await client.aclose()


class TestAuthentication:

    @pytest.mark.unit
    async def test_request_otp(self, gateway, copperx):
        copperx.on("POST", "/api/auth/email-otp/request", httpx.Response(200, json={"sid": "sid-9"}))

        result = await gateway.request_otp(" user@example.com ")

        assert result.request_id == "sid-9"
        assert copperx.last_json == {"email": "user@example.com"}
        assert "authorization" not in copperx.requests[-1].headers

    @pytest.mark.unit
    async def test_verify_otp(self, gateway, copperx):
        copperx.on("POST", "/api/auth/email-otp/authenticate", httpx.Response(200, json={
            "scheme": "bearer",
            "accessToken": "tok-1",
            "user": {"id": "user-1", "organizationId": "org-1", "email": "user@example.com"},
        }))

        result = await gateway.verify_otp("user@example.com", "123456", "sid-9")

        assert (result.token, result.user_id, result.organization_id) == ("tok-1", "user-1", "org-1")
        assert copperx.last_json == {"email": "user@example.com", "otp": "123456", "sid": "sid-9"}

    @pytest.mark.unit
    async def test_verify_without_token_is_rejected(self, gateway, copperx):
        copperx.on("POST", "/api/auth/email-otp/authenticate", httpx.Response(200, json={}))

        with pytest.raises(RemoteApiError) as exc_info:
            await gateway.verify_otp("user@example.com", "123456", "sid-9")

        assert exc_info.value.status_code == 401

    @pytest.mark.unit
    async def test_bearer_token_is_sent(self, gateway, copperx):
        copperx.on("GET", "/api/auth/me", httpx.Response(200, json={
            "id": "user-1", "email": "user@example.com", "firstName": "Jane", "organizationId": "org-1",
        }))

        profile = await gateway.get_profile("tok-1")

        assert copperx.requests[-1].headers["authorization"] == "Bearer tok-1"
        assert profile.first_name == "Jane"
        assert profile.organization_id == "org-1"


class TestAccountReads:

    @pytest.mark.unit
    async def test_kyc_first_record(self, gateway, copperx):
        copperx.on("GET", "/api/kycs", httpx.Response(200, json={
            "data": [{"id": "kyc-1", "status": "approved", "type": "individual"}],
        }))

        record = await gateway.get_kyc_status("tok")

        assert record.is_approved

    @pytest.mark.unit
    async def test_kyc_none(self, gateway, copperx):
        copperx.on("GET", "/api/kycs", httpx.Response(200, json={"data": []}))

        assert await gateway.get_kyc_status("tok") is None

    @pytest.mark.unit
    async def test_wallets_and_default(self, gateway, copperx):
        copperx.on("GET", "/api/wallets", httpx.Response(200, json=[
            {"id": "w-1", "network": "polygon", "walletAddress": "0xabc", "isDefault": False},
            {"id": "w-2", "network": "solana", "walletAddress": "So1abc", "isDefault": True},
        ]))

        wallets = await gateway.get_wallets("tok")
        default = await gateway.get_default_wallet("tok")

        assert [wallet.id for wallet in wallets] == ["w-1", "w-2"]
        assert default.id == "w-2"

    @pytest.mark.unit
    async def test_no_default_wallet(self, gateway, copperx):
        copperx.on("GET", "/api/wallets", httpx.Response(200, json=[{"id": "w-1"}]))

        assert await gateway.get_default_wallet("tok") is None

    @pytest.mark.unit
    async def test_balances(self, gateway, copperx):
        copperx.on("GET", "/api/wallets/balances", httpx.Response(200, json=[{
            "walletId": "w-1",
            "isDefault": True,
            "network": "polygon",
            "balances": [{"symbol": "USDC", "balance": "12.5", "decimals": 6}],
        }]))

        balances = await gateway.get_balances("tok")

        assert balances[0].balance_for("usdc") == Decimal("12.5")
        assert balances[0].balance_for("USDT") == Decimal("0")

    @pytest.mark.unit
    async def test_set_default_wallet(self, gateway, copperx):
        copperx.on("POST", "/api/wallets/default", httpx.Response(200, json={"id": "w-1", "isDefault": True}))

        wallet = await gateway.set_default_wallet("tok", "w-1")

        assert copperx.last_json == {"walletId": "w-1"}
        assert wallet.is_default

    @pytest.mark.unit
    async def test_history_converts_base_units(self, gateway, copperx):
        copperx.on("GET", "/api/transfers", httpx.Response(200, json={"data": [
            {"id": "tx-1", "type": "send", "status": "success", "amount": "1050000000", "currency": "USDC"},
        ]}))

        page = await gateway.get_transfer_history("tok", 2, 10)

        request = copperx.requests[-1]
        assert request.url.params["page"] == "2"
        assert request.url.params["limit"] == "10"
        assert page.page == 2
        assert page.items[0].amount == Decimal("10.5")
        assert not page.has_more


class TestWithdrawals:

    @pytest.mark.unit
    async def test_default_bank_account_must_be_active(self, gateway, copperx):
        copperx.on("GET", "/api/accounts", httpx.Response(200, json={"data": [
            {"id": "b-1", "isDefault": True, "status": "pending", "bankAccount": {"bankName": "A"}},
            {"id": "b-2", "isDefault": True, "status": "active", "bankAccount": {"bankName": "B"}},
        ]}))

        account = await gateway.get_default_bank_account("tok")

        assert account.id == "b-2"
        assert account.bank_account.bank_name == "B"

    @pytest.mark.unit
    async def test_no_bank_account(self, gateway, copperx):
        copperx.on("GET", "/api/accounts", httpx.Response(200, json={"data": [
            {"id": "b-1", "isDefault": False, "status": "active", "bankAccount": {"bankName": "A"}},
        ]}))

        assert await gateway.get_default_bank_account("tok") is None

    @pytest.mark.unit
    async def test_quote_request_body(self, gateway, copperx):
        copperx.on("POST", "/api/quotes/offramp", httpx.Response(200, json={
            "quotePayload": json.dumps({"amount": "10000000000", "toAmount": "9900000000", "totalFee": "100000000"}),
            "quoteSignature": "sig",
            "arrivalTimeMessage": "ignored",
        }))

        quote = await gateway.get_off_ramp_quote(
            "tok", OffRampQuoteParams(amount="10000000000", preferred_bank_account_id="b-2")
        )

        assert copperx.last_json == {
            "amount": "10000000000",
            "preferredBankAccountId": "b-2",
            "sourceCountry": "none",
            "destinationCountry": "usa",
            "currency": "USD",
            "onlyRemittance": True,
        }
        assert quote.quote_signature == "sig"
        assert quote.breakdown().to_amount == Decimal("99")

    @pytest.mark.unit
    async def test_quote_without_payload(self, gateway, copperx):
        copperx.on("POST", "/api/quotes/offramp", httpx.Response(200, json={"error": None}))

        with pytest.raises(RemoteApiError) as exc_info:
            await gateway.get_off_ramp_quote("tok", OffRampQuoteParams(amount="1", preferred_bank_account_id="b"))

        assert exc_info.value.message == "Failed to get withdrawal quote."

    @pytest.mark.unit
    async def test_submit_withdrawal(self, gateway, copperx):
        copperx.on("POST", "/api/transfers/offramp", httpx.Response(200, json={"id": "wd-1", "status": "pending"}))

        result = await gateway.submit_withdrawal("tok", WithdrawalParams(
            purpose_code="self", quote_payload="{}", quote_signature="sig",
        ))

        assert result.id == "wd-1"
        assert copperx.last_json == {"purposeCode": "self", "quotePayload": "{}", "quoteSignature": "sig"}


class TestTransfers:

    @pytest.mark.unit
    async def test_send_transfer_body(self, gateway, copperx):
        copperx.on("POST", "/api/transfers/send", httpx.Response(200, json={"id": "tx-1", "status": "pending"}))

        result = await gateway.send_transfer("tok", TransferRequest(
            recipient="a@b.com", amount=Decimal("10.5"), currency="USD", purpose_code="gift", note="hi",
        ))

        assert result.id == "tx-1"
        assert copperx.last_json == {
            "email": "a@b.com",
            "amount": "1050000000",
            "purposeCode": "gift",
            "currency": "USD",
            "note": "hi",
        }

    @pytest.mark.unit
    async def test_send_transfer_omits_empty_note(self, gateway, copperx):
        copperx.on("POST", "/api/transfers/send", httpx.Response(200, json={"id": "tx-1"}))

        await gateway.send_transfer("tok", TransferRequest(
            recipient="a@b.com", amount=Decimal("1"), currency="USD", purpose_code="gift",
        ))

        assert "note" not in copperx.last_json

    @pytest.mark.unit
    async def test_bulk_body(self, gateway, copperx):
        copperx.on("POST", "/api/transfers/send-batch", httpx.Response(200, json={"id": "batch-1"}))
        entries = [
            BulkTransferEntry(request_id="r-1", recipient="a@b.com", recipient_type=RecipientType.EMAIL,
                              amount=Decimal("5"), purpose_code="self", currency="USD"),
            BulkTransferEntry(request_id="r-2", recipient="0x" + "1" * 40, recipient_type=RecipientType.WALLET,
                              amount=Decimal("0.25"), purpose_code="gift", currency="USD"),
        ]

        result = await gateway.send_bulk_transfer("tok", entries)

        assert result.id == "batch-1"
        assert copperx.last_json == {"requests": [
            {"requestId": "r-1", "request": {
                "email": "a@b.com", "amount": "500000000", "purposeCode": "self", "currency": "USD",
            }},
            {"requestId": "r-2", "request": {
                "walletAddress": "0x" + "1" * 40, "amount": "25000000", "purposeCode": "gift", "currency": "USD",
            }},
        ]}


class TestErrorMapping:

    @pytest.mark.unit
    async def test_client_error_message(self, gateway, copperx):
        copperx.on("POST", "/api/auth/email-otp/request", httpx.Response(400, json={"message": "Email is not registered"}))

        with pytest.raises(RemoteApiError) as exc_info:
            await gateway.request_otp("user@example.com")

        assert not isinstance(exc_info.value, RemoteTransportError)
        assert exc_info.value.status_code == 400
        assert exc_info.value.message == "Email is not registered"

    @pytest.mark.unit
    async def test_nested_message_is_serialized(self, gateway, copperx):
        copperx.on("GET", "/api/auth/me", httpx.Response(422, json={"message": ["amount must be positive"]}))

        with pytest.raises(RemoteApiError) as exc_info:
            await gateway.get_profile("tok")

        assert exc_info.value.message == '["amount must be positive"]'

    @pytest.mark.unit
    async def test_server_error_is_transport_error(self, gateway, copperx):
        copperx.on("GET", "/api/auth/me", httpx.Response(502, text="Bad gateway"))

        with pytest.raises(RemoteTransportError) as exc_info:
            await gateway.get_profile("tok")

        assert exc_info.value.status_code == 502
        assert exc_info.value.message == "An unexpected error occurred"

    @pytest.mark.unit
    async def test_timeout(self, gateway, copperx):
        copperx.on("GET", "/api/auth/me", httpx.ReadTimeout("timed out"))

        with pytest.raises(RemoteTransportError) as exc_info:
            await gateway.get_profile("tok")

        assert exc_info.value.status_code == 504

    @pytest.mark.unit
    async def test_network_error(self, gateway, copperx):
        copperx.on("GET", "/api/auth/me", httpx.ConnectError("connection refused"))

        with pytest.raises(RemoteTransportError) as exc_info:
            await gateway.get_profile("tok")

        assert exc_info.value.status_code == 503

    @pytest.mark.unit
    async def test_invalid_json(self, gateway, copperx):
        copperx.on("GET", "/api/auth/me", httpx.Response(200, text="<html>"))

        with pytest.raises(RemoteTransportError) as exc_info:
            await gateway.get_profile("tok")

        assert exc_info.value.status_code == 502

    @pytest.mark.unit
    async def test_client_errors_do_not_trip_breaker(self, gateway, copperx, breaker):
        copperx.on("GET", "/api/auth/me", httpx.Response(401, json={"message": "Unauthorized"}))

        for _ in range(3):
            with pytest.raises(RemoteApiError):
                await gateway.get_profile("tok")

        assert breaker.is_closed

    @pytest.mark.unit
    async def test_open_circuit_fails_fast(self, gateway, copperx, breaker):
        copperx.on("GET", "/api/auth/me", httpx.Response(503, json={"message": "Maintenance"}))

        for _ in range(2):
            with pytest.raises(RemoteTransportError):
                await gateway.get_profile("tok")
        sent = len(copperx.requests)

        with pytest.raises(RemoteTransportError) as exc_info:
            await gateway.get_profile("tok")

        assert breaker.is_open
        assert len(copperx.requests) == sent
        assert exc_info.value.status_code == 503
        assert "temporarily unavailable" in exc_info.value.message
