"""
Tests for the login flow, logout and the authentication gate
"""
import asyncio

import pytest

from payout_bot.core.exceptions import RemoteApiError, RemoteTransportError
from payout_bot.domain.models import OtpRequestResult
from payout_bot.state_machine import messages
from payout_bot.state_machine.controller import AUTH_REQUIRED_COMMANDS
from payout_bot.state_machine.states import ConversationState
from tests.conftest import CHAT_ID, ORG_ID, TOKEN, login


class TestLoginFlow:
    """/login -> email -> OTP -> AUTHENTICATED"""

    @pytest.mark.unit
    async def test_login_prompts_for_email(self, controller, transport):
        await controller.on_command("/login", CHAT_ID)

        assert controller.store.get(CHAT_ID).state == ConversationState.WAITING_EMAIL
        assert transport.last.options.force_reply is True
        assert transport.last.options.placeholder == "Enter your Email: "

    @pytest.mark.unit
    async def test_invalid_email_keeps_waiting(self, controller, transport, gateway):
        await controller.on_command("/login", CHAT_ID)
        await controller.on_text(CHAT_ID, "not-an-email")

        assert controller.store.get(CHAT_ID).state == ConversationState.WAITING_EMAIL
        assert transport.last.text == messages.INVALID_EMAIL
        gateway.request_otp.assert_not_awaited()

    @pytest.mark.unit
    async def test_valid_email_requests_otp(self, controller, transport, gateway):
        await controller.on_command("/login", CHAT_ID)
        await controller.on_text(CHAT_ID, "user@example.com")

        gateway.request_otp.assert_awaited_once_with("user@example.com")
        session = controller.store.get(CHAT_ID)
        assert session.state == ConversationState.WAITING_OTP
        assert session.pending_auth.email == "user@example.com"
        assert session.pending_auth.otp_request_id == "sid-1"
        assert "user@example.com" in transport.last.text

    @pytest.mark.unit
    async def test_otp_request_failure_stays_on_email_step(self, controller, transport, gateway):
        gateway.request_otp.side_effect = RemoteApiError("Email is not registered", 400)

        await controller.on_command("/login", CHAT_ID)
        await controller.on_text(CHAT_ID, "user@example.com")

        session = controller.store.get(CHAT_ID)
        assert session.state == ConversationState.WAITING_EMAIL
        assert session.pending_auth is None
        assert transport.last.text == "❌ Failed to send OTP: Email is not registered"

    @pytest.mark.unit
    async def test_short_otp_is_rejected_without_remote_call(self, controller, transport, gateway):
        await controller.on_command("/login", CHAT_ID)
        await controller.on_text(CHAT_ID, "user@example.com")
        await controller.on_text(CHAT_ID, "12345")

        assert controller.store.get(CHAT_ID).state == ConversationState.WAITING_OTP
        assert transport.last.text == messages.INVALID_OTP
        gateway.verify_otp.assert_not_awaited()

    @pytest.mark.unit
    async def test_valid_otp_authenticates(self, controller, transport, gateway, channel):
        await login(controller)

        gateway.verify_otp.assert_awaited_once_with("user@example.com", "123456", "sid-1")
        session = controller.store.get(CHAT_ID)
        assert session.state == ConversationState.AUTHENTICATED
        assert session.auth_token == TOKEN
        assert session.organization_id == ORG_ID
        assert session.user_id == "user-1"
        assert session.draft is None
        assert channel.opened == [(CHAT_ID, ORG_ID, TOKEN)]
        assert transport.last.text.startswith("✅ Login successful!")

    @pytest.mark.unit
    async def test_failed_verification_keeps_pending_login(self, controller, transport, gateway):
        gateway.verify_otp.side_effect = RemoteApiError("Invalid OTP code", 401)

        await login(controller)

        session = controller.store.get(CHAT_ID)
        assert session.state == ConversationState.WAITING_OTP
        assert session.auth_token is None
        assert session.pending_auth.email == "user@example.com"
        assert transport.last.text == "❌ Login failed: Invalid OTP code"

    @pytest.mark.unit
    async def test_profile_failure_after_login_is_not_fatal(self, controller, transport, gateway):
        gateway.get_profile.side_effect = RemoteTransportError("An unexpected error occurred", 503)

        await login(controller)

        session = controller.store.get(CHAT_ID)
        assert session.state == ConversationState.AUTHENTICATED
        assert transport.last.text.startswith("✅ Login successful!")

    @pytest.mark.unit
    async def test_login_when_already_authenticated(self, logged_in, transport, gateway):
        await logged_in.on_command("/login", CHAT_ID)

        assert logged_in.store.get(CHAT_ID).state == ConversationState.AUTHENTICATED
        assert transport.last.text == messages.ALREADY_LOGGED_IN
        assert gateway.request_otp.await_count == 1

    @pytest.mark.unit
    async def test_login_without_notifications_configured(self, controller, channel, config):
        config.PUSHER_KEY = ""

        await login(controller)

        assert controller.store.get(CHAT_ID).is_authenticated
        assert channel.opened == []


class TestResendOtp:
    """The delayed prompt and the resend button"""

    @pytest.mark.unit
    async def test_resend_prompt_appears_after_delay(self, controller, transport, config):
        config.OTP_RESEND_PROMPT_DELAY_SECONDS = 0.01

        await controller.on_command("/login", CHAT_ID)
        await controller.on_text(CHAT_ID, "user@example.com")
        await asyncio.sleep(0.05)

        assert transport.last.text == "Didn't receive OTP??"
        assert transport.callback_tokens() == [messages.RESEND_OTP]

    @pytest.mark.unit
    async def test_prompt_is_cancelled_by_successful_login(self, controller, transport, config):
        config.OTP_RESEND_PROMPT_DELAY_SECONDS = 0.05

        await login(controller)
        await asyncio.sleep(0.1)

        assert "Didn't receive OTP??" not in transport.texts
        assert controller.scheduler.pending(CHAT_ID) == 0

    @pytest.mark.unit
    async def test_resend_button_replaces_request_id(self, controller, transport, gateway):
        await controller.on_command("/login", CHAT_ID)
        await controller.on_text(CHAT_ID, "user@example.com")
        gateway.request_otp.return_value = OtpRequestResult(request_id="sid-2")

        await controller.on_callback(CHAT_ID, messages.RESEND_OTP, callback_query_id="cb-1")

        session = controller.store.get(CHAT_ID)
        assert session.state == ConversationState.WAITING_OTP
        assert session.pending_auth.otp_request_id == "sid-2"
        assert gateway.request_otp.await_count == 2
        assert transport.answered == [("cb-1", None, False)]

        await controller.on_text(CHAT_ID, "654321")
        gateway.verify_otp.assert_awaited_once_with("user@example.com", "654321", "sid-2")

    @pytest.mark.unit
    async def test_resend_button_outside_login(self, logged_in, transport, gateway):
        await logged_in.on_callback(CHAT_ID, messages.RESEND_OTP)

        assert transport.last.text == messages.INVALID_STATE
        assert gateway.request_otp.await_count == 1


class TestLogout:
    """/logout and /exit"""

    @pytest.mark.unit
    async def test_logout_clears_session_and_subscription(self, logged_in, transport, channel):
        await logged_in.on_command("/logout", CHAT_ID)

        assert CHAT_ID not in logged_in.store
        assert len(channel.closed) == 1
        assert logged_in.scheduler.pending(CHAT_ID) == 0
        assert transport.last.text == messages.LOGOUT_SUCCESS

    @pytest.mark.unit
    async def test_exit_says_goodbye(self, logged_in, transport):
        await logged_in.on_command("/exit", CHAT_ID)

        assert CHAT_ID not in logged_in.store
        assert transport.last.text == messages.EXIT_SUCCESS

    @pytest.mark.unit
    async def test_logout_when_not_logged_in(self, controller, transport):
        await controller.on_command("/logout", CHAT_ID)

        assert transport.last.text == messages.NOT_LOGGED_IN
        assert controller.store.get(CHAT_ID).state == ConversationState.IDLE

    @pytest.mark.unit
    async def test_logout_mid_flow_discards_draft(self, logged_in):
        await logged_in.on_command("/send", CHAT_ID)
        await logged_in.on_command("/logout", CHAT_ID)

        assert CHAT_ID not in logged_in.store

    @pytest.mark.unit
    async def test_login_again_after_logout(self, logged_in, gateway):
        await logged_in.on_command("/logout", CHAT_ID)
        await login(logged_in)

        assert logged_in.store.get(CHAT_ID).is_authenticated
        assert gateway.verify_otp.await_count == 2


class TestAuthenticationGate:
    """Money-moving and profile-reading commands need a token"""

    @pytest.mark.unit
    @pytest.mark.parametrize("command", sorted(AUTH_REQUIRED_COMMANDS))
    async def test_command_rejected_before_remote_call(self, controller, transport, gateway, command):
        await controller.on_command(f"/{command}", CHAT_ID)

        assert transport.last.text == messages.NOT_LOGGED_IN
        assert controller.store.get(CHAT_ID).state == ConversationState.IDLE
        for method in (
            gateway.get_profile, gateway.get_kyc_status, gateway.get_balances,
            gateway.get_wallets, gateway.get_transfer_history, gateway.get_default_wallet,
            gateway.send_transfer, gateway.send_bulk_transfer,
        ):
            method.assert_not_awaited()

    @pytest.mark.unit
    @pytest.mark.parametrize("data", [
        messages.REFRESH_BALANCE,
        messages.REFRESH_HISTORY,
        f"{messages.HISTORY_PAGE_PREFIX}2",
        f"{messages.SET_DEFAULT_PREFIX}wallet-2",
    ])
    async def test_read_buttons_rejected_when_logged_out(self, controller, transport, gateway, data):
        await controller.on_callback(CHAT_ID, data)

        assert transport.last.text == messages.NOT_LOGGED_IN
        gateway.get_balances.assert_not_awaited()
        gateway.set_default_wallet.assert_not_awaited()


class TestDepositNotifications:
    """Pushes from the notification channel"""

    @pytest.mark.unit
    async def test_deposit_is_forwarded_to_the_chat(self, logged_in, transport, channel):
        from payout_bot.domain.models import DepositEvent

        on_deposit, _ = channel.callbacks[CHAT_ID]
        await on_deposit(DepositEvent(amount="25", wallet_address_suffix="abc123", tx_id_suffix="0123456789"))

        assert "New Deposit Received" in transport.last.text
        assert "25 USDC" in transport.last.text
        assert "...abc123" in transport.last.text

    @pytest.mark.unit
    async def test_subscription_success_is_announced(self, logged_in, transport, channel):
        from payout_bot.domain.services.notifications.base_channel import SubscriptionStatus

        _, on_status = channel.callbacks[CHAT_ID]
        await on_status(SubscriptionStatus.SUBSCRIBED)

        assert transport.last.text == messages.SUBSCRIBED

    @pytest.mark.unit
    async def test_subscription_failure_drops_the_handle(self, logged_in, transport, channel):
        from payout_bot.domain.services.notifications.base_channel import SubscriptionStatus

        _, on_status = channel.callbacks[CHAT_ID]
        await on_status(SubscriptionStatus.FAILED)

        assert logged_in.store.get(CHAT_ID).notification_subscription is None
        assert len(channel.closed) == 1
        assert transport.last.text == messages.SUBSCRIPTION_FAILED

    @pytest.mark.unit
    async def test_notifications_command_toggles(self, logged_in, transport, channel):
        await logged_in.on_command("/notifications", CHAT_ID)
        assert transport.last.text == messages.NOTIFICATIONS_OFF
        assert logged_in.store.get(CHAT_ID).notification_subscription is None

        await logged_in.on_command("/notifications", CHAT_ID)
        assert logged_in.store.get(CHAT_ID).notification_subscription is not None
        assert len(channel.opened) == 2
