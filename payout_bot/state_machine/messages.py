"""
Reply texts and keyboards

Every user-visible message is built here; the controller decides which one
to send. Replies use Telegram HTML formatting, so anything that came from
the user or the payments API is escaped before it is interpolated.
"""
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional

from payout_bot.core.config import settings
from payout_bot.core.validation import RecipientType, escape_html, format_amount
from payout_bot.domain.models import (
    BankAccount,
    BulkTransferEntry,
    DepositEvent,
    KycRecord,
    OffRampQuote,
    TransactionPage,
    TransferResult,
    UserProfile,
    Wallet,
    WalletBalance,
)
from payout_bot.domain.services.chat.base_transport import Button, ReplyOptions


@dataclass
class Reply:
    """Response to be sent to the user"""
    text: str
    options: ReplyOptions = field(default_factory=ReplyOptions)


# ==================== Callback tokens ====================

RESEND_OTP = "resend_otp"
TRANSFER_PURPOSE_PREFIX = "transfer_purpose:"
TRANSFER_CONFIRM = "transfer_confirm"
TRANSFER_CANCEL = "transfer_cancel"
TRANSFER_NOTE = "transfer_note"
BULK_PURPOSE_PREFIX = "bulk_purpose:"
BULK_CONFIRM = "bulk_confirm"
BULK_CANCEL = "bulk_cancel"
WITHDRAW_PURPOSE_PREFIX = "withdraw_purpose:"
WITHDRAW_CANCEL = "withdraw_cancel"
HISTORY_PAGE_PREFIX = "history_page_"
SET_DEFAULT_PREFIX = "set_default:"
ALREADY_DEFAULT = "already_default"
REFRESH_BALANCE = "refresh_balance"
REFRESH_WALLETS = "refresh_wallets"
REFRESH_HISTORY = "refresh_history"
CHECK_KYC_STATUS = "check_kyc_status"

# (code, label) pairs accepted by the payments API
PURPOSE_CODES = [
    ("self", "🙋 Self"),
    ("salary", "💼 Salary"),
    ("gift", "🎁 Gift"),
    ("income", "💵 Income"),
    ("saving", "🏦 Saving"),
    ("education_support", "🎓 Education"),
    ("family", "👨‍👩‍👧 Family"),
    ("home_improvement", "🏠 Home improvement"),
    ("reimbursement", "🧾 Reimbursement"),
]
PURPOSE_LABELS = dict(PURPOSE_CODES)
KYC_PLATFORM_URL = "https://payout.copperx.io/app/kyc"


def _buttons(*rows: list[Button]) -> ReplyOptions:
    return ReplyOptions(buttons=list(rows))


def _amount(amount: Optional[Decimal], currency: Optional[str] = None) -> str:
    text = format_amount(amount) if amount is not None else "0"
    return f"{text} {escape_html(currency)}" if currency else text


# ==================== General ====================

COMMANDS_TEXT = (
    "/login - Login to your Copperx account\n"
    "/profile - View your Copperx profile\n"
    "/kyc - Check your KYC status\n"
    "/balance - Check your wallet balances\n"
    "/wallets - View your wallets\n"
    "/default - View or set your default wallet\n"
    "/send - Send funds by email\n"
    "/withdraw - Withdraw to your bank account\n"
    "/bulk - Send funds to several recipients\n"
    "/history - View your transaction history\n"
    "/notifications - Turn deposit notifications on or off\n"
    "/cancel - Cancel the current operation\n"
    "/logout - Logout from your account\n"
    "/help - Show this help message"
)


def welcome() -> Reply:
    return Reply(
        "Welcome to Copperx Payout Bot! 🚀\n\n"
        "Here are the available commands:\n"
        f"{COMMANDS_TEXT}\n\n"
        f"Need support? Visit {settings.SUPPORT_URL}"
    )


INVALID_STATE = "Invalid state. Please try again."
NOT_LOGGED_IN = "You are not logged in. Please use /login to login."
UNKNOWN_COMMAND = "Unknown command. Use /help to see what I can do."
UNEXPECTED_ERROR = "❌ Something went wrong. Please try again."
NOTHING_TO_CANCEL = "Nothing to cancel."
SESSION_TIMED_OUT = "⌛ Your session expired after a period of inactivity. Please /login again."
OPERATION_CANCELLED = "❌ Operation cancelled."


def notice(text: str) -> Reply:
    """Plain text notice; ``text`` is escaped"""
    return Reply(escape_html(text))


def remote_error(action: str, message: str) -> Reply:
    return Reply(f"❌ {escape_html(action)}: {escape_html(message)}")


def loading(what: str) -> Reply:
    return Reply(f"🔄 {escape_html(what)}...")


# ==================== Login ====================

ALREADY_LOGGED_IN = "🔐 You are already logged in!\n\nUse /logout to logout from your Copperx account."
INVALID_EMAIL = "❌ Invalid email address. Please enter a valid email."
INVALID_OTP = "❌ Invalid OTP. Please enter a valid 6-digit code."
LOGOUT_SUCCESS = "👋 Logged out successfully!\n\nUse /login to login again."
EXIT_SUCCESS = "👋 Goodbye! Your session has been cleared.\n\nUse /login whenever you want to come back."


def enter_email() -> Reply:
    return Reply(
        "📧 Please enter your Copperx email address:",
        ReplyOptions(force_reply=True, placeholder="Enter your Email: "),
    )


def enter_otp(email: str) -> Reply:
    return Reply(
        f"✉️ We've sent an OTP to <b>{escape_html(email)}</b>.\n\nPlease enter the 6-digit code:",
        ReplyOptions(force_reply=True, placeholder="Enter OTP: "),
    )


def resend_otp_prompt() -> Reply:
    return Reply(
        "Didn't receive OTP??",
        _buttons([Button("↪ Send OTP again", callback_data=RESEND_OTP)]),
    )


def login_success() -> Reply:
    return Reply(
        "✅ Login successful!\n\n"
        "You can now:\n"
        f"{COMMANDS_TEXT}\n\n"
        f"Need support? Visit {settings.SUPPORT_URL}"
    )


# ==================== Profile, KYC, wallets ====================

def profile(user: UserProfile) -> Reply:
    name = " ".join(part for part in (user.first_name, user.last_name) if part) or "-"
    lines = [
        "👤 <b>User Profile</b>",
        "",
        f"<b>Name:</b> {escape_html(name)}",
        f"<b>Email:</b> <code>{escape_html(user.email or '-')}</code>",
        f"<b>Id:</b> <code>{escape_html(user.id or '-')}</code>",
        f"<b>Organization:</b> {escape_html(user.organization_id or '-')}",
        f"<b>Role:</b> {escape_html(user.role or '-')}",
        f"<b>Status:</b> {escape_html(user.status or '-')}",
        f"<b>Type:</b> {escape_html(user.type or '-')}",
    ]
    if user.wallet_address:
        lines.append(f"<b>Wallet:</b> <code>{escape_html(user.wallet_address)}</code>")
    if user.wallet_account_type:
        lines.append(f"<b>Wallet type:</b> {escape_html(user.wallet_account_type)}")
    return Reply("\n".join(lines))


def kyc_status(record: Optional[KycRecord]) -> Reply:
    if record is None:
        return Reply(
            "🔒 <b>KYC Verification Required</b>\n\n"
            "To complete your KYC verification:\n"
            "1. Tap the button below to open the Copperx platform\n"
            "2. Complete the verification process\n"
            "3. Come back and check your status with /kyc",
            _buttons([Button("🔐 Complete KYC", url=KYC_PLATFORM_URL)]),
        )
    if record.is_approved:
        return Reply("🎉 <b>Your KYC is approved!</b>\n\nYou have full access to all features.")
    return Reply(
        "🔒 <b>KYC Verification Status</b>\n\n"
        f"<b>Status:</b> {escape_html(record.status)}\n"
        f"<b>Type:</b> {escape_html(record.type or '-')}",
        _buttons([Button("🔄 Check KYC Status Again", callback_data=CHECK_KYC_STATUS)]),
    )


def balances(wallet_balances: list[WalletBalance]) -> Reply:
    if not wallet_balances:
        return Reply("💰 No wallet balances found.")
    lines = ["💰 <b>Wallet Balances</b>", ""]
    for wallet in wallet_balances:
        marker = " ⭐" if wallet.is_default else ""
        lines.append(f"<b>{escape_html(wallet.network or 'Wallet')}</b>{marker}")
        lines.append(f"<code>{escape_html(wallet.wallet_id)}</code>")
        if not wallet.balances:
            lines.append("  No tokens")
        for token in wallet.balances:
            lines.append(f"  {_amount(token.balance, token.symbol)}")
        lines.append("")
    return Reply(
        "\n".join(lines).rstrip(),
        _buttons([Button("🔄 Refresh", callback_data=REFRESH_BALANCE)]),
    )


def wallets(wallet_list: list[Wallet]) -> Reply:
    if not wallet_list:
        return Reply("👛 You don't have any wallets yet.")
    lines = ["👛 <b>Your Wallets</b>", ""]
    for index, wallet in enumerate(wallet_list, start=1):
        marker = " ⭐ (default)" if wallet.is_default else ""
        lines.append(f"{index}. <b>{escape_html(wallet.network or '-')}</b>{marker}")
        lines.append(f"   <code>{escape_html(wallet.wallet_address or '-')}</code>")
    return Reply(
        "\n".join(lines),
        _buttons([Button("🔄 Refresh", callback_data=REFRESH_WALLETS)]),
    )


def default_wallet(current: Optional[Wallet], wallet_list: list[Wallet]) -> Reply:
    if current is None:
        text = "⭐ You have no default wallet yet.\n\nChoose one below:"
    else:
        text = (
            "⭐ <b>Default Wallet</b>\n\n"
            f"<b>Network:</b> {escape_html(current.network or '-')}\n"
            f"<b>Address:</b> <code>{escape_html(current.wallet_address or '-')}</code>\n\n"
            "Tap a wallet to make it the default:"
        )
    return Reply(text, _buttons(*[[set_default_button(wallet)] for wallet in wallet_list]))


def set_default_button(wallet: Wallet, label: Optional[str] = None) -> Button:
    if wallet.is_default:
        return Button(label or f"✅ {wallet.network or wallet.id}", callback_data=ALREADY_DEFAULT)
    return Button(
        label or f"{wallet.network or wallet.id}",
        callback_data=f"{SET_DEFAULT_PREFIX}{wallet.id}",
    )


ALREADY_DEFAULT_ALERT = "This wallet is already your default wallet."
SETTING_DEFAULT = "⏳ Setting as default..."
DEFAULT_SET = "✅ Default wallet set!"
DEFAULT_SET_ERROR = "❌ Error setting default"


def history(page: TransactionPage) -> Reply:
    if not page.items:
        text = "📜 No transactions found." if page.page == 1 else "📜 No more transactions."
        row = []
        if page.page > 1:
            row.append(Button("⬅ Previous", callback_data=f"{HISTORY_PAGE_PREFIX}{page.page - 1}"))
        return Reply(text, _buttons(row) if row else ReplyOptions())

    lines = [f"📜 <b>Transaction History</b> (page {page.page})", ""]
    for tx in page.items:
        lines.append(
            f"• <b>{escape_html((tx.type or 'transfer').replace('_', ' ').title())}</b> "
            f"{_amount(tx.amount, tx.currency)}"
        )
        details = [escape_html(tx.status or "-")]
        if tx.recipient_email:
            details.append(f"to {escape_html(tx.recipient_email)}")
        if tx.created_at:
            details.append(escape_html(tx.created_at[:10]))
        lines.append(f"   {' · '.join(details)}")

    row = []
    if page.page > 1:
        row.append(Button("⬅ Previous", callback_data=f"{HISTORY_PAGE_PREFIX}{page.page - 1}"))
    if page.has_more:
        row.append(Button("Next ➡", callback_data=f"{HISTORY_PAGE_PREFIX}{page.page + 1}"))
    return Reply(
        "\n".join(lines),
        _buttons(row, [Button("🔄 Refresh", callback_data=REFRESH_HISTORY)]),
    )


# ==================== Purposes ====================

def purpose_selection(prefix: str, title: str = "🏷️ Please select the purpose of this transfer:") -> Reply:
    rows: list[list[Button]] = []
    for index in range(0, len(PURPOSE_CODES), 2):
        rows.append([
            Button(label, callback_data=f"{prefix}{code}")
            for code, label in PURPOSE_CODES[index:index + 2]
        ])
    return Reply(title, ReplyOptions(buttons=rows))


def purpose_label(code: str) -> str:
    return PURPOSE_LABELS.get(code, code)


# ==================== Single transfer ====================

TRANSFER_INVALID_EMAIL = "❌ Invalid email address. Please enter a valid email."
TRANSFER_INVALID_AMOUNT = "❌ Invalid amount. Please enter a positive number (e.g., 10.50)."
TRANSFER_CANCELLED = "❌ Transfer cancelled."


def transfer_intro() -> Reply:
    return Reply(
        "📤 <b>Send Funds by Email</b>\n\n"
        "Send funds to any email address. The recipient will be notified to claim the funds.\n\n"
        "1. Enter recipient email\n"
        "2. Enter amount to send\n"
        "3. Select purpose\n"
        "4. Review and confirm\n\n"
        "📧 Please enter the recipient's email address:",
        ReplyOptions(force_reply=True, placeholder="Recipient email"),
    )


def transfer_enter_amount() -> Reply:
    return Reply(
        "💰 Please enter the amount to send:",
        ReplyOptions(force_reply=True, placeholder=f"Amount in {settings.DEFAULT_CURRENCY}"),
    )


def transfer_enter_note() -> Reply:
    return Reply(
        '📝 Add an optional note to the recipient (or type "skip"):',
        ReplyOptions(force_reply=True, placeholder="Note"),
    )


def transfer_confirmation(recipient: str, amount: Decimal, currency: str,
                          purpose_code: str, note: Optional[str]) -> Reply:
    lines = [
        "📋 <b>Transfer Confirmation</b>",
        "",
        f"<b>Amount:</b> {_amount(amount)}",
        f"<b>Currency:</b> {escape_html(currency)}",
        "",
        f"<b>To:</b> {escape_html(recipient)}",
        f"<b>Purpose:</b> {escape_html(purpose_label(purpose_code))}",
    ]
    if note:
        lines.append(f"<b>Note:</b> {escape_html(note)}")
    lines += ["", "Please confirm this transfer."]
    return Reply(
        "\n".join(lines),
        _buttons(
            [
                Button("✅ Confirm", callback_data=TRANSFER_CONFIRM),
                Button("❌ Cancel", callback_data=TRANSFER_CANCEL),
            ],
            [Button("📝 Add note", callback_data=TRANSFER_NOTE)],
        ),
    )


def transfer_success(result: TransferResult, recipient: str, amount: Decimal, currency: str) -> Reply:
    return Reply(
        "✅ <b>Transfer Successful!</b>\n\n"
        f"<b>Transaction ID:</b> <code>{escape_html(result.id or '-')}</code>\n"
        f"<b>Status:</b> {escape_html(result.status or 'pending')}\n"
        f"<b>Amount:</b> {_amount(amount, currency)}\n"
        f"<b>Recipient:</b> {escape_html(recipient)}\n\n"
        "The recipient will be notified via email.",
        _buttons([Button("📜 View Transaction History", callback_data=REFRESH_HISTORY)]),
    )


def transfer_failed(message: str) -> Reply:
    return Reply(f"Transfer failed: {escape_html(message)}")


# ==================== Withdrawal ====================

NO_DEFAULT_WALLET = "❌ No default wallet found. Please set a default wallet first using /default"
WITHDRAWAL_CANCELLED = "❌ Withdrawal cancelled."


def no_default_bank_account() -> Reply:
    return Reply(
        "❌ No default bank account found.\n\n"
        "Please set up a bank account on the Copperx platform first.",
        _buttons([Button("🏦 Set Up Bank Account", url=settings.COPPERX_PLATFORM_URL)]),
    )


def withdrawal_enter_amount() -> Reply:
    return Reply(
        "💰 Please enter the amount you want to withdraw:\n\n"
        f"<i>Minimum {format_amount(settings.WITHDRAWAL_MIN_AMOUNT)} and maximum "
        f"{format_amount(settings.WITHDRAWAL_MAX_AMOUNT)} {escape_html(settings.DEFAULT_CURRENCY)}.</i>",
        ReplyOptions(force_reply=True, placeholder=f"Enter amount in {settings.DEFAULT_CURRENCY}: "),
    )


def withdrawal_invalid_amount(reason: str) -> Reply:
    return Reply(
        f"❌ Invalid amount. {escape_html(reason)}\n\n"
        f"<b>Note</b>: Minimum withdrawal amount is {format_amount(settings.WITHDRAWAL_MIN_AMOUNT)} "
        f"and maximum is {format_amount(settings.WITHDRAWAL_MAX_AMOUNT)} "
        f"{escape_html(settings.DEFAULT_CURRENCY)}."
    )


def withdrawal_summary(quote: OffRampQuote, bank_account: BankAccount) -> Reply:
    figures = quote.breakdown()
    details = bank_account.bank_account
    lines = [
        "🏦 <b>Withdrawal Summary</b>",
        "",
        f"<b>Amount:</b> {_amount(figures.amount, settings.DEFAULT_CURRENCY)}",
        f"<b>You receive:</b> {_amount(figures.to_amount, figures.to_currency)}",
        f"<b>Fee:</b> {_amount(figures.total_fee)}"
        + (f" ({escape_html(figures.fee_percentage)}%)" if figures.fee_percentage else ""),
        f"<b>Method:</b> {escape_html(figures.destination_method or '-')}",
    ]
    if details is not None:
        lines.append(f"<b>Bank:</b> {escape_html(details.bank_name or '-')}")
        lines.append(f"<b>Account:</b> {escape_html(details.bank_account_number or '-')}")
    lines.append(f"<b>Arrival:</b> {escape_html(quote.arrival_time or '2-4 Business days')}")
    return Reply("\n".join(lines))


def withdrawal_purpose_selection() -> Reply:
    reply = purpose_selection(WITHDRAW_PURPOSE_PREFIX, "🏷️ Select the purpose of this withdrawal to submit it:")
    reply.options.buttons.append([Button("❌ Cancel", callback_data=WITHDRAW_CANCEL)])
    return reply


def withdrawal_success(result: TransferResult) -> Reply:
    return Reply(
        "✅ <b>Withdrawal submitted!</b>\n\n"
        f"<b>Transaction ID:</b> <code>{escape_html(result.id or '-')}</code>\n"
        f"<b>Status:</b> {escape_html(result.status or 'pending')}",
        _buttons([Button("📜 View Transaction History", callback_data=REFRESH_HISTORY)]),
    )


def withdrawal_failed(message: str) -> Reply:
    return Reply(
        f"❌ Withdrawal failed: {escape_html(message)}\n\n"
        "Tap a purpose again to retry, or /cancel."
    )


# ==================== Bulk transfer ====================

BULK_INVALID_RECIPIENT = "❌ Invalid input. Please enter a valid email or wallet address."
BULK_INVALID_AMOUNT = "❌ Invalid amount. Please enter a valid number greater than 0."
BULK_NO_RECIPIENTS = "📝 No recipients added yet.\n\nUse /add_recipient to add recipients."
BULK_CANCELLED = "❌ Bulk transfer cancelled."
BULK_NOT_STARTED = "No bulk transfer in progress. Use /bulk to start one."
BULK_CONFIRMATION_HINT = 'Please reply "yes" to send, "no" to keep editing or "cancel" to discard.'

BULK_ACTIONS = (
    "/add_recipient - Add a recipient\n"
    "/review - Review current recipients\n"
    "/clear - Clear all recipients\n"
    "/send_bulk - Process the bulk transfer\n"
    "/cancel - Cancel bulk transfer"
)


def bulk_menu() -> Reply:
    return Reply(
        "📤 <b>Bulk Transfer</b>\n\n"
        "Add recipients one by one, then review and send:\n"
        f"{BULK_ACTIONS}"
    )


def bulk_enter_recipient() -> Reply:
    return Reply(
        "📧 Enter recipient (email or wallet address):",
        ReplyOptions(force_reply=True, placeholder="Email or 0x wallet address"),
    )


def bulk_enter_amount() -> Reply:
    return Reply("💰 Enter amount to send:", ReplyOptions(force_reply=True, placeholder="Amount"))


def bulk_entry_added(count: int) -> Reply:
    return Reply(
        "✅ Recipient added to bulk transfer list!\n\n"
        f"<b>Recipients so far:</b> {count}\n\n"
        f"{BULK_ACTIONS}"
    )


def bulk_cleared() -> Reply:
    return Reply("🗑 All recipients cleared.\n\nUse /add_recipient to start again.")


def bulk_review(entries: list[BulkTransferEntry], totals: dict[str, Decimal]) -> Reply:
    lines = ["📋 <b>Bulk Transfer Review</b>", ""]
    for index, entry in enumerate(entries, start=1):
        kind = "📧" if entry.recipient_type == RecipientType.EMAIL else "👛"
        lines.append(f"{index}. {kind} {escape_html(entry.recipient)}")
        lines.append(f"   Amount: {_amount(entry.amount, entry.currency)}")
        lines.append(f"   Purpose: {escape_html(purpose_label(entry.purpose_code))}")
    lines.append("")
    for currency, total in totals.items():
        lines.append(f"<b>Total:</b> {_amount(total, currency)}")
    lines.append(f"<b>Total recipients:</b> {len(entries)}")
    lines += ["", escape_html(BULK_CONFIRMATION_HINT)]
    return Reply(
        "\n".join(lines),
        _buttons([
            Button("✅ Confirm & Send", callback_data=BULK_CONFIRM),
            Button("❌ Cancel", callback_data=BULK_CANCEL),
        ]),
    )


def bulk_success(result: TransferResult, count: int) -> Reply:
    return Reply(
        "✅ Bulk transfer processed successfully!\n\n"
        f"<b>Total recipients:</b> {count}\n"
        f"<b>Transaction ID:</b> <code>{escape_html(result.id or '-')}</code>",
        _buttons([Button("📜 View Transaction History", callback_data=REFRESH_HISTORY)]),
    )


def bulk_failed(message: str) -> Reply:
    return Reply(f"❌ Failed to process bulk transfer: {escape_html(message)}\n\n{BULK_ACTIONS}")


def bulk_rejected(message: str) -> Reply:
    return Reply(f"❌ {escape_html(message)}\n\nNothing was sent.\n\n{BULK_ACTIONS}")


# ==================== Notifications ====================

SUBSCRIBED = "🔔 You are now subscribed to deposit notifications!"
SUBSCRIPTION_FAILED = "❌ Failed to subscribe to deposit notifications. Please try again later."
NOTIFICATIONS_OFF = "🔕 Deposit notifications turned off"
NOTIFICATIONS_UNAVAILABLE = "Unable to set up notifications. Please try again later."


def deposit(event: DepositEvent) -> Reply:
    wallet = f"...{escape_html(event.wallet_address_suffix)}" if event.wallet_address_suffix else "Default wallet"
    tx_id = f"...{escape_html(event.tx_id_suffix)}" if event.tx_id_suffix else "N/A"
    return Reply(
        "💰 <b>New Deposit Received</b>\n\n"
        f"<b>Amount:</b> {escape_html(event.amount)} {escape_html(event.currency)}\n"
        f"<b>Network:</b> {escape_html(event.network)}\n"
        f"<b>Wallet:</b> {wallet}\n"
        f"<b>Transaction ID:</b> {tx_id}"
    )
