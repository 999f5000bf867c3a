"""
Telegram account linking.

Two ways in:
- in-app: the user types a code that was sent to their chat (`send_code`)
  or that they generated and sent to the bot (`verify_code`)
- bot: a chat sends a code to the bot, delivered by webhook or poller
  (`handle_incoming_text`)

Both funnel into `verification_service.match` and `commit`.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from clarity_mdt.core.config import settings
from clarity_mdt.core.structured_logging import mask_chat_id
from clarity_mdt.db.models import TelegramVerification, User
from clarity_mdt.services import verification_service
from clarity_mdt.services.telegram_client import TelegramClient, TelegramError
from clarity_mdt.services.verification_service import MatchReason

if TYPE_CHECKING:
    from clarity_mdt.services.telegram_poller import TelegramPoller

logger = logging.getLogger(__name__)

CODE_PATTERN = re.compile(r"^[A-F0-9]{8}$")
START_CODE_PATTERN = re.compile(r"^/START\s+([A-F0-9]{8})$")
USERNAME_PATTERN = re.compile(r"^[A-Za-z0-9_]{5,32}$")

# Bot replies
REPLY_INVALID_CODE = "❌ Invalid verification code. Please check the code and try again."
REPLY_EXPIRED = "❌ Verification code has expired. Please generate a new code from the MDT App."
REPLY_ALREADY_LINKED = "❌ This Telegram account is already linked to another user."
REPLY_HELP = (
    "👋 Hello! To link your Telegram account to MDT App:\n\n"
    "1. Go to your profile in the MDT App\n"
    "2. Click 'Link Telegram Account'\n"
    "3. Copy the verification code shown\n"
    "4. Send that code to this bot\n\n"
    "Your code will be valid for {ttl} minutes."
)
REPLY_PROMPT = (
    "📝 Please send your 8-character verification code to link your account.\n\n"
    "To get a code:\n"
    "1. Open the MDT App\n"
    "2. Go to your Profile\n"
    "3. Click 'Link Telegram Account'"
)
CONFIRMATION = (
    "✅ Successfully linked! Your Telegram account is now connected to {name}.\n\n"
    "You will now receive notifications from the MDT App."
)
CODE_MESSAGE = (
    "🔐 Verification Code for MDT App\n\n"
    "Your verification code is: {code}\n\n"
    "This code will expire in {ttl} minutes.\n\n"
    "Enter this code in the MDT App to link your Telegram account."
)

_REASON_REPLIES = {
    MatchReason.NOT_FOUND: REPLY_INVALID_CODE,
    MatchReason.EXPIRED: REPLY_EXPIRED,
    MatchReason.IDENTITY_ALREADY_LINKED: REPLY_ALREADY_LINKED,
    MatchReason.MISSING_IDENTITY: REPLY_INVALID_CODE,
}


class LinkError(ValueError):
    """Linking request rejected; message is safe to show the user."""


@dataclass
class LinkOutcome:
    """
    Result of a link attempt.

    `ok` reports the core write. `confirmation_sent` reports the advisory
    Telegram confirmation and never affects `ok`.
    """

    ok: bool
    reason: MatchReason | None = None
    user: User | None = None
    chat_id: str | None = None
    confirmation_sent: bool = False


# =============================================================================
# Link committer
# =============================================================================


def commit(
    db: Session,
    verification: TelegramVerification,
    chat_id: str,
    client: TelegramClient | None = None,
) -> LinkOutcome:
    """
    Bind `chat_id` to the code's owner and consume the code in one commit.

    The unique index on users.telegram_id rejects a concurrent bind of the
    same chat to another user.
    """
    chat_id = str(chat_id)
    user = verification.user
    user_id = user.id
    user.telegram_id = chat_id
    db.delete(verification)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        logger.warning(
            "Telegram link for user %s rejected: chat %s already linked",
            user_id,
            mask_chat_id(chat_id),
        )
        return LinkOutcome(ok=False, reason=MatchReason.IDENTITY_ALREADY_LINKED, chat_id=chat_id)

    db.refresh(user)
    logger.info("Linked Telegram chat %s to user %s", mask_chat_id(chat_id), user.id)

    confirmation_sent = False
    if client is not None:
        confirmation_sent = client.send_notification(chat_id, CONFIRMATION.format(name=user.name))
    return LinkOutcome(ok=True, user=user, chat_id=chat_id, confirmation_sent=confirmation_sent)


def link_with_code(
    db: Session,
    code: str,
    *,
    chat_id: str | None = None,
    user_id: UUID | None = None,
    client: TelegramClient | None = None,
    now: datetime | None = None,
) -> LinkOutcome:
    """Match a submitted code and, when it holds, commit the link."""
    result = verification_service.match(db, code, chat_id=chat_id, user_id=user_id, now=now)
    if not result.ok:
        return LinkOutcome(ok=False, reason=result.reason, chat_id=result.chat_id)
    return commit(db, result.verification, result.chat_id, client)


# =============================================================================
# In-app flows
# =============================================================================


def generate_code(db: Session, user: User, now: datetime | None = None) -> TelegramVerification:
    """Code for the user to send to the bot (no chat known yet)."""
    if user.telegram_id:
        raise LinkError("Telegram account is already linked")
    return verification_service.issue(db, user.id, chat_id=None, now=now)


def parse_identifier(identifier: str | None) -> tuple[str, bool]:
    """
    Normalize a numeric chat id or @username.

    Returns (identifier, is_numeric).
    """
    value = (identifier or "").strip()
    if value.startswith("@"):
        value = value[1:]
    if not value:
        raise LinkError("Telegram username or ID is required")
    if value.isdigit():
        return value, True
    if not USERNAME_PATTERN.match(value):
        raise LinkError(
            "Invalid Telegram username format. Username must be 5-32 characters "
            "and contain only letters, numbers, and underscores."
        )
    return value, False


def _ensure_chat_free(db: Session, chat_id: str, user_id: UUID) -> None:
    owner = verification_service.find_linked_user(db, chat_id)
    if owner is not None and owner.id != user_id:
        raise LinkError("This Telegram account is already linked to another user")


def send_code(
    db: Session,
    user: User,
    identifier: str,
    client: TelegramClient,
    bot_name: str | None = None,
    now: datetime | None = None,
) -> TelegramVerification:
    """
    Send a code to the given chat and bind the code to that chat.

    Usernames are resolved to the numeric chat id Telegram reports back.
    """
    if user.telegram_id:
        raise LinkError("Telegram account is already linked")

    target, is_numeric = parse_identifier(identifier)
    if is_numeric:
        _ensure_chat_free(db, target, user.id)

    code = verification_service.generate_code()
    ttl = settings.VERIFICATION_CODE_TTL_MINUTES
    bot = f"@{bot_name}" if bot_name else "the bot"
    chat_ref = target if is_numeric else f"@{target}"
    try:
        message = client.send_message(chat_ref, CODE_MESSAGE.format(code=code, ttl=ttl))
    except TelegramError as exc:
        logger.warning("Could not send verification code to %s: %s", mask_chat_id(target), exc)
        if exc.chat_not_found:
            raise LinkError(
                "Cannot send message. You need to start a conversation with the bot first.\n\n"
                f"Steps:\n1. Open Telegram\n2. Search for {bot}\n"
                "3. Click \"Start\" or send /start\n4. Then try sending the verification code again"
            ) from exc
        raise LinkError(
            "Failed to send verification code. Please ensure:\n"
            f"1. You have started a conversation with the bot ({bot})\n"
            "2. Your Telegram ID is correct\n3. The bot is active"
        ) from exc

    chat_id = target
    resolved = ((message or {}).get("chat") or {}).get("id")
    if resolved is not None:
        chat_id = str(resolved)
    if not is_numeric:
        _ensure_chat_free(db, chat_id, user.id)

    return verification_service.issue(db, user.id, chat_id=chat_id, code=code, now=now)


def verify_code(
    db: Session,
    user: User,
    code: str | None,
    client: TelegramClient | None = None,
    now: datetime | None = None,
) -> LinkOutcome:
    """Complete an in-app link; raises LinkError with a user-facing message."""
    if not code or not isinstance(code, str) or not code.strip():
        raise LinkError("Verification code is required")
    if user.telegram_id:
        raise LinkError("Telegram account is already linked")

    outcome = link_with_code(db, code, user_id=user.id, client=client, now=now)
    if outcome.ok:
        return outcome
    if outcome.reason == MatchReason.EXPIRED:
        raise LinkError("Verification code has expired. Please request a new one.")
    if outcome.reason == MatchReason.MISSING_IDENTITY:
        raise LinkError(
            "This code was not sent to a Telegram chat. Send it to the bot instead, "
            "or request a code with your Telegram username or ID."
        )
    if outcome.reason == MatchReason.IDENTITY_ALREADY_LINKED:
        raise LinkError("This Telegram account is already linked to another user")
    raise LinkError("Invalid verification code")


def unlink(db: Session, user: User) -> bool:
    """Remove the user's chat link and any pending code."""
    was_linked = bool(user.telegram_id)
    user.telegram_id = None
    verification = verification_service.find(db, user.id)
    if verification is not None:
        db.delete(verification)
    db.commit()
    if was_linked:
        logger.info("Unlinked Telegram for user %s", user.id)
    return was_linked


# =============================================================================
# Bot inbound
# =============================================================================


def extract_code(text: str) -> str | None:
    """Code from a bare `ABCD1234` or a `/start ABCD1234` deep link."""
    normalized = (text or "").strip().upper()
    start = START_CODE_PATTERN.match(normalized)
    if start:
        return start.group(1)
    if CODE_PATTERN.match(normalized):
        return normalized
    return None


def parse_update(update: dict) -> tuple[str, str] | None:
    """
    (sender chat id, text) of a text message update.

    None for every other update type, including ones whose message or
    sender is not an object.
    """
    message = update.get("message")
    if not isinstance(message, dict):
        return None
    text = message.get("text")
    sender = message.get("from")
    if not isinstance(sender, dict):
        sender = message.get("chat")
    if not isinstance(text, str) or not isinstance(sender, dict):
        return None
    sender_id = sender.get("id")
    if not isinstance(sender_id, (int, str)):
        return None
    return str(sender_id), text


def handle_incoming_text(
    db: Session,
    chat_id: str,
    text: str,
    client: TelegramClient | None = None,
    poller: "TelegramPoller | None" = None,
    now: datetime | None = None,
) -> str:
    """
    Route one bot message. Returns the reply text (also sent when a client
    is available).
    """
    chat_id = str(chat_id)
    code = extract_code(text)

    if code is None:
        normalized = (text or "").strip().upper()
        if normalized.startswith("/"):
            reply = REPLY_HELP.format(ttl=settings.VERIFICATION_CODE_TTL_MINUTES)
        else:
            reply = REPLY_PROMPT
        _reply(client, chat_id, reply)
        return reply

    outcome = link_with_code(db, code, chat_id=chat_id, client=client, now=now)
    if outcome.ok:
        if poller is not None:
            poller.unwatch(outcome.user.id)
        # commit() already sent the confirmation
        return CONFIRMATION.format(name=outcome.user.name)

    reply = _REASON_REPLIES[outcome.reason]
    _reply(client, chat_id, reply)
    return reply


def _reply(client: TelegramClient | None, chat_id: str, text: str) -> None:
    if client is not None:
        client.send_notification(chat_id, text)
