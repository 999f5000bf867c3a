"""
Verification store and code matcher for Telegram account linking.

A user holds at most one outstanding code (unique user_id). Codes are
deleted when consumed, when found expired, or when superseded by a new
issue for the same user; a deleted code is never restored.
"""

from __future__ import annotations

import enum
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from uuid import UUID

from sqlalchemy.orm import Session

from clarity_mdt.core.config import settings
from clarity_mdt.core.structured_logging import mask_chat_id
from clarity_mdt.db.models import TelegramVerification, User
from clarity_mdt.utils import as_utc, utcnow

logger = logging.getLogger(__name__)

CODE_BYTES = 4  # 8 hex characters
MAX_CODE_ATTEMPTS = 5


class MatchReason(str, enum.Enum):
    NOT_FOUND = "not_found"
    EXPIRED = "expired"
    MISSING_IDENTITY = "missing_identity"
    IDENTITY_ALREADY_LINKED = "identity_already_linked"


@dataclass
class MatchResult:
    ok: bool
    reason: MatchReason | None = None
    verification: TelegramVerification | None = None
    chat_id: str | None = None


# =============================================================================
# Store
# =============================================================================


def normalize_code(code: str | None) -> str:
    return (code or "").strip().upper()


def generate_code() -> str:
    return secrets.token_hex(CODE_BYTES).upper()


def _unused_code(db: Session) -> str:
    for _ in range(MAX_CODE_ATTEMPTS):
        code = generate_code()
        taken = db.query(TelegramVerification.id).filter(TelegramVerification.code == code).first()
        if not taken:
            return code
    raise RuntimeError("Could not generate a unique verification code")


def issue(
    db: Session,
    user_id: UUID,
    chat_id: str | None = None,
    code: str | None = None,
    now: datetime | None = None,
) -> TelegramVerification:
    """
    Issue a fresh code for `user_id`, replacing any outstanding one.

    `chat_id` is the chat the code is sent to (in-app flow); None when the
    user is expected to send the code to the bot. `code` is a pre-generated
    code that has already been delivered.
    """
    now = now or utcnow()
    verification = find(db, user_id)
    if verification is None:
        verification = TelegramVerification(user_id=user_id)
        db.add(verification)

    verification.code = normalize_code(code) if code else _unused_code(db)
    verification.telegram_id = str(chat_id) if chat_id is not None else None
    verification.expires_at = now + timedelta(minutes=settings.VERIFICATION_CODE_TTL_MINUTES)
    verification.created_at = now
    db.commit()
    db.refresh(verification)
    return verification


def find(db: Session, user_id: UUID) -> TelegramVerification | None:
    return db.query(TelegramVerification).filter(TelegramVerification.user_id == user_id).first()


def find_by_code(db: Session, code: str) -> TelegramVerification | None:
    normalized = normalize_code(code)
    if not normalized:
        return None
    return db.query(TelegramVerification).filter(TelegramVerification.code == normalized).first()


def consume(db: Session, verification_id: UUID) -> bool:
    """Delete a code by id. Returns False when it was already gone."""
    deleted = (
        db.query(TelegramVerification)
        .filter(TelegramVerification.id == verification_id)
        .delete(synchronize_session=False)
    )
    db.commit()
    return bool(deleted)


def discard_for_user(db: Session, user_id: UUID) -> bool:
    """Drop the user's outstanding code, if any."""
    deleted = (
        db.query(TelegramVerification)
        .filter(TelegramVerification.user_id == user_id)
        .delete(synchronize_session=False)
    )
    db.commit()
    return bool(deleted)


def is_expired(verification: TelegramVerification, now: datetime | None = None) -> bool:
    return (now or utcnow()) > as_utc(verification.expires_at)


def purge_expired(db: Session, now: datetime | None = None) -> int:
    """Delete every expired code. Returns the number removed."""
    now = now or utcnow()
    # Compare in Python: SQLite hands back naive datetimes
    expired_ids = [
        row.id
        for row in db.query(TelegramVerification.id, TelegramVerification.expires_at).all()
        if now > as_utc(row.expires_at)
    ]
    if not expired_ids:
        return 0
    db.query(TelegramVerification).filter(
        TelegramVerification.id.in_(expired_ids)
    ).delete(synchronize_session=False)
    db.commit()
    logger.info("Purged %d expired Telegram verification code(s)", len(expired_ids))
    return len(expired_ids)


# =============================================================================
# Matcher
# =============================================================================


def find_linked_user(db: Session, chat_id: str) -> User | None:
    return db.query(User).filter(User.telegram_id == str(chat_id)).first()


def match(
    db: Session,
    code: str,
    chat_id: str | None = None,
    user_id: UUID | None = None,
    now: datetime | None = None,
) -> MatchResult:
    """
    Check a submitted code.

    `user_id` restricts the lookup to that user's code (in-app path).
    `chat_id` is the sender's identity (webhook path); when the code was
    issued for a specific chat, that stored identity is used instead.

    The only write is deleting an expired code.
    """
    verification = find_by_code(db, code)
    if verification is None:
        return MatchResult(ok=False, reason=MatchReason.NOT_FOUND)

    if user_id is not None and verification.user_id != user_id:
        return MatchResult(ok=False, reason=MatchReason.NOT_FOUND)

    if is_expired(verification, now):
        consume(db, verification.id)
        return MatchResult(ok=False, reason=MatchReason.EXPIRED)

    submitted = str(chat_id) if chat_id is not None else None
    resolved = verification.telegram_id or submitted
    if not resolved:
        return MatchResult(ok=False, reason=MatchReason.MISSING_IDENTITY, verification=verification)

    if verification.telegram_id and submitted and submitted != verification.telegram_id:
        logger.warning(
            "Code submitted from %s but issued for %s; using the issued chat",
            mask_chat_id(submitted),
            mask_chat_id(verification.telegram_id),
        )

    owner = find_linked_user(db, resolved)
    if owner is not None and owner.id != verification.user_id:
        return MatchResult(
            ok=False,
            reason=MatchReason.IDENTITY_ALREADY_LINKED,
            verification=verification,
            chat_id=resolved,
        )

    return MatchResult(ok=True, verification=verification, chat_id=resolved)
