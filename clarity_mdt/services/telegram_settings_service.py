"""Telegram bot settings (singleton row) and client construction."""

from __future__ import annotations

import logging

from sqlalchemy.orm import Session

from clarity_mdt.core.encryption import decrypt_token, encrypt_token
from clarity_mdt.db.models import TelegramSettings
from clarity_mdt.services.telegram_client import TelegramClient

logger = logging.getLogger(__name__)

SETTINGS_ID = "single"
MASKED_TOKEN = "***masked***"


def get_settings(db: Session) -> TelegramSettings | None:
    return db.query(TelegramSettings).filter(TelegramSettings.id == SETTINGS_ID).first()


def to_public_dict(settings: TelegramSettings | None) -> dict:
    """Settings as returned to admins (token masked)."""
    if not settings:
        return {"enabled": False, "bot_name": None, "bot_token": None, "qr_code_url": None}
    return {
        "enabled": settings.enabled,
        "bot_name": settings.bot_name,
        "bot_token": MASKED_TOKEN if settings.bot_token_encrypted else None,
        "qr_code_url": settings.qr_code_url,
    }


def update_settings(db: Session, updates: dict) -> TelegramSettings:
    """
    Apply a partial update.

    `bot_token`: new plaintext token is encrypted; None/"" clears it;
    the masked placeholder leaves the stored token untouched.
    """
    settings = get_settings(db)
    if not settings:
        settings = TelegramSettings(id=SETTINGS_ID, enabled=False)
        db.add(settings)

    if "enabled" in updates and updates["enabled"] is not None:
        settings.enabled = bool(updates["enabled"])

    if "bot_name" in updates:
        bot_name = (updates["bot_name"] or "").strip().lstrip("@")
        settings.bot_name = bot_name or None

    if "bot_token" in updates:
        token = updates["bot_token"]
        if token and token != MASKED_TOKEN:
            settings.bot_token_encrypted = encrypt_token(token.strip())
        elif not token:
            settings.bot_token_encrypted = None

    if "qr_code_url" in updates:
        settings.qr_code_url = (updates["qr_code_url"] or "").strip() or None

    db.commit()
    db.refresh(settings)
    return settings


def get_bot_token(db: Session) -> str | None:
    """Decrypted token, or None when disabled/unconfigured/undecryptable."""
    settings = get_settings(db)
    if not settings or not settings.enabled or not settings.bot_token_encrypted:
        return None
    try:
        return decrypt_token(settings.bot_token_encrypted)
    except (ValueError, RuntimeError) as exc:
        logger.error("Cannot decrypt Telegram bot token: %s", exc)
        return None


def get_bot_username(db: Session) -> str | None:
    settings = get_settings(db)
    if not settings or not settings.enabled:
        return None
    return settings.bot_name


def get_client(db: Session) -> TelegramClient | None:
    """Configured client, or None when Telegram is not usable."""
    token = get_bot_token(db)
    if not token:
        return None
    return TelegramClient(token)
