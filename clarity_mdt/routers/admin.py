"""Admin router - Telegram bot settings."""

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from clarity_mdt.core.deps import get_db, require_csrf_header, require_roles
from clarity_mdt.core.encryption import is_encryption_configured
from clarity_mdt.db.enums import AuditEventType, Role
from clarity_mdt.db.models import User
from clarity_mdt.services import audit_service, telegram_settings_service

router = APIRouter(prefix="/admin", tags=["admin"])


class TelegramSettingsRead(BaseModel):
    enabled: bool
    bot_name: str | None
    bot_token: str | None = Field(None, description="Always masked")
    qr_code_url: str | None


class TelegramSettingsUpdate(BaseModel):
    enabled: bool | None = None
    bot_name: str | None = None
    bot_token: str | None = Field(None, description="Write-only; masked value leaves it unchanged")
    qr_code_url: str | None = Field(None, max_length=500)


@router.get("/telegram-settings", response_model=TelegramSettingsRead)
def get_telegram_settings(
    user: User = Depends(require_roles([Role.ADMIN])),
    db: Session = Depends(get_db),
):
    tg_settings = telegram_settings_service.get_settings(db)
    return TelegramSettingsRead(**telegram_settings_service.to_public_dict(tg_settings))


@router.patch(
    "/telegram-settings",
    response_model=TelegramSettingsRead,
    dependencies=[Depends(require_csrf_header)],
)
def update_telegram_settings(
    data: TelegramSettingsUpdate,
    request: Request,
    user: User = Depends(require_roles([Role.ADMIN])),
    db: Session = Depends(get_db),
):
    """Partial update. A new bot token is encrypted before it is stored."""
    updates = data.model_dump(exclude_unset=True)
    token = updates.get("bot_token")
    if token and token != telegram_settings_service.MASKED_TOKEN and not is_encryption_configured():
        raise HTTPException(
            status_code=400,
            detail="FERNET_KEY is not configured; cannot store the bot token",
        )

    tg_settings = telegram_settings_service.update_settings(db, updates)

    audit_service.log_event(
        db=db,
        event_type=AuditEventType.TELEGRAM_SETTINGS_UPDATE,
        actor_user_id=user.id,
        # Field names only, never values
        details={"fields": sorted(updates.keys())},
        request=request,
    )
    db.commit()

    return TelegramSettingsRead(**telegram_settings_service.to_public_dict(tg_settings))
