"""
Telegram router - account linking, bot webhook and polling control.

Mixed paths:
- /profile/telegram/*  authenticated user linking their own chat
- /telegram/webhook    Bot API webhook (optional shared secret)
- /telegram/polling    admin start/stop of long-polling intake
"""

import hmac
import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from clarity_mdt.core.config import settings
from clarity_mdt.core.deps import (
    get_current_user,
    get_db,
    get_telegram_client,
    get_telegram_poller,
    require_csrf_header,
    require_roles,
)
from clarity_mdt.core.rate_limit import WEBHOOK_LIMIT, limiter
from clarity_mdt.core.structured_logging import build_log_context
from clarity_mdt.db.enums import AuditEventType, Role
from clarity_mdt.db.models import User
from clarity_mdt.services import (
    audit_service,
    telegram_link_service,
    telegram_settings_service,
    verification_service,
)
from clarity_mdt.services.telegram_client import TelegramClient
from clarity_mdt.services.telegram_link_service import LinkError
from clarity_mdt.services.telegram_poller import TelegramPoller
from clarity_mdt.utils import as_utc

router = APIRouter()
logger = logging.getLogger(__name__)

WEBHOOK_SECRET_HEADER = "X-Telegram-Bot-Api-Secret-Token"


# =============================================================================
# Schemas
# =============================================================================


class TelegramStatusResponse(BaseModel):
    linked: bool
    telegram_id: str | None
    pending_code_expires_at: str | None = None


class BotInfoResponse(BaseModel):
    enabled: bool
    bot_username: str | None
    qr_code_url: str | None


class GenerateCodeResponse(BaseModel):
    code: str
    bot_username: str
    expires_in: int = Field(..., description="Minutes until the code expires")
    instructions: str
    deep_link: str


class SendCodeRequest(BaseModel):
    telegram_identifier: str | None = Field(None, description="Numeric chat ID or @username")


class SendCodeResponse(BaseModel):
    message: str
    expires_in: int


class VerifyCodeRequest(BaseModel):
    code: str | None = None


class VerifyCodeResponse(BaseModel):
    message: str
    telegram_id: str
    confirmation_sent: bool


class PollingStatusResponse(BaseModel):
    running: bool
    persistent: bool
    watched_sessions: int


# =============================================================================
# Profile linking
# =============================================================================


@router.get("/profile/telegram", response_model=TelegramStatusResponse)
def get_telegram_status(
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Current link state and any pending code."""
    pending = verification_service.find(db, user.id)
    return TelegramStatusResponse(
        linked=bool(user.telegram_id),
        telegram_id=user.telegram_id,
        pending_code_expires_at=as_utc(pending.expires_at).isoformat() if pending else None,
    )


@router.get("/profile/telegram/bot-info", response_model=BotInfoResponse)
def get_bot_info(
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Bot username and QR code for the linking screen (nulls when disabled)."""
    tg_settings = telegram_settings_service.get_settings(db)
    if not tg_settings or not tg_settings.enabled:
        return BotInfoResponse(enabled=False, bot_username=None, qr_code_url=None)
    return BotInfoResponse(
        enabled=True,
        bot_username=tg_settings.bot_name,
        qr_code_url=tg_settings.qr_code_url,
    )


@router.post(
    "/profile/telegram/generate-code",
    response_model=GenerateCodeResponse,
    dependencies=[Depends(require_csrf_header)],
)
def generate_code(
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    client: TelegramClient | None = Depends(get_telegram_client),
    poller: TelegramPoller = Depends(get_telegram_poller),
):
    """
    Issue a code for the user to send to the bot.

    With TELEGRAM_USE_POLLING the poller watches for it until expiry.
    """
    if user.telegram_id:
        raise HTTPException(status_code=400, detail="Telegram account is already linked")

    bot_username = telegram_settings_service.get_bot_username(db)
    if not bot_username:
        raise HTTPException(
            status_code=400,
            detail="Telegram is not configured or disabled. Please contact an administrator.",
        )

    try:
        verification = telegram_link_service.generate_code(db, user)
    except LinkError as e:
        raise HTTPException(status_code=400, detail=str(e))

    if settings.TELEGRAM_USE_POLLING and client is not None:
        poller.watch(user.id, verification.expires_at, client)

    code = verification.code
    return GenerateCodeResponse(
        code=code,
        bot_username=bot_username,
        expires_in=settings.VERIFICATION_CODE_TTL_MINUTES,
        instructions=f'Send this code "{code}" to @{bot_username} on Telegram to link your account.',
        deep_link=f"https://t.me/{bot_username}?start={code}",
    )


@router.post(
    "/profile/telegram/send-code",
    response_model=SendCodeResponse,
    dependencies=[Depends(require_csrf_header)],
)
def send_code(
    data: SendCodeRequest,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    client: TelegramClient | None = Depends(get_telegram_client),
):
    """Send a code to the user's chat; the user then types it in the app."""
    if user.telegram_id:
        raise HTTPException(status_code=400, detail="Telegram account is already linked")
    if client is None:
        raise HTTPException(
            status_code=400,
            detail="Telegram is not configured or disabled. Please contact an administrator.",
        )

    try:
        telegram_link_service.send_code(
            db,
            user,
            data.telegram_identifier,
            client,
            bot_name=telegram_settings_service.get_bot_username(db),
        )
    except LinkError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return SendCodeResponse(
        message="Verification code sent successfully to your Telegram account",
        expires_in=settings.VERIFICATION_CODE_TTL_MINUTES,
    )


@router.post(
    "/profile/telegram/verify-code",
    response_model=VerifyCodeResponse,
    dependencies=[Depends(require_csrf_header)],
)
def verify_code(
    data: VerifyCodeRequest,
    request: Request,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    client: TelegramClient | None = Depends(get_telegram_client),
    poller: TelegramPoller = Depends(get_telegram_poller),
):
    """Complete linking with a code that was sent to the user's chat."""
    try:
        outcome = telegram_link_service.verify_code(db, user, data.code, client)
    except LinkError as e:
        raise HTTPException(status_code=400, detail=str(e))

    poller.unwatch(user.id)
    audit_service.log_event(
        db=db,
        event_type=AuditEventType.TELEGRAM_LINKED,
        actor_user_id=user.id,
        target_user_id=user.id,
        details=build_log_context(chat_id=outcome.chat_id),
        request=request,
    )
    db.commit()

    return VerifyCodeResponse(
        message="Telegram account linked successfully",
        telegram_id=outcome.chat_id,
        confirmation_sent=outcome.confirmation_sent,
    )


@router.delete("/profile/telegram", dependencies=[Depends(require_csrf_header)])
def unlink_telegram(
    request: Request,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    poller: TelegramPoller = Depends(get_telegram_poller),
):
    """Remove the chat link and any pending code."""
    previous_chat = user.telegram_id
    was_linked = telegram_link_service.unlink(db, user)
    poller.unwatch(user.id)
    if was_linked:
        audit_service.log_event(
            db=db,
            event_type=AuditEventType.TELEGRAM_UNLINKED,
            actor_user_id=user.id,
            target_user_id=user.id,
            details=build_log_context(chat_id=previous_chat),
            request=request,
        )
        db.commit()
    return {"message": "Telegram account unlinked", "linked": False}


@router.post("/profile/telegram/cancel", dependencies=[Depends(require_csrf_header)])
def cancel_linking(
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    poller: TelegramPoller = Depends(get_telegram_poller),
):
    """Abandon a pending link: drop the code and stop watching for it."""
    cancelled = verification_service.discard_for_user(db, user.id)
    poller.unwatch(user.id)
    return {"cancelled": cancelled}


# =============================================================================
# Bot webhook
# =============================================================================


def _check_webhook_secret(request: Request) -> None:
    expected = settings.TELEGRAM_WEBHOOK_SECRET
    if not expected:
        return
    provided = request.headers.get(WEBHOOK_SECRET_HEADER, "")
    if not hmac.compare_digest(provided.encode(), expected.encode()):
        logger.warning("Telegram webhook rejected: bad secret token")
        raise HTTPException(status_code=401, detail="Unauthorized")


@router.post("/telegram/webhook")
@limiter.limit(WEBHOOK_LIMIT)
async def telegram_webhook(
    request: Request,
    db: Session = Depends(get_db),
    client: TelegramClient | None = Depends(get_telegram_client),
    poller: TelegramPoller = Depends(get_telegram_poller),
):
    """
    Receive a Bot API update.

    Only text messages are routed; every other update type is acknowledged
    and ignored so Telegram does not redeliver it.
    """
    _check_webhook_secret(request)

    body = await request.body()
    try:
        update = json.loads(body)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid JSON body")
    if not isinstance(update, dict):
        raise HTTPException(status_code=400, detail="Update must be a JSON object")

    parsed = telegram_link_service.parse_update(update)
    if parsed is None:
        return {"ok": True}
    sender, text = parsed

    await run_in_threadpool(
        telegram_link_service.handle_incoming_text,
        db,
        sender,
        text,
        client,
        poller,
    )
    return {"ok": True}


# =============================================================================
# Polling control (admin)
# =============================================================================


@router.get("/telegram/polling", response_model=PollingStatusResponse)
def get_polling_status(
    user: User = Depends(require_roles([Role.ADMIN])),
    poller: TelegramPoller = Depends(get_telegram_poller),
):
    return PollingStatusResponse(**poller.status())


@router.post(
    "/telegram/polling",
    response_model=PollingStatusResponse,
    dependencies=[Depends(require_csrf_header)],
)
def start_polling(
    user: User = Depends(require_roles([Role.ADMIN])),
    client: TelegramClient | None = Depends(get_telegram_client),
    poller: TelegramPoller = Depends(get_telegram_poller),
):
    """Start long-polling until an admin stops it."""
    if client is None:
        raise HTTPException(
            status_code=400,
            detail="Telegram bot token not configured or Telegram is disabled",
        )
    poller.start(client, persistent=True)
    return PollingStatusResponse(**poller.status())


@router.delete(
    "/telegram/polling",
    response_model=PollingStatusResponse,
    dependencies=[Depends(require_csrf_header)],
)
def stop_polling(
    user: User = Depends(require_roles([Role.ADMIN])),
    poller: TelegramPoller = Depends(get_telegram_poller),
):
    poller.stop()
    return PollingStatusResponse(**poller.status())
