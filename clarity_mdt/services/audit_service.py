"""Audit logging service - security and compliance event tracking.

Security guidelines:
- NEVER log secrets (bot tokens, session cookies, passwords)
- Mask chat identities in details (structured_logging.mask_chat_id)
- Use IDs instead of patient data
- IP: Trust X-Forwarded-For only behind a configured proxy
"""

from typing import Any
from uuid import UUID

from fastapi import Request
from sqlalchemy.orm import Session

from clarity_mdt.core.config import settings
from clarity_mdt.db.enums import AuditEventType
from clarity_mdt.db.models import AuditLog


def get_client_ip(request: Request | None) -> str | None:
    """
    Extract client IP from request.

    Only trusts X-Forwarded-For when TRUST_PROXY_HEADERS=True (behind reverse proxy).
    """
    if not request:
        return None

    if settings.TRUST_PROXY_HEADERS:
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            # X-Forwarded-For: client, proxy1, proxy2 - take first
            return forwarded.split(",")[0].strip()

    if request.client:
        return request.client.host

    return None


def log_event(
    db: Session,
    event_type: AuditEventType,
    actor_user_id: UUID | None = None,
    target_user_id: UUID | None = None,
    case_id: UUID | None = None,
    details: dict[str, Any] | None = None,
    request: Request | None = None,
) -> AuditLog:
    """
    Add an audit entry to the session.

    The caller commits, so the entry lands in the same transaction as the
    change it describes.
    """
    entry = AuditLog(
        action=event_type.value,
        user_id=actor_user_id,
        target_user_id=target_user_id,
        case_id=case_id,
        details=details,
        ip_address=get_client_ip(request),
    )
    db.add(entry)
    db.flush()
    return entry


def list_events(
    db: Session,
    event_type: AuditEventType | None = None,
    limit: int = 100,
) -> list[AuditLog]:
    query = db.query(AuditLog)
    if event_type:
        query = query.filter(AuditLog.action == event_type.value)
    return query.order_by(AuditLog.created_at.desc()).limit(limit).all()
