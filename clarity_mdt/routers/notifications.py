"""
Notifications router - /notifications endpoints.

Listing, read state and deletion of the caller's own notifications, plus
coordinator-sent manual notifications and meeting requests.
"""

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from clarity_mdt.core.deps import (
    get_current_user,
    get_db,
    get_telegram_client,
    require_csrf_header,
    require_permission,
)
from clarity_mdt.core.permissions import can_send_manual_notifications
from clarity_mdt.db.enums import RecipientType
from clarity_mdt.db.models import Notification, User
from clarity_mdt.services import notification_service, user_service
from clarity_mdt.services.notification_service import RecipientNotFound
from clarity_mdt.services.telegram_client import TelegramClient
from clarity_mdt.utils import as_utc

router = APIRouter(prefix="/notifications", tags=["notifications"])

SEND_MANUAL = require_permission(
    can_send_manual_notifications, "Only coordinators can send manual notifications"
)


# =============================================================================
# Schemas
# =============================================================================


class NotificationRead(BaseModel):
    """Notification response."""
    id: str
    type: str
    title: str
    message: str
    meeting_id: str | None
    case_id: str | None
    read: bool
    read_at: str | None
    created_at: str


class NotificationListResponse(BaseModel):
    notifications: list[NotificationRead]
    unread_count: int


class UnreadCountResponse(BaseModel):
    """Unread count only (for polling)."""
    count: int


class NotificationUpdate(BaseModel):
    read: bool


class BulkDeleteRequest(BaseModel):
    notification_ids: list[UUID] = Field(..., min_length=1)


class ManualNotificationRequest(BaseModel):
    title: str = Field(..., min_length=1, max_length=255)
    message: str = Field(..., min_length=1)
    recipient_type: RecipientType
    department_id: UUID | None = None
    user_id: UUID | None = None


class DeliveryResponse(BaseModel):
    message: str
    recipient_count: int
    telegram_attempted: int
    telegram_delivered: int


class MeetingRequest(BaseModel):
    remarks: str | None = None


class RecipientUser(BaseModel):
    id: str
    name: str
    department_name: str | None


def _to_read(n: Notification) -> NotificationRead:
    return NotificationRead(
        id=str(n.id),
        type=n.type,
        title=n.title,
        message=n.message,
        meeting_id=str(n.meeting_id) if n.meeting_id else None,
        case_id=str(n.case_id) if n.case_id else None,
        read=n.read,
        read_at=as_utc(n.read_at).isoformat() if n.read_at else None,
        created_at=as_utc(n.created_at).isoformat(),
    )


def _get_owned(db: Session, notification_id: UUID, user: User) -> Notification:
    notification = notification_service.get_notification(db, notification_id)
    if not notification:
        raise HTTPException(status_code=404, detail="Notification not found")
    if notification.user_id != user.id:
        raise HTTPException(status_code=403, detail="Forbidden")
    return notification


# =============================================================================
# Own notifications
# =============================================================================


@router.get("", response_model=NotificationListResponse)
def list_notifications(
    unread_only: bool = Query(False),
    limit: int = Query(50, ge=1, le=200),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Get the caller's notifications, newest first."""
    notifications = notification_service.get_notifications(
        db, user.id, unread_only=unread_only, limit=limit
    )
    unread_count = notification_service.get_unread_count(db, user.id)
    return NotificationListResponse(
        notifications=[_to_read(n) for n in notifications],
        unread_count=unread_count,
    )


@router.get("/count", response_model=UnreadCountResponse)
def get_unread_count(
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return UnreadCountResponse(count=notification_service.get_unread_count(db, user.id))


@router.get("/users", response_model=list[RecipientUser])
def list_recipient_users(
    user: User = Depends(SEND_MANUAL),
    db: Session = Depends(get_db),
):
    """Users selectable as individual recipients."""
    return [
        RecipientUser(
            id=str(u.id),
            name=u.name,
            department_name=u.department.name if u.department else None,
        )
        for u in user_service.list_users(db)
    ]


@router.post("/bulk-delete", dependencies=[Depends(require_csrf_header)])
def bulk_delete_notifications(
    data: BulkDeleteRequest,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Delete several of the caller's notifications; all-or-nothing on ownership."""
    if notification_service.find_not_owned(db, data.notification_ids, user.id):
        raise HTTPException(
            status_code=403,
            detail="Some notifications do not belong to you",
        )
    count = notification_service.delete_many(db, data.notification_ids, user.id)
    return {"message": f"{count} notification(s) deleted", "deleted_count": count}


@router.delete("/bulk-delete", dependencies=[Depends(require_csrf_header)])
def delete_all_notifications(
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    count = notification_service.delete_all(db, user.id)
    return {"message": f"{count} notification(s) deleted", "deleted_count": count}


@router.patch(
    "/{notification_id}",
    response_model=NotificationRead,
    dependencies=[Depends(require_csrf_header)],
)
def update_notification(
    notification_id: UUID,
    data: NotificationUpdate,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Mark a notification read or unread."""
    notification = _get_owned(db, notification_id, user)
    notification = notification_service.set_read(db, notification, data.read)
    return _to_read(notification)


@router.delete("/{notification_id}", dependencies=[Depends(require_csrf_header)])
def delete_notification(
    notification_id: UUID,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    notification = _get_owned(db, notification_id, user)
    notification_service.delete_notification(db, notification)
    return {"message": "Notification deleted"}


# =============================================================================
# Sending
# =============================================================================


@router.post(
    "/send-manual",
    response_model=DeliveryResponse,
    dependencies=[Depends(require_csrf_header)],
)
def send_manual_notification(
    data: ManualNotificationRequest,
    user: User = Depends(SEND_MANUAL),
    db: Session = Depends(get_db),
    client: TelegramClient | None = Depends(get_telegram_client),
):
    """Coordinator broadcast to everyone, a department, or one user."""
    try:
        recipients = notification_service.resolve_manual_recipients(
            db,
            data.recipient_type,
            department_id=data.department_id,
            user_id=data.user_id,
        )
    except RecipientNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    if not recipients:
        raise HTTPException(status_code=400, detail="No recipients found")

    report = notification_service.send_manual(db, data.title, data.message, recipients, client)
    return DeliveryResponse(
        message=f"Notification sent to {report.persisted} recipient(s)",
        recipient_count=report.persisted,
        telegram_attempted=report.forward_attempted,
        telegram_delivered=report.forward_delivered,
    )


@router.post(
    "/request-meeting",
    response_model=DeliveryResponse,
    dependencies=[Depends(require_csrf_header)],
)
def request_meeting(
    data: MeetingRequest,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    client: TelegramClient | None = Depends(get_telegram_client),
):
    """Any user may ask coordinators and admins for an MDT meeting."""
    try:
        report = notification_service.request_meeting(db, user, data.remarks, client)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return DeliveryResponse(
        message="Meeting request sent to coordinators and admins",
        recipient_count=report.persisted,
        telegram_attempted=report.forward_attempted,
        telegram_delivered=report.forward_delivered,
    )
