"""
Notification Service - in-app notifications and Telegram fan-out.

Rows are always persisted before anything is forwarded. Forwarding is
advisory: failures are logged and counted in the DeliveryReport, never
raised. A failed commit propagates to the caller.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from clarity_mdt.core.structured_logging import mask_chat_id
from clarity_mdt.db.enums import NotificationType, RecipientType, Role
from clarity_mdt.db.models import Department, Notification, User
from clarity_mdt.services.telegram_client import TelegramClient, TelegramError
from clarity_mdt.utils import utcnow

logger = logging.getLogger(__name__)


@dataclass
class NotificationContent:
    type: NotificationType
    title: str
    message: str
    meeting_id: UUID | None = None
    case_id: UUID | None = None

    def telegram_text(self) -> str:
        return f"{self.title}\n{self.message}"


@dataclass
class DeliveryReport:
    """Outcome of a notify call: persisted rows plus forwarding counts."""

    notifications: list[Notification] = field(default_factory=list)
    forward_attempted: int = 0
    forward_delivered: int = 0
    forward_errors: list[str] = field(default_factory=list)

    @property
    def persisted(self) -> int:
        return len(self.notifications)

    @property
    def forward_failed(self) -> int:
        return self.forward_attempted - self.forward_delivered


class RecipientNotFound(LookupError):
    """Named department or user does not exist."""


# =============================================================================
# Notifier
# =============================================================================


def _build(user_id: UUID, content: NotificationContent) -> Notification:
    return Notification(
        user_id=user_id,
        type=content.type.value,
        title=content.title,
        message=content.message,
        meeting_id=content.meeting_id,
        case_id=content.case_id,
        read=False,
    )


def _forward(
    report: DeliveryReport,
    chat_ids: Iterable[str],
    content: NotificationContent,
    transport: TelegramClient | None,
) -> None:
    if transport is None:
        return
    text = content.telegram_text()
    for chat_id in chat_ids:
        report.forward_attempted += 1
        try:
            transport.send_message(chat_id, text)
            report.forward_delivered += 1
        except TelegramError as exc:
            report.forward_errors.append(str(exc))
            logger.warning(
                "Telegram forward of %s to %s failed: %s",
                content.type.value,
                mask_chat_id(chat_id),
                exc,
            )
        except Exception as exc:
            # Rows are already committed; forwarding never fails the call
            report.forward_errors.append(f"{type(exc).__name__}: {exc}")
            logger.exception(
                "Telegram forward of %s to %s failed",
                content.type.value,
                mask_chat_id(chat_id),
            )


def notify(
    db: Session,
    user_id: UUID,
    content: NotificationContent,
    transport: TelegramClient | None = None,
) -> DeliveryReport:
    """Persist one notification, then forward it if the user is linked."""
    notification = _build(user_id, content)
    db.add(notification)
    db.commit()
    db.refresh(notification)

    report = DeliveryReport(notifications=[notification])
    chat_id = db.query(User.telegram_id).filter(User.id == user_id).scalar()
    if chat_id:
        _forward(report, [chat_id], content, transport)
    return report


def notify_many(
    db: Session,
    user_ids: Iterable[UUID],
    content: NotificationContent,
    transport: TelegramClient | None = None,
) -> DeliveryReport:
    """
    Persist one row per recipient in a single commit, then forward to the
    linked subset. Duplicate ids are collapsed.
    """
    unique_ids = list(dict.fromkeys(user_ids))
    if not unique_ids:
        return DeliveryReport()

    notifications = [_build(user_id, content) for user_id in unique_ids]
    db.add_all(notifications)
    db.commit()

    report = DeliveryReport(notifications=notifications)
    chat_ids = [
        row.telegram_id
        for row in db.query(User.telegram_id)
        .filter(User.id.in_(unique_ids), User.telegram_id.isnot(None))
        .all()
    ]
    _forward(report, chat_ids, content, transport)

    if report.forward_failed:
        logger.info(
            "Notification %s: %d persisted, %d/%d forwarded",
            content.type.value,
            report.persisted,
            report.forward_delivered,
            report.forward_attempted,
        )
    return report


# =============================================================================
# Notification CRUD
# =============================================================================


def get_notifications(
    db: Session,
    user_id: UUID,
    unread_only: bool = False,
    limit: int = 50,
) -> list[Notification]:
    """Get notifications for user, newest first."""
    query = db.query(Notification).filter(Notification.user_id == user_id)
    if unread_only:
        query = query.filter(Notification.read.is_(False))
    return query.order_by(Notification.created_at.desc()).limit(limit).all()


def get_unread_count(db: Session, user_id: UUID) -> int:
    return db.query(Notification).filter(
        Notification.user_id == user_id,
        Notification.read.is_(False),
    ).count()


def get_notification(db: Session, notification_id: UUID) -> Optional[Notification]:
    return db.query(Notification).filter(Notification.id == notification_id).first()


def set_read(db: Session, notification: Notification, read: bool) -> Notification:
    notification.read = read
    notification.read_at = utcnow() if read else None
    db.commit()
    db.refresh(notification)
    return notification


def delete_notification(db: Session, notification: Notification) -> None:
    db.delete(notification)
    db.commit()


def find_not_owned(db: Session, notification_ids: list[UUID], user_id: UUID) -> list[UUID]:
    """Ids among `notification_ids` that exist but belong to someone else."""
    if not notification_ids:
        return []
    rows = db.query(Notification.id).filter(
        Notification.id.in_(notification_ids),
        Notification.user_id != user_id,
    ).all()
    return [row.id for row in rows]


def delete_many(db: Session, notification_ids: list[UUID], user_id: UUID) -> int:
    """Delete the caller's notifications among `notification_ids`. Returns count."""
    if not notification_ids:
        return 0
    count = db.query(Notification).filter(
        Notification.id.in_(notification_ids),
        Notification.user_id == user_id,
    ).delete(synchronize_session=False)
    db.commit()
    return count


def delete_all(db: Session, user_id: UUID) -> int:
    count = db.query(Notification).filter(
        Notification.user_id == user_id,
    ).delete(synchronize_session=False)
    db.commit()
    return count


# =============================================================================
# Recipients
# =============================================================================


def all_user_ids(db: Session) -> list[UUID]:
    return [row.id for row in db.query(User.id).filter(User.is_active.is_(True)).all()]


def coordinator_ids(db: Session) -> list[UUID]:
    """Active coordinators and admins."""
    rows = db.query(User.id).filter(
        User.role.in_([Role.COORDINATOR.value, Role.ADMIN.value]),
        User.is_active.is_(True),
    ).all()
    return [row.id for row in rows]


def resolve_manual_recipients(
    db: Session,
    recipient_type: RecipientType,
    department_id: UUID | None = None,
    user_id: UUID | None = None,
) -> list[UUID]:
    """
    Recipient ids for a manual notification.

    Raises:
        ValueError: department_id/user_id missing for that recipient type
        RecipientNotFound: department or user does not exist
    """
    if recipient_type == RecipientType.EVERYONE:
        return all_user_ids(db)

    if recipient_type == RecipientType.DEPARTMENT:
        if not department_id:
            raise ValueError("Department ID is required for department notifications")
        if not db.query(Department.id).filter(Department.id == department_id).first():
            raise RecipientNotFound("Department not found")
        rows = db.query(User.id).filter(
            User.department_id == department_id,
            User.is_active.is_(True),
        ).all()
        return [row.id for row in rows]

    if not user_id:
        raise ValueError("User ID is required for individual notifications")
    if not db.query(User.id).filter(User.id == user_id).first():
        raise RecipientNotFound("User not found")
    return [user_id]


def send_manual(
    db: Session,
    title: str,
    message: str,
    recipient_ids: list[UUID],
    transport: TelegramClient | None = None,
) -> DeliveryReport:
    content = NotificationContent(
        type=NotificationType.MANUAL_NOTIFICATION,
        title=title,
        message=message,
    )
    return notify_many(db, recipient_ids, content, transport)


def request_meeting(
    db: Session,
    requester: User,
    remarks: str | None = None,
    transport: TelegramClient | None = None,
) -> DeliveryReport:
    """
    Ask coordinators and admins for an MDT meeting.

    Raises:
        ValueError: nobody to notify
    """
    recipients = coordinator_ids(db)
    if not recipients:
        raise ValueError("No coordinators or admins found")

    department_name = requester.department.name if requester.department else "Unknown Department"
    message = f"{requester.name} from {department_name} has requested an MDT meeting."
    if remarks and remarks.strip():
        message = f"{message}\n\nRemarks: {remarks.strip()}"

    content = NotificationContent(
        type=NotificationType.MEETING_REQUEST,
        title="MDT Meeting Request",
        message=message,
    )
    return notify_many(db, recipients, content, transport)
