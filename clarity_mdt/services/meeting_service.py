"""Meeting lifecycle with fan-out notifications to every active user."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from uuid import UUID

from sqlalchemy import func
from sqlalchemy.orm import Session

from clarity_mdt.db.enums import MeetingStatus, NotificationType
from clarity_mdt.db.models import Case, Meeting
from clarity_mdt.services import notification_service
from clarity_mdt.services.notification_service import DeliveryReport, NotificationContent
from clarity_mdt.services.telegram_client import TelegramClient
from clarity_mdt.utils import as_utc

logger = logging.getLogger(__name__)


@dataclass
class MeetingChange:
    meeting: Meeting
    delivery: DeliveryReport | None = None


def format_meeting_date(value: datetime | None) -> str:
    if value is None:
        return "the scheduled date"
    return as_utc(value).strftime("%d %b %Y")


def _with_description(text: str, description: str | None) -> str:
    return f"{text}: {description}" if description else text


def list_meetings(db: Session, status: MeetingStatus | None = None) -> list[tuple[Meeting, int]]:
    """Meetings newest first, each with its number of assigned cases."""
    case_count = (
        db.query(Case.assigned_meeting_id, func.count(Case.id).label("count"))
        .group_by(Case.assigned_meeting_id)
        .subquery()
    )
    query = db.query(Meeting, func.coalesce(case_count.c.count, 0)).outerjoin(
        case_count, case_count.c.assigned_meeting_id == Meeting.id
    )
    if status:
        query = query.filter(Meeting.status == status.value)
    return [(meeting, count) for meeting, count in query.order_by(Meeting.date.desc()).all()]


def get_meeting(db: Session, meeting_id: UUID) -> Meeting | None:
    return db.query(Meeting).filter(Meeting.id == meeting_id).first()


def count_cases(db: Session, meeting_id: UUID) -> int:
    return db.query(Case).filter(Case.assigned_meeting_id == meeting_id).count()


def _broadcast(
    db: Session,
    content: NotificationContent,
    transport: TelegramClient | None,
) -> DeliveryReport | None:
    """Notify every active user; the meeting change is already committed."""
    try:
        return notification_service.notify_many(
            db, notification_service.all_user_ids(db), content, transport
        )
    except Exception:
        db.rollback()
        logger.exception("Meeting notification %s could not be stored", content.type.value)
        return None


def create_meeting(
    db: Session,
    created_by_id: UUID,
    date: datetime,
    description: str | None = None,
    transport: TelegramClient | None = None,
) -> MeetingChange:
    meeting = Meeting(
        date=date,
        description=(description or "").strip() or None,
        status=MeetingStatus.SCHEDULED.value,
        created_by_id=created_by_id,
    )
    db.add(meeting)
    db.commit()
    db.refresh(meeting)

    content = NotificationContent(
        type=NotificationType.MEETING_CREATED,
        title="New Meeting Created",
        message=_with_description(
            f"A new MDT meeting has been scheduled for {format_meeting_date(meeting.date)}",
            meeting.description,
        ),
        meeting_id=meeting.id,
    )
    return MeetingChange(meeting=meeting, delivery=_broadcast(db, content, transport))


def update_meeting(
    db: Session,
    meeting: Meeting,
    updates: dict,
    transport: TelegramClient | None = None,
) -> MeetingChange:
    """
    Apply date/description changes. Everyone is told only when the date moves.

    Raises:
        ValueError: meeting is cancelled or completed
    """
    if meeting.status != MeetingStatus.SCHEDULED.value:
        raise ValueError(f"Cannot edit a {meeting.status} meeting")

    old_date = as_utc(meeting.date)
    if "description" in updates:
        meeting.description = (updates["description"] or "").strip() or None
    new_date = updates.get("date")
    date_changed = new_date is not None and as_utc(new_date) != old_date
    if date_changed:
        meeting.date = new_date
    db.commit()
    db.refresh(meeting)

    if not date_changed:
        return MeetingChange(meeting=meeting)

    content = NotificationContent(
        type=NotificationType.MEETING_UPDATED,
        title="Meeting Date Changed",
        message=_with_description(
            f"MDT meeting date changed from {format_meeting_date(old_date)} "
            f"to {format_meeting_date(meeting.date)}",
            meeting.description,
        ),
        meeting_id=meeting.id,
    )
    return MeetingChange(meeting=meeting, delivery=_broadcast(db, content, transport))


def cancel_meeting(
    db: Session,
    meeting: Meeting,
    cancellation_remarks: str | None = None,
    transport: TelegramClient | None = None,
) -> MeetingChange:
    """
    Cancel a meeting and tell everyone.

    Raises:
        ValueError: already cancelled
    """
    if meeting.status == MeetingStatus.CANCELLED.value:
        raise ValueError("Meeting is already cancelled")

    meeting.status = MeetingStatus.CANCELLED.value
    meeting.cancellation_remarks = (cancellation_remarks or "").strip() or None
    db.commit()
    db.refresh(meeting)

    content = NotificationContent(
        type=NotificationType.MEETING_CANCELLED,
        title="Meeting Cancelled",
        message=_with_description(
            f"MDT meeting on {format_meeting_date(meeting.date)} has been cancelled",
            meeting.description,
        ),
        meeting_id=meeting.id,
    )
    return MeetingChange(meeting=meeting, delivery=_broadcast(db, content, transport))


def complete_meeting(db: Session, meeting: Meeting) -> Meeting:
    """
    Raises:
        ValueError: already completed or cancelled
    """
    if meeting.status == MeetingStatus.COMPLETED.value:
        raise ValueError("Meeting is already completed")
    if meeting.status == MeetingStatus.CANCELLED.value:
        raise ValueError("Cannot complete a cancelled meeting")
    meeting.status = MeetingStatus.COMPLETED.value
    db.commit()
    db.refresh(meeting)
    return meeting
