"""Meetings router - schedule, reschedule, cancel and complete MDT meetings."""

from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from clarity_mdt.core.deps import (
    get_current_user,
    get_db,
    get_telegram_client,
    require_csrf_header,
    require_permission,
)
from clarity_mdt.core.permissions import can_manage_meetings
from clarity_mdt.db.enums import AuditEventType, MeetingStatus
from clarity_mdt.db.models import Meeting, User
from clarity_mdt.services import audit_service, meeting_service
from clarity_mdt.services.meeting_service import MeetingChange
from clarity_mdt.services.telegram_client import TelegramClient
from clarity_mdt.utils import as_utc

router = APIRouter(prefix="/meetings", tags=["meetings"])

MANAGE_MEETINGS = require_permission(
    can_manage_meetings, "Only coordinators can manage meetings"
)


class MeetingCreate(BaseModel):
    date: datetime
    description: str | None = Field(None, max_length=2000)


class MeetingUpdate(BaseModel):
    date: datetime | None = None
    description: str | None = Field(None, max_length=2000)


class MeetingCancel(BaseModel):
    cancellation_remarks: str | None = None


class MeetingRead(BaseModel):
    id: str
    date: str
    description: str | None
    status: str
    cancellation_remarks: str | None
    created_by_id: str
    case_count: int
    notified_count: int | None = None


def _to_read(meeting: Meeting, case_count: int, change: MeetingChange | None = None) -> MeetingRead:
    delivery = change.delivery if change else None
    return MeetingRead(
        id=str(meeting.id),
        date=as_utc(meeting.date).isoformat(),
        description=meeting.description,
        status=meeting.status,
        cancellation_remarks=meeting.cancellation_remarks,
        created_by_id=str(meeting.created_by_id),
        case_count=case_count,
        notified_count=delivery.persisted if delivery else None,
    )


def _get_meeting_or_404(db: Session, meeting_id: UUID) -> Meeting:
    meeting = meeting_service.get_meeting(db, meeting_id)
    if not meeting:
        raise HTTPException(status_code=404, detail="Meeting not found")
    return meeting


@router.get("", response_model=list[MeetingRead])
def list_meetings(
    status: MeetingStatus | None = Query(None),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """All meetings, newest first."""
    return [_to_read(m, count) for m, count in meeting_service.list_meetings(db, status)]


@router.get("/{meeting_id}", response_model=MeetingRead)
def get_meeting(
    meeting_id: UUID,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    meeting = _get_meeting_or_404(db, meeting_id)
    return _to_read(meeting, meeting_service.count_cases(db, meeting.id))


@router.post(
    "",
    response_model=MeetingRead,
    status_code=201,
    dependencies=[Depends(require_csrf_header)],
)
def create_meeting(
    data: MeetingCreate,
    request: Request,
    user: User = Depends(MANAGE_MEETINGS),
    db: Session = Depends(get_db),
    client: TelegramClient | None = Depends(get_telegram_client),
):
    """Schedule a meeting; every active user is notified."""
    change = meeting_service.create_meeting(
        db, user.id, data.date, data.description, transport=client
    )
    audit_service.log_event(
        db=db,
        event_type=AuditEventType.MEETING_CREATE,
        actor_user_id=user.id,
        details={"meeting_id": str(change.meeting.id)},
        request=request,
    )
    db.commit()
    return _to_read(change.meeting, 0, change)


@router.patch(
    "/{meeting_id}",
    response_model=MeetingRead,
    dependencies=[Depends(require_csrf_header)],
)
def update_meeting(
    meeting_id: UUID,
    data: MeetingUpdate,
    user: User = Depends(MANAGE_MEETINGS),
    db: Session = Depends(get_db),
    client: TelegramClient | None = Depends(get_telegram_client),
):
    """Edit date/description; a date change notifies every active user."""
    meeting = _get_meeting_or_404(db, meeting_id)
    try:
        change = meeting_service.update_meeting(
            db, meeting, data.model_dump(exclude_unset=True), transport=client
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return _to_read(change.meeting, meeting_service.count_cases(db, meeting.id), change)


@router.post(
    "/{meeting_id}/cancel",
    response_model=MeetingRead,
    dependencies=[Depends(require_csrf_header)],
)
def cancel_meeting(
    meeting_id: UUID,
    data: MeetingCancel,
    request: Request,
    user: User = Depends(MANAGE_MEETINGS),
    db: Session = Depends(get_db),
    client: TelegramClient | None = Depends(get_telegram_client),
):
    meeting = _get_meeting_or_404(db, meeting_id)
    try:
        change = meeting_service.cancel_meeting(
            db, meeting, data.cancellation_remarks, transport=client
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    audit_service.log_event(
        db=db,
        event_type=AuditEventType.MEETING_CANCEL,
        actor_user_id=user.id,
        details={"meeting_id": str(meeting.id)},
        request=request,
    )
    db.commit()
    return _to_read(change.meeting, meeting_service.count_cases(db, meeting.id), change)


@router.post(
    "/{meeting_id}/complete",
    response_model=MeetingRead,
    dependencies=[Depends(require_csrf_header)],
)
def complete_meeting(
    meeting_id: UUID,
    user: User = Depends(MANAGE_MEETINGS),
    db: Session = Depends(get_db),
):
    meeting = _get_meeting_or_404(db, meeting_id)
    try:
        meeting = meeting_service.complete_meeting(db, meeting)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return _to_read(meeting, meeting_service.count_cases(db, meeting.id))
