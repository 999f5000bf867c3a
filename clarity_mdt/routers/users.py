"""Users and departments router."""

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from clarity_mdt.core.deps import get_current_user, get_db, require_csrf_header, require_roles
from clarity_mdt.db.enums import AuditEventType, Role
from clarity_mdt.db.models import Department, User
from clarity_mdt.services import audit_service, user_service

router = APIRouter(tags=["users"])


class UserRead(BaseModel):
    id: str
    login_id: str
    name: str
    role: str
    previous_role: str | None
    department_id: str | None
    department_name: str | None
    telegram_linked: bool
    is_active: bool


class DepartmentRead(BaseModel):
    id: str
    name: str


class DepartmentCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)


def _user_read(user: User) -> UserRead:
    return UserRead(
        id=str(user.id),
        login_id=user.login_id,
        name=user.name,
        role=user.role,
        previous_role=user.previous_role,
        department_id=str(user.department_id) if user.department_id else None,
        department_name=user.department.name if user.department else None,
        telegram_linked=bool(user.telegram_id),
        is_active=user.is_active,
    )


def _department_read(department: Department) -> DepartmentRead:
    return DepartmentRead(id=str(department.id), name=department.name)


# =============================================================================
# Users
# =============================================================================


@router.get("/users/me", response_model=UserRead)
def get_me(user: User = Depends(get_current_user)):
    return _user_read(user)


@router.get("/users", response_model=list[UserRead])
def list_users(
    user: User = Depends(require_roles([Role.COORDINATOR, Role.ADMIN])),
    db: Session = Depends(get_db),
):
    return [_user_read(u) for u in user_service.list_users(db)]


def _get_target(db: Session, user_id: UUID) -> User:
    target = user_service.get_user_by_id(db, user_id)
    if not target:
        raise HTTPException(status_code=404, detail="User not found")
    return target


@router.post(
    "/users/{user_id}/assign-coordinator",
    response_model=UserRead,
    dependencies=[Depends(require_csrf_header)],
)
def assign_coordinator(
    user_id: UUID,
    request: Request,
    user: User = Depends(require_roles([Role.ADMIN])),
    db: Session = Depends(get_db),
):
    """Promote a consultant or viewer; their role is restored on revoke."""
    target = _get_target(db, user_id)
    try:
        previous = user_service.assign_coordinator(db, target)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    audit_service.log_event(
        db=db,
        event_type=AuditEventType.COORDINATOR_ASSIGN,
        actor_user_id=user.id,
        target_user_id=target.id,
        details={"previous_role": previous, "new_role": Role.COORDINATOR.value},
        request=request,
    )
    db.commit()
    db.refresh(target)
    return _user_read(target)


@router.post(
    "/users/{user_id}/revoke-coordinator",
    response_model=UserRead,
    dependencies=[Depends(require_csrf_header)],
)
def revoke_coordinator(
    user_id: UUID,
    request: Request,
    user: User = Depends(require_roles([Role.ADMIN])),
    db: Session = Depends(get_db),
):
    target = _get_target(db, user_id)
    try:
        restored = user_service.revoke_coordinator(db, target)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    audit_service.log_event(
        db=db,
        event_type=AuditEventType.COORDINATOR_REVOKE,
        actor_user_id=user.id,
        target_user_id=target.id,
        details={"previous_role": Role.COORDINATOR.value, "new_role": restored},
        request=request,
    )
    db.commit()
    db.refresh(target)
    return _user_read(target)


# =============================================================================
# Departments
# =============================================================================


@router.get("/departments", response_model=list[DepartmentRead])
def list_departments(
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return [_department_read(d) for d in user_service.list_departments(db)]


@router.post(
    "/departments",
    response_model=DepartmentRead,
    status_code=201,
    dependencies=[Depends(require_csrf_header)],
)
def create_department(
    data: DepartmentCreate,
    request: Request,
    user: User = Depends(require_roles([Role.ADMIN])),
    db: Session = Depends(get_db),
):
    try:
        department = user_service.create_department(db, data.name)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    audit_service.log_event(
        db=db,
        event_type=AuditEventType.DEPARTMENT_CREATE,
        actor_user_id=user.id,
        details={"department_id": str(department.id)},
        request=request,
    )
    db.commit()
    return _department_read(department)
