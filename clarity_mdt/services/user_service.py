"""User and department operations, including coordinator promotion."""

from uuid import UUID

from sqlalchemy.orm import Session, joinedload

from clarity_mdt.db.enums import ROLES_PROMOTABLE_TO_COORDINATOR, Role
from clarity_mdt.db.models import Department, User


def get_user_by_id(db: Session, user_id: UUID) -> User | None:
    """Get user by ID."""
    return db.query(User).filter(User.id == user_id).first()


def get_user_by_login_id(db: Session, login_id: str) -> User | None:
    """Get user by login handle (case-insensitive)."""
    return db.query(User).filter(User.login_id == login_id.strip().lower()).first()


def list_users(db: Session, active_only: bool = True) -> list[User]:
    query = db.query(User).options(joinedload(User.department))
    if active_only:
        query = query.filter(User.is_active.is_(True))
    return query.order_by(User.name).all()


def create_user(
    db: Session,
    login_id: str,
    name: str,
    role: Role = Role.VIEWER,
    department_id: UUID | None = None,
) -> User:
    """
    Create a user record.

    Raises:
        ValueError: login_id already taken
    """
    login_id = login_id.strip().lower()
    if get_user_by_login_id(db, login_id):
        raise ValueError(f"Login ID '{login_id}' is already taken")
    user = User(
        login_id=login_id,
        name=name.strip(),
        role=role.value,
        department_id=department_id,
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def assign_coordinator(db: Session, user: User) -> str:
    """
    Promote a consultant or viewer to coordinator, remembering their role.

    Returns the role held before promotion. The caller commits.

    Raises:
        ValueError: user is already a coordinator or cannot be promoted
    """
    if user.role == Role.COORDINATOR.value:
        raise ValueError("User is already a Coordinator")
    if not Role.has_value(user.role) or Role(user.role) not in ROLES_PROMOTABLE_TO_COORDINATOR:
        raise ValueError("Only Consultant or Viewer can be promoted to Coordinator")

    previous = user.role
    user.previous_role = previous
    user.role = Role.COORDINATOR.value
    db.flush()
    return previous


def revoke_coordinator(db: Session, user: User) -> str:
    """
    Restore a coordinator's previous role.

    Returns the restored role. The caller commits.

    Raises:
        ValueError: user is not a coordinator or has no valid previous role
    """
    if user.role != Role.COORDINATOR.value:
        raise ValueError("User is not a Coordinator")
    if not user.previous_role:
        raise ValueError("Previous role not found. Cannot revoke coordinator role.")
    if (
        not Role.has_value(user.previous_role)
        or Role(user.previous_role) not in ROLES_PROMOTABLE_TO_COORDINATOR
    ):
        raise ValueError("Invalid previous role")

    restored = user.previous_role
    user.role = restored
    user.previous_role = None
    db.flush()
    return restored


# =============================================================================
# Departments
# =============================================================================


def list_departments(db: Session) -> list[Department]:
    return db.query(Department).order_by(Department.name).all()


def get_department_by_name(db: Session, name: str) -> Department | None:
    return db.query(Department).filter(Department.name == name.strip()).first()


def create_department(db: Session, name: str) -> Department:
    """
    Raises:
        ValueError: empty or duplicate name
    """
    name = (name or "").strip()
    if not name:
        raise ValueError("Department name is required")
    if get_department_by_name(db, name):
        raise ValueError(f"Department '{name}' already exists")
    department = Department(name=name)
    db.add(department)
    db.commit()
    db.refresh(department)
    return department
