"""FastAPI dependencies for authentication, authorization, and database access."""

from typing import Callable, Generator
from uuid import UUID

from fastapi import Depends, HTTPException, Request
from sqlalchemy.orm import Session

from clarity_mdt.core.security import decode_session_token
from clarity_mdt.db.session import SessionLocal


# Cookie and header names
COOKIE_NAME = "mdt_session"
CSRF_HEADER = "X-Requested-With"
CSRF_HEADER_VALUE = "XMLHttpRequest"


def get_db() -> Generator[Session, None, None]:
    """
    Database session dependency.

    Yields a database session and ensures it's closed after the request.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_current_user(
    request: Request,
    db: Session = Depends(get_db),
):
    """
    Get authenticated user from session cookie.

    Validates:
    - Session cookie exists
    - JWT is valid and not expired
    - User exists and is active
    - Token version matches (for revocation support)

    Raises:
        HTTPException 401: Authentication failed
    """
    # Import here to avoid circular imports
    from clarity_mdt.db.enums import Role
    from clarity_mdt.db.models import User

    token = request.cookies.get(COOKIE_NAME)
    if not token:
        raise HTTPException(status_code=401, detail="Not authenticated")

    try:
        payload = decode_session_token(token)
    except Exception:
        raise HTTPException(status_code=401, detail="Invalid session")

    user = db.query(User).filter(User.id == _parse_uuid(payload.get("sub"))).first()
    if not user:
        raise HTTPException(status_code=401, detail="User not found")

    if not user.is_active:
        raise HTTPException(status_code=401, detail="Account disabled")

    # Token version check (revocation support)
    if user.token_version != payload.get("token_version"):
        raise HTTPException(status_code=401, detail="Session revoked")

    # Validate role is a known enum value - return 403 not 500
    if not Role.has_value(user.role):
        raise HTTPException(
            status_code=403,
            detail=f"Unknown role '{user.role}'. Contact administrator.",
        )

    return user


def _parse_uuid(value) -> UUID:
    try:
        return UUID(str(value))
    except (TypeError, ValueError):
        raise HTTPException(status_code=401, detail="Invalid session")


def require_roles(allowed_roles: list):
    """
    Dependency factory for role-based authorization.

    Uses enum values (not strings) to prevent drift.

    Usage:
        @router.post("/admin", dependencies=[Depends(require_roles([Role.ADMIN]))])
    """
    def dependency(request: Request, db: Session = Depends(get_db)):
        user = get_current_user(request, db)
        if user.role not in {role.value for role in allowed_roles}:
            raise HTTPException(
                status_code=403,
                detail=f"Role '{user.role}' not authorized for this action",
            )
        return user
    return dependency


def require_permission(predicate: Callable[..., bool], detail: str):
    """
    Dependency factory for the predicates in core.permissions.

    Usage:
        user: User = Depends(require_permission(can_manage_meetings, "..."))
    """
    def dependency(request: Request, db: Session = Depends(get_db)):
        user = get_current_user(request, db)
        if not predicate(user):
            raise HTTPException(status_code=403, detail=detail)
        return user
    return dependency


def require_csrf_header(request: Request) -> None:
    """
    Verify CSRF header on mutations.

    Apply to state-changing endpoints (POST, PATCH, DELETE).

    Raises:
        HTTPException 403: Missing or invalid CSRF header
    """
    if request.headers.get(CSRF_HEADER) != CSRF_HEADER_VALUE:
        raise HTTPException(
            status_code=403,
            detail=f"Missing CSRF header. Include '{CSRF_HEADER}: {CSRF_HEADER_VALUE}'",
        )


# =============================================================================
# Telegram collaborators
# =============================================================================

def get_telegram_client(db: Session = Depends(get_db)):
    """
    Telegram transport built from the stored bot settings.

    Returns None when the bot is disabled or unconfigured; callers treat
    that as "nothing to forward".
    """
    from clarity_mdt.services import telegram_settings_service

    return telegram_settings_service.get_client(db)


def get_telegram_poller(request: Request):
    """Process-wide poller owned by the application (see main.lifespan)."""
    return request.app.state.telegram_poller
