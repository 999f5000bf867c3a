"""
Role predicates.

Roles form a small fixed set; Admin carries every Coordinator right.
Routers turn the `can_*` predicates into dependencies with
`deps.require_permission`.
"""

from __future__ import annotations

from typing import Protocol

from clarity_mdt.db.enums import Role


class HasRole(Protocol):
    role: str


def _role(user: HasRole | None) -> Role | None:
    if user is None or not Role.has_value(user.role):
        return None
    return Role(user.role)


def is_coordinator(user: HasRole | None) -> bool:
    """Coordinator rights (Admin included)."""
    return _role(user) in (Role.COORDINATOR, Role.ADMIN)


def can_manage_meetings(user: HasRole | None) -> bool:
    return is_coordinator(user)


def can_send_manual_notifications(user: HasRole | None) -> bool:
    return is_coordinator(user)
