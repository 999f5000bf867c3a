"""Tests for role predicates."""
from types import SimpleNamespace

import pytest

from clarity_mdt.core import permissions
from clarity_mdt.db.enums import Role


def _user(role: Role | str):
    value = role.value if isinstance(role, Role) else role
    return SimpleNamespace(role=value)


@pytest.mark.parametrize("role,coordinator", [
    (Role.ADMIN, True),
    (Role.COORDINATOR, True),
    (Role.CONSULTANT, False),
    (Role.VIEWER, False),
])
def test_admin_counts_as_coordinator(role, coordinator):
    assert permissions.is_coordinator(_user(role)) is coordinator
    assert permissions.can_manage_meetings(_user(role)) is coordinator
    assert permissions.can_send_manual_notifications(_user(role)) is coordinator


def test_unknown_role_has_no_rights():
    stranger = _user("janitor")

    assert permissions.is_coordinator(stranger) is False
    assert permissions.can_manage_meetings(stranger) is False
    assert permissions.can_manage_meetings(None) is False
