"""Enum definitions for application constants."""

from enum import Enum


class Role(str, Enum):
    """
    User roles.

    - VIEWER: read-only access to cases and meetings
    - CONSULTANT: presents cases and writes specialist opinions
    - COORDINATOR: runs meetings, writes consensus reports
    - ADMIN: coordinator rights plus user/department/integration management
    """

    VIEWER = "viewer"
    CONSULTANT = "consultant"
    COORDINATOR = "coordinator"
    ADMIN = "admin"

    @classmethod
    def has_value(cls, value: str) -> bool:
        """Check if value is a valid role."""
        return value in cls._value2member_map_


# Roles a coordinator can be promoted from (and restored to on revoke)
ROLES_PROMOTABLE_TO_COORDINATOR = {Role.CONSULTANT, Role.VIEWER}


class NotificationType(str, Enum):
    """Types of in-app notifications."""

    # Meeting lifecycle
    MEETING_CREATED = "meeting_created"
    MEETING_UPDATED = "meeting_updated"
    MEETING_CANCELLED = "meeting_cancelled"
    MEETING_REQUEST = "meeting_request"

    # Case lifecycle
    CASE_SUBMITTED = "case_submitted"
    CASE_RESUBMITTED = "case_resubmitted"
    CASE_POSTPONED = "case_postponed"
    MDT_REVIEW_COMPLETED = "mdt_review_completed"

    # Sent by a coordinator from the notification panel
    MANUAL_NOTIFICATION = "manual_notification"


class MeetingStatus(str, Enum):
    SCHEDULED = "scheduled"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class CaseStatus(str, Enum):
    DRAFT = "draft"
    SUBMITTED = "submitted"
    PENDING = "pending"
    REVIEWED = "reviewed"
    RESUBMITTED = "resubmitted"
    ARCHIVED = "archived"


class RecipientType(str, Enum):
    """Audience for manually sent notifications."""

    EVERYONE = "everyone"
    DEPARTMENT = "department"
    INDIVIDUAL = "individual"


class AuditEventType(str, Enum):
    """Security and compliance events written to the audit log."""

    COORDINATOR_ASSIGN = "coordinator_assign"
    COORDINATOR_REVOKE = "coordinator_revoke"
    DEPARTMENT_CREATE = "department_create"
    TELEGRAM_LINKED = "telegram_linked"
    TELEGRAM_UNLINKED = "telegram_unlinked"
    TELEGRAM_SETTINGS_UPDATE = "telegram_settings_update"
    MEETING_CREATE = "meeting_create"
    MEETING_CANCEL = "meeting_cancel"
