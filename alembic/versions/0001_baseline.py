"""Baseline migration - users, Telegram linking, meetings and notifications

Revision ID: 0001_baseline
Revises:
Create Date: 2026-10-17

Creates the full ClarityMDT API schema.
"""
from typing import Sequence, Union

from alembic import op


# revision identifiers, used by Alembic.
revision: str = '0001_baseline'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create all tables."""

    op.execute('CREATE EXTENSION IF NOT EXISTS pgcrypto')  # For gen_random_uuid()

    # ==========================================================================
    # Departments and users
    # ==========================================================================
    op.execute('''
        CREATE TABLE departments (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            name VARCHAR(255) UNIQUE NOT NULL,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    ''')

    op.execute('''
        CREATE TABLE users (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            login_id VARCHAR(100) UNIQUE NOT NULL,
            name VARCHAR(255) NOT NULL,
            role VARCHAR(50) NOT NULL DEFAULT 'viewer',
            previous_role VARCHAR(50),
            department_id UUID REFERENCES departments(id) ON DELETE SET NULL,
            telegram_id VARCHAR(64) UNIQUE,
            password_hash VARCHAR(255),
            token_version INTEGER NOT NULL DEFAULT 1,
            is_active BOOLEAN NOT NULL DEFAULT true,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    ''')
    op.execute('CREATE INDEX idx_users_department ON users(department_id)')
    op.execute('CREATE INDEX idx_users_role ON users(role)')

    # ==========================================================================
    # Telegram
    # ==========================================================================
    op.execute('''
        CREATE TABLE telegram_verifications (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            user_id UUID UNIQUE NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            code VARCHAR(16) UNIQUE NOT NULL,
            telegram_id VARCHAR(64),
            expires_at TIMESTAMPTZ NOT NULL,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    ''')
    op.execute('CREATE INDEX idx_telegram_verifications_expires ON telegram_verifications(expires_at)')

    op.execute('''
        CREATE TABLE telegram_settings (
            id VARCHAR(20) PRIMARY KEY DEFAULT 'single',
            enabled BOOLEAN NOT NULL DEFAULT false,
            bot_name VARCHAR(100),
            bot_token_encrypted TEXT,
            qr_code_url VARCHAR(500),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    ''')

    # ==========================================================================
    # Meetings and cases
    # ==========================================================================
    op.execute('''
        CREATE TABLE meetings (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            date TIMESTAMPTZ NOT NULL,
            description TEXT,
            status VARCHAR(20) NOT NULL DEFAULT 'scheduled',
            cancellation_remarks TEXT,
            created_by_id UUID NOT NULL REFERENCES users(id) ON DELETE RESTRICT,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    ''')
    op.execute('CREATE INDEX idx_meetings_date ON meetings(date)')

    op.execute('''
        CREATE TABLE cases (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            patient_name VARCHAR(255) NOT NULL,
            mrn VARCHAR(64) NOT NULL,
            status VARCHAR(20) NOT NULL DEFAULT 'draft',
            presenting_department_id UUID NOT NULL REFERENCES departments(id) ON DELETE RESTRICT,
            created_by_id UUID NOT NULL REFERENCES users(id) ON DELETE RESTRICT,
            assigned_meeting_id UUID REFERENCES meetings(id) ON DELETE SET NULL,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    ''')
    op.execute('CREATE INDEX idx_cases_department ON cases(presenting_department_id)')
    op.execute('CREATE INDEX idx_cases_meeting ON cases(assigned_meeting_id)')

    # ==========================================================================
    # Notifications
    # ==========================================================================
    op.execute('''
        CREATE TABLE notifications (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            user_id UUID NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            type VARCHAR(50) NOT NULL,
            title VARCHAR(255) NOT NULL,
            message TEXT NOT NULL,
            meeting_id UUID REFERENCES meetings(id) ON DELETE CASCADE,
            case_id UUID REFERENCES cases(id) ON DELETE CASCADE,
            read BOOLEAN NOT NULL DEFAULT false,
            read_at TIMESTAMPTZ,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    ''')
    op.execute('CREATE INDEX idx_notif_user_unread ON notifications(user_id, read, created_at)')

    # ==========================================================================
    # Audit
    # ==========================================================================
    op.execute('''
        CREATE TABLE audit_logs (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            action VARCHAR(50) NOT NULL,
            user_id UUID REFERENCES users(id) ON DELETE SET NULL,
            target_user_id UUID,
            case_id UUID,
            details JSON,
            ip_address VARCHAR(45),
            created_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    ''')
    op.execute('CREATE INDEX idx_audit_user_created ON audit_logs(user_id, created_at)')


def downgrade() -> None:
    """Drop all tables."""
    op.execute('DROP TABLE IF EXISTS audit_logs')
    op.execute('DROP TABLE IF EXISTS notifications')
    op.execute('DROP TABLE IF EXISTS cases')
    op.execute('DROP TABLE IF EXISTS meetings')
    op.execute('DROP TABLE IF EXISTS telegram_settings')
    op.execute('DROP TABLE IF EXISTS telegram_verifications')
    op.execute('DROP TABLE IF EXISTS users')
    op.execute('DROP TABLE IF EXISTS departments')
