"""create users, app_settings and user_sessions

Revision ID: 4f1c2a9d7e60
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "4f1c2a9d7e60"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

ACTIVE_ROW_PREDICATE = "status = 'ACTIVE'"


def upgrade() -> None:
    """Create the session registry with its one-active-row-per-device index."""
    op.create_table(
        "users",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("external_id", sa.String(length=256), nullable=False),
        sa.Column("display_name", sa.Text(), nullable=True),
        sa.Column("email", sa.String(length=320), nullable=True),
        sa.Column("email_verified", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("picture_url", sa.Text(), nullable=True),
        sa.Column("phone", sa.String(length=32), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_users_external_id", "users", ["external_id"], unique=True)

    op.create_table(
        "app_settings",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("max_devices", sa.Integer(), nullable=False),
        sa.Column("inactivity_days", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint("max_devices >= 0", name="ck_app_settings_max_devices"),
        sa.CheckConstraint("inactivity_days >= 1", name="ck_app_settings_inactivity_days"),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "user_sessions",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.Uuid(), nullable=False),
        sa.Column("device_id", sa.String(length=256), nullable=False),
        sa.Column("external_session_id", sa.String(length=256), nullable=True),
        sa.Column("status", sa.String(length=12), nullable=False),
        sa.Column("user_agent_raw", sa.Text(), nullable=True),
        sa.Column("browser_name", sa.String(length=64), nullable=True),
        sa.Column("browser_version", sa.String(length=64), nullable=True),
        sa.Column("os_name", sa.String(length=64), nullable=True),
        sa.Column("os_version", sa.String(length=64), nullable=True),
        sa.Column("device_type", sa.String(length=32), nullable=True),
        sa.Column("is_bot", sa.Boolean(), nullable=True),
        sa.Column("ip_address", sa.String(length=64), nullable=True),
        sa.Column("revoked_reason", sa.Text(), nullable=True),
        sa.Column("revoked_by_device_id", sa.String(length=256), nullable=True),
        sa.Column("revoked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_seen", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint(
            "(status = 'ACTIVE' AND revoked_reason IS NULL"
            " AND revoked_by_device_id IS NULL AND revoked_at IS NULL)"
            " OR (status = 'REVOKED' AND revoked_reason IS NOT NULL"
            " AND revoked_at IS NOT NULL)",
            name="ck_user_sessions_state",
        ),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_user_sessions_user_id", "user_sessions", ["user_id"])
    op.create_index("ix_user_sessions_device_id", "user_sessions", ["device_id"])
    op.create_index(
        "ix_user_sessions_user_status_last_seen",
        "user_sessions",
        ["user_id", "status", "last_seen"],
    )
    op.create_index(
        "uq_user_sessions_active_device",
        "user_sessions",
        ["user_id", "device_id"],
        unique=True,
        postgresql_where=sa.text(ACTIVE_ROW_PREDICATE),
        sqlite_where=sa.text(ACTIVE_ROW_PREDICATE),
    )


def downgrade() -> None:
    """Drop the session registry."""
    op.drop_index("uq_user_sessions_active_device", table_name="user_sessions")
    op.drop_index("ix_user_sessions_user_status_last_seen", table_name="user_sessions")
    op.drop_index("ix_user_sessions_device_id", table_name="user_sessions")
    op.drop_index("ix_user_sessions_user_id", table_name="user_sessions")
    op.drop_table("user_sessions")
    op.drop_table("app_settings")
    op.drop_index("ix_users_external_id", table_name="users")
    op.drop_table("users")
