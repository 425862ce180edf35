"""Initial attendance tracker schema

Revision ID: 0001_initial
Revises:
Create Date: 2026-03-01 00:00:00
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "0001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

account_role = postgresql.ENUM("EMPLOYEE", "ADMIN", "MANAGER", name="account_role", create_type=False)
work_mode = postgresql.ENUM("OFFICE", "WFH", name="work_mode", create_type=False)
attendance_status = postgresql.ENUM("CHECKED_IN", "CHECKED_OUT", name="attendance_status", create_type=False)
leave_type = postgresql.ENUM("SICK", "CASUAL", "VACATION", "OTHER", name="leave_type", create_type=False)
leave_status = postgresql.ENUM("PENDING", "APPROVED", "REJECTED", name="leave_status", create_type=False)
audit_actor_type = postgresql.ENUM("ACCOUNT", "SYSTEM", name="audit_actor_type", create_type=False)

_ENUMS = (account_role, work_mode, attendance_status, leave_type, leave_status, audit_actor_type)


def _created_at() -> sa.Column:
    return sa.Column(
        "created_at",
        sa.DateTime(timezone=True),
        nullable=False,
        server_default=sa.text("CURRENT_TIMESTAMP"),
    )


def _updated_at() -> sa.Column:
    return sa.Column(
        "updated_at",
        sa.DateTime(timezone=True),
        nullable=False,
        server_default=sa.text("CURRENT_TIMESTAMP"),
    )


def upgrade() -> None:
    bind = op.get_bind()
    for enum_type in _ENUMS:
        enum_type.create(bind, checkfirst=True)

    op.create_table(
        "accounts",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("name", sa.String(length=50), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("employee_id", sa.String(length=64), nullable=True),
        sa.Column("password_hash", sa.String(length=255), nullable=False),
        sa.Column("password_changed_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("role", account_role, nullable=False),
        sa.Column("department", sa.String(length=100), nullable=False, server_default=sa.text("''")),
        sa.Column("phone_number", sa.String(length=32), nullable=False, server_default=sa.text("''")),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("failed_login_attempts", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("lock_until", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_login_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("reset_token_hash", sa.String(length=64), nullable=True),
        sa.Column("reset_token_expires_at", sa.DateTime(timezone=True), nullable=True),
        _created_at(),
        _updated_at(),
        sa.UniqueConstraint("employee_id", name="uq_accounts_employee_id"),
    )
    op.create_index("ix_accounts_email", "accounts", ["email"], unique=True)
    op.create_index("ix_accounts_reset_token_hash", "accounts", ["reset_token_hash"], unique=False)

    op.create_table(
        "account_devices",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("account_id", sa.Integer(), nullable=False),
        sa.Column("device_id", sa.String(length=255), nullable=False),
        sa.Column("device_name", sa.String(length=255), nullable=False),
        sa.Column("platform", sa.String(length=100), nullable=False),
        sa.Column("added_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_used_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["account_id"], ["accounts.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("account_id", "device_id", name="uq_account_devices_account_device"),
    )
    op.create_index("ix_account_devices_account_id", "account_devices", ["account_id"], unique=False)

    op.create_table(
        "office_locations",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("latitude", sa.Float(), nullable=False),
        sa.Column("longitude", sa.Float(), nullable=False),
        sa.Column("radius_m", sa.Integer(), nullable=False, server_default=sa.text("50")),
        sa.Column("address", sa.String(length=500), nullable=False, server_default=sa.text("''")),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        _created_at(),
        _updated_at(),
    )

    op.create_table(
        "attendance_records",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("account_id", sa.Integer(), nullable=False),
        sa.Column("date", sa.String(length=10), nullable=False),
        sa.Column("work_mode", work_mode, nullable=False),
        sa.Column("status", attendance_status, nullable=False),
        sa.Column("check_in_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("check_in_lat", sa.Float(), nullable=False),
        sa.Column("check_in_lon", sa.Float(), nullable=False),
        sa.Column("check_out_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("check_out_lat", sa.Float(), nullable=True),
        sa.Column("check_out_lon", sa.Float(), nullable=True),
        sa.Column("working_hours", sa.Float(), nullable=False, server_default=sa.text("0")),
        sa.Column("wfh_checkout_radius_m", sa.Integer(), nullable=True),
        _created_at(),
        sa.ForeignKeyConstraint(["account_id"], ["accounts.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("account_id", "date", name="uq_attendance_records_account_date"),
    )
    op.create_index("ix_attendance_records_account_id", "attendance_records", ["account_id"], unique=False)
    op.create_index("ix_attendance_records_date", "attendance_records", ["date"], unique=False)

    op.create_table(
        "leave_requests",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("account_id", sa.Integer(), nullable=False),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("end_date", sa.Date(), nullable=False),
        sa.Column("reason", sa.Text(), nullable=False),
        sa.Column("leave_type", leave_type, nullable=False),
        sa.Column("status", leave_status, nullable=False),
        sa.Column("approved_by_id", sa.Integer(), nullable=True),
        sa.Column("approval_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("admin_comment", sa.Text(), nullable=False, server_default=sa.text("''")),
        _created_at(),
        sa.ForeignKeyConstraint(["account_id"], ["accounts.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["approved_by_id"], ["accounts.id"], ondelete="SET NULL"),
    )
    op.create_index("ix_leave_requests_account_id", "leave_requests", ["account_id"], unique=False)

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column(
            "ts_utc",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.Column("actor_type", audit_actor_type, nullable=False),
        sa.Column("actor_id", sa.String(length=255), nullable=False),
        sa.Column("action", sa.String(length=255), nullable=False),
        sa.Column("entity_type", sa.String(length=255), nullable=True),
        sa.Column("entity_id", sa.String(length=255), nullable=True),
        sa.Column("ip", sa.String(length=128), nullable=True),
        sa.Column("user_agent", sa.String(length=1024), nullable=True),
        sa.Column("success", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("details", sa.JSON(), nullable=False),
    )
    op.create_index("ix_audit_logs_ts_utc", "audit_logs", ["ts_utc"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_audit_logs_ts_utc", table_name="audit_logs")
    op.drop_table("audit_logs")
    op.drop_index("ix_leave_requests_account_id", table_name="leave_requests")
    op.drop_table("leave_requests")
    op.drop_index("ix_attendance_records_date", table_name="attendance_records")
    op.drop_index("ix_attendance_records_account_id", table_name="attendance_records")
    op.drop_table("attendance_records")
    op.drop_table("office_locations")
    op.drop_index("ix_account_devices_account_id", table_name="account_devices")
    op.drop_table("account_devices")
    op.drop_index("ix_accounts_reset_token_hash", table_name="accounts")
    op.drop_index("ix_accounts_email", table_name="accounts")
    op.drop_table("accounts")

    bind = op.get_bind()
    for enum_type in reversed(_ENUMS):
        enum_type.drop(bind, checkfirst=True)
