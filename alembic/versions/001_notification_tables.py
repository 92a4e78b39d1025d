"""Create notification_logs and notification_schedules.

Revision ID: 001
Revises:
Create Date: 2026-10-19
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects.postgresql import UUID

revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

KINDS = (
    "new_workstream",
    "new_chapter",
    "new_assessment",
    "update",
    "reminder",
    "completion",
    "overdue",
    "reassignment",
    "cancellation",
    "deadline_reminder_week",
    "deadline_reminder_day",
)
TARGET_TYPES = ("workstream", "chapter", "assessment")


def upgrade() -> None:
    op.create_table(
        "notification_logs",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("kind", sa.Enum(*KINDS, name="notification_kind"), nullable=False),
        sa.Column("target_id", sa.String(36), nullable=False),
        sa.Column("target_type", sa.Enum(*TARGET_TYPES, name="notification_target_type"), nullable=False),
        sa.Column("recipient_email", sa.String(255), nullable=False),
        sa.Column("subject", sa.String(500), nullable=False, server_default=""),
        sa.Column(
            "status",
            sa.Enum("pending", "sent", "failed", name="notification_delivery_status"),
            nullable=False,
            server_default="pending",
        ),
        sa.Column("error_message", sa.Text, nullable=True),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("idx_notif_recipient", "notification_logs", ["recipient_email"])
    op.create_index("idx_notif_target", "notification_logs", ["target_id", "target_type"])
    op.create_index("idx_notif_status_created", "notification_logs", ["status", "created_at"])
    op.create_index("idx_notif_kind_target_created", "notification_logs", ["kind", "target_id", "created_at"])

    op.create_table(
        "notification_schedules",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("notification_type", sa.Enum("reminder", "overdue", name="schedule_type"), nullable=False),
        sa.Column("target_id", sa.String(36), nullable=False),
        sa.Column("target_type", sa.Enum(*TARGET_TYPES, name="schedule_target_type"), nullable=False),
        sa.Column("trigger_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column(
            "status",
            sa.Enum("pending", "processing", "completed", "failed", name="schedule_status"),
            nullable=False,
            server_default="pending",
        ),
        sa.Column("last_run", sa.DateTime(timezone=True), nullable=True),
        sa.Column("next_run", sa.DateTime(timezone=True), nullable=True),
        sa.Column("retry_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("max_retries", sa.Integer, nullable=False, server_default="3"),
        sa.Column("payload", sa.JSON, nullable=False),
        sa.Column("error_message", sa.Text, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("idx_schedule_trigger_status", "notification_schedules", ["trigger_time", "status"])
    op.create_index("idx_schedule_target", "notification_schedules", ["target_id", "target_type"])


def downgrade() -> None:
    op.drop_index("idx_schedule_target", table_name="notification_schedules")
    op.drop_index("idx_schedule_trigger_status", table_name="notification_schedules")
    op.drop_table("notification_schedules")
    op.drop_index("idx_notif_kind_target_created", table_name="notification_logs")
    op.drop_index("idx_notif_status_created", table_name="notification_logs")
    op.drop_index("idx_notif_target", table_name="notification_logs")
    op.drop_index("idx_notif_recipient", table_name="notification_logs")
    op.drop_table("notification_logs")
    for enum_name in (
        "schedule_status",
        "schedule_target_type",
        "schedule_type",
        "notification_delivery_status",
        "notification_target_type",
        "notification_kind",
    ):
        sa.Enum(name=enum_name).drop(op.get_bind(), checkfirst=True)
