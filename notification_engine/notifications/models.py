"""Notification log and schedule models and enums."""

import enum
import uuid
from datetime import UTC, datetime

from sqlalchemy import JSON, Column, DateTime, Index, Integer, String, Text
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.dialects.postgresql import UUID

from ..database.base import Base


class NotificationKind(enum.StrEnum):
    NEW_WORKSTREAM = "new_workstream"
    NEW_CHAPTER = "new_chapter"
    NEW_ASSESSMENT = "new_assessment"
    UPDATE = "update"
    REMINDER = "reminder"
    COMPLETION = "completion"
    OVERDUE = "overdue"
    REASSIGNMENT = "reassignment"
    CANCELLATION = "cancellation"
    DEADLINE_REMINDER_WEEK = "deadline_reminder_week"
    DEADLINE_REMINDER_DAY = "deadline_reminder_day"

    @property
    def is_broadcast(self) -> bool:
        return self not in DIRECT_KINDS


# Kinds addressed to one named recipient instead of the whole directory.
DIRECT_KINDS = frozenset({NotificationKind.COMPLETION, NotificationKind.REASSIGNMENT})


class TargetType(enum.StrEnum):
    WORKSTREAM = "workstream"
    CHAPTER = "chapter"
    ASSESSMENT = "assessment"


# Announcement kind for each entity type.
NEW_KIND_BY_TARGET = {
    TargetType.WORKSTREAM: NotificationKind.NEW_WORKSTREAM,
    TargetType.CHAPTER: NotificationKind.NEW_CHAPTER,
    TargetType.ASSESSMENT: NotificationKind.NEW_ASSESSMENT,
}


class DeliveryStatus(enum.StrEnum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


class ScheduleType(enum.StrEnum):
    REMINDER = "reminder"
    OVERDUE = "overdue"

    @property
    def kind(self) -> NotificationKind:
        return NotificationKind(self.value)


class ScheduleStatus(enum.StrEnum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


def _enum_column(enum_cls: type[enum.Enum], name: str) -> SQLEnum:
    return SQLEnum(enum_cls, name=name, values_callable=lambda e: [m.value for m in e])


class NotificationLog(Base):
    """One delivery attempt to one recipient."""

    __tablename__ = "notification_logs"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    kind = Column(_enum_column(NotificationKind, "notification_kind"), nullable=False)
    target_id = Column(String(36), nullable=False)
    target_type = Column(_enum_column(TargetType, "notification_target_type"), nullable=False)
    recipient_email = Column(String(255), nullable=False)
    subject = Column(String(500), nullable=False, default="")
    status = Column(
        _enum_column(DeliveryStatus, "notification_delivery_status"),
        nullable=False,
        default=DeliveryStatus.PENDING,
    )
    error_message = Column(Text, nullable=True)
    sent_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
    )

    __table_args__ = (
        Index("idx_notif_recipient", "recipient_email"),
        Index("idx_notif_target", "target_id", "target_type"),
        Index("idx_notif_status_created", "status", "created_at"),
        Index("idx_notif_kind_target_created", "kind", "target_id", "created_at"),
    )


class ScheduleEntry(Base):
    """A one-shot notification request due at ``trigger_time``."""

    __tablename__ = "notification_schedules"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    notification_type = Column(_enum_column(ScheduleType, "schedule_type"), nullable=False)
    target_id = Column(String(36), nullable=False)
    target_type = Column(_enum_column(TargetType, "schedule_target_type"), nullable=False)
    trigger_time = Column(DateTime(timezone=True), nullable=False)
    status = Column(
        _enum_column(ScheduleStatus, "schedule_status"),
        nullable=False,
        default=ScheduleStatus.PENDING,
    )
    last_run = Column(DateTime(timezone=True), nullable=True)
    next_run = Column(DateTime(timezone=True), nullable=True)
    retry_count = Column(Integer, nullable=False, default=0)
    max_retries = Column(Integer, nullable=False, default=3)
    payload = Column(JSON, nullable=False, default=dict)
    error_message = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(UTC))
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )

    __table_args__ = (
        Index("idx_schedule_trigger_status", "trigger_time", "status"),
        Index("idx_schedule_target", "target_id", "target_type"),
    )
