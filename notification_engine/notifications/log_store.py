"""Notification log store: one row per recipient per notification event."""

import logging
import uuid
from datetime import datetime, timedelta

from sqlalchemy import case, distinct, func, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from ..clock import as_utc, utcnow
from .exceptions import PersistenceFailure
from .models import DeliveryStatus, NotificationKind, NotificationLog, TargetType

logger = logging.getLogger(__name__)

STATS_WINDOW = timedelta(days=30)


def log_to_dict(entry: NotificationLog) -> dict:
    sent_at = as_utc(entry.sent_at)
    created_at = as_utc(entry.created_at)
    return {
        "id": str(entry.id),
        "kind": entry.kind.value,
        "target_id": entry.target_id,
        "target_type": entry.target_type.value,
        "recipient_email": entry.recipient_email,
        "subject": entry.subject,
        "status": entry.status.value,
        "error_message": entry.error_message,
        "sent_at": sent_at.isoformat() if sent_at else None,
        "created_at": created_at.isoformat() if created_at else None,
    }


class NotificationLogStore:
    """SQLAlchemy-backed log. Each call uses its own short-lived session and commits."""

    def __init__(self, session_factory: sessionmaker) -> None:
        self._session_factory = session_factory

    def create_pending(
        self,
        kind: NotificationKind,
        target_id: str,
        target_type: TargetType,
        recipient_email: str,
        subject: str,
    ) -> uuid.UUID:
        entry_id = uuid.uuid4()
        try:
            with self._session_factory() as db:
                db.add(
                    NotificationLog(
                        id=entry_id,
                        kind=kind,
                        target_id=str(target_id),
                        target_type=target_type,
                        recipient_email=recipient_email,
                        subject=subject[:500],
                        status=DeliveryStatus.PENDING,
                        created_at=utcnow(),
                    )
                )
                db.commit()
        except SQLAlchemyError as exc:
            raise PersistenceFailure(f"Cannot create log entry for {recipient_email}: {exc}") from exc
        return entry_id

    def _finish(self, entry_id: uuid.UUID, values: dict) -> bool:
        # Only a pending row may transition; terminal rows are left untouched.
        try:
            with self._session_factory() as db:
                result = db.execute(
                    update(NotificationLog)
                    .where(NotificationLog.id == entry_id, NotificationLog.status == DeliveryStatus.PENDING)
                    .values(**values)
                )
                db.commit()
        except SQLAlchemyError as exc:
            raise PersistenceFailure(f"Cannot update log entry {entry_id}: {exc}") from exc
        if result.rowcount == 0:
            logger.warning("Log entry %s was not pending, transition to %s ignored", entry_id, values["status"])
            return False
        return True

    def mark_sent(self, entry_id: uuid.UUID, sent_at: datetime | None = None) -> bool:
        return self._finish(entry_id, {"status": DeliveryStatus.SENT, "sent_at": sent_at or utcnow()})

    def mark_failed(self, entry_id: uuid.UUID, error_message: str) -> bool:
        return self._finish(
            entry_id,
            {"status": DeliveryStatus.FAILED, "error_message": error_message or "Unknown transport error"},
        )

    def get(self, entry_id: uuid.UUID) -> dict | None:
        try:
            with self._session_factory() as db:
                entry = db.get(NotificationLog, entry_id)
                return log_to_dict(entry) if entry else None
        except SQLAlchemyError as exc:
            raise PersistenceFailure(str(exc)) from exc

    def has_recent(self, kind: NotificationKind, target_id: str, target_type: TargetType, since: datetime) -> bool:
        """Check if this kind was sent (or is being sent) for the target since ``since``.

        Failed rows don't count, so a tick lost to an SMTP outage is retried next time.
        """
        try:
            with self._session_factory() as db:
                return (
                    db.query(NotificationLog.id)
                    .filter(
                        NotificationLog.kind == kind,
                        NotificationLog.target_id == str(target_id),
                        NotificationLog.target_type == target_type,
                        NotificationLog.status != DeliveryStatus.FAILED,
                        NotificationLog.created_at >= since,
                    )
                    .first()
                    is not None
                )
        except SQLAlchemyError as exc:
            raise PersistenceFailure(str(exc)) from exc

    def list_recent(self, limit: int = 10) -> list[dict]:
        try:
            with self._session_factory() as db:
                rows = (
                    db.query(NotificationLog)
                    .order_by(NotificationLog.created_at.desc(), NotificationLog.id.asc())
                    .limit(limit)
                    .all()
                )
                return [log_to_dict(r) for r in rows]
        except SQLAlchemyError as exc:
            raise PersistenceFailure(str(exc)) from exc

    def stats(self, now: datetime | None = None) -> dict:
        """Totals by status and by kind over the trailing 30 days."""
        since = (now or utcnow()) - STATS_WINDOW
        try:
            with self._session_factory() as db:
                totals = (
                    db.query(
                        func.count(NotificationLog.id),
                        func.coalesce(func.sum(case((NotificationLog.status == DeliveryStatus.SENT, 1), else_=0)), 0),
                        func.coalesce(func.sum(case((NotificationLog.status == DeliveryStatus.FAILED, 1), else_=0)), 0),
                        func.coalesce(func.sum(case((NotificationLog.status == DeliveryStatus.PENDING, 1), else_=0)), 0),
                        func.count(distinct(NotificationLog.recipient_email)),
                        func.count(distinct(NotificationLog.kind)),
                    )
                    .filter(NotificationLog.created_at >= since)
                    .one()
                )
                by_kind = (
                    db.query(NotificationLog.kind, func.count(NotificationLog.id).label("count"))
                    .filter(NotificationLog.created_at >= since)
                    .group_by(NotificationLog.kind)
                    .order_by(func.count(NotificationLog.id).desc(), NotificationLog.kind.asc())
                    .all()
                )
        except SQLAlchemyError as exc:
            raise PersistenceFailure(str(exc)) from exc

        return {
            "total_notifications": int(totals[0] or 0),
            "sent_count": int(totals[1] or 0),
            "failed_count": int(totals[2] or 0),
            "pending_count": int(totals[3] or 0),
            "unique_recipients": int(totals[4] or 0),
            "notification_types": int(totals[5] or 0),
            "type_breakdown": [{"kind": k.value, "count": int(c)} for k, c in by_kind],
        }
