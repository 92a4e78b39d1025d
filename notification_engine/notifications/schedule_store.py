"""Schedule store: durable future-dated one-shot notification requests."""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import and_, or_, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from ..clock import as_utc, utcnow
from .exceptions import PersistenceFailure
from .models import ScheduleEntry, ScheduleStatus, ScheduleType, TargetType

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DueEntry:
    """Detached snapshot of a schedule row handed to the queue processor."""

    id: uuid.UUID
    notification_type: ScheduleType
    target_id: str
    target_type: TargetType
    trigger_time: datetime
    status: ScheduleStatus
    retry_count: int
    max_retries: int
    payload: dict


def schedule_to_dict(entry: ScheduleEntry) -> dict:
    def _iso(value):
        value = as_utc(value)
        return value.isoformat() if value else None

    return {
        "id": str(entry.id),
        "notification_type": entry.notification_type.value,
        "target_id": entry.target_id,
        "target_type": entry.target_type.value,
        "trigger_time": _iso(entry.trigger_time),
        "status": entry.status.value,
        "last_run": _iso(entry.last_run),
        "next_run": _iso(entry.next_run),
        "retry_count": entry.retry_count,
        "max_retries": entry.max_retries,
        "payload": entry.payload or {},
        "error_message": entry.error_message,
    }


class ScheduleStore:
    def __init__(self, session_factory: sessionmaker, default_max_retries: int = 3) -> None:
        self._session_factory = session_factory
        self.default_max_retries = default_max_retries

    def create(
        self,
        notification_type: ScheduleType,
        target_id: str,
        target_type: TargetType,
        trigger_time: datetime,
        payload: dict,
        max_retries: int | None = None,
    ) -> uuid.UUID:
        max_retries = self.default_max_retries if max_retries is None else max_retries
        if max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        entry_id = uuid.uuid4()
        try:
            with self._session_factory() as db:
                db.add(
                    ScheduleEntry(
                        id=entry_id,
                        notification_type=notification_type,
                        target_id=str(target_id),
                        target_type=target_type,
                        trigger_time=as_utc(trigger_time),
                        status=ScheduleStatus.PENDING,
                        retry_count=0,
                        max_retries=max_retries,
                        payload=payload or {},
                    )
                )
                db.commit()
        except SQLAlchemyError as exc:
            raise PersistenceFailure(f"Cannot create schedule entry: {exc}") from exc
        return entry_id

    def get(self, entry_id: uuid.UUID) -> dict | None:
        try:
            with self._session_factory() as db:
                entry = db.get(ScheduleEntry, entry_id)
                return schedule_to_dict(entry) if entry else None
        except SQLAlchemyError as exc:
            raise PersistenceFailure(str(exc)) from exc

    def select_due(self, now: datetime, limit: int, include_rearmed: bool = False) -> list[DueEntry]:
        """Pending entries whose trigger time has passed, oldest first.

        With ``include_rearmed`` failed entries whose ``next_run`` has passed and
        that still have retries left are selected as well.
        """
        due = and_(ScheduleEntry.status == ScheduleStatus.PENDING, ScheduleEntry.trigger_time <= now)
        if include_rearmed:
            due = or_(
                due,
                and_(
                    ScheduleEntry.status == ScheduleStatus.FAILED,
                    ScheduleEntry.next_run.isnot(None),
                    ScheduleEntry.next_run <= now,
                    ScheduleEntry.retry_count < ScheduleEntry.max_retries,
                ),
            )
        try:
            with self._session_factory() as db:
                rows = (
                    db.query(ScheduleEntry)
                    .filter(due)
                    .order_by(ScheduleEntry.trigger_time.asc())
                    .limit(limit)
                    .all()
                )
                return [
                    DueEntry(
                        id=r.id,
                        notification_type=r.notification_type,
                        target_id=r.target_id,
                        target_type=r.target_type,
                        trigger_time=as_utc(r.trigger_time),
                        status=r.status,
                        retry_count=r.retry_count,
                        max_retries=r.max_retries,
                        payload=dict(r.payload or {}),
                    )
                    for r in rows
                ]
        except SQLAlchemyError as exc:
            raise PersistenceFailure(f"Cannot select due schedule entries: {exc}") from exc

    def _transition(self, entry_id: uuid.UUID, from_status: ScheduleStatus, values: dict) -> bool:
        try:
            with self._session_factory() as db:
                result = db.execute(
                    update(ScheduleEntry)
                    .where(ScheduleEntry.id == entry_id, ScheduleEntry.status == from_status)
                    .values(updated_at=utcnow(), **values)
                )
                db.commit()
        except SQLAlchemyError as exc:
            raise PersistenceFailure(f"Cannot update schedule entry {entry_id}: {exc}") from exc
        return result.rowcount == 1

    def claim(self, entry: DueEntry) -> bool:
        """Move a selected entry to processing. False if another run got there first."""
        return self._transition(entry.id, entry.status, {"status": ScheduleStatus.PROCESSING})

    def mark_completed(self, entry_id: uuid.UUID, now: datetime) -> bool:
        return self._transition(
            entry_id,
            ScheduleStatus.PROCESSING,
            {"status": ScheduleStatus.COMPLETED, "last_run": now, "next_run": None, "error_message": None},
        )

    def mark_failed(
        self,
        entry_id: uuid.UUID,
        now: datetime,
        error_message: str,
        retry_count: int | None = None,
        next_run: datetime | None = None,
    ) -> bool:
        values = {
            "status": ScheduleStatus.FAILED,
            "last_run": now,
            "next_run": next_run,
            "error_message": error_message,
        }
        if retry_count is not None:
            values["retry_count"] = retry_count
        return self._transition(entry_id, ScheduleStatus.PROCESSING, values)

    def list_entries(self, status: ScheduleStatus | None = None, limit: int = 50) -> list[dict]:
        try:
            with self._session_factory() as db:
                query = db.query(ScheduleEntry)
                if status is not None:
                    query = query.filter(ScheduleEntry.status == status)
                rows = query.order_by(ScheduleEntry.trigger_time.asc()).limit(limit).all()
                return [schedule_to_dict(r) for r in rows]
        except SQLAlchemyError as exc:
            raise PersistenceFailure(str(exc)) from exc
