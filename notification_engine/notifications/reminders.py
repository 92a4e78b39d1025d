"""Deadline reminder and overdue evaluation over the portal's entity deadlines."""

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, time, timedelta

from ..clock import as_utc, utcnow
from ..portal.sources import DeadlineWindow, EntityDeadlineRecord, EntityDeadlineSource
from .delivery import DeliveryPipeline
from .exceptions import NotificationError, QueryFailure
from .log_store import NotificationLogStore
from .models import NotificationKind, TargetType

logger = logging.getLogger(__name__)

# How far back an earlier notification of the same kind suppresses a repeat.
DEDUPE_LOOKBACK = {
    NotificationKind.DEADLINE_REMINDER_WEEK: timedelta(days=2),
    NotificationKind.DEADLINE_REMINDER_DAY: timedelta(days=2),
    NotificationKind.OVERDUE: timedelta(hours=20),
}


@dataclass
class WindowResult:
    window: str
    kind: NotificationKind
    matched: int = 0
    notified: int = 0
    suppressed: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "window": self.window,
            "kind": self.kind.value,
            "matched": self.matched,
            "notified": self.notified,
            "suppressed": self.suppressed,
            "failed": self.failed,
            "errors": list(self.errors),
        }


@dataclass
class EvaluationSummary:
    evaluated_at: datetime
    windows: list[WindowResult] = field(default_factory=list)

    def _total(self, attr: str) -> int:
        return sum(getattr(w, attr) for w in self.windows)

    @property
    def matched(self) -> int:
        return self._total("matched")

    @property
    def notified(self) -> int:
        return self._total("notified")

    @property
    def suppressed(self) -> int:
        return self._total("suppressed")

    @property
    def failed(self) -> int:
        return self._total("failed")

    @property
    def errors(self) -> list[str]:
        return [e for w in self.windows for e in w.errors]

    def as_dict(self) -> dict:
        return {
            "evaluated_at": self.evaluated_at.isoformat(),
            "matched": self.matched,
            "notified": self.notified,
            "suppressed": self.suppressed,
            "failed": self.failed,
            "errors": self.errors,
            "windows": [w.as_dict() for w in self.windows],
        }


def deadline_windows(now: datetime) -> list[tuple[DeadlineWindow, NotificationKind]]:
    """Week and day reminder windows. Both bounds are inclusive."""
    return [
        (
            DeadlineWindow("week", now + timedelta(days=6), now + timedelta(days=8)),
            NotificationKind.DEADLINE_REMINDER_WEEK,
        ),
        (
            DeadlineWindow("day", now, now + timedelta(days=2)),
            NotificationKind.DEADLINE_REMINDER_DAY,
        ),
    ]


def overdue_window(now: datetime, max_age_days: int) -> DeadlineWindow:
    """Deadlines before ``now`` but no more than ``max_age_days`` calendar days back."""
    oldest_day = now.date() - timedelta(days=max_age_days)
    start = datetime.combine(oldest_day, time.min, tzinfo=now.tzinfo)
    return DeadlineWindow("overdue", start, now, end_inclusive=False)


def days_overdue(deadline: datetime, now: datetime) -> int:
    return (now.date() - as_utc(deadline).date()).days


def build_payload(record: EntityDeadlineRecord, now: datetime | None = None) -> dict:
    deadline = as_utc(record.deadline)
    payload = {
        "id": record.id,
        "title": record.title,
        "deadline": deadline.isoformat() if deadline else None,
        "entity_type": record.entity_type.value,
    }
    if record.parent_title:
        payload["parent_title"] = record.parent_title
    if now is not None and deadline is not None:
        payload["days_overdue"] = days_overdue(deadline, now)
    return payload


class ReminderEvaluator:
    def __init__(
        self,
        sources: Mapping[TargetType, EntityDeadlineSource],
        pipeline: DeliveryPipeline,
        log_store: NotificationLogStore,
        dedupe_enabled: bool = True,
        overdue_max_age_days: int = 30,
    ) -> None:
        self.sources = sources
        self.pipeline = pipeline
        self.log_store = log_store
        self.dedupe_enabled = dedupe_enabled
        self.overdue_max_age_days = overdue_max_age_days

    def evaluate_deadline_windows(self, now: datetime | None = None) -> EvaluationSummary:
        now = as_utc(now) if now else utcnow()
        summary = EvaluationSummary(evaluated_at=now)
        for window, kind in deadline_windows(now):
            result = WindowResult(window=window.name, kind=kind)
            for entity_type, source in self.sources.items():
                self._evaluate_source(source, entity_type, window, kind, now, result, overdue=False)
            summary.windows.append(result)
        logger.info(
            "Deadline reminders: %d matched, %d notified, %d suppressed, %d failed",
            summary.matched, summary.notified, summary.suppressed, summary.failed,
        )
        return summary

    def evaluate_overdue(self, now: datetime | None = None) -> EvaluationSummary:
        now = as_utc(now) if now else utcnow()
        summary = EvaluationSummary(evaluated_at=now)
        window = overdue_window(now, self.overdue_max_age_days)
        result = WindowResult(window=window.name, kind=NotificationKind.OVERDUE)
        for entity_type, source in self.sources.items():
            self._evaluate_source(source, entity_type, window, NotificationKind.OVERDUE, now, result, overdue=True)
        summary.windows.append(result)
        logger.info(
            "Overdue check: %d matched, %d notified, %d suppressed, %d failed",
            summary.matched, summary.notified, summary.suppressed, summary.failed,
        )
        return summary

    def _evaluate_source(
        self,
        source: EntityDeadlineSource,
        entity_type: TargetType,
        window: DeadlineWindow,
        kind: NotificationKind,
        now: datetime,
        result: WindowResult,
        overdue: bool,
    ) -> None:
        try:
            records = source.list_in_window(entity_type, window)
        except QueryFailure as exc:
            logger.error("Skipping %s for %s window: %s", entity_type, window.name, exc)
            result.errors.append(str(exc))
            return

        for record in records:
            deadline = as_utc(record.deadline)
            if deadline is None or not window.contains(deadline):
                continue
            if overdue and days_overdue(deadline, now) > self.overdue_max_age_days:
                continue
            result.matched += 1
            self._notify(record, kind, now, result, overdue)

    def _notify(
        self,
        record: EntityDeadlineRecord,
        kind: NotificationKind,
        now: datetime,
        result: WindowResult,
        overdue: bool,
    ) -> None:
        target_id = str(record.id)
        label = f"{record.entity_type} {target_id}"
        try:
            if self.dedupe_enabled and self.log_store.has_recent(
                kind, target_id, record.entity_type, since=now - DEDUPE_LOOKBACK[kind]
            ):
                logger.debug("%s already notified for %s, skipping", kind, label)
                result.suppressed += 1
                return

            payload = build_payload(record, now if overdue else None)
            report = self.pipeline.deliver(kind, payload, target_id, record.entity_type)
        except NotificationError as exc:
            logger.error("%s for %s failed: %s", kind, label, exc)
            result.failed += 1
            result.errors.append(f"{label}: {exc}")
            return

        if report.ok:
            result.notified += 1
        else:
            result.failed += 1
            result.errors.append(f"{label}: all {report.failed} sends failed")
