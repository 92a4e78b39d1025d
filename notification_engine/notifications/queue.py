"""Processes due schedule entries through the delivery pipeline."""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from ..clock import as_utc, utcnow
from .delivery import DeliveryPipeline
from .exceptions import NotificationError
from .schedule_store import DueEntry, ScheduleStore

logger = logging.getLogger(__name__)


@dataclass
class ProcessingSummary:
    processed_at: datetime
    selected: int = 0
    completed: int = 0
    failed: int = 0
    skipped: int = 0
    errors: list[str] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "processed_at": self.processed_at.isoformat(),
            "selected": self.selected,
            "completed": self.completed,
            "failed": self.failed,
            "skipped": self.skipped,
            "errors": list(self.errors),
        }


def retry_delay(backoff_seconds: int, retry_count: int) -> timedelta:
    """Exponential backoff: base, 2x base, 4x base..."""
    return timedelta(seconds=backoff_seconds * 2 ** max(retry_count - 1, 0))


class ScheduleQueueProcessor:
    def __init__(
        self,
        store: ScheduleStore,
        pipeline: DeliveryPipeline,
        batch_size: int = 50,
        retry_enabled: bool = True,
        backoff_seconds: int = 900,
    ) -> None:
        self.store = store
        self.pipeline = pipeline
        self.batch_size = batch_size
        self.retry_enabled = retry_enabled
        self.backoff_seconds = backoff_seconds

    def process_due(self, now: datetime | None = None) -> ProcessingSummary:
        now = as_utc(now) if now else utcnow()
        summary = ProcessingSummary(processed_at=now)

        entries = self.store.select_due(now, self.batch_size, include_rearmed=self.retry_enabled)
        summary.selected = len(entries)
        if not entries:
            logger.debug("No scheduled notifications due")
            return summary

        logger.info("Processing %d scheduled notifications", len(entries))
        for entry in entries:
            self._process_one(entry, now, summary)

        logger.info(
            "Scheduled notifications: %d completed, %d failed, %d skipped",
            summary.completed, summary.failed, summary.skipped,
        )
        return summary

    def _process_one(self, entry: DueEntry, now: datetime, summary: ProcessingSummary) -> None:
        if not self.store.claim(entry):
            logger.info("Schedule entry %s was claimed elsewhere, skipping", entry.id)
            summary.skipped += 1
            return

        kind = entry.notification_type.kind
        try:
            report = self.pipeline.deliver(kind, entry.payload, entry.target_id, entry.target_type)
        except NotificationError as exc:
            error = f"{exc.__class__.__name__}: {exc}"
        except Exception as exc:
            logger.exception("Unexpected error delivering schedule entry %s", entry.id)
            error = f"{exc.__class__.__name__}: {exc}"
        else:
            if report.ok:
                self.store.mark_completed(entry.id, now)
                summary.completed += 1
                return
            error = f"All {report.failed} sends failed"

        logger.warning("Scheduled %s %s for %s %s failed: %s", kind, entry.id, entry.target_type, entry.target_id, error)
        self._fail(entry, now, error)
        summary.failed += 1
        summary.errors.append(f"{entry.id}: {error}")

    def _fail(self, entry: DueEntry, now: datetime, error: str) -> None:
        if not self.retry_enabled:
            self.store.mark_failed(entry.id, now, error)
            return

        # max_retries counts every attempt, the first one included.
        retry_count = min(entry.retry_count + 1, entry.max_retries)
        next_run = None
        if retry_count < entry.max_retries:
            next_run = now + retry_delay(self.backoff_seconds, retry_count)
            logger.info("Schedule entry %s re-armed for %s (attempt %d/%d)",
                        entry.id, next_run.isoformat(), retry_count + 1, entry.max_retries)
        else:
            logger.error("Schedule entry %s used all %d attempts", entry.id, entry.max_retries)
        self.store.mark_failed(entry.id, now, error, retry_count=retry_count, next_run=next_run)
