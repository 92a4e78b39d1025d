"""Notification engine facade wiring the pipeline, evaluators, queue and scheduler."""

import logging
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy.orm import sessionmaker

from ..clock import as_utc, utcnow
from ..config import Settings, settings
from ..database.base import SessionLocal
from ..portal.sources import (
    EntityDeadlineRecord,
    EntityDeadlineSource,
    Recipient,
    RecipientDirectory,
    SqlDeadlineSource,
    SqlRecipientDirectory,
)
from .delivery import DeliveryOutcome, DeliveryPipeline, DeliveryReport
from .exceptions import TargetNotFound
from .log_store import NotificationLogStore
from .models import NEW_KIND_BY_TARGET, NotificationKind, ScheduleStatus, ScheduleType, TargetType
from .queue import ProcessingSummary, ScheduleQueueProcessor
from .reminders import EvaluationSummary, ReminderEvaluator
from .schedule_store import ScheduleStore
from .scheduler import DEADLINE_JOB, OVERDUE_JOB, QUEUE_JOB, JobGuard, NotificationScheduler
from .templates import EmailTemplateRenderer, TemplateRenderer
from .transport import SmtpTransport, Transport

logger = logging.getLogger(__name__)

COMPLETION_NEXT_STEPS = "Check your dashboard for additional workstreams or assessments."


@dataclass
class BroadcastHandle:
    """A broadcast running on the engine's pool.

    ``done`` is true when it finished within the caller's wait; otherwise the
    future keeps running and its outcome lands in the notification log.
    """

    kind: NotificationKind
    target_id: str
    target_type: TargetType
    future: Future

    @property
    def done(self) -> bool:
        return self.future.done()

    def result(self, timeout: float | None = None) -> DeliveryReport:
        return self.future.result(timeout=timeout)

    def as_dict(self, done: bool | None = None) -> dict:
        if done is None:
            done = self.done
        if not done:
            return {
                "status": "in_progress",
                "kind": self.kind.value,
                "target_id": self.target_id,
                "target_type": self.target_type.value,
            }
        return {"status": "completed", **self.result().as_dict()}


def entity_payload(record: EntityDeadlineRecord) -> dict[str, Any]:
    deadline = as_utc(record.deadline)
    payload = {
        "id": record.id,
        "title": record.title,
        "deadline": deadline.isoformat() if deadline else None,
        "entity_type": record.entity_type.value,
    }
    if record.parent_title:
        payload["parent_title"] = record.parent_title
    payload.update({k: v for k, v in record.extra.items() if v is not None})
    return payload


class NotificationEngine:
    def __init__(
        self,
        config: Settings,
        directory: RecipientDirectory,
        source: EntityDeadlineSource,
        log_store: NotificationLogStore,
        schedule_store: ScheduleStore,
        transport: Transport,
        renderer: TemplateRenderer,
    ) -> None:
        self.config = config
        self.directory = directory
        self.source = source
        self.log_store = log_store
        self.schedule_store = schedule_store
        self.pipeline = DeliveryPipeline(directory, log_store, transport, renderer)
        self.evaluator = ReminderEvaluator(
            sources={t: source for t in TargetType},
            pipeline=self.pipeline,
            log_store=log_store,
            dedupe_enabled=config.reminder_dedupe_enabled,
            overdue_max_age_days=config.overdue_max_age_days,
        )
        self.queue = ScheduleQueueProcessor(
            schedule_store,
            self.pipeline,
            batch_size=config.schedule_batch_size,
            retry_enabled=config.schedule_retry_enabled,
            backoff_seconds=config.schedule_retry_backoff_seconds,
        )
        self.guard = JobGuard()
        self.scheduler = NotificationScheduler(
            self.guard,
            daily_jobs={
                DEADLINE_JOB: self.evaluator.evaluate_deadline_windows,
                OVERDUE_JOB: self.evaluator.evaluate_overdue,
            },
            hourly_jobs={QUEUE_JOB: self.queue.process_due},
            timezone=config.scheduler_timezone,
            daily_hour=config.reminder_check_hour,
            daily_minute=config.reminder_check_minute,
            hourly_minute=config.schedule_queue_minute,
        )
        self._executor = ThreadPoolExecutor(
            max_workers=config.broadcast_workers, thread_name_prefix="notify-broadcast"
        )

    # ── Lifecycle ─────────────────────────────────────────────────────

    def start(self) -> None:
        if not self.config.scheduler_enabled:
            logger.info("Notification scheduler disabled via settings (SCHEDULER_ENABLED=false)")
            return
        self.scheduler.start()

    def stop(self) -> None:
        self.scheduler.stop(wait=True)
        self._executor.shutdown(wait=True)
        logger.info("Notification engine stopped")

    # ── Event-driven notifications ────────────────────────────────────

    def _lookup(self, target_type: TargetType, target_id: int | str) -> EntityDeadlineRecord:
        record = self.source.get(target_type, target_id)
        if record is None:
            raise TargetNotFound(f"{target_type.value.capitalize()} {target_id} not found")
        return record

    def _broadcast(self, kind: NotificationKind, payload: dict, target_id: str, target_type: TargetType) -> BroadcastHandle:
        future = self._executor.submit(self.pipeline.deliver, kind, payload, target_id, target_type)
        future.add_done_callback(self._log_background_failure)
        handle = BroadcastHandle(kind, target_id, target_type, future)
        try:
            # Errors raised before any send (directory, template) reach the caller.
            future.result(timeout=self.config.broadcast_wait_seconds)
        except TimeoutError:
            logger.info("%s for %s %s still sending in background", kind, target_type, target_id)
        return handle

    @staticmethod
    def _log_background_failure(future: Future) -> None:
        exc = future.exception()
        if exc is not None:
            logger.error("Background broadcast failed: %s", exc, exc_info=exc)

    def notify_new(self, kind: NotificationKind, target_id: int | str) -> BroadcastHandle:
        """Announce a newly published workstream, chapter or assessment to everyone."""
        kind = NotificationKind(kind)
        target_type = next((t for t, k in NEW_KIND_BY_TARGET.items() if k is kind), None)
        if target_type is None:
            raise ValueError(f"{kind} is not an announcement kind")
        record = self._lookup(target_type, target_id)
        return self._broadcast(kind, entity_payload(record), str(record.id), target_type)

    def notify_update(self, target_id: int | str, target_type: TargetType, changes: list[dict]) -> BroadcastHandle:
        target_type = TargetType(target_type)
        record = self._lookup(target_type, target_id)
        payload = {**entity_payload(record), "changes": list(changes)}
        return self._broadcast(NotificationKind.UPDATE, payload, str(record.id), target_type)

    def notify_completion(self, user_id: int | str, workstream_id: int | str) -> DeliveryOutcome:
        recipient = self.directory.get_recipient(user_id)
        if recipient is None:
            raise TargetNotFound(f"User {user_id} not found")
        record = self._lookup(TargetType.WORKSTREAM, workstream_id)
        payload = {**entity_payload(record), "next_steps": COMPLETION_NEXT_STEPS}
        outcome = self.pipeline.deliver_to(
            NotificationKind.COMPLETION, payload, str(record.id), TargetType.WORKSTREAM, recipient
        )
        logger.info("Completion notification for workstream %s to %s: %s", record.id, recipient.email, outcome.status)
        return outcome

    def send_test(self, email: str) -> DeliveryOutcome:
        payload = {
            "title": "Test Notification",
            "description": "This is a test notification to verify email configuration.",
            "deadline": (utcnow() + timedelta(days=7)).isoformat(),
            "entity_type": TargetType.WORKSTREAM.value,
        }
        recipient = Recipient(id="test", email=email, display_name="Test User")
        return self.pipeline.deliver_to(
            NotificationKind.NEW_WORKSTREAM, payload, "test-id", TargetType.WORKSTREAM, recipient
        )

    # ── Scheduling ────────────────────────────────────────────────────

    def schedule(
        self,
        notification_type: ScheduleType,
        target_id: int | str,
        target_type: TargetType,
        trigger_time: datetime,
        payload: dict | None = None,
    ) -> uuid.UUID:
        notification_type = ScheduleType(notification_type)
        target_type = TargetType(target_type)
        payload = dict(payload or {})
        if "title" not in payload:
            payload = {**entity_payload(self._lookup(target_type, target_id)), **payload}
        entry_id = self.schedule_store.create(
            notification_type, str(target_id), target_type, trigger_time, payload,
            max_retries=self.config.schedule_max_retries,
        )
        logger.info(
            "Scheduled %s for %s %s at %s (%s)",
            notification_type, target_type, target_id, as_utc(trigger_time).isoformat(), entry_id,
        )
        return entry_id

    # ── Manual runs of the periodic jobs ──────────────────────────────

    def check_deadline_reminders(self) -> EvaluationSummary:
        return self.guard.run(DEADLINE_JOB, self.evaluator.evaluate_deadline_windows)

    def check_overdue(self) -> EvaluationSummary:
        return self.guard.run(OVERDUE_JOB, self.evaluator.evaluate_overdue)

    def process_scheduled(self) -> ProcessingSummary:
        return self.guard.run(QUEUE_JOB, self.queue.process_due)

    # ── Reads ─────────────────────────────────────────────────────────

    def recent_logs(self, limit: int | None = None) -> list[dict]:
        limit = self.config.logs_default_limit if limit is None else limit
        limit = max(1, min(limit, self.config.logs_max_limit))
        return self.log_store.list_recent(limit)

    def stats(self) -> dict:
        return self.log_store.stats()

    def scheduled_entries(self, status: ScheduleStatus | None = None, limit: int | None = None) -> list[dict]:
        limit = self.config.schedule_batch_size if limit is None else limit
        limit = max(1, min(limit, self.config.logs_max_limit))
        return self.schedule_store.list_entries(ScheduleStatus(status) if status else None, limit)

    def scheduled_entry(self, entry_id: uuid.UUID) -> dict:
        entry = self.schedule_store.get(entry_id)
        if entry is None:
            raise TargetNotFound(f"Scheduled notification {entry_id} not found")
        return entry


def build_notification_engine(
    config: Settings = settings,
    session_factory: sessionmaker = SessionLocal,
    transport: Transport | None = None,
    renderer: TemplateRenderer | None = None,
    directory: RecipientDirectory | None = None,
    source: EntityDeadlineSource | None = None,
) -> NotificationEngine:
    """Wire the engine against the portal database, SMTP and the HTML templates."""
    return NotificationEngine(
        config=config,
        directory=directory or SqlRecipientDirectory(session_factory),
        source=source or SqlDeadlineSource(session_factory),
        log_store=NotificationLogStore(session_factory),
        schedule_store=ScheduleStore(session_factory, default_max_retries=config.schedule_max_retries),
        transport=transport or SmtpTransport(config),
        renderer=renderer or EmailTemplateRenderer(config.frontend_url, brand_name=config.email_from_name),
    )
