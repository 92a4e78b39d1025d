"""Tests for the notification engine facade, including end-to-end flows."""

import threading
import uuid
from concurrent.futures import Future
from datetime import timedelta
from unittest.mock import patch

import pytest
from conftest import FakeTransport

from notification_engine.clock import utcnow
from notification_engine.notifications.delivery import DeliveryReport
from notification_engine.notifications.engine import BroadcastHandle, build_notification_engine
from notification_engine.notifications.exceptions import JobAlreadyRunning, TargetNotFound
from notification_engine.notifications.models import (
    DeliveryStatus,
    NotificationKind,
    NotificationLog,
    ScheduleStatus,
    ScheduleType,
    TargetType,
)
from notification_engine.notifications.scheduler import DEADLINE_JOB, QUEUE_JOB


class BlockingTransport(FakeTransport):
    """Holds every send until ``release`` is set."""

    def __init__(self):
        super().__init__()
        self.release = threading.Event()

    def send(self, to, subject, html_body):
        self.release.wait(timeout=10)
        super().send(to, subject, html_body)


def _rows(db_session):
    db_session.expire_all()
    return db_session.query(NotificationLog).all()


class TestNotifyNew:
    def test_broadcast_completes_within_wait(self, engine, make_users, make_workstream, transport, db_session):
        make_users(3)
        make_workstream(5, "Onboarding")

        handle = engine.notify_new(NotificationKind.NEW_WORKSTREAM, 5)

        assert handle.done
        report = handle.result()
        assert report.sent == 3
        assert handle.as_dict()["status"] == "completed"
        assert len(transport.sent) == 3
        rows = _rows(db_session)
        assert {(r.kind, r.target_id, r.target_type) for r in rows} == {
            (NotificationKind.NEW_WORKSTREAM, "5", TargetType.WORKSTREAM)
        }

    def test_chapter_payload_carries_workstream(self, engine, make_users, make_workstream, make_chapter, transport):
        make_users(1)
        make_workstream(1, "Security")
        make_chapter(10, 1, "Phishing")

        engine.notify_new(NotificationKind.NEW_CHAPTER, 10).result(timeout=5)

        assert transport.sent[0][1] == "New Chapter in Security: Phishing"

    def test_unknown_target(self, engine, db_session):
        with pytest.raises(TargetNotFound):
            engine.notify_new(NotificationKind.NEW_ASSESSMENT, 404)
        assert _rows(db_session) == []

    def test_non_announcement_kind_rejected(self, engine):
        with pytest.raises(ValueError):
            engine.notify_new(NotificationKind.OVERDUE, 1)

    def test_slow_broadcast_returns_handle(self, test_settings, session_factory, make_users, make_workstream, db_session):
        make_users(2)
        make_workstream(1)
        transport = BlockingTransport()
        slow_settings = test_settings.model_copy(update={"broadcast_wait_seconds": 0.05})
        engine = build_notification_engine(slow_settings, session_factory, transport=transport)
        try:
            handle = engine.notify_new(NotificationKind.NEW_WORKSTREAM, 1)
            assert not handle.done
            assert handle.as_dict()["status"] == "in_progress"

            transport.release.set()
            assert handle.result(timeout=5).sent == 2
        finally:
            transport.release.set()
            engine.stop()
        assert len(_rows(db_session)) == 2


class TestDirectNotifications:
    def test_completion_goes_to_one_user(self, engine, make_users, make_workstream, transport, db_session):
        make_users(3)
        make_workstream(1, "Onboarding")

        outcome = engine.notify_completion(2, 1)

        assert outcome.status is DeliveryStatus.SENT
        assert transport.recipients == ["user2@example.com"]
        _, subject, body = transport.sent[0]
        assert subject == "Workstream Completed: Onboarding"
        assert "Check your dashboard" in body
        assert [r.kind for r in _rows(db_session)] == [NotificationKind.COMPLETION]

    def test_completion_unknown_user(self, engine, make_workstream):
        make_workstream(1)
        with pytest.raises(TargetNotFound, match="User 99"):
            engine.notify_completion(99, 1)

    def test_completion_unknown_workstream(self, engine, make_users):
        make_users(1)
        with pytest.raises(TargetNotFound, match="Workstream 7"):
            engine.notify_completion(1, 7)

    def test_send_test(self, engine, transport, db_session):
        outcome = engine.send_test("ops@example.com")
        assert outcome.status is DeliveryStatus.SENT
        assert transport.sent[0][1] == "New Workstream Published: Test Notification"
        assert _rows(db_session)[0].target_id == "test-id"


class TestNotifyUpdate:
    def test_update_is_broadcast(self, engine, make_users, make_assessment, transport, db_session):
        make_users(2)
        make_assessment(3, title="Final quiz")

        handle = engine.notify_update(3, TargetType.ASSESSMENT, [{"field": "passing_score", "old_value": 60, "new_value": 70}])

        assert handle.result(timeout=5).sent == 2
        assert "passing_score" in transport.sent[0][2]
        assert {r.kind for r in _rows(db_session)} == {NotificationKind.UPDATE}

    def test_update_unknown_target(self, engine):
        with pytest.raises(TargetNotFound):
            engine.notify_update(3, TargetType.CHAPTER, [])


class TestSchedule:
    def test_schedule_fills_payload_from_entity(self, engine, make_workstream):
        make_workstream(1, "Onboarding")
        entry_id = engine.schedule(ScheduleType.REMINDER, 1, TargetType.WORKSTREAM, utcnow() + timedelta(days=1))
        entry = engine.schedule_store.get(entry_id)
        assert entry["status"] == "pending"
        assert entry["payload"]["title"] == "Onboarding"

    def test_schedule_unknown_target_without_title(self, engine):
        with pytest.raises(TargetNotFound):
            engine.schedule(ScheduleType.REMINDER, 1, TargetType.WORKSTREAM, utcnow())


class TestManualRuns:
    def test_collision_raises(self, engine):
        with engine.guard.hold(DEADLINE_JOB):
            with pytest.raises(JobAlreadyRunning):
                engine.check_deadline_reminders()

    def test_other_jobs_unaffected(self, engine):
        with engine.guard.hold(DEADLINE_JOB):
            assert engine.check_overdue().matched == 0

    def test_queue_collision_raises(self, engine):
        with engine.guard.hold(QUEUE_JOB):
            with pytest.raises(JobAlreadyRunning):
                engine.process_scheduled()


class TestReads:
    def test_recent_logs_limit_clamped(self, engine):
        with patch.object(engine.log_store, "list_recent", return_value=[]) as mock_list:
            engine.recent_logs(0)
            engine.recent_logs(10_000)
            engine.recent_logs()
        assert [c.args[0] for c in mock_list.call_args_list] == [1, 200, 10]

    def test_stats_idempotent(self, engine, make_users, make_workstream):
        make_users(2)
        make_workstream(1)
        engine.notify_new(NotificationKind.NEW_WORKSTREAM, 1).result(timeout=5)
        assert engine.stats() == engine.stats()
        assert engine.stats()["sent_count"] == 2


class TestLifecycle:
    def test_start_disabled_does_not_schedule(self, engine):
        engine.start()
        assert not engine.scheduler.running

    def test_start_and_stop(self, test_settings, session_factory):
        enabled = test_settings.model_copy(update={"scheduler_enabled": True})
        engine = build_notification_engine(enabled, session_factory, transport=FakeTransport())
        engine.start()
        try:
            assert engine.scheduler.running
        finally:
            engine.stop()
        assert not engine.scheduler.running


class TestEndToEnd:
    def test_week_reminder_for_three_recipients(self, engine, make_users, make_workstream, db_session):
        make_users(3)
        make_workstream(42, "Compliance", deadline=utcnow() + timedelta(days=7))

        engine.check_deadline_reminders()

        rows = _rows(db_session)
        assert len(rows) == 3
        for row in rows:
            assert row.status is DeliveryStatus.SENT
            assert row.kind is NotificationKind.DEADLINE_REMINDER_WEEK
            assert row.target_id == "42"
            assert row.target_type is TargetType.WORKSTREAM

    def test_scheduled_reminder_delivered_once(self, engine, make_users):
        make_users(1)
        entry_id = engine.schedule(
            ScheduleType.REMINDER, 7, TargetType.ASSESSMENT, utcnow() - timedelta(seconds=1),
            {"id": 7, "title": "Final quiz", "entity_type": "assessment"},
        )

        with patch.object(engine.queue.pipeline, "deliver", wraps=engine.queue.pipeline.deliver) as spy:
            summary = engine.process_scheduled()

        spy.assert_called_once()
        assert spy.call_args.args[0] is NotificationKind.REMINDER
        assert summary.completed == 1
        assert engine.schedule_store.get(entry_id)["status"] == "completed"

    def test_one_of_two_recipients_fails(self, engine, make_users, make_workstream, transport, db_session):
        make_users(2)
        make_workstream(1)
        transport.failing.add("user2@example.com")

        report = engine.notify_new(NotificationKind.NEW_WORKSTREAM, 1).result(timeout=5)

        assert (report.sent, report.failed) == (1, 1)
        rows = {r.recipient_email: r for r in _rows(db_session)}
        assert rows["user1@example.com"].status is DeliveryStatus.SENT
        assert rows["user2@example.com"].status is DeliveryStatus.FAILED
        assert rows["user2@example.com"].error_message


class TestBroadcastHandle:
    def test_as_dict_follows_given_snapshot(self):
        future = Future()
        future.set_result(DeliveryReport(NotificationKind.NEW_WORKSTREAM, "1", TargetType.WORKSTREAM))
        handle = BroadcastHandle(NotificationKind.NEW_WORKSTREAM, "1", TargetType.WORKSTREAM, future)

        assert handle.as_dict(False)["status"] == "in_progress"
        assert handle.as_dict()["status"] == "completed"
        assert handle.as_dict()["total"] == 0


class TestScheduledReads:
    def test_scheduled_entry_unknown(self, engine):
        with pytest.raises(TargetNotFound):
            engine.scheduled_entry(uuid.uuid4())

    def test_scheduled_entries_limit_clamped(self, engine):
        with patch.object(engine.schedule_store, "list_entries", return_value=[]) as mock_list:
            engine.scheduled_entries(limit=0)
            engine.scheduled_entries(limit=10_000)
            engine.scheduled_entries("failed")
        assert [c.args for c in mock_list.call_args_list] == [
            (None, 1),
            (None, 200),
            (ScheduleStatus.FAILED, 50),
        ]
