"""Tests for the schedule store."""

from datetime import timedelta

import pytest
from conftest import NOW
from pydantic import ValidationError

from notification_engine.config import Settings
from notification_engine.notifications.models import ScheduleStatus, ScheduleType, TargetType


def _create(schedule_store, trigger_time, target_id="1"):
    return schedule_store.create(
        ScheduleType.REMINDER, target_id, TargetType.WORKSTREAM, trigger_time, {"title": "Onboarding"}
    )


class TestCreate:
    def test_new_entry_is_pending(self, schedule_store):
        entry_id = _create(schedule_store, NOW + timedelta(hours=1))
        entry = schedule_store.get(entry_id)
        assert entry["status"] == "pending"
        assert entry["retry_count"] == 0
        assert entry["max_retries"] == 3
        assert entry["payload"] == {"title": "Onboarding"}
        assert entry["trigger_time"] == (NOW + timedelta(hours=1)).isoformat()

    def test_negative_max_retries_rejected(self, schedule_store):
        with pytest.raises(ValueError):
            schedule_store.create(
                ScheduleType.REMINDER, "1", TargetType.WORKSTREAM, NOW, {"title": "Onboarding"}, max_retries=-1
            )

    def test_negative_max_retries_setting_rejected(self):
        with pytest.raises(ValidationError):
            Settings(database_url="sqlite://", schedule_max_retries=-1)


class TestSelectDue:
    def test_future_entries_not_selected(self, schedule_store):
        _create(schedule_store, NOW + timedelta(seconds=1))
        assert schedule_store.select_due(NOW, limit=50) == []

    def test_due_entries_oldest_first(self, schedule_store):
        late = _create(schedule_store, NOW - timedelta(minutes=5), "2")
        early = _create(schedule_store, NOW - timedelta(hours=2), "1")
        exact = _create(schedule_store, NOW, "3")
        due = schedule_store.select_due(NOW, limit=50)
        assert [e.id for e in due] == [early, late, exact]

    def test_batch_limit(self, schedule_store):
        for i in range(5):
            _create(schedule_store, NOW - timedelta(minutes=i), str(i))
        assert len(schedule_store.select_due(NOW, limit=3)) == 3

    def test_rearmed_failures_only_when_requested(self, schedule_store):
        entry_id = _create(schedule_store, NOW - timedelta(hours=3))
        entry = schedule_store.select_due(NOW, limit=50)[0]
        schedule_store.claim(entry)
        schedule_store.mark_failed(entry_id, NOW - timedelta(hours=2), "boom", retry_count=1, next_run=NOW - timedelta(hours=1))

        assert schedule_store.select_due(NOW, limit=50) == []
        rearmed = schedule_store.select_due(NOW, limit=50, include_rearmed=True)
        assert [e.id for e in rearmed] == [entry_id]
        assert rearmed[0].status is ScheduleStatus.FAILED

    def test_exhausted_failures_not_rearmed(self, schedule_store):
        entry_id = _create(schedule_store, NOW - timedelta(hours=3))
        schedule_store.claim(schedule_store.select_due(NOW, limit=50)[0])
        schedule_store.mark_failed(entry_id, NOW, "boom", retry_count=3, next_run=NOW - timedelta(minutes=1))
        assert schedule_store.select_due(NOW, limit=50, include_rearmed=True) == []


class TestStateMachine:
    def test_claim_then_complete(self, schedule_store):
        entry_id = _create(schedule_store, NOW - timedelta(minutes=1))
        entry = schedule_store.select_due(NOW, limit=50)[0]

        assert schedule_store.claim(entry) is True
        assert schedule_store.get(entry_id)["status"] == "processing"
        assert schedule_store.mark_completed(entry_id, NOW) is True

        stored = schedule_store.get(entry_id)
        assert stored["status"] == "completed"
        assert stored["last_run"] == NOW.isoformat()
        assert schedule_store.select_due(NOW + timedelta(days=1), limit=50, include_rearmed=True) == []

    def test_second_claim_loses(self, schedule_store):
        _create(schedule_store, NOW - timedelta(minutes=1))
        entry = schedule_store.select_due(NOW, limit=50)[0]
        assert schedule_store.claim(entry) is True
        assert schedule_store.claim(entry) is False

    def test_complete_requires_processing(self, schedule_store):
        entry_id = _create(schedule_store, NOW - timedelta(minutes=1))
        assert schedule_store.mark_completed(entry_id, NOW) is False
        assert schedule_store.get(entry_id)["status"] == "pending"

    def test_list_entries_by_status(self, schedule_store):
        _create(schedule_store, NOW - timedelta(minutes=1), "1")
        done = _create(schedule_store, NOW - timedelta(minutes=2), "2")
        entry = next(e for e in schedule_store.select_due(NOW, limit=50) if e.id == done)
        schedule_store.claim(entry)
        schedule_store.mark_completed(done, NOW)

        assert [e["target_id"] for e in schedule_store.list_entries(ScheduleStatus.PENDING)] == ["1"]
        assert [e["target_id"] for e in schedule_store.list_entries(ScheduleStatus.COMPLETED)] == ["2"]
        assert len(schedule_store.list_entries()) == 2
