"""Shared test fixtures."""

from datetime import UTC, datetime

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from notification_engine.config import Settings
from notification_engine.database.base import Base, PortalBase
from notification_engine.notifications.engine import build_notification_engine
from notification_engine.notifications.exceptions import TransportError
from notification_engine.notifications.log_store import NotificationLogStore
from notification_engine.notifications.models import NotificationLog, ScheduleEntry
from notification_engine.notifications.schedule_store import ScheduleStore
from notification_engine.notifications.templates import EmailTemplateRenderer
from notification_engine.portal.models import Assessment, Chapter, PortalUser, Workstream

# Models must be imported so create_all() sees all tables.
_ALL_MODELS = [NotificationLog, ScheduleEntry, PortalUser, Workstream, Chapter, Assessment]

# Fixed evaluation instant used by the time-dependent tests.
NOW = datetime(2026, 3, 10, 9, 0, tzinfo=UTC)


class FakeTransport:
    """Records every send; raises TransportError for addresses in ``failing``."""

    def __init__(self, failing=()):
        self.failing = set(failing)
        self.sent: list[tuple[str, str, str]] = []

    def send(self, to: str, subject: str, html_body: str) -> None:
        if to in self.failing:
            raise TransportError(f"550 mailbox unavailable: {to}")
        self.sent.append((to, subject, html_body))

    @property
    def recipients(self) -> list[str]:
        return [to for to, _, _ in self.sent]


@pytest.fixture
def session_factory():
    """In-memory SQLite database holding both the engine tables and the portal mirror.

    Note: SQLite drops tzinfo on DateTime columns; the stores re-attach UTC on read.
    """
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    PortalBase.metadata.create_all(bind=engine)
    try:
        yield sessionmaker(bind=engine)
    finally:
        engine.dispose()


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def log_store(session_factory):
    return NotificationLogStore(session_factory)


@pytest.fixture
def schedule_store(session_factory):
    return ScheduleStore(session_factory)


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def renderer():
    return EmailTemplateRenderer("https://portal.example.com")


@pytest.fixture
def make_users(db_session):
    """Seed N portal users: user1@example.com ... userN@example.com."""

    def _make(count: int) -> list[PortalUser]:
        users = [
            PortalUser(user_id=i, email=f"user{i}@example.com", first_name="User", last_name=str(i))
            for i in range(1, count + 1)
        ]
        db_session.add_all(users)
        db_session.commit()
        return users

    return _make


@pytest.fixture
def make_workstream(db_session):
    def _make(workstream_id: int = 1, title: str = "Onboarding", deadline=None, published=True) -> Workstream:
        ws = Workstream(
            workstream_id=workstream_id,
            title=title,
            description="Company onboarding track",
            deadline=deadline,
            is_published=published,
        )
        db_session.add(ws)
        db_session.commit()
        return ws

    return _make


@pytest.fixture
def make_chapter(db_session):
    def _make(chapter_id: int, workstream_id: int, title: str = "Security basics", deadline=None) -> Chapter:
        chapter = Chapter(
            chapter_id=chapter_id,
            workstream_id=workstream_id,
            title=title,
            content="Passwords and phishing",
            deadline=deadline,
            is_published=True,
        )
        db_session.add(chapter)
        db_session.commit()
        return chapter

    return _make


@pytest.fixture
def make_assessment(db_session):
    def _make(assessment_id: int, workstream_id: int | None = None, title: str = "Final quiz", deadline=None) -> Assessment:
        assessment = Assessment(
            assessment_id=assessment_id,
            workstream_id=workstream_id,
            title=title,
            deadline=deadline,
            total_points=100,
            passing_score=70,
            is_published=True,
        )
        db_session.add(assessment)
        db_session.commit()
        return assessment

    return _make


@pytest.fixture
def test_settings():
    return Settings(
        database_url="sqlite://",
        scheduler_enabled=False,
        frontend_url="https://portal.example.com",
        broadcast_wait_seconds=5.0,
        broadcast_workers=2,
        schedule_retry_backoff_seconds=900,
    )


@pytest.fixture
def engine(test_settings, session_factory, transport):
    """Notification engine wired to SQLite and the fake transport."""
    notification_engine = build_notification_engine(test_settings, session_factory, transport=transport)
    try:
        yield notification_engine
    finally:
        notification_engine.stop()
