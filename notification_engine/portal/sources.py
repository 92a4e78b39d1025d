"""Collaborators backed by the portal tables: recipient directory and deadline sources.

Both are Protocols so the engine can be wired with in-memory fakes in tests
or with another user store in deployments that keep users elsewhere.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from ..clock import as_utc
from ..notifications.exceptions import DirectoryUnavailable, QueryFailure
from ..notifications.models import TargetType
from .models import Assessment, Chapter, PortalUser, Workstream

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Recipient:
    id: int | str
    email: str
    display_name: str


@dataclass(frozen=True)
class DeadlineWindow:
    """Deadline range relative to one evaluation instant. ``start`` is always inclusive."""

    name: str
    start: datetime
    end: datetime
    end_inclusive: bool = True

    def contains(self, moment: datetime) -> bool:
        if moment < self.start:
            return False
        return moment <= self.end if self.end_inclusive else moment < self.end


@dataclass
class EntityDeadlineRecord:
    id: int | str
    title: str
    deadline: datetime | None
    entity_type: TargetType
    parent_title: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)


class RecipientDirectory(Protocol):
    def list_recipients(self) -> list[Recipient]: ...
    def get_recipient(self, user_id: int | str) -> Recipient | None: ...


class EntityDeadlineSource(Protocol):
    def list_in_window(self, entity_type: TargetType, window: DeadlineWindow) -> list[EntityDeadlineRecord]: ...
    def get(self, entity_type: TargetType, entity_id: int | str) -> EntityDeadlineRecord | None: ...


def _to_int(value: int | str) -> int | None:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


class SqlRecipientDirectory:
    """Every portal user with a non-empty email address."""

    def __init__(self, session_factory: sessionmaker) -> None:
        self._session_factory = session_factory

    def list_recipients(self) -> list[Recipient]:
        try:
            with self._session_factory() as db:
                users = (
                    db.query(PortalUser)
                    .filter(PortalUser.email.isnot(None), PortalUser.email != "")
                    .order_by(PortalUser.user_id.asc())
                    .all()
                )
                return [Recipient(id=u.user_id, email=u.email, display_name=u.display_name) for u in users]
        except SQLAlchemyError as exc:
            logger.error("Recipient directory query failed: %s", exc)
            raise DirectoryUnavailable(str(exc)) from exc

    def get_recipient(self, user_id: int | str) -> Recipient | None:
        uid = _to_int(user_id)
        if uid is None:
            return None
        try:
            with self._session_factory() as db:
                user = db.query(PortalUser).filter(PortalUser.user_id == uid).first()
                if not user or not user.email:
                    return None
                return Recipient(id=user.user_id, email=user.email, display_name=user.display_name)
        except SQLAlchemyError as exc:
            raise DirectoryUnavailable(str(exc)) from exc


class SqlDeadlineSource:
    """Published workstreams, chapters and assessments with a deadline.

    Chapters carry their workstream title as ``parent_title``; assessments
    carry the workstream title, falling back to the chapter title.
    """

    def __init__(self, session_factory: sessionmaker) -> None:
        self._session_factory = session_factory

    def list_in_window(self, entity_type: TargetType, window: DeadlineWindow) -> list[EntityDeadlineRecord]:
        model = _MODELS[entity_type]
        upper = model.deadline <= window.end if window.end_inclusive else model.deadline < window.end
        stmt = (
            select(model)
            .where(
                model.deadline.isnot(None),
                model.deadline >= window.start,
                upper,
                model.is_published.is_(True),
            )
            .order_by(model.deadline.asc())
        )
        try:
            with self._session_factory() as db:
                return [_to_record(entity_type, row) for row in db.scalars(stmt).all()]
        except SQLAlchemyError as exc:
            logger.error("Deadline query failed for %s (%s window): %s", entity_type, window.name, exc)
            raise QueryFailure(f"{entity_type} {window.name} query failed: {exc}") from exc

    def get(self, entity_type: TargetType, entity_id: int | str) -> EntityDeadlineRecord | None:
        eid = _to_int(entity_id)
        if eid is None:
            return None
        try:
            with self._session_factory() as db:
                row = db.get(_MODELS[entity_type], eid)
                return _to_record(entity_type, row) if row else None
        except SQLAlchemyError as exc:
            raise QueryFailure(f"{entity_type} {entity_id} lookup failed: {exc}") from exc


_MODELS = {
    TargetType.WORKSTREAM: Workstream,
    TargetType.CHAPTER: Chapter,
    TargetType.ASSESSMENT: Assessment,
}


def _to_record(entity_type: TargetType, row) -> EntityDeadlineRecord:
    # Must run while the session is open: parent titles are lazy-loaded.
    if entity_type is TargetType.WORKSTREAM:
        return EntityDeadlineRecord(
            id=row.workstream_id,
            title=row.title,
            deadline=as_utc(row.deadline),
            entity_type=entity_type,
            extra={"workstream_id": row.workstream_id, "description": row.description or ""},
        )
    if entity_type is TargetType.CHAPTER:
        parent = row.workstream.title if row.workstream else None
        return EntityDeadlineRecord(
            id=row.chapter_id,
            title=row.title,
            deadline=as_utc(row.deadline),
            entity_type=entity_type,
            parent_title=parent,
            extra={
                "chapter_id": row.chapter_id,
                "workstream_id": row.workstream_id,
                "chapter_title": row.title,
                "workstream_title": parent,
                "content": row.content or "",
            },
        )
    workstream_title = row.workstream.title if row.workstream else None
    chapter_title = row.chapter.title if row.chapter else None
    return EntityDeadlineRecord(
        id=row.assessment_id,
        title=row.title,
        deadline=as_utc(row.deadline),
        entity_type=entity_type,
        parent_title=workstream_title or chapter_title,
        extra={
            "assessment_id": row.assessment_id,
            "workstream_title": workstream_title,
            "chapter_title": chapter_title,
            "total_points": row.total_points,
            "passing_score": row.passing_score,
        },
    )
