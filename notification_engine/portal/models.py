"""Read-only mirror of the portal tables the engine reads from.

The CRUD backend owns and migrates these tables; only the deadline sources and
the recipient directory query them.
"""

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship

from ..database.base import PortalBase


class PortalUser(PortalBase):
    __tablename__ = "users"

    user_id = Column(Integer, primary_key=True)
    email = Column(String(255), nullable=True)
    first_name = Column(String(100), default="")
    last_name = Column(String(100), default="")

    @property
    def display_name(self) -> str:
        return " ".join(p for p in (self.first_name, self.last_name) if p).strip() or self.email or ""


class Workstream(PortalBase):
    __tablename__ = "workstreams"

    workstream_id = Column(Integer, primary_key=True)
    title = Column(String(255), nullable=False)
    description = Column(Text, default="")
    deadline = Column(DateTime(timezone=True), nullable=True)
    is_published = Column(Boolean, default=False)

    chapters = relationship("Chapter", back_populates="workstream")


class Chapter(PortalBase):
    __tablename__ = "module_chapters"

    chapter_id = Column(Integer, primary_key=True)
    workstream_id = Column(Integer, ForeignKey("workstreams.workstream_id"), nullable=False)
    title = Column(String(255), nullable=False)
    content = Column(Text, default="")
    deadline = Column(DateTime(timezone=True), nullable=True)
    is_published = Column(Boolean, default=False)

    workstream = relationship("Workstream", back_populates="chapters")


class Assessment(PortalBase):
    __tablename__ = "assessments"

    assessment_id = Column(Integer, primary_key=True)
    workstream_id = Column(Integer, ForeignKey("workstreams.workstream_id"), nullable=True)
    chapter_id = Column(Integer, ForeignKey("module_chapters.chapter_id"), nullable=True)
    title = Column(String(255), nullable=False)
    deadline = Column(DateTime(timezone=True), nullable=True)
    total_points = Column(Integer, nullable=True)
    passing_score = Column(Integer, nullable=True)
    is_published = Column(Boolean, default=False)

    workstream = relationship("Workstream")
    chapter = relationship("Chapter")
