"""SQLAlchemy models for apprep.

Accounts, the append-only attempt log, per-unit progress counters,
bookmarks, and the durable copy of the question cache table.

Question payloads themselves live in the blob store; rows here only carry
question IDs.
"""

from datetime import datetime, timezone
import uuid
from sqlalchemy import (
    Column,
    String,
    Integer,
    DateTime,
    JSON,
    ForeignKey,
    Boolean,
    Index,
    PrimaryKeyConstraint,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


def generate_uuid() -> str:
    """Generate a UUID string for primary keys."""
    return str(uuid.uuid4())


def utcnow() -> datetime:
    """Naive UTC timestamp, matching what the DateTime columns store."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class User(Base):
    """User account with password authentication."""

    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    name = Column(String(200), nullable=False)
    email = Column(String(255), unique=True, nullable=False, index=True)
    password_hash = Column(String(255), nullable=False)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=utcnow)

    # Relationships
    attempts = relationship("QuestionAttempt", back_populates="user", cascade="all, delete-orphan")
    progress = relationship("ProgressEntry", back_populates="user", cascade="all, delete-orphan")
    bookmarks = relationship("Bookmark", back_populates="user", cascade="all, delete-orphan")


# ============== Attempts and Progress ==============


class QuestionAttempt(Base):
    """One answered question. Rows are only ever appended.

    question_id is a weak reference into the blob store; the payload is
    resolved lazily when history is displayed.
    """

    __tablename__ = "question_attempts"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    question_id = Column(String(64), nullable=False)
    subject = Column(String(200), nullable=False)
    topic = Column(String(300), nullable=False)
    chosen_option = Column(String(1), nullable=False)
    was_correct = Column(Boolean, nullable=False)
    elapsed_ms = Column(Integer, default=0)
    attempted_at = Column(DateTime, default=utcnow, index=True)

    user = relationship("User", back_populates="attempts")

    __table_args__ = (Index("ix_attempt_user_time", "user_id", "attempted_at"),)


class ProgressEntry(Base):
    """Running counters and mastery for one (user, subject, topic)."""

    __tablename__ = "progress_entries"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    subject = Column(String(200), nullable=False)
    topic = Column(String(300), nullable=False)
    total_attempts = Column(Integer, default=0)
    correct_attempts = Column(Integer, default=0)
    mastery = Column(Integer, default=0)  # 0-100
    last_attempt_at = Column(DateTime, nullable=True)

    user = relationship("User", back_populates="progress")

    __table_args__ = (
        UniqueConstraint("user_id", "subject", "topic", name="uq_progress_user_subject_topic"),
    )


class Bookmark(Base):
    """A question a user saved for later."""

    __tablename__ = "bookmarks"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    question_id = Column(String(64), nullable=False)
    created_at = Column(DateTime, default=utcnow)

    user = relationship("User", back_populates="bookmarks")

    __table_args__ = (
        UniqueConstraint("user_id", "question_id", name="uq_bookmark_user_question"),
    )


# ============== Question Cache ==============


class CachedQuestion(Base):
    """Durable copy of one question cache entry.

    Written through by the in-memory cache so a restart, or the separate
    population job, can warm it. payload is the full question JSON.
    """

    __tablename__ = "cached_questions"

    subject = Column(String(200), nullable=False)
    topic = Column(String(300), nullable=False)
    question_id = Column(String(64), nullable=False)
    payload = Column(JSON, nullable=False)
    written_at = Column(DateTime, default=utcnow)

    __table_args__ = (PrimaryKeyConstraint("subject", "topic"),)
