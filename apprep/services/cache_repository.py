"""Durable copy of the question cache table.

The in-memory cache writes each entry through to ``cached_questions`` so a
restart, or the separate population job, can warm it with ``load_all``.
All methods are synchronous; the cache calls them from a worker thread.
"""

import logging

from pydantic import ValidationError as SchemaError
from sqlalchemy.orm import sessionmaker

from apprep.database import CachedQuestion, SessionLocal
from apprep.services.question_cache import CacheEntry
from apprep.services.questions import Question

logger = logging.getLogger(__name__)


class CacheEntryRepository:
    """SQLAlchemy-backed storage for cache entries."""

    def __init__(self, session_factory: sessionmaker = SessionLocal):
        self.session_factory = session_factory

    def load_all(self) -> list[CacheEntry]:
        """Every stored entry. Rows with unreadable payloads are skipped."""
        db = self.session_factory()
        try:
            rows = db.query(CachedQuestion).all()
        finally:
            db.close()

        entries = []
        for row in rows:
            try:
                question = Question.model_validate(row.payload)
            except SchemaError as e:
                logger.warning(f"Skipping cached question for {row.subject} / {row.topic}: {e}")
                continue
            entries.append(CacheEntry(
                subject=row.subject,
                topic=row.topic,
                question=question,
                written_at=row.written_at,
            ))
        return entries

    def save(self, entry: CacheEntry):
        """Insert or replace the row for the entry's key."""
        db = self.session_factory()
        try:
            db.merge(CachedQuestion(
                subject=entry.subject,
                topic=entry.topic,
                question_id=entry.question_id,
                payload=entry.question.model_dump(mode="json"),
                written_at=entry.written_at,
            ))
            db.commit()
        finally:
            db.close()

    def delete(self, subject: str, topic: str) -> bool:
        db = self.session_factory()
        try:
            deleted = db.query(CachedQuestion).filter_by(subject=subject, topic=topic).delete()
            db.commit()
            return deleted > 0
        finally:
            db.close()

    def clear(self) -> int:
        db = self.session_factory()
        try:
            deleted = db.query(CachedQuestion).delete()
            db.commit()
            return deleted
        finally:
            db.close()
