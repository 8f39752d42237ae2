"""Question cache for apprep.

Serves the last generated question for a (subject, topic) immediately and
regenerates a replacement in the background (stale-while-revalidate).

Rules every flow follows:
- A question is written to the blob store before any cache entry points
  at it, so a reader never gets an ID whose payload does not exist yet.
- Entries are replaced whole with a single dict assignment.
- At most one background refresh runs per key.
- Invalidating a key wins over generations already in flight for it.

The cache is single-process. Everything between awaits is plain dict and
set manipulation, so no locks are needed.
"""

import asyncio
import logging
import os
from collections import Counter
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import ValidationError as SchemaError

from apprep.database.models import utcnow
from apprep.errors import AppError, GenerationError, NotFoundError, StorageError, ValidationError
from apprep.services.questions import Question

logger = logging.getLogger(__name__)

GENERATION_TIMEOUT_SECONDS = float(os.environ.get("GENERATION_TIMEOUT_SECONDS", "60"))


class CacheState(str, Enum):
    ABSENT = "absent"
    POPULATED = "populated"
    REFRESHING = "refreshing"


@dataclass(frozen=True)
class CacheEntry:
    """The cached question for one (subject, topic)."""

    subject: str
    topic: str
    question: Question
    written_at: datetime

    @property
    def question_id(self) -> Optional[str]:
        return self.question.id


@dataclass(frozen=True)
class FetchResult:
    question: Question
    served_from_cache: bool

    @property
    def question_id(self) -> Optional[str]:
        return self.question.id


class QuestionCache:
    """Read-through question cache with background refresh.

    Args:
        generator: Object with ``async generate(subject, topic)`` returning
            a GeneratedQuestion
        blob_store: Durable store for question payloads
        repository: Optional CacheEntryRepository for write-through
        generation_timeout: Seconds to wait for one generation
        metrics: Optional MetricsCollector for cache counters
    """

    def __init__(
        self,
        generator,
        blob_store,
        repository=None,
        generation_timeout: float = GENERATION_TIMEOUT_SECONDS,
        metrics=None,
    ):
        self.generator = generator
        self.blob_store = blob_store
        self.repository = repository
        self.generation_timeout = generation_timeout
        self.metrics = metrics

        self._entries: dict[tuple[str, str], CacheEntry] = {}
        self._refreshing: set[tuple[str, str]] = set()
        self._pending_fills: dict[tuple[str, str], asyncio.Task] = {}
        self._epochs: dict[tuple[str, str], int] = {}
        self._tasks: set[asyncio.Task] = set()
        self._persist_tail: Optional[asyncio.Task] = None

    # ============== Public API ==============

    async def fetch(self, subject: str, topic: str, force_fresh: bool = False) -> FetchResult:
        """Get a question for (subject, topic).

        Args:
            subject: Course name
            topic: One concrete unit
            force_fresh: Skip the cache and generate now

        Returns:
            FetchResult with the question and whether it came from the cache

        Raises:
            ValidationError: If subject or topic is empty
            GenerationError: If a synchronous generation fails
            StorageError: If a cold fill cannot store its question
        """
        key = self._key(subject, topic)

        if force_fresh:
            self._count("force_fresh")
            task = self._spawn(self._generate_fresh(key, self._epoch(key)))
            return await asyncio.shield(task)

        entry = self._entries.get(key)
        if entry is not None:
            logger.info(f"Cache hit for {key[0]} / {key[1]}")
            self._count("hit")
            self._schedule_refresh(key)
            return FetchResult(question=entry.question, served_from_cache=True)

        logger.info(f"Cache miss for {key[0]} / {key[1]}")
        self._count("miss")
        question = await self._fill(key)
        return FetchResult(question=question, served_from_cache=False)

    async def prime(self, subject: str, topic: str) -> Question:
        """Generate, store, and cache a question now, replacing any entry."""
        key = self._key(subject, topic)
        task = self._spawn(self._populate(key, self._epoch(key)))
        return await asyncio.shield(task)

    def invalidate(self, subject: str, topic: str) -> bool:
        """Remove the entry for a key. Returns True if one was present."""
        key = self._key(subject, topic)
        self._bump_epoch(key)
        self._pending_fills.pop(key, None)
        removed = self._entries.pop(key, None) is not None
        if self.repository is not None:
            self._enqueue_persist(self.repository.delete, key[0], key[1])
        if removed:
            logger.info(f"Invalidated cache entry for {key[0]} / {key[1]}")
        return removed

    def clear(self) -> int:
        """Remove every entry. Returns how many were removed."""
        for key in set(self._entries) | set(self._pending_fills) | self._refreshing:
            self._bump_epoch(key)
        count = len(self._entries)
        self._entries.clear()
        self._pending_fills.clear()
        if self.repository is not None:
            self._enqueue_persist(self.repository.clear)
        logger.info(f"Cleared {count} cache entries")
        return count

    def stats(self) -> dict:
        """Entry counts, total and per subject (largest first)."""
        counts = Counter(subject for subject, _ in self._entries)
        per_subject = [
            {"subject": subject, "count": count}
            for subject, count in sorted(counts.items(), key=lambda item: (-item[1], item[0]))
        ]
        return {"total": len(self._entries), "per_subject": per_subject}

    def get_entry(self, subject: str, topic: str) -> Optional[CacheEntry]:
        return self._entries.get(self._key(subject, topic))

    def state(self, subject: str, topic: str) -> CacheState:
        key = self._key(subject, topic)
        if key not in self._entries:
            return CacheState.ABSENT
        if key in self._refreshing:
            return CacheState.REFRESHING
        return CacheState.POPULATED

    async def load(self) -> int:
        """Warm the cache from the durable table. Returns entries loaded.

        Rows whose question is missing from the blob store are deleted
        instead of loaded.
        """
        if self.repository is None:
            return 0

        entries = await asyncio.to_thread(self.repository.load_all)
        present = await asyncio.gather(*(self._blob_present(e.question_id) for e in entries))

        loaded = 0
        for entry, found in zip(entries, present):
            key = (entry.subject, entry.topic)
            if key in self._entries:
                continue
            if not found:
                # The payload is gone (e.g. it lived in a previous process's memory)
                logger.warning(
                    f"Dropping cached question {entry.question_id} for "
                    f"{key[0]} / {key[1]}: not in the blob store"
                )
                self._enqueue_persist(self.repository.delete, key[0], key[1])
                continue
            self._entries[key] = entry
            loaded += 1
        logger.info(f"Loaded {loaded} cached questions from the database")
        return loaded

    async def drain(self):
        """Wait for all background work, including write-through."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ============== Flows ==============

    async def _fill(self, key: tuple[str, str]) -> Question:
        # Concurrent cold misses on one key share a single fill
        task = self._pending_fills.get(key)
        if task is None:
            task = self._spawn(self._populate(key, self._epoch(key)))
            self._pending_fills[key] = task
            task.add_done_callback(lambda t, key=key: self._fill_done(key, t))
        return await asyncio.shield(task)

    def _fill_done(self, key: tuple[str, str], task: asyncio.Task):
        if self._pending_fills.get(key) is task:
            del self._pending_fills[key]

    async def _populate(self, key: tuple[str, str], epoch: int) -> Question:
        subject, topic = key
        question = await self._generate(subject, topic)
        await self._store(question)
        self._install(key, question, epoch)
        return question

    async def _generate_fresh(self, key: tuple[str, str], epoch: int) -> FetchResult:
        subject, topic = key
        question = await self._generate(subject, topic)
        try:
            await self._store(question)
        except StorageError as e:
            logger.warning(f"Returning unsaved question for {subject} / {topic}: {e}")
            return FetchResult(question=question.model_copy(update={"id": None}), served_from_cache=False)

        self._install(key, question, epoch)
        return FetchResult(question=question, served_from_cache=False)

    def _schedule_refresh(self, key: tuple[str, str]) -> bool:
        if key in self._refreshing:
            return False
        self._refreshing.add(key)
        self._count("refresh_started")
        self._spawn(self._refresh(key, self._epoch(key)))
        return True

    async def _refresh(self, key: tuple[str, str], epoch: int):
        subject, topic = key
        try:
            question = await self._generate(subject, topic)
            await self._store(question)
            if self._install(key, question, epoch):
                logger.info(f"Refreshed cache entry for {subject} / {topic}")
            self._count("refresh_succeeded")
        except Exception as e:
            logger.warning(f"Background refresh failed for {subject} / {topic}: {e}")
            self._count("refresh_failed")
        finally:
            self._refreshing.discard(key)

    # ============== Steps ==============

    async def _generate(self, subject: str, topic: str) -> Question:
        try:
            generated = await asyncio.wait_for(
                self.generator.generate(subject, topic),
                timeout=self.generation_timeout,
            )
            return Question.from_generated(generated, subject, topic)
        except asyncio.TimeoutError as e:
            self._count("generation_failed")
            raise GenerationError(
                f"Question generation timed out after {self.generation_timeout}s"
            ) from e
        except SchemaError as e:
            self._count("generation_failed")
            raise GenerationError(f"Generated question is incomplete: {e}") from e
        except GenerationError:
            self._count("generation_failed")
            raise
        except Exception as e:
            self._count("generation_failed")
            raise GenerationError(f"Question generation failed: {e}") from e

    async def _store(self, question: Question):
        try:
            await self.blob_store.put(question.id, question)
        except AppError:
            self._count("storage_failed")
            raise
        except Exception as e:
            self._count("storage_failed")
            raise StorageError(f"Failed to store question {question.id}: {e}") from e

    def _install(self, key: tuple[str, str], question: Question, epoch: int) -> bool:
        """Point the cache at a stored question unless the key was invalidated."""
        if self._epoch(key) != epoch:
            logger.info(f"Discarding result for invalidated key {key[0]} / {key[1]}")
            return False

        entry = CacheEntry(subject=key[0], topic=key[1], question=question, written_at=utcnow())
        self._entries[key] = entry
        if self.repository is not None:
            self._enqueue_persist(self.repository.save, entry)
        return True

    # ============== Helpers ==============

    def _key(self, subject: str, topic: str) -> tuple[str, str]:
        subject = (subject or "").strip()
        topic = (topic or "").strip()
        if not subject:
            raise ValidationError("subject is required")
        if not topic:
            raise ValidationError("topic is required")
        return subject, topic

    async def _blob_present(self, question_id: str) -> bool:
        try:
            await self.blob_store.get(question_id)
        except NotFoundError:
            return False
        except AppError as e:
            # Can't tell while storage is unreachable; keep the entry
            logger.warning(f"Could not check stored question {question_id}: {e}")
        return True

    def _epoch(self, key: tuple[str, str]) -> int:
        return self._epochs.get(key, 0)

    def _bump_epoch(self, key: tuple[str, str]):
        self._epochs[key] = self._epoch(key) + 1

    def _count(self, event: str):
        if self.metrics is not None:
            self.metrics.record_cache_event(event)

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task):
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.debug(f"Cache task finished with error: {error!r}")

    def _enqueue_persist(self, fn, *args):
        """Run a repository call off the loop, after any earlier one."""
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            self._persist(fn, *args)
            return

        previous = self._persist_tail

        async def run():
            if previous is not None:
                await asyncio.wait({previous})
            await asyncio.to_thread(self._persist, fn, *args)

        self._persist_tail = self._spawn(run())

    @staticmethod
    def _persist(fn, *args):
        try:
            fn(*args)
        except Exception as e:
            logger.warning(f"Cache write-through failed ({fn.__name__}): {e}")
