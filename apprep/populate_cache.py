"""Populate the question cache.

Primes one question for every (course, unit) in the catalog, a few at a
time with a pause between batches to stay under provider rate limits.
Entries are written through to the database, so a running API picks them
up on its next start. Requires AWS_S3_BUCKET.

Usage:
    python -m apprep.populate_cache [--subject "AP Biology"]
"""

import argparse
import asyncio
import logging
import os
import time

from dotenv import load_dotenv

load_dotenv()

from apprep.database import init_database
from apprep.services.blob_store import AWS_S3_BUCKET, create_blob_store
from apprep.services.cache_repository import CacheEntryRepository
from apprep.services.catalog import get_units, list_courses
from apprep.services.question_cache import QuestionCache
from apprep.services.question_generator import QuestionGenerator

logger = logging.getLogger(__name__)

POPULATE_MAX_CONCURRENT = int(os.environ.get("POPULATE_MAX_CONCURRENT", "3"))
POPULATE_BATCH_DELAY_SECONDS = float(os.environ.get("POPULATE_BATCH_DELAY_SECONDS", "2"))


def build_tasks(subjects: list[str]) -> list[tuple[str, str]]:
    """Every (subject, unit) pair to prime, in catalog order."""
    tasks = []
    for subject in subjects:
        units = get_units(subject)
        if not units:
            logger.warning(f"Skipping {subject} - no units found")
            continue
        tasks.extend((subject, unit) for unit in units)
    return tasks


async def populate(
    cache: QuestionCache,
    tasks: list[tuple[str, str]],
    max_concurrent: int = POPULATE_MAX_CONCURRENT,
    batch_delay: float = POPULATE_BATCH_DELAY_SECONDS,
) -> dict:
    """Prime the cache for each task in batches.

    Args:
        cache: Question cache to prime
        tasks: (subject, topic) pairs
        max_concurrent: Tasks per batch
        batch_delay: Seconds to wait between batches

    Returns:
        Dict with "succeeded" (list of pairs) and "failed" (list of
        (subject, topic, error) tuples)
    """
    succeeded = []
    failed = []

    async def prime_one(index: int, subject: str, topic: str):
        logger.info(f"[{index}/{len(tasks)}] Generating: {subject} - {topic}")
        try:
            await cache.prime(subject, topic)
        except Exception as e:
            logger.error(f"Failed: {subject} - {topic}: {e}")
            failed.append((subject, topic, str(e)))
            return
        logger.info(f"Success: {subject} - {topic}")
        succeeded.append((subject, topic))

    for start in range(0, len(tasks), max_concurrent):
        batch = tasks[start:start + max_concurrent]
        await asyncio.gather(*(
            prime_one(start + offset + 1, subject, topic)
            for offset, (subject, topic) in enumerate(batch)
        ))

        # Delay between batches (except after the last one)
        if start + max_concurrent < len(tasks):
            await asyncio.sleep(batch_delay)

    return {"succeeded": succeeded, "failed": failed}


async def run(subjects: list[str]) -> int:
    if not AWS_S3_BUCKET:
        # Cached rows must point at questions that outlive this process
        logger.error("AWS_S3_BUCKET is not set - refusing to populate an in-memory store")
        return 2

    init_database()
    cache = QuestionCache(
        generator=QuestionGenerator(),
        blob_store=create_blob_store(),
        repository=CacheEntryRepository(),
    )

    tasks = build_tasks(subjects)
    logger.info(
        f"Found {len(tasks)} course/unit combinations to cache "
        f"(max concurrent {POPULATE_MAX_CONCURRENT}, delay {POPULATE_BATCH_DELAY_SECONDS}s)"
    )

    started = time.time()
    results = await populate(cache, tasks)
    await cache.drain()
    duration = time.time() - started

    logger.info(
        f"Summary: {len(tasks)} tasks, {len(results['succeeded'])} succeeded, "
        f"{len(results['failed'])} failed in {duration:.1f}s"
    )
    for subject, topic, error in results["failed"]:
        logger.info(f"  failed: {subject} - {topic}: {error}")

    stats = cache.stats()
    logger.info(f"Total cached questions: {stats['total']}")
    for row in stats["per_subject"]:
        logger.info(f"  {row['subject']}: {row['count']} questions")

    return 1 if results["failed"] and not results["succeeded"] else 0


def main():
    parser = argparse.ArgumentParser(description="Prime the apprep question cache")
    parser.add_argument(
        "--subject",
        action="append",
        help="Only prime this course (repeatable). Defaults to every course.",
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    subjects = args.subject or list_courses()
    raise SystemExit(asyncio.run(run(subjects)))


if __name__ == "__main__":
    main()
