"""Tests for the cache population job."""

import asyncio

from apprep.populate_cache import build_tasks, populate
from apprep.services.catalog import get_units


def test_build_tasks_covers_every_unit():
    tasks = build_tasks(["AP Psychology", "AP Underwater Basket Weaving", "AP Chemistry"])

    assert tasks[:3] == [("AP Psychology", unit) for unit in get_units("AP Psychology")]
    assert len(tasks) == 3 + 9, "Unknown courses are skipped"


def test_populate_primes_in_batches_and_reports_failures(cache, generator):
    tasks = [
        ("AP Biology", "Unit 1"),
        ("AP Biology", "Unit 99"),
        ("AP Chemistry", "Unit 2"),
    ]

    async def scenario():
        results = await populate(cache, tasks, max_concurrent=2, batch_delay=0)
        await cache.drain()
        return results

    results = asyncio.run(scenario())

    assert results["succeeded"] == [("AP Biology", "Unit 1"), ("AP Chemistry", "Unit 2")]
    assert [(s, t) for s, t, _ in results["failed"]] == [("AP Biology", "Unit 99")]
    assert len(generator.calls) == 3
    assert cache.stats()["total"] == 2


def test_run_refuses_without_a_bucket(monkeypatch):
    """Without S3 the primed questions would die with the process."""
    import apprep.populate_cache as populate_cache

    monkeypatch.setattr(populate_cache, "AWS_S3_BUCKET", None)

    assert asyncio.run(populate_cache.run(["AP Biology"])) == 2
