"""Tests for the attempt and progress ledger."""

from datetime import datetime, timedelta

import pytest

from apprep.database.models import QuestionAttempt, User
from apprep.errors import NotFoundError, ValidationError
from apprep.services import progress

BIOLOGY = "AP Biology"
UNIT_1 = "Unit 1: Chemistry of Life"


def record(db, user, was_correct, **overrides):
    fields = {
        "question_id": "q-1",
        "subject": BIOLOGY,
        "topic": UNIT_1,
        "chosen_option": "A",
        "was_correct": was_correct,
        "elapsed_ms": 1500,
    }
    fields.update(overrides)
    return progress.record_attempt(db, user.id, **fields)


def test_percentage_rounds_half_up():
    assert progress.percentage(1, 8) == 13
    assert progress.percentage(5, 8) == 63
    assert progress.percentage(2, 3) == 67
    assert progress.percentage(1, 3) == 33
    assert progress.percentage(0, 0) == 0


def test_mastery_sequence(db, user):
    """Correct, wrong, correct, correct gives 100, 50, 67, 75."""
    masteries = [record(db, user, was_correct)["mastery"] for was_correct in [True, False, True, True]]

    assert masteries == [100, 50, 67, 75]

    entries = progress.get_progress(db, user.id)
    assert len(entries) == 1
    assert entries[0]["total_attempts"] == 4
    assert entries[0]["correct_attempts"] == 3
    assert entries[0]["mastery"] == 75


def test_progress_is_tracked_per_topic(db, user):
    record(db, user, True)
    result = record(db, user, False, topic="Unit 2: Cell Structure and Function")

    assert result == {"mastery": 0, "total_attempts": 1}
    assert [e["topic"] for e in progress.get_progress(db, user.id)] == [
        UNIT_1,
        "Unit 2: Cell Structure and Function",
    ]


def test_attempts_are_appended(db, user):
    record(db, user, True, question_id="q-1")
    record(db, user, True, question_id="q-1")

    assert db.query(QuestionAttempt).filter_by(user_id=user.id).count() == 2


@pytest.mark.parametrize(
    "overrides",
    [
        {"question_id": None},
        {"question_id": "  "},
        {"subject": ""},
        {"topic": None},
        {"chosen_option": None},
        {"chosen_option": "E"},
        {"was_correct": "yes"},
        {"was_correct": 1},
        {"was_correct": None},
        {"elapsed_ms": -5},
        {"elapsed_ms": "fast"},
    ],
)
def test_invalid_attempts_are_rejected(db, user, overrides):
    fields = {"was_correct": True}
    fields.update(overrides)

    with pytest.raises(ValidationError):
        record(db, user, **fields)

    assert progress.get_progress(db, user.id) == [], "Nothing should be written"


def test_unknown_user_is_not_found(db):
    ghost = User(id="ghost")

    with pytest.raises(NotFoundError):
        record(db, ghost, True)


def test_history_is_newest_first_and_paginated(db, user):
    start = datetime(2026, 3, 1, 12, 0, 0)
    for i in range(5):
        db.add(QuestionAttempt(
            user_id=user.id,
            question_id=f"q-{i}",
            subject=BIOLOGY,
            topic=UNIT_1,
            chosen_option="A",
            was_correct=True,
            elapsed_ms=1000,
            attempted_at=start + timedelta(minutes=i),
        ))
    db.commit()

    page = progress.get_history(db, user.id, limit=2, offset=1)

    assert page["total"] == 5
    assert [a["question_id"] for a in page["attempts"]] == ["q-3", "q-2"]


def test_toggle_bookmark(db, user):
    assert progress.toggle_bookmark(db, user.id, "q-1") is True
    assert progress.toggle_bookmark(db, user.id, "q-2") is True
    assert sorted(progress.get_bookmarks(db, user.id)) == ["q-1", "q-2"]

    assert progress.toggle_bookmark(db, user.id, "q-1") is False
    assert progress.get_bookmarks(db, user.id) == ["q-2"]


def test_current_streak():
    today = datetime(2026, 3, 10).date()
    day = timedelta(days=1)

    assert progress.current_streak({today, today - day, today - 2 * day}, today) == 3
    assert progress.current_streak({today - day, today - 2 * day}, today) == 2
    assert progress.current_streak({today - 2 * day}, today) == 0
    assert progress.current_streak(set(), today) == 0


def test_user_stats(db, user):
    now = datetime(2026, 3, 10, 18, 0, 0)
    attempts = [
        # (days ago, subject, correct, elapsed_ms)
        (0, BIOLOGY, True, 60000),
        (1, BIOLOGY, False, 120000),
        (2, "AP Chemistry", True, 90000),
        (10, BIOLOGY, True, 30000),
        (40, "AP Chemistry", False, 60000),
    ]
    for days_ago, subject, correct, elapsed in attempts:
        db.add(QuestionAttempt(
            user_id=user.id,
            question_id=f"q-{days_ago}",
            subject=subject,
            topic="Unit 1",
            chosen_option="C",
            was_correct=correct,
            elapsed_ms=elapsed,
            attempted_at=now - timedelta(days=days_ago),
        ))
    db.commit()

    stats = progress.get_user_stats(db, user.id, now=now)

    overview = stats["overview"]
    assert overview["total_questions"] == 5
    assert overview["correct_answers"] == 3
    assert overview["accuracy"] == 60
    assert overview["current_streak"] == 3
    assert overview["total_time_hours"] == 0.1

    assert stats["recent_performance"] == {"questions_last_7_days": 3, "accuracy_last_7_days": 67}

    assert stats["subject_breakdown"] == [
        {"subject": BIOLOGY, "total": 3, "correct": 2, "accuracy": 67, "avg_time_seconds": 70},
        {"subject": "AP Chemistry", "total": 2, "correct": 1, "accuracy": 50, "avg_time_seconds": 75},
    ]

    assert set(stats["daily_activity"]) == {"2026-03-10", "2026-03-09", "2026-03-08", "2026-02-28"}
    assert stats["daily_activity"]["2026-03-09"] == {"total": 1, "correct": 0}


def test_stats_for_unknown_user(db):
    with pytest.raises(NotFoundError):
        progress.get_user_stats(db, "ghost")
