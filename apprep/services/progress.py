"""Attempt and progress tracking service.

Records answered questions, keeps per-unit progress counters and mastery,
manages bookmarks, and computes the statistics shown on a user's dashboard.

Attempts only carry question IDs. Question payloads are joined in from the
blob store by the API layer when they need to be displayed.
"""

from collections import defaultdict
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from apprep.database.models import (
    Bookmark,
    ProgressEntry,
    QuestionAttempt,
    User,
    utcnow,
)
from apprep.errors import NotFoundError, ValidationError
from apprep.services.questions import OPTION_LABELS


def percentage(part: int, total: int) -> int:
    """Integer percentage rounded half up. 0 when total is 0."""
    if total <= 0:
        return 0
    return (200 * part + total) // (2 * total)


def compute_mastery(correct_attempts: int, total_attempts: int) -> int:
    """Mastery for a unit: percentage of correct attempts, 0-100."""
    return percentage(correct_attempts, total_attempts)


def _require_text(value, name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{name} is required")
    return value.strip()


def record_attempt(
    db: Session,
    user_id: str,
    question_id: Optional[str],
    subject: Optional[str],
    topic: Optional[str],
    chosen_option: Optional[str],
    was_correct,
    elapsed_ms: Optional[int] = 0,
) -> dict:
    """Record one answered question and update the unit's progress.

    Args:
        db: Database session
        user_id: User who answered
        question_id: ID returned by a previous question fetch
        subject: Course name
        topic: Unit the question was generated for
        chosen_option: Letter the user picked (A-D)
        was_correct: Whether the pick was right; must be a real boolean
        elapsed_ms: Time taken to answer

    Returns:
        Dict with the unit's new mastery and total_attempts

    Raises:
        ValidationError: If any field is missing or malformed
        NotFoundError: If the user does not exist
    """
    question_id = _require_text(question_id, "question_id")
    subject = _require_text(subject, "subject")
    topic = _require_text(topic, "topic")
    chosen_option = _require_text(chosen_option, "chosen_option").upper()

    if chosen_option not in OPTION_LABELS:
        raise ValidationError("chosen_option must be one of A, B, C, D")
    if not isinstance(was_correct, bool):
        raise ValidationError("was_correct must be a boolean")
    if elapsed_ms is None:
        elapsed_ms = 0
    if isinstance(elapsed_ms, bool) or not isinstance(elapsed_ms, int) or elapsed_ms < 0:
        raise ValidationError("elapsed_ms must be a non-negative integer")

    user = db.query(User).filter_by(id=user_id).first()
    if not user:
        raise NotFoundError("User not found")

    now = utcnow()
    db.add(QuestionAttempt(
        user_id=user_id,
        question_id=question_id,
        subject=subject,
        topic=topic,
        chosen_option=chosen_option,
        was_correct=was_correct,
        elapsed_ms=elapsed_ms,
        attempted_at=now,
    ))

    entry = db.query(ProgressEntry).filter_by(
        user_id=user_id, subject=subject, topic=topic
    ).first()
    if not entry:
        entry = ProgressEntry(
            user_id=user_id,
            subject=subject,
            topic=topic,
            total_attempts=0,
            correct_attempts=0,
            mastery=0,
        )
        db.add(entry)

    entry.total_attempts += 1
    if was_correct:
        entry.correct_attempts += 1
    entry.mastery = compute_mastery(entry.correct_attempts, entry.total_attempts)
    entry.last_attempt_at = now

    db.commit()

    return {"mastery": entry.mastery, "total_attempts": entry.total_attempts}


def get_progress(db: Session, user_id: str) -> list[dict]:
    """All progress entries for a user, by subject then topic."""
    entries = (
        db.query(ProgressEntry)
        .filter_by(user_id=user_id)
        .order_by(ProgressEntry.subject, ProgressEntry.topic)
        .all()
    )
    return [
        {
            "subject": e.subject,
            "topic": e.topic,
            "total_attempts": e.total_attempts,
            "correct_attempts": e.correct_attempts,
            "mastery": e.mastery,
            "last_attempt_at": e.last_attempt_at.isoformat() if e.last_attempt_at else None,
        }
        for e in entries
    ]


def attempt_to_dict(attempt: QuestionAttempt) -> dict:
    return {
        "question_id": attempt.question_id,
        "subject": attempt.subject,
        "topic": attempt.topic,
        "chosen_option": attempt.chosen_option,
        "was_correct": attempt.was_correct,
        "elapsed_ms": attempt.elapsed_ms,
        "attempted_at": attempt.attempted_at.isoformat(),
    }


def get_history(db: Session, user_id: str, limit: int = 20, offset: int = 0) -> dict:
    """Newest-first page of a user's attempts.

    Returns:
        Dict with "attempts" (list of attempt dicts) and "total"
    """
    query = db.query(QuestionAttempt).filter_by(user_id=user_id)
    total = query.count()
    attempts = (
        query.order_by(QuestionAttempt.attempted_at.desc())
        .offset(offset)
        .limit(limit)
        .all()
    )
    return {"attempts": [attempt_to_dict(a) for a in attempts], "total": total}


# ============== Bookmarks ==============


def toggle_bookmark(db: Session, user_id: str, question_id: str) -> bool:
    """Add or remove a bookmark. Returns True if the question is now bookmarked."""
    question_id = _require_text(question_id, "question_id")

    existing = db.query(Bookmark).filter_by(user_id=user_id, question_id=question_id).first()
    if existing:
        db.delete(existing)
        db.commit()
        return False

    db.add(Bookmark(user_id=user_id, question_id=question_id))
    db.commit()
    return True


def get_bookmarks(db: Session, user_id: str) -> list[str]:
    """Bookmarked question IDs, oldest first."""
    bookmarks = (
        db.query(Bookmark)
        .filter_by(user_id=user_id)
        .order_by(Bookmark.created_at.asc())
        .all()
    )
    return [b.question_id for b in bookmarks]


# ============== Statistics ==============


def current_streak(active_days: set, today) -> int:
    """Consecutive active days ending today, or yesterday if today is idle."""
    day = today if today in active_days else today - timedelta(days=1)
    streak = 0
    while day in active_days:
        streak += 1
        day -= timedelta(days=1)
    return streak


def get_user_stats(db: Session, user_id: str, now: Optional[datetime] = None) -> dict:
    """Dashboard statistics for a user.

    Args:
        db: Database session
        user_id: User identifier
        now: Reference time (UTC); defaults to the current time

    Returns:
        Dict with overview, recent_performance, subject_breakdown and
        daily_activity (last 30 days, keyed by ISO date)
    """
    user = db.query(User).filter_by(id=user_id).first()
    if not user:
        raise NotFoundError("User not found")

    now = now or utcnow()
    attempts = db.query(QuestionAttempt).filter_by(user_id=user_id).all()

    total = len(attempts)
    correct = sum(1 for a in attempts if a.was_correct)
    total_ms = sum(a.elapsed_ms or 0 for a in attempts)

    # Per-subject breakdown
    subjects = defaultdict(lambda: {"total": 0, "correct": 0, "time_ms": 0})
    for a in attempts:
        s = subjects[a.subject]
        s["total"] += 1
        s["correct"] += 1 if a.was_correct else 0
        s["time_ms"] += a.elapsed_ms or 0

    subject_breakdown = sorted(
        (
            {
                "subject": subject,
                "total": s["total"],
                "correct": s["correct"],
                "accuracy": percentage(s["correct"], s["total"]),
                "avg_time_seconds": round(s["time_ms"] / s["total"] / 1000),
            }
            for subject, s in subjects.items()
        ),
        key=lambda item: (-item["total"], item["subject"]),
    )

    # Last 7 days
    week_ago = now - timedelta(days=7)
    recent = [a for a in attempts if a.attempted_at >= week_ago]
    recent_correct = sum(1 for a in recent if a.was_correct)

    # Daily activity for the last 30 days
    month_ago = now - timedelta(days=30)
    daily_activity = {}
    for a in attempts:
        if a.attempted_at < month_ago:
            continue
        day = daily_activity.setdefault(a.attempted_at.date().isoformat(), {"total": 0, "correct": 0})
        day["total"] += 1
        if a.was_correct:
            day["correct"] += 1

    active_days = {a.attempted_at.date() for a in attempts}

    return {
        "overview": {
            "total_questions": total,
            "correct_answers": correct,
            "accuracy": percentage(correct, total),
            "current_streak": current_streak(active_days, now.date()),
            "total_time_hours": round(total_ms / 1000 / 60 / 60, 1),
            "member_since": user.created_at.isoformat() if user.created_at else None,
        },
        "recent_performance": {
            "questions_last_7_days": len(recent),
            "accuracy_last_7_days": percentage(recent_correct, len(recent)),
        },
        "subject_breakdown": subject_breakdown,
        "daily_activity": daily_activity,
    }
