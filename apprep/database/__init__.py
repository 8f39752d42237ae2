"""Database package for apprep."""

from .models import (
    Base,
    User,
    QuestionAttempt,
    ProgressEntry,
    Bookmark,
    CachedQuestion,
)
from .connection import (
    init_database,
    get_db,
    get_db_dependency,
    SessionLocal,
    engine,
)

__all__ = [
    "Base",
    "User",
    "QuestionAttempt",
    "ProgressEntry",
    "Bookmark",
    "CachedQuestion",
    "init_database",
    "get_db",
    "get_db_dependency",
    "SessionLocal",
    "engine",
]
