"""Shared fixtures for apprep tests.

The app's default engine points at a throwaway in-memory SQLite database;
tests that touch the database get their own session factory.
"""

import os

os.environ["DATABASE_URL"] = "sqlite://"
os.environ.setdefault("JWT_SECRET", "test-secret")

import asyncio

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from apprep.database.models import Base, User
from apprep.errors import GenerationError
from apprep.services.blob_store import InMemoryBlobStore
from apprep.services.question_cache import QuestionCache
from apprep.services.questions import GeneratedQuestion


class ScriptedGenerator:
    """Stands in for the model-backed generator.

    Returns a numbered question per call. Topics in ``fail_topics`` (or
    every topic when ``fail_all`` is set) raise GenerationError. When
    ``gate`` is an asyncio.Event, calls wait for it before answering.
    """

    def __init__(self, fail_topics=()):
        self.calls = []
        self.fail_topics = set(fail_topics)
        self.fail_all = False
        self.gate = None
        self.delay = 0.0

    async def generate(self, subject: str, topic: str) -> GeneratedQuestion:
        self.calls.append((subject, topic))
        number = len(self.calls)
        if self.gate is not None:
            await self.gate.wait()
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_all or topic in self.fail_topics:
            raise GenerationError(f"model unavailable for {topic}")
        return GeneratedQuestion(
            question=f"{subject} / {topic} question #{number}",
            optionA="First choice",
            optionB="Second choice",
            optionC="Third choice",
            optionD="Fourth choice",
            correctAnswer="B",
            explanation="B is correct because it is the second choice.",
        )


@pytest.fixture
def generator():
    return ScriptedGenerator(fail_topics={"Unit 99"})


@pytest.fixture
def blob_store():
    return InMemoryBlobStore()


@pytest.fixture
def cache(generator, blob_store):
    return QuestionCache(generator, blob_store, generation_timeout=5)


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    engine.dispose()


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def user(db):
    user = User(
        name="Test Student",
        email="student@example.com",
        password_hash="not-a-real-hash",
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return user
