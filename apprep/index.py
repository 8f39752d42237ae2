"""apprep - AP practice question API

FastAPI application with:
- AI-generated AP practice questions served from a stale-while-revalidate cache
- S3-backed storage of every generated question
- Per-client rate limiting on question generation
- JWT authentication
- Attempt recording, mastery tracking, history, bookmarks and statistics
- Health checks and Prometheus metrics
"""

import asyncio
import logging
import math
import os
import re
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

from fastapi import FastAPI, HTTPException, Depends, Request, Response, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from dotenv import load_dotenv

load_dotenv()

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

from . import __version__
from .database import init_database, get_db, get_db_dependency, User
from .auth import (
    get_current_user,
    hash_password,
    verify_password,
    password_problem,
    token_response,
)
from .errors import AppError
from .rate_limit import limiter, get_user_identifier, QuestionRateLimiter, RateLimitResult
from .services.blob_store import BlobStore, create_blob_store
from .services.cache_repository import CacheEntryRepository
from .services.catalog import resolve_topic
from .services.monitoring import metrics, normalize_path
from .services.question_cache import QuestionCache
from .services.question_generator import QuestionGenerator
from .services import progress

logger = logging.getLogger(__name__)

CORS_ORIGINS = [
    origin.strip()
    for origin in os.environ.get(
        "CORS_ORIGINS", "http://localhost:5173,http://localhost:3000"
    ).split(",")
    if origin.strip()
]


# ============== Services ==============


@dataclass
class AppServices:
    """Long-lived services shared by all requests."""

    blob_store: BlobStore
    cache: QuestionCache
    rate_limiter: QuestionRateLimiter


def build_services() -> AppServices:
    """Wire the production services from environment configuration."""
    blob_store = create_blob_store()
    cache = QuestionCache(
        generator=QuestionGenerator(),
        blob_store=blob_store,
        repository=CacheEntryRepository(),
        metrics=metrics,
    )
    return AppServices(
        blob_store=blob_store,
        cache=cache,
        rate_limiter=QuestionRateLimiter(),
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_database()

    # Tests install their own services before startup
    services = getattr(app.state, "services", None)
    if services is None:
        services = build_services()
        app.state.services = services

    await services.cache.load()
    logger.info("apprep started")

    yield

    await services.cache.drain()
    logger.info("apprep stopped")


def get_services(request: Request) -> AppServices:
    return request.app.state.services


# Create FastAPI app
app = FastAPI(
    title="apprep",
    description="AP practice questions with cached AI generation and progress tracking",
    version=__version__,
    lifespan=lifespan,
)

# CORS for frontend
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Rate limiting for account endpoints
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    """Translate service errors into HTTP responses."""
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


# Monitoring middleware
@app.middleware("http")
async def metrics_middleware(request: Request, call_next):
    """Collect request metrics for every HTTP request."""
    metrics.increment_active()
    start_time = time.time()
    try:
        response = await call_next(request)
        duration = time.time() - start_time
        path = normalize_path(request.url.path)
        metrics.record_request(request.method, path, response.status_code, duration)
        return response
    finally:
        metrics.decrement_active()


# ============== Pydantic Models ==============


class RegisterRequest(BaseModel):
    name: str
    email: str
    password: str


class LoginRequest(BaseModel):
    email: str
    password: str


class QuestionRequest(BaseModel):
    subject: str
    topic: Optional[str] = None  # empty means "any unit"
    unit_range: Optional[list[int]] = None  # inclusive 0-based [from, to]
    force_fresh: bool = False


class CacheKeyRequest(BaseModel):
    subject: str
    topic: Optional[str] = None


class AttemptRequest(BaseModel):
    # Optional so the ledger reports missing fields as 400s
    question_id: Optional[str] = None
    subject: Optional[str] = None
    topic: Optional[str] = None
    chosen_option: Optional[str] = None
    was_correct: Any = None  # checked by the ledger, not coerced
    elapsed_ms: Optional[int] = 0


class BookmarkRequest(BaseModel):
    question_id: str


# ============== Helper Functions ==============


def rate_limit_headers(result: RateLimitResult) -> dict:
    reset_in = math.ceil(result.reset_in)
    return {
        "X-RateLimit-Limit": str(result.limit),
        "X-RateLimit-Remaining": str(result.remaining),
        "X-RateLimit-Reset": str(math.ceil(time.time()) + reset_in),
    }


def require_subject(subject: str) -> str:
    subject = (subject or "").strip()
    if not subject:
        raise HTTPException(status_code=400, detail="subject is required")
    return subject


async def attach_questions(services: AppServices, items: list[dict]) -> list[dict]:
    """Join stored question payloads onto dicts that carry a question_id."""
    question_ids = list(dict.fromkeys(item["question_id"] for item in items))
    questions = await services.blob_store.get_many(question_ids)
    by_id = {q.id: q.model_dump(mode="json") for q in questions}
    return [{**item, "question": by_id.get(item["question_id"])} for item in items]


# ============== Authentication Endpoints ==============


@app.post("/api/auth/register")
@limiter.limit("5/minute")
def register(
    request_obj: RegisterRequest,
    request: Request,
    db: Session = Depends(get_db_dependency),
):
    """Register a new user account and return a JWT."""
    name = request_obj.name.strip()
    email = request_obj.email.strip().lower()

    if not name:
        raise HTTPException(status_code=400, detail="Name is required")

    if not re.match(r"^[^@\s]+@[^@\s]+\.[^@\s]+$", email):
        raise HTTPException(status_code=400, detail="Invalid email format")

    problem = password_problem(request_obj.password)
    if problem:
        raise HTTPException(status_code=400, detail=problem)

    existing = db.query(User).filter_by(email=email).first()
    if existing:
        raise HTTPException(status_code=409, detail="Email already registered")

    user = User(
        name=name,
        email=email,
        password_hash=hash_password(request_obj.password),
        is_active=True,
    )
    db.add(user)
    db.commit()
    db.refresh(user)

    logger.info(f"Registered user {user.id}")
    return token_response(user)


@app.post("/api/auth/login")
@limiter.limit("10/minute")
def login(
    request_obj: LoginRequest,
    request: Request,
    db: Session = Depends(get_db_dependency),
):
    """Authenticate and return a JWT token."""
    user = db.query(User).filter_by(email=request_obj.email.strip().lower()).first()

    if not user or not verify_password(request_obj.password, user.password_hash):
        raise HTTPException(status_code=401, detail="Invalid email or password")

    if not user.is_active:
        raise HTTPException(status_code=401, detail="Account is deactivated")

    return token_response(user)


@app.get("/api/auth/me")
def get_me(
    current_user: User = Depends(get_current_user),
):
    """Get the current user's profile."""
    return {
        "user_id": current_user.id,
        "name": current_user.name,
        "email": current_user.email,
        "created_at": current_user.created_at.isoformat() if current_user.created_at else None,
    }


# ============== Questions ==============


@app.post("/api/question")
async def fetch_question(
    request_obj: QuestionRequest,
    request: Request,
    response: Response,
    services: AppServices = Depends(get_services),
):
    """Get a practice question for a course unit.

    Serves the cached question when there is one and refreshes it in the
    background; otherwise generates one and waits for it.
    """
    limit = services.rate_limiter.check(get_user_identifier(request))
    headers = rate_limit_headers(limit)
    if not limit.allowed:
        headers["Retry-After"] = str(math.ceil(limit.reset_in))
        raise HTTPException(
            status_code=429,
            detail="Too many question requests. Please wait a minute before trying again.",
            headers=headers,
        )
    response.headers.update(headers)

    subject = require_subject(request_obj.subject)
    topic = resolve_topic(subject, request_obj.topic, request_obj.unit_range)
    result = await services.cache.fetch(subject, topic, force_fresh=request_obj.force_fresh)

    return {
        "question": result.question.model_dump(mode="json"),
        "question_id": result.question_id,
        "served_from_cache": result.served_from_cache,
    }


@app.post("/api/question/cache/prime")
async def prime_cache(
    request_obj: CacheKeyRequest,
    current_user: User = Depends(get_current_user),
    services: AppServices = Depends(get_services),
):
    """Generate a question now and make it the cached one for its unit."""
    subject = require_subject(request_obj.subject)
    topic = resolve_topic(subject, request_obj.topic)
    question = await services.cache.prime(subject, topic)
    return {"question": question.model_dump(mode="json"), "question_id": question.id}


@app.delete("/api/question/cache")
async def invalidate_cache(
    request_obj: CacheKeyRequest,
    current_user: User = Depends(get_current_user),
    services: AppServices = Depends(get_services),
):
    """Drop the cached question for a unit."""
    subject = require_subject(request_obj.subject)
    if not (request_obj.topic or "").strip():
        raise HTTPException(status_code=400, detail="topic is required")
    return {"invalidated": services.cache.invalidate(subject, request_obj.topic)}


@app.get("/api/question/cache/stats")
async def cache_statistics(services: AppServices = Depends(get_services)):
    """Cached question counts, total and per subject."""
    return services.cache.stats()


@app.get("/api/question/storage")
async def list_stored_questions(
    prefix: str = Query(""),
    current_user: User = Depends(get_current_user),
    services: AppServices = Depends(get_services),
):
    """IDs of every stored question, optionally filtered by ID prefix."""
    question_ids = await services.blob_store.list_ids(prefix)
    return {"question_ids": question_ids, "count": len(question_ids)}


@app.get("/api/question/{question_id}")
async def get_question(
    question_id: str,
    current_user: User = Depends(get_current_user),
    services: AppServices = Depends(get_services),
):
    """A stored question by ID."""
    question = await services.blob_store.get(question_id)
    return question.model_dump(mode="json")


# ============== Progress ==============


@app.post("/api/progress/attempts")
def record_attempt(
    request_obj: AttemptRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db_dependency),
):
    """Record an answered question and return the unit's new mastery."""
    result = progress.record_attempt(
        db,
        user_id=current_user.id,
        question_id=request_obj.question_id,
        subject=request_obj.subject,
        topic=request_obj.topic,
        chosen_option=request_obj.chosen_option,
        was_correct=request_obj.was_correct,
        elapsed_ms=request_obj.elapsed_ms,
    )
    logger.info(
        f"Attempt recorded for user {current_user.id}: {request_obj.subject} / "
        f"{request_obj.topic} (correct={request_obj.was_correct})"
    )
    return {**result, "question_id": request_obj.question_id.strip()}


@app.get("/api/progress")
def get_progress(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db_dependency),
):
    """Mastery and attempt counts for every unit the user has practiced."""
    return {"progress": progress.get_progress(db, current_user.id)}


@app.get("/api/progress/history")
async def get_history(
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db_dependency),
    services: AppServices = Depends(get_services),
):
    """Newest-first attempt history with the question payloads."""
    history = progress.get_history(db, current_user.id, limit=limit, offset=offset)
    return {
        "history": await attach_questions(services, history["attempts"]),
        "total": history["total"],
        "limit": limit,
        "offset": offset,
    }


@app.get("/api/progress/stats")
def get_stats(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db_dependency),
):
    """Dashboard statistics: overview, recent performance, subjects, daily activity."""
    return progress.get_user_stats(db, current_user.id)


@app.get("/api/progress/bookmarks")
async def list_bookmarks(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db_dependency),
    services: AppServices = Depends(get_services),
):
    """Bookmarked questions. Ones missing from storage are left out."""
    question_ids = progress.get_bookmarks(db, current_user.id)
    questions = await services.blob_store.get_many(question_ids)
    return {"bookmarks": [q.model_dump(mode="json") for q in questions]}


@app.post("/api/progress/bookmarks")
def toggle_bookmark(
    request_obj: BookmarkRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db_dependency),
):
    """Bookmark a question, or remove the bookmark if it exists."""
    bookmarked = progress.toggle_bookmark(db, current_user.id, request_obj.question_id)
    return {"question_id": request_obj.question_id, "bookmarked": bookmarked}


# ============== Health Check & Monitoring ==============


def check_database() -> str:
    try:
        with get_db() as db:
            db.execute(text("SELECT 1"))
        return "healthy"
    except SQLAlchemyError as e:
        return f"unhealthy: {str(e)}"


@app.get("/api/health")
async def health_check(services: AppServices = Depends(get_services)):
    """Health check with per-dependency status."""
    checks = {"api": "healthy"}
    checks["database"] = await asyncio.to_thread(check_database)

    # Check blob storage
    try:
        await services.blob_store.list_ids("__health__")
        checks["storage"] = "healthy"
    except AppError as e:
        checks["storage"] = f"unhealthy: {e.message}"

    overall = "healthy" if all(v == "healthy" for v in checks.values()) else "degraded"

    return {
        "status": overall,
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "checks": checks,
        "cache": services.cache.stats(),
    }


@app.get("/api/metrics")
async def get_metrics(services: AppServices = Depends(get_services)):
    """Prometheus-compatible metrics endpoint."""
    return PlainTextResponse(
        content=metrics.to_prometheus(cache_entries=services.cache.stats()["total"]),
        media_type="text/plain; version=0.0.4",
    )
