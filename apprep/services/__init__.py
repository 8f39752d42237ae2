"""Services for apprep: question generation, caching, storage and progress."""

from .blob_store import BlobStore, InMemoryBlobStore, S3BlobStore, create_blob_store
from .question_cache import CacheEntry, CacheState, FetchResult, QuestionCache
from .question_generator import GenerationProfile, QuestionGenerator, select_profile
from .questions import GeneratedQuestion, Question

__all__ = [
    "BlobStore",
    "InMemoryBlobStore",
    "S3BlobStore",
    "create_blob_store",
    "CacheEntry",
    "CacheState",
    "FetchResult",
    "QuestionCache",
    "GenerationProfile",
    "QuestionGenerator",
    "select_profile",
    "GeneratedQuestion",
    "Question",
]
