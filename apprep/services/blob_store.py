"""Blob storage for generated questions.

Each question is written once, as JSON, under ``questions/{id}.json``.
The question cache only ever points at IDs that have already been written
here, so this store is the durable owner of every question payload.

S3BlobStore talks to S3 (or an S3-compatible endpoint such as MinIO or R2)
through boto3. boto3 is blocking, so every call is moved to a worker thread
to keep the event loop free.
"""

import asyncio
import logging
import os
import re
from typing import Optional

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError
from pydantic import ValidationError as SchemaError

from apprep.errors import NotFoundError, StorageError
from apprep.services.questions import Question

logger = logging.getLogger(__name__)

# S3 configuration
AWS_S3_BUCKET = os.environ.get("AWS_S3_BUCKET")
AWS_REGION = os.environ.get("AWS_REGION")
AWS_S3_ENDPOINT = os.environ.get("AWS_S3_ENDPOINT")  # optional (MinIO/R2)
AWS_S3_FORCE_PATH_STYLE = os.environ.get("AWS_S3_FORCE_PATH_STYLE") == "true"

KEY_PREFIX = "questions/"
_KEY_PATTERN = re.compile(r"^questions/([^/]+)\.json$")
_MISSING_CODES = {"NoSuchKey", "404", "NotFound"}


def question_key(question_id: str) -> str:
    """Object key for a question ID."""
    return f"{KEY_PREFIX}{question_id}.json"


def serialize_question(question: Question) -> bytes:
    return question.model_dump_json().encode("utf-8")


def deserialize_question(question_id: str, body: bytes) -> Question:
    try:
        return Question.model_validate_json(body)
    except SchemaError as e:
        raise StorageError(f"Stored question {question_id} is corrupt: {e}") from e


class BlobStore:
    """Interface shared by the S3 and in-memory stores."""

    async def put(self, question_id: str, question: Question) -> None:
        raise NotImplementedError

    async def get(self, question_id: str) -> Question:
        raise NotImplementedError

    async def list_ids(self, prefix: str = "") -> list[str]:
        raise NotImplementedError

    async def get_many(self, question_ids: list[str]) -> list[Question]:
        """Fetch several questions concurrently, skipping any that fail.

        Failures are logged and omitted rather than failing the batch.
        The order of the questions that were found follows ``question_ids``.
        """
        results = await asyncio.gather(
            *(self.get(question_id) for question_id in question_ids),
            return_exceptions=True,
        )

        questions = []
        for question_id, result in zip(question_ids, results):
            if isinstance(result, Exception):
                logger.warning(f"Failed to retrieve question {question_id}: {result}")
                continue
            if isinstance(result, BaseException):
                raise result
            questions.append(result)
        return questions


class S3BlobStore(BlobStore):
    """Question payloads stored as JSON objects in an S3 bucket."""

    def __init__(self, bucket: str, client=None):
        self.bucket = bucket
        self._client = client or create_s3_client()

    async def put(self, question_id: str, question: Question) -> None:
        body = serialize_question(question)
        try:
            await asyncio.to_thread(
                self._client.put_object,
                Bucket=self.bucket,
                Key=question_key(question_id),
                Body=body,
                ContentType="application/json",
            )
        except (BotoCoreError, ClientError) as e:
            logger.error(f"Failed to store question {question_id} in S3: {e}")
            raise StorageError(f"Failed to store question {question_id}") from e

    async def get(self, question_id: str) -> Question:
        try:
            body = await asyncio.to_thread(self._read_object, question_key(question_id))
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code", "")
            if code in _MISSING_CODES:
                raise NotFoundError(f"Question {question_id} not found") from e
            logger.error(f"Failed to retrieve question {question_id} from S3: {e}")
            raise StorageError(f"Failed to retrieve question {question_id}") from e
        except BotoCoreError as e:
            logger.error(f"Failed to retrieve question {question_id} from S3: {e}")
            raise StorageError(f"Failed to retrieve question {question_id}") from e

        return deserialize_question(question_id, body)

    async def list_ids(self, prefix: str = "") -> list[str]:
        try:
            return await asyncio.to_thread(self._list_keys, KEY_PREFIX + prefix)
        except (BotoCoreError, ClientError) as e:
            logger.error(f"Failed to list questions with prefix '{prefix}': {e}")
            raise StorageError("Failed to list stored questions") from e

    def _read_object(self, key: str) -> bytes:
        response = self._client.get_object(Bucket=self.bucket, Key=key)
        return response["Body"].read()

    def _list_keys(self, key_prefix: str) -> list[str]:
        question_ids = []
        paginator = self._client.get_paginator("list_objects_v2")
        for page in paginator.paginate(Bucket=self.bucket, Prefix=key_prefix):
            for obj in page.get("Contents", []):
                match = _KEY_PATTERN.match(obj["Key"])
                if match:
                    question_ids.append(match.group(1))
        return question_ids


class InMemoryBlobStore(BlobStore):
    """Process-local store for development without a bucket, and for tests.

    Payloads are kept serialized so reads behave like a real object store.
    """

    def __init__(self):
        self._objects: dict[str, bytes] = {}

    async def put(self, question_id: str, question: Question) -> None:
        key = question_key(question_id)
        if key in self._objects:
            raise StorageError(f"Question {question_id} already exists")
        self._objects[key] = serialize_question(question)

    async def get(self, question_id: str) -> Question:
        body = self._objects.get(question_key(question_id))
        if body is None:
            raise NotFoundError(f"Question {question_id} not found")
        return deserialize_question(question_id, body)

    async def list_ids(self, prefix: str = "") -> list[str]:
        question_ids = []
        for key in self._objects:
            match = _KEY_PATTERN.match(key)
            if match and match.group(1).startswith(prefix):
                question_ids.append(match.group(1))
        return question_ids



def create_s3_client():
    """Create a boto3 S3 client from environment configuration.

    Credentials come from the default provider chain (env, shared files,
    instance role).
    """
    config = None
    if AWS_S3_ENDPOINT and AWS_S3_FORCE_PATH_STYLE:
        config = Config(s3={"addressing_style": "path"})
    return boto3.client(
        "s3",
        region_name=AWS_REGION,
        endpoint_url=AWS_S3_ENDPOINT,
        config=config,
    )


def create_blob_store(bucket: Optional[str] = None) -> BlobStore:
    """Pick the S3 store when a bucket is configured, memory otherwise."""
    bucket = bucket or AWS_S3_BUCKET
    if bucket:
        logger.info(f"Using S3 blob store (bucket: {bucket})")
        return S3BlobStore(bucket)

    logger.warning("AWS_S3_BUCKET is not set - questions are stored in memory only")
    return InMemoryBlobStore()
