"""
Object storage for source documents and rendered artifacts.

Two backends share one small contract (`get`, `put`, `delete`): an
S3-compatible bucket through boto3, and a local directory used when no bucket
is configured. Keys are plain relative paths such as
`documents/final/<job_id>.pdf`.
"""

from __future__ import annotations

import logging
import os
import uuid
from pathlib import Path
from typing import Protocol

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from vector_engine.config import Settings
from vector_engine.services.errors import ArtifactNotFoundError, StorageError

logger = logging.getLogger(__name__)


class ObjectStorage(Protocol):
    name: str

    def get(self, key: str) -> bytes: ...

    def put(self, key: str, data: bytes, content_type: str = "application/octet-stream") -> None: ...

    def delete(self, key: str) -> None: ...


def _check_key(key: str) -> str:
    k = str(key or "").strip()
    if not k or k.startswith("/") or "\\" in k or any(part in ("", ".", "..") for part in k.split("/")):
        raise StorageError(f"invalid object key {key!r}")
    return k


class LocalObjectStorage:
    name = "local"

    def __init__(self, root: str) -> None:
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        candidate = (self.root / _check_key(key)).resolve()
        if self.root not in candidate.parents:
            raise StorageError(f"invalid object key {key!r}")
        return candidate

    def get(self, key: str) -> bytes:
        path = self._path(key)
        try:
            return path.read_bytes()
        except FileNotFoundError as e:
            raise ArtifactNotFoundError(f"object {key!r} not found") from e
        except OSError as e:
            raise StorageError(f"could not read object {key!r}") from e

    def put(self, key: str, data: bytes, content_type: str = "application/octet-stream") -> None:
        path = self._path(key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp = path.with_name(f"{path.name}.{uuid.uuid4().hex}.tmp")
            tmp.write_bytes(data)
            os.replace(tmp, path)
        except OSError as e:
            raise StorageError(f"could not write object {key!r}") from e

    def delete(self, key: str) -> None:
        path = self._path(key)
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            raise StorageError(f"could not delete object {key!r}") from e


class S3ObjectStorage:
    name = "s3"

    def __init__(self, settings: Settings, client=None) -> None:
        self.bucket = settings.S3_BUCKET
        self._client = client or self._make_client(settings)

    @staticmethod
    def _make_client(settings: Settings):
        session = boto3.session.Session(
            aws_access_key_id=settings.S3_ACCESS_KEY_ID or None,
            aws_secret_access_key=settings.S3_SECRET_ACCESS_KEY or None,
            region_name=settings.S3_REGION or None,
        )
        # For S3-compatible endpoints, boto3 expects endpoint_url.
        return session.client("s3", endpoint_url=settings.S3_ENDPOINT or None)

    def get(self, key: str) -> bytes:
        try:
            obj = self._client.get_object(Bucket=self.bucket, Key=_check_key(key))
            return obj["Body"].read()
        except ClientError as e:
            code = str(e.response.get("Error", {}).get("Code", ""))
            if code in {"NoSuchKey", "404", "NotFound"}:
                raise ArtifactNotFoundError(f"object {key!r} not found") from e
            raise StorageError(f"could not read object {key!r} ({code or 'ClientError'})") from e
        except BotoCoreError as e:
            raise StorageError(f"could not read object {key!r} ({type(e).__name__})") from e

    def put(self, key: str, data: bytes, content_type: str = "application/octet-stream") -> None:
        try:
            self._client.put_object(Bucket=self.bucket, Key=_check_key(key), Body=data, ContentType=content_type)
        except (ClientError, BotoCoreError) as e:
            raise StorageError(f"could not write object {key!r} ({type(e).__name__})") from e

    def delete(self, key: str) -> None:
        try:
            self._client.delete_object(Bucket=self.bucket, Key=_check_key(key))
        except (ClientError, BotoCoreError) as e:
            raise StorageError(f"could not delete object {key!r} ({type(e).__name__})") from e


def build_object_storage(settings: Settings, client=None) -> ObjectStorage:
    if settings.S3_BUCKET:
        logger.info("OBJECT_STORAGE", extra={"backend": "s3", "bucket": settings.S3_BUCKET})
        return S3ObjectStorage(settings, client=client)
    logger.warning("OBJECT_STORAGE", extra={"backend": "local", "root": settings.STORAGE_DIR})
    return LocalObjectStorage(settings.STORAGE_DIR)
