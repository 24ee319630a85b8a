"""
Attachment Store — evidence files uploaded against checklist responses.

Two backends share one interface:

    upload(stream, filename, content_type) -> key
    resolve(key) -> url

``LocalAttachmentStore`` writes under ATTACHMENT_DIR and resolves keys to the
API download route.  ``S3AttachmentStore`` puts objects in an S3-compatible
bucket (MinIO in development) and resolves keys to presigned GET URLs.

The backend is picked by ATTACHMENT_BACKEND ("local" | "s3").  The key is
what the response's ``file_url`` answer stores; URLs are resolved on read
because presigned URLs expire.
"""

from __future__ import annotations

import logging
import os
import shutil
import uuid
from abc import ABC, abstractmethod
from typing import BinaryIO

from werkzeug.utils import secure_filename

from app.core.exceptions import ExternalServiceError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

DEFAULT_URL_TTL = 900


def _object_key(filename: str) -> str:
    safe = secure_filename(filename or "")
    if not safe:
        raise ValidationError("A file name is required", details={"filename": "required"})
    return f"{uuid.uuid4().hex}_{safe}"


class AttachmentStore(ABC):
    """Abstract attachment backend."""

    @abstractmethod
    def upload(self, stream: BinaryIO, filename: str, content_type: str | None = None) -> str:
        ...

    @abstractmethod
    def resolve(self, key: str) -> str:
        ...


# ── Local filesystem ─────────────────────────────────────────────────────────

class LocalAttachmentStore(AttachmentStore):
    """Stores files on the local disk (development, tests)."""

    def __init__(self, root_dir: str, url_prefix: str = "/api/v1/attachments"):
        self.root_dir = os.path.abspath(root_dir)
        self.url_prefix = url_prefix.rstrip("/")
        os.makedirs(self.root_dir, exist_ok=True)

    def upload(self, stream: BinaryIO, filename: str, content_type: str | None = None) -> str:
        key = _object_key(filename)
        with open(self.path_for(key), "wb") as out:
            shutil.copyfileobj(stream, out)
        logger.info("Attachment stored locally: %s", key, extra={"event_type": "attachment.upload"})
        return key

    def resolve(self, key: str) -> str:
        if not os.path.isfile(self.path_for(key)):
            raise NotFoundError(resource="Attachment", resource_id=key)
        return f"{self.url_prefix}/{key}"

    def path_for(self, key: str) -> str:
        safe = secure_filename(key)
        if not safe or safe != key:
            raise ValidationError("Invalid attachment key", details={"key": key})
        return os.path.join(self.root_dir, safe)


# ── S3 / MinIO ───────────────────────────────────────────────────────────────

class S3AttachmentStore(AttachmentStore):
    """
    S3-compatible object store.

    Environment (via config):
        OBJECT_STORE_ENDPOINT, OBJECT_STORE_BUCKET,
        OBJECT_STORE_ACCESS_KEY, OBJECT_STORE_SECRET_KEY,
        OBJECT_STORE_USE_PATH_STYLE, AWS_REGION
    """

    def __init__(self, bucket: str, client=None, *, url_ttl: int = DEFAULT_URL_TTL, **client_kwargs):
        self.bucket = bucket
        self.url_ttl = url_ttl
        self._client = client
        self._client_kwargs = client_kwargs

    def _get_client(self):
        if self._client is None:
            import boto3
            from botocore.config import Config as BotoConfig

            use_path = self._client_kwargs.pop("use_path_style", True)
            self._client = boto3.client(
                "s3",
                config=BotoConfig(
                    signature_version="s3v4",
                    s3={"addressing_style": "path" if use_path else "virtual"},
                ),
                **self._client_kwargs,
            )
        return self._client

    def upload(self, stream: BinaryIO, filename: str, content_type: str | None = None) -> str:
        key = _object_key(filename)
        extra = {"ContentType": content_type} if content_type else None
        try:
            self._get_client().upload_fileobj(stream, self.bucket, key, ExtraArgs=extra)
        except Exception as e:
            logger.error("S3 upload failed for %s: %s", key, e, extra={"event_type": "attachment.upload"})
            raise ExternalServiceError("object_store", f"upload failed: {e}")
        logger.info("Attachment stored in bucket %s: %s", self.bucket, key,
                    extra={"event_type": "attachment.upload"})
        return key

    def resolve(self, key: str) -> str:
        try:
            return self._get_client().generate_presigned_url(
                "get_object",
                Params={"Bucket": self.bucket, "Key": key},
                ExpiresIn=self.url_ttl,
            )
        except Exception as e:
            raise ExternalServiceError("object_store", f"could not sign URL: {e}")


# ── Factory ──────────────────────────────────────────────────────────────────

def get_attachment_store(config) -> AttachmentStore:
    """Build the configured backend from a Flask config mapping."""
    backend = (config.get("ATTACHMENT_BACKEND") or "local").lower()
    if backend == "s3":
        bucket = config.get("OBJECT_STORE_BUCKET")
        if not bucket:
            raise ExternalServiceError("object_store", "OBJECT_STORE_BUCKET is not configured")
        return S3AttachmentStore(
            bucket,
            url_ttl=int(config.get("OBJECT_STORE_URL_TTL") or DEFAULT_URL_TTL),
            endpoint_url=config.get("OBJECT_STORE_ENDPOINT") or None,
            aws_access_key_id=config.get("OBJECT_STORE_ACCESS_KEY") or None,
            aws_secret_access_key=config.get("OBJECT_STORE_SECRET_KEY") or None,
            region_name=config.get("AWS_REGION") or "us-east-1",
            use_path_style=bool(config.get("OBJECT_STORE_USE_PATH_STYLE", True)),
        )
    return LocalAttachmentStore(config.get("ATTACHMENT_DIR") or "instance/attachments")
