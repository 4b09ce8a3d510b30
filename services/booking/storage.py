"""
services/booking/storage.py
Completion evidence storage on an S3-compatible bucket (AWS S3 / R2).
Only the object key is persisted on the booking.
"""

import logging
import mimetypes
import uuid
from dataclasses import dataclass
from typing import List, Optional

import boto3
from botocore.client import Config
from botocore.exceptions import BotoCoreError, ClientError
from fastapi import UploadFile
from starlette.concurrency import run_in_threadpool

from config.settings import settings
from shared.exceptions import ValidationError
from shared.utils.resilience import circuit_breaker_manager

logger = logging.getLogger(__name__)


@dataclass
class EvidenceFile:
    filename: str
    content_type: str
    data: bytes


async def read_evidence_files(files: List[UploadFile]) -> List[EvidenceFile]:
    """Read uploads into memory, enforcing count, type and size limits."""
    if not files:
        raise ValidationError("At least one evidence photo is required")
    if len(files) > settings.EVIDENCE_MAX_FILES:
        raise ValidationError(f"At most {settings.EVIDENCE_MAX_FILES} evidence files are allowed")

    allowed = settings.evidence_allowed_types_list
    out = []
    for upload in files:
        content_type = upload.content_type or ""
        if content_type not in allowed:
            raise ValidationError(
                f"Unsupported file type '{content_type}'. Allowed: {', '.join(allowed)}"
            )
        data = await upload.read()
        if not data:
            raise ValidationError(f"File '{upload.filename}' is empty")
        if len(data) > settings.EVIDENCE_MAX_BYTES:
            max_mb = settings.EVIDENCE_MAX_BYTES // (1024 * 1024)
            raise ValidationError(f"File '{upload.filename}' exceeds {max_mb}MB")
        out.append(EvidenceFile(upload.filename or "evidence", content_type, data))
    return out


def evidence_key(booking_id: uuid.UUID, content_type: str) -> str:
    ext = (mimetypes.guess_extension(content_type) or ".bin").lstrip(".")
    return f"evidence/{booking_id}/{uuid.uuid4()}.{ext}"


class EvidenceStorage:
    """Uploads evidence through boto3 behind the 'storage' circuit breaker."""

    def __init__(self, client=None, bucket: Optional[str] = None):
        self.client = client or boto3.client(
            "s3",
            endpoint_url=settings.S3_ENDPOINT_URL,
            aws_access_key_id=settings.S3_ACCESS_KEY_ID or None,
            aws_secret_access_key=settings.S3_SECRET_ACCESS_KEY or None,
            config=Config(signature_version="s3v4"),
            region_name=settings.S3_REGION,
        )
        self.bucket = bucket or settings.S3_BUCKET_PRIVATE
        self.breaker = circuit_breaker_manager.get_breaker("storage")

    def _put(self, key: str, item: EvidenceFile) -> None:
        self.client.put_object(
            Bucket=self.bucket,
            Key=key,
            Body=item.data,
            ContentType=item.content_type,
            Metadata={"original-filename": item.filename},
        )

    async def upload(self, booking_id: uuid.UUID, item: EvidenceFile) -> str:
        """Store one file and return its object key."""
        key = evidence_key(booking_id, item.content_type)
        try:
            await run_in_threadpool(self.breaker.call, self._put, key, item)
        except (BotoCoreError, ClientError) as e:
            logger.error(f"Evidence upload failed for booking {booking_id}: {e}")
            raise
        logger.info(f"Stored evidence {key} ({len(item.data)} bytes)")
        return key


_storage: Optional[EvidenceStorage] = None


def get_evidence_storage() -> EvidenceStorage:
    """FastAPI dependency. The boto3 client is created on first use."""
    global _storage
    if _storage is None:
        _storage = EvidenceStorage()
    return _storage
