"""
S3 Blob Store

Path layout (constructed server-side, never accepted from a client):

    s3://<BUCKET>/<kind>s/<user_id>/<guid>/<variant>.<ext>

    e.g. receipts/3f0c…/9a1b…/original.pdf
         documents/3f0c…/77de…/processed.pdf

Variants:
    original   — the uploaded bytes, retained for reprocessing
    processed  — normalized copy produced by the Convert stage
    archive    — long-term archival copy
    image      — preview image

Deleting the original is never done by the pipeline on failure so a
failed file can always be reprocessed.
"""

from __future__ import annotations

import logging
import mimetypes
import re
from dataclasses import dataclass
from enum import Enum
from uuid import UUID

import aioboto3
from botocore.exceptions import ClientError

from app.core.config import settings

logger = logging.getLogger(__name__)


class Variant(str, Enum):
    ORIGINAL  = "original"
    PROCESSED = "processed"
    ARCHIVE   = "archive"
    IMAGE     = "image"


_PATH_RE = re.compile(
    r"^(?P<kind>receipt|document)s/(?P<user>[^/]+)/(?P<guid>[^/]+)/(?P<variant>[a-z]+)\.(?P<ext>[A-Za-z0-9]+)$"
)


@dataclass(frozen=True)
class StoragePath:
    kind:    str   # receipt | document
    user_id: str
    guid:    str
    variant: str
    ext:     str

    @property
    def key(self) -> str:
        return build_path(self.kind, self.user_id, self.guid, self.variant, self.ext)


def build_path(kind: str, user_id: UUID | str, guid: UUID | str, variant: str, ext: str) -> str:
    """Canonical object key for one variant of a file."""
    variant = variant.value if isinstance(variant, Variant) else variant
    return f"{kind}s/{user_id}/{guid}/{variant}.{ext.lstrip('.').lower()}"


def parse_path(path: str) -> StoragePath | None:
    """Inverse of build_path(); None for keys outside the canonical layout."""
    match = _PATH_RE.match(path or "")
    if not match:
        return None
    return StoragePath(
        kind=match["kind"],
        user_id=match["user"],
        guid=match["guid"],
        variant=match["variant"],
        ext=match["ext"],
    )


class BlobStore:
    """Async S3 operations on canonical file paths."""

    def __init__(self, bucket: str | None = None) -> None:
        self._bucket = bucket or settings.s3_bucket
        self._session = aioboto3.Session()

    def _client(self):
        return self._session.client("s3", region_name=settings.aws_region)

    async def store(
        self,
        data: bytes,
        user_id: UUID | str,
        guid: UUID | str,
        kind: str,
        variant: Variant | str,
        ext: str,
    ) -> str:
        key = build_path(kind, user_id, guid, variant, ext)
        content_type = mimetypes.guess_type(f"x.{ext}")[0] or "application/octet-stream"

        async with self._client() as s3:
            await s3.put_object(
                Bucket=self._bucket,
                Key=key,
                Body=data,
                ContentType=content_type,
                Metadata={"user_id": str(user_id), "guid": str(guid)},
            )

        logger.info("S3 store ok | key=%s size=%d", key, len(data))
        return key

    async def read(self, path: str) -> bytes:
        async with self._client() as s3:
            try:
                resp = await s3.get_object(Bucket=self._bucket, Key=path)
                return await resp["Body"].read()
            except ClientError as exc:
                code = exc.response["Error"]["Code"]
                if code in ("NoSuchKey", "404"):
                    raise FileNotFoundError(f"Object not found: {path}") from exc
                raise

    async def exists(self, path: str) -> bool:
        async with self._client() as s3:
            try:
                await s3.head_object(Bucket=self._bucket, Key=path)
                return True
            except ClientError as exc:
                if exc.response["Error"]["Code"] in ("404", "NoSuchKey", "NotFound"):
                    return False
                raise

    async def delete(self, path: str) -> bool:
        """Permanently remove one object. Returns False if it did not exist."""
        if not await self.exists(path):
            return False
        async with self._client() as s3:
            await s3.delete_object(Bucket=self._bucket, Key=path)
        logger.info("S3 delete | key=%s", path)
        return True

    async def move(self, source: str, destination: str) -> str:
        """Server-side copy then delete; used when a file changes type."""
        async with self._client() as s3:
            await s3.copy_object(
                Bucket=self._bucket,
                Key=destination,
                CopySource={"Bucket": self._bucket, "Key": source},
            )
            await s3.delete_object(Bucket=self._bucket, Key=source)
        logger.info("S3 move | from=%s to=%s", source, destination)
        return destination
