"""
Object store gateway (S3 / MinIO).

Evidence objects live under ``{container}/{case_id}/{evidence_id}/{file_name}``.
Clients never get bucket credentials; they get presigned capability URLs
scoped to exactly one key.
"""

import asyncio
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import boto3
from botocore.client import Config
from botocore.exceptions import BotoCoreError, ClientError

from .config import Settings
from .errors import UpstreamServiceError, ValidationError

log = logging.getLogger(__name__)

MAX_FILE_NAME = 180
_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]")
_MISSING_CODES = {"404", "NoSuchKey", "NotFound"}


def sanitize_file_name(name: str) -> str:
    cleaned = _UNSAFE_CHARS.sub("_", name)[:MAX_FILE_NAME]
    return cleaned or "file"


def _check_segment(label: str, value: str) -> None:
    if not value or "/" in value:
        raise ValidationError(f"{label} must be non-empty and must not contain '/'")


def build_blob_path(case_id: str, evidence_id: str, file_name: str) -> str:
    _check_segment("caseId", case_id)
    _check_segment("evidenceId", evidence_id)
    return f"{case_id}/{evidence_id}/{sanitize_file_name(file_name)}"


def evidence_prefix(case_id: str, evidence_id: str) -> str:
    return f"{case_id}/{evidence_id}/"


@dataclass(frozen=True)
class BlobAddress:
    case_id: str
    evidence_id: str
    file_name: str


def parse_blob_path(path: str) -> Optional[BlobAddress]:
    """Split ``{case_id}/{evidence_id}/{file_name}``; None if the shape is wrong."""
    parts = path.lstrip("/").split("/", 2)
    if len(parts) != 3 or not all(parts):
        return None
    return BlobAddress(case_id=parts[0], evidence_id=parts[1], file_name=parts[2])


@dataclass(frozen=True)
class Capability:
    url: str
    blob_path: str
    blob_url: str
    starts_on: datetime
    expires_on: datetime


def _normalize_endpoint(url: Optional[str]) -> Optional[str]:
    """Ensure endpoints include a scheme so boto3 accepts them."""
    if not url:
        return None
    if url.startswith("http://") or url.startswith("https://"):
        return url
    return f"http://{url}"


def make_s3_client(settings: Settings, public: bool = False):
    endpoint = settings.s3_public_endpoint if public and settings.s3_public_endpoint else settings.s3_endpoint
    kwargs: dict[str, Any] = {
        "region_name": settings.s3_region,
        "config": Config(signature_version="s3v4"),
    }
    if endpoint:
        kwargs["endpoint_url"] = _normalize_endpoint(endpoint)
    if settings.s3_access_key:
        kwargs["aws_access_key_id"] = settings.s3_access_key
        kwargs["aws_secret_access_key"] = settings.s3_secret_key
    return boto3.client("s3", **kwargs)


def _error_code(e: ClientError) -> str:
    return str(e.response.get("Error", {}).get("Code", ""))


def _upstream(e: Exception, action: str) -> UpstreamServiceError:
    if isinstance(e, ClientError):
        status = e.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
        return UpstreamServiceError(
            f"object store {action} failed: {e}",
            service="object_store",
            status_code=status,
            error_code=_error_code(e) or None,
        )
    return UpstreamServiceError(f"object store {action} failed: {e}", service="object_store")


class ObjectStore:
    """Capability issuing, existence checks and prefix deletes over one S3 endpoint.

    ``signer`` is the client used for presigning; it may point at a public
    endpoint while ``client`` talks to the private one.
    """

    def __init__(
        self,
        client,
        *,
        raw_container: str,
        derived_container: str,
        signer=None,
        clock_skew: timedelta = timedelta(minutes=2),
    ):
        self.client = client
        self.signer = signer or client
        self.raw_container = raw_container
        self.derived_container = derived_container
        self.clock_skew = clock_skew

    @classmethod
    def from_settings(cls, settings: Settings) -> "ObjectStore":
        client = make_s3_client(settings)
        signer = make_s3_client(settings, public=True) if settings.s3_public_endpoint else client
        return cls(
            client,
            raw_container=settings.evidence_bucket_raw,
            derived_container=settings.evidence_bucket_derived,
            signer=signer,
            clock_skew=timedelta(minutes=settings.url_clock_skew_minutes),
        )

    def blob_url(self, path: str, container: Optional[str] = None) -> str:
        container = container or self.raw_container
        base = self.client.meta.endpoint_url.rstrip("/")
        return f"{base}/{container}/{path}"

    def _presign(self, method: str, path: str, ttl_minutes: int, container: str, extra: dict) -> Capability:
        now = datetime.now(timezone.utc)
        expires_on = now + timedelta(minutes=ttl_minutes)
        params = {"Bucket": container, "Key": path, **extra}
        url = self.signer.generate_presigned_url(
            method,
            Params=params,
            ExpiresIn=int(ttl_minutes * 60),
        )
        return Capability(
            url=url,
            blob_path=path,
            blob_url=self.blob_url(path, container),
            starts_on=now - self.clock_skew,
            expires_on=expires_on,
        )

    async def upload_capability(
        self,
        path: str,
        ttl_minutes: int,
        content_type: Optional[str] = None,
        container: Optional[str] = None,
    ) -> Capability:
        """Write-only URL: a presigned PUT for one key, no read/list/delete."""
        extra = {"ContentType": content_type} if content_type else {}
        return self._presign("put_object", path, ttl_minutes, container or self.raw_container, extra)

    async def read_capability(
        self,
        path: str,
        ttl_minutes: int,
        container: Optional[str] = None,
    ) -> Capability:
        return self._presign("get_object", path, ttl_minutes, container or self.raw_container, {})

    async def exists(self, path: str, container: Optional[str] = None) -> bool:
        container = container or self.raw_container
        try:
            await asyncio.to_thread(self.client.head_object, Bucket=container, Key=path)
            return True
        except ClientError as e:
            if _error_code(e) in _MISSING_CODES:
                return False
            raise _upstream(e, "head") from e
        except BotoCoreError as e:
            raise _upstream(e, "head") from e

    async def read_bytes(self, path: str, container: Optional[str] = None) -> bytes:
        container = container or self.raw_container
        try:
            obj = await asyncio.to_thread(self.client.get_object, Bucket=container, Key=path)
            return await asyncio.to_thread(obj["Body"].read)
        except (ClientError, BotoCoreError) as e:
            raise _upstream(e, "read") from e

    async def delete(self, path: str, container: Optional[str] = None) -> None:
        container = container or self.raw_container
        try:
            await asyncio.to_thread(self.client.delete_object, Bucket=container, Key=path)
        except (ClientError, BotoCoreError) as e:
            raise _upstream(e, "delete") from e

    def _list_keys(self, container: str, prefix: str) -> list[str]:
        keys: list[str] = []
        paginator = self.client.get_paginator("list_objects_v2")
        for page in paginator.paginate(Bucket=container, Prefix=prefix):
            keys.extend(obj["Key"] for obj in page.get("Contents", []))
        return keys

    async def list_prefix(self, prefix: str, container: Optional[str] = None) -> list[str]:
        container = container or self.raw_container
        try:
            return await asyncio.to_thread(self._list_keys, container, prefix)
        except (ClientError, BotoCoreError) as e:
            raise _upstream(e, "list") from e

    async def delete_prefix(self, prefix: str, container: Optional[str] = None) -> int:
        """Delete every object under ``prefix``; returns how many were removed."""
        container = container or self.raw_container
        keys = await self.list_prefix(prefix, container)
        for key in keys:
            await self.delete(key, container)
        log.debug("deleted %d object(s) under %s/%s", len(keys), container, prefix)
        return len(keys)
