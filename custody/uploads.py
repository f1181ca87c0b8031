"""Upload coordinator.

A client asks for an upload, gets a write-only URL for exactly one object
key, PUTs the bytes straight to the object store, then confirms. Metadata is
only accepted once the object is really there.
"""
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from .authz import Action, Principal, require
from .clients import ServiceClients
from .errors import ConflictError, UploadNotFoundError, UpstreamServiceError
from .extraction import classify_file_type
from .models import Evidence, EvidenceStatus, utcnow
from .queries import evidence_department, require_case, require_evidence, save_evidence
from .search import SearchDocument
from .storage import build_blob_path, parse_blob_path

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class UploadTicket:
    evidence_id: str
    upload_url: str
    blob_path: str
    blob_url: str
    starts_on: datetime
    expires_on: datetime


@dataclass(frozen=True)
class ReadTicket:
    evidence_id: str
    read_url: str
    expires_on: datetime


def clean_tags(tags: Optional[Iterable[str]]) -> list[str]:
    """Strip, drop empties and dedupe while keeping first-seen order."""
    seen: list[str] = []
    for tag in tags or []:
        tag = (tag or "").strip()
        if tag and tag not in seen:
            seen.append(tag)
    return seen


def merge_tags(auto_tags: Iterable[str], user_tags: Iterable[str]) -> list[str]:
    return clean_tags([*auto_tags, *user_tags])


async def _resync_search(clients: ServiceClients, evidence: Evidence) -> None:
    # the row is authoritative; a stale search document is repaired on the next publish
    try:
        await clients.search.publish(SearchDocument.from_evidence(evidence))
    except UpstreamServiceError as e:
        log.warning("search_resync_failed evidence_id=%s error=%s", evidence.id, e.detail)


async def initiate(
    db: AsyncSession,
    clients: ServiceClients,
    principal: Principal,
    case_id: str,
    file_name: str,
    content_type: Optional[str] = None,
    file_size: Optional[int] = None,
) -> UploadTicket:
    require(principal, Action.WRITE)
    case = await require_case(db, case_id)
    require(principal, Action.WRITE, case.department)

    evidence_id = str(uuid.uuid4())
    blob_path = build_blob_path(case.id, evidence_id, file_name)
    stored_name = parse_blob_path(blob_path).file_name
    file_type = classify_file_type(stored_name)

    capability = await clients.object_store.upload_capability(
        blob_path,
        clients.settings.upload_url_ttl_minutes,
        content_type=content_type,
    )

    now = utcnow()
    evidence = Evidence(
        id=evidence_id,
        case_id=case.id,
        department=case.department,
        file_name=stored_name,
        file_type=file_type,
        file_size=file_size,
        content_type=content_type,
        blob_path_raw=blob_path,
        blob_url_raw=capability.blob_url,
        uploaded_at=now,
        uploaded_by=principal.subject,
        user_tags=[],
        auto_tags=[file_type],
        tags=[file_type],
        status=EvidenceStatus.UPLOADED.value,
        status_updated_at=now,
    )
    db.add(evidence)
    await db.commit()

    log.info(
        "evidence_upload_initiated evidence_id=%s case_id=%s file_type=%s",
        evidence_id, case.id, file_type,
    )
    return UploadTicket(
        evidence_id=evidence_id,
        upload_url=capability.url,
        blob_path=blob_path,
        blob_url=capability.blob_url,
        starts_on=capability.starts_on,
        expires_on=capability.expires_on,
    )


async def confirm(
    db: AsyncSession,
    clients: ServiceClients,
    principal: Principal,
    evidence_id: str,
    case_id: str,
    description: Optional[str] = None,
    tags: Optional[Iterable[str]] = None,
) -> Evidence:
    require(principal, Action.WRITE)
    evidence = await require_evidence(db, evidence_id)
    if evidence.case_id != case_id:
        raise ConflictError("Evidence does not belong to the given case")
    require(principal, Action.WRITE, await evidence_department(db, evidence))

    if evidence.confirmed_at is not None:
        raise ConflictError("Upload already confirmed")

    if not await clients.object_store.exists(evidence.blob_path_raw):
        raise UploadNotFoundError(f"No uploaded object at {evidence.blob_path_raw}")

    user_tags = clean_tags(tags)

    def _apply(row: Evidence) -> None:
        # re-checked on every attempt; a retry sees the other writer's row
        if row.confirmed_at is not None:
            raise ConflictError("Upload already confirmed")
        if description is not None:
            row.description = description
        row.user_tags = user_tags
        row.tags = merge_tags(row.auto_tags or [], user_tags)
        row.confirmed_at = utcnow()

    try:
        evidence = await save_evidence(db, evidence, _apply)
    except StaleDataError:
        raise ConflictError("Evidence changed while confirming; retry")

    log.info("evidence_upload_confirmed evidence_id=%s tags=%s", evidence.id, evidence.tags)

    # ingestion may already have published a document without these fields
    if evidence.status == EvidenceStatus.COMPLETED.value:
        await _resync_search(clients, evidence)
    return evidence


async def update_tags(
    db: AsyncSession,
    clients: ServiceClients,
    principal: Principal,
    evidence_id: str,
    user_tags: Iterable[str],
) -> Evidence:
    require(principal, Action.WRITE)
    evidence = await require_evidence(db, evidence_id)
    require(principal, Action.WRITE, await evidence_department(db, evidence))

    cleaned = clean_tags(user_tags)

    def _apply(row: Evidence) -> None:
        row.user_tags = cleaned
        row.tags = merge_tags(row.auto_tags or [], cleaned)

    try:
        evidence = await save_evidence(db, evidence, _apply)
    except StaleDataError:
        raise ConflictError("Evidence changed while updating tags; retry")

    if evidence.status == EvidenceStatus.COMPLETED.value:
        await _resync_search(clients, evidence)
    return evidence


async def read_url(
    db: AsyncSession,
    clients: ServiceClients,
    principal: Principal,
    evidence_id: str,
) -> ReadTicket:
    require(principal, Action.READ)
    evidence = await require_evidence(db, evidence_id)
    require(principal, Action.READ, await evidence_department(db, evidence))

    capability = await clients.object_store.read_capability(
        evidence.blob_path_raw,
        clients.settings.read_url_ttl_minutes,
    )
    return ReadTicket(
        evidence_id=evidence.id,
        read_url=capability.url,
        expires_on=capability.expires_on,
    )
