import enum
import logging
from dataclasses import dataclass
from typing import Any, Optional
from urllib.parse import unquote_plus

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from .clients import ServiceClients
from .errors import NotFoundError
from .extraction import ExtractionResult, needs_extraction
from .models import Evidence, EvidenceStatus, utcnow
from .queries import get_case, get_evidence, reload_evidence, require_evidence, save_evidence
from .search import SearchDocument
from .storage import parse_blob_path

log = logging.getLogger(__name__)

MAX_ERROR_LENGTH = 4000


class IngestOutcome(str, enum.Enum):
    IGNORED = "ignored"
    NOT_FOUND = "not_found"
    ALREADY_COMPLETED = "already_completed"
    SUPERSEDED = "superseded"
    COMPLETED = "completed"


@dataclass(frozen=True)
class ObjectCreatedEvent:
    container: str
    path: str


def parse_object_created(payload: dict[str, Any]) -> list[ObjectCreatedEvent]:
    """Pull (bucket, key) pairs out of an S3-style event notification.

    Keys arrive URL-encoded (spaces as '+'). Records that are not
    object-created events, or that lack a bucket or key, are skipped.
    """
    events: list[ObjectCreatedEvent] = []
    for record in payload.get("Records") or []:
        name = record.get("eventName") or ""
        if name and "ObjectCreated" not in name:
            continue
        s3 = record.get("s3") or {}
        bucket = (s3.get("bucket") or {}).get("name")
        key = (s3.get("object") or {}).get("key")
        if not bucket or not key:
            log.warning("object_created_record_incomplete record=%s", record)
            continue
        events.append(ObjectCreatedEvent(container=bucket, path=unquote_plus(key)))
    return events


def describe_failure(exc: BaseException) -> str:
    """``<message> | status=<code> | code=<code> | name=<class>``, absent parts left out."""
    message = getattr(exc, "detail", None) or str(exc) or type(exc).__name__
    parts = [message]
    status = getattr(exc, "status_code", None)
    if status is not None:
        parts.append(f"status={status}")
    code = getattr(exc, "error_code", None)
    if code:
        parts.append(f"code={code}")
    parts.append(f"name={type(exc).__name__}")
    return " | ".join(parts)[:MAX_ERROR_LENGTH]


class _Superseded(Exception):
    """Another delivery already claimed or completed the row."""


def _is_completed(evidence: Evidence) -> bool:
    return evidence.status == EvidenceStatus.COMPLETED.value and evidence.processed_at is not None


def _mark_completed(evidence: Evidence, result: Optional[ExtractionResult]) -> None:
    if _is_completed(evidence):
        raise _Superseded()
    if result is not None:
        evidence.extracted_text = result.text
        evidence.ocr_lines = result.lines
        evidence.ocr_language = result.language
    now = utcnow()
    evidence.status = EvidenceStatus.COMPLETED.value
    evidence.status_updated_at = now
    evidence.processed_at = now


async def _record_failure(db: AsyncSession, evidence_id: str, exc: BaseException) -> None:
    def _mark_failed(evidence: Evidence) -> None:
        evidence.status = EvidenceStatus.FAILED.value
        evidence.status_updated_at = utcnow()
        evidence.processing_error = describe_failure(exc)

    try:
        evidence = await reload_evidence(db, evidence_id)
        if evidence is None:
            log.warning("evidence_ingest_failure_record_gone evidence_id=%s", evidence_id)
            return
        await save_evidence(db, evidence, _mark_failed)
    except (SQLAlchemyError, NotFoundError):
        # the original failure is what the caller needs to see
        log.exception("evidence_ingest_failure_not_recorded evidence_id=%s", evidence_id)
        await db.rollback()


async def _ingest(db: AsyncSession, clients: ServiceClients, evidence: Evidence) -> IngestOutcome:
    evidence_id = evidence.id
    if _is_completed(evidence):
        log.info("evidence_ingest_idempotent_skip evidence_id=%s", evidence_id)
        return IngestOutcome.ALREADY_COMPLETED

    log.info(
        "evidence_ingest_start evidence_id=%s case_id=%s file_type=%s previous_status=%s",
        evidence_id, evidence.case_id, evidence.file_type, evidence.status,
    )

    department = evidence.department
    if not department:
        case = await get_case(db, evidence.case_id)
        if case:
            department = case.department
            log.info(
                "evidence_department_backfilled evidence_id=%s department=%s",
                evidence_id, department,
            )

    claimed_version = evidence.version

    def _claim(row: Evidence) -> None:
        # a version change alone may be a confirm or a tag edit; only another
        # delivery's PROCESSING or COMPLETED write means we lost the claim
        if row.version != claimed_version and (
            row.status == EvidenceStatus.PROCESSING.value or _is_completed(row)
        ):
            raise _Superseded()
        if not row.department:
            row.department = department
        row.status = EvidenceStatus.PROCESSING.value
        row.status_updated_at = utcnow()
        row.processing_error = None

    try:
        evidence = await save_evidence(db, evidence, _claim)
    except (_Superseded, StaleDataError):
        await db.rollback()
        log.info("evidence_ingest_superseded evidence_id=%s", evidence_id)
        return IngestOutcome.SUPERSEDED
    except NotFoundError:
        log.warning("evidence_ingest_record_deleted evidence_id=%s", evidence_id)
        return IngestOutcome.NOT_FOUND

    file_type = evidence.file_type
    blob_path = evidence.blob_path_raw
    try:
        result = None
        if needs_extraction(file_type):
            content = await clients.object_store.read_bytes(blob_path)
            result = await clients.extractor.extract(content, file_type)

        try:
            evidence = await save_evidence(db, evidence, lambda row: _mark_completed(row, result))
        except _Superseded:
            log.info("evidence_ingest_superseded evidence_id=%s", evidence_id)
            return IngestOutcome.SUPERSEDED
        except NotFoundError:
            log.warning("evidence_ingest_record_deleted evidence_id=%s", evidence_id)
            return IngestOutcome.NOT_FOUND

        await clients.search.publish(SearchDocument.from_evidence(evidence))
    except Exception as e:
        # a failed flush leaves the session unusable until rolled back
        await db.rollback()
        log.error(
            "evidence_ingest_failed evidence_id=%s error=%s",
            evidence_id, describe_failure(e),
        )
        await _record_failure(db, evidence_id, e)
        raise

    log.info(
        "evidence_ingest_success evidence_id=%s lines=%s language=%s",
        evidence_id, evidence.ocr_lines, evidence.ocr_language,
    )
    return IngestOutcome.COMPLETED


async def process_evidence(
    db: AsyncSession,
    clients: ServiceClients,
    event: ObjectCreatedEvent,
) -> IngestOutcome:
    if event.container != clients.object_store.raw_container:
        log.debug("evidence_ingest_ignored container=%s path=%s", event.container, event.path)
        return IngestOutcome.IGNORED

    address = parse_blob_path(event.path)
    if address is None:
        # nothing to correlate with; a redelivery would fail the same way
        log.error("evidence_ingest_unroutable path=%s", event.path)
        return IngestOutcome.IGNORED

    evidence = await get_evidence(db, address.evidence_id)
    if not evidence:
        log.warning(
            "evidence_ingest_record_missing evidence_id=%s path=%s",
            address.evidence_id, event.path,
        )
        return IngestOutcome.NOT_FOUND

    if evidence.case_id != address.case_id:
        log.error(
            "evidence_ingest_case_mismatch evidence_id=%s path=%s record_case_id=%s",
            evidence.id, event.path, evidence.case_id,
        )
        return IngestOutcome.IGNORED

    return await _ingest(db, clients, evidence)


async def reprocess(db: AsyncSession, clients: ServiceClients, evidence_id: str) -> IngestOutcome:
    """Redeliver the trigger for an existing record (same gate, same state machine)."""
    evidence = await require_evidence(db, evidence_id)
    return await _ingest(db, clients, evidence)
