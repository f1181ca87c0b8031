"""Top-down deletes across the database, the object store and the search index.

The database is the authority: its failures abort the cascade. The object
store and the search index are cleaned best-effort; their failures are
logged and collected in ``CascadeReport.warnings`` so the residue can be
reconciled later.
"""
import logging
from dataclasses import dataclass, field

from sqlalchemy.ext.asyncio import AsyncSession

from .clients import ServiceClients
from .errors import UpstreamServiceError
from .models import Case, Department, Evidence
from .queries import count_case_evidence, list_case_evidence, list_department_cases
from .storage import evidence_prefix

log = logging.getLogger(__name__)


@dataclass
class CascadeReport:
    deleted_cases: int = 0
    deleted_evidence: int = 0
    warnings: list[str] = field(default_factory=list)

    def merge(self, other: "CascadeReport") -> None:
        self.deleted_cases += other.deleted_cases
        self.deleted_evidence += other.deleted_evidence
        self.warnings.extend(other.warnings)


def _warn(report: CascadeReport, message: str) -> None:
    log.warning("cascade_cleanup_failed %s", message)
    report.warnings.append(message)


async def delete_evidence(
    db: AsyncSession,
    clients: ServiceClients,
    evidence: Evidence,
) -> CascadeReport:
    report = CascadeReport()
    prefix = evidence_prefix(evidence.case_id, evidence.id)
    store = clients.object_store

    try:
        await clients.search.remove([evidence.id])
    except UpstreamServiceError as e:
        _warn(report, f"search document {evidence.id}: {e.detail}")

    for container in (store.raw_container, store.derived_container):
        try:
            await store.delete_prefix(prefix, container)
        except UpstreamServiceError as e:
            _warn(report, f"blobs {container}/{prefix}: {e.detail}")

    await db.delete(evidence)
    await db.commit()

    report.deleted_evidence = 1
    log.info("evidence_deleted evidence_id=%s case_id=%s", evidence.id, evidence.case_id)
    return report


async def delete_case(db: AsyncSession, clients: ServiceClients, case: Case) -> CascadeReport:
    report = CascadeReport()

    for evidence in await list_case_evidence(db, case.id):
        report.merge(await delete_evidence(db, clients, evidence))

    # notes go with the case through the relationship cascade
    await db.delete(case)
    await db.commit()

    report.deleted_cases = 1
    log.info(
        "case_deleted case_id=%s department=%s evidence=%d warnings=%d",
        case.id, case.department, report.deleted_evidence, len(report.warnings),
    )
    return report


async def delete_department(
    db: AsyncSession,
    clients: ServiceClients,
    department: Department,
) -> CascadeReport:
    report = CascadeReport()

    for case in await list_department_cases(db, department.id):
        expected = await count_case_evidence(db, case.id)
        case_report = await delete_case(db, clients, case)
        if case_report.deleted_evidence != expected:
            log.warning(
                "case_evidence_count_changed case_id=%s expected=%d deleted=%d",
                case.id, expected, case_report.deleted_evidence,
            )
        report.merge(case_report)

    await db.delete(department)
    await db.commit()

    log.info(
        "department_deleted department=%s cases=%d evidence=%d warnings=%d",
        department.id, report.deleted_cases, report.deleted_evidence, len(report.warnings),
    )
    return report
