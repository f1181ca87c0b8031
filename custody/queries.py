import logging
from typing import Callable, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from .errors import NotFoundError
from .models import Case, Department, Evidence

log = logging.getLogger(__name__)

SAVE_ATTEMPTS = 3


async def get_department(db: AsyncSession, department_id: str) -> Optional[Department]:
    return await db.get(Department, department_id)


async def get_case(db: AsyncSession, case_id: str) -> Optional[Case]:
    return await db.get(Case, case_id)


async def get_evidence(db: AsyncSession, evidence_id: str) -> Optional[Evidence]:
    return await db.get(Evidence, evidence_id)


async def require_department(db: AsyncSession, department_id: str) -> Department:
    department = await get_department(db, department_id)
    if not department:
        raise NotFoundError("Department not found")
    return department


async def require_case(db: AsyncSession, case_id: str) -> Case:
    case = await get_case(db, case_id)
    if not case:
        raise NotFoundError("Case not found")
    return case


async def require_evidence(db: AsyncSession, evidence_id: str) -> Evidence:
    evidence = await get_evidence(db, evidence_id)
    if not evidence:
        raise NotFoundError("Evidence not found")
    return evidence


async def evidence_department(db: AsyncSession, evidence: Evidence) -> str:
    """Owning department of an evidence row, falling back to its case."""
    if evidence.department:
        return evidence.department
    case = await get_case(db, evidence.case_id)
    if not case:
        raise NotFoundError("Evidence not found")
    return case.department


async def list_case_evidence(db: AsyncSession, case_id: str) -> list[Evidence]:
    result = await db.execute(
        select(Evidence)
        .where(Evidence.case_id == case_id)
        .order_by(Evidence.uploaded_at.desc(), Evidence.id)
    )
    return list(result.scalars().all())


async def count_case_evidence(db: AsyncSession, case_id: str) -> int:
    result = await db.execute(
        select(func.count()).select_from(Evidence).where(Evidence.case_id == case_id)
    )
    return int(result.scalar_one())


async def list_department_cases(db: AsyncSession, department_id: str) -> list[Case]:
    result = await db.execute(
        select(Case).where(Case.department == department_id).order_by(Case.created_at, Case.id)
    )
    return list(result.scalars().all())


async def reload_evidence(db: AsyncSession, evidence_id: str) -> Optional[Evidence]:
    """Fresh copy of the row, overwriting whatever the session holds."""
    return await db.get(Evidence, evidence_id, populate_existing=True)


async def save_evidence(
    db: AsyncSession,
    evidence: Evidence,
    apply: Callable[[Evidence], None],
    *,
    attempts: int = SAVE_ATTEMPTS,
) -> Evidence:
    """Run ``apply`` on the row and commit it under the version guard.

    When another writer updated the row first, the session is rolled back,
    the row is re-read and ``apply`` runs again on the fresh copy, so both
    writers' changes survive. ``apply`` may raise to abandon the write after
    looking at the fresh row.

    Raises NotFoundError if the row was deleted in the meantime, and
    StaleDataError once ``attempts`` are used up.
    """
    evidence_id = evidence.id
    attempt = 1
    while True:
        apply(evidence)
        try:
            await db.commit()
            return evidence
        except StaleDataError:
            await db.rollback()
            if attempt >= attempts:
                raise

        log.info("evidence_write_retry evidence_id=%s attempt=%d", evidence_id, attempt)
        evidence = await reload_evidence(db, evidence_id)
        if evidence is None:
            raise NotFoundError("Evidence not found")
        attempt += 1
