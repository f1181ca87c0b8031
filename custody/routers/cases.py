# custody/routers/cases.py
import uuid
from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy import desc, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from ..auth import get_principal
from ..authz import Action, Principal, require, scoped_department
from ..cascade import delete_case
from ..clients import ServiceClients, get_clients
from ..db import get_db
from ..errors import NotFoundError, ValidationError
from ..models import Case, CaseStatus, utcnow
from ..queries import get_department, require_case
from ..schemas import CaseCreate, CaseDeleted, CaseDetail, CaseListResponse, CaseOut, CaseUpdate

router = APIRouter()


@router.get("/cases", response_model=CaseListResponse)
async def list_cases(
    status: Optional[CaseStatus] = None,
    department: Optional[str] = None,
    limit: int = 50,
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
):
    require(principal, Action.READ, department)
    limit = max(1, min(limit, 200))

    q = select(Case)
    scope = scoped_department(principal)
    if scope:
        q = q.where(Case.department == scope)
    if department:
        q = q.where(Case.department == department)
    if status:
        q = q.where(Case.status == status.value)

    result = await db.execute(q.order_by(desc(Case.created_at), Case.id).limit(limit))
    return CaseListResponse(items=result.scalars().all())


@router.post("/cases", response_model=CaseOut, status_code=201)
async def create_case(
    payload: CaseCreate,
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
):
    # authorize against the requested department before revealing whether it exists
    require(principal, Action.WRITE, payload.department)
    if not await get_department(db, payload.department):
        raise ValidationError(f"Unknown department '{payload.department}'")

    case = Case(
        id=str(uuid.uuid4()),
        department=payload.department,
        title=payload.title,
        description=payload.description,
        status=payload.status.value,
        created_by=principal.subject,
    )
    db.add(case)
    await db.commit()
    await db.refresh(case)
    return case


@router.get("/cases/{case_id}", response_model=CaseDetail)
async def get_case(
    case_id: str,
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
):
    require(principal, Action.READ)
    result = await db.execute(
        select(Case).where(Case.id == case_id).options(selectinload(Case.notes))
    )
    case = result.scalar_one_or_none()
    if not case:
        raise NotFoundError("Case not found")

    require(principal, Action.READ, case.department)
    return case


@router.patch("/cases/{case_id}", response_model=CaseOut)
async def update_case(
    case_id: str,
    payload: CaseUpdate,
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
):
    require(principal, Action.WRITE)
    case = await require_case(db, case_id)
    require(principal, Action.WRITE, case.department)

    if payload.title is not None:
        case.title = payload.title
    if payload.description is not None:
        case.description = payload.description
    if payload.status is not None:
        case.status = payload.status.value
    case.updated_at = utcnow()

    await db.commit()
    await db.refresh(case)
    return case


@router.delete("/cases/{case_id}", response_model=CaseDeleted)
async def remove_case(
    case_id: str,
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
    clients: ServiceClients = Depends(get_clients),
):
    require(principal, Action.DELETE)
    case = await require_case(db, case_id)
    require(principal, Action.DELETE, case.department)

    report = await delete_case(db, clients, case)
    return CaseDeleted(
        case_id=case_id,
        deleted_evidence=report.deleted_evidence,
        warnings=report.warnings,
    )
