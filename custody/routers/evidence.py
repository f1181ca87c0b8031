# custody/routers/evidence.py
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from .. import uploads
from ..auth import get_principal
from ..authz import Action, Principal, require, scoped_department
from ..cascade import delete_evidence
from ..clients import ServiceClients, get_clients
from ..db import get_db
from ..queries import evidence_department, list_case_evidence, require_case, require_evidence
from ..schemas import (
    EvidenceDeleted,
    EvidenceList,
    EvidenceOut,
    EvidenceStatusOut,
    ReadTicketOut,
    SearchResponse,
    TagsUpdate,
    UploadConfirm,
    UploadInit,
    UploadTicketOut,
)
from ..search import clamp_page

router = APIRouter(prefix="/evidence")


async def _readable_evidence(db: AsyncSession, principal: Principal, evidence_id: str):
    require(principal, Action.READ)
    evidence = await require_evidence(db, evidence_id)
    require(principal, Action.READ, await evidence_department(db, evidence))
    return evidence


@router.post("/upload-init", response_model=UploadTicketOut, status_code=201)
async def upload_init(
    payload: UploadInit,
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
    clients: ServiceClients = Depends(get_clients),
):
    return await uploads.initiate(
        db,
        clients,
        principal,
        payload.case_id,
        payload.file_name,
        content_type=payload.content_type,
        file_size=payload.file_size,
    )


@router.post("/upload-confirm", response_model=EvidenceOut)
async def upload_confirm(
    payload: UploadConfirm,
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
    clients: ServiceClients = Depends(get_clients),
):
    return await uploads.confirm(
        db,
        clients,
        principal,
        payload.evidence_id,
        payload.case_id,
        description=payload.description,
        tags=payload.tags,
    )


@router.get("", response_model=EvidenceList)
async def list_evidence(
    case_id: str = Query(min_length=1),
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
):
    require(principal, Action.READ)
    case = await require_case(db, case_id)
    require(principal, Action.READ, case.department)
    return EvidenceList(items=await list_case_evidence(db, case.id))


# declared before /{evidence_id} so "search" is not taken for an id
@router.get("/search", response_model=SearchResponse)
async def search_evidence(
    q: Optional[str] = None,
    case_id: Optional[str] = None,
    status: Optional[str] = None,
    tag: Optional[str] = None,
    top: Optional[int] = None,
    skip: Optional[int] = None,
    principal: Principal = Depends(get_principal),
    clients: ServiceClients = Depends(get_clients),
):
    require(principal, Action.READ)
    # case officers only ever see their own department, whatever they ask for
    department = scoped_department(principal)
    top, skip = clamp_page(top, skip)

    results = await clients.search.query(
        q,
        case_id=case_id,
        status=status,
        tag=tag,
        department=department,
        top=top,
        skip=skip,
    )
    return SearchResponse(count=results.count, top=top, skip=skip, results=results.results)


@router.get("/{evidence_id}", response_model=EvidenceOut)
async def get_evidence(
    evidence_id: str,
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
):
    return await _readable_evidence(db, principal, evidence_id)


@router.get("/{evidence_id}/status", response_model=EvidenceStatusOut)
async def get_evidence_status(
    evidence_id: str,
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
):
    return await _readable_evidence(db, principal, evidence_id)


@router.get("/{evidence_id}/read-url", response_model=ReadTicketOut)
async def get_read_url(
    evidence_id: str,
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
    clients: ServiceClients = Depends(get_clients),
):
    return await uploads.read_url(db, clients, principal, evidence_id)


@router.patch("/{evidence_id}/tags", response_model=EvidenceOut)
async def update_tags(
    evidence_id: str,
    payload: TagsUpdate,
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
    clients: ServiceClients = Depends(get_clients),
):
    return await uploads.update_tags(db, clients, principal, evidence_id, payload.tags)


@router.delete("/{evidence_id}", response_model=EvidenceDeleted)
async def remove_evidence(
    evidence_id: str,
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
    clients: ServiceClients = Depends(get_clients),
):
    require(principal, Action.DELETE)
    evidence = await require_evidence(db, evidence_id)
    require(principal, Action.DELETE, await evidence_department(db, evidence))

    report = await delete_evidence(db, clients, evidence)
    return EvidenceDeleted(evidence_id=evidence_id, warnings=report.warnings)
