from fastapi import APIRouter, Body, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from ..auth import require_api_key
from ..clients import ServiceClients, get_clients
from ..db import get_db
from ..jobs import parse_object_created, process_evidence, reprocess
from ..schemas import IngestItem, IngestResult, ReprocessResult

router = APIRouter(prefix="/internal", dependencies=[Depends(require_api_key)])


@router.post("/events/object-created", response_model=IngestResult)
async def object_created(
    payload: dict = Body(...),
    db: AsyncSession = Depends(get_db),
    clients: ServiceClients = Depends(get_clients),
):
    # processed inline: a failure surfaces as an error status so the notifier redelivers
    items = []
    for event in parse_object_created(payload):
        outcome = await process_evidence(db, clients, event)
        items.append(IngestItem(container=event.container, path=event.path, outcome=outcome.value))
    return IngestResult(items=items)


@router.post("/evidence/{evidence_id}/reprocess", response_model=ReprocessResult)
async def reprocess_evidence(
    evidence_id: str,
    db: AsyncSession = Depends(get_db),
    clients: ServiceClients = Depends(get_clients),
):
    outcome = await reprocess(db, clients, evidence_id)
    return ReprocessResult(evidence_id=evidence_id, outcome=outcome.value)
