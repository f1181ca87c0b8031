import uuid

from fastapi import APIRouter, Depends, Response
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..auth import get_principal
from ..authz import Action, Principal, require
from ..db import get_db
from ..errors import NotFoundError
from ..models import CaseNote
from ..queries import require_case
from ..schemas import NoteCreate, NoteOut, NotesList

router = APIRouter()


@router.post("/cases/{case_id}/notes", response_model=NoteOut, status_code=201)
async def add_note(
    case_id: str,
    payload: NoteCreate,
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
):
    require(principal, Action.WRITE)
    case = await require_case(db, case_id)
    require(principal, Action.WRITE, case.department)

    note = CaseNote(
        id=str(uuid.uuid4()),
        case_id=case.id,
        text=payload.text,
        created_by=principal.subject,
    )
    db.add(note)
    await db.commit()
    await db.refresh(note)
    return note


@router.get("/cases/{case_id}/notes", response_model=NotesList)
async def list_notes(
    case_id: str,
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
):
    require(principal, Action.READ)
    case = await require_case(db, case_id)
    require(principal, Action.READ, case.department)

    result = await db.execute(
        select(CaseNote)
        .where(CaseNote.case_id == case_id)
        .order_by(CaseNote.created_at, CaseNote.id)
    )
    return NotesList(items=result.scalars().all())


@router.delete("/cases/{case_id}/notes/{note_id}", status_code=204)
async def delete_note(
    case_id: str,
    note_id: str,
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
):
    require(principal, Action.WRITE)
    case = await require_case(db, case_id)
    require(principal, Action.WRITE, case.department)

    note = await db.get(CaseNote, note_id)
    if not note or note.case_id != case_id:
        raise NotFoundError("Note not found")

    await db.delete(note)
    await db.commit()
    return Response(status_code=204)
