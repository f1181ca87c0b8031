# custody/routers/users.py
from fastapi import APIRouter, Depends
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..auth import get_principal
from ..authz import Action, Principal, require
from ..db import get_db
from ..errors import ValidationError
from ..models import UserRecord
from ..queries import get_department
from ..schemas import Me, UserOut, UserUpsert

router = APIRouter()


@router.get("/auth/me", response_model=Me)
async def me(principal: Principal = Depends(get_principal)):
    return Me(
        subject=principal.subject,
        tenant=principal.tenant,
        username=principal.username,
        display_name=principal.display_name,
        roles=sorted(r.value for r in principal.roles),
        department=principal.department,
    )


@router.get("/users", response_model=list[UserOut])
async def list_users(
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
):
    require(principal, Action.ADMINISTER)
    result = await db.execute(select(UserRecord).order_by(UserRecord.id))
    return result.scalars().all()


@router.put("/users/{user_id}", response_model=UserOut)
async def upsert_user(
    user_id: str,
    payload: UserUpsert,
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
):
    """Create or replace a user record; this is where a case officer's department is assigned."""
    require(principal, Action.ADMINISTER)
    if payload.department and not await get_department(db, payload.department):
        raise ValidationError(f"Unknown department '{payload.department}'")

    user = await db.get(UserRecord, user_id)
    if not user:
        user = UserRecord(id=user_id)
        db.add(user)

    user.display_name = payload.display_name
    user.email = str(payload.email) if payload.email else None
    user.roles = [r.value for r in payload.roles]
    user.department = payload.department

    await db.commit()
    await db.refresh(user)
    return user
