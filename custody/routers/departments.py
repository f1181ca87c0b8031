# custody/routers/departments.py
from fastapi import APIRouter, Depends
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..auth import get_principal
from ..authz import Action, Principal, require
from ..cascade import delete_department
from ..clients import ServiceClients, get_clients
from ..db import get_db
from ..errors import ConflictError
from ..models import Department
from ..queries import get_department, require_department
from ..schemas import DepartmentCreate, DepartmentDeleted, DepartmentOut, DepartmentUpdate

router = APIRouter()


@router.get("/departments", response_model=list[DepartmentOut])
async def list_departments(
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
):
    # reference data: any authenticated caller may read it
    result = await db.execute(select(Department).order_by(Department.name, Department.id))
    return result.scalars().all()


@router.post("/departments", response_model=DepartmentOut, status_code=201)
async def create_department(
    payload: DepartmentCreate,
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
):
    require(principal, Action.ADMINISTER)
    if await get_department(db, payload.id):
        raise ConflictError(f"Department '{payload.id}' already exists")

    department = Department(
        id=payload.id,
        name=payload.name,
        description=payload.description,
        created_by=principal.subject,
    )
    db.add(department)
    await db.commit()
    await db.refresh(department)
    return department


@router.patch("/departments/{department_id}", response_model=DepartmentOut)
async def update_department(
    department_id: str,
    payload: DepartmentUpdate,
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
):
    require(principal, Action.ADMINISTER)
    department = await require_department(db, department_id)

    if payload.name is not None:
        department.name = payload.name
    if payload.description is not None:
        department.description = payload.description

    await db.commit()
    await db.refresh(department)
    return department


@router.delete("/departments/{department_id}", response_model=DepartmentDeleted)
async def remove_department(
    department_id: str,
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
    clients: ServiceClients = Depends(get_clients),
):
    require(principal, Action.ADMINISTER)
    department = await require_department(db, department_id)

    report = await delete_department(db, clients, department)
    return DepartmentDeleted(
        department_id=department_id,
        deleted_cases=report.deleted_cases,
        deleted_evidence=report.deleted_evidence,
        warnings=report.warnings,
    )
