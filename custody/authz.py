"""Role and department checks for every investigative operation.

Roles:
- admin: platform governance only, no access to cases or evidence.
- detective: read/write/delete across all departments.
- case_officer: read/write/delete inside the department on their user record.
- prosecutor: read-only across all departments.

A principal may hold several roles. Holding any investigative role opens the
investigative endpoints; admin alone never does.

``authorize`` is a pure function. The only I/O is the department lookup in
``load_department_assignment``, which runs once per request and is never
cached across requests.
"""
import enum
from dataclasses import dataclass, replace
from typing import FrozenSet, Optional, Union

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .errors import (
    AuthorizationError,
    MissingDepartmentAssignmentError,
    MissingRoleError,
    WrongDepartmentError,
)
from .models import UserRecord


class Role(str, enum.Enum):
    ADMIN = "admin"
    DETECTIVE = "detective"
    CASE_OFFICER = "case_officer"
    PROSECUTOR = "prosecutor"


class Action(str, enum.Enum):
    READ = "read"
    WRITE = "write"
    DELETE = "delete"
    ADMINISTER = "administer"


INVESTIGATIVE_ROLES = frozenset({Role.DETECTIVE, Role.CASE_OFFICER, Role.PROSECUTOR})


@dataclass(frozen=True)
class Principal:
    subject: str
    roles: FrozenSet[Role]
    tenant: Optional[str] = None
    username: Optional[str] = None
    display_name: Optional[str] = None
    # filled from the user record, case officers only
    department: Optional[str] = None

    def has_any(self, *roles: Role) -> bool:
        return any(r in self.roles for r in roles)

    @property
    def is_investigator(self) -> bool:
        return bool(self.roles & INVESTIGATIVE_ROLES)


class DenyReason(str, enum.Enum):
    MISSING_ROLE = "missing_role"
    WRONG_DEPARTMENT = "wrong_department"
    MISSING_DEPARTMENT_ASSIGNMENT = "missing_department_assignment"


@dataclass(frozen=True)
class Allow:
    pass


@dataclass(frozen=True)
class Deny:
    reason: DenyReason
    message: str


Decision = Union[Allow, Deny]

ALLOW = Allow()


def _department_scope(principal: Principal, resource_department: Optional[str]) -> Decision:
    if not principal.department:
        return Deny(
            DenyReason.MISSING_DEPARTMENT_ASSIGNMENT,
            "case_officer has no department assignment",
        )
    if resource_department is not None and resource_department != principal.department:
        return Deny(DenyReason.WRONG_DEPARTMENT, "cross-department access denied")
    return ALLOW


def authorize(
    principal: Principal,
    action: Action,
    resource_department: Optional[str] = None,
) -> Decision:
    if action is Action.ADMINISTER:
        if principal.has_any(Role.ADMIN):
            return ALLOW
        return Deny(DenyReason.MISSING_ROLE, "requires role: admin")

    if not principal.is_investigator:
        return Deny(DenyReason.MISSING_ROLE, "requires an investigative role")

    if principal.has_any(Role.DETECTIVE):
        return ALLOW

    if action is Action.READ and principal.has_any(Role.PROSECUTOR):
        return ALLOW

    if principal.has_any(Role.CASE_OFFICER):
        return _department_scope(principal, resource_department)

    # prosecutor asking for write/delete
    return Deny(DenyReason.MISSING_ROLE, f"requires a {action.value} investigative role")


_DENIALS = {
    DenyReason.MISSING_ROLE: MissingRoleError,
    DenyReason.WRONG_DEPARTMENT: WrongDepartmentError,
    DenyReason.MISSING_DEPARTMENT_ASSIGNMENT: MissingDepartmentAssignmentError,
}


def ensure_allowed(decision: Decision) -> None:
    if isinstance(decision, Allow):
        return
    if isinstance(decision, Deny):
        raise _DENIALS[decision.reason](decision.message)
    raise TypeError(f"not an authorization decision: {decision!r}")


def require(
    principal: Principal,
    action: Action,
    resource_department: Optional[str] = None,
) -> None:
    ensure_allowed(authorize(principal, action, resource_department))


def scoped_department(principal: Principal) -> Optional[str]:
    """Department a listing must be restricted to, or None for unrestricted.

    Only a case officer without a cross-department role is restricted.
    """
    if principal.has_any(Role.DETECTIVE, Role.PROSECUTOR):
        return None
    if not principal.has_any(Role.CASE_OFFICER):
        raise MissingRoleError("requires an investigative role")
    if not principal.department:
        raise MissingDepartmentAssignmentError("case_officer has no department assignment")
    return principal.department


async def load_department_assignment(db: AsyncSession, principal: Principal) -> Principal:
    if not principal.has_any(Role.CASE_OFFICER):
        return principal
    if not principal.subject:
        raise AuthorizationError("missing subject claim")

    result = await db.execute(
        select(UserRecord.department).where(UserRecord.id == principal.subject)
    )
    department = result.scalar_one_or_none()
    return replace(principal, department=department or None)
