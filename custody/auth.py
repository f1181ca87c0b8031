# custody/auth.py
import hmac
from typing import Optional

from fastapi import Depends, Header, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from .authz import Principal, load_department_assignment
from .clients import ServiceClients, get_clients
from .config import settings
from .db import get_db
from .errors import NotAuthenticatedError
from .identity import claims_to_principal

bearer = HTTPBearer(auto_error=False)


def require_api_key(x_api_key: str = Header(None)):
    if not settings.api_key:
        raise HTTPException(status_code=500, detail="API_KEY is not configured")
    if not x_api_key or not hmac.compare_digest(x_api_key, settings.api_key):
        raise HTTPException(status_code=401, detail="Invalid or missing API key")


async def authenticate(
    creds: Optional[HTTPAuthorizationCredentials] = Depends(bearer),
    clients: ServiceClients = Depends(get_clients),
) -> Principal:
    if not creds:
        raise NotAuthenticatedError("Missing Authorization Bearer token")
    claims = await clients.tokens.verify(creds.credentials)
    return claims_to_principal(claims)


async def get_principal(
    principal: Principal = Depends(authenticate),
    db: AsyncSession = Depends(get_db),
) -> Principal:
    # looked up on every request: the assignment gates authorization
    return await load_department_assignment(db, principal)
