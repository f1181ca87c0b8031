"""Access-token verification and claim mapping.

Signature verification is delegated to python-jose; this module only fetches
the tenant signing keys and turns verified claims into a ``Principal``.
"""
import asyncio
import logging
import time
from typing import Any, Optional

import httpx
from jose import JWTError, jwt

from .authz import Principal, Role
from .errors import NotAuthenticatedError, UpstreamServiceError

log = logging.getLogger(__name__)

_KNOWN_ROLES = {r.value for r in Role}


class TokenVerifier:
    """Verifies identity-provider access tokens against the tenant's JWKS.

    Signing keys are cached per process. A token signed with a key id the
    cache does not know triggers a refetch, at most one per
    ``refresh_cooldown`` seconds, so rotated keys are picked up without a
    restart. Nothing derived from a particular caller is kept.
    """

    def __init__(
        self,
        http: httpx.AsyncClient,
        tenant_id: str,
        audience: str,
        jwks_url: str,
        refresh_cooldown: float = 30.0,
    ):
        self.http = http
        self.tenant_id = tenant_id
        self.audience = audience
        self.jwks_url = jwks_url.format(tenant_id=tenant_id)
        self.refresh_cooldown = refresh_cooldown
        self._jwks: Optional[dict] = None
        self._last_refresh: Optional[float] = None
        self._lock = asyncio.Lock()

    @property
    def issuers(self) -> list[str]:
        # v1 (sts.windows.net) and v2 (login.microsoftonline.com) issuers
        return [
            f"https://login.microsoftonline.com/{self.tenant_id}/v2.0",
            f"https://sts.windows.net/{self.tenant_id}/",
        ]

    async def signing_keys(self, refresh: bool = False) -> dict:
        if self._jwks is not None and not refresh:
            return self._jwks
        async with self._lock:
            now = time.monotonic()
            cooled = self._last_refresh is None or now - self._last_refresh >= self.refresh_cooldown
            if self._jwks is None or (refresh and cooled):
                if self._jwks is not None:
                    self._last_refresh = now
                try:
                    resp = await self.http.get(self.jwks_url)
                    resp.raise_for_status()
                except httpx.HTTPError as e:
                    if self._jwks is None:
                        raise UpstreamServiceError(f"JWKS fetch failed: {e}", service="identity") from e
                    log.warning("JWKS refresh failed, keeping cached keys: %s", e)
                    return self._jwks
                self._jwks = resp.json()
                log.info("fetched %d signing key(s) from %s", len(self._jwks.get("keys") or []), self.jwks_url)
        return self._jwks

    async def verify(self, token: str) -> dict[str, Any]:
        keys = await self.signing_keys()
        try:
            kid = jwt.get_unverified_header(token).get("kid")
        except JWTError as e:
            log.info("rejected bearer token: %s", e)
            raise NotAuthenticatedError("Invalid bearer token") from e

        if kid and not _has_kid(keys, kid):
            log.info("unknown signing key id %s; refreshing keys", kid)
            keys = await self.signing_keys(refresh=True)

        try:
            return jwt.decode(
                token,
                keys,
                algorithms=["RS256"],
                audience=self.audience,
                issuer=self.issuers,
            )
        except JWTError as e:
            log.info("rejected bearer token: %s", e)
            raise NotAuthenticatedError("Invalid bearer token") from e


def _has_kid(jwks: dict, kid: str) -> bool:
    return any(k.get("kid") == kid for k in jwks.get("keys") or [])


def claims_to_principal(claims: dict[str, Any]) -> Principal:
    raw_roles = claims.get("roles")
    roles = frozenset(
        Role(r) for r in (raw_roles if isinstance(raw_roles, list) else [])
        if isinstance(r, str) and r in _KNOWN_ROLES
    )

    def _str(key: str) -> Optional[str]:
        value = claims.get(key)
        return value if isinstance(value, str) else None

    return Principal(
        subject=_str("oid") or _str("sub") or "",
        roles=roles,
        tenant=_str("tid"),
        username=_str("preferred_username") or _str("upn"),
        display_name=_str("name"),
    )
