"""Process-wide service client handles.

Built once at application startup and handed to the core components;
nothing in here depends on who is calling.
"""
from dataclasses import dataclass
from typing import Optional

import httpx
from fastapi import Request

from .config import Settings
from .extraction import TextExtractor
from .identity import TokenVerifier
from .search import SearchIndexManager
from .storage import ObjectStore


@dataclass
class ServiceClients:
    object_store: ObjectStore
    search: SearchIndexManager
    extractor: TextExtractor
    tokens: TokenVerifier
    settings: Settings
    http: Optional[httpx.AsyncClient] = None

    async def aclose(self) -> None:
        if self.http is not None:
            await self.http.aclose()


def build_clients(settings: Settings) -> ServiceClients:
    http = httpx.AsyncClient(timeout=settings.extraction_timeout)
    return ServiceClients(
        object_store=ObjectStore.from_settings(settings),
        search=SearchIndexManager.from_settings(settings),
        extractor=TextExtractor.from_settings(settings, http),
        tokens=TokenVerifier(
            http,
            settings.entra_tenant_id,
            settings.entra_api_audience,
            settings.jwks_url,
        ),
        settings=settings,
        http=http,
    )


def get_clients(request: Request) -> ServiceClients:
    return request.app.state.clients
