import asyncio
import logging
from datetime import datetime
from typing import Any, Iterable, Optional

from opensearchpy import OpenSearch, RequestsHttpConnection
from opensearchpy.exceptions import NotFoundError, OpenSearchException, RequestError
from pydantic import BaseModel

from .config import Settings
from .errors import UpstreamServiceError

log = logging.getLogger(__name__)

MAX_TOP = 100
DEFAULT_TOP = 20

EVIDENCE_MAPPINGS = {
    "properties": {
        "id": {"type": "keyword"},
        "case_id": {"type": "keyword"},
        "department": {"type": "keyword"},
        "file_name": {"type": "text", "fields": {"raw": {"type": "keyword"}}},
        "file_type": {"type": "keyword"},
        "uploaded_at": {"type": "date"},
        "uploaded_by": {"type": "keyword"},
        "status": {"type": "keyword"},
        "description": {"type": "text", "analyzer": "english"},
        "tags": {"type": "keyword"},
        "extracted_text": {"type": "text", "analyzer": "english"},
    }
}

SEARCHABLE_FIELDS = ["file_name", "description", "extracted_text^2", "tags"]


class SearchDocument(BaseModel):
    """Denormalised, non-authoritative projection of an Evidence row."""

    id: str
    case_id: str
    department: Optional[str] = None
    file_name: str
    file_type: str
    uploaded_at: datetime
    uploaded_by: Optional[str] = None
    status: str
    description: Optional[str] = None
    tags: list[str] = []
    extracted_text: Optional[str] = None

    @classmethod
    def from_evidence(cls, evidence) -> "SearchDocument":
        return cls(
            id=evidence.id,
            case_id=evidence.case_id,
            department=evidence.department,
            file_name=evidence.file_name,
            file_type=evidence.file_type,
            uploaded_at=evidence.uploaded_at,
            uploaded_by=evidence.uploaded_by,
            status=evidence.status,
            description=evidence.description,
            tags=list(evidence.tags or []),
            extracted_text=evidence.extracted_text,
        )


class SearchResults(BaseModel):
    count: int
    results: list[dict[str, Any]]


def clamp_page(top: Optional[int], skip: Optional[int]) -> tuple[int, int]:
    top = DEFAULT_TOP if top is None else top
    return max(1, min(top, MAX_TOP)), max(0, skip or 0)


def build_query(
    text: Optional[str] = None,
    *,
    case_id: Optional[str] = None,
    status: Optional[str] = None,
    tag: Optional[str] = None,
    department: Optional[str] = None,
) -> dict[str, Any]:
    """Full-text match AND-ed with exact-value filters.

    Filter values travel as JSON term values, never as query syntax, so a
    value with quotes or operators can only match itself.
    """
    text = (text or "").strip()
    if not text or text == "*":
        must: dict[str, Any] = {"match_all": {}}
    else:
        must = {
            "simple_query_string": {
                "query": text,
                "fields": SEARCHABLE_FIELDS,
                "default_operator": "and",
            }
        }

    filters = []
    if department:
        filters.append({"term": {"department": department}})
    if case_id:
        filters.append({"term": {"case_id": case_id}})
    if status:
        filters.append({"term": {"status": status}})
    if tag:
        # keyword array: matches when any element equals the value
        filters.append({"term": {"tags": tag}})

    return {"bool": {"must": [must], "filter": filters}}


def make_opensearch_client(settings: Settings) -> OpenSearch:
    return OpenSearch(
        hosts=[{"host": settings.opensearch_host, "port": settings.opensearch_port}],
        http_auth=(
            (settings.opensearch_user, settings.opensearch_password)
            if settings.opensearch_user
            else None
        ),
        http_compress=True,
        use_ssl=settings.opensearch_use_ssl,
        verify_certs=settings.opensearch_verify_certs,
        connection_class=RequestsHttpConnection,
        timeout=30,
    )


def _upstream(e: Exception, action: str) -> UpstreamServiceError:
    status = getattr(e, "status_code", None)
    error = getattr(e, "error", None)
    return UpstreamServiceError(
        f"search {action} failed: {e}",
        service="search",
        status_code=status if isinstance(status, int) else None,
        error_code=error if isinstance(error, str) else None,
    )


class SearchIndexManager:
    """Lazily provisions the evidence index and wraps publish/remove/query.

    The ready flag and lock only stop this process from repeating the
    provisioning call; concurrent processes are handled by the create call
    itself tolerating an index that already exists.
    """

    def __init__(self, client: OpenSearch, index_name: str):
        self.client = client
        self.index_name = index_name
        self._ready = False
        self._lock = asyncio.Lock()

    @classmethod
    def from_settings(cls, settings: Settings) -> "SearchIndexManager":
        return cls(make_opensearch_client(settings), settings.search_index_evidence)

    def _create_or_update(self) -> None:
        try:
            self.client.indices.get(index=self.index_name)
        except NotFoundError:
            try:
                self.client.indices.create(
                    index=self.index_name,
                    body={
                        "settings": {"index": {"number_of_shards": 1, "number_of_replicas": 0}},
                        "mappings": EVIDENCE_MAPPINGS,
                    },
                )
                log.info("search index '%s' created", self.index_name)
                return
            except RequestError as e:
                if e.error != "resource_already_exists_exception":
                    raise
                log.info("search index '%s' created concurrently", self.index_name)
        self.client.indices.put_mapping(index=self.index_name, body=EVIDENCE_MAPPINGS)

    async def ensure_index(self) -> None:
        if self._ready:
            return
        async with self._lock:
            if self._ready:
                return
            try:
                await asyncio.to_thread(self._create_or_update)
            except OpenSearchException as e:
                raise _upstream(e, "ensure index") from e
            self._ready = True

    async def publish(self, document: SearchDocument) -> None:
        await self.ensure_index()
        try:
            await asyncio.to_thread(
                self.client.index,
                index=self.index_name,
                id=document.id,
                body=document.model_dump(mode="json"),
                refresh=True,
            )
        except OpenSearchException as e:
            raise _upstream(e, "publish") from e

    def _remove(self, ids: list[str]) -> None:
        for doc_id in ids:
            try:
                self.client.delete(index=self.index_name, id=doc_id)
            except NotFoundError:
                continue

    async def remove(self, ids: Iterable[str]) -> None:
        ids = [i for i in ids if i]
        if not ids:
            return
        try:
            await asyncio.to_thread(self._remove, ids)
        except OpenSearchException as e:
            raise _upstream(e, "remove") from e

    async def query(
        self,
        text: Optional[str] = None,
        *,
        case_id: Optional[str] = None,
        status: Optional[str] = None,
        tag: Optional[str] = None,
        department: Optional[str] = None,
        top: Optional[int] = None,
        skip: Optional[int] = None,
    ) -> SearchResults:
        top, skip = clamp_page(top, skip)
        body = {
            "query": build_query(text, case_id=case_id, status=status, tag=tag, department=department),
            "from": skip,
            "size": top,
            "track_total_hits": True,
        }
        try:
            resp = await asyncio.to_thread(self.client.search, index=self.index_name, body=body)
        except NotFoundError:
            # nothing has been published yet
            return SearchResults(count=0, results=[])
        except OpenSearchException as e:
            raise _upstream(e, "query") from e

        hits = resp.get("hits", {})
        total = hits.get("total", 0)
        count = total.get("value", 0) if isinstance(total, dict) else int(total or 0)
        return SearchResults(count=count, results=[h.get("_source", {}) for h in hits.get("hits", [])])
