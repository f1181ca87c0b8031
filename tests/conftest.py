import os

# before custody.config is imported anywhere
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker
from sqlalchemy.pool import StaticPool

from custody.auth import authenticate
from custody.authz import Principal, Role
from custody.clients import ServiceClients, get_clients
from custody.config import settings
from custody.db import Base, get_db
from custody.errors import UpstreamServiceError
from custody.extraction import ExtractionResult, classify_file_type
from custody.main import app
from custody.models import Case, Department, Evidence, EvidenceStatus, UserRecord, utcnow
from custody.search import SearchResults, clamp_page
from custody.storage import Capability, build_blob_path

settings.api_key = "test-api-key"   # override before any tests run

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


# --- in-memory stand-ins for the external services ---


class FakeObjectStore:
    raw_container = "evidence-raw"
    derived_container = "evidence-derived"

    def __init__(self):
        self.objects: dict[tuple[str, str], bytes] = {}
        self.fail_deletes = False

    def put(self, path: str, content: bytes = b"data", container: Optional[str] = None):
        self.objects[(container or self.raw_container, path)] = content

    def keys(self, container: Optional[str] = None) -> list[str]:
        container = container or self.raw_container
        return sorted(p for c, p in self.objects if c == container)

    def _capability(self, verb, path, ttl_minutes, container):
        now = datetime.now(timezone.utc)
        blob_url = f"http://store.test/{container}/{path}"
        return Capability(
            url=f"{blob_url}?verb={verb}&ttl={ttl_minutes}",
            blob_path=path,
            blob_url=blob_url,
            starts_on=now - timedelta(minutes=2),
            expires_on=now + timedelta(minutes=ttl_minutes),
        )

    async def upload_capability(self, path, ttl_minutes, content_type=None, container=None):
        return self._capability("put", path, ttl_minutes, container or self.raw_container)

    async def read_capability(self, path, ttl_minutes, container=None):
        return self._capability("get", path, ttl_minutes, container or self.raw_container)

    async def exists(self, path, container=None):
        return (container or self.raw_container, path) in self.objects

    async def read_bytes(self, path, container=None):
        try:
            return self.objects[(container or self.raw_container, path)]
        except KeyError:
            raise UpstreamServiceError(
                f"object store read failed: {path}",
                service="object_store",
                status_code=404,
                error_code="NoSuchKey",
            )

    async def delete_prefix(self, prefix, container=None):
        container = container or self.raw_container
        if self.fail_deletes:
            raise UpstreamServiceError("object store list failed: timeout", service="object_store")
        doomed = [k for k in self.objects if k[0] == container and k[1].startswith(prefix)]
        for key in doomed:
            del self.objects[key]
        return len(doomed)


class FakeSearch:
    def __init__(self):
        self.documents: dict[str, dict] = {}
        self.published: list[str] = []
        self.removed: list[str] = []
        self.queries: list[dict] = []
        self.fail_publish = False
        self.fail_remove = False

    async def publish(self, document):
        if self.fail_publish:
            raise UpstreamServiceError(
                "search publish failed: unavailable",
                service="search",
                status_code=503,
            )
        self.documents[document.id] = document.model_dump(mode="json")
        self.published.append(document.id)

    async def remove(self, ids):
        if self.fail_remove:
            raise UpstreamServiceError("search remove failed: unavailable", service="search")
        for doc_id in ids:
            self.removed.append(doc_id)
            self.documents.pop(doc_id, None)

    async def query(self, text=None, *, case_id=None, status=None, tag=None,
                    department=None, top=None, skip=None):
        top, skip = clamp_page(top, skip)
        self.queries.append(
            {"text": text, "case_id": case_id, "status": status, "tag": tag,
             "department": department, "top": top, "skip": skip}
        )
        hits = [
            d for d in self.documents.values()
            if (not department or d["department"] == department)
            and (not case_id or d["case_id"] == case_id)
            and (not status or d["status"] == status)
            and (not tag or tag in d["tags"])
            and (not text or text == "*" or text.lower() in (d.get("extracted_text") or "").lower())
        ]
        return SearchResults(count=len(hits), results=hits[skip:skip + top])


class FakeExtractor:
    def __init__(self):
        self.calls: list[str] = []
        self.result = ExtractionResult(text="suspect seen near the warehouse", lines=1, language="en")
        self.error: Optional[Exception] = None

    async def extract(self, content, file_type):
        self.calls.append(file_type)
        if self.error:
            raise self.error
        return self.result


# --- database ---


@pytest_asyncio.fixture
async def test_engine():
    """A fresh in-memory database per test; StaticPool keeps the one connection alive."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return async_sessionmaker(test_engine, expire_on_commit=False)


@pytest_asyncio.fixture
async def file_session_factory(tmp_path):
    """A file-backed database, so concurrent sessions get separate connections."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'custody.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, expire_on_commit=False)

    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def clients():
    return ServiceClients(
        object_store=FakeObjectStore(),
        search=FakeSearch(),
        extractor=FakeExtractor(),
        tokens=None,
        settings=settings,
    )


@pytest_asyncio.fixture
async def client(db_session, clients):
    """
    Async HTTP client against the app, with the test session and the fake
    service clients swapped in through dependency_overrides.
    """
    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_clients] = lambda: clients

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
def login():
    """
    Pretend a verified token for the given roles was presented.

    The department assignment still comes from the users table, exactly as
    in production.
    """
    def _login(*roles: str, subject: str = "user-1") -> Principal:
        principal = Principal(
            subject=subject,
            roles=frozenset(Role(r) for r in roles),
            tenant="tenant-1",
            username=f"{subject}@police.test",
            display_name=subject.title(),
        )
        app.dependency_overrides[authenticate] = lambda: principal
        return principal

    return _login


@pytest.fixture
def auth_headers():
    return {"X-API-Key": "test-api-key"}


# --- seed data ---


class Seed:
    def __init__(self, db, store: FakeObjectStore):
        self.db = db
        self.store = store

    async def department(self, id: str = "district_a", name: Optional[str] = None) -> Department:
        department = Department(id=id, name=name or id.replace("_", " ").title(), created_by="seed")
        self.db.add(department)
        await self.db.commit()
        return department

    async def user(self, subject: str, department: Optional[str] = None, roles=()) -> UserRecord:
        user = UserRecord(id=subject, roles=list(roles), department=department)
        self.db.add(user)
        await self.db.commit()
        return user

    async def case(self, department: str = "district_a", title: str = "Warehouse burglary") -> Case:
        case = Case(id=str(uuid.uuid4()), department=department, title=title, created_by="seed")
        self.db.add(case)
        await self.db.commit()
        return case

    async def evidence(
        self,
        case: Case,
        file_name: str = "statement.txt",
        status: EvidenceStatus = EvidenceStatus.UPLOADED,
        uploaded: bool = True,
        content: bytes = b"witness statement",
        **fields,
    ) -> Evidence:
        evidence_id = str(uuid.uuid4())
        path = build_blob_path(case.id, evidence_id, file_name)
        file_type = classify_file_type(file_name)
        values = dict(
            id=evidence_id,
            case_id=case.id,
            department=case.department,
            file_name=file_name,
            file_type=file_type,
            blob_path_raw=path,
            blob_url_raw=f"http://store.test/evidence-raw/{path}",
            uploaded_by="seed",
            user_tags=[],
            auto_tags=[file_type],
            tags=[file_type],
            status=status.value,
            status_updated_at=utcnow(),
        )
        values.update(fields)
        evidence = Evidence(**values)
        self.db.add(evidence)
        await self.db.commit()
        if uploaded:
            self.store.put(path, content)
        return evidence


@pytest.fixture
def seed(db_session, clients):
    return Seed(db_session, clients.object_store)


@pytest.fixture
def make_seed(clients):
    """Seed helper bound to a session of the caller's choosing."""
    return lambda db: Seed(db, clients.object_store)
