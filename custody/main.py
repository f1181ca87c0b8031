import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .clients import build_clients
from .config import settings
from .errors import CustodyError, NotAuthenticatedError
from .routers import cases, departments, evidence, internal, notes, users

log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    app.state.clients = build_clients(settings)
    log.info("service clients ready (raw=%s, index=%s)", settings.evidence_bucket_raw, settings.search_index_evidence)
    try:
        yield
    finally:
        await app.state.clients.aclose()


app = FastAPI(title="Evidence Custody API", lifespan=lifespan)

if settings.cors_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )


def _error_body(title: str, detail: str, status: int, code: str) -> dict:
    return {"error": {"title": title, "detail": detail, "status": status, "code": code}}


@app.exception_handler(CustodyError)
async def custody_error_handler(request: Request, exc: CustodyError):
    detail = exc.detail
    if exc.status >= 500:
        # upstream messages can carry hostnames and keys; keep them in the log
        log.error("%s %s failed: %s", request.method, request.url.path, exc.detail)
        detail = exc.title

    headers = {"WWW-Authenticate": "Bearer"} if isinstance(exc, NotAuthenticatedError) else None
    return JSONResponse(
        status_code=exc.status,
        content=_error_body(exc.title, detail, exc.status, exc.code),
        headers=headers,
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    log.exception("unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content=_error_body("Internal server error", "Unexpected failure", 500, "internal_error"),
    )


@app.get("/health")
async def health():
    return {"status": "ok"}


app.include_router(users.router)
app.include_router(departments.router)
app.include_router(cases.router)
app.include_router(notes.router)
app.include_router(evidence.router)
app.include_router(internal.router)
