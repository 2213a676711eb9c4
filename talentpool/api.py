"""FastAPI app: ingestion triggers, embedding queue control and repair sweeps.

Every response uses the same envelope: ``{success, data, error, message}``.
Callers are rate limited per identity (``X-Caller-Id`` header, falling back
to the client host) by the limiter created in the lifespan.
"""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Any

from fastapi import APIRouter, Depends, FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from starlette.exceptions import HTTPException as StarletteHTTPException

from ai.embeddings import EmbeddingError, EmbeddingProvider, get_default_provider

from .config import settings
from .db import get_session, get_session_factory
from .errors import CandidateNotFoundError, InvalidPayloadError, PipelineError, WriteConflictError
from .logging_config import setup_logging
from .models import Candidate, CandidateSource, JobKind
from .pipelines.ingest import ingest_batch
from .pipelines.processing import process_pending_jobs
from .pipelines.queue import enqueue, enqueue_for_candidate, queue_stats
from .pipelines.repair import reclaim_stale_jobs, run_merge_backfill, run_queue_reconciliation
from .rate_limit import RateLimitDecision, RateLimiter

logger = logging.getLogger(__name__)

CALLER_HEADER = "X-Caller-Id"


# Pydantic request/response models
class ApiResponse(BaseModel):
    """Response envelope shared by every endpoint."""
    success: bool
    data: Any = None
    error: str | None = None
    message: str | None = None


class IngestRequest(BaseModel):
    """Batch of raw payloads from one source run."""
    run_id: str | None = Field(default=None, max_length=255, description="External run/sync id")
    payloads: list[Any] = Field(min_length=1)
    base_priority: int | None = Field(default=None, ge=0, le=999)


class EnqueueRequest(BaseModel):
    """Manual enqueue for one candidate."""
    candidate_id: int = Field(ge=1)
    kind: JobKind | None = Field(default=None, description="Omit to pick the kind from the candidate's data")
    base_priority: int | None = Field(default=None, ge=0, le=999)


class RunQueueRequest(BaseModel):
    batch_size: int | None = Field(default=None, ge=1, le=100)
    max_jobs: int | None = Field(default=None, ge=1, le=10000)
    delay_seconds: float | None = Field(default=None, ge=0.0, le=60.0)


class BackfillRequest(BaseModel):
    limit: int | None = Field(default=None, ge=1, le=100000)
    force_rewrite: bool = False


class ReconciliationRequest(BaseModel):
    limit: int | None = Field(default=None, ge=1, le=100000)
    base_priority: int | None = Field(default=None, ge=0, le=999)


class ReclaimRequest(BaseModel):
    stale_after_minutes: int | None = Field(default=None, ge=1)


class RateLimitExceeded(Exception):
    """Raised by the rate-limit dependency; rendered as HTTP 429."""

    def __init__(self, identifier: str, decision: RateLimitDecision) -> None:
        super().__init__(f"Rate limit exceeded for {identifier}")
        self.identifier = identifier
        self.decision = decision


def _envelope(
    status_code: int,
    *,
    error: str,
    message: str,
    data: Any = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ApiResponse(success=False, data=data, error=error, message=message).model_dump(),
        headers=headers,
    )


def _ok(data: Any = None, message: str | None = None) -> ApiResponse:
    return ApiResponse(success=True, data=data, message=message)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup/shutdown logic."""
    setup_logging()
    if not hasattr(app.state, "rate_limiter"):
        app.state.rate_limiter = RateLimiter(
            max_requests=settings.rate_limit.max_requests,
            window_seconds=settings.rate_limit.window_seconds,
        )
    logger.info("Application starting up")

    yield

    logger.info("Application shutting down")


app = FastAPI(
    title=settings.app_name,
    version=settings.version,
    description="Candidate identity resolution and embedding job pipeline",
    lifespan=lifespan,
)


# Dependencies
def get_embedding_provider() -> EmbeddingProvider:
    return get_default_provider()


def caller_identity(request: Request) -> str:
    caller = request.headers.get(CALLER_HEADER, "").strip()
    if caller:
        return caller
    return request.client.host if request.client else "anonymous"


async def enforce_rate_limit(request: Request) -> None:
    if not settings.rate_limit.enabled:
        return
    limiter: RateLimiter | None = getattr(request.app.state, "rate_limiter", None)
    if limiter is None:
        return
    identifier = caller_identity(request)
    decision = limiter.check(identifier)
    if not decision.allowed:
        logger.warning(f"Rate limit exceeded for caller {identifier!r} on {request.url.path}")
        raise RateLimitExceeded(identifier, decision)


# Exception handlers
@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded):
    limiter: RateLimiter = request.app.state.rate_limiter
    retry_after = int(limiter.seconds_until_reset(exc.decision)) + 1
    return _envelope(
        status.HTTP_429_TOO_MANY_REQUESTS,
        error="rate_limited",
        message=str(exc),
        data={"remaining": exc.decision.remaining, "retry_after_seconds": retry_after},
        headers={"Retry-After": str(retry_after), "X-RateLimit-Remaining": "0"},
    )


@app.exception_handler(PipelineError)
async def pipeline_error_handler(request: Request, exc: PipelineError):
    """Map pipeline errors to envelope responses."""
    if isinstance(exc, InvalidPayloadError):
        code, error = status.HTTP_400_BAD_REQUEST, "invalid_payload"
    elif isinstance(exc, CandidateNotFoundError):
        code, error = status.HTTP_404_NOT_FOUND, "not_found"
    elif isinstance(exc, WriteConflictError):
        code, error = status.HTTP_409_CONFLICT, "write_conflict"
    else:
        code, error = status.HTTP_500_INTERNAL_SERVER_ERROR, "pipeline_error"
    logger.error(f"{type(exc).__name__} on {request.url.path}: {exc}")
    return _envelope(code, error=error, message=str(exc))


@app.exception_handler(EmbeddingError)
async def embedding_error_handler(request: Request, exc: EmbeddingError):
    logger.error(f"Embedding provider error: {exc}")
    return _envelope(status.HTTP_502_BAD_GATEWAY, error="embedding_error", message=str(exc))


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    return _envelope(
        422,
        error="validation_error",
        message="Request validation failed",
        data=jsonable_errors(exc),
    )


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return _envelope(exc.status_code, error="http_error", message=str(exc.detail))


def jsonable_errors(exc: RequestValidationError) -> list[dict[str, Any]]:
    return [
        {"loc": list(err.get("loc", ())), "msg": err.get("msg"), "type": err.get("type")}
        for err in exc.errors()
    ]


@app.get("/health", response_model=ApiResponse)
async def health() -> ApiResponse:
    """Health check endpoint."""
    return _ok({"status": "ok", "version": settings.version})


router = APIRouter(dependencies=[Depends(enforce_rate_limit)])


@router.post("/ingest/{source}", response_model=ApiResponse)
async def ingest(
    source: CandidateSource,
    body: IngestRequest,
    session: AsyncSession = Depends(get_session),
) -> ApiResponse:
    """Ingest a batch of raw payloads from one source.

    Each payload is stored, resolved, merged and, when content changed,
    queued for embedding. Per-item failures are reported, not raised.
    """
    if len(body.payloads) > settings.ingest.max_payloads_per_request:
        raise InvalidPayloadError(
            f"At most {settings.ingest.max_payloads_per_request} payloads per request, got {len(body.payloads)}"
        )
    logger.info(f"Received {len(body.payloads)} {source.value} payloads (run {body.run_id})")

    report = await ingest_batch(
        session,
        source,
        body.payloads,
        external_run_id=body.run_id,
        base_priority=body.base_priority,
    )
    return _ok(
        report.to_dict(),
        f"Ingested {report.received} payloads: {report.created} created, {report.updated} updated, "
        f"{report.failed} failed",
    )


@router.post("/embed/queue", response_model=ApiResponse)
async def queue_embedding(
    body: EnqueueRequest,
    session: AsyncSession = Depends(get_session),
) -> ApiResponse:
    """Manually enqueue embedding work for one candidate."""
    candidate = await session.get(Candidate, body.candidate_id)
    if candidate is None:
        raise CandidateNotFoundError(f"Candidate {body.candidate_id} not found")

    if body.kind is None:
        results = await enqueue_for_candidate(session, candidate, body.base_priority)
    else:
        results = [
            await enqueue(session, candidate.id, body.kind, body.base_priority, fields=candidate, source=candidate.source)
        ]
    await session.commit()

    jobs = [{"job_id": r.job_id, "created": r.created} for r in results]
    created = sum(1 for r in results if r.created)
    return _ok({"candidate_id": candidate.id, "jobs": jobs}, f"{created} job(s) queued")


@router.post("/embed/queue/run", response_model=ApiResponse)
async def run_queue(
    body: RunQueueRequest | None = None,
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    provider: EmbeddingProvider = Depends(get_embedding_provider),
) -> ApiResponse:
    """Run one worker invocation over the pending queue."""
    body = body or RunQueueRequest()
    report = await process_pending_jobs(
        session_factory,
        provider,
        batch_size=body.batch_size,
        max_jobs=body.max_jobs,
        delay_seconds=body.delay_seconds,
    )
    return _ok(
        report.to_dict(),
        f"Processed {report.processed} jobs: {report.succeeded} succeeded, {report.failed} failed",
    )


@router.get("/embed/stats", response_model=ApiResponse)
async def embed_stats(session: AsyncSession = Depends(get_session)) -> ApiResponse:
    """Queue counts by status and kind, plus candidate embedding status counts."""
    stats = await queue_stats(session)
    rows = await session.execute(
        select(Candidate.embedding_status, func.count()).group_by(Candidate.embedding_status)
    )
    stats["candidates_by_embedding_status"] = {str(getattr(s, "value", s)): count for s, count in rows.all()}
    return _ok(stats)


@router.post("/repair/merge-backfill", response_model=ApiResponse)
async def merge_backfill(
    body: BackfillRequest | None = None,
    session: AsyncSession = Depends(get_session),
) -> ApiResponse:
    """Fill empty identity fields by replaying stored raw payloads."""
    body = body or BackfillRequest()
    report = await run_merge_backfill(session, limit=body.limit, force_rewrite=body.force_rewrite)
    return _ok(report.to_dict(), f"Backfill updated {report.updated} of {report.scanned} candidates")


@router.post("/repair/queue-reconciliation", response_model=ApiResponse)
async def queue_reconciliation(
    body: ReconciliationRequest | None = None,
    session: AsyncSession = Depends(get_session),
) -> ApiResponse:
    """Remove duplicate pending jobs and queue work for unembedded candidates."""
    body = body or ReconciliationRequest()
    report = await run_queue_reconciliation(session, limit=body.limit, base_priority=body.base_priority)
    return _ok(
        report.to_dict(),
        f"Queued {report.queued} candidates, removed {report.duplicates_removed} duplicate jobs",
    )


@router.post("/repair/reclaim-stale", response_model=ApiResponse)
async def reclaim_stale(
    body: ReclaimRequest | None = None,
    session: AsyncSession = Depends(get_session),
) -> ApiResponse:
    """Return abandoned in_progress jobs to the queue."""
    body = body or ReclaimRequest()
    stale_after = timedelta(minutes=body.stale_after_minutes) if body.stale_after_minutes else None
    report = await reclaim_stale_jobs(session, stale_after)
    return _ok(report.to_dict(), f"Reclaimed {report.reclaimed} stale jobs")


app.include_router(router)
