"""Embedding job queue: idempotent enqueue, priorities, job-kind selection, claim.

At most one ``pending``/``in_progress`` job exists per ``(candidate_id, kind)``.
Enqueue checks for an active job first and inserts inside a SAVEPOINT; on
PostgreSQL a partial unique index turns a lost race into an IntegrityError,
after which the winning row is read back and returned.
"""
from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from talentpool.config import settings
from talentpool.models import (
    ACTIVE_JOB_STATUSES,
    Candidate,
    CandidateSource,
    EmbeddingJob,
    JobKind,
    JobStatus,
    utcnow,
)

logger = logging.getLogger(__name__)

# Only these kinds move a candidate to embedding_status=completed
COMPLETING_KINDS = frozenset({JobKind.PROFILE, JobKind.FULL_REINDEX})

SOURCE_PRIORITY_WEIGHT: dict[CandidateSource, int] = {
    CandidateSource.MANUAL: 50,
    CandidateSource.CV_UPLOAD: 50,
    CandidateSource.ATS: 30,
    CandidateSource.SCRAPED_NETWORK: 10,
}


@dataclass(frozen=True)
class EnqueueResult:
    job_id: int
    created: bool


def _get(fields: Candidate | Mapping[str, Any] | None, name: str) -> Any:
    if fields is None:
        return None
    if isinstance(fields, Mapping):
        return fields.get(name)
    return getattr(fields, name, None)


def _has_detailed_history(history: Any) -> bool:
    """Employment history with at least one described position."""
    if not isinstance(history, list):
        return False
    return any(isinstance(entry, Mapping) and entry.get("description") for entry in history)


def compute_priority(
    fields: Candidate | Mapping[str, Any] | None,
    source: CandidateSource | str | None,
    base: int | None = None,
) -> int:
    """Job priority from data completeness and source, capped at QUEUE_MAX_PRIORITY."""
    priority = settings.queue.default_base_priority if base is None else base

    employment = _get(fields, "employment_history")
    if _get(fields, "bio"):
        priority += 20
    if _has_detailed_history(employment):
        priority += 20
    if _get(fields, "cv_parsed_text"):
        priority += 30
    if employment:
        priority += 15
    if _get(fields, "skills"):
        priority += 10

    try:
        priority += SOURCE_PRIORITY_WEIGHT.get(CandidateSource(source), 0)
    except ValueError:
        pass

    return max(0, min(priority, settings.queue.max_priority))


def determine_job_kind(
    fields: Candidate | Mapping[str, Any] | None,
    source: CandidateSource | str | None,
) -> JobKind:
    """Pick the embedding job kind that fits the candidate's data."""
    try:
        source = CandidateSource(source)
    except ValueError:
        return JobKind.PROFILE

    has_cv = bool(_get(fields, "cv_parsed_text"))
    has_bio = bool(_get(fields, "bio"))
    has_employment = bool(_get(fields, "employment_history"))

    if source in (CandidateSource.CV_UPLOAD, CandidateSource.MANUAL) and has_cv:
        return JobKind.CV_CHUNKS
    if source is CandidateSource.ATS and (has_bio or has_employment):
        return JobKind.FULL_REINDEX
    if source is CandidateSource.SCRAPED_NETWORK and has_cv:
        return JobKind.FULL_REINDEX
    if source is CandidateSource.MANUAL and has_employment:
        return JobKind.FULL_REINDEX
    return JobKind.PROFILE


def kinds_for_candidate(
    fields: Candidate | Mapping[str, Any] | None,
    source: CandidateSource | str | None,
) -> list[JobKind]:
    """Job kinds to enqueue; a profile job is added when the main kind cannot complete the candidate."""
    kind = determine_job_kind(fields, source)
    if kind in COMPLETING_KINDS:
        return [kind]
    return [kind, JobKind.PROFILE]


async def find_active_job(session: AsyncSession, candidate_id: int, kind: JobKind) -> EmbeddingJob | None:
    stmt = (
        select(EmbeddingJob)
        .where(
            EmbeddingJob.candidate_id == candidate_id,
            EmbeddingJob.kind == kind,
            EmbeddingJob.status.in_(ACTIVE_JOB_STATUSES),
        )
        .order_by(EmbeddingJob.created_at, EmbeddingJob.id)
        .limit(1)
    )
    return (await session.execute(stmt)).scalar_one_or_none()


async def enqueue(
    session: AsyncSession,
    candidate_id: int,
    kind: JobKind,
    base_priority: int | None = None,
    *,
    fields: Candidate | Mapping[str, Any] | None = None,
    source: CandidateSource | str | None = None,
) -> EnqueueResult:
    """Enqueue an embedding job unless an active one already exists.

    Args:
        session: Database session (flushed, not committed)
        candidate_id: Candidate to embed
        kind: Job kind
        base_priority: Base before completeness bonuses
        fields: Candidate or field mapping used for priority bonuses
        source: Candidate source for the source weight

    Returns:
        EnqueueResult with the job id and whether this call created it
    """
    existing = await find_active_job(session, candidate_id, kind)
    if existing is not None:
        logger.debug(f"Job {existing.id} already active for candidate {candidate_id} ({kind.value})")
        return EnqueueResult(existing.id, False)

    if source is None and fields is not None:
        source = _get(fields, "source")
    job = EmbeddingJob(
        candidate_id=candidate_id,
        kind=kind,
        priority=compute_priority(fields, source, base_priority),
        status=JobStatus.PENDING,
        created_at=utcnow(),
    )
    try:
        async with session.begin_nested():
            session.add(job)
    except IntegrityError:
        winner = await find_active_job(session, candidate_id, kind)
        if winner is None:
            raise
        logger.info(f"Lost enqueue race for candidate {candidate_id} ({kind.value}); using job {winner.id}")
        return EnqueueResult(winner.id, False)

    logger.info(
        f"Queued {kind.value} job {job.id} for candidate {candidate_id} (priority {job.priority})"
    )
    return EnqueueResult(job.id, True)


async def enqueue_for_candidate(
    session: AsyncSession,
    candidate: Candidate,
    base_priority: int | None = None,
) -> list[EnqueueResult]:
    """Enqueue every kind the candidate's data calls for."""
    return [
        await enqueue(session, candidate.id, kind, base_priority, fields=candidate, source=candidate.source)
        for kind in kinds_for_candidate(candidate, candidate.source)
    ]


async def claim_job(session: AsyncSession, job_id: int) -> bool:
    """Atomically move a pending job to in_progress; True only for the single winner."""
    stmt = (
        update(EmbeddingJob)
        .where(EmbeddingJob.id == job_id, EmbeddingJob.status == JobStatus.PENDING)
        .values(
            status=JobStatus.IN_PROGRESS,
            started_at=utcnow(),
            attempts=EmbeddingJob.attempts + 1,
        )
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    await session.commit()
    return result.rowcount == 1


async def pending_job_ids(session: AsyncSession, limit: int) -> list[int]:
    """Pending job ids in processing order: priority desc, then oldest first."""
    stmt = (
        select(EmbeddingJob.id)
        .where(EmbeddingJob.status == JobStatus.PENDING)
        .order_by(EmbeddingJob.priority.desc(), EmbeddingJob.created_at.asc(), EmbeddingJob.id.asc())
        .limit(limit)
    )
    return list((await session.execute(stmt)).scalars().all())


async def queue_stats(session: AsyncSession) -> dict[str, Any]:
    """Job counts by status and by kind for pending work."""
    by_status = {status.value: 0 for status in JobStatus}
    rows = await session.execute(select(EmbeddingJob.status, func.count()).group_by(EmbeddingJob.status))
    for status, count in rows.all():
        by_status[JobStatus(status).value] = count

    pending_by_kind = {kind.value: 0 for kind in JobKind}
    rows = await session.execute(
        select(EmbeddingJob.kind, func.count())
        .where(EmbeddingJob.status == JobStatus.PENDING)
        .group_by(EmbeddingJob.kind)
    )
    for kind, count in rows.all():
        pending_by_kind[JobKind(kind).value] = count

    return {
        "total": sum(by_status.values()),
        "by_status": by_status,
        "pending_by_kind": pending_by_kind,
    }
