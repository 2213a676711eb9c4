"""Embedding worker: claim pending jobs, embed candidate text, store vectors.

Jobs are selected by priority (highest first), then age, and processed in
concurrent sub-batches with one session per job. Claims are atomic, so any
number of workers can run against the same queue; a job whose claim is lost
is simply skipped. Failures are terminal for the job (no automatic retry).
"""
from __future__ import annotations

import asyncio
import hashlib
import logging
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ai.embeddings import EmbeddingProvider
from talentpool.config import settings
from talentpool.errors import JobExecutionError
from talentpool.models import (
    Candidate,
    CandidateEmbedding,
    EmbeddingJob,
    EmbeddingStatus,
    JobKind,
    JobStatus,
    utcnow,
)
from talentpool.pipelines.queue import COMPLETING_KINDS, claim_job, pending_job_ids

logger = logging.getLogger(__name__)

OUTCOME_SUCCEEDED = "succeeded"
OUTCOME_FAILED = "failed"
OUTCOME_LOST = "lost"


@dataclass(frozen=True)
class JobOutcome:
    job_id: int
    outcome: str
    error: str | None = None


@dataclass
class EmbeddingText:
    """One text to embed and where its vector goes."""
    kind: JobKind
    chunk_index: int
    text: str

    @property
    def content_hash(self) -> str:
        return text_hash(self.text)


@dataclass
class ProcessingReport:
    """Tally of one worker invocation."""
    selected: int = 0
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    lost_claims: int = 0
    errors: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "selected": self.selected,
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "lost_claims": self.lost_claims,
            "errors": self.errors,
        }


def text_hash(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def _truncate(text: str) -> str:
    return text[: settings.embeddings.max_input_chars]


def _join(parts: list[str | None]) -> str | None:
    text = "\n".join(p for p in parts if p)
    return _truncate(text) if text.strip() else None


def build_profile_text(candidate: Candidate) -> str | None:
    """Labelled summary of the candidate; absent fields are left out."""
    location = ", ".join(p for p in (candidate.city, candidate.country) if p)
    return _join([
        f"Name: {candidate.full_name}" if candidate.full_name else None,
        f"Title: {candidate.current_title}" if candidate.current_title else None,
        f"Company: {candidate.current_company}" if candidate.current_company else None,
        f"Headline: {candidate.headline}" if candidate.headline else None,
        f"Location: {location}" if location else None,
        f"Skills: {', '.join(candidate.skills)}" if candidate.skills else None,
        f"Bio: {candidate.bio}" if candidate.bio else None,
    ])


def build_experience_text(candidate: Candidate) -> str | None:
    lines = []
    for entry in candidate.employment_history or []:
        if not isinstance(entry, dict):
            continue
        title = entry.get("title") or ""
        company = entry.get("company") or entry.get("organization_name") or ""
        description = entry.get("description") or ""
        line = f"{title} at {company}".strip() if (title or company) else ""
        if description:
            line = f"{line} - {description}" if line else description
        if line and line != "at":
            lines.append(line)
    return _join(lines)


def build_skills_text(candidate: Candidate) -> str | None:
    return _join([", ".join(candidate.skills)]) if candidate.skills else None


def chunk_words(text: str | None, words_per_chunk: int | None = None) -> list[str]:
    """Split text into chunks of at most N words."""
    if not text:
        return []
    size = words_per_chunk or settings.embeddings.cv_chunk_words
    words = text.split()
    return [_truncate(" ".join(words[i:i + size])) for i in range(0, len(words), size)]


def build_texts(candidate: Candidate, kind: JobKind) -> list[EmbeddingText]:
    """Texts a job of this kind embeds for the candidate.

    Raises:
        JobExecutionError: If there is nothing to embed for the kind
    """
    items: list[EmbeddingText] = []

    def add(item_kind: JobKind, text: str | None) -> None:
        if text:
            items.append(EmbeddingText(item_kind, 0, text))

    if kind in (JobKind.PROFILE, JobKind.FULL_REINDEX):
        add(JobKind.PROFILE, build_profile_text(candidate))
        if kind is JobKind.PROFILE and not items:
            raise JobExecutionError(f"Candidate {candidate.id} has no profile text to embed")
    if kind in (JobKind.EXPERIENCE, JobKind.FULL_REINDEX):
        add(JobKind.EXPERIENCE, build_experience_text(candidate))
    if kind in (JobKind.SKILLS, JobKind.FULL_REINDEX):
        add(JobKind.SKILLS, build_skills_text(candidate))
    if kind in (JobKind.CV_CHUNKS, JobKind.FULL_REINDEX):
        items.extend(
            EmbeddingText(JobKind.CV_CHUNKS, index, chunk)
            for index, chunk in enumerate(chunk_words(candidate.cv_parsed_text))
        )

    if kind is JobKind.FULL_REINDEX and not any(i.kind is JobKind.PROFILE for i in items):
        raise JobExecutionError(f"Candidate {candidate.id} has no profile text to embed")
    if not items:
        raise JobExecutionError(f"Candidate {candidate.id} has no text for a {kind.value} embedding")
    return items


async def store_vectors(
    session: AsyncSession,
    candidate_id: int,
    items: list[EmbeddingText],
    provider: EmbeddingProvider,
) -> dict[str, Any]:
    """Upsert one vector per item, skipping the provider when the stored text is unchanged.

    CV chunks are replaced as a set: stored chunks past the new chunk count are removed.
    """
    kinds = {item.kind for item in items}
    rows = await session.execute(
        select(CandidateEmbedding).where(
            CandidateEmbedding.candidate_id == candidate_id,
            CandidateEmbedding.kind.in_(kinds),
        )
    )
    stored = {(row.kind, row.chunk_index): row for row in rows.scalars().all()}

    if JobKind.CV_CHUNKS in kinds:
        chunk_count = sum(1 for item in items if item.kind is JobKind.CV_CHUNKS)
        await session.execute(
            delete(CandidateEmbedding)
            .where(
                CandidateEmbedding.candidate_id == candidate_id,
                CandidateEmbedding.kind == JobKind.CV_CHUNKS,
                CandidateEmbedding.chunk_index >= chunk_count,
            )
            .execution_options(synchronize_session=False)
        )
        for key in [k for k in stored if k[0] is JobKind.CV_CHUNKS and k[1] >= chunk_count]:
            session.expunge(stored.pop(key))

    to_embed = [
        item for item in items
        if (row := stored.get((item.kind, item.chunk_index))) is None or row.content_hash != item.content_hash
    ]
    vectors: list[list[float]] = []
    if to_embed:
        vectors = await provider.embed([item.text for item in to_embed])
        if len(vectors) != len(to_embed):
            raise JobExecutionError(
                f"Provider returned {len(vectors)} vectors for {len(to_embed)} texts"
            )

    now = utcnow()
    for item, vector in zip(to_embed, vectors):
        row = stored.get((item.kind, item.chunk_index))
        if row is None:
            session.add(CandidateEmbedding(
                candidate_id=candidate_id,
                kind=item.kind,
                chunk_index=item.chunk_index,
                embedding=vector,
                content_hash=item.content_hash,
                source_text=item.text,
                embedding_model=provider.model_name,
                computed_at=now,
            ))
        else:
            row.embedding = vector
            row.content_hash = item.content_hash
            row.source_text = item.text
            row.embedding_model = provider.model_name
            row.computed_at = now

    return {
        "dimensions": provider.dim,
        "vectors": len(items),
        "embedded": len(to_embed),
        "reused": len(items) - len(to_embed),
        "kinds": sorted(k.value for k in kinds),
    }


async def _set_candidate_status(
    session: AsyncSession,
    candidate_id: int,
    status: EmbeddingStatus,
    *,
    only_if: EmbeddingStatus | None = None,
    **values: Any,
) -> None:
    stmt = update(Candidate).where(Candidate.id == candidate_id)
    if only_if is not None:
        # A merge may have reset the candidate to pending while this job ran
        stmt = stmt.where(Candidate.embedding_status == only_if)
    await session.execute(
        stmt.values(embedding_status=status, **values).execution_options(synchronize_session=False)
    )


async def process_job(session: AsyncSession, job_id: int, provider: EmbeddingProvider) -> JobOutcome:
    """Claim and run one job.

    Returns:
        JobOutcome; OUTCOME_LOST when another worker holds the claim
    """
    if not await claim_job(session, job_id):
        logger.debug(f"Job {job_id} claimed elsewhere; skipping")
        return JobOutcome(job_id, OUTCOME_LOST)

    job = await session.get(EmbeddingJob, job_id)
    # Plain copies: a rollback below expires the ORM instance
    candidate_id, kind = job.candidate_id, job.kind
    completing = kind in COMPLETING_KINDS
    if completing:
        await _set_candidate_status(session, candidate_id, EmbeddingStatus.IN_PROGRESS)
        await session.commit()

    logger.info(f"Processing {kind.value} job {job_id} for candidate {candidate_id}")
    try:
        candidate = await session.get(Candidate, candidate_id)
        if candidate is None:
            raise JobExecutionError(f"Candidate {candidate_id} not found")

        items = build_texts(candidate, kind)
        summary = await store_vectors(session, candidate.id, items, provider)

        now = utcnow()
        job.status = JobStatus.COMPLETED
        job.completed_at = now
        job.error = None
        job.result_summary = summary
        if completing:
            await _set_candidate_status(
                session,
                candidate.id,
                EmbeddingStatus.COMPLETED,
                only_if=EmbeddingStatus.IN_PROGRESS,
                last_embedded_at=now,
            )
        await session.commit()
    except Exception as e:
        message = str(e)[:2000] or type(e).__name__
        logger.error(f"Embedding job {job_id} failed: {message}", exc_info=True)
        await session.rollback()
        await session.execute(
            update(EmbeddingJob)
            .where(EmbeddingJob.id == job_id)
            .values(status=JobStatus.FAILED, error=message, failed_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if completing:
            await _set_candidate_status(
                session, candidate_id, EmbeddingStatus.FAILED, only_if=EmbeddingStatus.IN_PROGRESS
            )
        await session.commit()
        return JobOutcome(job_id, OUTCOME_FAILED, message)

    logger.info(
        f"Completed job {job_id}: {summary['embedded']} embedded, {summary['reused']} reused"
    )
    return JobOutcome(job_id, OUTCOME_SUCCEEDED)


async def _run_one(
    session_factory: async_sessionmaker[AsyncSession],
    job_id: int,
    provider: EmbeddingProvider,
) -> JobOutcome:
    async with session_factory() as session:
        return await process_job(session, job_id, provider)


async def process_pending_jobs(
    session_factory: async_sessionmaker[AsyncSession],
    provider: EmbeddingProvider,
    *,
    batch_size: int | None = None,
    max_jobs: int | None = None,
    delay_seconds: float | None = None,
) -> ProcessingReport:
    """Run one worker invocation over the pending queue.

    Args:
        session_factory: Opens one session per job
        provider: Embedding provider
        batch_size: Jobs processed concurrently per sub-batch
        max_jobs: Jobs selected for this invocation
        delay_seconds: Pause between sub-batches

    Returns:
        ProcessingReport for the invocation
    """
    batch_size = batch_size or settings.queue.batch_size
    max_jobs = max_jobs or settings.queue.max_jobs
    delay = settings.queue.inter_batch_delay_seconds if delay_seconds is None else delay_seconds

    async with session_factory() as session:
        job_ids = await pending_job_ids(session, max_jobs)

    report = ProcessingReport(selected=len(job_ids))
    if not job_ids:
        logger.info("No pending embedding jobs")
        return report

    logger.info(f"Selected {len(job_ids)} pending jobs (batch size {batch_size})")
    for start in range(0, len(job_ids), batch_size):
        batch = job_ids[start:start + batch_size]
        outcomes = await asyncio.gather(*(_run_one(session_factory, job_id, provider) for job_id in batch))

        for result in outcomes:
            if result.outcome == OUTCOME_LOST:
                report.lost_claims += 1
                continue
            report.processed += 1
            if result.outcome == OUTCOME_SUCCEEDED:
                report.succeeded += 1
            else:
                report.failed += 1
                report.errors.append({"job_id": result.job_id, "error": result.error})

        if start + batch_size < len(job_ids) and delay > 0:
            await asyncio.sleep(delay)

    logger.info(
        f"Worker run finished: {report.succeeded} succeeded, {report.failed} failed, "
        f"{report.lost_claims} lost claims"
    )
    return report
