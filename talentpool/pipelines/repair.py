"""Repair sweeps that bring stored state back in line with the pipeline rules.

- ``run_merge_backfill`` replays persisted raw payloads through the source
  adapter to fill identity fields an earlier merge left empty.
- ``run_queue_reconciliation`` removes duplicate pending jobs and enqueues
  work for candidates that are not embedded and have nothing queued.
- ``reclaim_stale_jobs`` returns abandoned ``in_progress`` claims to the queue.

Sweeps are bounded by ``limit`` and safe to re-run; repeated invocations
converge to zero work. A failing item is counted and listed, the sweep goes on.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any

from sqlalchemy import case, delete, exists, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from talentpool.config import settings
from talentpool.errors import InvalidPayloadError, PipelineError
from talentpool.models import (
    ACTIVE_JOB_STATUSES,
    Candidate,
    EmbeddingJob,
    EmbeddingStatus,
    JobKind,
    JobStatus,
    LifecycleStatus,
    RawIngestRecord,
    utcnow,
)
from talentpool.pipelines.adapters import IDENTITY_FIELDS, adapt_raw
from talentpool.pipelines.merge import source_rank
from talentpool.pipelines.queue import COMPLETING_KINDS, enqueue_for_candidate

logger = logging.getLogger(__name__)

_NAME_FIELDS = ("first_name", "last_name")


@dataclass
class BackfillReport:
    scanned: int = 0
    updated: int = 0
    skipped: int = 0
    errors: int = 0
    error_items: list[dict[str, Any]] = field(default_factory=list)
    fields_fixed: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "scanned": self.scanned,
            "updated": self.updated,
            "skipped": self.skipped,
            "errors": self.errors,
            "error_items": self.error_items,
            "fields_fixed": self.fields_fixed,
        }


@dataclass
class ReconciliationReport:
    scanned: int = 0
    queued: int = 0
    duplicates_removed: int = 0
    skipped: int = 0
    errors: int = 0
    error_items: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "scanned": self.scanned,
            "queued": self.queued,
            "duplicates_removed": self.duplicates_removed,
            "skipped": self.skipped,
            "errors": self.errors,
            "error_items": self.error_items,
        }


@dataclass
class ReclaimReport:
    reclaimed: int = 0
    job_ids: list[int] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"reclaimed": self.reclaimed, "job_ids": self.job_ids}


def _is_empty(value: Any) -> bool:
    return value is None or value == ""


async def _email_owned_elsewhere(session: AsyncSession, email: str, candidate_id: int) -> bool:
    stmt = select(
        exists().where(
            Candidate.email == email,
            Candidate.id != candidate_id,
            Candidate.lifecycle_status == LifecycleStatus.ACTIVE,
        )
    )
    return bool((await session.execute(stmt)).scalar())


async def _backfill_candidate(
    session: AsyncSession,
    candidate_id: int,
    latest_hash: str,
    force_rewrite: bool,
) -> list[str]:
    """Replay one candidate's raw records; returns the fields that were written.

    Each identity field takes one value across all records: the one from the
    highest-ranked source, newest record first on a tie.
    """
    candidate = await session.get(Candidate, candidate_id, populate_existing=True)
    records = await session.execute(
        select(RawIngestRecord.id, RawIngestRecord.source, RawIngestRecord.payload)
        .where(RawIngestRecord.candidate_id == candidate_id)
        .order_by(RawIngestRecord.id)
    )

    chosen: dict[str, tuple[tuple[int, int], str]] = {}
    for record_id, source, payload in records.all():
        try:
            attrs = adapt_raw(source, payload).attributes
        except InvalidPayloadError as e:
            logger.debug(f"Skipping unreadable raw record {record_id} for candidate {candidate_id}: {e}")
            continue

        key = (source_rank(source), record_id)
        for name in IDENTITY_FIELDS:
            value = getattr(attrs, name)
            if _is_empty(value):
                continue
            if name not in chosen or key > chosen[name][0]:
                chosen[name] = (key, value)

    fixed: list[str] = []
    for name in IDENTITY_FIELDS:
        if name not in chosen:
            continue
        value = chosen[name][1]
        current = getattr(candidate, name)
        if value == current:
            continue
        if not force_rewrite and not _is_empty(current):
            continue
        if name == "email" and await _email_owned_elsewhere(session, value, candidate_id):
            logger.warning(
                f"Not backfilling email for candidate {candidate_id}: {value!r} belongs to another candidate"
            )
            continue
        setattr(candidate, name, value)
        fixed.append(name)

    if fixed:
        field_sources = dict(candidate.field_sources or {})
        field_sources.update({name: "backfill" for name in fixed if name not in field_sources})
        candidate.field_sources = field_sources
        candidate.updated_at = utcnow()
        if any(name in _NAME_FIELDS for name in fixed) and candidate.embedding_status is EmbeddingStatus.COMPLETED:
            # Profile text includes the name; let reconciliation re-embed it
            candidate.embedding_status = EmbeddingStatus.PENDING
    candidate.backfill_hash = latest_hash
    await session.commit()
    return fixed


async def run_merge_backfill(
    session: AsyncSession,
    limit: int | None = None,
    force_rewrite: bool = False,
) -> BackfillReport:
    """Fill empty identity fields from each candidate's persisted raw payloads.

    Args:
        session: Database session
        limit: Max candidates to scan
        force_rewrite: Rewrite identity fields even when populated, and scan every candidate

    Returns:
        BackfillReport; ``updated`` reaches zero once nothing is left to fix
    """
    limit = limit or settings.repair.default_limit

    latest = (
        select(
            RawIngestRecord.candidate_id.label("candidate_id"),
            func.max(RawIngestRecord.id).label("record_id"),
        )
        .where(RawIngestRecord.candidate_id.is_not(None))
        .group_by(RawIngestRecord.candidate_id)
        .subquery()
    )
    stmt = (
        select(Candidate.id, RawIngestRecord.content_hash)
        .join(latest, latest.c.candidate_id == Candidate.id)
        .join(RawIngestRecord, RawIngestRecord.id == latest.c.record_id)
        .where(Candidate.lifecycle_status == LifecycleStatus.ACTIVE)
        .order_by(Candidate.id)
        .limit(limit)
    )
    if not force_rewrite:
        stmt = stmt.where(
            or_(Candidate.backfill_hash.is_(None), Candidate.backfill_hash != RawIngestRecord.content_hash),
            or_(*(
                or_(getattr(Candidate, name).is_(None), getattr(Candidate, name) == "")
                for name in IDENTITY_FIELDS
            )),
        )

    targets = (await session.execute(stmt)).all()
    report = BackfillReport()
    logger.info(f"Merge backfill: {len(targets)} candidates to scan (force_rewrite={force_rewrite})")

    for candidate_id, latest_hash in targets:
        report.scanned += 1
        try:
            fixed = await _backfill_candidate(session, candidate_id, latest_hash, force_rewrite)
        except (IntegrityError, PipelineError) as e:
            await session.rollback()
            logger.error(f"Backfill failed for candidate {candidate_id}: {e}", exc_info=True)
            report.errors += 1
            report.error_items.append({"candidate_id": candidate_id, "error": str(e)[:500]})
            continue

        if fixed:
            report.updated += 1
            for name in fixed:
                report.fields_fixed[name] = report.fields_fixed.get(name, 0) + 1
            logger.info(f"Backfilled {fixed} for candidate {candidate_id}")
        else:
            report.skipped += 1

    logger.info(
        f"Merge backfill done: {report.updated} updated, {report.skipped} skipped, {report.errors} errors"
    )
    return report


async def collapse_duplicate_jobs(session: AsyncSession) -> int:
    """Delete all but the oldest pending job per (candidate, kind)."""
    groups = await session.execute(
        select(EmbeddingJob.candidate_id, EmbeddingJob.kind)
        .where(EmbeddingJob.status == JobStatus.PENDING)
        .group_by(EmbeddingJob.candidate_id, EmbeddingJob.kind)
        .having(func.count() > 1)
    )

    removed = 0
    for candidate_id, kind in groups.all():
        ids = (await session.execute(
            select(EmbeddingJob.id)
            .where(
                EmbeddingJob.candidate_id == candidate_id,
                EmbeddingJob.kind == kind,
                EmbeddingJob.status == JobStatus.PENDING,
            )
            .order_by(EmbeddingJob.created_at, EmbeddingJob.id)
        )).scalars().all()
        duplicates = list(ids[1:])
        await session.execute(
            delete(EmbeddingJob)
            .where(EmbeddingJob.id.in_(duplicates), EmbeddingJob.status == JobStatus.PENDING)
            .execution_options(synchronize_session=False)
        )
        removed += len(duplicates)
        logger.info(f"Removed {len(duplicates)} duplicate {JobKind(kind).value} jobs for candidate {candidate_id}")

    await session.commit()
    return removed


async def run_queue_reconciliation(
    session: AsyncSession,
    limit: int | None = None,
    base_priority: int | None = None,
) -> ReconciliationReport:
    """Restore one-active-job-per-kind and enqueue work for unembedded candidates.

    Candidates without any active job are scanned, non-completed first;
    completed ones are counted as skipped.
    """
    limit = limit or settings.repair.default_limit
    report = ReconciliationReport()
    report.duplicates_removed = await collapse_duplicate_jobs(session)

    has_active_job = exists().where(
        EmbeddingJob.candidate_id == Candidate.id,
        EmbeddingJob.status.in_(ACTIVE_JOB_STATUSES),
    )
    completed_last = case((Candidate.embedding_status == EmbeddingStatus.COMPLETED, 1), else_=0)
    rows = await session.execute(
        select(Candidate.id, Candidate.embedding_status)
        .where(Candidate.lifecycle_status == LifecycleStatus.ACTIVE, ~has_active_job)
        .order_by(completed_last, Candidate.id)
        .limit(limit)
    )

    for candidate_id, status in rows.all():
        report.scanned += 1
        if EmbeddingStatus(status) is EmbeddingStatus.COMPLETED:
            report.skipped += 1
            continue
        try:
            candidate = await session.get(Candidate, candidate_id, populate_existing=True)
            results = await enqueue_for_candidate(session, candidate, base_priority)
            if candidate.embedding_status is not EmbeddingStatus.PENDING:
                candidate.embedding_status = EmbeddingStatus.PENDING
            await session.commit()
        except (IntegrityError, PipelineError) as e:
            await session.rollback()
            logger.error(f"Reconciliation failed for candidate {candidate_id}: {e}", exc_info=True)
            report.errors += 1
            report.error_items.append({"candidate_id": candidate_id, "error": str(e)[:500]})
            continue

        if any(r.created for r in results):
            report.queued += 1
        else:
            report.skipped += 1

    logger.info(
        f"Queue reconciliation: scanned {report.scanned}, queued {report.queued}, "
        f"removed {report.duplicates_removed} duplicates, skipped {report.skipped}"
    )
    return report


async def reclaim_stale_jobs(
    session: AsyncSession,
    stale_after: timedelta | None = None,
) -> ReclaimReport:
    """Reset in_progress jobs claimed longer ago than stale_after back to pending."""
    stale_after = stale_after or timedelta(minutes=settings.queue.stale_after_minutes)
    cutoff = utcnow() - stale_after

    rows = await session.execute(
        select(EmbeddingJob.id, EmbeddingJob.candidate_id, EmbeddingJob.kind).where(
            EmbeddingJob.status == JobStatus.IN_PROGRESS,
            EmbeddingJob.started_at < cutoff,
        )
    )
    stale = rows.all()
    report = ReclaimReport()
    if not stale:
        return report

    job_ids = [job_id for job_id, _, _ in stale]
    result = await session.execute(
        update(EmbeddingJob)
        .where(EmbeddingJob.id.in_(job_ids), EmbeddingJob.status == JobStatus.IN_PROGRESS)
        .values(status=JobStatus.PENDING, started_at=None)
        .execution_options(synchronize_session=False)
    )
    candidate_ids = {candidate_id for _, candidate_id, kind in stale if kind in COMPLETING_KINDS}
    if candidate_ids:
        await session.execute(
            update(Candidate)
            .where(Candidate.id.in_(candidate_ids), Candidate.embedding_status == EmbeddingStatus.IN_PROGRESS)
            .values(embedding_status=EmbeddingStatus.PENDING)
            .execution_options(synchronize_session=False)
        )
    await session.commit()

    report.reclaimed = result.rowcount
    report.job_ids = job_ids
    logger.warning(f"Reclaimed {report.reclaimed} stale in_progress jobs older than {stale_after}")
    return report
