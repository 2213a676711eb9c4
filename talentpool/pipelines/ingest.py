"""Ingestion pipeline: raw receipt → adapt → resolve → merge → enqueue.

Every payload is stored as a ``RawIngestRecord`` and committed before
resolution runs, so the repair driver can always replay it. The same
functions serve webhook deliveries, ATS syncs and CV uploads.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from talentpool.config import settings
from talentpool.errors import InvalidPayloadError, PipelineError, WriteConflictError
from talentpool.models import (
    Candidate,
    CandidateSource,
    IngestRun,
    MergeAction,
    RawIngestRecord,
    RecordStatus,
    RunStatus,
    utcnow,
)
from talentpool.payloads import content_hash
from talentpool.pipelines import merge
from talentpool.pipelines.adapters import AdaptedRecord, adapt_raw
from talentpool.pipelines.queue import enqueue_for_candidate
from talentpool.pipelines.resolver import resolve

logger = logging.getLogger(__name__)

_EXTERNAL_ID_KEYS = ("id", "external_id", "upload_id")


@dataclass
class IngestResult:
    """Outcome of ingesting one payload."""
    action: MergeAction | None
    candidate_id: int | None
    raw_record_id: int
    jobs_enqueued: int = 0
    anomaly: str | None = None
    duplicate: bool = False


@dataclass
class BatchIngestReport:
    """Tally of one run of payloads."""
    run_id: int
    received: int = 0
    created: int = 0
    updated: int = 0
    duplicates: int = 0
    failed: int = 0
    jobs_enqueued: int = 0
    anomalies: int = 0
    results: list[dict[str, Any]] = field(default_factory=list)
    errors: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "received": self.received,
            "created": self.created,
            "updated": self.updated,
            "duplicates": self.duplicates,
            "failed": self.failed,
            "jobs_enqueued": self.jobs_enqueued,
            "anomalies": self.anomalies,
            "results": self.results,
            "errors": self.errors,
        }


def _parse_source(source: CandidateSource | str) -> CandidateSource:
    try:
        return CandidateSource(source)
    except ValueError as e:
        raise InvalidPayloadError(f"Unknown source: {source!r}") from e


def _raw_external_id(raw: Any) -> str | None:
    if not isinstance(raw, Mapping):
        return None
    for key in _EXTERNAL_ID_KEYS:
        value = raw.get(key)
        if isinstance(value, (str, int)) and not isinstance(value, bool) and str(value).strip():
            return str(value).strip()[:255]
    return None


async def get_or_create_run(
    session: AsyncSession,
    source: CandidateSource | str,
    external_run_id: str | None = None,
) -> IngestRun:
    """Find the run for (source, external_run_id) or start a new one."""
    source = _parse_source(source)
    external_run_id = external_run_id or f"adhoc-{uuid.uuid4().hex}"

    stmt = select(IngestRun).where(IngestRun.source == source, IngestRun.external_run_id == external_run_id)
    run = (await session.execute(stmt)).scalar_one_or_none()
    if run is not None:
        return run

    run = IngestRun(source=source, external_run_id=external_run_id, status=RunStatus.RUNNING, started_at=utcnow())
    try:
        async with session.begin_nested():
            session.add(run)
    except IntegrityError:
        run = (await session.execute(stmt)).scalar_one()
    await session.commit()
    logger.info(f"Using ingest run {run.id} ({source.value}/{external_run_id})")
    return run


async def store_raw_record(
    session: AsyncSession,
    run_id: int,
    source: CandidateSource,
    raw: Any,
) -> RawIngestRecord:
    """Persist and commit the raw receipt; an identical payload in the same run reuses its row."""
    digest = content_hash(raw)
    stmt = select(RawIngestRecord).where(RawIngestRecord.run_id == run_id, RawIngestRecord.content_hash == digest)
    record = (await session.execute(stmt)).scalar_one_or_none()
    if record is not None:
        return record

    record = RawIngestRecord(
        run_id=run_id,
        source=source,
        external_id=_raw_external_id(raw),
        payload=raw if isinstance(raw, Mapping) else {"value": raw},
        content_hash=digest,
        processing_status=RecordStatus.PENDING,
        received_at=utcnow(),
    )
    try:
        async with session.begin_nested():
            session.add(record)
    except IntegrityError:
        record = (await session.execute(stmt)).scalar_one()
    await session.commit()
    return record


async def _mark_record(session: AsyncSession, record_id: int, **values: Any) -> None:
    await session.execute(
        update(RawIngestRecord)
        .where(RawIngestRecord.id == record_id)
        .values(**values)
        .execution_options(synchronize_session=False)
    )


async def _resolve_and_merge(
    session: AsyncSession,
    record_id: int,
    adapted: AdaptedRecord,
    base_priority: int,
) -> IngestResult:
    resolution = await resolve(session, adapted.attributes, adapted.source, adapted.external_id)
    existing = None
    if resolution.matched:
        # populate_existing re-runs the selectin load of source_ids after a retry rollback
        existing = await session.get(Candidate, resolution.candidate_id, populate_existing=True)

    result = merge.apply(existing, adapted.attributes, adapted.source, adapted.external_id)
    session.add(result.candidate)
    await session.flush()

    jobs_enqueued = 0
    if result.action is MergeAction.CREATED or result.content_changed:
        enqueued = await enqueue_for_candidate(session, result.candidate, base_priority)
        jobs_enqueued = sum(1 for r in enqueued if r.created)

    candidate_id = result.candidate.id
    await _mark_record(
        session,
        record_id,
        candidate_id=candidate_id,
        action=result.action,
        resolution_note=resolution.anomaly,
        processing_status=RecordStatus.PROCESSED,
        processed_at=utcnow(),
        error=None,
    )
    await session.commit()

    logger.info(
        f"{result.action.value.capitalize()} candidate {candidate_id} from {adapted.source.value} "
        f"record {record_id} (matched_on={resolution.matched_on}, changed={result.changed_fields})"
    )
    return IngestResult(
        action=result.action,
        candidate_id=candidate_id,
        raw_record_id=record_id,
        jobs_enqueued=jobs_enqueued,
        anomaly=resolution.anomaly,
    )


async def ingest_payload(
    session: AsyncSession,
    source: CandidateSource | str,
    raw: Any,
    run: IngestRun | int,
    *,
    base_priority: int | None = None,
) -> IngestResult:
    """Ingest one raw payload end to end.

    Args:
        session: Database session
        source: Source the payload came from
        raw: Untyped payload as delivered
        run: Run (or run id) the payload belongs to
        base_priority: Base priority for enqueued embedding jobs

    Returns:
        IngestResult for the payload

    Raises:
        InvalidPayloadError: If the payload is unreadable (its raw record is marked failed)
        WriteConflictError: If the store reports a conflict twice in a row
    """
    source = _parse_source(source)
    base_priority = settings.ingest.webhook_base_priority if base_priority is None else base_priority

    run_id = run if isinstance(run, int) else run.id
    record = await store_raw_record(session, run_id, source, raw)
    record_id = record.id
    if record.processing_status is RecordStatus.PROCESSED:
        logger.info(f"Record {record_id} already processed in run {run_id}; skipping duplicate delivery")
        return IngestResult(
            action=record.action,
            candidate_id=record.candidate_id,
            raw_record_id=record_id,
            anomaly=record.resolution_note,
            duplicate=True,
        )

    try:
        adapted = adapt_raw(source, raw)
    except InvalidPayloadError as e:
        logger.warning(f"Invalid {source.value} payload in record {record_id}: {e}")
        await _mark_record(
            session, record_id, processing_status=RecordStatus.FAILED, error=str(e), processed_at=utcnow()
        )
        await session.commit()
        raise

    for attempt in (1, 2):
        try:
            return await _resolve_and_merge(session, record_id, adapted, base_priority)
        except IntegrityError as e:
            await session.rollback()
            if attempt == 2:
                logger.error(f"Write conflict persisted for record {record_id}: {e.orig}")
                await _mark_record(
                    session,
                    record_id,
                    processing_status=RecordStatus.FAILED,
                    error=f"write conflict: {e.orig}"[:2000],
                    processed_at=utcnow(),
                )
                await session.commit()
                raise WriteConflictError(f"Record {record_id} conflicted twice: {e.orig}") from e
            logger.warning(f"Write conflict for record {record_id}, retrying once: {e.orig}")

    raise AssertionError("unreachable")


async def ingest_batch(
    session: AsyncSession,
    source: CandidateSource | str,
    payloads: Iterable[Any],
    *,
    external_run_id: str | None = None,
    base_priority: int | None = None,
) -> BatchIngestReport:
    """Ingest a run of payloads; per-item failures are tallied and do not stop the run."""
    source = _parse_source(source)
    run = await get_or_create_run(session, source, external_run_id)
    run_id = run.id
    report = BatchIngestReport(run_id=run_id)

    for index, raw in enumerate(payloads):
        report.received += 1
        try:
            result = await ingest_payload(session, source, raw, run_id, base_priority=base_priority)
        except PipelineError as e:
            report.failed += 1
            report.errors.append({"index": index, "error": str(e), "type": type(e).__name__})
            continue

        report.results.append({
            "index": index,
            "action": result.action.value if result.action else None,
            "candidate_id": result.candidate_id,
            "raw_record_id": result.raw_record_id,
            "duplicate": result.duplicate,
        })
        report.jobs_enqueued += result.jobs_enqueued
        if result.anomaly:
            report.anomalies += 1
        if result.duplicate:
            report.duplicates += 1
        elif result.action is MergeAction.CREATED:
            report.created += 1
        elif result.action is MergeAction.UPDATED:
            report.updated += 1

    all_failed = report.received > 0 and report.failed == report.received
    await session.execute(
        update(IngestRun)
        .where(IngestRun.id == run_id)
        .values(
            total_received=IngestRun.total_received + report.received,
            total_created=IngestRun.total_created + report.created,
            total_updated=IngestRun.total_updated + report.updated,
            total_errors=IngestRun.total_errors + report.failed,
            status=RunStatus.FAILED if all_failed else RunStatus.COMPLETED,
            completed_at=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    await session.commit()

    logger.info(
        f"Run {run_id} ({source.value}): {report.created} created, {report.updated} updated, "
        f"{report.failed} failed, {report.jobs_enqueued} jobs enqueued"
    )
    return report
