from __future__ import annotations

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from talentpool.errors import InvalidPayloadError, WriteConflictError
from talentpool.models import (
    Candidate,
    CandidateSource,
    CandidateSourceId,
    EmbeddingJob,
    EmbeddingStatus,
    IngestRun,
    JobKind,
    MergeAction,
    RawIngestRecord,
    RecordStatus,
    RunStatus,
)
from talentpool.pipelines import ingest
from talentpool.pipelines.ingest import get_or_create_run, ingest_batch, ingest_payload
from talentpool.pipelines.queue import enqueue_for_candidate
from talentpool.pipelines.resolver import ANOMALY_AMBIGUOUS_EMAIL

SCRAPED_JANE = {
    "id": "apl-1",
    "first_name": "Jane",
    "last_name": "Doe",
    "email": "Jane.Doe@Example.com ",
    "title": "Engineer",
}
ATS_JANE = {
    "id": "99",
    "name": "Janet Doe",
    "emails": [{"value": "jane.doe@example.com"}],
    "current_title": "Staff Engineer",
}


async def _source_ids(session, candidate_id):
    rows = await session.execute(
        select(CandidateSourceId.source, CandidateSourceId.external_id)
        .where(CandidateSourceId.candidate_id == candidate_id)
        .order_by(CandidateSourceId.source)
    )
    return sorted((source.value, external_id) for source, external_id in rows.all())


async def _count(session, model):
    return (await session.execute(select(func.count()).select_from(model))).scalar_one()


async def test_two_sources_resolve_to_one_candidate(session):
    scraped_run = await get_or_create_run(session, CandidateSource.SCRAPED_NETWORK, "sync-1")
    first = await ingest_payload(session, CandidateSource.SCRAPED_NETWORK, SCRAPED_JANE, scraped_run)

    assert first.action is MergeAction.CREATED
    assert first.jobs_enqueued == 1
    candidate = await session.get(Candidate, first.candidate_id)
    assert candidate.email == "jane.doe@example.com"

    ats_run = await get_or_create_run(session, "ats")
    second = await ingest_payload(session, "ats", ATS_JANE, ats_run)

    assert second.action is MergeAction.UPDATED
    assert second.candidate_id == first.candidate_id
    # the pending profile job already covers the change
    assert second.jobs_enqueued == 0
    assert await _count(session, Candidate) == 1
    assert await _count(session, EmbeddingJob) == 1

    candidate = await session.get(Candidate, first.candidate_id, populate_existing=True)
    assert candidate.email == "jane.doe@example.com"
    assert candidate.first_name == "Jane"
    assert candidate.current_title == "Staff Engineer"
    assert candidate.field_sources["current_title"] == "ats"
    assert await _source_ids(session, candidate.id) == [("ats", "99"), ("scraped_network", "apl-1")]


async def test_external_id_match_takes_precedence(session):
    run = await get_or_create_run(session, "ats", "nightly")
    first = await ingest_payload(session, "ats", {"id": "7", "name": "Sam Smith"}, run)
    second = await ingest_payload(session, "ats", {"id": "7", "name": "Sam Smith", "city": "Leiden"}, run)

    assert second.candidate_id == first.candidate_id
    assert second.action is MergeAction.UPDATED
    assert (await session.get(Candidate, first.candidate_id, populate_existing=True)).city == "Leiden"


async def test_duplicate_delivery_is_a_no_op(session):
    run = await get_or_create_run(session, "manual", "hand-entry")
    payload = {"full_name": "Ann Lee", "email": "ann@example.com"}

    first = await ingest_payload(session, "manual", payload, run)
    again = await ingest_payload(session, "manual", dict(payload), run)

    assert again.duplicate is True
    assert again.raw_record_id == first.raw_record_id
    assert again.candidate_id == first.candidate_id
    assert await _count(session, RawIngestRecord) == 1
    assert await _count(session, Candidate) == 1


async def test_invalid_payload_marks_raw_record_failed(session):
    run = await get_or_create_run(session, "scraped_network")

    with pytest.raises(InvalidPayloadError):
        await ingest_payload(session, "scraped_network", ["not", "an", "object"], run)

    record = (await session.execute(select(RawIngestRecord))).scalar_one()
    assert record.processing_status is RecordStatus.FAILED
    assert "must be an object" in record.error
    assert record.payload == {"value": ["not", "an", "object"]}
    assert await _count(session, Candidate) == 0


async def test_ambiguous_email_is_recorded_not_merged(session, make_candidate):
    a = await make_candidate(email="shared@example.com", first_name="A")
    b = await make_candidate(email="shared@example.com", first_name="B")
    run = await get_or_create_run(session, "manual")

    result = await ingest_payload(session, "manual", {"full_name": "C Person", "email": "shared@example.com"}, run)

    assert result.anomaly == ANOMALY_AMBIGUOUS_EMAIL
    assert result.candidate_id not in (a.id, b.id)
    record = await session.get(RawIngestRecord, result.raw_record_id, populate_existing=True)
    assert record.resolution_note == ANOMALY_AMBIGUOUS_EMAIL
    assert (await session.get(Candidate, a.id, populate_existing=True)).first_name == "A"


async def test_cv_upload_enqueues_chunk_and_profile_jobs(session):
    run = await get_or_create_run(session, "cv_upload")
    text = "Name: Eva Jansen\nEmail: eva@example.com\nExperienced with Python and SQL."

    result = await ingest_payload(session, "cv_upload", {"upload_id": "u-1", "parsed_text": text}, run)

    candidate = await session.get(Candidate, result.candidate_id)
    assert (candidate.first_name, candidate.last_name) == ("Eva", "Jansen")
    assert candidate.email == "eva@example.com"
    kinds = (await session.execute(
        select(EmbeddingJob.kind).where(EmbeddingJob.candidate_id == candidate.id)
    )).scalars().all()
    assert sorted(k.value for k in kinds) == [JobKind.CV_CHUNKS.value, JobKind.PROFILE.value]


async def test_batch_tallies_results_and_updates_run(session):
    payloads = [
        {"id": "1", "name": "One Person", "email": "one@example.com"},
        {"id": "2", "name": "Two Person"},
        "garbage",
        {"id": "1", "name": "One Person", "email": "one@example.com", "headline": "Lead"},
        {"id": "2", "name": "Two Person"},
    ]

    report = await ingest_batch(session, "scraped_network", payloads, external_run_id="run-a", base_priority=0)

    assert report.received == 5
    assert (report.created, report.updated, report.duplicates, report.failed) == (2, 1, 1, 1)
    assert report.errors[0]["index"] == 2
    assert report.errors[0]["type"] == "InvalidPayloadError"

    run = await session.get(IngestRun, report.run_id, populate_existing=True)
    assert run.status is RunStatus.COMPLETED
    assert (run.total_received, run.total_created, run.total_updated, run.total_errors) == (5, 2, 1, 1)
    assert run.completed_at is not None


async def test_batch_with_only_failures_fails_the_run(session):
    report = await ingest_batch(session, "ats", [1, "two"], external_run_id="bad")

    assert report.failed == 2
    run = await session.get(IngestRun, report.run_id, populate_existing=True)
    assert run.status is RunStatus.FAILED


async def test_same_external_run_id_reuses_run(session):
    first = await get_or_create_run(session, "ats", "sync-42")
    second = await get_or_create_run(session, "ats", "sync-42")
    other = await get_or_create_run(session, "manual", "sync-42")

    assert first.id == second.id
    assert other.id != first.id


async def test_batch_reports_each_payload(session):
    payloads = [{"id": "1", "name": "One Person"}, "garbage", {"id": "1", "name": "One Person"}]

    report = await ingest_batch(session, "ats", payloads, external_run_id="per-item")

    assert [r["index"] for r in report.results] == [0, 2]
    first, repeat = report.results
    assert first["action"] == "created"
    assert repeat == {**first, "index": 2, "duplicate": True}
    assert report.to_dict()["results"] == report.results


async def test_name_fill_requeues_embedded_candidate(session, make_candidate):
    candidate = await make_candidate(
        source=CandidateSource.SCRAPED_NETWORK,
        email="bo@example.com",
        current_title="Engineer",
        embedding_status=EmbeddingStatus.COMPLETED,
    )
    run = await get_or_create_run(session, "ats")

    result = await ingest_payload(
        session, "ats", {"id": "b-1", "name": "Bo Smith", "emails": [{"value": "bo@example.com"}]}, run
    )

    assert result.candidate_id == candidate.id
    assert result.jobs_enqueued == 1
    refreshed = await session.get(Candidate, candidate.id, populate_existing=True)
    assert (refreshed.first_name, refreshed.last_name) == ("Bo", "Smith")
    assert refreshed.embedding_status is EmbeddingStatus.PENDING


def _conflict() -> IntegrityError:
    return IntegrityError("INSERT INTO embedding_jobs", {}, Exception("UNIQUE constraint failed"))


async def test_write_conflict_is_retried_once(session, monkeypatch):
    calls = []

    async def flaky_enqueue(session, candidate, base_priority):
        calls.append(candidate.id)
        if len(calls) == 1:
            raise _conflict()
        return await enqueue_for_candidate(session, candidate, base_priority)

    monkeypatch.setattr(ingest, "enqueue_for_candidate", flaky_enqueue)
    run = await get_or_create_run(session, "manual")

    result = await ingest_payload(session, "manual", {"full_name": "Ann Lee"}, run)

    assert len(calls) == 2
    assert result.action is MergeAction.CREATED
    assert await _count(session, Candidate) == 1
    record = await session.get(RawIngestRecord, result.raw_record_id, populate_existing=True)
    assert record.processing_status is RecordStatus.PROCESSED


async def test_repeated_write_conflict_fails_record(session, monkeypatch):
    async def conflicting_enqueue(session, candidate, base_priority):
        raise _conflict()

    monkeypatch.setattr(ingest, "enqueue_for_candidate", conflicting_enqueue)
    run = await get_or_create_run(session, "manual")

    with pytest.raises(WriteConflictError):
        await ingest_payload(session, "manual", {"full_name": "Ann Lee"}, run)

    assert await _count(session, Candidate) == 0
    record = (await session.execute(
        select(RawIngestRecord).execution_options(populate_existing=True)
    )).scalar_one()
    assert record.processing_status is RecordStatus.FAILED
    assert record.error.startswith("write conflict")
