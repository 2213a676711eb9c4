from __future__ import annotations

import pytest
from sqlalchemy import select

from talentpool.models import CandidateSource, EmbeddingJob, JobKind, JobStatus
from talentpool.pipelines.queue import (
    claim_job,
    compute_priority,
    determine_job_kind,
    enqueue,
    enqueue_for_candidate,
    kinds_for_candidate,
    pending_job_ids,
    queue_stats,
)


def test_compute_priority_bonuses_and_source_weight():
    fields = {
        "bio": "x",
        "employment_history": [{"title": "Dev", "description": "Built things"}],
        "cv_parsed_text": "cv",
        "skills": ["Python"],
    }
    # 100 + bio 20 + detailed 20 + cv 30 + employment 15 + skills 10 + manual 50
    assert compute_priority(fields, CandidateSource.MANUAL, 100) == 245
    assert compute_priority({}, CandidateSource.SCRAPED_NETWORK, 100) == 110
    assert compute_priority({"employment_history": [{"title": "Dev"}]}, "ats", 0) == 45


def test_compute_priority_is_capped():
    assert compute_priority({"bio": "x"}, CandidateSource.CV_UPLOAD, 990) == 999


@pytest.mark.parametrize(
    "fields,source,expected",
    [
        ({"cv_parsed_text": "cv"}, CandidateSource.CV_UPLOAD, JobKind.CV_CHUNKS),
        ({"cv_parsed_text": "cv", "employment_history": [{}]}, CandidateSource.MANUAL, JobKind.CV_CHUNKS),
        ({"bio": "b"}, CandidateSource.ATS, JobKind.FULL_REINDEX),
        ({"employment_history": [{"title": "x"}]}, CandidateSource.ATS, JobKind.FULL_REINDEX),
        ({"cv_parsed_text": "cv"}, CandidateSource.SCRAPED_NETWORK, JobKind.FULL_REINDEX),
        ({"employment_history": [{"title": "x"}]}, CandidateSource.MANUAL, JobKind.FULL_REINDEX),
        ({"employment_history": [{"title": "x"}]}, CandidateSource.SCRAPED_NETWORK, JobKind.PROFILE),
        ({}, CandidateSource.CV_UPLOAD, JobKind.PROFILE),
        (None, "unknown-source", JobKind.PROFILE),
    ],
)
def test_determine_job_kind(fields, source, expected):
    assert determine_job_kind(fields, source) is expected


def test_kinds_for_candidate_adds_profile_for_non_completing_kind():
    assert kinds_for_candidate({"cv_parsed_text": "cv"}, "cv_upload") == [JobKind.CV_CHUNKS, JobKind.PROFILE]
    assert kinds_for_candidate({"bio": "b"}, "ats") == [JobKind.FULL_REINDEX]
    assert kinds_for_candidate({}, "manual") == [JobKind.PROFILE]


async def test_enqueue_is_idempotent(session, make_candidate):
    candidate = await make_candidate(first_name="Jane")

    first = await enqueue(session, candidate.id, JobKind.PROFILE, 100, fields=candidate)
    second = await enqueue(session, candidate.id, JobKind.PROFILE, 500, fields=candidate)
    other_kind = await enqueue(session, candidate.id, JobKind.SKILLS, 100)
    await session.commit()

    assert first.created and not second.created
    assert first.job_id == second.job_id
    assert other_kind.created and other_kind.job_id != first.job_id
    jobs = (await session.execute(select(EmbeddingJob))).scalars().all()
    assert len(jobs) == 2


async def test_enqueue_after_completion_creates_new_job(session, make_candidate, make_job):
    candidate = await make_candidate(first_name="Jane")
    done = await make_job(candidate.id, status=JobStatus.COMPLETED)

    result = await enqueue(session, candidate.id, JobKind.PROFILE)

    assert result.created
    assert result.job_id != done.id


async def test_enqueue_for_candidate_uses_candidate_data(session, make_candidate):
    candidate = await make_candidate(source=CandidateSource.CV_UPLOAD, cv_parsed_text="cv words")

    results = await enqueue_for_candidate(session, candidate, 100)
    await session.commit()

    kinds = (await session.execute(select(EmbeddingJob.kind).order_by(EmbeddingJob.id))).scalars().all()
    assert [r.created for r in results] == [True, True]
    assert kinds == [JobKind.CV_CHUNKS, JobKind.PROFILE]


async def test_claim_is_exclusive(session_factory, make_candidate, make_job):
    candidate = await make_candidate(first_name="Jane")
    job = await make_job(candidate.id)

    async with session_factory() as first, session_factory() as second:
        results = [await claim_job(first, job.id), await claim_job(second, job.id)]

    assert sorted(results) == [False, True]
    async with session_factory() as check:
        claimed = await check.get(EmbeddingJob, job.id)
        assert claimed.status is JobStatus.IN_PROGRESS
        assert claimed.attempts == 1
        assert claimed.started_at is not None


async def test_pending_job_ids_orders_by_priority_then_age(session, make_candidate, make_job):
    candidate = await make_candidate(first_name="Jane")
    jobs = []
    for priority, kind in zip([50, 90, 90, 10], [JobKind.PROFILE, JobKind.SKILLS, JobKind.EXPERIENCE, JobKind.CV_CHUNKS]):
        jobs.append(await make_job(candidate.id, kind=kind, priority=priority))

    assert await pending_job_ids(session, 2) == [jobs[1].id, jobs[2].id]
    assert await pending_job_ids(session, 10) == [jobs[1].id, jobs[2].id, jobs[0].id, jobs[3].id]


async def test_queue_stats(session, make_candidate, make_job):
    candidate = await make_candidate(first_name="Jane")
    await make_job(candidate.id, kind=JobKind.PROFILE)
    await make_job(candidate.id, kind=JobKind.SKILLS, status=JobStatus.FAILED)

    stats = await queue_stats(session)

    assert stats["total"] == 2
    assert stats["by_status"]["pending"] == 1
    assert stats["by_status"]["failed"] == 1
    assert stats["pending_by_kind"]["profile"] == 1
    assert stats["pending_by_kind"]["skills"] == 0
