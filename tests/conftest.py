from __future__ import annotations

import hashlib
import os
from collections.abc import AsyncIterator

# Must be set before talentpool modules build their settings and engine
os.environ.setdefault("DB_URL", "sqlite+aiosqlite://")
os.environ.setdefault("EMBEDDING_DIM", "8")
os.environ.setdefault("LOG_FORMAT", "text")
os.environ.setdefault("QUEUE_INTER_BATCH_DELAY_SECONDS", "0")

import pytest
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from ai.embeddings import EmbeddingError
from talentpool.models import (
    Base,
    Candidate,
    CandidateSource,
    CandidateSourceId,
    EmbeddingJob,
    JobKind,
    JobStatus,
)

EMBEDDING_DIM = int(os.environ["EMBEDDING_DIM"])


class FakeProvider:
    """Deterministic embedding provider that records every call."""

    model_name = "fake-embedder"

    def __init__(self, dim: int = EMBEDDING_DIM, fail_with: str | None = None) -> None:
        self.dim = dim
        self.fail_with = fail_with
        self.calls: list[list[str]] = []

    async def embed(self, texts: list[str]) -> list[list[float]]:
        self.calls.append(list(texts))
        if self.fail_with is not None:
            raise EmbeddingError(self.fail_with)
        vectors = []
        for text in texts:
            digest = hashlib.sha256(text.encode("utf-8")).digest()
            vectors.append([digest[i] / 255.0 for i in range(self.dim)])
        return vectors

    @property
    def embedded_texts(self) -> list[str]:
        return [text for call in self.calls for text in call]


@pytest.fixture
async def engine(tmp_path) -> AsyncIterator[AsyncEngine]:
    # File database so concurrent worker sessions each get their own connection
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'talentpool.db'}", poolclass=NullPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    try:
        yield engine
    finally:
        await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=engine, expire_on_commit=False, class_=AsyncSession)


@pytest.fixture
async def session(session_factory: async_sessionmaker[AsyncSession]) -> AsyncIterator[AsyncSession]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def make_candidate(session: AsyncSession):
    async def factory(
        *,
        source: CandidateSource = CandidateSource.MANUAL,
        external_id: str | None = None,
        **fields,
    ) -> Candidate:
        fields.setdefault("skills", [])
        fields.setdefault("field_sources", {})
        candidate = Candidate(source=source, **fields)
        candidate.source_ids = [CandidateSourceId(source=source, external_id=external_id)] if external_id else []
        session.add(candidate)
        await session.commit()
        return candidate

    return factory


@pytest.fixture
def make_job(session: AsyncSession):
    async def factory(
        candidate_id: int,
        *,
        kind: JobKind = JobKind.PROFILE,
        priority: int = 100,
        status: JobStatus = JobStatus.PENDING,
        **fields,
    ) -> EmbeddingJob:
        job = EmbeddingJob(candidate_id=candidate_id, kind=kind, priority=priority, status=status, **fields)
        session.add(job)
        await session.commit()
        return job

    return factory


