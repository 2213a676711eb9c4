"""Core SQLAlchemy models (2.x style) for the candidate pipeline schema.

Canonical candidates, their per-source external ids, raw ingest receipts,
embedding jobs and embedding vectors. PostgreSQL with pgvector in production;
the partial unique indexes (one active candidate per email, one active job
per candidate and kind) are only emitted on PostgreSQL.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from pgvector.sqlalchemy import Vector
from sqlalchemy import JSON, ForeignKey, Index, Integer, String, Text, UniqueConstraint, text
from sqlalchemy import Enum as SAEnum
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from .config import settings


def utcnow() -> datetime:
    """Naive UTC timestamp, the storage convention for every datetime column."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class CandidateSource(str, Enum):
    """Ingestion sources."""
    SCRAPED_NETWORK = "scraped_network"
    ATS = "ats"
    CV_UPLOAD = "cv_upload"
    MANUAL = "manual"


class LifecycleStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class EmbeddingStatus(str, Enum):
    """Candidate-level embedding status."""
    NONE = "none"
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class JobKind(str, Enum):
    """Flavor of embedding work; decides which fields feed the embedding text."""
    PROFILE = "profile"
    EXPERIENCE = "experience"
    SKILLS = "skills"
    CV_CHUNKS = "cv_chunks"
    FULL_REINDEX = "full_reindex"


class JobStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


ACTIVE_JOB_STATUSES = (JobStatus.PENDING, JobStatus.IN_PROGRESS)


class RecordStatus(str, Enum):
    """Processing status of a raw ingest record."""
    PENDING = "pending"
    PROCESSED = "processed"
    FAILED = "failed"


class RunStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class MergeAction(str, Enum):
    CREATED = "created"
    UPDATED = "updated"


def _enum(enum_cls: type[Enum]) -> SAEnum:
    """Store enum values as plain strings (no native PG enum types)."""
    return SAEnum(
        enum_cls,
        native_enum=False,
        length=32,
        values_callable=lambda members: [m.value for m in members],
        validate_strings=True,
    )


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


class Candidate(Base):
    """Canonical candidate: the single merged record for one real person."""
    __tablename__ = "candidates"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    source: Mapped[CandidateSource] = mapped_column(_enum(CandidateSource), nullable=False, index=True)

    # Identity fields (fill-if-absent on merge)
    first_name: Mapped[str | None] = mapped_column(String(255))
    last_name: Mapped[str | None] = mapped_column(String(255))
    email: Mapped[str | None] = mapped_column(String(320), index=True)
    phone: Mapped[str | None] = mapped_column(String(64))
    linkedin_url: Mapped[str | None] = mapped_column(String(1024), index=True)

    # Professional fields (source-priority overwrite on merge)
    current_title: Mapped[str | None] = mapped_column(String(255))
    current_company: Mapped[str | None] = mapped_column(String(255))
    headline: Mapped[str | None] = mapped_column(Text)
    bio: Mapped[str | None] = mapped_column(Text)
    city: Mapped[str | None] = mapped_column(String(255))
    country: Mapped[str | None] = mapped_column(String(255))
    skills: Mapped[list[str]] = mapped_column(JSON, default=list, nullable=False)
    employment_history: Mapped[list[dict] | None] = mapped_column(JSON)
    education_history: Mapped[list[dict] | None] = mapped_column(JSON)
    cv_parsed_text: Mapped[str | None] = mapped_column(Text)

    # Provenance
    field_sources: Mapped[dict[str, str]] = mapped_column(JSON, default=dict, nullable=False)
    backfill_hash: Mapped[str | None] = mapped_column(String(64))

    lifecycle_status: Mapped[LifecycleStatus] = mapped_column(
        _enum(LifecycleStatus),
        default=LifecycleStatus.ACTIVE,
        nullable=False,
        index=True,
    )
    embedding_status: Mapped[EmbeddingStatus] = mapped_column(
        _enum(EmbeddingStatus),
        default=EmbeddingStatus.PENDING,
        nullable=False,
        index=True,
    )
    last_embedded_at: Mapped[datetime | None] = mapped_column()
    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(default=utcnow, onupdate=utcnow, nullable=False)

    # Relationships
    source_ids: Mapped[list[CandidateSourceId]] = relationship(
        "CandidateSourceId",
        back_populates="candidate",
        lazy="selectin",
        cascade="all, delete-orphan",
    )
    embeddings: Mapped[list[CandidateEmbedding]] = relationship(
        "CandidateEmbedding",
        back_populates="candidate",
        lazy="raise",
    )

    __table_args__ = (
        Index("ix_candidates_created_at", "created_at"),
        Index(
            "uq_candidates_active_email",
            "email",
            unique=True,
            postgresql_where=text("email IS NOT NULL AND lifecycle_status = 'active'"),
        ).ddl_if(dialect="postgresql"),
    )

    @property
    def external_ids(self) -> dict[str, str]:
        """Map of source -> external id."""
        return {sid.source.value: sid.external_id for sid in self.source_ids}

    @property
    def full_name(self) -> str | None:
        parts = [p for p in (self.first_name, self.last_name) if p]
        return " ".join(parts) or None


class CandidateSourceId(Base):
    """External identifier of a candidate within one source (at most one per source)."""
    __tablename__ = "candidate_source_ids"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    candidate_id: Mapped[int] = mapped_column(
        ForeignKey("candidates.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    source: Mapped[CandidateSource] = mapped_column(_enum(CandidateSource), nullable=False)
    external_id: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)

    candidate: Mapped[Candidate] = relationship("Candidate", back_populates="source_ids")

    __table_args__ = (
        UniqueConstraint("candidate_id", "source", name="uq_candidate_source_ids_candidate_source"),
        UniqueConstraint("source", "external_id", name="uq_candidate_source_ids_source_external"),
    )


class IngestRun(Base):
    """One external delivery run (actor run, ATS sync, upload batch)."""
    __tablename__ = "ingest_runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    source: Mapped[CandidateSource] = mapped_column(_enum(CandidateSource), nullable=False)
    external_run_id: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[RunStatus] = mapped_column(_enum(RunStatus), default=RunStatus.RUNNING, nullable=False)
    total_received: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_created: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_updated: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_errors: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    started_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column()

    records: Mapped[list[RawIngestRecord]] = relationship("RawIngestRecord", back_populates="run", lazy="raise")

    __table_args__ = (
        UniqueConstraint("source", "external_run_id", name="uq_ingest_runs_source_run"),
    )


class RawIngestRecord(Base):
    """Immutable receipt of one source payload, written before resolution."""
    __tablename__ = "raw_ingest_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[int] = mapped_column(ForeignKey("ingest_runs.id", ondelete="CASCADE"), nullable=False, index=True)
    source: Mapped[CandidateSource] = mapped_column(_enum(CandidateSource), nullable=False)
    external_id: Mapped[str | None] = mapped_column(String(255))
    payload: Mapped[dict] = mapped_column(JSON, nullable=False)
    content_hash: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    processing_status: Mapped[RecordStatus] = mapped_column(
        _enum(RecordStatus),
        default=RecordStatus.PENDING,
        nullable=False,
        index=True,
    )
    candidate_id: Mapped[int | None] = mapped_column(
        ForeignKey("candidates.id", ondelete="SET NULL"),
        index=True,
    )
    action: Mapped[MergeAction | None] = mapped_column(_enum(MergeAction))
    resolution_note: Mapped[str | None] = mapped_column(String(255))
    error: Mapped[str | None] = mapped_column(Text)
    received_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
    processed_at: Mapped[datetime | None] = mapped_column()

    run: Mapped[IngestRun] = relationship("IngestRun", back_populates="records")

    __table_args__ = (
        UniqueConstraint("run_id", "content_hash", name="uq_raw_ingest_records_run_hash"),
    )


class EmbeddingJob(Base):
    """Unit of asynchronous embedding work, retained after completion as audit trail."""
    __tablename__ = "embedding_jobs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    candidate_id: Mapped[int] = mapped_column(
        ForeignKey("candidates.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    kind: Mapped[JobKind] = mapped_column(_enum(JobKind), nullable=False)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=100)
    status: Mapped[JobStatus] = mapped_column(_enum(JobStatus), default=JobStatus.PENDING, nullable=False)
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    error: Mapped[str | None] = mapped_column(Text)
    result_summary: Mapped[dict | None] = mapped_column(JSON)
    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
    started_at: Mapped[datetime | None] = mapped_column()
    completed_at: Mapped[datetime | None] = mapped_column()
    failed_at: Mapped[datetime | None] = mapped_column()

    __table_args__ = (
        Index("ix_embedding_jobs_ready", "status", "priority", "created_at"),
        Index("ix_embedding_jobs_candidate_kind", "candidate_id", "kind"),
        Index(
            "uq_embedding_jobs_active",
            "candidate_id",
            "kind",
            unique=True,
            postgresql_where=text("status IN ('pending', 'in_progress')"),
        ).ddl_if(dialect="postgresql"),
    )


class CandidateEmbedding(Base):
    """Embedding vector keyed by (candidate, kind, chunk_index) using pgvector."""
    __tablename__ = "candidate_embeddings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    candidate_id: Mapped[int] = mapped_column(
        ForeignKey("candidates.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    kind: Mapped[JobKind] = mapped_column(_enum(JobKind), nullable=False)
    chunk_index: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    embedding: Mapped[list[float]] = mapped_column(Vector(settings.embeddings.dim), nullable=False)
    content_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    source_text: Mapped[str] = mapped_column(Text, nullable=False)
    embedding_model: Mapped[str] = mapped_column(String(255), nullable=False)
    computed_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)

    candidate: Mapped[Candidate] = relationship("Candidate", back_populates="embeddings")

    __table_args__ = (
        UniqueConstraint("candidate_id", "kind", "chunk_index", name="uq_candidate_embeddings_key"),
    )
