"""Exception types raised by the ingestion and embedding pipelines."""
from __future__ import annotations


class PipelineError(Exception):
    """Base class for pipeline failures surfaced to callers."""
    pass


class InvalidPayloadError(PipelineError):
    """Raised when a raw payload cannot be read as its source's shape at all."""
    pass


class WriteConflictError(PipelineError):
    """Raised when a resolve-merge cycle hits a store conflict twice in a row."""
    pass


class JobExecutionError(PipelineError):
    """Raised inside the worker when a claimed job cannot produce a vector."""
    pass


class CandidateNotFoundError(PipelineError):
    """Raised when an operation references a candidate that does not exist."""
    pass
