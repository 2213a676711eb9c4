"""Identity resolution: find the canonical candidate an incoming record belongs to.

Deterministic cascade, first hit wins:

1. ``(source, external_id)`` via ``candidate_source_ids``
2. normalized email among active candidates
3. normalized LinkedIn URL among active candidates
4. no match

Phone numbers are never used as a match key. More than one active candidate
on the email or LinkedIn step is an ambiguity: the resolver returns no match
and reports an anomaly instead of guessing.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from talentpool.models import Candidate, CandidateSource, CandidateSourceId, LifecycleStatus
from talentpool.pipelines.adapters import CandidateAttributes

logger = logging.getLogger(__name__)

MATCHED_ON_EXTERNAL_ID = "external_id"
MATCHED_ON_EMAIL = "email"
MATCHED_ON_LINKEDIN = "linkedin_url"

ANOMALY_AMBIGUOUS_EMAIL = "ambiguous_email"
ANOMALY_AMBIGUOUS_LINKEDIN = "ambiguous_linkedin_url"


@dataclass(frozen=True)
class Resolution:
    """Outcome of one resolution attempt."""
    candidate_id: int | None
    matched_on: str | None = None
    anomaly: str | None = None

    @property
    def matched(self) -> bool:
        return self.candidate_id is not None


async def _find_by_external_id(
    session: AsyncSession,
    source: CandidateSource,
    external_id: str,
) -> int | None:
    stmt = select(CandidateSourceId.candidate_id).where(
        CandidateSourceId.source == source,
        CandidateSourceId.external_id == external_id,
    )
    return (await session.execute(stmt)).scalar_one_or_none()


async def _active_ids_where(session: AsyncSession, column, value: str) -> list[int]:
    # Two rows are enough to detect ambiguity
    stmt = (
        select(Candidate.id)
        .where(column == value, Candidate.lifecycle_status == LifecycleStatus.ACTIVE)
        .order_by(Candidate.id)
        .limit(2)
    )
    return list((await session.execute(stmt)).scalars().all())


async def resolve(
    session: AsyncSession,
    attrs: CandidateAttributes,
    source: CandidateSource,
    external_id: str | None,
) -> Resolution:
    """Resolve normalized attributes to an existing candidate id, or none.

    Args:
        session: Database session
        attrs: Normalized attributes from the source adapter
        source: Source the record came from
        external_id: The record's id within that source, if any

    Returns:
        Resolution with the matched candidate id and the key it matched on,
        or an unmatched Resolution, possibly carrying an anomaly tag
    """
    if external_id:
        candidate_id = await _find_by_external_id(session, source, external_id)
        if candidate_id is not None:
            return Resolution(candidate_id, MATCHED_ON_EXTERNAL_ID)

    cascade = (
        (attrs.email, Candidate.email, MATCHED_ON_EMAIL, ANOMALY_AMBIGUOUS_EMAIL),
        (attrs.linkedin_url, Candidate.linkedin_url, MATCHED_ON_LINKEDIN, ANOMALY_AMBIGUOUS_LINKEDIN),
    )
    for value, column, matched_on, anomaly in cascade:
        if not value:
            continue
        hits = await _active_ids_where(session, column, value)
        if len(hits) == 1:
            return Resolution(hits[0], matched_on)
        if len(hits) > 1:
            logger.warning(
                f"Ambiguous {matched_on} match for {source.value} record {external_id!r}: "
                f"candidates {hits} share {value!r}; not merging",
                extra={"anomaly": anomaly, "candidate_ids": hits},
            )
            return Resolution(None, None, anomaly)

    return Resolution(None)
