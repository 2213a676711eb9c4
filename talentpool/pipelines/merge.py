"""Merge engine: fold one adapted record into a canonical candidate.

Rules:
- identity fields (name, email, phone, LinkedIn URL) are fill-if-absent and
  never overwritten by a merge;
- professional fields are overwritten only by a source ranked at least as
  high as the source that last wrote the field;
- skills are an ordered, case-insensitive union regardless of rank;
- the source's external id is recorded if the candidate has none for it.

The engine does not touch the session; the caller adds the returned candidate
and flushes, so only store write conflicts can surface from a merge.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field

from talentpool.models import (
    Candidate,
    CandidateSource,
    CandidateSourceId,
    EmbeddingStatus,
    LifecycleStatus,
    MergeAction,
    utcnow,
)
from talentpool.pipelines.adapters import IDENTITY_FIELDS, PROFESSIONAL_FIELDS, CandidateAttributes

logger = logging.getLogger(__name__)

SOURCE_RANK: dict[CandidateSource, int] = {
    CandidateSource.MANUAL: 3,
    CandidateSource.CV_UPLOAD: 3,
    CandidateSource.ATS: 2,
    CandidateSource.SCRAPED_NETWORK: 1,
}

# Fields that feed embedding text; the profile text carries the name
CONTENT_FIELDS: tuple[str, ...] = ("first_name", "last_name") + PROFESSIONAL_FIELDS + ("skills",)


@dataclass
class MergeResult:
    """Candidate after the merge plus what changed."""
    candidate: Candidate
    action: MergeAction
    changed_fields: list[str] = field(default_factory=list)
    content_changed: bool = False


def source_rank(source: CandidateSource | str | None) -> int:
    if source is None:
        return 0
    try:
        return SOURCE_RANK[CandidateSource(source)]
    except ValueError:
        return 0


def merge_skills(existing: list[str] | None, incoming: list[str] | None) -> list[str]:
    """Ordered union; existing order first, case-insensitive dedupe."""
    merged: list[str] = []
    seen: set[str] = set()
    for skill in [*(existing or []), *(incoming or [])]:
        key = skill.lower()
        if key not in seen:
            seen.add(key)
            merged.append(skill)
    return merged


def _create(attrs: CandidateAttributes, source: CandidateSource, external_id: str | None) -> MergeResult:
    present = attrs.present()
    now = utcnow()
    candidate = Candidate(
        source=source,
        lifecycle_status=LifecycleStatus.ACTIVE,
        embedding_status=EmbeddingStatus.PENDING,
        skills=list(attrs.skills),
        field_sources={name: source.value for name in present},
        created_at=now,
        updated_at=now,
        # Set explicitly so the relationship is never lazy-loaded on a pending object
        source_ids=[CandidateSourceId(source=source, external_id=external_id)] if external_id else [],
    )
    for name, value in present.items():
        if name != "skills":
            setattr(candidate, name, value)

    return MergeResult(
        candidate=candidate,
        action=MergeAction.CREATED,
        changed_fields=sorted(present),
        content_changed=True,
    )


def _merge(
    candidate: Candidate,
    attrs: CandidateAttributes,
    source: CandidateSource,
    external_id: str | None,
) -> MergeResult:
    changed: list[str] = []
    field_sources = dict(candidate.field_sources or {})
    incoming_rank = source_rank(source)

    for name in IDENTITY_FIELDS:
        value = getattr(attrs, name)
        if value and not getattr(candidate, name):
            setattr(candidate, name, value)
            field_sources[name] = source.value
            changed.append(name)

    for name in PROFESSIONAL_FIELDS:
        value = getattr(attrs, name)
        if value in (None, "", []):
            continue
        current = getattr(candidate, name)
        if current == value:
            continue
        writer = field_sources.get(name) or candidate.source
        if current in (None, "", []) or incoming_rank >= source_rank(writer):
            setattr(candidate, name, value)
            field_sources[name] = source.value
            changed.append(name)

    merged_skills = merge_skills(candidate.skills, attrs.skills)
    if merged_skills != list(candidate.skills or []):
        candidate.skills = merged_skills
        changed.append("skills")

    if external_id:
        existing_ids = {sid.source: sid.external_id for sid in candidate.source_ids}
        if source not in existing_ids:
            candidate.source_ids.append(CandidateSourceId(source=source, external_id=external_id))
            changed.append(f"external_id:{source.value}")
        elif existing_ids[source] != external_id:
            logger.warning(
                f"Candidate {candidate.id} already has {source.value} id {existing_ids[source]!r}; "
                f"ignoring {external_id!r}"
            )

    if field_sources != (candidate.field_sources or {}):
        # Reassign so the JSON column is flagged dirty
        candidate.field_sources = field_sources

    content_changed = any(name in CONTENT_FIELDS for name in changed)
    if content_changed:
        candidate.embedding_status = EmbeddingStatus.PENDING
    candidate.updated_at = utcnow()

    return MergeResult(
        candidate=candidate,
        action=MergeAction.UPDATED,
        changed_fields=changed,
        content_changed=content_changed,
    )


def apply(
    existing: Candidate | None,
    attrs: CandidateAttributes,
    source: CandidateSource,
    external_id: str | None = None,
) -> MergeResult:
    """Create a candidate from attrs, or merge attrs into an existing one.

    Args:
        existing: Resolved candidate, or None to create a new one
        attrs: Normalized attributes from the source adapter
        source: Source of attrs
        external_id: The record's id within that source

    Returns:
        MergeResult; ``content_changed`` tells the caller to enqueue embedding work
    """
    if existing is None:
        return _create(attrs, source, external_id)
    return _merge(existing, attrs, source, external_id)
