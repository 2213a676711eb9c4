"""Source adapters: map one typed source payload to canonical candidate attributes.

Each source has its own field mapping; every contact field goes through the
field normalizer, and a missing optional field maps to an absent attribute,
never to an error.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field, fields
from typing import Any

from ai.skills import get_skill_extractor
from talentpool.models import CandidateSource
from talentpool.payloads import (
    AtsPayload,
    CvUploadPayload,
    ManualPayload,
    RawPayload,
    ScrapedNetworkPayload,
    parse_payload,
)
from talentpool.pipelines.normalization import (
    clean_text,
    extract_email_from_text,
    extract_phone_from_text,
    normalize_email,
    normalize_history,
    normalize_phone,
    normalize_skills,
    normalize_url,
    split_full_name,
)

logger = logging.getLogger(__name__)

_CV_NAME_PATTERN = re.compile(r"(?:^|\n)\s*name\s*[:\-]\s*([^\n]{2,80})", re.IGNORECASE)

IDENTITY_FIELDS: tuple[str, ...] = ("first_name", "last_name", "email", "phone", "linkedin_url")
PROFESSIONAL_FIELDS: tuple[str, ...] = (
    "current_title",
    "current_company",
    "headline",
    "bio",
    "city",
    "country",
    "employment_history",
    "education_history",
    "cv_parsed_text",
)
LIST_FIELDS: tuple[str, ...] = ("skills",)


@dataclass
class CandidateAttributes:
    """Editable candidate fields as produced by one source payload."""
    first_name: str | None = None
    last_name: str | None = None
    email: str | None = None
    phone: str | None = None
    linkedin_url: str | None = None
    current_title: str | None = None
    current_company: str | None = None
    headline: str | None = None
    bio: str | None = None
    city: str | None = None
    country: str | None = None
    skills: list[str] = field(default_factory=list)
    employment_history: list[dict] | None = None
    education_history: list[dict] | None = None
    cv_parsed_text: str | None = None

    def present(self) -> dict[str, Any]:
        """Fields that carry a value (non-empty)."""
        return {
            f.name: getattr(self, f.name)
            for f in fields(self)
            if getattr(self, f.name) not in (None, "", [], {})
        }


@dataclass
class AdaptedRecord:
    """Adapter output: normalized attributes tagged with source identity."""
    source: CandidateSource
    external_id: str | None
    attributes: CandidateAttributes


def _external_id(raw: str | None) -> str | None:
    if raw is None:
        return None
    value = raw.strip()
    return value or None


def _adapt_scraped(payload: ScrapedNetworkPayload) -> AdaptedRecord:
    first, last = split_full_name(payload.first_name, payload.last_name, payload.name)
    phone = None
    for number in payload.phone_numbers:
        phone = normalize_phone(number.raw_number) or normalize_phone(number.sanitized_number)
        if phone:
            break

    attrs = CandidateAttributes(
        first_name=first,
        last_name=last,
        email=normalize_email(payload.email),
        phone=phone,
        linkedin_url=normalize_url(payload.linkedin_url),
        current_title=clean_text(payload.title),
        current_company=clean_text(payload.organization.name) if payload.organization else None,
        headline=clean_text(payload.headline),
        city=clean_text(payload.city),
        country=clean_text(payload.country),
        skills=normalize_skills(payload.skills),
        employment_history=normalize_history(payload.employment_history),
        education_history=normalize_history(payload.education),
    )
    return AdaptedRecord(payload.source, _external_id(payload.id), attrs)


def _first_value(values, normalizer) -> str | None:
    for entry in values:
        normalized = normalizer(entry.value)
        if normalized:
            return normalized
    return None


def _adapt_ats(payload: AtsPayload) -> AdaptedRecord:
    first, last = split_full_name(payload.first_name, payload.last_name, payload.name)
    enhanced = payload.enhanced

    attrs = CandidateAttributes(
        first_name=first,
        last_name=last,
        email=_first_value(payload.emails, normalize_email),
        phone=_first_value(payload.phones, normalize_phone),
        linkedin_url=normalize_url(payload.linkedin_url),
        current_title=clean_text(payload.current_title),
        current_company=clean_text(payload.current_company),
        headline=clean_text(payload.headline),
        city=clean_text(payload.city),
        country=clean_text(payload.country),
    )
    if payload.has_enhancement:
        attrs.bio = clean_text(enhanced.description)
        attrs.skills = normalize_skills(enhanced.skills)
        attrs.employment_history = normalize_history(enhanced.employment_history)
        attrs.education_history = normalize_history(enhanced.education_history)
    return AdaptedRecord(payload.source, _external_id(payload.id), attrs)


def _adapt_cv_upload(payload: CvUploadPayload) -> AdaptedRecord:
    text = (payload.parsed_text or "").strip() or None

    name_fallback = payload.full_name
    if not (payload.first_name or payload.last_name or name_fallback) and text:
        match = _CV_NAME_PATTERN.search(text)
        if match:
            name_fallback = match.group(1)
    first, last = split_full_name(payload.first_name, payload.last_name, name_fallback)

    skills: list[str] = []
    if text:
        skills = normalize_skills(get_skill_extractor().extract_names(text))

    attrs = CandidateAttributes(
        first_name=first,
        last_name=last,
        email=normalize_email(payload.email) or extract_email_from_text(text),
        phone=normalize_phone(payload.phone) or extract_phone_from_text(text),
        linkedin_url=normalize_url(payload.linkedin_url),
        skills=skills,
        cv_parsed_text=text,
    )
    logger.debug(
        f"Adapted CV upload {payload.upload_id or payload.file_name}: "
        f"{len(skills)} skills, email={'yes' if attrs.email else 'no'}"
    )
    return AdaptedRecord(payload.source, _external_id(payload.upload_id), attrs)


def _adapt_manual(payload: ManualPayload) -> AdaptedRecord:
    first, last = split_full_name(payload.first_name, payload.last_name, payload.full_name)
    attrs = CandidateAttributes(
        first_name=first,
        last_name=last,
        email=normalize_email(payload.email),
        phone=normalize_phone(payload.phone),
        linkedin_url=normalize_url(payload.linkedin_url),
        current_title=clean_text(payload.current_title),
        current_company=clean_text(payload.current_company),
        headline=clean_text(payload.headline),
        bio=clean_text(payload.bio),
        city=clean_text(payload.city),
        country=clean_text(payload.country),
        skills=normalize_skills(payload.skills),
        employment_history=normalize_history(payload.employment_history),
        education_history=normalize_history(payload.education_history),
        cv_parsed_text=(payload.cv_parsed_text or "").strip() or None,
    )
    return AdaptedRecord(payload.source, _external_id(payload.external_id), attrs)


def adapt(payload: RawPayload) -> AdaptedRecord:
    """Map a typed source payload to canonical attributes."""
    if isinstance(payload, ScrapedNetworkPayload):
        return _adapt_scraped(payload)
    if isinstance(payload, AtsPayload):
        return _adapt_ats(payload)
    if isinstance(payload, CvUploadPayload):
        return _adapt_cv_upload(payload)
    if isinstance(payload, ManualPayload):
        return _adapt_manual(payload)
    raise TypeError(f"No adapter for payload type {type(payload).__name__}")


def adapt_raw(source: CandidateSource | str, raw: Any) -> AdaptedRecord:
    """Parse and adapt an untyped payload in one step.

    Raises:
        InvalidPayloadError: If raw cannot be read as the source's payload at all
    """
    return adapt(parse_payload(source, raw))
