"""Typed source payloads: one lenient Pydantic model per ingestion source.

``RawPayload`` is the tagged union the source adapter matches over. Models
accept whatever the producers send: unknown keys are ignored, scalars are
coerced to text, and malformed nested values collapse to "absent" instead of
failing validation. Only a payload that is not an object at all is rejected.
"""
from __future__ import annotations

import hashlib
import json
from collections.abc import Mapping
from typing import Annotated, Any, ClassVar, Union

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, ValidationError

from .errors import InvalidPayloadError
from .models import CandidateSource


def _lenient_text(value: Any) -> str | None:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, str):
        return value
    return None


def _dict_items(value: Any) -> list[dict[str, Any]]:
    if not isinstance(value, (list, tuple)):
        return []
    return [item for item in value if isinstance(item, Mapping)]


def _mapping_or_none(value: Any) -> Mapping[str, Any] | None:
    return value if isinstance(value, Mapping) else None


Text = Annotated[str | None, BeforeValidator(_lenient_text)]
DictList = Annotated[list[dict[str, Any]], BeforeValidator(_dict_items)]


class _SourcePayload(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)

    source: ClassVar[CandidateSource]


class ContactValue(BaseModel):
    """``{"value": ...}`` entry used by the ATS for emails and phones."""
    model_config = ConfigDict(extra="ignore", frozen=True)

    value: Text = None


class ScrapedPhone(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)

    raw_number: Text = None
    sanitized_number: Text = None


class ScrapedOrganization(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)

    id: Text = None
    name: Text = None
    industry: Text = None


class ScrapedNetworkPayload(_SourcePayload):
    """Person record delivered by the people-search scraping actor."""
    source: ClassVar[CandidateSource] = CandidateSource.SCRAPED_NETWORK

    id: Text = None
    first_name: Text = None
    last_name: Text = None
    name: Text = None
    email: Text = None
    phone_numbers: Annotated[list[ScrapedPhone], BeforeValidator(_dict_items)] = Field(default_factory=list)
    linkedin_url: Text = None
    title: Text = None
    organization: Annotated[ScrapedOrganization | None, BeforeValidator(_mapping_or_none)] = None
    headline: Text = None
    city: Text = None
    country: Text = None
    skills: Any = None
    employment_history: DictList = Field(default_factory=list)
    education: DictList = Field(default_factory=list)


class AtsEnhancement(BaseModel):
    """Detail block fetched from the ATS person endpoint."""
    model_config = ConfigDict(extra="ignore", frozen=True)

    description: Text = None
    employment_history: DictList = Field(default_factory=list)
    education_history: DictList = Field(default_factory=list)
    skills: Any = None
    resumes: DictList = Field(default_factory=list)


class AtsPayload(_SourcePayload):
    """Person record from the third-party ATS, optionally enhanced."""
    source: ClassVar[CandidateSource] = CandidateSource.ATS

    id: Text = None
    name: Text = None
    first_name: Text = None
    last_name: Text = None
    emails: Annotated[list[ContactValue], BeforeValidator(_dict_items)] = Field(default_factory=list)
    phones: Annotated[list[ContactValue], BeforeValidator(_dict_items)] = Field(default_factory=list)
    linkedin_url: Text = None
    current_title: Text = None
    current_company: Text = None
    headline: Text = None
    city: Text = None
    country: Text = None
    enhanced: Annotated[AtsEnhancement | None, BeforeValidator(_mapping_or_none)] = None

    @property
    def has_enhancement(self) -> bool:
        return self.enhanced is not None


class CvUploadPayload(_SourcePayload):
    """Manually uploaded CV after text extraction (file storage lives elsewhere)."""
    source: ClassVar[CandidateSource] = CandidateSource.CV_UPLOAD

    upload_id: Text = None
    file_name: Text = None
    parsed_text: Text = None
    first_name: Text = None
    last_name: Text = None
    full_name: Text = None
    email: Text = None
    phone: Text = None
    linkedin_url: Text = None


class ManualPayload(_SourcePayload):
    """Candidate entered by hand; flat fields mirroring the canonical record."""
    source: ClassVar[CandidateSource] = CandidateSource.MANUAL

    external_id: Text = None
    first_name: Text = None
    last_name: Text = None
    full_name: Text = None
    email: Text = None
    phone: Text = None
    linkedin_url: Text = None
    current_title: Text = None
    current_company: Text = None
    headline: Text = None
    bio: Text = None
    city: Text = None
    country: Text = None
    skills: Any = None
    employment_history: DictList = Field(default_factory=list)
    education_history: DictList = Field(default_factory=list)
    cv_parsed_text: Text = None


RawPayload = Union[ScrapedNetworkPayload, AtsPayload, CvUploadPayload, ManualPayload]

PAYLOAD_MODELS: dict[CandidateSource, type[_SourcePayload]] = {
    CandidateSource.SCRAPED_NETWORK: ScrapedNetworkPayload,
    CandidateSource.ATS: AtsPayload,
    CandidateSource.CV_UPLOAD: CvUploadPayload,
    CandidateSource.MANUAL: ManualPayload,
}


def parse_payload(source: CandidateSource | str, raw: Any) -> RawPayload:
    """Read a raw payload as the model of its source.

    Raises:
        InvalidPayloadError: If the source is unknown or raw is not an object
    """
    try:
        source = CandidateSource(source)
    except ValueError as e:
        raise InvalidPayloadError(f"Unknown source: {source!r}") from e

    if not isinstance(raw, Mapping):
        raise InvalidPayloadError(
            f"{source.value} payload must be an object, got {type(raw).__name__}"
        )
    try:
        return PAYLOAD_MODELS[source].model_validate(dict(raw))
    except ValidationError as e:
        raise InvalidPayloadError(f"Unreadable {source.value} payload: {e}") from e


def content_hash(raw: Any) -> str:
    """Deterministic sha256 over the canonical JSON form of a raw payload."""
    canonical = json.dumps(raw, sort_keys=True, separators=(",", ":"), default=str, ensure_ascii=False)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()
