from __future__ import annotations

import pytest

from talentpool.errors import InvalidPayloadError
from talentpool.models import CandidateSource
from talentpool.payloads import AtsPayload, ScrapedNetworkPayload, content_hash, parse_payload
from talentpool.pipelines.adapters import adapt, adapt_raw

SCRAPED = {
    "id": "apl-1",
    "first_name": "Jane",
    "last_name": "Doe",
    "email": "Jane.Doe@Example.com ",
    "phone_numbers": [{"raw_number": "06 1234 5678"}],
    "linkedin_url": "https://www.linkedin.com/in/janedoe/",
    "title": "Backend Engineer",
    "organization": {"name": "Acme"},
    "city": "Utrecht",
    "country": "Netherlands",
    "employment_history": [{"title": "Engineer", "company": "Acme"}, "garbage"],
    "unknown_field": {"nested": True},
}


def test_scraped_payload_maps_and_normalizes():
    record = adapt_raw(CandidateSource.SCRAPED_NETWORK, SCRAPED)

    assert record.source is CandidateSource.SCRAPED_NETWORK
    assert record.external_id == "apl-1"
    attrs = record.attributes
    assert attrs.email == "jane.doe@example.com"
    assert attrs.phone == "+31612345678"
    assert attrs.linkedin_url == "https://www.linkedin.com/in/janedoe"
    assert attrs.current_company == "Acme"
    assert attrs.employment_history == [{"title": "Engineer", "company": "Acme"}]
    assert attrs.bio is None


def test_scraped_payload_uses_name_fallback():
    record = adapt_raw("scraped_network", {"name": "Pieter de Vries"})
    assert (record.attributes.first_name, record.attributes.last_name) == ("Pieter de", "Vries")
    assert record.external_id is None


def test_malformed_nested_values_become_absent():
    payload = parse_payload(
        CandidateSource.SCRAPED_NETWORK,
        {"organization": "not-an-object", "phone_numbers": "0612", "email": ["x"], "id": 17},
    )
    assert isinstance(payload, ScrapedNetworkPayload)
    record = adapt(payload)
    assert record.external_id == "17"
    assert record.attributes.current_company is None
    assert record.attributes.phone is None
    assert record.attributes.email is None


def test_ats_payload_with_enhancement():
    raw = {
        "id": 99,
        "name": "Jane Doe",
        "emails": [{"value": "bad"}, {"value": "JANE.DOE@example.com"}],
        "phones": [{"value": "+31 6 1111 2222"}],
        "current_title": "Lead Engineer",
        "enhanced": {
            "description": "<p>Builds   platforms</p>",
            "skills": ["Python", "python", "Kubernetes"],
            "employment_history": [{"title": "Lead", "company": "Initech", "description": "Platform"}],
        },
    }
    payload = parse_payload("ats", raw)
    assert isinstance(payload, AtsPayload)
    assert payload.has_enhancement

    attrs = adapt(payload).attributes
    assert attrs.first_name == "Jane" and attrs.last_name == "Doe"
    assert attrs.email == "jane.doe@example.com"
    assert attrs.phone == "+31611112222"
    assert attrs.bio == "Builds platforms"
    assert attrs.skills == ["Python", "Kubernetes"]


def test_ats_payload_without_enhancement_has_no_bio():
    attrs = adapt_raw("ats", {"id": "1", "first_name": "A", "last_name": "B"}).attributes
    assert attrs.bio is None
    assert attrs.skills == []
    assert attrs.employment_history is None


def test_cv_upload_extracts_contacts_and_skills():
    text = (
        "Name: Sanne Bakker\n"
        "Contact: sanne.bakker@Mail.com, +31 6 9876 5432\n"
        "Experience: Python developer building REST APIs on PostgreSQL and Docker.\n"
    )
    record = adapt_raw("cv_upload", {"upload_id": "up-7", "file_name": "cv.pdf", "parsed_text": text})
    attrs = record.attributes

    assert record.external_id == "up-7"
    assert (attrs.first_name, attrs.last_name) == ("Sanne", "Bakker")
    assert attrs.email == "sanne.bakker@mail.com"
    assert attrs.phone == "+31698765432"
    assert attrs.cv_parsed_text == text.strip()
    assert {"Python", "PostgreSQL", "Docker", "REST APIs"} <= set(attrs.skills)


def test_cv_upload_hints_win_over_extraction():
    attrs = adapt_raw(
        "cv_upload",
        {"parsed_text": "reach me at other@mail.com", "email": "hint@mail.com", "full_name": "Hint Person"},
    ).attributes
    assert attrs.email == "hint@mail.com"
    assert attrs.last_name == "Person"


def test_manual_payload_is_flat():
    attrs = adapt_raw(
        "manual",
        {
            "external_id": " m-1 ",
            "full_name": "Kees Jansen",
            "email": "KEES@jansen.nl",
            "bio": "Recruiter",
            "skills": "Leadership, Agile",
            "cv_parsed_text": "   ",
        },
    )
    assert attrs.external_id == "m-1"
    assert attrs.attributes.skills == ["Leadership", "Agile"]
    assert attrs.attributes.cv_parsed_text is None
    assert set(attrs.attributes.present()) == {"first_name", "last_name", "email", "bio", "skills"}


@pytest.mark.parametrize("raw", [None, "text", 12, ["list"]])
def test_non_object_payload_is_invalid(raw):
    with pytest.raises(InvalidPayloadError):
        adapt_raw("ats", raw)


def test_unknown_source_is_invalid():
    with pytest.raises(InvalidPayloadError):
        parse_payload("carrier-pigeon", {})


def test_content_hash_ignores_key_order():
    assert content_hash({"a": 1, "b": [1, 2]}) == content_hash({"b": [1, 2], "a": 1})
    assert content_hash({"a": 1}) != content_hash({"a": 2})
