"""Field normalization for untrusted source payloads.

Canonicalizes email, phone, URL and name fields into comparable forms, plus
the light text cleanup applied to free-text profile fields. Every function
here is pure and total: bad input maps to ``None`` (or an empty string),
never to an exception.
"""
from __future__ import annotations

import re
import unicodedata
from typing import Any
from urllib.parse import urlsplit, urlunsplit

from talentpool.config import settings

EMAIL_PATTERN = re.compile(r"^[a-z0-9._%+\-']+@[a-z0-9-]+(?:\.[a-z0-9-]+)*\.[a-z]{2,}$")
EMAIL_IN_TEXT_PATTERN = re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b")
PHONE_IN_TEXT_PATTERN = re.compile(r"(?:\+|00)?\d[\d\s().-]{7,}\d")
_PHONE_STRIP = re.compile(r"[^\d+]")
_HTML_TAG = re.compile(r"<[^>]+>")
_WHITESPACE = re.compile(r"\s+")


def _as_text(raw: Any) -> str | None:
    """Coerce scalar payload values to text; containers and None are absent."""
    if raw is None or isinstance(raw, (dict, list, tuple, set, bool)):
        return None
    if isinstance(raw, (int, float)):
        return str(raw)
    if isinstance(raw, str):
        return raw
    return None


def normalize_whitespace(text: str) -> str:
    """Normalize whitespace: collapse multiple spaces, remove leading/trailing."""
    return _WHITESPACE.sub(" ", text).strip()


def clean_html(text: str) -> str:
    """Remove HTML tags from text."""
    return _HTML_TAG.sub(" ", text)


def clean_text(raw: Any) -> str | None:
    """Clean a free-text profile field (title, headline, bio).

    NFC-normalizes, strips HTML tags, collapses whitespace. Empty → None.
    """
    text = _as_text(raw)
    if text is None:
        return None
    text = unicodedata.normalize("NFC", text)
    text = normalize_whitespace(clean_html(text))
    return text or None


def normalize_email(raw: Any) -> str | None:
    """Lowercase and trim; require ``local@domain.tld``."""
    text = _as_text(raw)
    if text is None:
        return None
    email = text.strip().lower()
    if email.startswith("mailto:"):
        email = email[len("mailto:"):]
    if not email or not EMAIL_PATTERN.match(email):
        return None
    return email


def normalize_phone(raw: Any, default_country_code: str | None = None) -> str | None:
    """Strip everything but digits and ``+`` and apply the default country code.

    A leading ``+`` is kept as-is and an international ``00`` prefix becomes
    ``+``. A leading national trunk ``0`` is replaced by the country code;
    anything else gets the country code prefixed.
    """
    text = _as_text(raw)
    if text is None:
        return None
    cleaned = _PHONE_STRIP.sub("", text)
    if not cleaned or not any(c.isdigit() for c in cleaned):
        return None

    country_code = default_country_code or settings.ingest.default_country_code
    if cleaned.startswith("+"):
        # Stray '+' characters after the first are formatting noise
        return "+" + cleaned[1:].replace("+", "")
    cleaned = cleaned.replace("+", "")
    if cleaned.startswith("00") and len(cleaned) > 2:
        return "+" + cleaned[2:]
    if cleaned.startswith("0"):
        return f"{country_code}{cleaned[1:]}"
    return f"{country_code}{cleaned}"


def normalize_url(raw: Any) -> str | None:
    """Trim a URL; lowercase scheme and host and drop a trailing slash.

    Only syntactic canonicalization, reachability is never checked.
    """
    text = _as_text(raw)
    if text is None:
        return None
    url = text.strip()
    if not url:
        return None

    try:
        parts = urlsplit(url)
    except ValueError:
        # Malformed netloc (e.g. unbalanced IPv6 brackets): keep the trimmed text
        return url.rstrip("/") or None
    if parts.scheme and parts.netloc:
        url = urlunsplit(
            (parts.scheme.lower(), parts.netloc.lower(), parts.path, parts.query, parts.fragment)
        )
    url = url.rstrip("/")
    return url or None


def normalize_name(raw: Any) -> str | None:
    """Trim and collapse whitespace in a name part."""
    text = _as_text(raw)
    if text is None:
        return None
    name = normalize_whitespace(unicodedata.normalize("NFC", text))
    return name or None


def split_full_name(
    first: Any = None,
    last: Any = None,
    full_name_fallback: Any = None,
) -> tuple[str | None, str | None]:
    """Resolve (first, last) from explicit parts or a full-name fallback.

    If either part is present both are passed through. Otherwise everything
    but the last token of the fallback is the first name and the last token
    is the surname; a single token yields ``(name, None)``.
    """
    first_name = normalize_name(first)
    last_name = normalize_name(last)
    if first_name or last_name:
        return first_name, last_name

    full = normalize_name(full_name_fallback)
    if not full:
        return None, None
    tokens = full.split(" ")
    if len(tokens) == 1:
        return tokens[0], None
    return " ".join(tokens[:-1]), tokens[-1]


def normalize_skills(raw: Any) -> list[str]:
    """Ordered-unique skill list, compared case-insensitively."""
    if raw is None:
        return []
    if isinstance(raw, str):
        items: list[Any] = raw.split(",")
    elif isinstance(raw, (list, tuple)):
        items = list(raw)
    else:
        return []

    seen: set[str] = set()
    skills: list[str] = []
    for item in items:
        if isinstance(item, dict):
            item = item.get("name") or item.get("value")
        skill = normalize_name(item)
        if skill and skill.lower() not in seen:
            seen.add(skill.lower())
            skills.append(skill)
    return skills


def normalize_history(raw: Any) -> list[dict] | None:
    """Keep only dict entries of a structured history list; empty → None."""
    if not isinstance(raw, (list, tuple)):
        return None
    entries = [dict(item) for item in raw if isinstance(item, dict) and item]
    return entries or None


def extract_email_from_text(text: str | None) -> str | None:
    """First syntactically valid email address found in free text."""
    if not text:
        return None
    for match in EMAIL_IN_TEXT_PATTERN.finditer(text):
        email = normalize_email(match.group(0))
        if email:
            return email
    return None


def extract_phone_from_text(text: str | None) -> str | None:
    """First phone-like number found in free text, normalized."""
    if not text:
        return None
    match = PHONE_IN_TEXT_PATTERN.search(text)
    if not match:
        return None
    return normalize_phone(match.group(0))
