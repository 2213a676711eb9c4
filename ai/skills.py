"""Skill matching for uploaded CV text, backed by the taxonomy and rapidfuzz.

The CV-upload adapter turns parsed CV text into the candidate's skill list
here. A skill is found either by a whole-word hit on its name or one of its
synonyms, or by a fuzzy match of its canonical name against the text.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from functools import lru_cache

from rapidfuzz import fuzz, process

from config.skill_taxonomy import SKILL_TAXONOMY
from talentpool.config import settings

logger = logging.getLogger(__name__)

EXACT_CONFIDENCE = 0.95

# Fuzzy matching short names ("Go", "R") against prose is noise
_MIN_FUZZY_LENGTH = 4


@dataclass(frozen=True)
class SkillEntry:
    canonical_skill: str
    synonyms: tuple[str, ...] = ()
    category: str = ""


@dataclass
class SkillMatch:
    """One skill found in a text; ``position`` is -1 for fuzzy hits."""
    canonical_skill: str
    matched_text: str
    confidence: float
    method: str
    position: int = -1


@dataclass
class _Term:
    text: str
    skill: str
    pattern: re.Pattern = field(repr=False)


def _term_pattern(term: str) -> re.Pattern:
    # \b does not work around symbols such as "c++" or ".net"
    return re.compile(rf"(?<![\w+#.]){re.escape(term)}(?![\w+#])", re.IGNORECASE)


def load_taxonomy(entries: list[dict] | None = None) -> list[SkillEntry]:
    return [
        SkillEntry(
            canonical_skill=entry["canonical_skill"],
            synonyms=tuple(entry.get("synonyms", ())),
            category=entry.get("category", ""),
        )
        for entry in (SKILL_TAXONOMY if entries is None else entries)
    ]


class SkillExtractor:
    """Finds taxonomy skills in free text."""

    def __init__(self, taxonomy: list[SkillEntry] | None = None) -> None:
        self.taxonomy = taxonomy if taxonomy is not None else load_taxonomy()
        self._names = [entry.canonical_skill for entry in self.taxonomy]
        self._terms: list[_Term] = []
        for entry in self.taxonomy:
            texts = {entry.canonical_skill.lower(), *(s.lower() for s in entry.synonyms)}
            # Longest first so "spring boot" is tried before "spring"
            self._terms.extend(
                _Term(text, entry.canonical_skill, _term_pattern(text))
                for text in sorted(texts, key=len, reverse=True)
            )
        logger.info(f"Skill extractor ready: {len(self._names)} skills, {len(self._terms)} terms")

    def _exact(self, text: str) -> dict[str, SkillMatch]:
        found: dict[str, SkillMatch] = {}
        for term in self._terms:
            if term.skill in found:
                continue
            hit = term.pattern.search(text)
            if hit:
                found[term.skill] = SkillMatch(term.skill, hit.group(0), EXACT_CONFIDENCE, "exact", hit.start())
        return found

    def _fuzzy(self, text: str, exclude: set[str], limit: int) -> list[SkillMatch]:
        candidates = [n for n in self._names if n not in exclude and len(n) >= _MIN_FUZZY_LENGTH]
        if not candidates:
            return []
        hits = process.extract(
            text.lower(),
            candidates,
            scorer=fuzz.partial_ratio,
            processor=str.lower,
            score_cutoff=settings.skills.fuzzy_threshold,
            limit=limit,
        )
        return [SkillMatch(name, name.lower(), score / 100.0, "fuzzy") for name, score, _ in hits]

    def extract(self, text: str, *, min_confidence: float | None = None, limit: int | None = None) -> list[SkillMatch]:
        """Skills in text, exact hits first in order of appearance, then fuzzy hits by score."""
        if not text or not text.strip():
            return []
        min_confidence = settings.skills.min_confidence if min_confidence is None else min_confidence
        limit = limit or settings.skills.max_skills_per_doc

        exact = self._exact(text)
        matches = sorted(exact.values(), key=lambda m: m.position)
        matches += self._fuzzy(text, set(exact), limit)
        matches = [m for m in matches if m.confidence >= min_confidence][:limit]

        logger.debug(f"Matched {len(matches)} skills in {len(text)} characters")
        return matches

    def extract_names(self, text: str) -> list[str]:
        return [m.canonical_skill for m in self.extract(text)]


@lru_cache(maxsize=1)
def get_skill_extractor() -> SkillExtractor:
    """Process-wide extractor; compiling the term patterns is not free."""
    return SkillExtractor()
