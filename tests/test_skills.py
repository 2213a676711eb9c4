from __future__ import annotations

from ai.skills import SkillExtractor, load_taxonomy

TAXONOMY = load_taxonomy([
    {"canonical_skill": "Spring Boot", "synonyms": ["spring framework"]},
    {"canonical_skill": "C++", "synonyms": ["cpp"]},
    {"canonical_skill": "Kubernetes", "synonyms": ["k8s"]},
    {"canonical_skill": "Go", "synonyms": ["golang"]},
])


def test_exact_hits_in_order_of_appearance():
    extractor = SkillExtractor(TAXONOMY)

    matches = extractor.extract("Ran k8s clusters, wrote C++ services and Spring Boot apps")

    assert [m.canonical_skill for m in matches[:3]] == ["Kubernetes", "C++", "Spring Boot"]
    assert all(m.method == "exact" for m in matches[:3])


def test_short_names_only_match_whole_words():
    extractor = SkillExtractor(TAXONOMY)

    assert "Go" not in extractor.extract_names("Good communication and a goal-oriented attitude")
    assert "Go" in extractor.extract_names("Backend work in Go and Python")


def test_fuzzy_match_catches_misspelling():
    extractor = SkillExtractor(TAXONOMY)

    matches = extractor.extract("Deployed workloads on Kubernetis", min_confidence=0.8)

    assert [(m.canonical_skill, m.method) for m in matches] == [("Kubernetes", "fuzzy")]


def test_blank_text_has_no_skills():
    assert SkillExtractor(TAXONOMY).extract("   ") == []
