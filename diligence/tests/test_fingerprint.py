"""Tests for the scoring-input fingerprint and the skip decision."""
from __future__ import annotations

from diligence.config import DEFAULT_CRITERIA
from diligence.fingerprint import FingerprintInput, build_scoring_fingerprint, should_skip_rescore
from diligence.schemas import DiligenceDocument, DiligenceNote, MetricValue


def _input(**overrides) -> FingerprintInput:
    base = dict(
        company_name="Acme Robotics",
        company_url="https://acme.dev",
        notes="Strong founding team.",
        categorized_notes=[DiligenceNote(category="Team", title="Call", content="Ex-Stripe CTO")],
        metrics={"arr": MetricValue(value="$1.2M", source="manual")},
        documents=[
            DiligenceDocument(name="deck.pdf", type="deck", extracted_text="Deck text"),
            DiligenceDocument(name="model.xlsx", type="financial", extracted_text="Financials"),
        ],
        criteria=DEFAULT_CRITERIA,
        scorer_version="v1",
    )
    base.update(overrides)
    return FingerprintInput(**base)


class TestBuildScoringFingerprint:
    def test_deterministic_sha256(self):
        a = build_scoring_fingerprint(_input())
        b = build_scoring_fingerprint(_input())
        assert a == b
        assert len(a) == 64
        int(a, 16)

    def test_document_order_does_not_matter(self):
        inp = _input()
        reversed_docs = _input(documents=list(reversed(inp.documents)))
        assert build_scoring_fingerprint(inp) == build_scoring_fingerprint(reversed_docs)

    def test_note_order_does_not_matter(self):
        notes = [
            DiligenceNote(category="Team", title="A", content="one"),
            DiligenceNote(category="Market", title="B", content="two"),
        ]
        a = build_scoring_fingerprint(_input(categorized_notes=notes))
        b = build_scoring_fingerprint(_input(categorized_notes=list(reversed(notes))))
        assert a == b

    def test_metric_value_change_changes_hash(self):
        changed = _input(metrics={"arr": MetricValue(value="$2M", source="manual")})
        assert build_scoring_fingerprint(_input()) != build_scoring_fingerprint(changed)

    def test_metric_source_change_changes_hash(self):
        changed = _input(metrics={"arr": MetricValue(value="$1.2M", source="auto")})
        assert build_scoring_fingerprint(_input()) != build_scoring_fingerprint(changed)

    def test_document_text_change_changes_hash(self):
        docs = [DiligenceDocument(name="deck.pdf", type="deck", extracted_text="New deck text")]
        assert build_scoring_fingerprint(_input()) != build_scoring_fingerprint(_input(documents=docs))

    def test_scorer_version_change_changes_hash(self):
        assert build_scoring_fingerprint(_input()) != build_scoring_fingerprint(_input(scorer_version="v2"))

    def test_summarize_flag_changes_hash(self):
        flagged = _input(summarize_transcript_notes_for_scoring=True)
        assert build_scoring_fingerprint(_input()) != build_scoring_fingerprint(flagged)

    def test_irrelevant_metadata_ignored(self):
        docs = [
            DiligenceDocument(id="x1", name="deck.pdf", type="deck", extracted_text="Deck text", size=10),
            DiligenceDocument(id="x2", name="model.xlsx", type="financial", extracted_text="Financials"),
        ]
        assert build_scoring_fingerprint(_input()) == build_scoring_fingerprint(_input(documents=docs))

    def test_unserializable_input_is_unstable(self):
        fp = build_scoring_fingerprint(_input(criteria={"bad": object()}))
        assert fp.startswith("unstable:")
        assert fp != build_scoring_fingerprint(_input(criteria={"bad": object()}))


class TestShouldSkipRescore:
    def test_skip_when_unchanged(self):
        assert should_skip_rescore("abc", "abc") is True

    def test_no_skip_when_changed(self):
        assert should_skip_rescore("abc", "def") is False

    def test_no_skip_without_previous(self):
        assert should_skip_rescore(None, "abc") is False

    def test_force_full_never_skips(self):
        assert should_skip_rescore("abc", "abc", force_full=True) is False

    def test_category_rescore_never_skips(self):
        assert should_skip_rescore("abc", "abc", category_name="Team") is False

    def test_new_documents_never_skip(self):
        assert should_skip_rescore("abc", "abc", new_documents_count=1) is False

    def test_unstable_fingerprints_never_skip(self):
        assert should_skip_rescore("unstable:1", "unstable:1") is False
