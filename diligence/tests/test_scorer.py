"""Tests for the scoring engine: normalization, aggregation and the orchestrated LLM calls."""
from __future__ import annotations

import re
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from diligence.config import DEFAULT_CRITERIA, AppSettings
from diligence.schemas import CriteriaCategory, Criterion, CriterionScore, Founder, MetricValue, ThesisAnswers
from diligence.scorer import (
    NO_EVIDENCE,
    NO_REASONING,
    LLMCallError,
    LLMClient,
    ScoringDocument,
    aggregate_overall,
    call_with_context,
    apply_insufficient_evidence_policy,
    clamp_score,
    derive_metrics,
    find_best_named_match,
    normalize_category_score,
    parse_json_object,
    score_diligence,
    summarize_notes_for_scoring,
)

# ---------------------------------------------------------------------------
# Fake model
# ---------------------------------------------------------------------------

SYNTHESIS = {
    "company_one_liner": "Workflow automation for freight dispatchers.",
    "industry": "Logistics Software",
    "founders": [{"name": "Ada Lovelace", "title": "CEO"}, {"name": ""}],
    "data_quality": 72,
    "metrics": {"arr": "$1.1M", "acv": "unknown"},
    "external_market_intelligence": {"tam_sam_som": {"company_claim": {"tam": "$9B"}}},
    "thesis_answers": {
        "problem_solving": "Dispatch is manual.",
        "solution": "Automated load building.",
        "why_might_fit": "Vertical SaaS",
        "founder_questions": {"questions": ["How do you price?"]},
    },
    "follow_up_questions": ["What is net revenue retention?"],
}


def _category_response(prompt: str) -> dict:
    name = re.search(r"^Category: (.+)$", prompt, re.M).group(1)
    score = {"Team": 80, "Market": 60, "Product": 70, "Deal Terms": 50}[name]
    return {
        "category": name,
        "score": score,
        "criteria": [{
            "name": "whatever",
            "score": score,
            "confidence": 70,
            "evidence_status": "supported",
            "reasoning": f"{name} reasoning",
            "evidence": [f"{name} evidence"],
            "follow_up_questions": [f"{name} question?"],
        }],
    }


def fake_client(synthesis: dict | None = None) -> MagicMock:
    async def call(system: str, user: str) -> dict:
        if user.startswith("# Category Scoring Task"):
            return _category_response(user)
        if user.startswith("# Diligence Synthesis Task"):
            return synthesis if synthesis is not None else SYNTHESIS
        return {"summary": "Condensed notes."}

    client = MagicMock()
    client.call = AsyncMock(side_effect=call)
    return client


# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------


class TestClampScore:
    @pytest.mark.parametrize("value,expected", [
        (55.4, 55), (120, 100), (-3, 0), ("77", 77), (None, 50), ("abc", 50), (float("nan"), 50),
    ])
    def test_clamp(self, value, expected):
        assert clamp_score(value) == expected

    def test_custom_fallback(self):
        assert clamp_score(None, 0) == 0


class TestFindBestNamedMatch:
    def test_exact_then_containment(self):
        items = [{"name": "Market Size (TAM)"}, {"name": "market-size"}]
        assert find_best_named_match(items, "name", "Market Size") == {"name": "market-size"}
        assert find_best_named_match(items[:1], "name", "Market Size") == items[0]

    def test_no_match(self):
        assert find_best_named_match([{"name": "Team"}, "junk"], "name", "Runway") is None


class TestEvidencePolicy:
    def test_unknown_capped(self):
        crit = CriterionScore(name="x", score=90, evidence_status="unknown")
        assert apply_insufficient_evidence_policy(crit, 55).score == 55
        assert apply_insufficient_evidence_policy(crit, None).score == 60

    def test_contradicted_capped_at_40(self):
        crit = CriterionScore(name="x", score=90, evidence_status="contradicted")
        assert apply_insufficient_evidence_policy(crit, None).score == 40

    def test_weak_without_evidence(self):
        crit = CriterionScore(name="x", score=90, evidence_status="weakly_supported", evidence=[NO_EVIDENCE])
        assert apply_insufficient_evidence_policy(crit, 50).score == 60

    def test_supported_untouched(self):
        crit = CriterionScore(name="x", score=90, evidence_status="supported", evidence=["ARR $1M"])
        assert apply_insufficient_evidence_policy(crit, 50).score == 90


class TestNormalizeCategoryScore:
    category = CriteriaCategory(name="Market", weight=40, criteria=[
        Criterion(name="Market Size", insufficient_evidence_cap=50),
        Criterion(name="Problem Necessity"),
    ])

    def test_matches_by_name_then_position(self):
        raw = {"score": 70, "criteria": [
            {"name": "Problem Necessity", "score": 80, "evidence_status": "supported", "evidence": ["pain"]},
            {"name": "TAM", "score": 65, "evidence_status": "supported", "evidence": ["$5B"]},
        ]}
        cat = normalize_category_score(self.category, raw)
        assert cat.score == 70
        assert cat.weighted_score == 28
        size, necessity = cat.criteria
        assert size.name == "Market Size"
        assert size.score == 80  # falls back to position 0
        assert necessity.score == 80
        assert necessity.evidence == ["pain"]

    def test_missing_fields_get_defaults(self):
        cat = normalize_category_score(self.category, {"criteria": "garbage"})
        assert [c.name for c in cat.criteria] == ["Market Size", "Problem Necessity"]
        size = cat.criteria[0]
        assert size.evidence == [NO_EVIDENCE]
        assert size.reasoning == NO_REASONING
        assert size.evidence_status == "unknown"
        assert size.score == 50
        # zero model score falls back to the criteria mean
        assert cat.score == 50

    def test_aggregate_overall(self):
        from diligence.schemas import CategoryScore
        cats = [CategoryScore(category="a", score=80, weight=30), CategoryScore(category="b", score=40, weight=10)]
        assert aggregate_overall(cats) == 70
        assert aggregate_overall([]) == 0


class TestDeriveMetrics:
    def test_fills_only_missing(self):
        base = {"arr": MetricValue(value="$2M", source="manual")}
        docs = [ScoringDocument("deck", "TAM: $40B\nIndustry growth rate of 22% CAGR")]
        metrics = derive_metrics(base, {"metrics": {"arr": "$9M", "acv": "N/A", "lead": "Sequoia"}}, docs)
        assert metrics["arr"].value == "$2M"
        assert "acv" not in metrics
        assert metrics["lead"].value == "Sequoia"
        assert metrics["lead"].source == "auto"
        assert metrics["tam"].value == "$40B"
        assert metrics["market_growth_rate"].value == "22%"
        assert metrics["market_growth_rate"].source_detail == "market_research"


# ---------------------------------------------------------------------------
# score_diligence
# ---------------------------------------------------------------------------


class TestScoreDiligence:
    @pytest.mark.asyncio
    async def test_scores_every_category_then_synthesizes(self):
        client = fake_client()
        result = await score_diligence(
            [ScoringDocument("deck.pdf", "Deck text", "deck")],
            DEFAULT_CRITERIA,
            client,
            company_name="Acme",
            metrics={"funding_amount": MetricValue(value="$3M", source="manual")},
        )
        assert client.call.await_count == 5
        score = result.score
        assert [c.category for c in score.categories] == ["Team", "Market", "Product", "Deal Terms"]
        assert score.overall == 65
        assert score.data_quality == 72
        assert score.scored_at
        assert score.thesis_answers.why_might_fit == ["Vertical SaaS"]
        assert score.follow_up_questions[0] == "What is net revenue retention?"
        assert len(score.follow_up_questions) <= 5
        assert result.company_metadata.industry == "Logistics Software"
        assert [f.name for f in result.company_metadata.founders] == ["Ada Lovelace"]
        assert result.metrics["arr"].value == "$1.1M"
        assert result.metrics["funding_amount"].value == "$3M"
        assert "acv" not in result.metrics

    @pytest.mark.asyncio
    async def test_single_category(self):
        client = fake_client()
        result = await score_diligence([], DEFAULT_CRITERIA.only("Team"), client, company_name="Acme")
        assert client.call.await_count == 2
        assert result.score.overall == 80

    @pytest.mark.asyncio
    async def test_existing_thesis_answers_kept(self):
        edited = ThesisAnswers(problem_solving="Analyst text", manually_edited=True)
        result = await score_diligence(
            [], DEFAULT_CRITERIA.only("Team"), fake_client(), company_name="Acme",
            existing_thesis_answers=edited,
        )
        assert result.score.thesis_answers == edited

    @pytest.mark.asyncio
    async def test_prompts_carry_thesis_and_metrics(self):
        client = fake_client()
        await score_diligence(
            [], DEFAULT_CRITERIA.only("Team"), client, company_name="Acme",
            metrics={"arr": MetricValue(value="$1M")}, thesis_markdown="Vertical AI thesis",
        )
        category_prompt = client.call.await_args_list[0].args[1]
        assert "Vertical AI thesis" in category_prompt
        assert "- arr: $1M" in category_prompt
        assert "Founder-Market Fit" in category_prompt

    @pytest.mark.asyncio
    async def test_llm_failure_propagates(self):
        client = MagicMock()
        client.call = AsyncMock(side_effect=LLMCallError("boom"))
        with pytest.raises(LLMCallError):
            await score_diligence([], DEFAULT_CRITERIA, client, company_name="Acme")

    @pytest.mark.asyncio
    async def test_category_failure_names_the_category(self):
        client = MagicMock()
        client.call = AsyncMock(side_effect=LLMCallError("timeout", retryable=True))
        with pytest.raises(LLMCallError) as exc_info:
            await score_diligence([], DEFAULT_CRITERIA.only("Team"), client, company_name="Acme")
        assert str(exc_info.value) == "Scoring category 'Team' failed: timeout"
        assert exc_info.value.retryable is True

    @pytest.mark.asyncio
    async def test_synthesis_failure_names_the_company(self):
        inner = fake_client()

        async def call(system: str, user: str) -> dict:
            if user.startswith("# Diligence Synthesis Task"):
                raise LLMCallError("Model reply is not valid JSON: 'oops'")
            return await inner.call(system, user)

        client = MagicMock()
        client.call = AsyncMock(side_effect=call)
        with pytest.raises(LLMCallError) as exc_info:
            await score_diligence([], DEFAULT_CRITERIA.only("Team"), client, company_name="Acme")
        assert str(exc_info.value).startswith("Synthesis for Acme failed: Model reply is not valid JSON")
        assert exc_info.value.retryable is False

    @pytest.mark.asyncio
    async def test_malformed_synthesis_is_coerced(self):
        malformed = {
            "data_quality": "high",
            "thesis_answers": {
                "problem_solving": None,
                "solution": ["Automated load building"],
                "ideal_customer": 42,
                "founder_questions": ["How do you price?"],
                "manually_edited": "no",
            },
            "founders": [
                {"name": "Ada", "prior_exits": "Acme (2019)", "title": None, "has_been_ceo": None},
                {"name": "Grace", "has_prior_exit": "yes", "linkedin_url": ["not", "a", "url"]},
            ],
        }
        result = await score_diligence(
            [], DEFAULT_CRITERIA.only("Team"), fake_client(malformed), company_name="Acme",
        )
        answers = result.score.thesis_answers
        assert answers.problem_solving == ""
        assert answers.solution == ""
        assert answers.ideal_customer == "42"
        assert answers.founder_questions.questions == ["How do you price?"]
        assert answers.manually_edited is False
        assert result.score.data_quality == 60
        ada, grace = result.company_metadata.founders
        assert ada.prior_exits == ["Acme (2019)"]
        assert ada.title is None
        assert ada.has_been_ceo is False
        assert grace.has_prior_exit is True
        assert grace.linkedin_url is None

    @pytest.mark.asyncio
    async def test_long_notes_summarized_when_enabled(self):
        client = fake_client()
        await score_diligence(
            [], DEFAULT_CRITERIA.only("Team"), client, company_name="Acme",
            notes="call transcript " * 500,
            settings=AppSettings(summarize_transcript_notes_for_scoring=True),
        )
        assert client.call.await_count == 3
        assert "Condensed notes." in client.call.await_args_list[1].args[1]


class TestSummarizeNotes:
    @pytest.mark.asyncio
    async def test_short_notes_untouched(self):
        client = fake_client()
        assert await summarize_notes_for_scoring(client, "Acme", "short") == "short"
        client.call.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_failure_falls_back_to_raw(self):
        client = MagicMock()
        client.call = AsyncMock(side_effect=LLMCallError("down"))
        notes = "x" * 7000
        assert await summarize_notes_for_scoring(client, "Acme", notes) == notes


# ---------------------------------------------------------------------------
# LLMClient
# ---------------------------------------------------------------------------


class TestLenientModels:
    def test_thesis_answers_from_loose_payload(self):
        answers = ThesisAnswers.model_validate({"problem_solving": None, "founder_questions": ["How?"]})
        assert answers.problem_solving == ""
        assert answers.founder_questions.questions == ["How?"]
        assert answers.manually_edited is None

    def test_founder_questions_single_string(self):
        answers = ThesisAnswers.model_validate({"founder_questions": "Why now?"})
        assert answers.founder_questions.questions == ["Why now?"]
        nested = ThesisAnswers.model_validate({"founder_questions": {"questions": "Why you?", "key_gaps": None}})
        assert nested.founder_questions.questions == ["Why you?"]
        assert nested.founder_questions.key_gaps == ""

    def test_founder_from_loose_payload(self):
        founder = Founder.model_validate({"name": "Ada", "prior_exits": "Acme (2019)", "has_been_cto": 1})
        assert founder.prior_exits == ["Acme (2019)"]
        assert founder.has_been_cto is True
        assert founder.title is None


class TestParseJsonObject:
    def test_bare_and_fenced(self):
        assert parse_json_object('{"a": 1}') == {"a": 1}
        assert parse_json_object('```\n{"a": 2}\n```') == {"a": 2}

    def test_prose_wrapped(self):
        text = 'Here is the assessment: {"score": 55, "notes": "ok"} Let me know.'
        assert parse_json_object(text) == {"score": 55, "notes": "ok"}

    @pytest.mark.parametrize("text", ["[1, 2]", "\"just a string\"", "", "no braces here"])
    def test_non_object_rejected(self, text):
        with pytest.raises(LLMCallError) as exc_info:
            parse_json_object(text)
        assert exc_info.value.retryable is False


class TestCallWithContext:
    @pytest.mark.asyncio
    async def test_prefixes_message_and_keeps_retryable(self):
        client = MagicMock()
        client.call = AsyncMock(side_effect=LLMCallError("rate limited", retryable=True))
        with pytest.raises(LLMCallError) as exc_info:
            await call_with_context(client, "sys", "user", "Team research failed")
        assert str(exc_info.value) == "Team research failed: rate limited"
        assert exc_info.value.retryable is True

    @pytest.mark.asyncio
    async def test_passes_result_through(self):
        client = MagicMock()
        client.call = AsyncMock(return_value={"ok": True})
        assert await call_with_context(client, "sys", "user", "ctx") == {"ok": True}


class TestLLMClient:
    def test_unknown_provider(self):
        with pytest.raises(ValueError):
            LLMClient(provider="nope")

    @pytest.mark.asyncio
    async def test_anthropic_fenced_json(self):
        client = LLMClient(provider="anthropic", api_key="test-key")
        message = MagicMock()
        message.content = [MagicMock(text='```json\n{"score": 70}\n```')]
        with patch.object(client._client.messages, "create", AsyncMock(return_value=message)):
            assert await client.call("sys", "user") == {"score": 70}

    @pytest.mark.asyncio
    async def test_invalid_json_not_retryable(self):
        client = LLMClient(provider="anthropic", api_key="test-key")
        message = MagicMock()
        message.content = [MagicMock(text="not json")]
        with patch.object(client._client.messages, "create", AsyncMock(return_value=message)):
            with pytest.raises(LLMCallError) as exc_info:
                await client.call("sys", "user")
        assert exc_info.value.retryable is False

    @pytest.mark.asyncio
    async def test_api_error_retryable(self):
        client = LLMClient(provider="anthropic", api_key="test-key")
        with patch.object(client._client.messages, "create", AsyncMock(side_effect=RuntimeError("503"))):
            with pytest.raises(LLMCallError) as exc_info:
                await client.call("sys", "user")
        assert exc_info.value.retryable is True
