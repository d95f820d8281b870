"""Scoring engine: parallel per-category evaluations with deterministic aggregation.

Architecture
------------
Each criteria category is scored by its own LLM call, all run concurrently
with ``asyncio.gather``.  Model output is normalized against the rubric
(criteria matched by name, then by position; scores clamped; evidence caps
applied), and the overall score is the weight-normalised average of the
category scores.

A final **synthesis** call sees the aggregated categories and produces the
thesis answers, founder questions, company metadata and market intelligence.

Any failed call raises ``LLMCallError``; nothing is partially returned.
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
import re
from dataclasses import dataclass, field
from typing import Any

from diligence.config import AppSettings
from diligence.schemas import (
    METRIC_KEYS,
    CategoryScore,
    CriteriaCategory,
    CriterionScore,
    DiligenceCriteria,
    DiligenceNote,
    DiligenceScore,
    Founder,
    HubSpotCompanyData,
    MetricValue,
    ThesisAnswers,
    VALID_EVIDENCE_STATUSES,
)
from diligence.text import (
    dedupe_list,
    extract_market_growth_from_evidence_text,
    extract_tam_from_evidence_text,
    is_placeholder_metric_value,
)
from diligence.utils import as_text, utc_now_iso

log = logging.getLogger(__name__)

# Part of every scoring fingerprint: bumping it invalidates all cached scores.
SCORER_VERSION = "2026-02-16-investor-questioning-v2"

NO_EVIDENCE = "No direct evidence cited."
NO_REASONING = "Model response did not include criterion-specific reasoning."


class LLMCallError(Exception):
    """LLM call failed or returned unparseable output."""
    def __init__(self, message: str, retryable: bool = False):
        super().__init__(message)
        self.retryable = retryable


# ---------------------------------------------------------------------------
# LLM Client
# ---------------------------------------------------------------------------

_FENCED_JSON_RE = re.compile(r"```(?:json)?\s*(\{.*\})\s*```", re.S)

DEFAULT_MODELS = {"anthropic": "claude-sonnet-4-5", "openai": "gpt-4o", "openai_compatible": "gpt-4o"}


def parse_json_object(text: str) -> dict[str, Any]:
    """Decode a model reply into a JSON object.

    Accepts bare JSON, a fenced ```json block, or prose wrapped around a single
    ``{...}`` span. Anything else raises a non-retryable ``LLMCallError``.
    """
    raw = (text or "").strip()
    fenced = _FENCED_JSON_RE.search(raw)
    if fenced:
        raw = fenced.group(1)
    elif not raw.startswith("{") and "{" in raw:
        raw = raw[raw.index("{"): raw.rfind("}") + 1]
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise LLMCallError(f"Model reply is not valid JSON: {raw[:200]!r}") from exc
    if not isinstance(parsed, dict):
        raise LLMCallError(f"Model reply is {type(parsed).__name__}, expected a JSON object")
    return parsed


class LLMClient:
    """Async chat client for Anthropic or any OpenAI-compatible endpoint.

    Every call expects a JSON object back. Transport failures raise a retryable
    ``LLMCallError``; unparseable replies raise a non-retryable one.
    """

    def __init__(
        self,
        provider: str | None = None,
        model: str | None = None,
        api_key: str | None = None,
        base_url: str | None = None,
        max_tokens: int = 4096,
    ):
        self.provider = provider or os.environ.get("LLM_PROVIDER", "anthropic")
        if self.provider not in DEFAULT_MODELS:
            raise ValueError(f"Unknown LLM provider: {self.provider!r}")
        self.model = model or os.environ.get("LLM_MODEL") or DEFAULT_MODELS[self.provider]
        self.max_tokens = max_tokens
        self._client: Any = self._build_client(api_key, base_url)

    def _build_client(self, api_key: str | None, base_url: str | None) -> Any:
        if self.provider == "anthropic":
            import anthropic
            return anthropic.AsyncAnthropic(api_key=api_key or os.environ.get("ANTHROPIC_API_KEY"))

        import openai
        kwargs: dict[str, Any] = {}
        key = api_key or os.environ.get("OPENAI_API_KEY")
        if key:
            kwargs["api_key"] = key
        url = base_url or os.environ.get("OPENAI_BASE_URL")
        if url:
            kwargs["base_url"] = url
        return openai.AsyncOpenAI(**kwargs)

    async def _complete(self, system: str, user: str) -> str:
        if self.provider == "anthropic":
            response = await self._client.messages.create(
                model=self.model,
                max_tokens=self.max_tokens,
                system=system,
                messages=[{"role": "user", "content": user}],
            )
            return "".join(getattr(block, "text", "") for block in response.content)
        response = await self._client.chat.completions.create(
            model=self.model,
            max_tokens=self.max_tokens,
            temperature=0.2,
            response_format={"type": "json_object"},
            messages=[
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
        )
        return response.choices[0].message.content or "{}"

    async def call(self, system: str, user: str) -> dict[str, Any]:
        """Send one system+user exchange and return the reply as a JSON object."""
        try:
            text = await self._complete(system, user)
        except Exception as exc:
            raise LLMCallError(f"{self.provider}/{self.model} request failed: {exc}", retryable=True) from exc
        return parse_json_object(text)


async def call_with_context(client: LLMClient, system: str, user: str, context: str) -> dict[str, Any]:
    """``client.call`` with *context* prefixed to any ``LLMCallError`` message."""
    try:
        return await client.call(system, user)
    except LLMCallError as exc:
        raise LLMCallError(f"{context}: {exc}", retryable=exc.retryable) from exc


# ---------------------------------------------------------------------------
# Inputs / outputs
# ---------------------------------------------------------------------------


@dataclass
class ScoringDocument:
    file_name: str
    text: str
    type: str = "other"


@dataclass
class CompanyMetadata:
    company_one_liner: str | None = None
    industry: str | None = None
    founders: list[Founder] = field(default_factory=list)


@dataclass
class ScoringResult:
    score: DiligenceScore
    metrics: dict[str, MetricValue]
    company_metadata: CompanyMetadata


# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------


def clamp_score(value: Any, fallback: int = 50) -> int:
    try:
        num = float(value)
    except (TypeError, ValueError):
        return fallback
    if num != num or num in (float("inf"), float("-inf")):
        return fallback
    return max(0, min(100, int(round(num))))


def _str_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [v.strip() for v in value if isinstance(v, str) and v.strip()]


def _key(value: Any) -> str:
    return re.sub(r"[^a-z0-9]", "", as_text(value).lower())


def find_best_named_match(items: list[Any], field_name: str, target: str) -> dict[str, Any] | None:
    """Exact normalized-name match first, then a containment match."""
    want = _key(target)
    dicts = [i for i in items if isinstance(i, dict)]
    for item in dicts:
        if _key(item.get(field_name)) == want:
            return item
    for item in dicts:
        have = _key(item.get(field_name))
        if have and want and (have in want or want in have):
            return item
    return None


def apply_insufficient_evidence_policy(crit: CriterionScore, cap: float | None) -> CriterionScore:
    """Cap scores the model gave without adequate evidence."""
    limit = clamp_score(cap, 60)
    score = crit.score
    if crit.evidence_status == "unknown":
        score = min(score, limit)
    elif crit.evidence_status == "contradicted":
        score = min(score, 40)
    elif crit.evidence_status == "weakly_supported" and (not crit.evidence or crit.evidence[0] == NO_EVIDENCE):
        score = min(score, min(70, limit + 10))
    return crit.model_copy(update={"score": score})


def normalize_category_score(category: CriteriaCategory, raw: dict[str, Any]) -> CategoryScore:
    """Map one category response onto the rubric's criteria."""
    model_criteria = raw.get("criteria") if isinstance(raw.get("criteria"), list) else []
    criteria: list[CriterionScore] = []
    for idx, rubric in enumerate(category.criteria):
        mc = find_best_named_match(model_criteria, "name", rubric.name)
        if mc is None and idx < len(model_criteria) and isinstance(model_criteria[idx], dict):
            mc = model_criteria[idx]
        mc = mc or {}
        evidence = _str_list(mc.get("evidence"))
        status = mc.get("evidence_status") or mc.get("evidenceStatus")
        reasoning = as_text(mc.get("reasoning")).strip()
        crit = CriterionScore(
            name=rubric.name,
            score=clamp_score(mc.get("score"), 50),
            answer=as_text(mc.get("answer")).strip(),
            reasoning=reasoning or NO_REASONING,
            evidence=evidence[:5] or [NO_EVIDENCE],
            confidence=clamp_score(mc.get("confidence"), 55),
            evidence_status=status if status in VALID_EVIDENCE_STATUSES else "unknown",
            missing_data=_str_list(mc.get("missing_data") or mc.get("missingData")),
            follow_up_questions=_str_list(mc.get("follow_up_questions") or mc.get("followUpQuestions"))[:3],
        )
        criteria.append(apply_insufficient_evidence_policy(crit, rubric.insufficient_evidence_cap))

    model_score = clamp_score(raw.get("score"), 0)
    score = model_score if model_score > 0 else round(
        sum(c.score for c in criteria) / max(len(criteria), 1)
    )
    return CategoryScore(
        category=category.name,
        score=score,
        weight=category.weight,
        weighted_score=round(score * category.weight / 100, 2),
        criteria=criteria,
    )


def aggregate_overall(categories: list[CategoryScore]) -> int:
    total_weight = sum(c.weight for c in categories)
    if total_weight <= 0:
        return 0
    return int(round(sum(c.score * c.weight for c in categories) / total_weight))


def build_follow_up_questions(synthesis: dict[str, Any], categories: list[CategoryScore]) -> list[str]:
    """Model questions first, then follow-ups from the lowest-scoring criteria."""
    weak = sorted(
        (crit for cat in categories for crit in cat.criteria),
        key=lambda c: (c.score, c.confidence or 0),
    )
    candidates = [
        *_str_list(synthesis.get("follow_up_questions")),
        *(q for crit in weak[:5] for q in crit.follow_up_questions),
    ]
    return dedupe_list(candidates, 5)


def derive_metrics(
    base: dict[str, MetricValue],
    synthesis: dict[str, Any],
    documents: list[ScoringDocument],
) -> dict[str, MetricValue]:
    """Source-of-truth metrics, filled in from model facts and document evidence."""
    metrics = {k: v.model_copy() for k, v in base.items()}
    now = utc_now_iso()
    raw_metrics = synthesis.get("metrics") if isinstance(synthesis.get("metrics"), dict) else {}
    for key in METRIC_KEYS:
        if metrics.get(key) and metrics[key].value:
            continue
        value = as_text(raw_metrics.get(key)).strip()
        if value and not is_placeholder_metric_value(value):
            metrics[key] = MetricValue(value=value, source="auto", source_detail="facts", updated_at=now)

    evidence = "\n".join(d.text for d in documents)
    if not (metrics.get("tam") and metrics["tam"].value):
        tam = extract_tam_from_evidence_text(evidence)
        if tam:
            metrics["tam"] = MetricValue(value=tam, source="auto", source_detail="facts", updated_at=now)
    if not (metrics.get("market_growth_rate") and metrics["market_growth_rate"].value):
        growth = extract_market_growth_from_evidence_text(evidence)
        if growth:
            metrics["market_growth_rate"] = MetricValue(
                value=growth, source="auto", source_detail="market_research", updated_at=now,
            )
    return metrics


# ---------------------------------------------------------------------------
# Prompts
# ---------------------------------------------------------------------------

SYSTEM_PROMPT = "You are an expert VC analyst. Return valid JSON only."


def truncate_for_prompt(value: str, max_chars: int) -> str:
    if not value or len(value) <= max_chars:
        return value or ""
    return f"{value[:max_chars]}\n\n[... truncated for token limits ...]"


def format_metrics(metrics: dict[str, MetricValue]) -> str:
    lines = [f"- {k}: {m.value}" for k, m in sorted(metrics.items()) if m.value]
    return "\n".join(lines) or "- none provided"


def format_hubspot(data: HubSpotCompanyData | None) -> str:
    if data is None:
        return ""
    fields = data.model_dump(exclude={"company_id"}, exclude_none=True)
    lines = [f"- {k}: {v}" for k, v in fields.items() if v]
    return "## HubSpot Company Data\n" + "\n".join(lines) if lines else ""


def build_facts(documents: list[ScoringDocument]) -> str:
    return "\n\n".join(f"### {d.file_name} ({d.type})\n{d.text}" for d in documents if d.text)


def build_category_prompt(
    category: CriteriaCategory,
    *,
    company_name: str,
    company_url: str | None,
    facts: str,
    metrics: dict[str, MetricValue],
    notes: str,
    categorized_notes: list[DiligenceNote],
    questions: list[str],
    hubspot_company_data: HubSpotCompanyData | None,
    thesis_markdown: str,
) -> str:
    rubric = "\n".join(
        f"- {c.name}: {c.description}\n  Guidance: {c.scoring_guidance}" for c in category.criteria
    )
    scoped_notes = "\n".join(
        f"- {n.content}" for n in categorized_notes
        if n.content and (n.category == category.name or n.category.lower() == "overall")
    )
    open_questions = "\n".join(f"- {q}" for q in questions)
    header = f"Company: {company_name}" + (f" ({company_url})" if company_url else "")
    return f"""# Category Scoring Task
{header}
Category: {category.name}
Weight: {category.weight:g}%

## Investment Thesis
{truncate_for_prompt(thesis_markdown, 4000)}

## Facts
{truncate_for_prompt(facts, 12000)}

{format_hubspot(hubspot_company_data)}

## Source of Truth Metrics
{format_metrics(metrics)}

## Relevant Notes
{truncate_for_prompt(scoped_notes or notes or 'No investor notes provided.', 2500)}

## Active Open Questions
{open_questions or '- none'}

## Criteria In Scope
{rubric}

Return JSON:
{{
  "category": "{category.name}",
  "score": 0-100,
  "criteria": [
    {{
      "name": "EXACT criterion name from above",
      "score": 0-100,
      "confidence": 0-100,
      "evidence_status": "supported | weakly_supported | unknown | contradicted",
      "answer": "Direct answer to the criterion",
      "reasoning": "Specific reasoning with data points",
      "evidence": ["Specific quotes or metrics"],
      "missing_data": ["What is missing for confidence"],
      "follow_up_questions": ["1-3 tactical questions for this criterion"]
    }}
  ]
}}

Rules:
- Use EXACT criterion names listed above.
- If evidence is weak, lower confidence and use unknown/weakly_supported.
- Keep evidence tied to numbers or concrete claims whenever possible.
- Use Source of Truth metrics as authoritative when present unless stronger contradictory evidence exists."""


def build_synthesis_prompt(
    *,
    company_name: str,
    company_url: str | None,
    facts: str,
    categories: list[CategoryScore],
    metrics: dict[str, MetricValue],
    hubspot_company_data: HubSpotCompanyData | None,
    previous_score: DiligenceScore | None,
    thesis_markdown: str,
) -> str:
    summary = []
    for cat in categories:
        low = [c.name for c in cat.criteria if (c.confidence or 0) < 60][:2]
        suffix = f" (low confidence: {', '.join(low)})" if low else ""
        summary.append(f"- {cat.category}: {cat.score:g}/100{suffix}")
    header = f"Company: {company_name}" + (f" ({company_url})" if company_url else "")
    previous = f"## Previous Overall Score\n{previous_score.overall}/100" if previous_score else ""
    metric_keys = ", ".join(f'"{k}": ""' for k in METRIC_KEYS)
    return f"""# Diligence Synthesis Task
{header}

## Investment Thesis
{truncate_for_prompt(thesis_markdown, 4000)}

## Extracted Facts
{truncate_for_prompt(facts, 12000)}

## Category Scores
{chr(10).join(summary) or '- none'}

{format_hubspot(hubspot_company_data)}

## Source of Truth Metrics
{format_metrics(metrics)}

{previous}

Return JSON:
{{
  "company_one_liner": "1-2 sentence company description (do NOT start with company name)",
  "industry": "Primary industry/vertical",
  "founders": [{{"name": "", "linkedin_url": "", "title": ""}}],
  "data_quality": 0-100,
  "metrics": {{{metric_keys}}},
  "external_market_intelligence": {{
    "tam_sam_som": {{"company_claim": {{"tam": ""}}, "independent_estimate": {{"tam": ""}}}}
  }},
  "thesis_answers": {{
    "problem_solving": "...",
    "solution": "...",
    "ideal_customer": "...",
    "why_might_fit": ["..."],
    "exciting": ["..."],
    "concerning": ["..."],
    "founder_questions": {{"questions": ["..."], "primary_concern": "...", "key_gaps": "..."}}
  }},
  "follow_up_questions": ["Top 5 overall follow-up questions"],
  "rescore_explanation": "Only when a previous score exists"
}}

Rules:
- Questions must be specific to this company and its evidence gaps.
- "concerning" bullets must include substantiated evidence or explicit missing data.
- Leave a metric empty rather than guessing."""


async def summarize_notes_for_scoring(client: LLMClient, company_name: str, notes: str) -> str:
    """Condense long call transcripts; falls back to the raw notes on failure."""
    if len(notes) < 6000:
        return notes
    try:
        raw = await client.call(
            SYSTEM_PROMPT,
            f"Summarize these investor call notes for {company_name} into concise factual bullets "
            f'(metrics, customers, risks, round details). Return JSON {{"summary": "..."}}.\n\n'
            f"{truncate_for_prompt(notes, 24000)}",
        )
    except LLMCallError as exc:
        log.warning("Notes summary failed for %s: %s", company_name, exc)
        return notes
    return as_text(raw.get("summary")).strip() or notes


# ---------------------------------------------------------------------------
# Score a record (N parallel category calls + 1 synthesis call)
# ---------------------------------------------------------------------------


async def score_diligence(
    documents: list[ScoringDocument],
    criteria: DiligenceCriteria,
    client: LLMClient,
    *,
    company_name: str,
    company_url: str | None = None,
    notes: str | None = None,
    categorized_notes: list[DiligenceNote] | None = None,
    questions: list[str] | None = None,
    hubspot_company_data: HubSpotCompanyData | None = None,
    metrics: dict[str, MetricValue] | None = None,
    previous_score: DiligenceScore | None = None,
    existing_thesis_answers: ThesisAnswers | None = None,
    thesis_markdown: str = "",
    settings: AppSettings | None = None,
) -> ScoringResult:
    """Score a company against every category of *criteria*.

    Args:
        documents: Usable document texts, research summaries included.
        criteria: Rubric, possibly filtered to a single category.
        client: LLM client for API calls.
        existing_thesis_answers: Manually edited thesis answers; kept verbatim.
    """
    settings = settings or AppSettings()
    metrics = metrics or {}
    notes_text = notes or ""
    if settings.summarize_transcript_notes_for_scoring and notes_text:
        notes_text = await summarize_notes_for_scoring(client, company_name, notes_text)

    facts = build_facts(documents)
    context = dict(
        company_name=company_name,
        company_url=company_url,
        facts=facts,
        metrics=metrics,
        notes=notes_text,
        categorized_notes=categorized_notes or [],
        questions=questions or [],
        hubspot_company_data=hubspot_company_data,
        thesis_markdown=thesis_markdown,
    )
    raw_categories = await asyncio.gather(*[
        call_with_context(
            client, SYSTEM_PROMPT, build_category_prompt(cat, **context), f"Scoring category '{cat.name}' failed",
        )
        for cat in criteria.categories
    ])
    categories = [normalize_category_score(cat, raw) for cat, raw in zip(criteria.categories, raw_categories)]
    overall = aggregate_overall(categories)
    log.info("Scored %s: %d categories, overall %d", company_name, len(categories), overall)

    synthesis = await call_with_context(client, SYSTEM_PROMPT, build_synthesis_prompt(
        company_name=company_name,
        company_url=company_url,
        facts=facts,
        categories=categories,
        metrics=metrics,
        hubspot_company_data=hubspot_company_data,
        previous_score=previous_score,
        thesis_markdown=thesis_markdown,
    ), f"Synthesis for {company_name} failed")

    if existing_thesis_answers is not None:
        thesis_answers: ThesisAnswers | None = existing_thesis_answers
    elif isinstance(synthesis.get("thesis_answers"), dict):
        thesis_answers = ThesisAnswers.model_validate(synthesis["thesis_answers"])
    else:
        thesis_answers = None
    intel = synthesis.get("external_market_intelligence")
    founders = [
        Founder.model_validate(f) for f in synthesis.get("founders") or []
        if isinstance(f, dict) and as_text(f.get("name")).strip()
    ]

    score = DiligenceScore(
        overall=overall,
        data_quality=clamp_score(synthesis.get("data_quality"), 60),
        categories=categories,
        thesis_answers=thesis_answers,
        follow_up_questions=build_follow_up_questions(synthesis, categories),
        external_market_intelligence=intel if isinstance(intel, dict) else None,
        rescore_explanation=as_text(synthesis.get("rescore_explanation")).strip() or None,
        scored_at=utc_now_iso(),
    )
    return ScoringResult(
        score=score,
        metrics=derive_metrics(metrics, synthesis, documents),
        company_metadata=CompanyMetadata(
            company_one_liner=as_text(synthesis.get("company_one_liner")).strip() or None,
            industry=as_text(synthesis.get("industry")).strip() or None,
            founders=founders,
        ),
    )
