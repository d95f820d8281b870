"""Best-effort enrichment research: founding team, portfolio synergy, problem necessity.

Each runner makes one LLM call and returns a validated pydantic model.
Callers treat every failure as non-fatal.
"""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

from diligence.schemas import (
    DiligenceRecord,
    Founder,
    NecessitySignal,
    PortfolioSynergyResearch,
    ProblemNecessityResearch,
    SynergyMatch,
    TeamResearch,
)
from diligence.scorer import LLMClient, ScoringDocument, call_with_context, clamp_score, truncate_for_prompt
from diligence.utils import as_text

log = logging.getLogger(__name__)

RESEARCH_SYSTEM_PROMPT = (
    "You are a disciplined VC diligence analyst. "
    "Return strict JSON only and be conservative when evidence quality is weak."
)
SYNERGY_TYPES = ("similar_space", "similar_customer", "complementary_offering")
NECESSITY_CLASSES = ("vitamin", "advil", "vaccine")
STRENGTHS = ("low", "medium", "high")


def load_portfolio_context(path: str | Path | None = None) -> str:
    path = Path(path or os.environ.get("PORTFOLIO_PATH", "config/portfolio.md"))
    try:
        return path.read_text(encoding="utf-8").strip()
    except OSError:
        return ""


def company_context(record: DiligenceRecord) -> str:
    return "\n".join([
        f"- Name: {record.company_name}",
        f"- URL: {record.company_url or 'unknown'}",
        f"- One-liner: {record.company_one_liner or 'unknown'}",
        f"- Description: {record.company_description or 'unknown'}",
        f"- Industry: {record.industry or 'unknown'}",
    ])


def _score_or_none(value: Any) -> int | None:
    return clamp_score(value, 0) if _is_number(value) else None


def _is_number(value: Any) -> bool:
    try:
        float(value)
    except (TypeError, ValueError):
        return False
    return True


def _text(value: Any) -> str:
    return as_text(value).strip() if isinstance(value, (str, int, float)) else ""


# ---------------------------------------------------------------------------
# Team
# ---------------------------------------------------------------------------


def normalize_team_research(raw: dict[str, Any]) -> TeamResearch:
    founders = []
    for f in raw.get("founders") or []:
        if not isinstance(f, dict) or not _text(f.get("name")):
            continue
        exits = [s for s in (_text(x) for x in f.get("prior_exits") or []) if s][:6]
        founders.append(Founder(
            name=_text(f.get("name")),
            title=_text(f.get("title")) or None,
            linkedin_url=_text(f.get("linkedin_url")) or None,
            has_been_ceo=bool(f.get("has_been_ceo")),
            has_been_cto=bool(f.get("has_been_cto")),
            has_prior_exit=bool(f.get("has_prior_exit")) or bool(exits),
            prior_exits=exits,
            experience_summary=_text(f.get("experience_summary")) or None,
        ))
    return TeamResearch(
        summary=_text(raw.get("summary")) or "No reliable team summary could be generated.",
        team_score=_score_or_none(raw.get("team_score")),
        founders=founders[:8],
    )


async def run_team_research(record: DiligenceRecord, client: LLMClient, website_text: str = "") -> TeamResearch:
    known = "\n".join(
        f"- {f.name}" + (f" ({f.title})" if f.title else "") + (f" {f.linkedin_url}" if f.linkedin_url else "")
        for f in record.founders
    )
    prompt = f"""Research the founding team for "{record.company_name}".

Return JSON:
{{
  "team_score": 0-100,
  "summary": "2-4 sentences",
  "founders": [
    {{
      "name": "", "title": "", "linkedin_url": "",
      "has_been_ceo": false, "has_been_cto": false, "has_prior_exit": false,
      "prior_exits": [""], "experience_summary": ""
    }}
  ]
}}

Scoring intent for team_score:
- High for repeat founders with relevant exits and deep domain experience.
- Low when the team is unknown or lacks the core technical or commercial roles.

Rules:
- Do not invent people or exits.
- prior_exits should name specific companies/outcomes when available.

Company context:
{company_context(record)}

Known founders:
{known or '- none recorded'}

Website content:
{truncate_for_prompt(website_text, 12000) or 'Not available'}"""
    raw = await call_with_context(
        client, RESEARCH_SYSTEM_PROMPT, prompt, f"Team research for {record.company_name} failed",
    )
    return normalize_team_research(raw)


# ---------------------------------------------------------------------------
# Portfolio synergy
# ---------------------------------------------------------------------------


def normalize_portfolio_synergy(raw: dict[str, Any]) -> PortfolioSynergyResearch:
    matches = []
    for m in raw.get("matches") or []:
        if not isinstance(m, dict):
            continue
        name, rationale, kind = _text(m.get("company_name")), _text(m.get("rationale")), _text(m.get("synergy_type"))
        if name and rationale and kind in SYNERGY_TYPES:
            matches.append(SynergyMatch(company_name=name, rationale=rationale, synergy_type=kind))
    return PortfolioSynergyResearch(
        summary=_text(raw.get("summary")) or "No reliable portfolio-synergy summary could be generated.",
        synergy_score=_score_or_none(raw.get("synergy_score")),
        matches=matches[:8],
    )


async def run_portfolio_synergy_research(
    record: DiligenceRecord, client: LLMClient, portfolio_context: str | None = None,
) -> PortfolioSynergyResearch:
    portfolio = portfolio_context if portfolio_context is not None else load_portfolio_context()
    prompt = f"""Evaluate synergy between "{record.company_name}" and our portfolio companies.

Return JSON:
{{
  "synergy_score": 0-100,
  "summary": "2-4 sentences",
  "matches": [{{"company_name": "", "rationale": "", "synergy_type": "similar_space"}}]
}}

Allowed synergy_type values only: {', '.join(SYNERGY_TYPES)}

Rules:
- Use only portfolio companies present in the portfolio source.
- Keep rationale specific and practical.
- Return up to 8 best matches.

Target company context:
{company_context(record)}

Portfolio source:
{truncate_for_prompt(portfolio, 35000) or 'Not available'}"""
    raw = await call_with_context(
        client, RESEARCH_SYSTEM_PROMPT, prompt, f"Portfolio synergy for {record.company_name} failed",
    )
    return normalize_portfolio_synergy(raw)


# ---------------------------------------------------------------------------
# Problem necessity
# ---------------------------------------------------------------------------


def _signals(value: Any) -> list[NecessitySignal]:
    out = []
    for s in value if isinstance(value, list) else []:
        if not isinstance(s, dict):
            continue
        label, evidence = _text(s.get("label")), _text(s.get("evidence"))
        strength = _text(s.get("strength")).lower()
        if label and evidence:
            out.append(NecessitySignal(label=label, evidence=evidence, strength=strength if strength in STRENGTHS else None))
    return out[:6]


def normalize_problem_necessity(raw: dict[str, Any]) -> ProblemNecessityResearch:
    classification = _text(raw.get("classification")).lower()
    return ProblemNecessityResearch(
        summary=_text(raw.get("summary")) or "No reliable problem-necessity summary could be generated.",
        necessity_score=_score_or_none(raw.get("necessity_score")),
        classification=classification if classification in NECESSITY_CLASSES else None,
        top_signals=_signals(raw.get("top_signals")),
        counter_signals=_signals(raw.get("counter_signals")),
    )


async def run_problem_necessity_research(
    record: DiligenceRecord, client: LLMClient, website_text: str = "",
) -> ProblemNecessityResearch:
    prompt = f"""Analyze how necessary the problem is that this company solves.

Use the rubric:
- vitamin: nice-to-have
- advil: must-have painkiller
- vaccine: mandated / existentially required

Return JSON:
{{
  "necessity_score": 0-100,
  "classification": "vitamin | advil | vaccine",
  "summary": "2-4 sentences",
  "top_signals": [{{"label": "", "evidence": "", "strength": "low | medium | high"}}],
  "counter_signals": [{{"label": "", "evidence": "", "strength": "low | medium | high"}}]
}}

Rules:
- Do not invent evidence.
- Use concrete signals: cost of inaction, urgency, frequency, mandate/compliance, budget ownership.
- Up to 6 signals each.

Company context:
{company_context(record)}

Website content:
{truncate_for_prompt(website_text, 14000) or 'Not available'}"""
    raw = await call_with_context(
        client, RESEARCH_SYSTEM_PROMPT, prompt, f"Problem necessity for {record.company_name} failed",
    )
    return normalize_problem_necessity(raw)


# ---------------------------------------------------------------------------
# Research as scoring input
# ---------------------------------------------------------------------------


def research_documents(record: DiligenceRecord) -> list[ScoringDocument]:
    """Summaries of stored research, shaped as extra scoring documents."""
    docs: list[ScoringDocument] = []
    if record.team_research and record.team_research.summary:
        tr = record.team_research
        lines = [tr.summary]
        if tr.team_score is not None:
            lines.append(f"Team score: {tr.team_score}/100")
        for f in tr.founders:
            flags = [label for label, on in (("ex-CEO", f.has_been_ceo), ("ex-CTO", f.has_been_cto),
                                             ("prior exit", f.has_prior_exit)) if on]
            lines.append(f"- {f.name}" + (f", {f.title}" if f.title else "") + (f" [{', '.join(flags)}]" if flags else ""))
        docs.append(ScoringDocument("Team Research", "\n".join(lines)))
    if record.portfolio_synergy_research and record.portfolio_synergy_research.summary:
        ps = record.portfolio_synergy_research
        lines = [ps.summary, *(f"- {m.company_name} ({m.synergy_type}): {m.rationale}" for m in ps.matches)]
        docs.append(ScoringDocument("Portfolio Synergy Research", "\n".join(lines)))
    if record.problem_necessity_research and record.problem_necessity_research.summary:
        pn = record.problem_necessity_research
        lines = [pn.summary]
        if pn.classification:
            lines.append(f"Classification: {pn.classification}")
        lines += [f"+ {s.label}: {s.evidence}" for s in pn.top_signals]
        lines += [f"- {s.label}: {s.evidence}" for s in pn.counter_signals]
        docs.append(ScoringDocument("Problem Necessity Research", "\n".join(lines)))
    return docs
