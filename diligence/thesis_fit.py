"""Thesis-fit assessment: prompt rendering plus deterministic post-processing.

The model produces a raw fit label, bullets and a confidence. Everything after
that is pure and auditable:

1. **Split** why-not-fit bullets into genuine thesis conflicts and evidence
   gaps. Missing information is never a conflict.
2. **Fallbacks**: keyword heuristics supply conflicts / why-fits when the
   model returned none.
3. **Prune** boilerplate gaps the record already answers.
4. **Decide** the fit label, with a guardrail that a record cannot be
   off-thesis on missing information alone.
5. **Calibrate** confidence by blending the model value with an
   evidence-count score.
6. **Snapshot** one-sentence description / problem / solution texts from the
   best available source.
"""
from __future__ import annotations

import json
import logging
import re
from typing import Iterable

from diligence.config import ScoringConfig
from diligence.schemas import (
    DiligenceRecord,
    RawThesisFitPayload,
    ThesisFitFeedbackEntry,
    ThesisFitResult,
    decode_thesis_fit_payload,
)
from diligence.scorer import LLMClient, clamp_score
from diligence.text import (
    build_concise_snapshot,
    dedupe_list,
    first_usable_short_string,
    is_likely_deck_fragment,
    is_low_information_text,
    is_non_informative_extracted_text,
    normalize_bullet_text,
    normalize_comparable_token,
    sanitize_snapshot_candidate,
    split_sentences,
    strip_deck_extraction_artifacts,
)
from diligence.utils import utc_now_iso

log = logging.getLogger(__name__)

THESIS_FIT_MODEL_VERSION = "thesis-fit-v1-2026-02-16"

CONFLICT_TAG_RE = re.compile(r"\[(?:pillar|dealbreaker):\s*[a-z0-9_\- ]+\]", re.I)
MISSINGNESS_RE = re.compile(
    r"\b(?:unknown|unclear|missing|no evidence|lack of|not provided|insufficient|not enough|"
    r"undisclosed|limited detail|incomplete)\b", re.I)
STRONG_CONFLICT_RE = re.compile(
    r"\b(?:off-thesis|not on thesis|direct conflict|misaligned|no moat|weak founder[- ]market fit|"
    r"services-heavy|hardware dependency|b2c|consumer marketplace)\b", re.I)
GENERIC_FOUNDER_GAP_RE = re.compile(
    r"\b(?:no information on founders|founder domain depth|execution credibility|founder.*not provided)\b", re.I)
GENERIC_FINANCIAL_GAP_RE = re.compile(
    r"\b(?:arr|tam|sam|som|acv|yoy|financial metrics|gtm efficiency|capital efficiency)\b", re.I)
ANTI_CONFLICT_RE = re.compile(
    r"\b(?:no indication|no evidence|not a core dependency|not a major component|does not appear to be)\b", re.I)
FOUNDER_SIGNAL_RE = re.compile(
    r"(?:\bceo\b|\bcto\b|\bfounder\b|experience|exits?|consensys|mozilla|mit|leadership)", re.I)

# (corpus pattern, tagged conflict bullet)
HEURISTIC_CONFLICTS: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"\b(?:mga|underwriting|insurer|insurance|carrier|reinsurer|catastrophe|claims)\b"),
     "[pillar: business_model] Business model appears regulated and insurance-risk linked, "
     "which may be less aligned with classic software-first economics."),
    (re.compile(r"\b(?:service|consulting|implementation-heavy|managed service)\b"),
     "[dealbreaker: services_heavy] Delivery motion may trend services-heavy, "
     "which can weaken software scalability and margin profile."),
    (re.compile(r"\b(?:government|public sector|education)\b"),
     "[pillar: sales_cycle] Go-to-market may involve longer procurement cycles and higher friction than preferred."),
    (re.compile(r"\b(?:transit|rail|metro|bus|airport|aviation|infrastructure)\b"),
     "[pillar: sales_cycle] End-market appears infrastructure/public-procurement adjacent, which can imply "
     "longer enterprise sales cycles and slower expansion velocity."),
    (re.compile(r"\b(?:computer vision|vision ai|physical vision|camera|sensor|edge device|drone|hardware|robotics)\b"),
     "[pillar: software_scalability] Product may depend on hardware/sensor deployment and on-site integration, "
     "which can pressure margins and repeatability versus pure software delivery."),
    (re.compile(r"\b(?:safety inspection|compliance|certification|regulated|regulatory)\b"),
     "[pillar: deployment_risk] Safety/compliance-critical workflows can introduce validation and adoption "
     "friction that slows rollout and revenue realization."),
)

_PROBLEM_SIGNAL_RE = re.compile(
    r"\b(?:problem|pain|challenge|manual|delay|inefficien|cost|bottleneck|risk|error|friction)\b", re.I)
_SOLUTION_SIGNAL_RE = re.compile(
    r"\b(?:solution|platform|product|automate|workflow|infrastructure|agent|software|tool|model)\b", re.I)


# ---------------------------------------------------------------------------
# Post-processing steps
# ---------------------------------------------------------------------------


def is_genuine_conflict(line: str) -> bool:
    if MISSINGNESS_RE.search(line) or ANTI_CONFLICT_RE.search(line):
        return False
    return bool(CONFLICT_TAG_RE.search(line) or STRONG_CONFLICT_RE.search(line))


def split_conflicts_and_gaps(raw_why_not_fit: list[str], raw_gaps: list[str]) -> tuple[list[str], list[str]]:
    """Return ``(conflicts, gaps)``; anything not clearly a conflict is a gap."""
    conflicts: list[str] = []
    gaps = list(raw_gaps)
    for item in raw_why_not_fit:
        line = normalize_bullet_text(item)
        if not line:
            continue
        (conflicts if is_genuine_conflict(line) else gaps).append(line)
    return dedupe_list(conflicts, 5), dedupe_list(gaps, 6)


def disallowed_summary_tokens(record: DiligenceRecord) -> list[str]:
    name = normalize_comparable_token(record.company_name)
    website = normalize_comparable_token(record.company_url or "")
    host = website.split("/")[0] if website else ""
    root = host.split(".")[0] if host else ""
    return dedupe_list([name, host, root], 3)


def infer_heuristic_thesis_conflicts(record: DiligenceRecord) -> list[str]:
    corpus = " ".join([
        record.company_one_liner or "",
        record.industry or "",
        record.company_description or "",
        *[d.extracted_text or "" for d in record.documents[:2]],
    ]).lower()
    return dedupe_list([bullet for pattern, bullet in HEURISTIC_CONFLICTS if pattern.search(corpus)], 3)


def infer_heuristic_why_fits(record: DiligenceRecord) -> list[str]:
    hints: list[str] = []
    answers = record.score.thesis_answers if record.score else None
    for item in answers.exciting if answers else []:
        line = normalize_bullet_text(item)
        if line and not is_low_information_text(line):
            hints.append(line)

    arr = normalize_bullet_text(record.metric("arr"))
    tam = normalize_bullet_text(record.metric("tam"))
    yoy = normalize_bullet_text(record.metric("yoy_growth_rate"))
    market_growth = normalize_bullet_text(record.metric("market_growth_rate"))
    runway = normalize_bullet_text(record.metric("current_runway"))
    if arr:
        hints.append(f"Commercial traction signal present (ARR reported: {arr}).")
    if tam:
        hints.append(f"Market size signal present (TAM reported: {tam}).")
    if yoy or market_growth:
        detail = (f" (YoY growth: {yoy})" if yoy else "") + (f" (market growth: {market_growth})" if market_growth else "")
        hints.append(f"Growth signal present{detail}.")
    if runway:
        hints.append(f"Operating durability signal present (current runway: {runway}).")

    narrative = normalize_bullet_text(record.company_one_liner or record.company_description or "")
    if narrative and not is_low_information_text(narrative, disallowed_summary_tokens(record)):
        suffix = "..." if len(narrative) > 180 else ""
        hints.append(f"Clear company narrative available: {narrative[:180]}{suffix}")

    informative = sum(1 for d in record.documents if not is_non_informative_extracted_text(d.extracted_text))
    if informative:
        plural = "" if informative == 1 else "s"
        hints.append(f"Primary-source evidence is available ({informative} document{plural} analyzed).")
    if record.categorized_notes:
        hints.append("Analyst notes are available to support initial thesis-fit judgment.")
    return dedupe_list(hints, 5)


def prune_non_thesis_noise(
    record: DiligenceRecord, why_not_fit: list[str], evidence_gaps: list[str],
) -> tuple[list[str], list[str]]:
    """Drop bullets the record already answers, and anti-conflict statements."""
    has_docs = any((d.extracted_text or "").strip() for d in record.documents)
    founder_corpus = " ".join([
        record.company_description or "",
        record.company_one_liner or "",
        *[(d.extracted_text or "")[:2500] for d in record.documents[:2]],
    ])
    has_founder_signal = bool(FOUNDER_SIGNAL_RE.search(founder_corpus))
    hubspot_tam = (record.hubspot_company_data.tam_range or "").strip() if record.hubspot_company_data else ""
    has_financial = bool(
        record.metric("tam") or hubspot_tam or record.metric("arr") or record.metric("funding_amount")
    )

    def founder_boilerplate(line: str) -> bool:
        return bool(GENERIC_FOUNDER_GAP_RE.search(line)) and (has_docs or has_founder_signal)

    conflicts = [
        line for line in why_not_fit
        if not founder_boilerplate(line) and not ANTI_CONFLICT_RE.search(line)
    ]
    gaps = [
        line for line in evidence_gaps
        if not founder_boilerplate(line)
        and not (GENERIC_FINANCIAL_GAP_RE.search(line) and has_financial)
        and not ANTI_CONFLICT_RE.search(line)
    ]
    return dedupe_list(conflicts, 5), dedupe_list(gaps, 6)


def infer_fit_decision(model_fit: str, why_fits: list[str], why_not_fit: list[str], evidence_gaps: list[str]) -> str:
    fit = (model_fit or "").strip().lower()
    if fit in ("on_thesis", "mixed", "off_thesis"):
        if fit == "off_thesis" and not why_not_fit and evidence_gaps:
            return "mixed"
        return fit
    if len(why_not_fit) >= 3 and len(why_fits) <= 1:
        return "off_thesis"
    if not why_not_fit and len(why_fits) >= 2:
        return "on_thesis"
    return "mixed"


def calibrate_confidence(
    model_confidence: object,
    fit: str,
    why_fits: list[str],
    why_not_fit: list[str],
    evidence_anchors: list[str],
    evidence_gaps: list[str],
) -> int:
    """Blend model confidence (0.6) with an evidence-count structural score (0.4)."""
    structural = (
        35
        + 8 * min(len(evidence_anchors), 6)
        + 4 * min(len(why_fits), 4)
        + 4 * min(len(why_not_fit), 4)
        - 5 * min(len(evidence_gaps), 5)
        - (6 if fit == "mixed" else 0)
    )
    return clamp_score(0.6 * clamp_score(model_confidence, 50) + 0.4 * structural, 50)


def synthesize_crux_question(why_fits: list[str], why_not_fit: list[str], evidence_gaps: list[str]) -> str:
    if why_not_fit:
        conflict = CONFLICT_TAG_RE.sub("", why_not_fit[0]).strip()
        return f"What specific evidence in the next 1-2 quarters would resolve this thesis conflict: {conflict}?"
    if evidence_gaps:
        return "Which single missing datapoint, if verified, would most change conviction on thesis fit?"
    if why_fits:
        return "Is this strength durable enough to remain true as the company scales?"
    return "What evidence would most increase conviction on thesis fit right now?"


def extract_structured_fact(record: DiligenceRecord, label: str) -> str | None:
    """Read a ``- **Label**: value`` line from the structured-facts extractor document."""
    doc = next(
        (d for d in record.documents if re.search(r"structured facts \(scoring extractor\)", d.name, re.I)),
        None,
    )
    text = doc.extracted_text if doc else ""
    if not text:
        return None
    m = re.search(rf"-\s*\*\*{re.escape(label)}\*\*:\s*([^\n]+)", text, re.I)
    value = normalize_bullet_text(m.group(1) if m else "")
    if not value or re.search(r"not specified|unknown|not disclosed", value, re.I):
        return None
    return value


def collect_signal_sentences(record: DiligenceRecord, signal: str) -> list[str]:
    docs = [normalize_bullet_text(d.extracted_text) for d in record.documents]
    docs_text = " ".join(
        [t for t in (strip_deck_extraction_artifacts(d) for d in docs if not is_non_informative_extracted_text(d)) if t][:3]
    )
    notes_text = " ".join(
        t for t in (normalize_bullet_text(f"{n.title} {n.content}") for n in record.categorized_notes) if t
    )
    corpus = f"{record.company_description or ''} {record.company_one_liner or ''} {notes_text} {docs_text}"
    matcher = _PROBLEM_SIGNAL_RE if signal == "problem" else _SOLUTION_SIGNAL_RE
    sentences = [
        s for s in (sanitize_snapshot_candidate(p) for p in split_sentences(corpus))
        if s and not is_likely_deck_fragment(s) and matcher.search(s)
    ]
    return dedupe_list(sentences, 4)


def classify_thesis_fit(record: DiligenceRecord, payload: RawThesisFitPayload) -> ThesisFitResult:
    """Turn a decoded model payload into a stable ``ThesisFitResult``."""
    raw_why_fits = dedupe_list(payload.why_fits[:5], 5)
    conflicts, gaps = split_conflicts_and_gaps(payload.why_not_fit[:5], payload.evidence_gaps[:5])
    why_fits = raw_why_fits or infer_heuristic_why_fits(record)
    why_not_fit, evidence_gaps = prune_non_thesis_noise(
        record, conflicts or infer_heuristic_thesis_conflicts(record), gaps,
    )
    anchors = payload.evidence_anchors[:6]
    fit = infer_fit_decision(payload.fit, why_fits, why_not_fit, evidence_gaps)
    confidence = calibrate_confidence(payload.confidence, fit, why_fits, why_not_fit, anchors, evidence_gaps)

    tokens = disallowed_summary_tokens(record)
    hubspot_description = record.hubspot_company_data.description if record.hubspot_company_data else None
    prior = record.score.thesis_answers if record.score else None
    problem_sentences = collect_signal_sentences(record, "problem")
    solution_sentences = collect_signal_sentences(record, "solution")

    baseline_company = first_usable_short_string(
        [record.company_one_liner, record.company_description, hubspot_description], 320, tokens,
    ) or f"{record.company_name} appears to be an early-stage company with limited structured context captured so far."
    baseline_problem = problem_sentences[0] if problem_sentences else (
        "Core customer pain is not yet clearly evidenced in current materials; "
        "validate the highest-frequency workflow bottleneck."
    )
    baseline_solution = solution_sentences[0] if solution_sentences else (
        "Solution approach appears software-led, but product workflow and differentiation details need clearer evidence."
    )

    company_description = first_usable_short_string([
        extract_structured_fact(record, "What They Do"),
        payload.company_description,
        record.company_one_liner,
        record.company_description,
        hubspot_description,
    ], 320, tokens) or baseline_company
    problem_solving = build_concise_snapshot(first_usable_short_string([
        extract_structured_fact(record, "Problem"),
        payload.problem_solving,
        prior.problem_solving if prior else None,
        problem_sentences[0] if problem_sentences else None,
        record.company_description,
        hubspot_description,
    ], 320, tokens), problem_sentences, 320) or baseline_problem
    solution_approach = build_concise_snapshot(first_usable_short_string([
        extract_structured_fact(record, "Approach") or extract_structured_fact(record, "Solution"),
        payload.solution_approach,
        prior.solution if prior else None,
        solution_sentences[0] if solution_sentences else None,
        record.company_description,
        hubspot_description,
    ], 320, tokens), solution_sentences, 320) or baseline_solution

    crux = normalize_bullet_text(
        payload.crux_question or synthesize_crux_question(why_fits, why_not_fit, evidence_gaps)
    )
    return ThesisFitResult(
        fit=fit,
        confidence=confidence,
        company_description=company_description,
        problem_solving=problem_solving,
        solution_approach=solution_approach,
        why_fits=why_fits,
        why_not_fit=why_not_fit,
        evidence_gaps=evidence_gaps,
        evidence_anchors=anchors,
        crux_question=crux,
        rationale=list(why_fits),
        top_risks=list(why_not_fit),
        computed_at=utc_now_iso(),
        model_version=THESIS_FIT_MODEL_VERSION,
    )


# ---------------------------------------------------------------------------
# Prompt rendering
# ---------------------------------------------------------------------------


def truncate(text: str, max_chars: int) -> str:
    if not text or len(text) <= max_chars:
        return text or ""
    return f"{text[:max_chars]}\n[...truncated...]"


def build_record_context(record: DiligenceRecord) -> str:
    hs = record.hubspot_company_data
    hubspot_description = hs.description if hs else None
    tokens = disallowed_summary_tokens(record)
    best_description = first_usable_short_string(
        [record.company_description, record.company_one_liner, hubspot_description], 600, tokens,
    ) or "unknown"
    best_one_liner = first_usable_short_string(
        [record.company_one_liner, record.company_description, hubspot_description], 320, tokens,
    ) or "unknown"
    best_industry = first_usable_short_string([record.industry, hs.industry if hs else None], 160) or "unknown"

    def m(key: str) -> str:
        return record.metric(key) or "unknown"

    score = record.score
    answers = score.thesis_answers if score else None
    categories = "\n".join(f"- {c.category}: {c.score:g}/100" for c in (score.categories if score else []))
    notes = "\n\n".join(f"{n.category}: {n.title}\n{n.content}" for n in record.categorized_notes)
    docs = "\n\n".join(f"## {d.name}\n{truncate(d.extracted_text or '', 3000)}" for d in record.documents)
    location = ", ".join(x for x in ([hs.city, hs.state, hs.country] if hs else []) if x) or "unknown"
    exciting = "\n- ".join(answers.exciting) if answers and answers.exciting else "none"
    concerning = "\n- ".join(answers.concerning) if answers and answers.concerning else "none"

    return "\n".join([
        "# Company",
        f"Name: {record.company_name}",
        f"Website: {record.company_url or 'unknown'}",
        f"Industry: {best_industry}",
        f"One-liner: {best_one_liner}",
        f"Company description: {best_description}",
        "HubSpot context:",
        f"- Domain: {(hs.domain if hs else None) or 'unknown'}",
        f"- Employees: {(hs.number_of_employees if hs else None) or 'unknown'}",
        f"- Location: {location}",
        f"- LinkedIn: {(hs.linkedin_url if hs else None) or 'unknown'}",
        "",
        "# Metrics",
        f"ARR: {m('arr')}",
        f"TAM: {m('tam')}",
        f"Market Growth: {m('market_growth_rate')}",
        f"ACV: {m('acv')}",
        f"YoY Growth: {m('yoy_growth_rate')}",
        f"Funding Amount: {m('funding_amount')}",
        f"Current Commitments: {m('committed')}",
        f"Runway: {m('current_runway')}",
        f"Location: {m('location')}",
        "",
        "# Current Score Snapshot",
        f"Overall: {score.overall if score else 'unknown'}",
        f"Data Quality: {score.data_quality if score else 'unknown'}",
        "Category Scores:",
        categories or "- none",
        "",
        "# Current Thesis Summary",
        f"Problem: {(answers.problem_solving if answers else '') or 'unknown'}",
        f"Solution: {(answers.solution if answers else '') or 'unknown'}",
        f"Ideal Customer: {(answers.ideal_customer if answers else '') or 'unknown'}",
        "Exciting:",
        f"- {exciting}",
        "Concerning:",
        f"- {concerning}",
        "",
        "# Analyst Notes",
        truncate(notes or "none", 6000),
        "",
        "# Extracted Document Evidence",
        truncate(docs or "none", 12000),
    ])


def feedback_signature(entry: ThesisFitFeedbackEntry) -> str:
    def lines(items: list[str]) -> list[str]:
        return sorted(v.lower() for v in dedupe_list(items, 8))

    return json.dumps({
        "company_name": normalize_bullet_text(entry.company_name).lower(),
        "reviewer_fit": entry.reviewer_fit,
        "why_fits": lines(entry.reviewer_why_fits),
        "why_not_fit": lines(entry.reviewer_why_not_fit),
        "evidence_gaps": lines(entry.reviewer_evidence_gaps),
        "crux": normalize_bullet_text(entry.reviewer_crux_question).lower(),
    }, sort_keys=True)


def _few_shot(items: list[str], max_items: int = 4) -> str:
    return "\n".join(f"- {normalize_bullet_text(line)[:220]}" for line in items[:max_items])


def build_calibration_examples(record: DiligenceRecord, feedback: Iterable[ThesisFitFeedbackEntry]) -> str:
    """Render up to two reviewer-labelled examples, same company first."""
    seen: set[str] = set()
    usable: list[ThesisFitFeedbackEntry] = []
    for entry in sorted(feedback, key=lambda e: e.created_at or "", reverse=True):
        if not entry.reviewer_why_fits or not (entry.reviewer_why_not_fit or entry.reviewer_evidence_gaps):
            continue
        sig = feedback_signature(entry)
        if sig in seen:
            continue
        seen.add(sig)
        usable.append(entry)

    target = normalize_bullet_text(record.company_name).lower()
    same = [e for e in usable if normalize_bullet_text(e.company_name).lower() == target][:2]
    cross = [e for e in usable if normalize_bullet_text(e.company_name).lower() != target][: 2 - len(same)]
    selected = (same + cross)[:2]
    if not selected:
        return ""

    blocks = []
    for idx, entry in enumerate(selected, start=1):
        confidence = entry.reviewer_confidence if entry.reviewer_confidence is not None else "unknown"
        blocks.append("\n".join([
            f"### Labeled Example {idx}",
            f"Company: {entry.company_name}",
            f"Reviewer fit: {entry.reviewer_fit}",
            f"Reviewer confidence: {confidence}",
            "Why fits:",
            _few_shot(entry.reviewer_why_fits),
            "Why might not fit (direct thesis conflicts only):",
            _few_shot(entry.reviewer_why_not_fit) if entry.reviewer_why_not_fit else "- none",
            "Evidence gaps (confidence only):",
            _few_shot(entry.reviewer_evidence_gaps) if entry.reviewer_evidence_gaps else "- none",
            f"Crux question: {entry.reviewer_crux_question or 'unknown'}",
        ]))
    return (
        "## Calibration Examples (reviewer-labeled)\n"
        "Use these as style and decision calibration references. Do not copy wording verbatim.\n"
        "Prioritize examples from the same company name when available.\n\n"
        + "\n\n".join(blocks)
    )


THESIS_FIT_SYSTEM_PROMPT = (
    "You are a rigorous venture diligence analyst. Judge thesis fit precisely and conservatively."
)

THESIS_FIT_RESPONSE_RULES = """\
Return ONLY valid JSON in this exact schema:
{
  "fit": "on_thesis | mixed | off_thesis",
  "confidence": 0,
  "company_description": "1-2 sentence plain-language description of what the company does",
  "problem_solving": "1-2 sentence summary of the core customer problem",
  "solution_approach": "1-2 sentence summary of how the company solves that problem",
  "why_fits": ["3-5 concise bullets with concrete evidence"],
  "why_not_fit": ["2-5 concise bullets ONLY for direct thesis conflicts (pillar/dealbreaker mismatch), \
each prefixed with [pillar:<name>] or [dealbreaker:<name>]"],
  "evidence_gaps": ["0-5 missing-information bullets that lower confidence but are NOT thesis conflicts"],
  "evidence_anchors": ["2-6 direct anchors (metric/claim/gap) used for judgment"],
  "crux_question": "single decision-driving question"
}

Rules:
- Be evidence-based; avoid generic statements.
- If evidence is weak/missing, lower confidence and call out missing evidence explicitly.
- Missing generic diligence information (including incomplete financials) should go to evidence_gaps, not why_not_fit.
- why_not_fit must only include direct conflicts with core thesis pillars or hard dealbreakers.
- Do not place missingness language in why_not_fit.
- Never include "absence of a dealbreaker" bullets (e.g., "no hardware dependency") in why_not_fit.
- Fit must be one of: on_thesis, mixed, off_thesis.
- If information is limited, still provide best-effort summaries and note uncertainty.
- Keep bullets short and decision-relevant."""


def build_thesis_fit_prompt(
    config: ScoringConfig, record: DiligenceRecord, feedback: Iterable[ThesisFitFeedbackEntry] = (),
) -> str:
    parts = [
        "Evaluate whether this company is on thesis.",
        "",
        "## Investment Thesis",
        config.thesis_markdown,
        "",
        "## Company Context",
        build_record_context(record),
        "",
    ]
    examples = build_calibration_examples(record, feedback)
    if examples:
        parts += [examples, ""]
    parts.append(THESIS_FIT_RESPONSE_RULES)
    return "\n".join(parts)


async def run_thesis_fit_assessment(
    record: DiligenceRecord,
    client: LLMClient,
    config: ScoringConfig,
    feedback: Iterable[ThesisFitFeedbackEntry] = (),
) -> ThesisFitResult:
    """One model call, then decode and classify. ``LLMCallError`` propagates."""
    prompt = build_thesis_fit_prompt(config, record, feedback)
    raw = await client.call(THESIS_FIT_SYSTEM_PROMPT, prompt)
    payload = decode_thesis_fit_payload(raw)
    result = classify_thesis_fit(record, payload)
    log.info("Thesis fit for %s: %s (%d)", record.company_name, result.fit, result.confidence)
    return result
