"""Score arithmetic, analyst overrides, and rescore merging.

All functions return new ``DiligenceScore`` objects; inputs are never mutated.
"""
from __future__ import annotations

from typing import Iterable

from diligence.schemas import (
    CategoryScore,
    DiligenceScore,
    Founder,
    FounderQuestions,
    ThesisAnswers,
    ThesisFitFeedbackEntry,
)
from diligence.text import normalize_bullet_text
from diligence.utils import utc_now_iso

NO_EVIDENCE_PLACEHOLDER = "No direct evidence cited."

# ---------------------------------------------------------------------------
# Score calculator
# ---------------------------------------------------------------------------


def effective_score(cat: CategoryScore) -> float:
    return cat.manual_override if cat.manual_override is not None else cat.score


def weighted_score(score: float, weight: float) -> float:
    return round(score * weight / 100, 2)


def recalculate_overall(categories: Iterable[CategoryScore], fallback: int = 0) -> int:
    """Weight-normalised average of effective scores; *fallback* when total weight is 0."""
    total_weight = 0.0
    total = 0.0
    for cat in categories:
        total += effective_score(cat) * cat.weight
        total_weight += cat.weight
    if total_weight <= 0:
        return fallback
    return int(round(total / total_weight))


def recalculate_weighted_scores(categories: Iterable[CategoryScore]) -> list[CategoryScore]:
    return [
        cat.model_copy(update={"weighted_score": weighted_score(effective_score(cat), cat.weight)})
        for cat in categories
    ]


def _with_categories(score: DiligenceScore, categories: list[CategoryScore]) -> DiligenceScore:
    categories = recalculate_weighted_scores(categories)
    return score.model_copy(update={
        "categories": categories,
        "overall": recalculate_overall(categories, fallback=score.overall),
    })


def apply_category_override(
    score: DiligenceScore,
    category: str,
    override: float,
    reason: str | None = None,
    suppress_topics: list[str] | None = None,
) -> DiligenceScore:
    """Pin *category* to an analyst score.

    Raises KeyError if the category is not on the score and ValueError if
    *override* is outside 0-100.
    """
    if not 0 <= override <= 100:
        raise ValueError(f"Override must be between 0 and 100, got {override}")
    if category not in {c.category for c in score.categories}:
        raise KeyError(category)
    now = utc_now_iso()
    categories = [
        c.model_copy(update={
            "manual_override": override,
            "override_reason": reason,
            "override_suppress_topics": suppress_topics or None,
            "overrided_at": now,
        }) if c.category == category else c
        for c in score.categories
    ]
    return _with_categories(score, categories)


def remove_category_override(score: DiligenceScore, category: str) -> DiligenceScore:
    categories = [
        c.model_copy(update={
            "manual_override": None,
            "override_reason": None,
            "override_suppress_topics": None,
            "overrided_at": None,
        }) if c.category == category else c
        for c in score.categories
    ]
    return _with_categories(score, categories)


# ---------------------------------------------------------------------------
# Rescore merge
# ---------------------------------------------------------------------------


def merge_rescored(
    previous: DiligenceScore | None,
    fresh: DiligenceScore,
    *,
    category_name: str | None = None,
    new_documents_count: int = 0,
) -> DiligenceScore:
    """Reconcile a fresh model score with the analyst state of *previous*.

    Overrides (value, reason, timestamp) on previous categories survive onto
    matching fresh categories, manually edited thesis answers survive
    verbatim, and a category-scoped rescore only replaces that category.
    The returned score carries the rescore narrative.
    """
    score = fresh.model_copy(deep=True)
    prior_overall = previous.overall if previous else fresh.overall

    if category_name and previous and previous.categories:
        rescored = next((c for c in score.categories if c.category == category_name), None)
        if rescored is not None:
            merged = [rescored if c.category == category_name else c for c in previous.categories]
            score.categories = [c.model_copy(deep=True) for c in merged]
            score.overall = recalculate_overall(score.categories, fallback=score.overall)
            score.data_quality = previous.data_quality
            score.thesis_answers = score.thesis_answers or previous.thesis_answers

    ai_only = score.overall
    model_explanation = (score.rescore_explanation or "").strip()

    overrides = {
        c.category: c for c in (previous.categories if previous else []) if c.manual_override is not None
    }
    if overrides:
        stamped: list[CategoryScore] = []
        for cat in score.categories:
            prior = overrides.get(cat.category)
            if prior is not None:
                cat = cat.model_copy(update={
                    "manual_override": prior.manual_override,
                    "override_reason": prior.override_reason,
                    "overrided_at": prior.overrided_at,
                    "weighted_score": weighted_score(prior.manual_override, cat.weight),
                })
            stamped.append(cat)
        score.categories = stamped
    score.overall = recalculate_overall(score.categories, fallback=prior_overall)

    if previous and previous.thesis_answers and previous.thesis_answers.manually_edited:
        score.thesis_answers = previous.thesis_answers.model_copy(deep=True)

    narrative = build_rescore_narrative(previous, score, ai_only, new_documents_count)
    score.rescore_explanation = f"{model_explanation}\n\n{narrative}" if model_explanation else narrative
    return score


def _fmt(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else f"{value:g}"


def criterion_materiality(score: float, weight: float, status: str, confidence: float) -> float:
    gap_penalty = 12 if status in ("unknown", "contradicted") else 0
    return (100 - score) * (weight / 100) + gap_penalty + max(0.0, 70 - confidence) / 5


def build_rescore_narrative(
    previous: DiligenceScore | None,
    current: DiligenceScore,
    ai_only: int,
    new_documents_count: int = 0,
) -> str:
    lines = [
        "## Score Snapshot",
        f"- Previous overall: {previous.overall if previous else 0}/100",
        f"- New AI-only score: {ai_only}/100",
        f"- Final score (after preserved overrides): {current.overall}/100",
        f"- Data quality: {current.data_quality}/100",
    ]
    if new_documents_count > 0:
        lines.append(f"- New documents included in this re-score: {new_documents_count}")

    prev_map = {c.category: effective_score(c) for c in (previous.categories if previous else [])}
    deltas = []
    for cat in current.categories:
        prev = prev_map.get(cat.category, 0)
        nxt = effective_score(cat)
        deltas.append((cat.category, prev, nxt, round(nxt - prev)))
    deltas.sort(key=lambda d: abs(d[3]), reverse=True)

    lines.append("\n## Biggest Category Changes")
    if not deltas:
        lines.append("- No category deltas available.")
    for name, prev, nxt, delta in deltas[:3]:
        sign = "+" if delta >= 0 else ""
        lines.append(f"- {name}: {_fmt(prev)} -> {_fmt(nxt)} ({sign}{delta})")

    weak = []
    for cat in current.categories:
        for crit in cat.criteria:
            confidence = crit.confidence if crit.confidence is not None else 55
            status = crit.evidence_status or "unknown"
            evidence = next((e for e in crit.evidence if e and e != NO_EVIDENCE_PLACEHOLDER), "")
            weak.append({
                "category": cat.category,
                "crit": crit,
                "confidence": confidence,
                "status": status,
                "evidence": evidence,
                "materiality": criterion_materiality(crit.score, cat.weight, status, confidence),
            })
    weak.sort(key=lambda w: w["materiality"], reverse=True)
    weak = weak[:3]

    lines.append("\n## Most Material Risks (Top 3)")
    if not weak:
        lines.append("- No material risk criteria identified.")
    for w in weak:
        crit = w["crit"]
        lines.append(
            f"- {w['category']} / {crit.name}: {_fmt(crit.score)}/100 "
            f"(confidence {_fmt(w['confidence'])}/100, status {w['status']})"
        )
        if w["evidence"]:
            lines.append(f"  Evidence: {w['evidence']}")
        elif crit.missing_data:
            lines.append(f"  Missing evidence: {crit.missing_data[0]}")

    founder_qs = current.thesis_answers.founder_questions.questions if current.thesis_answers else []
    follow_ups: dict[str, None] = {}
    for q in [*current.follow_up_questions, *(q for w in weak for q in w["crit"].follow_up_questions), *founder_qs]:
        if q:
            follow_ups.setdefault(q, None)

    lines.append("\n## Priority Founder Follow-ups (Top 3)")
    if not follow_ups:
        lines.append("- No follow-up questions generated.")
    for idx, question in enumerate(list(follow_ups)[:3], start=1):
        lines.append(f"{idx}. {question}")
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Reviewer feedback and founders
# ---------------------------------------------------------------------------


def normalize_feedback_lines(items: Iterable[str] | None, max_items: int = 6) -> list[str]:
    seen: dict[str, None] = {}
    for item in items or []:
        line = normalize_bullet_text(item)
        if line:
            seen.setdefault(line, None)
    return list(seen)[:max_items]


def latest_feedback_for_company(
    entries: Iterable[ThesisFitFeedbackEntry], company_name: str,
) -> ThesisFitFeedbackEntry | None:
    key = (company_name or "").strip().lower()
    matching = [e for e in entries if (e.company_name or "").strip().lower() == key]
    if not matching:
        return None
    return max(matching, key=lambda e: e.created_at or "")


def blend_thesis_feedback(
    answers: ThesisAnswers | None,
    feedback: ThesisFitFeedbackEntry | None,
    prior_why_fits: list[str] | None = None,
) -> ThesisAnswers | None:
    """Fold the latest reviewer label into the model's thesis answers."""
    if feedback is not None:
        base = answers or ThesisAnswers()
        why_fits = normalize_feedback_lines(feedback.reviewer_why_fits, 5)
        concerns = normalize_feedback_lines(feedback.reviewer_why_not_fit, 5)
        gaps = normalize_feedback_lines(feedback.reviewer_evidence_gaps, 4)
        crux = (feedback.reviewer_crux_question or "").strip()
        existing_qs = base.founder_questions.questions
        merged_qs = normalize_feedback_lines([*existing_qs, *gaps], 5)
        answers = base.model_copy(update={
            "why_might_fit": why_fits or base.why_might_fit or normalize_feedback_lines(prior_why_fits, 5),
            "concerning": concerns or base.concerning,
            "founder_questions": FounderQuestions(
                questions=merged_qs or existing_qs,
                key_gaps=base.founder_questions.key_gaps,
                primary_concern=crux or (concerns[0] if concerns else "") or base.founder_questions.primary_concern,
            ),
        })
    if answers is None:
        return None
    why_fits = normalize_feedback_lines(answers.why_might_fit or prior_why_fits, 5)
    return answers.model_copy(update={"why_might_fit": why_fits}) if why_fits else answers


def merge_founders_preserving_linkedin(existing: list[Founder], incoming: list[Founder]) -> list[Founder]:
    """Incoming founders win, but keep a LinkedIn URL or title we already had."""
    by_name = {f.name.strip().lower(): f for f in existing or [] if f.name.strip()}
    merged: list[Founder] = []
    for founder in incoming or []:
        prior = by_name.get(founder.name.strip().lower())
        name = founder.name.strip() or (prior.name.strip() if prior else "")
        if not name:
            continue
        merged.append(founder.model_copy(update={
            "name": name,
            "linkedin_url": (founder.linkedin_url or "").strip() or (prior.linkedin_url if prior else None) or None,
            "title": (founder.title or "").strip() or (prior.title if prior else None) or None,
        }))
    return merged
