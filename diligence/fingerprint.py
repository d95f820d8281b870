"""Stable hash over every scoring-relevant input of a diligence record.

A record's score is stale exactly when the fingerprint of its current inputs
differs from ``score.scoring_input_fingerprint``.
"""
from __future__ import annotations

import hashlib
import json
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any

from diligence.schemas import METRIC_KEYS, DiligenceCriteria, DiligenceDocument, DiligenceNote, MetricValue

log = logging.getLogger(__name__)


@dataclass
class FingerprintInput:
    company_name: str
    documents: list[DiligenceDocument]
    criteria: DiligenceCriteria | dict[str, Any]
    scorer_version: str
    summarize_transcript_notes_for_scoring: bool = False
    company_url: str | None = None
    company_description: str | None = None
    notes: str | None = None
    categorized_notes: list[DiligenceNote] = field(default_factory=list)
    metrics: dict[str, MetricValue] = field(default_factory=dict)


def _normalize_notes(notes: list[DiligenceNote]) -> list[dict[str, str]]:
    rows = [
        {"category": n.category or "", "title": n.title or "", "content": n.content or ""}
        for n in notes or []
    ]
    return sorted(rows, key=lambda r: f"{r['category']}:{r['title']}")


def _normalize_metrics(metrics: dict[str, MetricValue]) -> dict[str, str]:
    out: dict[str, str] = {}
    for key in sorted(set(METRIC_KEYS) | set(metrics or {})):
        m = (metrics or {}).get(key)
        out[key] = (m.value or "").strip() if m else ""
        out[f"{key}_source"] = (m.source or "") if m else ""
    return out


def _normalize_documents(documents: list[DiligenceDocument]) -> list[dict[str, str]]:
    rows = [
        {"name": d.name or "", "type": d.type or "other", "text": d.extracted_text or ""}
        for d in documents or []
    ]
    # Full-tuple sort so two docs sharing a name cannot swap places between calls.
    return sorted(rows, key=lambda r: (r["name"], r["type"], r["text"]))


def build_scoring_fingerprint(inp: FingerprintInput) -> str:
    """Return a sha256 hex digest, or ``unstable:<hex>`` if the input can't be serialized."""
    try:
        criteria = inp.criteria.model_dump() if isinstance(inp.criteria, DiligenceCriteria) else inp.criteria
        payload = {
            "company_name": inp.company_name or "",
            "company_url": inp.company_url or "",
            "company_description": inp.company_description or "",
            "notes": inp.notes or "",
            "categorized_notes": _normalize_notes(inp.categorized_notes),
            "metrics": _normalize_metrics(inp.metrics),
            "documents": _normalize_documents(inp.documents),
            "criteria": criteria,
            "scorer_version": inp.scorer_version,
            "summarize_transcript_notes_for_scoring": bool(inp.summarize_transcript_notes_for_scoring),
        }
        canonical = json.dumps(payload, sort_keys=True, ensure_ascii=False, separators=(",", ":"))
    except (TypeError, ValueError, AttributeError) as exc:
        log.warning("Fingerprint serialization failed for %s: %s", getattr(inp, "company_name", "?"), exc)
        return f"unstable:{uuid.uuid4().hex}"
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def should_skip_rescore(
    previous_fingerprint: str | None,
    current_fingerprint: str,
    *,
    force_full: bool = False,
    category_name: str | None = None,
    new_documents_count: int = 0,
) -> bool:
    """True when nothing scoring-relevant changed since the last score."""
    if category_name or force_full or not previous_fingerprint:
        return False
    if previous_fingerprint.startswith("unstable:") or current_fingerprint.startswith("unstable:"):
        return False
    return previous_fingerprint == current_fingerprint and new_documents_count == 0
