"""Read-only scoring configuration: thesis markdown, criteria rubric, app settings.

Loaded once at startup and rebuilt on ``POST /api/config/reload``.  The
criteria rubric is an XLSX sheet with one header row and columns::

    A Category | B Weight | C Criterion | D Description | E Scoring Guidance |
    F Insufficient Evidence Cap

A row with a category starts (or continues) that category; rows with a blank
category add criteria to the most recent one.
"""
from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import openpyxl
from pydantic import BaseModel

from diligence.schemas import CriteriaCategory, Criterion, DiligenceCriteria
from diligence.utils import utc_now_iso

log = logging.getLogger(__name__)


class ConfigError(Exception):
    """Configuration file exists but could not be read."""


# ---------------------------------------------------------------------------
# App settings
# ---------------------------------------------------------------------------


class ScoringWeights(BaseModel):
    industry: int = 30
    thesis: int = 30
    stage: int = 25
    check_size: int = 15


class AppSettings(BaseModel):
    matching_guidance: str = ""
    min_match_score: int = 50
    scoring_weights: ScoringWeights = ScoringWeights()
    check_size_filter_strictness: int = 25
    min_data_quality: int = 30
    summarize_transcript_notes_for_scoring: bool = False
    enable_scoring_feedback: bool = True


def load_app_settings(path: str | Path | None = None) -> AppSettings:
    """Settings file merged over defaults; a missing or broken file yields defaults."""
    path = Path(path or os.environ.get("APP_SETTINGS_PATH", "app-settings.json"))
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return AppSettings()
    except (OSError, json.JSONDecodeError) as exc:
        log.warning("App settings load failed for %s: %s", path, exc)
        return AppSettings()
    if not isinstance(raw, dict):
        return AppSettings()
    weights = {**ScoringWeights().model_dump(), **(raw.get("scoring_weights") or {})}
    return AppSettings.model_validate({**raw, "scoring_weights": weights})


# ---------------------------------------------------------------------------
# Thesis
# ---------------------------------------------------------------------------


def load_thesis_markdown(path: str | Path | None = None) -> str:
    path = Path(path or os.environ.get("THESIS_PATH", "config/thesis.md"))
    try:
        content = path.read_text(encoding="utf-8").strip()
    except OSError:
        return f"No thesis markdown file found at {path}."
    return content or "No thesis markdown content found."


# ---------------------------------------------------------------------------
# Criteria
# ---------------------------------------------------------------------------

DEFAULT_CRITERIA = DiligenceCriteria(categories=[
    CriteriaCategory(name="Team", weight=25, criteria=[
        Criterion(name="Founder-Market Fit", description="Depth of founder experience in the target market.",
                  scoring_guidance="Prior operating roles, domain exits, and customer access score highest.",
                  insufficient_evidence_cap=60),
        Criterion(name="Team Completeness", description="Coverage of technical, commercial and product roles.",
                  scoring_guidance="Penalize single-founder teams missing a technical lead."),
    ]),
    CriteriaCategory(name="Market", weight=25, criteria=[
        Criterion(name="Market Size", description="Credible TAM/SAM/SOM for the initial wedge.",
                  scoring_guidance="Bottom-up sizing outranks top-down analyst figures.",
                  insufficient_evidence_cap=60),
        Criterion(name="Problem Necessity", description="How urgent and frequent the customer pain is.",
                  scoring_guidance="Look for budgeted spend and regulatory or workflow forcing functions."),
    ]),
    CriteriaCategory(name="Product", weight=25, criteria=[
        Criterion(name="Differentiation", description="Defensibility versus incumbents and new entrants.",
                  scoring_guidance="Proprietary data, workflow lock-in and integrations score highest."),
        Criterion(name="Traction", description="Revenue, pilots and usage growth.",
                  scoring_guidance="ARR and YoY growth outrank LOIs.", insufficient_evidence_cap=55),
    ]),
    CriteriaCategory(name="Deal Terms", weight=25, criteria=[
        Criterion(name="Round Structure", description="Raise amount, committed capital, valuation and lead.",
                  scoring_guidance="Reward a committed lead and valuation in line with traction."),
        Criterion(name="Runway", description="Current and post-funding runway.",
                  scoring_guidance="Under 12 months post-funding is a material risk."),
    ]),
])


def _s(value: object) -> str:
    """Safely coerce cell value to stripped string."""
    if value is None:
        return ""
    return str(value).strip()


def _col(row: tuple, idx: int) -> object:
    return row[idx] if idx < len(row) else None


def _f(value: object) -> float | None:
    """Cell value as float, None if blank or not numeric."""
    if value is None or _s(value) == "":
        return None
    try:
        return float(value)  # type: ignore[arg-type]
    except (ValueError, TypeError):
        return None


def parse_criteria_rows(rows: list[tuple]) -> DiligenceCriteria:
    """Fold sheet rows (header excluded) into categories."""
    categories: dict[str, CriteriaCategory] = {}
    current: CriteriaCategory | None = None
    for row in rows:
        if not row:
            continue
        category, criterion = _s(_col(row, 0)), _s(_col(row, 2))
        if not category and not criterion:
            continue
        if category:
            if category not in categories:
                categories[category] = CriteriaCategory(name=category, weight=_f(_col(row, 1)) or 0)
            current = categories[category]
        if criterion and current is not None:
            current.criteria.append(Criterion(
                name=criterion,
                description=_s(_col(row, 3)),
                scoring_guidance=_s(_col(row, 4)),
                insufficient_evidence_cap=_f(_col(row, 5)),
            ))

    result = DiligenceCriteria(categories=list(categories.values()), last_updated=utc_now_iso())
    total = sum(c.weight for c in result.categories)
    if result.categories and abs(total - 100) > 0.1:
        log.warning("Total category weights = %s%%, expected 100%%", total)
    return result


def load_criteria(path: str | Path | None = None) -> DiligenceCriteria:
    """Load the rubric from XLSX. Missing file -> default rubric; unreadable file -> ConfigError."""
    path = Path(path or os.environ.get("CRITERIA_PATH", "config/criteria.xlsx"))
    if not path.exists():
        log.info("No criteria sheet at %s, using default rubric", path)
        return DEFAULT_CRITERIA.model_copy(deep=True)
    try:
        wb = openpyxl.load_workbook(path, read_only=True, data_only=True)
    except Exception as exc:
        raise ConfigError(f"Could not read criteria sheet {path}: {exc}") from exc
    try:
        ws = wb.active
        rows = list(ws.iter_rows(min_row=2, values_only=True))
    finally:
        wb.close()
    criteria = parse_criteria_rows(rows)
    if not criteria.categories:
        raise ConfigError(f"No criteria found in {path}")
    return criteria


# ---------------------------------------------------------------------------
# Assembled config
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ScoringConfig:
    thesis_markdown: str
    criteria: DiligenceCriteria
    settings: AppSettings = field(default_factory=AppSettings)

    def summary(self) -> dict[str, Any]:
        return {
            "thesis_chars": len(self.thesis_markdown),
            "categories": self.criteria.category_names(),
            "summarize_transcript_notes_for_scoring": self.settings.summarize_transcript_notes_for_scoring,
        }


def load_scoring_config(
    thesis_path: str | Path | None = None,
    criteria_path: str | Path | None = None,
    settings_path: str | Path | None = None,
) -> ScoringConfig:
    return ScoringConfig(
        thesis_markdown=load_thesis_markdown(thesis_path),
        criteria=load_criteria(criteria_path),
        settings=load_app_settings(settings_path),
    )
