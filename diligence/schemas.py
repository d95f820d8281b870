"""Pydantic domain and request/response schemas for the diligence API.

Records are persisted as JSON-bearing rows (see ``models.py``); these models
are the typed view every module works with. Raw LLM payloads are decoded here
too, so malformed model JSON is coerced before it reaches scoring or the
thesis-fit classifier.
"""
from __future__ import annotations

from typing import Any

from pydantic import AliasChoices, BaseModel, Field, field_validator

from diligence.utils import as_text

METRIC_KEYS = (
    "arr", "tam", "market_growth_rate", "acv", "yoy_growth_rate",
    "funding_amount", "committed", "valuation", "deal_terms", "lead",
    "current_runway", "post_funding_runway", "location",
)

VALID_FITS = ("on_thesis", "mixed", "off_thesis")
VALID_EVIDENCE_STATUSES = ("supported", "weakly_supported", "unknown", "contradicted")
VALID_DOCUMENT_TYPES = ("deck", "financial", "legal", "other")
VALID_STATUSES = ("in_progress", "completed", "passed", "invested")


def _str_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [s for s in (as_text(item).strip() for item in value) if s]


def _str_or_list(value: Any) -> list[str]:
    """Accept either a single string or a list of strings."""
    if isinstance(value, str):
        return [value.strip()] if value.strip() else []
    return _str_list(value)


def _clean_str(value: Any) -> str:
    if isinstance(value, (dict, list)):
        return ""
    return as_text(value).strip()


def _loose_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    return _clean_str(value).lower() in ("true", "yes", "y", "1")


# ---------------------------------------------------------------------------
# Record building blocks
# ---------------------------------------------------------------------------


class MetricValue(BaseModel):
    value: str = ""
    source: str = "auto"  # auto | manual
    source_detail: str | None = None  # notes | facts | hubspot | manual | market_research
    updated_at: str | None = None

    @field_validator("value", mode="before")
    @classmethod
    def _coerce_value(cls, v: Any) -> str:
        return _clean_str(v)


class DiligenceNote(BaseModel):
    id: str = ""
    category: str = "Overall"
    title: str = ""
    content: str = ""
    created_at: str | None = None
    updated_at: str | None = None


class DiligenceDocument(BaseModel):
    id: str = ""
    name: str = ""
    type: str = "other"
    file_type: str = ""
    extracted_text: str | None = None
    external_url: str | None = None
    access_email: str | None = None
    link_ingest_status: str | None = None  # ingested | failed | pending | email_required
    link_ingest_message: str | None = None
    link_ingested_at: str | None = None
    uploaded_at: str | None = None
    size: int | None = None

    @property
    def is_link(self) -> bool:
        return self.file_type in ("link", "url")


class Founder(BaseModel):
    name: str = ""
    title: str | None = None
    linkedin_url: str | None = None
    has_been_ceo: bool = False
    has_been_cto: bool = False
    has_prior_exit: bool = False
    prior_exits: list[str] = []
    experience_summary: str | None = None

    @field_validator("name", mode="before")
    @classmethod
    def _name(cls, v: Any) -> str:
        return _clean_str(v)

    @field_validator("title", "linkedin_url", "experience_summary", mode="before")
    @classmethod
    def _optional_text(cls, v: Any) -> str | None:
        return _clean_str(v) or None

    @field_validator("has_been_ceo", "has_been_cto", "has_prior_exit", mode="before")
    @classmethod
    def _flag(cls, v: Any) -> bool:
        return _loose_bool(v)

    @field_validator("prior_exits", mode="before")
    @classmethod
    def _exits(cls, v: Any) -> list[str]:
        return _str_or_list(v)


class TeamResearch(BaseModel):
    summary: str = ""
    team_score: int | None = None
    founders: list[Founder] = []


class SynergyMatch(BaseModel):
    company_name: str = ""
    synergy_type: str = ""
    rationale: str = ""


class PortfolioSynergyResearch(BaseModel):
    summary: str = ""
    synergy_score: int | None = None
    matches: list[SynergyMatch] = []


class NecessitySignal(BaseModel):
    label: str = ""
    strength: str | None = None
    evidence: str = ""


class ProblemNecessityResearch(BaseModel):
    summary: str = ""
    necessity_score: int | None = None
    classification: str | None = None
    top_signals: list[NecessitySignal] = []
    counter_signals: list[NecessitySignal] = []


class HubSpotCompanyData(BaseModel):
    company_id: str = ""
    name: str = ""
    domain: str | None = None
    website: str | None = None
    description: str | None = None
    industry: str | None = None
    annual_revenue: str | None = None
    number_of_employees: str | None = None
    city: str | None = None
    state: str | None = None
    country: str | None = None
    linkedin_url: str | None = None
    funding_amount: str | None = None
    current_commitments: str | None = None
    tam_range: str | None = None
    current_runway: str | None = None
    post_funding_runway: str | None = None
    funding_valuation: str | None = None
    pitch_deck_url: str | None = None

    @field_validator(
        "annual_revenue", "number_of_employees", "funding_amount",
        "current_commitments", "tam_range", "funding_valuation", mode="before",
    )
    @classmethod
    def _numbers_as_text(cls, v: Any) -> str | None:
        return None if v is None else as_text(v)


# ---------------------------------------------------------------------------
# Criteria
# ---------------------------------------------------------------------------


class Criterion(BaseModel):
    name: str
    description: str = ""
    scoring_guidance: str = ""
    insufficient_evidence_cap: float | None = None


class CriteriaCategory(BaseModel):
    name: str
    weight: float = 0
    criteria: list[Criterion] = []


class DiligenceCriteria(BaseModel):
    categories: list[CriteriaCategory] = []
    last_updated: str | None = None

    def category_names(self) -> list[str]:
        return [c.name for c in self.categories]

    def only(self, name: str) -> DiligenceCriteria:
        return DiligenceCriteria(
            categories=[c for c in self.categories if c.name == name],
            last_updated=self.last_updated,
        )


# ---------------------------------------------------------------------------
# Scores
# ---------------------------------------------------------------------------


class CriterionScore(BaseModel):
    name: str
    score: float = 0
    manual_override: float | None = None
    answer: str = ""
    reasoning: str = ""
    evidence: list[str] = []
    confidence: float | None = None
    evidence_status: str | None = None
    missing_data: list[str] = []
    follow_up_questions: list[str] = []


class CategoryScore(BaseModel):
    category: str
    score: float = 0
    weight: float = 0
    weighted_score: float = 0
    criteria: list[CriterionScore] = []
    manual_override: float | None = None
    override_reason: str | None = None
    override_suppress_topics: list[str] | None = None
    overrided_at: str | None = None


class FounderQuestions(BaseModel):
    questions: list[str] = []
    key_gaps: str = ""
    primary_concern: str = ""

    @field_validator("questions", mode="before")
    @classmethod
    def _questions(cls, v: Any) -> list[str]:
        return _str_or_list(v)

    @field_validator("key_gaps", "primary_concern", mode="before")
    @classmethod
    def _text(cls, v: Any) -> str:
        return _clean_str(v)


class ThesisAnswers(BaseModel):
    problem_solving: str = ""
    solution: str = ""
    why_might_fit: list[str] = []
    exciting: list[str] = []
    concerning: list[str] = []
    ideal_customer: str = ""
    founder_questions: FounderQuestions = Field(default_factory=FounderQuestions)
    manually_edited: bool | None = None

    @field_validator("why_might_fit", "exciting", "concerning", mode="before")
    @classmethod
    def _lines(cls, v: Any) -> list[str]:
        return _str_or_list(v)

    @field_validator("problem_solving", "solution", "ideal_customer", mode="before")
    @classmethod
    def _text(cls, v: Any) -> str:
        return _clean_str(v)

    @field_validator("founder_questions", mode="before")
    @classmethod
    def _founder_questions(cls, v: Any) -> Any:
        # Models sometimes return the bare question list instead of the object.
        if isinstance(v, (dict, FounderQuestions)):
            return v
        return {"questions": _str_or_list(v)}

    @field_validator("manually_edited", mode="before")
    @classmethod
    def _edited(cls, v: Any) -> bool | None:
        return None if v is None else _loose_bool(v)


class DiligenceScore(BaseModel):
    overall: int = 0
    data_quality: int = 0
    categories: list[CategoryScore] = []
    thesis_answers: ThesisAnswers | None = None
    follow_up_questions: list[str] = []
    external_market_intelligence: dict[str, Any] | None = None
    rescore_explanation: str | None = None
    scoring_input_fingerprint: str | None = None
    scoring_mode: str | None = None  # full | incremental
    scored_at: str | None = None


# ---------------------------------------------------------------------------
# Thesis fit
# ---------------------------------------------------------------------------


class ThesisFitResult(BaseModel):
    fit: str = "mixed"
    confidence: int = 50
    company_description: str = ""
    problem_solving: str = ""
    solution_approach: str = ""
    why_fits: list[str] = []
    why_not_fit: list[str] = []
    evidence_gaps: list[str] = []
    evidence_anchors: list[str] = []
    crux_question: str = ""
    rationale: list[str] = []
    top_risks: list[str] = []
    computed_at: str | None = None
    model_version: str = ""


class ThesisFitFeedbackEntry(BaseModel):
    id: int | None = None
    diligence_id: str = ""
    company_name: str = ""
    reviewer_fit: str = "mixed"
    reviewer_confidence: int | None = None
    reviewer_why_fits: list[str] = []
    reviewer_why_not_fit: list[str] = []
    reviewer_evidence_gaps: list[str] = []
    reviewer_crux_question: str = ""
    created_at: str | None = None


class RawThesisFitPayload(BaseModel):
    """Model output for a thesis-fit call, coerced into predictable shapes."""
    fit: str = ""
    confidence: Any = None
    company_description: str = Field("", validation_alias=AliasChoices("company_description", "companyDescription"))
    problem_solving: str = Field("", validation_alias=AliasChoices("problem_solving", "problemSolving"))
    solution_approach: str = Field("", validation_alias=AliasChoices("solution_approach", "solutionApproach"))
    why_fits: list[str] = Field(default_factory=list, validation_alias=AliasChoices("why_fits", "whyFits", "rationale"))
    why_not_fit: list[str] = Field(default_factory=list, validation_alias=AliasChoices("why_not_fit", "whyNotFit", "top_risks", "topRisks"))
    evidence_gaps: list[str] = Field(default_factory=list, validation_alias=AliasChoices("evidence_gaps", "evidenceGaps"))
    evidence_anchors: list[str] = Field(default_factory=list, validation_alias=AliasChoices("evidence_anchors", "evidenceAnchors"))
    crux_question: str = Field("", validation_alias=AliasChoices("crux_question", "cruxQuestion"))

    @field_validator("fit", "company_description", "problem_solving", "solution_approach", "crux_question", mode="before")
    @classmethod
    def _text(cls, v: Any) -> str:
        return _clean_str(v)

    @field_validator("why_fits", "why_not_fit", "evidence_gaps", "evidence_anchors", mode="before")
    @classmethod
    def _lines(cls, v: Any) -> list[str]:
        return _str_list(v)


def decode_thesis_fit_payload(raw: Any) -> RawThesisFitPayload:
    """Validate raw model JSON; anything that is not an object decodes to an empty payload."""
    return RawThesisFitPayload.model_validate(raw if isinstance(raw, dict) else {})


# ---------------------------------------------------------------------------
# Full record
# ---------------------------------------------------------------------------


class DiligenceRecord(BaseModel):
    id: str
    company_name: str
    company_url: str | None = None
    company_description: str | None = None
    company_one_liner: str | None = None
    industry: str | None = None
    status: str = "in_progress"
    notes: str | None = None
    categorized_notes: list[DiligenceNote] = []
    questions: list[str] = []
    documents: list[DiligenceDocument] = []
    metrics: dict[str, MetricValue] = {}
    founders: list[Founder] = []
    score: DiligenceScore | None = None
    thesis_fit: ThesisFitResult | None = None
    team_research: TeamResearch | None = None
    portfolio_synergy_research: PortfolioSynergyResearch | None = None
    problem_necessity_research: ProblemNecessityResearch | None = None
    hubspot_deal_id: str | None = None
    hubspot_company_id: str | None = None
    hubspot_company_name: str | None = None
    hubspot_company_data: HubSpotCompanyData | None = None
    hubspot_synced_at: str | None = None
    hubspot_deal_stage_id: str | None = None
    hubspot_pipeline_id: str | None = None
    hubspot_amount: str | None = None
    created_at: str | None = None
    updated_at: str | None = None

    def metric(self, key: str) -> str:
        m = self.metrics.get(key)
        return m.value.strip() if m and m.value else ""


# ---------------------------------------------------------------------------
# API request/response bodies
# ---------------------------------------------------------------------------


class RecordCreate(BaseModel):
    company_name: str
    company_url: str | None = None
    company_description: str | None = None
    company_one_liner: str | None = None
    industry: str | None = None
    notes: str | None = None
    categorized_notes: list[DiligenceNote] = []
    metrics: dict[str, MetricValue] = {}
    hubspot_deal_id: str | None = None

    @field_validator("company_name")
    @classmethod
    def _name_required(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("company_name must not be empty")
        return v


class RecordUpdate(BaseModel):
    company_name: str | None = None
    company_url: str | None = None
    company_description: str | None = None
    company_one_liner: str | None = None
    industry: str | None = None
    status: str | None = None
    notes: str | None = None
    categorized_notes: list[DiligenceNote] | None = None
    questions: list[str] | None = None
    metrics: dict[str, MetricValue] | None = None
    thesis_answers: ThesisAnswers | None = None
    hubspot_deal_id: str | None = None

    @field_validator("status")
    @classmethod
    def _status(cls, v: str | None) -> str | None:
        if v is not None and v not in VALID_STATUSES:
            raise ValueError(f"status must be one of {', '.join(VALID_STATUSES)}")
        return v


class DocumentCreate(BaseModel):
    name: str
    type: str = "other"
    file_type: str = ""
    extracted_text: str | None = None
    external_url: str | None = None
    access_email: str | None = None

    @field_validator("type")
    @classmethod
    def _doc_type(cls, v: str) -> str:
        return v if v in VALID_DOCUMENT_TYPES else "other"


class RescoreRequest(BaseModel):
    diligence_id: str | None = None
    force_full: bool = False
    category_name: str | None = None


class RescoreOutcome(BaseModel):
    success: bool = True
    record: DiligenceRecord
    message: str
    skipped: bool = False
    new_documents_found: int = 0
    document_warnings: list[str] = []


class OverrideRequest(BaseModel):
    category: str
    score: float
    reason: str = ""
    suppress_topics: list[str] | None = None


class FeedbackCreate(BaseModel):
    reviewer_fit: str
    reviewer_confidence: int | None = None
    reviewer_why_fits: list[str] = []
    reviewer_why_not_fit: list[str] = []
    reviewer_evidence_gaps: list[str] = []
    reviewer_crux_question: str = ""

    @field_validator("reviewer_fit")
    @classmethod
    def _fit(cls, v: str) -> str:
        v = v.strip().lower()
        if v not in VALID_FITS:
            raise ValueError(f"reviewer_fit must be one of {', '.join(VALID_FITS)}")
        return v


class RecordListResponse(BaseModel):
    items: list[DiligenceRecord]
    total: int
