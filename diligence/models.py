from __future__ import annotations

from sqlalchemy import Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class DiligenceRecordRow(Base):
    __tablename__ = "diligence_records"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    company_name: Mapped[str] = mapped_column(String(300), nullable=False)
    company_url: Mapped[str | None] = mapped_column(String(500), nullable=True)
    company_description: Mapped[str | None] = mapped_column(Text, nullable=True)
    company_one_liner: Mapped[str | None] = mapped_column(Text, nullable=True)
    industry: Mapped[str | None] = mapped_column(String(200), nullable=True)
    status: Mapped[str] = mapped_column(String(30), default="in_progress")  # in_progress | completed | passed | invested
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    categorized_notes_json: Mapped[str] = mapped_column(Text, default="[]")
    questions_json: Mapped[str] = mapped_column(Text, default="[]")
    documents_json: Mapped[str] = mapped_column(Text, default="[]")
    metrics_json: Mapped[str] = mapped_column(Text, default="{}")
    founders_json: Mapped[str] = mapped_column(Text, default="[]")
    score_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    thesis_fit_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    team_research_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    portfolio_synergy_research_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    problem_necessity_research_json: Mapped[str | None] = mapped_column(Text, nullable=True)

    hubspot_deal_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    hubspot_company_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    hubspot_company_name: Mapped[str | None] = mapped_column(String(300), nullable=True)
    hubspot_company_data_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    hubspot_synced_at: Mapped[str | None] = mapped_column(String(40), nullable=True)
    hubspot_deal_stage_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    hubspot_pipeline_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    hubspot_amount: Mapped[str | None] = mapped_column(String(64), nullable=True)

    # ISO-8601 UTC strings so they round-trip unchanged through the JSON API
    created_at: Mapped[str] = mapped_column(String(40), nullable=False)
    updated_at: Mapped[str] = mapped_column(String(40), nullable=False)


class ThesisFitFeedbackRow(Base):
    __tablename__ = "thesis_fit_feedback"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    diligence_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    company_name: Mapped[str] = mapped_column(String(300), default="")
    reviewer_fit: Mapped[str] = mapped_column(String(20), nullable=False)  # on_thesis | mixed | off_thesis
    reviewer_confidence: Mapped[int | None] = mapped_column(Integer, nullable=True)
    reviewer_why_fits_json: Mapped[str] = mapped_column(Text, default="[]")
    reviewer_why_not_fit_json: Mapped[str] = mapped_column(Text, default="[]")
    reviewer_evidence_gaps_json: Mapped[str] = mapped_column(Text, default="[]")
    reviewer_crux_question: Mapped[str] = mapped_column(Text, default="")
    created_at: Mapped[str] = mapped_column(String(40), nullable=False)
