"""Shared business logic for the diligence API: persistence, re-scoring, thesis fit, overrides."""
from __future__ import annotations

import asyncio
import json
import logging
import re
from typing import Any, Awaitable, Callable

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from diligence.config import ScoringConfig
from diligence.fingerprint import FingerprintInput, build_scoring_fingerprint, should_skip_rescore
from diligence.hubspot import HubSpotClient, should_trust_hubspot_company_data
from diligence.ingest import LinkIngestResult, ingest_link
from diligence.merge import (
    apply_category_override,
    blend_thesis_feedback,
    latest_feedback_for_company,
    merge_founders_preserving_linkedin,
    merge_rescored,
    remove_category_override,
)
from diligence.models import DiligenceRecordRow, ThesisFitFeedbackRow
from diligence.research import (
    research_documents,
    run_portfolio_synergy_research,
    run_problem_necessity_research,
    run_team_research,
)
from diligence.schemas import (
    DiligenceDocument,
    DiligenceRecord,
    DocumentCreate,
    FeedbackCreate,
    HubSpotCompanyData,
    MetricValue,
    OverrideRequest,
    RecordCreate,
    RecordUpdate,
    RescoreOutcome,
    ThesisFitFeedbackEntry,
    ThesisFitResult,
)
from diligence.scorer import SCORER_VERSION, LLMClient, ScoringDocument, score_diligence
from diligence.text import (
    derive_tam_from_score,
    extract_committed_amount,
    extract_company_raise_from_documents,
    extract_from_deal_terms,
    extract_funding_amount,
    is_low_quality_link_content,
    is_unreadable_extracted_text,
    normalize_committed_candidate,
    normalize_funding_candidate,
    should_use_document_for_scoring,
)
from diligence.thesis_fit import run_thesis_fit_assessment
from diligence.utils import generate_document_id, generate_record_id, json_parse, utc_now_iso

log = logging.getLogger(__name__)

LinkIngester = Callable[..., Awaitable[LinkIngestResult]]

SKIP_MESSAGE = (
    "No new information detected. Skipped scoring. Use Full re-score to force a full refresh."
)


class ValidationError(Exception):
    """Request is malformed or references something that does not exist on the record."""


class RecordNotFound(Exception):
    """No diligence record with the given id."""


# ---------------------------------------------------------------------------
# Row <-> record serialization
# ---------------------------------------------------------------------------

SCALAR_FIELDS = (
    "id", "company_name", "company_url", "company_description", "company_one_liner",
    "industry", "status", "notes", "hubspot_deal_id", "hubspot_company_id",
    "hubspot_company_name", "hubspot_synced_at", "hubspot_deal_stage_id",
    "hubspot_pipeline_id", "hubspot_amount", "created_at", "updated_at",
)

JSON_FIELDS = (
    "categorized_notes", "questions", "documents", "metrics", "founders", "score",
    "thesis_fit", "team_research", "portfolio_synergy_research",
    "problem_necessity_research", "hubspot_company_data",
)


def row_to_record(row: DiligenceRecordRow) -> DiligenceRecord:
    data: dict[str, Any] = {f: getattr(row, f) for f in SCALAR_FIELDS}
    for f in JSON_FIELDS:
        value = json_parse(getattr(row, f"{f}_json"), None)
        if value is not None:
            data[f] = value
    return DiligenceRecord.model_validate(data)


def write_record_to_row(record: DiligenceRecord, row: DiligenceRecordRow) -> None:
    dumped = record.model_dump(mode="json")
    for f in SCALAR_FIELDS:
        setattr(row, f, dumped[f])
    for f in JSON_FIELDS:
        value = dumped[f]
        setattr(row, f"{f}_json", None if value is None else json.dumps(value, ensure_ascii=False))


def feedback_row_to_entry(row: ThesisFitFeedbackRow) -> ThesisFitFeedbackEntry:
    return ThesisFitFeedbackEntry(
        id=row.id,
        diligence_id=row.diligence_id,
        company_name=row.company_name,
        reviewer_fit=row.reviewer_fit,
        reviewer_confidence=row.reviewer_confidence,
        reviewer_why_fits=json_parse(row.reviewer_why_fits_json, []),
        reviewer_why_not_fit=json_parse(row.reviewer_why_not_fit_json, []),
        reviewer_evidence_gaps=json_parse(row.reviewer_evidence_gaps_json, []),
        reviewer_crux_question=row.reviewer_crux_question or "",
        created_at=row.created_at,
    )


# ---------------------------------------------------------------------------
# Record CRUD
# ---------------------------------------------------------------------------


def _get_row(session: Session, record_id: str) -> DiligenceRecordRow:
    row = session.get(DiligenceRecordRow, record_id)
    if row is None:
        raise RecordNotFound(record_id)
    return row


def load_record(session: Session, record_id: str) -> DiligenceRecord:
    return row_to_record(_get_row(session, record_id))


def update_record(session: Session, record_id: str, partial: dict[str, Any]) -> DiligenceRecord:
    """Merge *partial* into the stored record and commit. Returns the updated record."""
    row = _get_row(session, record_id)
    current = row_to_record(row)
    merged = DiligenceRecord.model_validate({
        **current.model_dump(),
        **partial,
        "id": current.id,
        "created_at": current.created_at,
        "updated_at": utc_now_iso(),
    })
    write_record_to_row(merged, row)
    session.commit()
    return merged


def list_records(session: Session, search: str | None = None) -> list[DiligenceRecord]:
    stmt = select(DiligenceRecordRow).order_by(DiligenceRecordRow.updated_at.desc())
    if search and search.strip():
        stmt = stmt.where(func.lower(DiligenceRecordRow.company_name).contains(search.strip().lower()))
    return [row_to_record(r) for r in session.execute(stmt).scalars().all()]


def create_record(session: Session, body: RecordCreate) -> DiligenceRecord:
    now = utc_now_iso()
    metrics = {
        k: m.model_copy(update={"source": "manual", "source_detail": "manual", "updated_at": now})
        for k, m in body.metrics.items() if m.value
    }
    record = DiligenceRecord(
        id=generate_record_id(),
        **body.model_dump(exclude={"metrics", "categorized_notes"}),
        categorized_notes=body.categorized_notes,
        metrics=metrics,
        created_at=now,
        updated_at=now,
    )
    row = DiligenceRecordRow()
    write_record_to_row(record, row)
    session.add(row)
    session.commit()
    return record


def delete_record(session: Session, record_id: str) -> None:
    row = _get_row(session, record_id)
    session.delete(row)
    session.commit()


def apply_record_update(session: Session, record_id: str, body: RecordUpdate) -> DiligenceRecord:
    """Partial update from the API; ``None`` fields are ignored."""
    record = load_record(session, record_id)
    updates = {k: v for k, v in body.model_dump(exclude_none=True).items() if k not in ("metrics", "thesis_answers")}
    if body.metrics is not None:
        now = utc_now_iso()
        metrics = dict(record.metrics)
        for key, metric in body.metrics.items():
            metrics[key] = metric.model_copy(update={"source": "manual", "source_detail": "manual", "updated_at": now})
        updates["metrics"] = metrics
    if body.thesis_answers is not None:
        if record.score is None:
            raise ValidationError("Cannot edit thesis answers before the record has been scored")
        answers = body.thesis_answers.model_copy(update={"manually_edited": True})
        updates["score"] = record.score.model_copy(update={"thesis_answers": answers})
    return update_record(session, record_id, updates)


def add_document(session: Session, record_id: str, body: DocumentCreate) -> DiligenceRecord:
    record = load_record(session, record_id)
    doc = DiligenceDocument(
        id=generate_document_id(),
        **body.model_dump(),
        uploaded_at=utc_now_iso(),
    )
    if doc.is_link:
        if not (doc.external_url or "").strip():
            raise ValidationError("external_url is required for link documents")
        doc.link_ingest_status = "pending"
    return update_record(session, record_id, {"documents": [*record.documents, doc]})


# ---------------------------------------------------------------------------
# Documents
# ---------------------------------------------------------------------------


def needs_reingest(doc: DiligenceDocument) -> bool:
    if not doc.is_link or not (doc.external_url or "").strip():
        return False
    text = (doc.extracted_text or "").strip()
    return doc.link_ingest_status != "ingested" or not text or is_low_quality_link_content(text)


async def reingest_documents(
    documents: list[DiligenceDocument], ingest: LinkIngester,
) -> tuple[list[DiligenceDocument], int]:
    """Re-fetch every stale link in parallel. Returns all documents plus the number attempted."""
    targets = [i for i, d in enumerate(documents) if needs_reingest(d)]
    if not targets:
        return documents, 0
    results = await asyncio.gather(
        *(ingest(documents[i].external_url, documents[i].access_email) for i in targets),
        return_exceptions=True,
    )
    updated = list(documents)
    now = utc_now_iso()
    for i, result in zip(targets, results):
        doc = documents[i]
        if isinstance(result, BaseException):
            log.warning("Link ingest failed for %s: %s", doc.name, result)
            updated[i] = doc.model_copy(update={
                "link_ingest_status": "failed",
                "link_ingest_message": str(result) or type(result).__name__,
                "link_ingested_at": now,
            })
        elif result.status == "ingested":
            updated[i] = doc.model_copy(update={
                "extracted_text": result.extracted_text,
                "link_ingest_status": "ingested",
                "link_ingest_message": None,
                "link_ingested_at": now,
            })
        else:
            updated[i] = doc.model_copy(update={
                "link_ingest_status": result.status,
                "link_ingest_message": result.error or None,
                "link_ingested_at": now,
            })
    return updated, len(targets)


def collect_document_warnings(documents: list[DiligenceDocument]) -> list[str]:
    warnings: dict[str, None] = {}
    for doc in documents:
        name = (doc.name or "").strip() or "Document"
        if doc.is_link and doc.link_ingest_status != "ingested":
            detail = f" ({doc.link_ingest_message})" if doc.link_ingest_message else ""
            warnings.setdefault(
                f"{name}: Link ingestion failed{detail}. This document will not be used in thesis/scoring.", None,
            )
        elif is_unreadable_extracted_text(doc.extracted_text):
            warnings.setdefault(
                f"{name}: File is attached but text could not be reliably extracted. "
                "This document may be ignored by thesis/scoring.", None,
            )
    return list(warnings)[:10]


def count_new_documents(documents: list[DiligenceDocument], scored_at: str | None) -> int:
    if not scored_at:
        return 0
    return sum(1 for d in documents if d.uploaded_at and d.uploaded_at > scored_at)


def company_documents(record: DiligenceRecord) -> list[ScoringDocument]:
    return [
        ScoringDocument(d.name, d.extracted_text or "", d.type)
        for d in record.documents if should_use_document_for_scoring(d)
    ]


# ---------------------------------------------------------------------------
# Metrics
# ---------------------------------------------------------------------------

_CASH_ON_HAND_RE = re.compile(r"cash\s+on\s+hand[^0-9]{0,20}(\$?\d[\d,.]*(?:\.\d+)?\s?[kmb]?)", re.I)
_RAISE_SIGNAL_RE = re.compile(
    r"raise\s+amount|raising\s+\$|funding\s+amount|funding\s+sought|seeking\s+to\s+raise|round\s+(?:size|amount)",
    re.I,
)


def _money_key(value: str) -> str:
    return re.sub(r"[$,\s]", "", (value or "").lower())


def notes_text(record: DiligenceRecord) -> str:
    parts = [record.notes or ""]
    parts += [f"{n.title}\n{n.content}" for n in record.categorized_notes]
    return "\n".join(p for p in parts if p)


def metrics_for_scoring(
    record: DiligenceRecord, hubspot_data: HubSpotCompanyData | None,
) -> dict[str, MetricValue]:
    """Record metrics with the cash-on-hand guard and trusted HubSpot backfill applied."""
    metrics = dict(record.metrics)
    text = notes_text(record)
    funding = metrics.get("funding_amount")
    cash = _CASH_ON_HAND_RE.search(text)
    if (
        funding and funding.value and cash
        and _money_key(funding.value) == _money_key(cash.group(1))
        and not _RAISE_SIGNAL_RE.search(text)
    ):
        log.info("Dropping funding_amount for %s: matches cash on hand", record.company_name)
        metrics.pop("funding_amount")

    if hubspot_data is not None:
        now = utc_now_iso()
        for key, value in (("arr", hubspot_data.annual_revenue), ("tam", hubspot_data.tam_range)):
            if value and not (metrics.get(key) and metrics[key].value):
                metrics[key] = MetricValue(value=value, source="manual", source_detail="hubspot", updated_at=now)
    return metrics


def _set_metric(metrics: dict[str, MetricValue], key: str, value: str, detail: str) -> None:
    prior = metrics.get(key)
    if prior and prior.value and prior.source == "manual":
        return
    metrics[key] = MetricValue(
        value=value,
        source="auto",
        source_detail=(prior.source_detail if prior and prior.source_detail else detail),
        updated_at=utc_now_iso(),
    )


def derive_fact_metrics(
    metrics: dict[str, MetricValue],
    score_payload: Any,
    company_docs_text: str,
    company_name: str,
) -> dict[str, MetricValue]:
    """Fill TAM, raise and committed amounts from the score payload and company documents."""
    metrics = dict(metrics)
    if not (metrics.get("tam") and metrics["tam"].value):
        tam = derive_tam_from_score(score_payload)
        if tam:
            _set_metric(metrics, "tam", tam, "market_research")

    raise_amount = (
        normalize_funding_candidate(extract_company_raise_from_documents(company_docs_text, company_name))
        or extract_from_deal_terms(score_payload, extract_funding_amount)
    )
    if raise_amount:
        _set_metric(metrics, "funding_amount", raise_amount, "facts")
    elif not (metrics.get("funding_amount") and metrics["funding_amount"].value):
        fallback = normalize_funding_candidate(extract_funding_amount(company_docs_text))
        if fallback:
            _set_metric(metrics, "funding_amount", fallback, "facts")

    committed = (
        normalize_committed_candidate(extract_committed_amount(company_docs_text))
        or extract_from_deal_terms(score_payload, extract_committed_amount)
    )
    if committed:
        _set_metric(metrics, "committed", committed, "facts")
    return metrics


# ---------------------------------------------------------------------------
# Thesis-fit feedback
# ---------------------------------------------------------------------------


def list_feedback(
    session: Session, diligence_id: str | None = None, limit: int = 200,
) -> list[ThesisFitFeedbackEntry]:
    stmt = select(ThesisFitFeedbackRow).order_by(ThesisFitFeedbackRow.created_at.desc()).limit(limit)
    if diligence_id:
        stmt = stmt.where(ThesisFitFeedbackRow.diligence_id == diligence_id)
    return [feedback_row_to_entry(r) for r in session.execute(stmt).scalars().all()]


def add_feedback(session: Session, record_id: str, body: FeedbackCreate) -> ThesisFitFeedbackEntry:
    record = load_record(session, record_id)
    row = ThesisFitFeedbackRow(
        diligence_id=record.id,
        company_name=record.company_name,
        reviewer_fit=body.reviewer_fit,
        reviewer_confidence=body.reviewer_confidence,
        reviewer_why_fits_json=json.dumps(body.reviewer_why_fits),
        reviewer_why_not_fit_json=json.dumps(body.reviewer_why_not_fit),
        reviewer_evidence_gaps_json=json.dumps(body.reviewer_evidence_gaps),
        reviewer_crux_question=body.reviewer_crux_question.strip(),
        created_at=utc_now_iso(),
    )
    session.add(row)
    session.commit()
    return feedback_row_to_entry(row)


# ---------------------------------------------------------------------------
# Overrides
# ---------------------------------------------------------------------------


def apply_override(session: Session, record_id: str, body: OverrideRequest) -> DiligenceRecord:
    record = load_record(session, record_id)
    if record.score is None:
        raise ValidationError("Record has not been scored yet")
    try:
        score = apply_category_override(
            record.score, body.category, body.score, body.reason.strip() or None, body.suppress_topics,
        )
    except KeyError:
        raise ValidationError(f'Category "{body.category}" not found in score') from None
    except ValueError as exc:
        raise ValidationError(str(exc)) from exc
    return update_record(session, record_id, {"score": score})


def remove_override(session: Session, record_id: str, category: str) -> DiligenceRecord:
    record = load_record(session, record_id)
    if record.score is None:
        raise ValidationError("Record has not been scored yet")
    if category not in {c.category for c in record.score.categories}:
        raise ValidationError(f'Category "{category}" not found in score')
    return update_record(session, record_id, {"score": remove_category_override(record.score, category)})


# ---------------------------------------------------------------------------
# Thesis fit
# ---------------------------------------------------------------------------


async def run_thesis_fit(
    session: Session, record_id: str, *, config: ScoringConfig, client: LLMClient,
) -> ThesisFitResult:
    """Assess thesis fit with reviewer labels as calibration, then persist the result."""
    record = load_record(session, record_id)
    try:
        feedback = list_feedback(session)
    except Exception as exc:
        log.warning("Feedback load failed for %s: %s", record.company_name, exc)
        feedback = []
    result = await run_thesis_fit_assessment(record, client, config, feedback)
    update_record(session, record_id, {"thesis_fit": result})
    return result


# ---------------------------------------------------------------------------
# Re-score orchestration
# ---------------------------------------------------------------------------


async def refresh_hubspot_company(
    session: Session, record: DiligenceRecord, hubspot: HubSpotClient | None,
) -> DiligenceRecord:
    if hubspot is None or not hubspot.configured or not record.hubspot_deal_id:
        return record
    try:
        data = await hubspot.get_associated_company_for_deal(record.hubspot_deal_id)
    except Exception as exc:
        log.warning("HubSpot company refresh failed for %s: %s", record.company_name, exc)
        return record
    if data is None:
        return record
    return update_record(session, record.id, {
        "hubspot_company_data": data,
        "hubspot_company_id": data.company_id or record.hubspot_company_id,
        "hubspot_company_name": data.name or record.hubspot_company_name,
    })


async def run_enrichment_research(
    session: Session,
    record: DiligenceRecord,
    client: LLMClient,
    ingest: LinkIngester,
    *,
    force: bool = False,
) -> DiligenceRecord:
    """Team, portfolio-synergy and problem-necessity research, each persisted as it lands."""
    todo_team = force or record.team_research is None
    todo_synergy = force or record.portfolio_synergy_research is None
    todo_necessity = force or record.problem_necessity_research is None
    if not (todo_team or todo_synergy or todo_necessity):
        return record

    website_text = ""
    if record.company_url and (todo_team or todo_necessity):
        try:
            fetched = await ingest(record.company_url, None)
            website_text = fetched.extracted_text if fetched.success else ""
        except Exception as exc:
            log.warning("Website fetch failed for %s: %s", record.company_name, exc)

    if todo_team:
        try:
            team = await run_team_research(record, client, website_text)
            record = update_record(session, record.id, {
                "team_research": team,
                "founders": merge_founders_preserving_linkedin(record.founders, team.founders) or record.founders,
            })
        except Exception as exc:
            log.warning("Team research failed for %s: %s", record.company_name, exc)
    if todo_synergy:
        try:
            synergy = await run_portfolio_synergy_research(record, client)
            record = update_record(session, record.id, {"portfolio_synergy_research": synergy})
        except Exception as exc:
            log.warning("Portfolio synergy research failed for %s: %s", record.company_name, exc)
    if todo_necessity:
        try:
            necessity = await run_problem_necessity_research(record, client, website_text)
            record = update_record(session, record.id, {"problem_necessity_research": necessity})
        except Exception as exc:
            log.warning("Problem necessity research failed for %s: %s", record.company_name, exc)
    return record


def _fingerprint(record: DiligenceRecord, config: ScoringConfig, criteria: Any, metrics: dict[str, MetricValue]) -> str:
    return build_scoring_fingerprint(FingerprintInput(
        company_name=record.company_name,
        company_url=record.company_url,
        company_description=record.company_description,
        notes=record.notes,
        categorized_notes=record.categorized_notes,
        metrics=metrics,
        documents=record.documents,
        criteria=criteria,
        scorer_version=SCORER_VERSION,
        summarize_transcript_notes_for_scoring=config.settings.summarize_transcript_notes_for_scoring,
    ))


async def rescore_record(
    session: Session,
    record_id: str | None,
    *,
    config: ScoringConfig,
    client: LLMClient,
    hubspot: HubSpotClient | None = None,
    ingest: LinkIngester = ingest_link,
    force_full: bool = False,
    category_name: str | None = None,
) -> RescoreOutcome:
    """Refresh inputs, then re-score a record unless nothing scoring-relevant changed.

    Raises ValidationError / RecordNotFound before touching the record, and
    lets ``LLMCallError`` propagate so a failed scoring call persists nothing
    beyond the best-effort enrichment already saved.
    """
    if not record_id:
        raise ValidationError("diligence_id is required")
    record = load_record(session, record_id)
    category_name = (category_name or "").strip() or None
    if category_name and category_name not in config.criteria.category_names():
        raise ValidationError(f'Category "{category_name}" not found in criteria')
    criteria = config.criteria.only(category_name) if category_name else config.criteria

    record = await refresh_hubspot_company(session, record, hubspot)
    record = await run_enrichment_research(session, record, client, ingest, force=force_full)

    documents, attempted = await reingest_documents(record.documents, ingest)
    if attempted:
        record = update_record(session, record.id, {"documents": documents})

    trusted_hubspot = (
        record.hubspot_company_data
        if should_trust_hubspot_company_data(record.company_url, record.hubspot_company_data) else None
    )
    scoring_metrics = metrics_for_scoring(record, trusted_hubspot)
    previous = record.score
    new_documents_count = count_new_documents(record.documents, previous.scored_at if previous else None)

    current_fp = _fingerprint(record, config, criteria, record.metrics)
    if should_skip_rescore(
        previous.scoring_input_fingerprint if previous else None,
        current_fp,
        force_full=force_full,
        category_name=category_name,
        new_documents_count=new_documents_count,
    ):
        log.info("Skipping re-score for %s: inputs unchanged", record.company_name)
        return RescoreOutcome(
            record=record,
            message=SKIP_MESSAGE,
            skipped=True,
            document_warnings=collect_document_warnings(record.documents),
        )

    company_docs = company_documents(record)
    existing_answers = (
        previous.thesis_answers if previous and previous.thesis_answers and previous.thesis_answers.manually_edited
        else None
    )
    result = await score_diligence(
        [*company_docs, *research_documents(record)],
        criteria,
        client,
        company_name=record.company_name,
        company_url=record.company_url,
        notes=record.notes,
        categorized_notes=record.categorized_notes,
        questions=record.questions,
        hubspot_company_data=trusted_hubspot,
        metrics=scoring_metrics,
        previous_score=previous,
        existing_thesis_answers=existing_answers,
        thesis_markdown=config.thesis_markdown,
        settings=config.settings,
    )

    metrics = derive_fact_metrics(
        result.metrics, result.score, "\n\n".join(d.text for d in company_docs), record.company_name,
    )
    fresh = result.score
    if config.settings.enable_scoring_feedback:
        try:
            latest = latest_feedback_for_company(list_feedback(session, record.id, 50), record.company_name)
        except Exception as exc:
            log.warning("Feedback load failed for %s: %s", record.company_name, exc)
            latest = None
        prior_fits = record.thesis_fit.why_fits if record.thesis_fit else None
        fresh = fresh.model_copy(update={
            "thesis_answers": blend_thesis_feedback(fresh.thesis_answers, latest, prior_fits),
        })
    fresh = fresh.model_copy(update={
        "scoring_input_fingerprint": _fingerprint(record, config, criteria, metrics),
        "scoring_mode": "full" if force_full else "incremental",
    })
    merged = merge_rescored(previous, fresh, category_name=category_name, new_documents_count=new_documents_count)

    meta = result.company_metadata
    updates: dict[str, Any] = {"score": merged, "metrics": metrics, "documents": record.documents}
    if meta.company_one_liner:
        updates["company_one_liner"] = meta.company_one_liner
    if meta.industry and not (record.industry or "").strip():
        updates["industry"] = meta.industry
    if meta.founders:
        updates["founders"] = merge_founders_preserving_linkedin(record.founders, meta.founders)
    record = update_record(session, record.id, updates)
    log.info("Re-scored %s: overall %d (%s)", record.company_name, merged.overall, merged.scoring_mode)

    if hubspot is not None and hubspot.configured and record.hubspot_deal_id:
        try:
            synced = await hubspot.sync_record(record)
            record = update_record(session, record.id, {
                "hubspot_deal_id": synced.deal_id,
                "hubspot_synced_at": utc_now_iso(),
            })
        except Exception as exc:
            log.warning("HubSpot sync failed for %s: %s", record.company_name, exc)

    mode = "full" if force_full else "incremental"
    if new_documents_count > 0:
        message = f"Successfully {mode} re-scored with {new_documents_count} new document(s)"
    elif category_name:
        message = f"Successfully re-scored {category_name} category"
    else:
        message = f"Successfully {mode} re-scored diligence"
    return RescoreOutcome(
        record=record,
        message=message,
        new_documents_found=new_documents_count,
        document_warnings=collect_document_warnings(record.documents),
    )
