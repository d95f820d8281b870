from __future__ import annotations

import json
import logging
from contextlib import asynccontextmanager
from typing import Generator

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from diligence import services
from diligence.config import ConfigError, ScoringConfig, load_scoring_config
from diligence.db import init_db, session_generator
from diligence.hubspot import HubSpotClient
from diligence.ingest import ingest_link
from diligence.schemas import (
    DiligenceRecord,
    DocumentCreate,
    FeedbackCreate,
    OverrideRequest,
    RecordCreate,
    RecordListResponse,
    RecordUpdate,
    RescoreOutcome,
    RescoreRequest,
    ThesisFitFeedbackEntry,
    ThesisFitResult,
)
from diligence.scorer import LLMClient

log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    app.state.scoring_config = load_scoring_config()
    log.info("Scoring config loaded: %s", app.state.scoring_config.summary())
    yield


app = FastAPI(
    title="Dealscope",
    version="0.1.0",
    description=(
        "Venture due-diligence API. Create company records, attach documents, "
        "and re-score them against the investment thesis and criteria rubric. "
        "All endpoints return JSON. No authentication required."
    ),
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Records", "description": "Create, browse, update and delete diligence records."},
        {"name": "Scoring", "description": "LLM-powered re-scoring and analyst overrides."},
        {"name": "Thesis Fit", "description": "Thesis-fit assessment and reviewer feedback."},
        {"name": "Admin", "description": "Configuration reload."},
    ],
)


# ---------------------------------------------------------------------------
# Dependencies & Helpers
# ---------------------------------------------------------------------------


def db_session() -> Generator[Session, None, None]:
    yield from session_generator()


def scoring_config(request: Request) -> ScoringConfig:
    return request.app.state.scoring_config


def llm_client() -> LLMClient:
    return LLMClient()


def hubspot_client() -> HubSpotClient:
    return HubSpotClient()


def link_ingester():
    return ingest_link


def _load_or_404(session: Session, record_id: str) -> DiligenceRecord:
    try:
        return services.load_record(session, record_id)
    except services.RecordNotFound:
        raise HTTPException(404, "Diligence record not found") from None


def _error_message(exc: Exception) -> str:
    return str(exc) or json.dumps(exc.args, default=str)


# ---------------------------------------------------------------------------
# Routes: Records
# ---------------------------------------------------------------------------


@app.get("/api/diligence", response_model=RecordListResponse,
         tags=["Records"], summary="List records, most recently updated first")
async def list_records(
    search: str | None = Query(None, description="Case-insensitive company name filter"),
    session: Session = Depends(db_session),
):
    items = services.list_records(session, search)
    return {"items": items, "total": len(items)}


@app.post("/api/diligence", response_model=DiligenceRecord, status_code=201,
          tags=["Records"], summary="Create a diligence record")
async def create_record(body: RecordCreate, session: Session = Depends(db_session)):
    return services.create_record(session, body)


@app.get("/api/diligence/{record_id}", response_model=DiligenceRecord,
         tags=["Records"], summary="Get a diligence record")
async def get_record(record_id: str, session: Session = Depends(db_session)):
    return _load_or_404(session, record_id)


@app.put("/api/diligence/{record_id}", response_model=DiligenceRecord,
         tags=["Records"], summary="Update record fields (partial update, null fields ignored)")
async def update_record(record_id: str, body: RecordUpdate, session: Session = Depends(db_session)):
    _load_or_404(session, record_id)
    try:
        return services.apply_record_update(session, record_id, body)
    except services.ValidationError as exc:
        raise HTTPException(400, str(exc)) from exc


@app.delete("/api/diligence/{record_id}", tags=["Records"], summary="Delete a diligence record")
async def delete_record(record_id: str, session: Session = Depends(db_session)):
    _load_or_404(session, record_id)
    services.delete_record(session, record_id)
    return {"ok": True}


@app.post("/api/diligence/{record_id}/documents", response_model=DiligenceRecord, status_code=201,
          tags=["Records"], summary="Attach a document or external link")
async def add_document(record_id: str, body: DocumentCreate, session: Session = Depends(db_session)):
    _load_or_404(session, record_id)
    try:
        return services.add_document(session, record_id, body)
    except services.ValidationError as exc:
        raise HTTPException(400, str(exc)) from exc


# ---------------------------------------------------------------------------
# Routes: Scoring
# ---------------------------------------------------------------------------


@app.post("/api/diligence/rescore", response_model=RescoreOutcome,
          tags=["Scoring"], summary="Re-score a record (skipped when inputs are unchanged)")
async def rescore(
    body: RescoreRequest,
    session: Session = Depends(db_session),
    config: ScoringConfig = Depends(scoring_config),
    client: LLMClient = Depends(llm_client),
    hubspot: HubSpotClient = Depends(hubspot_client),
    ingest=Depends(link_ingester),
):
    try:
        return await services.rescore_record(
            session, body.diligence_id,
            config=config, client=client, hubspot=hubspot, ingest=ingest,
            force_full=body.force_full, category_name=body.category_name,
        )
    except services.ValidationError as exc:
        raise HTTPException(400, str(exc)) from exc
    except services.RecordNotFound:
        raise HTTPException(404, "Diligence record not found") from None
    except Exception as exc:
        log.error("Re-score failed for %s: %s", body.diligence_id, exc)
        return JSONResponse({"success": False, "error": _error_message(exc)}, status_code=500)


@app.post("/api/diligence/{record_id}/override", response_model=DiligenceRecord,
          tags=["Scoring"], summary="Pin a category to an analyst score")
async def apply_override(record_id: str, body: OverrideRequest, session: Session = Depends(db_session)):
    _load_or_404(session, record_id)
    try:
        return services.apply_override(session, record_id, body)
    except services.ValidationError as exc:
        raise HTTPException(400, str(exc)) from exc


@app.delete("/api/diligence/{record_id}/override/{category}", response_model=DiligenceRecord,
            tags=["Scoring"], summary="Clear a category override")
async def remove_override(record_id: str, category: str, session: Session = Depends(db_session)):
    _load_or_404(session, record_id)
    try:
        return services.remove_override(session, record_id, category)
    except services.ValidationError as exc:
        raise HTTPException(400, str(exc)) from exc


# ---------------------------------------------------------------------------
# Routes: Thesis fit
# ---------------------------------------------------------------------------


@app.post("/api/diligence/{record_id}/thesis-fit", response_model=ThesisFitResult,
          tags=["Thesis Fit"], summary="Run the thesis-fit assessment and store the result")
async def thesis_fit(
    record_id: str,
    session: Session = Depends(db_session),
    config: ScoringConfig = Depends(scoring_config),
    client: LLMClient = Depends(llm_client),
):
    _load_or_404(session, record_id)
    try:
        return await services.run_thesis_fit(session, record_id, config=config, client=client)
    except Exception as exc:
        raise HTTPException(500, f"Thesis fit failed: {exc}") from exc


@app.post("/api/diligence/{record_id}/thesis-fit/feedback", response_model=ThesisFitFeedbackEntry,
          status_code=201, tags=["Thesis Fit"], summary="Store a reviewer thesis-fit label")
async def thesis_fit_feedback(record_id: str, body: FeedbackCreate, session: Session = Depends(db_session)):
    _load_or_404(session, record_id)
    return services.add_feedback(session, record_id, body)


# ---------------------------------------------------------------------------
# Routes: Admin
# ---------------------------------------------------------------------------


@app.post("/api/config/reload", tags=["Admin"], summary="Reload thesis, criteria and app settings")
async def reload_config(request: Request):
    try:
        config = load_scoring_config()
    except ConfigError as exc:
        raise HTTPException(400, str(exc)) from exc
    request.app.state.scoring_config = config
    return config.summary()


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------


def main():
    import uvicorn
    uvicorn.run("diligence.app:app", host="127.0.0.1", port=8000, reload=True)


if __name__ == "__main__":
    main()
