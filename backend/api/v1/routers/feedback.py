"""
Feedback Router — Tendero feedback and store evaluations.

Writes persist first, then trigger analysis. Analysis problems are reported
inside the response body and never turn a successful write into an error.
"""

from datetime import datetime
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from analysis.orchestrator import AnalysisOutcome, analyze_after_feedback, generate_quick_insight
from analysis.provider import TextAnalysisProvider
from api.deps import get_analysis_provider, get_current_user, get_db
from api.schemas import RequestModel, envelope
from feedback.store import list_feedback, record_store_evaluation, record_tendero_feedback, resolve_feedback

router = APIRouter(prefix="/api/v1/feedback", tags=["feedback"], dependencies=[Depends(get_current_user)])
logger = structlog.get_logger()


# ─── Schemas ────────────────────────────────────────────────────────────────


class TenderoFeedbackRequest(RequestModel):
    store_id: int | None = None
    collaborator_id: str | None = None
    visit_id: UUID | None = None
    category: str | None = None
    type: str | None = None
    urgency: str | None = None
    title: str | None = None
    description: str | None = None


class StoreEvaluationRequest(RequestModel):
    store_id: int | None = None
    collaborator_id: str | None = None
    visit_id: UUID | None = None
    ratings: dict = Field(default_factory=dict)
    strengths: list[str] = Field(default_factory=list)
    improvement_areas: list[str] = Field(default_factory=list)
    priority_recommendations: list[str] = Field(default_factory=list)
    comments: str = ""


class ResolveFeedbackRequest(RequestModel):
    notes: str | None = None


class TenderoFeedbackResponse(BaseModel):
    feedback_id: UUID
    visit_id: UUID | None
    store_id: int
    collaborator_id: str
    category: str
    feedback_type: str
    urgency: str
    title: str
    description: str
    status: str
    resolution_required: bool
    resolved_at: datetime | None
    resolution_notes: str | None
    created_at: datetime

    model_config = {"from_attributes": True}


class StoreEvaluationResponse(BaseModel):
    evaluation_id: UUID
    visit_id: UUID | None
    store_id: int
    collaborator_id: str
    ratings: dict
    overall_score: float
    strengths: list
    improvement_areas: list
    priority_recommendations: list
    comments: str
    created_at: datetime

    model_config = {"from_attributes": True}


async def _analyze_safely(db: AsyncSession, provider: TextAnalysisProvider, store_id: int) -> dict:
    try:
        outcome = await analyze_after_feedback(db, provider, store_id)
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.error("feedback.analysis_failed", store_id=store_id, error=str(exc))
        outcome = AnalysisOutcome(
            analysis_type="feedback_summary",
            generated=False,
            store_id=store_id,
            reason="analysis unavailable",
        )
    return outcome.to_dict()


# ─── Endpoints ──────────────────────────────────────────────────────────────


@router.post("/tendero", status_code=201)
async def create_tendero_feedback(
    body: TenderoFeedbackRequest,
    db: AsyncSession = Depends(get_db),
    provider: TextAnalysisProvider = Depends(get_analysis_provider),
):
    """Record store-owner feedback, then run the feedback summary analysis."""
    feedback = await record_tendero_feedback(db, body.model_dump())
    data = TenderoFeedbackResponse.model_validate(feedback).model_dump(mode="json")

    quick_insight = await generate_quick_insight(provider, feedback)
    analysis = await _analyze_safely(db, provider, feedback.store_id)
    return envelope(data, quick_insight=quick_insight, analysis=analysis)


@router.post("/store-evaluation", status_code=201)
async def create_store_evaluation(
    body: StoreEvaluationRequest,
    db: AsyncSession = Depends(get_db),
    provider: TextAnalysisProvider = Depends(get_analysis_provider),
):
    evaluation = await record_store_evaluation(db, body.model_dump())
    data = StoreEvaluationResponse.model_validate(evaluation).model_dump(mode="json")
    analysis = await _analyze_safely(db, provider, evaluation.store_id)
    return envelope(data, analysis=analysis)


@router.put("/tendero/{feedback_id}/resolve")
async def resolve(feedback_id: str, body: ResolveFeedbackRequest, db: AsyncSession = Depends(get_db)):
    feedback = await resolve_feedback(db, feedback_id, notes=body.notes)
    return envelope(TenderoFeedbackResponse.model_validate(feedback).model_dump(mode="json"))


@router.get("/{store_id}")
async def list_store_feedback(
    store_id: int,
    kind: str = Query("tendero"),
    limit: int = Query(20, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
):
    """Most recent feedback of one kind for a store."""
    records = await list_feedback(db, store_id, kind, limit=limit)
    schema = TenderoFeedbackResponse if kind == "tendero" else StoreEvaluationResponse
    data = [schema.model_validate(r).model_dump(mode="json") for r in records]
    return envelope(data, count=len(data))
