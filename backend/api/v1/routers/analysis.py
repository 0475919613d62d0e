"""
Analysis Router — Pre-visit briefs, post-visit reviews, trends, and predictions.

Provider failures come back as fallback payloads with generated=false and a
200 status. Only caller errors (unknown visit, visit not completed, bad
period) produce error responses.
"""

from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from analysis.orchestrator import (
    generate_postvisit_review,
    generate_prediction,
    generate_previsit_brief,
    generate_trend_report,
    list_insights,
    mark_insight_used,
)
from analysis.provider import TextAnalysisProvider
from api.deps import get_analysis_provider, get_current_user, get_db
from api.schemas import RequestModel, envelope

router = APIRouter(prefix="/api/v1/analysis", tags=["analysis"])


# ─── Schemas ────────────────────────────────────────────────────────────────


class PrevisitRequest(RequestModel):
    collaborator_id: str | None = None
    visit_type: str = "routine"


class PostvisitRequest(RequestModel):
    visit_id: str = Field(..., min_length=1)


class InsightResponse(BaseModel):
    insight_id: UUID
    store_id: int
    visit_id: UUID | None
    collaborator_id: str | None
    analysis_type: str
    input_refs: list
    result: dict
    generated: bool
    used: bool
    follow_up_required: bool
    created_at: datetime

    model_config = {"from_attributes": True}


# ─── Endpoints ──────────────────────────────────────────────────────────────


@router.post("/previsit/{store_id}")
async def previsit_brief(
    store_id: int,
    body: PrevisitRequest | None = None,
    db: AsyncSession = Depends(get_db),
    provider: TextAnalysisProvider = Depends(get_analysis_provider),
    user: dict = Depends(get_current_user),
):
    """Preparation brief for an upcoming visit."""
    body = body or PrevisitRequest()
    outcome = await generate_previsit_brief(
        db,
        provider,
        store_id,
        collaborator_id=body.collaborator_id or user.get("sub"),
        visit_type=body.visit_type,
    )
    return envelope(outcome.to_dict())


@router.post("/postvisit")
async def postvisit_review(
    body: PostvisitRequest,
    db: AsyncSession = Depends(get_db),
    provider: TextAnalysisProvider = Depends(get_analysis_provider),
    user: dict = Depends(get_current_user),
):
    outcome = await generate_postvisit_review(db, provider, body.visit_id)
    return envelope(outcome.to_dict())


@router.get("/trends")
async def trends(
    period: str = Query("3_months"),
    sector: str | None = None,
    db: AsyncSession = Depends(get_db),
    provider: TextAnalysisProvider = Depends(get_analysis_provider),
    user: dict = Depends(get_current_user),
):
    """Network-wide trend report. Not persisted."""
    report = await generate_trend_report(db, provider, period=period, sector=sector)
    return envelope(report.to_dict())


@router.post("/prediction/{store_id}")
async def prediction(
    store_id: int,
    db: AsyncSession = Depends(get_db),
    provider: TextAnalysisProvider = Depends(get_analysis_provider),
    user: dict = Depends(get_current_user),
):
    outcome = await generate_prediction(db, provider, store_id)
    return envelope(outcome.to_dict())


@router.get("/insights/{store_id}")
async def store_insights(
    store_id: int,
    analysis_type: str | None = None,
    limit: int = Query(20, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(get_current_user),
):
    insights = await list_insights(db, store_id, analysis_type=analysis_type, limit=limit)
    data = [InsightResponse.model_validate(i).model_dump(mode="json") for i in insights]
    return envelope(data, count=len(data))


@router.put("/insights/{insight_id}/used")
async def insight_used(
    insight_id: str,
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(get_current_user),
):
    insight = await mark_insight_used(db, insight_id)
    return envelope(InsightResponse.model_validate(insight).model_dump(mode="json"))
