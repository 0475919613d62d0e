"""
Analysis Orchestrator — Context assembly, provider calls, and insight persistence.

Policy: provider failure never breaks the write path that triggered it.
Every generation method sends one prompt, runs the reply through
parse_structured_response, and on any failure (transport, malformed JSON,
missing keys) returns that method's static fallback with generated=False.
Nothing here retries.

Methods:
  - analyze_after_feedback:   summary over the latest tendero feedback (persisted)
  - generate_previsit_brief:  preparation brief for an upcoming visit (persisted, unused)
  - generate_postvisit_review: review of a completed visit (persisted)
  - generate_trend_report:    network-wide trends over a lookback window (not persisted)
  - generate_prediction:      per-store risk outlook (persisted)
"""

import uuid
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

import structlog
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from analysis.parsing import parse_structured_response
from analysis.prompts import (
    FEEDBACK_SUMMARY_KEYS,
    POSTVISIT_KEYS,
    PREDICTION_KEYS,
    PREVISIT_KEYS,
    TREND_KEYS,
    build_feedback_summary_prompt,
    build_postvisit_prompt,
    build_prediction_prompt,
    build_previsit_prompt,
    build_quick_insight_prompt,
    build_trend_prompt,
    feedback_summary_fallback,
    postvisit_fallback,
    prediction_fallback,
    previsit_fallback,
    quick_insight_fallback,
    trend_fallback,
)
from analysis.provider import TextAnalysisProvider
from catalog.reader import Store, compute_visit_status, get_store, get_store_label
from core.config import get_settings
from core.errors import DataSourceError, NotFoundError, ProviderError, ValidationError, VisitNotCompleted
from db.models import Insight, StoreEvaluation, TenderoFeedback, Visit, VisitEvidence
from feedback.store import list_feedback
from visits.scheduler import get_visit

logger = structlog.get_logger()

MAX_FEEDBACK_WINDOW = 10
PREVISIT_FEEDBACK_LIMIT = 20
PREVISIT_FEEDBACK_DAYS = 180
PREVISIT_EVALUATION_LIMIT = 10
PREVISIT_VISIT_LIMIT = 5
POSTVISIT_BRIEF_DAYS = 7
PREDICTION_LOOKBACK_DAYS = 180
PREDICTION_RECORD_LIMIT = 100

TREND_PERIOD_DAYS = {
    "1_month": 30,
    "3_months": 90,
    "6_months": 180,
    "1_year": 365,
}


@dataclass
class AnalysisOutcome:
    """Result of one analysis invocation, generated or fallback."""

    analysis_type: str
    generated: bool
    store_id: int | None = None
    payload: dict[str, Any] | None = None
    reason: str | None = None
    insight_id: uuid.UUID | None = None
    input_refs: list[str] = field(default_factory=list)
    follow_up_required: bool | None = None

    def to_dict(self) -> dict[str, Any]:
        data = {
            "analysis_type": self.analysis_type,
            "generated": self.generated,
            "store_id": self.store_id,
            "analysis": self.payload,
            "reason": self.reason,
            "insight_id": str(self.insight_id) if self.insight_id else None,
            "input_refs": self.input_refs,
        }
        if self.follow_up_required is not None:
            data["follow_up_required"] = self.follow_up_required
        return data


@dataclass
class TrendReport:
    period: str
    sector: str | None
    window_start: datetime
    tendero_count: int
    evaluation_count: int
    by_category_type: dict[str, int]
    by_month: dict[str, int]
    generated: bool
    analysis: dict[str, Any]
    reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "period": self.period,
            "sector": self.sector,
            "window_start": self.window_start.isoformat(),
            "tendero_count": self.tendero_count,
            "evaluation_count": self.evaluation_count,
            "by_category_type": self.by_category_type,
            "by_month": self.by_month,
            "generated": self.generated,
            "analysis": self.analysis,
            "reason": self.reason,
        }


# ──────────────────────────────────────────────────────────────────────────
# Provider boundary
# ──────────────────────────────────────────────────────────────────────────


async def _request_structured(
    provider: TextAnalysisProvider,
    prompt: str,
    required_keys: tuple[str, ...],
    fallback: dict[str, Any],
    *,
    analysis_type: str,
    store_id: int | None,
) -> tuple[dict[str, Any], bool, str | None]:
    """One provider call. Returns (payload, generated, failure_reason)."""
    try:
        raw = await provider.generate(prompt)
        payload = parse_structured_response(raw, required_keys)
    except ProviderError as exc:
        logger.warning(
            "analysis.provider_failed",
            analysis_type=analysis_type,
            store_id=store_id,
            error=exc.message,
        )
        return fallback, False, exc.message
    except Exception as exc:
        logger.exception("analysis.provider_crashed", analysis_type=analysis_type, store_id=store_id)
        return fallback, False, f"provider error: {exc}"

    logger.info("analysis.generated", analysis_type=analysis_type, store_id=store_id)
    return payload, True, None


async def _persist_insight(db: AsyncSession, insight: Insight, also_mark_used: Insight | None = None) -> uuid.UUID | None:
    """Persist an insight. Failures are logged and swallowed."""
    try:
        db.add(insight)
        if also_mark_used is not None:
            also_mark_used.used = True
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.error(
            "analysis.persist_failed",
            analysis_type=insight.analysis_type,
            store_id=insight.store_id,
            error=str(exc),
        )
        return None
    return insight.insight_id


# ──────────────────────────────────────────────────────────────────────────
# Context serialization
# ──────────────────────────────────────────────────────────────────────────


def _feedback_dict(feedback: TenderoFeedback) -> dict[str, Any]:
    return {
        "id": str(feedback.feedback_id),
        "created_at": feedback.created_at,
        "collaborator_id": feedback.collaborator_id,
        "category": feedback.category,
        "type": feedback.feedback_type,
        "urgency": feedback.urgency,
        "title": feedback.title,
        "description": feedback.description,
        "status": feedback.status,
    }


def _evaluation_dict(evaluation: StoreEvaluation) -> dict[str, Any]:
    return {
        "id": str(evaluation.evaluation_id),
        "created_at": evaluation.created_at,
        "collaborator_id": evaluation.collaborator_id,
        "ratings": evaluation.ratings,
        "overall_score": evaluation.overall_score,
        "strengths": evaluation.strengths,
        "improvement_areas": evaluation.improvement_areas,
        "priority_recommendations": evaluation.priority_recommendations,
    }


def _visit_dict(visit: Visit) -> dict[str, Any]:
    return {
        "id": str(visit.visit_id),
        "visit_type": visit.visit_type,
        "scheduled_at": visit.scheduled_at,
        "started_at": visit.started_at,
        "completed_at": visit.completed_at,
        "duration_minutes": visit.duration_minutes,
        "notes": visit.notes,
    }


def _evidence_dict(evidence: VisitEvidence) -> dict[str, Any]:
    return {"kind": evidence.kind, "url": evidence.url, "description": evidence.description}


def _store_snapshot(store: Store | None, store_id: int, now: datetime) -> dict[str, Any]:
    if store is None:
        return {"id": store_id, "name": f"Tienda {store_id}"}
    freshness = compute_visit_status(store, now)
    return {
        "id": store.id,
        "name": store.name,
        "nps": store.nps,
        "fill_found_rate": store.fill_found_rate,
        "damage_rate": store.damage_rate,
        "out_of_stock": store.out_of_stock,
        "complaint_resolution_hours": store.complaint_resolution_hours,
        "days_since_visit": freshness.days_since_visit,
        "visit_status": freshness.visit_status,
    }


async def _lookup_store(db: AsyncSession, store_id: int) -> Store | None:
    try:
        return await get_store(db, store_id)
    except DataSourceError:
        logger.warning("analysis.catalog_unavailable", store_id=store_id)
        return None


def _after(refs_created: list[datetime]) -> datetime:
    # input_refs must strictly precede the insight
    created_at = datetime.utcnow()
    if refs_created:
        created_at = max(created_at, max(refs_created) + timedelta(microseconds=1))
    return created_at


# ──────────────────────────────────────────────────────────────────────────
# Feedback summary
# ──────────────────────────────────────────────────────────────────────────


async def analyze_after_feedback(
    db: AsyncSession,
    provider: TextAnalysisProvider,
    store_id: int,
    limit: int | None = None,
    now: datetime | None = None,
) -> AnalysisOutcome:
    """Summarize the latest tendero feedback for a store."""
    window = min(limit or get_settings().feedback_analysis_window, MAX_FEEDBACK_WINDOW)
    cutoff = now or datetime.utcnow()

    feedbacks = await list_feedback(db, store_id, "tendero", limit=window, until=cutoff)
    if not feedbacks:
        return AnalysisOutcome(
            analysis_type="feedback_summary",
            generated=False,
            store_id=store_id,
            reason="insufficient feedback",
        )

    store_name = await get_store_label(db, store_id)
    prompt = build_feedback_summary_prompt(store_name, [_feedback_dict(f) for f in feedbacks])
    payload, generated, reason = await _request_structured(
        provider,
        prompt,
        FEEDBACK_SUMMARY_KEYS,
        feedback_summary_fallback(len(feedbacks)),
        analysis_type="feedback_summary",
        store_id=store_id,
    )

    refs = [str(f.feedback_id) for f in feedbacks]
    insight = Insight(
        store_id=store_id,
        analysis_type="feedback_summary",
        input_refs=refs,
        result=payload,
        generated=generated,
        created_at=_after([f.created_at for f in feedbacks]),
    )
    insight_id = await _persist_insight(db, insight)
    return AnalysisOutcome(
        analysis_type="feedback_summary",
        generated=generated,
        store_id=store_id,
        payload=payload,
        reason=reason,
        insight_id=insight_id,
        input_refs=refs,
    )


async def generate_quick_insight(provider: TextAnalysisProvider, feedback: TenderoFeedback) -> str:
    """One-line insight for a single feedback record."""
    try:
        text = (await provider.generate(build_quick_insight_prompt(_feedback_dict(feedback)))).strip()
    except Exception as exc:
        logger.warning("analysis.quick_insight_failed", feedback_id=str(feedback.feedback_id), error=str(exc))
        return quick_insight_fallback(feedback.category)
    return text or quick_insight_fallback(feedback.category)


# ──────────────────────────────────────────────────────────────────────────
# Pre-visit brief
# ──────────────────────────────────────────────────────────────────────────


async def _completed_visits(
    db: AsyncSession,
    store_id: int,
    limit: int,
    before: datetime | None = None,
    exclude: uuid.UUID | None = None,
) -> list[Visit]:
    query = select(Visit).where(Visit.store_id == store_id, Visit.state == "completed")
    if before is not None:
        query = query.where(Visit.completed_at < before)
    if exclude is not None:
        query = query.where(Visit.visit_id != exclude)
    result = await db.execute(query.order_by(Visit.completed_at.desc()).limit(limit))
    return list(result.scalars().all())


async def generate_previsit_brief(
    db: AsyncSession,
    provider: TextAnalysisProvider,
    store_id: int,
    collaborator_id: str,
    visit_type: str = "routine",
    now: datetime | None = None,
) -> AnalysisOutcome:
    """Assemble store history and request a preparation brief for the collaborator."""
    now = now or datetime.utcnow()
    store = await _lookup_store(db, store_id)
    snapshot = _store_snapshot(store, store_id, now)

    tendero = await list_feedback(
        db,
        store_id,
        "tendero",
        limit=PREVISIT_FEEDBACK_LIMIT,
        since=now - timedelta(days=PREVISIT_FEEDBACK_DAYS),
        until=now,
    )
    evaluations = await list_feedback(db, store_id, "evaluation", limit=PREVISIT_EVALUATION_LIMIT, until=now)
    previous_visits = await _completed_visits(db, store_id, PREVISIT_VISIT_LIMIT)

    prompt = build_previsit_prompt(
        {
            "store": snapshot,
            "collaborator_id": collaborator_id,
            "visit_type": visit_type,
            "tendero_feedback": [_feedback_dict(f) for f in tendero],
            "evaluations": [_evaluation_dict(e) for e in evaluations],
            "previous_visits": [_visit_dict(v) for v in previous_visits],
        }
    )
    payload, generated, reason = await _request_structured(
        provider,
        prompt,
        PREVISIT_KEYS,
        previsit_fallback(snapshot["name"]),
        analysis_type="previsit",
        store_id=store_id,
    )

    refs = [str(f.feedback_id) for f in tendero] + [str(e.evaluation_id) for e in evaluations]
    insight = Insight(
        store_id=store_id,
        collaborator_id=collaborator_id,
        analysis_type="previsit",
        input_refs=refs,
        result=payload,
        generated=generated,
        used=False,
        created_at=_after([f.created_at for f in tendero] + [e.created_at for e in evaluations]),
    )
    insight_id = await _persist_insight(db, insight)
    return AnalysisOutcome(
        analysis_type="previsit",
        generated=generated,
        store_id=store_id,
        payload=payload,
        reason=reason,
        insight_id=insight_id,
        input_refs=refs,
    )


# ──────────────────────────────────────────────────────────────────────────
# Post-visit review
# ──────────────────────────────────────────────────────────────────────────


async def _latest_previsit_brief(db: AsyncSession, visit: Visit) -> Insight | None:
    window_start = visit.completed_at - timedelta(days=POSTVISIT_BRIEF_DAYS)
    result = await db.execute(
        select(Insight)
        .where(
            Insight.store_id == visit.store_id,
            Insight.collaborator_id == visit.collaborator_id,
            Insight.analysis_type == "previsit",
            Insight.created_at >= window_start,
            Insight.created_at <= visit.completed_at,
        )
        .order_by(Insight.created_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def generate_postvisit_review(
    db: AsyncSession,
    provider: TextAnalysisProvider,
    visit_id: Any,
) -> AnalysisOutcome:
    """Review a completed visit against its brief and the previous visit."""
    visit = await get_visit(db, visit_id)
    if visit.state != "completed":
        raise VisitNotCompleted(
            "Post-visit review requires a completed visit",
            {"visit_id": str(visit.visit_id), "state": visit.state},
        )

    store_name = await get_store_label(db, visit.store_id)
    visit_feedback = await list_feedback(
        db, visit.store_id, "tendero", limit=50, newest_first=False, visit_id=visit.visit_id
    )
    evaluations = await list_feedback(db, visit.store_id, "evaluation", limit=1, visit_id=visit.visit_id)
    evidence_result = await db.execute(
        select(VisitEvidence).where(VisitEvidence.visit_id == visit.visit_id).order_by(VisitEvidence.created_at)
    )
    evidence = list(evidence_result.scalars().all())
    brief = await _latest_previsit_brief(db, visit)
    previous = await _completed_visits(db, visit.store_id, 1, before=visit.completed_at, exclude=visit.visit_id)

    prompt = build_postvisit_prompt(
        {
            "store_name": store_name,
            "visit": _visit_dict(visit),
            "visit_feedback": [_feedback_dict(f) for f in visit_feedback],
            "evaluation": _evaluation_dict(evaluations[0]) if evaluations else None,
            "evidence": [_evidence_dict(e) for e in evidence],
            "previsit_brief": brief.result if brief else None,
            "previous_visit": _visit_dict(previous[0]) if previous else None,
        }
    )
    payload, generated, reason = await _request_structured(
        provider,
        prompt,
        POSTVISIT_KEYS,
        postvisit_fallback(store_name),
        analysis_type="postvisit",
        store_id=visit.store_id,
    )
    follow_up_required = str(payload.get("follow_up_level", "")).strip().lower() == "alto"

    refs = [str(f.feedback_id) for f in visit_feedback] + [str(e.evaluation_id) for e in evaluations]
    insight = Insight(
        store_id=visit.store_id,
        visit_id=visit.visit_id,
        collaborator_id=visit.collaborator_id,
        analysis_type="postvisit",
        input_refs=refs,
        result=payload,
        generated=generated,
        follow_up_required=follow_up_required,
        created_at=_after([f.created_at for f in visit_feedback] + [e.created_at for e in evaluations]),
    )
    insight_id = await _persist_insight(db, insight, also_mark_used=brief)
    return AnalysisOutcome(
        analysis_type="postvisit",
        generated=generated,
        store_id=visit.store_id,
        payload=payload,
        reason=reason,
        insight_id=insight_id,
        input_refs=refs,
        follow_up_required=follow_up_required,
    )


# ──────────────────────────────────────────────────────────────────────────
# Trend report
# ──────────────────────────────────────────────────────────────────────────


def tally_feedback(
    tendero: list[TenderoFeedback],
    evaluations: list[StoreEvaluation],
) -> tuple[dict[str, int], dict[str, int]]:
    """Frequency by (category, type) pair and by calendar month."""
    by_pair = Counter(f"{f.category}/{f.feedback_type}" for f in tendero)
    by_month = Counter(f.created_at.strftime("%Y-%m") for f in tendero)
    by_month.update(e.created_at.strftime("%Y-%m") for e in evaluations)
    return dict(by_pair.most_common()), dict(sorted(by_month.items()))


async def generate_trend_report(
    db: AsyncSession,
    provider: TextAnalysisProvider,
    period: str = "3_months",
    sector: str | None = None,
    now: datetime | None = None,
) -> TrendReport:
    """Network-wide trend analysis over a lookback window. Read-only."""
    if period not in TREND_PERIOD_DAYS:
        raise ValidationError(f"Invalid period '{period}'", {"allowed_periods": list(TREND_PERIOD_DAYS)})
    now = now or datetime.utcnow()
    window_start = now - timedelta(days=TREND_PERIOD_DAYS[period])

    tendero_result = await db.execute(
        select(TenderoFeedback).where(TenderoFeedback.created_at >= window_start, TenderoFeedback.created_at <= now)
    )
    tendero = list(tendero_result.scalars().all())
    evaluation_result = await db.execute(
        select(StoreEvaluation).where(StoreEvaluation.created_at >= window_start, StoreEvaluation.created_at <= now)
    )
    evaluations = list(evaluation_result.scalars().all())

    by_pair, by_month = tally_feedback(tendero, evaluations)
    prompt = build_trend_prompt(
        {
            "period": period,
            "sector": sector,
            "tendero_count": len(tendero),
            "evaluation_count": len(evaluations),
            "by_category_type": by_pair,
            "by_month": by_month,
        }
    )
    payload, generated, reason = await _request_structured(
        provider,
        prompt,
        TREND_KEYS,
        trend_fallback(period),
        analysis_type="trend",
        store_id=None,
    )
    return TrendReport(
        period=period,
        sector=sector,
        window_start=window_start,
        tendero_count=len(tendero),
        evaluation_count=len(evaluations),
        by_category_type=by_pair,
        by_month=by_month,
        generated=generated,
        analysis=payload,
        reason=reason,
    )


# ──────────────────────────────────────────────────────────────────────────
# Prediction
# ──────────────────────────────────────────────────────────────────────────


async def generate_prediction(
    db: AsyncSession,
    provider: TextAnalysisProvider,
    store_id: int,
    now: datetime | None = None,
) -> AnalysisOutcome:
    """Per-store risk outlook from six months of feedback plus current metrics."""
    now = now or datetime.utcnow()
    since = now - timedelta(days=PREDICTION_LOOKBACK_DAYS)
    store = await _lookup_store(db, store_id)
    snapshot = _store_snapshot(store, store_id, now)

    tendero = await list_feedback(db, store_id, "tendero", limit=PREDICTION_RECORD_LIMIT, since=since, until=now)
    evaluations = await list_feedback(
        db, store_id, "evaluation", limit=PREDICTION_RECORD_LIMIT, since=since, until=now
    )

    prompt = build_prediction_prompt(
        {
            "store": snapshot,
            "tendero_feedback": [_feedback_dict(f) for f in tendero],
            "evaluations": [_evaluation_dict(e) for e in evaluations],
        }
    )
    payload, generated, reason = await _request_structured(
        provider,
        prompt,
        PREDICTION_KEYS,
        prediction_fallback(snapshot["name"]),
        analysis_type="prediction",
        store_id=store_id,
    )

    refs = [str(f.feedback_id) for f in tendero] + [str(e.evaluation_id) for e in evaluations]
    insight = Insight(
        store_id=store_id,
        analysis_type="prediction",
        input_refs=refs,
        result=payload,
        generated=generated,
        created_at=_after([f.created_at for f in tendero] + [e.created_at for e in evaluations]),
    )
    insight_id = await _persist_insight(db, insight)
    return AnalysisOutcome(
        analysis_type="prediction",
        generated=generated,
        store_id=store_id,
        payload=payload,
        reason=reason,
        insight_id=insight_id,
        input_refs=refs,
    )


# ──────────────────────────────────────────────────────────────────────────
# Insight reads
# ──────────────────────────────────────────────────────────────────────────


async def list_insights(
    db: AsyncSession,
    store_id: int,
    analysis_type: str | None = None,
    limit: int = 20,
) -> list[Insight]:
    query = select(Insight).where(Insight.store_id == store_id)
    if analysis_type:
        query = query.where(Insight.analysis_type == analysis_type)
    result = await db.execute(query.order_by(Insight.created_at.desc()).limit(limit))
    return list(result.scalars().all())


async def mark_insight_used(db: AsyncSession, insight_id: Any) -> Insight:
    try:
        key = insight_id if isinstance(insight_id, uuid.UUID) else uuid.UUID(str(insight_id))
    except ValueError:
        raise NotFoundError(f"Insight {insight_id} not found", {"insight_id": str(insight_id)}) from None
    insight = await db.get(Insight, key)
    if insight is None:
        raise NotFoundError(f"Insight {insight_id} not found", {"insight_id": str(insight_id)})
    insight.used = True
    await db.commit()
    await db.refresh(insight)
    return insight
