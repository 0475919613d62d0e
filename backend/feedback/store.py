"""
Feedback Store — Append-only capture of field feedback.

Two kinds:
  - tendero:    complaints/suggestions from the store owner toward the company
  - evaluation: a collaborator's structured assessment of the store

Records are never mutated after creation, except that tendero feedback can
be resolved (resolution timestamp + notes).
"""

import uuid
from datetime import datetime
from typing import Any

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from core.errors import NotFoundError, ValidationError
from db.models import StoreEvaluation, TenderoFeedback

logger = structlog.get_logger()

FEEDBACK_KINDS = ("tendero", "evaluation")

TENDERO_REQUIRED_FIELDS = (
    "store_id",
    "collaborator_id",
    "category",
    "type",
    "urgency",
    "title",
    "description",
)
EVALUATION_REQUIRED_FIELDS = ("store_id", "collaborator_id")

URGENCY_ALIASES = {
    "low": "low",
    "baja": "low",
    "medium": "medium",
    "media": "medium",
    "high": "high",
    "alta": "high",
    "critical": "critical",
    "critica": "critical",
    "crítica": "critical",
}
RESOLUTION_URGENCIES = {"high", "critical"}

EVALUATION_ASPECTS = (
    "cleanliness",
    "fixtures",
    "inventory",
    "customer_service",
    "organization",
)


def _missing(fields: dict[str, Any], required: tuple[str, ...]) -> list[str]:
    missing = []
    for name in required:
        value = fields.get(name)
        if value is None or (isinstance(value, str) and not value.strip()):
            missing.append(name)
    return missing


def normalize_urgency(value: str) -> str:
    urgency = URGENCY_ALIASES.get(str(value).strip().lower())
    if urgency is None:
        raise ValidationError(
            f"Invalid urgency '{value}'",
            {"allowed_urgencies": sorted(set(URGENCY_ALIASES.values()))},
        )
    return urgency


def requires_resolution(urgency: str) -> bool:
    return urgency in RESOLUTION_URGENCIES


def _optional_uuid(value: Any, field_name: str) -> uuid.UUID | None:
    if value in (None, ""):
        return None
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except ValueError:
        raise ValidationError(f"Invalid {field_name}", {field_name: str(value)}) from None


def _store_id(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError("Invalid store_id", {"store_id": str(value)}) from None


# ──────────────────────────────────────────────────────────────────────────
# Writes
# ──────────────────────────────────────────────────────────────────────────


async def record_tendero_feedback(db: AsyncSession, fields: dict[str, Any]) -> TenderoFeedback:
    """Validate and append a tendero→company feedback record."""
    missing = _missing(fields, TENDERO_REQUIRED_FIELDS)
    if missing:
        raise ValidationError(
            f"Missing required fields: {', '.join(missing)}",
            {"missing_fields": missing},
        )

    urgency = normalize_urgency(fields["urgency"])
    feedback = TenderoFeedback(
        visit_id=_optional_uuid(fields.get("visit_id"), "visit_id"),
        store_id=_store_id(fields["store_id"]),
        collaborator_id=str(fields["collaborator_id"]),
        category=fields["category"],
        feedback_type=fields["type"],
        urgency=urgency,
        title=fields["title"],
        description=fields["description"],
        status="open",
        resolution_required=requires_resolution(urgency),
        created_at=fields.get("created_at") or datetime.utcnow(),
    )
    db.add(feedback)
    await db.commit()
    await db.refresh(feedback)

    logger.info(
        "feedback.tendero_recorded",
        feedback_id=str(feedback.feedback_id),
        store_id=feedback.store_id,
        urgency=urgency,
        resolution_required=feedback.resolution_required,
    )
    return feedback


def _default_ratings() -> dict[str, dict[str, Any]]:
    return {aspect: {"score": 0, "notes": ""} for aspect in EVALUATION_ASPECTS}


def _merge_ratings(raw: dict[str, Any] | None) -> dict[str, dict[str, Any]]:
    ratings = _default_ratings()
    for aspect, value in (raw or {}).items():
        if aspect not in ratings:
            continue
        if isinstance(value, dict):
            ratings[aspect]["score"] = value.get("score", 0) or 0
            ratings[aspect]["notes"] = value.get("notes", "") or ""
        else:
            ratings[aspect]["score"] = value or 0
    return ratings


def _overall_score(ratings: dict[str, dict[str, Any]]) -> float:
    scores = []
    for rating in ratings.values():
        try:
            scores.append(float(rating["score"]))
        except (TypeError, ValueError):
            scores.append(0.0)
    return round(sum(scores) / len(scores), 2) if scores else 0.0


async def record_store_evaluation(db: AsyncSession, fields: dict[str, Any]) -> StoreEvaluation:
    """Append a collaborator→store evaluation. Omitted aspects are zero-filled."""
    missing = _missing(fields, EVALUATION_REQUIRED_FIELDS)
    if missing:
        raise ValidationError(
            f"Missing required fields: {', '.join(missing)}",
            {"missing_fields": missing},
        )

    ratings = _merge_ratings(fields.get("ratings"))
    evaluation = StoreEvaluation(
        visit_id=_optional_uuid(fields.get("visit_id"), "visit_id"),
        store_id=_store_id(fields["store_id"]),
        collaborator_id=str(fields["collaborator_id"]),
        ratings=ratings,
        overall_score=_overall_score(ratings),
        strengths=list(fields.get("strengths") or []),
        improvement_areas=list(fields.get("improvement_areas") or []),
        priority_recommendations=list(fields.get("priority_recommendations") or []),
        comments=fields.get("comments") or "",
        created_at=fields.get("created_at") or datetime.utcnow(),
    )
    db.add(evaluation)
    await db.commit()
    await db.refresh(evaluation)

    logger.info(
        "feedback.evaluation_recorded",
        evaluation_id=str(evaluation.evaluation_id),
        store_id=evaluation.store_id,
        overall_score=evaluation.overall_score,
    )
    return evaluation


async def resolve_feedback(
    db: AsyncSession,
    feedback_id: Any,
    notes: str | None = None,
    now: datetime | None = None,
) -> TenderoFeedback:
    feedback = await db.get(TenderoFeedback, _optional_uuid(feedback_id, "feedback_id"))
    if feedback is None:
        raise NotFoundError(f"Feedback {feedback_id} not found", {"feedback_id": str(feedback_id)})
    feedback.status = "resolved"
    feedback.resolved_at = now or datetime.utcnow()
    feedback.resolution_notes = notes
    await db.commit()
    await db.refresh(feedback)
    logger.info("feedback.resolved", feedback_id=str(feedback.feedback_id))
    return feedback


# ──────────────────────────────────────────────────────────────────────────
# Reads
# ──────────────────────────────────────────────────────────────────────────


async def list_feedback(
    db: AsyncSession,
    store_id: int,
    kind: str = "tendero",
    limit: int = 10,
    newest_first: bool = True,
    since: datetime | None = None,
    until: datetime | None = None,
    visit_id: uuid.UUID | None = None,
) -> list[TenderoFeedback] | list[StoreEvaluation]:
    """Most recent ``limit`` records of one kind for a store."""
    if kind not in FEEDBACK_KINDS:
        raise ValidationError(f"Invalid feedback kind '{kind}'", {"allowed_kinds": list(FEEDBACK_KINDS)})
    model = TenderoFeedback if kind == "tendero" else StoreEvaluation

    query = select(model).where(model.store_id == store_id)
    if since is not None:
        query = query.where(model.created_at >= since)
    if until is not None:
        query = query.where(model.created_at <= until)
    if visit_id is not None:
        query = query.where(model.visit_id == visit_id)
    order = model.created_at.desc() if newest_first else model.created_at.asc()
    query = query.order_by(order).limit(limit)

    result = await db.execute(query)
    return list(result.scalars().all())
