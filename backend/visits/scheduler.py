"""
Visit Scheduler — Lifecycle of store visits.

State machine:
    scheduled ──confirm(all parties)──▶ confirmed
    scheduled | confirmed ──start──▶ in_progress ──finish──▶ completed
    scheduled | confirmed ──cancel──▶ cancelled

completed and cancelled are terminal. start() is allowed from any
non-terminal state unless require_confirmation_before_start is set.

Completing a visit writes the store's last-visit marker in a second,
separate commit. A crash between the two leaves the visit completed and the
store's freshness marker stale; nothing reconciles it automatically.
"""

import uuid
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Any

import structlog
from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from catalog.reader import Store, get_store, list_stores
from core.config import get_settings
from core.errors import (
    DataSourceError,
    InvalidVisitTransition,
    SchedulingConflict,
    StoreNotFound,
    ValidationError,
    VisitAlreadyCompleted,
    VisitNotFound,
)
from db.models import StoreVisitMarker, Visit, VisitEvidence

logger = structlog.get_logger()

CONFIRMATION_ROLES = ("collaborator", "advisor")
CANCELLABLE_STATES = ("scheduled", "confirmed")
EVIDENCE_KINDS = ("photo", "video", "document", "note")


@dataclass
class ConfirmationResult:
    visit: Visit
    all_confirmed: bool


@dataclass
class AgendaEntry:
    visit: Visit
    store_name: str
    store_address: str | None
    store_hours: str | None


# ──────────────────────────────────────────────────────────────────────────
# Lookups
# ──────────────────────────────────────────────────────────────────────────


def _coerce_visit_id(visit_id: Any) -> uuid.UUID:
    if isinstance(visit_id, uuid.UUID):
        return visit_id
    try:
        return uuid.UUID(str(visit_id))
    except ValueError:
        raise VisitNotFound(visit_id) from None


async def get_visit(db: AsyncSession, visit_id: Any) -> Visit:
    visit = await db.get(Visit, _coerce_visit_id(visit_id))
    if visit is None:
        raise VisitNotFound(visit_id)
    return visit


async def find_day_conflict(db: AsyncSession, store_id: int, day: date) -> Visit | None:
    """Return a non-cancelled visit already booked for this store on this calendar day."""
    result = await db.execute(
        select(Visit)
        .where(
            Visit.store_id == store_id,
            Visit.scheduled_date == day,
            Visit.state != "cancelled",
        )
        .limit(1)
    )
    return result.scalar_one_or_none()


# ──────────────────────────────────────────────────────────────────────────
# Transitions
# ──────────────────────────────────────────────────────────────────────────


async def schedule_visit(
    db: AsyncSession,
    *,
    store_id: int,
    collaborator_id: str,
    scheduled_at: datetime,
    advisor_id: str | None = None,
    visit_type: str = "routine",
    notes: str = "",
) -> Visit:
    """Create a visit in state ``scheduled`` after catalog and same-day conflict checks."""
    if await get_store(db, store_id) is None:
        raise StoreNotFound(store_id)

    if scheduled_at.tzinfo is not None:
        # Keep the caller's wall-clock time; conflicts are by local calendar date
        scheduled_at = scheduled_at.replace(tzinfo=None)
    day = scheduled_at.date()
    existing = await find_day_conflict(db, store_id, day)
    if existing is not None:
        raise SchedulingConflict(
            f"Store {store_id} already has a visit on {day.isoformat()}",
            {"store_id": store_id, "date": day.isoformat(), "visit_id": str(existing.visit_id)},
        )

    visit = Visit(
        store_id=store_id,
        collaborator_id=collaborator_id,
        advisor_id=advisor_id,
        scheduled_at=scheduled_at,
        scheduled_date=day,
        visit_type=visit_type,
        state="scheduled",
        notes=notes or "",
        collaborator_confirmed=False,
        advisor_confirmed=False if advisor_id else None,
    )
    db.add(visit)
    try:
        await db.commit()
    except IntegrityError:
        # Concurrent booking won the partial unique index on (store_id, scheduled_date)
        await db.rollback()
        raise SchedulingConflict(
            f"Store {store_id} already has a visit on {day.isoformat()}",
            {"store_id": store_id, "date": day.isoformat()},
        )
    await db.refresh(visit)

    logger.info(
        "visit.scheduled",
        visit_id=str(visit.visit_id),
        store_id=store_id,
        collaborator_id=collaborator_id,
        advisor_id=advisor_id,
        scheduled_at=scheduled_at.isoformat(),
    )
    return visit


def _all_required_confirmed(visit: Visit) -> bool:
    if not visit.collaborator_confirmed:
        return False
    if visit.requires_advisor:
        return bool(visit.advisor_confirmed)
    return True


async def confirm_visit(
    db: AsyncSession,
    visit_id: Any,
    role: str,
    now: datetime | None = None,
) -> ConfirmationResult:
    """Record one party's confirmation; transition to ``confirmed`` once everyone required has confirmed."""
    if role not in CONFIRMATION_ROLES:
        raise ValidationError(
            f"Invalid role '{role}'",
            {"allowed_roles": list(CONFIRMATION_ROLES)},
        )
    visit = await get_visit(db, visit_id)
    if visit.is_terminal:
        raise InvalidVisitTransition(
            f"Cannot confirm a {visit.state} visit",
            {"visit_id": str(visit.visit_id), "state": visit.state},
        )
    if role == "advisor" and not visit.requires_advisor:
        raise ValidationError(
            "Visit has no advisor assigned",
            {"visit_id": str(visit.visit_id)},
        )

    now = now or datetime.utcnow()
    if role == "collaborator":
        visit.collaborator_confirmed = True
        visit.collaborator_confirmed_at = now
    else:
        visit.advisor_confirmed = True
        visit.advisor_confirmed_at = now

    all_confirmed = _all_required_confirmed(visit)
    if all_confirmed and visit.state == "scheduled":
        visit.state = "confirmed"

    await db.commit()
    await db.refresh(visit)
    logger.info(
        "visit.confirmed",
        visit_id=str(visit.visit_id),
        role=role,
        all_confirmed=all_confirmed,
        state=visit.state,
    )
    return ConfirmationResult(visit=visit, all_confirmed=all_confirmed)


async def start_visit(
    db: AsyncSession,
    visit_id: Any,
    arrival_location: dict[str, float] | None = None,
    now: datetime | None = None,
    require_confirmation: bool | None = None,
) -> Visit:
    """Move a visit to ``in_progress``, stamping start time and arrival location."""
    if require_confirmation is None:
        require_confirmation = get_settings().require_confirmation_before_start

    visit = await get_visit(db, visit_id)
    if visit.is_terminal:
        raise InvalidVisitTransition(
            f"Cannot start a {visit.state} visit",
            {"visit_id": str(visit.visit_id), "state": visit.state},
        )
    if require_confirmation and visit.state != "confirmed":
        raise InvalidVisitTransition(
            "Visit must be confirmed before it can start",
            {"visit_id": str(visit.visit_id), "state": visit.state},
        )

    visit.state = "in_progress"
    visit.started_at = now or datetime.utcnow()
    if arrival_location is not None:
        visit.arrival_location = arrival_location

    await db.commit()
    await db.refresh(visit)
    logger.info("visit.started", visit_id=str(visit.visit_id), store_id=visit.store_id)
    return visit


async def finish_visit(
    db: AsyncSession,
    visit_id: Any,
    duration_minutes: int | None = None,
    notes: str | None = None,
    now: datetime | None = None,
) -> Visit:
    """Complete a visit and overwrite the store's last-visit marker with the completion time."""
    visit = await get_visit(db, visit_id)
    if visit.state == "completed":
        raise VisitAlreadyCompleted(
            "Visit is already completed",
            {"visit_id": str(visit.visit_id), "completed_at": visit.completed_at.isoformat()},
        )
    if visit.state == "cancelled":
        raise InvalidVisitTransition(
            "Cannot finish a cancelled visit",
            {"visit_id": str(visit.visit_id), "state": visit.state},
        )

    completed_at = now or datetime.utcnow()
    if duration_minutes is None and visit.started_at is not None:
        duration_minutes = max(0, int((completed_at - visit.started_at).total_seconds() // 60))

    visit.state = "completed"
    visit.completed_at = completed_at
    visit.duration_minutes = duration_minutes
    if notes:
        visit.notes = f"{visit.notes}\n{notes}".strip() if visit.notes else notes
    await db.commit()

    await _mark_store_visited(db, visit.store_id, completed_at, visit.visit_id)
    await db.refresh(visit)

    logger.info(
        "visit.completed",
        visit_id=str(visit.visit_id),
        store_id=visit.store_id,
        duration_minutes=duration_minutes,
    )
    return visit


async def _mark_store_visited(
    db: AsyncSession,
    store_id: int,
    visited_at: datetime,
    visit_id: uuid.UUID,
) -> None:
    marker = await db.get(StoreVisitMarker, store_id)
    if marker is None:
        db.add(StoreVisitMarker(store_id=store_id, last_visit_at=visited_at, last_visit_id=visit_id))
    else:
        marker.last_visit_at = visited_at
        marker.last_visit_id = visit_id
        marker.updated_at = datetime.utcnow()
    await db.commit()


async def cancel_visit(
    db: AsyncSession,
    visit_id: Any,
    reason: str | None = None,
    now: datetime | None = None,
) -> Visit:
    visit = await get_visit(db, visit_id)
    if visit.state not in CANCELLABLE_STATES:
        raise InvalidVisitTransition(
            f"Cannot cancel a {visit.state} visit",
            {"visit_id": str(visit.visit_id), "state": visit.state},
        )
    visit.state = "cancelled"
    visit.cancelled_at = now or datetime.utcnow()
    visit.cancellation_reason = reason
    await db.commit()
    await db.refresh(visit)
    logger.info("visit.cancelled", visit_id=str(visit.visit_id), reason=reason)
    return visit


# ──────────────────────────────────────────────────────────────────────────
# Evidence
# ──────────────────────────────────────────────────────────────────────────


async def record_evidence(
    db: AsyncSession,
    visit_id: Any,
    *,
    kind: str = "photo",
    url: str | None = None,
    description: str = "",
    captured_by: str | None = None,
) -> VisitEvidence:
    if kind not in EVIDENCE_KINDS:
        raise ValidationError(f"Invalid evidence kind '{kind}'", {"allowed_kinds": list(EVIDENCE_KINDS)})
    visit = await get_visit(db, visit_id)
    evidence = VisitEvidence(
        visit_id=visit.visit_id,
        store_id=visit.store_id,
        kind=kind,
        url=url,
        description=description or "",
        captured_by=captured_by,
    )
    db.add(evidence)
    await db.commit()
    await db.refresh(evidence)
    return evidence


# ──────────────────────────────────────────────────────────────────────────
# Agenda
# ──────────────────────────────────────────────────────────────────────────


async def get_agenda(
    db: AsyncSession,
    user_id: str,
    from_date: date,
    to_date: date,
) -> list[AgendaEntry]:
    """Visits where the user is collaborator or advisor, scheduled within [from_date, to_date]."""
    if to_date < from_date:
        raise ValidationError(
            "'to' must not be earlier than 'from'",
            {"from": from_date.isoformat(), "to": to_date.isoformat()},
        )
    window_start = datetime.combine(from_date, time.min)
    window_end = datetime.combine(to_date + timedelta(days=1), time.min)

    result = await db.execute(
        select(Visit)
        .where(
            or_(Visit.collaborator_id == user_id, Visit.advisor_id == user_id),
            Visit.scheduled_at >= window_start,
            Visit.scheduled_at < window_end,
        )
        .order_by(Visit.scheduled_at.asc())
    )
    visits = result.scalars().all()
    if not visits:
        return []

    # Store snapshot taken at query time, never persisted
    stores: dict[int, Store] = {}
    try:
        stores = {s.id: s for s in await list_stores(db)}
    except DataSourceError as exc:
        logger.warning("agenda.catalog_unavailable", user_id=user_id, error=str(exc))

    entries = []
    for visit in visits:
        store = stores.get(visit.store_id)
        entries.append(
            AgendaEntry(
                visit=visit,
                store_name=store.name if store else f"Tienda {visit.store_id}",
                store_address=store.address if store else None,
                store_hours=store.opening_hours if store else None,
            )
        )
    return entries
