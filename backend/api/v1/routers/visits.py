"""
Visits Router — Scheduling, confirmation, start/finish, and agenda.
"""

from datetime import date, datetime, timedelta
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from api.deps import get_current_user, get_db
from api.schemas import RequestModel, envelope
from visits.scheduler import (
    cancel_visit,
    confirm_visit,
    finish_visit,
    get_agenda,
    get_visit,
    record_evidence,
    schedule_visit,
    start_visit,
)

router = APIRouter(prefix="/api/v1", tags=["visits"], dependencies=[Depends(get_current_user)])


# ─── Schemas ────────────────────────────────────────────────────────────────


class ScheduleVisitRequest(RequestModel):
    store_id: int
    collaborator_id: str = Field(..., min_length=1, max_length=64)
    advisor_id: str | None = Field(None, max_length=64)
    scheduled_at: datetime
    visit_type: str = "routine"
    notes: str = ""


class ConfirmVisitRequest(RequestModel):
    user_id: str | None = None
    role: str


class Location(BaseModel):
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)


class StartVisitRequest(RequestModel):
    arrival_location: Location | None = None


class FinishVisitRequest(RequestModel):
    duration_minutes: int | None = Field(None, ge=0)
    notes: str | None = None


class CancelVisitRequest(RequestModel):
    reason: str | None = None


class EvidenceRequest(RequestModel):
    kind: str = "photo"
    url: str | None = None
    description: str = ""


class VisitResponse(BaseModel):
    visit_id: UUID
    store_id: int
    collaborator_id: str
    advisor_id: str | None
    scheduled_at: datetime
    visit_type: str
    state: str
    notes: str
    collaborator_confirmed: bool
    collaborator_confirmed_at: datetime | None
    advisor_confirmed: bool | None
    advisor_confirmed_at: datetime | None
    started_at: datetime | None
    arrival_location: dict | None
    completed_at: datetime | None
    duration_minutes: int | None
    cancelled_at: datetime | None
    cancellation_reason: str | None
    created_at: datetime

    model_config = {"from_attributes": True}


class EvidenceResponse(BaseModel):
    evidence_id: UUID
    visit_id: UUID
    store_id: int
    kind: str
    url: str | None
    description: str
    captured_by: str | None
    created_at: datetime

    model_config = {"from_attributes": True}


def _visit(visit) -> dict:
    return VisitResponse.model_validate(visit).model_dump(mode="json")


# ─── Endpoints ──────────────────────────────────────────────────────────────


@router.post("/visits", status_code=201)
async def create_visit(body: ScheduleVisitRequest, db: AsyncSession = Depends(get_db)):
    """Schedule a visit to a store."""
    visit = await schedule_visit(
        db,
        store_id=body.store_id,
        collaborator_id=body.collaborator_id,
        advisor_id=body.advisor_id,
        scheduled_at=body.scheduled_at,
        visit_type=body.visit_type,
        notes=body.notes,
    )
    return envelope(_visit(visit))


@router.get("/visits/{visit_id}")
async def read_visit(visit_id: str, db: AsyncSession = Depends(get_db)):
    return envelope(_visit(await get_visit(db, visit_id)))


@router.put("/visits/{visit_id}/confirm")
async def confirm(visit_id: str, body: ConfirmVisitRequest, db: AsyncSession = Depends(get_db)):
    """Confirm attendance as collaborator or advisor."""
    result = await confirm_visit(db, visit_id, body.role)
    return envelope(_visit(result.visit), all_confirmed=result.all_confirmed)


@router.post("/visits/{visit_id}/start")
async def start(
    visit_id: str,
    body: StartVisitRequest | None = None,
    db: AsyncSession = Depends(get_db),
):
    location = body.arrival_location.model_dump() if body and body.arrival_location else None
    visit = await start_visit(db, visit_id, arrival_location=location)
    return envelope(_visit(visit))


@router.post("/visits/{visit_id}/finish")
async def finish(
    visit_id: str,
    body: FinishVisitRequest | None = None,
    db: AsyncSession = Depends(get_db),
):
    body = body or FinishVisitRequest()
    visit = await finish_visit(db, visit_id, duration_minutes=body.duration_minutes, notes=body.notes)
    return envelope(_visit(visit))


@router.post("/visits/{visit_id}/cancel")
async def cancel(
    visit_id: str,
    body: CancelVisitRequest | None = None,
    db: AsyncSession = Depends(get_db),
):
    visit = await cancel_visit(db, visit_id, reason=body.reason if body else None)
    return envelope(_visit(visit))


@router.post("/visits/{visit_id}/evidence", status_code=201)
async def add_evidence(
    visit_id: str,
    body: EvidenceRequest,
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(get_current_user),
):
    evidence = await record_evidence(
        db,
        visit_id,
        kind=body.kind,
        url=body.url,
        description=body.description,
        captured_by=user.get("sub"),
    )
    return envelope(EvidenceResponse.model_validate(evidence).model_dump(mode="json"))


@router.get("/agenda/{user_id}")
async def agenda(
    user_id: str,
    from_date: date | None = Query(None, alias="from"),
    to_date: date | None = Query(None, alias="to"),
    db: AsyncSession = Depends(get_db),
):
    """Visits for a collaborator or advisor, ascending by scheduled time."""
    from_date = from_date or date.today()
    to_date = to_date or from_date + timedelta(days=7)
    entries = await get_agenda(db, user_id, from_date, to_date)
    data = [
        {
            **_visit(entry.visit),
            "store": {
                "name": entry.store_name,
                "address": entry.store_address,
                "hours": entry.store_hours,
            },
        }
        for entry in entries
    ]
    return envelope(data, count=len(data), period={"from": from_date.isoformat(), "to": to_date.isoformat()})
