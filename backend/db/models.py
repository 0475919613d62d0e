"""
Dimeloc Database Models

8 tables for the field-visit intelligence platform.

Tables:
  Catalog (1-2):
  1. catalog_documents    - The single GeoJSON FeatureCollection of points of sale
  2. store_visit_markers  - Per-store "last visited" marker (store id -> timestamp)

  Identity (3):
  3. users                - Collaborators, advisors and admins that can log in

  Field Work (4-5):
  4. visits               - Scheduled / in-progress / completed store visits
  5. visit_evidence       - Photos and other artifacts captured during a visit

  Feedback (6-7):
  6. tendero_feedback     - Store owner complaints/suggestions toward the company
  7. store_evaluations    - Collaborator assessments of a store's condition

  Analysis (8):
  8. insights             - Persisted Text Analysis Provider results

Visits, feedback and insights reference stores by integer id only. The
catalog document is the authority for store data.
"""

import uuid
from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
    text,
    types,
)
from sqlalchemy.dialects.postgresql import UUID as PG_UUID


class GUID(TypeDecorator):
    """Platform-independent UUID type.

    Uses PostgreSQL UUID when available, stores as CHAR(36) on SQLite.
    """

    impl = types.String(36)
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(PG_UUID(as_uuid=True))
        return dialect.type_descriptor(types.String(36))

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        if dialect.name == "postgresql":
            return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))
        return str(value) if isinstance(value, uuid.UUID) else value

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        if isinstance(value, uuid.UUID):
            return value
        return uuid.UUID(str(value))


from sqlalchemy.orm import relationship

from db.session import Base

VISIT_STATES = ("scheduled", "confirmed", "in_progress", "completed", "cancelled")
URGENCY_LEVELS = ("low", "medium", "high", "critical")
ANALYSIS_TYPES = ("previsit", "postvisit", "trend", "prediction", "feedback_summary")


def _one_of(column: str, values: tuple[str, ...]) -> str:
    return f"{column} IN (" + ", ".join(f"'{v}'" for v in values) + ")"


# ─── 1. Catalog Documents ──────────────────────────────────────────────────


class CatalogDocument(Base):
    __tablename__ = "catalog_documents"

    document_id = Column(Integer, primary_key=True, autoincrement=True)
    document = Column(JSON, nullable=False)
    loaded_at = Column(DateTime, nullable=False, default=datetime.utcnow)


# ─── 2. Store Visit Markers ────────────────────────────────────────────────


class StoreVisitMarker(Base):
    __tablename__ = "store_visit_markers"

    store_id = Column(Integer, primary_key=True, autoincrement=False)
    last_visit_at = Column(DateTime, nullable=False)
    last_visit_id = Column(GUID())
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)


# ─── 3. Users ──────────────────────────────────────────────────────────────


class User(Base):
    __tablename__ = "users"

    user_id = Column(String(64), primary_key=True)
    email = Column(String(255), nullable=False, unique=True)
    name = Column(String(255), nullable=False)
    role = Column(String(20), nullable=False, default="collaborator")
    password_hash = Column(String(255), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        CheckConstraint("role IN ('collaborator', 'advisor', 'admin')", name="ck_user_role"),
    )


# ─── 4. Visits ─────────────────────────────────────────────────────────────


class Visit(Base):
    __tablename__ = "visits"

    visit_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    store_id = Column(Integer, nullable=False)
    collaborator_id = Column(String(64), nullable=False)
    advisor_id = Column(String(64))
    scheduled_at = Column(DateTime, nullable=False)
    scheduled_date = Column(Date, nullable=False)
    visit_type = Column(String(50), nullable=False, default="routine")
    state = Column(String(20), nullable=False, default="scheduled")
    notes = Column(Text, nullable=False, default="")

    collaborator_confirmed = Column(Boolean, nullable=False, default=False)
    collaborator_confirmed_at = Column(DateTime)
    # NULL when no advisor is assigned (confirmation not applicable)
    advisor_confirmed = Column(Boolean)
    advisor_confirmed_at = Column(DateTime)

    started_at = Column(DateTime)
    arrival_location = Column(JSON)
    completed_at = Column(DateTime)
    duration_minutes = Column(Integer)
    cancelled_at = Column(DateTime)
    cancellation_reason = Column(Text)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("ix_visits_store_scheduled", "store_id", "scheduled_at"),
        Index("ix_visits_collaborator", "collaborator_id", "scheduled_at"),
        Index("ix_visits_advisor", "advisor_id", "scheduled_at"),
        # One active visit per store per calendar day
        Index(
            "uq_visits_store_day_active",
            "store_id",
            "scheduled_date",
            unique=True,
            postgresql_where=text("state <> 'cancelled'"),
            sqlite_where=text("state <> 'cancelled'"),
        ),
        CheckConstraint(
            _one_of("state", VISIT_STATES),
            name="ck_visit_state",
        ),
    )

    evidence = relationship("VisitEvidence", back_populates="visit", cascade="all, delete-orphan")

    @property
    def requires_advisor(self) -> bool:
        return self.advisor_id is not None

    @property
    def is_terminal(self) -> bool:
        return self.state in ("completed", "cancelled")


# ─── 5. Visit Evidence ─────────────────────────────────────────────────────


class VisitEvidence(Base):
    __tablename__ = "visit_evidence"

    evidence_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    visit_id = Column(GUID(), ForeignKey("visits.visit_id"), nullable=False)
    store_id = Column(Integer, nullable=False)
    kind = Column(String(30), nullable=False, default="photo")
    url = Column(Text)
    description = Column(Text, nullable=False, default="")
    captured_by = Column(String(64))
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (Index("ix_visit_evidence_visit", "visit_id"),)

    visit = relationship("Visit", back_populates="evidence")


# ─── 6. Tendero Feedback ───────────────────────────────────────────────────


class TenderoFeedback(Base):
    __tablename__ = "tendero_feedback"

    feedback_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    visit_id = Column(GUID())
    store_id = Column(Integer, nullable=False)
    collaborator_id = Column(String(64), nullable=False)
    category = Column(String(50), nullable=False)
    feedback_type = Column(String(50), nullable=False)
    urgency = Column(String(20), nullable=False)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=False)
    status = Column(String(20), nullable=False, default="open")
    resolution_required = Column(Boolean, nullable=False, default=False)
    resolved_at = Column(DateTime)
    resolution_notes = Column(Text)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_tendero_feedback_store_created", "store_id", "created_at"),
        Index("ix_tendero_feedback_visit", "visit_id"),
        CheckConstraint(_one_of("urgency", URGENCY_LEVELS), name="ck_tendero_urgency"),
        CheckConstraint("status IN ('open', 'resolved')", name="ck_tendero_status"),
    )


# ─── 7. Store Evaluations ──────────────────────────────────────────────────


class StoreEvaluation(Base):
    __tablename__ = "store_evaluations"

    evaluation_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    visit_id = Column(GUID())
    store_id = Column(Integer, nullable=False)
    collaborator_id = Column(String(64), nullable=False)
    ratings = Column(JSON, nullable=False, default=dict)
    overall_score = Column(Float, nullable=False, default=0.0)
    strengths = Column(JSON, nullable=False, default=list)
    improvement_areas = Column(JSON, nullable=False, default=list)
    priority_recommendations = Column(JSON, nullable=False, default=list)
    comments = Column(Text, nullable=False, default="")
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_store_evaluations_store_created", "store_id", "created_at"),
        Index("ix_store_evaluations_visit", "visit_id"),
    )


# ─── 8. Insights ───────────────────────────────────────────────────────────


class Insight(Base):
    __tablename__ = "insights"

    insight_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    store_id = Column(Integer, nullable=False)
    visit_id = Column(GUID())
    collaborator_id = Column(String(64))
    analysis_type = Column(String(30), nullable=False)
    input_refs = Column(JSON, nullable=False, default=list)
    result = Column(JSON, nullable=False, default=dict)
    generated = Column(Boolean, nullable=False, default=True)
    # previsit briefs stay unused until a post-visit review consumes them
    used = Column(Boolean, nullable=False, default=False)
    follow_up_required = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_insights_store_type_created", "store_id", "analysis_type", "created_at"),
        CheckConstraint(
            _one_of("analysis_type", ANALYSIS_TYPES),
            name="ck_insight_analysis_type",
        ),
    )
