"""
Store Catalog Reader — Projects the GeoJSON point-of-sale document into Store records.

The catalog lives in a single GeoJSON FeatureCollection. Each feature
becomes a Store; the feature's id column (``col0`` by default) is used as
the store id when it parses as an integer, otherwise the feature's position.

Freshness:
  - days_since_visit: whole days since the store's last completed visit
  - visit_status:
      recent   ≤ 7 days
      normal   ≤ 15 days
      pending  ≤ 25 days
      urgent   > 25 days, or never visited (days_since_visit reported as 30)
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from core.config import get_settings
from core.errors import DataSourceError
from db.models import CatalogDocument, StoreVisitMarker

logger = structlog.get_logger()

VISIT_STATUS_THRESHOLDS = {
    "recent": 7,
    "normal": 15,
    "pending": 25,
}
NEVER_VISITED_DAYS = 30

PROBLEM_NPS_BELOW = 30
PROBLEM_OUT_OF_STOCK_ABOVE = 4
PROBLEM_DAMAGE_RATE_ABOVE = 1
PROBLEM_COMPLAINT_HOURS_ABOVE = 48
KM_PER_DEGREE = 111


@dataclass
class Store:
    """A point of sale from the catalog, plus its last-visit marker."""

    id: int
    name: str
    longitude: float
    latitude: float
    nps: float = 0.0
    fill_found_rate: float = 0.0
    damage_rate: float = 0.0
    out_of_stock: float = 0.0
    complaint_resolution_hours: float = 0.0
    address: str | None = None
    opening_hours: str | None = None
    last_visit_at: datetime | None = None
    extra: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class VisitFreshness:
    days_since_visit: int
    visit_status: str


# ──────────────────────────────────────────────────────────────────────────
# Freshness
# ──────────────────────────────────────────────────────────────────────────


def classify_visit_status(days_since_visit: int) -> str:
    """Bucket days since the last visit into a visit status."""
    if days_since_visit <= VISIT_STATUS_THRESHOLDS["recent"]:
        return "recent"
    elif days_since_visit <= VISIT_STATUS_THRESHOLDS["normal"]:
        return "normal"
    elif days_since_visit <= VISIT_STATUS_THRESHOLDS["pending"]:
        return "pending"
    return "urgent"


def compute_visit_status(store: Store, now: datetime | None = None) -> VisitFreshness:
    """Derive visit freshness for a store. Never-visited stores are always urgent."""
    if store.last_visit_at is None:
        return VisitFreshness(days_since_visit=NEVER_VISITED_DAYS, visit_status="urgent")
    now = now or datetime.utcnow()
    days = max(0, (now - store.last_visit_at).days)
    return VisitFreshness(days_since_visit=days, visit_status=classify_visit_status(days))


# ──────────────────────────────────────────────────────────────────────────
# GeoJSON projection
# ──────────────────────────────────────────────────────────────────────────


def _parse_float(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def _parse_store_id(value: Any, fallback: int) -> int:
    if value is None or isinstance(value, bool):
        return fallback
    try:
        return int(str(value).strip())
    except ValueError:
        try:
            return int(float(value))
        except (TypeError, ValueError):
            return fallback


def project_feature(feature: dict[str, Any], index: int, id_column: str = "col0") -> Store:
    """Map one GeoJSON feature onto a Store."""
    props = feature.get("properties") or {}
    coords = (feature.get("geometry") or {}).get("coordinates") or [0.0, 0.0]
    longitude = _parse_float(coords[0]) if len(coords) > 0 else 0.0
    latitude = _parse_float(coords[1]) if len(coords) > 1 else 0.0

    store_id = _parse_store_id(props.get(id_column), index)
    return Store(
        id=store_id,
        name=str(props.get("nombre") or props.get("name") or f"Tienda {store_id}"),
        longitude=longitude,
        latitude=latitude,
        nps=_parse_float(props.get("nps")),
        fill_found_rate=_parse_float(props.get("fillfoundrate")),
        damage_rate=_parse_float(props.get("damage_rate")),
        out_of_stock=_parse_float(props.get("out_of_stock")),
        complaint_resolution_hours=_parse_float(props.get("complaint_resolution_time_hrs")),
        address=props.get("direccion") or props.get("address"),
        opening_hours=props.get("horario") or props.get("hours"),
    )


def project_document(document: dict[str, Any] | None, id_column: str = "col0") -> list[Store]:
    if not document or not isinstance(document.get("features"), list):
        raise DataSourceError("Store catalog document not found")
    return [project_feature(feature, index, id_column) for index, feature in enumerate(document["features"])]


# ──────────────────────────────────────────────────────────────────────────
# Reads
# ──────────────────────────────────────────────────────────────────────────


async def get_catalog_document(db: AsyncSession) -> dict[str, Any] | None:
    """Return the raw GeoJSON document, or None when the catalog is empty."""
    result = await db.execute(select(CatalogDocument).order_by(CatalogDocument.document_id.desc()).limit(1))
    row = result.scalar_one_or_none()
    return row.document if row else None


async def list_stores(db: AsyncSession) -> list[Store]:
    """Load every store from the catalog document with its last-visit marker."""
    document = await get_catalog_document(db)
    stores = project_document(document, get_settings().catalog_id_column)

    markers_result = await db.execute(select(StoreVisitMarker.store_id, StoreVisitMarker.last_visit_at))
    markers = {row.store_id: row.last_visit_at for row in markers_result.all()}
    for store in stores:
        store.last_visit_at = markers.get(store.id)
    return stores


async def get_store(db: AsyncSession, store_id: int) -> Store | None:
    """Linear lookup by id. None means "use a placeholder label", not a failure."""
    for store in await list_stores(db):
        if store.id == store_id:
            return store
    return None


async def get_store_label(db: AsyncSession, store_id: int) -> str:
    try:
        store = await get_store(db, store_id)
    except DataSourceError:
        logger.warning("catalog.unavailable", store_id=store_id)
        store = None
    return store.name if store else f"Tienda {store_id}"


async def replace_catalog_document(db: AsyncSession, document: dict[str, Any]) -> int:
    """Store a new GeoJSON document as the catalog. Returns the feature count."""
    project_document(document)
    db.add(CatalogDocument(document=document))
    await db.commit()
    count = len(document["features"])
    logger.info("catalog.loaded", features=count)
    return count


# ──────────────────────────────────────────────────────────────────────────
# Catalog queries
# ──────────────────────────────────────────────────────────────────────────


def is_problematic(store: Store, include_complaints: bool = True) -> bool:
    flagged = (
        store.nps < PROBLEM_NPS_BELOW
        or store.out_of_stock > PROBLEM_OUT_OF_STOCK_ABOVE
        or store.damage_rate > PROBLEM_DAMAGE_RATE_ABOVE
    )
    if include_complaints:
        flagged = flagged or store.complaint_resolution_hours > PROBLEM_COMPLAINT_HOURS_ABOVE
    return flagged


def filter_problematic(stores: list[Store]) -> list[Store]:
    """Stores with poor NPS, stock-outs, damage or slow complaint handling, worst NPS first."""
    return sorted((s for s in stores if is_problematic(s)), key=lambda s: s.nps)


def filter_by_min_nps(stores: list[Store], minimum: float) -> list[Store]:
    return sorted((s for s in stores if s.nps >= minimum), key=lambda s: s.nps, reverse=True)


def find_nearby(stores: list[Store], lat: float, lng: float, radius_km: float = 5) -> list[Store]:
    """Approximate bounding-box search around (lat, lng)."""
    radius_deg = radius_km / KM_PER_DEGREE
    return [
        s for s in stores if abs(s.latitude - lat) <= radius_deg and abs(s.longitude - lng) <= radius_deg
    ]


def summarize_stores(stores: list[Store]) -> dict[str, Any]:
    total = len(stores)
    if total == 0:
        return {
            "total_stores": 0,
            "nps_mean": 0.0,
            "nps_max": 0.0,
            "nps_min": 0.0,
            "damage_rate_mean": 0.0,
            "out_of_stock_mean": 0.0,
            "complaint_resolution_hours_mean": 0.0,
            "problematic_stores": 0,
        }
    nps_values = [s.nps for s in stores]
    return {
        "total_stores": total,
        "nps_mean": sum(nps_values) / total,
        "nps_max": max(nps_values),
        "nps_min": min(nps_values),
        "damage_rate_mean": sum(s.damage_rate for s in stores) / total,
        "out_of_stock_mean": sum(s.out_of_stock for s in stores) / total,
        "complaint_resolution_hours_mean": sum(s.complaint_resolution_hours for s in stores) / total,
        "problematic_stores": sum(1 for s in stores if is_problematic(s, include_complaints=False)),
    }
