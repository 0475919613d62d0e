"""
Stores Router — Read-only catalog of points of sale.
"""

from datetime import datetime

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from api.deps import get_current_user, get_db
from catalog.reader import (
    Store,
    compute_visit_status,
    filter_by_min_nps,
    filter_problematic,
    find_nearby,
    get_catalog_document,
    get_store,
    list_stores,
    summarize_stores,
)
from core.errors import NotFoundError, StoreNotFound

router = APIRouter(prefix="/api/v1", tags=["stores"], dependencies=[Depends(get_current_user)])


def _serialize_store(store: Store, now: datetime) -> dict:
    freshness = compute_visit_status(store, now)
    return {
        "id": store.id,
        "name": store.name,
        "location": {"longitude": store.longitude, "latitude": store.latitude},
        "nps": store.nps,
        "fill_found_rate": store.fill_found_rate,
        "damage_rate": store.damage_rate,
        "out_of_stock": store.out_of_stock,
        "complaint_resolution_hours": store.complaint_resolution_hours,
        "address": store.address,
        "opening_hours": store.opening_hours,
        "last_visit_at": store.last_visit_at.isoformat() if store.last_visit_at else None,
        "days_since_visit": freshness.days_since_visit,
        "visit_status": freshness.visit_status,
    }


def _listing(stores: list[Store], **extra) -> dict:
    now = datetime.utcnow()
    return {
        "success": True,
        "count": len(stores),
        **extra,
        "data": [_serialize_store(s, now) for s in stores],
    }


# ─── Endpoints ──────────────────────────────────────────────────────────────


@router.get("/stores")
async def list_all_stores(db: AsyncSession = Depends(get_db)):
    """List every store in the catalog with visit freshness."""
    return _listing(await list_stores(db))


@router.get("/stores/problematic")
async def list_problematic_stores(db: AsyncSession = Depends(get_db)):
    """Stores failing any quality threshold, worst NPS first."""
    stores = filter_problematic(await list_stores(db))
    return _listing(stores, criteria="NPS < 30 OR out_of_stock > 4% OR damage_rate > 1% OR complaints > 48hrs")


@router.get("/stores/nps/{minimum}")
async def list_stores_by_nps(minimum: float, db: AsyncSession = Depends(get_db)):
    stores = filter_by_min_nps(await list_stores(db), minimum)
    return _listing(stores, filter=f"NPS >= {minimum}")


@router.get("/stores/nearby")
async def list_nearby_stores(
    lat: float = Query(..., ge=-90, le=90),
    lng: float = Query(..., ge=-180, le=180),
    radius_km: float = Query(5.0, gt=0, le=100),
    db: AsyncSession = Depends(get_db),
):
    stores = find_nearby(await list_stores(db), lat, lng, radius_km)
    return _listing(stores, center={"lat": lat, "lng": lng}, radius_km=radius_km)


@router.get("/stores/{store_id}")
async def get_store_detail(store_id: int, db: AsyncSession = Depends(get_db)):
    store = await get_store(db, store_id)
    if store is None:
        raise StoreNotFound(store_id)
    return {"success": True, "data": _serialize_store(store, datetime.utcnow())}


@router.get("/stats")
async def get_stats(db: AsyncSession = Depends(get_db)):
    """Network-wide metric averages."""
    return {"success": True, "data": summarize_stores(await list_stores(db))}


@router.get("/geojson")
async def get_geojson(db: AsyncSession = Depends(get_db)):
    """Raw catalog document, for map clients."""
    document = await get_catalog_document(db)
    if document is None:
        raise NotFoundError("GeoJSON catalog not found")
    return {"success": True, "data": document}
