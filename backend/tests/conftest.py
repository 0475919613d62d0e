"""
Test Configuration — Fixtures for async DB, test client, catalog, and a fake provider.

Each test gets its own in-memory SQLite database (StaticPool keeps the single
connection alive), so app code can commit freely.
"""

import json

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.pool import StaticPool

import db.models  # noqa: F401  registers tables on Base.metadata
from analysis.provider import TextAnalysisProvider
from api.deps import get_analysis_provider, get_current_user, get_db
from api.main import app
from db.models import CatalogDocument
from db.session import Base

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

COLLABORATOR_ID = "c1"
ADVISOR_ID = "a1"

CATALOG_FEATURES = [
    {
        "type": "Feature",
        "properties": {
            "col0": "1",
            "nombre": "OXXO Centro",
            "nps": "45.5",
            "fillfoundrate": "92.1",
            "damage_rate": "0.5",
            "out_of_stock": "2",
            "complaint_resolution_time_hrs": "24",
            "direccion": "Av. Juárez 10",
            "horario": "24 horas",
        },
        "geometry": {"type": "Point", "coordinates": [-100.31, 25.67]},
    },
    {
        "type": "Feature",
        "properties": {
            "col0": "5",
            "nombre": "OXXO Norte",
            "nps": "20",
            "fillfoundrate": "80",
            "damage_rate": "1.5",
            "out_of_stock": "6",
            "complaint_resolution_time_hrs": "50",
        },
        "geometry": {"type": "Point", "coordinates": [-100.30, 25.70]},
    },
    {
        "type": "Feature",
        "properties": {
            "col0": "12",
            "nombre": "OXXO Sur",
            "nps": "70",
            "fillfoundrate": "97",
            "damage_rate": "0.2",
            "out_of_stock": "1",
            "complaint_resolution_time_hrs": "12",
        },
        "geometry": {"type": "Point", "coordinates": [-100.40, 25.60]},
    },
]

CATALOG_DOCUMENT = {"type": "FeatureCollection", "features": CATALOG_FEATURES}

DEFAULT_ANALYSIS = {
    "alerts": ["Refrigerador sin reparar"],
    "insights": ["Quejas recurrentes de equipo"],
    "recommendations": ["Enviar técnico esta semana"],
    "priority": "alta",
    "summary": "Equipo de refrigeración con fallas repetidas",
    "pending_problems": ["Refrigerador dañado"],
    "points_to_verify": ["Temperatura del refrigerador"],
    "executive_summary": "Visita completada sin incidentes mayores",
    "follow_up_level": "alto",
    "main_trends": ["Aumento de quejas de servicio"],
    "strategic_recommendations": ["Plan de mantenimiento preventivo"],
    "risk_level": "medio",
}


class FakeProvider(TextAnalysisProvider):
    """Scripted provider that records every prompt it receives."""

    name = "fake"

    def __init__(self, responses=None, error: Exception | None = None):
        self.prompts: list[str] = []
        self.responses = list(responses or [])
        self.error = error

    @property
    def calls(self) -> int:
        return len(self.prompts)

    async def generate(self, prompt: str) -> str:
        self.prompts.append(prompt)
        if self.error is not None:
            raise self.error
        if self.responses:
            response = self.responses.pop(0)
            if isinstance(response, Exception):
                raise response
            return response
        return "```json\n" + json.dumps(DEFAULT_ANALYSIS, ensure_ascii=False) + "\n```"


@pytest.fixture
async def test_engine():
    """Fresh in-memory database with all tables."""
    engine = create_async_engine(TEST_DATABASE_URL, echo=False, poolclass=StaticPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
async def test_db(test_engine):
    session = AsyncSession(bind=test_engine, expire_on_commit=False)
    yield session
    await session.close()


@pytest.fixture
async def catalog(test_db):
    """Seed the single GeoJSON catalog document."""
    test_db.add(CatalogDocument(document=CATALOG_DOCUMENT))
    await test_db.commit()
    return CATALOG_DOCUMENT


@pytest.fixture
def fake_provider():
    return FakeProvider()


@pytest.fixture
def mock_user():
    """Mock authenticated user."""
    return {
        "sub": COLLABORATOR_ID,
        "email": "c1@dimeloc.mx",
        "role": "collaborator",
    }


@pytest.fixture
async def client(test_db, mock_user, fake_provider):
    """Create an async test client with dependency overrides."""

    async def override_get_db():
        yield test_db

    def override_get_current_user():
        return mock_user

    def override_get_analysis_provider():
        return fake_provider

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    app.dependency_overrides[get_analysis_provider] = override_get_analysis_provider

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac

    app.dependency_overrides.clear()
