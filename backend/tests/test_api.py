"""
API Tests — Smoke and contract tests for all routes.
"""

import pytest
from httpx import AsyncClient

from api.deps import get_current_user
from api.main import app
from core.errors import ProviderError


@pytest.mark.asyncio
class TestHealthCheck:
    async def test_health_check(self, client: AsyncClient):
        response = await client.get("/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["success"] is True


@pytest.mark.asyncio
class TestStoresAPI:
    async def test_list_stores(self, client: AsyncClient, catalog):
        response = await client.get("/api/v1/stores")
        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["count"] == 3
        first = body["data"][0]
        assert first["name"] == "OXXO Centro"
        assert first["visit_status"] == "urgent"
        assert first["days_since_visit"] == 30

    async def test_missing_catalog_is_data_source_error(self, client: AsyncClient):
        response = await client.get("/api/v1/stores")
        assert response.status_code == 500
        body = response.json()
        assert body["success"] is False
        assert body["code"] == "data_source_error"

    async def test_problematic(self, client: AsyncClient, catalog):
        response = await client.get("/api/v1/stores/problematic")
        assert [s["id"] for s in response.json()["data"]] == [5]

    async def test_nps_filter(self, client: AsyncClient, catalog):
        response = await client.get("/api/v1/stores/nps/45")
        assert [s["id"] for s in response.json()["data"]] == [12, 1]

    async def test_nearby(self, client: AsyncClient, catalog):
        response = await client.get("/api/v1/stores/nearby", params={"lat": 25.67, "lng": -100.31, "radius_km": 5})
        assert sorted(s["id"] for s in response.json()["data"]) == [1, 5]

    async def test_store_detail_and_404(self, client: AsyncClient, catalog):
        assert (await client.get("/api/v1/stores/12")).json()["data"]["name"] == "OXXO Sur"
        missing = await client.get("/api/v1/stores/999")
        assert missing.status_code == 404
        assert missing.json()["code"] == "store_not_found"

    async def test_stats(self, client: AsyncClient, catalog):
        data = (await client.get("/api/v1/stats")).json()["data"]
        assert data["total_stores"] == 3
        assert data["problematic_stores"] == 1

    async def test_geojson(self, client: AsyncClient, catalog):
        data = (await client.get("/api/v1/geojson")).json()["data"]
        assert data["type"] == "FeatureCollection"
        assert len(data["features"]) == 3


@pytest.mark.asyncio
class TestVisitsAPI:
    async def _create(self, client, **overrides):
        body = {"storeId": 5, "collaboratorId": "c1", "scheduledAt": "2025-06-10T10:00:00"}
        body.update(overrides)
        return await client.post("/api/v1/visits", json=body)

    async def test_same_day_conflict_is_409(self, client: AsyncClient, catalog):
        first = await self._create(client)
        assert first.status_code == 201
        assert first.json()["data"]["state"] == "scheduled"

        second = await self._create(client, scheduledAt="2025-06-10T16:00:00")
        assert second.status_code == 409
        body = second.json()
        assert body["success"] is False
        assert body["code"] == "scheduling_conflict"
        assert body["details"]["store_id"] == 5

    async def test_unknown_store_is_404(self, client: AsyncClient, catalog):
        response = await self._create(client, storeId=999)
        assert response.status_code == 404

    async def test_full_lifecycle(self, client: AsyncClient, catalog):
        visit_id = (await self._create(client)).json()["data"]["visit_id"]

        confirm = await client.put(f"/api/v1/visits/{visit_id}/confirm", json={"userId": "c1", "role": "collaborator"})
        assert confirm.json()["all_confirmed"] is True
        assert confirm.json()["data"]["state"] == "confirmed"

        start = await client.post(
            f"/api/v1/visits/{visit_id}/start",
            json={"arrivalLocation": {"latitude": 25.7, "longitude": -100.3}},
        )
        assert start.json()["data"]["state"] == "in_progress"

        finish = await client.post(f"/api/v1/visits/{visit_id}/finish", json={"durationMinutes": 40})
        assert finish.json()["data"]["state"] == "completed"
        assert finish.json()["data"]["duration_minutes"] == 40

        again = await client.post(f"/api/v1/visits/{visit_id}/finish", json={})
        assert again.status_code == 409
        assert again.json()["code"] == "visit_already_completed"

        store = (await client.get("/api/v1/stores/5")).json()["data"]
        assert store["visit_status"] == "recent"
        assert store["days_since_visit"] == 0

    async def test_unknown_visit_is_404(self, client: AsyncClient):
        response = await client.put("/api/v1/visits/nope/confirm", json={"role": "collaborator"})
        assert response.status_code == 404

    async def test_invalid_role_is_400(self, client: AsyncClient, catalog):
        visit_id = (await self._create(client)).json()["data"]["visit_id"]
        response = await client.put(f"/api/v1/visits/{visit_id}/confirm", json={"role": "manager"})
        assert response.status_code == 400
        assert response.json()["code"] == "validation_error"

    async def test_agenda(self, client: AsyncClient, catalog):
        await self._create(client, storeId=12, scheduledAt="2025-06-11T09:00:00")
        await self._create(client, storeId=1, scheduledAt="2025-06-10T09:00:00")

        response = await client.get("/api/v1/agenda/c1", params={"from": "2025-06-10", "to": "2025-06-12"})
        body = response.json()
        assert body["count"] == 2
        assert [v["store_id"] for v in body["data"]] == [1, 12]
        assert body["data"][0]["store"]["address"] == "Av. Juárez 10"


@pytest.mark.asyncio
class TestFeedbackAPI:
    TENDERO = {
        "storeId": 5,
        "collaboratorId": "c1",
        "category": "equipment",
        "type": "complaint",
        "urgency": "critica",
        "title": "Refrigerador dañado",
        "description": "No enfría",
    }

    async def test_create_returns_feedback_and_analysis(self, client: AsyncClient, catalog, fake_provider):
        response = await client.post("/api/v1/feedback/tendero", json=self.TENDERO)
        assert response.status_code == 201
        body = response.json()
        assert body["data"]["urgency"] == "critical"
        assert body["data"]["resolution_required"] is True
        assert body["analysis"]["generated"] is True
        assert body["analysis"]["analysis"]["priority"] == "alta"
        assert fake_provider.calls == 2

    async def test_provider_failure_still_records(self, client: AsyncClient, catalog, fake_provider):
        fake_provider.error = ProviderError("Gemini returned HTTP 503")

        response = await client.post("/api/v1/feedback/tendero", json=self.TENDERO)
        assert response.status_code == 201
        body = response.json()
        assert body["analysis"]["generated"] is False
        assert body["quick_insight"] == "Feedback sobre equipment - requiere revisión"

        listed = await client.get("/api/v1/feedback/5")
        assert listed.json()["count"] == 1

    async def test_missing_fields_are_listed(self, client: AsyncClient):
        body = dict(self.TENDERO)
        del body["title"]
        del body["urgency"]
        response = await client.post("/api/v1/feedback/tendero", json=body)
        assert response.status_code == 400
        assert response.json()["details"]["missing_fields"] == ["urgency", "title"]

    async def test_store_evaluation(self, client: AsyncClient, catalog):
        response = await client.post(
            "/api/v1/feedback/store-evaluation",
            json={"storeId": 5, "collaboratorId": "c1", "ratings": {"cleanliness": {"score": 5}}},
        )
        assert response.status_code == 201
        data = response.json()["data"]
        assert data["ratings"]["organization"] == {"score": 0, "notes": ""}
        assert data["overall_score"] == 1.0

    async def test_resolve(self, client: AsyncClient, catalog):
        created = await client.post("/api/v1/feedback/tendero", json=self.TENDERO)
        feedback_id = created.json()["data"]["feedback_id"]
        response = await client.put(f"/api/v1/feedback/tendero/{feedback_id}/resolve", json={"notes": "listo"})
        assert response.json()["data"]["status"] == "resolved"


@pytest.mark.asyncio
class TestAnalysisAPI:
    async def test_previsit(self, client: AsyncClient, catalog, fake_provider):
        response = await client.post("/api/v1/analysis/previsit/5", json={"collaboratorId": "c1"})
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["generated"] is True
        assert data["analysis"]["points_to_verify"] == ["Temperatura del refrigerador"]

        insights = (await client.get("/api/v1/analysis/insights/5")).json()
        assert insights["count"] == 1
        assert insights["data"][0]["used"] is False

    async def test_postvisit_requires_completion(self, client: AsyncClient, catalog):
        visit = await client.post(
            "/api/v1/visits",
            json={"storeId": 5, "collaboratorId": "c1", "scheduledAt": "2025-06-10T10:00:00"},
        )
        response = await client.post("/api/v1/analysis/postvisit", json={"visitId": visit.json()["data"]["visit_id"]})
        assert response.status_code == 400
        assert response.json()["code"] == "visit_not_completed"

    async def test_trends(self, client: AsyncClient, catalog):
        response = await client.get("/api/v1/analysis/trends", params={"period": "1_month"})
        data = response.json()["data"]
        assert data["period"] == "1_month"
        assert data["analysis"]["main_trends"] == ["Aumento de quejas de servicio"]

    async def test_trends_bad_period(self, client: AsyncClient):
        response = await client.get("/api/v1/analysis/trends", params={"period": "2_weeks"})
        assert response.status_code == 400

    async def test_prediction_provider_down(self, client: AsyncClient, catalog, fake_provider):
        fake_provider.error = ProviderError("down")
        response = await client.post("/api/v1/analysis/prediction/5")
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["generated"] is False
        assert data["analysis"]["risk_level"] == "medio"


@pytest.mark.asyncio
class TestErrorEnvelope:
    async def test_missing_body_field_is_400_with_envelope(self, client: AsyncClient, catalog):
        response = await client.post("/api/v1/visits", json={"storeId": 1, "scheduledAt": "2025-06-10T10:00:00"})
        assert response.status_code == 400
        body = response.json()
        assert body["success"] is False
        assert body["code"] == "validation_error"
        assert body["details"]["missing_fields"] == ["collaboratorId"]

    async def test_malformed_value_is_400(self, client: AsyncClient, catalog):
        response = await client.post(
            "/api/v1/visits",
            json={"storeId": 1, "collaboratorId": "c1", "scheduledAt": "mañana"},
        )
        assert response.status_code == 400
        body = response.json()
        assert body["success"] is False
        assert "missing_fields" not in body["details"]
        assert body["details"]["errors"][0]["field"] == "scheduledAt"

    async def test_confirm_without_role_is_400(self, client: AsyncClient):
        response = await client.put("/api/v1/visits/abc/confirm", json={})
        assert response.status_code == 400
        assert response.json()["details"]["missing_fields"] == ["role"]

    async def test_unauthenticated_request_uses_envelope(self, client: AsyncClient, catalog):
        app.dependency_overrides.pop(get_current_user)
        response = await client.get("/api/v1/stores")
        assert response.status_code in (401, 403)
        body = response.json()
        assert body["success"] is False
        assert body["error"]

    async def test_unknown_route_uses_envelope(self, client: AsyncClient):
        response = await client.get("/api/v1/nowhere")
        assert response.status_code == 404
        assert response.json() == {"success": False, "error": "Not Found", "code": "not_found"}
