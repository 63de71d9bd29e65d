# tests/test_routing_api.py
"""HTTP surface: validation -> 400, routing results, batch, reassignment, reads."""

from uuid import uuid4

import httpx
import pytest
import pytest_asyncio

from leadrouter.database import get_db
from leadrouter.main import app
from leadrouter.routers import routing_routes

from tests.helpers import NYC, north_of


@pytest_asyncio.fixture
async def client(session_factory, geocoder, crm_sink, alert_sink):
    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[routing_routes.get_geocoder] = lambda: geocoder
    app.dependency_overrides[routing_routes.get_crm_sink] = lambda: crm_sink
    app.dependency_overrides[routing_routes.get_alert_sink] = lambda: alert_sink
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as http:
        yield http
    app.dependency_overrides.clear()


LEAD = {"postalCode": "10001", "source": "google", "externalContactId": "c-1", "leadScore": 85}


async def assigned_lead_id(client):
    response = await client.post("/api/v1/routing/assign", json=LEAD)
    return response.json()["result"]["assignment"]["leadId"]


class TestAssignEndpoint:

    @pytest.mark.asyncio
    async def test_assigns_lead(self, client, make_location):
        location = await make_location("Chelsea", coords=north_of(NYC, 2))

        response = await client.post("/api/v1/routing/assign", json=LEAD)

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["result"]["locationId"] == str(location.id)
        assert body["result"]["reason"] == "optimal_match"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("missing", ["postalCode", "source", "externalContactId"])
    async def test_missing_mandatory_field_is_400(self, client, make_location, missing):
        await make_location("Chelsea", coords=north_of(NYC, 2))
        payload = {k: v for k, v in LEAD.items() if k != missing}

        response = await client.post("/api/v1/routing/assign", json=payload)

        assert response.status_code == 400
        assert response.json()["success"] is False
        assert missing in response.json()["error"]

    @pytest.mark.asyncio
    async def test_lead_score_out_of_range_is_400(self, client):
        response = await client.post("/api/v1/routing/assign", json={**LEAD, "leadScore": 150})
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_fallback_is_still_success(self, client, make_location, alert_sink):
        await make_location("Chelsea", coords=north_of(NYC, 2))

        response = await client.post("/api/v1/routing/assign", json={**LEAD, "postalCode": "00000"})

        assert response.status_code == 200
        result = response.json()["result"]
        assert result["reason"] == "fallback_routing"
        assert result["requiresReview"] is True
        assert len(alert_sink.alerts) == 1

    @pytest.mark.asyncio
    async def test_exhaustion_is_500_with_both_errors(self, client):
        response = await client.post("/api/v1/routing/assign", json=LEAD)

        assert response.status_code == 500
        body = response.json()
        assert body["success"] is False
        assert body["originalError"] == "No locations available within range"
        assert body["fallbackError"] == "No overflow location configured"


class TestBatchEndpoint:

    @pytest.mark.asyncio
    async def test_batch(self, client, make_location):
        await make_location("Chelsea", coords=north_of(NYC, 2))

        response = await client.post("/api/v1/routing/assign/batch", json={"leads": [
            {"zip_code": "10001", "source": "google", "ghl_contact_id": "c-1"},
            {"zip_code": "10001", "source": "google"},
        ]})

        assert response.status_code == 200
        body = response.json()
        assert body["summary"]["successful"] == 1
        assert body["errors"][0]["index"] == 1

    @pytest.mark.asyncio
    async def test_empty_batch_is_400(self, client):
        response = await client.post("/api/v1/routing/assign/batch", json={"leads": []})
        assert response.status_code == 400


class TestReassignEndpoint:

    @pytest.mark.asyncio
    async def test_reassign(self, client, make_location):
        await make_location("A", coords=north_of(NYC, 1))
        location_b = await make_location("B", coords=north_of(NYC, 20))
        lead_id = await assigned_lead_id(client)

        response = await client.post(
            f"/api/v1/routing/leads/{lead_id}/reassign",
            json={"newLocationId": str(location_b.id), "reason": "closer to work"},
        )

        assert response.status_code == 200
        assert response.json()["result"]["newLocationId"] == str(location_b.id)

        chain = (await client.get(f"/api/v1/routing/leads/{lead_id}/decisions")).json()
        assert [d["routing_reason"] for d in chain] == ["optimal_match", "manual_reassignment"]
        assert chain[1]["previous_decision_id"] == chain[0]["id"]

    @pytest.mark.asyncio
    async def test_unknown_lead_is_404(self, client, make_location):
        location = await make_location()
        response = await client.post(
            f"/api/v1/routing/leads/{uuid4()}/reassign",
            json={"newLocationId": str(location.id)},
        )
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_inactive_location_is_400(self, client, make_location):
        await make_location("A", coords=north_of(NYC, 1))
        closed = await make_location("Closed", active=False)
        lead_id = await assigned_lead_id(client)

        response = await client.post(
            f"/api/v1/routing/leads/{lead_id}/reassign",
            json={"newLocationId": str(closed.id)},
        )
        assert response.status_code == 400


class TestReadEndpoints:

    @pytest.mark.asyncio
    async def test_locations_lists_active_only(self, client, make_location):
        await make_location("Open")
        await make_location("Closed", active=False)

        response = await client.get("/api/v1/routing/locations")

        assert [loc["name"] for loc in response.json()] == ["Open"]

    @pytest.mark.asyncio
    async def test_utilization(self, client, make_location, set_usage):
        location = await make_location(capacity=20)
        await set_usage(location, 5)

        body = (await client.get(f"/api/v1/routing/locations/{location.id}/utilization")).json()

        assert body["current"] == 5
        assert body["max"] == 20
        assert body["rate"] == 0.25

    @pytest.mark.asyncio
    async def test_utilization_unknown_location(self, client):
        response = await client.get(f"/api/v1/routing/locations/{uuid4()}/utilization")
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_health(self, client):
        body = (await client.get("/health")).json()
        assert body["status"] == "healthy"
        assert "lead_routing_logs" in body["tables"]
