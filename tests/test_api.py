"""Gateway API tests.

Runs the FastAPI app through httpx.ASGITransport with services bound to the
in-memory FakeCrm. The lifespan (code exchange) is not run here; it is
covered by test_startup_* with a patched settings object.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from unittest.mock import AsyncMock

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from api import main as main_module
from api.main import create_app
from crm_gateway.errors import AuthExchangeError, RefreshError
from crm_gateway.reconcile import ReconciliationService
from crm_gateway.records import RecordReader
from tests.conftest import json_body


@pytest.fixture
def gateway(crm_client):
    app = create_app()
    app.state.reconciler = ReconciliationService(crm_client)
    app.state.records = RecordReader(crm_client)
    return app


@pytest_asyncio.fixture
async def api(gateway) -> AsyncGenerator[AsyncClient, None]:
    transport = ASGITransport(app=gateway)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


# ── Reconciliation endpoint ──────────────────────────────────────────────────


async def test_reconcile_returns_contact_and_lead(api, fake_crm):
    fake_crm.add("GET", "/api/v4/contacts", httpx.Response(204))
    fake_crm.add(
        "GET",
        "/api/v4/contacts/custom_fields",
        httpx.Response(200, json={"_embedded": {"custom_fields": [{"id": 3, "code": "PHONE"}]}}),
    )
    fake_crm.add("POST", "/api/v4/contacts", httpx.Response(200, json={"_embedded": {"contacts": [{"id": 11}]}}))
    fake_crm.add("POST", "/api/v4/leads", httpx.Response(200, json={"_embedded": {"leads": [{"id": 12}]}}))

    response = await api.get("/", params={"name": "Jane", "email": "j@x.com", "phone": "555"})

    assert response.status_code == 200, response.text
    assert response.json() == {"contact": {"id": 11}, "lead": {"id": 12}}


@pytest.mark.parametrize(
    "params",
    [
        {"name": "Jane", "phone": "555"},
        {"name": "Jane", "email": "j@x.com"},
        {"email": "j@x.com", "phone": "555"},
        {"name": "Jane", "email": "", "phone": "555"},
        {},
    ],
)
async def test_reconcile_missing_parameters(api, fake_crm, params):
    response = await api.get("/", params=params)

    assert response.status_code == 400
    assert response.json() == {"description": "Missing parameters"}
    assert fake_crm.requests == []


async def test_crm_error_maps_to_bad_gateway_with_hint(api, fake_crm):
    fake_crm.add("GET", "/api/v4/contacts", httpx.Response(401, json={"hint": "invalid token"}))

    response = await api.get("/", params={"name": "Jane", "email": "j@x.com", "phone": "555"})

    assert response.status_code == 502
    body = response.json()
    assert body["description"] == "invalid token"
    assert body["status_code"] == 401
    assert body["error"] == {"hint": "invalid token"}


async def test_crm_outage_on_reader_maps_to_bad_gateway(api, fake_crm):
    fake_crm.add("GET", "/api/v4/contacts/7", httpx.Response(503, json={"title": "Service Unavailable"}))

    response = await api.get("/contacts/7")

    assert response.status_code == 502
    assert response.json() == {
        "description": "Service Unavailable",
        "status_code": 503,
        "error": {"title": "Service Unavailable"},
    }


async def test_malformed_custom_fields_map_to_bad_gateway(api, fake_crm):
    fake_crm.add("GET", "/api/v4/contacts", httpx.Response(204))
    fake_crm.add(
        "GET",
        "/api/v4/contacts/custom_fields",
        httpx.Response(200, json={"_embedded": {"custom_fields": [{"code": "EMAIL"}]}}),
    )

    response = await api.get("/", params={"name": "Jane", "email": "j@x.com", "phone": "555"})

    assert response.status_code == 502
    body = response.json()
    assert body["description"].startswith("Malformed custom field descriptor")
    assert body["status_code"] is None


async def test_lost_authentication_maps_to_service_unavailable(gateway, api):
    reconciler = AsyncMock(spec=ReconciliationService)
    reconciler.reconcile.side_effect = RefreshError("CRM authentication lost: Token has been revoked")
    gateway.state.reconciler = reconciler

    response = await api.get("/", params={"name": "Jane", "email": "j@x.com", "phone": "555"})

    assert response.status_code == 503
    assert "Token has been revoked" in response.json()["description"]


# ── Pass-through readers ─────────────────────────────────────────────────────


async def test_get_contact_forwards_id(api, fake_crm):
    fake_crm.add("GET", "/api/v4/contacts/7", httpx.Response(200, json={"id": 7, "name": "Jane"}))

    response = await api.get("/contacts/7")

    assert response.status_code == 200
    assert response.json() == {"id": 7, "name": "Jane"}
    [request] = fake_crm.requests
    assert request.url.path == "/api/v4/contacts/7"
    assert request.url.params["with"] == "leads"


@pytest.mark.parametrize("bad_id", ["abc", "0", "-3", "1.5"])
async def test_get_contact_rejects_bad_id(api, fake_crm, bad_id):
    response = await api.get(f"/contacts/{bad_id}")

    assert response.status_code == 400
    assert response.json() == {"description": "Wrong ID of contact"}
    assert fake_crm.requests == []


async def test_list_contacts(api, fake_crm):
    payload = {"_embedded": {"contacts": [{"id": 1}]}}
    fake_crm.add("GET", "/api/v4/contacts", httpx.Response(200, json=payload))

    response = await api.get("/contacts")

    assert response.json() == payload
    assert fake_crm.requests[0].url.params["with"] == "leads"


async def test_get_lead_forwards_id(api, fake_crm):
    fake_crm.add("GET", "/api/v4/leads/9", httpx.Response(200, json={"id": 9}))

    response = await api.get("/leads/9")

    assert response.json() == {"id": 9}
    assert fake_crm.requests[0].url.params["with"] == "contacts"


async def test_get_lead_rejects_bad_id(api, fake_crm):
    response = await api.get("/leads/x1")

    assert response.status_code == 400
    assert response.json() == {"description": "Wrong ID of lead"}


async def test_list_leads(api, fake_crm):
    fake_crm.add("GET", "/api/v4/leads", httpx.Response(200, json={"_embedded": {"leads": []}}))

    response = await api.get("/leads")

    assert response.status_code == 200
    assert response.json() == {"_embedded": {"leads": []}}


# ── Ambient endpoints ────────────────────────────────────────────────────────


async def test_healthz(api):
    response = await api.get("/healthz")
    assert response.status_code == 200
    assert response.json() == "ok"


async def test_metrics_exposes_counters(api, fake_crm):
    fake_crm.add("GET", "/api/v4/leads", httpx.Response(200, json={}))
    await api.get("/leads")

    response = await api.get("/metrics/")

    assert response.status_code == 200
    assert "crm_requests_total" in response.text
    assert "http_requests_total" in response.text


# ── Startup ──────────────────────────────────────────────────────────────────


async def test_startup_fails_without_valid_code(monkeypatch):
    monkeypatch.setattr(main_module.settings, "CLIENT_ID", "")
    app = create_app(auth_code="code")

    with pytest.raises(AuthExchangeError, match="CLIENT_ID"):
        async with app.router.lifespan_context(app):
            pass


async def test_reconcile_request_body_is_sent_to_crm(api, fake_crm):
    fake_crm.add("GET", "/api/v4/contacts", httpx.Response(200, json={"_embedded": {"contacts": [{"id": 42}]}}))
    fake_crm.add("GET", "/api/v4/contacts/custom_fields", httpx.Response(204))
    fake_crm.add("PATCH", "/api/v4/contacts", httpx.Response(200, json={"_embedded": {"contacts": [{"id": 42}]}}))
    fake_crm.add("POST", "/api/v4/leads", httpx.Response(200, json={"_embedded": {"leads": [{"id": 1}]}}))

    response = await api.get("/", params={"name": "Jane", "email": "j@x.com", "phone": "555"})

    assert response.status_code == 200
    [update] = [r for r in fake_crm.requests if r.method == "PATCH"]
    assert json_body(update) == [{"name": "Jane", "custom_fields_values": [], "id": 42}]
