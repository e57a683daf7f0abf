"""
HTTP API tests for the gateway routes.

httpx AsyncClient + ASGITransport drive the FastAPI app in-process. The
lifespan (migrations, Redis, scheduler) does not run under ASGITransport, and
get_engine is overridden with an engine on the in-memory stores, so no
PostgreSQL or Redis is needed.
"""
from __future__ import annotations

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from ussdflow.gateway.dependencies import get_engine
from ussdflow.main import app
from ussdflow.tests.conftest import PHONE, tier_flow_payload


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def client(engine):
    """Async httpx client using ASGI transport, bound to the in-memory engine."""
    app.dependency_overrides[get_engine] = lambda: engine
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac
    app.dependency_overrides.clear()


async def _dial(client: AsyncClient, **overrides) -> dict:
    body = {"flow_id": "balance", "phone_number": PHONE, "short_code": "*123#"}
    body.update(overrides)
    response = await client.post("/api/sessions", json=body)
    assert response.status_code == 201, f"Expected 201, got {response.status_code}: {response.text}"
    return response.json()


# ---------------------------------------------------------------------------
# Dialog surface
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_health(client: AsyncClient) -> None:
    response = await client.get("/api/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


@pytest.mark.asyncio
async def test_full_dialog_over_http(client: AsyncClient) -> None:
    first = await _dial(client)
    assert first["text"] == "Enter opening balance"
    assert first["status"] == "active"
    sid = first["session_id"]

    menu = await client.post(f"/api/sessions/{sid}/input", json={"input": " 100 "})
    assert menu.status_code == 200
    assert menu.json()["node_id"] == "main_menu"

    balance = await client.post(f"/api/sessions/{sid}/input", json={"input": "1"})
    assert balance.json()["text"] == "Your balance is 100"

    await client.post(f"/api/sessions/{sid}/input", json={"input": "0"})
    done = await client.post(f"/api/sessions/{sid}/input", json={"input": "2"})
    assert done.json()["status"] == "completed"

    after = await client.post(f"/api/sessions/{sid}/input", json={"input": "1"})
    assert after.status_code == 410
    assert after.json()["error"]["code"] == "SESSION_NOT_ACTIVE"


@pytest.mark.asyncio
async def test_invalid_selection_is_200_reprompt(client: AsyncClient) -> None:
    sid = (await _dial(client))["session_id"]
    await client.post(f"/api/sessions/{sid}/input", json={"input": "100"})

    response = await client.post(f"/api/sessions/{sid}/input", json={"input": "9"})

    assert response.status_code == 200
    body = response.json()
    assert body["reprompt"] is True
    assert body["error_code"] == "INVALID_SELECTION"
    assert body["step_count"] == 1


@pytest.mark.asyncio
async def test_short_code_is_normalized_and_channel_conflicts(client: AsyncClient) -> None:
    await _dial(client)
    response = await client.post(
        "/api/sessions",
        json={"flow_id": "balance", "phone_number": PHONE, "short_code": "123"},
    )
    assert response.status_code == 409
    assert response.json()["error"]["code"] == "CONFLICTING_ACTIVE_SESSION"
    assert PHONE not in response.text


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "overrides,field",
    [
        ({"phone_number": "12ab"}, "phone_number"),
        ({"short_code": "*12#"}, "short_code"),
        ({"short_code": "*123"}, "short_code"),
        ({"flow_id": ""}, "flow_id"),
    ],
)
async def test_create_validation_errors(client: AsyncClient, overrides: dict, field: str) -> None:
    body = {"flow_id": "balance", "phone_number": PHONE, "short_code": "123"}
    body.update(overrides)
    response = await client.post("/api/sessions", json=body)
    assert response.status_code == 422
    error = response.json()["error"]
    assert error["code"] == "VALIDATION_ERROR"
    assert any(d["field"] == field for d in error["details"])


@pytest.mark.asyncio
async def test_input_longer_than_ussd_limit_rejected(client: AsyncClient) -> None:
    sid = (await _dial(client))["session_id"]
    response = await client.post(f"/api/sessions/{sid}/input", json={"input": "9" * 183})
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_unknown_flow_and_session_are_404(client: AsyncClient) -> None:
    flow = await client.post(
        "/api/sessions",
        json={"flow_id": "ghost", "phone_number": PHONE, "short_code": "123"},
    )
    assert flow.status_code == 404
    assert flow.json()["error"]["code"] == "FLOW_NOT_FOUND"

    session = await client.get("/api/sessions/sess_missingmissing00")
    assert session.status_code == 404
    assert session.json()["error"]["code"] == "SESSION_NOT_FOUND"


@pytest.mark.asyncio
async def test_expired_session_is_410_and_reads_expired(client: AsyncClient, clock) -> None:
    sid = (await _dial(client))["session_id"]
    clock.advance(121)

    response = await client.post(f"/api/sessions/{sid}/input", json={"input": "100"})
    assert response.status_code == 410

    view = await client.get(f"/api/sessions/{sid}")
    assert view.json()["status"] == "expired"
    assert "phone_number" not in view.json()


@pytest.mark.asyncio
async def test_active_lookup(client: AsyncClient, clock) -> None:
    sid = (await _dial(client))["session_id"]

    found = await client.get("/api/sessions/active", params={"phone_number": PHONE, "short_code": "123"})
    assert found.status_code == 200
    assert found.json()["session_id"] == sid

    clock.advance(121)
    gone = await client.get("/api/sessions/active", params={"phone_number": PHONE, "short_code": "123"})
    assert gone.status_code == 404


@pytest.mark.asyncio
async def test_session_events_endpoint(client: AsyncClient) -> None:
    sid = (await _dial(client))["session_id"]
    await client.post(f"/api/sessions/{sid}/input", json={"input": "100"})

    response = await client.get(f"/api/sessions/{sid}/events")

    assert response.status_code == 200
    types = [e["event_type"] for e in response.json()["events"]]
    assert types[0] == "session_started"
    assert "input_received" in types


# ---------------------------------------------------------------------------
# Admin surface
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_admin_navigate_complete_terminate(client: AsyncClient) -> None:
    sid = (await _dial(client))["session_id"]

    nav = await client.post(f"/api/admin/sessions/{sid}/navigate", json={"node_id": "main_menu"})
    assert nav.status_code == 200
    assert nav.json()["current_node_id"] == "main_menu"

    bad = await client.post(f"/api/admin/sessions/{sid}/navigate", json={"node_id": "nowhere"})
    assert bad.status_code == 404
    assert bad.json()["error"]["code"] == "NODE_NOT_FOUND"

    term = await client.post(f"/api/admin/sessions/{sid}/terminate", json={"reason": "support ticket"})
    assert term.status_code == 200
    assert term.json()["status"] == "terminated"
    assert term.json()["termination_reason"] == "support ticket"

    # Duplicate admin requests are no-op successes
    again = await client.post(f"/api/admin/sessions/{sid}/complete")
    assert again.status_code == 200
    assert again.json()["status"] == "terminated"


@pytest.mark.asyncio
async def test_admin_terminate_default_reason(client: AsyncClient) -> None:
    sid = (await _dial(client))["session_id"]
    response = await client.post(f"/api/admin/sessions/{sid}/terminate")
    assert response.status_code == 200
    assert response.json()["termination_reason"] == "admin_terminated"


@pytest.mark.asyncio
async def test_admin_sweep(client: AsyncClient, clock) -> None:
    await _dial(client)
    await _dial(client, phone_number="+233201234567")
    clock.advance(121)

    response = await client.post("/api/admin/sweep")

    assert response.status_code == 200
    assert response.json() == {"expired": 2}
    assert (await client.post("/api/admin/sweep")).json() == {"expired": 0}


@pytest.mark.asyncio
async def test_admin_publish_and_fetch_flow(client: AsyncClient) -> None:
    published = await client.post("/api/admin/flows", json=tier_flow_payload())
    assert published.status_code == 201
    assert published.json()["version"] == 2
    assert published.json()["node_count"] == 6

    fetched = await client.get("/api/admin/flows/tiers", params={"version": 2})
    assert fetched.status_code == 200
    assert fetched.json()["version"] == 2

    missing = await client.get("/api/admin/flows/tiers", params={"version": 7})
    assert missing.status_code == 404


@pytest.mark.asyncio
async def test_admin_publish_invalid_flow_lists_problems(client: AsyncClient) -> None:
    payload = tier_flow_payload()
    payload["edges"] = []

    response = await client.post("/api/admin/flows", json=payload)

    assert response.status_code == 422
    error = response.json()["error"]
    assert error["code"] == "FLOW_MISCONFIGURED"
    assert len(error["details"]) >= 2


@pytest.mark.asyncio
async def test_admin_publish_unknown_node_kind(client: AsyncClient) -> None:
    payload = tier_flow_payload()
    payload["nodes"]["hook"] = {"kind": "api", "url": "https://example.com"}
    response = await client.post("/api/admin/flows", json=payload)
    assert response.status_code == 422
    assert response.json()["error"]["code"] == "FLOW_MISCONFIGURED"
