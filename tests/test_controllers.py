from datetime import datetime, timedelta, timezone
from uuid import uuid4

import httpx
import pytest

from infrastructure.database import get_session
from main import app
from sla.infrastructure import SLAEventBus
from sla.interfaces import get_event_publisher, get_policy_provider


@pytest.fixture
def event_bus():
    return SLAEventBus(queue_size=10)


@pytest.fixture
async def client(session_maker, policy_provider, event_bus):
    async def override_get_session():
        async with session_maker() as session:
            yield session
            await session.commit()

    app.dependency_overrides[get_session] = override_get_session
    app.dependency_overrides[get_policy_provider] = lambda: policy_provider
    app.dependency_overrides[get_event_publisher] = lambda: event_bus

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


def _minutes_ago(minutes: int) -> str:
    return (datetime.now(timezone.utc) - timedelta(minutes=minutes)).isoformat()


async def test_create_and_fetch_request(client):
    response = await client.post("/sla/requests", json={
        "request_type": "consultation",
        "priority": "critical",
        "case_id": "ER-2024-0117",
        "target_department": "CARD",
    })

    assert response.status_code == 201
    created = response.json()
    assert created["status"] == "pending"
    assert created["allowance_minutes"] == 10
    assert created["remaining"]["status"] == "safe"
    assert "X-Correlation-ID" in response.headers

    fetched = await client.get(f"/sla/requests/{created['id']}")
    assert fetched.status_code == 200
    assert fetched.json()["sla_deadline"] == created["sla_deadline"]


async def test_unknown_policy_is_unprocessable(client):
    response = await client.post("/sla/requests", json={
        "request_type": "xray",
        "priority": "urgent",
    })

    assert response.status_code == 422
    body = response.json()
    assert body["error_type"] == "PolicyNotFoundError"
    assert body["details"] == {"request_type": "xray", "priority": "urgent"}


async def test_unknown_request_is_not_found(client):
    response = await client.get(f"/sla/requests/{uuid4()}")
    assert response.status_code == 404


async def test_lifecycle_endpoints(client):
    created = (await client.post("/sla/requests", json={
        "request_type": "lab", "priority": "urgent",
    })).json()

    ack = await client.post(
        f"/sla/requests/{created['id']}/acknowledge", json={"actor": "dr.haddad"}
    )
    assert ack.status_code == 200
    assert ack.json()["status"] == "acknowledged"

    again = await client.post(f"/sla/requests/{created['id']}/acknowledge")
    assert again.status_code == 409

    owned = await client.post(f"/sla/requests/{created['id']}/own", json={"actor": "dr.haddad"})
    assert owned.json()["owned_by"] == "dr.haddad"

    done = await client.post(f"/sla/requests/{created['id']}/complete")
    assert done.json()["status"] == "completed"

    cancelled = await client.post(f"/sla/requests/{created['id']}/cancel")
    assert cancelled.status_code == 409


async def test_evaluate_records_and_publishes_breach(client, event_bus):
    queue = event_bus.subscribe("test")
    created = (await client.post("/sla/requests", json={
        "request_type": "consultation",
        "priority": "critical",
        "created_at": _minutes_ago(20),
    })).json()
    assert created["remaining"]["is_expired"] is True

    response = await client.post("/sla/evaluate")

    assert response.status_code == 200
    assert response.json()["breaches"] == 1
    assert response.json()["escalations"] == 0
    assert queue.qsize() == 1

    events = (await client.get("/sla/events", params={"request_id": created["id"]})).json()
    assert [e["event_type"] for e in events] == ["sla_breached"]

    repeat = await client.post("/sla/evaluate")
    assert repeat.json()["breaches"] == 0
    assert queue.qsize() == 1

    fetched = (await client.get(f"/sla/requests/{created['id']}")).json()
    assert fetched["sla_breached"] is True


async def test_policies_endpoint(client):
    response = await client.get("/sla/policies")

    assert response.status_code == 200
    policies = response.json()
    assert len(policies) == 12
    consult = next(
        p for p in policies
        if p["request_type"] == "consultation" and p["priority"] == "critical"
    )
    assert consult["response_minutes"] == 10
    assert consult["escalation_levels"][1]["target"] == "medical_director"


async def test_dashboard_endpoint(client):
    await client.post("/sla/requests", json={"request_type": "lab", "priority": "stable"})
    await client.post("/sla/requests", json={
        "request_type": "imaging", "priority": "critical", "created_at": _minutes_ago(30),
    })

    response = await client.get("/sla/dashboard")

    assert response.status_code == 200
    body = response.json()
    assert body["total_requests"] == 2
    assert body["open_requests"] == 2
    assert body["remaining_counts"]["expired"] == 1
    assert body["remaining_counts"]["safe"] == 1
    assert body["sla_compliance"] == 100.0

    filtered = (await client.get("/sla/dashboard", params={"priority": "critical"})).json()
    assert filtered["total_requests"] == 1


async def test_root_lists_sla_endpoints(client):
    response = await client.get("/")
    assert response.status_code == 200
    assert "POST /sla/evaluate - Run SLA tick" in response.json()["modules"]["sla"]["endpoints"]
