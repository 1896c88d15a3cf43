from unittest.mock import patch

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from database import get_db
from main import app
from routers.auth_scope import get_engine_context
from services.session_token import create_session_token


@pytest_asyncio.fixture
async def api_client(session_maker, engine_ctx):
    async def override_get_db():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_engine_context] = lambda: engine_ctx
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

    app.dependency_overrides.pop(get_db, None)
    app.dependency_overrides.pop(get_engine_context, None)


async def _login(client, email="creator@example.com"):
    with patch("routers.auth.settings.SHORT_CODE_ECHO_IN_RESPONSE", True):
        issued = await client.post("/auth/code", json={"email": email})
    assert issued.status_code == 200
    code = issued.json()["code"]

    verified = await client.post("/auth/code/verify", json={"email": email, "code": code})
    assert verified.status_code == 200
    body = verified.json()
    return {"Authorization": f"Bearer {body['session_token']}"}, body


@pytest.mark.asyncio
async def test_login_code_flow_opens_session_with_free_plan(api_client):
    headers, body = await _login(api_client)

    assert body["plan_code"] == "FREE"
    assert body["credit_balance"] == 50
    me = await api_client.get("/auth/me", headers=headers)
    assert me.json()["user_id"] == body["user_id"]

    replay = await api_client.post("/auth/code/verify", json={"email": "creator@example.com", "code": "000000"})
    assert replay.status_code == 401


@pytest.mark.asyncio
async def test_generation_routes_require_session(api_client):
    response = await api_client.get("/generations")
    assert response.status_code == 401

    forged = create_session_token("someone")["token"] + "x"
    response = await api_client.get("/generations", headers={"Authorization": f"Bearer {forged}"})
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_create_complete_and_publish_flow(api_client):
    headers, session = await _login(api_client)

    created = await api_client.post(
        "/generations",
        json={"prompt": "studio portrait", "model": "flux-pro", "generation_type": "text-to-image"},
        headers=headers,
    )
    assert created.status_code == 200
    history_id = created.json()["id"]

    completed = await api_client.post(
        f"/generations/{history_id}/complete",
        json={
            "media": [{"kind": "image", "id": "img-1", "url": "https://cdn.test/img-1.png", "is_public": True}],
            "credit_cost": 3,
        },
        headers=headers,
    )
    assert completed.status_code == 200
    assert completed.json()["debit"] == "WRITTEN"
    assert completed.json()["record"]["is_public"] is True

    credits = await api_client.get("/billing/credits", headers=headers)
    assert credits.json()["credit_balance"] == session["credit_balance"] - 3

    feed = await api_client.get("/feed")
    assert feed.status_code == 200
    assert [item["id"] for item in feed.json()["items"]] == [history_id]

    by_mode = await api_client.get("/generations", params={"mode": "image", "limit": 5}, headers=headers)
    assert by_mode.json()["items"][0]["id"] == history_id
    assert by_mode.json()["total_count"] is None

    by_type = await api_client.get("/generations", params={"generation_type": "text-to-image"}, headers=headers)
    assert by_type.json()["total_count"] == 1

    stats_response = await api_client.get("/generations/stats", headers=headers)
    assert stats_response.json()["by_status"]["completed"] == 1

    deleted = await api_client.delete(f"/generations/{history_id}", headers=headers)
    assert deleted.json()["is_deleted"] is True
    assert (await api_client.get("/feed")).json()["items"] == []


@pytest.mark.asyncio
async def test_engine_errors_map_to_http_statuses(api_client):
    headers, _ = await _login(api_client)
    created = await api_client.post(
        "/generations",
        json={"model": "suno-v4", "generation_type": "text-to-music"},
        headers=headers,
    )
    history_id = created.json()["id"]
    await api_client.post(f"/generations/{history_id}/fail", json={"error": "provider timeout"}, headers=headers)

    invalid = await api_client.post(
        f"/generations/{history_id}/complete",
        json={"media": [{"kind": "audio", "id": "a-1", "url": "https://cdn.test/a-1.mp3"}]},
        headers=headers,
    )
    assert invalid.status_code == 400
    assert "failed -> completed" in invalid.json()["detail"]

    missing = await api_client.get("/generations/does-not-exist", headers=headers)
    assert missing.status_code == 404

    bad_cursor = await api_client.get("/generations", params={"cursor": "%%%"}, headers=headers)
    assert bad_cursor.status_code == 400

    too_many = await api_client.get("/generations", params={"limit": 500}, headers=headers)
    assert too_many.status_code == 422

    status_patch = await api_client.patch(
        f"/generations/{history_id}",
        json={"status": "completed"},
        headers=headers,
    )
    assert status_patch.status_code == 422

    delete_with_edits = await api_client.patch(
        f"/generations/{history_id}",
        json={"is_deleted": True, "tags": ["keep"]},
        headers=headers,
    )
    assert delete_with_edits.status_code == 422
    assert (await api_client.get(f"/generations/{history_id}", headers=headers)).json()["is_deleted"] is False


@pytest.mark.asyncio
async def test_billing_debit_is_idempotent(api_client):
    headers, _ = await _login(api_client)
    payload = {"idempotency_key": "export-42", "amount": 5, "reason": "export.hd"}

    first = await api_client.post("/billing/debit", json=payload, headers=headers)
    second = await api_client.post("/billing/debit", json=payload, headers=headers)

    assert first.json() == {"outcome": "WRITTEN", "credit_balance": 45}
    assert second.json() == {"outcome": "SKIPPED", "credit_balance": 45}


@pytest.mark.asyncio
async def test_plan_grant_requires_configured_secret(api_client):
    _, session = await _login(api_client)
    grant = {
        "user_id": session["user_id"],
        "idempotency_key": "pay_123",
        "credits": 1000,
        "plan_code": "PRO",
    }

    with patch("routers.billing.settings.PLAN_GRANT_SECRET", ""):
        unconfigured = await api_client.post("/billing/plan-grant", json=grant)
    assert unconfigured.status_code == 503

    with patch("routers.billing.settings.PLAN_GRANT_SECRET", "relay-secret"):
        wrong = await api_client.post("/billing/plan-grant", json=grant, headers={"X-Plan-Grant-Secret": "nope"})
        first = await api_client.post("/billing/plan-grant", json=grant, headers={"X-Plan-Grant-Secret": "relay-secret"})
        replay = await api_client.post("/billing/plan-grant", json=grant, headers={"X-Plan-Grant-Secret": "relay-secret"})

    assert wrong.status_code == 403
    assert first.json() == {"outcome": "WRITTEN", "credit_balance": 1000, "plan_code": "PRO"}
    assert replay.json()["outcome"] == "SKIPPED"
