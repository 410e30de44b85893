import pytest
from sqlalchemy import select

from conftest import auth_header
from interview_credits.models.billing import CreditUsageLog

ACCOUNT = "api-user"
ADMIN = "admin-account"


async def _grant(client, account_id, amount, reference_id=None):
    resp = await client.post(
        f"/api/admin/accounts/{account_id}/credits",
        json={"kind": "grant", "amount": amount, "reference_id": reference_id},
        headers=auth_header(ADMIN),
    )
    assert resp.status_code == 200, resp.text
    return resp.json()


@pytest.mark.asyncio
async def test_health(client):
    resp = await client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"ok": True}


@pytest.mark.asyncio
async def test_requests_without_token_are_unauthorized(client):
    resp = await client.get("/api/credits/balance")
    assert resp.status_code == 401
    body = resp.json()
    assert body["type"] == "error"
    assert body["error"]["type"] == "unauthorized"

    resp = await client.get("/api/credits/balance", headers={"Authorization": "Bearer not-a-jwt"})
    assert resp.status_code == 401


@pytest.mark.asyncio
async def test_full_session_lifecycle_over_http(client):
    headers = auth_header(ACCOUNT)

    resp = await client.post("/api/sessions", json={"session_type": "full"}, headers=headers)
    assert resp.status_code == 402
    assert resp.json()["error"]["type"] == "insufficient_credits"
    assert resp.json()["error"]["required"] == 1

    await _grant(client, ACCOUNT, 2, reference_id="checkout-1")

    resp = await client.post(
        "/api/sessions",
        json={"session_type": "full", "company": "Acme", "position": "Data Engineer", "metadata": {"k": "v"}},
        headers=headers,
    )
    assert resp.status_code == 201
    session = resp.json()["session"]
    assert session["status"] == "pending"
    assert session["session_metadata"] == {"k": "v"}

    resp = await client.post(f"/api/sessions/{session['id']}/start", headers=headers)
    assert resp.status_code == 200
    assert resp.json()["credits_deducted"] == 1

    resp = await client.post(f"/api/sessions/{session['id']}/usage", headers=headers)
    assert resp.json()["ai_usage_count"] == 1

    resp = await client.post(f"/api/sessions/{session['id']}/complete", headers=headers)
    assert resp.status_code == 200
    assert resp.json()["session"]["status"] == "completed"

    resp = await client.post(f"/api/sessions/{session['id']}/cancel", headers=headers)
    assert resp.status_code == 409
    assert resp.json()["error"]["type"] == "invalid_state"

    resp = await client.get("/api/credits/balance", headers=headers)
    assert resp.json() == {"total": 2, "used": 1, "available": 1}

    resp = await client.get("/api/sessions", headers=headers)
    assert resp.json()["pagination"]["total"] == 1


@pytest.mark.asyncio
async def test_other_accounts_get_404(client):
    resp = await client.post("/api/sessions", json={"session_type": "trial"}, headers=auth_header(ACCOUNT))
    session_id = resp.json()["session"]["id"]

    resp = await client.get(f"/api/sessions/{session_id}", headers=auth_header("someone-else"))
    assert resp.status_code == 404
    assert resp.json()["error"]["type"] == "not_found"


@pytest.mark.asyncio
async def test_invalid_session_type_is_bad_request(client):
    resp = await client.post("/api/sessions", json={"session_type": "premium"}, headers=auth_header(ACCOUNT))
    assert resp.status_code == 400

    resp = await client.post("/api/sessions", json={}, headers=auth_header(ACCOUNT))
    assert resp.status_code == 400
    assert resp.json()["error"]["type"] == "validation_error"


@pytest.mark.asyncio
async def test_welcome_bonus_via_evaluate_rules(client, rule_engine):
    await rule_engine.ensure_default_rules()
    headers = auth_header("new-user")

    resp = await client.post("/api/credits/evaluate-rules", json={"trigger": "login"}, headers=headers)
    assert resp.status_code == 200
    body = resp.json()
    assert body["allocated"] == [{"rule_name": "welcome_bonus", "amount": 5, "rule_type": "one_time"}]
    assert body["errors"] == []

    resp = await client.post("/api/credits/evaluate-rules", json={"trigger": "login"}, headers=headers)
    assert resp.json()["allocated"] == []

    resp = await client.post("/api/credits/allocate", json={"rule_name": "welcome_bonus"}, headers=headers)
    assert resp.status_code == 409
    assert resp.json()["error"]["type"] == "rule_limit_reached"

    resp = await client.get("/api/credits/history", headers=headers)
    body = resp.json()
    assert body["pagination"]["total"] == 1
    assert body["transactions"][0]["kind"] == "bonus"
    assert body["current_balance"]["available"] == 5


@pytest.mark.asyncio
async def test_validate_endpoint(client):
    resp = await client.post(
        "/api/credits/validate", json={"required_credits": 1}, headers=auth_header("broke-user")
    )
    assert resp.status_code == 200
    assert resp.json()["valid"] is False

    resp = await client.post(
        "/api/credits/validate", json={"required_credits": 0}, headers=auth_header("broke-user")
    )
    assert resp.status_code == 400
    assert resp.json()["error"]["type"] == "invalid_amount"


@pytest.mark.asyncio
async def test_admin_routes_require_admin(client):
    resp = await client.post(
        f"/api/admin/accounts/{ACCOUNT}/credits", json={"amount": 5}, headers=auth_header(ACCOUNT)
    )
    assert resp.status_code == 403

    resp = await client.get("/api/admin/me", headers=auth_header(ACCOUNT))
    assert resp.json()["is_admin"] is False


@pytest.mark.asyncio
async def test_admin_grant_is_idempotent_and_reconciles(client):
    await _grant(client, "paid-user", 10, reference_id="pi_123")
    body = await _grant(client, "paid-user", 10, reference_id="pi_123")
    assert body["balance"] == {"total": 10, "used": 0, "available": 10}

    resp = await client.post(
        "/api/admin/accounts/paid-user/credits",
        json={"kind": "usage", "amount": -1},
        headers=auth_header(ADMIN),
    )
    assert resp.status_code == 400

    resp = await client.post(
        "/api/admin/accounts/paid-user/credits",
        json={"kind": "adjustment", "amount": -20},
        headers=auth_header(ADMIN),
    )
    assert resp.status_code == 402

    resp = await client.get("/api/admin/accounts/paid-user/reconcile", headers=auth_header(ADMIN))
    assert resp.json()["consistent"] is True


@pytest.mark.asyncio
async def test_admin_rule_management(client):
    headers = auth_header(ADMIN)
    resp = await client.put(
        "/api/admin/rules/referral_bonus",
        json={"credit_amount": 2, "conditions": {"trigger": "referral"}, "max_uses_per_account": 3},
        headers=headers,
    )
    assert resp.status_code == 200
    assert resp.json()["rule"]["credit_amount"] == 2

    resp = await client.get("/api/admin/rules", headers=headers)
    assert [r["rule_name"] for r in resp.json()["rules"]] == ["referral_bonus"]

    resp = await client.post(
        "/api/credits/evaluate-rules", json={"trigger": "referral"}, headers=auth_header("referrer")
    )
    assert resp.json()["total_credits"] == 2


@pytest.mark.asyncio
async def test_deduct_spends_credits_and_logs_usage(client, session_factory):
    headers = auth_header("spender")
    await _grant(client, "spender", 3)

    resp = await client.post(
        "/api/credits/deduct",
        json={"amount": 2, "reference_id": "mock-1", "usage_type": "mock_interview"},
        headers=headers,
    )
    assert resp.status_code == 200, resp.text
    body = resp.json()
    assert body["credits"] == {"total": 3, "used": 2, "available": 1}
    assert body["transaction"]["amount"] == -2
    assert body["transaction"]["kind"] == "usage"
    assert body["transaction"]["description"] == "Credit usage: mock_interview"

    # Same reference replays the original debit
    resp = await client.post(
        "/api/credits/deduct",
        json={"amount": 2, "reference_id": "mock-1", "usage_type": "mock_interview"},
        headers=headers,
    )
    assert resp.status_code == 200
    assert resp.json()["credits"]["available"] == 1

    async with session_factory() as db:
        rows = (await db.execute(select(CreditUsageLog))).scalars().all()
    assert [(r.usage_type, r.credits_used, r.reference_id) for r in rows] == [("mock_interview", 2, "mock-1")]


@pytest.mark.asyncio
async def test_deduct_rejects_bad_amounts_and_overdrafts(client):
    headers = auth_header("short-user")
    await _grant(client, "short-user", 1)

    resp = await client.post("/api/credits/deduct", json={"amount": 0}, headers=headers)
    assert resp.status_code == 400
    assert resp.json()["error"]["type"] == "invalid_amount"

    resp = await client.post("/api/credits/deduct", json={"amount": 2}, headers=headers)
    assert resp.status_code == 402
    assert resp.json()["error"]["type"] == "insufficient_balance"

    resp = await client.get("/api/credits/balance", headers=headers)
    assert resp.json() == {"total": 1, "used": 0, "available": 1}


@pytest.mark.asyncio
async def test_delete_session(client):
    headers = auth_header(ACCOUNT)
    await _grant(client, ACCOUNT, 1)
    resp = await client.post("/api/sessions", json={"session_type": "full"}, headers=headers)
    session_id = resp.json()["session"]["id"]
    await client.post(f"/api/sessions/{session_id}/start", headers=headers)

    resp = await client.delete(f"/api/sessions/{session_id}", headers=auth_header("someone-else"))
    assert resp.status_code == 404
    assert resp.json()["error"]["type"] == "not_found"

    resp = await client.delete(f"/api/sessions/{session_id}", headers=headers)
    assert resp.status_code == 200
    assert resp.json() == {"success": True, "session_id": session_id}

    resp = await client.get(f"/api/sessions/{session_id}", headers=headers)
    assert resp.status_code == 404

    resp = await client.get("/api/credits/balance", headers=headers)
    assert resp.json() == {"total": 1, "used": 1, "available": 0}


@pytest.mark.asyncio
async def test_admin_rule_validation(client):
    headers = auth_header(ADMIN)
    resp = await client.put(
        "/api/admin/rules/weekly_bonus",
        json={"credit_amount": 1, "rule_type": "weekly"},
        headers=headers,
    )
    assert resp.status_code == 400
    assert resp.json()["error"]["type"] == "validation_error"

    resp = await client.put(
        "/api/admin/rules/streak_bonus",
        json={"credit_amount": 1, "rule_type": "recurring", "conditions": {"min_interval_hours": "soon"}},
        headers=headers,
    )
    assert resp.status_code == 400
    assert resp.json()["error"]["type"] == "validation_error"
