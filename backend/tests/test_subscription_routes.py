from __future__ import annotations

import sys
import uuid
from pathlib import Path

from fastapi.testclient import TestClient


ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from db.database import SessionLocal  # noqa: E402
from main import app  # noqa: E402
from services import subscription_service  # noqa: E402


def _register(client: TestClient) -> tuple[dict, dict]:
    email = f"owner_{uuid.uuid4().hex[:10]}@example.com"
    resp = client.post(
        "/api/v1/auth/register",
        json={"email": email, "password": "Password123", "first_name": "Dewi", "last_name": "Lestari"},
    )
    assert resp.status_code == 201, resp.text
    body = resp.json()["data"]
    return {"Authorization": f"Bearer {body['access_token']}"}, body["user"]


def _set_plan(user_id: int, plan: str) -> None:
    db = SessionLocal()
    try:
        subscription_service.manage_subscription(db, user_id, plan=plan, status="active")
    finally:
        db.close()


def _create_questionnaire(client: TestClient, headers: dict, questions: list[dict] | None = None):
    return client.post(
        "/api/v1/questionnaires",
        headers=headers,
        json={"title": "Kepuasan Pelanggan", "questions": questions or []},
    )


def test_register_starts_on_free_plan_with_zeroed_usage():
    client = TestClient(app)
    headers, user = _register(client)
    assert user["subscription_plan"] == "free"

    me = client.get("/api/v1/auth/me", headers=headers)
    assert me.status_code == 200
    assert me.json()["data"]["email"] == user["email"]

    usage = client.get("/api/v1/subscription/usage", headers=headers)
    assert usage.status_code == 200
    data = usage.json()["data"]
    assert data["usage"]["questionnaires"] == {"used": 0, "limit": 1}
    assert data["limits"] == {"questionnaires": 1, "responses": 50, "exports": 5}


def test_subscription_routes_require_authentication():
    client = TestClient(app)
    assert client.get("/api/v1/subscription/current").status_code == 401


def test_free_plan_second_questionnaire_returns_402():
    client = TestClient(app)
    headers, _ = _register(client)

    first = _create_questionnaire(client, headers)
    assert first.status_code == 201, first.text

    second = _create_questionnaire(client, headers)
    assert second.status_code == 402
    body = second.json()
    assert body["success"] is False
    assert body["error"]["code"] == "SUBSCRIPTION_ERROR_001"
    assert body["error"]["details"] == {"current_usage": 1, "limit": 1, "upgrade_required": True}


def test_current_subscription_suggests_upgrade_when_limit_reached():
    client = TestClient(app)
    headers, _ = _register(client)
    assert _create_questionnaire(client, headers).status_code == 201

    resp = client.get("/api/v1/subscription/current", headers=headers)
    assert resp.status_code == 200
    data = resp.json()["data"]
    assert data["plan"] == "free"
    assert data["usage"]["questionnaires"]["used"] == 1
    assert data["upgrade_suggestions"][0]["plan"] == "starter"
    assert data["upgrade_suggestions"][0]["reason"] == "questionnaires_limit_approaching"


def test_csv_export_is_not_available_on_free_plan():
    client = TestClient(app)
    headers, _ = _register(client)
    qid = _create_questionnaire(client, headers).json()["data"]["id"]

    resp = client.get(f"/api/v1/questionnaires/{qid}/export", params={"format": "csv"}, headers=headers)
    assert resp.status_code == 403
    error = resp.json()["error"]
    assert error["code"] == "SUBSCRIPTION_ERROR_004"
    assert error["details"]["feature"] == "csv_export"


def test_starter_plan_exports_csv_but_not_excel():
    client = TestClient(app)
    headers, user = _register(client)
    _set_plan(user["id"], "starter")
    qid = _create_questionnaire(client, headers).json()["data"]["id"]

    csv_resp = client.get(f"/api/v1/questionnaires/{qid}/export", params={"format": "csv"}, headers=headers)
    assert csv_resp.status_code == 200
    assert csv_resp.headers["content-type"].startswith("text/csv")
    assert "attachment" in csv_resp.headers["content-disposition"]

    xlsx_resp = client.get(f"/api/v1/questionnaires/{qid}/export", params={"format": "excel"}, headers=headers)
    assert xlsx_resp.status_code == 403
    assert xlsx_resp.json()["error"]["code"] == "SUBSCRIPTION_ERROR_004"

    usage = client.get("/api/v1/subscription/usage", headers=headers).json()["data"]["usage"]
    assert usage["exports"]["used"] == 1


def test_upgrade_request_and_duplicate_conflict():
    client = TestClient(app)
    headers, _ = _register(client)

    resp = client.post(
        "/api/v1/subscription/upgrade-request",
        headers=headers,
        json={"target_plan": "starter", "reason": "More surveys"},
    )
    assert resp.status_code == 201, resp.text
    body = resp.json()
    assert body["data"]["status"] == "pending"
    assert body["message"]

    again = client.post(
        "/api/v1/subscription/upgrade-request",
        headers=headers,
        json={"target_plan": "business"},
    )
    assert again.status_code == 409
    assert again.json()["error"]["code"] == "PENDING_REQUEST_EXISTS"


def test_admin_plan_routes_reject_regular_users():
    client = TestClient(app)
    headers, _ = _register(client)
    resp = client.get("/api/v1/subscription/requests/pending", headers=headers)
    assert resp.status_code == 403


def test_plans_lists_every_tier():
    client = TestClient(app)
    headers, _ = _register(client)
    resp = client.get("/api/v1/subscription/plans", headers=headers)
    assert resp.status_code == 200
    names = [p["name"] for p in resp.json()["data"]]
    assert {"free", "starter", "business"} <= set(names)
    assert resp.json()["current_plan"] == "free"


def test_public_response_submission_charges_owner_and_flags_low_ratings():
    client = TestClient(app)
    headers, _ = _register(client)
    created = _create_questionnaire(
        client,
        headers,
        questions=[
            {"question_text": "Rate our service", "question_type": "rating", "is_required": True},
            {"question_text": "Anything else?", "question_type": "text"},
        ],
    ).json()["data"]
    rating_q, text_q = [q["id"] for q in created["questions"]]

    public = TestClient(app)
    missing = public.post(
        "/api/v1/responses",
        json={"questionnaire_id": created["id"], "answers": [{"question_id": text_q, "answer_value": "hi"}]},
    )
    assert missing.status_code == 400

    ok = public.post(
        "/api/v1/responses",
        json={"questionnaire_id": created["id"], "answers": [{"question_id": rating_q, "rating_score": 1}]},
    )
    assert ok.status_code == 201, ok.text
    data = ok.json()["data"]
    assert data["auto_flagged"] is True
    assert data["is_complete"] is False

    usage = client.get("/api/v1/subscription/usage", headers=headers).json()["data"]["usage"]
    assert usage["responses"]["used"] == 1

    listed = client.get(f"/api/v1/questionnaires/{created['id']}/responses", headers=headers)
    assert listed.status_code == 200


def test_response_to_unknown_questionnaire_is_404():
    client = TestClient(app)
    resp = client.post(
        "/api/v1/responses",
        json={"questionnaire_id": 987654321, "answers": [{"question_id": 1, "answer_value": "x"}]},
    )
    assert resp.status_code == 404


def test_advanced_analytics_requires_business_plan():
    client = TestClient(app)
    headers, user = _register(client)
    qid = _create_questionnaire(client, headers).json()["data"]["id"]

    summary = client.get(f"/api/v1/analytics/questionnaires/{qid}/summary", headers=headers)
    assert summary.status_code == 200

    denied = client.get(f"/api/v1/analytics/questionnaires/{qid}/breakdown", headers=headers)
    assert denied.status_code == 403
    assert denied.json()["error"]["code"] == "SUBSCRIPTION_ERROR_004"

    _set_plan(user["id"], "business")
    allowed = client.get(
        f"/api/v1/analytics/questionnaires/{qid}/breakdown",
        params={"period": "month"},
        headers=headers,
    )
    assert allowed.status_code == 200
    assert allowed.json()["data"]["period"] == "month"


def test_health_endpoint_sets_security_headers():
    client = TestClient(app)
    resp = client.get("/api/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"
    assert resp.headers.get("x-content-type-options") == "nosniff"
    assert resp.headers.get("x-frame-options") == "DENY"
    assert resp.headers.get("referrer-policy") == "strict-origin-when-cross-origin"


def test_login_with_registered_credentials():
    client = TestClient(app)
    _, user = _register(client)

    bad = client.post("/api/v1/auth/login", json={"email": user["email"], "password": "wrong-pass"})
    assert bad.status_code == 401

    ok = client.post("/api/v1/auth/login", json={"email": user["email"].upper(), "password": "Password123"})
    assert ok.status_code == 200
    assert ok.json()["data"]["token_type"] == "bearer"
    assert ok.json()["data"]["user"]["id"] == user["id"]


def test_admin_token_is_not_accepted_as_user_token():
    from auth.enterprise_admin import create_session_token

    client = TestClient(app)
    resp = client.get("/api/v1/auth/me", headers={"Authorization": f"Bearer {create_session_token(1, 'admin_x')}"})
    assert resp.status_code == 401
