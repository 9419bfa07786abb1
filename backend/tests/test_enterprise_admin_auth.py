from __future__ import annotations

import sys
import uuid
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

import pyotp
import pytest
from fastapi.testclient import TestClient


ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from auth.enterprise_admin import (  # noqa: E402
    check_account_lockout,
    cleanup_expired_sessions,
    create_session,
    create_session_token,
    destroy_session,
    get_effective_permissions,
    has_permission,
    track_failed_attempt,
    verify_session_two_factor,
)
from auth.utils import hash_password  # noqa: E402
from config import settings  # noqa: E402
from db.database import SessionLocal  # noqa: E402
from db.models import AdminActivity, AdminRole, AdminUser, Review, User  # noqa: E402
from main import app  # noqa: E402
from services.errors import AdminAuthError  # noqa: E402
from services.rate_limit_service import get_rate_limiter  # noqa: E402
from services.session_store import (  # noqa: E402
    InMemoryAdminSessionStore,
    InMemoryLoginAttemptStore,
    get_admin_session_store,
    get_login_attempt_store,
)
from utils.encryption import encrypt_secret  # noqa: E402

PASSWORD = "AdminPass123!"


@pytest.fixture(autouse=True)
def stores():
    sessions = InMemoryAdminSessionStore()
    attempts = InMemoryLoginAttemptStore()
    app.dependency_overrides[get_admin_session_store] = lambda: sessions
    app.dependency_overrides[get_login_attempt_store] = lambda: attempts
    get_rate_limiter().reset()
    yield sessions, attempts
    app.dependency_overrides.pop(get_admin_session_store, None)
    app.dependency_overrides.pop(get_login_attempt_store, None)
    get_rate_limiter().reset()


def _create_admin(role_name: str = "super_admin", two_factor_secret: str | None = None) -> tuple[str, int]:
    email = f"admin_{uuid.uuid4().hex[:10]}@example.com"
    db = SessionLocal()
    try:
        role = db.query(AdminRole).filter(AdminRole.name == role_name).one()
        user = User(
            email=email,
            password_hash=hash_password(PASSWORD),
            first_name="Budi",
            last_name="Santoso",
            subscription_plan="admin",
            subscription_status="active",
            email_verified=True,
        )
        db.add(user)
        db.flush()
        admin = AdminUser(
            user_id=user.id,
            role_id=role.id,
            is_active=True,
            two_factor_enabled=bool(two_factor_secret),
            two_factor_secret=encrypt_secret(two_factor_secret) if two_factor_secret else None,
        )
        db.add(admin)
        db.commit()
        return email, admin.id
    finally:
        db.close()


def _login(client: TestClient, email: str, password: str = PASSWORD, **extra):
    return client.post("/api/v1/enterprise-admin/auth/login", json={"email": email, "password": password, **extra})


def _bearer(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


# ---------------------------------------------------------------------------
# Unit level
# ---------------------------------------------------------------------------

def test_lockout_after_max_failures_then_expires():
    attempts = InMemoryLoginAttemptStore()
    for _ in range(settings.ADMIN_LOCKOUT_MAX_ATTEMPTS):
        track_failed_attempt(attempts, "locked@example.com", now=1000.0)

    with pytest.raises(AdminAuthError) as exc:
        check_account_lockout(attempts, "locked@example.com", now=1060.0)
    assert exc.value.status_code == 429
    assert exc.value.code == "Account Locked"
    assert exc.value.extra["lockoutRemaining"] == 14 * 60

    check_account_lockout(attempts, "locked@example.com", now=1000.0 + settings.ADMIN_LOCKOUT_DURATION_SECONDS)
    assert attempts.get("locked@example.com") is None


def test_fewer_failures_do_not_lock():
    attempts = InMemoryLoginAttemptStore()
    for _ in range(settings.ADMIN_LOCKOUT_MAX_ATTEMPTS - 1):
        track_failed_attempt(attempts, "almost@example.com", now=1000.0)
    check_account_lockout(attempts, "almost@example.com", now=1001.0)


def test_sweep_removes_only_idle_sessions():
    store = InMemoryAdminSessionStore()
    stale = create_session(store, 1, now=0.0)
    fresh = create_session(store, 2, now=float(settings.ADMIN_SESSION_TIMEOUT_SECONDS))

    removed = cleanup_expired_sessions(store, now=float(settings.ADMIN_SESSION_TIMEOUT_SECONDS) + 1)
    assert removed == 1
    assert store.get(stale.session_id) is None
    assert store.get(fresh.session_id) is not None


def test_session_store_returns_copies():
    store = InMemoryAdminSessionStore()
    session = create_session(store, 7)
    copy = store.get(session.session_id)
    copy.two_factor_verified = True
    assert store.get(session.session_id).two_factor_verified is False


def test_wildcard_role_collapses_permissions():
    role = AdminRole(name="super_admin", permissions_json='["*"]', level=100)
    admin = AdminUser(role=role, permissions_json='["user_view"]')
    assert get_effective_permissions(admin) == ["*"]
    assert has_permission(["*"], "anything")


def test_custom_permissions_are_merged_without_duplicates():
    role = AdminRole(name="analyst", permissions_json='["analytics_view", "user_view"]', level=30)
    admin = AdminUser(role=role, permissions_json='["user_view", "content_moderation"]')
    assert get_effective_permissions(admin) == ["analytics_view", "user_view", "content_moderation"]
    assert not has_permission(get_effective_permissions(admin), "system_monitoring")


# ---------------------------------------------------------------------------
# Request level
# ---------------------------------------------------------------------------

def test_login_returns_token_and_session_works():
    email, admin_id = _create_admin()
    client = TestClient(app)

    resp = _login(client, email)
    assert resp.status_code == 200, resp.text
    data = resp.json()["data"]
    assert data["adminUser"]["id"] == admin_id
    assert data["adminUser"]["permissions"] == ["*"]

    session = client.get("/api/v1/enterprise-admin/auth/session", headers=_bearer(data["token"]))
    assert session.status_code == 200
    assert session.json()["data"]["session"]["sessionId"] == data["session"]["sessionId"]

    db = SessionLocal()
    try:
        admin = db.get(AdminUser, admin_id)
        assert admin.login_count == 1
        assert admin.last_login_at is not None
        actions = [a.action for a in db.query(AdminActivity).filter(AdminActivity.admin_user_id == admin_id)]
        assert "ADMIN_LOGIN" in actions
    finally:
        db.close()


def test_login_with_wrong_password_is_rejected():
    email, _ = _create_admin()
    resp = _login(TestClient(app), email, password="wrong-password")
    assert resp.status_code == 401
    assert resp.json()["error"] == "Invalid Credentials"


def test_regular_user_cannot_log_in_as_admin():
    client = TestClient(app)
    email = f"plain_{uuid.uuid4().hex[:10]}@example.com"
    reg = client.post(
        "/api/v1/auth/register",
        json={"email": email, "password": PASSWORD, "first_name": "Plain"},
    )
    assert reg.status_code == 201
    assert _login(client, email).json()["error"] == "Invalid Credentials"


def test_login_missing_fields_is_validation_error():
    resp = _login(TestClient(app), "", password="")
    assert resp.status_code == 400
    assert resp.json()["error"] == "Validation Error"


def test_sixth_attempt_is_locked_even_with_correct_password(stores):
    _, attempts = stores
    email, _ = _create_admin()
    client = TestClient(app)
    for _ in range(settings.ADMIN_LOCKOUT_MAX_ATTEMPTS):
        assert _login(client, email, password="wrong-password").status_code == 401
    assert attempts.get(email).count == settings.ADMIN_LOCKOUT_MAX_ATTEMPTS

    locked = _login(client, email)
    assert locked.status_code == 429
    body = locked.json()
    assert body["error"] == "Account Locked"
    assert body["lockoutRemaining"] > 0


def test_successful_login_clears_failed_attempts(stores):
    _, attempts = stores
    email, _ = _create_admin()
    client = TestClient(app)
    _login(client, email, password="wrong-password")
    assert attempts.get(email).count == 1
    assert _login(client, email).status_code == 200
    assert attempts.get(email) is None


def test_login_endpoint_is_strictly_rate_limited():
    client = TestClient(app)
    for _ in range(settings.RATE_LIMIT_ADMIN_STRICT_REQUESTS):
        _login(client, "nobody@example.com", password="wrong-password")
    resp = _login(client, "nobody@example.com", password="wrong-password")
    assert resp.status_code == 429
    assert resp.json()["error"] == "Rate Limit Exceeded"
    assert int(resp.headers["Retry-After"]) >= 1


def test_missing_token_requires_authentication():
    resp = TestClient(app).get("/api/v1/enterprise-admin/auth/session")
    assert resp.status_code == 401
    assert resp.json()["error"] == "Authentication Required"


def test_garbage_token_is_invalid_token():
    resp = TestClient(app).get("/api/v1/enterprise-admin/auth/session", headers=_bearer("not-a-jwt"))
    assert resp.status_code == 401
    assert resp.json()["error"] == "Invalid Token"


def test_valid_token_without_server_session_is_invalid_session():
    _, admin_id = _create_admin()
    token = create_session_token(admin_id, "admin_0_deadbeef")
    resp = TestClient(app).get("/api/v1/enterprise-admin/auth/session", headers=_bearer(token))
    assert resp.status_code == 401
    assert resp.json()["error"] == "Invalid Session"


def test_token_accepted_from_query_parameter():
    email, _ = _create_admin()
    client = TestClient(app)
    token = _login(client, email).json()["data"]["token"]
    resp = client.get("/api/v1/enterprise-admin/auth/session", params={"token": token})
    assert resp.status_code == 200


def test_logout_destroys_session():
    email, _ = _create_admin()
    client = TestClient(app)
    token = _login(client, email).json()["data"]["token"]
    assert client.post("/api/v1/enterprise-admin/auth/logout", headers=_bearer(token)).status_code == 200
    resp = client.get("/api/v1/enterprise-admin/auth/session", headers=_bearer(token))
    assert resp.status_code == 401
    assert resp.json()["error"] == "Invalid Session"


def test_two_factor_login_flow():
    secret = pyotp.random_base32(length=32)
    email, _ = _create_admin(two_factor_secret=secret)
    client = TestClient(app)

    challenge = _login(client, email)
    assert challenge.status_code == 200
    assert challenge.json()["requiresTwoFactor"] is True
    assert "data" not in challenge.json()

    bad = _login(client, email, twoFactorToken="abcdef")
    assert bad.status_code == 401
    assert bad.json()["error"] == "Invalid Two-Factor Token"

    ok = _login(client, email, twoFactorToken=pyotp.TOTP(secret).now())
    assert ok.status_code == 200
    token = ok.json()["data"]["token"]
    session = client.get("/api/v1/enterprise-admin/auth/session", headers=_bearer(token))
    assert session.status_code == 200
    assert session.json()["data"]["session"]["twoFactorVerified"] is True


def test_unverified_session_for_two_factor_admin_is_forbidden(stores):
    sessions, _ = stores
    _, admin_id = _create_admin(two_factor_secret=pyotp.random_base32(length=32))
    session = create_session(sessions, admin_id)
    token = create_session_token(admin_id, session.session_id)

    resp = TestClient(app).get("/api/v1/enterprise-admin/auth/session", headers=_bearer(token))
    assert resp.status_code == 403
    assert resp.json()["error"] == "Two-Factor Authentication Required"
    assert resp.json()["requiresTwoFactor"] is True


def test_two_factor_setup_and_verify_enables_it():
    email, admin_id = _create_admin()
    client = TestClient(app)
    headers = _bearer(_login(client, email).json()["data"]["token"])

    setup = client.post("/api/v1/enterprise-admin/auth/2fa/setup", headers=headers)
    assert setup.status_code == 200
    data = setup.json()["data"]
    assert data["qrCode"].startswith("data:image/png;base64,")
    assert data["otpauthUrl"].startswith("otpauth://totp/")

    bad = client.post("/api/v1/enterprise-admin/auth/2fa/verify", headers=headers, json={"token": "12345678"})
    assert bad.status_code == 400

    verify = client.post(
        "/api/v1/enterprise-admin/auth/2fa/verify",
        headers=headers,
        json={"token": pyotp.TOTP(data["secret"]).now()},
    )
    assert verify.status_code == 200

    # The session that enabled 2FA stays usable.
    assert client.get("/api/v1/enterprise-admin/auth/session", headers=headers).status_code == 200

    db = SessionLocal()
    try:
        assert db.get(AdminUser, admin_id).two_factor_enabled is True
    finally:
        db.close()

    again = client.post("/api/v1/enterprise-admin/auth/2fa/setup", headers=headers)
    assert again.status_code == 400
    assert again.json()["error"] == "Already Enabled"


def test_change_password_invalidates_sessions():
    email, _ = _create_admin()
    client = TestClient(app)
    headers = _bearer(_login(client, email).json()["data"]["token"])

    wrong = client.post(
        "/api/v1/enterprise-admin/auth/change-password",
        headers=headers,
        json={"currentPassword": "nope-nope", "newPassword": "NewAdminPass456!"},
    )
    assert wrong.status_code == 401
    assert wrong.json()["error"] == "Invalid Current Password"

    changed = client.post(
        "/api/v1/enterprise-admin/auth/change-password",
        headers=headers,
        json={"currentPassword": PASSWORD, "newPassword": "NewAdminPass456!"},
    )
    assert changed.status_code == 200
    assert changed.json()["data"]["requiresReauthentication"] is True

    assert client.get("/api/v1/enterprise-admin/auth/session", headers=headers).json()["error"] == "Invalid Session"
    assert _login(client, email, password="NewAdminPass456!").status_code == 200


def test_refresh_issues_token_for_same_session():
    email, _ = _create_admin()
    client = TestClient(app)
    login = _login(client, email).json()["data"]
    refreshed = client.post("/api/v1/enterprise-admin/auth/refresh", headers=_bearer(login["token"]))
    assert refreshed.status_code == 200
    session = client.get("/api/v1/enterprise-admin/auth/session", headers=_bearer(refreshed.json()["data"]["token"]))
    assert session.json()["data"]["session"]["sessionId"] == login["session"]["sessionId"]


def test_support_role_permissions_are_enforced():
    email, _ = _create_admin(role_name="support")
    client = TestClient(app)
    headers = _bearer(_login(client, email).json()["data"]["token"])

    assert client.get("/api/v1/enterprise-admin/users", headers=headers).status_code == 200
    assert client.get("/api/v1/enterprise-admin/reviews", headers=headers).status_code == 200

    denied = client.get("/api/v1/enterprise-admin/activity", headers=headers)
    assert denied.status_code == 403
    assert denied.json()["error"] == "Insufficient Permissions"


def test_creating_admin_users_requires_top_role_level():
    email, _ = _create_admin(role_name="admin")
    client = TestClient(app)
    headers = _bearer(_login(client, email).json()["data"]["token"])
    payload = {
        "email": f"new_{uuid.uuid4().hex[:10]}@example.com",
        "password": "Password123",
        "first_name": "Rina",
        "role": "support",
    }
    denied = client.post("/api/v1/enterprise-admin/admin-users", headers=headers, json=payload)
    assert denied.status_code == 403
    assert denied.json()["error"] == "Insufficient Role Level"

    super_email, _ = _create_admin()
    super_headers = _bearer(_login(client, super_email).json()["data"]["token"])
    created = client.post("/api/v1/enterprise-admin/admin-users", headers=super_headers, json=payload)
    assert created.status_code == 201, created.text
    assert created.json()["data"]["role"]["name"] == "support"

    duplicate = client.post("/api/v1/enterprise-admin/admin-users", headers=super_headers, json=payload)
    assert duplicate.status_code == 409


def test_admin_processes_upgrade_request():
    client = TestClient(app)
    user_email = f"cust_{uuid.uuid4().hex[:10]}@example.com"
    reg = client.post(
        "/api/v1/auth/register",
        json={"email": user_email, "password": "Password123", "first_name": "Ayu"},
    ).json()["data"]
    user_headers = _bearer(reg["access_token"])
    request_id = client.post(
        "/api/v1/subscription/upgrade-request",
        headers=user_headers,
        json={"target_plan": "starter"},
    ).json()["data"]["request_id"]

    email, _ = _create_admin(role_name="admin")
    headers = _bearer(_login(client, email).json()["data"]["token"])

    pending = client.get("/api/v1/enterprise-admin/subscription-requests/pending", headers=headers)
    assert pending.status_code == 403

    resp = client.post(
        f"/api/v1/enterprise-admin/subscription-requests/{request_id}/process",
        headers=headers,
        json={"action": "approve", "admin_notes": "ok"},
    )
    assert resp.status_code == 200, resp.text
    assert resp.json()["data"]["status"] == "approved"

    again = client.post(
        f"/api/v1/enterprise-admin/subscription-requests/{request_id}/process",
        headers=headers,
        json={"action": "reject"},
    )
    assert again.status_code == 409
    assert again.json()["error"]["code"] == "INVALID_STATUS"

    me = client.get("/api/v1/auth/me", headers=user_headers).json()["data"]
    assert me["subscription_plan"] == "starter"


def test_touch_does_not_restore_a_deleted_session():
    store = InMemoryAdminSessionStore()
    session = create_session(store, 11)
    seen = store.get(session.session_id)
    destroy_session(store, session.session_id)

    assert store.touch(seen.session_id) is False
    assert verify_session_two_factor(store, seen.session_id) is False
    assert store.get(seen.session_id) is None
    assert len(store) == 0


def test_concurrent_failures_are_all_counted():
    attempts = InMemoryLoginAttemptStore()
    with ThreadPoolExecutor(max_workers=10) as pool:
        list(pool.map(lambda _: track_failed_attempt(attempts, "burst@example.com"), range(50)))
    assert attempts.get("burst@example.com").count == 50


class _LogoutDuringLookupStore(InMemoryAdminSessionStore):
    """Deletes the session right after it is read, like a logout landing mid-request."""

    def get(self, session_id):
        session = super().get(session_id)
        self.delete(session_id)
        return session


def test_session_removed_mid_request_stays_removed():
    email, _ = _create_admin()
    client = TestClient(app)
    login = _login(client, email).json()["data"]

    racing = _LogoutDuringLookupStore()
    original = app.dependency_overrides[get_admin_session_store]()
    racing.create(original.get(login["session"]["sessionId"]))
    app.dependency_overrides[get_admin_session_store] = lambda: racing

    resp = client.get("/api/v1/enterprise-admin/auth/session", headers=_bearer(login["token"]))
    assert resp.status_code == 401
    assert resp.json()["error"] == "Invalid Session"
    assert len(racing) == 0


def _register_customer(client: TestClient) -> tuple[str, dict]:
    email = f"cust_{uuid.uuid4().hex[:10]}@example.com"
    data = client.post(
        "/api/v1/auth/register",
        json={"email": email, "password": "Password123", "first_name": "Sari"},
    ).json()["data"]
    return email, _bearer(data["access_token"])


def test_promoting_existing_user_keeps_usage_counters():
    client = TestClient(app)
    customer_email, customer_headers = _register_customer(client)
    created = client.post("/api/v1/questionnaires", headers=customer_headers, json={"title": "Survei"})
    assert created.status_code == 201

    super_email, _ = _create_admin()
    headers = _bearer(_login(client, super_email).json()["data"]["token"])
    promoted = client.post(
        "/api/v1/enterprise-admin/admin-users",
        headers=headers,
        json={"email": customer_email, "password": "Password123", "first_name": "Sari", "role": "support"},
    )
    assert promoted.status_code == 201, promoted.text

    usage = client.get("/api/v1/subscription/usage", headers=customer_headers).json()["data"]
    assert usage["plan"] == "free"
    assert usage["usage"]["questionnaires"]["used"] == 1


def test_review_update_rejects_null_for_required_fields():
    client = TestClient(app)
    _, customer_headers = _register_customer(client)
    questionnaire = client.post(
        "/api/v1/questionnaires",
        headers=customer_headers,
        json={"title": "Rating", "questions": [{"question_text": "Score?", "question_type": "rating"}]},
    ).json()["data"]
    submitted = client.post(
        "/api/v1/responses",
        json={
            "questionnaire_id": questionnaire["id"],
            "answers": [{"question_id": questionnaire["questions"][0]["id"], "rating_score": 4}],
        },
    ).json()["data"]

    db = SessionLocal()
    try:
        review_id = db.query(Review.id).filter(Review.response_id == submitted["response_id"]).scalar()
    finally:
        db.close()

    email, _ = _create_admin()
    headers = _bearer(_login(client, email).json()["data"]["token"])
    url = f"/api/v1/enterprise-admin/reviews/{review_id}"

    for field in ("review_status", "priority"):
        resp = client.put(url, headers=headers, json={field: None})
        assert resp.status_code == 400
        assert resp.json()["error"] == "Validation Error"

    ok = client.put(url, headers=headers, json={"review_status": "approved", "admin_notes": None})
    assert ok.status_code == 200
    assert ok.json()["data"]["review_status"] == "approved"
    assert ok.json()["data"]["priority"] == "medium"
