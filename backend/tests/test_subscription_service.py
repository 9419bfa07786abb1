from __future__ import annotations

import sys
from pathlib import Path

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker


ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from db.database import Base  # noqa: E402
from db.models import PaymentTransaction, SubscriptionRequest, SubscriptionUsage, User  # noqa: E402
from services import subscription_service as subs  # noqa: E402
from services.errors import SubscriptionError  # noqa: E402


def _new_db():
    engine = create_engine("sqlite:///:memory:", connect_args={"check_same_thread": False})
    Base.metadata.create_all(bind=engine)
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)()


def _new_user(db, email: str = "owner@example.com", plan: str = "free", status: str = "active") -> User:
    user = User(
        email=email,
        password_hash="hash",
        first_name="Sari",
        last_name="Wijaya",
        subscription_plan=plan,
        subscription_status=status,
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    subs.reset_usage_for_plan(db, user.id, plan)
    return user


@pytest.fixture(autouse=True)
def _no_smtp(monkeypatch):
    sent: list[tuple] = []
    monkeypatch.setattr(subs.email_service, "send_email", lambda *args, **kwargs: sent.append(args) or True)
    return sent


def test_plan_lookups_fall_back_to_free_for_unknown_plans():
    assert subs.get_plan_limits("enterprise") == {"questionnaires": 1, "responses": 50, "exports": 5}
    assert subs.get_plan_features("enterprise") == ["analytics", "qr_codes"]
    assert subs.get_plan_price("free") == 0
    assert subs.get_plan_price("starter") == 99000
    assert subs.get_next_plan("free") == "starter"
    assert subs.get_next_plan("starter") == "business"
    assert subs.get_next_plan("business") is None
    assert subs.get_next_plan("admin") is None


def test_plan_features_by_tier():
    assert "csv_export" in subs.get_plan_features("starter")
    assert "excel_export" not in subs.get_plan_features("starter")
    assert {"csv_export", "excel_export", "advanced_analytics", "api_access"} <= set(subs.get_plan_features("business"))
    assert "admin_access" in subs.get_plan_features("admin")
    assert "admin_access" not in subs.get_plan_features("business")


def test_free_user_second_questionnaire_is_denied():
    db = _new_db()
    user = _new_user(db)

    first = subs.check_limit(db, user.id, "questionnaires")
    assert first.allowed is True
    subs.increment_usage(db, user.id, "questionnaires")

    second = subs.check_limit(db, user.id, "questionnaires")
    assert second.allowed is False
    assert second.error_code == "SUBSCRIPTION_ERROR_001"
    assert second.current == 1
    assert second.limit == 1
    assert second.reason == "Questionnaires limit exceeded for free plan"


def test_error_codes_are_keyed_by_usage_type():
    db = _new_db()
    user = _new_user(db)
    assert subs.check_limit(db, user.id, "responses", count=51).error_code == "SUBSCRIPTION_ERROR_002"
    assert subs.check_limit(db, user.id, "exports", count=6).error_code == "SUBSCRIPTION_ERROR_003"


def test_unlimited_plan_is_always_allowed():
    db = _new_db()
    user = _new_user(db, plan="business")
    subs.increment_usage(db, user.id, "responses", count=100000)
    check = subs.check_limit(db, user.id, "responses", count=5000)
    assert check.allowed is True
    assert check.limit is None


def test_inactive_subscription_fails_closed():
    db = _new_db()
    user = _new_user(db, plan="business", status="suspended")
    check = subs.check_limit(db, user.id, "questionnaires")
    assert check.allowed is False
    assert check.error_code == "SUBSCRIPTION_ERROR_005"

    consumed = subs.consume_usage(db, user.id, "questionnaires")
    assert consumed.allowed is False
    assert consumed.error_code == "SUBSCRIPTION_ERROR_005"
    assert subs.get_usage_count(db, user.id, "questionnaires") == 0


def test_unknown_user_raises_not_found():
    db = _new_db()
    with pytest.raises(SubscriptionError) as exc:
        subs.check_limit(db, 999, "questionnaires")
    assert exc.value.code == "USER_NOT_FOUND"
    assert exc.value.status_code == 404


def test_unknown_usage_type_is_rejected():
    db = _new_db()
    user = _new_user(db)
    with pytest.raises(SubscriptionError) as exc:
        subs.check_limit(db, user.id, "uploads")
    assert exc.value.code == "INVALID_USAGE_TYPE"


def test_consume_usage_never_exceeds_finite_limit():
    db = _new_db()
    user = _new_user(db, plan="starter")

    results = [subs.consume_usage(db, user.id, "questionnaires") for _ in range(8)]
    assert [r.allowed for r in results] == [True] * 5 + [False] * 3
    assert subs.get_usage_count(db, user.id, "questionnaires") == 5
    assert results[-1].error_code == "SUBSCRIPTION_ERROR_001"
    assert results[-1].current == 5


def test_consume_usage_rejects_batch_that_would_overflow():
    db = _new_db()
    user = _new_user(db)
    subs.consume_usage(db, user.id, "responses", count=45)
    denied = subs.consume_usage(db, user.id, "responses", count=10)
    assert denied.allowed is False
    assert subs.get_usage_count(db, user.id, "responses") == 45
    assert subs.consume_usage(db, user.id, "responses", count=5).allowed is True
    assert subs.get_usage_count(db, user.id, "responses") == 50


def test_increment_creates_missing_counter_row():
    db = _new_db()
    user = User(email="fresh@example.com", password_hash="hash", subscription_plan="starter")
    db.add(user)
    db.commit()

    assert subs.increment_usage(db, user.id, "exports", count=2) == 2
    row = db.query(SubscriptionUsage).filter_by(user_id=user.id, usage_type="exports").one()
    assert row.current_count == 2
    assert row.limit_count == 50


def test_current_usage_always_lists_every_type():
    db = _new_db()
    user = User(email="empty@example.com", password_hash="hash")
    db.add(user)
    db.commit()
    usage = subs.get_current_usage(db, user.id)
    assert usage == {
        "questionnaires": {"used": 0, "limit": None},
        "responses": {"used": 0, "limit": None},
        "exports": {"used": 0, "limit": None},
    }


def test_current_subscription_reports_plan_details():
    db = _new_db()
    user = _new_user(db, plan="starter")
    data = subs.get_current_subscription(db, user.id)
    assert data["plan"] == "starter"
    assert data["status"] == "active"
    assert data["email"] == "owner@example.com"
    assert data["limits"]["questionnaires"] == 5
    assert data["usage"]["questionnaires"] == {"used": 0, "limit": 5}
    assert data["unlimited_data_retention"] is True


def test_upgrade_prompt_triggers_at_eighty_percent():
    db = _new_db()
    user = _new_user(db)
    subs.increment_usage(db, user.id, "responses", count=39)
    assert subs.generate_upgrade_prompt(db, user.id)["upgrade_suggestions"] == []

    subs.increment_usage(db, user.id, "responses")
    prompt = subs.generate_upgrade_prompt(db, user.id)
    assert prompt["current_plan"] == "free"
    assert prompt["upgrade_suggestions"] == [
        {
            "plan": "starter",
            "reason": "responses_limit_approaching",
            "benefit": "Increase responses limit",
            "current_limit": 50,
            "next_limit": 500,
        }
    ]


def test_upgrade_prompt_is_empty_for_top_plans():
    db = _new_db()
    user = _new_user(db, plan="business")
    subs.increment_usage(db, user.id, "questionnaires", count=500)
    assert subs.generate_upgrade_prompt(db, user.id)["upgrade_suggestions"] == []


def test_request_upgrade_twice_raises_pending_request_exists():
    db = _new_db()
    user = _new_user(db)
    first = subs.request_upgrade(db, user.id, "starter", "Need more questionnaires")
    assert first["status"] == "pending"

    with pytest.raises(SubscriptionError) as exc:
        subs.request_upgrade(db, user.id, "business")
    assert exc.value.code == "PENDING_REQUEST_EXISTS"
    assert exc.value.status_code == 409


def test_request_upgrade_rejects_unknown_plan():
    db = _new_db()
    user = _new_user(db)
    with pytest.raises(SubscriptionError) as exc:
        subs.request_upgrade(db, user.id, "platinum")
    assert exc.value.code == "INVALID_PLAN"


def test_request_upgrade_in_development_is_manual(monkeypatch):
    monkeypatch.setattr(subs.settings, "ENVIRONMENT", "development")
    db = _new_db()
    user = _new_user(db)
    result = subs.request_upgrade(db, user.id, "business")
    assert result["payment_required"] is False
    assert result["payment_method"] == "manual"
    assert result["amount"] is None
    assert result["estimated_processing_time"] == "1-2 business days"


def test_request_upgrade_in_production_requires_dana_payment(monkeypatch):
    monkeypatch.setattr(subs.settings, "ENVIRONMENT", "production")
    db = _new_db()
    user = _new_user(db)
    result = subs.request_upgrade(db, user.id, "business")
    assert result["payment_required"] is True
    assert result["payment_method"] == "dana"
    assert result["amount"] == 299000
    assert result["currency"] == "IDR"
    assert result["payment_url"].startswith("https://dana.link/payment/req-")
    assert result["estimated_processing_time"] == "24-48 hours"


def test_downgrade_request_in_production_needs_no_payment(monkeypatch):
    monkeypatch.setattr(subs.settings, "ENVIRONMENT", "production")
    db = _new_db()
    user = _new_user(db, plan="business")
    result = subs.request_upgrade(db, user.id, "starter")
    assert result["payment_required"] is False
    assert result["payment_method"] == "manual"


def test_admins_are_notified_with_fallback_address(_no_smtp):
    db = _new_db()
    user = _new_user(db)
    subs.request_upgrade(db, user.id, "starter")
    assert [call[0] for call in _no_smtp] == [subs.settings.ADMIN_NOTIFICATION_EMAIL]


def test_notification_failure_does_not_fail_request(monkeypatch):
    def _boom(*args, **kwargs):
        raise OSError("smtp down")

    monkeypatch.setattr(subs.email_service, "send_email", _boom)
    db = _new_db()
    user = _new_user(db)
    result = subs.request_upgrade(db, user.id, "starter")
    assert result["status"] == "pending"


def test_approve_request_changes_plan_and_resets_usage():
    db = _new_db()
    admin = _new_user(db, email="admin@example.com", plan="admin")
    user = _new_user(db)
    subs.increment_usage(db, user.id, "questionnaires")
    request_id = subs.request_upgrade(db, user.id, "starter")["request_id"]

    result = subs.process_request(db, request_id, "approve", "Welcome aboard", processed_by=admin.id)
    assert result["status"] == "approved"

    db.refresh(user)
    assert user.subscription_plan == "starter"
    assert user.subscription_status == "active"
    assert subs.get_current_usage(db, user.id)["questionnaires"] == {"used": 0, "limit": 5}

    req = db.get(SubscriptionRequest, request_id)
    assert req.processed_by == admin.id
    assert req.processed_at is not None


def test_process_request_twice_raises_invalid_status():
    db = _new_db()
    user = _new_user(db)
    request_id = subs.request_upgrade(db, user.id, "starter")["request_id"]
    subs.process_request(db, request_id, "reject")

    with pytest.raises(SubscriptionError) as exc:
        subs.process_request(db, request_id, "approve")
    assert exc.value.code == "INVALID_STATUS"
    assert exc.value.status_code == 409
    assert str(exc.value) == "Request is already rejected"

    db.refresh(user)
    assert user.subscription_plan == "free"


def test_reject_uses_default_reason(_no_smtp):
    db = _new_db()
    user = _new_user(db)
    request_id = subs.request_upgrade(db, user.id, "starter")["request_id"]
    _no_smtp.clear()
    subs.process_request(db, request_id, "reject")
    assert len(_no_smtp) == 1
    to, subject, body = _no_smtp[0][:3]
    assert to == user.email
    assert subs.DEFAULT_REJECTION_REASON in body


def test_process_request_validates_action_and_existence():
    db = _new_db()
    with pytest.raises(SubscriptionError) as exc:
        subs.process_request(db, 1, "escalate")
    assert exc.value.code == "INVALID_ACTION"

    with pytest.raises(SubscriptionError) as exc:
        subs.process_request(db, 42, "approve")
    assert exc.value.code == "REQUEST_NOT_FOUND"
    assert exc.value.status_code == 404


def test_manage_subscription_validates_values():
    db = _new_db()
    user = _new_user(db)
    with pytest.raises(SubscriptionError) as exc:
        subs.manage_subscription(db, user.id, plan="gold")
    assert exc.value.code == "INVALID_PLAN"
    with pytest.raises(SubscriptionError) as exc:
        subs.manage_subscription(db, user.id, status="paused")
    assert exc.value.code == "INVALID_STATUS_VALUE"


def test_manage_subscription_emails_only_on_plan_change(_no_smtp):
    db = _new_db()
    user = _new_user(db)
    subs.manage_subscription(db, user.id, status="suspended")
    assert _no_smtp == []

    subs.manage_subscription(db, user.id, plan="business", status="active")
    assert len(_no_smtp) == 1
    assert "upgraded" in _no_smtp[0][2]


def test_pending_requests_are_oldest_first_with_user_details():
    db = _new_db()
    first = _new_user(db, email="first@example.com")
    second = _new_user(db, email="second@example.com")
    subs.request_upgrade(db, first.id, "starter")
    subs.request_upgrade(db, second.id, "business")

    pending = subs.get_pending_requests(db)
    assert [p["user_email"] for p in pending] == ["first@example.com", "second@example.com"]
    assert pending[0]["user_name"] == "Sari Wijaya"

    detail = subs.get_request_by_id(db, pending[1]["id"])
    assert detail["user"]["email"] == "second@example.com"
    assert detail["processor"] is None


def test_payment_history_lists_newest_first():
    db = _new_db()
    user = _new_user(db)
    db.add(PaymentTransaction(user_id=user.id, amount=99000, subscription_plan="starter", status="completed"))
    db.add(PaymentTransaction(user_id=user.id, amount=299000, subscription_plan="business"))
    db.commit()
    history = subs.get_payment_history(db, user.id)
    assert [h["subscription_plan"] for h in history] == ["business", "starter"]
    assert history[1]["amount"] == 99000.0
