from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass
from enum import Enum

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, joinedload

from config import settings
from db.models import PaymentTransaction, SubscriptionRequest, SubscriptionUsage, User
from services import email_service
from services.errors import SubscriptionError
from utils.datetime_utils import iso_or_none, utcnow_naive

logger = logging.getLogger(__name__)


class UsageType(str, Enum):
    QUESTIONNAIRES = "questionnaires"
    RESPONSES = "responses"
    EXPORTS = "exports"


USAGE_ERROR_CODES: dict[UsageType, str] = {
    UsageType.QUESTIONNAIRES: "SUBSCRIPTION_ERROR_001",
    UsageType.RESPONSES: "SUBSCRIPTION_ERROR_002",
    UsageType.EXPORTS: "SUBSCRIPTION_ERROR_003",
}
FEATURE_NOT_AVAILABLE = "SUBSCRIPTION_ERROR_004"
SUBSCRIPTION_INACTIVE = "SUBSCRIPTION_ERROR_005"

PLAN_LIMITS: dict[str, dict[str, int | None]] = {
    "free": {"questionnaires": 1, "responses": 50, "exports": 5},
    "starter": {"questionnaires": 5, "responses": 500, "exports": 50},
    "business": {"questionnaires": None, "responses": None, "exports": None},
    "admin": {"questionnaires": None, "responses": None, "exports": None},
}
PLAN_HIERARCHY: dict[str, int] = {"free": 1, "starter": 2, "business": 3, "admin": 4}
PLAN_PRICES: dict[str, int] = {"starter": 99000, "business": 299000}
UPGRADE_PATH = ("free", "starter", "business")
UPGRADE_PROMPT_THRESHOLD = 0.8

_BASE_FEATURES = ["analytics", "qr_codes"]
_BUSINESS_FEATURES = ["csv_export", "excel_export", "advanced_analytics", "api_access"]
PLAN_FEATURES: dict[str, list[str]] = {
    "free": list(_BASE_FEATURES),
    "starter": _BASE_FEATURES + ["csv_export"],
    "business": _BASE_FEATURES + _BUSINESS_FEATURES,
    "admin": _BASE_FEATURES + _BUSINESS_FEATURES + ["admin_access"],
}

SUBSCRIPTION_STATUSES = {"active", "inactive", "suspended", "canceled"}
REQUEST_ACTIONS = {"approve": "approved", "reject": "rejected"}
DEFAULT_REJECTION_REASON = "Request does not meet our current requirements."


@dataclass
class LimitCheck:
    allowed: bool
    current: int = 0
    limit: int | None = None
    requested: int = 1
    reason: str | None = None
    error_code: str | None = None

    def to_dict(self) -> dict:
        return asdict(self)


def _usage_type(value: UsageType | str) -> UsageType:
    try:
        return UsageType(value)
    except ValueError:
        raise SubscriptionError("INVALID_USAGE_TYPE", f"Unknown usage type: {value}", status_code=400)


def _get_user(db: Session, user_id: int) -> User:
    user = db.query(User).filter(User.id == user_id).first()
    if not user:
        raise SubscriptionError("USER_NOT_FOUND", "User not found", status_code=404)
    return user


def _display_name(user: User | None) -> str:
    if not user:
        return ""
    return user.full_name or user.email


# ---------------------------------------------------------------------------
# Plan table lookups
# ---------------------------------------------------------------------------

def get_plan_limits(plan: str | None) -> dict[str, int | None]:
    return dict(PLAN_LIMITS.get(plan or "", PLAN_LIMITS["free"]))


def get_plan_features(plan: str | None) -> list[str]:
    return list(PLAN_FEATURES.get(plan or "", PLAN_FEATURES["free"]))


def get_plan_price(plan: str | None) -> int:
    return PLAN_PRICES.get(plan or "", 0)


def has_feature(plan: str | None, feature: str) -> bool:
    return feature in get_plan_features(plan)


def is_upgrade(old_plan: str | None, new_plan: str | None) -> bool:
    return PLAN_HIERARCHY.get(new_plan or "", 0) > PLAN_HIERARCHY.get(old_plan or "", 0)


def is_downgrade(old_plan: str | None, new_plan: str | None) -> bool:
    return PLAN_HIERARCHY.get(new_plan or "", 0) < PLAN_HIERARCHY.get(old_plan or "", 0)


def get_next_plan(plan: str | None) -> str | None:
    if plan not in UPGRADE_PATH:
        return None
    idx = UPGRADE_PATH.index(plan)
    return UPGRADE_PATH[idx + 1] if idx + 1 < len(UPGRADE_PATH) else None


def get_available_plans() -> list[dict]:
    return [
        {
            "name": plan,
            "limits": get_plan_limits(plan),
            "features": get_plan_features(plan),
            "price": get_plan_price(plan),
            "currency": settings.PAYMENT_CURRENCY,
        }
        for plan in PLAN_LIMITS
    ]


def get_user_plan(db: Session, user_id: int) -> str:
    return _get_user(db, user_id).subscription_plan


# ---------------------------------------------------------------------------
# Usage counters
# ---------------------------------------------------------------------------

def get_usage_count(db: Session, user_id: int, usage_type: UsageType | str) -> int:
    ut = _usage_type(usage_type)
    value = (
        db.query(SubscriptionUsage.current_count)
        .filter(SubscriptionUsage.user_id == user_id, SubscriptionUsage.usage_type == ut.value)
        .scalar()
    )
    return int(value or 0)


def get_current_usage(db: Session, user_id: int) -> dict[str, dict]:
    usage = {ut.value: {"used": 0, "limit": None} for ut in UsageType}
    rows = db.query(SubscriptionUsage).filter(SubscriptionUsage.user_id == user_id).all()
    for row in rows:
        if row.usage_type in usage:
            usage[row.usage_type] = {"used": int(row.current_count or 0), "limit": row.limit_count}
    return usage


def check_limit(db: Session, user_id: int, usage_type: UsageType | str, count: int = 1) -> LimitCheck:
    """Report whether `count` more units of `usage_type` fit in the user's plan.

    Read-only. Use `consume_usage` when the caller intends to spend the units.
    """
    ut = _usage_type(usage_type)
    user = _get_user(db, user_id)
    current = get_usage_count(db, user_id, ut)

    if user.subscription_status != "active":
        return LimitCheck(
            allowed=False,
            current=current,
            requested=count,
            reason="Subscription is not active",
            error_code=SUBSCRIPTION_INACTIVE,
        )

    limit = get_plan_limits(user.subscription_plan)[ut.value]
    if limit is None:
        return LimitCheck(allowed=True, current=current, limit=None, requested=count)

    if current + count > limit:
        return LimitCheck(
            allowed=False,
            current=current,
            limit=limit,
            requested=count,
            reason=f"{ut.value.capitalize()} limit exceeded for {user.subscription_plan} plan",
            error_code=USAGE_ERROR_CODES[ut],
        )
    return LimitCheck(allowed=True, current=current, limit=limit, requested=count)


def _ensure_usage_row(db: Session, user: User, ut: UsageType) -> None:
    exists = (
        db.query(SubscriptionUsage.id)
        .filter(SubscriptionUsage.user_id == user.id, SubscriptionUsage.usage_type == ut.value)
        .first()
    )
    if exists:
        return
    try:
        with db.begin_nested():
            db.add(
                SubscriptionUsage(
                    user_id=user.id,
                    usage_type=ut.value,
                    current_count=0,
                    limit_count=get_plan_limits(user.subscription_plan)[ut.value],
                )
            )
    except IntegrityError:
        # Another request created the row first; the caller's UPDATE will find it.
        logger.info(f"Usage row for user {user.id} ({ut.value}) created concurrently")


def _add_to_counter(db: Session, user_id: int, ut: UsageType, count: int, limit: int | None = None) -> int:
    query = db.query(SubscriptionUsage).filter(
        SubscriptionUsage.user_id == user_id,
        SubscriptionUsage.usage_type == ut.value,
    )
    if limit is not None:
        query = query.filter(SubscriptionUsage.current_count + count <= limit)
    return query.update(
        {
            SubscriptionUsage.current_count: SubscriptionUsage.current_count + count,
            SubscriptionUsage.updated_at: utcnow_naive(),
        },
        synchronize_session=False,
    )


def increment_usage(db: Session, user_id: int, usage_type: UsageType | str, count: int = 1) -> int:
    """Add `count` to the counter unconditionally and return the new value."""
    ut = _usage_type(usage_type)
    user = _get_user(db, user_id)
    if not _add_to_counter(db, user_id, ut, count):
        _ensure_usage_row(db, user, ut)
        _add_to_counter(db, user_id, ut, count)
    db.commit()
    new_count = get_usage_count(db, user_id, ut)
    logger.info(f"Usage incremented for user {user_id}: {ut.value} +{count} -> {new_count}")
    return new_count


def consume_usage(db: Session, user_id: int, usage_type: UsageType | str, count: int = 1) -> LimitCheck:
    """Check and increment in one conditional UPDATE.

    The counter moves only when `current_count + count` still fits the plan
    limit, so two concurrent callers can never both take the last slot.
    """
    ut = _usage_type(usage_type)
    user = _get_user(db, user_id)

    if user.subscription_status != "active":
        logger.warning(f"Usage denied for user {user_id}: subscription {user.subscription_status}")
        return LimitCheck(
            allowed=False,
            current=get_usage_count(db, user_id, ut),
            requested=count,
            reason="Subscription is not active",
            error_code=SUBSCRIPTION_INACTIVE,
        )

    limit = get_plan_limits(user.subscription_plan)[ut.value]
    _ensure_usage_row(db, user, ut)
    updated = _add_to_counter(db, user_id, ut, count, limit=limit)
    db.commit()
    current = get_usage_count(db, user_id, ut)

    if not updated:
        logger.warning(
            f"Usage limit reached for user {user_id}: {ut.value} {current}/{limit} "
            f"on {user.subscription_plan} plan"
        )
        return LimitCheck(
            allowed=False,
            current=current,
            limit=limit,
            requested=count,
            reason=f"{ut.value.capitalize()} limit exceeded for {user.subscription_plan} plan",
            error_code=USAGE_ERROR_CODES[ut],
        )
    logger.info(f"Usage consumed for user {user_id}: {ut.value} +{count} -> {current}")
    return LimitCheck(allowed=True, current=current, limit=limit, requested=count)


def reset_usage_for_plan(db: Session, user_id: int, plan: str) -> None:
    """Zero every counter and stamp the new plan's limits on it."""
    limits = get_plan_limits(plan)
    now = utcnow_naive()
    existing = {
        row.usage_type: row
        for row in db.query(SubscriptionUsage).filter(SubscriptionUsage.user_id == user_id).all()
    }
    for ut in UsageType:
        row = existing.get(ut.value)
        if row is None:
            row = SubscriptionUsage(user_id=user_id, usage_type=ut.value)
            db.add(row)
        row.current_count = 0
        row.limit_count = limits[ut.value]
        row.reset_date = now
    db.commit()
    logger.info(f"Usage reset for user {user_id} on plan {plan}")


# ---------------------------------------------------------------------------
# Subscription views
# ---------------------------------------------------------------------------

def get_current_subscription(db: Session, user_id: int) -> dict:
    user = _get_user(db, user_id)
    return {
        "plan": user.subscription_plan,
        "status": user.subscription_status,
        "email": user.email,
        "limits": get_plan_limits(user.subscription_plan),
        "usage": get_current_usage(db, user_id),
        "features": get_plan_features(user.subscription_plan),
        "unlimited_data_retention": True,
    }


def generate_upgrade_prompt(db: Session, user_id: int) -> dict:
    user = _get_user(db, user_id)
    usage = get_current_usage(db, user_id)
    limits = get_plan_limits(user.subscription_plan)
    next_plan = get_next_plan(user.subscription_plan)
    suggestions = []
    if next_plan:
        next_limits = get_plan_limits(next_plan)
        for ut in UsageType:
            limit = limits[ut.value]
            if limit and usage[ut.value]["used"] >= limit * UPGRADE_PROMPT_THRESHOLD:
                suggestions.append({
                    "plan": next_plan,
                    "reason": f"{ut.value}_limit_approaching",
                    "benefit": f"Increase {ut.value} limit",
                    "current_limit": limit,
                    "next_limit": next_limits[ut.value],
                })
    return {"current_plan": user.subscription_plan, "upgrade_suggestions": suggestions}


def get_payment_history(db: Session, user_id: int) -> list[dict]:
    rows = (
        db.query(PaymentTransaction)
        .filter(PaymentTransaction.user_id == user_id)
        .order_by(PaymentTransaction.created_at.desc(), PaymentTransaction.id.desc())
        .all()
    )
    return [
        {
            "id": row.id,
            "payment_method": row.payment_method,
            "amount": float(row.amount) if row.amount is not None else None,
            "currency": row.currency,
            "status": row.status,
            "subscription_plan": row.subscription_plan,
            "created_at": iso_or_none(row.created_at),
            "processed_at": iso_or_none(row.processed_at),
        }
        for row in rows
    ]


# ---------------------------------------------------------------------------
# Upgrade workflow
# ---------------------------------------------------------------------------

def _request_summary(req: SubscriptionRequest) -> dict:
    return {
        "id": req.id,
        "user_id": req.user_id,
        "user_name": _display_name(req.user),
        "user_email": req.user.email if req.user else None,
        "current_plan": req.current_plan,
        "requested_plan": req.requested_plan,
        "reason": req.reason,
        "status": req.status,
        "created_at": iso_or_none(req.created_at),
        "payment_required": req.payment_method != "manual",
        "payment_method": req.payment_method,
        "payment_url": req.payment_url,
        "amount": float(req.amount) if req.amount is not None else None,
        "currency": req.currency,
    }


def _admin_recipients(db: Session) -> list[str]:
    emails = [
        email
        for (email,) in db.query(User.email)
        .filter(User.subscription_plan == "admin", User.deleted_at.is_(None))
        .all()
    ]
    return emails or [settings.ADMIN_NOTIFICATION_EMAIL]


def notify_admins_of_request(db: Session, request: SubscriptionRequest, user: User) -> int:
    """Email every admin about a new request. Returns how many emails went out."""
    sent = 0
    for recipient in _admin_recipients(db):
        if email_service.send_upgrade_request_email(
            recipient,
            user_name=_display_name(user),
            user_email=user.email,
            current_plan=request.current_plan,
            requested_plan=request.requested_plan,
            reason=request.reason,
            request_id=request.id,
            payment_required=request.payment_method != "manual",
            amount=request.amount,
            currency=request.currency,
        ):
            sent += 1
    return sent


def request_upgrade(db: Session, user_id: int, target_plan: str, reason: str | None = None) -> dict:
    user = _get_user(db, user_id)
    if target_plan not in PLAN_LIMITS:
        raise SubscriptionError("INVALID_PLAN", "Invalid target plan specified", status_code=400)

    pending = (
        db.query(SubscriptionRequest.id)
        .filter(SubscriptionRequest.user_id == user_id, SubscriptionRequest.status == "pending")
        .first()
    )
    if pending:
        raise SubscriptionError(
            "PENDING_REQUEST_EXISTS",
            "You already have a pending subscription request. Please wait for it to be processed.",
            status_code=409,
        )

    development = settings.is_development
    payment_required = not development and is_upgrade(user.subscription_plan, target_plan)

    req = SubscriptionRequest(
        user_id=user_id,
        requested_plan=target_plan,
        current_plan=user.subscription_plan,
        reason=(reason or "").strip() or None,
        status="pending",
        payment_method="dana" if payment_required else "manual",
        amount=get_plan_price(target_plan) if payment_required else None,
        currency=settings.PAYMENT_CURRENCY if payment_required else None,
        payment_url=(
            f"{settings.PAYMENT_LINK_BASE.rstrip('/')}/req-{int(time.time() * 1000)}"
            if payment_required
            else None
        ),
    )
    db.add(req)
    db.commit()
    db.refresh(req)

    try:
        notify_admins_of_request(db, req, user)
    except Exception as e:
        logger.error(f"Failed to notify admins of subscription request {req.id}: {e}")

    logger.info(
        f"Subscription request {req.id} created for user {user_id}: "
        f"{user.subscription_plan} -> {target_plan} (payment_required={payment_required})"
    )

    if development:
        message = "Subscription request received. The admin team will review your request and contact you soon."
    elif payment_required:
        message = "Subscription request received. Please complete payment to proceed with the approval process."
    else:
        message = "Subscription request received and is now pending admin approval."

    return {
        "request_id": req.id,
        "status": req.status,
        "payment_required": payment_required,
        "payment_method": req.payment_method,
        "payment_url": req.payment_url,
        "amount": float(req.amount) if req.amount is not None else None,
        "currency": req.currency,
        "message": message,
        "estimated_processing_time": "1-2 business days" if development else "24-48 hours",
    }


def manage_subscription(
    db: Session,
    user_id: int,
    plan: str | None = None,
    status: str | None = None,
) -> dict:
    if plan is not None and plan not in PLAN_LIMITS:
        raise SubscriptionError("INVALID_PLAN", "Invalid subscription plan specified", status_code=400)
    if status is not None and status not in SUBSCRIPTION_STATUSES:
        raise SubscriptionError("INVALID_STATUS_VALUE", "Invalid subscription status specified", status_code=400)

    user = _get_user(db, user_id)
    old_plan = user.subscription_plan
    if plan is not None:
        user.subscription_plan = plan
    if status is not None:
        user.subscription_status = status
    db.commit()

    if plan is not None:
        reset_usage_for_plan(db, user_id, plan)

    if plan is not None and plan != old_plan:
        try:
            email_service.send_subscription_change_email(
                user.email,
                user_name=_display_name(user),
                old_plan=old_plan,
                new_plan=plan,
                is_upgrade=is_upgrade(old_plan, plan),
                is_downgrade=is_downgrade(old_plan, plan),
            )
        except Exception as e:
            logger.error(f"Failed to send subscription change email to user {user_id}: {e}")

    logger.info(
        f"Subscription managed for user {user_id}: plan={user.subscription_plan} status={user.subscription_status}"
    )
    return {
        "user_id": user.id,
        "subscription_plan": user.subscription_plan,
        "subscription_status": user.subscription_status,
    }


def process_request(
    db: Session,
    request_id: int,
    action: str,
    admin_notes: str | None = None,
    processed_by: int | None = None,
) -> dict:
    if action not in REQUEST_ACTIONS:
        raise SubscriptionError("INVALID_ACTION", "Action must be either 'approve' or 'reject'", status_code=400)

    req = (
        db.query(SubscriptionRequest)
        .options(joinedload(SubscriptionRequest.user))
        .filter(SubscriptionRequest.id == request_id)
        .first()
    )
    if not req:
        raise SubscriptionError("REQUEST_NOT_FOUND", "Subscription request not found", status_code=404)
    if req.status != "pending":
        raise SubscriptionError("INVALID_STATUS", f"Request is already {req.status}", status_code=409)

    notes = (admin_notes or "").strip() or None
    req.status = REQUEST_ACTIONS[action]
    req.admin_notes = notes
    req.processed_by = processed_by
    req.processed_at = utcnow_naive()
    db.commit()

    user = req.user
    if action == "approve":
        manage_subscription(db, req.user_id, plan=req.requested_plan, status="active")
        try:
            email_service.send_upgrade_approved_email(
                user.email,
                user_name=_display_name(user),
                new_plan=req.requested_plan,
                admin_notes=notes,
            )
        except Exception as e:
            logger.error(f"Failed to send approval email for request {req.id}: {e}")
    else:
        try:
            email_service.send_upgrade_rejected_email(
                user.email,
                user_name=_display_name(user),
                requested_plan=req.requested_plan,
                reason=notes or DEFAULT_REJECTION_REASON,
            )
        except Exception as e:
            logger.error(f"Failed to send rejection email for request {req.id}: {e}")

    logger.info(f"Subscription request {req.id} {req.status} by user {processed_by}")
    return {
        "request_id": req.id,
        "status": req.status,
        "user_id": req.user_id,
        "user_email": user.email,
        "processed_by": processed_by,
        "processed_at": iso_or_none(req.processed_at),
        "message": f"Subscription request {req.status} successfully",
    }


def get_pending_requests(db: Session) -> list[dict]:
    rows = (
        db.query(SubscriptionRequest)
        .options(joinedload(SubscriptionRequest.user))
        .filter(SubscriptionRequest.status == "pending")
        .order_by(SubscriptionRequest.created_at.asc(), SubscriptionRequest.id.asc())
        .all()
    )
    return [_request_summary(row) for row in rows]


def get_request_by_id(db: Session, request_id: int) -> dict:
    req = (
        db.query(SubscriptionRequest)
        .options(joinedload(SubscriptionRequest.user), joinedload(SubscriptionRequest.processor))
        .filter(SubscriptionRequest.id == request_id)
        .first()
    )
    if not req:
        raise SubscriptionError("REQUEST_NOT_FOUND", "Subscription request not found", status_code=404)

    data = _request_summary(req)
    data.update({
        "user": {
            "id": req.user.id,
            "name": _display_name(req.user),
            "email": req.user.email,
            "current_plan": req.user.subscription_plan,
            "subscription_status": req.user.subscription_status,
        },
        "admin_notes": req.admin_notes,
        "processed_at": iso_or_none(req.processed_at),
        "processor": (
            {"id": req.processor.id, "name": _display_name(req.processor), "email": req.processor.email}
            if req.processor
            else None
        ),
    })
    return data
