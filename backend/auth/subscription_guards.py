from fastapi import Depends
from sqlalchemy.orm import Session

from auth.utils import get_current_user
from db.models import User
from services.errors import SubscriptionError
from services.subscription_service import (
    FEATURE_NOT_AVAILABLE,
    SUBSCRIPTION_INACTIVE,
    LimitCheck,
    UsageType,
    consume_usage,
    has_feature,
)


def raise_for_limit(check: LimitCheck) -> None:
    """Turn a denied LimitCheck into the client-facing error."""
    if check.allowed:
        return
    if check.error_code == SUBSCRIPTION_INACTIVE:
        raise SubscriptionError(SUBSCRIPTION_INACTIVE, check.reason or "Subscription is not active", status_code=403)
    raise SubscriptionError(
        check.error_code or "SUBSCRIPTION_ERROR",
        check.reason or "Usage limit exceeded",
        status_code=402,
        details={
            "current_usage": check.current,
            "limit": check.limit,
            "upgrade_required": True,
        },
    )


def consume_or_raise(db: Session, user_id: int, usage_type: UsageType | str, count: int = 1) -> LimitCheck:
    check = consume_usage(db, user_id, usage_type, count)
    raise_for_limit(check)
    return check


def require_active_subscription(user: User = Depends(get_current_user)) -> User:
    if user.subscription_status != "active":
        raise SubscriptionError(SUBSCRIPTION_INACTIVE, "Subscription is not active", status_code=403)
    return user


def ensure_feature(user: User, feature: str) -> None:
    if not has_feature(user.subscription_plan, feature):
        raise SubscriptionError(
            FEATURE_NOT_AVAILABLE,
            f"Feature '{feature}' not available for current subscription plan",
            status_code=403,
            details={"feature": feature, "current_plan": user.subscription_plan, "upgrade_required": True},
        )


def require_feature(feature: str):
    def _dependency(user: User = Depends(require_active_subscription)) -> User:
        ensure_feature(user, feature)
        return user

    return _dependency
