from __future__ import annotations

import logging
import math
import secrets
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import jwt
from fastapi import Depends, Request
from sqlalchemy.orm import Session, joinedload

from config import settings
from db.database import get_db
from db.models import AdminUser
from services.admin_activity_service import log_activity
from services.errors import AdminAuthError
from services.rate_limit_service import admin_rule, enforce_rate_limit, strict_rule
from services.session_store import (
    AdminSession,
    AdminSessionStore,
    FailedAttempts,
    LoginAttemptStore,
    get_admin_session_store,
)

logger = logging.getLogger(__name__)

TOKEN_TYPE = "enterprise_admin"
WILDCARD = "*"


@dataclass
class AdminContext:
    admin_user: AdminUser
    session_id: str
    permissions: list[str]

    @property
    def role_level(self) -> int:
        return int(self.admin_user.role.level or 0) if self.admin_user.role else 0

    def has_permission(self, permission: str) -> bool:
        return has_permission(self.permissions, permission)


def _client_ip(request: Request) -> str:
    return (request.client.host if request.client else "") or "unknown"


def extract_token(request: Request) -> str | None:
    auth_header = request.headers.get("authorization") or ""
    if auth_header.startswith("Bearer ") and auth_header[7:].strip():
        return auth_header[7:].strip()
    return request.cookies.get(settings.ADMIN_COOKIE_NAME) or request.query_params.get("token") or None


# ---------------------------------------------------------------------------
# Permissions
# ---------------------------------------------------------------------------

def get_effective_permissions(admin_user: AdminUser) -> list[str]:
    role_permissions = admin_user.role.permissions if admin_user.role else []
    if WILDCARD in role_permissions:
        return [WILDCARD]
    merged: list[str] = []
    for permission in [*role_permissions, *admin_user.permissions]:
        if permission not in merged:
            merged.append(permission)
    return merged


def has_permission(permissions: list[str], permission: str) -> bool:
    return WILDCARD in permissions or permission in permissions


# ---------------------------------------------------------------------------
# Lockout
# ---------------------------------------------------------------------------

def check_account_lockout(store: LoginAttemptStore, identifier: str, now: float | None = None) -> None:
    now = time.time() if now is None else now
    attempts = store.get(identifier)
    if not attempts or attempts.count < settings.ADMIN_LOCKOUT_MAX_ATTEMPTS:
        return
    elapsed = now - attempts.last_attempt
    if elapsed < settings.ADMIN_LOCKOUT_DURATION_SECONDS:
        remaining_minutes = math.ceil((settings.ADMIN_LOCKOUT_DURATION_SECONDS - elapsed) / 60)
        raise AdminAuthError(
            "Account Locked",
            f"Too many failed login attempts. Account locked for {remaining_minutes} minutes.",
            status_code=429,
            extra={"lockoutRemaining": remaining_minutes * 60},
        )
    store.delete(identifier)


def track_failed_attempt(store: LoginAttemptStore, identifier: str, now: float | None = None) -> FailedAttempts:
    attempts = store.increment(identifier, now=now)
    logger.warning(f"Failed admin login attempt for {identifier} (count={attempts.count})")
    return attempts


def clear_failed_attempts(store: LoginAttemptStore, identifier: str) -> None:
    store.delete(identifier)


# ---------------------------------------------------------------------------
# Sessions and tokens
# ---------------------------------------------------------------------------

def create_session(
    store: AdminSessionStore,
    admin_user_id: int,
    *,
    ip_address: str | None = None,
    user_agent: str | None = None,
    now: float | None = None,
) -> AdminSession:
    now = time.time() if now is None else now
    session = AdminSession(
        session_id=f"admin_{int(now * 1000)}_{secrets.token_hex(6)}",
        admin_user_id=admin_user_id,
        created_at=now,
        last_activity=now,
        ip_address=ip_address,
        user_agent=user_agent,
        two_factor_verified=False,
    )
    store.create(session)
    return session


def verify_session_two_factor(store: AdminSessionStore, session_id: str) -> bool:
    return store.mark_two_factor_verified(session_id)


def destroy_session(store: AdminSessionStore, session_id: str) -> bool:
    return store.delete(session_id)


def invalidate_all_user_sessions(store: AdminSessionStore, admin_user_id: int) -> int:
    removed = store.delete_for_admin(admin_user_id)
    logger.info(f"Invalidated {removed} sessions for admin {admin_user_id}")
    return removed


def cleanup_expired_sessions(store: AdminSessionStore, now: float | None = None) -> int:
    expired = store.sweep(settings.ADMIN_SESSION_TIMEOUT_SECONDS, now=now)
    if expired:
        logger.info(f"Cleaned up {len(expired)} expired admin sessions")
    return len(expired)


def create_session_token(admin_user_id: int, session_id: str) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "admin_user_id": int(admin_user_id),
        "session_id": session_id,
        "type": TOKEN_TYPE,
        "iat": now,
        "exp": now + timedelta(hours=settings.ADMIN_SESSION_TOKEN_HOURS),
    }
    return jwt.encode(payload, settings.SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def decode_session_token(token: str) -> dict:
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise AdminAuthError("Token Expired", "The provided token has expired")
    except jwt.InvalidTokenError:
        raise AdminAuthError("Invalid Token", "The provided token is invalid")
    if payload.get("type") != TOKEN_TYPE or not payload.get("session_id"):
        raise AdminAuthError("Invalid Token", "The provided token is invalid")
    return payload


def load_admin_user(db: Session, admin_user_id) -> AdminUser | None:
    try:
        admin_id = int(admin_user_id)
    except (TypeError, ValueError):
        return None
    return (
        db.query(AdminUser)
        .options(joinedload(AdminUser.user), joinedload(AdminUser.role))
        .filter(AdminUser.id == admin_id)
        .first()
    )


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------

def get_current_admin(
    request: Request,
    db: Session = Depends(get_db),
    store: AdminSessionStore = Depends(get_admin_session_store),
) -> AdminContext:
    token = extract_token(request)
    if not token:
        raise AdminAuthError("Authentication Required", "Enterprise admin token is required")

    payload = decode_session_token(token)

    admin_user = load_admin_user(db, payload.get("admin_user_id"))
    if not admin_user or not admin_user.is_active or not admin_user.role or not admin_user.role.is_active:
        raise AdminAuthError("Invalid Admin User", "Admin user not found or inactive")
    user = admin_user.user
    if not user or not user.is_active or user.deleted_at is not None:
        raise AdminAuthError("Invalid User Account", "Associated user account is inactive")

    session = store.get(payload["session_id"])
    if not session or session.admin_user_id != admin_user.id:
        raise AdminAuthError("Invalid Session", "Admin session has expired or is invalid")

    if admin_user.two_factor_enabled and not session.two_factor_verified:
        raise AdminAuthError(
            "Two-Factor Authentication Required",
            "Please complete 2FA verification",
            status_code=403,
            extra={"requiresTwoFactor": True},
        )

    # A logout or password change may have removed the session since the lookup.
    if not store.touch(session.session_id):
        raise AdminAuthError("Invalid Session", "Admin session has expired or is invalid")

    request.state.user_id = user.id
    request.state.admin_user_id = admin_user.id
    request.state.admin_session_id = session.session_id
    return AdminContext(
        admin_user=admin_user,
        session_id=session.session_id,
        permissions=get_effective_permissions(admin_user),
    )


def _rate_limit_key(request: Request) -> str:
    admin_user_id = getattr(request.state, "admin_user_id", None)
    return f"admin_{admin_user_id}" if admin_user_id else _client_ip(request)


def admin_rate_limit(request: Request, ctx: AdminContext = Depends(get_current_admin)) -> AdminContext:
    allowed, retry_after = enforce_rate_limit(
        rule=admin_rule(),
        scope_key=_rate_limit_key(request),
        user_id=ctx.admin_user.user_id,
        ip_address=_client_ip(request),
    )
    if not allowed:
        raise AdminAuthError(
            "Too Many Requests",
            "Rate limit exceeded for admin operations",
            status_code=429,
            headers={"Retry-After": str(retry_after)},
            extra={"retryAfter": retry_after},
        )
    return ctx


def _enforce_strict(request: Request, endpoint: str, user_id: int | None = None) -> None:
    allowed, retry_after = enforce_rate_limit(
        rule=strict_rule(endpoint),
        scope_key=_rate_limit_key(request),
        user_id=user_id,
        ip_address=_client_ip(request),
    )
    if not allowed:
        raise AdminAuthError(
            "Rate Limit Exceeded",
            "Too many sensitive operations attempted",
            status_code=429,
            headers={"Retry-After": str(retry_after)},
            extra={"retryAfter": retry_after},
        )


def strict_rate_limit(endpoint: str):
    """Strict limit for unauthenticated sensitive routes, keyed by client IP."""

    def _dependency(request: Request) -> None:
        _enforce_strict(request, endpoint)

    return _dependency


def strict_admin_rate_limit(endpoint: str):
    """Strict limit for authenticated sensitive routes, keyed by admin id."""

    def _dependency(request: Request, ctx: AdminContext = Depends(admin_rate_limit)) -> AdminContext:
        _enforce_strict(request, endpoint, user_id=ctx.admin_user.user_id)
        return ctx

    return _dependency


def require_permission(permission: str):
    def _dependency(request: Request, ctx: AdminContext = Depends(admin_rate_limit)) -> AdminContext:
        if not ctx.has_permission(permission):
            logger.warning(
                f"Admin {ctx.admin_user.id} denied {request.method} {request.url.path}: missing {permission}"
            )
            raise AdminAuthError(
                "Insufficient Permissions",
                f"You do not have permission to perform this action. Required: {permission}",
                status_code=403,
            )
        return ctx

    return _dependency


def require_role_level(min_level: int):
    def _dependency(request: Request, ctx: AdminContext = Depends(admin_rate_limit)) -> AdminContext:
        if ctx.role_level < min_level:
            logger.warning(
                f"Admin {ctx.admin_user.id} denied {request.method} {request.url.path}: "
                f"role level {ctx.role_level} < {min_level}"
            )
            raise AdminAuthError(
                "Insufficient Role Level",
                f"Your role level is insufficient. Required: {min_level}, Current: {ctx.role_level}",
                status_code=403,
            )
        return ctx

    return _dependency


def record_admin_action(
    db: Session,
    ctx: AdminContext,
    request: Request,
    action: str,
    *,
    resource_type: str | None = None,
    resource_id: int | None = None,
    details: dict | None = None,
    status: str = "success",
    error_message: str | None = None,
    started: float | None = None,
) -> None:
    log_activity(
        db,
        admin_user_id=ctx.admin_user.id,
        action=action,
        resource_type=resource_type,
        resource_id=resource_id,
        details={"method": request.method, "path": request.url.path, **(details or {})},
        ip_address=_client_ip(request),
        user_agent=request.headers.get("user-agent"),
        session_id=ctx.session_id,
        duration_ms=int((time.perf_counter() - started) * 1000) if started is not None else None,
        status=status,
        error_message=error_message,
    )
