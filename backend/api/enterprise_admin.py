import json
import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Literal, Optional

from fastapi import APIRouter, Depends, Query, Request, Response, status
from pydantic import BaseModel, Field
from sqlalchemy import or_
from sqlalchemy.orm import Session, joinedload

from auth.enterprise_admin import (
    AdminContext,
    admin_rate_limit,
    check_account_lockout,
    clear_failed_attempts,
    create_session,
    create_session_token,
    destroy_session,
    get_effective_permissions,
    invalidate_all_user_sessions,
    record_admin_action,
    require_permission,
    require_role_level,
    strict_admin_rate_limit,
    strict_rate_limit,
    track_failed_attempt,
    verify_session_two_factor,
)
from auth.models import (
    AdminLoginRequest,
    ChangePasswordRequest,
    CreateAdminUserRequest,
    TwoFactorDisableRequest,
    TwoFactorTokenRequest,
)
from auth.two_factor import build_setup, verify_token
from auth.utils import hash_password, normalize_email, verify_password
from config import settings
from db.database import get_db
from db.models import AdminRole, AdminUser, Review, User
from services import subscription_service
from services.admin_activity_service import list_activity, update_admin_login
from services.errors import AdminAuthError
from services.session_store import (
    AdminSessionStore,
    LoginAttemptStore,
    get_admin_session_store,
    get_login_attempt_store,
)
from utils.datetime_utils import iso_or_none, utcnow, utcnow_naive
from utils.encryption import decrypt_secret, encrypt_secret

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/enterprise-admin", tags=["enterprise-admin"])

LOGIN_ENDPOINT = "/api/v1/enterprise-admin/auth/login"


class ManageUserSubscriptionBody(BaseModel):
    subscription_plan: Optional[str] = None
    subscription_status: Optional[str] = None


class ProcessRequestBody(BaseModel):
    action: Literal["approve", "reject"]
    admin_notes: Optional[str] = Field(default=None, max_length=2000)


class ReviewUpdateBody(BaseModel):
    review_status: Optional[Literal["pending", "approved", "rejected", "flagged", "needs_review"]] = None
    priority: Optional[Literal["low", "medium", "high", "urgent"]] = None
    admin_notes: Optional[str] = Field(default=None, max_length=2000)


NON_NULL_REVIEW_FIELDS = ("review_status", "priority")


def _client_ip(request: Request) -> str:
    return (request.client.host if request.client else "") or "unknown"


def _epoch_iso(value: float) -> str:
    return datetime.fromtimestamp(value, tz=timezone.utc).isoformat()


def _serialize_role(role: AdminRole | None) -> dict | None:
    if not role:
        return None
    return {
        "id": role.id,
        "name": role.name,
        "displayName": role.display_name,
        "level": role.level,
        "permissions": role.permissions,
    }


def _serialize_admin(admin_user: AdminUser, permissions: list[str]) -> dict:
    user = admin_user.user
    return {
        "id": admin_user.id,
        "user": {
            "id": user.id,
            "email": user.email,
            "firstName": user.first_name,
            "lastName": user.last_name,
        },
        "role": _serialize_role(admin_user.role),
        "department": admin_user.department,
        "permissions": permissions,
        "lastLogin": iso_or_none(admin_user.last_login_at),
        "twoFactorEnabled": bool(admin_user.two_factor_enabled),
    }


def _set_admin_cookie(response: Response, token: str) -> None:
    response.set_cookie(
        key=settings.ADMIN_COOKIE_NAME,
        value=token,
        httponly=True,
        secure=settings.is_production_like,
        samesite="strict",
        path="/",
        max_age=settings.ADMIN_REMEMBER_ME_DAYS * 24 * 3600,
    )


def _clear_admin_cookie(response: Response) -> None:
    response.delete_cookie(key=settings.ADMIN_COOKIE_NAME, path="/")


def _invalid_credentials() -> AdminAuthError:
    return AdminAuthError("Invalid Credentials", "The email or password is incorrect")


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------

@router.post("/auth/login", dependencies=[Depends(strict_rate_limit(LOGIN_ENDPOINT))])
def admin_login(
    req: AdminLoginRequest,
    request: Request,
    response: Response,
    db: Session = Depends(get_db),
    sessions: AdminSessionStore = Depends(get_admin_session_store),
    attempts: LoginAttemptStore = Depends(get_login_attempt_store),
):
    email = normalize_email(req.email)
    identifier = email or _client_ip(request)
    check_account_lockout(attempts, identifier)
    if not email or not req.password:
        raise AdminAuthError("Validation Error", "Email and password are required", status_code=400)

    user = (
        db.query(User)
        .options(joinedload(User.admin_user).joinedload(AdminUser.role))
        .filter(User.email == email, User.deleted_at.is_(None))
        .first()
    )
    if not user or not user.admin_user:
        track_failed_attempt(attempts, identifier)
        raise _invalid_credentials()
    if not user.is_active:
        track_failed_attempt(attempts, identifier)
        raise AdminAuthError("Account Inactive", "Your account has been deactivated")
    admin_user = user.admin_user
    if not admin_user.is_active:
        track_failed_attempt(attempts, identifier)
        raise AdminAuthError("Admin Access Revoked", "Your admin access has been revoked")
    if not verify_password(req.password, user.password_hash):
        track_failed_attempt(attempts, identifier)
        raise _invalid_credentials()

    clear_failed_attempts(attempts, identifier)

    if admin_user.two_factor_enabled:
        if not req.twoFactorToken:
            return {
                "success": True,
                "requiresTwoFactor": True,
                "message": "Two-factor authentication token required",
                "timestamp": utcnow().isoformat(),
            }
        if not verify_token(decrypt_secret(admin_user.two_factor_secret), req.twoFactorToken):
            logger.warning(f"Admin login for {email} failed: invalid 2FA token")
            raise AdminAuthError("Invalid Two-Factor Token", "The two-factor authentication token is invalid")

    session = create_session(
        sessions,
        admin_user.id,
        ip_address=_client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    if admin_user.two_factor_enabled and req.twoFactorToken:
        verify_session_two_factor(sessions, session.session_id)

    token = create_session_token(admin_user.id, session.session_id)
    update_admin_login(db, admin_user)
    permissions = get_effective_permissions(admin_user)
    logger.info(f"Admin {admin_user.id} logged in (session {session.session_id})")

    ctx = AdminContext(admin_user=admin_user, session_id=session.session_id, permissions=permissions)
    record_admin_action(
        db, ctx, request, "ADMIN_LOGIN",
        resource_type="admin_user", resource_id=admin_user.id,
        details={"rememberMe": req.rememberMe},
    )

    if req.rememberMe:
        _set_admin_cookie(response, token)

    return {
        "success": True,
        "message": "Admin login successful",
        "data": {
            "token": token,
            "adminUser": _serialize_admin(admin_user, permissions),
            "session": {"sessionId": session.session_id, "createdAt": _epoch_iso(session.created_at)},
        },
        "timestamp": utcnow().isoformat(),
    }


@router.post("/auth/logout")
def admin_logout(
    request: Request,
    response: Response,
    ctx: AdminContext = Depends(admin_rate_limit),
    db: Session = Depends(get_db),
    sessions: AdminSessionStore = Depends(get_admin_session_store),
):
    destroy_session(sessions, ctx.session_id)
    _clear_admin_cookie(response)
    record_admin_action(db, ctx, request, "ADMIN_LOGOUT", resource_type="admin_user", resource_id=ctx.admin_user.id)
    logger.info(f"Admin {ctx.admin_user.id} logged out")
    return {"success": True, "message": "Admin logout successful", "timestamp": utcnow().isoformat()}


@router.post("/auth/refresh")
def refresh_token(ctx: AdminContext = Depends(admin_rate_limit)):
    token = create_session_token(ctx.admin_user.id, ctx.session_id)
    expires_at = utcnow() + timedelta(hours=settings.ADMIN_SESSION_TOKEN_HOURS)
    return {
        "success": True,
        "message": "Token refreshed successfully",
        "data": {"token": token, "expiresAt": expires_at.isoformat()},
        "timestamp": utcnow().isoformat(),
    }


@router.get("/auth/session")
def session_info(
    ctx: AdminContext = Depends(admin_rate_limit),
    sessions: AdminSessionStore = Depends(get_admin_session_store),
):
    session = sessions.get(ctx.session_id)
    if not session:
        raise AdminAuthError("Session Not Found", "Admin session not found or expired")
    return {
        "success": True,
        "data": {
            "session": {
                "sessionId": session.session_id,
                "createdAt": _epoch_iso(session.created_at),
                "lastActivity": _epoch_iso(session.last_activity),
                "ipAddress": session.ip_address,
                "twoFactorVerified": session.two_factor_verified,
            },
            "adminUser": _serialize_admin(ctx.admin_user, ctx.permissions),
        },
        "timestamp": utcnow().isoformat(),
    }


@router.post("/auth/2fa/setup")
def setup_two_factor(
    request: Request,
    ctx: AdminContext = Depends(strict_admin_rate_limit("/api/v1/enterprise-admin/auth/2fa/setup")),
    db: Session = Depends(get_db),
):
    admin_user = ctx.admin_user
    if admin_user.two_factor_enabled:
        raise AdminAuthError("Already Enabled", "Two-factor authentication is already enabled", status_code=400)
    setup = build_setup(admin_user.user.email)
    # Stored encrypted; not active until a code is verified.
    admin_user.two_factor_secret = encrypt_secret(setup.secret)
    db.commit()
    record_admin_action(db, ctx, request, "INITIATE_2FA_SETUP", resource_type="admin_user", resource_id=admin_user.id)
    return {
        "success": True,
        "message": "Two-factor authentication setup initiated",
        "data": {
            "secret": setup.secret,
            "qrCode": setup.qr_code,
            "otpauthUrl": setup.otpauth_url,
            "manualEntryKey": setup.manual_entry_key,
            "instructions": [
                "Scan the QR code with your authenticator app",
                "Enter the verification code to complete setup",
            ],
        },
        "timestamp": utcnow().isoformat(),
    }


@router.post("/auth/2fa/verify")
def verify_two_factor(
    req: TwoFactorTokenRequest,
    request: Request,
    ctx: AdminContext = Depends(strict_admin_rate_limit("/api/v1/enterprise-admin/auth/2fa/verify")),
    db: Session = Depends(get_db),
    sessions: AdminSessionStore = Depends(get_admin_session_store),
):
    admin_user = ctx.admin_user
    if not admin_user.two_factor_secret:
        raise AdminAuthError(
            "Setup Required",
            "Two-factor authentication setup must be initiated first",
            status_code=400,
        )
    if not verify_token(decrypt_secret(admin_user.two_factor_secret), req.token):
        raise AdminAuthError("Invalid Token", "The verification token is invalid", status_code=400)

    admin_user.two_factor_enabled = True
    db.commit()
    verify_session_two_factor(sessions, ctx.session_id)
    record_admin_action(db, ctx, request, "ENABLE_2FA", resource_type="admin_user", resource_id=admin_user.id)
    logger.info(f"2FA enabled for admin {admin_user.id}")
    return {
        "success": True,
        "message": "Two-factor authentication enabled successfully",
        "timestamp": utcnow().isoformat(),
    }


@router.post("/auth/2fa/disable")
def disable_two_factor(
    req: TwoFactorDisableRequest,
    request: Request,
    ctx: AdminContext = Depends(strict_admin_rate_limit("/api/v1/enterprise-admin/auth/2fa/disable")),
    db: Session = Depends(get_db),
):
    admin_user = ctx.admin_user
    if not verify_password(req.password, admin_user.user.password_hash):
        raise AdminAuthError("Invalid Password", "The password is incorrect")
    if not verify_token(decrypt_secret(admin_user.two_factor_secret), req.token):
        raise AdminAuthError(
            "Invalid Token",
            "The two-factor authentication token is invalid",
            status_code=400,
        )
    admin_user.two_factor_enabled = False
    admin_user.two_factor_secret = None
    db.commit()
    record_admin_action(db, ctx, request, "DISABLE_2FA", resource_type="admin_user", resource_id=admin_user.id)
    logger.info(f"2FA disabled for admin {admin_user.id}")
    return {
        "success": True,
        "message": "Two-factor authentication disabled successfully",
        "timestamp": utcnow().isoformat(),
    }


@router.post("/auth/change-password")
def change_password(
    req: ChangePasswordRequest,
    request: Request,
    response: Response,
    ctx: AdminContext = Depends(strict_admin_rate_limit("/api/v1/enterprise-admin/auth/change-password")),
    db: Session = Depends(get_db),
    sessions: AdminSessionStore = Depends(get_admin_session_store),
):
    user = ctx.admin_user.user
    if not verify_password(req.currentPassword, user.password_hash):
        raise AdminAuthError("Invalid Current Password", "The current password provided is incorrect")
    user.password_hash = hash_password(req.newPassword)
    user.token_version = int(user.token_version or 0) + 1
    db.commit()

    record_admin_action(
        db, ctx, request, "CHANGE_PASSWORD", resource_type="admin_user", resource_id=ctx.admin_user.id
    )
    invalidate_all_user_sessions(sessions, ctx.admin_user.id)
    _clear_admin_cookie(response)
    return {
        "success": True,
        "message": "Password changed successfully",
        "data": {"sessionsInvalidated": True, "requiresReauthentication": True},
        "timestamp": utcnow().isoformat(),
    }


# ---------------------------------------------------------------------------
# Administration
# ---------------------------------------------------------------------------

@router.get("/users")
def list_users(
    search: Optional[str] = Query(default=None, max_length=200),
    plan: Optional[str] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    ctx: AdminContext = Depends(require_permission("user_view")),
    db: Session = Depends(get_db),
):
    query = db.query(User).filter(User.deleted_at.is_(None))
    if search and search.strip():
        pattern = f"%{search.strip().lower()}%"
        query = query.filter(
            or_(User.email.ilike(pattern), User.first_name.ilike(pattern), User.last_name.ilike(pattern))
        )
    if plan:
        query = query.filter(User.subscription_plan == plan)
    total = query.count()
    rows = query.order_by(User.created_at.desc(), User.id.desc()).offset(offset).limit(limit).all()
    return {
        "success": True,
        "data": {
            "users": [
                {
                    "id": u.id,
                    "email": u.email,
                    "name": u.full_name,
                    "subscription_plan": u.subscription_plan,
                    "subscription_status": u.subscription_status,
                    "is_active": bool(u.is_active),
                    "email_verified": bool(u.email_verified),
                    "created_at": iso_or_none(u.created_at),
                }
                for u in rows
            ],
            "total": total,
            "limit": limit,
            "offset": offset,
        },
    }


@router.put("/users/{user_id}/subscription")
def update_user_subscription(
    user_id: int,
    req: ManageUserSubscriptionBody,
    request: Request,
    ctx: AdminContext = Depends(require_permission("subscription_management")),
    db: Session = Depends(get_db),
):
    started = time.perf_counter()
    result = subscription_service.manage_subscription(
        db,
        user_id,
        plan=req.subscription_plan,
        status=req.subscription_status,
    )
    record_admin_action(
        db, ctx, request, "UPDATE_USER_SUBSCRIPTION",
        resource_type="user", resource_id=user_id,
        details=req.model_dump(exclude_none=True), started=started,
    )
    return {"success": True, "message": "Subscription updated successfully", "data": result}


@router.get("/subscription-requests/pending")
def pending_subscription_requests(
    ctx: AdminContext = Depends(require_permission("subscription_view")),
    db: Session = Depends(get_db),
):
    requests = subscription_service.get_pending_requests(db)
    return {"success": True, "data": {"requests": requests, "total": len(requests)}}


@router.post("/subscription-requests/{request_id}/process")
def process_subscription_request(
    request_id: int,
    req: ProcessRequestBody,
    request: Request,
    ctx: AdminContext = Depends(require_permission("subscription_management")),
    db: Session = Depends(get_db),
):
    started = time.perf_counter()
    result = subscription_service.process_request(
        db,
        request_id,
        req.action,
        req.admin_notes,
        processed_by=ctx.admin_user.user_id,
    )
    record_admin_action(
        db, ctx, request, f"{req.action.upper()}_SUBSCRIPTION_REQUEST",
        resource_type="subscription_request", resource_id=request_id,
        details={"action": req.action}, started=started,
    )
    message = result.pop("message")
    return {"success": True, "message": message, "data": result}


@router.get("/reviews")
def list_reviews(
    review_status: Optional[str] = Query(default=None, alias="status"),
    auto_flagged: Optional[bool] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    ctx: AdminContext = Depends(require_permission("content_moderation")),
    db: Session = Depends(get_db),
):
    query = db.query(Review)
    if review_status:
        query = query.filter(Review.review_status == review_status)
    if auto_flagged is not None:
        query = query.filter(Review.auto_flagged.is_(auto_flagged))
    total = query.count()
    rows = query.order_by(Review.created_at.desc(), Review.id.desc()).offset(offset).limit(limit).all()
    return {
        "success": True,
        "data": {
            "reviews": [_serialize_review(r) for r in rows],
            "total": total,
            "limit": limit,
            "offset": offset,
        },
    }


def _serialize_review(row: Review) -> dict:
    return {
        "id": row.id,
        "user_id": row.user_id,
        "response_id": row.response_id,
        "review_status": row.review_status,
        "priority": row.priority,
        "auto_flagged": bool(row.auto_flagged),
        "admin_notes": row.admin_notes,
        "reviewed_by": row.reviewed_by,
        "processed_at": iso_or_none(row.processed_at),
        "created_at": iso_or_none(row.created_at),
    }


@router.put("/reviews/{review_id}")
def update_review(
    review_id: int,
    req: ReviewUpdateBody,
    request: Request,
    ctx: AdminContext = Depends(require_permission("content_moderation")),
    db: Session = Depends(get_db),
):
    row = db.query(Review).filter(Review.id == review_id).first()
    if not row:
        raise AdminAuthError("Review Not Found", "Review not found", status_code=404)
    changes = req.model_dump(exclude_unset=True)
    for field in NON_NULL_REVIEW_FIELDS:
        if field in changes and changes[field] is None:
            raise AdminAuthError("Validation Error", f"{field} cannot be null", status_code=400)
    for field, value in changes.items():
        setattr(row, field, value)
    row.reviewed_by = ctx.admin_user.id
    row.processed_at = utcnow_naive()
    db.commit()
    record_admin_action(
        db, ctx, request, "UPDATE_REVIEW",
        resource_type="review", resource_id=review_id, details=changes,
    )
    return {"success": True, "data": _serialize_review(row)}


@router.get("/activity")
def activity_log(
    admin_user_id: Optional[int] = Query(default=None),
    action: Optional[str] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    ctx: AdminContext = Depends(require_permission("system_monitoring")),
    db: Session = Depends(get_db),
):
    data = list_activity(db, admin_user_id=admin_user_id, action=action, limit=limit, offset=offset)
    return {"success": True, "data": data}


@router.post("/admin-users", status_code=status.HTTP_201_CREATED)
def create_admin_user(
    req: CreateAdminUserRequest,
    request: Request,
    ctx: AdminContext = Depends(require_role_level(100)),
    db: Session = Depends(get_db),
):
    email = normalize_email(req.email)
    role = db.query(AdminRole).filter(AdminRole.name == req.role, AdminRole.is_active.is_(True)).first()
    if not role:
        raise AdminAuthError("Invalid Role", f"Role '{req.role}' does not exist", status_code=400)

    user = db.query(User).filter(User.email == email).first()
    created_user = False
    if user and user.admin_user:
        raise AdminAuthError("Admin Exists", "This user is already an admin", status_code=409)
    if not user:
        user = User(
            email=email,
            password_hash=hash_password(req.password),
            first_name=req.first_name.strip(),
            last_name=(req.last_name or "").strip(),
            subscription_plan="admin",
            subscription_status="active",
            email_verified=True,
        )
        db.add(user)
        db.flush()
        created_user = True

    admin_user = AdminUser(
        user_id=user.id,
        role_id=role.id,
        department=req.department,
        permissions_json=json.dumps(sorted(set(req.permissions))) if req.permissions else None,
        is_active=True,
    )
    db.add(admin_user)
    db.commit()
    db.refresh(admin_user)
    # Promoted users keep their plan and usage counters.
    if created_user:
        subscription_service.reset_usage_for_plan(db, user.id, user.subscription_plan)

    record_admin_action(
        db, ctx, request, "CREATE_ADMIN_USER",
        resource_type="admin_user", resource_id=admin_user.id,
        details={"email": email, "role": req.role},
    )
    logger.info(f"Admin {ctx.admin_user.id} created admin user {admin_user.id} with role {req.role}")
    return {"success": True, "data": _serialize_admin(admin_user, get_effective_permissions(admin_user))}
