import logging

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from sqlalchemy.orm import Session

from auth.models import LoginRequest, RegisterRequest, TokenResponse, UserResponse
from auth.utils import (
    create_token,
    get_current_user,
    hash_password,
    normalize_email,
    verify_password,
)
from config import settings
from db.database import get_db
from db.models import User
from services.rate_limit_service import RateLimitRule, enforce_rate_limit
from services.subscription_service import reset_usage_for_plan

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])


def _client_ip(request: Request) -> str:
    return (request.client.host if request.client else "") or "unknown"


def _set_session_cookie(response: Response, token: str, *, max_age_seconds: int) -> None:
    samesite = (settings.AUTH_COOKIE_SAMESITE or "lax").strip().lower()
    if samesite not in {"strict", "lax", "none"}:
        samesite = "lax"
    response.set_cookie(
        key=(settings.AUTH_COOKIE_NAME or "ulasis_session").strip() or "ulasis_session",
        value=token,
        httponly=bool(settings.AUTH_COOKIE_HTTPONLY),
        secure=bool(settings.AUTH_COOKIE_SECURE),
        samesite=samesite,  # type: ignore[arg-type]
        domain=settings.AUTH_COOKIE_DOMAIN,
        path=settings.AUTH_COOKIE_PATH or "/",
        max_age=max(int(max_age_seconds), 1),
    )


def _clear_session_cookie(response: Response) -> None:
    response.delete_cookie(
        key=(settings.AUTH_COOKIE_NAME or "ulasis_session").strip() or "ulasis_session",
        domain=settings.AUTH_COOKIE_DOMAIN,
        path=settings.AUTH_COOKIE_PATH or "/",
    )


def _auth_payload(user: User, token: str) -> dict:
    return {
        "success": True,
        "data": {
            **TokenResponse(access_token=token).model_dump(),
            "user": UserResponse.model_validate(user).model_dump(mode="json"),
        },
    }


def _limit_per_ip_and_email(request: Request, email: str, rule: RateLimitRule, what: str) -> None:
    ip = _client_ip(request)
    allowed, retry_after = enforce_rate_limit(
        rule=rule,
        scope_key=f"{ip}:{email}",
        ip_address=ip,
        details={"email": email},
    )
    if not allowed:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail=f"Too many {what} attempts. Please try again later.",
            headers={"Retry-After": str(retry_after)},
        )


@router.post("/register", status_code=status.HTTP_201_CREATED)
def register(req: RegisterRequest, request: Request, response: Response, db: Session = Depends(get_db)):
    email = normalize_email(req.email)
    _limit_per_ip_and_email(
        request,
        email,
        RateLimitRule(
            "/api/v1/auth/register",
            settings.RATE_LIMIT_AUTH_REGISTER_ATTEMPTS,
            settings.RATE_LIMIT_AUTH_REGISTER_WINDOW_SECONDS,
        ),
        "registration",
    )

    if db.query(User).filter(User.email == email).first():
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Email already registered")

    user = User(
        email=email,
        password_hash=hash_password(req.password),
        first_name=req.first_name.strip(),
        last_name=(req.last_name or "").strip(),
        subscription_plan="free",
        subscription_status="active",
        token_version=0,
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    reset_usage_for_plan(db, user.id, user.subscription_plan)
    logger.info(f"User {user.id} registered")

    token = create_token(user.id, token_version=user.token_version)
    _set_session_cookie(response, token, max_age_seconds=max(int(settings.JWT_EXPIRY_HOURS), 1) * 3600)
    return _auth_payload(user, token)


@router.post("/login")
def login(req: LoginRequest, request: Request, response: Response, db: Session = Depends(get_db)):
    email = normalize_email(req.email)
    _limit_per_ip_and_email(
        request,
        email,
        RateLimitRule(
            "/api/v1/auth/login",
            settings.RATE_LIMIT_AUTH_LOGIN_ATTEMPTS,
            settings.RATE_LIMIT_AUTH_LOGIN_WINDOW_SECONDS,
        ),
        "login",
    )
    user = db.query(User).filter(User.email == email, User.deleted_at.is_(None)).first()
    if not user or not verify_password(req.password, user.password_hash):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid credentials")
    if not user.is_active:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Account is disabled")
    token = create_token(user.id, token_version=user.token_version)
    _set_session_cookie(response, token, max_age_seconds=max(int(settings.JWT_EXPIRY_HOURS), 1) * 3600)
    return _auth_payload(user, token)


@router.get("/me")
def me(user: User = Depends(get_current_user)):
    return {"success": True, "data": UserResponse.model_validate(user).model_dump(mode="json")}


@router.post("/logout")
def logout(response: Response):
    _clear_session_cookie(response)
    return {"success": True, "message": "Logged out"}
