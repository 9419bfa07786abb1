from datetime import datetime, timedelta, timezone

import bcrypt
import jwt
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from config import settings
from db.database import get_db
from db.models import User

TOKEN_TYPE = "user"

bearer_scheme = HTTPBearer(auto_error=False)


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=detail)


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode(), bcrypt.gensalt()).decode()


def verify_password(password: str, hashed: str) -> bool:
    # Malformed hashes (e.g. rows imported from another system) count as a mismatch.
    try:
        return bcrypt.checkpw(password.encode(), (hashed or "").encode())
    except ValueError:
        return False


def create_token(user_id: int, token_version: int = 0, expiry_hours_override: int | None = None) -> str:
    issued_at = datetime.now(timezone.utc)
    hours = settings.JWT_EXPIRY_HOURS if expiry_hours_override is None else int(expiry_hours_override)
    return jwt.encode(
        {
            "sub": str(user_id),
            "type": TOKEN_TYPE,
            "tv": int(token_version or 0),
            "iat": issued_at,
            "exp": issued_at + timedelta(hours=hours),
        },
        settings.SECRET_KEY,
        algorithm=settings.JWT_ALGORITHM,
    )


def decode_user_token(token: str) -> tuple[int, int]:
    """Return `(user_id, token_version)` from a user session token."""
    try:
        claims = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise _unauthorized("Token expired")
    except jwt.InvalidTokenError:
        raise _unauthorized("Invalid token")
    # Enterprise admin tokens share the signing key and must not pass here.
    if claims.get("type", TOKEN_TYPE) != TOKEN_TYPE:
        raise _unauthorized("Invalid token")
    try:
        return int(claims["sub"]), int(claims.get("tv", 0))
    except (KeyError, TypeError, ValueError):
        raise _unauthorized("Invalid token")


def get_current_user(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    db: Session = Depends(get_db),
) -> User:
    cookie_name = (settings.AUTH_COOKIE_NAME or "").strip() or "ulasis_session"
    token = (credentials.credentials if credentials else None) or request.cookies.get(cookie_name)
    if not token:
        raise _unauthorized("Not authenticated")

    user_id, token_version = decode_user_token(token)
    user = db.query(User).filter(User.id == user_id, User.deleted_at.is_(None)).first()
    if not user:
        raise _unauthorized("User not found")
    if not user.is_active:
        raise _unauthorized("Account is disabled")
    if token_version != int(user.token_version or 0):
        raise _unauthorized("Session invalidated. Please sign in again.")

    request.state.user_id = user.id
    return user


def require_admin(user: User = Depends(get_current_user)) -> User:
    """Users on the admin plan; guards the plan-level admin routes under /subscription."""
    if (user.subscription_plan or "").lower() != "admin":
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")
    return user
