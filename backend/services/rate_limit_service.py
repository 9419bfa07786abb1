from __future__ import annotations

import hashlib
import json
import logging
import threading
import time
from collections import defaultdict, deque
from dataclasses import dataclass

from config import settings
from db.database import SessionLocal
from db.models import RateLimitAuditEvent

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitRule:
    endpoint: str
    limit: int
    window_seconds: int

    def key_for(self, scope_key: str) -> str:
        return f"{self.endpoint}:{scope_key}"


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    retry_after: int = 0
    remaining: int = 0


def admin_rule(endpoint: str = "enterprise-admin") -> RateLimitRule:
    return RateLimitRule(endpoint, settings.RATE_LIMIT_ADMIN_REQUESTS, settings.RATE_LIMIT_ADMIN_WINDOW_SECONDS)


def strict_rule(endpoint: str) -> RateLimitRule:
    return RateLimitRule(
        endpoint,
        settings.RATE_LIMIT_ADMIN_STRICT_REQUESTS,
        settings.RATE_LIMIT_ADMIN_STRICT_WINDOW_SECONDS,
    )


class InMemoryRateLimiter:
    """Per-process limiter; each key keeps the timestamps of its recent hits."""

    def __init__(self) -> None:
        self._windows: dict[str, deque[float]] = defaultdict(deque)
        self._lock = threading.Lock()

    def hit(self, rule: RateLimitRule, scope_key: str, now: float | None = None) -> RateLimitDecision:
        now = time.time() if now is None else now
        window = max(int(rule.window_seconds), 1)
        budget = max(int(rule.limit), 1)
        with self._lock:
            hits = self._windows[rule.key_for(scope_key)]
            while hits and hits[0] <= now - window:
                hits.popleft()
            if len(hits) >= budget:
                # The oldest hit leaving the window frees the next slot.
                return RateLimitDecision(allowed=False, retry_after=max(int(hits[0] + window - now), 1))
            hits.append(now)
            return RateLimitDecision(allowed=True, remaining=budget - len(hits))

    def reset(self) -> None:
        with self._lock:
            self._windows.clear()


_limiter = InMemoryRateLimiter()


def get_rate_limiter() -> InMemoryRateLimiter:
    return _limiter


# Raw emails and IPs never land in the key column.
def _hash_scope(scope_key: str) -> str:
    return hashlib.sha256((scope_key or "").encode("utf-8")).hexdigest()[:24]


def record_rate_limit_event(
    *,
    endpoint: str,
    scope_key: str,
    blocked: bool,
    retry_after_seconds: int | None = None,
    user_id: int | None = None,
    ip_address: str | None = None,
    details: dict | None = None,
) -> None:
    """Best-effort audit write on its own session so callers' transactions are untouched."""
    db = SessionLocal()
    try:
        db.add(
            RateLimitAuditEvent(
                endpoint=endpoint,
                scope_key=_hash_scope(scope_key),
                blocked=bool(blocked),
                retry_after_seconds=retry_after_seconds or None,
                user_id=user_id,
                ip_address=(ip_address or "").strip()[:128] or None,
                details_json=json.dumps(details or {}, ensure_ascii=True),
            )
        )
        db.commit()
    except Exception as e:
        db.rollback()
        logger.warning(f"Rate limit audit write failed for {endpoint}: {e}")
    finally:
        db.close()


def enforce_rate_limit(
    *,
    rule: RateLimitRule,
    scope_key: str,
    user_id: int | None = None,
    ip_address: str | None = None,
    details: dict | None = None,
    record_allowed: bool = False,
    limiter: InMemoryRateLimiter | None = None,
) -> tuple[bool, int]:
    """Count one hit against `rule` for `scope_key`. Returns `(allowed, retry_after_seconds)`."""
    decision = (limiter or _limiter).hit(rule, scope_key)
    if not decision.allowed:
        logger.warning(f"Rate limit exceeded on {rule.endpoint} (retry after {decision.retry_after}s)")
    if record_allowed or not decision.allowed:
        record_rate_limit_event(
            endpoint=rule.endpoint,
            scope_key=scope_key,
            blocked=not decision.allowed,
            retry_after_seconds=decision.retry_after,
            user_id=user_id,
            ip_address=ip_address,
            details={
                **(details or {}),
                "limit": rule.limit,
                "window_seconds": rule.window_seconds,
                "remaining": decision.remaining,
            },
        )
    return decision.allowed, decision.retry_after
