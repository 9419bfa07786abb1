from __future__ import annotations

from typing import Any

from utils.datetime_utils import utcnow


class ServiceError(ValueError):
    """Business-rule failure raised by services and rendered by the app's exception handler."""

    status_code: int = 400

    def __init__(
        self,
        code: str,
        message: str,
        *,
        status_code: int | None = None,
        details: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.details = details
        self.headers = headers

    def to_payload(self) -> dict[str, Any]:
        error: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            error["details"] = self.details
        return {"success": False, "error": error, "timestamp": utcnow().isoformat()}


class SubscriptionError(ServiceError):
    pass


class AdminAuthError(ServiceError):
    """Enterprise admin auth failure; `code` is the error title shown to clients."""

    status_code = 401

    def __init__(
        self,
        code: str,
        message: str,
        *,
        status_code: int | None = None,
        extra: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> None:
        super().__init__(code, message, status_code=status_code, headers=headers)
        self.extra = extra or {}

    def to_payload(self) -> dict[str, Any]:
        return {
            "success": False,
            "error": self.code,
            "message": self.message,
            **self.extra,
            "timestamp": utcnow().isoformat(),
        }
