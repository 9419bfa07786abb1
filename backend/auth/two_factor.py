from __future__ import annotations

import logging
from dataclasses import dataclass

import pyotp

from config import settings
from services.qr_code_service import render_data_url

logger = logging.getLogger(__name__)


@dataclass
class TwoFactorSetup:
    secret: str
    otpauth_url: str
    qr_code: str  # data:image/png;base64,...
    manual_entry_key: str


def generate_secret() -> str:
    return pyotp.random_base32(length=32)


def provisioning_uri(secret: str, account_name: str) -> str:
    return pyotp.TOTP(secret).provisioning_uri(name=account_name, issuer_name=settings.ADMIN_TOTP_ISSUER)


def qr_code_data_url(data: str) -> str:
    return render_data_url(data, size=264, error_correction_level="L", border=2)


def build_setup(account_name: str) -> TwoFactorSetup:
    secret = generate_secret()
    uri = provisioning_uri(secret, account_name)
    return TwoFactorSetup(
        secret=secret,
        otpauth_url=uri,
        qr_code=qr_code_data_url(uri),
        manual_entry_key=secret,
    )


def verify_token(secret: str | None, token: str | None) -> bool:
    """Check a 6-digit code allowing the configured number of 30s steps of drift."""
    if not secret or not token:
        return False
    code = "".join((token or "").split())
    if not code.isdigit():
        return False
    try:
        return pyotp.TOTP(secret).verify(code, valid_window=settings.ADMIN_TOTP_VALID_WINDOW)
    except (TypeError, ValueError) as e:
        logger.warning(f"TOTP verification failed on malformed secret: {e}")
        return False
