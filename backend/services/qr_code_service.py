from __future__ import annotations

import base64
import hashlib
import io
import json
import logging
import re
import secrets
import time
from datetime import datetime, timedelta

import qrcode
from qrcode.constants import ERROR_CORRECT_H, ERROR_CORRECT_L, ERROR_CORRECT_M, ERROR_CORRECT_Q
from sqlalchemy import case, func
from sqlalchemy.orm import Session

from config import settings
from db.models import QRCode, QRCodeScan, Questionnaire
from services.errors import ServiceError
from utils.datetime_utils import iso_or_none, utcnow_naive

logger = logging.getLogger(__name__)

ERROR_CORRECTION_LEVELS = {
    "L": ERROR_CORRECT_L,
    "M": ERROR_CORRECT_M,
    "Q": ERROR_CORRECT_Q,
    "H": ERROR_CORRECT_H,
}
MIN_SIZE = 50
MAX_SIZE = 1000
DEFAULT_COLORS = {"foreground": "#000000", "background": "#FFFFFF"}
SCAN_DEDUP_SECONDS = 300

_HEX_COLOR = re.compile(r"^#[0-9A-Fa-f]{6}$")


def validate_options(
    *,
    size: int | None = None,
    error_correction_level: str | None = None,
    custom_colors: dict | None = None,
) -> None:
    errors: list[str] = []
    if size is not None and not MIN_SIZE <= int(size) <= MAX_SIZE:
        errors.append(f"Size must be between {MIN_SIZE} and {MAX_SIZE} pixels")
    if error_correction_level is not None and error_correction_level not in ERROR_CORRECTION_LEVELS:
        errors.append("Error correction level must be one of: L, M, Q, H")
    for key in ("foreground", "background"):
        value = (custom_colors or {}).get(key)
        if value is not None and not _HEX_COLOR.match(str(value)):
            errors.append(f"{key.capitalize()} color must be a valid hex color (e.g., #000000)")
    if errors:
        raise ServiceError("VALIDATION_ERROR", "; ".join(errors), status_code=400, details={"errors": errors})


def generate_qr_data(questionnaire_id: int) -> str:
    base = (settings.FRONTEND_URL or "").rstrip("/")
    return f"{base}/q/{questionnaire_id}?qr={int(time.time() * 1000)}-{secrets.token_hex(16)}"


def render_data_url(
    data: str,
    *,
    size: int = 200,
    error_correction_level: str = "M",
    foreground: str = DEFAULT_COLORS["foreground"],
    background: str = DEFAULT_COLORS["background"],
    border: int = 1,
) -> str:
    """PNG data URL roughly `size` pixels wide; modules are whole pixels so the exact width rounds down."""
    qr = qrcode.QRCode(
        error_correction=ERROR_CORRECTION_LEVELS.get(error_correction_level, ERROR_CORRECT_M),
        border=border,
    )
    qr.add_data(data)
    qr.make(fit=True)
    qr.box_size = max(size // (qr.modules_count + 2 * border), 1)
    img = qr.make_image(fill_color=foreground, back_color=background)
    buffer = io.BytesIO()
    img.save(buffer, format="PNG")
    return "data:image/png;base64," + base64.b64encode(buffer.getvalue()).decode("utf-8")


def qr_image_data_url(row: QRCode) -> str:
    colors = {**DEFAULT_COLORS, **row.custom_colors}
    return render_data_url(
        row.qr_code_data,
        size=int(row.size or 200),
        error_correction_level=row.error_correction_level or "M",
        foreground=colors["foreground"],
        background=colors["background"],
    )


def is_expired(row: QRCode, now: datetime | None = None) -> bool:
    if row.expires_at is None:
        return False
    return (now or utcnow_naive()) > row.expires_at


def is_scannable(row: QRCode, now: datetime | None = None) -> bool:
    questionnaire = row.questionnaire
    if not row.is_active or is_expired(row, now):
        return False
    return bool(questionnaire and questionnaire.is_active and questionnaire.deleted_at is None)


def create_qr_code(
    db: Session,
    questionnaire: Questionnaire,
    *,
    location_tag: str | None = None,
    size: int = 200,
    error_correction_level: str = "M",
    custom_colors: dict | None = None,
    expires_at: datetime | None = None,
) -> QRCode:
    validate_options(size=size, error_correction_level=error_correction_level, custom_colors=custom_colors)
    row = QRCode(
        questionnaire_id=questionnaire.id,
        qr_code_data=generate_qr_data(questionnaire.id),
        location_tag=(location_tag or "").strip() or None,
        custom_colors_json=json.dumps(custom_colors) if custom_colors else None,
        size=size,
        error_correction_level=error_correction_level,
        expires_at=expires_at,
        is_active=True,
    )
    db.add(row)
    db.commit()
    db.refresh(row)
    logger.info(f"QR code {row.id} created for questionnaire {questionnaire.id}")
    return row


def update_qr_code(db: Session, row: QRCode, changes: dict) -> QRCode:
    validate_options(
        size=changes.get("size"),
        error_correction_level=changes.get("error_correction_level"),
        custom_colors=changes.get("custom_colors"),
    )
    for field, value in changes.items():
        if field == "custom_colors":
            row.custom_colors_json = json.dumps(value) if value else None
        elif field == "location_tag":
            row.location_tag = (value or "").strip() or None
        elif value is not None or field == "expires_at":
            setattr(row, field, value)
    db.commit()
    db.refresh(row)
    return row


def device_fingerprint(ip_address: str | None, user_agent: str | None) -> str:
    raw = f"{ip_address or ''}|{user_agent or ''}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:32]


def record_scan(
    db: Session,
    qr_code_id: int,
    *,
    ip_address: str | None = None,
    user_agent: str | None = None,
    now: datetime | None = None,
) -> dict:
    """Count a scan. Repeat scans from one device inside the dedup window are reported but not counted."""
    now = now or utcnow_naive()
    row = db.query(QRCode).filter(QRCode.id == qr_code_id).first()
    if not row:
        raise ServiceError("NOT_FOUND", "QR code not found", status_code=404)
    if not is_scannable(row, now):
        raise ServiceError("INVALID_QR_CODE", "QR code is inactive or expired", status_code=400)

    fingerprint = device_fingerprint(ip_address, user_agent)
    previous = (
        db.query(QRCodeScan.created_at)
        .filter(QRCodeScan.qr_code_id == row.id, QRCodeScan.device_fingerprint == fingerprint)
        .order_by(QRCodeScan.created_at.desc())
        .first()
    )
    if previous and previous[0] is not None and now - previous[0] < timedelta(seconds=SCAN_DEDUP_SECONDS):
        return _scan_result(row, is_duplicate=True, is_unique=False)

    is_unique = previous is None
    db.add(QRCodeScan(qr_code_id=row.id, device_fingerprint=fingerprint, created_at=now))
    db.query(QRCode).filter(QRCode.id == row.id).update(
        {
            QRCode.scan_count: QRCode.scan_count + 1,
            QRCode.unique_scans: QRCode.unique_scans + (1 if is_unique else 0),
            QRCode.last_scan_at: now,
        },
        synchronize_session=False,
    )
    db.commit()
    db.refresh(row)
    logger.info(f"QR code {row.id} scanned (unique={is_unique})")
    return _scan_result(row, is_duplicate=False, is_unique=is_unique)


def _scan_result(row: QRCode, *, is_duplicate: bool, is_unique: bool) -> dict:
    return {
        "questionnaire_id": row.questionnaire_id,
        "scan_count": int(row.scan_count or 0),
        "unique_scans": int(row.unique_scans or 0),
        "is_duplicate": is_duplicate,
        "is_unique": is_unique,
    }


def get_statistics(db: Session, user_id: int, questionnaire_id: int | None = None) -> dict:
    query = (
        db.query(
            Questionnaire.id,
            Questionnaire.title,
            func.count(QRCode.id),
            func.sum(case((QRCode.is_active.is_(True), 1), else_=0)),
            func.sum(QRCode.scan_count),
            func.sum(QRCode.unique_scans),
        )
        .join(QRCode, QRCode.questionnaire_id == Questionnaire.id)
        .filter(Questionnaire.user_id == user_id, Questionnaire.deleted_at.is_(None))
    )
    if questionnaire_id is not None:
        query = query.filter(Questionnaire.id == questionnaire_id)
    rows = query.group_by(Questionnaire.id, Questionnaire.title).order_by(Questionnaire.id).all()

    by_questionnaire = [
        {
            "questionnaire_id": qid,
            "questionnaire_title": title,
            "total_qr_codes": int(total or 0),
            "active_qr_codes": int(active or 0),
            "total_scans": int(scans or 0),
            "unique_scans": int(unique or 0),
        }
        for qid, title, total, active, scans, unique in rows
    ]
    overall = {
        key: sum(item[key] for item in by_questionnaire)
        for key in ("total_qr_codes", "active_qr_codes", "total_scans", "unique_scans")
    }
    return {"overall": overall, "by_questionnaire": by_questionnaire}


def serialize_qr_code(row: QRCode, *, with_image: bool = False) -> dict:
    data = {
        "id": row.id,
        "questionnaire_id": row.questionnaire_id,
        "qr_code_data": row.qr_code_data,
        "location_tag": row.location_tag,
        "custom_colors": row.custom_colors,
        "size": row.size,
        "error_correction_level": row.error_correction_level,
        "scan_count": int(row.scan_count or 0),
        "unique_scans": int(row.unique_scans or 0),
        "last_scan_at": iso_or_none(row.last_scan_at),
        "is_active": bool(row.is_active),
        "is_expired": is_expired(row),
        "expires_at": iso_or_none(row.expires_at),
        "created_at": iso_or_none(row.created_at),
    }
    if with_image:
        data["qr_code_image"] = qr_image_data_url(row)
    return data
