import logging
from datetime import datetime, timezone
from typing import Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from api.questionnaires import get_owned_questionnaire
from auth.subscription_guards import require_feature
from auth.utils import get_current_user
from config import settings
from db.database import get_db
from db.models import QRCode, Questionnaire, User
from services import qr_code_service
from services.rate_limit_service import RateLimitRule, enforce_rate_limit

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/qr-codes", tags=["qr-codes"])

ErrorCorrectionLevel = Literal["L", "M", "Q", "H"]


class QRColors(BaseModel):
    foreground: Optional[str] = None
    background: Optional[str] = None


class QRCodeCreate(BaseModel):
    questionnaire_id: int
    location_tag: Optional[str] = Field(default=None, max_length=255)
    size: int = 200
    error_correction_level: ErrorCorrectionLevel = "M"
    custom_colors: Optional[QRColors] = None
    expires_at: Optional[datetime] = None


class QRCodeUpdate(BaseModel):
    location_tag: Optional[str] = Field(default=None, max_length=255)
    size: Optional[int] = None
    error_correction_level: Optional[ErrorCorrectionLevel] = None
    custom_colors: Optional[QRColors] = None
    is_active: Optional[bool] = None
    expires_at: Optional[datetime] = None


def _client_ip(request: Request) -> str:
    return (request.client.host if request.client else "") or "unknown"


def _naive_utc(value: datetime | None) -> datetime | None:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _owned_qr_code(db: Session, user: User, qr_code_id: int) -> QRCode:
    row = (
        db.query(QRCode)
        .join(Questionnaire, Questionnaire.id == QRCode.questionnaire_id)
        .filter(
            QRCode.id == qr_code_id,
            Questionnaire.user_id == user.id,
            Questionnaire.deleted_at.is_(None),
        )
        .first()
    )
    if not row:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="QR code not found")
    return row


@router.get("")
def list_qr_codes(
    questionnaire_id: Optional[int] = Query(default=None),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    query = (
        db.query(QRCode)
        .join(Questionnaire, Questionnaire.id == QRCode.questionnaire_id)
        .filter(Questionnaire.user_id == user.id, Questionnaire.deleted_at.is_(None))
    )
    if questionnaire_id is not None:
        query = query.filter(QRCode.questionnaire_id == questionnaire_id)
    rows = query.order_by(QRCode.created_at.desc(), QRCode.id.desc()).all()
    return {"success": True, "data": [qr_code_service.serialize_qr_code(r) for r in rows]}


@router.get("/statistics")
def qr_code_statistics(
    questionnaire_id: Optional[int] = Query(default=None),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return {"success": True, "data": qr_code_service.get_statistics(db, user.id, questionnaire_id)}


@router.get("/{qr_code_id}")
def get_qr_code(qr_code_id: int, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    row = _owned_qr_code(db, user, qr_code_id)
    return {"success": True, "data": qr_code_service.serialize_qr_code(row, with_image=True)}


@router.post("", status_code=status.HTTP_201_CREATED)
def create_qr_code(
    req: QRCodeCreate,
    user: User = Depends(require_feature("qr_codes")),
    db: Session = Depends(get_db),
):
    questionnaire = get_owned_questionnaire(db, user, req.questionnaire_id)
    row = qr_code_service.create_qr_code(
        db,
        questionnaire,
        location_tag=req.location_tag,
        size=req.size,
        error_correction_level=req.error_correction_level,
        custom_colors=req.custom_colors.model_dump(exclude_none=True) if req.custom_colors else None,
        expires_at=_naive_utc(req.expires_at),
    )
    return {"success": True, "data": qr_code_service.serialize_qr_code(row, with_image=True)}


@router.put("/{qr_code_id}")
def update_qr_code(
    qr_code_id: int,
    req: QRCodeUpdate,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    row = _owned_qr_code(db, user, qr_code_id)
    changes = req.model_dump(exclude_unset=True)
    if "custom_colors" in changes and req.custom_colors is not None:
        changes["custom_colors"] = req.custom_colors.model_dump(exclude_none=True)
    if "expires_at" in changes:
        changes["expires_at"] = _naive_utc(req.expires_at)
    row = qr_code_service.update_qr_code(db, row, changes)
    return {"success": True, "data": qr_code_service.serialize_qr_code(row, with_image=True)}


@router.delete("/{qr_code_id}")
def delete_qr_code(qr_code_id: int, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    row = _owned_qr_code(db, user, qr_code_id)
    db.delete(row)
    db.commit()
    logger.info(f"QR code {qr_code_id} deleted by user {user.id}")
    return {"success": True, "message": "QR code deleted"}


@router.post("/{qr_code_id}/scan")
def scan_qr_code(qr_code_id: int, request: Request, db: Session = Depends(get_db)):
    ip = _client_ip(request)
    allowed, retry_after = enforce_rate_limit(
        rule=RateLimitRule(
            "/api/v1/qr-codes/scan",
            settings.RATE_LIMIT_RESPONSE_SUBMIT_ATTEMPTS,
            settings.RATE_LIMIT_RESPONSE_SUBMIT_WINDOW_SECONDS,
        ),
        scope_key=f"{ip}:{qr_code_id}",
        ip_address=ip,
    )
    if not allowed:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Too many scans. Please try again later.",
            headers={"Retry-After": str(retry_after)},
        )
    result = qr_code_service.record_scan(
        db,
        qr_code_id,
        ip_address=ip,
        user_agent=request.headers.get("user-agent"),
    )
    return {"success": True, "data": result}
