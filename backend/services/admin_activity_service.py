from __future__ import annotations

import json
import logging

from sqlalchemy.orm import Session

from db.models import AdminActivity, AdminUser
from utils.datetime_utils import iso_or_none, utcnow_naive

logger = logging.getLogger(__name__)

ACTIVITY_STATUSES = {"success", "failure", "warning"}


def log_activity(
    db: Session,
    *,
    admin_user_id: int,
    action: str,
    resource_type: str | None = None,
    resource_id: int | None = None,
    details: dict | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
    session_id: str | None = None,
    duration_ms: int | None = None,
    status: str = "success",
    error_message: str | None = None,
) -> AdminActivity | None:
    """Append an audit row. Failures are logged and never raised to the caller."""
    if status not in ACTIVITY_STATUSES:
        status = "warning"
    try:
        row = AdminActivity(
            admin_user_id=admin_user_id,
            action=action,
            resource_type=resource_type,
            resource_id=resource_id,
            details_json=json.dumps(details or {}, ensure_ascii=True, default=str),
            ip_address=(ip_address or "")[:128] or None,
            user_agent=(user_agent or "")[:512] or None,
            session_id=session_id,
            duration_ms=duration_ms,
            status=status,
            error_message=error_message,
        )
        db.add(row)
        db.commit()
        return row
    except Exception as e:
        db.rollback()
        logger.error(f"Failed to record admin activity '{action}' for admin {admin_user_id}: {e}")
        return None


def update_admin_login(db: Session, admin_user: AdminUser) -> None:
    admin_user.last_login_at = utcnow_naive()
    admin_user.login_count = int(admin_user.login_count or 0) + 1
    db.commit()


def list_activity(
    db: Session,
    *,
    admin_user_id: int | None = None,
    action: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> dict:
    query = db.query(AdminActivity)
    if admin_user_id is not None:
        query = query.filter(AdminActivity.admin_user_id == admin_user_id)
    if action:
        query = query.filter(AdminActivity.action == action)
    total = query.count()
    rows = (
        query.order_by(AdminActivity.created_at.desc(), AdminActivity.id.desc())
        .offset(max(int(offset), 0))
        .limit(max(min(int(limit), 200), 1))
        .all()
    )
    items = []
    for row in rows:
        try:
            details = json.loads(row.details_json) if row.details_json else {}
        except (TypeError, ValueError):
            details = {}
        items.append({
            "id": row.id,
            "admin_user_id": row.admin_user_id,
            "action": row.action,
            "resource_type": row.resource_type,
            "resource_id": row.resource_id,
            "details": details,
            "ip_address": row.ip_address,
            "session_id": row.session_id,
            "duration_ms": row.duration_ms,
            "status": row.status,
            "error_message": row.error_message,
            "created_at": iso_or_none(row.created_at),
        })
    return {"items": items, "total": total, "limit": limit, "offset": offset}
