from typing import Literal

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from auth.utils import get_current_user, require_admin
from db.database import get_db
from db.models import User
from services import subscription_service

router = APIRouter(prefix="/subscription", tags=["subscription"])


class UpgradeRequestBody(BaseModel):
    target_plan: str = Field(min_length=1, max_length=32)
    reason: str | None = Field(default=None, max_length=1000)


class ProcessRequestBody(BaseModel):
    action: Literal["approve", "reject"]
    admin_notes: str | None = Field(default=None, max_length=2000)


class ManageSubscriptionBody(BaseModel):
    user_id: int
    subscription_plan: str | None = None
    subscription_status: str | None = None


@router.get("/current")
def current_subscription(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    data = subscription_service.get_current_subscription(db, user.id)
    data["upgrade_suggestions"] = subscription_service.generate_upgrade_prompt(db, user.id)["upgrade_suggestions"]
    return {"success": True, "data": data}


@router.get("/usage")
def usage(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return {
        "success": True,
        "data": {
            "plan": user.subscription_plan,
            "usage": subscription_service.get_current_usage(db, user.id),
            "limits": subscription_service.get_plan_limits(user.subscription_plan),
        },
    }


@router.post("/upgrade-request", status_code=status.HTTP_201_CREATED)
def upgrade_request(
    req: UpgradeRequestBody,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    result = subscription_service.request_upgrade(db, user.id, req.target_plan.strip().lower(), req.reason)
    message = result.pop("message")
    return {"success": True, "message": message, "data": result}


@router.get("/plans")
def plans(user: User = Depends(get_current_user)):
    return {
        "success": True,
        "data": subscription_service.get_available_plans(),
        "current_plan": user.subscription_plan,
    }


@router.get("/upgrade-suggestions")
def upgrade_suggestions(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return {"success": True, "data": subscription_service.generate_upgrade_prompt(db, user.id)}


@router.get("/payments")
def payments(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return {"success": True, "data": subscription_service.get_payment_history(db, user.id)}


@router.get("/requests/pending")
def pending_requests(admin: User = Depends(require_admin), db: Session = Depends(get_db)):
    requests = subscription_service.get_pending_requests(db)
    return {"success": True, "data": {"requests": requests, "total": len(requests)}}


@router.get("/requests/{request_id}")
def request_detail(request_id: int, admin: User = Depends(require_admin), db: Session = Depends(get_db)):
    return {"success": True, "data": subscription_service.get_request_by_id(db, request_id)}


@router.post("/requests/{request_id}/process")
def process_request(
    request_id: int,
    req: ProcessRequestBody,
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
):
    result = subscription_service.process_request(db, request_id, req.action, req.admin_notes, processed_by=admin.id)
    message = result.pop("message")
    return {"success": True, "message": message, "data": result}


@router.put("/manage")
def manage(req: ManageSubscriptionBody, admin: User = Depends(require_admin), db: Session = Depends(get_db)):
    result = subscription_service.manage_subscription(
        db,
        req.user_id,
        plan=req.subscription_plan,
        status=req.subscription_status,
    )
    return {"success": True, "message": "Subscription updated successfully", "data": result}
