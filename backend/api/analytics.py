from datetime import date
from typing import Literal, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from api.questionnaires import get_owned_questionnaire
from auth.subscription_guards import require_feature
from db.database import get_db
from db.models import User
from services.analytics_service import get_questionnaire_summary, refresh_breakdown, serialize_breakdown

router = APIRouter(prefix="/analytics", tags=["analytics"])


@router.get("/questionnaires/{questionnaire_id}/summary")
def questionnaire_summary(
    questionnaire_id: int,
    user: User = Depends(require_feature("analytics")),
    db: Session = Depends(get_db),
):
    questionnaire = get_owned_questionnaire(db, user, questionnaire_id)
    return {"success": True, "data": get_questionnaire_summary(db, questionnaire)}


@router.get("/questionnaires/{questionnaire_id}/breakdown")
def questionnaire_breakdown(
    questionnaire_id: int,
    period: Literal["day", "week", "month", "year"] = Query(default="week"),
    reference_date: Optional[date] = Query(default=None, alias="date"),
    user: User = Depends(require_feature("advanced_analytics")),
    db: Session = Depends(get_db),
):
    questionnaire = get_owned_questionnaire(db, user, questionnaire_id)
    rows = refresh_breakdown(db, questionnaire.id, period, reference_date)
    return {
        "success": True,
        "data": {
            "questionnaire_id": questionnaire.id,
            "period": period,
            "period_date": rows[0].period_date.isoformat() if rows else None,
            "areas": [serialize_breakdown(r) for r in rows],
        },
    }
