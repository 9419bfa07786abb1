import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from auth.subscription_guards import raise_for_limit
from config import settings
from db.database import get_db
from db.models import Answer, Questionnaire, Response as SurveyResponse, Review, User
from services.rate_limit_service import RateLimitRule, enforce_rate_limit
from services.subscription_service import UsageType, consume_usage

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/responses", tags=["responses"])

AUTO_FLAG_MAX_RATING = 2.0


class AnswerSubmission(BaseModel):
    question_id: int
    answer_value: Optional[str] = Field(default=None, max_length=5000)
    rating_score: Optional[float] = Field(default=None, ge=0, le=10)


class ResponseSubmission(BaseModel):
    questionnaire_id: int
    answers: list[AnswerSubmission] = Field(min_length=1)


def _client_ip(request: Request) -> str:
    return (request.client.host if request.client else "") or "unknown"


def _is_answered(answer: AnswerSubmission) -> bool:
    return answer.rating_score is not None or bool((answer.answer_value or "").strip())


@router.post("", status_code=status.HTTP_201_CREATED)
def submit_response(req: ResponseSubmission, request: Request, db: Session = Depends(get_db)):
    allowed, retry_after = enforce_rate_limit(
        rule=RateLimitRule(
            endpoint="/api/v1/responses",
            limit=settings.RATE_LIMIT_RESPONSE_SUBMIT_ATTEMPTS,
            window_seconds=settings.RATE_LIMIT_RESPONSE_SUBMIT_WINDOW_SECONDS,
        ),
        scope_key=f"{_client_ip(request)}:{req.questionnaire_id}",
        ip_address=_client_ip(request),
    )
    if not allowed:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Too many submissions. Please try again later.",
            headers={"Retry-After": str(retry_after)},
        )

    questionnaire = (
        db.query(Questionnaire)
        .join(User, Questionnaire.user_id == User.id)
        .filter(
            Questionnaire.id == req.questionnaire_id,
            Questionnaire.deleted_at.is_(None),
            Questionnaire.is_active.is_(True),
            User.deleted_at.is_(None),
        )
        .first()
    )
    if not questionnaire:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Questionnaire not found or inactive")

    questions = {q.id: q for q in questionnaire.questions}
    unknown = [a.question_id for a in req.answers if a.question_id not in questions]
    if unknown:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Questions do not belong to this questionnaire: {unknown}",
        )
    answered = {a.question_id for a in req.answers if _is_answered(a)}
    missing_required = [qid for qid, q in questions.items() if q.is_required and qid not in answered]
    if missing_required:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Required questions cannot be skipped: {missing_required}",
        )

    # The questionnaire owner's plan pays for the response.
    raise_for_limit(consume_usage(db, questionnaire.user_id, UsageType.RESPONSES))

    response = SurveyResponse(
        questionnaire_id=questionnaire.id,
        ip_address=_client_ip(request),
        user_agent=(request.headers.get("user-agent") or "")[:512] or None,
        is_complete=bool(questions) and set(questions) <= answered,
    )
    db.add(response)
    db.flush()

    ratings = []
    for a in req.answers:
        db.add(
            Answer(
                response_id=response.id,
                question_id=a.question_id,
                answer_value=(a.answer_value or "").strip() or None,
                rating_score=a.rating_score,
            )
        )
        if a.rating_score is not None:
            ratings.append(a.rating_score)

    mean_rating = sum(ratings) / len(ratings) if ratings else None
    auto_flagged = mean_rating is not None and mean_rating <= AUTO_FLAG_MAX_RATING
    db.add(
        Review(
            user_id=questionnaire.user_id,
            response_id=response.id,
            review_status="pending",
            priority="high" if auto_flagged else "medium",
            auto_flagged=auto_flagged,
        )
    )
    db.commit()
    if auto_flagged:
        logger.info(f"Response {response.id} auto-flagged for review (mean rating {mean_rating:.2f})")

    return {
        "success": True,
        "data": {
            "response_id": response.id,
            "is_complete": bool(response.is_complete),
            "review_status": "pending",
            "auto_flagged": auto_flagged,
        },
    }
