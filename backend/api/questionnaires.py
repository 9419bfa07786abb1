import json
import logging
from typing import Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from pydantic import BaseModel, Field
from sqlalchemy import func
from sqlalchemy.orm import Session, selectinload

from auth.subscription_guards import consume_or_raise, ensure_feature, require_active_subscription
from auth.utils import get_current_user
from db.database import get_db
from db.models import Answer, Question, Questionnaire, Response as SurveyResponse, User
from services.export_service import CSV_MEDIA_TYPE, XLSX_MEDIA_TYPE, build_csv, build_xlsx, export_filename
from services.subscription_service import UsageType
from utils.datetime_utils import iso_or_none, utcnow_naive

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/questionnaires", tags=["questionnaires"])

QuestionType = Literal[
    "text",
    "textarea",
    "single_choice",
    "multiple_choice",
    "rating",
    "scale",
    "yes_no",
    "email",
    "number",
    "date",
]
CHOICE_TYPES = {"single_choice", "multiple_choice"}


class QuestionCreate(BaseModel):
    question_text: str = Field(min_length=1, max_length=1000)
    question_type: QuestionType = "text"
    category: Optional[str] = Field(default=None, max_length=100)
    options: list[str] = Field(default_factory=list)
    is_required: bool = False
    order_index: Optional[int] = None


class QuestionnaireCreate(BaseModel):
    title: str = Field(min_length=1, max_length=200)
    description: Optional[str] = Field(default=None, max_length=2000)
    category: Optional[str] = Field(default=None, max_length=100)
    is_public: bool = True
    questions: list[QuestionCreate] = Field(default_factory=list)


class QuestionnaireUpdate(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=200)
    description: Optional[str] = Field(default=None, max_length=2000)
    category: Optional[str] = Field(default=None, max_length=100)
    is_active: Optional[bool] = None
    is_public: Optional[bool] = None


def get_owned_questionnaire(db: Session, user: User, questionnaire_id: int) -> Questionnaire:
    row = (
        db.query(Questionnaire)
        .filter(
            Questionnaire.id == questionnaire_id,
            Questionnaire.user_id == user.id,
            Questionnaire.deleted_at.is_(None),
        )
        .first()
    )
    if not row:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Questionnaire not found")
    return row


def _validate_question(q: QuestionCreate) -> None:
    if q.question_type in CHOICE_TYPES and len([o for o in q.options if o.strip()]) < 2:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"{q.question_type} questions need at least two options",
        )


def _add_question(db: Session, questionnaire: Questionnaire, q: QuestionCreate, order_index: int) -> Question:
    row = Question(
        questionnaire_id=questionnaire.id,
        question_text=q.question_text.strip(),
        question_type=q.question_type,
        category=(q.category or "").strip() or None,
        options_json=json.dumps([o.strip() for o in q.options if o.strip()]) if q.options else None,
        is_required=q.is_required,
        order_index=q.order_index if q.order_index is not None else order_index,
    )
    db.add(row)
    return row


def _serialize_question(q: Question) -> dict:
    return {
        "id": q.id,
        "question_text": q.question_text,
        "question_type": q.question_type,
        "category": q.category,
        "options": q.options,
        "is_required": bool(q.is_required),
        "order_index": q.order_index,
    }


def _serialize_questionnaire(row: Questionnaire, *, response_count: int | None = None, with_questions: bool = False) -> dict:
    data = {
        "id": row.id,
        "title": row.title,
        "description": row.description,
        "category": row.category,
        "is_active": bool(row.is_active),
        "is_public": bool(row.is_public),
        "created_at": iso_or_none(row.created_at),
        "updated_at": iso_or_none(row.updated_at),
    }
    if response_count is not None:
        data["response_count"] = response_count
    if with_questions:
        data["questions"] = [_serialize_question(q) for q in row.questions]
    return data


@router.post("", status_code=status.HTTP_201_CREATED)
def create_questionnaire(
    req: QuestionnaireCreate,
    user: User = Depends(require_active_subscription),
    db: Session = Depends(get_db),
):
    for q in req.questions:
        _validate_question(q)
    consume_or_raise(db, user.id, UsageType.QUESTIONNAIRES)

    row = Questionnaire(
        user_id=user.id,
        title=req.title.strip(),
        description=req.description,
        category=req.category,
        is_public=req.is_public,
        is_active=True,
    )
    db.add(row)
    db.flush()
    for idx, q in enumerate(req.questions):
        _add_question(db, row, q, idx)
    db.commit()
    db.refresh(row)
    logger.info(f"Questionnaire {row.id} created by user {user.id}")
    return {"success": True, "data": _serialize_questionnaire(row, response_count=0, with_questions=True)}


@router.get("")
def list_questionnaires(
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    query = db.query(Questionnaire).filter(Questionnaire.user_id == user.id, Questionnaire.deleted_at.is_(None))
    total = query.count()
    rows = query.order_by(Questionnaire.created_at.desc(), Questionnaire.id.desc()).offset(offset).limit(limit).all()
    counts = dict(
        db.query(SurveyResponse.questionnaire_id, func.count(SurveyResponse.id))
        .filter(SurveyResponse.questionnaire_id.in_([r.id for r in rows] or [-1]))
        .group_by(SurveyResponse.questionnaire_id)
        .all()
    )
    return {
        "success": True,
        "data": {
            "questionnaires": [_serialize_questionnaire(r, response_count=int(counts.get(r.id, 0))) for r in rows],
            "total": total,
            "limit": limit,
            "offset": offset,
        },
    }


@router.get("/{questionnaire_id}")
def get_questionnaire(questionnaire_id: int, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    row = get_owned_questionnaire(db, user, questionnaire_id)
    count = db.query(func.count(SurveyResponse.id)).filter(SurveyResponse.questionnaire_id == row.id).scalar() or 0
    return {"success": True, "data": _serialize_questionnaire(row, response_count=int(count), with_questions=True)}


@router.put("/{questionnaire_id}")
def update_questionnaire(
    questionnaire_id: int,
    req: QuestionnaireUpdate,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    row = get_owned_questionnaire(db, user, questionnaire_id)
    for field, value in req.model_dump(exclude_unset=True).items():
        setattr(row, field, value.strip() if isinstance(value, str) else value)
    db.commit()
    db.refresh(row)
    return {"success": True, "data": _serialize_questionnaire(row, with_questions=True)}


@router.delete("/{questionnaire_id}")
def delete_questionnaire(questionnaire_id: int, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    row = get_owned_questionnaire(db, user, questionnaire_id)
    row.deleted_at = utcnow_naive()
    row.is_active = False
    db.commit()
    logger.info(f"Questionnaire {row.id} soft-deleted by user {user.id}")
    return {"success": True, "message": "Questionnaire deleted"}


@router.post("/{questionnaire_id}/questions", status_code=status.HTTP_201_CREATED)
def add_question(
    questionnaire_id: int,
    req: QuestionCreate,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    row = get_owned_questionnaire(db, user, questionnaire_id)
    _validate_question(req)
    next_index = (
        db.query(func.max(Question.order_index)).filter(Question.questionnaire_id == row.id).scalar()
    )
    question = _add_question(db, row, req, 0 if next_index is None else int(next_index) + 1)
    db.commit()
    db.refresh(question)
    return {"success": True, "data": _serialize_question(question)}


class QuestionUpdate(BaseModel):
    question_text: Optional[str] = Field(default=None, min_length=1, max_length=1000)
    question_type: Optional[QuestionType] = None
    category: Optional[str] = Field(default=None, max_length=100)
    options: Optional[list[str]] = None
    is_required: Optional[bool] = None


class QuestionReorder(BaseModel):
    question_ids: list[int] = Field(min_length=1)


def _owned_question(db: Session, questionnaire: Questionnaire, question_id: int) -> Question:
    question = (
        db.query(Question)
        .filter(Question.id == question_id, Question.questionnaire_id == questionnaire.id)
        .first()
    )
    if not question:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Question not found")
    return question


@router.put("/{questionnaire_id}/questions/reorder")
def reorder_questions(
    questionnaire_id: int,
    req: QuestionReorder,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    row = get_owned_questionnaire(db, user, questionnaire_id)
    questions = {q.id: q for q in row.questions}
    # The new order must list every question exactly once.
    if len(req.question_ids) != len(set(req.question_ids)) or set(req.question_ids) != set(questions):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="question_ids must list every question of the questionnaire exactly once",
        )
    for idx, question_id in enumerate(req.question_ids):
        questions[question_id].order_index = idx
    db.commit()
    logger.info(f"User {user.id} reordered {len(questions)} questions in questionnaire {row.id}")
    ordered = sorted(questions.values(), key=lambda q: q.order_index)
    return {"success": True, "data": [_serialize_question(q) for q in ordered]}


@router.put("/{questionnaire_id}/questions/{question_id}")
def update_question(
    questionnaire_id: int,
    question_id: int,
    req: QuestionUpdate,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    row = get_owned_questionnaire(db, user, questionnaire_id)
    question = _owned_question(db, row, question_id)
    changes = req.model_dump(exclude_unset=True, exclude_none=True)
    merged = QuestionCreate(
        question_text=changes.get("question_text", question.question_text),
        question_type=changes.get("question_type", question.question_type),
        category=changes.get("category", question.category),
        options=changes.get("options", question.options),
        is_required=changes.get("is_required", question.is_required),
    )
    _validate_question(merged)

    question.question_text = merged.question_text.strip()
    question.question_type = merged.question_type
    question.category = (merged.category or "").strip() or None
    question.is_required = merged.is_required
    if "options" in changes or merged.question_type not in CHOICE_TYPES:
        cleaned = [o.strip() for o in merged.options if o.strip()] if merged.question_type in CHOICE_TYPES else []
        question.options_json = json.dumps(cleaned) if cleaned else None
    db.commit()
    db.refresh(question)
    return {"success": True, "data": _serialize_question(question)}


@router.delete("/{questionnaire_id}/questions/{question_id}")
def delete_question(
    questionnaire_id: int,
    question_id: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    row = get_owned_questionnaire(db, user, questionnaire_id)
    question = _owned_question(db, row, question_id)
    answer_count = db.query(func.count(Answer.id)).filter(Answer.question_id == question.id).scalar() or 0
    if answer_count:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Cannot delete a question with existing responses ({answer_count} answers)",
        )
    db.delete(question)
    db.commit()
    return {"success": True, "message": "Question deleted"}


@router.get("/{questionnaire_id}/responses")
def list_responses(
    questionnaire_id: int,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    row = get_owned_questionnaire(db, user, questionnaire_id)
    query = db.query(SurveyResponse).filter(SurveyResponse.questionnaire_id == row.id)
    total = query.count()
    responses = (
        query.options(selectinload(SurveyResponse.answers), selectinload(SurveyResponse.review))
        .order_by(SurveyResponse.response_date.desc(), SurveyResponse.id.desc())
        .offset(offset)
        .limit(limit)
        .all()
    )
    return {
        "success": True,
        "data": {
            "responses": [
                {
                    "id": r.id,
                    "response_date": iso_or_none(r.response_date),
                    "is_complete": bool(r.is_complete),
                    "review_status": r.review.review_status if r.review else None,
                    "answers": [
                        {
                            "question_id": a.question_id,
                            "answer_value": a.answer_value,
                            "rating_score": a.rating_score,
                        }
                        for a in r.answers
                    ],
                }
                for r in responses
            ],
            "total": total,
            "limit": limit,
            "offset": offset,
        },
    }


@router.get("/{questionnaire_id}/export")
def export_responses(
    questionnaire_id: int,
    format: Literal["csv", "excel"] = Query(default="csv"),
    user: User = Depends(require_active_subscription),
    db: Session = Depends(get_db),
):
    row = get_owned_questionnaire(db, user, questionnaire_id)
    ensure_feature(user, "csv_export" if format == "csv" else "excel_export")
    consume_or_raise(db, user.id, UsageType.EXPORTS)

    responses = (
        db.query(SurveyResponse)
        .options(selectinload(SurveyResponse.answers).selectinload(Answer.question))
        .filter(SurveyResponse.questionnaire_id == row.id)
        .order_by(SurveyResponse.response_date.asc(), SurveyResponse.id.asc())
        .all()
    )
    logger.info(f"User {user.id} exported {len(responses)} responses of questionnaire {row.id} as {format}")
    if format == "csv":
        return Response(
            content=build_csv(row, responses),
            media_type=CSV_MEDIA_TYPE,
            headers={"Content-Disposition": f'attachment; filename="{export_filename(row, "csv")}"'},
        )
    return Response(
        content=build_xlsx(row, responses),
        media_type=XLSX_MEDIA_TYPE,
        headers={"Content-Disposition": f'attachment; filename="{export_filename(row, "xlsx")}"'},
    )
