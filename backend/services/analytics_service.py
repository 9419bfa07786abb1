from __future__ import annotations

import logging
from datetime import date, datetime, time

from sqlalchemy import func
from sqlalchemy.orm import Session

from db.models import AnalyticsBreakdown, Answer, Question, Questionnaire, Response
from utils.datetime_utils import (
    iso_or_none,
    next_period_start,
    period_start,
    previous_period_start,
    today_utc,
    utcnow,
)

logger = logging.getLogger(__name__)

PERIOD_TYPES = ("day", "week", "month", "year")
DEFAULT_AREA = "General"
GOOD_THRESHOLD = 4.0
URGENT_THRESHOLD = 3.0


def breakdown_status(avg_rating: float | None) -> str:
    if avg_rating is None:
        return "Monitor"
    if avg_rating >= GOOD_THRESHOLD:
        return "Good"
    if avg_rating < URGENT_THRESHOLD:
        return "Urgent"
    return "Monitor"


def percent_change(current: float | None, previous: float | None) -> float | None:
    if current is None or not previous:
        return None
    return round((current - previous) / previous * 100.0, 2)


def _round(value) -> float | None:
    return round(float(value), 2) if value is not None else None


def get_questionnaire_summary(db: Session, questionnaire: Questionnaire) -> dict:
    total = db.query(func.count(Response.id)).filter(Response.questionnaire_id == questionnaire.id).scalar() or 0
    complete = (
        db.query(func.count(Response.id))
        .filter(Response.questionnaire_id == questionnaire.id, Response.is_complete.is_(True))
        .scalar()
        or 0
    )
    average_rating = (
        db.query(func.avg(Answer.rating_score))
        .join(Response, Answer.response_id == Response.id)
        .filter(Response.questionnaire_id == questionnaire.id, Answer.rating_score.isnot(None))
        .scalar()
    )

    questions = []
    for question in questionnaire.questions:
        answered, avg_score = (
            db.query(func.count(Answer.id), func.avg(Answer.rating_score))
            .filter(Answer.question_id == question.id)
            .one()
        )
        distribution = {
            int(round(score)): int(count)
            for score, count in (
                db.query(Answer.rating_score, func.count(Answer.id))
                .filter(Answer.question_id == question.id, Answer.rating_score.isnot(None))
                .group_by(Answer.rating_score)
                .all()
            )
        }
        questions.append({
            "question_id": question.id,
            "question_text": question.question_text,
            "question_type": question.question_type,
            "category": question.category,
            "total_answers": int(answered or 0),
            "average_rating": _round(avg_score),
            "rating_distribution": distribution,
        })

    return {
        "questionnaire_id": questionnaire.id,
        "title": questionnaire.title,
        "total_responses": int(total),
        "complete_responses": int(complete),
        "incomplete_responses": int(total) - int(complete),
        "completion_rate": round(complete / total * 100) if total else 0,
        "average_rating": _round(average_rating),
        "questions": questions,
        "generated_at": utcnow().isoformat(),
    }


def _area_stats(db: Session, questionnaire_id: int, start: date, end: date) -> dict[str, tuple[float | None, int]]:
    area = func.coalesce(Question.category, DEFAULT_AREA)
    rows = (
        db.query(area, func.avg(Answer.rating_score), func.count(func.distinct(Response.id)))
        .join(Question, Answer.question_id == Question.id)
        .join(Response, Answer.response_id == Response.id)
        .filter(
            Response.questionnaire_id == questionnaire_id,
            Response.response_date >= datetime.combine(start, time.min),
            Response.response_date < datetime.combine(end, time.min),
        )
        .group_by(area)
        .all()
    )
    return {name: (_round(avg), int(count or 0)) for name, avg, count in rows}


def refresh_breakdown(
    db: Session,
    questionnaire_id: int,
    period_type: str = "week",
    reference_date: date | None = None,
) -> list[AnalyticsBreakdown]:
    """Recompute per-area ratings for the period containing `reference_date`.

    Rows are upserted on (questionnaire, period_type, period_date, area) and
    trend is the percent change in average rating against the prior period.
    """
    if period_type not in PERIOD_TYPES:
        raise ValueError(f"period must be one of: {', '.join(PERIOD_TYPES)}")

    start = period_start(reference_date or today_utc(), period_type)
    end = next_period_start(start, period_type)
    prev_start = previous_period_start(start, period_type)

    current = _area_stats(db, questionnaire_id, start, end)
    previous = _area_stats(db, questionnaire_id, prev_start, start)

    existing = {
        row.area: row
        for row in db.query(AnalyticsBreakdown).filter(
            AnalyticsBreakdown.questionnaire_id == questionnaire_id,
            AnalyticsBreakdown.period_type == period_type,
            AnalyticsBreakdown.period_date == start,
        )
    }

    rows: list[AnalyticsBreakdown] = []
    for area, (avg_rating, responses) in sorted(current.items()):
        row = existing.get(area)
        if row is None:
            row = AnalyticsBreakdown(
                questionnaire_id=questionnaire_id,
                period_type=period_type,
                period_date=start,
                area=area,
            )
            db.add(row)
        row.avg_rating = avg_rating
        row.responses = responses
        row.trend = percent_change(avg_rating, previous.get(area, (None, 0))[0])
        row.status = breakdown_status(avg_rating)
        rows.append(row)
    db.commit()
    logger.info(f"Refreshed {len(rows)} {period_type} breakdown rows for questionnaire {questionnaire_id}")
    return rows


def serialize_breakdown(row: AnalyticsBreakdown) -> dict:
    return {
        "area": row.area,
        "period_type": row.period_type,
        "period_date": iso_or_none(row.period_date),
        "avg_rating": row.avg_rating,
        "responses": row.responses,
        "trend": row.trend,
        "status": row.status,
    }
