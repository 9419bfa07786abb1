from __future__ import annotations

import csv
import io

from openpyxl import Workbook
from openpyxl.styles import Font, PatternFill

from db.models import Questionnaire, Response

_CSV_DANGEROUS_PREFIXES = ("=", "+", "-", "@", "\t")

CSV_MEDIA_TYPE = "text/csv"
XLSX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"


def _csv_safe(value: object) -> str:
    text = "" if value is None else str(value)
    stripped = text.lstrip()
    if stripped and stripped[0] in _CSV_DANGEROUS_PREFIXES:
        return f"'{text}"
    return text


def _rows(questionnaire: Questionnaire, responses: list[Response]) -> tuple[list[str], list[list]]:
    questions = list(questionnaire.questions)
    header = ["response_id", "response_date", "is_complete"] + [q.question_text for q in questions]
    rows = []
    for response in responses:
        by_question = {a.question_id: a for a in response.answers}
        row: list = [
            response.id,
            response.response_date.isoformat() if response.response_date else "",
            "yes" if response.is_complete else "no",
        ]
        for question in questions:
            answer = by_question.get(question.id)
            if answer is None:
                row.append("")
            elif answer.rating_score is not None and not answer.answer_value:
                row.append(answer.rating_score)
            else:
                row.append(answer.answer_value or "")
        rows.append(row)
    return header, rows


def build_csv(questionnaire: Questionnaire, responses: list[Response]) -> str:
    header, rows = _rows(questionnaire, responses)
    buf = io.StringIO()
    writer = csv.writer(buf)
    writer.writerow([_csv_safe(h) for h in header])
    for row in rows:
        writer.writerow([v if isinstance(v, (int, float)) else _csv_safe(v) for v in row])
    return buf.getvalue()


def build_xlsx(questionnaire: Questionnaire, responses: list[Response]) -> bytes:
    header, rows = _rows(questionnaire, responses)
    wb = Workbook()
    ws = wb.active
    ws.title = "Responses"

    # openpyxl stores strings starting with "=" as formulas.
    ws.append([_csv_safe(h) for h in header])
    header_font = Font(bold=True, color="FFFFFF")
    header_fill = PatternFill(start_color="4F46E5", end_color="4F46E5", fill_type="solid")
    for cell in ws[1]:
        cell.font = header_font
        cell.fill = header_fill
    for row in rows:
        ws.append([v if isinstance(v, (int, float)) else _csv_safe(v) for v in row])
    ws.freeze_panes = "A2"

    buf = io.BytesIO()
    wb.save(buf)
    return buf.getvalue()


def export_filename(questionnaire: Questionnaire, extension: str) -> str:
    slug = "".join(c if c.isalnum() else "_" for c in (questionnaire.title or "questionnaire").lower()).strip("_")
    return f"{slug[:50] or 'questionnaire'}_{questionnaire.id}_responses.{extension}"
