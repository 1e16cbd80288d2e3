"""Grade-posted notifications, queued in the mail outbox."""

from __future__ import annotations

import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session

from classmark.models import Attempt, Exam, OutboxMail

logger = logging.getLogger(__name__)


def _format_points(value: float) -> str:
    return f"{value:g}"


def enqueue_grade_notification(session: Session, attempt: Attempt, exam: Exam) -> bool:
    """Queue a "new grade posted" mail for the student; returns whether one was queued.

    Best effort: a failed outbox write is logged and rolled back, never raised.
    Call after the grade itself has been committed.
    """
    if attempt.grade_email_sent:
        return False

    to = (attempt.student_email or "").strip()
    if not to:
        logger.warning("no recipient email for grade notification", extra={"attempt_id": attempt.id, "student_id": attempt.student_id})
        return False

    scores = attempt.scores or {}
    total = scores.get("total")
    grade = "-" if total is None else f"{_format_points(total)} / {_format_points(exam.total_marks)}"
    assessment = exam.title or "Assessment"
    course = exam.course_id or "your course"
    text = "\n".join(
        [
            "Hello,",
            "",
            f"A new grade was posted for {assessment} in {course}.",
            f"Grade: {grade}",
        ]
    )

    try:
        session.add(
            OutboxMail(
                attempt_id=attempt.id,
                to=to,
                subject=f"New grade posted: {assessment} · {course}",
                text=text,
            )
        )
        attempt.grade_email_sent = True
        session.add(attempt)
        session.commit()
    except SQLAlchemyError:
        session.rollback()
        logger.exception("grade notification failed", extra={"attempt_id": attempt.id})
        return False
    return True
