"""Change-notification entry points for the grading pipeline.

Notifications are delivered at least once, so each handler decides from the
before/after state whether this write is a new submission; anything else is a
no-op.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from classmark import db
from classmark.ai.openai_grader import AIGrader
from classmark.grading.expressions import ExpressionEvaluator
from classmark.models import Attempt, AttemptStatus
from classmark.pipeline.grade import GradingRun, grade_attempt

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AttemptSnapshot:
    status: AttemptStatus
    submitted_at: datetime | None


def snapshot(attempt: Attempt | None) -> AttemptSnapshot | None:
    if attempt is None:
        return None
    return AttemptSnapshot(status=AttemptStatus(attempt.status), submitted_at=attempt.submitted_at)


def just_submitted(before: AttemptSnapshot | None, after: AttemptSnapshot | None) -> bool:
    if after is None:
        return False
    before_submitted = before is not None and before.submitted_at is not None
    after_submitted = after.submitted_at is not None
    before_status = before.status if before is not None else None
    status_flip = before_status != AttemptStatus.SUBMITTED and after.status == AttemptStatus.SUBMITTED
    return (not before_submitted and after_submitted) or status_flip


def run_grading_job(
    attempt_id: int,
    ai_grader: AIGrader | None,
    evaluator: ExpressionEvaluator | None = None,
    force: bool = False,
) -> GradingRun:
    """Grade in a session of its own; used from background tasks."""
    with db.new_session() as session:
        return grade_attempt(session, attempt_id, ai_grader, evaluator=evaluator, force=force)


def on_attempt_created(
    attempt_id: int,
    after: AttemptSnapshot | None,
    ai_grader: AIGrader | None,
    evaluator: ExpressionEvaluator | None = None,
) -> GradingRun | None:
    """A new attempt document: grade it only if it arrived already submitted."""
    if after is None or after.status != AttemptStatus.SUBMITTED:
        return None
    return run_grading_job(attempt_id, ai_grader, evaluator)


def on_attempt_written(
    attempt_id: int,
    before: AttemptSnapshot | None,
    after: AttemptSnapshot | None,
    ai_grader: AIGrader | None,
    evaluator: ExpressionEvaluator | None = None,
) -> GradingRun | None:
    """An attempt update: grade only on the write that records the submission."""
    if not just_submitted(before, after):
        logger.debug("attempt write is not a new submission", extra={"attempt_id": attempt_id})
        return None
    return run_grading_job(attempt_id, ai_grader, evaluator)
