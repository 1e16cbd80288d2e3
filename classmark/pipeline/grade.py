"""Grading pipeline for one submitted attempt.

Order of work: best-effort ``grading`` status, deterministic pass, AI pass,
reconciliation, then a single final write of scores, status and the AI report.
The final write happens whatever the AI pass did; only a failure of that write
propagates.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, delete, select

from classmark.ai.openai_grader import AIGrader
from classmark.grading.answers import Answer, load_answer
from classmark.grading.base import Grader
from classmark.grading.expressions import ExpressionEvaluator
from classmark.grading.orchestrator import AIMeta, run_ai_grading
from classmark.grading.reconcile import reconcile
from classmark.grading.rule_based import EssayGrader, MathGrader, MCQGrader, YesNoGrader
from classmark.grading.state import scores_visible_to_student, transition
from classmark.models import AIGradingReport, Attempt, AttemptStatus, Exam, Question, QuestionType
from classmark.notifications import enqueue_grade_notification
from classmark.settings import settings

logger = logging.getLogger(__name__)


def get_grader(question_type: QuestionType, evaluator: ExpressionEvaluator | None = None) -> Grader:
    if question_type == QuestionType.MCQ:
        return MCQGrader()
    if question_type == QuestionType.YESNO:
        return YesNoGrader()
    if question_type == QuestionType.MATH:
        return MathGrader(evaluator)
    if question_type == QuestionType.ESSAY:
        return EssayGrader()
    raise ValueError(f"Unknown question type '{question_type}'. Use one of: mcq, yesno, essay, math")


@dataclass
class DeterministicResult:
    points: dict[str, float] = field(default_factory=dict)
    auto_graded: set[str] = field(default_factory=set)
    errors: dict[str, str] = field(default_factory=dict)


@dataclass
class GradingRun:
    attempt_id: int
    skipped: bool = False
    reason: str = ""
    scores: dict[str, float] | None = None
    needs_manual: bool = False
    ai_meta: AIMeta | None = None


def load_questions(session: Session, exam_id: int) -> list[Question]:
    return list(
        session.exec(select(Question).where(Question.exam_id == exam_id).order_by(Question.index, Question.id)).all()
    )


def deterministic_pass(
    exam: Exam,
    questions: list[Question],
    answers: dict[str, Answer | None],
    evaluator: ExpressionEvaluator | None = None,
) -> DeterministicResult:
    result = DeterministicResult()
    for question in questions:
        qid = str(question.id)
        if question.type == QuestionType.MCQ and not exam.auto_mark_mc:
            result.points[qid] = 0.0
            continue
        if question.type == QuestionType.YESNO and not exam.auto_mark_yn:
            result.points[qid] = 0.0
            continue

        outcome = get_grader(question.type, evaluator).grade(question, answers.get(qid))
        result.points[qid] = outcome.points
        if outcome.auto_graded:
            result.auto_graded.add(qid)
        if outcome.error:
            result.errors[qid] = outcome.error
    return result


def _skip_reason(attempt: Attempt, force: bool) -> str | None:
    """Why this run should not grade, or ``None`` to go ahead.

    Only a finished (``graded``) or teacher-overridden attempt is skipped. An
    attempt left in ``grading`` by a run that died is graded again on the next
    delivery; the rerun recomputes the same scores from the stored answers.
    """
    status = AttemptStatus(attempt.status)
    if status in (AttemptStatus.NOT_STARTED, AttemptStatus.IN_PROGRESS):
        return "attempt has not been submitted"
    if force:
        return None
    if attempt.teacher_override:
        return "teacher override in place"
    if status == AttemptStatus.GRADED:
        return "attempt already graded"
    return None


def _mark_grading(session: Session, attempt: Attempt) -> Attempt:
    """Best-effort intermediate status; a failed write is logged and ignored."""
    if AttemptStatus(attempt.status) == AttemptStatus.GRADING:
        return attempt
    attempt_id = attempt.id
    try:
        transition(attempt, AttemptStatus.GRADING)
        session.add(attempt)
        session.commit()
        session.refresh(attempt)
    except SQLAlchemyError:
        session.rollback()
        logger.warning("could not set status=grading", extra={"attempt_id": attempt_id, "stage": "status_grading"}, exc_info=True)
        attempt = session.get(Attempt, attempt_id)
    return attempt


def grade_attempt(
    session: Session,
    attempt_id: int,
    ai_grader: AIGrader | None,
    evaluator: ExpressionEvaluator | None = None,
    force: bool = False,
) -> GradingRun:
    """Grade one attempt. ``force`` is an explicit regrade: it runs even over a
    finished or teacher-overridden attempt and clears the override."""
    attempt = session.get(Attempt, attempt_id)
    if attempt is None:
        logger.warning("grading requested for missing attempt", extra={"attempt_id": attempt_id})
        return GradingRun(attempt_id=attempt_id, skipped=True, reason="attempt not found")

    reason = _skip_reason(attempt, force)
    if reason:
        logger.info("grading skipped", extra={"attempt_id": attempt_id, "stage": "idempotency", "reason": reason})
        return GradingRun(attempt_id=attempt_id, skipped=True, reason=reason, scores=attempt.scores, needs_manual=attempt.needs_manual)

    attempt = _mark_grading(session, attempt)

    exam = session.get(Exam, attempt.exam_id)
    if exam is None:
        raise LookupError(f"Exam {attempt.exam_id} not found for attempt {attempt_id}")
    questions = load_questions(session, exam.id)

    stored = attempt.answers
    answers = {str(q.id): load_answer(q.type, stored, str(q.id)) for q in questions}

    deterministic = deterministic_pass(exam, questions, answers, evaluator)
    logger.info(
        "deterministic grading finished",
        extra={"attempt_id": attempt_id, "stage": "deterministic", "questions": len(questions), "errors": len(deterministic.errors)},
    )

    ai = run_ai_grading(ai_grader, exam, questions, answers, attempt_id=attempt_id)
    ai_points = {qid: r.points for qid, r in ai.results.items()}
    scores = reconcile(questions, deterministic.points, ai_points)
    needs_manual = any(
        str(q.id) not in deterministic.auto_graded and str(q.id) not in ai.results for q in questions
    )

    session.refresh(attempt)
    overridden_mid_run = attempt.teacher_override and not force
    if overridden_mid_run:
        logger.info("teacher override landed during grading; keeping teacher scores", extra={"attempt_id": attempt_id, "stage": "persist"})
    else:
        attempt.scores_json = json.dumps(scores)
        attempt.needs_manual = needs_manual
        attempt.grading_errors_json = json.dumps(deterministic.errors)
        if force:
            attempt.teacher_override = False
            attempt.graded_by = None
            attempt.scores_released = False
        transition(attempt, AttemptStatus.GRADED)
        session.add(attempt)

    session.exec(delete(AIGradingReport).where(AIGradingReport.attempt_id == attempt_id))
    session.add(
        AIGradingReport(
            attempt_id=attempt_id,
            total=ai.total,
            per_question_json=json.dumps({qid: r.to_json() for qid, r in ai.results.items()}),
            ai_used=ai.meta.used,
            ai_model=ai.meta.model,
            ai_error=ai.meta.error,
            source=attempt.source,
        )
    )
    session.commit()

    if not overridden_mid_run and scores_visible_to_student(attempt, settings.score_visibility):
        enqueue_grade_notification(session, attempt, exam)

    logger.info(
        "grading complete",
        extra={"attempt_id": attempt_id, "stage": "persist", "total": scores["total"], "ai_used": ai.meta.used, "ai_error": ai.meta.error},
    )
    return GradingRun(
        attempt_id=attempt_id,
        scores=attempt.scores if overridden_mid_run else scores,
        needs_manual=attempt.needs_manual,
        ai_meta=ai.meta,
    )
