"""Attempt lifecycle and grading endpoints."""

from __future__ import annotations

import json
import logging

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException
from sqlmodel import Session, select

from classmark.ai.openai_grader import AIGrader, get_ai_grader
from classmark.db import get_session
from classmark.grading.answers import normalize_answer
from classmark.grading.reconcile import UnknownQuestionError, manual_scores
from classmark.grading.state import (
    AttemptLocked,
    InvalidTransition,
    SUBMITTED_STATUSES,
    deadline,
    edit_block_reason,
    ensure_editable,
    scores_visible_to_student,
    transition,
)
from classmark.models import AIGradingReport, Attempt, AttemptStatus, Exam, utcnow
from classmark.notifications import enqueue_grade_notification
from classmark.pipeline.grade import grade_attempt, load_questions
from classmark.pipeline.triggers import on_attempt_written, snapshot
from classmark.schemas import (
    AIMetaRead,
    AIQuestionReport,
    AIReportRead,
    AnswersUpdate,
    AttemptSummary,
    GradingRunRead,
    ManualMarks,
    ReleaseScores,
    StudentAttemptView,
    TeacherAttemptView,
)
from classmark.settings import settings

router = APIRouter(prefix="/attempts", tags=["attempts"])
logger = logging.getLogger(__name__)

AWAITING_REVIEW = "awaiting review"


def _get_attempt(session: Session, attempt_id: int) -> tuple[Attempt, Exam]:
    attempt = session.get(Attempt, attempt_id)
    if not attempt:
        raise HTTPException(status_code=404, detail="Attempt not found")
    exam = session.get(Exam, attempt.exam_id)
    if not exam:
        raise HTTPException(status_code=404, detail="Exam not found")
    return attempt, exam


def attempt_summary(attempt: Attempt) -> AttemptSummary:
    scores = attempt.scores
    return AttemptSummary(
        id=attempt.id,
        student_id=attempt.student_id,
        status=attempt.status,
        total=None if scores is None else scores.get("total"),
        needs_manual=attempt.needs_manual,
        teacher_override=attempt.teacher_override,
        scores_released=attempt.scores_released,
        submitted_at=attempt.submitted_at,
        graded_at=attempt.graded_at,
    )


def student_view(exam: Exam, attempt: Attempt) -> StudentAttemptView:
    visible = scores_visible_to_student(attempt, settings.score_visibility)
    if visible:
        result_status = "graded"
    elif attempt.submitted_at is not None:
        result_status = AWAITING_REVIEW
    else:
        result_status = AttemptStatus(attempt.status).value
    return StudentAttemptView(
        id=attempt.id,
        exam_id=attempt.exam_id,
        student_id=attempt.student_id,
        status=attempt.status,
        answers=attempt.answers,
        can_edit=edit_block_reason(exam, attempt) is None,
        deadline=deadline(exam, attempt),
        created_at=attempt.created_at,
        submitted_at=attempt.submitted_at,
        scores=attempt.scores if visible else None,
        result_status=result_status,
    )


def _latest_report(session: Session, attempt_id: int) -> AIGradingReport | None:
    return session.exec(
        select(AIGradingReport).where(AIGradingReport.attempt_id == attempt_id).order_by(AIGradingReport.id.desc())
    ).first()


def _report_read(report: AIGradingReport) -> AIReportRead:
    return AIReportRead(
        total=report.total,
        per_question={
            qid: AIQuestionReport(
                points=item.get("points", 0),
                reason=item.get("reason", ""),
                per_criterion=item.get("perCriterion", []),
            )
            for qid, item in report.per_question.items()
        },
        ai_meta=AIMetaRead(used=report.ai_used, model=report.ai_model, error=report.ai_error),
        created_at=report.created_at,
    )


def _review_warnings(exam: Exam, attempt: Attempt, report: AIGradingReport | None) -> list[str]:
    warnings: list[str] = []
    ai_enabled = exam.ai_essay or exam.ai_math
    if AttemptStatus(attempt.status) in SUBMITTED_STATUSES and ai_enabled:
        if report is None:
            warnings.append("AI feedback is not available yet.")
        elif report.ai_error:
            warnings.append(f"AI grading failed: {report.ai_error}")

    scores = attempt.scores or {}
    if report is not None:
        for qid, item in report.per_question.items():
            stored = scores.get(qid)
            if stored is not None and abs(float(item.get("points", 0)) - stored) > 1e-9:
                warnings.append(f"Question {qid}: AI suggested {item.get('points')} but the stored score is {stored}.")
    if attempt.needs_manual:
        warnings.append("Some questions need manual marking.")
    return warnings


@router.get("/{attempt_id}", response_model=StudentAttemptView)
def get_attempt(attempt_id: int, session: Session = Depends(get_session)) -> StudentAttemptView:
    attempt, exam = _get_attempt(session, attempt_id)
    return student_view(exam, attempt)


@router.put("/{attempt_id}/answers", response_model=StudentAttemptView)
def save_answers(attempt_id: int, payload: AnswersUpdate, session: Session = Depends(get_session)) -> StudentAttemptView:
    attempt, exam = _get_attempt(session, attempt_id)
    try:
        ensure_editable(exam, attempt)
    except AttemptLocked as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc

    questions = {str(q.id): q for q in load_questions(session, exam.id)}
    unknown = sorted(k for k in payload.answers if k not in questions)
    if unknown:
        raise HTTPException(status_code=400, detail=f"Unknown question id(s): {', '.join(unknown)}")

    answers = attempt.answers
    for qid, raw in payload.answers.items():
        answers[qid] = normalize_answer(questions[qid].type, raw).to_json()
    attempt.answers_json = json.dumps(answers)
    if attempt.status == AttemptStatus.NOT_STARTED:
        transition(attempt, AttemptStatus.IN_PROGRESS)
    attempt.updated_at = utcnow()
    session.add(attempt)
    session.commit()
    session.refresh(attempt)
    return student_view(exam, attempt)


@router.post("/{attempt_id}/submit", response_model=StudentAttemptView)
def submit_attempt(
    attempt_id: int,
    background_tasks: BackgroundTasks,
    session: Session = Depends(get_session),
    ai_grader: AIGrader | None = Depends(get_ai_grader),
) -> StudentAttemptView:
    attempt, exam = _get_attempt(session, attempt_id)
    before = snapshot(attempt)
    try:
        transition(attempt, AttemptStatus.SUBMITTED)
    except InvalidTransition as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    session.add(attempt)
    session.commit()
    session.refresh(attempt)
    logger.info("attempt submitted", extra={"attempt_id": attempt.id, "exam_id": exam.id})

    background_tasks.add_task(on_attempt_written, attempt.id, before, snapshot(attempt), ai_grader)
    return student_view(exam, attempt)


@router.get("/{attempt_id}/review", response_model=TeacherAttemptView)
def review_attempt(attempt_id: int, session: Session = Depends(get_session)) -> TeacherAttemptView:
    attempt, exam = _get_attempt(session, attempt_id)
    report = _latest_report(session, attempt_id)
    return TeacherAttemptView(
        attempt=attempt_summary(attempt),
        answers=attempt.answers,
        scores=attempt.scores,
        grading_errors=attempt.grading_errors,
        ai_report=_report_read(report) if report else None,
        warnings=_review_warnings(exam, attempt, report),
    )


@router.put("/{attempt_id}/marks", response_model=TeacherAttemptView)
def set_manual_marks(attempt_id: int, payload: ManualMarks, session: Session = Depends(get_session)) -> TeacherAttemptView:
    attempt, exam = _get_attempt(session, attempt_id)
    if AttemptStatus(attempt.status) not in SUBMITTED_STATUSES:
        raise HTTPException(status_code=409, detail="Only submitted attempts can be marked")

    try:
        scores = manual_scores(load_questions(session, exam.id), payload.marks)
    except UnknownQuestionError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    attempt.scores_json = json.dumps(scores)
    attempt.teacher_override = True
    attempt.graded_by = payload.teacher_id
    attempt.scores_released = True
    attempt.needs_manual = False
    transition(attempt, AttemptStatus.GRADED)
    session.add(attempt)
    session.commit()
    session.refresh(attempt)
    logger.info("manual marks saved", extra={"attempt_id": attempt.id, "teacher_id": payload.teacher_id, "total": scores["total"]})

    enqueue_grade_notification(session, attempt, exam)
    return review_attempt(attempt_id, session)


@router.post("/{attempt_id}/regrade", response_model=GradingRunRead)
def regrade_attempt(
    attempt_id: int,
    session: Session = Depends(get_session),
    ai_grader: AIGrader | None = Depends(get_ai_grader),
) -> GradingRunRead:
    _get_attempt(session, attempt_id)
    run = grade_attempt(session, attempt_id, ai_grader, force=True)
    if run.skipped:
        raise HTTPException(status_code=409, detail=run.reason)
    return GradingRunRead(
        attempt_id=run.attempt_id,
        skipped=run.skipped,
        reason=run.reason,
        scores=run.scores,
        needs_manual=run.needs_manual,
        ai_meta=AIMetaRead(used=run.ai_meta.used, model=run.ai_meta.model, error=run.ai_meta.error) if run.ai_meta else None,
    )


@router.post("/{attempt_id}/release", response_model=TeacherAttemptView)
def release_scores(attempt_id: int, payload: ReleaseScores, session: Session = Depends(get_session)) -> TeacherAttemptView:
    attempt, exam = _get_attempt(session, attempt_id)
    if attempt.status != AttemptStatus.GRADED or attempt.scores_json is None:
        raise HTTPException(status_code=409, detail="Attempt has not been graded yet")

    attempt.scores_released = True
    attempt.graded_by = attempt.graded_by or payload.teacher_id
    attempt.updated_at = utcnow()
    session.add(attempt)
    session.commit()
    session.refresh(attempt)

    enqueue_grade_notification(session, attempt, exam)
    return review_attempt(attempt_id, session)
