"""Exam, question and attempt-creation endpoints."""

from __future__ import annotations

import json
import logging

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, status
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, delete, select

from classmark.ai.openai_grader import AIGrader, get_ai_grader
from classmark.db import get_session
from classmark.grading.answers import normalize_answer
from classmark.grading.state import EligibilityError, ensure_can_start, transition
from classmark.models import Attempt, AttemptSource, AttemptStatus, Coursework, CourseworkStatus, Exam, ExamStatus, Question, QuestionType, as_utc, utcnow
from classmark.pipeline.grade import load_questions
from classmark.pipeline.triggers import on_attempt_created, snapshot
from classmark.routers.attempts import attempt_summary, student_view
from classmark.schemas import (
    AttemptStart,
    AttemptSummary,
    ExamCreate,
    ExamDetail,
    ExamRead,
    ExamSettings,
    QuestionCreate,
    QuestionRead,
    StudentAttemptView,
    SubmissionCreate,
)

router = APIRouter(prefix="/exams", tags=["exams"])
logger = logging.getLogger(__name__)


def _get_exam(session: Session, exam_id: int) -> Exam:
    exam = session.get(Exam, exam_id)
    if not exam:
        raise HTTPException(status_code=404, detail="Exam not found")
    return exam


def exam_read(exam: Exam) -> ExamRead:
    return ExamRead(
        id=exam.id,
        title=exam.title,
        course_id=exam.course_id,
        status=exam.status,
        settings=ExamSettings(
            auto_mark_mc=exam.auto_mark_mc,
            auto_mark_yn=exam.auto_mark_yn,
            ai_essay=exam.ai_essay,
            ai_math=exam.ai_math,
        ),
        duration_minutes=exam.duration_minutes,
        require_coursework=exam.require_coursework,
        release_at=exam.release_at,
        close_at=exam.close_at,
        total_marks=exam.total_marks,
        created_at=exam.created_at,
    )


def question_read(question: Question) -> QuestionRead:
    return QuestionRead(
        id=question.id,
        index=question.index,
        type=question.type,
        text=question.text,
        marks=question.marks,
        options=question.options,
        correct_options=question.correct_options,
        correct_answer=question.correct_yes_no,
        rubric=question.rubric,
        solution=question.solution,
        tolerance=question.tolerance,
    )


def _question_row(exam_id: int, index: int, payload: QuestionCreate) -> Question:
    row = Question(exam_id=exam_id, index=index, type=payload.type, text=payload.text, marks=payload.marks)
    if payload.type == QuestionType.MCQ:
        row.options_json = json.dumps(payload.options)
        row.correct_options_json = json.dumps(sorted(set(payload.correct_options)))
    elif payload.type == QuestionType.YESNO:
        row.correct_yes_no = payload.correct_answer
    elif payload.type == QuestionType.ESSAY:
        row.rubric = payload.rubric
    elif payload.type == QuestionType.MATH:
        row.solution = payload.solution
        row.tolerance = payload.tolerance
    return row


def _write_questions(session: Session, exam: Exam, questions: list[QuestionCreate]) -> None:
    session.exec(delete(Question).where(Question.exam_id == exam.id))
    for index, payload in enumerate(questions):
        session.add(_question_row(exam.id, index, payload))
    exam.total_marks = float(sum(q.marks for q in questions))
    exam.updated_at = utcnow()
    session.add(exam)


def _exam_detail(session: Session, exam: Exam) -> ExamDetail:
    return ExamDetail(exam=exam_read(exam), questions=[question_read(q) for q in load_questions(session, exam.id)])


@router.post("", response_model=ExamDetail, status_code=status.HTTP_201_CREATED)
def create_exam(payload: ExamCreate, session: Session = Depends(get_session)) -> ExamDetail:
    release_at = as_utc(payload.release_at)
    close_at = as_utc(payload.close_at)
    if release_at and close_at and close_at <= release_at:
        raise HTTPException(status_code=400, detail="close_at must be after release_at")

    exam = Exam(
        title=payload.title.strip(),
        course_id=payload.course_id,
        auto_mark_mc=payload.settings.auto_mark_mc,
        auto_mark_yn=payload.settings.auto_mark_yn,
        ai_essay=payload.settings.ai_essay,
        ai_math=payload.settings.ai_math,
        duration_minutes=payload.duration_minutes,
        require_coursework=payload.require_coursework,
        release_at=release_at,
        close_at=close_at,
    )
    session.add(exam)
    session.flush()
    _write_questions(session, exam, payload.questions)
    session.commit()
    session.refresh(exam)
    return _exam_detail(session, exam)


@router.get("", response_model=list[ExamRead])
def list_exams(session: Session = Depends(get_session)) -> list[ExamRead]:
    exams = session.exec(select(Exam).order_by(Exam.created_at.desc(), Exam.id.desc())).all()
    return [exam_read(exam) for exam in exams]


@router.get("/{exam_id}", response_model=ExamDetail)
def get_exam(exam_id: int, session: Session = Depends(get_session)) -> ExamDetail:
    return _exam_detail(session, _get_exam(session, exam_id))


@router.put("/{exam_id}/questions", response_model=ExamDetail)
def replace_questions(exam_id: int, questions: list[QuestionCreate], session: Session = Depends(get_session)) -> ExamDetail:
    exam = _get_exam(session, exam_id)
    has_attempts = session.exec(select(Attempt.id).where(Attempt.exam_id == exam_id)).first() is not None
    if has_attempts:
        raise HTTPException(status_code=409, detail="Questions cannot change once students have attempts")
    _write_questions(session, exam, questions)
    session.commit()
    session.refresh(exam)
    return _exam_detail(session, exam)


def _set_exam_status(session: Session, exam: Exam, target: ExamStatus, allowed: set[ExamStatus]) -> ExamRead:
    if exam.status not in allowed:
        raise HTTPException(status_code=409, detail=f"Exam is {exam.status.value}; cannot move to {target.value}")
    now = utcnow()
    exam.status = target
    exam.updated_at = now
    if target == ExamStatus.RELEASED and exam.release_at is None:
        exam.release_at = now
    if target == ExamStatus.CLOSED:
        exam.close_at = now
    session.add(exam)
    session.commit()
    session.refresh(exam)
    return exam_read(exam)


@router.post("/{exam_id}/release", response_model=ExamRead)
def release_exam(exam_id: int, session: Session = Depends(get_session)) -> ExamRead:
    exam = _get_exam(session, exam_id)
    return _set_exam_status(session, exam, ExamStatus.RELEASED, {ExamStatus.DRAFT})


@router.post("/{exam_id}/close", response_model=ExamRead)
def close_exam(exam_id: int, session: Session = Depends(get_session)) -> ExamRead:
    exam = _get_exam(session, exam_id)
    return _set_exam_status(session, exam, ExamStatus.CLOSED, {ExamStatus.RELEASED})


@router.get("/{exam_id}/attempts", response_model=list[AttemptSummary])
def list_attempts(exam_id: int, session: Session = Depends(get_session)) -> list[AttemptSummary]:
    _get_exam(session, exam_id)
    attempts = session.exec(select(Attempt).where(Attempt.exam_id == exam_id).order_by(Attempt.id)).all()
    return [attempt_summary(a) for a in attempts]


def coursework_approved(session: Session, student_id: str, course_id: str) -> bool:
    row = session.exec(
        select(Coursework).where(Coursework.course_id == course_id, Coursework.student_id == student_id)
    ).first()
    return row is not None and row.status == CourseworkStatus.APPROVED


def _existing_attempt(session: Session, exam_id: int, student_id: str) -> Attempt | None:
    return session.exec(select(Attempt).where(Attempt.exam_id == exam_id, Attempt.student_id == student_id)).first()


@router.post("/{exam_id}/attempts", response_model=StudentAttemptView, status_code=status.HTTP_201_CREATED)
def start_attempt(exam_id: int, payload: AttemptStart, session: Session = Depends(get_session)) -> StudentAttemptView:
    exam = _get_exam(session, exam_id)
    existing = _existing_attempt(session, exam_id, payload.student_id)
    if existing:
        return student_view(exam, existing)

    try:
        approved = not exam.require_coursework or coursework_approved(session, payload.student_id, exam.course_id)
        ensure_can_start(exam, approved)
    except EligibilityError as exc:
        raise HTTPException(status_code=403, detail=str(exc)) from exc

    attempt = Attempt(exam_id=exam_id, student_id=payload.student_id, student_email=payload.student_email)
    transition(attempt, AttemptStatus.IN_PROGRESS)
    session.add(attempt)
    try:
        session.commit()
    except IntegrityError:
        session.rollback()
        existing = _existing_attempt(session, exam_id, payload.student_id)
        if existing is None:
            raise
        return student_view(exam, existing)
    session.refresh(attempt)
    logger.info("attempt started", extra={"attempt_id": attempt.id, "exam_id": exam_id})
    return student_view(exam, attempt)


@router.post("/{exam_id}/submissions", response_model=AttemptSummary, status_code=status.HTTP_201_CREATED)
def create_submission(
    exam_id: int,
    payload: SubmissionCreate,
    background_tasks: BackgroundTasks,
    session: Session = Depends(get_session),
    ai_grader: AIGrader | None = Depends(get_ai_grader),
) -> AttemptSummary:
    """Record a complete, already-submitted set of answers (e.g. a paper exam)."""
    exam = _get_exam(session, exam_id)
    if _existing_attempt(session, exam_id, payload.student_id):
        raise HTTPException(status_code=409, detail="Student already has an attempt for this exam")

    try:
        approved = not exam.require_coursework or coursework_approved(session, payload.student_id, exam.course_id)
        ensure_can_start(exam, approved)
    except EligibilityError as exc:
        raise HTTPException(status_code=403, detail=str(exc)) from exc

    questions = {str(q.id): q for q in load_questions(session, exam_id)}
    unknown = sorted(k for k in payload.answers if k not in questions)
    if unknown:
        raise HTTPException(status_code=400, detail=f"Unknown question id(s): {', '.join(unknown)}")

    answers = {qid: normalize_answer(questions[qid].type, raw).to_json() for qid, raw in payload.answers.items()}
    attempt = Attempt(
        exam_id=exam_id,
        student_id=payload.student_id,
        student_email=payload.student_email,
        source=AttemptSource.SUBMISSION,
        answers_json=json.dumps(answers),
    )
    transition(attempt, AttemptStatus.SUBMITTED)
    session.add(attempt)
    try:
        session.commit()
    except IntegrityError as exc:
        session.rollback()
        raise HTTPException(status_code=409, detail="Student already has an attempt for this exam") from exc
    session.refresh(attempt)

    background_tasks.add_task(on_attempt_created, attempt.id, snapshot(attempt), ai_grader)
    return attempt_summary(attempt)
