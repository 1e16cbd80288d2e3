"""Coursework endpoints: the approval that gates starting some exams."""

from fastapi import APIRouter, Depends, HTTPException
from sqlmodel import Session, select

from classmark.db import get_session
from classmark.models import Coursework, CourseworkStatus, utcnow
from classmark.schemas import CourseworkRead, CourseworkReview, CourseworkSubmit

router = APIRouter(prefix="/coursework", tags=["coursework"])


def _read(row: Coursework) -> CourseworkRead:
    return CourseworkRead(
        id=row.id,
        course_id=row.course_id,
        student_id=row.student_id,
        status=row.status,
        essay=row.essay,
        feedback=row.feedback,
        reviewed_by=row.reviewed_by,
        submitted_at=row.submitted_at,
        reviewed_at=row.reviewed_at,
    )


def _find(session: Session, course_id: str, student_id: str) -> Coursework | None:
    return session.exec(
        select(Coursework).where(Coursework.course_id == course_id, Coursework.student_id == student_id)
    ).first()


@router.put("/{course_id}/{student_id}", response_model=CourseworkRead)
def submit_coursework(
    course_id: str,
    student_id: str,
    payload: CourseworkSubmit,
    session: Session = Depends(get_session),
) -> CourseworkRead:
    row = _find(session, course_id, student_id)
    if row and row.status == CourseworkStatus.APPROVED:
        raise HTTPException(status_code=409, detail="Coursework already approved")
    if row is None:
        row = Coursework(course_id=course_id, student_id=student_id)

    row.essay = payload.essay
    row.status = CourseworkStatus.SUBMITTED
    row.submitted_at = utcnow()
    session.add(row)
    session.commit()
    session.refresh(row)
    return _read(row)


def _review(session: Session, course_id: str, student_id: str, payload: CourseworkReview, target: CourseworkStatus) -> CourseworkRead:
    row = _find(session, course_id, student_id)
    if not row:
        raise HTTPException(status_code=404, detail="Coursework not found")
    row.status = target
    row.feedback = payload.feedback
    row.reviewed_by = payload.teacher_id
    row.reviewed_at = utcnow()
    session.add(row)
    session.commit()
    session.refresh(row)
    return _read(row)


@router.post("/{course_id}/{student_id}/approve", response_model=CourseworkRead)
def approve_coursework(
    course_id: str,
    student_id: str,
    payload: CourseworkReview,
    session: Session = Depends(get_session),
) -> CourseworkRead:
    return _review(session, course_id, student_id, payload, CourseworkStatus.APPROVED)


@router.post("/{course_id}/{student_id}/reject", response_model=CourseworkRead)
def reject_coursework(
    course_id: str,
    student_id: str,
    payload: CourseworkReview,
    session: Session = Depends(get_session),
) -> CourseworkRead:
    return _review(session, course_id, student_id, payload, CourseworkStatus.REJECTED)
