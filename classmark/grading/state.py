"""Attempt lifecycle: allowed status transitions, answer locking and start eligibility."""

from __future__ import annotations

from datetime import datetime, timedelta

from classmark.models import Attempt, AttemptStatus, Exam, ExamStatus, as_utc, utcnow

_TRANSITIONS: dict[AttemptStatus, frozenset[AttemptStatus]] = {
    AttemptStatus.NOT_STARTED: frozenset({AttemptStatus.IN_PROGRESS, AttemptStatus.SUBMITTED}),
    AttemptStatus.IN_PROGRESS: frozenset({AttemptStatus.SUBMITTED}),
    AttemptStatus.SUBMITTED: frozenset({AttemptStatus.GRADING, AttemptStatus.GRADED}),
    AttemptStatus.GRADING: frozenset({AttemptStatus.GRADED}),
    AttemptStatus.GRADED: frozenset({AttemptStatus.GRADING, AttemptStatus.GRADED}),
}

EDITABLE_STATUSES = frozenset({AttemptStatus.NOT_STARTED, AttemptStatus.IN_PROGRESS})
SUBMITTED_STATUSES = frozenset({AttemptStatus.SUBMITTED, AttemptStatus.GRADING, AttemptStatus.GRADED})


class InvalidTransition(Exception):
    def __init__(self, current: AttemptStatus, target: AttemptStatus) -> None:
        super().__init__(f"Cannot move attempt from {current.value} to {target.value}")
        self.current = current
        self.target = target


class AttemptLocked(Exception):
    """Answers can no longer be changed by the student."""


class EligibilityError(Exception):
    """The student may not start this exam."""


def can_transition(current: AttemptStatus, target: AttemptStatus) -> bool:
    return target in _TRANSITIONS.get(current, frozenset())


def transition(attempt: Attempt, target: AttemptStatus, now: datetime | None = None) -> Attempt:
    """Move ``attempt`` to ``target`` and stamp the matching timestamps."""
    current = AttemptStatus(attempt.status)
    if not can_transition(current, target):
        raise InvalidTransition(current, target)

    now = now or utcnow()
    attempt.status = target
    attempt.updated_at = now
    if target == AttemptStatus.SUBMITTED and attempt.submitted_at is None:
        attempt.submitted_at = now
    if target == AttemptStatus.GRADED:
        attempt.graded_at = now
    return attempt


def window_open(exam: Exam, now: datetime | None = None) -> bool:
    now = now or utcnow()
    release_at = as_utc(exam.release_at)
    close_at = as_utc(exam.close_at)
    if release_at is not None and now < release_at:
        return False
    if close_at is not None and now >= close_at:
        return False
    return True


def deadline(exam: Exam, attempt: Attempt) -> datetime | None:
    """When the attempt's time runs out, if the exam has a duration limit."""
    if not exam.duration_minutes or exam.duration_minutes <= 0:
        return None
    return as_utc(attempt.created_at) + timedelta(minutes=exam.duration_minutes)


def edit_block_reason(exam: Exam, attempt: Attempt, now: datetime | None = None) -> str | None:
    """Why the student cannot edit answers right now, or ``None`` if they can."""
    now = now or utcnow()
    if attempt.submitted_at is not None or AttemptStatus(attempt.status) not in EDITABLE_STATUSES:
        return "Attempt has already been submitted"
    if exam.status != ExamStatus.RELEASED:
        return "Exam is not open"
    if not window_open(exam, now):
        return "Exam window is closed"
    limit = deadline(exam, attempt)
    if limit is not None and now >= limit:
        return "Time is up"
    return None


def ensure_editable(exam: Exam, attempt: Attempt, now: datetime | None = None) -> None:
    reason = edit_block_reason(exam, attempt, now)
    if reason:
        raise AttemptLocked(reason)


def ensure_can_start(exam: Exam, coursework_approved: bool, now: datetime | None = None) -> None:
    """Gate for ``not_started -> in_progress``; ``coursework_approved`` comes from the coursework check."""
    if exam.status != ExamStatus.RELEASED:
        raise EligibilityError("Exam is not released")
    if not window_open(exam, now):
        raise EligibilityError("Exam window is closed")
    if exam.require_coursework and not coursework_approved:
        raise EligibilityError("Approved coursework is required before starting this exam")


def scores_visible_to_student(attempt: Attempt, policy: str) -> bool:
    """Score visibility policy.

    ``teacher_confirmed``: only after the teacher marks the attempt or releases
    the automatic scores. ``immediate``: as soon as grading has finished.
    """
    if attempt.scores_json is None:
        return False
    if policy == "immediate":
        return AttemptStatus(attempt.status) == AttemptStatus.GRADED
    return bool(attempt.scores_released)
