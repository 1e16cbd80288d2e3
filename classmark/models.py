"""SQLModel ORM models for ClassMark."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from sqlalchemy import UniqueConstraint
from sqlmodel import Field, SQLModel


def utcnow() -> datetime:
    """Return timezone-aware UTC now timestamp."""
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """SQLite drops tzinfo on round-trip; treat naive timestamps as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class ExamStatus(str, Enum):
    DRAFT = "draft"
    RELEASED = "released"
    CLOSED = "closed"
    ARCHIVED = "archived"


class QuestionType(str, Enum):
    MCQ = "mcq"
    YESNO = "yesno"
    ESSAY = "essay"
    MATH = "math"


class AttemptStatus(str, Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    SUBMITTED = "submitted"
    GRADING = "grading"
    GRADED = "graded"


class AttemptSource(str, Enum):
    ATTEMPT = "attempt"
    SUBMISSION = "submission"


class CourseworkStatus(str, Enum):
    SUBMITTED = "submitted"
    APPROVED = "approved"
    REJECTED = "rejected"


class Exam(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    title: str
    course_id: str = Field(default="", index=True)
    status: ExamStatus = Field(default=ExamStatus.DRAFT)
    auto_mark_mc: bool = True
    auto_mark_yn: bool = True
    ai_essay: bool = True
    ai_math: bool = True
    duration_minutes: Optional[int] = None
    require_coursework: bool = False
    release_at: Optional[datetime] = None
    close_at: Optional[datetime] = None
    total_marks: float = 0.0
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Question(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    exam_id: int = Field(foreign_key="exam.id", index=True)
    index: int = 0
    type: QuestionType
    text: str = ""
    marks: float = 0.0
    options_json: str = "[]"
    correct_options_json: str = "[]"
    correct_yes_no: Optional[bool] = None
    rubric: str = ""
    solution: str = ""
    tolerance: float = 0.0
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def options(self) -> list[str]:
        return json.loads(self.options_json or "[]")

    @property
    def correct_options(self) -> list[Any]:
        return json.loads(self.correct_options_json or "[]")


class Attempt(SQLModel, table=True):
    __table_args__ = (UniqueConstraint("exam_id", "student_id", name="uq_attempt_exam_student"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    exam_id: int = Field(foreign_key="exam.id", index=True)
    student_id: str = Field(index=True)
    student_email: str = ""
    status: AttemptStatus = Field(default=AttemptStatus.NOT_STARTED)
    source: AttemptSource = Field(default=AttemptSource.ATTEMPT)
    answers_json: str = "{}"
    scores_json: Optional[str] = None
    grading_errors_json: str = "{}"
    needs_manual: bool = False
    teacher_override: bool = False
    graded_by: Optional[str] = None
    scores_released: bool = False
    grade_email_sent: bool = False
    created_at: datetime = Field(default_factory=utcnow)
    submitted_at: Optional[datetime] = None
    graded_at: Optional[datetime] = None
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def answers(self) -> dict[str, Any]:
        return json.loads(self.answers_json or "{}")

    @property
    def scores(self) -> dict[str, float] | None:
        if self.scores_json is None:
            return None
        return json.loads(self.scores_json)

    @property
    def grading_errors(self) -> dict[str, str]:
        return json.loads(self.grading_errors_json or "{}")


class AIGradingReport(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    attempt_id: int = Field(foreign_key="attempt.id", index=True)
    total: float = 0.0
    per_question_json: str = "{}"
    ai_used: bool = False
    ai_model: str = ""
    ai_error: Optional[str] = None
    source: AttemptSource = Field(default=AttemptSource.ATTEMPT)
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def per_question(self) -> dict[str, dict[str, Any]]:
        return json.loads(self.per_question_json or "{}")


class Coursework(SQLModel, table=True):
    __table_args__ = (UniqueConstraint("course_id", "student_id", name="uq_coursework_course_student"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    course_id: str = Field(index=True)
    student_id: str = Field(index=True)
    essay: str = ""
    status: CourseworkStatus = Field(default=CourseworkStatus.SUBMITTED)
    feedback: str = ""
    reviewed_by: Optional[str] = None
    submitted_at: datetime = Field(default_factory=utcnow)
    reviewed_at: Optional[datetime] = None


class OutboxMail(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    attempt_id: int = Field(foreign_key="attempt.id", index=True)
    to: str
    subject: str
    text: str
    created_at: datetime = Field(default_factory=utcnow)
