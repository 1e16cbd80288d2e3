"""Request and response schemas."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field, model_validator

from classmark.models import AttemptStatus, CourseworkStatus, ExamStatus, QuestionType


class ExamSettings(BaseModel):
    auto_mark_mc: bool = True
    auto_mark_yn: bool = True
    ai_essay: bool = True
    ai_math: bool = True


class QuestionCreate(BaseModel):
    type: QuestionType
    text: str = ""
    marks: float = Field(default=0, ge=0)
    options: list[str] = Field(default_factory=list)
    correct_options: list[int] = Field(default_factory=list)
    correct_answer: bool | None = None
    rubric: str = ""
    solution: str = ""
    tolerance: float = Field(default=0, ge=0)

    @model_validator(mode="after")
    def _check_type_fields(self) -> "QuestionCreate":
        if self.type == QuestionType.MCQ:
            if not self.correct_options:
                raise ValueError("mcq questions need at least one correct option")
            bad = [i for i in self.correct_options if i < 0 or i >= len(self.options)]
            if bad:
                raise ValueError(f"correct_options out of range: {bad}")
        if self.type == QuestionType.YESNO and self.correct_answer is None:
            raise ValueError("yesno questions need correct_answer")
        if self.type == QuestionType.MATH and not self.solution.strip():
            raise ValueError("math questions need a solution")
        return self


class QuestionRead(BaseModel):
    id: int
    index: int
    type: QuestionType
    text: str
    marks: float
    options: list[str] = Field(default_factory=list)
    correct_options: list[int] = Field(default_factory=list)
    correct_answer: bool | None = None
    rubric: str = ""
    solution: str = ""
    tolerance: float = 0


class ExamCreate(BaseModel):
    title: str = Field(min_length=1)
    course_id: str = ""
    settings: ExamSettings = Field(default_factory=ExamSettings)
    duration_minutes: int | None = Field(default=None, ge=1)
    require_coursework: bool = False
    release_at: datetime | None = None
    close_at: datetime | None = None
    questions: list[QuestionCreate] = Field(default_factory=list)


class ExamRead(BaseModel):
    id: int
    title: str
    course_id: str
    status: ExamStatus
    settings: ExamSettings
    duration_minutes: int | None
    require_coursework: bool
    release_at: datetime | None
    close_at: datetime | None
    total_marks: float
    created_at: datetime


class ExamDetail(BaseModel):
    exam: ExamRead
    questions: list[QuestionRead]


class AttemptStart(BaseModel):
    student_id: str = Field(min_length=1)
    student_email: str = ""


class SubmissionCreate(BaseModel):
    student_id: str = Field(min_length=1)
    student_email: str = ""
    answers: dict[str, Any] = Field(default_factory=dict)


class AnswersUpdate(BaseModel):
    answers: dict[str, Any]


class StudentAttemptView(BaseModel):
    id: int
    exam_id: int
    student_id: str
    status: AttemptStatus
    answers: dict[str, Any]
    can_edit: bool
    deadline: datetime | None
    created_at: datetime
    submitted_at: datetime | None
    scores: dict[str, float] | None
    result_status: str


class AttemptSummary(BaseModel):
    id: int
    student_id: str
    status: AttemptStatus
    total: float | None
    needs_manual: bool
    teacher_override: bool
    scores_released: bool
    submitted_at: datetime | None
    graded_at: datetime | None


class CriterionReport(BaseModel):
    name: str
    points: float
    reason: str


class AIQuestionReport(BaseModel):
    points: float
    reason: str
    per_criterion: list[CriterionReport] = Field(default_factory=list)


class AIMetaRead(BaseModel):
    used: bool
    model: str
    error: str | None


class AIReportRead(BaseModel):
    total: float
    per_question: dict[str, AIQuestionReport]
    ai_meta: AIMetaRead
    created_at: datetime


class TeacherAttemptView(BaseModel):
    attempt: AttemptSummary
    answers: dict[str, Any]
    scores: dict[str, float] | None
    grading_errors: dict[str, str]
    ai_report: AIReportRead | None
    warnings: list[str] = Field(default_factory=list)


class ManualMarks(BaseModel):
    teacher_id: str = Field(min_length=1)
    marks: dict[str, Any]


class ReleaseScores(BaseModel):
    teacher_id: str = Field(min_length=1)


class GradingRunRead(BaseModel):
    attempt_id: int
    skipped: bool
    reason: str
    scores: dict[str, float] | None
    needs_manual: bool
    ai_meta: AIMetaRead | None


class CourseworkSubmit(BaseModel):
    essay: str = Field(min_length=1)


class CourseworkReview(BaseModel):
    teacher_id: str = Field(min_length=1)
    feedback: str = ""


class CourseworkRead(BaseModel):
    id: int
    course_id: str
    student_id: str
    status: CourseworkStatus
    essay: str
    feedback: str
    reviewed_by: str | None
    submitted_at: datetime
    reviewed_at: datetime | None
