"""Deterministic graders for auto-markable question types."""

from __future__ import annotations

import logging

from classmark.grading.answers import Answer, coerce_number
from classmark.grading.base import GradeOutcome, Grader
from classmark.grading.expressions import ExpressionError, ExpressionEvaluator, SympyEvaluator
from classmark.models import Question, QuestionType

logger = logging.getLogger(__name__)


def question_marks(question: Question) -> float:
    return max(0.0, coerce_number(question.marks))


def _correct_index_set(question: Question) -> frozenset[int]:
    try:
        raw = question.correct_options
    except ValueError:
        return frozenset()
    indices: set[int] = set()
    for item in raw if isinstance(raw, list) else []:
        try:
            indices.add(int(item))
        except (TypeError, ValueError):
            continue
    return frozenset(indices)


class MCQGrader(Grader):
    name = "mcq"

    def grade(self, question: Question, answer: Answer | None) -> GradeOutcome:
        if answer is None:
            return GradeOutcome(0.0, auto_graded=True)
        selected = answer.value if isinstance(answer.value, frozenset) else frozenset()
        if not selected:
            return GradeOutcome(0.0, auto_graded=True)
        points = question_marks(question) if selected == _correct_index_set(question) else 0.0
        return GradeOutcome(points, auto_graded=True)


class YesNoGrader(Grader):
    name = "yesno"

    def grade(self, question: Question, answer: Answer | None) -> GradeOutcome:
        if answer is None or answer.value is None or question.correct_yes_no is None:
            return GradeOutcome(0.0, auto_graded=True)
        points = question_marks(question) if answer.value is bool(question.correct_yes_no) else 0.0
        return GradeOutcome(points, auto_graded=True)


class MathGrader(Grader):
    name = "math"

    def __init__(self, evaluator: ExpressionEvaluator | None = None) -> None:
        self._evaluator = evaluator or SympyEvaluator()

    def grade(self, question: Question, answer: Answer | None) -> GradeOutcome:
        if answer is None or not str(answer.value).strip():
            return GradeOutcome(0.0, auto_graded=True)

        tolerance = max(0.0, coerce_number(question.tolerance))
        try:
            expected = self._evaluator.evaluate(question.solution)
            got = self._evaluator.evaluate(str(answer.value))
        except ExpressionError as exc:
            logger.warning(
                "math grading could not evaluate expression",
                extra={"question_id": question.id, "stage": "deterministic_math", "error": str(exc)},
            )
            return GradeOutcome(0.0, auto_graded=False, error=str(exc))

        points = question_marks(question) if abs(expected - got) <= tolerance else 0.0
        return GradeOutcome(points, auto_graded=True)


class EssayGrader(Grader):
    """Essays are left to the AI pass or the teacher."""

    name = "essay"

    def grade(self, question: Question, answer: Answer | None) -> GradeOutcome:
        return GradeOutcome(0.0, auto_graded=False)
