"""Score reconciliation and manual override."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from classmark.grading.answers import coerce_number
from classmark.grading.rule_based import question_marks
from classmark.models import Question

TOTAL_KEY = "total"


class UnknownQuestionError(ValueError):
    pass


def with_total(per_question: Mapping[str, float]) -> dict[str, float]:
    """Return a scores map whose ``total`` is the sum of every other entry."""
    scores = {str(k): float(v) for k, v in per_question.items() if k != TOTAL_KEY}
    scores[TOTAL_KEY] = sum(scores.values())
    return scores


def reconcile(
    questions: list[Question],
    deterministic: Mapping[str, float],
    ai_points: Mapping[str, float],
) -> dict[str, float]:
    """``max(deterministic, ai)`` per question, clamped to the question's marks."""
    per_question: dict[str, float] = {}
    for question in questions:
        qid = str(question.id)
        ceiling = question_marks(question)
        best = max(coerce_number(deterministic.get(qid)), coerce_number(ai_points.get(qid)))
        per_question[qid] = min(max(best, 0.0), ceiling)
    return with_total(per_question)


def manual_scores(questions: list[Question], marks: Mapping[str, Any]) -> dict[str, float]:
    """Teacher-entered marks, taken as-is apart from clamping to each ceiling.

    Questions the teacher left out score 0; ids that are not on the exam are
    rejected.
    """
    by_id = {str(q.id): q for q in questions}
    entered = {str(k): v for k, v in marks.items() if str(k) != TOTAL_KEY}
    unknown = sorted(k for k in entered if k not in by_id)
    if unknown:
        raise UnknownQuestionError(f"Unknown question id(s): {', '.join(unknown)}")

    per_question: dict[str, float] = {}
    for qid, question in by_id.items():
        per_question[qid] = min(max(coerce_number(entered.get(qid)), 0.0), question_marks(question))
    return with_total(per_question)
