"""AI grading orchestration.

Builds one batch request for every AI-eligible question of an attempt, calls
the grading model and turns its reply into clamped per-question results. The
reply is untrusted: nothing in it can push a score outside ``[0, marks]``, and
no failure escapes :func:`run_ai_grading`.
"""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, field
from typing import Any

from classmark.ai.openai_grader import AIGrader
from classmark.grading.answers import Answer, coerce_number
from classmark.grading.rubric import parse_criteria
from classmark.grading.rule_based import question_marks
from classmark.models import Exam, Question, QuestionType

logger = logging.getLogger(__name__)

DEFAULT_AI_MODEL = "gpt-4o-mini"


@dataclass
class CriterionResult:
    name: str
    points: float
    reason: str


@dataclass
class AIQuestionResult:
    points: float
    reason: str
    per_criterion: list[CriterionResult] = field(default_factory=list)

    def to_json(self) -> dict[str, Any]:
        return {
            "points": self.points,
            "reason": self.reason,
            "perCriterion": [asdict(c) for c in self.per_criterion],
        }


@dataclass
class AIMeta:
    used: bool = False
    model: str = DEFAULT_AI_MODEL
    error: str | None = None


@dataclass
class AIGradingResult:
    results: dict[str, AIQuestionResult]
    meta: AIMeta
    requested: frozenset[str] = frozenset()

    @property
    def total(self) -> float:
        return sum(r.points for r in self.results.values())


def is_ai_eligible(exam: Exam, question: Question) -> bool:
    if question.type == QuestionType.ESSAY:
        return bool(exam.ai_essay)
    if question.type == QuestionType.MATH:
        return bool(exam.ai_math)
    return False


def _answer_for_prompt(answer: Answer | None) -> Any:
    if answer is None:
        return ""
    if isinstance(answer.value, frozenset):
        return sorted(answer.value)
    return answer.value


def build_ai_items(exam: Exam, questions: list[Question], answers: dict[str, Answer | None]) -> dict[str, dict[str, Any]]:
    items: dict[str, dict[str, Any]] = {}
    for question in questions:
        if not is_ai_eligible(exam, question):
            continue
        qid = str(question.id)
        items[qid] = {
            "type": question.type.value,
            "marks": question_marks(question),
            "question": question.text or "",
            "criteria": [c.to_json() for c in parse_criteria(question.rubric)],
            "expected": (question.solution or None) if question.type == QuestionType.MATH else None,
            "answer": _answer_for_prompt(answers.get(qid)),
        }
    return items


def _clamp(value: Any, ceiling: float) -> float:
    return min(max(coerce_number(value), 0.0), ceiling)


def parse_ai_response(text: str, items: dict[str, dict[str, Any]]) -> dict[str, AIQuestionResult]:
    """Parse the model reply; raises ``ValueError`` when it is not a JSON object."""
    payload = json.loads(text or "{}")
    if not isinstance(payload, dict):
        raise ValueError("AI response is not a JSON object")

    results: dict[str, AIQuestionResult] = {}
    for qid, raw in payload.items():
        qid = str(qid)
        if qid not in items or not isinstance(raw, dict):
            continue
        ceiling = float(items[qid]["marks"])
        criteria: list[CriterionResult] = []
        raw_criteria = raw.get("perCriterion")
        if isinstance(raw_criteria, list):
            for entry in raw_criteria:
                if not isinstance(entry, dict):
                    continue
                criteria.append(
                    CriterionResult(
                        name=str(entry.get("name") or ""),
                        points=_clamp(entry.get("points"), ceiling),
                        reason=str(entry.get("reason") or ""),
                    )
                )
        results[qid] = AIQuestionResult(
            points=_clamp(raw.get("points"), ceiling),
            reason=str(raw.get("reason") or ""),
            per_criterion=criteria,
        )
    return results


def run_ai_grading(
    grader: AIGrader | None,
    exam: Exam,
    questions: list[Question],
    answers: dict[str, Answer | None],
    attempt_id: int | None = None,
) -> AIGradingResult:
    items = build_ai_items(exam, questions, answers)
    model = getattr(grader, "model", DEFAULT_AI_MODEL) if grader is not None else DEFAULT_AI_MODEL
    meta = AIMeta(used=False, model=model)
    if not items:
        return AIGradingResult(results={}, meta=meta)

    meta.used = True
    requested = frozenset(items)
    if grader is None:
        meta.error = "AI grading is not configured (OPENAI_API_KEY is not set)"
        logger.warning("ai grading skipped", extra={"attempt_id": attempt_id, "stage": "ai_grading", "error": meta.error})
        return AIGradingResult(results={}, meta=meta, requested=requested)

    try:
        text = grader.grade({"examTitle": exam.title or "Exam", "items": items})
        results = parse_ai_response(text, items)
    except Exception as exc:
        logger.exception("ai grading failed", extra={"attempt_id": attempt_id, "stage": "ai_grading"})
        meta.error = str(exc) or exc.__class__.__name__
        return AIGradingResult(results={}, meta=meta, requested=requested)

    missing = sorted(requested - set(results))
    if missing:
        logger.info(
            "ai grading response missing questions",
            extra={"attempt_id": attempt_id, "stage": "ai_grading", "missing": missing},
        )
    return AIGradingResult(results=results, meta=meta, requested=requested)
