"""Grader interfaces."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from classmark.grading.answers import Answer
from classmark.models import Question


@dataclass
class GradeOutcome:
    points: float
    auto_graded: bool
    error: str | None = None


class Grader(Protocol):
    """Grader protocol for scoring one answer against its question."""

    name: str

    def grade(self, question: Question, answer: Answer | None) -> GradeOutcome:
        """Return grading outcome."""
