"""Answer normalisation.

Clients send each answer either bare (``[0, 2]``, ``true``, ``"x+1"``) or
wrapped as ``{"value": ..., "type": ...}``. Everything is unwrapped and coerced
here, once, into the shape the question type expects, so graders never have to
guess.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any

from classmark.models import QuestionType

_TRUE_STRINGS = {"1", "true", "yes", "y"}
_FALSE_STRINGS = {"0", "false", "no", "n"}


@dataclass(frozen=True)
class Answer:
    type: QuestionType
    value: Any

    def to_json(self) -> dict[str, Any]:
        value = sorted(self.value) if self.type == QuestionType.MCQ else self.value
        return {"type": self.type.value, "value": value}


def coerce_number(value: Any, default: float = 0.0) -> float:
    """Coerce marks/tolerance-like values; missing, NaN and junk become ``default``."""
    if isinstance(value, bool):
        return float(value)
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    if math.isnan(number) or math.isinf(number):
        return default
    return number


def _unwrap(raw: Any) -> Any:
    if isinstance(raw, dict) and "value" in raw:
        return raw["value"]
    return raw


def _as_index_set(value: Any) -> frozenset[int]:
    if isinstance(value, (int, str)) and not isinstance(value, bool):
        value = [value]
    if not isinstance(value, (list, tuple, set, frozenset)):
        return frozenset()
    indices: set[int] = set()
    for item in value:
        if isinstance(item, bool):
            continue
        try:
            indices.add(int(item))
        except (TypeError, ValueError):
            continue
    return frozenset(indices)


def _as_bool(value: Any) -> bool | None:
    """``None`` for anything that is not clearly yes or no."""
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        text = value.strip().lower()
        if text in _TRUE_STRINGS:
            return True
        if text in _FALSE_STRINGS:
            return False
        return None
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    return None


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (dict, list)):
        return ""
    return str(value)


def normalize_answer(question_type: QuestionType, raw: Any) -> Answer:
    """Return the typed answer for ``raw``.

    Malformed values fall back to the type's empty value: an empty selection,
    ``None`` for yes/no, or empty text.
    """
    value = _unwrap(raw)
    if question_type == QuestionType.MCQ:
        return Answer(question_type, _as_index_set(value))
    if question_type == QuestionType.YESNO:
        return Answer(question_type, _as_bool(value))
    return Answer(question_type, _as_text(value))


def load_answer(question_type: QuestionType, stored: dict[str, Any], question_key: str) -> Answer | None:
    """Read one answer out of an attempt's stored answers. ``None`` means unanswered."""
    if question_key not in stored:
        return None
    return normalize_answer(question_type, stored[question_key])
