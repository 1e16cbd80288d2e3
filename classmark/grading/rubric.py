"""Essay rubric parsing."""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass

DEFAULT_CRITERION = "Quality"


@dataclass(frozen=True)
class Criterion:
    name: str
    weight: float

    def to_json(self) -> dict[str, float | str]:
        return asdict(self)


def parse_criteria(rubric: str | None) -> list[Criterion]:
    """Parse ``"Clarity:0.4, Accuracy:0.6"`` into criteria whose weights sum to 1.

    Entries without a name, or with a weight that is not a non-negative number,
    are dropped. A rubric with nothing usable left grades on a single
    ``Quality`` criterion.
    """
    parsed: list[Criterion] = []
    for part in str(rubric or "").split(","):
        name, _, raw_weight = part.partition(":")
        name = name.strip()
        if not name:
            continue
        raw_weight = raw_weight.strip()
        if not raw_weight:
            continue
        try:
            weight = float(raw_weight)
        except ValueError:
            continue
        if math.isnan(weight) or math.isinf(weight) or weight < 0:
            continue
        parsed.append(Criterion(name=name, weight=weight))

    if not parsed:
        return [Criterion(name=DEFAULT_CRITERION, weight=1.0)]

    total = sum(c.weight for c in parsed)
    if total <= 0:
        even = 1.0 / len(parsed)
        return [Criterion(name=c.name, weight=even) for c in parsed]
    return [Criterion(name=c.name, weight=c.weight / total) for c in parsed]
