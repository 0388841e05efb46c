"""Net Promoter Score classification and summary.

Percentages are rounded half-up independently before the promoter minus
detractor subtraction, so the score always equals the two percentages the
dashboard prints next to it. It can differ by one from the exact NPS.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

PROMOTER = "promoter"
PASSIVE = "passive"
DETRACTOR = "detractor"

MIN_SCORE = 0
MAX_SCORE = 10


def classify(score: int) -> str:
    if score < MIN_SCORE or score > MAX_SCORE:
        raise ValueError(f"score out of range: {score}")
    if score <= 6:
        return DETRACTOR
    if score <= 8:
        return PASSIVE
    return PROMOTER


def percent(part: int, total: int) -> int:
    """Integer percentage rounded half-up; 0 when total is 0."""
    if total <= 0:
        return 0
    return (200 * part + total) // (2 * total)


@dataclass(frozen=True)
class NpsSummary:
    total: int
    promoters: int
    passives: int
    detractors: int
    score_sum: int

    @property
    def no_data(self) -> bool:
        return self.total == 0

    @property
    def promoter_pct(self) -> int:
        return percent(self.promoters, self.total)

    @property
    def passive_pct(self) -> int:
        return percent(self.passives, self.total)

    @property
    def detractor_pct(self) -> int:
        return percent(self.detractors, self.total)

    @property
    def nps(self) -> int:
        if self.no_data:
            return 0
        return self.promoter_pct - self.detractor_pct

    @property
    def average_score(self) -> float:
        if self.no_data:
            return 0.0
        return self.score_sum / self.total

    def as_dict(self) -> dict:
        return {
            "totalResponses": self.total,
            "averageScore": self.average_score,
            "npsScore": self.nps,
            "noData": self.no_data,
            "promoters": self.promoters,
            "passives": self.passives,
            "detractors": self.detractors,
            "promoterPercentage": self.promoter_pct,
            "passivePercentage": self.passive_pct,
            "detractorPercentage": self.detractor_pct,
        }


def summarize(scores: Iterable[int]) -> NpsSummary:
    counts = {PROMOTER: 0, PASSIVE: 0, DETRACTOR: 0}
    total = 0
    score_sum = 0
    for s in scores:
        counts[classify(s)] += 1
        total += 1
        score_sum += s
    return NpsSummary(
        total=total,
        promoters=counts[PROMOTER],
        passives=counts[PASSIVE],
        detractors=counts[DETRACTOR],
        score_sum=score_sum,
    )
