"""
Canonical counter values and the numeric rules shared by every component.

All read paths and the recompute engine go through round_rating() so that a
story reports the same average regardless of which path served it.
"""
from dataclasses import asdict, dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from enum import Enum
from typing import Optional

from storystats.schemas import StoryStats

RATING_MIN = 1
RATING_MAX = 5

_ONE_DECIMAL = Decimal("0.1")


class ViewCountPolicy(str, Enum):
    """How the recompute engine derives view_count."""

    COUNTER = "counter"                 # trust the story's incremental counter
    EVENTS = "events"                   # count every view event
    DISTINCT_DAILY = "distinct_daily"   # one view per viewer per calendar day


def round_rating(value) -> float:
    """Round half-up to one decimal place; None/NaN become 0.0."""
    if value is None:
        return 0.0
    try:
        dec = Decimal(str(value))
    except InvalidOperation:
        return 0.0
    if not dec.is_finite():
        return 0.0
    return float(dec.quantize(_ONE_DECIMAL, rounding=ROUND_HALF_UP))


def mean_rating(total, count: int) -> float:
    """Exact mean of `count` ratings summing to `total`, rounded half-up."""
    if not count:
        return 0.0
    dec = Decimal(str(total)) / Decimal(count)
    return float(dec.quantize(_ONE_DECIMAL, rounding=ROUND_HALF_UP))


@dataclass(frozen=True)
class Rollup:
    view_count: int = 0
    like_count: int = 0
    comment_count: int = 0
    average_rating: float = 0.0
    rating_count: int = 0

    @classmethod
    def from_row(cls, row) -> "Rollup":
        """Build from anything exposing the five counter attributes."""
        return cls(
            view_count=int(row.view_count or 0),
            like_count=int(row.like_count or 0),
            comment_count=int(row.comment_count or 0),
            average_rating=round_rating(row.average_rating),
            rating_count=int(row.rating_count or 0),
        )

    def to_stats(self, story_id: str, last_calculated=None) -> StoryStats:
        return StoryStats(story_id=story_id, last_calculated=last_calculated, **asdict(self))

    def as_dict(self) -> dict:
        return asdict(self)

    def differing_fields(self, other: "Rollup", tolerance: float = 0.0) -> list[str]:
        fields = [
            name
            for name in ("view_count", "like_count", "comment_count", "rating_count")
            if getattr(self, name) != getattr(other, name)
        ]
        if abs(self.average_rating - other.average_rating) > tolerance:
            fields.append("average_rating")
        return fields


def zero_stats(story_id: str) -> StoryStats:
    return Rollup().to_stats(story_id)


def parse_policy(value: Optional[str]) -> ViewCountPolicy:
    if isinstance(value, ViewCountPolicy):
        return value
    try:
        return ViewCountPolicy(value or ViewCountPolicy.COUNTER.value)
    except ValueError:
        raise ValueError(
            f"Unknown view_count_policy {value!r}; "
            f"expected one of {[p.value for p in ViewCountPolicy]}"
        ) from None
