"""
One-shot mapping from legacy story documents to the canonical counters.

Exports from the old document store carry several names for the same
quantity (`views` next to `viewCount`, `rating` next to `averageRating`) with
conflicting values. Each canonical column takes the first present, numeric,
non-null candidate in a fixed precedence order; nothing else is consulted.
"""
import math
from typing import Any, Iterable, Mapping

from storystats.stats.counters import RATING_MAX, Rollup, round_rating

# canonical name first, then camelCase, then the oldest short name
LEGACY_FIELDS: dict[str, tuple[str, ...]] = {
    "view_count": ("view_count", "viewCount", "views"),
    "like_count": ("like_count", "likeCount", "likes"),
    "comment_count": ("comment_count", "commentCount", "comments"),
    "average_rating": ("average_rating", "averageRating", "rating"),
    "rating_count": ("rating_count", "ratingCount", "ratings"),
}


def _first_number(doc: Mapping[str, Any], names: Iterable[str]):
    for name in names:
        value = doc.get(name)
        # bool is an int subclass; lists (e.g. legacy `likes: [user ids]`) are skipped
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            continue
        if isinstance(value, float) and not math.isfinite(value):
            continue
        return value
    return None


def canonicalize_legacy_counters(doc: Mapping[str, Any]) -> Rollup:
    values = {name: _first_number(doc, names) for name, names in LEGACY_FIELDS.items()}

    def count(name: str) -> int:
        value = values[name]
        return max(int(value), 0) if value is not None else 0

    rating = values["average_rating"]
    rating = min(max(float(rating), 0.0), float(RATING_MAX)) if rating is not None else 0.0
    rating_count = count("rating_count")

    return Rollup(
        view_count=count("view_count"),
        like_count=count("like_count"),
        comment_count=count("comment_count"),
        average_rating=round_rating(rating) if rating_count else 0.0,
        rating_count=rating_count,
    )


def legacy_story_id(doc: Mapping[str, Any]) -> str | None:
    for name in ("story_id", "storyId", "id", "_id"):
        value = doc.get(name)
        if value not in (None, ""):
            return str(value)
    return None
