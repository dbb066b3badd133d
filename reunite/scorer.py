"""
Reunite — Heuristic Scorer
Calculates a 0–100 lost/found similarity locally, without any model or API call.

Scoring factors (weights sum to 100):
  1. Category      — exact, case-insensitive match: 40 or nothing
  2. Location      — 10 per shared token, up to 30
  3. Date          — 15 on the same day, 2 less per day apart, nothing after a week
  4. Title/desc    — 3 per shared word longer than 3 chars, up to 15
"""

from __future__ import annotations

import re

from .models import Item, MatchResult

CATEGORY_WEIGHT = 40

LOCATION_PER_TOKEN = 10
LOCATION_CAP = 30

DATE_MAX = 15
DATE_DECAY_PER_DAY = 2
DATE_WINDOW_DAYS = 7

TEXT_PER_TOKEN = 3
TEXT_CAP = 15
TEXT_MIN_TOKEN_LEN = 4

# Callers surface candidates at or above this; score() itself never filters
SURFACE_THRESHOLD = 40

_LOCATION_SPLIT = re.compile(r"[\s,]+")


def _location_tokens(location: str) -> set[str]:
    return {t for t in _LOCATION_SPLIT.split(location.lower()) if t}


def _text_tokens(text: str) -> set[str]:
    return {t for t in text.lower().split() if len(t) >= TEXT_MIN_TOKEN_LEN}


def category_score(a: Item, b: Item) -> int:
    if a.category and a.category.lower() == b.category.lower():
        return CATEGORY_WEIGHT
    return 0


def location_score(a: Item, b: Item) -> int:
    shared = _location_tokens(a.location) & _location_tokens(b.location)
    return min(LOCATION_CAP, len(shared) * LOCATION_PER_TOKEN)


def date_score(a: Item, b: Item) -> int:
    days = abs((a.date - b.date).days)
    if days > DATE_WINDOW_DAYS:
        return 0
    return max(0, DATE_MAX - days * DATE_DECAY_PER_DAY)


def text_score(a: Item, b: Item) -> int:
    title_overlap = len(_text_tokens(a.title) & _text_tokens(b.title))
    desc_overlap = len(_text_tokens(a.description) & _text_tokens(b.description))
    return min(TEXT_CAP, (title_overlap + desc_overlap) * TEXT_PER_TOKEN)


def score(a: Item, b: Item) -> int:
    """
    Return the heuristic similarity of two items (0–100).
    Symmetric and deterministic; no threshold is applied here.
    """
    return category_score(a, b) + location_score(a, b) + date_score(a, b) + text_score(a, b)


def match(source: Item, candidate: Item) -> MatchResult:
    return MatchResult(item_id=source.id, matched_item_id=candidate.id, score=score(source, candidate))


def rank(source: Item, candidates: list[Item]) -> list[MatchResult]:
    """Heuristic results for every candidate, best first (ties keep input order)."""
    results = [match(source, c) for c in candidates]
    results.sort(key=lambda r: r.score, reverse=True)
    return results


def is_worth_surfacing(value: int) -> bool:
    return value >= SURFACE_THRESHOLD


def score_tier(value: int) -> str:
    """Badge tier for a 0–100 score: high, medium, low or weak."""
    if value >= 80:
        return "high"
    if value >= 60:
        return "medium"
    if value >= 40:
        return "low"
    return "weak"
