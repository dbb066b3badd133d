"""
Reunite — Pydantic models
Item records, per-signal results and the relay wire schemas.
"""

from __future__ import annotations

import datetime as dt
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

Polarity = Literal["lost", "found"]


def opposite(polarity: str) -> Polarity:
    """Lost items are matched against found items and vice versa."""
    return "found" if polarity == "lost" else "lost"


def _round_score(v: Any) -> Any:
    # Models sometimes answer 72.5 instead of 72
    if isinstance(v, float):
        return round(v)
    return v


class Item(BaseModel):
    """An item report. Owned by the data store, read-only for the engine."""

    model_config = ConfigDict(
        frozen=True,
        json_schema_extra={
            "examples": [
                {
                    "id": "9c1f0e9a-1b7c-4d3e-a0a5-5b8f2f3c1d11",
                    "title": "Black leather wallet",
                    "description": "Slim wallet with a university ID inside",
                    "category": "Wallets",
                    "location": "Main Library, 2nd floor",
                    "date": "2024-01-10",
                    "type": "lost",
                    "image_url": "https://cdn.example.org/items/wallet.jpg",
                    "user_id": "u-123",
                }
            ]
        },
    )

    id: str = Field(..., min_length=1)
    title: str = ""
    description: str = ""
    category: str = ""
    location: str = ""
    date: dt.date
    type: Polarity
    image_url: str | None = None
    user_id: str = Field(..., min_length=1)
    status: str = "active"

    @field_validator("date", mode="before")
    @classmethod
    def date_only(cls, v: Any) -> Any:
        # Store timestamps carry a time part; only the calendar day matters
        if isinstance(v, str) and len(v) > 10 and v[10] in ("T", " "):
            return v[:10]
        return v

    @field_validator("image_url", mode="before")
    @classmethod
    def blank_image_is_none(cls, v: Any) -> Any:
        if isinstance(v, str) and not v.strip():
            return None
        return v

    @field_validator("title", "description", "category", "location", mode="before")
    @classmethod
    def none_is_empty(cls, v: Any) -> Any:
        return "" if v is None else v


class _WireModel(BaseModel):
    """Snake case in Python, camelCase on the wire (itemId, matchedItemId...)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class MatchResult(_WireModel):
    """Heuristic score between two items."""

    item_id: str
    matched_item_id: str
    score: int = Field(..., ge=0, le=100)


class ImageScore(_WireModel):
    """Image-embedding similarity for one candidate."""

    item_id: str
    matched_item_id: str
    image_score: int = Field(..., ge=0, le=100)


class RelevanceResult(_WireModel):
    """Oracle relevance score for one candidate."""

    item_id: str
    matched_item_id: str
    score: int = Field(..., ge=0, le=100)
    reasoning: str = ""

    @field_validator("score", mode="before")
    @classmethod
    def coerce_score(cls, v: Any) -> Any:
        return _round_score(v)


class SingleScore(BaseModel):
    """Pairwise oracle verdict."""

    score: int = Field(0, ge=0, le=100)
    reasoning: str = ""

    @field_validator("score", mode="before")
    @classmethod
    def coerce_score(cls, v: Any) -> Any:
        return _round_score(v)


class CombinedResult(_WireModel):
    item_id: str
    matched_item_id: str
    combined_score: int = Field(..., ge=0, le=100)
    ai_score: int = 0
    image_score: int = 0
    reasoning: str = ""


class MatchGroup(BaseModel):
    """All surfaced matches for one of an owner's items."""

    item: Item
    matches: list[CombinedResult]


# ── Relay wire schemas ───────────────────────────────────────────────────────


class OracleRequest(_WireModel):
    action: str
    item: Item | None = None
    items: list[Item] | None = None
    target_item: Item | None = None


class OracleMatch(_WireModel):
    """One entry of a `matches` array: by candidate index or by id."""

    index: int | None = None
    matched_item_id: str | None = None
    score: int = Field(..., ge=0, le=100)
    reasoning: str = ""

    @field_validator("score", mode="before")
    @classmethod
    def coerce_score(cls, v: Any) -> Any:
        return _round_score(v)


class HealthResponse(BaseModel):
    status: str = "ok"
    version: str


# ── Call outcomes ────────────────────────────────────────────────────────────


class OutcomeStatus(str, Enum):
    OK = "ok"
    EMPTY = "empty"
    SKIPPED = "skipped"
    ERROR = "error"


class ErrorKind(str, Enum):
    RATE_LIMIT = "rate_limit"
    PAYMENT = "payment"
    HTTP = "http"
    TRANSPORT = "transport"
    RESPONSE = "response"


class SkipReason(str, Enum):
    BREAKER_OPEN = "breaker_open"
    IN_FLIGHT = "in_flight"
    NO_CANDIDATES = "no_candidates"
