"""
Reunite — Relevance Oracle Client
Asks the remote relevance relay (a large model behind an HTTP function) how well
candidate items match a target item.

Every call goes through the process-wide OracleGuard:
  - breaker: after any failure, calls are skipped for 2 minutes without I/O
  - single-flight: overlapping batch_match calls return empty instead of queuing
  - notice: only the first failure of a session is shown to the user

Public operations never raise; failures degrade to empty results or None.

Usage:
    async with OracleClient() as oracle:
        matches = await oracle.batch_match(target, candidates)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Mapping

import httpx
from pydantic import ValidationError

from . import config, events
from .guard import OracleGuard, get_guard
from .models import (
    ErrorKind,
    Item,
    OracleMatch,
    OutcomeStatus,
    RelevanceResult,
    SingleScore,
    SkipReason,
)

logger = logging.getLogger(__name__)

UNAVAILABLE_NOTICE = {
    "title": "AI matching unavailable",
    "description": "Using ML image matching only. AI will retry in 2 minutes.",
}

# ── Exceptions ───────────────────────────────────────────────────────────────


class OracleError(Exception):
    """Base error class for oracle calls."""

    kind = ErrorKind.HTTP

    def __init__(self, message: str, status_code: int | None = None, detail: Any = None):
        super().__init__(message)
        self.status_code = status_code
        self.detail = detail


class OracleRateLimitError(OracleError):
    """Rate limit exceeded (429)."""

    kind = ErrorKind.RATE_LIMIT


class OraclePaymentError(OracleError):
    """Out of credits (402)."""

    kind = ErrorKind.PAYMENT


class OracleServerError(OracleError):
    """Server-side error (5xx)."""


class OracleResponseError(OracleError):
    """A 2xx response carrying an error payload."""

    kind = ErrorKind.RESPONSE


# ── Helpers ──────────────────────────────────────────────────────────────────


def _raise_for_status(response: httpx.Response) -> None:
    """Converts HTTP errors into typed oracle exceptions."""
    if response.is_success:
        return

    status = response.status_code
    try:
        body = response.json()
        detail = body.get("error", body) if isinstance(body, dict) else body
    except Exception:
        detail = response.text

    if status == 429:
        raise OracleRateLimitError("Rate limit exceeded", status, detail)
    if status == 402:
        raise OraclePaymentError("Payment required", status, detail)
    if status >= 500:
        raise OracleServerError("Server error", status, detail)

    raise OracleError(f"HTTP {status}", status, detail)


def _build_headers(api_key: str | None) -> dict[str, str]:
    """Builds the common request headers."""
    headers: dict[str, str] = {"Content-Type": "application/json"}
    if api_key:
        headers["Authorization"] = f"Bearer {api_key}"
    return headers


def parse_matches(
    payload: Any,
    source_id: str,
    candidates: list[Item] | None = None,
) -> list[RelevanceResult]:
    """
    Turn a `{matches: [...]}` payload into results for source_id.
    Entries refer to candidates by index or by id; unknown references, scores
    below the oracle floor and malformed entries are dropped. A candidate listed
    twice keeps its highest score.
    """
    raw = payload.get("matches") if isinstance(payload, dict) else None
    if not isinstance(raw, list):
        return []

    best: dict[str, RelevanceResult] = {}
    for entry in raw:
        try:
            match = OracleMatch.model_validate(entry)
        except ValidationError:
            logger.warning("Dropping malformed oracle match: %r", entry)
            continue
        matched_id = match.matched_item_id
        if matched_id is None and match.index is not None and candidates is not None:
            if 0 <= match.index < len(candidates):
                matched_id = candidates[match.index].id
        if not matched_id or match.score < config.ORACLE_MIN_SCORE:
            continue
        previous = best.get(matched_id)
        if previous is None or match.score > previous.score:
            best[matched_id] = RelevanceResult(
                item_id=source_id,
                matched_item_id=matched_id,
                score=match.score,
                reasoning=match.reasoning,
            )
    return list(best.values())


@dataclass
class OracleOutcome:
    """What actually happened on one oracle call."""

    status: OutcomeStatus
    matches: list[RelevanceResult] = field(default_factory=list)
    score: SingleScore | None = None
    error_kind: ErrorKind | None = None
    skip_reason: SkipReason | None = None

    @classmethod
    def skipped(cls, reason: SkipReason) -> OracleOutcome:
        return cls(OutcomeStatus.SKIPPED, skip_reason=reason)

    @classmethod
    def failed(cls, kind: ErrorKind) -> OracleOutcome:
        return cls(OutcomeStatus.ERROR, error_kind=kind)


# ── Client ───────────────────────────────────────────────────────────────────


class OracleClient:
    """
    Asynchronous client for the relevance relay.

    Args:
        base_url: relay URL (default: REUNITE_ORACLE_URL)
        api_key: bearer key for the relay (optional)
        timeout: request timeout in seconds
        guard: breaker/single-flight state (default: the process-wide guard)
        transport: custom httpx transport (tests, ASGI in-process)
    """

    def __init__(
        self,
        base_url: str = config.ORACLE_URL,
        api_key: str | None = config.ORACLE_KEY,
        timeout: float = config.ORACLE_TIMEOUT,
        guard: OracleGuard | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        path: str = config.ORACLE_PATH,
    ):
        self.base_url = base_url.rstrip("/")
        self.path = path
        self.guard = guard or get_guard()
        self._scores: dict[str, RelevanceResult] = {}
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers=_build_headers(api_key),
            timeout=timeout,
            transport=transport,
        )

    async def __aenter__(self) -> OracleClient:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    async def close(self) -> None:
        """Closes the HTTP client."""
        await self._client.aclose()

    # ── Session score map ────────────────────────────────────────────────

    @property
    def match_scores(self) -> Mapping[str, RelevanceResult]:
        return MappingProxyType(self._scores)

    def get_stored_match(self, item_id: str) -> RelevanceResult | None:
        return self._scores.get(item_id)

    def clear_matches(self) -> None:
        self._scores.clear()

    def _remember(self, matches: list[RelevanceResult]) -> None:
        for m in matches:
            self._scores[m.matched_item_id] = m

    # ── Transport ────────────────────────────────────────────────────────

    async def _invoke(self, body: dict[str, Any]) -> Any:
        """POST one action. Raises OracleError or httpx.HTTPError."""
        r = await self._client.post(self.path, json=body)
        _raise_for_status(r)
        try:
            data = r.json()
        except ValueError as exc:
            raise OracleResponseError("Response is not JSON", r.status_code, r.text) from exc
        if isinstance(data, dict) and data.get("error"):
            raise OracleResponseError("Oracle returned an error", r.status_code, data["error"])
        return data

    def _on_failure(self, action: str, exc: Exception) -> OracleOutcome:
        kind = exc.kind if isinstance(exc, OracleError) else ErrorKind.TRANSPORT
        if kind is ErrorKind.RATE_LIMIT:
            logger.warning("Oracle %s rate limited: %s", action, getattr(exc, "detail", exc))
        elif kind is ErrorKind.PAYMENT:
            logger.warning("Oracle %s needs credits: %s", action, getattr(exc, "detail", exc))
        else:
            logger.error("Oracle %s failed (%s): %s", action, kind.value, exc)

        self.guard.record_failure()
        if self.guard.should_notify():
            events.emit(events.ORACLE_UNAVAILABLE, {**UNAVAILABLE_NOTICE, "kind": kind.value})
        return OracleOutcome.failed(kind)

    async def _call(self, action: str, body: dict[str, Any]) -> tuple[Any, OracleOutcome | None]:
        """Run one call through the breaker. Returns (data, None) or (None, failure outcome)."""
        if self.guard.is_open():
            logger.info("Skipping oracle %s - rate limited", action)
            return None, OracleOutcome.skipped(SkipReason.BREAKER_OPEN)
        try:
            data = await self._invoke(body)
        except (OracleError, httpx.HTTPError) as exc:
            return None, self._on_failure(action, exc)
        self.guard.record_success()
        return data, None

    def _matches_outcome(
        self, data: Any, source_id: str, candidates: list[Item] | None
    ) -> OracleOutcome:
        if not isinstance(data, dict) or not isinstance(data.get("matches", []), list):
            logger.warning("Malformed oracle response, treating as no matches")
            return OracleOutcome(OutcomeStatus.EMPTY, error_kind=ErrorKind.RESPONSE)
        matches = parse_matches(data, source_id, candidates)
        self._remember(matches)
        status = OutcomeStatus.OK if matches else OutcomeStatus.EMPTY
        return OracleOutcome(status, matches=matches)

    # ── Operations ───────────────────────────────────────────────────────

    async def find_matches_outcome(self, item: Item) -> OracleOutcome:
        body = {"action": "find_matches", "item": item.model_dump(mode="json")}
        data, failure = await self._call("find_matches", body)
        if failure is not None:
            return failure
        outcome = self._matches_outcome(data, item.id, None)
        if outcome.matches:
            count = len(outcome.matches)
            events.emit(
                events.ORACLE_MATCHES_FOUND,
                {
                    "item_id": item.id,
                    "count": count,
                    "title": "Potential Matches Found!",
                    "description": f"AI found {count} potential match{'es' if count > 1 else ''} for your item.",
                },
            )
        return outcome

    async def find_matches(self, item: Item) -> list[RelevanceResult]:
        """Let the relay pick candidates from the store and score them."""
        return (await self.find_matches_outcome(item)).matches

    async def batch_match_outcome(self, target: Item, candidates: list[Item]) -> OracleOutcome:
        if not candidates:
            return OracleOutcome.skipped(SkipReason.NO_CANDIDATES)
        if self.guard.is_open():
            logger.info("Skipping oracle batch_match - rate limited, using image matching only")
            return OracleOutcome.skipped(SkipReason.BREAKER_OPEN)

        with self.guard.flight() as acquired:
            if not acquired:
                logger.info("Skipping oracle batch_match - request already in flight")
                return OracleOutcome.skipped(SkipReason.IN_FLIGHT)
            body = {
                "action": "batch_match",
                "targetItem": target.model_dump(mode="json"),
                "items": [c.model_dump(mode="json") for c in candidates],
            }
            data, failure = await self._call("batch_match", body)
            if failure is not None:
                return failure
            return self._matches_outcome(data, target.id, candidates)

    async def batch_match(self, target: Item, candidates: list[Item]) -> list[RelevanceResult]:
        """Score all candidates against the target in one oracle call."""
        return (await self.batch_match_outcome(target, candidates)).matches

    async def single_score_outcome(self, first: Item, second: Item) -> OracleOutcome:
        body = {
            "action": "get_match_score",
            "item": first.model_dump(mode="json"),
            "targetItem": second.model_dump(mode="json"),
        }
        data, failure = await self._call("get_match_score", body)
        if failure is not None:
            return failure
        try:
            verdict = SingleScore.model_validate(data)
        except ValidationError:
            logger.warning("Malformed oracle score: %r", data)
            return OracleOutcome(OutcomeStatus.EMPTY, error_kind=ErrorKind.RESPONSE)
        return OracleOutcome(OutcomeStatus.OK, score=verdict)

    async def single_score(self, first: Item, second: Item) -> SingleScore | None:
        """Pairwise score, or None on any failure."""
        return (await self.single_score_outcome(first, second)).score
