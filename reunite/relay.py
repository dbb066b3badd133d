"""
Reunite — Relevance relay (FastAPI application)
The HTTP function the oracle client talks to. It pulls candidates from the item
store when asked to, builds the prompt and asks a chat-completions gateway for
JSON scores.

Actions (POST /functions/v1/ai-match-items):
  find_matches     {item}              — candidates come from the store
  batch_match      {targetItem, items} — candidates are given
  get_match_score  {item, targetItem}  — one pair
"""

from __future__ import annotations

import json
import logging
from contextlib import asynccontextmanager
from typing import Any

import httpx
from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from . import config, prompts
from .models import HealthResponse, Item, OracleRequest, RelevanceResult, SingleScore, opposite
from .oracle import parse_matches
from .store import InMemoryItemStore, ItemFilter, ItemStore, read_items_file

logger = logging.getLogger(__name__)


# ── Gateway ──────────────────────────────────────────────────────────────────


class GatewayError(Exception):
    """The chat-completions gateway refused or failed a request."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class LlmGateway:
    """
    Minimal OpenAI-compatible chat-completions client asking for JSON output.

    Args:
        base_url: gateway URL (default: REUNITE_LLM_URL)
        api_key: bearer key; without it the relay refuses every action
        model: model name sent with each request
        transport: custom httpx transport (tests)
    """

    def __init__(
        self,
        base_url: str = config.LLM_URL,
        api_key: str | None = config.LLM_API_KEY,
        model: str = config.LLM_MODEL,
        timeout: float = config.LLM_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.model = model
        self.timeout = timeout
        self._transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    async def complete_json(self, messages: list[dict[str, Any]]) -> str | None:
        """Return the model's message content, or None if it sent none."""
        async with httpx.AsyncClient(
            base_url=self.base_url,
            headers={"Authorization": f"Bearer {self.api_key}"},
            timeout=self.timeout,
            transport=self._transport,
        ) as client:
            r = await client.post(
                "/chat/completions",
                json={
                    "model": self.model,
                    "messages": messages,
                    "response_format": {"type": "json_object"},
                },
            )

        if not r.is_success:
            logger.error("AI API error: %d %s", r.status_code, r.text[:500])
            if r.status_code == 429:
                raise GatewayError("Rate limit exceeded. Please try again later.", 429)
            if r.status_code == 402:
                raise GatewayError("AI service requires payment. Please add credits.", 402)
            raise GatewayError(f"AI API error: {r.status_code}", r.status_code)

        try:
            choices = r.json().get("choices") or []
            return choices[0]["message"]["content"] if choices else None
        except (ValueError, KeyError, IndexError, TypeError, AttributeError):
            logger.error("Unexpected gateway response: %s", r.text[:500])
            return None


# ── Scoring ──────────────────────────────────────────────────────────────────


async def analyze_matches(gateway: LlmGateway, source: Item, candidates: list[Item]) -> list[RelevanceResult]:
    """Ask the model to score every candidate; keep scores of 40 and above."""
    logger.info("Calling AI for match analysis (%d candidates)", len(candidates))
    content = await gateway.complete_json(prompts.batch_messages(source, candidates))
    if not content:
        logger.error("No content in AI response")
        return []
    try:
        parsed = json.loads(content)
    except ValueError:
        logger.error("Error parsing AI response: %s", content[:500])
        return []
    return parse_matches(parsed, source.id, candidates)


async def single_match_score(gateway: LlmGateway, first: Item, second: Item) -> SingleScore:
    content = await gateway.complete_json(prompts.single_messages(first, second))
    try:
        parsed = json.loads(content or "")
        return SingleScore(
            score=parsed.get("score") or 0,
            reasoning=parsed.get("reasoning") or "Unable to determine match",
        )
    except (ValueError, AttributeError):
        return SingleScore(score=0, reasoning="Error analyzing match")


# ── Dependencies ─────────────────────────────────────────────────────────────

_store: ItemStore = InMemoryItemStore()
_gateway = LlmGateway()


def get_store() -> ItemStore:
    return _store


def get_gateway() -> LlmGateway:
    return _gateway


def configure(store: ItemStore | None = None, gateway: LlmGateway | None = None) -> None:
    """Swap the store or gateway used by the relay (wiring, tests)."""
    global _store, _gateway
    if store is not None:
        _store = store
    if gateway is not None:
        _gateway = gateway


# ── App ──────────────────────────────────────────────────────────────────────


@asynccontextmanager
async def lifespan(app: FastAPI):
    if config.ITEMS_FILE and isinstance(_store, InMemoryItemStore):
        added = _store.load(read_items_file(config.ITEMS_FILE))
        logger.info("Loaded %d items from %s", added, config.ITEMS_FILE)
    if not _gateway.configured:
        logger.warning("LLM API key is not configured; every relay action will fail")
    yield


app = FastAPI(
    title="Reunite relay",
    description="Relevance scoring for lost and found item matching.",
    version=config.VERSION,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["POST", "GET", "OPTIONS"],
    allow_headers=["authorization", "x-client-info", "apikey", "content-type"],
)


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


# No stack trace exposed to the client
@app.exception_handler(Exception)
async def _global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error("Unhandled error: %s", exc, exc_info=True)
    return _error(500, "Internal server error")


@app.get("/health", response_model=HealthResponse)
def health() -> HealthResponse:
    return HealthResponse(version=config.VERSION)


@app.post(config.ORACLE_PATH)
async def ai_match_items(
    request: Request,
    store: ItemStore = Depends(get_store),
    gateway: LlmGateway = Depends(get_gateway),
) -> Any:
    if not gateway.configured:
        return _error(500, "LLM API key is not configured")

    try:
        req = OracleRequest.model_validate(await request.json())
    except (ValueError, ValidationError) as exc:
        logger.warning("Rejected relay request: %s", exc)
        return _error(400, "Invalid request")

    try:
        if req.action == "find_matches" and req.item:
            candidates = store.list_active_items(
                ItemFilter(
                    type=opposite(req.item.type),
                    status="active",
                    exclude_user_id=req.item.user_id,
                    limit=config.FIND_MATCHES_LIMIT,
                )
            )
            if not candidates:
                return {"matches": []}
            matches = await analyze_matches(gateway, req.item, candidates)
            return {"matches": [m.to_wire() for m in matches]}

        if req.action == "batch_match" and req.target_item and req.items is not None:
            matches = await analyze_matches(gateway, req.target_item, req.items)
            return {"matches": [m.to_wire() for m in matches]}

        if req.action == "get_match_score" and req.item and req.target_item:
            verdict = await single_match_score(gateway, req.item, req.target_item)
            return verdict.model_dump()
    except (GatewayError, httpx.HTTPError) as exc:
        logger.error("Error in ai-match-items: %s", exc)
        return _error(500, str(exc) or "Unknown error")

    return _error(400, "Invalid action")
