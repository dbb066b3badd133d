"""
Reunite — Combined matcher
Runs image similarity and oracle relevance over a candidate set and merges them
into one ranked list.

Pipeline (strictly sequential, progress 0→100 per stage):
  1. image      — embedding similarity for every candidate with a photo
  2. ai         — one oracle batch call (skipped when AI matching is disabled)
  3. combining  — merge, drop candidates without any signal, keep ≥ 30, sort

combine() never raises: any stage failure is logged and yields an empty list.
"""

from __future__ import annotations

import logging
from typing import Any, Callable

from . import config
from .embedder import EmbeddingService, get_service
from .models import CombinedResult, ImageScore, Item, MatchGroup, OutcomeStatus, RelevanceResult, opposite
from .oracle import OracleClient

logger = logging.getLogger(__name__)

StageProgress = Callable[[str, int], None]

STAGE_IMAGE = "image"
STAGE_AI = "ai"
STAGE_COMBINING = "combining"

HIGH_VISUAL_REASON = "High visual similarity detected"
MODERATE_VISUAL_REASON = "Moderate visual similarity"


class _StageReporter:
    """Forwards stage progress monotonically, so each stage reaches 100 once."""

    def __init__(self, callback: StageProgress | None):
        self._callback = callback
        self._last: dict[str, int] = {}

    def __call__(self, stage: str, pct: int) -> None:
        if self._callback is None:
            return
        pct = max(0, min(100, int(pct)))
        if pct <= self._last.get(stage, -1):
            return
        self._last[stage] = pct
        try:
            self._callback(stage, pct)
        except Exception:
            logger.exception("Progress callback error (%s)", stage)


def combine_scores(image_score: int, ai_score: int) -> int | None:
    """Weighted merge of the two signals; None when neither produced a score."""
    if image_score > 0 and ai_score > 0:
        return round(ai_score * config.AI_WEIGHT + image_score * config.IMAGE_WEIGHT)
    if ai_score > 0:
        return ai_score
    if image_score > 0:
        return image_score
    return None


def _fallback_reasoning(image_score: int) -> str:
    if image_score > config.HIGH_VISUAL_SIMILARITY:
        return HIGH_VISUAL_REASON
    return MODERATE_VISUAL_REASON


def merge_results(
    target: Item,
    candidates: list[Item],
    image_scores: list[ImageScore],
    ai_results: list[RelevanceResult],
) -> list[CombinedResult]:
    """
    Merge per-candidate partial scores, keep those at or above the floor and
    sort best first. Ties keep the input candidate order.
    """
    image_map = {r.matched_item_id: r.image_score for r in image_scores}
    ai_map = {r.matched_item_id: r for r in ai_results}

    # Candidate order first, then any id only one stage knows about
    ordered: list[str] = []
    seen: set[str] = set()
    for item_id in [c.id for c in candidates] + list(image_map) + list(ai_map):
        if item_id in seen or (item_id not in image_map and item_id not in ai_map):
            continue
        seen.add(item_id)
        ordered.append(item_id)

    merged: list[CombinedResult] = []
    for item_id in ordered:
        ai_result = ai_map.get(item_id)
        image_score = image_map.get(item_id, 0)
        ai_score = ai_result.score if ai_result else 0

        combined = combine_scores(image_score, ai_score)
        if combined is None:
            continue

        merged.append(
            CombinedResult(
                item_id=target.id,
                matched_item_id=item_id,
                combined_score=combined,
                ai_score=ai_score,
                image_score=image_score,
                reasoning=(ai_result.reasoning if ai_result else "") or _fallback_reasoning(image_score),
            )
        )

    kept = [r for r in merged if r.combined_score >= config.MIN_COMBINED_SCORE]
    kept.sort(key=lambda r: r.combined_score, reverse=True)
    return kept


class Combiner:
    """
    Drives the embedding service and the oracle client for one target at a time.

    Args:
        embedder: embedding service (default: the process-wide one)
        oracle: oracle client (created on first use when AI matching is enabled)
        ai_enabled: override REUNITE_AI_MATCHING_DISABLED
    """

    def __init__(
        self,
        embedder: EmbeddingService | None = None,
        oracle: OracleClient | None = None,
        ai_enabled: bool | None = None,
    ):
        self.embedder = embedder or get_service()
        self.oracle = oracle
        self.ai_enabled = (not config.AI_MATCHING_DISABLED) if ai_enabled is None else ai_enabled
        # Only a client created here is closed here
        self._owns_oracle = False

    async def __aenter__(self) -> Combiner:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    async def close(self) -> None:
        """Closes the oracle client if this combiner created it."""
        if self._owns_oracle and self.oracle is not None:
            await self.oracle.close()
            self.oracle = None
            self._owns_oracle = False

    async def _image_stage(
        self, target: Item, candidates: list[Item], report: _StageReporter
    ) -> list[ImageScore]:
        report(STAGE_IMAGE, 0)
        scores = await self.embedder.batch_similarity(
            target,
            candidates,
            lambda done, total: report(STAGE_IMAGE, round(done / total * 100)),
        )
        report(STAGE_IMAGE, 100)
        return scores

    async def _ai_stage(
        self, target: Item, candidates: list[Item], report: _StageReporter
    ) -> list[RelevanceResult]:
        report(STAGE_AI, 0)
        results: list[RelevanceResult] = []
        if self.ai_enabled:
            if self.oracle is None:
                self.oracle = OracleClient()
                self._owns_oracle = True
            outcome = await self.oracle.batch_match_outcome(target, candidates)
            if outcome.status is OutcomeStatus.ERROR:
                logger.warning("AI matching failed (%s), using image results only", outcome.error_kind)
            elif outcome.status is OutcomeStatus.SKIPPED:
                logger.info("AI matching skipped (%s)", outcome.skip_reason)
            results = outcome.matches
        else:
            logger.debug("AI matching disabled - using image matching only")
        report(STAGE_AI, 100)
        return results

    async def combine(
        self,
        target: Item,
        candidates: list[Item],
        on_progress: StageProgress | None = None,
    ) -> list[CombinedResult]:
        """Ranked combined matches for target. Never raises."""
        if not candidates:
            return []

        report = _StageReporter(on_progress)
        try:
            image_scores = await self._image_stage(target, candidates, report)
            ai_results = await self._ai_stage(target, candidates, report)

            report(STAGE_COMBINING, 0)
            results = merge_results(target, candidates, image_scores, ai_results)
            report(STAGE_COMBINING, 100)
            return results
        except Exception:
            logger.exception("Combined matching failed for item %s", target.id)
            return []

    async def match_owner_items(
        self,
        owner_items: list[Item],
        pool: list[Item],
        on_progress: StageProgress | None = None,
    ) -> list[MatchGroup]:
        """
        Matches for each of an owner's active items against a pool of other
        users' items. Targets run one after another, so the oracle's
        single-flight guard never drops one of them.
        """
        groups: list[MatchGroup] = []
        for item in owner_items:
            if item.status != "active":
                continue
            wanted = opposite(item.type)
            candidates = [
                c for c in pool
                if c.type == wanted and c.user_id != item.user_id and c.status == "active"
            ]
            if not candidates:
                continue
            matches = await self.combine(item, candidates, on_progress)
            if matches:
                groups.append(MatchGroup(item=item, matches=matches))
        return groups
