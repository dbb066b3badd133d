"""
Reunite — Image Embedder
Lazy-loaded CLIP image embeddings with a per-session cache.
Default: clip-ViT-B-32 via sentence-transformers (512 dim, normalized).

The model is loaded once per process on the first request; concurrent callers
share a single load. Progress is reported 0–100 and READY is terminal.
"""

from __future__ import annotations

import asyncio
import base64
import io
import logging
from dataclasses import dataclass
from enum import Enum
from functools import lru_cache
from typing import TYPE_CHECKING, Any, Callable, Protocol, Sequence

import httpx
import numpy as np

from . import config, events
from .models import ImageScore, Item, OutcomeStatus

if TYPE_CHECKING:
    from PIL.Image import Image

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int], None]
BatchProgress = Callable[[int, int], None]


class EmbeddingError(Exception):
    """An image could not be embedded."""

    def __init__(self, message: str, image_ref: str | None = None):
        super().__init__(message)
        self.image_ref = image_ref


class ModelLoadError(EmbeddingError):
    """The vision model failed to load."""


class ModelState(str, Enum):
    UNLOADED = "unloaded"
    LOADING = "loading"
    READY = "ready"


class VisionRuntime(Protocol):
    """What the embedder needs from an inference runtime."""

    def load(self, progress: ProgressCallback) -> Any: ...

    def infer(self, handle: Any, image_ref: str) -> Sequence[float]: ...


def is_placeholder(image_ref: str | None) -> bool:
    """Missing references and bundled assets are never sent to the model."""
    if not image_ref:
        return True
    return image_ref.startswith(config.PLACEHOLDER_PREFIXES)


# ── Vector math ──────────────────────────────────────────────────────────────


def _as_vectors(a: Sequence[float], b: Sequence[float]) -> tuple[np.ndarray, np.ndarray] | None:
    """Both vectors as float64 arrays, or None if there is no usable signal."""
    if len(a) == 0 or len(a) != len(b):
        return None
    u = np.asarray(a, dtype=np.float64)
    v = np.asarray(b, dtype=np.float64)
    if not np.any(u) or not np.any(v):
        return None
    return u, v


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity in [-1, 1]. A zero vector scores 0.0, never NaN."""
    pair = _as_vectors(a, b)
    if pair is None:
        return 0.0
    u, v = pair
    cos = float(np.dot(u, v) / (np.linalg.norm(u) * np.linalg.norm(v)))
    return max(-1.0, min(1.0, cos))


def similarity(a: Sequence[float], b: Sequence[float]) -> int:
    """
    Map cosine similarity from [-1, 1] to a 0–100 percentage.
    Degenerate input (zero vector, length mismatch) carries no signal and scores 0.
    """
    if _as_vectors(a, b) is None:
        return 0
    return round((cosine_similarity(a, b) + 1.0) / 2.0 * 100)


# ── Default runtime: sentence-transformers CLIP ──────────────────────────────


def _open_image(image_ref: str, timeout: float) -> Image:
    from PIL import Image as PILImage

    if image_ref.startswith("data:"):
        _, _, payload = image_ref.partition(",")
        raw = base64.b64decode(payload)
    else:
        response = httpx.get(image_ref, timeout=timeout, follow_redirects=True)
        response.raise_for_status()
        raw = response.content
    return PILImage.open(io.BytesIO(raw)).convert("RGB")


class ClipRuntime:
    """Runs a sentence-transformers CLIP model on downloaded images."""

    def __init__(self, model_name: str = config.EMBED_MODEL, timeout: float = config.IMAGE_TIMEOUT):
        self.model_name = model_name
        self.timeout = timeout

    def load(self, progress: ProgressCallback) -> Any:
        from sentence_transformers import SentenceTransformer

        progress(0)
        model = SentenceTransformer(self.model_name)
        logger.info(
            "Loaded model %s (dim=%s)",
            self.model_name,
            model.get_sentence_embedding_dimension(),
        )
        return model

    def infer(self, handle: Any, image_ref: str) -> Sequence[float]:
        image = _open_image(image_ref, self.timeout)
        vector = handle.encode(image, normalize_embeddings=True)
        return vector.tolist()


# ── Service ──────────────────────────────────────────────────────────────────


@dataclass
class EmbedOutcome:
    status: OutcomeStatus
    vector: list[float] | None = None
    error: EmbeddingError | None = None


class EmbeddingService:
    """
    Owns the model lifecycle and the embedding cache.

    Args:
        runtime: inference runtime (default: CLIP through sentence-transformers)
    """

    def __init__(self, runtime: VisionRuntime | None = None):
        self._runtime = runtime or ClipRuntime()
        self._state = ModelState.UNLOADED
        self._handle: Any = None
        self._loading: asyncio.Task | None = None
        self._progress = 0
        self._reported = False
        self._on_progress: ProgressCallback | None = None
        self._cache: dict[str, list[float]] = {}
        self._inflight: dict[str, asyncio.Task] = {}

    # ── Readiness ────────────────────────────────────────────────────────

    @property
    def state(self) -> ModelState:
        return self._state

    @property
    def is_ready(self) -> bool:
        return self._state is ModelState.READY

    @property
    def is_loading(self) -> bool:
        return self._state is ModelState.LOADING

    @property
    def progress(self) -> int:
        return self._progress

    def set_progress_callback(self, callback: ProgressCallback | None) -> None:
        self._on_progress = callback

    def _report(self, pct: int, final: bool = False) -> None:
        pct = max(0, min(100, int(pct)))
        # Only the service itself declares 100; runtime values stay below it
        if not final and pct >= 100:
            pct = 99
        if self._reported and (pct < self._progress or (pct == self._progress and not final)):
            return
        self._progress = pct
        self._reported = True
        if self._on_progress is not None:
            try:
                self._on_progress(pct)
            except Exception:
                logger.exception("Progress callback error")
        events.emit(events.MODEL_PROGRESS, {"progress": pct})

    async def _load(self) -> Any:
        loop = asyncio.get_running_loop()

        def from_worker(pct: int) -> None:
            loop.call_soon_threadsafe(self._report, pct)

        logger.info("Loading vision model")
        try:
            handle = await asyncio.to_thread(self._runtime.load, from_worker)
        except Exception as exc:
            logger.error("Vision model failed to load: %s", exc)
            self._state = ModelState.UNLOADED
            self._progress = 0
            self._reported = False
            self._loading = None
            raise ModelLoadError(f"Model load failed: {exc}") from exc
        self._handle = handle
        self._state = ModelState.READY
        self._report(100, final=True)
        events.emit(events.MODEL_READY, {})
        return handle

    async def ensure_loaded(self) -> Any:
        """Load the model if needed. Concurrent callers await the same load."""
        if self._state is ModelState.READY:
            return self._handle
        if self._loading is None:
            self._state = ModelState.LOADING
            self._loading = asyncio.ensure_future(self._load())
        return await self._loading

    # ── Embeddings ───────────────────────────────────────────────────────

    async def embed(self, image_ref: str | None) -> list[float] | None:
        """
        Return the embedding for an image reference, or None for placeholders.
        Raises ModelLoadError if the model cannot load, EmbeddingError if inference fails.
        """
        if is_placeholder(image_ref):
            return None
        cached = self._cache.get(image_ref)
        if cached is not None:
            return cached

        # Concurrent callers for the same reference share one inference
        pending = self._inflight.get(image_ref)
        if pending is None:
            pending = asyncio.ensure_future(self._compute(image_ref))
            self._inflight[image_ref] = pending
        return await pending

    async def _compute(self, image_ref: str) -> list[float]:
        try:
            handle = await self.ensure_loaded()
            try:
                raw = await asyncio.to_thread(self._runtime.infer, handle, image_ref)
            except Exception as exc:
                raise EmbeddingError(f"Embedding failed: {exc}", image_ref) from exc

            vector = [float(x) for x in raw]
            self._cache[image_ref] = vector
            return vector
        finally:
            self._inflight.pop(image_ref, None)

    async def try_embed(self, image_ref: str | None) -> EmbedOutcome:
        """Like embed(), but every failure is reported as an outcome instead of raised."""
        try:
            vector = await self.embed(image_ref)
        except EmbeddingError as exc:
            logger.warning("Skipping image %s: %s", image_ref, exc)
            return EmbedOutcome(OutcomeStatus.ERROR, error=exc)
        if vector is None:
            return EmbedOutcome(OutcomeStatus.EMPTY)
        return EmbedOutcome(OutcomeStatus.OK, vector=vector)

    def clear_cache(self) -> None:
        self._cache.clear()

    def cached(self, image_ref: str) -> list[float] | None:
        return self._cache.get(image_ref)

    # ── Similarity ───────────────────────────────────────────────────────

    async def compute_similarity(self, source: Item, candidate: Item) -> int:
        """Image similarity for one pair (0 when either side has no usable image)."""
        if not source.image_url or not candidate.image_url:
            return 0
        first = await self.try_embed(source.image_url)
        if first.vector is None:
            return 0
        second = await self.try_embed(candidate.image_url)
        if second.vector is None:
            return 0
        return similarity(first.vector, second.vector)

    async def batch_similarity(
        self,
        source: Item,
        candidates: list[Item],
        on_progress: BatchProgress | None = None,
    ) -> list[ImageScore]:
        """
        Score every candidate image against the source image, best first.
        Candidates without a usable image are omitted, not scored 0.
        """
        if not source.image_url:
            return []
        source_outcome = await self.try_embed(source.image_url)
        if source_outcome.vector is None:
            return []

        results: list[ImageScore] = []
        total = len(candidates)
        for done, candidate in enumerate(candidates, 1):
            if candidate.image_url:
                outcome = await self.try_embed(candidate.image_url)
                if outcome.vector is not None:
                    results.append(
                        ImageScore(
                            item_id=source.id,
                            matched_item_id=candidate.id,
                            image_score=similarity(source_outcome.vector, outcome.vector),
                        )
                    )
            if on_progress is not None:
                on_progress(done, total)

        results.sort(key=lambda r: r.image_score, reverse=True)
        return results


@lru_cache(maxsize=1)
def get_service() -> EmbeddingService:
    """The process-wide embedding service."""
    return EmbeddingService()
