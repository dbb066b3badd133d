# Reunite package

from .combiner import Combiner, combine_scores, merge_results
from .config import VERSION as __version__
from .embedder import EmbeddingError, EmbeddingService, ModelLoadError, ModelState
from .guard import OracleGuard
from .models import CombinedResult, ImageScore, Item, MatchResult, RelevanceResult, SingleScore
from .oracle import (
    OracleClient,
    OracleError,
    OraclePaymentError,
    OracleRateLimitError,
    OracleResponseError,
    OracleServerError,
)

__all__ = [
    "__version__",
    "Item",
    "MatchResult",
    "ImageScore",
    "RelevanceResult",
    "SingleScore",
    "CombinedResult",
    "Combiner",
    "combine_scores",
    "merge_results",
    "EmbeddingService",
    "EmbeddingError",
    "ModelLoadError",
    "ModelState",
    "OracleClient",
    "OracleGuard",
    "OracleError",
    "OracleRateLimitError",
    "OraclePaymentError",
    "OracleServerError",
    "OracleResponseError",
]
