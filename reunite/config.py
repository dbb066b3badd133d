"""
Reunite — Centralized configuration
All environment variables and constants in a single place.
"""

import os

# ── Relevance oracle (client side) ────────────────────────────────────────────

ORACLE_URL = os.getenv("REUNITE_ORACLE_URL", "http://127.0.0.1:8766")
ORACLE_PATH = os.getenv("REUNITE_ORACLE_PATH", "/functions/v1/ai-match-items")
ORACLE_KEY = os.getenv("REUNITE_ORACLE_KEY") or None
ORACLE_TIMEOUT = float(os.getenv("REUNITE_ORACLE_TIMEOUT", "30"))

# Breaker window after any oracle failure (2 minutes)
BREAKER_WINDOW_MS = 120_000

# The oracle only reports, and the client only accepts, scores at or above this
ORACLE_MIN_SCORE = 40

# ── Combiner ──────────────────────────────────────────────────────────────────

AI_MATCHING_DISABLED = os.getenv("REUNITE_AI_MATCHING_DISABLED", "1") == "1"

AI_WEIGHT = 0.6
IMAGE_WEIGHT = 0.4
MIN_COMBINED_SCORE = 30
HIGH_VISUAL_SIMILARITY = 60

# ── Embedder ──────────────────────────────────────────────────────────────────

EMBED_MODEL = os.getenv("REUNITE_EMBED_MODEL", "clip-ViT-B-32")
IMAGE_TIMEOUT = float(os.getenv("REUNITE_IMAGE_TIMEOUT", "15"))

# Image references with these prefixes are bundled placeholders, never embedded
PLACEHOLDER_PREFIXES = ("/", "src/")

# ── Relay (oracle server side) ────────────────────────────────────────────────

LLM_URL = os.getenv("REUNITE_LLM_URL", "https://ai.gateway.lovable.dev/v1")
LLM_MODEL = os.getenv("REUNITE_LLM_MODEL", "google/gemini-2.5-flash")
LLM_API_KEY = os.getenv("REUNITE_LLM_API_KEY") or None
LLM_TIMEOUT = float(os.getenv("REUNITE_LLM_TIMEOUT", "60"))

# JSON file of item records loaded into the relay store at startup
ITEMS_FILE = os.getenv("REUNITE_ITEMS_FILE") or None

FIND_MATCHES_LIMIT = 20
MAX_PROMPT_IMAGES = 5

HOST = os.getenv("REUNITE_HOST", "127.0.0.1")
PORT = int(os.getenv("REUNITE_PORT", "8766"))

# ── Version ───────────────────────────────────────────────────────────────────

VERSION = "0.3.0"
