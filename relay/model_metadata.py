"""Model metadata, context windows, compression policy and token estimation.

Pure utility functions with no Agent dependency. Used by the prompt
assembler for its token breakdown, by the conversation-history layer to
decide when to compress, and by the artifact retrieval tool to block
oversized artifacts.
"""

import logging
import os
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import requests

from relay_constants import MODEL_METADATA_URL_ENV

logger = logging.getLogger(__name__)

_model_metadata_cache: Dict[str, Dict[str, Any]] = {}
_model_metadata_cache_time: float = 0
_MODEL_CACHE_TTL = 3600

# Fallback context window for models we know nothing about.
FALLBACK_CONTEXT_WINDOW = 120000

# Defaults used when the model's context window is unknown and no
# AGENTS_COMPRESSION_* override is set.
DEFAULT_HARD_LIMIT = 120000
DEFAULT_SAFETY_BUFFER = 20000

# Keyed by the bare model id (provider prefix stripped).
DEFAULT_CONTEXT_WINDOWS = {
    "claude-3-opus": 200000,
    "claude-3-5-sonnet": 200000,
    "claude-3-7-sonnet": 200000,
    "claude-sonnet-4": 200000,
    "claude-sonnet-4-5": 200000,
    "claude-opus-4": 200000,
    "claude-opus-4-1": 200000,
    "claude-haiku-4-5": 200000,
    "gpt-4o": 128000,
    "gpt-4o-mini": 128000,
    "gpt-4-turbo": 128000,
    "gpt-4.1": 1047576,
    "gpt-4.1-mini": 1047576,
    "gpt-5": 400000,
    "gpt-5-mini": 400000,
    "o3": 200000,
    "o4-mini": 200000,
    "gemini-2.0-flash": 1048576,
    "gemini-2.5-pro": 1048576,
    "gemini-2.5-flash": 1048576,
    "llama-3.3-70b-instruct": 131072,
    "deepseek-chat-v3": 65536,
    "qwen-2.5-72b-instruct": 32768,
    "small-model": 50000,
}


@dataclass(frozen=True)
class ModelContextInfo:
    model_id: str
    context_window: int
    has_valid_context_window: bool
    source: str  # "built-in" | "metadata-api" | "fallback"


@dataclass(frozen=True)
class CompressionConfig:
    hard_limit: int
    safety_buffer: int
    enabled: bool
    source: str  # "model-specific" | "environment" | "default"
    model_context_info: ModelContextInfo

    @property
    def trigger_point(self) -> int:
        """Token count at which history compression kicks in."""
        return self.hard_limit - self.safety_buffer


def fetch_model_metadata(force_refresh: bool = False) -> Dict[str, Dict[str, Any]]:
    """Fetch model metadata from ``RELAY_MODEL_METADATA_URL`` (cached for 1 hour).

    The endpoint is expected to return an OpenRouter-style ``{"data": [...]}``
    listing. Returns an empty dict when the variable is unset.
    """
    global _model_metadata_cache, _model_metadata_cache_time

    url = os.getenv(MODEL_METADATA_URL_ENV)
    if not url:
        return {}

    if not force_refresh and _model_metadata_cache and (time.time() - _model_metadata_cache_time) < _MODEL_CACHE_TTL:
        return _model_metadata_cache

    try:
        response = requests.get(url, timeout=10)
        response.raise_for_status()
        data = response.json()

        cache = {}
        for model in data.get("data", []):
            model_id = model.get("id", "")
            context_length = model.get("context_length")
            if not model_id or not context_length:
                continue
            cache[_strip_provider(model_id)] = {
                "context_length": int(context_length),
                "name": model.get("name", model_id),
            }

        _model_metadata_cache = cache
        _model_metadata_cache_time = time.time()
        logger.debug("Fetched metadata for %s models from %s", len(cache), url)
        return cache

    except (requests.RequestException, ValueError) as e:
        logger.warning("Failed to fetch model metadata from %s: %s", url, e)
        return _model_metadata_cache or {}


def _strip_provider(model: str) -> str:
    return model.strip().split("/")[-1]


def get_model_context_window(model: Optional[str] = None) -> ModelContextInfo:
    """Resolve the context window for *model* (``provider/model-id`` or bare id).

    Resolution order:
    1. Metadata endpoint (when ``RELAY_MODEL_METADATA_URL`` is set)
    2. Built-in DEFAULT_CONTEXT_WINDOWS table
    3. FALLBACK_CONTEXT_WINDOW, flagged ``has_valid_context_window=False``
    """
    if not model or not str(model).strip():
        return ModelContextInfo(
            model_id=model or "unknown",
            context_window=FALLBACK_CONTEXT_WINDOW,
            has_valid_context_window=False,
            source="fallback",
        )

    model_id = _strip_provider(str(model))

    metadata = fetch_model_metadata()
    entry = metadata.get(model_id)
    if entry and entry.get("context_length", 0) > 0:
        return ModelContextInfo(model_id, entry["context_length"], True, "metadata-api")

    window = DEFAULT_CONTEXT_WINDOWS.get(model_id)
    if window and window > 0:
        return ModelContextInfo(model_id, window, True, "built-in")

    logger.debug("Unknown model '%s' - using fallback context window of %s tokens", model_id, FALLBACK_CONTEXT_WINDOW)
    return ModelContextInfo(model_id, FALLBACK_CONTEXT_WINDOW, False, "fallback")


def _env_int(name: str) -> Optional[int]:
    raw = os.getenv(name)
    if not raw:
        return None
    try:
        return int(raw)
    except ValueError:
        logger.warning("Invalid %s value: %s, ignoring", name, raw)
        return None


def get_compression_config_for_model(model: Optional[str] = None) -> CompressionConfig:
    """Model-size-aware compression thresholds.

    ===================  ==========  =============
    context window       hard limit  safety buffer
    ===================  ==========  =============
    > 500K tokens        95%         4%
    100K - 500K tokens   90%         7%
    < 100K tokens        85%         10%
    ===================  ==========  =============

    Models without a known window fall back to ``AGENTS_COMPRESSION_HARD_LIMIT``
    / ``AGENTS_COMPRESSION_SAFETY_BUFFER`` or hard-coded defaults.
    ``AGENTS_COMPRESSION_ENABLED=false`` disables compression entirely.
    """
    enabled = os.getenv("AGENTS_COMPRESSION_ENABLED", "true").strip().lower() != "false"
    info = get_model_context_window(model)

    if info.has_valid_context_window and info.context_window > 0:
        window = info.context_window
        if window > 500_000:
            hard_pct, buffer_pct = 0.95, 0.04
        elif window >= 100_000:
            hard_pct, buffer_pct = 0.90, 0.07
        else:
            hard_pct, buffer_pct = 0.85, 0.10
        return CompressionConfig(
            hard_limit=int(window * hard_pct),
            safety_buffer=int(window * buffer_pct),
            enabled=enabled,
            source="model-specific",
            model_context_info=info,
        )

    env_hard = _env_int("AGENTS_COMPRESSION_HARD_LIMIT")
    env_buffer = _env_int("AGENTS_COMPRESSION_SAFETY_BUFFER")
    if env_hard is not None or env_buffer is not None:
        return CompressionConfig(
            hard_limit=env_hard if env_hard is not None else DEFAULT_HARD_LIMIT,
            safety_buffer=env_buffer if env_buffer is not None else DEFAULT_SAFETY_BUFFER,
            enabled=enabled,
            source="environment",
            model_context_info=info,
        )

    return CompressionConfig(
        hard_limit=DEFAULT_HARD_LIMIT,
        safety_buffer=DEFAULT_SAFETY_BUFFER,
        enabled=enabled,
        source="default",
        model_context_info=info,
    )


def estimate_tokens(text: Optional[str]) -> int:
    """Rough token estimate (~4 chars/token) used for prompt breakdowns."""
    if not text:
        return 0
    return len(text) // 4


def estimate_messages_tokens(messages: List[Dict[str, Any]]) -> int:
    """Rough token estimate for a message list."""
    total_chars = sum(len(str(msg.get("content", ""))) for msg in messages)
    return total_chars // 4
