"""
Token accounting for embedding requests.

Token counts drive sub-batch sizing, per-item truncation and the cost
estimates attached to telemetry events.
"""

from __future__ import annotations

import logging

import tiktoken

logger = logging.getLogger(__name__)

# text-embedding-3-* and ada-002 all use cl100k_base
_TIKTOKEN_ENCODING = "cl100k_base"

# USD per 1K tokens
MODEL_PRICING: dict[str, float] = {
    "text-embedding-3-small": 0.00002,
    "text-embedding-3-large": 0.00013,
    "text-embedding-ada-002": 0.0001,
}
DEFAULT_PRICE_PER_1K = 0.0001

_encoder: tiktoken.Encoding | None = None


def _get_encoder() -> tiktoken.Encoding:
    """Get or create the tiktoken encoder (lazy singleton)."""
    global _encoder
    if _encoder is None:
        _encoder = tiktoken.get_encoding(_TIKTOKEN_ENCODING)
    return _encoder


def count_tokens(text: str) -> int:
    """Count tokens in text using the embedding model's tokenizer.

    Args:
        text: The text to count tokens for.

    Returns:
        Number of tokens.
    """
    return len(_get_encoder().encode(text, disallowed_special=()))


def truncate_to_tokens(text: str, max_tokens: int) -> str:
    """Truncate text to fit within a token limit.

    Decodes back to a valid string after truncating the token sequence.

    Args:
        text: The text to truncate.
        max_tokens: Maximum number of tokens allowed.

    Returns:
        The truncated text (or original if already within limit).
    """
    encoder = _get_encoder()
    tokens = encoder.encode(text, disallowed_special=())
    if len(tokens) <= max_tokens:
        return text
    logger.debug("Truncating text from %d to %d tokens", len(tokens), max_tokens)
    return encoder.decode(tokens[:max_tokens])


def estimate_cost(model: str, tokens: int) -> float:
    """Estimated USD cost of embedding ``tokens`` tokens with ``model``."""
    return tokens / 1000.0 * MODEL_PRICING.get(model, DEFAULT_PRICE_PER_1K)
