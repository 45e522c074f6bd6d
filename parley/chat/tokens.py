"""Token counting for prompt budgeting.

TiktokenCounter is the production counter. CharEstimateCounter is the
chars/4 heuristic with EMA calibration from reported usage; it needs no
encoding files and is what the tests use.
"""

from __future__ import annotations

import logging
import math
import re
from typing import Any, Protocol

import tiktoken

logger = logging.getLogger(__name__)

DEFAULT_ENCODING = "cl100k_base"
MODERN_ENCODING = "o200k_base"

# Chat-format accounting: every message carries fixed framing overhead
TOKENS_PER_MESSAGE = 3
TOKENS_PER_NAME = 1

# Image token costs (vision pricing: 512px tiles)
IMAGE_TOKENS_LOW = 85
IMAGE_TOKENS_PER_TILE = 170
IMAGE_TOKENS_BASE = 85
IMAGE_TILE_SIZE = 512

_MODERN_MODEL = re.compile(r"gpt-4[^-\s]|gpt-5|\bo\d")


class TokenCounter(Protocol):
    """Counts tokens of a text under a named encoding."""

    def count(self, text: str, encoding: str | None = None) -> int: ...


def encoding_for_model(model: str | None) -> str:
    """gpt-4o-class and o-series models use o200k_base, everything else cl100k_base."""
    if model and _MODERN_MODEL.search(model):
        return MODERN_ENCODING
    return DEFAULT_ENCODING


class TiktokenCounter:
    """Token counter backed by tiktoken. Encodings are loaded once and cached."""

    def __init__(self, default_encoding: str = DEFAULT_ENCODING) -> None:
        self._default = default_encoding
        self._encodings: dict[str, tiktoken.Encoding] = {}

    def _encoding(self, name: str) -> tiktoken.Encoding:
        enc = self._encodings.get(name)
        if enc is None:
            enc = tiktoken.get_encoding(name)
            self._encodings[name] = enc
            logger.debug("Loaded tiktoken encoding %s", name)
        return enc

    def count(self, text: str, encoding: str | None = None) -> int:
        if not text:
            return 0
        return len(self._encoding(encoding or self._default).encode(text, disallowed_special=()))


class CharEstimateCounter:
    """Estimates token counts with optional calibration from API usage.

    Starts with the chars/4 heuristic. calibrate() nudges the ratio toward
    observed input_tokens with an EMA (alpha=0.1).
    """

    def __init__(self, ratio: float = 0.25) -> None:
        self._ratio = ratio  # tokens per char
        self._samples = 0

    @property
    def ratio(self) -> float:
        return self._ratio

    @property
    def samples(self) -> int:
        return self._samples

    def count(self, text: str, encoding: str | None = None) -> int:
        if not text:
            return 0
        return max(1, int(len(text) * self._ratio))

    def calibrate(self, input_chars: int, actual_tokens: int) -> None:
        if input_chars <= 0 or actual_tokens <= 0:
            return
        observed = actual_tokens / input_chars
        self._ratio = 0.1 * observed + 0.9 * self._ratio
        self._samples += 1


def count_message_tokens(entry: dict[str, Any], counter: TokenCounter, encoding: str | None = None) -> int:
    """Tokens for one prompt entry, including per-message framing.

    Every string value counts (role included). List content counts its text
    parts; image parts are priced separately via image_token_cost().
    """
    total = TOKENS_PER_MESSAGE
    for key, value in entry.items():
        if key == "name":
            total += TOKENS_PER_NAME
        if isinstance(value, str):
            total += counter.count(value, encoding)
        elif key == "content" and isinstance(value, list):
            for part in value:
                if isinstance(part, dict) and part.get("type") == "text":
                    total += counter.count(part.get("text", ""), encoding)
        elif key == "tool_calls" and isinstance(value, list):
            for call in value:
                fn = call.get("function", {})
                total += counter.count(fn.get("name", ""), encoding)
                total += counter.count(fn.get("arguments", ""), encoding)
    return total


def image_token_cost(width: int | None, height: int | None, detail: str = "auto") -> int:
    """Token cost of one image: flat for low detail, per 512px tile otherwise."""
    if detail == "low" or not width or not height:
        return IMAGE_TOKENS_LOW
    tiles = math.ceil(width / IMAGE_TILE_SIZE) * math.ceil(height / IMAGE_TILE_SIZE)
    return tiles * IMAGE_TOKENS_PER_TILE + IMAGE_TOKENS_BASE
