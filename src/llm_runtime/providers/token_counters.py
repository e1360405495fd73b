"""Token counting for adapters.

Counts are best-effort: OpenAI-family models use tiktoken, everything
else uses a character-based estimate. Neither is guaranteed to match
the provider's billing count exactly.
"""

from __future__ import annotations

import logging
import math
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)

CHARS_PER_TOKEN = 4


class TokenCounterType(Enum):
    """Types of token counting methods"""
    TIKTOKEN = "tiktoken"      # Local tiktoken library
    ESTIMATION = "estimation"  # Character-based estimate


@dataclass
class TokenCountResult:
    """Result of token counting"""
    token_count: int
    method: TokenCounterType
    model: str
    estimated: bool = False
    details: dict[str, Any] = field(default_factory=dict)


def estimate_tokens(text: str) -> int:
    """Approximate token count: one token per four characters, rounded up."""
    return math.ceil(len(text) / CHARS_PER_TOKEN)


class TokenCounter(ABC):
    """Abstract base class for token counting strategies"""

    @abstractmethod
    def count_tokens(self, text: str, model: str) -> TokenCountResult:
        """Count tokens for the given text and model"""

    @abstractmethod
    def supports_model(self, model: str) -> bool:
        """Check if this counter supports the given model"""


class EstimationCounter(TokenCounter):
    """Fallback counter that works for every model."""

    def count_tokens(self, text: str, model: str) -> TokenCountResult:
        return TokenCountResult(
            token_count=estimate_tokens(text),
            method=TokenCounterType.ESTIMATION,
            model=model,
            estimated=True,
            details={"chars_per_token": CHARS_PER_TOKEN},
        )

    def supports_model(self, model: str) -> bool:
        return True


class TiktokenCounter(TokenCounter):
    """Token counter using OpenAI's tiktoken library"""

    MODEL_ENCODINGS = {
        "gpt-4o": "o200k_base",
        "gpt-4o-mini": "o200k_base",
        "gpt-4.1": "o200k_base",
        "gpt-4.1-mini": "o200k_base",
        "o1": "o200k_base",
        "o3-mini": "o200k_base",
        "gpt-4": "cl100k_base",
        "gpt-4-turbo": "cl100k_base",
        "gpt-3.5-turbo": "cl100k_base",
    }

    def __init__(self) -> None:
        self._encodings: dict[str, Any] = {}

    def _encoding_for(self, model: str) -> str:
        if model in self.MODEL_ENCODINGS:
            return self.MODEL_ENCODINGS[model]
        # Dated snapshots such as gpt-4o-2024-08-06
        for prefix in sorted(self.MODEL_ENCODINGS, key=len, reverse=True):
            if model.startswith(prefix):
                return self.MODEL_ENCODINGS[prefix]
        return "cl100k_base"

    def count_tokens(self, text: str, model: str) -> TokenCountResult:
        """Count tokens using tiktoken"""
        import tiktoken

        encoding_name = self._encoding_for(model)
        if encoding_name not in self._encodings:
            self._encodings[encoding_name] = tiktoken.get_encoding(encoding_name)

        return TokenCountResult(
            token_count=len(self._encodings[encoding_name].encode(text)),
            method=TokenCounterType.TIKTOKEN,
            model=model,
            details={"encoding": encoding_name},
        )

    def supports_model(self, model: str) -> bool:
        return any(model.startswith(prefix) for prefix in self.MODEL_ENCODINGS)


class UnifiedTokenCounter:
    """Tries the exact counters first and falls back to estimation."""

    def __init__(self, counters: list[TokenCounter] | None = None):
        self.counters = counters if counters is not None else [TiktokenCounter()]
        self.fallback = EstimationCounter()

    def count_tokens(self, text: str, model: str) -> TokenCountResult:
        for counter in self.counters:
            if not counter.supports_model(model):
                continue
            try:
                return counter.count_tokens(text, model)
            except Exception as e:
                # tiktoken downloads encodings on first use and fails offline
                logger.debug(f"{type(counter).__name__} failed for {model}: {e}")
        return self.fallback.count_tokens(text, model)
