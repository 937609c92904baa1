"""
Token counting per model family.

Counts are estimates unless an exact encoder is supplied. Every estimate is
rounded up, and unknown models fall back to a profile that over-estimates
all known families, since under-counting risks overflowing the window.
"""

import json
import math
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

import structlog

logger = structlog.get_logger()

# Per-message overhead for role markers and formatting
MESSAGE_OVERHEAD_TOKENS = 4


@dataclass(frozen=True)
class ModelProfile:
    """Counting parameters for one model family."""

    chars_per_token: float
    factor: float = 1.0
    context_window: int = 128_000


MODEL_PROFILES: dict[str, ModelProfile] = {
    # Anthropic
    "claude": ModelProfile(chars_per_token=3.5, factor=1.1, context_window=200_000),
    # OpenAI
    "gpt-4o": ModelProfile(chars_per_token=4.0, factor=1.0, context_window=128_000),
    "gpt-4-turbo": ModelProfile(chars_per_token=4.0, factor=1.0, context_window=128_000),
    "gpt-4": ModelProfile(chars_per_token=4.0, factor=1.0, context_window=8_192),
    "gpt-3.5": ModelProfile(chars_per_token=4.0, factor=1.0, context_window=16_385),
    # Google
    "gemini": ModelProfile(chars_per_token=4.0, factor=1.05, context_window=1_000_000),
    # DeepSeek
    "deepseek": ModelProfile(chars_per_token=3.5, factor=1.1, context_window=64_000),
    # Llama family
    "llama": ModelProfile(chars_per_token=3.8, factor=1.1, context_window=128_000),
}

DEFAULT_PROFILE = ModelProfile(chars_per_token=3.0, factor=1.2, context_window=128_000)


def resolve_profile(model: str) -> ModelProfile | None:
    """Find the profile for a model identifier by longest prefix match."""
    model_lower = model.lower()
    for prefix in sorted(MODEL_PROFILES, key=len, reverse=True):
        if model_lower.startswith(prefix):
            return MODEL_PROFILES[prefix]
    return None


class TokenCounter:
    """Estimates token cost of text for a target model."""

    def __init__(
        self,
        model: str,
        encoder: Callable[[str], int] | None = None,
    ):
        self.model = model
        self.encoder = encoder
        profile = resolve_profile(model)
        if profile is None:
            logger.warning("Unknown model, using conservative token profile", model=model)
            profile = DEFAULT_PROFILE
        self.profile = profile

    @property
    def context_window(self) -> int:
        return self.profile.context_window

    def count(self, text: str) -> int:
        """Count tokens in a unit of text."""
        if not text:
            return 0
        if self.encoder is not None:
            return max(0, int(self.encoder(text)))
        raw = len(text) / self.profile.chars_per_token * self.profile.factor
        return math.ceil(raw)

    def estimate(self, content: Any) -> int:
        """Estimate tokens for structured content.

        Accepts strings, mappings, sequences, and message-like objects with a
        ``content`` attribute. Message-like values pay a fixed overhead.
        """
        if content is None:
            return 0
        if isinstance(content, str):
            return self.count(content)
        if isinstance(content, Mapping):
            if "content" in content and "role" in content:
                return self.estimate(content["content"]) + MESSAGE_OVERHEAD_TOKENS
            return self.count(json.dumps(content, ensure_ascii=False, default=str))
        if isinstance(content, (list, tuple)):
            return sum(self.estimate(part) for part in content)
        if hasattr(content, "content"):
            return self.estimate(getattr(content, "content")) + MESSAGE_OVERHEAD_TOKENS
        return self.count(str(content))
