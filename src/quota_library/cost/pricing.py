# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Per-token pricing for local session logs.

Local tables cover the Codex (GPT-5 family) and Claude models the session
logs actually contain, including Claude's 200k-token tier. Anything else is
looked up in litellm's model map. Unknown everywhere means cost None; the
tokens are still counted.
"""

import logging
import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Dict, Optional

import litellm

lib_logger = logging.getLogger("quota_library")


@dataclass(frozen=True)
class CodexPricing:
    input_cost_per_token: float
    output_cost_per_token: float
    cache_read_input_cost_per_token: float


@dataclass(frozen=True)
class ClaudePricing:
    input_cost_per_token: float
    output_cost_per_token: float
    cache_creation_input_cost_per_token: float
    cache_read_input_cost_per_token: float
    threshold_tokens: Optional[int] = None
    input_cost_per_token_above_threshold: Optional[float] = None
    output_cost_per_token_above_threshold: Optional[float] = None
    cache_creation_input_cost_per_token_above_threshold: Optional[float] = None
    cache_read_input_cost_per_token_above_threshold: Optional[float] = None


_GPT5 = CodexPricing(1.25e-6, 1e-5, 1.25e-7)
_GPT52 = CodexPricing(1.75e-6, 1.4e-5, 1.75e-7)

CODEX_PRICING: Dict[str, CodexPricing] = {
    "gpt-5": _GPT5,
    "gpt-5-codex": _GPT5,
    "gpt-5.1": _GPT5,
    "gpt-5.2": _GPT52,
    "gpt-5.2-codex": _GPT52,
}

_SONNET_TIERED = ClaudePricing(
    input_cost_per_token=3e-6,
    output_cost_per_token=1.5e-5,
    cache_creation_input_cost_per_token=3.75e-6,
    cache_read_input_cost_per_token=3e-7,
    threshold_tokens=200_000,
    input_cost_per_token_above_threshold=6e-6,
    output_cost_per_token_above_threshold=2.25e-5,
    cache_creation_input_cost_per_token_above_threshold=7.5e-6,
    cache_read_input_cost_per_token_above_threshold=6e-7,
)
_OPUS_4 = ClaudePricing(1.5e-5, 7.5e-5, 1.875e-5, 1.5e-6)

CLAUDE_PRICING: Dict[str, ClaudePricing] = {
    "claude-haiku-4-5-20251001": ClaudePricing(1e-6, 5e-6, 1.25e-6, 1e-7),
    "claude-opus-4-5-20251101": ClaudePricing(5e-6, 2.5e-5, 6.25e-6, 5e-7),
    "claude-sonnet-4-5": _SONNET_TIERED,
    "claude-sonnet-4-5-20250929": _SONNET_TIERED,
    "claude-opus-4-20250514": _OPUS_4,
    "claude-opus-4-1": _OPUS_4,
    "claude-sonnet-4-20250514": _SONNET_TIERED,
}

_BEDROCK_VERSION_SUFFIX = re.compile(r"-v\d+:\d+$")
_DATE_SUFFIX = re.compile(r"-\d{8}$")


# =============================================================================
# MODEL NAME NORMALIZATION
# =============================================================================


def normalize_codex_model(raw: str) -> str:
    """`openai/gpt-5-codex-mini` -> `gpt-5` when the base is priced."""
    model = raw.strip()
    if model.startswith("openai/"):
        model = model[len("openai/"):]
    index = model.find("-codex")
    if index >= 0 and model[:index] in CODEX_PRICING:
        return model[:index]
    return model


def normalize_claude_model(raw: str) -> str:
    """
    Strip provider wrappers from a Claude model name.

    Handles `anthropic.` prefixes, region-qualified Bedrock ids
    (`us.anthropic.claude-...`), `-vN:M` version suffixes, and a trailing
    date when the undated name is priced.
    """
    model = raw.strip()
    if model.startswith("anthropic."):
        model = model[len("anthropic."):]
    if "claude-" in model and "." in model:
        tail = model[model.rfind(".") + 1:]
        if tail.startswith("claude-"):
            model = tail
    model = _BEDROCK_VERSION_SUFFIX.sub("", model)
    match = _DATE_SUFFIX.search(model)
    if match and model[: match.start()] in CLAUDE_PRICING:
        return model[: match.start()]
    return model


# =============================================================================
# COST
# =============================================================================


def codex_cost_usd(
    model: str, input_tokens: int, cached_input_tokens: int, output_tokens: int
) -> Optional[float]:
    """Cost of a Codex turn. Cached tokens are a subset of input tokens."""
    pricing = CODEX_PRICING.get(normalize_codex_model(model))
    if pricing is None:
        return None
    input_tokens = max(0, input_tokens)
    cached = min(max(0, cached_input_tokens), input_tokens)
    return (
        (input_tokens - cached) * pricing.input_cost_per_token
        + cached * pricing.cache_read_input_cost_per_token
        + max(0, output_tokens) * pricing.output_cost_per_token
    )


def _tiered(tokens: int, base: float, above: Optional[float], threshold: Optional[int]) -> float:
    tokens = max(0, tokens)
    if threshold is None or above is None:
        return tokens * base
    below = min(tokens, threshold)
    return below * base + max(0, tokens - threshold) * above


def claude_cost_usd(
    model: str,
    input_tokens: int,
    cache_read_input_tokens: int,
    cache_creation_input_tokens: int,
    output_tokens: int,
) -> Optional[float]:
    """Cost of a Claude message, applying the long-context tier if any."""
    pricing = CLAUDE_PRICING.get(normalize_claude_model(model))
    if pricing is None:
        return None
    threshold = pricing.threshold_tokens
    return (
        _tiered(input_tokens, pricing.input_cost_per_token,
                pricing.input_cost_per_token_above_threshold, threshold)
        + _tiered(cache_read_input_tokens, pricing.cache_read_input_cost_per_token,
                  pricing.cache_read_input_cost_per_token_above_threshold, threshold)
        + _tiered(cache_creation_input_tokens, pricing.cache_creation_input_cost_per_token,
                  pricing.cache_creation_input_cost_per_token_above_threshold, threshold)
        + _tiered(output_tokens, pricing.output_cost_per_token,
                  pricing.output_cost_per_token_above_threshold, threshold)
    )


@lru_cache(maxsize=256)
def _litellm_model_info(model: str) -> Optional[dict]:
    try:
        return dict(litellm.get_model_info(model))
    except Exception as exc:
        # litellm raises a bare Exception for unmapped models
        lib_logger.debug(f"No litellm pricing for {model}: {exc}")
        return None


def litellm_cost_usd(
    model: str,
    input_tokens: int,
    cached_input_tokens: int = 0,
    cache_creation_input_tokens: int = 0,
    output_tokens: int = 0,
) -> Optional[float]:
    """Cost from litellm's model map; None if the model is unknown there."""
    info = _litellm_model_info(model)
    if not info:
        return None
    input_cost = info.get("input_cost_per_token")
    output_cost = info.get("output_cost_per_token")
    if input_cost is None and output_cost is None:
        return None
    input_cost = input_cost or 0.0
    cache_read_cost = info.get("cache_read_input_token_cost")
    cache_creation_cost = info.get("cache_creation_input_token_cost")

    input_tokens = max(0, input_tokens)
    cached = min(max(0, cached_input_tokens), input_tokens)
    total = (input_tokens - cached) * input_cost
    total += cached * (cache_read_cost if cache_read_cost is not None else input_cost)
    total += max(0, cache_creation_input_tokens) * (
        cache_creation_cost if cache_creation_cost is not None else input_cost
    )
    total += max(0, output_tokens) * (output_cost or 0.0)
    return total


def cost_usd(
    fmt: str,
    model: str,
    input_tokens: int,
    cached_input_tokens: int,
    cache_creation_input_tokens: int,
    output_tokens: int,
    use_litellm: bool = True,
) -> Optional[float]:
    """
    Price token counts for a log format ("codex" or "claude").

    For codex, cached_input_tokens are part of input_tokens. For claude,
    input, cache-read and cache-creation tokens are disjoint.
    """
    if fmt == "codex":
        cost = codex_cost_usd(model, input_tokens, cached_input_tokens, output_tokens)
        if cost is None and use_litellm:
            cost = litellm_cost_usd(model, input_tokens, cached_input_tokens, 0, output_tokens)
        return cost

    cost = claude_cost_usd(
        model, input_tokens, cached_input_tokens, cache_creation_input_tokens, output_tokens
    )
    if cost is None and use_litellm:
        # litellm counts cached tokens inside the prompt
        cost = litellm_cost_usd(
            normalize_claude_model(model),
            input_tokens + cached_input_tokens,
            cached_input_tokens,
            cache_creation_input_tokens,
            output_tokens,
        )
    return cost
