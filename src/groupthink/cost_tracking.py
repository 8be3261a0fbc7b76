"""Token usage accounting and cost reporting.

This module provides:
- Field-wise merging of raw usage counters across tool-use rounds
- Per-tier pricing (dollars per million tokens)
- The ``-#`` usage report line posted after each model call

Everything here is a pure function of its arguments.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Mapping, Optional

from groupthink.settings import METADATA_PREFIX

_log = logging.getLogger(__name__)


@dataclass(frozen=True)
class TierPricing:
    """Dollars per million tokens for one model tier."""

    input: float
    output: float
    cache_read: float
    cache_write: float


# Claude 4.5 list prices, 1h cache TTL.
PRICING: Mapping[str, TierPricing] = MappingProxyType(
    {
        "haiku": TierPricing(input=1.0, output=5.0, cache_read=0.1, cache_write=2.0),
        "sonnet": TierPricing(input=3.0, output=15.0, cache_read=0.3, cache_write=6.0),
        "opus": TierPricing(input=5.0, output=25.0, cache_read=0.5, cache_write=10.0),
    }
)


@dataclass(frozen=True)
class UsageRecord:
    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_tokens: int = 0
    cache_write_tokens: int = 0

    @classmethod
    def from_api(cls, usage: Mapping[str, Any]) -> "UsageRecord":
        """Read the provider's usage dict; missing or non-numeric fields count as 0."""

        def _count(key: str) -> int:
            value = usage.get(key)
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                return 0
            return int(value)

        return cls(
            input_tokens=_count("input_tokens"),
            output_tokens=_count("output_tokens"),
            cache_read_tokens=_count("cache_read_input_tokens"),
            cache_write_tokens=_count("cache_creation_input_tokens"),
        )

    @property
    def total_tokens(self) -> int:
        return (
            self.input_tokens
            + self.output_tokens
            + self.cache_read_tokens
            + self.cache_write_tokens
        )


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def merge_usage(total: Mapping[str, Any], new: Mapping[str, Any]) -> dict[str, Any]:
    """Add ``new`` into ``total`` field by field.

    Numeric fields are summed; anything else is overwritten by the newer value.
    ``None`` means "not reported" and never replaces a known value.
    """
    merged = dict(total)
    for key, value in new.items():
        if value is None:
            continue
        if _is_number(value) and _is_number(merged.get(key)):
            merged[key] = merged[key] + value
        else:
            merged[key] = value
    return merged


def calculate_cost(
    usage: UsageRecord, tier: str, pricing: Mapping[str, TierPricing] = PRICING
) -> float:
    """Dollar cost of ``usage`` at ``tier`` prices."""
    try:
        p = pricing[tier]
    except KeyError:
        raise ValueError(f"Unknown model tier: {tier!r}") from None
    return (
        usage.input_tokens * p.input
        + usage.output_tokens * p.output
        + usage.cache_read_tokens * p.cache_read
        + usage.cache_write_tokens * p.cache_write
    ) / 1_000_000


def format_usage_report(
    usage: Mapping[str, Any] | UsageRecord,
    tier: str,
    *,
    pricing: Mapping[str, TierPricing] = PRICING,
    budget: Optional[float] = None,
) -> str:
    """Return the one-line usage footer, e.g.

    ``-# model: sonnet · total: 15 tokens · in: 10, out: 5 · $0.0001``

    Args:
        usage: Raw provider usage dict or an already parsed record
        tier: Model tier the call ran on
        pricing: Rate table to use
        budget: Optional dollar budget; when given the remaining amount is shown
    """
    record = usage if isinstance(usage, UsageRecord) else UsageRecord.from_api(usage)
    cost = calculate_cost(record, tier, pricing)
    parts = [
        f"model: {tier}",
        f"total: {record.total_tokens:,} tokens",
        f"in: {record.input_tokens:,}, out: {record.output_tokens:,}",
    ]
    if record.cache_read_tokens or record.cache_write_tokens:
        parts.append(
            f"cache: {record.cache_read_tokens:,} read, {record.cache_write_tokens:,} write"
        )
    parts.append(f"${cost:.4f}")
    if budget is not None:
        parts.append(f"remaining: ${max(0.0, budget - cost):.2f} of ${budget:.2f}")
    return f"{METADATA_PREFIX} " + " · ".join(parts)
