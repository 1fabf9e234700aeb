"""Price policy — what a new listing costs and in which currency.

Two strategies:
- linear_price: bonding curve between start and max price by units sold
- weighted_currency_choice: weighted random pick between configured
  currencies, optionally forced, optionally narrowed by a time-of-day guard
"""

from __future__ import annotations

import random
from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Mapping, Protocol, Sequence

PRICE_QUANTUM = Decimal("0.00000001")
WEIGHT_TOLERANCE = 1e-9


def linear_price(
    sold_count: int,
    total_supply: int,
    start_price: Decimal,
    max_price: Decimal,
) -> Decimal:
    """Linear bonding curve price for the next unit.

    price = start + (max - start) * sold / total, rounded to 8 decimals.
    sold_count outside [0, total_supply] is clamped rather than rejected.
    """
    if total_supply <= 0:
        raise ValueError("total_supply must be positive")
    sold = min(max(sold_count, 0), total_supply)
    progress = Decimal(sold) / Decimal(total_supply)
    price = start_price + (max_price - start_price) * progress
    return price.quantize(PRICE_QUANTUM, rounding=ROUND_HALF_UP)


class RandomSource(Protocol):
    def draw(self) -> float:
        """A float in [0, 1)."""
        ...


class SystemRandomSource:
    def __init__(self, seed: int | None = None):
        self._rng = random.Random(seed)

    def draw(self) -> float:
        return self._rng.random()


@dataclass(frozen=True)
class DaytimeGuard:
    """Restricts currencies during [start_hour, end_hour) local time.

    A window with start_hour > end_hour wraps past midnight.
    """

    start_hour: int
    end_hour: int
    currencies: tuple[str, ...]

    def is_active(self, now: datetime) -> bool:
        hour = now.hour
        if self.start_hour <= self.end_hour:
            return self.start_hour <= hour < self.end_hour
        return hour >= self.start_hour or hour < self.end_hour


def validate_weights(weights: Mapping[str, float]) -> None:
    if not weights:
        raise ValueError("at least one currency weight is required")
    if any(w < 0 for w in weights.values()):
        raise ValueError("currency weights must be non-negative")
    total = sum(weights.values())
    if abs(total - 1.0) > WEIGHT_TOLERANCE:
        raise ValueError(f"currency weights must sum to 1, got {total}")


def _draw(candidates: Sequence[tuple[str, float]], source: RandomSource) -> str:
    total = sum(w for _, w in candidates)
    if total <= 0:
        return candidates[0][0]
    point = source.draw() * total
    cumulative = 0.0
    for currency, weight in candidates:
        cumulative += weight
        if point < cumulative:
            return currency
    # float rounding at the top edge
    return candidates[-1][0]


def weighted_currency_choice(
    weights: Mapping[str, float],
    forced: str | None = None,
    guard: DaytimeGuard | None = None,
    now: datetime | None = None,
    source: RandomSource | None = None,
) -> str:
    """Pick the currency symbol for one listing.

    `forced` is returned as-is. Otherwise an active guard narrows the
    candidates to its currencies before the weighted draw. Weights are walked
    cumulatively in mapping order, so {"ASTR": 0.65, "ETH": 0.35} picks ASTR
    for draws below 0.65.
    """
    if forced is not None:
        return forced

    validate_weights(weights)
    candidates = list(weights.items())

    if guard is not None and now is not None and guard.is_active(now):
        allowed = [(c, w) for c, w in candidates if c in guard.currencies]
        if not allowed:
            return guard.currencies[0]
        candidates = allowed

    return _draw(candidates, source or SystemRandomSource())
