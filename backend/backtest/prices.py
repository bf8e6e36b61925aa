"""Price sources for replay.

A PriceSource yields one PriceSnapshot per step between start and end.
Two implementations:
- HistoricalPriceSource: replays recorded per-symbol price series
- SyntheticPriceGenerator: bounded random walk driven by an injectable,
  optionally seeded random.Random (same seed, same path)
"""

from __future__ import annotations

import logging
import math
import random
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Iterable, Iterator, Mapping, Protocol, Sequence, runtime_checkable

from rules.models.context import PricePoint

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PriceSnapshot:
    """Prices of every symbol at one replay step."""

    timestamp: datetime
    prices: dict[str, float] = field(default_factory=dict)


def _check_step(step: timedelta) -> None:
    if step <= timedelta(0):
        raise ValueError(f"Replay step must be positive, got {step}")


@runtime_checkable
class PriceSource(Protocol):
    """Anything that can produce a chronological snapshot path."""

    def snapshots(
        self,
        start: datetime,
        end: datetime,
        initial_prices: Mapping[str, float],
        step: timedelta,
    ) -> Iterator[PriceSnapshot]:
        ...


class HistoricalPriceSource:
    """Replay recorded prices at a fixed step, forward-filling gaps.

    Symbols without an observation at or before a step fall back to
    `initial_prices`.
    """

    def __init__(self, history: Mapping[str, Sequence[PricePoint]]):
        self._history = {
            symbol.upper(): sorted(points, key=lambda p: p.timestamp)
            for symbol, points in history.items()
        }

    def snapshots(
        self,
        start: datetime,
        end: datetime,
        initial_prices: Mapping[str, float],
        step: timedelta,
    ) -> Iterator[PriceSnapshot]:
        _check_step(step)
        current = {k.upper(): float(v) for k, v in initial_prices.items()}
        cursors = {symbol: 0 for symbol in self._history}
        count = 0

        ts = start
        while ts < end:
            for symbol, points in self._history.items():
                i = cursors[symbol]
                while i < len(points) and points[i].timestamp <= ts:
                    current[symbol] = points[i].price
                    i += 1
                cursors[symbol] = i
            yield PriceSnapshot(timestamp=ts, prices=dict(current))
            count += 1
            ts += step

        logger.debug("Replayed %d historical snapshots", count)


class SyntheticPriceGenerator:
    """Random walk: each step moves every price by up to +/- its volatility.

    A volatility of 0 gives a perfectly flat path. Pinned symbols (the
    numeraire) never move.
    """

    def __init__(
        self,
        rng: random.Random | None = None,
        seed: int | None = None,
        volatility: Mapping[str, float] | None = None,
        default_volatility: float = 0.01,
        pinned: Iterable[str] = (),
    ):
        if rng is not None and seed is not None:
            raise ValueError("Pass either rng or seed, not both")
        self._rng = rng or random.Random(seed)
        self._volatility = {k.upper(): v for k, v in (volatility or {}).items()}
        self._default_volatility = default_volatility
        self._pinned = {s.upper() for s in pinned}

    def volatility_for(self, symbol: str) -> float:
        if symbol.upper() in self._pinned:
            return 0.0
        return self._volatility.get(symbol.upper(), self._default_volatility)

    def step(self, prices: Mapping[str, float]) -> dict[str, float]:
        """Advance every price by one random-walk step."""
        moved = {}
        for symbol, price in prices.items():
            vol = self.volatility_for(symbol)
            change = (self._rng.random() - 0.5) * 2 * vol
            moved[symbol.upper()] = float(price) * (1 + change)
        return moved

    def snapshots(
        self,
        start: datetime,
        end: datetime,
        initial_prices: Mapping[str, float],
        step: timedelta,
    ) -> Iterator[PriceSnapshot]:
        _check_step(step)
        # Whole days, so a partial last day still gets its full run of steps
        horizon = start + timedelta(days=math.ceil((end - start) / timedelta(days=1)))
        current = {k.upper(): float(v) for k, v in initial_prices.items()}
        count = 0

        ts = start
        while ts < horizon:
            current = self.step(current)
            yield PriceSnapshot(timestamp=ts, prices=dict(current))
            count += 1
            ts += step

        logger.debug("Generated %d synthetic snapshots", count)
