"""Simulated portfolio for replay.

Holds balances and current prices, executes actions at the current price
against a numeraire (cash) asset, and matches sells FIFO against the
open entry lots of each symbol to realize P&L and holding time.

Holdings present at the start have no entry lot; selling them realizes
no P&L and is not counted as a win or loss.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Literal, Mapping

from rules.models.context import PortfolioState
from rules.models.rule import Action, EnterAction, ExitAction, RebalanceAction

logger = logging.getLogger(__name__)

# Quantities below this are treated as zero
_DUST = 1e-12


@dataclass
class Lot:
    """Open quantity bought by one entry trade."""

    timestamp: datetime
    price: float
    qty: float


@dataclass(frozen=True)
class ClosedLot:
    """One matched (entry, exit) portion."""

    symbol: str
    entry_time: datetime
    exit_time: datetime
    entry_price: float
    exit_price: float
    qty: float

    @property
    def pnl(self) -> float:
        return (self.exit_price - self.entry_price) * self.qty

    @property
    def hold_minutes(self) -> float:
        return (self.exit_time - self.entry_time).total_seconds() / 60.0


@dataclass
class Trade:
    """A filled simulated order."""

    timestamp: datetime
    rule_id: str
    symbol: str
    side: Literal["buy", "sell"]
    price: float
    qty: float
    pnl: float | None = None  # sells only: realized against matched lots
    matched_qty: float = 0.0

    @property
    def notional(self) -> float:
        return self.price * self.qty


@dataclass
class SimulatedPortfolio:
    """Mutable replay state. Not shared outside one backtest run."""

    balances: dict[str, float]
    prices: dict[str, float] = field(default_factory=dict)
    numeraire: str = "USDC"
    trades: list[Trade] = field(default_factory=list)
    closed_lots: list[ClosedLot] = field(default_factory=list)
    _lots: dict[str, deque[Lot]] = field(default_factory=dict, repr=False)

    def __post_init__(self):
        self.numeraire = self.numeraire.upper()
        self.balances = {k.upper(): float(v) for k, v in self.balances.items()}
        self.prices = {k.upper(): float(v) for k, v in self.prices.items()}
        self.prices.setdefault(self.numeraire, 1.0)
        self.balances.setdefault(self.numeraire, 0.0)

    # -------------------------------------------------------------------------
    # Valuation
    # -------------------------------------------------------------------------

    def update_prices(self, prices: Mapping[str, float]) -> None:
        for symbol, price in prices.items():
            self.prices[symbol.upper()] = float(price)
        self.prices[self.numeraire] = self.prices.get(self.numeraire) or 1.0

    def price(self, symbol: str) -> float:
        return self.prices.get(symbol.upper(), 0.0)

    def holding(self, symbol: str) -> float:
        return self.balances.get(symbol.upper(), 0.0)

    def total_value(self) -> float:
        return sum(qty * self.prices.get(sym, 0.0) for sym, qty in self.balances.items())

    def snapshot(self) -> PortfolioState:
        """Immutable view for building an EvalContext."""
        return PortfolioState(balances=dict(self.balances), prices=dict(self.prices))

    def open_lots(self, symbol: str) -> list[Lot]:
        return list(self._lots.get(symbol.upper(), ()))

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------

    def execute(self, action: Action, rule_id: str, now: datetime) -> list[Trade]:
        """Execute one action at current prices; returns the fills."""
        if isinstance(action, EnterAction):
            if action.is_sell:
                qty = self._equity_qty(action.symbol, -action.allocation_pct)
                return self._fill(self.sell(action.symbol, qty, rule_id, now))
            value = action.allocation_pct / 100.0 * self.total_value()
            return self._fill(self.buy(action.symbol, value, rule_id, now))

        if isinstance(action, ExitAction):
            qty = self.holding(action.symbol) * action.allocation_pct / 100.0
            return self._fill(self.sell(action.symbol, qty, rule_id, now))

        if isinstance(action, RebalanceAction):
            return self._rebalance(action, rule_id, now)

        raise TypeError(f"Unsupported action: {action!r}")

    def buy(self, symbol: str, value: float, rule_id: str, now: datetime) -> Trade | None:
        """Spend up to `value` of the numeraire on `symbol`."""
        symbol = symbol.upper()
        price = self.price(symbol)
        cash = self.holding(self.numeraire)
        spend = min(value, cash)
        if price <= 0 or spend <= _DUST or symbol == self.numeraire:
            logger.debug("Skip buy %s: price=%s spend=%s cash=%s", symbol, price, value, cash)
            return None

        qty = spend / price
        self.balances[self.numeraire] = cash - spend
        self.balances[symbol] = self.holding(symbol) + qty
        self._lots.setdefault(symbol, deque()).append(Lot(timestamp=now, price=price, qty=qty))
        return Trade(timestamp=now, rule_id=rule_id, symbol=symbol, side="buy", price=price, qty=qty)

    def sell(self, symbol: str, qty: float, rule_id: str, now: datetime) -> Trade | None:
        """Sell up to `qty` of `symbol`, matching FIFO against open lots."""
        symbol = symbol.upper()
        price = self.price(symbol)
        qty = min(qty, self.holding(symbol))
        if price <= 0 or qty <= _DUST or symbol == self.numeraire:
            logger.debug("Skip sell %s: price=%s qty=%s", symbol, price, qty)
            return None

        self.balances[symbol] = self.holding(symbol) - qty
        self.balances[self.numeraire] = self.holding(self.numeraire) + qty * price

        pnl = 0.0
        matched = 0.0
        lots = self._lots.get(symbol)
        remaining = qty
        while lots and remaining > _DUST:
            lot = lots[0]
            take = min(lot.qty, remaining)
            closed = ClosedLot(
                symbol=symbol,
                entry_time=lot.timestamp,
                exit_time=now,
                entry_price=lot.price,
                exit_price=price,
                qty=take,
            )
            self.closed_lots.append(closed)
            pnl += closed.pnl
            matched += take
            remaining -= take
            lot.qty -= take
            if lot.qty <= _DUST:
                lots.popleft()

        return Trade(
            timestamp=now,
            rule_id=rule_id,
            symbol=symbol,
            side="sell",
            price=price,
            qty=qty,
            pnl=pnl,
            matched_qty=matched,
        )

    def _equity_qty(self, symbol: str, pct: float) -> float:
        price = self.price(symbol)
        if price <= 0:
            return 0.0
        return pct / 100.0 * self.total_value() / price

    def _rebalance(self, action: RebalanceAction, rule_id: str, now: datetime) -> list[Trade]:
        # Sizes come from pre-trade equity; sells run first to fund buys
        total = self.total_value()
        sells: list[Trade | None] = []
        buys: list[tuple[str, float]] = []
        for symbol, pct in action.target.items():
            price = self.price(symbol)
            if price <= 0:
                continue
            diff = pct / 100.0 * total - self.holding(symbol) * price
            if diff < 0:
                sells.append(self.sell(symbol, -diff / price, rule_id, now))
            elif diff > 0:
                buys.append((symbol, diff))
        fills = self._fill(*sells)
        for symbol, value in buys:
            fills.extend(self._fill(self.buy(symbol, value, rule_id, now)))
        return fills

    def _fill(self, *trades: Trade | None) -> list[Trade]:
        done = [t for t in trades if t is not None]
        self.trades.extend(done)
        return done
