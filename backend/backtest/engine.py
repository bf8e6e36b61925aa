"""Replay engine.

Drives the live Evaluator over a price path against a SimulatedPortfolio.

Processing order for each step:
1. Apply the snapshot's prices and extend the market-data window
2. Build an EvalContext from the simulated state
3. Run the Evaluator and record which rules were evaluated
4. Execute each accepted intent immediately, re-checking baseline
   protection against the post-fill portfolio of earlier intents
5. Record executions and append post-trade equity to the curve
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Iterable, Sequence

from rules.evaluator import Evaluator
from rules.models.context import (
    EvalContext,
    ExecutionRecord,
    MarketData,
    Objectives,
    PricePoint,
    RiskLimits,
)
from rules.models.rule import Rule
from rules.risk import BaselineProtectionCheck

from backtest.portfolio import SimulatedPortfolio
from backtest.prices import PriceSnapshot
from backtest.stats import EquityPoint

logger = logging.getLogger(__name__)

# Executions older than this are dropped from the context window
_EXECUTION_RETENTION = timedelta(days=1, hours=2)


class BacktestCancelled(Exception):
    """Raised at a step boundary when the cancellation hook fires."""

    def __init__(self, step: int):
        super().__init__(f"Backtest cancelled at step {step}")
        self.step = step


@dataclass
class StepCheckpoint:
    """State exposed to the on_step hook after each step."""

    step: int
    timestamp: datetime
    equity: float
    trades: int


@dataclass
class EngineState:
    """Caller-side bookkeeping the live system would persist."""

    last_executions: dict[str, datetime] = field(default_factory=dict)
    last_evaluations: dict[str, datetime] = field(default_factory=dict)
    executions: list[ExecutionRecord] = field(default_factory=list)


class BacktestEngine:
    """Replay one rule set over a snapshot path."""

    def __init__(
        self,
        rules: Sequence[Rule],
        portfolio: SimulatedPortfolio,
        objectives: Objectives | None = None,
        limits: RiskLimits | None = None,
        evaluator: Evaluator | None = None,
        history_limit: int = 500,
    ):
        self.rules = list(rules)
        self.portfolio = portfolio
        self.objectives = objectives or Objectives()
        self.limits = limits or RiskLimits()
        self.evaluator = evaluator or Evaluator()
        self.state = EngineState()
        self.equity_curve: list[EquityPoint] = []
        self._rules_by_id = {r.rule_id: r for r in self.rules}
        self._history: dict[str, deque[PricePoint]] = {}
        self._history_limit = history_limit
        self._baseline_check = BaselineProtectionCheck()
        self._steps = 0

    @property
    def steps(self) -> int:
        return self._steps

    def run(
        self,
        snapshots: Iterable[PriceSnapshot],
        should_cancel: Callable[[], bool] | None = None,
        on_step: Callable[[StepCheckpoint], None] | None = None,
    ) -> None:
        """Replay every snapshot in order.

        Raises:
            BacktestCancelled: If should_cancel() returns True at a step boundary.
        """
        for snapshot in snapshots:
            if should_cancel is not None and should_cancel():
                raise BacktestCancelled(self._steps)
            self.process_snapshot(snapshot)
            if on_step is not None:
                on_step(StepCheckpoint(
                    step=self._steps,
                    timestamp=snapshot.timestamp,
                    equity=self.equity_curve[-1].value,
                    trades=len(self.portfolio.trades),
                ))

    def process_snapshot(self, snapshot: PriceSnapshot) -> None:
        now = snapshot.timestamp
        self._steps += 1

        self.portfolio.update_prices(snapshot.prices)
        for symbol, price in snapshot.prices.items():
            window = self._history.setdefault(symbol.upper(), deque(maxlen=self._history_limit))
            window.append(PricePoint(timestamp=now, price=price))

        ctx = self.build_context(now)
        tick = self.evaluator.evaluate(self.rules, ctx)
        for rule_id in tick.evaluated:
            self.state.last_evaluations[rule_id] = now

        for intent in tick.intents:
            rule = self._rules_by_id[intent.rule_id]
            current = ctx.model_copy(update={"portfolio": self.portfolio.snapshot()})
            recheck = self._baseline_check(rule, current, intent)
            if recheck is not None:
                logger.info("Intent from %s dropped at fill: %s", rule.rule_id, recheck.reason)
                continue

            fills = self.portfolio.execute(intent.action, intent.rule_id, now)
            if not fills:
                continue
            self.state.last_executions[intent.rule_id] = now
            for fill in fills:
                self.state.executions.append(ExecutionRecord(
                    timestamp=now,
                    rule_id=fill.rule_id,
                    symbol=fill.symbol,
                    side=fill.side,
                    notional_usd=fill.notional,
                    realized_pnl=fill.pnl or 0.0,
                ))

        cutoff = now - _EXECUTION_RETENTION
        self.state.executions = [e for e in self.state.executions if e.timestamp >= cutoff]
        self.equity_curve.append(EquityPoint(timestamp=now, value=self.portfolio.total_value()))

    def build_context(self, now: datetime) -> EvalContext:
        return EvalContext(
            now=now,
            portfolio=self.portfolio.snapshot(),
            objectives=self.objectives,
            last_executions=dict(self.state.last_executions),
            last_evaluations=dict(self.state.last_evaluations),
            recent_executions=tuple(self.state.executions),
            market_data=MarketData(
                history={symbol: list(points) for symbol, points in self._history.items()}
            ),
            limits=self.limits,
        )
