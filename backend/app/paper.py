"""Paper trading: simulated market and intent handler for the live loop.

Runs the rule engine end to end without an exchange. Prices follow the
backtester's random walk and auto-executable intents fill against a
SimulatedPortfolio. Intents that need approval (or are dry runs) are
queued as pending approvals instead of touching the portfolio.
"""

import logging
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from backtest.portfolio import SimulatedPortfolio
from backtest.prices import SyntheticPriceGenerator
from rules.models.context import EvalContext, ExecutionRecord, MarketData, PricePoint
from rules.models.intent import Intent
from rules.models.rule import Action, EnterAction, ExitAction, Rule
from rules.risk import BaselineProtectionCheck

from app.service import MarketState

logger = logging.getLogger(__name__)


def _side(action: Action) -> str:
    if isinstance(action, ExitAction) or (isinstance(action, EnterAction) and action.is_sell):
        return "sell"
    return "buy"


class PaperMarket:
    """MarketStateProvider backed by a synthetic random walk."""

    def __init__(
        self,
        portfolio: SimulatedPortfolio,
        generator: SyntheticPriceGenerator,
        history_limit: int = 500,
    ):
        self.portfolio = portfolio
        self.generator = generator
        self._history: dict[str, deque[PricePoint]] = {}
        self._history_limit = history_limit

    async def fetch(self, now: datetime) -> MarketState:
        prices = self.generator.step(self.portfolio.prices)
        self.portfolio.update_prices(prices)
        for symbol, price in prices.items():
            window = self._history.setdefault(symbol, deque(maxlen=self._history_limit))
            window.append(PricePoint(timestamp=now, price=price))

        return MarketState(
            portfolio=self.portfolio.snapshot(),
            market_data=MarketData(history={s: list(points) for s, points in self._history.items()}),
        )


@dataclass
class PendingApproval:
    intent: Intent
    created_at: datetime


class PaperBroker:
    """IntentHandler that fills against the paper portfolio.

    Baseline protection is re-checked against the current portfolio before
    each fill, since earlier intents in the same tick may already have sold.
    """

    def __init__(
        self,
        portfolio: SimulatedPortfolio,
        lookup: Callable[[str], Rule | None],
    ):
        self.portfolio = portfolio
        self._lookup = lookup
        self._baseline_check = BaselineProtectionCheck()
        self.pending: list[PendingApproval] = []

    async def submit(self, intent: Intent, ctx: EvalContext) -> ExecutionRecord | None:
        symbol = intent.symbol or "MULTI"

        if intent.requires_approval or intent.dry_run:
            self.pending.append(PendingApproval(intent=intent, created_at=ctx.now))
            logger.info(
                "Queued %s %s from %s for approval (dry_run=%s)",
                intent.action.type, symbol, intent.rule_id, intent.dry_run,
            )
            return ExecutionRecord(
                timestamp=ctx.now,
                rule_id=intent.rule_id,
                symbol=symbol,
                side=_side(intent.action),
            )

        rule = self._lookup(intent.rule_id)
        if rule is not None:
            current = ctx.model_copy(update={"portfolio": self.portfolio.snapshot()})
            blocked = self._baseline_check(rule, current, intent)
            if blocked is not None:
                logger.info("Dropped %s at fill: %s", intent.rule_id, blocked.reason)
                return None

        fills = self.portfolio.execute(intent.action, intent.rule_id, ctx.now)
        if not fills:
            return None
        return ExecutionRecord(
            timestamp=ctx.now,
            rule_id=intent.rule_id,
            symbol=fills[0].symbol if len(fills) == 1 else symbol,
            side=fills[0].side,
            notional_usd=sum(f.notional for f in fills),
            realized_pnl=sum(f.pnl or 0.0 for f in fills),
        )
