"""Rule engine service: the caller side of the pure rules core.

Each tick:
1. Fetch portfolio + market data from the MarketStateProvider
2. Assemble an immutable EvalContext with the ledger's bookkeeping
3. Run the Evaluator off the event loop
4. Record evaluated rules, submit accepted intents to the IntentHandler
5. For every intent the handler commits, update last executions

Bookkeeping is only written after the handler commits, so a rule cannot
double-fire from within one tick.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Protocol, runtime_checkable

from rules.evaluator import Evaluator, TickResult
from rules.models.context import (
    EvalContext,
    ExecutionRecord,
    MarketData,
    PortfolioState,
    RiskLimits,
)
from rules.models.intent import Intent

from app.config import Settings, get_settings
from app.rulebook import RuleBook, load_rule_book
from app.ticker import PeriodicTask

logger = logging.getLogger(__name__)

_EXECUTION_RETENTION = timedelta(days=1, hours=2)


@dataclass
class MarketState:
    portfolio: PortfolioState
    market_data: MarketData = field(default_factory=MarketData)
    events: frozenset[str] = frozenset()


@runtime_checkable
class MarketStateProvider(Protocol):
    async def fetch(self, now: datetime) -> MarketState:
        ...


@runtime_checkable
class IntentHandler(Protocol):
    """Persists or executes an intent.

    Returns the execution record when the intent was committed (queued for
    approval or executed), or None when it was discarded.
    """

    async def submit(self, intent: Intent, ctx: EvalContext) -> ExecutionRecord | None:
        ...


@dataclass
class ExecutionLedger:
    """Caller-owned bookkeeping fed into every context."""

    last_executions: dict[str, datetime] = field(default_factory=dict)
    last_evaluations: dict[str, datetime] = field(default_factory=dict)
    executions: list[ExecutionRecord] = field(default_factory=list)

    def record(self, record: ExecutionRecord) -> None:
        self.executions.append(record)
        self.last_executions[record.rule_id] = record.timestamp

    def prune(self, now: datetime) -> None:
        cutoff = now - _EXECUTION_RETENTION
        self.executions = [e for e in self.executions if e.timestamp >= cutoff]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RuleEngineService:
    """Periodic rule evaluation against live state."""

    def __init__(
        self,
        provider: MarketStateProvider,
        handler: IntentHandler,
        rule_book: RuleBook | None = None,
        settings: Settings | None = None,
        evaluator: Evaluator | None = None,
        ledger: ExecutionLedger | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.settings = settings or get_settings()
        self.provider = provider
        self.handler = handler
        self.rule_book = rule_book if rule_book is not None else load_rule_book(self.settings.rules_path)
        self.evaluator = evaluator or Evaluator(max_workers=self.settings.evaluator_workers)
        self.ledger = ledger or ExecutionLedger()
        self._clock = clock
        self._limits = RiskLimits(
            max_trades_per_hour=self.settings.max_trades_per_hour,
            default_daily_loss_pct=self.settings.default_daily_loss_pct,
        )
        self._ticker = PeriodicTask(self.tick, self.settings.tick_interval_secs, name="rule-engine")

    async def start(self) -> None:
        self._ticker.start()

    async def stop(self, timeout: float | None = 30.0) -> None:
        await self._ticker.stop(timeout=timeout)

    def reload_rules(self) -> None:
        """Re-read the rule book from disk; keeps the old one on error."""
        try:
            self.rule_book = load_rule_book(self.settings.rules_path)
        except Exception:
            logger.error("Rule book reload failed, keeping previous rules", exc_info=True)

    def build_context(self, now: datetime, state: MarketState) -> EvalContext:
        return EvalContext(
            now=now,
            portfolio=state.portfolio,
            objectives=self.rule_book.objectives,
            last_executions=dict(self.ledger.last_executions),
            last_evaluations=dict(self.ledger.last_evaluations),
            recent_executions=tuple(self.ledger.executions),
            market_data=state.market_data,
            limits=self._limits,
            events=state.events,
        )

    async def tick(self) -> TickResult:
        if self.settings.kill_switch:
            logger.warning("Kill switch enabled, skipping tick")
            return TickResult()

        now = self._clock()
        rules = self.rule_book.enabled_rules()
        if not rules:
            logger.debug("No enabled rules")
            return TickResult()

        state = await self.provider.fetch(now)
        ctx = self.build_context(now, state)
        result = await asyncio.to_thread(self.evaluator.evaluate, rules, ctx)

        for rule_id in result.evaluated:
            self.ledger.last_evaluations[rule_id] = now

        for intent in result.intents:
            if self.settings.dry_run and not intent.dry_run:
                intent = intent.model_copy(update={"dry_run": True})
            try:
                record = await self.handler.submit(intent, ctx)
            except Exception:
                logger.error("Intent handler failed for %s", intent.rule_id, exc_info=True)
                continue
            if record is not None:
                self.ledger.record(record)
                logger.info(
                    "Committed %s %s from %s (approval=%s dry_run=%s)",
                    record.side, record.symbol, intent.rule_id,
                    intent.requires_approval, intent.dry_run,
                )

        self.ledger.prune(now)
        return result
