"""BacktestRunner: orchestrates replay, statistics and result storage.

Completely independent of app/. Uses:
- backtest/prices for the snapshot path (historical or seeded synthetic)
- backtest/engine for per-rule replay through the live Evaluator
- a BacktestResultStore supplied by the caller for persistence

Batch runs replay every rule over the same materialized path, isolate
per-rule failures, and rank survivors by Sharpe ratio (descending).
"""

from __future__ import annotations

import hashlib
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Protocol, Sequence, runtime_checkable

from rules.evaluator import Evaluator
from rules.models.context import Objectives, RiskLimits
from rules.models.rule import Rule

from backtest.config import BacktestSettings, get_backtest_settings
from backtest.engine import BacktestCancelled, BacktestEngine, StepCheckpoint
from backtest.portfolio import SimulatedPortfolio
from backtest.prices import PriceSnapshot, PriceSource, SyntheticPriceGenerator
from backtest.stats import BacktestResult, StatisticsCalculator

logger = logging.getLogger(__name__)


@dataclass
class BacktestConfig:
    """Configuration for a backtest run."""

    start_date: datetime
    end_date: datetime
    initial_balances: dict[str, float]
    initial_prices: dict[str, float]
    objectives: Objectives = field(default_factory=Objectives)
    limits: RiskLimits = field(default_factory=RiskLimits)
    step_minutes: int = 15
    annualization_periods: int = 252
    numeraire: str = "USDC"
    history_limit: int = 500

    def __post_init__(self):
        if self.step_minutes <= 0:
            raise ValueError(f"step_minutes must be positive, got {self.step_minutes}")

    @classmethod
    def from_settings(
        cls,
        settings: BacktestSettings | None = None,
        **kwargs,
    ) -> "BacktestConfig":
        """Fill replay defaults from BacktestSettings."""
        settings = settings or get_backtest_settings()
        kwargs.setdefault("step_minutes", settings.step_minutes)
        kwargs.setdefault("annualization_periods", settings.annualization_periods)
        kwargs.setdefault("numeraire", settings.numeraire)
        kwargs.setdefault("history_limit", settings.history_limit)
        return cls(**kwargs)

    @property
    def step(self) -> timedelta:
        return timedelta(minutes=self.step_minutes)


def generate_run_id(rule: Rule, config: BacktestConfig) -> str:
    """Generate a unique run ID from rule + config + timestamp."""
    key = (
        f"{rule.rule_id}"
        f":{config.start_date.isoformat()}"
        f":{config.end_date.isoformat()}"
        f":{sorted(config.initial_balances.items())}"
        f":{datetime.now(timezone.utc).isoformat()}"
    )
    return hashlib.sha256(key.encode()).hexdigest()[:16]


@runtime_checkable
class BacktestResultStore(Protocol):
    """Caller-owned persistence for finished results."""

    def save(self, result: BacktestResult) -> None:
        ...


class InMemoryResultStore:
    """Result store that keeps everything in a list."""

    def __init__(self):
        self.results: list[BacktestResult] = []

    def save(self, result: BacktestResult) -> None:
        self.results.append(result)

    def for_rule(self, rule_id: str) -> list[BacktestResult]:
        return [r for r in self.results if r.rule_id == rule_id]


def default_price_source(settings: BacktestSettings | None = None) -> SyntheticPriceGenerator:
    """Synthetic generator configured from BacktestSettings."""
    settings = settings or get_backtest_settings()
    return SyntheticPriceGenerator(
        seed=settings.seed,
        volatility=settings.synthetic_volatility,
        default_volatility=settings.default_volatility,
        pinned=(settings.numeraire,),
    )


class BacktestRunner:
    """Replay rules over a price path and compute their metrics."""

    def __init__(
        self,
        config: BacktestConfig,
        price_source: PriceSource | None = None,
        store: BacktestResultStore | None = None,
        evaluator: Evaluator | None = None,
    ):
        self.config = config
        self._source = price_source or default_price_source()
        self._store = store
        self._evaluator = evaluator or Evaluator()
        self._path: list[PriceSnapshot] | None = None

    def price_path(self) -> list[PriceSnapshot]:
        """Materialize the snapshot path once; every rule replays the same one."""
        if self._path is None:
            self._path = list(self._source.snapshots(
                self.config.start_date,
                self.config.end_date,
                self.config.initial_prices,
                self.config.step,
            ))
            logger.info(
                f"Price path: {len(self._path):,} steps of {self.config.step_minutes}m "
                f"{self.config.start_date:%Y-%m-%d} → {self.config.end_date:%Y-%m-%d}"
            )
        return self._path

    def run_rule(
        self,
        rule: Rule,
        should_cancel: Callable[[], bool] | None = None,
        on_step: Callable[[StepCheckpoint], None] | None = None,
    ) -> BacktestResult:
        """Backtest a single rule and persist the result.

        Raises:
            BacktestCancelled: If should_cancel() fires mid-replay.
        """
        start_time = time.time()
        config = self.config
        run_id = generate_run_id(rule, config)
        logger.info(f"Backtesting {rule.name} run={run_id}")

        portfolio = SimulatedPortfolio(
            balances=dict(config.initial_balances),
            prices=dict(config.initial_prices),
            numeraire=config.numeraire,
        )
        initial_value = portfolio.total_value()

        engine = BacktestEngine(
            rules=[rule],
            portfolio=portfolio,
            objectives=config.objectives,
            limits=config.limits,
            evaluator=self._evaluator,
            history_limit=config.history_limit,
        )
        engine.run(self.price_path(), should_cancel=should_cancel, on_step=on_step)

        metrics = StatisticsCalculator(config.annualization_periods).calculate(
            equity_curve=engine.equity_curve,
            trades=portfolio.trades,
            closed_lots=portfolio.closed_lots,
            initial_value=initial_value,
        )
        result = BacktestResult(
            rule_id=rule.rule_id,
            rule_name=rule.name,
            start_date=config.start_date,
            end_date=config.end_date,
            metrics=metrics,
            trades=list(portfolio.trades),
            final_portfolio=dict(portfolio.balances),
            initial_value=initial_value,
            final_value=portfolio.total_value(),
            steps=engine.steps,
            run_id=run_id,
        )

        if self._store is not None:
            self._store.save(result)

        elapsed = time.time() - start_time
        logger.info(
            f"Backtest {rule.name} completed in {elapsed:.1f}s: "
            f"return={metrics.total_return:.2f}% sharpe={metrics.sharpe_ratio:.2f} "
            f"max_dd={metrics.max_drawdown * 100:.2f}% trades={metrics.total_trades}"
        )
        return result

    def run_batch(
        self,
        rules: Sequence[Rule],
        should_cancel: Callable[[], bool] | None = None,
    ) -> list[BacktestResult]:
        """Backtest every rule; failures are logged and excluded.

        Cancellation is not a failure: BacktestCancelled stops the batch.

        Returns:
            Surviving results ranked by Sharpe ratio, highest first
        """
        results = []
        for rule in rules:
            try:
                results.append(self.run_rule(rule, should_cancel=should_cancel))
            except BacktestCancelled:
                logger.warning(f"Batch cancelled during {rule.name}")
                raise
            except Exception:
                logger.error(f"Backtest failed for {rule.name}", exc_info=True)

        results.sort(key=lambda r: r.metrics.sharpe_ratio, reverse=True)
        logger.info(f"Batch complete: {len(results)}/{len(rules)} rules succeeded")
        return results


def backtest_rule(
    rule: Rule,
    config: BacktestConfig,
    price_source: PriceSource | None = None,
    store: BacktestResultStore | None = None,
) -> BacktestResult:
    return BacktestRunner(config, price_source=price_source, store=store).run_rule(rule)


def batch_backtest(
    rules: Sequence[Rule],
    config: BacktestConfig,
    price_source: PriceSource | None = None,
    store: BacktestResultStore | None = None,
) -> list[BacktestResult]:
    return BacktestRunner(config, price_source=price_source, store=store).run_batch(rules)
