"""Tests for price sources, the replay engine and the backtest runner."""

import random
from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from backtest import (
    BacktestCancelled,
    BacktestConfig,
    BacktestEngine,
    BacktestRunner,
    InMemoryResultStore,
    backtest_rule,
    batch_backtest,
)
from backtest.config import BacktestSettings
from backtest.portfolio import SimulatedPortfolio
from backtest.prices import HistoricalPriceSource, PriceSnapshot, SyntheticPriceGenerator
from rules.evaluator import Evaluator
from rules.models.context import CoreAsset, Objectives, PricePoint
from rules.parser import parse_rule
from rules.templates import profit_taking_rules


START = datetime(2025, 1, 1, tzinfo=timezone.utc)
END = START + timedelta(days=1)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def make_config(**overrides) -> BacktestConfig:
    fields = dict(
        start_date=START,
        end_date=END,
        initial_balances={"BTC": 1.0, "USDC": 50000.0},
        initial_prices={"BTC": 50000.0, "USDC": 1.0},
        objectives=Objectives(core_assets={"BTC": CoreAsset(baseline=0.5)}, auto_execute_core_assets=True),
    )
    fields.update(overrides)
    return BacktestConfig(**fields)


def flat_source() -> SyntheticPriceGenerator:
    return SyntheticPriceGenerator(seed=0, default_volatility=0.0)


def seeded_source(seed: int = 42) -> SyntheticPriceGenerator:
    return SyntheticPriceGenerator(seed=seed, volatility={"BTC": 0.02}, pinned=("USDC",))


def make_rule(**overrides):
    doc = {
        "id": "rsi-oversold",
        "name": "RSI Oversold",
        "trigger": {"type": "interval", "every": "15m"},
        "conditions": [{"indicator": "rsi", "symbol": "BTC", "lt": 30}],
        "actions": [{"type": "enter", "symbol": "BTC", "allocationPct": 10}],
        "risk": {"cooldownSecs": 14400, "guardrails": ["baselineProtection"]},
    }
    doc.update(overrides)
    return parse_rule(doc)


def accumulate_rule(**overrides):
    """Buys 1% of equity every hour while BTC is under 90% of the portfolio."""
    fields = dict(
        id="accumulate",
        name="Accumulate",
        conditions=[{"portfolioExposure": {"symbol": "BTC", "ltPct": 90}}],
        actions=[{"type": "enter", "symbol": "BTC", "allocationPct": 1}],
        risk={"cooldownSecs": 3600, "guardrails": ["baselineProtection"]},
    )
    fields.update(overrides)
    return make_rule(**fields)


def trim_rule(pct: float = 10, **overrides):
    """Sells pct of the BTC holding every step."""
    fields = dict(
        id="trim",
        name="Trim",
        conditions=[{"portfolioExposure": {"symbol": "BTC", "gtPct": 0}}],
        actions=[{"type": "exit", "symbol": "BTC", "allocationPct": pct}],
        risk={"guardrails": ["baselineProtection"]},
    )
    fields.update(overrides)
    return make_rule(**fields)


# ---------------------------------------------------------------------------
# Price sources
# ---------------------------------------------------------------------------

class TestSyntheticPrices:
    def test_step_count_and_timestamps(self):
        path = list(flat_source().snapshots(START, END, {"BTC": 100.0}, timedelta(minutes=15)))
        assert len(path) == 96
        assert path[0].timestamp == START
        assert path[-1].timestamp == END - timedelta(minutes=15)

    def test_partial_day_rounds_up(self):
        end = START + timedelta(hours=36)
        path = list(flat_source().snapshots(START, end, {"BTC": 100.0}, timedelta(minutes=15)))
        assert len(path) == 192

    def test_uneven_step_covers_whole_day(self):
        # 1440 / 7 leaves a remainder; the last step still starts before END
        step = timedelta(minutes=7)
        path = list(flat_source().snapshots(START, END, {"BTC": 100.0}, step))
        assert len(path) == 206
        assert path[-1].timestamp < END <= path[-1].timestamp + step

    @pytest.mark.parametrize("step", [timedelta(0), timedelta(minutes=-15)])
    def test_non_positive_step_rejected(self, step):
        with pytest.raises(ValueError):
            list(flat_source().snapshots(START, END, {"BTC": 100.0}, step))

    def test_zero_volatility_is_flat(self):
        path = list(flat_source().snapshots(START, END, {"BTC": 100.0, "XRP": 0.5}, timedelta(hours=1)))
        assert all(s.prices == {"BTC": 100.0, "XRP": 0.5} for s in path)

    def test_same_seed_same_path(self):
        args = (START, END, {"BTC": 50000.0, "USDC": 1.0}, timedelta(minutes=15))
        assert list(seeded_source(7).snapshots(*args)) == list(seeded_source(7).snapshots(*args))
        assert list(seeded_source(7).snapshots(*args)) != list(seeded_source(8).snapshots(*args))

    def test_moves_bounded_by_volatility(self):
        path = list(seeded_source().snapshots(START, END, {"BTC": 50000.0}, timedelta(minutes=15)))
        prev = 50000.0
        for snapshot in path:
            price = snapshot.prices["BTC"]
            assert abs(price / prev - 1) <= 0.02 + 1e-12
            prev = price

    def test_pinned_numeraire(self):
        path = list(seeded_source().snapshots(START, END, {"BTC": 50000.0, "USDC": 1.0}, timedelta(minutes=15)))
        assert {s.prices["USDC"] for s in path} == {1.0}

    def test_rng_and_seed_exclusive(self):
        with pytest.raises(ValueError):
            SyntheticPriceGenerator(rng=random.Random(1), seed=1)


class TestHistoricalPrices:
    def test_forward_fills(self):
        history = {
            "btc": [
                PricePoint(timestamp=START + timedelta(minutes=30), price=110.0),
                PricePoint(timestamp=START, price=100.0),
            ],
        }
        source = HistoricalPriceSource(history)
        path = list(source.snapshots(START, START + timedelta(hours=1), {"XRP": 0.5}, timedelta(minutes=15)))
        assert [s.prices["BTC"] for s in path] == [100.0, 100.0, 110.0, 110.0]
        assert all(s.prices["XRP"] == 0.5 for s in path)

    def test_falls_back_before_first_observation(self):
        history = {"BTC": [PricePoint(timestamp=START + timedelta(minutes=15), price=110.0)]}
        path = list(HistoricalPriceSource(history).snapshots(
            START, START + timedelta(minutes=30), {"BTC": 100.0}, timedelta(minutes=15)
        ))
        assert [s.prices["BTC"] for s in path] == [100.0, 110.0]

    def test_non_positive_step_rejected(self):
        source = HistoricalPriceSource({"BTC": []})
        with pytest.raises(ValueError):
            list(source.snapshots(START, END, {"BTC": 100.0}, timedelta(0)))


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class TestEngine:
    def test_recheck_against_post_fill_portfolio(self):
        # Two 30% exits pass against the same pre-trade snapshot; after the
        # first fills, the second would breach the 0.6 floor.
        rule = trim_rule(actions=[
            {"type": "exit", "symbol": "BTC", "allocationPct": 30},
            {"type": "exit", "symbol": "BTC", "allocationPct": 30},
        ])
        portfolio = SimulatedPortfolio(balances={"BTC": 1.0}, prices={"BTC": 100000.0})
        engine = BacktestEngine(
            [rule],
            portfolio,
            objectives=Objectives(core_assets={"BTC": CoreAsset(baseline=0.6)}, auto_execute_core_assets=True),
        )
        engine.process_snapshot(PriceSnapshot(timestamp=START, prices={"BTC": 100000.0}))
        assert len(portfolio.trades) == 1
        assert portfolio.holding("BTC") == pytest.approx(0.7)
        assert engine.state.last_executions == {"trim": START}
        assert engine.state.last_evaluations == {"trim": START}
        assert len(engine.state.executions) == 1

    def test_equity_curve_per_step(self):
        portfolio = SimulatedPortfolio(balances={"BTC": 1.0}, prices={"BTC": 100.0})
        engine = BacktestEngine([make_rule()], portfolio)
        engine.run(flat_source().snapshots(START, END, {"BTC": 100.0}, timedelta(hours=1)))
        assert engine.steps == 24
        assert len(engine.equity_curve) == 24
        assert {p.value for p in engine.equity_curve} == {100.0}

    def test_market_history_bounded(self):
        portfolio = SimulatedPortfolio(balances={"BTC": 1.0}, prices={"BTC": 100.0})
        engine = BacktestEngine([make_rule()], portfolio, history_limit=10)
        engine.run(flat_source().snapshots(START, END, {"BTC": 100.0}, timedelta(minutes=15)))
        ctx = engine.build_context(END)
        assert len(ctx.market_data.series("BTC")) == 10


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------

class TestRunRule:
    def test_flat_path_no_trades(self):
        result = backtest_rule(make_rule(), make_config(), price_source=flat_source())
        metrics = result.metrics
        assert metrics.total_trades == 0
        assert metrics.total_return == 0.0
        assert metrics.sharpe_ratio == 0.0
        assert metrics.max_drawdown == 0.0
        assert result.steps == 96
        assert result.initial_value == pytest.approx(100000.0)
        assert result.final_value == pytest.approx(100000.0)
        assert result.final_portfolio == {"BTC": 1.0, "USDC": 50000.0}
        assert len(result.run_id) == 16

    def test_trades_recorded(self):
        result = backtest_rule(accumulate_rule(), make_config(), price_source=flat_source())
        # hourly cooldown over one day
        assert result.metrics.total_trades == 24
        assert all(t.side == "buy" for t in result.trades)
        assert result.final_portfolio["BTC"] > 1.0
        assert result.final_value == pytest.approx(100000.0)

    def test_deterministic_with_seed(self):
        rule = accumulate_rule()
        a = backtest_rule(rule, make_config(), price_source=seeded_source())
        b = backtest_rule(rule, make_config(), price_source=seeded_source())
        assert a.trades == b.trades
        assert a.final_portfolio == b.final_portfolio
        assert a.metrics.sharpe_ratio == b.metrics.sharpe_ratio
        assert a.metrics.total_return == b.metrics.total_return

    def test_baseline_never_breached(self):
        checkpoints = []
        runner = BacktestRunner(make_config(), price_source=seeded_source())
        result = runner.run_rule(trim_rule(), on_step=checkpoints.append)
        assert result.metrics.total_trades > 0
        assert result.final_portfolio["BTC"] >= 0.5
        assert len(checkpoints) == result.steps

    def test_saved_to_store(self):
        store = InMemoryResultStore()
        result = backtest_rule(make_rule(), make_config(), price_source=flat_source(), store=store)
        assert store.results == [result]
        assert store.for_rule("rsi-oversold") == [result]

    def test_cancellation(self):
        calls = []

        def should_cancel():
            calls.append(1)
            return len(calls) > 5

        runner = BacktestRunner(make_config(), price_source=flat_source())
        with pytest.raises(BacktestCancelled) as exc_info:
            runner.run_rule(make_rule(), should_cancel=should_cancel)
        assert exc_info.value.step == 5

    def test_on_step_checkpoints(self):
        checkpoints = []
        runner = BacktestRunner(make_config(), price_source=flat_source())
        runner.run_rule(make_rule(), on_step=checkpoints.append)
        assert [c.step for c in checkpoints] == list(range(1, 97))
        assert checkpoints[0].timestamp == START
        assert checkpoints[-1].equity == pytest.approx(100000.0)

    def test_config_from_settings(self):
        settings = BacktestSettings(step_minutes=60, annualization_periods=365)
        config = BacktestConfig.from_settings(
            settings,
            start_date=START,
            end_date=END,
            initial_balances={"USDC": 1000.0},
            initial_prices={"BTC": 100.0},
        )
        assert config.step == timedelta(hours=1)
        assert config.annualization_periods == 365
        result = backtest_rule(make_rule(), config, price_source=flat_source())
        assert result.steps == 24

    @pytest.mark.parametrize("minutes", [0, -15])
    def test_non_positive_step_minutes_rejected(self, minutes):
        with pytest.raises(ValueError):
            make_config(step_minutes=minutes)
        with pytest.raises(ValidationError):
            BacktestSettings(step_minutes=minutes)


class _ExplodingEvaluator(Evaluator):
    def evaluate(self, rules, ctx):
        if any(r.rule_id == "bad" for r in rules):
            raise RuntimeError("boom")
        return super().evaluate(rules, ctx)


class TestBatch:
    def test_failure_isolated(self):
        runner = BacktestRunner(make_config(), price_source=seeded_source(), evaluator=_ExplodingEvaluator())
        results = runner.run_batch([make_rule(), make_rule(id="bad", name="Bad"), accumulate_rule()])
        assert sorted(r.rule_id for r in results) == ["accumulate", "rsi-oversold"]

    def test_ranked_by_sharpe(self):
        rules = [make_rule(), accumulate_rule(), trim_rule()]
        results = batch_backtest(rules, make_config(), price_source=seeded_source())
        sharpes = [r.metrics.sharpe_ratio for r in results]
        assert len(results) == 3
        assert sharpes == sorted(sharpes, reverse=True)

    def test_rules_share_one_path(self):
        runner = BacktestRunner(make_config(), price_source=seeded_source())
        first = runner.price_path()
        runner.run_batch([make_rule(), accumulate_rule()])
        assert runner.price_path() is first

    def test_cancellation_stops_batch(self):
        runner = BacktestRunner(make_config(), price_source=flat_source())
        with pytest.raises(BacktestCancelled):
            runner.run_batch([make_rule(), accumulate_rule()], should_cancel=lambda: True)

    def test_profit_taking_templates_respect_baseline(self):
        config = make_config(
            initial_balances={"BTC": 1.0, "XRP": 10000.0, "USDC": 10000.0},
            initial_prices={"BTC": 50000.0, "XRP": 0.5, "USDC": 1.0},
            objectives=Objectives(
                core_assets={"BTC": CoreAsset(baseline=0.5), "XRP": CoreAsset(baseline=8000)},
                auto_execute_core_assets=True,
            ),
            end_date=START + timedelta(days=5),
        )
        source = SyntheticPriceGenerator(seed=3, volatility={"BTC": 0.02, "XRP": 0.03}, pinned=("USDC",))
        results = batch_backtest(profit_taking_rules(profit_target_pct=2.0), config, price_source=source)
        assert len(results) == 4
        for result in results:
            assert result.final_portfolio["BTC"] >= 0.5
            assert result.final_portfolio["XRP"] >= 8000
