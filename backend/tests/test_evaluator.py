"""Tests for the rule evaluator."""

from datetime import datetime, timedelta, timezone

import pytest

from rules.evaluator import Evaluator, evaluate_rules
from rules.models.context import (
    ApprovalPolicy,
    CoreAsset,
    EvalContext,
    MarketData,
    Objectives,
    PortfolioState,
    PricePoint,
)
from rules.models.rule import ExitAction, IndicatorCondition, IndicatorName, IntervalTrigger, RiskSpec, Rule
from rules.parser import parse_rule
from rules.risk import RiskLayer, apply_risk


NOW = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def make_history(prices: list[float], end: datetime = NOW, step_minutes: int = 15) -> list[PricePoint]:
    n = len(prices)
    return [
        PricePoint(timestamp=end - timedelta(minutes=(n - 1 - i) * step_minutes), price=p)
        for i, p in enumerate(prices)
    ]


FALLING = [60000.0 - i * 500 for i in range(16)]  # RSI 0
RISING = [40000.0 + i * 500 for i in range(16)]  # RSI 100


def make_rule_doc(**overrides) -> dict:
    doc = {
        "id": "rsi-oversold",
        "name": "RSI Oversold",
        "trigger": {"type": "interval", "every": "15m"},
        "conditions": [{"indicator": "rsi", "symbol": "BTC", "period": 14, "lt": 30}],
        "actions": [{"type": "enter", "symbol": "BTC", "allocationPct": 10}],
        "risk": {"cooldownSecs": 14400, "guardrails": ["baselineProtection"]},
    }
    doc.update(overrides)
    return doc


def make_rule(**overrides) -> Rule:
    return parse_rule(make_rule_doc(**overrides))


def make_ctx(
    now: datetime = NOW,
    prices: list[float] = FALLING,
    auto_execute: bool = True,
    core: tuple[str, ...] = ("BTC",),
    **kwargs,
) -> EvalContext:
    objectives = kwargs.pop("objectives", None) or Objectives(
        core_assets={s: CoreAsset(baseline=0.5) for s in core},
        auto_execute_core_assets=auto_execute,
    )
    market_data = kwargs.pop("market_data", None) or MarketData(history={"BTC": make_history(prices)})
    return EvalContext(
        now=now,
        portfolio=PortfolioState(
            balances={"BTC": 1.0, "USDC": 50000.0},
            prices={"BTC": prices[-1], "USDC": 1.0},
        ),
        objectives=objectives,
        market_data=market_data,
        **kwargs,
    )


# ---------------------------------------------------------------------------
# Firing and cooldown
# ---------------------------------------------------------------------------

class TestRSIOversold:
    def test_fires_on_oversold_core_asset(self):
        intents = evaluate_rules([make_rule()], make_ctx())
        assert len(intents) == 1
        intent = intents[0]
        assert intent.rule_id == "rsi-oversold"
        assert intent.action.type == "enter"
        assert intent.symbol == "BTC"
        assert intent.requires_approval is False
        assert intent.dry_run is False
        assert intent.reason == "conditions-met"
        assert intent.created_at == NOW

    def test_does_not_fire_when_overbought(self):
        assert evaluate_rules([make_rule()], make_ctx(prices=RISING)) == []

    def test_cooldown_suppresses_second_fire(self):
        rule = make_rule()
        first = evaluate_rules([rule], make_ctx())
        assert len(first) == 1

        later = make_ctx(
            now=NOW + timedelta(minutes=30),
            last_executions={rule.rule_id: NOW},
            last_evaluations={rule.rule_id: NOW},
        )
        result = Evaluator().evaluate([rule], later)
        assert result.intents == []
        assert result.evaluated == [rule.rule_id]
        assert "Cooldown" in result.skipped[0].reason

        decision = apply_risk(rule, later, first[0])
        assert not decision.allowed
        assert "Cooldown" in decision.reason

    def test_fires_again_after_cooldown(self):
        rule = make_rule()
        later = make_ctx(
            now=NOW + timedelta(hours=5),
            last_executions={rule.rule_id: NOW},
            last_evaluations={rule.rule_id: NOW},
        )
        later = later.model_copy(update={
            "market_data": MarketData(history={"BTC": make_history(FALLING, end=later.now)}),
        })
        assert len(evaluate_rules([rule], later)) == 1

    def test_deterministic(self):
        rules = [make_rule(), make_rule(id="other", name="Other")]
        ctx = make_ctx()
        assert evaluate_rules(rules, ctx) == evaluate_rules(rules, ctx)

    def test_context_not_mutated(self):
        ctx = make_ctx()
        before = ctx.model_dump()
        evaluate_rules([make_rule()], ctx)
        assert ctx.model_dump() == before
        assert ctx.last_executions == {}


# ---------------------------------------------------------------------------
# Triggers
# ---------------------------------------------------------------------------

class TestTriggers:
    def test_interval_not_due(self):
        rule = make_rule()
        ctx = make_ctx(last_evaluations={rule.rule_id: NOW - timedelta(minutes=5)})
        result = Evaluator().evaluate([rule], ctx)
        assert result.intents == []
        assert result.evaluated == []
        assert result.skipped[0].reason == "trigger not due"

    def test_interval_due_exactly(self):
        rule = make_rule()
        ctx = make_ctx(last_evaluations={rule.rule_id: NOW - timedelta(minutes=15)})
        assert len(evaluate_rules([rule], ctx)) == 1

    def test_event_trigger(self):
        rule = make_rule(trigger={"type": "event", "name": "deposit"})
        assert evaluate_rules([rule], make_ctx()) == []
        assert len(evaluate_rules([rule], make_ctx(events=frozenset({"deposit"})))) == 1

    def test_disabled_rule_ignored(self):
        result = Evaluator().evaluate([make_rule(enabled=False)], make_ctx())
        assert result.intents == []
        assert result.evaluated == []


# ---------------------------------------------------------------------------
# Conditions
# ---------------------------------------------------------------------------

class TestConditions:
    def test_data_starved_rule_does_not_block_others(self):
        starved = make_rule(
            id="eth-rsi",
            conditions=[{"indicator": "rsi", "symbol": "ETH", "lt": 30}],
        )
        result = Evaluator().evaluate([starved, make_rule()], make_ctx())
        assert [i.rule_id for i in result.intents] == ["rsi-oversold"]
        skipped = {s.rule_id: s.reason for s in result.skipped}
        assert "unavailable" in skipped["eth-rsi"]

    def test_erroring_rule_does_not_block_others(self):
        # Built without validation: sma with no period cannot be computed
        broken = Rule(
            id="broken",
            name="Broken",
            trigger=IntervalTrigger(every="15m"),
            conditions=[IndicatorCondition.model_construct(indicator=IndicatorName.SMA, symbol="BTC", gt=1)],
            actions=[ExitAction(symbol="BTC", allocation_pct=5)],
        )
        result = Evaluator().evaluate([broken, make_rule()], make_ctx())
        assert [i.rule_id for i in result.intents] == ["rsi-oversold"]
        assert {s.rule_id: s.reason for s in result.skipped}["broken"] == "evaluation error"

    def test_erroring_cooldown_does_not_block_others(self):
        broken = Rule(
            id="bad",
            name="Bad Cooldown",
            trigger=IntervalTrigger(every="15m"),
            conditions=[IndicatorCondition(indicator=IndicatorName.RSI, symbol="BTC", lt=30)],
            actions=[ExitAction(symbol="BTC", allocation_pct=5)],
            risk=RiskSpec.model_construct(cooldown_secs=float("nan")),
        )
        valid = make_rule(id="r2")
        ctx = make_ctx(last_executions={"bad": NOW - timedelta(minutes=5)})

        result = Evaluator().evaluate([broken, valid], ctx)

        assert [i.rule_id for i in result.intents] == ["r2"]
        assert "bad" in result.evaluated
        assert {s.rule_id: s.reason for s in result.skipped}["bad"] == "evaluation error"

    def test_all_conditions_must_hold(self):
        rule = make_rule(conditions=[
            {"indicator": "rsi", "symbol": "BTC", "lt": 30},
            {"portfolioExposure": {"symbol": "BTC", "gtPct": 90}},
        ])
        result = Evaluator().evaluate([rule], make_ctx())
        assert result.intents == []
        assert "condition 1 not met" in result.skipped[0].reason

    def test_portfolio_exposure(self):
        # BTC 52500 vs 50000 USDC -> ~51%
        rule = make_rule(conditions=[{"portfolioExposure": {"symbol": "BTC", "gtPct": 50, "ltPct": 60}}])
        assert len(evaluate_rules([rule], make_ctx())) == 1

    def test_price_change_from_history(self):
        # 60m window over 15m steps: 54500 -> 52500
        rule = make_rule(conditions=[{"priceChangePct": {"symbol": "BTC", "windowMins": 60, "lt": -2}}])
        assert len(evaluate_rules([rule], make_ctx())) == 1

    def test_price_change_falls_back_to_precomputed(self):
        rule = make_rule(conditions=[{"priceChangePct": {"symbol": "BTC", "windowMins": 1440, "gt": 5}}])
        ctx = make_ctx(market_data=MarketData(price_change_pct={"btc": 7.5}))
        assert len(evaluate_rules([rule], ctx)) == 1

    def test_price_change_unavailable(self):
        rule = make_rule(conditions=[{"priceChangePct": {"symbol": "BTC", "windowMins": 1440, "gt": 5}}])
        result = Evaluator().evaluate([rule], make_ctx())
        assert result.intents == []
        assert "unavailable" in result.skipped[0].reason


# ---------------------------------------------------------------------------
# Approval routing
# ---------------------------------------------------------------------------

class TestApproval:
    def test_non_core_asset_requires_approval(self):
        intent = evaluate_rules([make_rule()], make_ctx(core=()))[0]
        assert intent.requires_approval is True
        assert intent.dry_run is True

    def test_auto_execute_off_requires_approval(self):
        intent = evaluate_rules([make_rule()], make_ctx(auto_execute=False))[0]
        assert intent.requires_approval is True

    def test_large_trade_requires_approval(self):
        objectives = Objectives(
            core_assets={"BTC": CoreAsset(baseline=0.5)},
            auto_execute_core_assets=True,
            approvals_required=ApprovalPolicy(large_trade_usd=5000),
        )
        intent = evaluate_rules([make_rule()], make_ctx(objectives=objectives))[0]
        assert intent.requires_approval is True

    def test_dry_run_default(self):
        objectives = Objectives(
            core_assets={"BTC": CoreAsset(baseline=0.5)},
            auto_execute_core_assets=True,
            dry_run_default=True,
        )
        intent = evaluate_rules([make_rule()], make_ctx(objectives=objectives))[0]
        assert intent.requires_approval is False
        assert intent.dry_run is True

    def test_rebalance_requires_approval(self):
        rule = make_rule(actions=[{"type": "rebalance", "target": {"BTC": 50, "USDC": 50}}])
        intent = evaluate_rules([rule], make_ctx())[0]
        assert intent.requires_approval is True


# ---------------------------------------------------------------------------
# Risk integration
# ---------------------------------------------------------------------------

class TestRiskIntegration:
    def test_blocked_candidate_reported(self):
        rule = make_rule(actions=[{"type": "exit", "symbol": "BTC", "allocationPct": 90}])
        result = Evaluator().evaluate([rule], make_ctx())
        assert result.intents == []
        assert len(result.blocked) == 1
        assert result.blocked[0].decision.check == "baseline_protection"

    def test_one_action_blocked_other_kept(self):
        rule = make_rule(actions=[
            {"type": "exit", "symbol": "BTC", "allocationPct": 90},
            {"type": "enter", "symbol": "BTC", "allocationPct": 5},
        ])
        result = Evaluator().evaluate([rule], make_ctx())
        assert [i.action.type for i in result.intents] == ["enter"]
        assert len(result.blocked) == 1

    def test_custom_risk_layer(self):
        rule = make_rule(actions=[{"type": "exit", "symbol": "BTC", "allocationPct": 90}])
        intents = evaluate_rules([rule], make_ctx(), risk_layer=RiskLayer([]))
        assert len(intents) == 1


# ---------------------------------------------------------------------------
# Parallel evaluation
# ---------------------------------------------------------------------------

class TestParallel:
    @pytest.mark.parametrize("workers", [2, 4, 8])
    def test_same_output_as_sequential(self, workers):
        rules = [
            make_rule(id=f"r{i}", name=f"Rule {i}", risk={"guardrails": []})
            for i in range(6)
        ]
        rules.insert(3, make_rule(id="eth", conditions=[{"indicator": "rsi", "symbol": "ETH", "lt": 30}]))
        ctx = make_ctx()
        sequential = Evaluator().evaluate(rules, ctx)
        parallel = Evaluator(max_workers=workers).evaluate(rules, ctx)
        assert parallel.intents == sequential.intents
        assert parallel.evaluated == sequential.evaluated
        assert [i.rule_id for i in parallel.intents] == [f"r{i}" for i in range(6)]
