"""Rule evaluator.

Turns (rules, EvalContext) into the list of accepted Intents for one tick.

Processing order for each enabled rule (in stored order):
1. Skip unless the trigger is due (interval elapsed since last evaluation,
   or the named event is present)
2. Skip while the rule is cooling down
3. AND-evaluate conditions in order; a data-starved or false condition
   means the rule does not fire (never raises)
4. Build one candidate Intent per action
5. Drop candidates the risk layer blocks
6. Route approval: only core assets with auto-execution enabled skip it

The evaluator never mutates the context. Recording last evaluations and
executions is the caller's job, after it commits the returned intents.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Iterable

from rules.indicators import compute_indicator, portfolio_exposure_pct, price_change_pct
from rules.models.context import EvalContext
from rules.models.intent import Intent, RiskDecision
from rules.models.rule import (
    Action,
    Condition,
    EventTrigger,
    IndicatorCondition,
    PriceChangeCondition,
    Rule,
)
from rules.risk import RiskLayer, cooldown_decision, trade_notional

logger = logging.getLogger(__name__)


class IndicatorUnavailable(Exception):
    """A condition could not be computed from the supplied data."""


@dataclass
class SkippedRule:
    rule_id: str
    reason: str


@dataclass
class BlockedIntent:
    intent: Intent
    decision: RiskDecision


@dataclass
class TickResult:
    """Everything one tick produced.

    Attributes:
        intents: Accepted intents, in rule order then action order.
        evaluated: Rule ids whose trigger was due this tick.
        skipped: Rules that did not fire, with the reason.
        blocked: Candidates the risk layer rejected.
    """

    intents: list[Intent] = field(default_factory=list)
    evaluated: list[str] = field(default_factory=list)
    skipped: list[SkippedRule] = field(default_factory=list)
    blocked: list[BlockedIntent] = field(default_factory=list)

    def merge(self, other: "TickResult") -> None:
        self.intents.extend(other.intents)
        self.evaluated.extend(other.evaluated)
        self.skipped.extend(other.skipped)
        self.blocked.extend(other.blocked)


class Evaluator:
    """Evaluate rules against an immutable per-tick context."""

    def __init__(self, risk_layer: RiskLayer | None = None, max_workers: int = 1):
        """
        Args:
            risk_layer: Guardrail chain; defaults to the standard checks
            max_workers: >1 evaluates rules on a thread pool. Results are
                merged back in rule order, so output is identical.
        """
        self.risk_layer = risk_layer or RiskLayer()
        self.max_workers = max_workers

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    def evaluate(self, rules: Iterable[Rule], ctx: EvalContext) -> TickResult:
        """Evaluate every enabled rule for one tick."""
        enabled = [r for r in rules if r.enabled]
        result = TickResult()

        if self.max_workers > 1 and len(enabled) > 1:
            with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
                partials = list(pool.map(lambda r: self._evaluate_rule(r, ctx), enabled))
        else:
            partials = [self._evaluate_rule(r, ctx) for r in enabled]

        for partial in partials:
            result.merge(partial)

        if result.intents or result.blocked:
            logger.info(
                "Tick %s: %d rules due, %d intents, %d blocked",
                ctx.now.isoformat(),
                len(result.evaluated),
                len(result.intents),
                len(result.blocked),
            )
        return result

    def trigger_due(self, rule: Rule, ctx: EvalContext) -> bool:
        trigger = rule.trigger
        if isinstance(trigger, EventTrigger):
            return trigger.name in ctx.events
        last = ctx.last_evaluations.get(rule.rule_id)
        return last is None or ctx.now - last >= trigger.interval

    def condition_value(self, cond: Condition, ctx: EvalContext) -> float:
        """Compute the value a condition compares against.

        Raises:
            IndicatorUnavailable: Missing price or insufficient history.
        """
        if isinstance(cond, IndicatorCondition):
            closes = ctx.market_data.closes(cond.symbol)
            value = compute_indicator(cond.indicator, closes, cond.lookback)
            if value is None:
                raise IndicatorUnavailable(
                    f"{cond.indicator.value}({cond.lookback}) {cond.symbol}: "
                    f"insufficient history ({len(closes)} points)"
                )
            return value

        if isinstance(cond, PriceChangeCondition):
            value = price_change_pct(
                ctx.market_data.series(cond.symbol), cond.window_minutes, ctx.now
            )
            if value is None:
                value = ctx.market_data.price_change_pct.get(cond.symbol)
            if value is None:
                raise IndicatorUnavailable(
                    f"priceChangePct {cond.symbol}: no history covering {cond.window_minutes}m"
                )
            return value

        value = portfolio_exposure_pct(ctx, cond.symbol)
        if value is None:
            raise IndicatorUnavailable(f"portfolioExposure {cond.symbol}: portfolio has no value")
        return value

    def conditions_hold(self, rule: Rule, ctx: EvalContext) -> tuple[bool, str | None]:
        """AND all conditions in order, stopping at the first failure."""
        for i, cond in enumerate(rule.conditions):
            try:
                value = self.condition_value(cond, ctx)
            except IndicatorUnavailable as e:
                return False, f"condition {i} unavailable: {e}"
            if not cond.satisfied_by(value):
                return False, f"condition {i} not met (value={value:.6g})"
        return True, None

    def requires_approval(self, action: Action, ctx: EvalContext) -> bool:
        """Only core-asset trades with auto-execution enabled skip approval."""
        objectives = ctx.objectives
        symbol = getattr(action, "symbol", None)
        if not objectives.is_core_asset(symbol) or not objectives.auto_execute_core_assets:
            return True
        limit = objectives.approvals_required.large_trade_usd
        if limit is not None and trade_notional(action, ctx.portfolio) > limit:
            return True
        return False

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _evaluate_rule(self, rule: Rule, ctx: EvalContext) -> TickResult:
        rule_id = rule.rule_id
        due = False
        try:
            due = self.trigger_due(rule, ctx)
            if not due:
                result = TickResult()
                result.skipped.append(SkippedRule(rule_id, "trigger not due"))
                return result
            return self._run_rule(rule, ctx)
        except Exception:
            logger.error("Rule %s failed during evaluation", rule_id, exc_info=True)
            result = TickResult()
            if due:
                result.evaluated.append(rule_id)
            result.skipped.append(SkippedRule(rule_id, "evaluation error"))
            return result

    def _run_rule(self, rule: Rule, ctx: EvalContext) -> TickResult:
        result = TickResult()
        rule_id = rule.rule_id
        result.evaluated.append(rule_id)

        cooling = cooldown_decision(rule, ctx)
        if cooling is not None:
            logger.debug("Rule %s skipped: %s", rule_id, cooling.reason)
            result.skipped.append(SkippedRule(rule_id, cooling.reason or "cooldown"))
            return result

        fired, why_not = self.conditions_hold(rule, ctx)
        if not fired:
            logger.debug("Rule %s did not fire: %s", rule_id, why_not)
            result.skipped.append(SkippedRule(rule_id, why_not or "conditions not met"))
            return result

        for action in rule.actions:
            needs_approval = self.requires_approval(action, ctx)
            candidate = Intent(
                rule_id=rule_id,
                action=action,
                requires_approval=needs_approval,
                dry_run=needs_approval or ctx.objectives.dry_run_default,
                created_at=ctx.now,
            )
            decision = self.risk_layer.evaluate(rule, ctx, candidate)
            if not decision.allowed:
                logger.info("Rule %s %s blocked: %s", rule_id, action.type, decision.reason)
                result.blocked.append(BlockedIntent(candidate, decision))
                continue
            result.intents.append(candidate)

        return result


def evaluate_rules(
    rules: Iterable[Rule],
    ctx: EvalContext,
    risk_layer: RiskLayer | None = None,
) -> list[Intent]:
    """Convenience wrapper returning only the accepted intents."""
    return Evaluator(risk_layer=risk_layer).evaluate(rules, ctx).intents
