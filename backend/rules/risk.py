"""Risk / guardrail layer.

Each guardrail is a small check object; the RiskLayer runs them in order
and stops at the first block. Checks are pure functions of
(rule, context, intent) and hold no state, so the layer can be shared
across rules, ticks and threads.

Default order:
1. Cooldown
2. Baseline protection (opt-in guardrail)
3. Max position
4. Velocity throttle (account-wide cap, always on)
5. Daily loss circuit breaker (entries only)
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Iterable, Protocol, runtime_checkable

from rules.models.context import EvalContext, PortfolioState
from rules.models.intent import Intent, RiskDecision
from rules.models.rule import (
    Action,
    EnterAction,
    ExitAction,
    Guardrail,
    RebalanceAction,
    Rule,
)

logger = logging.getLogger(__name__)


# =============================================================================
# Trade arithmetic shared with the evaluator and backtester
# =============================================================================

def is_entry(action: Action) -> bool:
    """True for actions that add exposure (buys and rebalances)."""
    if isinstance(action, EnterAction):
        return not action.is_sell
    return isinstance(action, RebalanceAction)


def trade_notional(action: Action, portfolio: PortfolioState) -> float:
    """Approximate USD value the action would move if executed now."""
    total = portfolio.total_value()
    if isinstance(action, EnterAction):
        return abs(action.allocation_pct) / 100.0 * total
    if isinstance(action, ExitAction):
        return portfolio.value(action.symbol) * action.allocation_pct / 100.0
    moved = 0.0
    for symbol, pct in action.target.items():
        moved += abs(pct / 100.0 * total - portfolio.value(symbol))
    return moved


def quantities_to_sell(action: Action, portfolio: PortfolioState) -> dict[str, float]:
    """Upper bound on the quantity of each symbol the action could sell.

    Exits are sized two ways (share of the holding, as executed, and share of
    total equity at the symbol's price) and the larger is used. Results are
    capped at the current holding.
    """
    total = portfolio.total_value()

    def by_equity(symbol: str, pct: float) -> float:
        price = portfolio.price(symbol)
        return pct / 100.0 * total / price if price > 0 else 0.0

    result: dict[str, float] = {}
    if isinstance(action, ExitAction):
        holding = portfolio.holding(action.symbol)
        of_holding = holding * action.allocation_pct / 100.0
        qty = max(of_holding, by_equity(action.symbol, action.allocation_pct))
        result[action.symbol] = min(qty, holding)
    elif isinstance(action, EnterAction) and action.is_sell:
        holding = portfolio.holding(action.symbol)
        result[action.symbol] = min(by_equity(action.symbol, -action.allocation_pct), holding)
    elif isinstance(action, RebalanceAction):
        for symbol, pct in action.target.items():
            holding = portfolio.holding(symbol)
            price = portfolio.price(symbol)
            target_qty = pct / 100.0 * total / price if price > 0 else holding
            if holding > target_qty:
                result[symbol] = holding - target_qty
    return result


# =============================================================================
# Guardrail checks
# =============================================================================

@runtime_checkable
class GuardrailCheck(Protocol):
    """A single risk check. Returns a block decision, or None to pass."""

    name: str

    def __call__(self, rule: Rule, ctx: EvalContext, intent: Intent) -> RiskDecision | None:
        ...


def cooldown_decision(rule: Rule, ctx: EvalContext) -> RiskDecision | None:
    """Block decision while the rule is cooling down, else None."""
    cooldown = rule.risk_spec.cooldown_secs
    if not cooldown:
        return None
    since = ctx.seconds_since_last_execution(rule.rule_id)
    if since is None or since >= cooldown:
        return None
    remaining = round(cooldown - since)
    return RiskDecision.block(f"Cooldown {remaining}s remaining", CooldownCheck.name)


class CooldownCheck:
    """Minimum seconds between fires of the same rule."""

    name = "cooldown"

    def __call__(self, rule: Rule, ctx: EvalContext, intent: Intent) -> RiskDecision | None:
        return cooldown_decision(rule, ctx)


class BaselineProtectionCheck:
    """Never let a sell take a core asset below its protected floor."""

    name = "baseline_protection"

    def __call__(self, rule: Rule, ctx: EvalContext, intent: Intent) -> RiskDecision | None:
        if not rule.risk_spec.has(Guardrail.BASELINE_PROTECTION):
            return None

        portfolio = ctx.portfolio
        for symbol, qty in quantities_to_sell(intent.action, portfolio).items():
            floor = ctx.objectives.protected_floor(symbol)
            if floor is None or qty <= 0:
                continue
            holding = portfolio.holding(symbol)
            if holding - qty < floor:
                return RiskDecision.block(
                    f"Baseline protection active for {symbol}: "
                    f"selling {qty:.8g} of {holding:.8g} would breach baseline {floor:.8g}",
                    self.name,
                )
        return None


class MaxPositionCheck:
    """Block entries that push a symbol above maxPositionPct of equity."""

    name = "max_position"

    def __call__(self, rule: Rule, ctx: EvalContext, intent: Intent) -> RiskDecision | None:
        limit = rule.risk_spec.max_position_pct
        action = intent.action
        if limit is None or not is_entry(action):
            return None

        portfolio = ctx.portfolio
        total = portfolio.total_value()
        if total <= 0:
            return None

        if isinstance(action, EnterAction):
            post_value = portfolio.value(action.symbol) + action.allocation_pct / 100.0 * total
            exposures = {action.symbol: post_value / total * 100.0}
        else:
            exposures = dict(action.target)

        for symbol, exposure in exposures.items():
            if exposure > limit:
                return RiskDecision.block(
                    f"Max position exceeded for {symbol}: "
                    f"post-trade exposure {exposure:.1f}% > {limit:.1f}%",
                    self.name,
                )
        return None


class VelocityThrottleCheck:
    """Account-wide cap on accepted intents in the trailing window."""

    name = "velocity_throttle"

    def __call__(self, rule: Rule, ctx: EvalContext, intent: Intent) -> RiskDecision | None:
        cap = ctx.limits.max_trades_per_hour
        if cap <= 0:
            return None
        window = timedelta(seconds=ctx.limits.velocity_window_secs)
        count = len(ctx.executions_since(ctx.now - window))
        if count >= cap:
            return RiskDecision.block(
                f"Velocity throttle: {count} trades in trailing window (cap {cap})",
                self.name,
            )
        return None


class DailyLossCheck:
    """Stop new entries once today's realized loss exceeds the limit.

    Exits stay allowed so positions can still be de-risked.
    """

    name = "daily_loss"

    def __call__(self, rule: Rule, ctx: EvalContext, intent: Intent) -> RiskDecision | None:
        spec = rule.risk_spec
        limit_pct = spec.max_daily_loss_pct
        if limit_pct is None and spec.has(Guardrail.CIRCUIT_DRAWDOWN):
            limit_pct = ctx.limits.default_daily_loss_pct
        if limit_pct is None or not is_entry(intent.action):
            return None

        realized = sum(e.realized_pnl for e in ctx.executions_since(ctx.local_midnight()))
        equity = ctx.portfolio.total_value()
        threshold = -limit_pct / 100.0 * equity
        if realized < threshold:
            return RiskDecision.block(
                f"Daily loss circuit breaker: realized P&L {realized:.2f} "
                f"below -{limit_pct:.1f}% of equity ({threshold:.2f})",
                self.name,
            )
        return None


DEFAULT_CHECKS: tuple[GuardrailCheck, ...] = (
    CooldownCheck(),
    BaselineProtectionCheck(),
    MaxPositionCheck(),
    VelocityThrottleCheck(),
    DailyLossCheck(),
)


# =============================================================================
# RiskLayer
# =============================================================================

class RiskLayer:
    """Ordered chain of guardrail checks; first block wins."""

    def __init__(self, checks: Iterable[GuardrailCheck] | None = None):
        self.checks: tuple[GuardrailCheck, ...] = tuple(
            DEFAULT_CHECKS if checks is None else checks
        )

    def with_check(self, check: GuardrailCheck, before: str | None = None) -> "RiskLayer":
        """Return a new layer with `check` inserted before the named check (or last)."""
        checks = list(self.checks)
        names = [c.name for c in checks]
        index = names.index(before) if before in names else len(checks)
        checks.insert(index, check)
        return RiskLayer(checks)

    def evaluate(self, rule: Rule, ctx: EvalContext, intent: Intent) -> RiskDecision:
        """Run every check in order. Never raises."""
        for check in self.checks:
            try:
                decision = check(rule, ctx, intent)
            except Exception:
                logger.error(
                    "Risk check %s failed for rule %s", check.name, rule.rule_id, exc_info=True
                )
                return RiskDecision.block(f"Risk check {check.name} errored", check.name)
            if decision is not None and not decision.allowed:
                return decision
        return RiskDecision.allow()


_DEFAULT_LAYER = RiskLayer()


def apply_risk(rule: Rule, ctx: EvalContext, intent: Intent) -> RiskDecision:
    """Run the default guardrail chain for one candidate intent."""
    return _DEFAULT_LAYER.evaluate(rule, ctx, intent)
