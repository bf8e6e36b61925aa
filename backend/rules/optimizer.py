"""Rule optimizer.

Scores a rule from its trailing per-period performance metrics and, when
the score or drawdown is unsatisfactory, proposes mutated copies of the
rule for human review. Candidates are always disabled; nothing here
activates or persists a rule.

Mutation strategies register themselves with @register_mutation and are
applied independently: each candidate carries exactly one mutation.

Usage:
    candidates = optimize_rule(rule, history)
    results = run_optimization_cycle(rules, metrics_by_rule, OptimizerConfig())
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Iterable, Mapping, Sequence, TypeVar

from pydantic import BaseModel, ConfigDict

from rules.models.rule import (
    EnterAction,
    ExitAction,
    IndicatorCondition,
    IndicatorName,
    RiskSpec,
    Rule,
)

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)


# =============================================================================
# Metrics + config
# =============================================================================

@dataclass(frozen=True)
class PeriodMetrics:
    """Performance of one rule over one evaluation period.

    max_drawdown and win_rate are fractions (0.15 = 15%).
    """

    window_end: datetime
    sharpe: float = 0.0
    max_drawdown: float = 0.0
    win_rate: float = 0.0
    trades: int = 0
    pnl: float = 0.0
    losses_in_high_vol: int = 0
    days: float = 1.0


@dataclass(frozen=True)
class AggregatedMetrics:
    """Trailing-window summary used for scoring and mutation decisions."""

    sharpe_ratio: float
    max_drawdown: float
    win_rate: float
    total_trades: int
    pnl: float
    losses_in_high_vol: int
    trades_per_day: float
    samples: int


class OptimizerConfig(BaseModel):
    """Optimization cycle settings."""

    model_config = ConfigDict(frozen=True)

    enabled: bool = True
    min_samples: int = 5
    window: int = 30
    score_threshold: float = 0.7
    max_drawdown: float = 0.25
    drawdown_score_cap: float = 0.3
    # Reported targets only; review is triggered by score and drawdown
    min_sharpe: float = 1.0
    min_win_rate: float = 0.5
    confidence: float = 0.7


@dataclass
class OptimizationCandidate:
    candidate_rule: Rule
    projected_metrics: dict[str, float]
    reasoning: str
    confidence: float
    strategy: str = ""
    base_rule_id: str = ""
    score: float = 0.0


# =============================================================================
# Scoring
# =============================================================================

def _normalize_sharpe(sharpe: float) -> float:
    return max(0.0, min(sharpe / 2.0, 1.0))


def score_rule(metrics: AggregatedMetrics, drawdown_cap: float = 0.3) -> float:
    """
    Composite score in [0, 1].

    0.4 * normalized Sharpe + 0.3 * win rate + 0.3 * drawdown score, where
    Sharpe 2.0 maps to 1.0 and drawdown at or above `drawdown_cap` scores 0.
    """
    sharpe_score = _normalize_sharpe(metrics.sharpe_ratio)
    win_rate_score = max(0.0, min(metrics.win_rate, 1.0))
    drawdown_score = 1.0 - min(metrics.max_drawdown / drawdown_cap, 1.0)
    return 0.4 * sharpe_score + 0.3 * win_rate_score + 0.3 * drawdown_score


def aggregate_metrics(history: Sequence[PeriodMetrics]) -> AggregatedMetrics:
    """Average Sharpe and win rate, worst drawdown, summed trades and P&L."""
    if not history:
        raise ValueError("Cannot aggregate an empty metrics history")

    count = len(history)
    total_trades = sum(m.trades for m in history)
    total_days = sum(m.days for m in history)
    return AggregatedMetrics(
        sharpe_ratio=sum(m.sharpe for m in history) / count,
        max_drawdown=max(m.max_drawdown for m in history),
        win_rate=sum(m.win_rate for m in history) / count,
        total_trades=total_trades,
        pnl=sum(m.pnl for m in history),
        losses_in_high_vol=sum(m.losses_in_high_vol for m in history),
        trades_per_day=total_trades / total_days if total_days > 0 else 0.0,
        samples=count,
    )


# =============================================================================
# Mutation strategies
# =============================================================================

@dataclass(frozen=True)
class MutationStrategy:
    name: str
    suffix: str
    applies: Callable[[AggregatedMetrics], bool]
    mutate: Callable[[Rule], Rule]
    description: str = ""


_MUTATIONS: dict[str, MutationStrategy] = {}


def register_mutation(name: str, suffix: str, applies: Callable[[AggregatedMetrics], bool]):
    """Decorator registering a Rule -> Rule mutation under `name`.

    Raises:
        ValueError: If a mutation with the same name is already registered.
    """

    def decorator(fn: Callable[[Rule], Rule]):
        if name in _MUTATIONS:
            raise ValueError(f"Mutation '{name}' is already registered")
        _MUTATIONS[name] = MutationStrategy(
            name=name,
            suffix=suffix,
            applies=applies,
            mutate=fn,
            description=(fn.__doc__ or "").strip(),
        )
        logger.debug("Registered mutation: %s", name)
        return fn

    return decorator


def list_mutations() -> list[str]:
    """Registered mutation names, in registration order."""
    return list(_MUTATIONS)


def _revalidated(model: M, **update: Any) -> M:
    """Copy of `model` with `update` applied and validated (model_copy skips validation)."""
    return type(model).model_validate({**dict(model), **update})


@register_mutation("tighten_rsi", "tightened", lambda m: m.win_rate > 0.6)
def tighten_rsi(rule: Rule) -> Rule:
    """Move RSI thresholds 5 points further out (lt floor 20, gt cap 80)."""
    conditions = []
    for cond in rule.conditions:
        if isinstance(cond, IndicatorCondition) and cond.indicator == IndicatorName.RSI:
            update = {}
            if cond.lt is not None:
                update["lt"] = max(20.0, cond.lt - 5)
            if cond.gt is not None:
                update["gt"] = min(80.0, cond.gt + 5)
            cond = _revalidated(cond, **update)
        conditions.append(cond)
    return _revalidated(rule, conditions=conditions)


@register_mutation("halve_allocation", "conservative", lambda m: m.max_drawdown > 0.15)
def halve_allocation(rule: Rule) -> Rule:
    """Halve every enter/exit allocation (never below 1%)."""
    actions = []
    for action in rule.actions:
        if isinstance(action, (EnterAction, ExitAction)):
            pct = action.allocation_pct
            halved = max(1.0, abs(pct) * 0.5)
            action = _revalidated(action, allocation_pct=-halved if pct < 0 else halved)
        actions.append(action)
    return _revalidated(rule, actions=actions)


@register_mutation("volatility_filter", "vol-filtered", lambda m: m.losses_in_high_vol > 5)
def add_volatility_filter(rule: Rule) -> Rule:
    """Require volatility below 3% on the first action's symbol."""
    symbols = rule.actions[0].symbols
    if not symbols:
        return rule
    vol = IndicatorCondition(indicator=IndicatorName.VOLATILITY, symbol=symbols[0], lt=0.03)
    return _revalidated(rule, conditions=[*rule.conditions, vol])


@register_mutation("double_cooldown", "throttled", lambda m: m.trades_per_day > 10)
def double_cooldown(rule: Rule) -> Rule:
    """Double the cooldown (a missing cooldown counts as one hour)."""
    risk = rule.risk or RiskSpec()
    risk = _revalidated(risk, cooldown_secs=(risk.cooldown_secs or 3600) * 2)
    return _revalidated(rule, risk=risk)


# =============================================================================
# Candidate generation
# =============================================================================

def _suffixed(rule: Rule, suffix: str) -> dict:
    return {
        "name": f"{rule.name}-{suffix}",
        "id": f"{rule.id}-{suffix}" if rule.id else None,
        "enabled": False,
        "meta": {**rule.meta, "optimizedFrom": rule.rule_id, "mutation": suffix},
    }


def generate_candidates(
    rule: Rule,
    metrics: AggregatedMetrics,
    strategies: Iterable[str] | None = None,
) -> list[tuple[MutationStrategy, Rule]]:
    """Apply every applicable mutation to its own clone of `rule`.

    Args:
        rule: Base rule (left untouched)
        metrics: Aggregated metrics deciding which mutations apply
        strategies: Restrict to these mutation names (default: all)

    Returns:
        (strategy, candidate) pairs in registration order
    """
    names = list(strategies) if strategies is not None else list_mutations()
    candidates = []
    for name in names:
        strategy = _MUTATIONS[name]
        if not strategy.applies(metrics):
            continue
        mutated = strategy.mutate(rule)
        candidates.append((strategy, _revalidated(mutated, **_suffixed(rule, strategy.suffix))))
    return candidates


def _projected(metrics: AggregatedMetrics) -> dict[str, float]:
    return {
        "sharpe_ratio": metrics.sharpe_ratio * 1.1,
        "max_drawdown": metrics.max_drawdown * 0.9,
        "win_rate": min(1.0, metrics.win_rate * 1.05),
        "total_trades": float(metrics.total_trades),
    }


def optimize_rule(
    rule: Rule,
    history: Sequence[PeriodMetrics],
    config: OptimizerConfig | None = None,
) -> list[OptimizationCandidate]:
    """
    Score one rule and propose candidates when it underperforms.

    Args:
        rule: The rule under review
        history: Per-period metrics; the newest `config.window` are used
        config: Optimizer settings

    Returns:
        Candidates for review; empty when history is too short or the rule
        already scores well enough
    """
    config = config or OptimizerConfig()
    recent = sorted(history, key=lambda m: m.window_end, reverse=True)[: config.window]

    if len(recent) < config.min_samples:
        logger.info(
            "Skipping %s: insufficient data (%d < %d periods)",
            rule.name, len(recent), config.min_samples,
        )
        return []

    metrics = aggregate_metrics(recent)
    score = score_rule(metrics, config.drawdown_score_cap)
    logger.info(
        f"{rule.name}: score={score:.2f} sharpe={metrics.sharpe_ratio:.2f} "
        f"win_rate={metrics.win_rate * 100:.1f}% max_dd={metrics.max_drawdown * 100:.1f}%"
    )

    underperforming = (
        score < config.score_threshold
        or metrics.max_drawdown > config.max_drawdown
    )
    if not underperforming:
        return []

    projected = _projected(metrics)
    return [
        OptimizationCandidate(
            candidate_rule=candidate,
            projected_metrics=dict(projected),
            reasoning=(
                f"Optimized from {rule.name} via {strategy.name}: {strategy.description} "
                f"(score {score:.2f}, win rate {metrics.win_rate:.2f}, "
                f"max drawdown {metrics.max_drawdown:.2f})"
            ),
            confidence=config.confidence,
            strategy=strategy.name,
            base_rule_id=rule.rule_id,
            score=score,
        )
        for strategy, candidate in generate_candidates(rule, metrics)
    ]


def run_optimization_cycle(
    rules: Iterable[Rule],
    metrics_by_rule: Mapping[str, Sequence[PeriodMetrics]],
    config: OptimizerConfig | None = None,
) -> list[OptimizationCandidate]:
    """Review every enabled rule and collect candidates across all of them."""
    config = config or OptimizerConfig()
    if not config.enabled:
        logger.info("Optimizer disabled")
        return []

    results: list[OptimizationCandidate] = []
    for rule in rules:
        if not rule.enabled:
            continue
        results.extend(optimize_rule(rule, metrics_by_rule.get(rule.rule_id, ()), config))

    logger.info("Optimization complete: %d candidates", len(results))
    return results
