"""Data models."""

from rules.models.context import (
    ApprovalPolicy,
    CoreAsset,
    EvalContext,
    ExecutionRecord,
    MarketData,
    Objectives,
    PortfolioState,
    PricePoint,
    RiskLimits,
)
from rules.models.intent import Intent, RiskDecision
from rules.models.rule import (
    Action,
    Condition,
    EnterAction,
    EventTrigger,
    ExitAction,
    Guardrail,
    IndicatorCondition,
    IndicatorName,
    IntervalTrigger,
    PortfolioExposureCondition,
    PriceChangeCondition,
    RebalanceAction,
    RiskSpec,
    Rule,
    Trigger,
    parse_interval,
)

__all__ = [
    # Rule model
    "Rule",
    "Trigger",
    "IntervalTrigger",
    "EventTrigger",
    "Condition",
    "IndicatorCondition",
    "IndicatorName",
    "PriceChangeCondition",
    "PortfolioExposureCondition",
    "Action",
    "EnterAction",
    "ExitAction",
    "RebalanceAction",
    "RiskSpec",
    "Guardrail",
    "parse_interval",
    # Evaluation context
    "EvalContext",
    "PortfolioState",
    "Objectives",
    "CoreAsset",
    "ApprovalPolicy",
    "MarketData",
    "PricePoint",
    "ExecutionRecord",
    "RiskLimits",
    # Outputs
    "Intent",
    "RiskDecision",
]
