"""Built-in rule templates.

Profit-taking and protection rules for the core assets. Every template
opts into baseline protection, so none of them can sell a core asset
through its protected floor. Templates are built as rule documents and
go through parse_rule like any stored rule.
"""

from __future__ import annotations

from typing import Any

from rules.models.rule import Guardrail, Rule
from rules.parser import parse_rules

_PROTECTED = [Guardrail.BASELINE_PROTECTION.value]


def _partial_profit_taking(symbol: str, profit_target_pct: float) -> dict[str, Any]:
    return {
        "name": f"{symbol} Intelligent Profit Taking",
        "trigger": {"type": "interval", "every": "5m"},
        "conditions": [
            {"priceChangePct": {"symbol": symbol, "windowMins": 1440, "gt": profit_target_pct}},
        ],
        "actions": [
            {"type": "exit", "symbol": symbol, "allocationPct": 25, "orderType": "market"},
        ],
        "risk": {"maxPositionPct": 50, "guardrails": _PROTECTED, "cooldownSecs": 1800},
        "meta": {
            "purpose": "profit-taking",
            "strategy": "partial-exit",
            "description": f"Takes profits on {symbol} when 24h gains exceed target, respecting baseline",
        },
    }


def profit_taking_documents(
    profit_target_pct: float = 10.0,
    symbols: tuple[str, ...] = ("BTC", "XRP"),
    anchor: str = "BTC",
) -> list[dict[str, Any]]:
    """Rule documents for the default profit-taking set.

    Args:
        profit_target_pct: 24h gain (%) that triggers a partial exit
        symbols: Assets that get a partial profit-taking rule
        anchor: Asset watched by the bear/bull market rules
    """
    documents = [_partial_profit_taking(s, profit_target_pct) for s in symbols]
    documents.append({
        "name": "Bear Market Protection",
        "trigger": {"type": "interval", "every": "15m"},
        "conditions": [
            {"priceChangePct": {"symbol": anchor, "windowMins": 60, "lt": -5}},
            {"indicator": "rsi", "symbol": anchor, "lt": 30},
        ],
        "actions": [
            {"type": "exit", "symbol": anchor, "allocationPct": 40, "orderType": "market"},
        ],
        "risk": {"guardrails": _PROTECTED, "cooldownSecs": 3600},
        "meta": {
            "purpose": "risk-management",
            "strategy": "bear-protection",
            "description": "Protects profits during sharp downturns while respecting baselines",
        },
    })
    documents.append({
        "name": "Bull Market Momentum",
        "trigger": {"type": "interval", "every": "15m"},
        "conditions": [
            {"indicator": "rsi", "symbol": anchor, "gt": 70},
            {"priceChangePct": {"symbol": anchor, "windowMins": 1440, "gt": 20}},
        ],
        "actions": [
            {"type": "exit", "symbol": anchor, "allocationPct": 15, "orderType": "market"},
        ],
        "risk": {"guardrails": _PROTECTED, "cooldownSecs": 7200},
        "meta": {
            "purpose": "profit-taking",
            "strategy": "momentum-scalp",
            "description": "Takes small profits during strong rallies, preserving most position",
        },
    })
    return documents


def profit_taking_rules(profit_target_pct: float = 10.0, **kwargs: Any) -> list[Rule]:
    """Validated profit-taking rules; see profit_taking_documents."""
    return parse_rules(profit_taking_documents(profit_target_pct, **kwargs))
