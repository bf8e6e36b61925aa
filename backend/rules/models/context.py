"""Evaluation context models.

The caller assembles one EvalContext per tick from its own persistence
and market-data layers. The context is frozen: the engine only reads it,
and all bookkeeping (last executions, baselines) is written back by the
caller after it commits.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


def _upper_keys(value: dict[str, Any]) -> dict[str, Any]:
    return {str(k).upper(): v for k, v in (value or {}).items()}


class PortfolioState(BaseModel):
    """Balances (symbol -> quantity) and USD prices (symbol -> price)."""

    model_config = ConfigDict(frozen=True)

    balances: dict[str, float] = Field(default_factory=dict)
    prices: dict[str, float] = Field(default_factory=dict)

    @field_validator("balances", "prices", mode="before")
    @classmethod
    def normalize_symbols(cls, value):
        return _upper_keys(value)

    def price(self, symbol: str) -> float:
        return self.prices.get(symbol.upper(), 0.0)

    def holding(self, symbol: str) -> float:
        return self.balances.get(symbol.upper(), 0.0)

    def value(self, symbol: str) -> float:
        return self.holding(symbol) * self.price(symbol)

    def total_value(self) -> float:
        """Sum of quantity * price; symbols without a price count as zero."""
        return sum(qty * self.prices.get(sym, 0.0) for sym, qty in self.balances.items())


class CoreAsset(BaseModel):
    """A protected holding with a baseline that must never be sold through."""

    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    baseline: float
    min_baseline: float | None = None
    auto_increment_on_deposit: bool = False

    @property
    def protected_floor(self) -> float:
        if self.min_baseline is None:
            return self.baseline
        return max(self.baseline, self.min_baseline)


class ApprovalPolicy(BaseModel):
    """Conditions that force human approval regardless of auto-execution."""

    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    new_coin: bool = True
    large_trade_usd: float | None = None


class Objectives(BaseModel):
    """Owner objectives: protected core assets and approval routing."""

    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    core_assets: dict[str, CoreAsset] = Field(default_factory=dict)
    auto_execute_core_assets: bool = False
    dry_run_default: bool = False
    approvals_required: ApprovalPolicy = Field(default_factory=ApprovalPolicy)

    @field_validator("core_assets", mode="before")
    @classmethod
    def normalize_symbols(cls, value):
        return _upper_keys(value)

    def is_core_asset(self, symbol: str | None) -> bool:
        return symbol is not None and symbol.upper() in self.core_assets

    def protected_floor(self, symbol: str) -> float | None:
        asset = self.core_assets.get(symbol.upper())
        return asset.protected_floor if asset else None


class PricePoint(BaseModel):
    """One observation in a price series."""

    model_config = ConfigDict(frozen=True)

    timestamp: datetime
    price: float


class MarketData(BaseModel):
    """Optional market-data extras supplied with the tick.

    history: chronologically ordered price points per symbol.
    price_change_pct: precomputed changes, used when history is missing.
    """

    model_config = ConfigDict(frozen=True)

    history: dict[str, list[PricePoint]] = Field(default_factory=dict)
    price_change_pct: dict[str, float] = Field(default_factory=dict)

    @field_validator("history", "price_change_pct", mode="before")
    @classmethod
    def normalize_symbols(cls, value):
        return _upper_keys(value)

    def series(self, symbol: str) -> list[PricePoint]:
        return self.history.get(symbol.upper(), [])

    def closes(self, symbol: str) -> list[float]:
        return [p.price for p in self.series(symbol)]


class ExecutionRecord(BaseModel):
    """An intent the caller actually accepted, used by velocity/loss checks."""

    model_config = ConfigDict(frozen=True)

    timestamp: datetime
    rule_id: str
    symbol: str
    side: Literal["buy", "sell"]
    notional_usd: float = 0.0
    realized_pnl: float = 0.0


class RiskLimits(BaseModel):
    """Account-wide limits shared by all rules."""

    model_config = ConfigDict(frozen=True)

    max_trades_per_hour: int = 8
    velocity_window_secs: int = 3600
    default_daily_loss_pct: float = 5.0


class EvalContext(BaseModel):
    """Immutable snapshot handed to the evaluator once per tick."""

    model_config = ConfigDict(frozen=True)

    now: datetime
    portfolio: PortfolioState = Field(default_factory=PortfolioState)
    objectives: Objectives = Field(default_factory=Objectives)
    last_executions: dict[str, datetime] = Field(default_factory=dict)
    last_evaluations: dict[str, datetime] = Field(default_factory=dict)
    recent_executions: tuple[ExecutionRecord, ...] = ()
    market_data: MarketData = Field(default_factory=MarketData)
    limits: RiskLimits = Field(default_factory=RiskLimits)
    events: frozenset[str] = frozenset()

    def executions_since(self, since: datetime) -> list[ExecutionRecord]:
        return [e for e in self.recent_executions if since <= e.timestamp <= self.now]

    def local_midnight(self) -> datetime:
        """Start of the current day in the timezone of `now`."""
        return self.now.replace(hour=0, minute=0, second=0, microsecond=0)

    def seconds_since_last_execution(self, rule_id: str) -> float | None:
        last = self.last_executions.get(rule_id)
        if last is None:
            return None
        return (self.now - last) / timedelta(seconds=1)
