"""Rule specification models.

A Rule is a declarative trigger + conditions + actions + risk bundle.
Conditions and actions are tagged unions (one variant per discriminant),
so evaluation code can match on the concrete type instead of sniffing
dictionary shapes.
"""

from __future__ import annotations

import re
from datetime import timedelta
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class Guardrail(str, Enum):
    """Named risk checks a rule can opt into."""

    BASELINE_PROTECTION = "baselineProtection"
    CIRCUIT_DRAWDOWN = "circuitDrawdown"
    THROTTLE_VELOCITY = "throttleVelocity"


class IndicatorName(str, Enum):
    """Indicators available to indicator conditions."""

    RSI = "rsi"
    SMA = "sma"
    VOLATILITY = "volatility"


# Defaults used when a condition omits its lookback
DEFAULT_RSI_PERIOD = 14
DEFAULT_VOLATILITY_WINDOW = 30

_INTERVAL_RE = re.compile(r"^\s*(\d+)\s*([smhd])\s*$")
_UNIT_SECONDS = {"s": 1, "m": 60, "h": 3600, "d": 86400}


def parse_interval(every: str) -> timedelta:
    """Parse a cadence string such as '30s', '15m', '1h' or '1d'.

    Raises:
        ValueError: If the string is not a positive count followed by a unit.
    """
    match = _INTERVAL_RE.match(every or "")
    if not match:
        raise ValueError(f"Invalid interval '{every}' (expected e.g. '15m', '1h')")
    count = int(match.group(1))
    if count <= 0:
        raise ValueError(f"Interval must be positive, got '{every}'")
    return timedelta(seconds=count * _UNIT_SECONDS[match.group(2)])


# =============================================================================
# Triggers
# =============================================================================

class IntervalTrigger(BaseModel):
    """Evaluate the rule every N seconds/minutes/hours/days."""

    model_config = ConfigDict(frozen=True, allow_inf_nan=False)

    type: Literal["interval"] = "interval"
    every: str

    @property
    def interval(self) -> timedelta:
        return parse_interval(self.every)


class EventTrigger(BaseModel):
    """Evaluate the rule only when the named event is present in the tick."""

    model_config = ConfigDict(frozen=True, allow_inf_nan=False)

    type: Literal["event"] = "event"
    name: str


Trigger = Annotated[Union[IntervalTrigger, EventTrigger], Field(discriminator="type")]


# =============================================================================
# Conditions
# =============================================================================

def _within(value: float, lt: float | None, gt: float | None) -> bool:
    if lt is not None and not value < lt:
        return False
    if gt is not None and not value > gt:
        return False
    return True


class IndicatorCondition(BaseModel):
    """Computed indicator value compared against lt/gt bounds."""

    model_config = ConfigDict(frozen=True, allow_inf_nan=False)

    kind: Literal["indicator"] = "indicator"
    indicator: IndicatorName
    symbol: str
    period: int | None = Field(None, gt=0)  # rsi / sma
    window: int | None = Field(None, ge=2)  # volatility
    lt: float | None = None
    gt: float | None = None

    @model_validator(mode="after")
    def _sma_needs_period(self):
        if self.indicator == IndicatorName.SMA and self.period is None:
            raise ValueError("period is required for sma")
        return self

    @property
    def lookback(self) -> int:
        """Number of points the indicator is computed over."""
        if self.indicator == IndicatorName.RSI:
            return self.period or DEFAULT_RSI_PERIOD
        if self.indicator == IndicatorName.VOLATILITY:
            return self.window or DEFAULT_VOLATILITY_WINDOW
        return self.period or 0

    def satisfied_by(self, value: float) -> bool:
        return _within(value, self.lt, self.gt)


class PriceChangeCondition(BaseModel):
    """Percentage price change across a trailing time window."""

    model_config = ConfigDict(frozen=True, allow_inf_nan=False)

    kind: Literal["priceChange"] = "priceChange"
    symbol: str
    window_minutes: int = Field(gt=0)
    lt: float | None = None
    gt: float | None = None

    def satisfied_by(self, value: float) -> bool:
        return _within(value, self.lt, self.gt)


class PortfolioExposureCondition(BaseModel):
    """Value of one symbol as a percentage of total portfolio value."""

    model_config = ConfigDict(frozen=True, allow_inf_nan=False)

    kind: Literal["portfolioExposure"] = "portfolioExposure"
    symbol: str
    lt_pct: float | None = Field(None, ge=0, le=100)
    gt_pct: float | None = Field(None, ge=0, le=100)

    def satisfied_by(self, value: float) -> bool:
        return _within(value, self.lt_pct, self.gt_pct)


Condition = Annotated[
    Union[IndicatorCondition, PriceChangeCondition, PortfolioExposureCondition],
    Field(discriminator="kind"),
]


# =============================================================================
# Actions
# =============================================================================

OrderType = Literal["market", "limit"]


class EnterAction(BaseModel):
    """Spend allocation_pct of total equity on symbol.

    A negative allocation is a sell of that share of equity.
    """

    model_config = ConfigDict(frozen=True, allow_inf_nan=False)

    type: Literal["enter"] = "enter"
    symbol: str
    allocation_pct: float = Field(ge=-100, le=100)
    order_type: OrderType = "market"
    slippage_max_pct: float | None = Field(None, ge=0)

    @field_validator("allocation_pct")
    @classmethod
    def _non_zero(cls, value: float) -> float:
        if value == 0:
            raise ValueError("must be non-zero")
        return value

    @property
    def symbols(self) -> list[str]:
        return [self.symbol]

    @property
    def is_sell(self) -> bool:
        return self.allocation_pct < 0


class ExitAction(BaseModel):
    """Sell allocation_pct of the current holding of symbol."""

    model_config = ConfigDict(frozen=True, allow_inf_nan=False)

    type: Literal["exit"] = "exit"
    symbol: str
    allocation_pct: float = Field(100.0, gt=0, le=100)
    order_type: OrderType = "market"

    @property
    def symbols(self) -> list[str]:
        return [self.symbol]

    @property
    def is_sell(self) -> bool:
        return True


class RebalanceAction(BaseModel):
    """Move each listed symbol to target percent of total equity."""

    model_config = ConfigDict(frozen=True, allow_inf_nan=False)

    type: Literal["rebalance"] = "rebalance"
    target: dict[str, Annotated[float, Field(ge=0, le=100)]] = Field(min_length=1)

    @field_validator("target")
    @classmethod
    def _within_equity(cls, value: dict[str, float]) -> dict[str, float]:
        if sum(value.values()) > 100:
            raise ValueError("targets sum to more than 100%")
        return value

    @property
    def symbols(self) -> list[str]:
        return list(self.target)

    @property
    def is_sell(self) -> bool:
        return False


Action = Annotated[
    Union[EnterAction, ExitAction, RebalanceAction],
    Field(discriminator="type"),
]


# =============================================================================
# Risk + Rule
# =============================================================================

class RiskSpec(BaseModel):
    """Per-rule risk configuration."""

    model_config = ConfigDict(frozen=True, allow_inf_nan=False)

    max_position_pct: float | None = Field(None, gt=0, le=100)
    cooldown_secs: float | None = Field(None, ge=0)
    guardrails: frozenset[Guardrail] = frozenset()
    max_daily_loss_pct: float | None = Field(None, gt=0)

    def has(self, guardrail: Guardrail) -> bool:
        return guardrail in self.guardrails


class Rule(BaseModel):
    """A validated, strongly-typed trading rule."""

    model_config = ConfigDict(frozen=True, allow_inf_nan=False)

    id: str | None = None
    name: str
    enabled: bool = True
    trigger: Trigger
    conditions: list[Condition] = Field(min_length=1)
    actions: list[Action] = Field(min_length=1)
    risk: RiskSpec | None = None
    meta: dict[str, Any] = Field(default_factory=dict)

    @property
    def rule_id(self) -> str:
        """Identity used for cooldown and execution bookkeeping."""
        return self.id or self.name

    @property
    def risk_spec(self) -> RiskSpec:
        return self.risk or RiskSpec()
