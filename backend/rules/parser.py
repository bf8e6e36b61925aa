"""Rule document parser and validator.

Converts an untyped rule document (as stored by the caller, JSON/YAML
style with camelCase keys) into a validated Rule. Validation is fail-fast
and total: the first missing or invalid field raises RuleValidationError
naming that field, and no partially-valid Rule is ever returned.

Condition shapes:
    {"indicator": "rsi"|"sma"|"volatility", "symbol": ..., "period"|"window": ..., "lt"?, "gt"?}
    {"priceChangePct": {"symbol": ..., "windowMins"|"windowMinutes": ..., "lt"?, "gt"?}}
    {"portfolioExposure": {"symbol": ..., "ltPct"?, "gtPct"?}}

Action shapes:
    {"type": "enter", "symbol": ..., "allocationPct": ...}
    {"type": "exit", "symbol": ..., "allocationPct"?: ...}
    {"type": "rebalance", "target": {symbol: pct}}
"""

from __future__ import annotations

import logging
import math
from collections.abc import Mapping
from typing import Any, Iterable, TypeVar

from pydantic import BaseModel, ValidationError
from pydantic.alias_generators import to_camel

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

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)

_CONDITION_SHAPES = ("indicator", "priceChangePct", "portfolioExposure")
_ORDER_TYPES = ("market", "limit")

# Applied when a rule document carries no risk block at all
DEFAULT_GUARDRAILS = frozenset({Guardrail.BASELINE_PROTECTION})


class RuleValidationError(ValueError):
    """Raised when a rule document fails validation.

    Attributes:
        field: Dotted path of the offending field (e.g. 'conditions[1].lt').
    """

    def __init__(self, field: str, message: str):
        self.field = field
        self.message = message
        super().__init__(f"Invalid rule: {field}: {message}")

    def prefixed(self, prefix: str) -> "RuleValidationError":
        return RuleValidationError(f"{prefix}.{self.field}", self.message)


# =============================================================================
# Field helpers
# =============================================================================

def _is_number(value: Any) -> bool:
    return (
        isinstance(value, (int, float))
        and not isinstance(value, bool)
        and math.isfinite(value)
    )


def _require_mapping(value: Any, field: str) -> Mapping:
    if not isinstance(value, Mapping):
        raise RuleValidationError(field, "expected object")
    return value


def _require_str(doc: Mapping, key: str, path: str) -> str:
    value = doc.get(key)
    if value is None:
        raise RuleValidationError(path, "is required")
    if not isinstance(value, str) or not value.strip():
        raise RuleValidationError(path, "expected non-empty string")
    return value.strip()


def _symbol(doc: Mapping, path: str) -> str:
    return _require_str(doc, "symbol", f"{path}.symbol").upper()


def _optional_number(doc: Mapping, key: str, path: str) -> float | None:
    value = doc.get(key)
    if value is None:
        return None
    if not _is_number(value):
        raise RuleValidationError(f"{path}.{key}", "expected finite number")
    return float(value)


def _optional_int(doc: Mapping, key: str, path: str) -> int | None:
    value = doc.get(key)
    if value is None:
        return None
    if not _is_number(value) or int(value) != value:
        raise RuleValidationError(f"{path}.{key}", "expected integer")
    return int(value)


def _error_path(path: str, loc: tuple, keys: Mapping[str, str]) -> str:
    if not loc:
        return path
    field, *rest = loc
    return ".".join([path, keys.get(field, to_camel(field)), *map(str, rest)])


def _build(model: type[M], path: str, keys: Mapping[str, str] | None = None, **fields: Any) -> M:
    """Validate `fields` into `model`; the first error names the document field.

    None values are dropped so model defaults apply. `keys` maps model field
    names to document keys where they differ from the camelCase alias.
    """
    try:
        return model.model_validate({k: v for k, v in fields.items() if v is not None})
    except ValidationError as e:
        error = e.errors()[0]
        message = "is required" if error["type"] == "missing" else error["msg"]
        raise RuleValidationError(_error_path(path, error["loc"], keys or {}), message) from None


# =============================================================================
# Sections
# =============================================================================

def _parse_trigger(value: Any) -> Trigger:
    if value is None:
        raise RuleValidationError("trigger", "is required")
    doc = _require_mapping(value, "trigger")
    kind = doc.get("type")
    if kind == "interval":
        every = _require_str(doc, "every", "trigger.every")
        try:
            parse_interval(every)
        except ValueError as e:
            raise RuleValidationError("trigger.every", str(e)) from None
        return IntervalTrigger(every=every)
    if kind == "event":
        return EventTrigger(name=_require_str(doc, "name", "trigger.name"))
    raise RuleValidationError("trigger.type", f"unknown trigger type {kind!r}")


def _parse_indicator(doc: Mapping, path: str) -> IndicatorCondition:
    raw = doc.get("indicator")
    try:
        indicator = IndicatorName(raw)
    except ValueError:
        raise RuleValidationError(
            f"{path}.indicator",
            f"unknown indicator {raw!r} (expected rsi, sma or volatility)",
        ) from None

    period = _optional_int(doc, "period", path)
    if indicator == IndicatorName.SMA and period is None:
        raise RuleValidationError(f"{path}.period", "is required for sma")

    return _build(
        IndicatorCondition,
        path,
        indicator=indicator,
        symbol=_symbol(doc, path),
        period=period,
        window=_optional_int(doc, "window", path),
        lt=_optional_number(doc, "lt", path),
        gt=_optional_number(doc, "gt", path),
    )


def _parse_price_change(value: Any, path: str) -> PriceChangeCondition:
    path = f"{path}.priceChangePct"
    doc = _require_mapping(value, path)
    key = "windowMins" if "windowMins" in doc else "windowMinutes"
    window = _optional_int(doc, key, path)
    if window is None:
        raise RuleValidationError(f"{path}.windowMins", "is required")
    return _build(
        PriceChangeCondition,
        path,
        keys={"window_minutes": key},
        symbol=_symbol(doc, path),
        window_minutes=window,
        lt=_optional_number(doc, "lt", path),
        gt=_optional_number(doc, "gt", path),
    )


def _parse_exposure(value: Any, path: str) -> PortfolioExposureCondition:
    path = f"{path}.portfolioExposure"
    doc = _require_mapping(value, path)
    return _build(
        PortfolioExposureCondition,
        path,
        symbol=_symbol(doc, path),
        lt_pct=_optional_number(doc, "ltPct", path),
        gt_pct=_optional_number(doc, "gtPct", path),
    )


def _parse_condition(value: Any, path: str) -> Condition:
    doc = _require_mapping(value, path)
    shapes = [s for s in _CONDITION_SHAPES if s in doc]
    if not shapes:
        raise RuleValidationError(
            path, "unknown condition shape (expected indicator, priceChangePct or portfolioExposure)"
        )
    if len(shapes) > 1:
        raise RuleValidationError(path, f"ambiguous condition shape: {', '.join(shapes)}")

    shape = shapes[0]
    if shape == "indicator":
        return _parse_indicator(doc, path)
    if shape == "priceChangePct":
        return _parse_price_change(doc["priceChangePct"], path)
    return _parse_exposure(doc["portfolioExposure"], path)


def _parse_order_type(doc: Mapping, path: str) -> str:
    order_type = doc.get("orderType", "market")
    if order_type not in _ORDER_TYPES:
        raise RuleValidationError(f"{path}.orderType", f"expected one of {_ORDER_TYPES}")
    return order_type


def _parse_action(value: Any, path: str) -> Action:
    doc = _require_mapping(value, path)
    kind = doc.get("type")

    if kind == "enter":
        return _build(
            EnterAction,
            path,
            symbol=_symbol(doc, path),
            allocation_pct=_optional_number(doc, "allocationPct", path),
            order_type=_parse_order_type(doc, path),
            slippage_max_pct=_optional_number(doc, "slippageMaxPct", path),
        )

    if kind == "exit":
        return _build(
            ExitAction,
            path,
            symbol=_symbol(doc, path),
            allocation_pct=_optional_number(doc, "allocationPct", path),
            order_type=_parse_order_type(doc, path),
        )

    if kind == "rebalance":
        target = _require_mapping(doc.get("target"), f"{path}.target")
        parsed: dict[str, float] = {}
        for symbol, pct in target.items():
            if not _is_number(pct):
                raise RuleValidationError(f"{path}.target.{symbol}", "expected finite number")
            parsed[str(symbol).upper()] = float(pct)
        return _build(RebalanceAction, path, target=parsed)

    raise RuleValidationError(f"{path}.type", f"unknown action type {kind!r}")


def _parse_risk(value: Any) -> RiskSpec:
    if value is None:
        return RiskSpec(guardrails=DEFAULT_GUARDRAILS)
    doc = _require_mapping(value, "risk")

    raw_guardrails = doc.get("guardrails", [])
    if not isinstance(raw_guardrails, (list, tuple, set, frozenset)):
        raise RuleValidationError("risk.guardrails", "expected list")
    guardrails = set()
    for i, tag in enumerate(raw_guardrails):
        try:
            guardrails.add(Guardrail(tag))
        except ValueError:
            raise RuleValidationError(f"risk.guardrails[{i}]", f"unknown guardrail {tag!r}") from None

    return _build(
        RiskSpec,
        "risk",
        max_position_pct=_optional_number(doc, "maxPositionPct", "risk"),
        cooldown_secs=_optional_number(doc, "cooldownSecs", "risk"),
        guardrails=frozenset(guardrails),
        max_daily_loss_pct=_optional_number(doc, "maxDailyLossPct", "risk"),
    )


def _parse_list(doc: Mapping, key: str, parse_item) -> list:
    items = doc.get(key)
    if items is None:
        raise RuleValidationError(key, "is required")
    if not isinstance(items, (list, tuple)):
        raise RuleValidationError(key, "expected list")
    if not items:
        raise RuleValidationError(key, "must contain at least one entry")
    return [parse_item(item, f"{key}[{i}]") for i, item in enumerate(items)]


# =============================================================================
# Public API
# =============================================================================

def parse_rule(document: Any) -> Rule:
    """
    Validate an untyped rule document.

    Args:
        document: Mapping in the stored rule format

    Returns:
        A fully validated Rule

    Raises:
        RuleValidationError: On the first missing or invalid field
    """
    doc = _require_mapping(document, "rule")

    name = _require_str(doc, "name", "name")

    rule_id = doc.get("id")
    if rule_id is not None and (not isinstance(rule_id, str) or not rule_id):
        raise RuleValidationError("id", "expected non-empty string")

    enabled = doc.get("enabled", True)
    if not isinstance(enabled, bool):
        raise RuleValidationError("enabled", "expected boolean")

    trigger = _parse_trigger(doc.get("trigger"))
    conditions = _parse_list(doc, "conditions", _parse_condition)
    actions = _parse_list(doc, "actions", _parse_action)
    risk = _parse_risk(doc.get("risk"))

    meta = doc.get("meta") or {}
    if not isinstance(meta, Mapping):
        raise RuleValidationError("meta", "expected object")

    return Rule(
        id=rule_id,
        name=name,
        enabled=enabled,
        trigger=trigger,
        conditions=conditions,
        actions=actions,
        risk=risk,
        meta=dict(meta),
    )


def parse_rules(documents: Iterable[Any]) -> list[Rule]:
    """Parse a list of rule documents; errors are prefixed with the index."""
    rules = []
    for i, document in enumerate(documents):
        try:
            rules.append(parse_rule(document))
        except RuleValidationError as e:
            raise e.prefixed(f"rules[{i}]") from None
    logger.debug("Parsed %d rules", len(rules))
    return rules


def _drop_none(doc: dict) -> dict:
    return {k: v for k, v in doc.items() if v is not None}


def _condition_to_document(cond: Condition) -> dict:
    if isinstance(cond, IndicatorCondition):
        return _drop_none({
            "indicator": cond.indicator.value,
            "symbol": cond.symbol,
            "period": cond.period,
            "window": cond.window,
            "lt": cond.lt,
            "gt": cond.gt,
        })
    if isinstance(cond, PriceChangeCondition):
        return {"priceChangePct": _drop_none({
            "symbol": cond.symbol,
            "windowMins": cond.window_minutes,
            "lt": cond.lt,
            "gt": cond.gt,
        })}
    return {"portfolioExposure": _drop_none({
        "symbol": cond.symbol,
        "ltPct": cond.lt_pct,
        "gtPct": cond.gt_pct,
    })}


def _action_to_document(action: Action) -> dict:
    if isinstance(action, EnterAction):
        return _drop_none({
            "type": "enter",
            "symbol": action.symbol,
            "allocationPct": action.allocation_pct,
            "orderType": action.order_type,
            "slippageMaxPct": action.slippage_max_pct,
        })
    if isinstance(action, ExitAction):
        return {
            "type": "exit",
            "symbol": action.symbol,
            "allocationPct": action.allocation_pct,
            "orderType": action.order_type,
        }
    return {"type": "rebalance", "target": dict(action.target)}


def rule_to_document(rule: Rule) -> dict:
    """Serialize a Rule back to the stored document format.

    parse_rule(rule_to_document(rule)) == rule for any validated rule.
    """
    trigger = rule.trigger
    if isinstance(trigger, IntervalTrigger):
        trigger_doc = {"type": "interval", "every": trigger.every}
    else:
        trigger_doc = {"type": "event", "name": trigger.name}

    doc: dict[str, Any] = {
        "name": rule.name,
        "enabled": rule.enabled,
        "trigger": trigger_doc,
        "conditions": [_condition_to_document(c) for c in rule.conditions],
        "actions": [_action_to_document(a) for a in rule.actions],
    }
    if rule.id is not None:
        doc["id"] = rule.id
    if rule.risk is not None:
        doc["risk"] = _drop_none({
            "maxPositionPct": rule.risk.max_position_pct,
            "cooldownSecs": rule.risk.cooldown_secs,
            "maxDailyLossPct": rule.risk.max_daily_loss_pct,
            "guardrails": sorted(g.value for g in rule.risk.guardrails),
        })
    if rule.meta:
        doc["meta"] = dict(rule.meta)
    return doc
