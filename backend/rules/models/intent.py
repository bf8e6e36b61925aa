"""Evaluator output models."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict

from rules.models.rule import Action


class Intent(BaseModel):
    """A proposed trade produced by a rule that fired this tick.

    Intents have no lifecycle of their own: the caller either persists one
    (as a pending approval or an execution record) or discards it.
    """

    model_config = ConfigDict(frozen=True)

    rule_id: str
    action: Action
    requires_approval: bool
    dry_run: bool
    reason: str = "conditions-met"
    created_at: datetime

    @property
    def symbol(self) -> str | None:
        """Single symbol of enter/exit actions; None for rebalances."""
        return getattr(self.action, "symbol", None)


class RiskDecision(BaseModel):
    """Allow/block verdict from the risk layer."""

    model_config = ConfigDict(frozen=True)

    allowed: bool
    reason: str | None = None
    check: str | None = None

    @classmethod
    def allow(cls) -> "RiskDecision":
        return cls(allowed=True)

    @classmethod
    def block(cls, reason: str, check: str) -> "RiskDecision":
        return cls(allowed=False, reason=reason, check=check)
