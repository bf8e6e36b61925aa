"""Rule book loaded from rules.yaml.

Layout:
    objectives:
      coreAssets:
        BTC: {baseline: 0.5, minBaseline: 0.4}
      autoExecuteCoreAssets: true
      dryRunDefault: false
      approvalsRequired: {largeTradeUsd: 5000}
    rules:
      - name: RSI Oversold
        trigger: {type: interval, every: 15m}
        ...

No file means an empty rule book with default objectives.
"""

import logging
from pathlib import Path

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field

from rules.models.context import Objectives
from rules.models.rule import Rule
from rules.parser import parse_rules

logger = logging.getLogger(__name__)


class RuleBook(BaseModel):
    """Validated rule set plus owner objectives."""

    model_config = ConfigDict(frozen=True)

    rules: list[Rule] = Field(default_factory=list)
    objectives: Objectives = Field(default_factory=Objectives)

    def enabled_rules(self) -> list[Rule]:
        return [r for r in self.rules if r.enabled]

    def get(self, rule_id: str) -> Rule | None:
        return next((r for r in self.rules if r.rule_id == rule_id), None)


def load_rule_book(path: Path) -> RuleBook:
    """Load and validate a rule book.

    Raises:
        RuleValidationError: If any rule document is invalid.
        pydantic.ValidationError: If objectives are malformed.
    """
    env_path = path.parent / ".env"
    load_dotenv(env_path, override=False)

    if not path.exists():
        logger.info("No rule book found at %s, starting with no rules", path)
        return RuleBook()

    with open(path) as f:
        raw = yaml.safe_load(f) or {}

    book = RuleBook(
        rules=parse_rules(raw.get("rules") or []),
        objectives=Objectives.model_validate(raw.get("objectives") or {}),
    )
    logger.info(
        "Loaded rule book: %d rules (%d enabled), %d core assets, auto-execute=%s",
        len(book.rules),
        len(book.enabled_rules()),
        len(book.objectives.core_assets),
        book.objectives.auto_execute_core_assets,
    )
    return book
