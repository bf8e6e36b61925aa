"""Application configuration."""

from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Tick loop
    tick_interval_secs: float = 60.0
    evaluator_workers: int = 1

    # Rule book
    rules_path: Path = Path(__file__).parent.parent / "rules.yaml"

    # Portfolio
    numeraire: str = "USDC"

    # Paper trading (app.main)
    paper_balances: dict[str, float] = {"BTC": 1.0, "USDC": 50000.0}
    paper_prices: dict[str, float] = {"BTC": 50000.0, "USDC": 1.0}
    paper_volatility: dict[str, float] = {"BTC": 0.002}
    paper_seed: int | None = None

    # Account-wide risk limits
    max_trades_per_hour: int = 8
    default_daily_loss_pct: float = 5.0

    # Force every intent to dry-run regardless of objectives
    dry_run: bool = False

    # Skip evaluation entirely while set
    kill_switch: bool = False

    log_level: str = "INFO"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
