"""Backtest-specific configuration.

Independent of app/config.py: replay cadence, Sharpe annualization,
numeraire and synthetic price generation.
"""

from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BacktestSettings(BaseSettings):
    """Backtest configuration loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="BACKTEST_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Replay cadence
    step_minutes: int = Field(15, gt=0)

    # Sharpe = mean/std of per-step returns * sqrt(annualization_periods).
    # 252 assumes daily returns while steps are step_minutes long; kept as
    # the default for comparability with existing results.
    annualization_periods: int = 252

    # Cash asset that enters spend and exits credit
    numeraire: str = "USDC"

    # Synthetic random walk: per-step max fractional move per symbol
    seed: int | None = None
    synthetic_volatility: dict[str, float] = {"BTC": 0.02, "XRP": 0.03}
    default_volatility: float = 0.01

    # Price points per symbol kept in the replay's market-data window
    history_limit: int = 500


_settings: BacktestSettings | None = None


def get_backtest_settings() -> BacktestSettings:
    """Get cached backtest settings instance."""
    global _settings
    if _settings is None:
        _settings = BacktestSettings()
    return _settings
