"""Paper-trading entry point.

Runs the rule engine against a simulated market until SIGINT/SIGTERM:

    python -m app.main
"""

import asyncio
import logging
import signal

from backtest.portfolio import SimulatedPortfolio
from backtest.prices import SyntheticPriceGenerator

from app.config import Settings, get_settings
from app.paper import PaperBroker, PaperMarket
from app.service import RuleEngineService

logger = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


def build_service(settings: Settings) -> tuple[RuleEngineService, PaperBroker]:
    """Wire a paper market and broker into the engine service."""
    portfolio = SimulatedPortfolio(
        balances=dict(settings.paper_balances),
        prices=dict(settings.paper_prices),
        numeraire=settings.numeraire,
    )
    generator = SyntheticPriceGenerator(
        seed=settings.paper_seed,
        volatility=settings.paper_volatility,
        pinned=(settings.numeraire,),
    )
    market = PaperMarket(portfolio, generator)

    service: RuleEngineService | None = None

    def lookup(rule_id: str):
        return service.rule_book.get(rule_id) if service is not None else None

    broker = PaperBroker(portfolio, lookup)
    service = RuleEngineService(market, broker, settings=settings)
    return service, broker


async def run(settings: Settings) -> None:
    service, broker = build_service(settings)
    logger.info(
        f"Starting paper trading: {len(service.rule_book.enabled_rules())} enabled rules, "
        f"tick every {settings.tick_interval_secs:.0f}s"
    )

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    await service.start()
    try:
        await stop.wait()
    finally:
        logger.info("Shutting down...")
        await service.stop()
        logger.info(
            f"Final portfolio: {broker.portfolio.balances} "
            f"({len(broker.portfolio.trades)} fills, {len(broker.pending)} pending approvals)"
        )


def main():
    settings = get_settings()
    configure_logging(settings.log_level)
    asyncio.run(run(settings))


if __name__ == "__main__":
    main()
