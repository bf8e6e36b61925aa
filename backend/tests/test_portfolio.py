"""Tests for the simulated replay portfolio."""

from datetime import datetime, timedelta, timezone

import pytest

from backtest.portfolio import SimulatedPortfolio
from rules.models.rule import EnterAction, ExitAction, RebalanceAction


T0 = datetime(2025, 1, 1, tzinfo=timezone.utc)


def make_portfolio(**balances) -> SimulatedPortfolio:
    balances = balances or {"usdc": 20000.0}
    return SimulatedPortfolio(balances=balances, prices={"btc": 100.0})


class TestValuation:
    def test_numeraire_defaults(self):
        portfolio = SimulatedPortfolio(balances={"btc": 2.0}, prices={"btc": 100.0})
        assert portfolio.holding("USDC") == 0.0
        assert portfolio.price("usdc") == 1.0
        assert portfolio.total_value() == pytest.approx(200.0)

    def test_snapshot_is_independent(self):
        portfolio = make_portfolio()
        snapshot = portfolio.snapshot()
        portfolio.buy("BTC", 1000.0, "r", T0)
        assert snapshot.holding("BTC") == 0.0
        assert snapshot.holding("USDC") == 20000.0

    def test_numeraire_price_survives_updates(self):
        portfolio = make_portfolio()
        portfolio.update_prices({"BTC": 120.0})
        assert portfolio.price("USDC") == 1.0
        assert portfolio.price("BTC") == 120.0


class TestFIFO:
    def test_matches_oldest_lots_first(self):
        portfolio = make_portfolio()
        portfolio.buy("BTC", 10000.0, "r", T0)  # 100 @ 100
        portfolio.update_prices({"BTC": 200.0})
        portfolio.buy("BTC", 10000.0, "r", T0 + timedelta(hours=1))  # 50 @ 200
        portfolio.update_prices({"BTC": 150.0})

        trade = portfolio.sell("BTC", 120.0, "r", T0 + timedelta(hours=2))
        # 100 * (150 - 100) + 20 * (150 - 200)
        assert trade.pnl == pytest.approx(4000.0)
        assert trade.matched_qty == pytest.approx(120.0)
        assert [c.qty for c in portfolio.closed_lots] == pytest.approx([100.0, 20.0])
        assert [c.hold_minutes for c in portfolio.closed_lots] == pytest.approx([120.0, 60.0])

        [remaining] = portfolio.open_lots("BTC")
        assert remaining.qty == pytest.approx(30.0)
        assert remaining.price == 200.0

    def test_initial_holdings_realize_nothing(self):
        portfolio = SimulatedPortfolio(balances={"BTC": 10.0, "USDC": 0.0}, prices={"BTC": 100.0})
        trade = portfolio.sell("BTC", 5.0, "r", T0)
        assert trade.pnl == 0.0
        assert trade.matched_qty == 0.0
        assert portfolio.closed_lots == []
        assert portfolio.holding("USDC") == pytest.approx(500.0)

    def test_partial_match(self):
        portfolio = SimulatedPortfolio(balances={"BTC": 1.0, "USDC": 100.0}, prices={"BTC": 100.0})
        portfolio.buy("BTC", 100.0, "r", T0)
        portfolio.update_prices({"BTC": 110.0})
        trade = portfolio.sell("BTC", 2.0, "r", T0)
        assert trade.matched_qty == pytest.approx(1.0)
        assert trade.pnl == pytest.approx(10.0)


class TestExecute:
    def test_enter_spends_share_of_equity(self):
        portfolio = make_portfolio()
        [trade] = portfolio.execute(EnterAction(symbol="BTC", allocation_pct=10), "r", T0)
        assert trade.side == "buy"
        assert trade.qty == pytest.approx(20.0)
        assert portfolio.holding("USDC") == pytest.approx(18000.0)
        assert portfolio.trades == [trade]

    def test_buy_capped_at_cash(self):
        portfolio = SimulatedPortfolio(balances={"BTC": 100.0, "USDC": 500.0}, prices={"BTC": 100.0})
        [trade] = portfolio.execute(EnterAction(symbol="BTC", allocation_pct=50), "r", T0)
        assert trade.notional == pytest.approx(500.0)
        assert portfolio.holding("USDC") == pytest.approx(0.0)
        assert portfolio.execute(EnterAction(symbol="BTC", allocation_pct=10), "r", T0) == []

    def test_negative_enter_sells_share_of_equity(self):
        portfolio = SimulatedPortfolio(balances={"BTC": 100.0, "USDC": 10000.0}, prices={"BTC": 100.0})
        [trade] = portfolio.execute(EnterAction(symbol="BTC", allocation_pct=-25), "r", T0)
        assert trade.side == "sell"
        assert trade.qty == pytest.approx(50.0)

    def test_exit_sells_share_of_holding(self):
        portfolio = SimulatedPortfolio(balances={"BTC": 8.0}, prices={"BTC": 100.0})
        [trade] = portfolio.execute(ExitAction(symbol="BTC", allocation_pct=25), "r", T0)
        assert trade.qty == pytest.approx(2.0)
        assert portfolio.holding("BTC") == pytest.approx(6.0)
        assert portfolio.holding("USDC") == pytest.approx(200.0)

    def test_exit_with_nothing_held(self):
        assert make_portfolio().execute(ExitAction(symbol="BTC"), "r", T0) == []

    def test_unpriced_symbol_skipped(self):
        assert make_portfolio().execute(EnterAction(symbol="ETH", allocation_pct=10), "r", T0) == []

    def test_rebalance(self):
        portfolio = SimulatedPortfolio(
            balances={"BTC": 1.0, "XRP": 0.0, "USDC": 100.0},
            prices={"BTC": 100.0, "XRP": 1.0},
        )
        fills = portfolio.execute(RebalanceAction(target={"BTC": 25, "XRP": 50}), "r", T0)
        assert [(t.symbol, t.side) for t in fills] == [("BTC", "sell"), ("XRP", "buy")]
        assert portfolio.holding("BTC") == pytest.approx(0.5)
        assert portfolio.holding("XRP") == pytest.approx(100.0)
        assert portfolio.holding("USDC") == pytest.approx(50.0)
        assert portfolio.total_value() == pytest.approx(200.0)
