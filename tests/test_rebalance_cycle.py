"""
Tests for the planning pipeline (account -> ranking -> reconciliation).
"""

from contextlib import contextmanager
from datetime import datetime

import pytest

from core.broker_avanza import InstrumentCandidate
from core.execution import ExecutionConfig, ExecutionEngine
from core.rebalance_cycle import RebalancePipeline
from tests.helpers import FakeBroker


@pytest.fixture
def broker():
    b = FakeBroker()
    b.add_asset("A", change=1.10)
    b.add_asset("B", change=1.05)
    b.instruments["A"] = [InstrumentCandidate("WA", 2.0, 5000.0)]
    b.instruments["B"] = [InstrumentCandidate("WB", 2.0, 5000.0)]
    return b


def _plan(universe, broker):
    return RebalancePipeline(universe, broker, "1234567").plan(datetime(2024, 2, 1, 9, 0))


class TestRebalancePipeline:

    def test_rotates_into_stronger_asset(self, make_universe, broker):
        """Plan rotates into the stronger asset"""
        broker.hold("WB", value=1000.0, volume=10, underlying="B")
        broker.cash = [100.0]

        plan = _plan(make_universe(agg=1), broker)

        assert plan.success
        assert plan.account_id == "acc-1"
        assert plan.upcoming_holdings == ["A"]
        assert len(plan.trades) == 1
        trade = plan.trades[0]
        assert (trade.sell_asset, trade.buy_asset) == ("WB", "WA")
        assert trade.extra_buy_cash == pytest.approx(95.0)
        assert plan.total_cash == 100.0

    def test_below_trend_moves_to_backup(self, make_universe, broker):
        """Below-trend target moves to the backup asset"""
        broker.add_asset("A", change=1.10, above_trend=False)
        broker.hold("WB", value=1000.0, volume=10, underlying="B")

        plan = _plan(make_universe(agg=1), broker)

        assert plan.upcoming_holdings == ["CASH"]
        assert [(t.sell_asset, t.buy_asset) for t in plan.trades] == [("WB", "CASH")]
        assert broker.searches == []

    def test_already_on_target(self, make_universe, broker):
        """No trades when already on target"""
        broker.hold("WA", value=1000.0, volume=10, underlying="A")

        plan = _plan(make_universe(agg=1), broker)

        assert plan.success
        assert plan.trades == []
        assert plan.no_trade_reason == "already_on_target"

    def test_planning_uses_single_session(self, make_universe, broker):
        """Planning runs in one broker session"""
        broker.hold("WB", value=1000.0, volume=10, underlying="B")
        _plan(make_universe(agg=1), broker)

        assert broker.sessions_opened == 1
        assert broker.sessions_closed == 1

    def test_account_failure_aborts(self, make_universe, broker):
        """Account lookup failure aborts the plan"""
        broker.fail_account_lookup = True

        plan = _plan(make_universe(agg=1), broker)

        assert not plan.success
        assert plan.no_trade_reason == "planning_error_DataUnavailable"
        assert plan.trades == []

    def test_missing_instrument_aborts(self, make_universe, broker):
        """Missing instrument aborts the plan"""
        broker.instruments["A"] = []
        broker.hold("WB", value=1000.0, volume=10, underlying="B")

        plan = _plan(make_universe(agg=1), broker)

        assert not plan.success
        assert plan.no_trade_reason == "planning_error_NoSuitableInstrument"

    def test_unresolvable_holding_aborts(self, make_universe, broker):
        """Unresolvable holding aborts the plan"""
        broker.hold("W?", value=1000.0, volume=10)

        plan = _plan(make_universe(agg=1), broker)

        assert plan.no_trade_reason == "planning_error_DataUnavailable"
        assert "underlying:W?" in plan.error

    def test_unexpected_error_is_pipeline_error(self, make_universe):
        """Unexpected errors abort with a pipeline reason"""
        class Exploding:
            @contextmanager
            def session(self):
                raise RuntimeError("socket exploded")
                yield

        plan = _plan(make_universe(agg=1), Exploding())

        assert not plan.success
        assert plan.no_trade_reason == "pipeline_error"
        assert plan.error == "socket exploded"


class TestCashToInstrumentRotation:

    def test_single_slot_moves_cash_into_top_asset(self, make_universe, broker):
        """N=1 holding only the backup fund plans and executes one cash -> warrant trade"""
        broker.hold("CASH", value=1000.0, volume=100)

        plan = _plan(make_universe(agg=1), broker)

        assert plan.success
        assert plan.upcoming_holdings == ["A"]
        assert [(t.sell_asset, t.buy_asset) for t in plan.trades] == [("CASH", "WA")]
        assert plan.trades[0].sell_value == pytest.approx(1000.0)

        engine = ExecutionEngine(
            broker,
            account_id=plan.account_id,
            backup_asset="CASH",
            config=ExecutionConfig.from_dict("LIVE", {"retry_backoff_seconds": 0}),
        )
        outcome = engine.execute(plan.trades[0], "e2e-0")

        assert outcome.success
        assert [(o["side"], o["asset"], o["kind"]) for o in broker.placed_orders()] == [
            ("SELL", "CASH", "fund"),
            ("BUY", "WA", "instrument"),
        ]
