"""
Tests for leveraged instrument selection.
"""

import pytest

from core.broker_avanza import InstrumentCandidate
from core.exceptions import DataUnavailable, NoSuitableInstrument
from core.instrument_selector import InstrumentSelector, pick_instrument
from core.universe import Asset
from tests.helpers import FakeBroker, FakeSession


def _candidates(*specs):
    return [InstrumentCandidate(f"W{i}", lev, traded) for i, (lev, traded) in enumerate(specs)]


class TestPickInstrument:

    def test_closest_leverage_wins(self):
        """Test closest leverage to the target wins."""
        chosen = pick_instrument(_candidates((1.0, 10), (1.8, 10), (3.0, 10)), 2)
        assert chosen.leverage == 1.8

    def test_closest_below_ceiling(self):
        """Test candidates at or above target + 1 lose to closer ones below."""
        chosen = pick_instrument(_candidates((1.0, 10), (4.5, 10)), 2)
        assert chosen.leverage == 1.0

    def test_untraded_candidate_skipped(self):
        """Test candidates with no traded value are skipped."""
        chosen = pick_instrument(_candidates((2.0, 0), (2.6, 5)), 2)
        assert chosen.instrument_id == "W1"

    def test_ceiling_excludes_candidates_at_target_plus_one(self):
        """Test leverage equal to target + 1 is excluded."""
        chosen = pick_instrument(_candidates((3.0, 10), (0.5, 10)), 2)
        assert chosen.instrument_id == "W1"

    def test_falls_back_to_closest_when_none_qualify(self):
        """Test falls back to the closest candidate when none qualify."""
        chosen = pick_instrument(_candidates((3.5, 10), (2.1, 0)), 2)
        assert chosen.instrument_id == "W1"

    def test_equal_distance_keeps_search_order(self):
        """Test ties keep search order."""
        chosen = pick_instrument(_candidates((1.5, 10), (2.5, 10)), 2)
        assert chosen.instrument_id == "W0"

    def test_empty_list_raises(self):
        """Test no candidates raises."""
        with pytest.raises(NoSuitableInstrument):
            pick_instrument([], 2)


class TestInstrumentSelector:

    def test_search_by_underlying(self):
        """Search filters by underlying id by default"""
        broker = FakeBroker()
        broker.instruments["A"] = _candidates((2.0, 10))
        selector = InstrumentSelector(FakeSession(broker))

        assert selector.select(Asset("Asset A", "A", 2)) == "W0"
        search = broker.searches[0]
        assert search.underlying_id == "A"
        assert search.name_query is None
        assert search.to_payload()["filter"]["subTypes"] == ["mini_future"]
        assert search.to_payload()["limit"] == 20

    def test_search_by_name_query(self):
        """Search uses the configured name query"""
        broker = FakeBroker()
        broker.instruments["GULD"] = _candidates((2.0, 10))
        selector = InstrumentSelector(FakeSession(broker))

        assert selector.select(Asset("Gold", "G", 2, name_query="GULD")) == "W0"
        payload = broker.searches[0].to_payload()
        assert payload["filter"]["nameQuery"] == "GULD"
        assert payload["filter"]["underlyingInstruments"] == []

    def test_explicit_target_overrides_asset(self):
        """Explicit target leverage overrides the asset's"""
        broker = FakeBroker()
        broker.instruments["A"] = _candidates((2.0, 10), (5.0, 10))
        selector = InstrumentSelector(FakeSession(broker))

        assert selector.select(Asset("Asset A", "A", 2), target_leverage=5) == "W1"

    def test_no_candidates_names_underlying(self):
        """Empty search names the underlying in the error"""
        selector = InstrumentSelector(FakeSession(FakeBroker()))
        with pytest.raises(NoSuitableInstrument) as exc:
            selector.select(Asset("Asset A", "A", 2))
        assert exc.value.underlying_id == "A"

    def test_search_failure_is_data_unavailable(self):
        """Search errors surface as unavailable data"""
        class Broken:
            def get_leveraged_instruments(self, search):
                raise ConnectionError("down")

        with pytest.raises(DataUnavailable, match="instrument_search:A"):
            InstrumentSelector(Broken()).select(Asset("Asset A", "A", 2))
