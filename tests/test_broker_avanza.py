"""
Tests for the Avanza connector: HTTP retry policy, response parsing,
credentials and session lifecycle.
"""

import json
from contextlib import contextmanager
from datetime import date
from unittest.mock import MagicMock, Mock, patch

import pytest
from requests.exceptions import HTTPError, Timeout

from core.broker_avanza import AvanzaBroker, AvanzaSession, InstrumentSearch
from core.exceptions import DataUnavailable, PlacementFailed
from core.execution import ExecutionConfig, ExecutionEngine
from core.order_state import LegKind, LegState
from core.universe import LookbackPeriod

TOTP_SECRET = "JBSWY3DPEHPK3PXP"


def _response(status=200, payload=None):
    resp = Mock()
    resp.status_code = status
    resp.content = b"{}" if payload is not None else b""
    resp.json.return_value = payload or {}
    resp.text = json.dumps(payload or {})
    if status >= 400:
        resp.raise_for_status.side_effect = HTTPError(f"{status}", response=resp)
    else:
        resp.raise_for_status.return_value = None
    return resp


@pytest.fixture
def broker():
    return AvanzaBroker(username="user", password="pw", totp_secret=TOTP_SECRET, read_only=False)


@pytest.fixture
def session(broker):
    """Session with a fake token and a mocked HTTP client."""
    s = AvanzaSession(broker)
    s._security_token = "token"
    s._session_id = "sid"
    s._http = MagicMock()
    return s


class TestRetryPolicy:

    def test_server_error_then_success(self, session):
        """Test retries a 503 once and returns the second response."""
        session._http.request.side_effect = [_response(503), _response(200, {"ok": True})]

        with patch("core.broker_avanza.time.sleep") as sleep:
            assert session._req("GET", "/x") == {"ok": True}

        assert session._http.request.call_count == 2
        assert sleep.call_count == 1
        assert 1.0 <= sleep.call_args.args[0] <= 2.0

    def test_rate_limit_retried(self, session):
        """Test retries 429 responses until success."""
        session._http.request.side_effect = [_response(429), _response(429), _response(200, {})]

        with patch("core.broker_avanza.time.sleep"):
            session._req("GET", "/x")

        assert session._http.request.call_count == 3

    def test_client_error_not_retried(self, session):
        """Test does NOT retry 4xx errors (except 429)."""
        session._http.request.return_value = _response(400)

        with patch("core.broker_avanza.time.sleep") as sleep:
            with pytest.raises(HTTPError):
                session._req("GET", "/x")

        assert session._http.request.call_count == 1
        sleep.assert_not_called()

    def test_network_errors_exhaust_retries(self, session):
        """Test raises the last network error after all retries."""
        session._http.request.side_effect = Timeout("slow")

        with patch("core.broker_avanza.time.sleep") as sleep:
            with pytest.raises(Timeout):
                session._req("GET", "/x", max_retries=3)

        assert session._http.request.call_count == 3
        assert sleep.call_count == 2

    def test_security_token_header_sent(self, session):
        """Authenticated requests carry the security token header"""
        session._http.request.return_value = _response(200, {})
        session._req("GET", "/x")

        headers = session._http.request.call_args.kwargs["headers"]
        assert headers["X-SecurityToken"] == "token"

    def test_unauthenticated_session_rejected(self, broker):
        """Requests without a token fail before any HTTP call"""
        with pytest.raises(ValueError, match="not authenticated"):
            AvanzaSession(broker)._req("GET", "/x")


class TestParsing:

    def test_index_signal_uses_lookback_field(self, session):
        """Compare price comes from the lookback period's historical close"""
        session._http.request.return_value = _response(200, {
            "previousClosingPrice": {"value": 110.0},
            "historicalClosingPrices": {"threeMonths": 100.0, "oneYear": 80.0},
        })

        signal = session.get_index_signal("19002", LookbackPeriod.THREE_MONTHS)
        assert signal.last_price == 110.0
        assert signal.compare_price == 100.0

    def test_index_signal_missing_field(self, session):
        """Missing historical close is reported as unavailable data"""
        session._http.request.return_value = _response(200, {"previousClosingPrice": 1.0})
        with pytest.raises(DataUnavailable):
            session.get_index_signal("19002", LookbackPeriod.ONE_WEEK)

    def test_price_history_sorted_oldest_first(self, session):
        """Candles are returned oldest first"""
        session._http.request.return_value = _response(200, {"ohlc": [
            {"timestamp": 1704153600000, "close": 2.0},
            {"timestamp": 1704067200000, "close": 1.0},
        ]})

        assert [c.close for c in session.get_price_history("19002")] == [1.0, 2.0]

    def test_account_positions_filtered_by_account(self, session):
        """Only positions on the configured account are returned"""
        session._http.request.return_value = _response(200, {
            "withOrderbook": [
                {"account": {"urlParameterId": "1234567"},
                 "instrument": {"orderbook": {"id": "W1"}},
                 "value": {"value": 1000.0}, "volume": {"value": 10}},
                {"account": {"urlParameterId": "other"},
                 "instrument": {"orderbook": {"id": "W2"}},
                 "value": {"value": 5.0}, "volume": {"value": 1}},
            ],
            "cashPositions": [
                {"account": {"urlParameterId": "1234567"}, "totalBalance": {"value": 250.0}},
                {"account": {"urlParameterId": "1234567"}, "totalBalance": {"value": 50.0}},
            ],
        })

        account = session.get_account_positions("1234567")
        assert [p.instrument_id for p in account.asset_positions] == ["W1"]
        assert account.asset_positions[0].volume == 10
        assert account.total_cash == 300.0

    def test_resolve_account_id(self, session):
        """URL account id resolves to the internal account id"""
        session._http.request.return_value = _response(200, {"accounts": [
            {"urlParameterId": "1234567", "id": "internal-9"},
        ]})
        assert session.resolve_account_id("1234567") == "internal-9"

    def test_unknown_account(self, session):
        """Unknown account id raises"""
        session._http.request.return_value = _response(200, {"accounts": []})
        with pytest.raises(DataUnavailable):
            session.resolve_account_id("1234567")

    def test_fund_order_settlement_date(self, session):
        """Fund orders report their on-account date"""
        session._http.request.return_value = _response(200, {
            "orderRequestStatus": "SUCCESS", "orderId": "f1", "onAccountDate": "2024-01-03",
        })

        resp = session.place_fund_order("acc", "CASH", "sell", 10.0, 5)
        assert resp.placed
        assert resp.order_id == "f1"
        assert resp.settlement_date == date(2024, 1, 3)
        body = session._http.request.call_args.kwargs["json"]
        assert body["orderSide"] == "SELL"

    def test_read_only_blocks_orders(self, broker, session):
        """READ_ONLY broker refuses to place orders"""
        broker.read_only = True
        with pytest.raises(ValueError, match="READ_ONLY"):
            session.place_instrument_order("acc", "W1", "BUY", 1, 10.0)
        session._http.request.assert_not_called()

    def test_instrument_search_payload(self, session):
        """Warrant search filters long mini futures sorted by leverage"""
        session._http.request.return_value = _response(200, {"warrants": [
            {"orderbookId": 42, "leverage": 2.1, "totalValueTraded": 1000, "name": "MINI L"},
        ]})

        candidates = session.get_leveraged_instruments(InstrumentSearch(underlying_id="19002"))
        assert candidates[0].instrument_id == "42"
        payload = session._http.request.call_args.kwargs["json"]
        assert payload["filter"]["underlyingInstruments"] == ["19002"]
        assert payload["filter"]["directions"] == ["long"]
        assert payload["sortBy"] == {"field": "leverage", "order": "asc"}


class TestCredentialsAndSessions:

    def test_credentials_from_env(self, monkeypatch):
        """Credentials are read from environment variables"""
        monkeypatch.delenv("AVANZA_CREDENTIALS_FILE", raising=False)
        monkeypatch.setenv("AVANZA_USERNAME", "env-user")
        monkeypatch.setenv("AVANZA_PASSWORD", "env-pw")
        monkeypatch.setenv("AVANZA_TOTP_SECRET", "JBSW Y3DP EHPK 3PXP")

        broker = AvanzaBroker()
        assert broker.has_credentials()
        assert broker.totp_secret == TOTP_SECRET

    def test_credentials_from_file(self, tmp_path, monkeypatch):
        """Credentials are read from a JSON file"""
        creds = tmp_path / "creds.json"
        creds.write_text(json.dumps({"username": "f", "password": "p", "totpSecret": TOTP_SECRET}))
        monkeypatch.setenv("AVANZA_CREDENTIALS_FILE", str(creds))

        broker = AvanzaBroker()
        assert broker.username == "f"

    def test_totp_code_is_six_digits(self, broker):
        """TOTP code is six digits"""
        code = broker.totp_code()
        assert len(code) == 6 and code.isdigit()

    def test_missing_credentials_refuse_authentication(self, monkeypatch):
        """Authentication without credentials fails"""
        for key in ("AVANZA_CREDENTIALS_FILE", "AVANZA_USERNAME", "AVANZA_PASSWORD", "AVANZA_TOTP_SECRET"):
            monkeypatch.delenv(key, raising=False)
        with pytest.raises(ValueError, match="required"):
            AvanzaBroker().new_session().authenticate()

    def test_session_always_ended(self, broker):
        """Session is ended even when the caller raises"""
        with patch.object(AvanzaSession, "authenticate") as auth, \
                patch.object(AvanzaSession, "end_session") as end:
            with pytest.raises(RuntimeError):
                with broker.session():
                    raise RuntimeError("boom")

        auth.assert_called_once()
        end.assert_called_once()

    def test_end_session_is_idempotent(self, session):
        """Ending a session twice sends one DELETE"""
        session._http.request.return_value = _response(200)
        session.end_session()
        session.end_session()

        assert not session.authenticated
        assert session._http.request.call_count == 1


class TestOrderSubmission:

    def test_instrument_order_post_sent_once_on_server_error(self, session):
        """A 5xx on order placement is surfaced, not resubmitted by the HTTP layer."""
        session._http.request.return_value = _response(503)

        with patch("core.broker_avanza.time.sleep") as sleep:
            with pytest.raises(HTTPError):
                session.place_instrument_order("acc", "W1", "BUY", 1, 10.0)

        assert session._http.request.call_count == 1
        sleep.assert_not_called()

    def test_fund_order_post_sent_once_on_timeout(self, session):
        """A timed-out fund order may have been accepted, so it is not retried here."""
        session._http.request.side_effect = Timeout("slow")

        with patch("core.broker_avanza.time.sleep"):
            with pytest.raises(Timeout):
                session.place_fund_order("acc", "CASH", "SELL", 10.0, 5)

        assert session._http.request.call_count == 1

    def test_engine_attempts_bound_total_order_posts(self, broker, session, monkeypatch):
        """Ten engine attempts against a failing API send exactly ten order POSTs."""

        def fake_request(method, url, **kwargs):
            if method == "GET":
                return _response(200, {"last": 12.0})
            return _response(503)

        session._http.request.side_effect = fake_request

        @contextmanager
        def reuse_session():
            yield session

        monkeypatch.setattr(broker, "session", reuse_session)
        engine = ExecutionEngine(
            broker,
            account_id="acc",
            backup_asset="CASH",
            config=ExecutionConfig.from_dict("LIVE", {"max_placement_attempts": 10, "retry_backoff_seconds": 0}),
        )
        leg = LegState(side="SELL", asset_id="W1", kind=LegKind.INSTRUMENT, value=1000.0)

        with patch("core.broker_avanza.time.sleep"):
            with pytest.raises(PlacementFailed) as exc:
                engine.place_with_retries(leg, volume=5)

        posts = [c for c in session._http.request.call_args_list if c.args[0] == "POST"]
        assert exc.value.attempts == 10
        assert len(posts) == 10
