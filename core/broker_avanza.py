"""
rotator Core: Broker Connector (Avanza)

Avanza web API integration: username/password + TOTP authentication, market
data (index quotes, price charts, warrant search) and order execution for
instrument (warrant) and fund orders.

Every authenticated call runs inside a short-lived session obtained from
AvanzaBroker.session(); sessions are never shared between threads.
"""

import os
import json
import time
import random
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Dict, Iterator, List, Optional
import logging

import pyotp
import requests

from core.exceptions import DataUnavailable
from core.universe import LookbackPeriod

logger = logging.getLogger(__name__)

AVANZA_BASE = "https://www.avanza.se"

ORDER_PLACED = "SUCCESS"
FULLY_EXECUTED = "FULLY_EXECUTED"

# Index quote fields holding the close at the start of each lookback window
PERIOD_FIELDS = {
    LookbackPeriod.ONE_WEEK: "oneWeek",
    LookbackPeriod.ONE_MONTH: "oneMonth",
    LookbackPeriod.THREE_MONTHS: "threeMonths",
    LookbackPeriod.ONE_YEAR: "oneYear",
}


@dataclass
class IndexSignal:
    """Index quote used for momentum"""
    asset_id: str
    last_price: float
    compare_price: float


@dataclass
class Candle:
    timestamp: datetime
    close: float


@dataclass
class InstrumentSearch:
    """Leveraged instrument search filter"""
    underlying_id: Optional[str] = None
    name_query: Optional[str] = None
    direction: str = "long"
    sub_type: str = "mini_future"
    limit: int = 20

    def to_payload(self) -> Dict[str, Any]:
        search_filter: Dict[str, Any] = {
            "directions": [self.direction],
            "issuers": [],
            "subTypes": [self.sub_type],
            "endDates": [],
            "underlyingInstruments": [],
        }
        if self.name_query:
            search_filter["nameQuery"] = self.name_query
        elif self.underlying_id:
            search_filter["underlyingInstruments"] = [self.underlying_id]
        return {
            "filter": search_filter,
            "offset": 0,
            "limit": self.limit,
            "sortBy": {"field": "leverage", "order": "asc"},
        }


@dataclass
class InstrumentCandidate:
    instrument_id: str
    leverage: float
    traded_value: float
    name: str = ""


@dataclass
class OrderResponse:
    """Order placement response (instrument and fund orders)"""
    status: str
    order_id: Optional[str]
    message: str = ""
    # Only fund orders report an on-account (settlement) date
    settlement_date: Optional[date] = None

    @property
    def placed(self) -> bool:
        return self.status == ORDER_PLACED


@dataclass
class RawPosition:
    instrument_id: str
    value: float
    volume: float


@dataclass
class AccountPositions:
    asset_positions: List[RawPosition] = field(default_factory=list)
    cash_positions: List[float] = field(default_factory=list)

    @property
    def total_cash(self) -> float:
        return sum(self.cash_positions)


def _num(value: Any) -> float:
    """Avanza wraps most numbers as {"value": x, ...}."""
    if isinstance(value, dict):
        value = value.get("value")
    if value is None:
        raise ValueError("missing numeric value")
    return float(value)


class AvanzaBroker:
    """
    Avanza connector holding credentials and handing out sessions.

    Credentials come from AVANZA_CREDENTIALS_FILE (JSON with username,
    password, totpSecret) or the AVANZA_USERNAME / AVANZA_PASSWORD /
    AVANZA_TOTP_SECRET environment variables.
    """

    def __init__(self, username: Optional[str] = None, password: Optional[str] = None,
                 totp_secret: Optional[str] = None, timeout: float = 20.0,
                 read_only: bool = True):
        secret_file = os.getenv("AVANZA_CREDENTIALS_FILE")
        if secret_file and os.path.exists(secret_file) and not username:
            with open(secret_file, "r") as f:
                creds = json.load(f)
            username = creds.get("username")
            password = creds.get("password")
            totp_secret = creds.get("totpSecret")
            logger.info(f"Loaded Avanza credentials from {secret_file}")

        self.username = username or os.getenv("AVANZA_USERNAME", "")
        self.password = password or os.getenv("AVANZA_PASSWORD", "")
        self.totp_secret = (totp_secret or os.getenv("AVANZA_TOTP_SECRET", "")).replace(" ", "")
        self.timeout = timeout
        self.read_only = read_only

        # One TOTP handshake at a time; concurrent logins reuse the same code window
        self._auth_lock = threading.Lock()

        logger.info(f"Initialized AvanzaBroker (read_only={read_only})")

    def has_credentials(self) -> bool:
        return bool(self.username and self.password and self.totp_secret)

    def totp_code(self) -> str:
        return pyotp.TOTP(self.totp_secret).now()

    def new_session(self) -> "AvanzaSession":
        return AvanzaSession(self)

    @contextmanager
    def session(self) -> Iterator["AvanzaSession"]:
        """Authenticated session that is always ended on exit."""
        session = self.new_session()
        session.authenticate()
        try:
            yield session
        finally:
            session.end_session()


class AvanzaSession:
    """
    One authenticated Avanza session.

    Supports:
    - Market data (index quotes, price history, warrant search, last price)
    - Account data (accounts, positions)
    - Order execution (instrument orders, fund orders, order status)
    """

    def __init__(self, broker: AvanzaBroker):
        self.broker = broker
        self._http = requests.Session()
        self._security_token: Optional[str] = None
        self._session_id: Optional[str] = None

    @property
    def authenticated(self) -> bool:
        return self._security_token is not None

    def authenticate(self) -> None:
        """Log in with username/password followed by TOTP. Idempotent."""
        if self.authenticated:
            return
        if not self.broker.has_credentials():
            raise ValueError(
                "AVANZA_USERNAME, AVANZA_PASSWORD and AVANZA_TOTP_SECRET required for authenticated requests"
            )

        with self.broker._auth_lock:
            resp = self._req(
                "POST",
                "/_api/authentication/sessions/usercredentials",
                body={
                    "username": self.broker.username,
                    "password": self.broker.password,
                    "maxInactiveMinutes": 60,
                },
                authenticated=False,
                raw=True,
            )
            payload = resp.json()
            two_factor = payload.get("twoFactorLogin") or {}
            if two_factor.get("method") == "TOTP":
                self._http.cookies.set("AZAMFATRANSACTION", str(two_factor.get("transactionId", "")))
                resp = self._req(
                    "POST",
                    "/_api/authentication/sessions/totp",
                    body={"method": "TOTP", "totpCode": self.broker.totp_code()},
                    authenticated=False,
                    raw=True,
                )
                payload = resp.json()

        self._security_token = resp.headers.get("X-SecurityToken")
        self._session_id = payload.get("authenticationSession")
        if not self._security_token:
            raise DataUnavailable("avanza_authentication")
        logger.debug("Avanza session authenticated")

    def end_session(self) -> None:
        """Log out and drop the security token. Idempotent."""
        if not self.authenticated:
            return
        session_id = self._session_id
        try:
            if session_id:
                self._req("DELETE", f"/_api/authentication/sessions/{session_id}", max_retries=1, raw=True)
        except requests.exceptions.RequestException as e:
            logger.warning(f"Failed to end Avanza session {session_id}: {e}")
        finally:
            self._security_token = None
            self._session_id = None
            self._http.close()

    def _req(self, method: str, endpoint: str, body: Optional[dict] = None,
             query: Optional[Dict[str, Any]] = None, authenticated: bool = True,
             max_retries: int = 3, raw: bool = False) -> Any:
        """
        Make HTTP request to the Avanza API with exponential backoff.

        Retries on:
        - 429 (rate limit)
        - 5xx (server errors)
        - Network errors (timeout, connection)

        Does NOT retry on:
        - 4xx (except 429)
        """
        url = AVANZA_BASE + endpoint
        headers = {"Content-Type": "application/json"}
        if authenticated:
            if not self._security_token:
                raise ValueError(f"Session not authenticated for {endpoint}")
            headers["X-SecurityToken"] = self._security_token

        last_exception: Optional[Exception] = None

        for attempt in range(max_retries):
            try:
                response = self._http.request(
                    method,
                    url,
                    headers=headers,
                    json=body,
                    params=query,
                    timeout=self.broker.timeout,
                )
                response.raise_for_status()
                if raw:
                    return response
                return response.json() if response.content else {}

            except requests.exceptions.HTTPError as e:
                status_code = e.response.status_code if e.response is not None else 0

                if 400 <= status_code < 500 and status_code != 429:
                    if status_code == 404:
                        logger.debug(f"Avanza API 404: {endpoint}")
                    else:
                        logger.error(f"Avanza API client error: {status_code} - {e.response.text}")
                    raise

                if status_code == 429:
                    logger.warning(f"Rate limited (429) on {endpoint}, attempt {attempt + 1}/{max_retries}")
                else:
                    logger.warning(f"Server error ({status_code}) on {endpoint}, attempt {attempt + 1}/{max_retries}")
                last_exception = e

            except (requests.exceptions.Timeout, requests.exceptions.ConnectionError) as e:
                logger.warning(f"Network error on {endpoint}: {e}, attempt {attempt + 1}/{max_retries}")
                last_exception = e

            if attempt < max_retries - 1:
                backoff = (2 ** attempt) + random.uniform(0, 1)
                logger.info(f"Retrying in {backoff:.1f}s...")
                time.sleep(backoff)

        logger.error(f"All {max_retries} retries exhausted for {endpoint}")
        if last_exception:
            raise last_exception
        raise requests.exceptions.RequestException(f"Request to {endpoint} failed after {max_retries} attempts")

    # ========== Market data ==========

    def get_index_signal(self, asset_id: str, period: LookbackPeriod) -> IndexSignal:
        data = self._req("GET", f"/_api/market-guide/index/{asset_id}")
        historical = data.get("historicalClosingPrices") or {}
        try:
            last_price = _num(data.get("previousClosingPrice"))
            compare_price = _num(historical.get(PERIOD_FIELDS[period]))
        except ValueError as e:
            raise DataUnavailable(f"index_quote:{asset_id}", e)
        return IndexSignal(asset_id=asset_id, last_price=last_price, compare_price=compare_price)

    def get_price_history(self, asset_id: str, time_period: str = "one_year") -> List[Candle]:
        """Daily closes, oldest first."""
        data = self._req("GET", f"/_api/price-chart/stock/{asset_id}", query={"timePeriod": time_period})
        candles = []
        for bar in data.get("ohlc") or []:
            candles.append(
                Candle(
                    timestamp=datetime.fromtimestamp(float(bar["timestamp"]) / 1000.0),
                    close=float(bar["close"]),
                )
            )
        candles.sort(key=lambda c: c.timestamp)
        return candles

    def get_leveraged_instruments(self, search: InstrumentSearch) -> List[InstrumentCandidate]:
        data = self._req("POST", "/_api/market-warrant-filter/", body=search.to_payload())
        candidates = []
        for warrant in data.get("warrants") or []:
            candidates.append(
                InstrumentCandidate(
                    instrument_id=str(warrant["orderbookId"]),
                    leverage=float(warrant.get("leverage") or 0.0),
                    traded_value=float(warrant.get("totalValueTraded") or 0.0),
                    name=warrant.get("name", ""),
                )
            )
        logger.debug(f"Instrument search {search.to_payload()['filter']}: {len(candidates)} candidates")
        return candidates

    def get_underlying_for(self, instrument_id: str) -> str:
        data = self._req("GET", f"/_api/market-guide/warrant/{instrument_id}")
        underlying = (data.get("underlying") or {}).get("orderbookId")
        return str(underlying) if underlying else ""

    def get_last_price(self, asset_id: str) -> float:
        data = self._req("GET", f"/_api/market-guide/stock/{asset_id}/quote")
        try:
            return _num(data.get("last"))
        except ValueError as e:
            raise DataUnavailable(f"last_price:{asset_id}", e)

    # ========== Account data ==========

    def resolve_account_id(self, account_url_id: str) -> str:
        """Map the account URL parameter id to the internal account id."""
        data = self._req("GET", "/_api/account-overview/overview/categorizedAccounts")
        for account in data.get("accounts") or []:
            if account.get("urlParameterId") == account_url_id:
                return str(account["id"])
        raise DataUnavailable(f"account:{account_url_id}")

    def get_account_positions(self, account_url_id: str) -> AccountPositions:
        data = self._req("GET", "/_api/position-data/positions")
        positions = AccountPositions()

        for raw in data.get("withOrderbook") or []:
            if (raw.get("account") or {}).get("urlParameterId") != account_url_id:
                continue
            orderbook = (raw.get("instrument") or {}).get("orderbook") or {}
            positions.asset_positions.append(
                RawPosition(
                    instrument_id=str(orderbook.get("id")),
                    value=_num(raw.get("value")),
                    volume=_num(raw.get("volume")),
                )
            )

        for raw in data.get("cashPositions") or []:
            if (raw.get("account") or {}).get("urlParameterId") != account_url_id:
                continue
            positions.cash_positions.append(_num(raw.get("totalBalance")))

        return positions

    # ========== Orders ==========

    def place_instrument_order(self, account_id: str, instrument_id: str, side: str,
                               volume: int, price: float) -> OrderResponse:
        if self.broker.read_only:
            raise ValueError("Cannot place orders in READ_ONLY mode")
        body = {
            "accountId": account_id,
            "orderbookId": instrument_id,
            "side": side.upper(),
            "condition": "NORMAL",
            "price": price,
            "volume": int(volume),
            "validUntil": date.today().isoformat(),
        }
        logger.warning(f"PLACING ORDER: {side.upper()} {int(volume)} of {instrument_id} @ {price}")
        # Sent once; placement retries happen in ExecutionEngine
        data = self._req("POST", "/_api/trading-critical/rest/order/new", body=body, max_retries=1)
        return OrderResponse(
            status=str(data.get("orderRequestStatus", "")),
            order_id=data.get("orderId"),
            message=str(data.get("message", "")),
        )

    def place_fund_order(self, account_id: str, instrument_id: str, side: str,
                         price: float, volume: int) -> OrderResponse:
        if self.broker.read_only:
            raise ValueError("Cannot place orders in READ_ONLY mode")
        body = {
            "accountId": account_id,
            "orderbookId": instrument_id,
            "orderSide": side.upper(),
            "price": price,
            "volume": int(volume),
        }
        logger.warning(f"PLACING FUND ORDER: {side.upper()} {int(volume)} of {instrument_id} @ {price}")
        data = self._req("POST", "/_api/fund-guide/fund-order/new", body=body, max_retries=1)
        settlement = data.get("onAccountDate")
        return OrderResponse(
            status=str(data.get("orderRequestStatus", "")),
            order_id=data.get("orderId"),
            message=str(data.get("message", "")),
            settlement_date=date.fromisoformat(settlement) if settlement else None,
        )

    def get_order_status(self, account_id: str, order_id: str) -> str:
        data = self._req("GET", f"/_api/trading-critical/rest/order/{account_id}/{order_id}")
        return str(data.get("state") or data.get("status") or "")

