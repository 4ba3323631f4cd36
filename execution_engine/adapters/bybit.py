"""
Bybit Spot Gateway.

============================================================
PURPOSE
============================================================
Production gateway for the Bybit V5 API, spot category.

EXCHANGE SPECIFICS:
- V5 Unified API, category=spot
- HMAC-SHA256 signing
- Symbol format: BTCUSDT
- retCode 0 is the only success signal

============================================================
API DOCUMENTATION
============================================================
https://bybit-exchange.github.io/docs/v5/intro

============================================================
"""

import os
import hmac
import json
import hashlib
import time
import logging
import asyncio
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Optional, Dict, Any, List

import aiohttp

from core.clock import from_millis, to_millis
from ..types import Candle, OrderType, TradeSide
from .base import (
    ExchangeGateway,
    InstrumentInfo,
    Ticker,
    OrderRequest,
    PlaceOrderResult,
    ExchangeOrder,
    CoinBalance,
    WalletBalance,
)
from .errors import (
    ExchangeException,
    map_bybit_error,
    create_network_error,
    create_timeout_error,
    create_malformed_response_error,
)
from .logging_utils import AdapterLogger


logger = logging.getLogger(__name__)


# ============================================================
# CONSTANTS
# ============================================================

BYBIT_REST_URL = "https://api.bybit.com"
BYBIT_TESTNET_URL = "https://api-testnet.bybit.com"

BYBIT_CAT_SPOT = "spot"

BYBIT_SIDE = {TradeSide.BUY: "Buy", TradeSide.SELL: "Sell"}
BYBIT_ORDER_TYPE = {OrderType.LIMIT: "Limit", OrderType.MARKET: "Market"}

# Config timeframe to kline interval
BYBIT_INTERVALS = {
    "1m": "1",
    "3m": "3",
    "5m": "5",
    "15m": "15",
    "30m": "30",
    "1h": "60",
    "2h": "120",
    "4h": "240",
    "6h": "360",
    "12h": "720",
    "1d": "D",
    "1w": "W",
}

HISTORY_PAGE_LIMIT = 50
HISTORY_MAX_PAGES = 20


def _dec(value: Any) -> Optional[Decimal]:
    """Parse a Bybit numeric string; empty values become None."""
    if value is None or value == "":
        return None
    try:
        return Decimal(str(value))
    except InvalidOperation:
        return None


# ============================================================
# BYBIT GATEWAY
# ============================================================

class BybitSpotGateway(ExchangeGateway):
    """
    Bybit V5 spot gateway.

    Implements ExchangeGateway over aiohttp with bounded timeouts.
    """

    def __init__(
        self,
        api_key: str = None,
        api_secret: str = None,
        testnet: bool = False,
        recv_window: int = 5000,
        timeout_seconds: float = 10.0,
    ):
        """
        Initialize Bybit gateway.

        Args:
            api_key: Bybit API key (or from BYBIT_API_KEY env)
            api_secret: Bybit API secret (or from BYBIT_API_SECRET env)
            testnet: Use testnet
            recv_window: Request validity window in ms
            timeout_seconds: Request timeout
        """
        self._api_key = api_key or os.environ.get("BYBIT_API_KEY", "")
        self._api_secret = api_secret or os.environ.get("BYBIT_API_SECRET", "")
        self._testnet = testnet
        self._recv_window = recv_window
        self._timeout = timeout_seconds
        self._base_url = BYBIT_TESTNET_URL if testnet else BYBIT_REST_URL

        self._session: Optional[aiohttp.ClientSession] = None
        self._logger = AdapterLogger("bybit")

    # --------------------------------------------------------
    # PROPERTIES
    # --------------------------------------------------------

    @property
    def exchange_id(self) -> str:
        return "bybit"

    @property
    def is_connected(self) -> bool:
        return self._session is not None and not self._session.closed

    # --------------------------------------------------------
    # CONNECTION
    # --------------------------------------------------------

    async def connect(self) -> None:
        """Create the HTTP session."""
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self._timeout)
            self._session = aiohttp.ClientSession(timeout=timeout)
            self._logger.info(f"Session opened | testnet={self._testnet}")

    async def disconnect(self) -> None:
        """Close the HTTP session."""
        if self._session:
            await self._session.close()
            self._session = None
        self._logger.info("Session closed")

    # --------------------------------------------------------
    # SIGNING
    # --------------------------------------------------------

    def _sign_request(self, timestamp: str, params: str) -> str:
        """
        Create request signature.

        Bybit V5 signature: HMAC-SHA256(timestamp + api_key + recv_window + params)

        Args:
            timestamp: Millisecond timestamp
            params: Query string or JSON body

        Returns:
            Hex signature
        """
        param_str = f"{timestamp}{self._api_key}{self._recv_window}{params}"
        return hmac.new(
            self._api_secret.encode(),
            param_str.encode(),
            hashlib.sha256,
        ).hexdigest()

    def _get_timestamp(self) -> str:
        return str(int(time.time() * 1000))

    # --------------------------------------------------------
    # REQUEST HANDLING
    # --------------------------------------------------------

    async def _request(
        self,
        method: str,
        endpoint: str,
        params: Dict[str, Any] = None,
        body: Dict[str, Any] = None,
        signed: bool = True,
    ) -> Dict[str, Any]:
        """
        Make a request to the Bybit API.

        Args:
            method: HTTP method
            endpoint: API endpoint
            params: Query parameters
            body: JSON body
            signed: Whether to attach authentication headers

        Returns:
            The "result" object of the response
        """
        if not self.is_connected:
            await self.connect()

        url = f"{self._base_url}{endpoint}"

        if method == "GET":
            param_str = "&".join(f"{k}={v}" for k, v in (params or {}).items())
            if param_str:
                url = f"{url}?{param_str}"
        else:
            param_str = json.dumps(body) if body else ""

        headers = {"Content-Type": "application/json"}
        if signed:
            timestamp = self._get_timestamp()
            headers.update({
                "X-BAPI-API-KEY": self._api_key,
                "X-BAPI-TIMESTAMP": timestamp,
                "X-BAPI-SIGN": self._sign_request(timestamp, param_str),
                "X-BAPI-RECV-WINDOW": str(self._recv_window),
            })

        request_id = self._logger.log_request(
            method=method,
            endpoint=endpoint,
            headers=headers,
            params=params,
            body=body,
        )
        start_time = time.time()

        try:
            if method == "GET":
                async with self._session.get(url, headers=headers) as resp:
                    return await self._handle_response(resp, request_id, endpoint, start_time)
            async with self._session.post(url, headers=headers, data=param_str) as resp:
                return await self._handle_response(resp, request_id, endpoint, start_time)
        except aiohttp.ClientError as e:
            raise ExchangeException(create_network_error("bybit", str(e), endpoint))
        except asyncio.TimeoutError:
            raise ExchangeException(
                create_timeout_error("bybit", int(self._timeout * 1000), endpoint)
            )

    async def _handle_response(
        self,
        response: aiohttp.ClientResponse,
        request_id: str,
        endpoint: str,
        start_time: float,
    ) -> Dict[str, Any]:
        """Handle API response. Non-zero retCode raises."""
        latency_ms = (time.time() - start_time) * 1000

        try:
            data = await response.json(content_type=None)
        except (aiohttp.ContentTypeError, json.JSONDecodeError):
            data = {"retCode": -1, "retMsg": await response.text()}

        if not isinstance(data, dict):
            data = {"retCode": -1, "retMsg": "non-object response"}

        ret_code = int(data.get("retCode", -1))
        ret_msg = data.get("retMsg", "")

        if ret_code != 0:
            error = map_bybit_error(ret_code, ret_msg, response.status, endpoint)
            self._logger.log_response(
                request_id=request_id,
                endpoint=endpoint,
                status_code=response.status,
                latency_ms=latency_ms,
                success=False,
                error_code=error.code,
                error_message=ret_msg,
            )
            raise ExchangeException(error)

        self._logger.log_response(
            request_id=request_id,
            endpoint=endpoint,
            status_code=response.status,
            latency_ms=latency_ms,
            success=True,
        )
        return data.get("result") or {}

    # --------------------------------------------------------
    # MARKET DATA
    # --------------------------------------------------------

    async def get_instrument_info(self, symbol: str) -> InstrumentInfo:
        endpoint = "/v5/market/instruments-info"
        result = await self._request(
            "GET", endpoint, {"category": BYBIT_CAT_SPOT, "symbol": symbol}, signed=False
        )
        items = result.get("list") or []
        if not items:
            raise ExchangeException(
                create_malformed_response_error("bybit", f"No instrument info for {symbol}", endpoint)
            )

        item = items[0]
        price_filter = item.get("priceFilter") or {}
        lot_filter = item.get("lotSizeFilter") or {}

        return InstrumentInfo(
            symbol=item.get("symbol", symbol),
            tick_size=_dec(price_filter.get("tickSize")),
            base_precision=_dec(lot_filter.get("basePrecision")),
            min_order_qty=_dec(lot_filter.get("minOrderQty")),
            min_order_amount=_dec(lot_filter.get("minOrderAmt")),
            base_coin=item.get("baseCoin"),
            quote_coin=item.get("quoteCoin"),
        )

    async def get_ticker_price(self, symbol: str) -> Ticker:
        endpoint = "/v5/market/tickers"
        result = await self._request(
            "GET", endpoint, {"category": BYBIT_CAT_SPOT, "symbol": symbol}, signed=False
        )
        items = result.get("list") or []
        price = _dec(items[0].get("lastPrice")) if items else None
        if price is None or price <= 0:
            raise ExchangeException(
                create_malformed_response_error("bybit", f"No ticker price for {symbol}", endpoint)
            )
        return Ticker(symbol=symbol, last_price=price)

    async def get_candles(self, symbol: str, interval: str, count: int) -> List[Candle]:
        endpoint = "/v5/market/kline"
        result = await self._request(
            "GET",
            endpoint,
            {
                "category": BYBIT_CAT_SPOT,
                "symbol": symbol,
                "interval": BYBIT_INTERVALS.get(interval, interval),
                "limit": min(count, 1000),
            },
            signed=False,
        )

        candles = []
        # Rows: [startTime, open, high, low, close, volume, turnover], newest first
        for row in result.get("list") or []:
            if len(row) < 6:
                continue
            candles.append(Candle(
                open_time=from_millis(row[0]),
                open=Decimal(row[1]),
                high=Decimal(row[2]),
                low=Decimal(row[3]),
                close=Decimal(row[4]),
                volume=Decimal(row[5]),
            ))
        candles.sort(key=lambda c: c.open_time)
        return candles

    # --------------------------------------------------------
    # ORDERS
    # --------------------------------------------------------

    async def place_order(self, request: OrderRequest) -> PlaceOrderResult:
        body: Dict[str, Any] = {
            "category": BYBIT_CAT_SPOT,
            "symbol": request.symbol,
            "side": BYBIT_SIDE[request.side],
            "orderType": BYBIT_ORDER_TYPE[request.order_type],
            "qty": request.quantity,
        }
        if request.order_type == OrderType.LIMIT:
            body["price"] = request.price
            body["timeInForce"] = "GTC"
        if request.client_order_id:
            body["orderLinkId"] = request.client_order_id

        result = await self._request("POST", "/v5/order/create", body=body)
        order_id = result.get("orderId") or None
        return PlaceOrderResult(success=True, order_id=order_id, raw=result)

    async def get_order_history(self, since: datetime) -> List[ExchangeOrder]:
        """
        Get spot order history since a point in time.

        Follows nextPageCursor up to HISTORY_MAX_PAGES pages.
        """
        orders: List[ExchangeOrder] = []
        cursor = None

        for _ in range(HISTORY_MAX_PAGES):
            params: Dict[str, Any] = {
                "category": BYBIT_CAT_SPOT,
                "startTime": to_millis(since),
                "limit": HISTORY_PAGE_LIMIT,
            }
            if cursor:
                params["cursor"] = cursor

            result = await self._request("GET", "/v5/order/history", params)
            orders.extend(self._parse_order(item) for item in result.get("list") or [])

            cursor = result.get("nextPageCursor")
            if not cursor:
                break

        return orders

    async def get_open_orders(self) -> List[ExchangeOrder]:
        result = await self._request(
            "GET", "/v5/order/realtime", {"category": BYBIT_CAT_SPOT}
        )
        return [self._parse_order(item) for item in result.get("list") or []]

    def _parse_order(self, item: Dict[str, Any]) -> ExchangeOrder:
        created = item.get("createdTime")
        updated = item.get("updatedTime")
        return ExchangeOrder(
            order_id=str(item.get("orderId", "")),
            symbol=item.get("symbol", ""),
            side=TradeSide.BUY if item.get("side") == "Buy" else TradeSide.SELL,
            order_type=OrderType.MARKET if item.get("orderType") == "Market" else OrderType.LIMIT,
            status=item.get("orderStatus", ""),
            quantity=_dec(item.get("qty")) or Decimal("0"),
            price=_dec(item.get("price")) or Decimal("0"),
            avg_price=_dec(item.get("avgPrice")),
            executed_qty=_dec(item.get("cumExecQty")) or Decimal("0"),
            created_at=from_millis(created) if created else None,
            updated_at=from_millis(updated) if updated else None,
        )

    # --------------------------------------------------------
    # ACCOUNT
    # --------------------------------------------------------

    async def get_wallet_balance(self) -> WalletBalance:
        result = await self._request(
            "GET", "/v5/account/wallet-balance", {"accountType": "UNIFIED"}
        )
        accounts = result.get("list") or []
        if not accounts:
            return WalletBalance()

        account = accounts[0]
        coins = {}
        for entry in account.get("coin") or []:
            coin = entry.get("coin", "").upper()
            wallet = _dec(entry.get("walletBalance")) or Decimal("0")
            locked = _dec(entry.get("locked")) or Decimal("0")
            coins[coin] = CoinBalance(
                coin=coin,
                wallet_balance=wallet,
                free=wallet - locked,
                usd_value=_dec(entry.get("usdValue")),
            )

        return WalletBalance(
            coins=coins,
            total_equity_usd=_dec(account.get("totalEquity")),
        )
