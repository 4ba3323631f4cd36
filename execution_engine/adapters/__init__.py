"""
Exchange Gateway Package.

============================================================
PURPOSE
============================================================
Boundary between the trading core and the exchange.

- base: ExchangeGateway interface and typed payloads
- errors: Error taxonomy and Bybit code mapping
- logging_utils: Credential-masking request logging
- bybit: Bybit V5 spot gateway (aiohttp)
- mock: Deterministic in-memory gateway

============================================================
"""

from .base import (
    ExchangeGateway,
    InstrumentInfo,
    Ticker,
    OrderRequest,
    PlaceOrderResult,
    ExchangeOrder,
    CoinBalance,
    WalletBalance,
    map_order_status,
)
from .errors import (
    ErrorCategory,
    RetryEligibility,
    ExchangeError,
    ExchangeException,
    map_bybit_error,
    create_network_error,
    create_timeout_error,
    create_malformed_response_error,
)
from .logging_utils import AdapterLogger, mask_value, mask_headers, mask_params
from .bybit import BybitSpotGateway
from .mock import MockExchangeGateway, MockConfig


def create_gateway(
    exchange_id: str,
    api_key: str = None,
    api_secret: str = None,
    testnet: bool = False,
    timeout_seconds: float = 10.0,
) -> ExchangeGateway:
    """
    Create a gateway by exchange id.

    Args:
        exchange_id: "bybit" or "mock"

    Raises:
        ValueError: Unsupported exchange
    """
    exchange_id = exchange_id.lower()
    if exchange_id == "bybit":
        return BybitSpotGateway(
            api_key=api_key,
            api_secret=api_secret,
            testnet=testnet,
            timeout_seconds=timeout_seconds,
        )
    if exchange_id == "mock":
        return MockExchangeGateway()
    raise ValueError(f"Unsupported exchange: {exchange_id}")
