"""
Exchange Gateway - Error Handling and Mapping.

============================================================
PURPOSE
============================================================
Standardized error handling at the gateway boundary:
- Unified error taxonomy for exchange responses
- Bybit V5 spot error code mapping
- Retry eligibility classification
- Conversion into the core GatewayError

============================================================
ERROR CATEGORIES
============================================================
1. NETWORK         - Connection issues
2. TIMEOUT         - Bounded timeout exceeded
3. RATE_LIMIT      - Too many requests
4. AUTHENTICATION  - Invalid credentials
5. INVALID_ORDER   - Order validation failures
6. INSUFFICIENT    - Insufficient balance
7. EXCHANGE_ERROR  - Exchange internal errors
8. UNKNOWN         - Unclassified errors

============================================================
"""

from enum import Enum
from typing import Optional, Dict, Tuple
from dataclasses import dataclass

from core.exceptions import GatewayError


# ============================================================
# ERROR TAXONOMY
# ============================================================

class ErrorCategory(Enum):
    """Standardized error categories."""

    NETWORK = "NETWORK"
    TIMEOUT = "TIMEOUT"
    RATE_LIMIT = "RATE_LIMIT"
    AUTHENTICATION = "AUTHENTICATION"
    INVALID_ORDER = "INVALID_ORDER"
    INVALID_QUANTITY = "INVALID_QUANTITY"
    INVALID_PRICE = "INVALID_PRICE"
    MIN_NOTIONAL = "MIN_NOTIONAL"
    INSUFFICIENT_FUNDS = "INSUFFICIENT_FUNDS"
    SYMBOL_NOT_FOUND = "SYMBOL_NOT_FOUND"
    ORDER_NOT_FOUND = "ORDER_NOT_FOUND"
    MALFORMED_RESPONSE = "MALFORMED_RESPONSE"
    EXCHANGE_ERROR = "EXCHANGE_ERROR"
    UNKNOWN = "UNKNOWN"


class RetryEligibility(Enum):
    """Whether error is eligible for retry on the next cycle."""

    RETRY = "RETRY"           # Safe to retry
    NO_RETRY = "NO_RETRY"     # Should not retry
    BACKOFF = "BACKOFF"       # Retry after waiting


# ============================================================
# EXCHANGE ERROR
# ============================================================

@dataclass
class ExchangeError:
    """Standardized exchange error."""

    category: ErrorCategory
    code: str               # Normalized error code
    message: str            # Human-readable message

    retry_eligible: RetryEligibility = RetryEligibility.NO_RETRY

    exchange_code: Optional[str] = None
    exchange_message: Optional[str] = None
    http_status: Optional[int] = None

    exchange_id: Optional[str] = None
    operation: Optional[str] = None

    def is_retryable(self) -> bool:
        return self.retry_eligible in (RetryEligibility.RETRY, RetryEligibility.BACKOFF)

    def __str__(self) -> str:
        return f"[{self.category.value}] {self.code}: {self.message}"


class ExchangeException(Exception):
    """Exception wrapper for ExchangeError."""

    def __init__(self, error: ExchangeError):
        self.error = error
        super().__init__(str(error))

    def to_gateway_error(self, operation: Optional[str] = None) -> GatewayError:
        """Convert to the core error taxonomy."""
        return GatewayError(
            message=str(self.error),
            operation=operation or self.error.operation,
            code=self.error.code,
            context={"category": self.error.category.value},
            cause=self,
        )


# ============================================================
# BYBIT ERROR MAPPING
# ============================================================

# Bybit V5 error codes to unified category
BYBIT_ERROR_MAP: Dict[int, Tuple[ErrorCategory, RetryEligibility]] = {
    # Rate limiting
    10006: (ErrorCategory.RATE_LIMIT, RetryEligibility.BACKOFF),
    10018: (ErrorCategory.RATE_LIMIT, RetryEligibility.BACKOFF),

    # Authentication
    10003: (ErrorCategory.AUTHENTICATION, RetryEligibility.NO_RETRY),
    10004: (ErrorCategory.AUTHENTICATION, RetryEligibility.NO_RETRY),
    10005: (ErrorCategory.AUTHENTICATION, RetryEligibility.NO_RETRY),
    33004: (ErrorCategory.AUTHENTICATION, RetryEligibility.NO_RETRY),

    # Generic parameter errors
    10001: (ErrorCategory.INVALID_ORDER, RetryEligibility.NO_RETRY),
    10002: (ErrorCategory.INVALID_ORDER, RetryEligibility.NO_RETRY),

    # Spot order validation
    170121: (ErrorCategory.SYMBOL_NOT_FOUND, RetryEligibility.NO_RETRY),
    170131: (ErrorCategory.INSUFFICIENT_FUNDS, RetryEligibility.NO_RETRY),
    170134: (ErrorCategory.INVALID_PRICE, RetryEligibility.NO_RETRY),
    170135: (ErrorCategory.INVALID_ORDER, RetryEligibility.NO_RETRY),
    170136: (ErrorCategory.INVALID_QUANTITY, RetryEligibility.NO_RETRY),
    170137: (ErrorCategory.INVALID_QUANTITY, RetryEligibility.NO_RETRY),
    170140: (ErrorCategory.MIN_NOTIONAL, RetryEligibility.NO_RETRY),
    170141: (ErrorCategory.INVALID_QUANTITY, RetryEligibility.NO_RETRY),
    170213: (ErrorCategory.ORDER_NOT_FOUND, RetryEligibility.NO_RETRY),

    # Exchange internal
    10000: (ErrorCategory.EXCHANGE_ERROR, RetryEligibility.RETRY),
    10016: (ErrorCategory.EXCHANGE_ERROR, RetryEligibility.RETRY),
    10027: (ErrorCategory.TIMEOUT, RetryEligibility.RETRY),
}


def map_bybit_error(
    code: int,
    message: str,
    http_status: int = None,
    operation: str = None,
) -> ExchangeError:
    """
    Map Bybit error to unified format.

    Args:
        code: Bybit retCode
        message: Bybit retMsg
        http_status: HTTP status code
        operation: Endpoint or operation name

    Returns:
        Unified ExchangeError
    """
    if code in BYBIT_ERROR_MAP:
        category, retry = BYBIT_ERROR_MAP[code]
    elif http_status == 429:
        category = ErrorCategory.RATE_LIMIT
        retry = RetryEligibility.BACKOFF
    elif http_status in (401, 403):
        category = ErrorCategory.AUTHENTICATION
        retry = RetryEligibility.NO_RETRY
    elif http_status and http_status >= 500:
        category = ErrorCategory.EXCHANGE_ERROR
        retry = RetryEligibility.RETRY
    else:
        category = ErrorCategory.UNKNOWN
        retry = RetryEligibility.NO_RETRY

    return ExchangeError(
        category=category,
        code=f"BYBIT_{code}",
        message=message,
        retry_eligible=retry,
        exchange_code=str(code),
        exchange_message=message,
        http_status=http_status,
        exchange_id="bybit",
        operation=operation,
    )


# ============================================================
# NETWORK ERROR HELPERS
# ============================================================

def create_network_error(
    exchange_id: str,
    message: str,
    operation: str = None,
) -> ExchangeError:
    """Create network error."""
    return ExchangeError(
        category=ErrorCategory.NETWORK,
        code=f"{exchange_id.upper()}_NETWORK_ERROR",
        message=message,
        retry_eligible=RetryEligibility.RETRY,
        exchange_id=exchange_id,
        operation=operation,
    )


def create_timeout_error(
    exchange_id: str,
    timeout_ms: int,
    operation: str = None,
) -> ExchangeError:
    """Create timeout error."""
    return ExchangeError(
        category=ErrorCategory.TIMEOUT,
        code=f"{exchange_id.upper()}_TIMEOUT",
        message=f"Request timed out after {timeout_ms}ms",
        retry_eligible=RetryEligibility.RETRY,
        exchange_id=exchange_id,
        operation=operation,
    )


def create_malformed_response_error(
    exchange_id: str,
    message: str,
    operation: str = None,
) -> ExchangeError:
    """Create error for a response missing required fields."""
    return ExchangeError(
        category=ErrorCategory.MALFORMED_RESPONSE,
        code=f"{exchange_id.upper()}_MALFORMED_RESPONSE",
        message=message,
        retry_eligible=RetryEligibility.RETRY,
        exchange_id=exchange_id,
        operation=operation,
    )
