"""
Exchange Gateway - Secure Logging Utilities.

============================================================
PURPOSE
============================================================
Secure logging for gateway requests:
- Credential masking (API keys, secrets, signatures)
- Request/response lines with correlation ids
- Latency reporting

============================================================
SECURITY REQUIREMENTS
============================================================
1. NEVER log raw API keys or secrets
2. Mask sensitive headers (X-BAPI-API-KEY, X-BAPI-SIGN)
3. Mask sensitive request parameters

============================================================
"""

import logging
from typing import Any, Dict, Optional


logger = logging.getLogger(__name__)


# ============================================================
# SENSITIVE DATA
# ============================================================

SENSITIVE_HEADERS = {
    "authorization",
    "x-api-key",
    "x-bapi-api-key",
    "x-bapi-sign",
    "api-key",
    "secret",
    "signature",
}

SENSITIVE_PARAMS = {
    "apikey",
    "api_key",
    "secret",
    "api_secret",
    "password",
    "signature",
    "sign",
    "token",
}


# ============================================================
# MASKING FUNCTIONS
# ============================================================

def mask_value(value: str, show_chars: int = 4) -> str:
    """
    Mask a sensitive value, showing only first few chars.

    Args:
        value: Value to mask
        show_chars: Number of chars to show at start

    Returns:
        Masked value
    """
    if not value or len(value) <= show_chars:
        return "***"
    return f"{value[:show_chars]}...***"


def mask_headers(headers: Optional[Dict[str, str]]) -> Dict[str, str]:
    """Mask sensitive headers."""
    if not headers:
        return {}
    return {
        key: mask_value(str(value)) if key.lower() in SENSITIVE_HEADERS else value
        for key, value in headers.items()
    }


def mask_params(params: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Mask sensitive parameters, recursing into nested dicts."""
    if not params:
        return {}
    masked = {}
    for key, value in params.items():
        if key.lower() in SENSITIVE_PARAMS:
            masked[key] = mask_value(str(value)) if value else value
        elif isinstance(value, dict):
            masked[key] = mask_params(value)
        else:
            masked[key] = value
    return masked


# ============================================================
# ADAPTER LOGGER
# ============================================================

class AdapterLogger:
    """
    Secure logger for gateway operations.

    Request and response lines share a request id for correlation.
    """

    def __init__(self, exchange_id: str, logger_name: str = None):
        self._exchange_id = exchange_id
        self._logger = logging.getLogger(logger_name or f"exchange_gateway.{exchange_id}")
        self._request_counter = 0

    def _generate_request_id(self) -> str:
        self._request_counter += 1
        return f"{self._exchange_id}-{self._request_counter}"

    def log_request(
        self,
        method: str,
        endpoint: str,
        headers: Dict[str, str] = None,
        params: Dict[str, Any] = None,
        body: Dict[str, Any] = None,
    ) -> str:
        """
        Log outgoing request.

        Returns:
            Request ID for correlation
        """
        request_id = self._generate_request_id()
        self._logger.debug(
            f"REQUEST {request_id} | {method} {endpoint} | "
            f"headers={mask_headers(headers)} | params={mask_params(params)} | "
            f"body={mask_params(body)}"
        )
        return request_id

    def log_response(
        self,
        request_id: str,
        endpoint: str,
        status_code: int,
        latency_ms: float,
        success: bool,
        error_code: str = None,
        error_message: str = None,
    ) -> None:
        """Log incoming response. Failures are logged at WARNING."""
        line = (
            f"RESPONSE {request_id} | {endpoint} | status={status_code} | "
            f"latency={latency_ms:.1f}ms | success={success}"
        )
        if success:
            self._logger.debug(line)
        else:
            self._logger.warning(f"{line} | error={error_code} | message={error_message}")

    def info(self, message: str) -> None:
        self._logger.info(f"[{self._exchange_id}] {message}")

    def warning(self, message: str) -> None:
        self._logger.warning(f"[{self._exchange_id}] {message}")

    def error(self, message: str, exc_info: bool = False) -> None:
        self._logger.error(f"[{self._exchange_id}] {message}", exc_info=exc_info)
