"""
Core Module - Exceptions.

============================================================
RESPONSIBILITY
============================================================
Defines the error taxonomy of the trading core.

- Provides clear exception hierarchy
- Carries severity and recoverability for logging decisions
- Includes context for debugging (numeric traces, symbols)

============================================================
EXCEPTION HIERARCHY
============================================================
TradingException (base)
├── ConfigurationError
│   └── InvalidConfigError
├── MetadataUnavailableError
├── ValidationFailedError
├── GatewayError
├── GovernanceRejectedError
├── ReconciliationMismatchError
└── InvalidTransitionError

Formatting and validation errors are local to one symbol.
Gateway errors are retried on the next cycle.
Governance rejections are informational.

============================================================
"""

from enum import Enum
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


# ============================================================
# SEVERITY LEVELS
# ============================================================

class Severity(Enum):
    """Exception severity levels."""

    LOW = "low"
    """Minor issue, informational."""

    MEDIUM = "medium"
    """Moderate issue, requires attention."""

    HIGH = "high"
    """Serious issue, may impact operations."""

    CRITICAL = "critical"
    """Critical issue, requires immediate action."""


# ============================================================
# ERROR CLASSIFICATION
# ============================================================

class ErrorClassification(Enum):
    """Classification of error recoverability."""

    RECOVERABLE = "recoverable"
    """Error can be recovered from automatically."""

    TRANSIENT = "transient"
    """Temporary error, retry on the next cycle may succeed."""

    NON_RECOVERABLE = "non_recoverable"
    """Permanent error, requires intervention."""


# ============================================================
# BASE EXCEPTION
# ============================================================

class TradingException(Exception):
    """
    Base exception for all trading core errors.

    All exceptions carry:
    - severity: for logging level decisions
    - context: for debugging
    - recoverable: for error handling decisions
    - timestamp: when the error occurred
    """

    default_severity: Severity = Severity.MEDIUM
    default_recoverable: bool = True
    default_classification: ErrorClassification = ErrorClassification.RECOVERABLE

    def __init__(
        self,
        message: str,
        severity: Optional[Severity] = None,
        context: Optional[Dict[str, Any]] = None,
        recoverable: Optional[bool] = None,
        classification: Optional[ErrorClassification] = None,
        cause: Optional[Exception] = None,
    ):
        super().__init__(message)

        self.message = message
        self.severity = severity or self.default_severity
        self.context = context or {}
        self.recoverable = recoverable if recoverable is not None else self.default_recoverable
        self.classification = classification or self.default_classification
        self.cause = cause
        self.timestamp = datetime.now(timezone.utc)

        if cause:
            self.context["cause_type"] = type(cause).__name__
            self.context["cause_message"] = str(cause)

    @property
    def is_recoverable(self) -> bool:
        """Check if error is recoverable."""
        return self.classification in (
            ErrorClassification.RECOVERABLE,
            ErrorClassification.TRANSIENT,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Serialize exception for logging."""
        return {
            "type": type(self).__name__,
            "message": self.message,
            "severity": self.severity.value,
            "recoverable": self.recoverable,
            "classification": self.classification.value,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
            "cause": str(self.cause) if self.cause else None,
        }

    def to_log_format(self) -> str:
        """Format exception for structured logging."""
        ctx_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
        line = f"[{self.severity.value.upper()}] {type(self).__name__}: {self.message}"
        if ctx_str:
            line = f"{line} | {ctx_str}"
        return line


# ============================================================
# CONFIGURATION ERRORS
# ============================================================

class ConfigurationError(TradingException):
    """Error in configuration."""

    default_severity = Severity.HIGH
    default_recoverable = False
    default_classification = ErrorClassification.NON_RECOVERABLE


class InvalidConfigError(ConfigurationError):
    """Configuration value is invalid."""

    def __init__(self, errors: List[str]):
        super().__init__(
            message=f"Invalid configuration: {'; '.join(errors)}",
            context={"errors": list(errors)},
        )
        self.errors = list(errors)


# ============================================================
# TRADING CORE ERRORS
# ============================================================

class MetadataUnavailableError(TradingException):
    """Instrument rules could not be fetched; formatting is blocked."""

    default_classification = ErrorClassification.TRANSIENT

    def __init__(self, symbol: str, reason: str, **kwargs):
        context = kwargs.pop("context", {})
        context["symbol"] = symbol
        super().__init__(
            f"Instrument metadata unavailable for {symbol}: {reason}",
            context=context,
            **kwargs,
        )
        self.symbol = symbol
        self.reason = reason


class ValidationFailedError(TradingException):
    """Formatted price/quantity fails exchange constraints."""

    default_severity = Severity.LOW

    def __init__(self, symbol: str, reasons: List[str], **kwargs):
        context = kwargs.pop("context", {})
        context["symbol"] = symbol
        super().__init__(
            f"Order validation failed for {symbol}: {'; '.join(reasons)}",
            context=context,
            **kwargs,
        )
        self.symbol = symbol
        self.reasons = list(reasons)


class GatewayError(TradingException):
    """Network or exchange failure while talking to the gateway."""

    default_classification = ErrorClassification.TRANSIENT

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        code: Optional[str] = None,
        **kwargs,
    ):
        context = kwargs.pop("context", {})
        if operation:
            context["operation"] = operation
        if code:
            context["code"] = code
        super().__init__(message, context=context, **kwargs)
        self.operation = operation
        self.code = code


class GovernanceRejectedError(TradingException):
    """Placement limits or duplicate checks refused a signal."""

    default_severity = Severity.LOW


class ReconciliationMismatchError(TradingException):
    """A discrepancy that could not be corrected automatically."""

    default_severity = Severity.MEDIUM


class InvalidTransitionError(TradingException):
    """Illegal trade status transition."""

    default_severity = Severity.HIGH
    default_recoverable = False
    default_classification = ErrorClassification.NON_RECOVERABLE

    def __init__(self, trade_id: str, from_status: str, to_status: str, reason: str):
        super().__init__(
            f"Invalid transition for trade {trade_id}: {from_status} -> {to_status} ({reason})",
            context={
                "trade_id": trade_id,
                "from_status": from_status,
                "to_status": to_status,
            },
        )
        self.reason = reason
