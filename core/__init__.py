"""
Core Module Package.

This package contains the shared infrastructure that the
trading packages depend on.

Components:
- clock: Injectable time abstraction
- exceptions: Error taxonomy
"""

from .clock import ClockProtocol, SystemClock, MockClock, from_millis, to_millis
from .exceptions import (
    Severity,
    ErrorClassification,
    TradingException,
    ConfigurationError,
    InvalidConfigError,
    MetadataUnavailableError,
    ValidationFailedError,
    GatewayError,
    GovernanceRejectedError,
    ReconciliationMismatchError,
    InvalidTransitionError,
)
