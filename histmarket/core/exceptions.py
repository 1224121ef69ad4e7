"""Exception hierarchy for the historical market store.

This module defines all custom exceptions used throughout the store.
All exceptions inherit from HistoricalMarketError for easy catching and handling.
"""

from typing import Any, Dict


class HistoricalMarketError(Exception):
    """Base exception for all historical market errors.

    All custom exceptions in the store inherit from this class,
    allowing for easy catching of any store related errors.
    """

    def __init__(self, message: str, **context: Any):
        """Initialize the exception with a message and optional context.

        Args:
            message: Error message describing what went wrong
            **context: Additional context information for logging and debugging
        """
        super().__init__(message)
        self.context: Dict[str, Any] = context

    def __str__(self) -> str:
        """Return string representation including context."""
        if self.context:
            ctx = ', '.join(f'{k}={v}' for k, v in self.context.items())
            return f"{super().__str__()} [{ctx}]"
        return super().__str__()


# ============================================================================
# Configuration Exceptions
# ============================================================================

class InvalidConfigError(HistoricalMarketError):
    """Raised when configuration contains invalid values.

    This exception is raised when configuration values fail validation,
    such as negative durations, an interval that is not a multiple of its
    source, or an unknown fill method.
    """


class MissingConfigError(HistoricalMarketError):
    """Raised when required configuration is missing.

    This exception is raised when the configuration file cannot be found
    or a mandatory section is absent.
    """


# ============================================================================
# Data Exceptions
# ============================================================================

class NotFoundError(HistoricalMarketError):
    """Raised when a file or bucket does not exist.

    Often recoverable: callers may treat a missing history file on the
    first run as an empty series.
    """


class FormatError(HistoricalMarketError):
    """Raised when persisted data is structurally corrupt.

    Fatal for the file being read. The loader never fabricates data to
    paper over a corrupt record.
    """


class OutOfOrderError(HistoricalMarketError):
    """Raised when a tick is older than the minimum retained time.

    The tick is rejected and the series left unchanged. In the live loop
    this is logged and the tick skipped.
    """


class DataValidationError(HistoricalMarketError):
    """Raised when a tick fails validation.

    This exception is raised for malformed observations, such as a
    non-integer time or a non-positive or non-finite price.
    """


class InvalidBarError(HistoricalMarketError):
    """Raised when an interval bucket is internally inconsistent.

    This exception is raised when high < max(open, close) or
    low > min(open, close), which indicates a reduction bug or corrupt input.
    """


# ============================================================================
# Source Exceptions
# ============================================================================

class SourceUnavailableError(HistoricalMarketError):
    """Raised when the backfill source cannot be reached.

    Transient by nature and retried with bounded backoff. Fatal only once
    the retries of the mandatory startup backfill are exhausted.
    """


# ============================================================================
# Integrity Exceptions
# ============================================================================

class IntegrityViolation(HistoricalMarketError):
    """Raised when the verified dataset still fails its integrity check.

    Processing must not continue on an unverified history; the caller is
    expected to halt and ask for a refresh of the data file.
    """

    def __init__(self, message: str, report: Any = None, **context: Any):
        super().__init__(message, **context)
        self.report = report
