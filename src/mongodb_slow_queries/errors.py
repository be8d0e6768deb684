"""
Error types for the MongoDB slow queries plugin.

This module defines the PluginError base class and the subclasses raised by
configuration loading and by the sampler. Callers at the CLI layer catch
PluginError and turn it into a message on stderr and a non-zero exit status.
"""

from __future__ import annotations

from typing import Any


class PluginError(Exception):
    """
    Base exception class for plugin errors.

    Attributes:
        error_code: Internal error code string (e.g., "invalid_argument",
            "unavailable").
        message: Human-readable error message.
        details: Optional structured details (e.g., host, database, timeout).

    Example:
        >>> raise PluginError(
        ...     error_code="unavailable",
        ...     message="failed to ping MongoDB",
        ...     details={"host": "db1"},
        ... )
    """

    def __init__(
        self,
        error_code: str,
        message: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        """
        Initialize a PluginError.

        Args:
            error_code: Internal error code string identifying the error category.
            message: Human-readable error message.
            details: Optional dictionary with structured error details.
        """
        super().__init__(message)
        self.error_code = error_code
        self.message = message
        self.details = details or {}

    def __repr__(self) -> str:
        """Return a detailed string representation."""
        return (
            f"{self.__class__.__name__}("
            f"error_code={self.error_code!r}, "
            f"message={self.message!r}, "
            f"details={self.details!r})"
        )

    def to_dict(self) -> dict[str, Any]:
        """
        Convert the error to a dictionary for structured logging.

        Returns:
            Dictionary with error_code, message, and details.
        """
        return {
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details,
        }


class InvalidArgumentError(PluginError):
    """
    Error raised when the plugin configuration is invalid or incomplete.

    Raised before any connection attempt, e.g. when no database name is given.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize an InvalidArgumentError."""
        super().__init__(
            error_code="invalid_argument", message=message, details=details
        )


class UnavailableError(PluginError):
    """
    Error raised when MongoDB cannot be reached or stops answering.

    Covers connection failures, failed pings, query failures, cursor errors
    and expiry of the collection timeout.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize an UnavailableError."""
        super().__init__(error_code="unavailable", message=message, details=details)

