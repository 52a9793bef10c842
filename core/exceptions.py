"""Shared exception types for the exit engine."""

from typing import Optional


class ExternalDataUnavailable(RuntimeError):
    """Raised when a price, candle, concentration or broker call cannot be completed."""

    def __init__(self, source: str, original: Optional[Exception] = None):
        message = source if original is None else f"{source}: {original}"
        super().__init__(message)
        self.source = source
        self.original = original


class StateWriteError(RuntimeError):
    """Raised when the position snapshot could not be written durably."""


class ConfigurationError(ValueError):
    """Raised at startup when configuration is missing or invalid."""

    def __init__(self, errors):
        self.errors = list(errors) if not isinstance(errors, str) else [errors]
        super().__init__(f"Invalid configuration: {len(self.errors)} error(s) found")
