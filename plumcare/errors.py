"""
Normalizer Exceptions

Only caller-contract problems are raised. Missing segments, sections or
fields, unparseable values and unknown vocabulary codes are all recovered
inside the transforms (the affected resource or sub-value is simply
omitted), so they have no exception class here.

Exception Hierarchy:
    PlumCareError (base)
    ├── CallerContractViolation  → payload is not the contracted type/shape
    └── UnsupportedFormatError   → converter asked for an unknown format
"""
from typing import Any, Dict, Optional


class PlumCareError(Exception):
    """
    Base exception for all normalizer errors.

    Attributes:
        message: Human-readable error description
        context: Additional context for debugging (record ids, formats)
    """

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        self.message = message
        self.context = context or {}
        super().__init__(message)

    def __str__(self) -> str:
        if self.context:
            details = ", ".join(f"{k}={v!r}" for k, v in self.context.items())
            return f"{self.message} ({details})"
        return self.message


class CallerContractViolation(PlumCareError, TypeError):
    """
    Raised when a transform receives an input of the wrong type or shape.

    Fatal for the single record being processed, never for a batch:
    FHIRConverter turns it into a failed ConversionResult.
    """

    def __init__(self, message: str, expected: str = "", received: Any = None):
        context: Dict[str, Any] = {}
        if expected:
            context["expected"] = expected
        if received is not None:
            context["received"] = type(received).__name__
        super().__init__(message, context)
        self.expected = expected


class UnsupportedFormatError(PlumCareError, ValueError):
    """Raised when a source format name has no registered transform."""

    def __init__(self, source_format: str, supported: Optional[list] = None):
        super().__init__(
            f"Unsupported source format: {source_format}",
            {"supported": supported} if supported else None,
        )
        self.source_format = source_format


def require_str(value: Any, what: str) -> str:
    """Return value unchanged if it is a str, else raise CallerContractViolation."""
    if not isinstance(value, str):
        raise CallerContractViolation(f"{what} must be a string", expected="str", received=value)
    return value


def require_mapping(value: Any, what: str) -> Dict[str, Any]:
    """Return value unchanged if it is a dict, else raise CallerContractViolation."""
    if not isinstance(value, dict):
        raise CallerContractViolation(f"{what} must be a JSON object", expected="dict", received=value)
    return value
