# src/fhir_order_capture/exceptions.py
"""
Custom exceptions for fhir_order_capture.

All exceptions inherit from OrderCaptureError so that callers can catch
engine-specific errors without grabbing unrelated built-in exceptions.
"""

from __future__ import annotations

from typing import Optional


class OrderCaptureError(Exception):
    """Base class for all fhir_order_capture exceptions."""

    pass


class ParseError(OrderCaptureError):
    """Raised when a FHIR JSON or XML document cannot be parsed correctly."""

    pass


class SchemaDecodeError(OrderCaptureError):
    """
    Raised when a catalog definition's embedded field schema cannot be decoded.

    The schema resolver recovers from this error locally by falling back to a
    single free-text field; it never reaches callers of resolve_schema().
    """

    pass


class ValidationError(OrderCaptureError):
    """
    Raised when submitted input cannot be written.

    Covers values that do not coerce to their declared field type, missing
    files or selections, and orders that cannot be linked because they have
    no id. Always raised before any write reaches the record store.

    Attributes
    ----------
    field : str or None
        Machine name of the offending result field, when there is one.
    """

    def __init__(self, message: str, field: Optional[str] = None) -> None:
        super().__init__(message)
        self.field = field


class StoreError(OrderCaptureError):
    """Raised by record store backends when a read or write fails."""

    pass
