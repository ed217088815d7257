# src/fhir_order_capture/__init__.py
"""
fhir_order_capture: clinical order resolution and result capture on FHIR.

This package provides:
- Catalog schema resolution for ServiceRequest orders (ActivityDefinition).
- Linkage of Observation results and DocumentReference attachments to orders.
- Idempotent result capture and attachment management against a record store.
- A CLI over a directory-backed record store.
"""

from __future__ import annotations

__version__ = "0.1.0"
__all__ = [
    "__version__",
]
