# src/fhir_order_capture/orders.py
"""
Accessors for the fields the engine reads off FHIR resources.

A ServiceRequest carries what was ordered in ``code.concept`` (R5
CodeableReference). The engine only ever looks at the first coding plus the
concept text, so every lookup goes through the helpers here rather than
poking at nested optionals at each call site.
"""

from __future__ import annotations

from typing import Any, List, Optional

from fhir.resources.codeableconcept import CodeableConcept
from fhir.resources.observation import Observation
from fhir.resources.servicerequest import ServiceRequest

ORDER_RESOURCE_TYPE = "ServiceRequest"

# SNOMED CT category codes used when an order is placed.
LAB_CATEGORY_CODE = "108252007"
IMAGING_CATEGORY_CODE = "363679005"

_CATEGORY_BY_CODE = {
    LAB_CATEGORY_CODE: "lab",
    IMAGING_CATEGORY_CODE: "imaging",
}


# ------------------------------------------------------------------------------
# helpers
# ------------------------------------------------------------------------------


def _text(val: object | None) -> Optional[str]:
    """Return a stripped string, or None for missing/blank values."""
    if val is None:
        return None
    s = str(val).strip()
    return s or None


def _order_concept(order: ServiceRequest) -> Optional[CodeableConcept]:
    code = getattr(order, "code", None)
    if code is None:
        return None
    # R5 wraps the concept in a CodeableReference; tolerate a bare concept too.
    concept = getattr(code, "concept", None)
    if concept is not None:
        return concept
    if isinstance(code, CodeableConcept):
        return code
    return None


def _first_coding(concept: Optional[CodeableConcept]) -> Any:
    if concept is None:
        return None
    coding = getattr(concept, "coding", None) or []
    return coding[0] if coding else None


def reference_of(ref: object | None) -> Optional[str]:
    """Return the literal reference string of a Reference, or None."""
    if ref is None:
        return None
    return _text(getattr(ref, "reference", None))


# ------------------------------------------------------------------------------
# ServiceRequest
# ------------------------------------------------------------------------------


def order_reference(order: ServiceRequest) -> Optional[str]:
    """
    Return the literal reference for an order, e.g. ``ServiceRequest/o1``.

    Returns None when the order has not been assigned an id yet.
    """
    oid = _text(getattr(order, "id", None))
    return f"{ORDER_RESOURCE_TYPE}/{oid}" if oid else None


def order_code_system(order: ServiceRequest) -> Optional[str]:
    return _text(getattr(_first_coding(_order_concept(order)), "system", None))


def order_code(order: ServiceRequest) -> Optional[str]:
    """Return the primary code of what was ordered (first coding)."""
    return _text(getattr(_first_coding(_order_concept(order)), "code", None))


def order_code_display(order: ServiceRequest) -> Optional[str]:
    """Return the display string of the primary coding."""
    return _text(getattr(_first_coding(_order_concept(order)), "display", None))


def order_display_text(order: ServiceRequest) -> Optional[str]:
    """Return the free-text description of what was ordered."""
    return _text(getattr(_order_concept(order), "text", None))


def order_subject(order: ServiceRequest) -> Optional[str]:
    return reference_of(getattr(order, "subject", None))


def order_encounter(order: ServiceRequest) -> Optional[str]:
    return reference_of(getattr(order, "encounter", None))


def order_category(order: ServiceRequest) -> Optional[str]:
    """
    Classify an order as ``"lab"`` or ``"imaging"`` from its first category.

    Returns
    -------
    str or None
        "lab", "imaging", or None when the category code is missing or not
        one of the two recognised SNOMED codes.
    """
    categories = getattr(order, "category", None) or []
    if not categories:
        return None
    code = _text(getattr(_first_coding(categories[0]), "code", None))
    return _CATEGORY_BY_CODE.get(code or "")


def order_label(order: ServiceRequest, default: str = "Order") -> str:
    """Human-readable name of an order for headings and listings."""
    return order_code_display(order) or order_display_text(order) or default


# ------------------------------------------------------------------------------
# Observation
# ------------------------------------------------------------------------------


def result_code(record: Observation) -> Optional[str]:
    """Return ``code.coding[0].code`` of a result record."""
    return _text(getattr(_first_coding(getattr(record, "code", None)), "code", None))


def result_text(record: Observation) -> Optional[str]:
    """
    Return ``code.text`` of a result record.

    Records captured by this engine carry the field label here; records from
    other sources may only carry a code or a display.
    """
    return _text(getattr(getattr(record, "code", None), "text", None))


def result_display(record: Observation) -> Optional[str]:
    """Return ``code.coding[0].display`` of a result record."""
    return _text(getattr(_first_coding(getattr(record, "code", None)), "display", None))


def based_on_references(resource: object) -> List[str]:
    """Return every literal reference in a resource's ``basedOn`` list."""
    refs = getattr(resource, "basedOn", None) or []
    out: List[str] = []
    for ref in refs:
        s = reference_of(ref)
        if s:
            out.append(s)
    return out
