# src/fhir_order_capture/capture.py
"""
Result capture.

Entered values are written as one Observation per schema field. The store has
no uniqueness constraint on (order, field), so before each write the existing
results are searched for a record to reuse; re-submitting a corrected form
therefore overwrites the earlier values instead of appending new ones.
Concurrent captures for the same field are last-write-wins.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Sequence, Set, Tuple

from fhir.resources.codeableconcept import CodeableConcept
from fhir.resources.observation import Observation
from fhir.resources.reference import Reference
from fhir.resources.servicerequest import ServiceRequest

from .exceptions import ValidationError
from .orders import (
    based_on_references,
    order_code,
    order_encounter,
    order_reference,
    order_subject,
    reference_of,
    result_code,
    result_text,
)
from .schema import ResultField
from .store.base import RecordStore
from .values import ResultValue, coerce_value, is_blank

__all__ = ["build_observation", "capture_results", "find_reusable", "validate_values"]

# ------------------------------------------------------------------------------
# globals
# ------------------------------------------------------------------------------

LOG = logging.getLogger(__name__)

RESULT_STATUS = "final"


# ------------------------------------------------------------------------------
# helpers
# ------------------------------------------------------------------------------


def validate_values(
    schema: Sequence[ResultField], field_values: Mapping[str, Any]
) -> List[Tuple[ResultField, ResultValue]]:
    """
    Coerce every entered value before anything is written.

    Fields with no entry (missing key, None or a blank string) are skipped.
    Keys that are not in the schema are ignored.

    Returns
    -------
    list of (ResultField, ResultValue)
        The typed values, in schema order.

    Raises
    ------
    ValidationError
        For the first value that does not coerce to its field's type.
    """
    names = {f.name for f in schema}
    unknown = sorted(k for k in field_values if k not in names)
    if unknown:
        LOG.debug("Ignoring values for unknown field(s): %s", ", ".join(unknown))

    typed: List[Tuple[ResultField, ResultValue]] = []
    for field in schema:
        raw = field_values.get(field.name)
        if is_blank(raw):
            continue
        typed.append((field, coerce_value(field, raw)))
    return typed


def find_reusable(
    order: ServiceRequest,
    field: ResultField,
    existing_results: Sequence[Observation],
    claimed: Optional[Set[str]] = None,
) -> Optional[Observation]:
    """
    Find the existing result record a field's value should overwrite.

    A candidate must belong to the same subject and encounter as the order,
    must not already be claimed by another field of the same capture, and
    must not be explicitly based on a different order. Among candidates, one
    whose ``code.text`` is the field label wins over one whose coding code is
    the order's code.

    Returns
    -------
    Observation or None
        The record to update, or None when a new record must be created.
    """
    claimed = claimed or set()
    subject = order_subject(order)
    encounter = order_encounter(order)
    own_ref = order_reference(order)
    code = order_code(order)

    by_label: Optional[Observation] = None
    by_code: Optional[Observation] = None
    for record in existing_results:
        rid = getattr(record, "id", None)
        if not rid or rid in claimed:
            continue
        if reference_of(getattr(record, "subject", None)) != subject:
            continue
        if reference_of(getattr(record, "encounter", None)) != encounter:
            continue
        linked = based_on_references(record)
        if linked and own_ref not in linked:
            continue

        if result_text(record) == field.label:
            by_label = by_label or record
            # Explicitly linked label match cannot be beaten.
            if own_ref in linked:
                return record
        elif code and result_code(record) == code:
            by_code = by_code or record
    return by_label or by_code


def build_observation(
    order: ServiceRequest,
    field: ResultField,
    value: ResultValue,
    effective: datetime,
    record_id: Optional[str] = None,
) -> Observation:
    """
    Build the Observation for one captured field.

    The record is keyed by the field label (``code.text``), linked to the
    order through ``basedOn`` and carries exactly one ``value[x]``.
    """
    subject = order_subject(order)
    encounter = order_encounter(order)
    data: Dict[str, Any] = {
        "status": RESULT_STATUS,
        "code": CodeableConcept(text=field.label),
        "subject": Reference(reference=subject) if subject else None,
        "encounter": Reference(reference=encounter) if encounter else None,
        "basedOn": [Reference(reference=order_reference(order))],
        "effectiveDateTime": effective,
    }
    data.update(value.to_fhir())
    if record_id:
        data["id"] = record_id
    return Observation(**data)


# ------------------------------------------------------------------------------
# public API
# ------------------------------------------------------------------------------


def capture_results(
    store: RecordStore,
    order: ServiceRequest,
    field_values: Mapping[str, Any],
    schema: Sequence[ResultField],
    existing_results: Sequence[Observation],
    *,
    now: Optional[datetime] = None,
) -> List[Observation]:
    """
    Create or update one result record per entered field.

    Parameters
    ----------
    store : RecordStore
        Where records are written.
    order : ServiceRequest
        The order the results belong to. Must have an id.
    field_values : mapping of str to object
        Raw values keyed by field name.
    schema : sequence of ResultField
        Fields resolved for the order.
    existing_results : sequence of Observation
        Results already stored for the order's encounter.
    now : datetime, optional
        Effective time written to every record; defaults to the current UTC
        time.

    Returns
    -------
    list of Observation
        The saved records, in schema order. Fields without a value are not
        represented.

    Raises
    ------
    ValidationError
        If the order has no id or any value fails coercion. Nothing is
        written in either case.
    StoreError
        Propagated unchanged from the store. Fields written before the
        failure stay written.
    """
    if order_reference(order) is None:
        raise ValidationError("order has no id; results cannot be linked to it")

    typed = validate_values(schema, field_values)
    effective = now or datetime.now(timezone.utc)

    saved: List[Observation] = []
    claimed: Set[str] = set()
    updated = 0
    for field, value in typed:
        existing = find_reusable(order, field, existing_results, claimed)
        if existing is not None:
            claimed.add(existing.id)
            obs = build_observation(order, field, value, effective, existing.id)
            saved.append(store.update(obs))
            updated += 1
        else:
            obs = build_observation(order, field, value, effective)
            saved.append(store.create(obs))

    LOG.info(
        "Captured %d result(s) for order %s (%d updated, %d created)",
        len(saved),
        order.id,
        updated,
        len(saved) - updated,
    )
    return saved
