# src/fhir_order_capture/linkage.py
"""
Order linkage resolution.

Results and attachments are fetched per encounter, so each order has to pick
out its own records. Attachments are always written with an explicit link
and match on that alone. Results may come from other systems that never set
``basedOn``, so they are matched through an ordered table of rules, falling
back from the explicit link to the order's code, text and coding display.
Each fallback compares like with like: order code against the record's
coding code, order text against its text, coding display against display.

The fallback rules can attach one legacy record to several orders that share
a code or label on the same encounter. That is tolerated: it is how results
captured outside this engine show up at all.
"""

from __future__ import annotations

import logging
from typing import Callable, List, Optional, Sequence, Tuple

from fhir.resources.documentreference import DocumentReference
from fhir.resources.observation import Observation
from fhir.resources.servicerequest import ServiceRequest

from .orders import (
    based_on_references,
    order_code,
    order_code_display,
    order_display_text,
    order_reference,
    result_code,
    result_display,
    result_text,
)

__all__ = [
    "RESULT_RULES",
    "match_rule",
    "resolve_attachments",
    "resolve_results",
]

# ------------------------------------------------------------------------------
# globals
# ------------------------------------------------------------------------------

LOG = logging.getLogger(__name__)

Rule = Callable[[ServiceRequest, Observation], bool]


# ------------------------------------------------------------------------------
# result rules
# ------------------------------------------------------------------------------


def _based_on_order(order: ServiceRequest, record: object) -> bool:
    ref = order_reference(order)
    return ref is not None and ref in based_on_references(record)


def _same(value: Optional[str], other: Optional[str]) -> bool:
    return value is not None and value == other


def _same_code(order: ServiceRequest, record: Observation) -> bool:
    return _same(order_code(order), result_code(record))


def _same_text(order: ServiceRequest, record: Observation) -> bool:
    return _same(order_display_text(order), result_text(record))


def _same_display(order: ServiceRequest, record: Observation) -> bool:
    return _same(order_code_display(order), result_display(record))


# Precedence order; the first rule that holds is reported for a record.
RESULT_RULES: Tuple[Tuple[str, Rule], ...] = (
    ("based-on", _based_on_order),
    ("code", _same_code),
    ("text", _same_text),
    ("display", _same_display),
)


def match_rule(order: ServiceRequest, record: Observation) -> Optional[str]:
    """
    Return the name of the first rule linking a result to an order.

    Parameters
    ----------
    order : ServiceRequest
        The order.
    record : Observation
        A candidate result record.

    Returns
    -------
    str or None
        One of "based-on", "code", "text", "display", or None if no rule
        links the record to the order.
    """
    for name, rule in RESULT_RULES:
        if rule(order, record):
            return name
    return None


# ------------------------------------------------------------------------------
# public API
# ------------------------------------------------------------------------------


def resolve_results(
    order: ServiceRequest, all_results_for_encounter: Sequence[Observation]
) -> List[Observation]:
    """
    Select the result records that belong to an order.

    Parameters
    ----------
    order : ServiceRequest
        The order.
    all_results_for_encounter : sequence of Observation
        Every result fetched for the order's encounter.

    Returns
    -------
    list of Observation
        Every record matched by any rule, in input order. A record can also
        be returned for other orders on the same encounter.
    """
    matched: List[Observation] = []
    fallback = 0
    for record in all_results_for_encounter or []:
        rule = match_rule(order, record)
        if rule is None:
            continue
        if rule != "based-on":
            fallback += 1
        matched.append(record)

    LOG.debug(
        "Order %s: %d linked result(s), %d via fallback rules",
        getattr(order, "id", None),
        len(matched),
        fallback,
    )
    return matched


def resolve_attachments(
    order: ServiceRequest,
    all_attachments_for_encounter: Sequence[DocumentReference],
) -> List[DocumentReference]:
    """
    Select the attachments that belong to an order.

    Only an explicit ``basedOn`` reference to the order links an attachment;
    codes and labels are never consulted. An order without an id has no
    attachments.
    """
    return [
        doc
        for doc in all_attachments_for_encounter or []
        if _based_on_order(order, doc)
    ]
