# src/fhir_order_capture/schema.py
"""
Catalog schema resolution.

Every order needs a list of capturable fields before results can be entered.
The list comes from the catalog definition (ActivityDefinition) matching the
order, where it is embedded as a JSON string in an extension. Whenever that
cannot be used, a single free-text field is returned instead, so a capture
form can always be rendered.
"""

from __future__ import annotations

import logging
from typing import List, Literal, Optional, Sequence, Tuple

from fhir.resources.activitydefinition import ActivityDefinition
from fhir.resources.servicerequest import ServiceRequest
from pydantic import (
    BaseModel,
    ConfigDict,
    TypeAdapter,
    ValidationError as PydanticValidationError,
    field_validator,
    model_validator,
)

from .config import IMAGING_TEST_SYSTEM, LAB_TEST_SYSTEM, RESULT_FIELDS_EXTENSION
from .exceptions import SchemaDecodeError
from .orders import order_code, order_code_display, order_display_text

__all__ = [
    "FieldType",
    "ResultField",
    "decode_field_schema",
    "encode_field_schema",
    "fallback_field",
    "find_definition",
    "resolve_schema",
]

# ------------------------------------------------------------------------------
# globals
# ------------------------------------------------------------------------------

LOG = logging.getLogger(__name__)

FieldType = Literal["string", "number", "boolean", "select"]

FALLBACK_FIELD_NAME = "result"
DEFAULT_CATALOG_SYSTEMS: Tuple[str, ...] = (LAB_TEST_SYSTEM, IMAGING_TEST_SYSTEM)


# ------------------------------------------------------------------------------
# class ResultField
# ------------------------------------------------------------------------------


class ResultField(BaseModel):
    """
    One capturable field of an order's result schema.

    Attributes
    ----------
    name : str
        Machine key, unique within a schema.
    label : str
        Display label. Also written to ``Observation.code.text`` on capture,
        which is what later captures match against.
    type : {"string", "number", "boolean", "select"}
        Declared value type.
    unit : str or None
        Unit of measure; only allowed on number fields.
    options : list of str or None
        Allowed values; required and non-empty for select fields.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    name: str
    label: str
    type: FieldType = "string"
    unit: Optional[str] = None
    options: Optional[List[str]] = None

    @field_validator("name", "label")
    @classmethod
    def _not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("must not be blank")
        return v.strip()

    @model_validator(mode="after")
    def _check_type_rules(self) -> "ResultField":
        if self.unit is not None and self.type != "number":
            raise ValueError(f"unit is only allowed on number fields ({self.name})")
        if self.type == "select":
            if not self.options or not all(o.strip() for o in self.options):
                raise ValueError(f"select field {self.name} needs non-empty options")
        return self


_SCHEMA_ADAPTER = TypeAdapter(List[ResultField])


# ------------------------------------------------------------------------------
# encode / decode
# ------------------------------------------------------------------------------


def decode_field_schema(text: Optional[str]) -> List[ResultField]:
    """
    Decode an embedded field schema.

    Parameters
    ----------
    text : str or None
        JSON array of field objects, as stored on a catalog definition.

    Returns
    -------
    list of ResultField
        The decoded, non-empty field list.

    Raises
    ------
    SchemaDecodeError
        If the text is missing, is not valid JSON, does not describe valid
        fields, is an empty array, or repeats a field name.
    """
    if text is None or not str(text).strip():
        raise SchemaDecodeError("field schema is missing")
    try:
        fields = _SCHEMA_ADAPTER.validate_json(text)
    except PydanticValidationError as e:
        raise SchemaDecodeError(f"invalid field schema: {e}") from e
    if not fields:
        raise SchemaDecodeError("field schema is empty")

    seen = set()
    for f in fields:
        if f.name in seen:
            raise SchemaDecodeError(f"duplicate field name {f.name!r}")
        seen.add(f.name)
    return fields


def encode_field_schema(fields: Sequence[ResultField]) -> str:
    """Serialize fields to the compact JSON stored on catalog definitions."""
    return _SCHEMA_ADAPTER.dump_json(list(fields), exclude_none=True).decode("utf-8")


# ------------------------------------------------------------------------------
# definition accessors
# ------------------------------------------------------------------------------


def definition_code(
    definition: ActivityDefinition,
    systems: Sequence[str] = DEFAULT_CATALOG_SYSTEMS,
) -> Optional[str]:
    """
    Return the catalog code of a definition.

    The first identifier in one of ``systems`` wins; otherwise the first
    identifier with a value is used.
    """
    identifiers = getattr(definition, "identifier", None) or []
    for ident in identifiers:
        if getattr(ident, "system", None) in systems and getattr(ident, "value", None):
            return str(ident.value)
    for ident in identifiers:
        if getattr(ident, "value", None):
            return str(ident.value)
    return None


def definition_title(definition: ActivityDefinition) -> Optional[str]:
    """Return the definition's title, falling back to ``code.text``."""
    title = getattr(definition, "title", None)
    if title:
        return str(title)
    text = getattr(getattr(definition, "code", None), "text", None)
    return str(text) if text else None


def definition_extension(definition: ActivityDefinition, url: str) -> Optional[str]:
    """Return ``valueString`` of the first extension with the given url."""
    for ext in getattr(definition, "extension", None) or []:
        if getattr(ext, "url", None) == url:
            return getattr(ext, "valueString", None)
    return None


# ------------------------------------------------------------------------------
# resolution
# ------------------------------------------------------------------------------


def find_definition(
    order: ServiceRequest,
    candidate_definitions: Sequence[ActivityDefinition],
    systems: Sequence[str] = DEFAULT_CATALOG_SYSTEMS,
) -> Optional[ActivityDefinition]:
    """
    Find the catalog definition for an order.

    A definition whose code equals the order's code wins over any title
    match. Without a code match, a definition whose title equals the order's
    text (or the display of its coding) is used. Retired definitions are
    skipped.

    Returns
    -------
    ActivityDefinition or None
        The first matching definition, in candidate order.
    """
    candidates = [
        d for d in candidate_definitions if getattr(d, "status", None) != "retired"
    ]

    code = order_code(order)
    if code:
        for d in candidates:
            if definition_code(d, systems) == code:
                return d

    titles = [t for t in (order_display_text(order), order_code_display(order)) if t]
    if titles:
        for d in candidates:
            if definition_title(d) in titles:
                return d
    return None


def fallback_field(order: ServiceRequest) -> ResultField:
    """
    Single free-text field used when no usable schema exists.

    The label is the order text, else the coding display, else the code,
    else "Result". The coding display sits before the code so an order
    placed from a picker that only fills ``coding[0].display`` still gets a
    readable label.
    """
    label = (
        order_display_text(order)
        or order_code_display(order)
        or order_code(order)
        or "Result"
    )
    return ResultField(name=FALLBACK_FIELD_NAME, label=label, type="string")


def resolve_schema(
    order: ServiceRequest,
    candidate_definitions: Sequence[ActivityDefinition],
    *,
    systems: Sequence[str] = DEFAULT_CATALOG_SYSTEMS,
    extension_url: str = RESULT_FIELDS_EXTENSION,
) -> List[ResultField]:
    """
    Resolve the capturable fields for an order.

    Parameters
    ----------
    order : ServiceRequest
        The order results are being entered for.
    candidate_definitions : sequence of ActivityDefinition
        Catalog definitions to search (typically the whole catalog).
    systems : sequence of str
        Identifier systems that hold catalog codes.
    extension_url : str
        Extension url of the embedded field schema.

    Returns
    -------
    list of ResultField
        The definition's decoded schema, or exactly one fallback field of
        type "string" named "result". Never empty, never raises for bad
        catalog data.
    """
    definition = find_definition(order, candidate_definitions, systems)
    if definition is None:
        LOG.debug("No catalog definition for order %s", getattr(order, "id", None))
        return [fallback_field(order)]

    try:
        fields = decode_field_schema(definition_extension(definition, extension_url))
    except SchemaDecodeError as e:
        # Catalog data-quality problem; capture still proceeds.
        LOG.warning(
            "Definition %s has no usable field schema (%s); using fallback field",
            getattr(definition, "id", None),
            e,
        )
        return [fallback_field(order)]

    LOG.debug(
        "Resolved %d field(s) for order %s from definition %s",
        len(fields),
        getattr(order, "id", None),
        getattr(definition, "id", None),
    )
    return fields
