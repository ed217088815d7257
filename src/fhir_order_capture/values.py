# src/fhir_order_capture/values.py
"""
Typed result values.

A captured value is one of four variants, one per ResultField type. Each
variant renders exactly one Observation ``value[x]`` element, so a record can
never carry two populated values or a value that disagrees with its field.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional, Union

from fhir.resources.codeableconcept import CodeableConcept
from fhir.resources.quantity import Quantity

from .exceptions import ValidationError
from .schema import ResultField

__all__ = [
    "BooleanValue",
    "CodedTextValue",
    "QuantityValue",
    "ResultValue",
    "StringValue",
    "coerce_value",
    "is_blank",
]

_TRUE = frozenset({"true", "yes", "y", "1", "on"})
_FALSE = frozenset({"false", "no", "n", "0", "off"})


# ------------------------------------------------------------------------------
# variants
# ------------------------------------------------------------------------------


@dataclass(frozen=True)
class QuantityValue:
    value: Decimal
    unit: Optional[str] = None

    def to_fhir(self) -> Dict[str, Any]:
        return {"valueQuantity": Quantity(value=self.value, unit=self.unit)}


@dataclass(frozen=True)
class StringValue:
    value: str

    def to_fhir(self) -> Dict[str, Any]:
        return {"valueString": self.value}


@dataclass(frozen=True)
class BooleanValue:
    value: bool

    def to_fhir(self) -> Dict[str, Any]:
        return {"valueBoolean": self.value}


@dataclass(frozen=True)
class CodedTextValue:
    """Selected option of a select field, carried as CodeableConcept text."""

    text: str

    def to_fhir(self) -> Dict[str, Any]:
        return {"valueCodeableConcept": CodeableConcept(text=self.text)}


ResultValue = Union[QuantityValue, StringValue, BooleanValue, CodedTextValue]


# ------------------------------------------------------------------------------
# coercion
# ------------------------------------------------------------------------------


def is_blank(raw: object) -> bool:
    """True for values that mean "not entered": None and whitespace-only strings."""
    return raw is None or (isinstance(raw, str) and not raw.strip())


def _to_number(field: ResultField, raw: object) -> QuantityValue:
    # bool is an int subclass; True is not a lab value.
    if isinstance(raw, bool) or not isinstance(raw, (str, int, float, Decimal)):
        raise ValidationError(
            f"{field.label}: expected a number, got {type(raw).__name__}",
            field=field.name,
        )
    try:
        num = Decimal(str(raw).strip())
    except InvalidOperation:
        raise ValidationError(
            f"{field.label}: {raw!r} is not a number", field=field.name
        ) from None
    if not num.is_finite():
        raise ValidationError(
            f"{field.label}: {raw!r} is not a finite number", field=field.name
        )
    return QuantityValue(value=num, unit=field.unit)


def _to_string(field: ResultField, raw: object) -> StringValue:
    if not isinstance(raw, str):
        raise ValidationError(
            f"{field.label}: expected text, got {type(raw).__name__}",
            field=field.name,
        )
    return StringValue(value=raw.strip())


def _to_boolean(field: ResultField, raw: object) -> BooleanValue:
    if isinstance(raw, bool):
        return BooleanValue(value=raw)
    if isinstance(raw, str):
        s = raw.strip().lower()
        if s in _TRUE:
            return BooleanValue(value=True)
        if s in _FALSE:
            return BooleanValue(value=False)
    raise ValidationError(
        f"{field.label}: {raw!r} is not a yes/no value", field=field.name
    )


def _to_coded_text(field: ResultField, raw: object) -> CodedTextValue:
    if isinstance(raw, str):
        wanted = raw.strip().casefold()
        for option in field.options or []:
            if option.strip().casefold() == wanted:
                return CodedTextValue(text=option)
    raise ValidationError(
        f"{field.label}: {raw!r} is not one of {field.options}", field=field.name
    )


_COERCERS = {
    "number": _to_number,
    "string": _to_string,
    "boolean": _to_boolean,
    "select": _to_coded_text,
}


def coerce_value(field: ResultField, raw: object) -> ResultValue:
    """
    Coerce a raw submitted value to the typed value of its field.

    Parameters
    ----------
    field : ResultField
        Field the value was entered for.
    raw : object
        Value as submitted by the form layer (usually a string).

    Returns
    -------
    ResultValue
        The variant matching ``field.type``.

    Raises
    ------
    ValidationError
        If the value is blank or does not coerce to the declared type.
    """
    if is_blank(raw):
        raise ValidationError(f"{field.label}: a value is required", field=field.name)
    return _COERCERS[field.type](field, raw)
