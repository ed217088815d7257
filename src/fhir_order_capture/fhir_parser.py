# src/fhir_order_capture/fhir_parser.py
"""
FHIR parsing utilities.

Provides loaders for FHIR JSON and XML files that return validated
`fhir.resources` model instances for the record kinds this engine works with,
and the inverse dump used by file-backed record stores.
"""

from __future__ import annotations

import json
from functools import lru_cache
from pathlib import Path
from types import UnionType
from typing import (
    Annotated,
    Any,
    Dict,
    Iterator,
    List,
    Mapping,
    Optional,
    Tuple,
    Type,
    Union,
    get_args,
    get_origin,
)

from fhir.resources.activitydefinition import ActivityDefinition
from fhir.resources.bundle import Bundle
from fhir.resources.documentreference import DocumentReference
from fhir.resources.observation import Observation
from fhir.resources.resource import Resource
from fhir.resources.servicerequest import ServiceRequest
from lxml import etree
from pydantic import BaseModel, ValidationError

from .exceptions import ParseError

# Resource kinds the engine reads and writes, plus Bundle for imports.
KNOWN_TYPES: Mapping[str, Type[Resource]] = {
    "ActivityDefinition": ActivityDefinition,
    "Bundle": Bundle,
    "DocumentReference": DocumentReference,
    "Observation": Observation,
    "ServiceRequest": ServiceRequest,
}

# Non-"value" attributes that carry data in FHIR XML.
_DATA_ATTRIBUTES = ("url", "id")

# (is_list, element model) per JSON field name of a model.
_FieldShapes = Dict[str, Tuple[bool, Optional[type]]]


# ------------------------------------------------------------------------------
# helpers
# ------------------------------------------------------------------------------


def _ensure_file(path: Path) -> None:
    """Validate that a path exists and is a file; raise ParseError if not."""
    if not isinstance(path, Path):
        raise ParseError(f"path must be pathlib.Path, got {type(path).__name__}")
    if not path.exists():
        raise ParseError(f"file does not exist: {path}")
    if not path.is_file():
        raise ParseError(f"not a file: {path}")


def _local(tag: str) -> str:
    """Return the local (namespace-stripped) tag name."""
    return tag.split("}", 1)[1] if "}" in tag else tag


def _unwrap_annotation(annotation: Any) -> Tuple[bool, Any]:
    """
    Strip Optional/Annotated wrappers off a field annotation.

    Returns whether the field is a list, and the element type.
    """
    is_list = False
    tp = annotation
    while True:
        origin = get_origin(tp)
        if origin is Annotated:
            tp = get_args(tp)[0]
        elif origin in (Union, UnionType):
            args = [a for a in get_args(tp) if a is not type(None)]
            if len(args) != 1:
                return is_list, None
            tp = args[0]
        elif origin is list:
            is_list = True
            tp = get_args(tp)[0]
        else:
            return is_list, tp


def _element_model(tp: Any) -> Optional[type]:
    """Resolve a fhirtypes element type (or a model class) to its model class."""
    getter = getattr(tp, "get_model_klass", None)
    if callable(getter):
        try:
            return getter()
        except (ImportError, AttributeError):
            return None
    if isinstance(tp, type) and issubclass(tp, BaseModel):
        return tp
    return None


@lru_cache(maxsize=None)
def _field_shapes(model: type) -> _FieldShapes:
    """Map each JSON field name of a model to (is_list, element model)."""
    shapes: _FieldShapes = {}
    for name, info in getattr(model, "model_fields", {}).items():
        is_list, tp = _unwrap_annotation(info.annotation)
        shapes[info.alias or name] = (is_list, _element_model(tp))
    return shapes


def _inline_resource(elem) -> Optional[Dict[str, Any]]:
    """
    Unwrap a resource container element such as Bundle ``entry/resource``.

    FHIR XML nests the resource under an element named after its type;
    returns None when elem is not such a container.
    """
    children = [c for c in elem if isinstance(c.tag, str)]
    if len(children) != 1:
        return None
    rtype = _local(children[0].tag)
    model = KNOWN_TYPES.get(rtype)
    if model is None:
        return None
    body = _xml_to_obj(children[0], model)
    out: Dict[str, Any] = {"resourceType": rtype}
    if isinstance(body, dict):
        out.update(body)
    return out


def _xml_to_obj(elem, model: Optional[type] = None) -> Any:
    """
    Convert a FHIR XML element subtree into a JSON-like object.

    Rules
    -----
    - An element with a 'value' attribute and no element children is a scalar.
    - Otherwise a dict of child elements is built. Repeated tags, and tags the
      model declares as lists, become lists.
    - 'url' and 'id' attributes are kept (extensions need their url).
    - Namespaces are stripped; only local names are used.
    """
    children = [c for c in elem if isinstance(c.tag, str)]
    val = elem.get("value")
    if val is not None and not children:
        return val

    shapes = _field_shapes(model) if model is not None else {}
    out: Dict[str, Any] = {}
    for attr in _DATA_ATTRIBUTES:
        if elem.get(attr) is not None:
            out[attr] = elem.get(attr)
    for child in children:
        name = _local(child.tag)
        is_list, child_model = shapes.get(name, (False, None))
        child_obj = _inline_resource(child)
        if child_obj is None:
            child_obj = _xml_to_obj(child, child_model)
        if name in out:
            if not isinstance(out[name], list):
                out[name] = [out[name]]
            out[name].append(child_obj)
        elif is_list:
            out[name] = [child_obj]
        else:
            out[name] = child_obj
    return out


def resource_from_dict(obj: Mapping[str, Any]) -> Resource:
    """
    Build a validated model from a FHIR JSON object.

    Raises
    ------
    ParseError
        If the object is not a mapping, its resourceType is not supported,
        or model validation fails.
    """
    if not isinstance(obj, Mapping):
        raise ParseError("FHIR JSON must be an object at the top level")

    rtype = obj.get("resourceType")
    cls = KNOWN_TYPES.get(str(rtype))
    if cls is None:
        raise ParseError(f"unsupported resourceType: {rtype!r}")

    data = {k: v for k, v in obj.items() if k != "resourceType"}
    try:
        return cls(**data)
    except ValidationError as e:
        raise ParseError(f"FHIR {rtype} validation error: {e}") from e
    except (TypeError, ValueError) as e:
        raise ParseError(f"failed to build FHIR {rtype}: {e}") from e


def resource_type_of(resource: Any) -> str:
    """Return the FHIR resourceType name of a model instance."""
    getter = getattr(resource, "get_resource_type", None)
    if callable(getter):
        return str(getter())
    return str(getattr(resource, "resource_type", None) or type(resource).__name__)


def resource_to_dict(resource: Resource) -> Dict[str, Any]:
    """
    Dump a model to a JSON-ready FHIR object with ``resourceType`` first.
    """
    data = resource.model_dump(mode="json", by_alias=True, exclude_none=True)
    data.pop("resource_type", None)
    data.pop("resourceType", None)
    out: Dict[str, Any] = {"resourceType": resource_type_of(resource)}
    out.update(data)
    return out


def iter_bundle_resources(resource: Resource) -> Iterator[Resource]:
    """Yield the entries of a Bundle, or the resource itself otherwise."""
    if resource_type_of(resource) != "Bundle":
        yield resource
        return
    for entry in getattr(resource, "entry", None) or []:
        inner = getattr(entry, "resource", None)
        if inner is None:
            continue
        if not isinstance(inner, Resource) and isinstance(inner, Mapping):
            inner = resource_from_dict(inner)
        yield inner


# ------------------------------------------------------------------------------
# loaders
# ------------------------------------------------------------------------------


def load_fhir_json(path: Path) -> Resource:
    """
    Load a FHIR resource from a JSON file.

    Parameters
    ----------
    path : Path
        Path to a JSON file containing a FHIR resource.

    Returns
    -------
    Resource
        A validated instance of one of the KNOWN_TYPES.

    Raises
    ------
    ParseError
        If the path is invalid, the JSON is not valid, the file does not
        contain a JSON object, the type is unsupported, or validation fails.
    """
    _ensure_file(path)

    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ParseError(f"failed to read JSON: {e}") from e

    try:
        obj: Any = json.loads(text)
    except json.JSONDecodeError as e:
        raise ParseError(f"invalid JSON: {e}") from e

    return resource_from_dict(obj)


def load_fhir_xml(path: Path) -> Resource:
    """
    Load a FHIR resource from an XML file.

    The root element's local name becomes ``resourceType``; the tree is
    converted with _xml_to_obj and then validated like JSON input.

    Raises
    ------
    ParseError
        If the path is invalid, the XML cannot be parsed, the type is
        unsupported, or model validation fails.
    """
    _ensure_file(path)

    try:
        root = etree.parse(str(path)).getroot()
    except (etree.XMLSyntaxError, OSError) as e:
        raise ParseError(f"invalid XML: {e}") from e

    rtype = _local(root.tag)
    body = _xml_to_obj(root, KNOWN_TYPES.get(rtype))
    data: Dict[str, Any] = {"resourceType": rtype}
    if isinstance(body, dict):
        data.update(body)
    return resource_from_dict(data)


def load_fhir_file(path: Path) -> List[Resource]:
    """
    Load a JSON or XML file and expand Bundles into their entries.

    Raises
    ------
    ParseError
        If the suffix is not .json or .xml, or loading fails.
    """
    suffix = path.suffix.lower()
    if suffix == ".json":
        res = load_fhir_json(path)
    elif suffix == ".xml":
        res = load_fhir_xml(path)
    else:
        raise ParseError(
            f"Unsupported FHIR file type: {path.name} (expected .json or .xml)"
        )
    return list(iter_bundle_resources(res))
