# src/fhir_order_capture/store/base.py
"""
Record store protocol.

The engine never talks to a FHIR server directly; it calls the five
operations below on whatever store it is given. Backends shipped with the
package share the search-parameter matching implemented here.
"""

from __future__ import annotations

from typing import Any, Iterable, List, Mapping, Optional, Protocol, runtime_checkable

from fhir.resources.resource import Resource

from ..exceptions import StoreError
from ..orders import reference_of

__all__ = ["RecordStore", "matches_params", "SEARCH_PARAMS"]

# Search parameter -> attribute holding references, per resource type.
# "*" applies to every type without a specific entry.
_REFERENCE_PARAMS: Mapping[str, Mapping[str, str]] = {
    "encounter": {"DocumentReference": "context", "*": "encounter"},
    "subject": {"*": "subject"},
    "based-on": {"*": "basedOn"},
}

SEARCH_PARAMS = tuple(sorted([*_REFERENCE_PARAMS, "identifier", "_id"]))


@runtime_checkable
class RecordStore(Protocol):
    """
    Interface for clinical record stores.

    Implementations persist FHIR resources and own their ids. Search results
    are unordered; callers must not rely on any ordering.
    """

    def search(self, resource_type: str, **params: str) -> List[Resource]:
        """
        Return resources of a type matching all given search parameters.

        Supported parameters: ``encounter``, ``subject``, ``based-on``
        (literal references), ``identifier`` (``system|value`` or a bare
        value) and ``_id``.
        """
        ...

    def read(self, resource_type: str, resource_id: str) -> Resource:
        """Return one resource; raise StoreError if it does not exist."""
        ...

    def create(self, resource: Resource) -> Resource:
        """Persist a new resource, assigning an id when it has none."""
        ...

    def update(self, resource: Resource) -> Resource:
        """Replace an existing resource with the same id."""
        ...

    def delete(self, resource_type: str, resource_id: str) -> None:
        """Delete a resource; deleting a missing id is a no-op."""
        ...


# ------------------------------------------------------------------------------
# search-parameter matching
# ------------------------------------------------------------------------------


def _references(resource: Any, attr: str) -> List[str]:
    val = getattr(resource, attr, None)
    if val is None:
        return []
    items: Iterable[Any] = val if isinstance(val, list) else [val]
    return [r for r in (reference_of(i) for i in items) if r]


def _identifier_matches(resource: Any, wanted: str) -> bool:
    system: Optional[str]
    if "|" in wanted:
        system, value = wanted.split("|", 1)
    else:
        system, value = None, wanted
    for ident in getattr(resource, "identifier", None) or []:
        if getattr(ident, "value", None) != value:
            continue
        if system is None or getattr(ident, "system", None) == system:
            return True
    return False


def matches_params(resource: Resource, resource_type: str, params: Mapping[str, Any]) -> bool:
    """
    Check a resource against search parameters.

    Parameters whose value is None are ignored.

    Raises
    ------
    StoreError
        If an unsupported search parameter is given.
    """
    for key, wanted in params.items():
        if wanted is None:
            continue
        wanted = str(wanted)
        if key == "_id":
            if getattr(resource, "id", None) != wanted:
                return False
        elif key == "identifier":
            if not _identifier_matches(resource, wanted):
                return False
        elif key in _REFERENCE_PARAMS:
            paths = _REFERENCE_PARAMS[key]
            attr = paths.get(resource_type, paths["*"])
            if wanted not in _references(resource, attr):
                return False
        else:
            raise StoreError(f"Unsupported search parameter: {key!r}")
    return True
