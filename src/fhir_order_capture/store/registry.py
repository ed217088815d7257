# src/fhir_order_capture/store/registry.py
"""
Registry for record store backends.

Provides:
- a @register(name) decorator to bind backend names to store classes,
- open_store(name, **options) to instantiate a backend,
- listing of available backend names.
"""

from __future__ import annotations

from typing import Any, Dict, List, Type

from ..exceptions import StoreError
from .base import RecordStore

# Map backend name (e.g., "memory") to a store class.
_REGISTRY: Dict[str, Type[RecordStore]] = {}

_REQUIRED_METHODS = ("search", "read", "create", "update", "delete")


def register(name: str):
    """
    Decorator to register a RecordStore class under a backend name.

    Parameters
    ----------
    name : str
        Backend name used in configuration, e.g. "directory".

    Raises
    ------
    ValueError
        If the name is already registered.
    TypeError
        If the decorated object is not a class implementing the protocol.

    Returns
    -------
    callable
        A class decorator that registers the store.
    """

    def _wrap(cls: Type[RecordStore]) -> Type[RecordStore]:
        if name in _REGISTRY:
            raise ValueError(f"Store backend already registered for name {name!r}")
        if not isinstance(cls, type):
            raise TypeError(
                f"Only classes can be registered as store backends, got {type(cls)}"
            )
        missing = [m for m in _REQUIRED_METHODS if not callable(getattr(cls, m, None))]
        if missing:
            raise TypeError(
                f"Class {cls.__name__} does not implement RecordStore protocol "
                f"(missing: {', '.join(missing)})"
            )

        _REGISTRY[name] = cls
        return cls

    return _wrap


def available_stores() -> List[str]:
    """
    List all registered backend names.

    Returns
    -------
    List[str]
        Sorted backend names (e.g., ["directory", "memory"]).
    """
    return sorted(_REGISTRY.keys())


def open_store(name: str, **options: Any) -> RecordStore:
    """
    Instantiate a registered backend.

    Parameters
    ----------
    name : str
        Registered backend name.
    **options
        Keyword arguments passed to the backend constructor.

    Returns
    -------
    RecordStore
        A new store instance.

    Raises
    ------
    StoreError
        If no backend is registered under the name.
    """
    cls = _REGISTRY.get(name)
    if cls is None:
        known = ", ".join(available_stores()) or "none"
        raise StoreError(f"Unknown store backend {name!r} (available: {known})")
    return cls(**options)
