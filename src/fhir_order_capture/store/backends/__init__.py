"""
Auto-discovery for record store backends.

Any module under this package that defines a store and uses
@register("...") will be imported automatically by load_all().
"""

from __future__ import annotations

import importlib
import pkgutil
from typing import Iterable, Set

_DISCOVERED: Set[str] = set()


def _iter_modules(pkg_name: str) -> Iterable[str]:
    """Yield fully-qualified module names directly under pkg_name."""
    pkg = importlib.import_module(pkg_name)
    pkg_path = getattr(pkg, "__path__", None)
    if not pkg_path:
        return
    for _, name, _ in pkgutil.iter_modules(pkg_path, prefix=pkg_name + "."):
        yield name


def load_all() -> None:
    """
    Import all backend modules under fhir_order_capture.store.backends.

    Idempotent: safe to call multiple times.
    """
    for modname in _iter_modules(__name__):
        if modname in _DISCOVERED:
            continue
        if modname.rsplit(".", 1)[-1].startswith("_"):
            continue
        importlib.import_module(modname)
        _DISCOVERED.add(modname)


__all__ = ["load_all"]
