"""
Record store package.

Importing it loads every backend module so their @register(...) decorators
populate the registry.
"""

from __future__ import annotations

from .backends import load_all as _load_backends
from .base import RecordStore
from .registry import available_stores, open_store, register

# Idempotent; safe if tests/CLI import this multiple times.
_load_backends()

__all__ = ["RecordStore", "available_stores", "open_store", "register"]
