# tests/test_store_registry.py
"""
Tests for fhir_order_capture.store.registry.
"""

import pytest

from fhir_order_capture.exceptions import StoreError
from fhir_order_capture.store import RecordStore, available_stores, open_store
from fhir_order_capture.store import registry
from fhir_order_capture.store.backends import load_all
from fhir_order_capture.store.backends.directory import DirectoryRecordStore
from fhir_order_capture.store.backends.memory import InMemoryRecordStore

# ------------------------------------------------------------------------------
# helpers
# ------------------------------------------------------------------------------


class _GoodStore:
    def search(self, resource_type, **params):
        return []

    def read(self, resource_type, resource_id):
        raise StoreError("nope")

    def create(self, resource):
        return resource

    def update(self, resource):
        return resource

    def delete(self, resource_type, resource_id):
        return None


class _BadStoreMissingDelete:
    def search(self, resource_type, **params):
        return []

    def read(self, resource_type, resource_id):
        return None

    def create(self, resource):
        return resource

    def update(self, resource):
        return resource


@pytest.fixture
def isolated_registry():
    """
    Run a test against an empty registry, restoring the real one afterwards.
    """
    snap = dict(registry._REGISTRY)
    try:
        registry._REGISTRY.clear()
        yield registry
    finally:
        registry._REGISTRY.clear()
        registry._REGISTRY.update(snap)


# ------------------------------------------------------------------------------
# shipped backends
# ------------------------------------------------------------------------------


def test_shipped_backends_are_registered():
    assert available_stores() == ["directory", "memory"]


def test_load_all_is_idempotent():
    load_all()
    load_all()
    assert available_stores() == ["directory", "memory"]


def test_open_store_memory():
    store = open_store("memory")
    assert isinstance(store, InMemoryRecordStore)
    assert isinstance(store, RecordStore)


def test_open_store_directory_passes_options(tmp_path):
    store = open_store("directory", root=tmp_path, pretty=True)
    assert isinstance(store, DirectoryRecordStore)
    assert store.root == tmp_path
    assert store.pretty is True


def test_open_store_unknown_name():
    with pytest.raises(StoreError, match=r"^Unknown store backend 'fhir-server'"):
        open_store("fhir-server")


# ------------------------------------------------------------------------------
# register()
# ------------------------------------------------------------------------------


def test_register_adds_backend(isolated_registry):
    cls = isolated_registry.register("good")(_GoodStore)
    assert cls is _GoodStore
    assert isolated_registry.available_stores() == ["good"]
    assert isinstance(isolated_registry.open_store("good"), _GoodStore)


def test_register_rejects_duplicate_name(isolated_registry):
    isolated_registry.register("good")(_GoodStore)
    with pytest.raises(ValueError, match=r"^Store backend already registered for name"):
        isolated_registry.register("good")(_GoodStore)


def test_register_rejects_non_class(isolated_registry):
    with pytest.raises(TypeError, match=r"^Only classes can be registered as store backends"):
        isolated_registry.register("duck")("duck")


def test_register_rejects_class_missing_methods(isolated_registry):
    with pytest.raises(
        TypeError,
        match=r"^Class _BadStoreMissingDelete does not implement RecordStore protocol \(missing: delete\)",
    ):
        isolated_registry.register("bad")(_BadStoreMissingDelete)


def test_open_store_with_empty_registry(isolated_registry):
    with pytest.raises(StoreError, match=r"\(available: none\)$"):
        isolated_registry.open_store("memory")
