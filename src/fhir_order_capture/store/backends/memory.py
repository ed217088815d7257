# src/fhir_order_capture/store/backends/memory.py
"""
In-memory record store.

Keeps deep copies of every resource so callers can never mutate stored
state through a returned object. Used by tests and by embedding applications
that sync to a real server themselves.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Dict, List, Tuple

from fhir.resources.meta import Meta
from fhir.resources.resource import Resource

from ...exceptions import StoreError
from ...fhir_parser import resource_type_of
from ..base import matches_params
from ..registry import register

LOG = logging.getLogger(__name__)


def stamp(resource: Resource, version: int) -> None:
    """Set meta.versionId and meta.lastUpdated the way a FHIR server would."""
    resource.meta = Meta(
        versionId=str(version), lastUpdated=datetime.now(timezone.utc)
    )


def version_of(resource: Resource) -> int:
    meta = getattr(resource, "meta", None)
    try:
        return int(getattr(meta, "versionId", None) or 0)
    except ValueError:
        return 0


@register("memory")
class InMemoryRecordStore:
    """Dictionary-backed RecordStore keyed by (resourceType, id)."""

    def __init__(self) -> None:
        self._records: Dict[Tuple[str, str], Resource] = {}

    def __len__(self) -> int:
        return len(self._records)

    def search(self, resource_type: str, **params: str) -> List[Resource]:
        return [
            res.model_copy(deep=True)
            for (rtype, _), res in self._records.items()
            if rtype == resource_type and matches_params(res, rtype, params)
        ]

    def read(self, resource_type: str, resource_id: str) -> Resource:
        res = self._records.get((resource_type, resource_id))
        if res is None:
            raise StoreError(f"{resource_type}/{resource_id} not found")
        return res.model_copy(deep=True)

    def create(self, resource: Resource) -> Resource:
        rtype = resource_type_of(resource)
        rid = getattr(resource, "id", None) or str(uuid.uuid4())
        if (rtype, rid) in self._records:
            raise StoreError(f"{rtype}/{rid} already exists")

        stored = resource.model_copy(deep=True)
        stored.id = rid
        stamp(stored, 1)
        self._records[(rtype, rid)] = stored
        LOG.debug("Created %s/%s", rtype, rid)
        return stored.model_copy(deep=True)

    def update(self, resource: Resource) -> Resource:
        rtype = resource_type_of(resource)
        rid = getattr(resource, "id", None)
        if not rid:
            raise StoreError(f"cannot update {rtype} without an id")
        current = self._records.get((rtype, rid))
        if current is None:
            raise StoreError(f"{rtype}/{rid} not found")

        stored = resource.model_copy(deep=True)
        stamp(stored, version_of(current) + 1)
        self._records[(rtype, rid)] = stored
        LOG.debug("Updated %s/%s", rtype, rid)
        return stored.model_copy(deep=True)

    def delete(self, resource_type: str, resource_id: str) -> None:
        if self._records.pop((resource_type, resource_id), None) is not None:
            LOG.debug("Deleted %s/%s", resource_type, resource_id)
