# src/fhir_order_capture/service.py
"""
Store-backed facade over the resolvers and capture engine.

Each method runs its store reads, then hands plain resource lists to the
pure functions in schema, linkage, capture and attachments. Nothing is
cached between calls.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, List, Mapping, Optional

from fhir.resources.activitydefinition import ActivityDefinition
from fhir.resources.documentreference import DocumentReference
from fhir.resources.observation import Observation
from fhir.resources.servicerequest import ServiceRequest

from .attachments import (
    DOCUMENT_RESOURCE_TYPE,
    AttachmentUpload,
    add_attachment,
    remove_attachment,
)
from .capture import capture_results
from .catalog import DEFINITION_RESOURCE_TYPE
from .config import AppConfig
from .linkage import resolve_attachments, resolve_results
from .orders import ORDER_RESOURCE_TYPE, order_encounter, order_reference
from .schema import ResultField, resolve_schema
from .store.base import RecordStore

__all__ = ["OrderCaptureService"]

LOG = logging.getLogger(__name__)

RESULT_RESOURCE_TYPE = "Observation"


class OrderCaptureService:
    """
    Order-centric operations against one record store.

    Parameters
    ----------
    store : RecordStore
        Backend all reads and writes go to.
    config : AppConfig, optional
        Catalog systems and extension url; defaults to AppConfig().
    """

    def __init__(self, store: RecordStore, config: Optional[AppConfig] = None) -> None:
        self.store = store
        self.config = config or AppConfig()

    # --------------------------------------------------------------------------
    # reads
    # --------------------------------------------------------------------------

    def get_order(self, order_id: str) -> ServiceRequest:
        """Read one order; StoreError if it does not exist."""
        return self.store.read(ORDER_RESOURCE_TYPE, order_id)

    def orders_for_encounter(self, encounter_ref: str) -> List[ServiceRequest]:
        return self.store.search(ORDER_RESOURCE_TYPE, encounter=encounter_ref)

    def definitions(self) -> List[ActivityDefinition]:
        return self.store.search(DEFINITION_RESOURCE_TYPE)

    def schema_for(self, order: ServiceRequest) -> List[ResultField]:
        """Resolve the capturable fields of an order against the stored catalog."""
        return resolve_schema(
            order,
            self.definitions(),
            systems=self.config.catalog_systems,
            extension_url=self.config.result_fields_extension,
        )

    def _encounter_results(self, order: ServiceRequest) -> List[Observation]:
        encounter = order_encounter(order)
        if encounter is None:
            return []
        return self.store.search(RESULT_RESOURCE_TYPE, encounter=encounter)

    def results_for(self, order: ServiceRequest) -> List[Observation]:
        """Results linked to an order; empty when it has no encounter."""
        return resolve_results(order, self._encounter_results(order))

    def attachments_for(self, order: ServiceRequest) -> List[DocumentReference]:
        """Attachments linked to an order; empty when it has no encounter."""
        encounter = order_encounter(order)
        if encounter is None:
            return []
        docs = self.store.search(DOCUMENT_RESOURCE_TYPE, encounter=encounter)
        return resolve_attachments(order, docs)

    # --------------------------------------------------------------------------
    # writes
    # --------------------------------------------------------------------------

    def capture(
        self,
        order: ServiceRequest,
        field_values: Mapping[str, Any],
        now: Optional[datetime] = None,
    ) -> List[Observation]:
        """
        Capture entered values for an order.

        The schema is resolved fresh for every call. Records to reuse are
        looked up among the encounter's results; for an order without an
        encounter, among the results explicitly based on it.
        """
        schema = self.schema_for(order)
        if order_encounter(order) is not None:
            existing = self._encounter_results(order)
        else:
            ref = order_reference(order)
            existing = (
                self.store.search(RESULT_RESOURCE_TYPE, **{"based-on": ref})
                if ref
                else []
            )
        return capture_results(
            self.store, order, field_values, schema, existing, now=now
        )

    def attach(
        self,
        order: ServiceRequest,
        upload: Optional[AttachmentUpload],
        note: Optional[str] = None,
    ) -> DocumentReference:
        return add_attachment(self.store, order, upload, note)

    def detach(self, attachment_id: str) -> None:
        remove_attachment(self.store, attachment_id)
