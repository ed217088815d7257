# tests/conftest.py
"""
Shared builders for FHIR test resources.

Factories are exposed as fixtures so every test module can build orders,
catalog definitions and results with only the fields it cares about.
"""

import json
import logging

import pytest

from fhir.resources.activitydefinition import ActivityDefinition
from fhir.resources.documentreference import DocumentReference
from fhir.resources.observation import Observation
from fhir.resources.servicerequest import ServiceRequest

from fhir_order_capture.config import LAB_TEST_SYSTEM, RESULT_FIELDS_EXTENSION
from fhir_order_capture.orders import LAB_CATEGORY_CODE
from fhir_order_capture.store.backends.memory import InMemoryRecordStore

SNOMED = "http://snomed.info/sct"

CBC_FIELDS = [
    {"name": "wbc", "label": "White Blood Cells", "type": "number", "unit": "10^3/uL"},
]


def _prune(d):
    return {k: v for k, v in d.items() if v is not None}


def _ref(value):
    return {"reference": value} if value else None


# ------------------------------------------------------------------------------
# builders
# ------------------------------------------------------------------------------


def build_order(
    order_id="o1",
    *,
    code="cbc",
    display=None,
    text="Complete Blood Count",
    system=LAB_TEST_SYSTEM,
    subject="Patient/p1",
    encounter="Encounter/e1",
    category=LAB_CATEGORY_CODE,
):
    coding = _prune({"system": system, "code": code, "display": display})
    concept = _prune(
        {"coding": [coding] if code or display else None, "text": text}
    )
    data = _prune(
        {
            "id": order_id,
            "status": "active",
            "intent": "order",
            "subject": _ref(subject),
            "encounter": _ref(encounter),
            "code": {"concept": concept} if concept else None,
            "category": (
                [{"coding": [{"system": SNOMED, "code": category}]}]
                if category
                else None
            ),
        }
    )
    return ServiceRequest(**data)


def build_definition(
    code="cbc",
    *,
    title=None,
    fields=None,
    status="active",
    system=LAB_TEST_SYSTEM,
    definition_id=None,
    extension_url=RESULT_FIELDS_EXTENSION,
):
    extension = None
    if fields is not None:
        value = fields if isinstance(fields, str) else json.dumps(fields)
        extension = [{"url": extension_url, "valueString": value}]
    data = _prune(
        {
            "id": definition_id,
            "status": status,
            "title": title,
            "identifier": [{"system": system, "value": code}] if code else None,
            "extension": extension,
        }
    )
    return ActivityDefinition(**data)


def build_result(
    result_id=None,
    *,
    code=None,
    text=None,
    display=None,
    based_on=None,
    subject="Patient/p1",
    encounter="Encounter/e1",
    value="legacy",
):
    coding = _prune({"code": code, "display": display})
    concept = _prune({"coding": [coding] if coding else None, "text": text})
    data = _prune(
        {
            "id": result_id,
            "status": "final",
            "code": concept,
            "subject": _ref(subject),
            "encounter": _ref(encounter),
            "basedOn": [{"reference": based_on}] if based_on else None,
            "valueString": value,
        }
    )
    return Observation(**data)


def build_document(
    doc_id=None,
    *,
    based_on="ServiceRequest/o1",
    subject="Patient/p1",
    encounter="Encounter/e1",
):
    data = _prune(
        {
            "id": doc_id,
            "status": "current",
            "subject": _ref(subject),
            "context": [{"reference": encounter}] if encounter else None,
            "basedOn": [{"reference": based_on}] if based_on else None,
            "content": [
                {"attachment": {"contentType": "text/plain", "data": "aGk="}}
            ],
        }
    )
    return DocumentReference(**data)


# ------------------------------------------------------------------------------
# fixtures
# ------------------------------------------------------------------------------


@pytest.fixture
def make_order():
    return build_order


@pytest.fixture
def make_definition():
    return build_definition


@pytest.fixture
def make_result():
    return build_result


@pytest.fixture
def make_document():
    return build_document


@pytest.fixture
def store():
    return InMemoryRecordStore()


@pytest.fixture
def cbc_fields():
    return [dict(f) for f in CBC_FIELDS]


@pytest.fixture(autouse=True)
def _restore_root_logging():
    """configure_logging() mutates the root logger; undo it after each test."""
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    try:
        yield
    finally:
        root.handlers = handlers
        root.setLevel(level)
