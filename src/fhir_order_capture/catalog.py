# src/fhir_order_capture/catalog.py
"""
Test catalog management.

Lab and imaging tests are stored as ActivityDefinition resources identified
by a catalog system, with their expected result fields embedded as a JSON
string extension. This module builds those resources, saves them without
creating duplicates, and ships a default catalog as package data.
"""

from __future__ import annotations

import json
import logging
from importlib import resources
from pathlib import Path
from typing import Any, List, Optional, Sequence

import yaml
from fhir.resources.activitydefinition import ActivityDefinition
from fhir.resources.codeableconcept import CodeableConcept
from fhir.resources.coding import Coding
from fhir.resources.extension import Extension
from fhir.resources.identifier import Identifier
from pydantic import BaseModel, ConfigDict, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from .config import IMAGING_TEST_SYSTEM, LAB_TEST_SYSTEM, RESULT_FIELDS_EXTENSION
from .exceptions import ParseError
from .schema import ResultField, encode_field_schema
from .store.base import RecordStore

LOG = logging.getLogger(__name__)

DEFINITION_RESOURCE_TYPE = "ActivityDefinition"
LOINC_SYSTEM = "http://loinc.org"
DEFAULT_CATALOG_RESOURCE = "default_catalog.yaml"

_SYSTEM_BY_KIND = {"lab": LAB_TEST_SYSTEM, "imaging": IMAGING_TEST_SYSTEM}


class TestDefinition(BaseModel):
    """
    A catalog entry as maintained by administrators.

    ``kind`` selects the identifier system ("lab" or "imaging"). Lab tests
    usually carry ``result_fields``; imaging tests usually do not and get the
    single free-text field at capture time.
    """

    # Not a pytest test class despite the name.
    __test__ = False

    model_config = ConfigDict(frozen=True)

    code: str
    display: str
    kind: str = "lab"
    loinc_code: Optional[str] = None
    category: Optional[str] = None
    specimen_type: Optional[str] = None
    body_part: Optional[str] = None
    modality: Optional[str] = None
    description: Optional[str] = None
    aoe_questions: List[str] = []
    result_fields: List[ResultField] = []

    @property
    def system(self) -> str:
        return _SYSTEM_BY_KIND.get(self.kind, LAB_TEST_SYSTEM)


_CATALOG_ADAPTER = TypeAdapter(List[TestDefinition])


# ------------------------------------------------------------------------------
# loading
# ------------------------------------------------------------------------------


def parse_catalog(data: Any, source: str = "<catalog>") -> List[TestDefinition]:
    """
    Validate a parsed YAML catalog (a list of test mappings).

    Raises
    ------
    ParseError
        If the data is not a list of valid test definitions.
    """
    if isinstance(data, dict):
        data = data.get("tests")
    if not isinstance(data, list):
        raise ParseError(f"{source}: catalog must be a list of tests")
    try:
        return _CATALOG_ADAPTER.validate_python(data)
    except PydanticValidationError as e:
        raise ParseError(f"{source}: invalid catalog: {e}") from e


def load_catalog(path: Optional[Path] = None) -> List[TestDefinition]:
    """
    Load a YAML test catalog; the packaged default when path is None.

    Raises
    ------
    ParseError
        If the file cannot be read, is not YAML, or is not a valid catalog.
    """
    try:
        if path is None:
            text = (
                resources.files("fhir_order_capture")
                .joinpath("data")
                .joinpath(DEFAULT_CATALOG_RESOURCE)
                .read_text(encoding="utf-8")
            )
            source = DEFAULT_CATALOG_RESOURCE
        else:
            text = path.read_text(encoding="utf-8")
            source = str(path)
        data = yaml.safe_load(text)
    except OSError as e:
        raise ParseError(f"failed to read catalog: {e}") from e
    except yaml.YAMLError as e:
        raise ParseError(f"invalid catalog YAML: {e}") from e
    return parse_catalog(data, source)


# ------------------------------------------------------------------------------
# ActivityDefinition building
# ------------------------------------------------------------------------------


def _string_extension(url: str, value: Optional[str]) -> Optional[Extension]:
    return Extension(url=url, valueString=value) if value else None


def build_activity_definition(
    test: TestDefinition, result_fields_extension: str = RESULT_FIELDS_EXTENSION
) -> ActivityDefinition:
    """Build the ActivityDefinition stored for a catalog entry."""
    extensions = [
        _string_extension("category", test.category),
        _string_extension("specimenType", test.specimen_type),
        _string_extension("bodyPart", test.body_part),
        _string_extension("modality", test.modality),
        _string_extension(
            "aoeQuestions",
            json.dumps(test.aoe_questions) if test.aoe_questions else None,
        ),
        _string_extension(
            result_fields_extension,
            encode_field_schema(test.result_fields) if test.result_fields else None,
        ),
    ]
    coding = (
        [Coding(system=LOINC_SYSTEM, code=test.loinc_code, display=test.display)]
        if test.loinc_code
        else None
    )
    return ActivityDefinition(
        status="active",
        kind="ServiceRequest",
        title=test.display,
        description=test.description,
        code=CodeableConcept(coding=coding, text=test.display),
        identifier=[Identifier(system=test.system, value=test.code)],
        extension=[e for e in extensions if e is not None] or None,
    )


# ------------------------------------------------------------------------------
# store operations
# ------------------------------------------------------------------------------


def find_definitions(
    store: RecordStore, code: str, system: Optional[str] = None
) -> List[ActivityDefinition]:
    wanted = f"{system}|{code}" if system else code
    return store.search(DEFINITION_RESOURCE_TYPE, identifier=wanted)


def save_definition(
    store: RecordStore,
    test: TestDefinition,
    result_fields_extension: str = RESULT_FIELDS_EXTENSION,
) -> ActivityDefinition:
    """
    Save a catalog entry, updating the existing definition with its code.

    Keeps at most one definition per catalog code: an existing one is
    updated in place (same id) rather than duplicated.
    """
    definition = build_activity_definition(test, result_fields_extension)
    existing = find_definitions(store, test.code, test.system)
    if existing:
        definition.id = existing[0].id
        saved = store.update(definition)
        LOG.debug("Updated catalog definition %s (%s)", test.code, saved.id)
    else:
        saved = store.create(definition)
        LOG.debug("Created catalog definition %s (%s)", test.code, saved.id)
    return saved


def seed_catalog(
    store: RecordStore,
    tests: Sequence[TestDefinition],
    result_fields_extension: str = RESULT_FIELDS_EXTENSION,
) -> List[ActivityDefinition]:
    """Save every test of a catalog; returns the saved definitions."""
    saved = [save_definition(store, t, result_fields_extension) for t in tests]
    LOG.info("Saved %d catalog definition(s)", len(saved))
    return saved


def delete_definition(
    store: RecordStore, code: str, system: str = LAB_TEST_SYSTEM
) -> bool:
    """
    Delete the definition with a catalog code.

    Returns
    -------
    bool
        True if a definition was found and deleted.
    """
    existing = find_definitions(store, code, system)
    if not existing:
        return False
    store.delete(DEFINITION_RESOURCE_TYPE, existing[0].id)
    return True


def list_definitions(
    store: RecordStore,
    systems: Sequence[str] = (LAB_TEST_SYSTEM, IMAGING_TEST_SYSTEM),
) -> List[ActivityDefinition]:
    """Return every ActivityDefinition carrying an identifier in ``systems``."""
    return [
        d
        for d in store.search(DEFINITION_RESOURCE_TYPE)
        if any(
            getattr(i, "system", None) in systems
            for i in (getattr(d, "identifier", None) or [])
        )
    ]
