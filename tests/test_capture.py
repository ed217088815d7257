# tests/test_capture.py
"""
Tests for fhir_order_capture.capture (result capture engine).
"""

from datetime import datetime, timezone

import pytest

from fhir_order_capture.capture import (
    build_observation,
    capture_results,
    find_reusable,
    validate_values,
)
from fhir_order_capture.exceptions import StoreError, ValidationError
from fhir_order_capture.schema import ResultField, decode_field_schema

T1 = datetime(2025, 1, 1, 9, 0, tzinfo=timezone.utc)
T2 = datetime(2025, 1, 1, 10, 30, tzinfo=timezone.utc)

WBC = ResultField(name="wbc", label="White Blood Cells", type="number", unit="10^3/uL")
HGB = ResultField(name="hgb", label="Hemoglobin", type="number", unit="g/dL")
NOTE = ResultField(name="note", label="Comment", type="string")
POSITIVE = ResultField(name="pos", label="Positive", type="boolean")
RESULT = ResultField(
    name="result", label="Result", type="select", options=["Detected", "Not Detected"]
)

_VALUE_KEYS = ("valueQuantity", "valueString", "valueBoolean", "valueCodeableConcept")


def populated_values(obs):
    return [k for k in _VALUE_KEYS if getattr(obs, k, None) is not None]


def as_datetime(value):
    return value if isinstance(value, datetime) else datetime.fromisoformat(str(value))


def results_in(store):
    return store.search("Observation")


# ------------------------------------------------------------------------------
# create and resubmit
# ------------------------------------------------------------------------------


def test_capture_creates_linked_quantity_record(store, make_order):
    order = make_order("o1", code="cbc", text="Complete Blood Count")
    saved = capture_results(store, order, {"wbc": "7.2"}, [WBC], [], now=T1)

    assert len(saved) == 1
    obs = saved[0]
    assert obs.id
    assert float(obs.valueQuantity.value) == 7.2
    assert obs.valueQuantity.unit == "10^3/uL"
    assert obs.basedOn[0].reference == "ServiceRequest/o1"
    assert obs.code.text == "White Blood Cells"
    assert obs.subject.reference == "Patient/p1"
    assert obs.encounter.reference == "Encounter/e1"
    assert obs.status == "final"
    assert len(results_in(store)) == 1


def test_resubmission_updates_same_record(store, make_order):
    order = make_order("o1", code="cbc", text="Complete Blood Count")
    first = capture_results(store, order, {"wbc": "7.2"}, [WBC], [], now=T1)[0]

    existing = results_in(store)
    second = capture_results(store, order, {"wbc": "8.0"}, [WBC], existing, now=T2)[0]

    assert second.id == first.id
    assert float(second.valueQuantity.value) == 8.0
    assert len(results_in(store)) == 1
    assert store.read("Observation", first.id).meta.versionId == "2"


def test_capture_twice_is_idempotent_and_refreshes_time(store, make_order):
    order = make_order("o1")
    values = {"wbc": "7.2", "hgb": "13.5"}
    capture_results(store, order, values, [WBC, HGB], [], now=T1)
    capture_results(store, order, values, [WBC, HGB], results_in(store), now=T2)

    records = results_in(store)
    assert len(records) == 2
    assert all(as_datetime(r.effectiveDateTime) == T2 for r in records)


def test_resubmission_with_padded_catalog_label_reuses_record(store, make_order):
    (wbc,) = decode_field_schema(
        '[{"name": "wbc", "label": "White Blood Cells ", "type": "number"}]'
    )
    order = make_order("o1")
    capture_results(store, order, {"wbc": "7.2"}, [wbc], [], now=T1)
    capture_results(store, order, {"wbc": "8.0"}, [wbc], results_in(store), now=T2)

    records = results_in(store)
    assert len(records) == 1
    assert records[0].code.text == "White Blood Cells"
    assert float(records[0].valueQuantity.value) == 8.0


# ------------------------------------------------------------------------------
# typed values
# ------------------------------------------------------------------------------


def test_each_record_has_exactly_one_value_of_field_type(store, make_order):
    order = make_order("o1", code="covid-pcr", text="COVID-19 PCR")
    schema = [WBC, NOTE, POSITIVE, RESULT]
    values = {"wbc": "4", "note": "hemolysed", "pos": "no", "result": "not detected"}
    saved = capture_results(store, order, values, schema, [], now=T1)

    by_label = {obs.code.text: obs for obs in saved}
    assert populated_values(by_label["White Blood Cells"]) == ["valueQuantity"]
    assert populated_values(by_label["Comment"]) == ["valueString"]
    assert populated_values(by_label["Positive"]) == ["valueBoolean"]
    assert by_label["Positive"].valueBoolean is False
    assert populated_values(by_label["Result"]) == ["valueCodeableConcept"]
    assert by_label["Result"].valueCodeableConcept.text == "Not Detected"


def test_blank_values_are_skipped(store, make_order):
    saved = capture_results(
        store, make_order(), {"wbc": "", "hgb": "12", "note": None}, [WBC, HGB, NOTE], []
    )
    assert [o.code.text for o in saved] == ["Hemoglobin"]


def test_unknown_keys_are_ignored(store, make_order):
    saved = capture_results(store, make_order(), {"bogus": "1", "wbc": "5"}, [WBC], [])
    assert len(saved) == 1


# ------------------------------------------------------------------------------
# validation happens before any write
# ------------------------------------------------------------------------------


def test_invalid_value_writes_nothing(store, make_order):
    with pytest.raises(ValidationError) as exc:
        capture_results(store, make_order(), {"wbc": "7.2", "hgb": "high"}, [WBC, HGB], [])
    assert exc.value.field == "hgb"
    assert results_in(store) == []


def test_order_without_id_is_rejected(store, make_order):
    with pytest.raises(ValidationError, match=r"^order has no id"):
        capture_results(store, make_order(None), {"wbc": "1"}, [WBC], [])
    assert results_in(store) == []


def test_validate_values_returns_schema_order():
    typed = validate_values([WBC, HGB], {"hgb": "1", "wbc": "2"})
    assert [f.name for f, _ in typed] == ["wbc", "hgb"]


def test_store_errors_propagate(make_order):
    class FailingStore:
        def create(self, resource):
            raise StoreError("backend down")

    with pytest.raises(StoreError, match=r"^backend down$"):
        capture_results(FailingStore(), make_order(), {"wbc": "1"}, [WBC], [])


# ------------------------------------------------------------------------------
# find_reusable
# ------------------------------------------------------------------------------


def test_find_reusable_prefers_label_over_code(make_order, make_result):
    order = make_order("o1", code="cbc")
    by_code = make_result("r1", code="cbc")
    by_label = make_result("r2", text="White Blood Cells")
    assert find_reusable(order, WBC, [by_code, by_label]) is by_label


def test_find_reusable_falls_back_to_code(make_order, make_result):
    order = make_order("o1", code="cbc")
    legacy = make_result("r1", code="cbc")
    assert find_reusable(order, WBC, [legacy]) is legacy


def test_find_reusable_compares_like_fields(make_order, make_result):
    order = make_order("o1", code="cbc")
    label_as_code = make_result("r1", code="White Blood Cells")
    code_as_text = make_result("r2", text="cbc")
    assert find_reusable(order, WBC, [label_as_code, code_as_text]) is None


def test_find_reusable_requires_same_subject_and_encounter(make_order, make_result):
    order = make_order("o1")
    other_patient = make_result("r1", text="White Blood Cells", subject="Patient/p2")
    other_visit = make_result("r2", text="White Blood Cells", encounter="Encounter/e2")
    assert find_reusable(order, WBC, [other_patient, other_visit]) is None


def test_find_reusable_skips_records_of_other_orders(make_order, make_result):
    order = make_order("o1")
    foreign = make_result("r1", text="White Blood Cells", based_on="ServiceRequest/o2")
    assert find_reusable(order, WBC, [foreign]) is None


def test_find_reusable_prefers_explicitly_linked_label_match(make_order, make_result):
    order = make_order("o1")
    unlinked = make_result("r1", text="White Blood Cells")
    linked = make_result("r2", text="White Blood Cells", based_on="ServiceRequest/o1")
    assert find_reusable(order, WBC, [unlinked, linked]) is linked


def test_code_matched_record_is_reused_once_per_capture(store, make_order, make_result):
    order = make_order("o1", code="cbc")
    store.create(make_result("legacy", code="cbc"))
    saved = capture_results(
        store, order, {"wbc": "7", "hgb": "13"}, [WBC, HGB], results_in(store), now=T1
    )

    assert [o.id for o in saved].count("legacy") == 1
    assert len(results_in(store)) == 2
    reused = store.read("Observation", "legacy")
    assert reused.basedOn[0].reference == "ServiceRequest/o1"


def test_build_observation_keeps_record_id(make_order):
    value = validate_values([NOTE], {"note": "x"})[0][1]
    obs = build_observation(make_order("o1"), NOTE, value, T1, "r9")
    assert obs.id == "r9"
    assert obs.valueString == "x"
    assert as_datetime(obs.effectiveDateTime) == T1
