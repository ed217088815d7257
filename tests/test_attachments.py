# tests/test_attachments.py
"""
Tests for fhir_order_capture.attachments (attachment lifecycle).
"""

from datetime import datetime, timezone

import pytest

from fhir_order_capture.attachments import (
    DEFAULT_CONTENT_TYPE,
    AttachmentUpload,
    add_attachment,
    attachment_payload,
    build_document_reference,
    remove_attachment,
)
from fhir_order_capture.exceptions import ValidationError
from fhir_order_capture.linkage import resolve_attachments
from fhir_order_capture.orders import IMAGING_CATEGORY_CODE

NOW = datetime(2025, 3, 4, 12, 0, tzinfo=timezone.utc)
PNG = AttachmentUpload(filename="chest.png", content_type="image/png", data=b"\x89PNG\r\n")


def documents_in(store):
    return store.search("DocumentReference")


# ------------------------------------------------------------------------------
# AttachmentUpload
# ------------------------------------------------------------------------------


def test_upload_from_path_guesses_content_type(tmp_path):
    p = tmp_path / "report.pdf"
    p.write_bytes(b"%PDF-1.4")
    upload = AttachmentUpload.from_path(p)
    assert upload.filename == "report.pdf"
    assert upload.content_type == "application/pdf"
    assert upload.data == b"%PDF-1.4"


def test_upload_from_path_explicit_and_default_type(tmp_path):
    p = tmp_path / "scan.unknownext"
    p.write_bytes(b"data")
    assert AttachmentUpload.from_path(p).content_type == DEFAULT_CONTENT_TYPE
    assert AttachmentUpload.from_path(p, "image/dicom").content_type == "image/dicom"


def test_upload_from_missing_path(tmp_path):
    with pytest.raises(ValidationError, match=r"^File not found"):
        AttachmentUpload.from_path(tmp_path / "nope.png")


def test_upload_encoded_is_base64():
    assert AttachmentUpload("a.txt", "text/plain", b"hi").encoded() == "aGk="


# ------------------------------------------------------------------------------
# add_attachment
# ------------------------------------------------------------------------------


def test_add_attachment_links_to_order(store, make_order):
    order = make_order("o1", category=IMAGING_CATEGORY_CODE)
    doc = add_attachment(store, order, PNG, "frontal view", now=NOW)

    assert doc.id
    assert doc.status == "current"
    assert doc.basedOn[0].reference == "ServiceRequest/o1"
    assert doc.subject.reference == "Patient/p1"
    assert doc.context[0].reference == "Encounter/e1"
    assert doc.description == "frontal view"
    assert doc.type.text == "Imaging"
    att = doc.content[0].attachment
    assert att.contentType == "image/png"
    assert att.title == "chest.png"
    assert attachment_payload(doc) == PNG.data
    assert len(documents_in(store)) == 1


def test_each_upload_creates_a_new_record(store, make_order):
    order = make_order("o1")
    first = add_attachment(store, order, PNG, now=NOW)
    second = add_attachment(store, order, PNG, now=NOW)
    assert first.id != second.id
    assert len(documents_in(store)) == 2


def test_blank_note_is_omitted(make_order):
    doc = build_document_reference(make_order("o1"), PNG, "   ", NOW)
    assert doc.description is None
    assert doc.type.text == "Lab"


@pytest.mark.parametrize(
    "upload, message",
    [
        (None, r"^Please select a file$"),
        (AttachmentUpload("empty.png", "image/png", b""), r"^File is empty"),
    ],
)
def test_add_attachment_rejects_missing_or_empty_upload(store, make_order, upload, message):
    with pytest.raises(ValidationError, match=message):
        add_attachment(store, make_order("o1"), upload)
    assert documents_in(store) == []


def test_add_attachment_rejects_order_without_id(store, make_order):
    with pytest.raises(ValidationError, match=r"^order has no id"):
        add_attachment(store, make_order(None), PNG)
    assert documents_in(store) == []


def test_attachment_never_links_to_another_order(store, make_order):
    o1 = make_order("o1", code="cxr")
    o2 = make_order("o2", code="cxr")
    add_attachment(store, o1, PNG, now=NOW)
    docs = store.search("DocumentReference", encounter="Encounter/e1")
    assert len(resolve_attachments(o1, docs)) == 1
    assert resolve_attachments(o2, docs) == []


# ------------------------------------------------------------------------------
# attachment_payload
# ------------------------------------------------------------------------------


def test_attachment_payload_returns_decoded_bytes(make_document):
    assert attachment_payload(make_document("d1")) == b"hi"


def test_attachment_payload_empty_without_content(make_document):
    doc = make_document("d1")
    doc.content[0].attachment.data = None
    assert attachment_payload(doc) == b""


# ------------------------------------------------------------------------------
# remove_attachment
# ------------------------------------------------------------------------------


def test_remove_attachment_deletes_record(store, make_order):
    doc = add_attachment(store, make_order("o1"), PNG, now=NOW)
    remove_attachment(store, doc.id)
    assert documents_in(store) == []


def test_remove_attachment_missing_id_is_noop(store):
    remove_attachment(store, "does-not-exist")


@pytest.mark.parametrize("attachment_id", ["", "  ", None])
def test_remove_attachment_requires_id(store, attachment_id):
    with pytest.raises(ValidationError, match=r"^attachment id is required$"):
        remove_attachment(store, attachment_id)
