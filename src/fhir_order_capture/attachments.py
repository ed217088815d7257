# src/fhir_order_capture/attachments.py
"""
Attachment lifecycle.

Binary documents (typically images for imaging orders) are stored as
DocumentReference resources linked to their order through ``basedOn``. Each
upload creates a new record; there is no update path and a record is never
re-linked to another order.
"""

from __future__ import annotations

import base64
import binascii
import logging
import mimetypes
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Union

from fhir.resources.attachment import Attachment
from fhir.resources.codeableconcept import CodeableConcept
from fhir.resources.documentreference import DocumentReference, DocumentReferenceContent
from fhir.resources.reference import Reference
from fhir.resources.servicerequest import ServiceRequest

from .exceptions import ValidationError
from .orders import order_category, order_encounter, order_reference, order_subject
from .store.base import RecordStore

__all__ = [
    "AttachmentUpload",
    "add_attachment",
    "attachment_payload",
    "build_document_reference",
    "remove_attachment",
]

# ------------------------------------------------------------------------------
# globals
# ------------------------------------------------------------------------------

LOG = logging.getLogger(__name__)

DEFAULT_CONTENT_TYPE = "application/octet-stream"
DOCUMENT_RESOURCE_TYPE = "DocumentReference"


# ------------------------------------------------------------------------------
# class AttachmentUpload
# ------------------------------------------------------------------------------


@dataclass(frozen=True)
class AttachmentUpload:
    """
    A file submitted for attachment to an order.

    Attributes
    ----------
    filename : str
        Original file name; becomes the attachment title.
    content_type : str
        MIME type of the payload.
    data : bytes
        Raw file contents.
    """

    filename: str
    content_type: str
    data: bytes

    @classmethod
    def from_path(
        cls, path: Union[Path, str], content_type: Optional[str] = None
    ) -> "AttachmentUpload":
        """
        Read an upload from disk.

        Raises
        ------
        ValidationError
            If the file does not exist or cannot be read.
        """
        p = Path(path)
        if not p.is_file():
            raise ValidationError(f"File not found: {p}")
        try:
            data = p.read_bytes()
        except OSError as e:
            raise ValidationError(f"Failed to read {p}: {e}") from e
        guessed, _ = mimetypes.guess_type(p.name)
        return cls(
            filename=p.name,
            content_type=content_type or guessed or DEFAULT_CONTENT_TYPE,
            data=data,
        )

    def encoded(self) -> str:
        """Return the payload as base64 text."""
        return base64.b64encode(self.data).decode("ascii")


# ------------------------------------------------------------------------------
# helpers
# ------------------------------------------------------------------------------


def _document_type(order: ServiceRequest) -> str:
    return "Imaging" if order_category(order) == "imaging" else "Lab"


def build_document_reference(
    order: ServiceRequest,
    upload: AttachmentUpload,
    note: Optional[str],
    created: datetime,
) -> DocumentReference:
    """
    Build the DocumentReference for an upload, field by field.

    The payload is encoded here, before any store call is made.
    """
    ref = order_reference(order)
    subject = order_subject(order)
    encounter = order_encounter(order)
    description = note.strip() if note and note.strip() else None

    attachment = Attachment(
        contentType=upload.content_type,
        data=upload.encoded(),
        title=upload.filename,
        creation=created,
    )
    return DocumentReference(
        status="current",
        type=CodeableConcept(text=_document_type(order)),
        subject=Reference(reference=subject) if subject else None,
        context=[Reference(reference=encounter)] if encounter else None,
        basedOn=[Reference(reference=ref)],
        date=created,
        description=description,
        content=[DocumentReferenceContent(attachment=attachment)],
    )


def attachment_payload(document: DocumentReference) -> bytes:
    """
    Decode the binary payload of a stored attachment.

    Returns b"" when the document has no inline data.
    """
    contents = getattr(document, "content", None) or []
    if not contents:
        return b""
    data = getattr(getattr(contents[0], "attachment", None), "data", None)
    if not data:
        return b""
    if isinstance(data, (bytes, bytearray)):
        # fhir.resources decodes base64Binary on validation.
        return bytes(data)
    try:
        return base64.b64decode(str(data).encode("ascii"), validate=True)
    except binascii.Error:
        LOG.warning("Attachment %s has malformed base64 data", document.id)
        return b""


# ------------------------------------------------------------------------------
# public API
# ------------------------------------------------------------------------------


def add_attachment(
    store: RecordStore,
    order: ServiceRequest,
    upload: Optional[AttachmentUpload],
    note: Optional[str] = None,
    *,
    now: Optional[datetime] = None,
) -> DocumentReference:
    """
    Attach a file to an order.

    Parameters
    ----------
    store : RecordStore
        Where the record is written.
    order : ServiceRequest
        Owning order; must have an id.
    upload : AttachmentUpload
        The file. Required and non-empty.
    note : str, optional
        Free-text description stored with the attachment.
    now : datetime, optional
        Creation time; defaults to the current UTC time.

    Returns
    -------
    DocumentReference
        The created record, as returned by the store.

    Raises
    ------
    ValidationError
        If the upload is missing or empty, or the order has no id. Nothing
        is written.
    StoreError
        Propagated unchanged from the store.
    """
    if upload is None:
        raise ValidationError("Please select a file")
    if not upload.data:
        raise ValidationError(f"File is empty: {upload.filename}")
    if order_reference(order) is None:
        raise ValidationError("order has no id; attachment cannot be linked to it")

    doc = build_document_reference(
        order, upload, note, now or datetime.now(timezone.utc)
    )
    created = store.create(doc)
    LOG.info(
        "Attached %s (%d bytes) to order %s as %s/%s",
        upload.content_type,
        len(upload.data),
        order.id,
        DOCUMENT_RESOURCE_TYPE,
        created.id,
    )
    return created


def remove_attachment(store: RecordStore, attachment_id: str) -> None:
    """
    Delete an attachment by id.

    Deleting an id that no longer exists is left to the store, which treats
    it as a no-op.

    Raises
    ------
    ValidationError
        If the id is blank.
    StoreError
        Propagated unchanged from the store.
    """
    if not attachment_id or not str(attachment_id).strip():
        raise ValidationError("attachment id is required")
    store.delete(DOCUMENT_RESOURCE_TYPE, str(attachment_id).strip())
    LOG.info("Removed %s/%s", DOCUMENT_RESOURCE_TYPE, attachment_id)
