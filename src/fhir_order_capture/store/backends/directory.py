# src/fhir_order_capture/store/backends/directory.py
"""
Directory-backed record store.

Layout: ``<root>/<ResourceType>/<id>.json``, one FHIR JSON document per
resource. Searches scan every file of the requested type, which is fine for
the single-workstation volumes this backend is meant for.
"""

from __future__ import annotations

import json
import logging
import os
import uuid
from pathlib import Path
from typing import List, Union

from fhir.resources.resource import Resource

from ...exceptions import ParseError, StoreError
from ...fhir_parser import load_fhir_json, resource_to_dict, resource_type_of
from ..base import matches_params
from ..registry import register
from .memory import stamp, version_of

LOG = logging.getLogger(__name__)


@register("directory")
class DirectoryRecordStore:
    """
    RecordStore persisting resources as JSON files under a root directory.

    Parameters
    ----------
    root : Path or str
        Root directory; created on first write.
    pretty : bool, default False
        Indent written JSON.
    """

    def __init__(self, root: Union[Path, str], pretty: bool = False) -> None:
        self.root = Path(root)
        self.pretty = pretty

    # --------------------------------------------------------------------------
    # paths and file I/O
    # --------------------------------------------------------------------------

    def _path(self, resource_type: str, resource_id: str) -> Path:
        if not resource_id or "/" in resource_id or resource_id in (".", ".."):
            raise StoreError(f"invalid resource id: {resource_id!r}")
        return self.root / resource_type / f"{resource_id}.json"

    def _load(self, path: Path) -> Resource:
        try:
            return load_fhir_json(path)
        except ParseError as e:
            raise StoreError(f"corrupt record {path}: {e}") from e

    def _write(self, path: Path, resource: Resource) -> None:
        text = json.dumps(
            resource_to_dict(resource), indent=2 if self.pretty else None
        )
        tmp = path.with_suffix(".json.tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_text(text, encoding="utf-8")
            os.replace(tmp, path)
        except OSError as e:
            raise StoreError(f"Failed to write {path}: {e}") from e

    # --------------------------------------------------------------------------
    # RecordStore
    # --------------------------------------------------------------------------

    def search(self, resource_type: str, **params: str) -> List[Resource]:
        folder = self.root / resource_type
        if not folder.is_dir():
            return []
        out: List[Resource] = []
        for path in sorted(folder.glob("*.json")):
            res = self._load(path)
            if matches_params(res, resource_type, params):
                out.append(res)
        return out

    def read(self, resource_type: str, resource_id: str) -> Resource:
        path = self._path(resource_type, resource_id)
        if not path.is_file():
            raise StoreError(f"{resource_type}/{resource_id} not found")
        return self._load(path)

    def create(self, resource: Resource) -> Resource:
        rtype = resource_type_of(resource)
        rid = getattr(resource, "id", None) or str(uuid.uuid4())
        path = self._path(rtype, rid)
        if path.exists():
            raise StoreError(f"{rtype}/{rid} already exists")

        stored = resource.model_copy(deep=True)
        stored.id = rid
        stamp(stored, 1)
        self._write(path, stored)
        LOG.debug("Created %s/%s", rtype, rid)
        return stored

    def update(self, resource: Resource) -> Resource:
        rtype = resource_type_of(resource)
        rid = getattr(resource, "id", None)
        if not rid:
            raise StoreError(f"cannot update {rtype} without an id")
        current = self.read(rtype, rid)

        stored = resource.model_copy(deep=True)
        stamp(stored, version_of(current) + 1)
        self._write(self._path(rtype, rid), stored)
        LOG.debug("Updated %s/%s", rtype, rid)
        return stored

    def delete(self, resource_type: str, resource_id: str) -> None:
        path = self._path(resource_type, resource_id)
        try:
            path.unlink()
        except FileNotFoundError:
            return
        except OSError as e:
            raise StoreError(f"Failed to delete {path}: {e}") from e
        LOG.debug("Deleted %s/%s", resource_type, resource_id)
