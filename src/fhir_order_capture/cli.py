# src/fhir_order_capture/cli.py
"""
Command-line interface for fhir_order_capture.

Subcommands
-----------
seed-catalog
    Save the default (or a given YAML) test catalog into the store.

import
    Load FHIR JSON/XML files into the store. Bundles are expanded; resources
    that already exist under the same id are updated.

orders
    List the orders placed in an encounter.

schema
    Print the resolved result-field schema of an order as JSON.

results / attachments
    Print the records linked to an order (NDJSON unless --pretty).

capture
    Capture NAME=VALUE result values for an order.

attach / detach
    Add a file to an order, or delete an attachment by id.

Exit codes
----------
0  success
1  handled, expected error (OrderCaptureError or KeyboardInterrupt)
2  CLI usage error (argparse)
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys

from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import yaml

from . import __version__
from .attachments import AttachmentUpload
from .catalog import load_catalog, seed_catalog
from .config import AppConfig, load_config
from .exceptions import OrderCaptureError
from .fhir_parser import load_fhir_file, resource_to_dict, resource_type_of
from .logging_utils import configure_logging
from .orders import order_category, order_label
from .service import OrderCaptureService
from .store import open_store
from .store.base import RecordStore

# ------------------------------------------------------------------------------
# globals
# ------------------------------------------------------------------------------

LOG = logging.getLogger("fhir_order_capture")

EXIT_OK = 0
EXIT_ERR = 1
EXIT_CLI = 2

# ------------------------------------------------------------------------------
# Parser construction
# ------------------------------------------------------------------------------


def _build_parser() -> argparse.ArgumentParser:
    """
    Build and return the top-level argparse parser and subcommands.

    Returns
    -------
    argparse.ArgumentParser
        Configured parser with one subparser per command.
    """
    parser = argparse.ArgumentParser(
        prog="order-capture",
        description="Resolve clinical orders and capture their results and attachments.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to YAML config file (overrides defaults).",
    )
    parser.add_argument(
        "--store-dir",
        type=Path,
        default=None,
        help="Record store directory (defaults to config.store_dir).",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Increase verbosity (-v, -vv, -vvv).",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"fhir-order-capture (cli) {__version__}",
    )

    sub = parser.add_subparsers(dest="cmd", required=True)

    # seed-catalog
    s_seed = sub.add_parser("seed-catalog", help="Save the test catalog into the store.")
    s_seed.add_argument(
        "--file",
        type=Path,
        default=None,
        help="YAML catalog to load instead of the packaged default.",
    )

    # import
    s_import = sub.add_parser("import", help="Import FHIR JSON/XML files.")
    s_import.add_argument("paths", type=Path, nargs="+", help="FHIR files (.json or .xml).")

    # orders
    s_orders = sub.add_parser("orders", help="List the orders of an encounter.")
    s_orders.add_argument("encounter", help='Encounter reference, e.g. "Encounter/e1".')

    # schema
    s_schema = sub.add_parser("schema", help="Print the result fields of an order.")
    s_schema.add_argument("order_id", help="ServiceRequest id.")

    # results / attachments
    for name, what in (("results", "result records"), ("attachments", "attachments")):
        s = sub.add_parser(name, help=f"Print the {what} linked to an order.")
        s.add_argument("order_id", help="ServiceRequest id.")
        s.add_argument(
            "--pretty",
            action="store_true",
            help="Pretty-print JSON output instead of NDJSON.",
        )

    # capture
    s_capture = sub.add_parser("capture", help="Capture result values for an order.")
    s_capture.add_argument("order_id", help="ServiceRequest id.")
    s_capture.add_argument(
        "values",
        nargs="+",
        metavar="NAME=VALUE",
        help="Field values keyed by field name.",
    )
    s_capture.add_argument("--pretty", action="store_true", help="Pretty-print JSON output.")

    # attach
    s_attach = sub.add_parser("attach", help="Attach a file to an order.")
    s_attach.add_argument("order_id", help="ServiceRequest id.")
    s_attach.add_argument("file", type=Path, help="File to attach.")
    s_attach.add_argument("--note", default=None, help="Description stored with the file.")
    s_attach.add_argument(
        "--content-type",
        default=None,
        help="MIME type (guessed from the file name when omitted).",
    )

    # detach
    s_detach = sub.add_parser("detach", help="Delete an attachment.")
    s_detach.add_argument("document_id", help="DocumentReference id.")

    return parser


# ------------------------------------------------------------------------------
# Validation helpers
# ------------------------------------------------------------------------------


def _validate_existing_file(path: Path) -> None:
    """
    Validate that a path exists, is a file and is readable.

    Raises
    ------
    OrderCaptureError
        If the path does not exist, is not a file, or is not readable.
    """
    if not path.exists():
        raise OrderCaptureError(f"File not found: {path}")
    if not path.is_file():
        raise OrderCaptureError(f"Not a file: {path}")
    if not os.access(path, os.R_OK):
        raise OrderCaptureError(f"File is not readable: {path}")


def _parse_assignments(pairs: Iterable[str]) -> Dict[str, str]:
    """
    Turn ``NAME=VALUE`` arguments into a mapping.

    The value may be empty or contain further "=" characters; a later
    assignment to the same name wins.

    Raises
    ------
    OrderCaptureError
        If an argument has no "=" or an empty name.
    """
    values: Dict[str, str] = {}
    for pair in pairs:
        name, sep, value = pair.partition("=")
        if not sep or not name.strip():
            raise OrderCaptureError(f"Expected NAME=VALUE, got {pair!r}")
        values[name.strip()] = value
    return values


# ------------------------------------------------------------------------------
# Config and store
# ------------------------------------------------------------------------------


def _load_cli_config(path: Optional[Path]) -> AppConfig:
    """
    Load the config file, mapping loader failures to OrderCaptureError.
    """
    if path is not None:
        _validate_existing_file(path)
    try:
        return load_config(path)
    except (TypeError, yaml.YAMLError, OSError) as e:
        raise OrderCaptureError(f"Invalid config {path}: {e}") from e


def _open_cli_store(cfg: AppConfig, store_dir: Optional[Path]) -> RecordStore:
    """
    Open the configured backend; file-backed stores get a root directory.
    """
    if cfg.store_backend == "directory":
        root = store_dir or cfg.store_dir
        LOG.debug("Using directory store at %s", root)
        return open_store(cfg.store_backend, root=root)
    return open_store(cfg.store_backend)


# ------------------------------------------------------------------------------
# JSON helpers
# ------------------------------------------------------------------------------


def _resource_to_json_str(resource: Any, pretty: bool) -> str:
    """
    Convert a FHIR resource (or plain mapping) to a JSON string.

    Raises
    ------
    OrderCaptureError
        If the object cannot be serialized to JSON.
    """
    indent = 2 if pretty else None
    try:
        if callable(getattr(resource, "model_dump", None)):
            return json.dumps(resource_to_dict(resource), indent=indent)
        return json.dumps(resource, indent=indent)
    except (TypeError, ValueError) as e:
        raise OrderCaptureError(f"Resource is not JSON serializable: {e}") from e


def _write_resources_to_stdout(resources: Iterable[Any], pretty: bool) -> None:
    """
    Write resources to stdout.

    When pretty is False, emits compact NDJSON (one JSON object per line).
    When pretty is True, prints indented JSON separated by a blank line.
    """
    first = True
    for res in resources:
        s = _resource_to_json_str(res, pretty)
        if pretty and not first:
            sys.stdout.write("\n")
        sys.stdout.write(s)
        sys.stdout.write("\n")
        first = False
    sys.stdout.flush()


# ------------------------------------------------------------------------------
# Command handlers
# ------------------------------------------------------------------------------


def _cmd_seed_catalog(store: RecordStore, cfg: AppConfig, path: Optional[Path]) -> int:
    """
    Seed-catalog: save every catalog test as an ActivityDefinition.
    """
    if path is not None:
        _validate_existing_file(path)
    tests = load_catalog(path)
    saved = seed_catalog(store, tests, cfg.result_fields_extension)
    print(f"Saved {len(saved)} catalog definition(s)")
    return EXIT_OK


def _import_resource(store: RecordStore, resource: Any) -> str:
    rtype = resource_type_of(resource)
    rid = getattr(resource, "id", None)
    if rid and store.search(rtype, _id=rid):
        store.update(resource)
        return "updated"
    store.create(resource)
    return "created"


def _cmd_import(store: RecordStore, paths: List[Path]) -> int:
    """
    Import: load FHIR files and write every resource to the store.

    All files are parsed before anything is written.
    """
    resources: List[Any] = []
    for path in paths:
        _validate_existing_file(path)
        resources.extend(load_fhir_file(path))

    counts = {"created": 0, "updated": 0}
    for res in resources:
        counts[_import_resource(store, res)] += 1
    print(
        f"Imported {len(resources)} resource(s): "
        f"{counts['created']} created, {counts['updated']} updated"
    )
    return EXIT_OK


def _cmd_orders(service: OrderCaptureService, encounter: str) -> int:
    """
    Orders: one line per order, ``<id>  <category>  <status>  <label>``.
    """
    orders = sorted(service.orders_for_encounter(encounter), key=lambda o: o.id or "")
    if not orders:
        print(f"No orders for {encounter}")
        return EXIT_OK
    for order in orders:
        print(
            f"{order.id}\t{order_category(order) or '-'}\t"
            f"{order.status}\t{order_label(order)}"
        )
    return EXIT_OK


def _cmd_schema(service: OrderCaptureService, order_id: str) -> int:
    order = service.get_order(order_id)
    fields = service.schema_for(order)
    print(
        json.dumps([f.model_dump(exclude_none=True) for f in fields], indent=2)
    )
    return EXIT_OK


def _cmd_results(service: OrderCaptureService, order_id: str, pretty: bool) -> int:
    order = service.get_order(order_id)
    _write_resources_to_stdout(service.results_for(order), pretty)
    return EXIT_OK


def _cmd_attachments(service: OrderCaptureService, order_id: str, pretty: bool) -> int:
    order = service.get_order(order_id)
    _write_resources_to_stdout(service.attachments_for(order), pretty)
    return EXIT_OK


def _cmd_capture(
    service: OrderCaptureService, order_id: str, pairs: List[str], pretty: bool
) -> int:
    """
    Capture: validate all values, then create or update one record per field.
    """
    values = _parse_assignments(pairs)
    order = service.get_order(order_id)
    saved = service.capture(order, values)
    _write_resources_to_stdout(saved, pretty)
    return EXIT_OK


def _cmd_attach(
    service: OrderCaptureService,
    order_id: str,
    path: Path,
    note: Optional[str],
    content_type: Optional[str],
) -> int:
    order = service.get_order(order_id)
    upload = AttachmentUpload.from_path(path, content_type)
    doc = service.attach(order, upload, note)
    print(f"DocumentReference/{doc.id}")
    return EXIT_OK


def _cmd_detach(service: OrderCaptureService, document_id: str) -> int:
    service.detach(document_id)
    return EXIT_OK


# ------------------------------------------------------------------------------
# Entrypoint
# ------------------------------------------------------------------------------


def main(argv: Optional[list[str]] = None) -> int:
    """
    CLI entrypoint.

    Parameters
    ----------
    argv : list[str] or None, default None
        Argument list for testing; None uses sys.argv[1:].

    Returns
    -------
    int
        Process exit code (EXIT_OK, EXIT_ERR, or EXIT_CLI).
    """
    parser = _build_parser()
    args = parser.parse_args(argv)

    configure_logging(args.verbose)

    try:
        cfg = _load_cli_config(args.config)
        store = _open_cli_store(cfg, args.store_dir)
        service = OrderCaptureService(store, cfg)

        if args.cmd == "seed-catalog":
            return _cmd_seed_catalog(store, cfg, args.file)
        if args.cmd == "import":
            return _cmd_import(store, args.paths)
        if args.cmd == "orders":
            return _cmd_orders(service, args.encounter)
        if args.cmd == "schema":
            return _cmd_schema(service, args.order_id)
        if args.cmd == "results":
            return _cmd_results(service, args.order_id, bool(args.pretty))
        if args.cmd == "attachments":
            return _cmd_attachments(service, args.order_id, bool(args.pretty))
        if args.cmd == "capture":
            return _cmd_capture(service, args.order_id, args.values, bool(args.pretty))
        if args.cmd == "attach":
            return _cmd_attach(
                service, args.order_id, args.file, args.note, args.content_type
            )
        if args.cmd == "detach":
            return _cmd_detach(service, args.document_id)
        parser.error("Unknown command")
        return EXIT_CLI

    except OrderCaptureError as e:
        LOG.error("%s", e)
        return EXIT_ERR
    except KeyboardInterrupt:
        LOG.error("Interrupted")
        return EXIT_ERR


if __name__ == "__main__":
    raise SystemExit(main())
