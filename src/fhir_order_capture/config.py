# src/fhir_order_capture/config.py
"""
Configuration utilities for fhir_order_capture.

Provides a frozen dataclass configuration object and a loader that reads
YAML configuration files when present.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping, Optional, Tuple

import yaml

LAB_TEST_SYSTEM = "http://medplum.com/emr/lab-test"
IMAGING_TEST_SYSTEM = "http://medplum.com/emr/imaging-test"
RESULT_FIELDS_EXTENSION = "resultFields"


@dataclass(frozen=True)
class AppConfig:
    """
    Immutable application configuration.

    Attributes
    ----------
    store_backend : str
        Name of the registered record store backend (e.g., "directory").
    store_dir : Path
        Root directory used by file-backed record stores.
    catalog_systems : tuple of str
        Identifier systems that mark an ActivityDefinition as a catalog entry.
        The first identifier in one of these systems is the definition's code.
    result_fields_extension : str
        Extension url under which a definition embeds its serialized
            field schema.
    """

    store_backend: str = "directory"
    store_dir: Path = Path("records")
    catalog_systems: Tuple[str, ...] = (LAB_TEST_SYSTEM, IMAGING_TEST_SYSTEM)
    result_fields_extension: str = RESULT_FIELDS_EXTENSION


def _require_str(data: Mapping[str, Any], key: str, default: str, path: Path) -> str:
    val = data.get(key, default)
    if not isinstance(val, str) or not val.strip():
        raise TypeError(
            f"Config key {key!r} must be a non-empty string, "
            f"got {type(val).__name__}. "
            f"Config file: {path}"
        )
    return val


def load_config(path: Optional[Path]) -> AppConfig:
    """
    Load application configuration from a YAML file.

    Parameters
    ----------
    path : Path or None
        Path to a YAML config file. If None, defaults are used.

    Returns
    -------
    AppConfig
        The loaded configuration.

    Raises
    ------
    TypeError
        If the YAML file does not parse to a mapping at the top level, or a
        known key has the wrong type.
    yaml.YAMLError
        If the file is not valid YAML.
    """
    if path is None:
        return AppConfig()

    data: Any = yaml.safe_load(path.read_text())

    if data is None:
        return AppConfig()

    if not isinstance(data, Mapping):
        raise TypeError(
            f"Config file must contain a mapping at top level, "
            f"got {type(data).__name__}. "
            f"Config file: {path}"
        )

    defaults = AppConfig()

    systems: Any = data.get("catalog_systems", list(defaults.catalog_systems))
    if not isinstance(systems, list) or not all(
        isinstance(s, str) and s for s in systems
    ):
        raise TypeError(
            f"Config key 'catalog_systems' must be a list of strings. "
            f"Config file: {path}"
        )

    return AppConfig(
        store_backend=_require_str(data, "store_backend", defaults.store_backend, path),
        store_dir=Path(
            _require_str(data, "store_dir", str(defaults.store_dir), path)
        ),
        catalog_systems=tuple(systems),
        result_fields_extension=_require_str(
            data, "result_fields_extension", defaults.result_fields_extension, path
        ),
    )
