# src/fhir_order_capture/logging_utils.py
"""
Logging utilities for fhir_order_capture.

One entry point configures root logging for the CLI and for embedding
applications. Engine modules only ever call logging.getLogger(__name__) and
log identifiers, counts and rule names; result values and attachment
payloads are never written to the log.
"""

import logging
import sys
from typing import IO, Optional


LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def level_for(verbosity: int, quiet: bool = False) -> int:
    """
    Map CLI verbosity flags to a logging level.

    Parameters
    ----------
    verbosity : int
        Number of -v flags. 0 -> INFO, 1 or more -> DEBUG.
    quiet : bool, default=False
        If True, only warnings and errors are emitted (wins over verbosity).

    Returns
    -------
    int
        A logging level constant.
    """
    if quiet:
        return logging.WARNING
    return logging.DEBUG if verbosity >= 1 else logging.INFO


def configure_logging(
    verbosity: int = 0, stream: Optional[IO[str]] = None, quiet: bool = False
) -> logging.Logger:
    """
    Configure application-wide logging.

    Parameters
    ----------
    verbosity : int, default=0
        Non-negative verbosity level (see level_for).
    stream : IO[str] or None, default=None
        Target stream for the StreamHandler. Defaults to sys.stderr so that
        JSON written to stdout by the CLI stays machine-readable.
    quiet : bool, default=False
        Restrict output to WARNING and above.

    Returns
    -------
    logging.Logger
        The configured root logger.

    Raises
    ------
    TypeError
        If verbosity is not an int (bools are rejected too), or if a stream
        is provided that does not have a write method.
    ValueError
        If verbosity is negative.
    """
    if not isinstance(verbosity, int) or isinstance(verbosity, bool):
        raise TypeError(f"verbosity must be int, got {type(verbosity).__name__}")
    if verbosity < 0:
        raise ValueError(f"verbosity must be non-negative, got {verbosity}")

    if stream is None:
        stream = sys.stderr
    elif not hasattr(stream, "write"):
        raise TypeError("stream must be file-like (support .write(...))")

    handler = logging.StreamHandler(stream)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))

    root = logging.getLogger()
    # Replace only StreamHandlers; FileHandlers added by the host app stay.
    root.handlers = [
        h
        for h in root.handlers
        if not isinstance(h, logging.StreamHandler)
        or isinstance(h, logging.FileHandler)
    ]
    root.addHandler(handler)
    root.setLevel(level_for(verbosity, quiet))

    return root
