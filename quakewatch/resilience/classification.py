"""Failure classification at the task call boundary.

:func:`classify` is called exactly once per failure, where the task's
exception is caught; the resulting :class:`~quakewatch.core.models.ErrorKind`
is what the retry predicate, metrics and logs all work from afterwards.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Final

import httpx
import pydantic

from quakewatch.core.exceptions import QuakewatchError
from quakewatch.core.models import ErrorKind

__all__ = ["ErrorKind", "classify", "is_retryable", "RETRYABLE"]

logger = logging.getLogger(__name__)

#: Exhaustive retry table.  Every kind must appear here.
RETRYABLE: Final[dict[ErrorKind, bool]] = {
    ErrorKind.NETWORK: True,
    ErrorKind.UPSTREAM_SERVER: True,
    ErrorKind.RATE_LIMIT: True,
    ErrorKind.UNKNOWN: True,
    ErrorKind.UPSTREAM_CLIENT: False,
    ErrorKind.VALIDATION: False,
    ErrorKind.CONFIGURATION: False,
    ErrorKind.CIRCUIT_OPEN: False,
    ErrorKind.ALREADY_RUNNING: False,
    ErrorKind.CANCELLATION: False,
}


def _classify_status(status_code: int) -> ErrorKind:
    if status_code == 429:
        return ErrorKind.RATE_LIMIT
    if status_code >= 500:
        return ErrorKind.UPSTREAM_SERVER
    return ErrorKind.UPSTREAM_CLIENT


def classify(exc: BaseException) -> ErrorKind:
    """Map *exc* to an :class:`ErrorKind`.

    Application exceptions carry their own ``kind``; well-known library and
    builtin exceptions are mapped by type.  Anything else is ``unknown``.

    Args:
        exc: The exception raised by the task.

    Returns:
        The kind used for retry decisions and reporting.
    """
    if isinstance(exc, QuakewatchError) and exc.kind is not None:
        return ErrorKind(exc.kind)
    if isinstance(exc, asyncio.CancelledError):
        return ErrorKind.CANCELLATION
    if isinstance(exc, httpx.HTTPStatusError):
        return _classify_status(exc.response.status_code)
    if isinstance(exc, httpx.TransportError | ConnectionError | TimeoutError | OSError):
        return ErrorKind.NETWORK
    # JSONDecodeError subclasses ValueError; pydantic's ValidationError does too.
    if isinstance(exc, pydantic.ValidationError | json.JSONDecodeError | ValueError | KeyError | TypeError):
        return ErrorKind.VALIDATION
    logger.debug("Unclassified failure %s: %s", type(exc).__name__, exc)
    return ErrorKind.UNKNOWN


def is_retryable(kind: ErrorKind) -> bool:
    """Return ``True`` if a failure of *kind* is worth another attempt."""
    return RETRYABLE[kind]
