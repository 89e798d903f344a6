"""
responses.py — JSON envelopes shared by the query and action routes.
"""

from __future__ import annotations

import logging
import math
from typing import Any, Dict, Optional

from fastapi.responses import JSONResponse

from errors import (
    CircuitOpenError,
    CopilotError,
    ErrorKind,
    RETRYABLE_KINDS,
    RateLimitedError,
    STATUS_BY_KIND,
    classify_error,
)
from telemetry import CORRELATION_HEADER, MetricsStore

logger = logging.getLogger("azops.query")

GENERIC_MESSAGE = (
    "Something went wrong while processing your request. Please try again, "
    "and quote the correlation id if the problem persists."
)


def error_body(kind: ErrorKind, message: str, correlation_id: str,
               retry_after: Optional[int] = None) -> Dict[str, Any]:
    body: Dict[str, Any] = {
        "error": {
            "kind": kind.value,
            "message": message,
            "retryable": kind in RETRYABLE_KINDS,
        },
        "correlationId": correlation_id,
    }
    if retry_after is not None:
        body["retryAfter"] = retry_after
    return body


def json_response(status_code: int, body: Dict[str, Any], correlation_id: str,
                  retry_after: Optional[int] = None) -> JSONResponse:
    headers = {CORRELATION_HEADER: correlation_id}
    if retry_after is not None:
        headers["Retry-After"] = str(retry_after)
    return JSONResponse(status_code=status_code, content=body, headers=headers)


def error_response(exc: Exception, correlation_id: str, metrics: MetricsStore,
                   **tags) -> JSONResponse:
    """
    Classify ``exc``, record ``request_error`` and build the client-facing
    envelope.  Only validation messages are passed through verbatim.
    """
    kind = classify_error(exc)
    retry_after = None
    if isinstance(exc, RateLimitedError) and exc.retry_after is not None:
        retry_after = max(1, math.ceil(exc.retry_after))
    elif isinstance(exc, CircuitOpenError):
        retry_after = max(1, math.ceil(exc.retry_in))

    if kind is ErrorKind.INVALID_REQUEST and isinstance(exc, CopilotError):
        message = exc.message
    elif retry_after is not None:
        message = f"The service is busy. Please retry after {retry_after} seconds."
    else:
        message = GENERIC_MESSAGE

    metrics.record("request_error", 1, kind=kind.value, correlation_id=correlation_id, **tags)
    if kind is ErrorKind.UNKNOWN and not isinstance(exc, CopilotError):
        logger.error("Unhandled error: %s", exc, exc_info=exc)
    else:
        logger.warning("Request failed (%s): %s", kind.value, exc)

    return json_response(
        STATUS_BY_KIND[kind],
        error_body(kind, message, correlation_id, retry_after),
        correlation_id,
        retry_after,
    )
