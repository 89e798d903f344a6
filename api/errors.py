"""
errors.py — Error taxonomy for the query pipeline.

Every failure that can reach a caller is expressed as a ``CopilotError``
subclass.  Each carries a ``kind`` (used for metrics and the response
envelope), the HTTP status the kind maps to, and whether a client may
retry.  ``classify_error()`` folds arbitrary exceptions onto the same
taxonomy so the request handler never leaks raw vendor errors.
"""

from __future__ import annotations

import asyncio
from enum import Enum
from typing import Optional

import requests


class ErrorKind(str, Enum):
    INVALID_REQUEST = "invalid_request"
    AUTH = "auth"
    NOT_FOUND = "not_found"
    RATE_LIMIT = "rate_limit"
    CIRCUIT_OPEN = "circuit_open"
    TIMEOUT = "timeout"
    UNKNOWN = "unknown"


STATUS_BY_KIND = {
    ErrorKind.INVALID_REQUEST: 400,
    ErrorKind.AUTH: 401,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.RATE_LIMIT: 429,
    ErrorKind.CIRCUIT_OPEN: 503,
    ErrorKind.TIMEOUT: 504,
    ErrorKind.UNKNOWN: 500,
}

RETRYABLE_KINDS = {
    ErrorKind.RATE_LIMIT,
    ErrorKind.CIRCUIT_OPEN,
    ErrorKind.TIMEOUT,
    ErrorKind.UNKNOWN,
}


class CopilotError(Exception):
    """Base class for all classified failures."""

    kind: ErrorKind = ErrorKind.UNKNOWN

    def __init__(self, message: str, service: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.service = service

    @property
    def status_code(self) -> int:
        return STATUS_BY_KIND[self.kind]

    @property
    def retryable(self) -> bool:
        return self.kind in RETRYABLE_KINDS


class InvalidRequestError(CopilotError):
    kind = ErrorKind.INVALID_REQUEST


class AuthError(CopilotError):
    kind = ErrorKind.AUTH


class NotFoundError(CopilotError):
    kind = ErrorKind.NOT_FOUND


class RateLimitedError(CopilotError):
    kind = ErrorKind.RATE_LIMIT

    def __init__(self, message: str, service: Optional[str] = None,
                 retry_after: Optional[float] = None):
        super().__init__(message, service)
        self.retry_after = retry_after


class CircuitOpenError(CopilotError):
    kind = ErrorKind.CIRCUIT_OPEN

    def __init__(self, service: str, retry_in: float = 0.0):
        super().__init__(f"Circuit breaker for {service} is OPEN", service)
        self.retry_in = retry_in


class UpstreamTimeoutError(CopilotError):
    kind = ErrorKind.TIMEOUT


class UnknownUpstreamError(CopilotError):
    kind = ErrorKind.UNKNOWN


# ---------------------------------------------------------------------------
# HTTP response mapping
# ---------------------------------------------------------------------------

def parse_retry_after(value) -> Optional[float]:
    """Seconds from a Retry-After header value; None when absent or unparsable."""
    if value is None:
        return None
    try:
        seconds = float(str(value).strip())
    except ValueError:
        return None
    return seconds if seconds >= 0 else None


def _body_error(response: requests.Response) -> tuple[Optional[str], str]:
    try:
        body = response.json()
    except ValueError:
        return None, response.text[:200]
    err = body.get("error") if isinstance(body, dict) else None
    if isinstance(err, dict):
        code = err.get("code")
        return (str(code) if code is not None else None), str(err.get("message", ""))
    return None, str(body)[:200]


def raise_for_response(response: requests.Response, service: str) -> None:
    """
    Raise the taxonomy error matching a failed upstream response.
    Returns silently for 2xx/3xx responses.
    """
    status = response.status_code
    code, detail = _body_error(response) if status >= 400 else (None, "")

    if status == 429 or code == "429":
        raise RateLimitedError(
            f"{service} rate limit reached",
            service,
            retry_after=parse_retry_after(response.headers.get("retry-after")),
        )
    if status < 400:
        return
    if status in (401, 403):
        raise AuthError(f"{service} rejected the credentials ({status})", service)
    if status == 404:
        raise NotFoundError(f"{service} resource not found: {detail}", service)
    if status in (400, 422):
        raise InvalidRequestError(f"{service} rejected the request: {detail}", service)
    if status in (408, 504):
        raise UpstreamTimeoutError(f"{service} timed out ({status})", service)
    raise UnknownUpstreamError(f"{service} returned HTTP {status}: {detail}", service)


def classify_error(exc: BaseException) -> ErrorKind:
    """Map any exception onto an ErrorKind."""
    if isinstance(exc, CopilotError):
        return exc.kind
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError, requests.Timeout)):
        return ErrorKind.TIMEOUT
    if isinstance(exc, requests.HTTPError) and exc.response is not None:
        status = exc.response.status_code
        if status in (401, 403):
            return ErrorKind.AUTH
        if status == 404:
            return ErrorKind.NOT_FOUND
        if status == 429:
            return ErrorKind.RATE_LIMIT
        if status in (400, 422):
            return ErrorKind.INVALID_REQUEST
    return ErrorKind.UNKNOWN
