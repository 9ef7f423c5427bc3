from __future__ import annotations

import re
from typing import Literal

import httpx
from pydantic import ValidationError as PydanticValidationError

ErrorKind = Literal["transient", "quota_exceeded", "authentication", "validation"]

RETRYABLE_KINDS: frozenset[str] = frozenset({"transient", "quota_exceeded"})

_QUOTA_RE = re.compile(r"quota|insufficient|billing|rate.?limit|too many requests", re.IGNORECASE)
_AUTH_RE = re.compile(r"unauthori[sz]ed|forbidden|api.?key|not authenticated", re.IGNORECASE)


class DescriptionServiceError(Exception):
    kind: ErrorKind = "transient"

    @property
    def retryable(self) -> bool:
        return self.kind in RETRYABLE_KINDS


class TransientServiceError(DescriptionServiceError):
    """Network blip, timeout or 5xx from the provider."""

    kind: ErrorKind = "transient"


class QuotaExceededError(DescriptionServiceError):
    """Provider throttling or insufficient balance."""

    kind: ErrorKind = "quota_exceeded"


class AuthenticationError(DescriptionServiceError):
    kind: ErrorKind = "authentication"


class ValidationError(DescriptionServiceError):
    """Malformed payload or prompt; retrying cannot help."""

    kind: ErrorKind = "validation"


def kind_for_status(status_code: int) -> ErrorKind:
    if status_code in (401, 403):
        return "authentication"
    if status_code in (402, 429):
        return "quota_exceeded"
    if status_code >= 500:
        return "transient"
    if status_code >= 400:
        return "validation"
    return "transient"


def classify_error(exc: BaseException) -> ErrorKind:
    """Map any exception raised by a describer onto the error taxonomy.

    Unknown failures are treated as transient so they are retried up to the configured limit.
    """

    if isinstance(exc, DescriptionServiceError):
        return exc.kind
    if isinstance(exc, httpx.HTTPStatusError):
        return kind_for_status(exc.response.status_code)
    if isinstance(exc, (httpx.TimeoutException, httpx.TransportError, TimeoutError, ConnectionError)):
        return "transient"
    if isinstance(exc, PydanticValidationError):
        return "validation"

    message = str(exc)
    if _QUOTA_RE.search(message):
        return "quota_exceeded"
    if _AUTH_RE.search(message):
        return "authentication"
    return "transient"


def is_retryable(kind: ErrorKind) -> bool:
    return kind in RETRYABLE_KINDS
