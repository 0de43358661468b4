"""Error taxonomy for Zotero API failures.

Every failure that leaves the client is a :class:`ZoteroError` carrying an
:class:`ErrorKind` tag. Callers branch on ``error.kind`` (or the subclass),
never on message text.
"""

from __future__ import annotations

import asyncio
import re as _re
from enum import Enum
from typing import Any, Mapping

import httpx


class ErrorKind(str, Enum):
    VALIDATION = "validation"
    AUTH = "auth"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    PRECONDITION = "precondition"
    RATE_LIMIT = "rate_limit"
    TRANSIENT = "transient"
    UNKNOWN = "unknown"


# Kinds the retry controller may retry on its own
RETRYABLE_KINDS = frozenset({ErrorKind.RATE_LIMIT, ErrorKind.TRANSIENT, ErrorKind.PRECONDITION})


class ZoteroError(Exception):
    """Base class for all typed failures."""

    kind: ErrorKind = ErrorKind.UNKNOWN
    default_message = "An unexpected error occurred."

    def __init__(
        self,
        message: str | None = None,
        *,
        status_code: int | None = None,
        retry_after: float | None = None,
        body: Any = None,
    ) -> None:
        super().__init__(message or self.default_message)
        self.message = message or self.default_message
        self.status_code = status_code
        self.retry_after = retry_after
        self.body = body

    @property
    def retryable(self) -> bool:
        return self.kind in RETRYABLE_KINDS

    def user_message(self) -> str:
        text = self.default_message
        if self.status_code:
            text = f"[Error {self.status_code}] {text}"
        return text

    def __repr__(self) -> str:
        return f"{type(self).__name__}(kind={self.kind.value}, status={self.status_code}, message={self.message!r})"


class ValidationError(ZoteroError):
    kind = ErrorKind.VALIDATION
    default_message = "Invalid request parameters."

    def user_message(self) -> str:
        # Validation problems are surfaced verbatim
        if self.status_code:
            return f"[Error {self.status_code}] Invalid request parameters: {self.message}"
        return f"Validation error: {self.message}"


class ConfigurationError(ValidationError):
    default_message = "Invalid configuration."

    def user_message(self) -> str:
        return f"Configuration error: {self.message}"


class AuthError(ZoteroError):
    kind = ErrorKind.AUTH
    default_message = (
        "Authentication failed. Check ZOTERO_API_KEY and its library permissions. "
        "API keys are managed at https://www.zotero.org/settings/keys"
    )


class NotFoundError(ZoteroError):
    kind = ErrorKind.NOT_FOUND
    default_message = "Item, collection, or resource not found. Check the key or identifier."

    def user_message(self) -> str:
        # Local lookups (e.g. by DOI) carry their own message
        if self.status_code is None and self.message != self.default_message:
            return self.message
        return super().user_message()


class ConflictError(ZoteroError):
    kind = ErrorKind.CONFLICT
    default_message = (
        "Version conflict. The object was modified by another client or the library is locked. "
        "Fetch the latest version and try again."
    )


class PreconditionError(ZoteroError):
    kind = ErrorKind.PRECONDITION
    default_message = (
        "Precondition failed. The library or object version has changed. "
        "Fetch the latest version and retry with it."
    )


class RateLimitError(ZoteroError):
    kind = ErrorKind.RATE_LIMIT
    default_message = "Rate limit exceeded. Requests were retried with backoff and still failed."

    def user_message(self) -> str:
        base = super().user_message()
        if self.retry_after:
            return f"{base} Wait {self.retry_after:g}s before retrying."
        return base


class TransientNetworkError(ZoteroError):
    kind = ErrorKind.TRANSIENT
    default_message = "Zotero API unavailable (timeout, connection failure, or server error)."

    def user_message(self) -> str:
        return f"{super().user_message()} Details: {self.message}"


class UnknownError(ZoteroError):
    kind = ErrorKind.UNKNOWN

    def user_message(self) -> str:
        return f"{super().user_message()} Details: {self.message}"


class UnexpectedResponseError(UnknownError):
    default_message = "Unexpected response format."


_STATUS_ERRORS: dict[int, type[ZoteroError]] = {
    400: ValidationError,
    401: AuthError,
    403: AuthError,
    404: NotFoundError,
    408: TransientNetworkError,
    409: ConflictError,
    412: PreconditionError,
    413: ValidationError,
    428: ValidationError,
    429: RateLimitError,
    503: RateLimitError,
}


def error_for_status(status: int) -> type[ZoteroError]:
    if status in _STATUS_ERRORS:
        return _STATUS_ERRORS[status]
    if status >= 500:
        return TransientNetworkError
    return UnknownError


def parse_wait_hint(headers: Mapping[str, str] | None) -> float | None:
    """Return the remote wait hint in seconds (``Backoff`` wins over ``Retry-After``)."""
    if not headers:
        return None
    for name in ("Backoff", "Retry-After"):
        value = headers.get(name)
        if value is None:
            continue
        try:
            seconds = float(str(value).strip())
        except ValueError:
            continue
        if seconds > 0:
            return seconds
    return None


def error_from_response(response: httpx.Response) -> ZoteroError:
    """Build the typed error for a non-success HTTP response."""
    status = response.status_code
    try:
        text = response.text.strip()
    except Exception:  # noqa: BLE001
        text = ""
    message = text[:800] if text else f"HTTP {status} {response.reason_phrase}".strip()
    cls = error_for_status(status)
    return cls(message, status_code=status, retry_after=parse_wait_hint(response.headers), body=text or None)


def error_from_write_failure(failure: Mapping[str, Any]) -> ZoteroError:
    """Map one ``failed`` entry of a multi-object write response."""
    code = failure.get("code")
    message = str(failure.get("message") or "Write failed")
    status = int(code) if isinstance(code, int) or (isinstance(code, str) and code.isdigit()) else None
    cls = error_for_status(status) if status else UnknownError
    return cls(message, status_code=status, body=dict(failure))


_NETWORK_MARKERS = ("ECONNREFUSED", "ETIMEDOUT", "ECONNRESET", "Connection refused", "fetch failed")


def classify(exc: BaseException) -> ZoteroError:
    """Turn any exception raised during a request into a :class:`ZoteroError`."""
    if isinstance(exc, ZoteroError):
        return exc
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError, httpx.TimeoutException)):
        return TransientNetworkError(f"Request timed out: {exc or type(exc).__name__}")
    if isinstance(exc, httpx.HTTPStatusError):
        return error_from_response(exc.response)
    if isinstance(exc, (httpx.TransportError, ConnectionError)):
        return TransientNetworkError(f"{type(exc).__name__}: {exc}")
    text = str(exc)
    if any(marker in text for marker in _NETWORK_MARKERS):
        return TransientNetworkError(text)
    # Fallback: a status code embedded in the message
    m = _re.search(r"\b([45]\d\d)\b", text)
    if m:
        status = int(m.group(1))
        return error_for_status(status)(text, status_code=status)
    return UnknownError(f"{type(exc).__name__}: {text}" if text else type(exc).__name__)
