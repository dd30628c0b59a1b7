"""Error hierarchy for httpchain calls.

Every failure surfaced by Client.do() is a CallError. Lower-level exceptions
(httpx, httpcore, socket, interceptor bugs) are chained via ``__cause__``.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from httpchain.models import Response


class CallError(Exception):
    """Base class for call errors.

    ``response`` holds the Response built so far when the failure happened
    after the chain started (None for construction errors).
    """

    def __init__(self, message: str, response: Response | None = None) -> None:
        super().__init__(message)
        self.response = response


class BodyError(CallError):
    """Raised when a payload cannot be serialized or a body cannot be decoded."""


class RequestBuildError(CallError):
    """Raised when the outbound request cannot be built (bad method, URL, proxy)."""


class TransportError(CallError):
    """Raised when the network call fails (connection refused, protocol error, etc.)."""


class CallTimeout(TransportError):
    """Raised when a timeout or the call deadline expires."""


class CallCancelled(TransportError):
    """Raised when the request's cancel scope is cancelled."""


class BodyReadError(TransportError):
    """Raised when reading the response body fails. Partial bytes are discarded."""


class InterceptorFault(CallError):
    """Raised when an interceptor fails with an unexpected exception."""
