"""httpchain - HTTP calls through an ordered interceptor chain, with per-call
transport overrides and connection phase tracing."""

__version__ = "0.1.0"

from httpchain.cancel import CancelScope  # noqa: E402
from httpchain.client import Client  # noqa: E402
from httpchain.context import Context, Interceptor  # noqa: E402
from httpchain.errors import (  # noqa: E402
    BodyError,
    BodyReadError,
    CallCancelled,
    CallError,
    CallTimeout,
    InterceptorFault,
    RequestBuildError,
    TransportError,
)
from httpchain.interceptors import logging_interceptor, trace_interceptor  # noqa: E402
from httpchain.models import ClientConfig, Request, Response, RuntimeOption, Trace  # noqa: E402

__all__ = [
    "BodyError",
    "BodyReadError",
    "CallCancelled",
    "CallError",
    "CallTimeout",
    "CancelScope",
    "Client",
    "ClientConfig",
    "Context",
    "Interceptor",
    "InterceptorFault",
    "Request",
    "RequestBuildError",
    "Response",
    "RuntimeOption",
    "Trace",
    "TransportError",
    "logging_interceptor",
    "trace_interceptor",
]
