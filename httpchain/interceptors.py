"""Built-in interceptors.

trace_interceptor records connection phase durations into Response.trace.
logging_interceptor logs one line before and one line after each call.

REGISTRY maps the names accepted in config files and on the command line to
the interceptor functions.
"""

from __future__ import annotations

import logging
import time
from typing import Any

from httpchain.context import Context, Interceptor
from httpchain.models import Trace
from httpchain.network import FIRST_BYTE, TraceHook

logger = logging.getLogger(__name__)

# Event prefix emitted by TracingBackend -> Trace field it times.
_PHASE_FIELDS = {
    "dns": "dns",
    "tcp": "connect",
    "tls": "tls_handshake",
}


class PhaseRecorder:
    """Trace hook that turns lifecycle events into durations on a Trace.

    Events it does not know (including httpcore's own ``connection.*`` and
    ``http11.*`` events) are ignored. Any hook that was registered before it
    still receives every event.
    """

    def __init__(self, trace: Trace, previous: TraceHook | None = None) -> None:
        self._trace = trace
        self._previous = previous
        self._started: dict[str, float] = {}
        self.first_byte_at: float | None = None

    def __call__(self, event: str, info: dict[str, Any]) -> None:
        if self._previous is not None:
            self._previous(event, info)

        now = time.perf_counter()
        if event == FIRST_BYTE:
            self.first_byte_at = now
            return

        phase, _, stage = event.rpartition(".")
        field = _PHASE_FIELDS.get(phase)
        if field is None:
            return
        if stage == "started":
            self._started[phase] = now
        elif stage == "complete" and phase in self._started:
            setattr(self._trace, field, max(0.0, now - self._started.pop(phase)))


def trace_interceptor(ctx: Context) -> None:
    """Record DNS, connect, TLS, download and total durations for the call.

    download is measured from the first response byte to the end of the
    chain; it stays 0.0 when no response byte ever arrived.
    """
    started = time.perf_counter()
    if ctx.response.trace is None:
        ctx.response.trace = Trace()
    trace = ctx.response.trace

    recorder = PhaseRecorder(trace, ctx.http_request.extensions.get("trace"))
    ctx.http_request.extensions["trace"] = recorder

    try:
        ctx.next()
    finally:
        finished = time.perf_counter()
        if recorder.first_byte_at is not None:
            trace.download = max(0.0, finished - recorder.first_byte_at)
        else:
            trace.download = 0.0
        trace.total = max(0.0, finished - started)


def logging_interceptor(ctx: Context) -> None:
    """Log the outbound request line and the outcome at INFO (failures at WARNING)."""
    method = ctx.http_request.method
    url = ctx.http_request.url
    started = time.perf_counter()
    logger.info("--> %s %s", method, url)

    ctx.next()

    elapsed_ms = (time.perf_counter() - started) * 1000
    if ctx.error is not None:
        logger.warning("<-- %s %s failed after %.1fms: %s", method, url, elapsed_ms, ctx.error)
    elif ctx.http_response is None:
        logger.info("<-- %s %s short-circuited (%.1fms)", method, url, elapsed_ms)
    else:
        logger.info(
            "<-- %s %s %d (%.1fms, %d bytes)",
            method,
            url,
            ctx.http_response.status_code,
            elapsed_ms,
            len(ctx.response.body),
        )


REGISTRY: dict[str, Interceptor] = {
    "trace": trace_interceptor,
    "logging": logging_interceptor,
}


def lookup(name: str) -> Interceptor:
    """Return the built-in interceptor called *name*.

    Raises:
        KeyError: If no interceptor has that name.
    """
    try:
        return REGISTRY[name]
    except KeyError:
        available = ", ".join(sorted(REGISTRY))
        raise KeyError(f"Unknown interceptor {name!r}. Available: {available}") from None
