"""Per-call execution context and the interceptor chain.

Interceptors follow the onion model: each receives the Context, does its
pre-call work, calls ``ctx.next()`` to run the rest of the chain (ending with
the network step), then does its post-call work. Not calling ``ctx.next()``
short-circuits everything after it.

Example:
    def add_request_id(ctx: Context) -> None:
        ctx.http_request.headers["X-Request-Id"] = uuid4().hex
        ctx.next()
        log.info("status %s", ctx.response.status_code)
"""

from __future__ import annotations

from typing import Callable, Sequence

import httpx

from httpchain.errors import CallError
from httpchain.models import Request, Response

Interceptor = Callable[["Context"], None]


class Chain:
    """An immutable handler sequence plus a cursor that only moves forward.

    The cursor starts before the first handler. advance() moves it by one and
    runs the handler it lands on; once past the end, advance() does nothing.
    Every handler therefore runs at most once per chain.
    """

    def __init__(self, handlers: Sequence[Interceptor]) -> None:
        self._handlers: tuple[Interceptor, ...] = tuple(handlers)
        self._index = -1

    def __len__(self) -> int:
        return len(self._handlers)

    @property
    def index(self) -> int:
        return self._index

    @property
    def exhausted(self) -> bool:
        return self._index >= len(self._handlers)

    def advance(self, ctx: Context) -> None:
        if self._index < len(self._handlers):
            self._index += 1
        if self._index < len(self._handlers):
            self._handlers[self._index](ctx)


class Context:
    """Mutable state for exactly one call. Never shared between calls.

    Attributes:
        request: The caller's Request (interceptors may edit it).
        response: The Response being built.
        http_request: The outbound httpx.Request. Interceptors may replace it
            or edit its headers/extensions before calling next().
        http_response: The httpx.Response once the network step has run.
        error: Network or body-read failure recorded by the network step. The
            driver raises it after the chain unwinds.
    """

    def __init__(
        self,
        request: Request,
        response: Response,
        http_request: httpx.Request,
        handlers: Sequence[Interceptor],
    ) -> None:
        self.request = request
        self.response = response
        self.http_request = http_request
        self.http_response: httpx.Response | None = None
        self.error: CallError | None = None
        self._chain = Chain(handlers)

    @property
    def chain(self) -> Chain:
        return self._chain

    def next(self) -> None:
        """Run the next handler. A no-op once the chain is exhausted."""
        self._chain.advance(self)
