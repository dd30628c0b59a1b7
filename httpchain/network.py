"""Instrumented httpcore network backend.

TracingBackend wraps another httpcore backend (SyncBackend by default) and
adds two things to every connection it opens:

1. Lifecycle events. DNS resolution is done here rather than inside the
   socket connect so it can be timed separately. Events are delivered to the
   trace hook registered on the outbound request (``extensions["trace"]``),
   using the httpcore trace-callback signature ``hook(event_name, info)``:

       dns.started / dns.complete        (skipped for literal IP hosts)
       tcp.started / tcp.complete
       tls.started / tls.complete        (only for TLS connections)
       response.first_byte               (first bytes read after a write)

2. Cancellation. Every socket operation is bounded by the call's CancelScope,
   and a cancel() from another thread aborts the operation that is blocked.
   Reads are split into short polls. DNS lookups and connects run on a helper
   thread that the caller stops waiting for. Writes and TLS handshakes are
   woken by shutting the socket down.
"""

from __future__ import annotations

import contextlib
import ipaddress
import logging
import socket
import ssl
import threading
import time
from typing import Any, Callable, Generic, Iterable, Iterator, TypeVar

import httpcore

from httpchain.cancel import CancelScope
from httpchain.errors import CallCancelled, CallTimeout

logger = logging.getLogger(__name__)

TraceHook = Callable[[str, dict[str, Any]], None]
Resolver = Callable[[str, int], list[str]]
T = TypeVar("T")

# Upper bound on a single blocking read; cancellation latency is at most this.
POLL_INTERVAL = 0.1

DNS_STARTED = "dns.started"
DNS_COMPLETE = "dns.complete"
TCP_STARTED = "tcp.started"
TCP_COMPLETE = "tcp.complete"
TLS_STARTED = "tls.started"
TLS_COMPLETE = "tls.complete"
FIRST_BYTE = "response.first_byte"


def resolve_host(host: str, port: int) -> list[str]:
    """Resolve *host* to a list of IP address strings, in getaddrinfo order.

    Raises:
        httpcore.ConnectError: If resolution fails or yields nothing.
    """
    try:
        infos = socket.getaddrinfo(host, port, type=socket.SOCK_STREAM)
    except OSError as e:
        raise httpcore.ConnectError(f"DNS lookup failed for {host!r}: {e}") from e

    addresses: list[str] = []
    for _family, _type, _proto, _canonname, sockaddr in infos:
        address = str(sockaddr[0])
        if address not in addresses:
            addresses.append(address)
    if not addresses:
        raise httpcore.ConnectError(f"DNS lookup for {host!r} returned no addresses")
    return addresses


def is_ip_literal(host: str) -> bool:
    try:
        ipaddress.ip_address(host.strip("[]"))
    except ValueError:
        return False
    return True


def _time_left(timeout: float | None, started: float) -> float | None:
    if timeout is None:
        return None
    return max(0.0, timeout - (time.monotonic() - started))


class _Attempt(Generic[T]):
    """A blocking call running on a daemon thread, which the waiter may abandon.

    Once abandoned, a result that arrives later is handed to *cleanup* so a
    late connection does not leak.
    """

    def __init__(self, operation: Callable[[], T], cleanup: Callable[[T], None] | None = None) -> None:
        self._operation = operation
        self._cleanup = cleanup
        self._lock = threading.Lock()
        self._done = threading.Event()
        self._abandoned = False
        self._result: T | None = None
        self._error: BaseException | None = None
        threading.Thread(target=self._run, name="httpchain-connect", daemon=True).start()

    def _run(self) -> None:
        try:
            result = self._operation()
        except BaseException as e:  # re-raised in the waiting thread
            self._error = e
            self._done.set()
            return
        with self._lock:
            self._result = result
            self._done.set()
            abandoned = self._abandoned
        if abandoned and self._cleanup is not None:
            self._cleanup(result)

    def wait(self, timeout: float) -> bool:
        return self._done.wait(timeout)

    def result(self) -> T:
        if self._error is not None:
            raise self._error
        return self._result  # type: ignore[return-value]

    def abandon(self) -> None:
        with self._lock:
            self._abandoned = True
            finished = self._done.is_set() and self._error is None
        if finished and self._cleanup is not None:
            self._cleanup(self._result)  # type: ignore[arg-type]


class TracingBackend(httpcore.NetworkBackend):
    """httpcore backend that emits lifecycle events and honors a CancelScope.

    One instance belongs to one call. It is built with the request's scope and
    a callable that returns the trace hook currently registered on the call's
    outbound request (interceptors may install it after the backend exists).
    The network step replaces ``scope`` with the timed call scope when it
    starts.
    """

    def __init__(
        self,
        scope: CancelScope,
        hook_source: Callable[[], TraceHook | None],
        inner: httpcore.NetworkBackend | None = None,
        resolver: Resolver | None = None,
    ) -> None:
        self.scope = scope
        self._hook_source = hook_source
        self._inner = inner if inner is not None else httpcore.SyncBackend()
        self._resolver = resolver if resolver is not None else resolve_host

    def emit(self, event: str, info: dict[str, Any]) -> None:
        hook = self._hook_source()
        if hook is not None:
            hook(event, info)

    def _wait_for(
        self,
        operation: Callable[[], T],
        cleanup: Callable[[T], None] | None = None,
    ) -> T:
        """Run a blocking *operation* on a helper thread and wait for it in polls.

        Raises:
            CallCancelled, CallTimeout: If the scope ends first. The operation
                is abandoned and its late result goes to *cleanup*.
        """
        attempt = _Attempt(operation, cleanup)
        while not attempt.wait(POLL_INTERVAL):
            try:
                self.scope.check()
            except (CallCancelled, CallTimeout):
                attempt.abandon()
                raise
        return attempt.result()

    def connect_tcp(
        self,
        host: str,
        port: int,
        timeout: float | None = None,
        local_address: str | None = None,
        socket_options: Iterable[Any] | None = None,
    ) -> httpcore.NetworkStream:
        started = time.monotonic()

        if is_ip_literal(host):
            addresses = [host.strip("[]")]
        else:
            self.scope.check()
            self.emit(DNS_STARTED, {"host": host, "port": port})
            try:
                addresses = self._wait_for(lambda: self._resolver(host, port))
            finally:
                self.emit(DNS_COMPLETE, {"host": host, "port": port})
            logger.debug("Resolved %s to %s", host, addresses)

        self.emit(TCP_STARTED, {"host": host, "port": port})
        try:
            stream = self._connect_first(
                addresses, port, timeout, started, local_address, socket_options
            )
        finally:
            self.emit(TCP_COMPLETE, {"host": host, "port": port})
        return TracingStream(stream, self)

    def _connect_first(
        self,
        addresses: list[str],
        port: int,
        timeout: float | None,
        started: float,
        local_address: str | None,
        socket_options: Iterable[Any] | None,
    ) -> httpcore.NetworkStream:
        """Try each resolved address in order; raise the last failure if all fail."""
        options = list(socket_options) if socket_options is not None else None
        last_error: httpcore.ConnectError | None = None
        for address in addresses:
            bounded = self.scope.bound(_time_left(timeout, started))
            try:
                return self._wait_for(
                    lambda: self._inner.connect_tcp(
                        address,
                        port,
                        timeout=bounded,
                        local_address=local_address,
                        socket_options=options,
                    ),
                    cleanup=lambda stream: stream.close(),
                )
            except httpcore.ConnectError as e:
                logger.debug("Connect to %s:%s failed: %s", address, port, e)
                last_error = e
        if last_error is None:
            raise httpcore.ConnectError("No addresses to connect to")
        raise last_error

    def connect_unix_socket(
        self,
        path: str,
        timeout: float | None = None,
        socket_options: Iterable[Any] | None = None,
    ) -> httpcore.NetworkStream:
        self.emit(TCP_STARTED, {"path": path})
        try:
            bounded = self.scope.bound(timeout)
            stream = self._wait_for(
                lambda: self._inner.connect_unix_socket(
                    path, timeout=bounded, socket_options=socket_options
                ),
                cleanup=lambda stream: stream.close(),
            )
        finally:
            self.emit(TCP_COMPLETE, {"path": path})
        return TracingStream(stream, self)

    def sleep(self, seconds: float) -> None:
        self._inner.sleep(seconds)


class TracingStream(httpcore.NetworkStream):
    """Stream wrapper that reports TLS and first-byte events and polls for cancellation."""

    def __init__(self, stream: httpcore.NetworkStream, backend: TracingBackend) -> None:
        self._stream = stream
        self._backend = backend
        self._awaiting_response = False

    def read(self, max_bytes: int, timeout: float | None = None) -> bytes:
        started = time.monotonic()
        while True:
            # Raises CallCancelled/CallTimeout once the scope is done.
            bounded = self._backend.scope.bound(_time_left(timeout, started))
            poll = POLL_INTERVAL if bounded is None else min(POLL_INTERVAL, bounded)
            try:
                data = self._stream.read(max_bytes, timeout=poll)
            except httpcore.ReadTimeout:
                if timeout is not None and time.monotonic() - started >= timeout:
                    raise
                continue
            break

        if data and self._awaiting_response:
            self._awaiting_response = False
            self._backend.emit(FIRST_BYTE, {})
        return data

    def write(self, buffer: bytes, timeout: float | None = None) -> None:
        bounded = self._backend.scope.bound(timeout)
        with self._abort_on_cancel():
            self._stream.write(buffer, timeout=bounded)
        self._awaiting_response = True

    def close(self) -> None:
        self._stream.close()

    def _shutdown(self) -> None:
        sock = self._stream.get_extra_info("socket")
        if not isinstance(sock, socket.socket):
            return
        # Plain socket shutdown, also for SSLSocket: wakes a send blocked in another thread.
        with contextlib.suppress(OSError):  # already closed
            socket.socket.shutdown(sock, socket.SHUT_RDWR)

    @contextlib.contextmanager
    def _abort_on_cancel(self) -> Iterator[None]:
        """Shut the socket down if the scope is cancelled while the block runs.

        The httpcore error that the blocked operation then raises is reported
        as CallCancelled.
        """
        scope = self._backend.scope
        remove = scope.on_cancel(self._shutdown)
        try:
            yield
        except (httpcore.NetworkError, httpcore.TimeoutException):
            scope.check()
            raise
        finally:
            remove()

    def start_tls(
        self,
        ssl_context: ssl.SSLContext,
        server_hostname: str | None = None,
        timeout: float | None = None,
    ) -> httpcore.NetworkStream:
        bounded = self._backend.scope.bound(timeout)
        self._backend.emit(TLS_STARTED, {"server_hostname": server_hostname})
        try:
            with self._abort_on_cancel():
                stream = self._stream.start_tls(
                    ssl_context, server_hostname=server_hostname, timeout=bounded
                )
        finally:
            self._backend.emit(TLS_COMPLETE, {"server_hostname": server_hostname})
        return TracingStream(stream, self._backend)

    def get_extra_info(self, info: str) -> Any:
        return self._stream.get_extra_info(info)
