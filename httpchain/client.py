"""Client - builds one call, runs the interceptor chain, returns the Response.

A Client only holds configuration. Every call to do() takes a snapshot of
that configuration, resolves its own transport settings and builds its own
httpx client, so calls can run in parallel from several threads.

Usage:
    client = Client(ClientConfig(base_url="https://api.example.com",
                                 interceptors=(trace_interceptor,)))
    resp = client.get("/status", query={"verbose": "1"})
    print(resp.status_code, resp.trace.total)
"""

from __future__ import annotations

import json
import logging
import platform
import re
from typing import Any, Mapping, Sequence
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import httpcore
import httpx
from pydantic import BaseModel

from httpchain import __version__
from httpchain.cancel import CancelScope
from httpchain.context import Context, Interceptor
from httpchain.errors import (
    BodyError,
    BodyReadError,
    CallError,
    CallTimeout,
    InterceptorFault,
    RequestBuildError,
    TransportError,
)
from httpchain.models import ClientConfig, Request, Response
from httpchain.network import Resolver, TracingBackend
from httpchain.transport import TransportSettings, build_http_client, resolve_transport
from httpchain.xml_body import dict_to_xml, model_to_xml

logger = logging.getLogger(__name__)

CONTENT_JSON = "application/json"
CONTENT_FORM = "application/x-www-form-urlencoded"
CONTENT_XML = "application/xml"

DEFAULT_USER_AGENT = (
    f"httpchain/{__version__} ({platform.system().lower() or 'unknown'}; "
    f"python {platform.python_version()})"
)

# RFC 7230 token
_METHOD_PATTERN = re.compile(r"[!#$%&'*+\-.^_`|~0-9A-Za-z]+")


def join_url(base_url: str, uri: str) -> str:
    """Join base_url and uri with exactly one slash. An empty base_url returns uri."""
    if not base_url:
        return uri
    return base_url.rstrip("/") + "/" + uri.lstrip("/")


def overlay_query(url: str, query: Mapping[str, str]) -> str:
    """Set each key of *query* on the URL's query string, then encode sorted by key.

    Keys already in the URL but not in *query* keep all their values. The
    fragment is dropped; it is never sent on the wire anyway.
    """
    parts = urlsplit(url)
    merged: dict[str, list[str]] = {}
    for key, value in parse_qsl(parts.query, keep_blank_values=True):
        merged.setdefault(key, []).append(value)
    for key, value in query.items():
        merged[key] = [value]

    encoded = urlencode([(key, value) for key in sorted(merged) for value in merged[key]])
    return urlunsplit((parts.scheme, parts.netloc, parts.path, encoded, ""))


def build_headers(request: Request, config: ClientConfig) -> list[tuple[str, str]]:
    """Copy every header value from the request and add a User-Agent if it has none.

    User-Agent precedence: the request's own header, then config.user_agent,
    then DEFAULT_USER_AGENT.
    """
    headers = [(name, value) for name, values in request.headers.items() for value in values]
    if request.header("User-Agent") is None:
        headers.append(("User-Agent", config.user_agent or DEFAULT_USER_AGENT))
    return headers


def _caused_by(error: CallError, cause: BaseException) -> CallError:
    error.__cause__ = cause
    return error


def _transport_error(e: httpx.HTTPError) -> CallError:
    """Map an httpx exception raised by send() to a CallError (cause preserved)."""
    if isinstance(e, httpx.TimeoutException):
        return _caused_by(CallTimeout(f"Request timed out: {e}"), e)
    if isinstance(e, httpx.UnsupportedProtocol):
        return _caused_by(RequestBuildError(f"Unsupported request URL: {e}"), e)
    if isinstance(e, httpx.ConnectError):
        return _caused_by(TransportError(f"Connection failed: {e}"), e)
    return _caused_by(TransportError(f"Request failed: {e}"), e)


class Client:
    """Issues calls through the configured interceptor chain.

    Args:
        config: Client defaults. Defaults to an empty ClientConfig.
        network_backend: httpcore backend under the instrumented backend
            (default: httpcore.SyncBackend()). httpcore.MockBackend works here.
        resolver: DNS resolver ``(host, port) -> [address, ...]``
            (default: socket.getaddrinfo).
    """

    def __init__(
        self,
        config: ClientConfig | None = None,
        *,
        network_backend: httpcore.NetworkBackend | None = None,
        resolver: Resolver | None = None,
    ) -> None:
        self._config = config or ClientConfig()
        self._network_backend = network_backend
        self._resolver = resolver

    @property
    def config(self) -> ClientConfig:
        return self._config

    def do(self, request: Request) -> Response:
        """Send *request* through the interceptor chain and return the Response.

        Raises:
            RequestBuildError: Invalid method, URL or proxy. Raised before any
                interceptor runs.
            TransportError: The network call or body read failed (CallTimeout,
                CallCancelled and BodyReadError are subclasses).
            InterceptorFault: An interceptor raised an unexpected exception.
            CallError: Any CallError an interceptor raises on purpose.
        """
        config = self._config.model_copy()
        if request.cancel_scope is None:
            request.cancel_scope = CancelScope.background()

        settings = resolve_transport(config, request.runtime_option)
        http_request = self._build_http_request(request, config, settings)

        logger.debug(
            "Call %s %s (proxy=%s, timeout=%s, verify=%s, interceptors=%d)",
            http_request.method,
            http_request.url,
            settings.proxy.mode.value,
            settings.timeout,
            settings.verify,
            len(config.interceptors),
        )

        # Looked up at connect time: interceptors may swap ctx.http_request
        # or register the hook after the backend exists.
        backend = TracingBackend(
            request.cancel_scope,
            hook_source=lambda: ctx.http_request.extensions.get("trace"),
            inner=self._network_backend,
            resolver=self._resolver,
        )

        with build_http_client(settings, backend) as http_client:
            handlers = [*config.interceptors, self._network_step(http_client, backend, settings.timeout)]
            ctx = Context(request, Response(), http_request, handlers)
            try:
                ctx.next()
            except CallError as e:
                if e.response is None:
                    e.response = ctx.response
                raise
            except Exception as e:
                logger.warning(
                    "Interceptor fault during %s %s", http_request.method, http_request.url,
                    exc_info=True,
                )
                raise InterceptorFault(
                    f"Interceptor fault: {type(e).__name__}: {e}", response=ctx.response
                ) from e

        if ctx.error is not None:
            logger.debug("Call %s %s failed: %s", http_request.method, http_request.url,
                         type(ctx.error).__name__)
            if ctx.error.response is None:
                ctx.error.response = ctx.response
            raise ctx.error
        return ctx.response

    def _build_http_request(
        self,
        request: Request,
        config: ClientConfig,
        settings: TransportSettings,
    ) -> httpx.Request:
        """Build the outbound httpx.Request. No I/O happens here.

        Raises:
            RequestBuildError: If the method is not a valid token, the URL is not
                an absolute http(s) URL or a header value is not ASCII.
            BodyError: If the body has a type httpx cannot send.
        """
        method = request.method or "GET"
        if not _METHOD_PATTERN.fullmatch(method):
            raise RequestBuildError(f"Invalid HTTP method {method!r}")

        joined = join_url(config.base_url, request.uri)
        try:
            url = httpx.URL(overlay_query(joined, request.query))
        except (ValueError, httpx.InvalidURL) as e:
            raise RequestBuildError(f"Invalid URL {joined!r}: {e}") from e
        if url.scheme not in ("http", "https") or not url.host:
            raise RequestBuildError(f"URL {joined!r} must be an absolute http:// or https:// URL")

        try:
            headers = httpx.Headers(build_headers(request, config))
        except (TypeError, ValueError) as e:
            raise RequestBuildError(f"Invalid header: {e}") from e

        try:
            return httpx.Request(
                method,
                url,
                headers=headers,
                content=request.body,
                extensions={"timeout": httpx.Timeout(settings.timeout).as_dict()},
            )
        except TypeError as e:
            raise BodyError(f"Unsupported request body: {e}") from e

    @staticmethod
    def _network_step(
        http_client: httpx.Client,
        backend: TracingBackend,
        timeout: float | None,
    ) -> Interceptor:
        """Terminal chain step: send, read the whole body, always close the response.

        The call deadline starts when this step runs. Time spent in earlier
        interceptors is not counted against *timeout*.

        Failures are stored on ctx.error instead of raised so that interceptor
        code after ctx.next() still runs.
        """
        base_scope = backend.scope

        def perform(ctx: Context) -> None:
            scope = (ctx.request.cancel_scope or base_scope).with_timeout(timeout)
            backend.scope = scope
            response = ctx.response
            response.request = ctx.request
            response.http_request = ctx.http_request

            try:
                scope.check()
                http_response = http_client.send(ctx.http_request, stream=True)
            except CallError as e:
                ctx.error = e
                return
            except httpx.HTTPError as e:
                ctx.error = _transport_error(e)
                return

            ctx.http_response = http_response
            response.http_response = http_response
            try:
                response.body = http_response.read()
            except CallError as e:
                ctx.error = e
            except httpx.HTTPError as e:
                ctx.error = _caused_by(BodyReadError(f"Reading response body failed: {e}"), e)
            finally:
                http_response.close()

        return perform

    # -------------------------------------------------------------------------
    # Convenience verbs
    # -------------------------------------------------------------------------

    def get(self, uri: str, **kwargs: Any) -> Response:
        return self.do(Request(method="GET", uri=uri, **kwargs))

    def head(self, uri: str, **kwargs: Any) -> Response:
        return self.do(Request(method="HEAD", uri=uri, **kwargs))

    def delete(self, uri: str, **kwargs: Any) -> Response:
        return self.do(Request(method="DELETE", uri=uri, **kwargs))

    def post(self, uri: str, content_type: str, body: Any, **kwargs: Any) -> Response:
        return self._send_body("POST", uri, content_type, body, **kwargs)

    def put(self, uri: str, content_type: str, body: Any, **kwargs: Any) -> Response:
        return self._send_body("PUT", uri, content_type, body, **kwargs)

    def patch(self, uri: str, content_type: str, body: Any, **kwargs: Any) -> Response:
        return self._send_body("PATCH", uri, content_type, body, **kwargs)

    def post_json(self, uri: str, payload: Any, **kwargs: Any) -> Response:
        """POST *payload* (a Pydantic model or any json.dumps-able value) as JSON.

        Raises:
            BodyError: If the payload cannot be serialized.
        """
        try:
            if isinstance(payload, BaseModel):
                body = payload.model_dump_json().encode("utf-8")
            else:
                body = json.dumps(payload).encode("utf-8")
        except (TypeError, ValueError) as e:
            raise BodyError(f"Cannot serialize JSON payload: {e}") from e
        return self.post(uri, CONTENT_JSON, body, **kwargs)

    def post_form(
        self,
        uri: str,
        fields: Mapping[str, str | Sequence[str]],
        **kwargs: Any,
    ) -> Response:
        body = urlencode(fields, doseq=True).encode("ascii")
        return self.post(uri, CONTENT_FORM, body, **kwargs)

    def post_xml(self, uri: str, payload: dict[str, Any] | BaseModel, **kwargs: Any) -> Response:
        """POST a single-root dict or a Pydantic model as XML.

        Raises:
            BodyError: If the payload cannot be serialized.
        """
        try:
            if isinstance(payload, BaseModel):
                body = model_to_xml(payload)
            else:
                body = dict_to_xml(payload)
        except (TypeError, ValueError) as e:
            raise BodyError(f"Cannot serialize XML payload: {e}") from e
        return self.post(uri, CONTENT_XML, body, **kwargs)

    def _send_body(
        self,
        method: str,
        uri: str,
        content_type: str,
        body: Any,
        headers: Mapping[str, Any] | None = None,
        **kwargs: Any,
    ) -> Response:
        merged = {k: v for k, v in (headers or {}).items() if k.lower() != "content-type"}
        merged["Content-Type"] = content_type
        return self.do(Request(method=method, uri=uri, headers=merged, body=body, **kwargs))
