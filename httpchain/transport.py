"""Transport resolution: client defaults + per-call overrides -> one private transport.

resolve_transport() merges a ClientConfig with a RuntimeOption. The result is
bound to a CallTransport (an httpx transport over httpcore pools) that lives
only for one call, so concurrent calls never share or mutate transport state.

Proxy precedence, first match wins:
    1. option.no_proxy        -> no proxy
    2. option.proxy           -> that proxy for every request
    3. config.no_proxy        -> no proxy
    4. config.proxy           -> that proxy for every request
    5. otherwise              -> HTTP(S)_PROXY / ALL_PROXY / NO_PROXY, per request
"""

from __future__ import annotations

import contextlib
import ipaddress
import logging
import urllib.request
from dataclasses import dataclass
from enum import Enum
from typing import Iterator

import httpcore
import httpx

from httpchain.errors import RequestBuildError
from httpchain.models import ClientConfig, RuntimeOption

logger = logging.getLogger(__name__)

SUPPORTED_PROXY_SCHEMES = frozenset({"http", "https", "socks5", "socks5h"})
MAX_REDIRECTS = 10


class ProxyMode(str, Enum):
    """How the proxy for a request is chosen."""

    NONE = "none"
    FIXED = "fixed"
    ENVIRONMENT = "environment"


@dataclass(frozen=True)
class ProxyPolicy:
    mode: ProxyMode
    url: str | None = None


@dataclass(frozen=True)
class TransportSettings:
    """Effective transport settings for one call.

    timeout is None when neither the option nor the config sets one.
    """

    timeout: float | None
    verify: bool
    proxy: ProxyPolicy


def resolve_timeout(config: ClientConfig, option: RuntimeOption) -> float | None:
    if option.timeout > 0:
        return option.timeout
    if config.timeout > 0:
        return config.timeout
    return None


def resolve_proxy(config: ClientConfig, option: RuntimeOption) -> ProxyPolicy:
    if option.no_proxy:
        return ProxyPolicy(ProxyMode.NONE)
    if option.proxy:
        return ProxyPolicy(ProxyMode.FIXED, option.proxy)
    if config.no_proxy:
        return ProxyPolicy(ProxyMode.NONE)
    if config.proxy:
        return ProxyPolicy(ProxyMode.FIXED, config.proxy)
    return ProxyPolicy(ProxyMode.ENVIRONMENT)


def resolve_transport(config: ClientConfig, option: RuntimeOption) -> TransportSettings:
    """Merge client defaults with a per-call override. Recomputed on every call."""
    return TransportSettings(
        timeout=resolve_timeout(config, option),
        # Skipping verification at either level wins.
        verify=not (config.skip_verify or option.skip_verify),
        proxy=resolve_proxy(config, option),
    )


def parse_proxy_url(value: str) -> httpcore.Proxy:
    """Turn a proxy URL into an httpcore.Proxy, moving userinfo into proxy auth.

    Raises:
        RequestBuildError: If the URL is malformed or uses an unsupported scheme.
    """
    if "://" not in value:
        value = f"http://{value}"
    try:
        url = httpx.URL(value)
    except httpx.InvalidURL as e:
        raise RequestBuildError(f"Invalid proxy URL {value!r}: {e}") from e

    if url.scheme not in SUPPORTED_PROXY_SCHEMES:
        raise RequestBuildError(
            f"Unsupported proxy scheme {url.scheme!r} in {value!r}. "
            f"Supported: {', '.join(sorted(SUPPORTED_PROXY_SCHEMES))}"
        )
    if not url.host:
        raise RequestBuildError(f"Proxy URL {value!r} has no host")

    auth = (url.username, url.password) if url.username else None
    return httpcore.Proxy(
        url=httpcore.URL(scheme=url.raw_scheme, host=url.raw_host, port=url.port, target=b"/"),
        auth=auth,
    )


def _is_loopback(host: str) -> bool:
    if host == "localhost" or host.endswith(".localhost"):
        return True
    try:
        return ipaddress.ip_address(host).is_loopback
    except ValueError:
        return False


def environment_proxy(url: httpx.URL) -> str | None:
    """Proxy URL the environment selects for *url*, or None for a direct connection.

    Loopback targets are never proxied.
    """
    if _is_loopback(url.host):
        return None
    proxies = urllib.request.getproxies()
    proxy = proxies.get(url.scheme) or proxies.get("all")
    if not proxy:
        return None
    if urllib.request.proxy_bypass(url.host):
        return None
    return proxy


# Most specific first; the first isinstance match wins.
_HTTPCORE_ERRORS: tuple[tuple[type[Exception], type[httpx.HTTPError]], ...] = (
    (httpcore.ConnectTimeout, httpx.ConnectTimeout),
    (httpcore.ReadTimeout, httpx.ReadTimeout),
    (httpcore.WriteTimeout, httpx.WriteTimeout),
    (httpcore.PoolTimeout, httpx.PoolTimeout),
    (httpcore.TimeoutException, httpx.TimeoutException),
    (httpcore.ConnectError, httpx.ConnectError),
    (httpcore.ReadError, httpx.ReadError),
    (httpcore.WriteError, httpx.WriteError),
    (httpcore.NetworkError, httpx.NetworkError),
    (httpcore.ProxyError, httpx.ProxyError),
    (httpcore.UnsupportedProtocol, httpx.UnsupportedProtocol),
    (httpcore.LocalProtocolError, httpx.LocalProtocolError),
    (httpcore.RemoteProtocolError, httpx.RemoteProtocolError),
    (httpcore.ProtocolError, httpx.ProtocolError),
)


@contextlib.contextmanager
def _httpx_errors() -> Iterator[None]:
    """Re-raise httpcore exceptions as their httpx equivalents."""
    try:
        yield
    except Exception as e:
        for source, target in _HTTPCORE_ERRORS:
            if isinstance(e, source):
                raise target(str(e)) from e
        raise


class _BodyStream(httpx.SyncByteStream):
    def __init__(self, stream: httpcore.Response) -> None:
        self._stream = stream

    def __iter__(self) -> Iterator[bytes]:
        with _httpx_errors():
            yield from self._stream.iter_stream()

    def close(self) -> None:
        self._stream.close()


class CallTransport(httpx.BaseTransport):
    """httpx transport bound to one call's TransportSettings.

    Holds one httpcore pool per distinct proxy (None = direct); with an
    environment proxy policy the proxy is chosen per request, so redirects to
    another host may switch pools.
    """

    def __init__(
        self,
        settings: TransportSettings,
        network_backend: httpcore.NetworkBackend | None = None,
    ) -> None:
        self._settings = settings
        self._network_backend = network_backend
        self._ssl_context = httpx.create_ssl_context(verify=settings.verify)
        self._pools: dict[str | None, httpcore.ConnectionPool] = {}

        if settings.proxy.mode is ProxyMode.FIXED:
            if not settings.proxy.url:
                raise RequestBuildError("Fixed proxy policy has no proxy URL")
            # Fail before any I/O on a bad proxy URL.
            parse_proxy_url(settings.proxy.url)

    @property
    def settings(self) -> TransportSettings:
        return self._settings

    def proxy_for(self, url: httpx.URL) -> str | None:
        policy = self._settings.proxy
        if policy.mode is ProxyMode.NONE:
            return None
        if policy.mode is ProxyMode.FIXED:
            return policy.url
        return environment_proxy(url)

    def _pool_for(self, proxy_url: str | None) -> httpcore.ConnectionPool:
        pool = self._pools.get(proxy_url)
        if pool is None:
            pool = httpcore.ConnectionPool(
                ssl_context=self._ssl_context,
                proxy=parse_proxy_url(proxy_url) if proxy_url else None,
                network_backend=self._network_backend,
            )
            self._pools[proxy_url] = pool
        return pool

    def handle_request(self, request: httpx.Request) -> httpx.Response:
        if not isinstance(request.stream, httpx.SyncByteStream):
            raise TypeError("CallTransport only sends synchronous request bodies")
        proxy_url = self.proxy_for(request.url)
        logger.debug("%s %s via %s", request.method, request.url, proxy_url or "direct connection")

        core_request = httpcore.Request(
            method=request.method,
            url=httpcore.URL(
                scheme=request.url.raw_scheme,
                host=request.url.raw_host,
                port=request.url.port,
                target=request.url.raw_path,
            ),
            headers=request.headers.raw,
            content=request.stream,
            extensions=request.extensions,
        )
        with _httpx_errors():
            core_response = self._pool_for(proxy_url).handle_request(core_request)

        return httpx.Response(
            status_code=core_response.status,
            headers=core_response.headers,
            stream=_BodyStream(core_response),
            extensions=core_response.extensions,
        )

    def close(self) -> None:
        for pool in self._pools.values():
            pool.close()
        self._pools.clear()


def build_http_client(
    settings: TransportSettings,
    network_backend: httpcore.NetworkBackend | None = None,
) -> httpx.Client:
    """Build the private httpx.Client used by exactly one call.

    Redirects are followed (up to MAX_REDIRECTS). trust_env is off because
    CallTransport already applies the environment proxy policy itself.
    """
    return httpx.Client(
        transport=CallTransport(settings, network_backend),
        timeout=settings.timeout,
        follow_redirects=True,
        max_redirects=MAX_REDIRECTS,
        trust_env=False,
    )
