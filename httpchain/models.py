"""Data models for httpchain calls.

All models use Pydantic v2. ClientConfig and RuntimeOption are frozen value
objects; Request, Response and Trace are mutable so interceptors can edit them
while a call is in flight.
"""

from __future__ import annotations

import json
import xml.etree.ElementTree as ET
from typing import Any, Callable, TypeVar

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from httpchain.cancel import CancelScope
from httpchain.errors import BodyError
from httpchain.xml_body import xml_to_dict

ModelT = TypeVar("ModelT", bound=BaseModel)

# Callable[[Context], None]; see httpchain.context for the precise alias.
Interceptor = Callable[[Any], None]


# =============================================================================
# Configuration
# =============================================================================


class RuntimeOption(BaseModel):
    """Per-call transport overrides. Each field merges with ClientConfig.

    See httpchain.transport.resolve_transport for the merge rules.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    timeout: float = Field(default=0.0, ge=0, description="Call timeout in seconds (0 = not set)")
    proxy: str | None = Field(default=None, description="Fixed proxy URL for this call")
    no_proxy: bool = Field(default=False, description="Bypass every proxy for this call")
    skip_verify: bool = Field(default=False, description="Skip TLS certificate validation")


class ClientConfig(BaseModel):
    """Client defaults, snapshotted at the start of every call.

    Interceptors run in tuple order; the order is never changed. A config
    without a proxy and without no_proxy falls back to the proxy environment
    variables.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    base_url: str = Field(default="", description="Prefix joined with Request.uri")
    user_agent: str | None = Field(default=None, description="User-Agent when the request sets none")
    timeout: float = Field(default=0.0, ge=0, description="Default call timeout in seconds (0 = none)")
    proxy: str | None = Field(default=None, description="Default fixed proxy URL")
    no_proxy: bool = Field(default=False, description="Disable proxies by default")
    skip_verify: bool = Field(default=False, description="Skip TLS certificate validation")
    interceptors: tuple[Interceptor, ...] = Field(
        default=(), description="Interceptors in execution order"
    )

    def with_interceptors(self, *interceptors: Interceptor) -> ClientConfig:
        """Return a copy with *interceptors* appended after the existing ones."""
        return self.model_copy(update={"interceptors": self.interceptors + tuple(interceptors)})


# =============================================================================
# Call envelope
# =============================================================================


class Request(BaseModel):
    """One call as described by the caller.

    Header values are lists to support repeated headers; a plain string value
    is accepted and wrapped. Query values are single strings and overwrite
    whatever the resolved URL already carries for that key.
    """

    model_config = ConfigDict(extra="forbid", arbitrary_types_allowed=True)

    method: str = Field(default="GET", description="HTTP method")
    headers: dict[str, list[str]] = Field(default_factory=dict, description="Header multimap")
    uri: str = Field(default="", description="Path joined to base_url, or a full URL")
    query: dict[str, str] = Field(default_factory=dict, description="Query overlay")
    # bytes, str, an iterable of bytes, or None
    body: Any = Field(default=None, description="Request body")
    cancel_scope: CancelScope | None = Field(default=None, description="Cancellation/deadline handle")
    runtime_option: RuntimeOption = Field(default_factory=RuntimeOption)

    @field_validator("headers", mode="before")
    @classmethod
    def wrap_single_values(cls, value: Any) -> Any:
        if isinstance(value, dict):
            return {k: [v] if isinstance(v, str) else v for k, v in value.items()}
        return value

    def header(self, name: str) -> str | None:
        """First value of header *name* (case-insensitive), or None."""
        lower = name.lower()
        for key, values in self.headers.items():
            if key.lower() == lower and values:
                return values[0]
        return None


class Trace(BaseModel):
    """Connection phase durations in seconds.

    Phases that did not happen (no DNS lookup for a literal IP, no TLS for
    plain HTTP, no response bytes on failure) stay at 0.0.
    """

    dns: float = 0.0
    tls_handshake: float = 0.0
    connect: float = 0.0
    download: float = 0.0
    total: float = 0.0


class Response(BaseModel):
    """The result of one call: raw body bytes plus back references.

    http_request/http_response are the native httpx objects actually sent and
    received. They stay None when an interceptor short-circuits the chain.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    body: bytes = b""
    request: Request | None = None
    http_request: httpx.Request | None = None
    http_response: httpx.Response | None = None
    trace: Trace | None = None

    @property
    def status_code(self) -> int | None:
        if self.http_response is None:
            return None
        return self.http_response.status_code

    @property
    def headers(self) -> httpx.Headers:
        if self.http_response is None:
            return httpx.Headers()
        return self.http_response.headers

    @property
    def text(self) -> str:
        # httpx falls back to utf-8 when the charset is missing or unknown.
        encoding = self.http_response.encoding if self.http_response is not None else None
        return self.body.decode(encoding or "utf-8", errors="replace")

    def json(self, model: type[ModelT] | None = None) -> Any:
        """Decode the body as JSON, optionally into a Pydantic model.

        Raises:
            BodyError: If the body is not valid JSON or does not fit *model*.
        """
        try:
            if model is not None:
                return model.model_validate_json(self.body)
            return json.loads(self.body)
        except (ValueError, ValidationError) as e:
            raise BodyError(f"Cannot decode JSON body: {e}", response=self) from e

    def xml(
        self,
        model: type[ModelT] | None = None,
        force_list: set[str] | None = None,
    ) -> Any:
        """Decode the body as XML.

        Without *model* returns the dict produced by xml_to_dict (root tag as
        the single key). With *model*, the root element's content is validated
        into the model, so child element names map to field names.

        Raises:
            BodyError: If the body is not well-formed XML or does not fit *model*.
        """
        try:
            data = xml_to_dict(self.body, force_list=force_list)
        except ET.ParseError as e:
            raise BodyError(f"Cannot decode XML body: {e}", response=self) from e

        if model is None:
            return data

        root_value = next(iter(data.values()))
        try:
            return model.model_validate(root_value)
        except ValidationError as e:
            raise BodyError(f"XML body does not match {model.__name__}: {e}", response=self) from e
