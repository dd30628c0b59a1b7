"""CLI entry point for httpchain.

A small curl-like harness around Client: sends one request, prints the body to
stdout, and optionally the connection phase trace to stderr.

Examples:
    httpchain https://example.com --trace
    httpchain -X POST --json '{"a": 1}' --base-url https://api.example.com /items
    httpchain --config client.yaml /status -q verbose=1 -v
"""

from __future__ import annotations

import argparse
import json
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import TextIO

from httpchain.client import CONTENT_FORM, CONTENT_JSON, Client
from httpchain.config_loader import ConfigError, load_client_config
from httpchain.errors import CallError
from httpchain.interceptors import logging_interceptor, trace_interceptor
from httpchain.logging_config import setup_logging
from httpchain.models import ClientConfig, Request, RuntimeOption, Trace

EXIT_OK = 0
EXIT_CALL_FAILED = 1
EXIT_USAGE = 2


def positive_float(value: str) -> float:
    """Parse and validate a positive float value.

    Raises:
        argparse.ArgumentTypeError: If value is not a positive number.
    """
    try:
        result = float(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Invalid number '{value}'.")
    if result <= 0:
        raise argparse.ArgumentTypeError(f"Value must be positive, got {result}.")
    return result


def parse_header(value: str) -> tuple[str, str]:
    """Parse 'Name: value'.

    Raises:
        argparse.ArgumentTypeError: If there is no colon or the name is empty.
    """
    name, sep, header_value = value.partition(":")
    if not sep or not name.strip():
        raise argparse.ArgumentTypeError(
            f"Invalid header '{value}'. Expected 'Name: value' (e.g., 'Accept: application/json')"
        )
    return name.strip(), header_value.strip()


def parse_query_param(value: str) -> tuple[str, str]:
    """Parse 'key=value'.

    Raises:
        argparse.ArgumentTypeError: If there is no '=' or the key is empty.
    """
    key, sep, param_value = value.partition("=")
    if not sep or not key:
        raise argparse.ArgumentTypeError(
            f"Invalid query parameter '{value}'. Expected key=value (e.g., 'page=2')"
        )
    return key, param_value


def json_document(value: str) -> str:
    """Validate that *value* is a JSON document and return it unchanged."""
    try:
        json.loads(value)
    except json.JSONDecodeError as e:
        raise argparse.ArgumentTypeError(f"Invalid JSON: {e}")
    return value


@dataclass
class CallArgs:
    """Parsed command-line arguments."""

    url: str
    method: str
    headers: list[tuple[str, str]] = field(default_factory=list)
    query: list[tuple[str, str]] = field(default_factory=list)
    data: str | None = None
    json_body: str | None = None
    config: Path | None = None
    base_url: str | None = None
    timeout: float | None = None
    proxy: str | None = None
    no_proxy: bool = False
    insecure: bool = False
    trace: bool = False
    include: bool = False
    verbose: bool = False
    log_file: Path | None = None


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="httpchain",
        description="Send one HTTP request through httpchain and print the response body.",
    )
    parser.add_argument("url", help="URL, or a path joined to --base-url / the config's base_url")
    parser.add_argument("-X", "--method", default=None, help="HTTP method (default: GET, or POST with a body)")
    parser.add_argument(
        "-H", "--header", dest="headers", action="append", type=parse_header, default=[],
        metavar="'NAME: VALUE'", help="Request header (repeatable)",
    )
    parser.add_argument(
        "-q", "--query", action="append", type=parse_query_param, default=[],
        metavar="KEY=VALUE", help="Query parameter, overrides the URL's value for KEY (repeatable)",
    )

    body_group = parser.add_mutually_exclusive_group()
    body_group.add_argument("-d", "--data", default=None, help="Form-encoded request body")
    body_group.add_argument("--json", dest="json_body", type=json_document, default=None,
                            help="JSON request body")

    parser.add_argument("--config", type=Path, default=None, help="YAML client config file")
    parser.add_argument("--base-url", default=None, help="Base URL (overrides the config file)")
    parser.add_argument("--timeout", type=positive_float, default=None, help="Call timeout in seconds")

    proxy_group = parser.add_mutually_exclusive_group()
    proxy_group.add_argument("--proxy", default=None, help="Proxy URL for this call")
    proxy_group.add_argument("--no-proxy", action="store_true", help="Bypass all proxies")

    parser.add_argument("-k", "--insecure", action="store_true", help="Skip TLS certificate validation")
    parser.add_argument("--trace", action="store_true", help="Print connection phase timings to stderr")
    parser.add_argument("-i", "--include", action="store_true", help="Print status line and headers")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging to stderr")
    parser.add_argument("--log-file", type=Path, default=None, help="Also log (at DEBUG) to this file")
    return parser


def parse_args(args: list[str] | None = None) -> CallArgs:
    """Parse command-line arguments into CallArgs.

    Raises:
        SystemExit: If arguments are invalid (argparse behavior).
    """
    namespace = build_parser().parse_args(args)
    method = namespace.method
    if method is None:
        method = "POST" if namespace.data is not None or namespace.json_body is not None else "GET"
    return CallArgs(
        url=namespace.url,
        method=method.upper(),
        headers=namespace.headers,
        query=namespace.query,
        data=namespace.data,
        json_body=namespace.json_body,
        config=namespace.config,
        base_url=namespace.base_url,
        timeout=namespace.timeout,
        proxy=namespace.proxy,
        no_proxy=namespace.no_proxy,
        insecure=namespace.insecure,
        trace=namespace.trace,
        include=namespace.include,
        verbose=namespace.verbose,
        log_file=namespace.log_file,
    )


def build_config(args: CallArgs) -> ClientConfig:
    """Client config from --config (if any), with --base-url, -v and --trace applied.

    Raises:
        ConfigError: If the config file cannot be loaded.
    """
    config = load_client_config(args.config) if args.config else ClientConfig()
    if args.base_url is not None:
        config = config.model_copy(update={"base_url": args.base_url})
    extra = []
    if args.verbose and logging_interceptor not in config.interceptors:
        extra.append(logging_interceptor)
    if args.trace and trace_interceptor not in config.interceptors:
        extra.append(trace_interceptor)
    return config.with_interceptors(*extra)


def build_request(args: CallArgs) -> Request:
    headers: dict[str, list[str]] = {}
    for name, value in args.headers:
        headers.setdefault(name, []).append(value)

    body: bytes | None = None
    content_type: str | None = None
    if args.json_body is not None:
        body, content_type = args.json_body.encode("utf-8"), CONTENT_JSON
    elif args.data is not None:
        body, content_type = args.data.encode("utf-8"), CONTENT_FORM
    if content_type and not any(name.lower() == "content-type" for name in headers):
        headers["Content-Type"] = [content_type]

    return Request(
        method=args.method,
        uri=args.url,
        headers=headers,
        query=dict(args.query),
        body=body,
        runtime_option=RuntimeOption(
            timeout=args.timeout or 0.0,
            proxy=args.proxy,
            no_proxy=args.no_proxy,
            skip_verify=args.insecure,
        ),
    )


def format_trace(trace: Trace) -> str:
    rows = [
        ("DNS lookup", trace.dns),
        ("TCP connect", trace.connect),
        ("TLS handshake", trace.tls_handshake),
        ("Download", trace.download),
        ("Total", trace.total),
    ]
    return "\n".join(f"{label:<14} {seconds * 1000:9.2f} ms" for label, seconds in rows)


def run_call(args: CallArgs, stdout: TextIO, stderr: TextIO) -> int:
    """Send the request described by *args*. Returns the process exit code."""
    try:
        config = build_config(args)
    except ConfigError as e:
        print(f"Error: {e}", file=stderr)
        return EXIT_USAGE

    try:
        response = Client(config).do(build_request(args))
    except CallError as e:
        print(f"Error: {e}", file=stderr)
        if args.trace and e.response is not None and e.response.trace is not None:
            print(format_trace(e.response.trace), file=stderr)
        return EXIT_CALL_FAILED

    if args.include and response.http_response is not None:
        http_response = response.http_response
        print(f"{http_response.http_version} {http_response.status_code} "
              f"{http_response.reason_phrase}", file=stdout)
        for name, value in http_response.headers.multi_items():
            print(f"{name}: {value}", file=stdout)
        print(file=stdout)

    stdout.write(response.text)
    stdout.flush()

    if args.trace and response.trace is not None:
        print(format_trace(response.trace), file=stderr)
    return EXIT_OK


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    args = parse_args(argv)
    setup_logging(level="DEBUG" if args.verbose else "WARNING", log_file=args.log_file)
    try:
        return run_call(args, sys.stdout, sys.stderr)
    except KeyboardInterrupt:
        print("\nInterrupted", file=sys.stderr)
        return EXIT_CALL_FAILED


if __name__ == "__main__":
    sys.exit(main())
