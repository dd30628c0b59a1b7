"""Mock FastAPI server for httpchain integration tests.

Serves a handful of endpoints that echo what the client actually sent on the
wire, plus endpoints that misbehave on purpose (slow, truncated bodies).
It can be run standalone or spawned as a subprocess by pytest fixtures.

Usage:
    python -m tests.integration.mock_server --port 9999
"""

from __future__ import annotations

import argparse
import asyncio

import uvicorn
from fastapi import FastAPI, Request, Response
from fastapi.responses import RedirectResponse

WIDGETS = {
    "1": {"id": "1", "name": "sprocket", "count": 3},
    "2": {"id": "2", "name": "flange", "count": 0},
}

WIDGET_XML = (
    b'<?xml version="1.0" encoding="UTF-8"?>\n'
    b'<Widget xmlns="urn:example:widgets" id="1">'
    b"<Name>sprocket</Name><Count>3</Count><Tag>a</Tag><Tag>b</Tag>"
    b"</Widget>"
)

app = FastAPI(title="httpchain Integration Test API", version="1.0.0")


# --- Endpoints ---

@app.get("/health")
async def health_check():
    return {"status": "healthy"}


@app.api_route("/echo", methods=["GET", "POST", "PUT", "PATCH", "DELETE"])
async def echo(request: Request):
    """Echo the request line, query, headers (all values) and body."""
    headers: dict[str, list[str]] = {}
    for name, value in request.headers.items():
        headers.setdefault(name.lower(), []).append(value)
    body = await request.body()
    return {
        "method": request.method,
        "path": request.url.path,
        "query_string": request.url.query,
        "headers": headers,
        "body": body.decode("utf-8", errors="replace"),
    }


@app.get("/widgets/{widget_id}")
async def get_widget(widget_id: str, response: Response):
    if widget_id not in WIDGETS:
        response.status_code = 404
        return {"error": "not found", "id": widget_id}
    return WIDGETS[widget_id]


@app.get("/xml/widget")
async def get_widget_xml():
    return Response(content=WIDGET_XML, media_type="application/xml")


@app.get("/slow")
async def slow(delay: float = 1.0):
    await asyncio.sleep(delay)
    return {"slept": delay}


@app.get("/redirect")
async def redirect():
    return RedirectResponse("/widgets/1", status_code=302)


@app.get("/status/{code}")
async def status(code: int):
    return Response(content=f"status {code}".encode(), status_code=code, media_type="text/plain")


@app.get("/truncated")
async def truncated():
    # Declares more bytes than it sends; the server drops the connection.
    return Response(content=b"partial", headers={"Content-Length": "100"}, media_type="text/plain")


@app.get("/latin1")
async def latin1():
    return Response(content="café".encode("iso-8859-1"), media_type="text/plain; charset=iso-8859-1")


# --- Main ---

def main():
    parser = argparse.ArgumentParser(description="Mock server for httpchain tests")
    parser.add_argument("--port", type=int, default=9999, help="Port to listen on")
    parser.add_argument("--host", default="127.0.0.1", help="Host to bind to")
    args = parser.parse_args()

    uvicorn.run(app, host=args.host, port=args.port, log_level="warning")


if __name__ == "__main__":
    main()
