import logging
from typing import AsyncIterator, Dict, List, Optional, Set
from urllib.parse import urlsplit, urlunsplit

import httpx
from fastapi import Request
from fastapi.responses import PlainTextResponse, Response, StreamingResponse

from datasources import Datasource

logger = logging.getLogger(__name__)

# Headers that apply to a single connection and must not be relayed
HOP_BY_HOP_HEADERS = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "proxy-connection",
    "te",
    "trailer",
    "trailers",
    "transfer-encoding",
    "upgrade",
}

# Set by httpx from the target URL and body; kept on outbound requests
REQUEST_FRAMING_HEADERS = {"host", "content-length", "transfer-encoding"}


def single_joining_slash(a: str, b: str) -> str:
    """Join two URL paths with exactly one slash between them."""
    a_slash = a.endswith("/")
    b_slash = b.startswith("/")
    if a_slash and b_slash:
        return a + b[1:]
    if not a_slash and not b_slash:
        return a + "/" + b
    return a + b


def target_url(base: str, path: str, raw_query: str = "") -> str:
    """
    Build the upstream URL for a proxied request.

    Args:
        base: Datasource URL, possibly with a path prefix and its own query
        path: Path of the inbound request
        raw_query: Undecoded query string of the inbound request

    Returns:
        str: base with path appended and both queries joined by "&"
    """
    parts = urlsplit(base)
    query = parts.query
    if query and raw_query:
        query = f"{query}&{raw_query}"
    elif raw_query:
        query = raw_query
    return urlunsplit((parts.scheme, parts.netloc, single_joining_slash(parts.path, path), query, ""))


def raw_path(request: Request) -> str:
    """Inbound path exactly as the client sent it, without percent-decoding."""
    raw = request.scope.get("raw_path")
    if raw:
        return raw.split(b"?", 1)[0].decode("latin-1")
    return request.url.path


def _connection_tokens(values: List[str]) -> Set[str]:
    """Header names listed in Connection are hop-by-hop too."""
    tokens = set()
    for value in values:
        tokens.update(t.strip().lower() for t in value.split(",") if t.strip())
    return tokens


def _outbound_headers(request: Request) -> Dict[str, str]:
    skip = HOP_BY_HOP_HEADERS | _connection_tokens(request.headers.getlist("connection")) | {"host", "content-length"}
    headers = {}
    for name, value in request.headers.items():
        if name in skip:
            continue
        headers[name] = value

    if request.client is not None:
        prior = headers.get("x-forwarded-for")
        headers["x-forwarded-for"] = f"{prior}, {request.client.host}" if prior else request.client.host
    return headers


def _relayed_headers(headers: httpx.Headers) -> Dict[str, str]:
    skip = HOP_BY_HOP_HEADERS | _connection_tokens(headers.get_list("connection"))
    return {name: value for name, value in headers.items() if name.lower() not in skip}


def _drop_client_defaults(upstream_request: httpx.Request, headers: Dict[str, str]) -> None:
    """Remove headers httpx added on its own, such as Accept-Encoding and User-Agent."""
    for name in list(upstream_request.headers.keys()):
        if name not in headers and name not in REQUEST_FRAMING_HEADERS:
            del upstream_request.headers[name]


async def _relay(upstream: httpx.Response) -> AsyncIterator[bytes]:
    try:
        async for chunk in upstream.aiter_raw():
            yield chunk
    finally:
        await upstream.aclose()


async def forward(
    client: httpx.AsyncClient,
    ds: Datasource,
    request: Request,
    body: Optional[bytes] = None,
) -> Response:
    """
    Proxy the inbound request to a datasource and stream its response back.

    The method, path, query string, headers and body are kept as they are;
    only the address changes. The upstream status, headers and raw body bytes
    are relayed unchanged. A transport failure becomes a 502.

    Args:
        client: Shared HTTP client
        ds: Datasource selected for the request
        request: Inbound request
        body: Request body, if it was already read by the caller
    """
    url = target_url(ds.url, raw_path(request), request.scope.get("query_string", b"").decode("latin-1"))
    if body is None and request.method not in ("GET", "HEAD"):
        body = await request.body()

    headers = _outbound_headers(request)
    upstream_request = client.build_request(
        request.method,
        url,
        headers=headers,
        content=body or None,
    )
    _drop_client_defaults(upstream_request, headers)
    try:
        upstream = await client.send(upstream_request, stream=True)
    except httpx.RequestError as e:
        logger.error("proxy error: %s %s: %s", request.method, url, e)
        return PlainTextResponse(f"Bad gateway: {e}\n", status_code=502)

    return StreamingResponse(
        _relay(upstream),
        status_code=upstream.status_code,
        headers=_relayed_headers(upstream.headers),
    )
