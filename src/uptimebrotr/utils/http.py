"""HTTP utilities for UptimeBrotr.

Provides session construction (browser User-Agent, optional proxy),
bounded body reads to prevent memory exhaustion from oversized payloads,
and JSON/NDJSON/text fetch helpers whose failures carry a short, readable
excerpt of what the endpoint actually returned.

Note:
    This module sits in the ``utils`` layer and depends only on stdlib,
    third-party libraries (``aiohttp``, ``aiohttp_socks``) and
    [uptimebrotr.exceptions][]. It is importable from ``core``, ``probes``
    and ``services`` without violating the diamond DAG.

See Also:
    [TargetRegistry][uptimebrotr.core.registry.TargetRegistry]: Fetches
        descriptor documents with [fetch_json][uptimebrotr.utils.http.fetch_json].
    [KuboClient][uptimebrotr.utils.kubo.KuboClient]: Node RPC client built
        on the same helpers.
"""

from __future__ import annotations

import json
import re
from typing import Any

import aiohttp
from aiohttp_socks import ProxyConnector

from uptimebrotr.exceptions import ConnectivityError


USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/102.0.5005.63 Safari/537.36"
)
DEFAULT_MAX_SIZE = 10 * 1024 * 1024
DEFAULT_TIMEOUT = 60.0
EXCERPT_LENGTH = 300

_TAG_RE = re.compile(r"<(script|style)\b.*?</\1>|<[^>]+>", re.IGNORECASE | re.DOTALL)
_WHITESPACE_RE = re.compile(r"\s*\n\s*")


def create_session(
    proxy_url: str | None = None,
    timeout: float = DEFAULT_TIMEOUT,  # noqa: ASYNC109
) -> aiohttp.ClientSession:
    """Create a client session with the monitor's default headers.

    Args:
        proxy_url: Optional ``http://``, ``socks5://`` proxy URL. When set,
            every request goes through an ``aiohttp_socks.ProxyConnector``.
        timeout: Default total timeout for each request, in seconds.

    Returns:
        A new ``aiohttp.ClientSession``. The caller owns and closes it.
    """
    connector: aiohttp.BaseConnector
    if proxy_url:
        connector = ProxyConnector.from_url(proxy_url)
    else:
        connector = aiohttp.TCPConnector()
    return aiohttp.ClientSession(
        connector=connector,
        headers={"User-Agent": USER_AGENT},
        timeout=aiohttp.ClientTimeout(total=timeout),
    )


async def read_bounded(response: aiohttp.ClientResponse, max_size: int) -> bytes:
    """Read an entire response body with size enforcement.

    Accumulates chunks from the response stream until EOF or the size limit
    is exceeded. Unlike a single ``response.content.read(n)`` call, this
    correctly handles chunked transfer-encoding where a single read may
    return fewer bytes than requested even when more data is available.

    Raises:
        ValueError: If the response body exceeds *max_size*.
    """
    chunks: list[bytes] = []
    total = 0
    while True:
        chunk = await response.content.read(max_size + 1 - total)
        if not chunk:
            break
        total += len(chunk)
        if total > max_size:
            raise ValueError(f"Response body too large: >{max_size} bytes")
        chunks.append(chunk)
    return b"".join(chunks)


def excerpt(text: str, length: int = EXCERPT_LENGTH) -> str:
    """Return a single-line excerpt of *text* with HTML markup removed.

    Used in error messages so a gateway's HTML error page reads as its
    visible text rather than as markup.
    """
    stripped = _TAG_RE.sub(" ", text) if "<" in text else text
    return _WHITESPACE_RE.sub(" ", stripped.strip())[:length]


def parse_json_body(body: bytes) -> Any:
    """Parse a JSON body.

    Raises:
        ConnectivityError: ``failed fetching got response '<excerpt>'`` if
            the body is not valid JSON.
    """
    text = body.decode("utf-8", errors="replace")
    try:
        return json.loads(text)
    except json.JSONDecodeError as e:
        raise ConnectivityError(f"failed fetching got response '{excerpt(text)}'") from e


async def fetch_text(
    session: aiohttp.ClientSession,
    url: str,
    *,
    max_size: int = DEFAULT_MAX_SIZE,
    timeout: float | None = None,  # noqa: ASYNC109
) -> str:
    """GET *url* and return the body as text, whatever the status code."""
    request_timeout = aiohttp.ClientTimeout(total=timeout) if timeout else None
    async with session.get(url, timeout=request_timeout) as response:
        body = await read_bounded(response, max_size)
    return body.decode("utf-8", errors="replace")


async def fetch_json(
    session: aiohttp.ClientSession,
    url: str,
    *,
    method: str = "GET",
    payload: Any = None,
    max_size: int = DEFAULT_MAX_SIZE,
    timeout: float | None = None,  # noqa: ASYNC109
) -> Any:
    """Request *url* and parse the body as JSON.

    The status code is not checked: gateways and routers frequently answer
    errors with a JSON or HTML body, and the body is what decides success.

    Args:
        session: Client session (see [create_session][uptimebrotr.utils.http.create_session]).
        url: Request URL.
        method: HTTP method.
        payload: Optional JSON request body.
        max_size: Maximum response size in bytes.
        timeout: Optional per-request total timeout in seconds.

    Raises:
        ConnectivityError: If the body is not valid JSON.
        aiohttp.ClientError: On transport failure.
        ValueError: If the body exceeds *max_size*.
    """
    request_timeout = aiohttp.ClientTimeout(total=timeout) if timeout else None
    async with session.request(
        method,
        url,
        json=payload,
        headers={"Content-Type": "application/json"},
        timeout=request_timeout,
    ) as response:
        body = await read_bounded(response, max_size)
    return parse_json_body(body)


async def fetch_ndjson(
    session: aiohttp.ClientSession,
    url: str,
    *,
    method: str = "POST",
    max_size: int = DEFAULT_MAX_SIZE,
    timeout: float | None = None,  # noqa: ASYNC109
) -> list[Any]:
    """Request *url* and parse a newline-delimited JSON body.

    Node RPC streaming endpoints (``routing/findprovs`` and friends) answer
    with one JSON object per line.

    Raises:
        ConnectivityError: If any non-empty line is not valid JSON.
    """
    request_timeout = aiohttp.ClientTimeout(total=timeout) if timeout else None
    async with session.request(method, url, timeout=request_timeout) as response:
        body = await read_bounded(response, max_size)
    text = body.decode("utf-8", errors="replace")
    try:
        return [json.loads(line) for line in text.split("\n") if line.strip()]
    except json.JSONDecodeError as e:
        raise ConnectivityError(f"failed fetching got response '{excerpt(text)}'") from e
