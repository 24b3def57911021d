"""
Proxy service - forwards verified, authorized requests to upstream APIs.
"""
from __future__ import annotations

import asyncio
import json
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

import httpx

from htmz_proxy.config import PROXY_VERSION
from htmz_proxy.errors import InternalError, ProxyError, UpstreamError
from htmz_proxy.logging import get_logger

logger = get_logger(__name__)

# Methods that carry a request body upstream
BODY_METHODS = frozenset({"POST", "PUT", "PATCH"})

# Caller headers that are never forwarded
SKIP_REQUEST_HEADERS = frozenset({
    "host", "content-length", "connection", "keep-alive", "transfer-encoding",
    "te", "trailers", "upgrade", "proxy-authorization", "x-signature",
})

# Upstream response headers that are not relayed in the envelope metadata
SKIP_RESPONSE_HEADERS = frozenset({
    "connection", "keep-alive", "transfer-encoding", "content-encoding",
    "te", "trailers", "upgrade", "set-cookie",
})

DEFAULT_USER_AGENT = f"htmz-proxy/{PROXY_VERSION}"
CONNECT_TIMEOUT = 10.0


@dataclass(frozen=True)
class OutboundRequest:
    """The call about to be made upstream, after credential injection."""
    method: str
    url: str
    headers: Dict[str, str] = field(default_factory=dict)
    body: Any = None


@dataclass
class UpstreamResponse:
    """Decoded upstream response plus timing."""
    status_code: int
    reason_phrase: str
    headers: Dict[str, str]
    content_type: str
    data: Any
    duration_ms: float
    bytes_sent: int
    bytes_received: int

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300


def build_outbound_request(url: str, method: str, headers: Dict[str, str], body: Any) -> OutboundRequest:
    """Sanitize the caller's headers and add the proxy's User-Agent."""
    outbound = {k: v for k, v in headers.items() if k.lower() not in SKIP_REQUEST_HEADERS}
    if not any(k.lower() == "user-agent" for k in outbound):
        outbound["User-Agent"] = DEFAULT_USER_AGENT
    return OutboundRequest(method=method.upper(), url=url, headers=outbound, body=body)


def encode_body(request: OutboundRequest) -> Tuple[Optional[bytes], Dict[str, str]]:
    """
    Encode the outbound body for methods that carry one.

    Strings are sent as-is; other JSON values are serialized and get a JSON
    content type unless the caller already set one.
    """
    headers = dict(request.headers)
    if request.method not in BODY_METHODS or request.body is None:
        return None, headers

    if isinstance(request.body, str):
        return request.body.encode("utf-8"), headers

    if not any(k.lower() == "content-type" for k in headers):
        headers["Content-Type"] = "application/json"
    return json.dumps(request.body, ensure_ascii=False).encode("utf-8"), headers


def decode_response(response: httpx.Response) -> Any:
    """Decode as JSON when the content type says so and the body parses, else as text."""
    content_type = response.headers.get("content-type", "").lower()
    if "application/json" in content_type or "+json" in content_type:
        try:
            return response.json()
        except ValueError:
            logger.debug("Upstream declared JSON but body did not parse, returning text")
    return response.text


def _filter_response_headers(headers: httpx.Headers) -> Dict[str, str]:
    return {k: v for k, v in headers.items() if k.lower() not in SKIP_RESPONSE_HEADERS}


def map_upstream_error(error: Exception, url: str) -> ProxyError:
    """Map transport errors to UpstreamError, everything else to InternalError."""
    host = httpx.URL(url).host
    if isinstance(error, (httpx.TimeoutException, asyncio.TimeoutError)):
        logger.error(f"Timeout calling upstream {host}")
        return UpstreamError(f"Upstream API {host} timed out", "UPSTREAM_TIMEOUT")

    if isinstance(error, httpx.RequestError):
        logger.error(f"Connection error to upstream {host}: {type(error).__name__}")
        return UpstreamError(f"Failed to reach upstream API {host}")

    logger.opt(exception=error).error(f"Unexpected error forwarding request to {host}")
    return InternalError()


async def forward_request(
    request: OutboundRequest,
    client: httpx.AsyncClient,
    timeout: float,
) -> UpstreamResponse:
    """
    Send the request upstream and decode the response.

    Args:
        request: The outbound request, credentials already applied
        client: Shared HTTP client for connection pooling
        timeout: Total timeout for this call in seconds

    Returns:
        The decoded upstream response with wall-clock duration

    Raises:
        UpstreamError: Network, DNS, TLS or timeout failure talking upstream
        InternalError: Anything else
    """
    content, headers = encode_body(request)

    async def send() -> Tuple[httpx.Response, Any]:
        response = await client.request(
            request.method,
            request.url,
            content=content,
            headers=headers,
            timeout=httpx.Timeout(timeout, connect=min(CONNECT_TIMEOUT, timeout)),
            follow_redirects=False,
        )
        return response, decode_response(response)

    start_time = time.perf_counter()
    try:
        # httpx timeouts apply per read, so a trickling body needs an overall cap
        response, data = await asyncio.wait_for(send(), timeout)
    except Exception as e:
        raise map_upstream_error(e, request.url) from e
    duration_ms = (time.perf_counter() - start_time) * 1000

    return UpstreamResponse(
        status_code=response.status_code,
        reason_phrase=response.reason_phrase,
        headers=_filter_response_headers(response.headers),
        content_type=response.headers.get("content-type", ""),
        data=data,
        duration_ms=duration_ms,
        bytes_sent=len(content or b""),
        bytes_received=len(response.content),
    )
