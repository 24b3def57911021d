"""
Proxy router - verifies, authorizes and forwards signed API requests.
"""
from __future__ import annotations

import asyncio
import json
import secrets
import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import httpx
from fastapi import APIRouter, Request, Response
from pydantic import BaseModel, Field, ValidationError

from htmz_proxy.config import PROXY_VERSION, SERVICE_NAME
from htmz_proxy.errors import (
    AuthenticationError,
    AuthorizationError,
    InternalError,
    ProxyError,
    RequestError,
)
from htmz_proxy.logging import get_logger
from htmz_proxy.services.authorizer import is_allowed, origin_of
from htmz_proxy.services.config_loader import ApiProfile
from htmz_proxy.services.credentials import apply_auth, find_profile
from htmz_proxy.services.proxy import (
    OutboundRequest,
    UpstreamResponse,
    build_outbound_request,
    forward_request,
)
from htmz_proxy.services.secret import get_secret
from htmz_proxy.services.security import verify_payload
from htmz_proxy.services.stats import stats_collector
from htmz_proxy.state import ProxySnapshot, app_state

logger = get_logger(__name__)

router = APIRouter(tags=["proxy"])

SIGNATURE_HEADER = "X-Signature"
# Header name used by earlier htmz clients
LEGACY_SIGNATURE_HEADER = "X-HTMZ-Signature"

ALLOWED_METHODS = frozenset({"GET", "POST", "PUT", "PATCH", "DELETE", "HEAD"})

# How often an in-flight upstream call checks whether its caller went away
DISCONNECT_POLL_INTERVAL = 0.25

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
    "Access-Control-Allow-Headers": f"Content-Type, {SIGNATURE_HEADER}, {LEGACY_SIGNATURE_HEADER}",
    "Access-Control-Max-Age": "600",
}


class ProxyRequest(BaseModel):
    """Request descriptor posted by the client. Untrusted until verified."""
    url: str
    method: str
    headers: Dict[str, str] = Field(default_factory=dict)
    body: Any = None


def new_request_id() -> str:
    return f"req_{int(time.time() * 1000)}_{secrets.token_hex(4)}"


async def read_limited_body(request: Request, max_body_size: int) -> bytes:
    """
    Read the request body, refusing anything over the size ceiling.

    Raises:
        RequestError: 400 if the body is too large or empty
    """
    content_length = request.headers.get("content-length")
    if content_length:
        try:
            if int(content_length) > max_body_size:
                raise RequestError("Request body too large", "PAYLOAD_TOO_LARGE")
        except ValueError:
            pass  # Invalid content-length header, the streamed size is checked below

    size = 0
    chunks = []
    async for chunk in request.stream():
        size += len(chunk)
        if size > max_body_size:
            raise RequestError("Request body too large", "PAYLOAD_TOO_LARGE")
        chunks.append(chunk)

    body = b"".join(chunks)
    if not body:
        raise RequestError("Empty request body")
    return body


def parse_descriptor(body: bytes) -> tuple[Dict[str, Any], ProxyRequest]:
    """
    Decode and validate the request descriptor.

    Returns both the raw decoded object (which is what the client signed)
    and the validated model.

    Raises:
        RequestError: 400 on invalid JSON or a malformed descriptor
    """
    try:
        raw = json.loads(body)
    except (ValueError, UnicodeDecodeError):
        raise RequestError("Invalid JSON body")

    if not isinstance(raw, dict):
        raise RequestError("Request body must be a JSON object")

    # \ud800-style escapes decode to strings that cannot be sent on as UTF-8
    try:
        json.dumps(raw, ensure_ascii=False).encode("utf-8")
    except UnicodeEncodeError:
        raise RequestError("Invalid JSON body: unpaired surrogate escape")

    try:
        descriptor = ProxyRequest.model_validate(raw)
    except ValidationError as e:
        first = e.errors()[0]
        location = ".".join(str(part) for part in first["loc"]) or "body"
        raise RequestError(f"Invalid request descriptor: {location}: {first['msg']}")

    if descriptor.method.upper() not in ALLOWED_METHODS:
        raise RequestError(f"Unsupported method: {descriptor.method}")

    return raw, descriptor


def verify_request_signature(request: Request, body: bytes, raw: Dict[str, Any]) -> None:
    """
    Check the request's HMAC signature against the shared secret.

    Raises:
        AuthenticationError: 401 if the signature is missing or invalid
        InternalError: 500 if the secret was never loaded
    """
    signature = request.headers.get(SIGNATURE_HEADER) or request.headers.get(LEGACY_SIGNATURE_HEADER)
    if not signature:
        raise AuthenticationError(f"Missing {SIGNATURE_HEADER} header")

    if not verify_payload(body, raw, signature, get_secret()):
        raise AuthenticationError("Invalid signature")


def authorize_endpoint(url: str, snapshot: ProxySnapshot) -> str:
    """
    Gate the target URL against the allow-list.

    Returns:
        The URL's origin

    Raises:
        AuthorizationError: 403 if the origin is not allowed
    """
    origin = origin_of(url)
    if origin is None or not is_allowed(url, snapshot.allow_list):
        attempted = httpx.URL(url).host if origin else url[:200]
        logger.warning(f"Blocked request to non-allowed endpoint: {attempted}")
        raise AuthorizationError(f"Endpoint not allowed: {origin or 'invalid URL'}")
    return origin


async def forward_unless_disconnected(
    request: Request,
    outbound: OutboundRequest,
    client: httpx.AsyncClient,
    timeout: float,
) -> UpstreamResponse:
    """
    Forward the request, cancelling the upstream call if the caller disconnects.

    Raises:
        UpstreamError / InternalError: from the forwarder
        RequestError: if the caller went away before the upstream answered
    """
    task = asyncio.create_task(forward_request(outbound, client, timeout))
    try:
        while True:
            done, _ = await asyncio.wait({task}, timeout=DISCONNECT_POLL_INTERVAL)
            if done:
                return task.result()
            if await request.is_disconnected():
                task.cancel()
                logger.warning("Caller disconnected, upstream call cancelled")
                raise RequestError("Client disconnected", "CLIENT_DISCONNECTED")
    finally:
        if not task.done():
            task.cancel()


def build_envelope(
    request_id: str,
    received_at: datetime,
    descriptor: ProxyRequest,
    origin: str,
    profile: Optional[ApiProfile],
    upstream: UpstreamResponse,
    total_ms: float,
) -> Dict[str, Any]:
    return {
        "success": True,
        "metadata": {
            "request": {
                "id": request_id,
                "timestamp": received_at.isoformat(),
                "method": descriptor.method.upper(),
                "url": descriptor.url,
            },
            "security": {
                "signature_verified": True,
                "endpoint_allowed": True,
                "origin": origin,
                "api": profile.name if profile else None,
                "auth_type": profile.auth_type if profile else "none",
            },
            "external": {
                "status": upstream.status_code,
                "status_text": upstream.reason_phrase,
                "ok": upstream.ok,
                "content_type": upstream.content_type,
                "headers": upstream.headers,
            },
            "performance": {
                "upstream_ms": round(upstream.duration_ms, 2),
                "total_ms": round(total_ms, 2),
            },
            "proxy": {
                "service": SERVICE_NAME,
                "version": PROXY_VERSION,
                "request_count": app_state.request_count,
            },
        },
        "data": upstream.data,
    }


async def handle_proxy_request(request: Request, request_id: str, snapshot: ProxySnapshot) -> Dict[str, Any]:
    """Run one request through parse, verify, authorize, inject and forward."""
    started = time.perf_counter()
    received_at = datetime.now(timezone.utc)

    body = await read_limited_body(request, snapshot.config.proxy.max_body_size)
    raw, descriptor = parse_descriptor(body)
    verify_request_signature(request, body, raw)
    origin = authorize_endpoint(descriptor.url, snapshot)

    profile = find_profile(descriptor.url, snapshot.config.apis.values())
    outbound = apply_auth(
        build_outbound_request(descriptor.url, descriptor.method, descriptor.headers, descriptor.body),
        profile,
    )

    if app_state.http_client is None:
        logger.error("HTTP client not initialized")
        raise InternalError()

    api_name = profile.name if profile else None
    try:
        upstream = await forward_unless_disconnected(
            request, outbound, app_state.http_client, snapshot.config.proxy.timeout
        )
    except ProxyError:
        await stats_collector.record_failure(api_name)
        raise

    await stats_collector.record_response(
        api=api_name,
        status_code=upstream.status_code,
        bytes_sent=upstream.bytes_sent,
        bytes_received=upstream.bytes_received,
        upstream_ms=upstream.duration_ms,
    )

    total_ms = (time.perf_counter() - started) * 1000
    logger.info(
        f"[{request_id}] {outbound.method} {origin} ({api_name or 'no profile'}) "
        f"-> {upstream.status_code} in {upstream.duration_ms:.1f}ms"
    )
    return build_envelope(request_id, received_at, descriptor, origin, profile, upstream, total_ms)


@router.post(
    "/proxy",
    responses={
        200: {"description": "Upstream answered; its status and body are in the envelope"},
        400: {"description": "Empty, oversized or malformed request descriptor"},
        401: {"description": "Missing or invalid X-Signature header"},
        403: {"description": "Target origin not in the allow-list"},
        500: {"description": "Internal error"},
        502: {"description": "Upstream API unreachable or timed out"},
    },
)
async def proxy(request: Request) -> Dict[str, Any]:
    """
    Forward a signed request descriptor to an allowed upstream API.

    **Headers:**
    - `X-Signature` (required): hex HMAC-SHA256 of the canonical descriptor

    **Request Body:** `{url, method, headers?, body?}`

    **Flow:**
    1. Read and parse the descriptor (size-limited)
    2. Verify the HMAC signature
    3. Check the target origin against the allow-list
    4. Inject the matching API profile's credentials
    5. Forward and wrap the upstream response in an envelope
    """
    app_state.request_count += 1
    request_id = new_request_id()

    snapshot = app_state.snapshot
    if snapshot is None:
        logger.error("No config loaded")
        raise InternalError()

    try:
        return await handle_proxy_request(request, request_id, snapshot)
    except ProxyError as e:
        logger.info(f"[{request_id}] rejected: {e.status_code} {e.error_type}")
        raise
    except Exception as e:
        logger.opt(exception=e).error(f"[{request_id}] unexpected error")
        raise InternalError() from e


@router.options("/{path:path}", include_in_schema=False)
async def preflight(path: str) -> Response:
    """
    Answer OPTIONS for any path. Safe only because the listener is loopback-only.

    Browser preflights never get here, CORSMiddleware answers those. This
    covers OPTIONS without Access-Control-Request-Method, which the
    middleware passes through.
    """
    return Response(status_code=204, headers=CORS_HEADERS)
