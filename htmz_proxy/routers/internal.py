"""
Internal router - secret distribution, template variables, health checks and stats.
"""
import time
from typing import Dict, Optional

from fastapi import APIRouter, Response
from pydantic import BaseModel, Field

from htmz_proxy.config import PROXY_VERSION, SERVICE_NAME
from htmz_proxy.errors import InternalError
from htmz_proxy.logging import get_logger
from htmz_proxy.services.secret import get_secret
from htmz_proxy.services.stats import stats_collector
from htmz_proxy.state import app_state

logger = get_logger(__name__)

router = APIRouter(tags=["internal"])


class HealthResponse(BaseModel):
    """Health check response."""
    status: str = Field(examples=["healthy"])
    service: str = Field(examples=[SERVICE_NAME])
    version: str = Field(examples=[PROXY_VERSION])
    apis_loaded: int = Field(examples=[2], description="Number of API profiles in the live config")


class SecretResponse(BaseModel):
    """Shared HMAC secret for local callers."""
    secret: str = Field(description="Hex-encoded HMAC key")
    ttl: int = Field(examples=[3600], description="Seconds the caller may cache the secret")
    timestamp: int = Field(description="Server time in milliseconds since the epoch")


class ApiStatsResponse(BaseModel):
    """Statistics for a single API profile."""
    request_count: int = Field(examples=[100], description="Calls forwarded to this API")
    upstream_error_count: int = Field(examples=[2], description="Calls that never got an upstream answer")
    non_2xx_count: int = Field(examples=[5], description="Upstream answers outside 2xx")
    error_rate_percent: float = Field(examples=[7.0], description="Share of failed or non-2xx calls")
    bytes_sent: int = Field(examples=[10240], description="Request body bytes sent upstream")
    bytes_received: int = Field(examples=[20480], description="Response body bytes received")
    avg_upstream_ms: float = Field(examples=[45.23], description="Average upstream round trip in milliseconds")
    last_status: Optional[int] = Field(examples=[200], description="Status of the most recent answer")


@router.get("/health", response_model=HealthResponse)
async def health() -> HealthResponse:
    """Health check endpoint."""
    snapshot = app_state.snapshot
    return HealthResponse(
        status="healthy",
        service=SERVICE_NAME,
        version=PROXY_VERSION,
        apis_loaded=len(snapshot.config.apis) if snapshot else 0,
    )


@router.get("/secret", response_model=SecretResponse)
async def secret(response: Response) -> SecretResponse:
    """
    Hand the shared secret to a local caller.

    No further access check: the listener only accepts loopback or
    unix-socket connections. Callers cache the secret for `ttl` seconds.
    """
    snapshot = app_state.snapshot
    if snapshot is None:
        logger.error("Secret requested before startup completed")
        raise InternalError()

    response.headers["Cache-Control"] = "no-store"
    return SecretResponse(
        secret=get_secret().decode("utf-8"),
        ttl=snapshot.config.proxy.secret_ttl,
        timestamp=int(time.time() * 1000),
    )


@router.get("/vars", response_model=Dict[str, str])
async def template_vars() -> Dict[str, str]:
    """Template variables from the [template_vars] config section."""
    snapshot = app_state.snapshot
    if snapshot is None:
        logger.error("No config loaded")
        raise InternalError()
    return dict(snapshot.config.template_vars)


@router.get("/stats", response_model=Dict[str, ApiStatsResponse])
async def stats() -> Dict[str, ApiStatsResponse]:
    """
    Get statistics for all APIs since server start.

    Returns a dictionary keyed by API profile name (`__unmatched__` for
    allowed origins with no profile) with:
    - **request_count**: Calls forwarded
    - **upstream_error_count**: Calls that failed before an upstream answer
    - **non_2xx_count**: Upstream answers outside 2xx
    - **error_rate_percent**: Share of failed or non-2xx calls
    - **bytes_sent** / **bytes_received**: Body bytes each way
    - **avg_upstream_ms**: Average upstream round trip
    - **last_status**: Status of the most recent answer
    """
    return await stats_collector.get_all_stats()
