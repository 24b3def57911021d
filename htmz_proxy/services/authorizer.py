"""
Endpoint authorizer - derives the allow-list of origins from API profiles
and gates every proxied URL against it.
"""
from __future__ import annotations

from typing import FrozenSet, Iterable, Optional

import httpx

from htmz_proxy.logging import get_logger
from htmz_proxy.services.config_loader import ApiProfile

logger = get_logger(__name__)

ALLOWED_SCHEMES = ("http", "https")
DEFAULT_PORTS = {"http": 80, "https": 443}


def origin_of(url: str) -> Optional[str]:
    """
    Compute the origin (scheme://host[:port]) of a URL.

    The port is only included when it is explicit and not the scheme default.

    Returns:
        The origin string, or None if the URL is not an absolute http(s) URL
    """
    try:
        parsed = httpx.URL(url)
    except (httpx.InvalidURL, TypeError):
        return None

    scheme = parsed.scheme.lower()
    if scheme not in ALLOWED_SCHEMES or not parsed.host:
        return None

    host = parsed.host.lower()
    if ":" in host:
        host = f"[{host}]"

    port = parsed.port
    if port is None or port == DEFAULT_PORTS[scheme]:
        return f"{scheme}://{host}"
    return f"{scheme}://{host}:{port}"


def build_allow_list(profiles: Iterable[ApiProfile]) -> FrozenSet[str]:
    """Build the allow-list from scratch; profiles with unparsable endpoints are skipped."""
    origins = set()
    for profile in profiles:
        origin = origin_of(profile.endpoint)
        if origin is None:
            logger.warning(f"API '{profile.name}' has unparsable endpoint '{profile.endpoint}', not allowed")
            continue
        origins.add(origin)
    return frozenset(origins)


def is_allowed(url: str, allow_list: FrozenSet[str]) -> bool:
    """True if the URL's origin is in the allow-list."""
    origin = origin_of(url)
    return origin is not None and origin in allow_list
