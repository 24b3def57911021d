"""
Credential injector - finds the API profile for an outbound URL and applies
its authentication scheme.
"""
from __future__ import annotations

import base64
from dataclasses import replace
from typing import Dict, Iterable, Optional

import httpx

from htmz_proxy.errors import InternalError
from htmz_proxy.logging import get_logger
from htmz_proxy.services.config_loader import ApiProfile
from htmz_proxy.services.proxy import OutboundRequest

logger = get_logger(__name__)

# Characters that may follow an endpoint prefix for it to count as a match
_PATH_BOUNDARIES = ("/", "?", "#")


def _endpoint_matches(endpoint: str, url: str) -> bool:
    base = endpoint.rstrip("/")
    if not url.startswith(base):
        return False
    rest = url[len(base):]
    return rest == "" or rest.startswith(_PATH_BOUNDARIES)


def find_profile(url: str, profiles: Iterable[ApiProfile]) -> Optional[ApiProfile]:
    """
    Find the profile whose endpoint is a prefix of the URL.

    The longest matching endpoint wins, so `https://h/v1/admin` beats
    `https://h/v1` for URLs under /v1/admin. A prefix only matches on a path
    boundary: `https://h/v1` does not match `https://h/v10`. Profiles with
    identical endpoints resolve to the first one in config order.
    """
    best: Optional[ApiProfile] = None
    best_length = -1
    for profile in profiles:
        if not _endpoint_matches(profile.endpoint, url):
            continue
        length = len(profile.endpoint.rstrip("/"))
        if length > best_length:
            best, best_length = profile, length
    return best


def _set_header(headers: Dict[str, str], name: str, value: str) -> Dict[str, str]:
    """Return a copy of headers with `name` set, replacing any case variant."""
    updated = {k: v for k, v in headers.items() if k.lower() != name.lower()}
    updated[name] = value
    return updated


def basic_auth_value(username: str, password: str) -> str:
    token = base64.b64encode(f"{username}:{password}".encode("utf-8")).decode("ascii")
    return f"Basic {token}"


def apply_auth(request: OutboundRequest, profile: Optional[ApiProfile]) -> OutboundRequest:
    """
    Apply a profile's authentication scheme to an outbound request.

    Header schemes (bearer, api_header, basic) rewrite the headers, api_key
    rewrites the URL query string. The caller's request is not modified.
    """
    if profile is None or profile.auth_type == "none":
        return request

    if profile.auth_type == "bearer":
        headers = _set_header(request.headers, "Authorization", f"Bearer {profile.token}")
        return replace(request, headers=headers)

    if profile.auth_type == "api_header":
        headers = _set_header(request.headers, profile.header_name, profile.key)
        return replace(request, headers=headers)

    if profile.auth_type == "basic":
        headers = _set_header(
            request.headers, "Authorization", basic_auth_value(profile.username, profile.password)
        )
        return replace(request, headers=headers)

    if profile.auth_type == "api_key":
        url = httpx.URL(request.url).copy_set_param(profile.key_param, profile.key)
        return replace(request, url=str(url))

    # Unknown schemes are rejected at config load
    logger.error(f"API '{profile.name}' has unsupported auth_type '{profile.auth_type}'")
    raise InternalError()
