"""
Application state - shared state initialized at startup.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import FrozenSet

import httpx

from htmz_proxy.services.authorizer import build_allow_list
from htmz_proxy.services.config_loader import Config, load_config


@dataclass(frozen=True)
class ProxySnapshot:
    """
    A loaded config together with the allow-list derived from it.

    Handlers read `app_state.snapshot` once per request and use that object
    throughout, so a reload never shows them a mix of old and new state.
    """
    config: Config
    allow_list: FrozenSet[str]


def build_snapshot(config: Config) -> ProxySnapshot:
    return ProxySnapshot(config=config, allow_list=build_allow_list(config.apis.values()))


def load_snapshot(path: str) -> ProxySnapshot:
    """Load the config file and derive its allow-list. Raises ConfigError."""
    return build_snapshot(load_config(path))


class AppState:
    """
    Application state container.
    Initialized at startup via lifespan, read by the routers.
    """

    def __init__(self):
        self.snapshot: ProxySnapshot | None = None
        self.secret: bytes | None = None
        self.http_client: httpx.AsyncClient | None = None
        # Diagnostic only; concurrent increments may race
        self.request_count: int = 0

    def swap_snapshot(self, snapshot: ProxySnapshot) -> None:
        """Replace the live snapshot with a single reference assignment."""
        self.snapshot = snapshot


app_state = AppState()
