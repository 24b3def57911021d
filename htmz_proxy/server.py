"""
Listener binding - serves the app on a loopback address or an owner-only
unix socket. Never binds a routable interface.
"""
from __future__ import annotations

import os
import socket
import stat
from dataclasses import dataclass
from typing import Optional

import uvicorn
from fastapi import FastAPI

from htmz_proxy.config import AppConfig
from htmz_proxy.errors import ConfigError
from htmz_proxy.logging import get_logger
from htmz_proxy.services.config_loader import Config, is_loopback_host

logger = get_logger(__name__)

SOCKET_MODE = 0o600


@dataclass(frozen=True)
class BindTarget:
    host: str
    port: int
    socket_path: Optional[str] = None

    def describe(self) -> str:
        if self.socket_path:
            return f"unix:{self.socket_path}"
        host = f"[{self.host}]" if ":" in self.host else self.host
        return f"http://{host}:{self.port}"


def resolve_bind_target(settings: AppConfig, config: Config) -> BindTarget:
    """
    Combine env/CLI overrides with the [proxy] section.

    Raises:
        ConfigError: If the resulting host is not a loopback address
    """
    host = settings.htmz_host or config.proxy.host
    if not is_loopback_host(host):
        raise ConfigError(f"Refusing to listen on non-loopback host '{host}'")
    port = settings.htmz_port or config.proxy.port
    socket_path = settings.htmz_socket or config.proxy.socket
    return BindTarget(host=host, port=port, socket_path=socket_path)


def bind_unix_socket(path: str) -> socket.socket:
    """
    Create a listening-ready unix socket readable and writable by the owner only.

    A stale socket file from a previous run is replaced; any other file at
    the path is left alone and reported.
    """
    if os.path.lexists(path):
        if not stat.S_ISSOCK(os.lstat(path).st_mode):
            raise ConfigError(f"Socket path {path} exists and is not a socket")
        os.unlink(path)

    sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    # The umask keeps the socket private between bind() and chmod()
    old_umask = os.umask(0o177)
    try:
        sock.bind(path)
    except OSError:
        sock.close()
        raise
    finally:
        os.umask(old_umask)
    os.chmod(path, SOCKET_MODE)
    return sock


def serve(app: FastAPI, target: BindTarget, log_level: str = "info") -> None:
    """Run uvicorn on the bind target until interrupted."""
    config = uvicorn.Config(app, host=target.host, port=target.port, log_level=log_level.lower())
    server = uvicorn.Server(config)

    if not target.socket_path:
        server.run()
        return

    sock = bind_unix_socket(target.socket_path)
    try:
        server.run(sockets=[sock])
    finally:
        sock.close()
        if os.path.lexists(target.socket_path):
            os.unlink(target.socket_path)
