"""
Command line entry point.

Usage:
    htmz-proxy                          # htmz.toml in the current directory
    htmz-proxy --config site/htmz.toml  # another config file
    htmz-proxy --port 3002              # override the [proxy] port
    htmz-proxy --socket /tmp/htmz.sock  # serve on an owner-only unix socket
    htmz-proxy --dev                    # reload the config file on change
"""
from __future__ import annotations

import argparse
import os
from typing import List, Optional

from htmz_proxy.config import PROXY_VERSION, get_config
from htmz_proxy.errors import ConfigError
from htmz_proxy.logging import configure_logging, get_logger
from htmz_proxy.services.config_loader import load_config

logger = get_logger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="htmz-proxy",
        description="Loopback-only API proxy that keeps credentials out of the browser",
    )
    parser.add_argument("--config", help="Path to the config file (env: HTMZ_CONFIG)")
    parser.add_argument("--host", help="Loopback host to bind (env: HTMZ_HOST)")
    parser.add_argument("--port", type=int, help="Port to bind (env: HTMZ_PORT)")
    parser.add_argument("--socket", help="Serve on this unix socket instead of TCP (env: HTMZ_SOCKET)")
    parser.add_argument("--secret-file", help="Path of the HMAC secret file (env: HTMZ_SECRET_FILE)")
    parser.add_argument("--dev", action="store_true", help="Reload the config file when it changes")
    parser.add_argument("--log-level", help="DEBUG, INFO, WARNING or ERROR (env: HTMZ_LOG_LEVEL)")
    parser.add_argument("--version", action="version", version=f"%(prog)s {PROXY_VERSION}")
    return parser


def apply_overrides(args: argparse.Namespace) -> None:
    """
    Export CLI flags as HTMZ_* variables so they take precedence over the
    environment and the [proxy] section when settings are (re)read.
    """
    overrides = {
        "HTMZ_CONFIG": args.config,
        "HTMZ_HOST": args.host,
        "HTMZ_PORT": str(args.port) if args.port is not None else None,
        "HTMZ_SOCKET": args.socket,
        "HTMZ_SECRET_FILE": args.secret_file,
        "HTMZ_DEV": "true" if args.dev else None,
        "HTMZ_LOG_LEVEL": args.log_level,
    }
    for name, value in overrides.items():
        if value is not None:
            os.environ[name] = value
    get_config.cache_clear()


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    apply_overrides(args)
    settings = get_config()
    configure_logging(settings.htmz_log_level)

    # Imported late so the app and its logger pick up the overrides above
    from htmz_proxy.main import app
    from htmz_proxy.server import resolve_bind_target, serve

    try:
        config = load_config(settings.htmz_config)
        target = resolve_bind_target(settings, config)
    except ConfigError as e:
        logger.error(f"Cannot start: {e}")
        return 1

    logger.info(f"htmz-proxy {PROXY_VERSION} listening on {target.describe()}")
    logger.info(f"  Proxy:   POST {target.describe()}/proxy")
    logger.info(f"  Secret:  GET  {target.describe()}/secret")
    logger.info("Credentials stay server-side; the browser only ever sees the signing secret.")

    serve(app, target, log_level=settings.htmz_log_level)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
