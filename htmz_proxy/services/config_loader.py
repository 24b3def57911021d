"""
Config loader - parses the section-based config file into API profiles,
listener settings and template variables.

Format:

    [proxy]
    host = "127.0.0.1"
    port = 3001

    [apis.github]
    endpoint = "https://api.github.com"
    auth_type = "bearer"
    token = "ghp_..."

    [template_vars]
    site_name = "My Site"

Malformed lines are skipped with a warning; only a missing file is fatal.
"""
from __future__ import annotations

import ipaddress
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from htmz_proxy.errors import ConfigError
from htmz_proxy.logging import get_logger, mask_value

logger = get_logger(__name__)

AUTH_TYPES = frozenset({"none", "bearer", "api_key", "api_header", "basic"})

# Fields each auth scheme needs before a profile is usable
REQUIRED_AUTH_FIELDS = {
    "none": (),
    "bearer": ("token",),
    "api_key": ("key_param", "key"),
    "api_header": ("header_name", "key"),
    "basic": ("username", "password"),
}

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 3001
DEFAULT_SECRET_TTL = 3600
DEFAULT_TIMEOUT = 30.0
DEFAULT_MAX_BODY_SIZE = 1024 * 1024

_SECTION_PATTERN = re.compile(r"^\[\s*([\w-]+(?:\.[\w-]+)*)\s*\]$")
_ASSIGN_PATTERN = re.compile(r"^([\w-]+)\s*=\s*(.*)$")
_QUOTED_PATTERN = re.compile(r"""^(["'])(.*)\1\s*(?:#.*)?$""")
_INT_PATTERN = re.compile(r"^[+-]?\d+$")
_FLOAT_PATTERN = re.compile(r"^[+-]?(\d+\.\d*|\.\d+)$")


@dataclass(frozen=True)
class ApiProfile:
    """A named upstream API: base endpoint plus the credential to inject."""
    name: str
    endpoint: str
    auth_type: str = "none"
    token: Optional[str] = None
    key_param: Optional[str] = None
    key: Optional[str] = None
    header_name: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None


@dataclass(frozen=True)
class ProxySettings:
    """Listener and forwarding settings from the [proxy] section."""
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    socket: Optional[str] = None
    secret_ttl: int = DEFAULT_SECRET_TTL
    timeout: float = DEFAULT_TIMEOUT
    max_body_size: int = DEFAULT_MAX_BODY_SIZE


@dataclass(frozen=True)
class Config:
    """Immutable result of one config load. Reload builds a new instance."""
    proxy: ProxySettings = field(default_factory=ProxySettings)
    apis: Dict[str, ApiProfile] = field(default_factory=dict)
    template_vars: Dict[str, str] = field(default_factory=dict)


def coerce_value(raw: str) -> Any:
    """
    Convert a raw `key = value` right-hand side to a Python value.

    Quoted strings lose their quotes, bare true/false become booleans,
    bare numbers become int/float, anything else stays a string.
    """
    value = raw.strip()
    quoted = _QUOTED_PATTERN.match(value)
    if quoted:
        return quoted.group(2)

    # Inline comments are only recognised after bare values
    if " #" in value:
        value = value.split(" #", 1)[0].rstrip()

    if value == "true":
        return True
    if value == "false":
        return False
    if _INT_PATTERN.match(value):
        return int(value)
    if _FLOAT_PATTERN.match(value):
        return float(value)
    return value


def parse_config_text(text: str) -> Dict[str, Any]:
    """
    Parse config text into a nested dict.

    `[a.b]` headers select the nested section, `key = value` lines assign
    into it. Lines that cannot be parsed are logged and skipped.
    """
    root: Dict[str, Any] = {}
    current: Optional[Dict[str, Any]] = root

    for lineno, line in enumerate(text.splitlines(), start=1):
        stripped = line.strip()
        if not stripped or stripped.startswith(("#", ";")):
            continue

        if stripped.startswith("["):
            header = _SECTION_PATTERN.match(stripped)
            if not header:
                logger.warning(f"Config line {lineno}: malformed section header, skipping section")
                current = None
                continue
            current = root
            for part in header.group(1).split("."):
                child = current.setdefault(part, {})
                if not isinstance(child, dict):
                    logger.warning(
                        f"Config line {lineno}: section '{header.group(1)}' collides with a value, "
                        "skipping section"
                    )
                    current = None
                    break
                current = child
            continue

        assignment = _ASSIGN_PATTERN.match(stripped)
        if not assignment:
            logger.warning(f"Config line {lineno}: unrecognized line, skipping")
            continue
        if current is None:
            logger.warning(f"Config line {lineno}: assignment outside a valid section, skipping")
            continue

        key, raw_value = assignment.groups()
        if isinstance(current.get(key), dict):
            logger.warning(f"Config line {lineno}: '{key}' is already a section, skipping")
            continue
        current[key] = coerce_value(raw_value)

    return root


def is_loopback_host(host: str) -> bool:
    """True for 'localhost' and any IPv4/IPv6 loopback literal."""
    if host.lower() == "localhost":
        return True
    try:
        return ipaddress.ip_address(host.strip("[]")).is_loopback
    except ValueError:
        return False


def _as_text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _positive_number(section: Dict[str, Any], key: str, default, kind):
    value = section.get(key, default)
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        logger.warning(f"[proxy] {key} must be a positive number, using {default}")
        return default
    return kind(value)


def _build_proxy_settings(section: Any) -> ProxySettings:
    if not isinstance(section, dict):
        return ProxySettings()

    host = _as_text(section.get("host", DEFAULT_HOST))
    if not is_loopback_host(host):
        raise ConfigError(f"Refusing to listen on non-loopback host '{host}'")

    port = section.get("port", DEFAULT_PORT)
    if isinstance(port, bool) or not isinstance(port, int) or not 0 < port < 65536:
        logger.warning(f"[proxy] port '{port}' is invalid, using {DEFAULT_PORT}")
        port = DEFAULT_PORT

    socket_path = section.get("socket")
    return ProxySettings(
        host=host,
        port=port,
        socket=_as_text(socket_path) if socket_path else None,
        secret_ttl=_positive_number(section, "secret_ttl", DEFAULT_SECRET_TTL, int),
        timeout=_positive_number(section, "timeout", DEFAULT_TIMEOUT, float),
        max_body_size=_positive_number(section, "max_body_size", DEFAULT_MAX_BODY_SIZE, int),
    )


def _build_profile(name: str, data: Any) -> Optional[ApiProfile]:
    """Validate one [apis.<name>] section. Returns None (with a warning) if unusable."""
    if not isinstance(data, dict):
        logger.warning(f"API '{name}' is not a section, skipping")
        return None

    endpoint = data.get("endpoint")
    if not isinstance(endpoint, str) or not endpoint:
        logger.warning(f"API '{name}' missing required 'endpoint' field, skipping")
        return None

    auth_type = _as_text(data.get("auth_type", "none"))
    if auth_type not in AUTH_TYPES:
        logger.warning(f"API '{name}' has unknown auth_type '{auth_type}', skipping")
        return None

    missing = [f for f in REQUIRED_AUTH_FIELDS[auth_type] if data.get(f) in (None, "")]
    if missing:
        logger.warning(f"API '{name}' ({auth_type}) missing {', '.join(missing)}, skipping")
        return None

    fields = {
        f: _as_text(data[f])
        for f in ("token", "key_param", "key", "header_name", "username", "password")
        if data.get(f) not in (None, "")
    }
    return ApiProfile(name=name, endpoint=endpoint, auth_type=auth_type, **fields)


def build_config(data: Dict[str, Any]) -> Config:
    """Turn the parsed nested dict into a validated Config."""
    proxy = _build_proxy_settings(data.get("proxy"))

    apis: Dict[str, ApiProfile] = {}
    raw_apis = data.get("apis", {})
    if not isinstance(raw_apis, dict):
        logger.warning("'apis' is not a section, no API profiles loaded")
        raw_apis = {}

    seen_endpoints: Dict[str, str] = {}
    for name, section in raw_apis.items():
        profile = _build_profile(name, section)
        if profile is None:
            continue
        normalized = profile.endpoint.rstrip("/")
        if normalized in seen_endpoints:
            logger.warning(
                f"API '{name}' shares endpoint {profile.endpoint} with '{seen_endpoints[normalized]}'; "
                f"'{seen_endpoints[normalized]}' takes precedence"
            )
        else:
            seen_endpoints[normalized] = name
        apis[name] = profile

    raw_vars = data.get("template_vars", {})
    template_vars: Dict[str, str] = {}
    if isinstance(raw_vars, dict):
        for key, value in raw_vars.items():
            if isinstance(value, dict):
                logger.warning(f"Template variable '{key}' is a section, skipping")
                continue
            template_vars[key] = _as_text(value)

    return Config(proxy=proxy, apis=apis, template_vars=template_vars)


def load_config(path: str) -> Config:
    """
    Load and validate the config file.

    Args:
        path: Path to the config file

    Returns:
        Config object with listener settings, API profiles and template variables

    Raises:
        ConfigError: If the file is missing or unreadable, or the listener
                     settings are unsafe
    """
    try:
        with open(path, "r", encoding="utf-8") as f:
            text = f.read()
    except FileNotFoundError:
        raise ConfigError(f"Config file not found: {path}")
    except (OSError, UnicodeDecodeError) as e:
        raise ConfigError(f"Cannot read config file {path}: {e}")

    config = build_config(parse_config_text(text))

    logger.info(
        f"Loaded {len(config.apis)} API profiles and "
        f"{len(config.template_vars)} template variables from {path}"
    )
    for profile in config.apis.values():
        logger.debug(f"  api {profile.name}: {profile.endpoint} (auth: {profile.auth_type})")
    for key, value in config.template_vars.items():
        logger.debug(f"  var {key}={mask_value(key, value)}")

    return config
