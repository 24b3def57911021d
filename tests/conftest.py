"""
Shared test fixtures and helpers.
"""
from __future__ import annotations

import hashlib
import hmac
import json
from typing import Any, Dict, Generator, Optional

import httpx
import pytest

from htmz_proxy.services.config_loader import ApiProfile, Config, ProxySettings
from htmz_proxy.services.stats import StatsCollector
from htmz_proxy.state import AppState, ProxySnapshot, app_state, build_snapshot


# Test secret for HMAC validation (hex text, as the secret file stores it)
TEST_SECRET_RAW = b"0123456789abcdef0123456789abcdef0123456789abcdef0123456789abcdef"
WRONG_SECRET_RAW = b"fedcba9876543210fedcba9876543210fedcba9876543210fedcba9876543210"


SAMPLE_CONFIG_TEXT = """\
# Test configuration
[proxy]
host = "127.0.0.1"
port = 3005
secret_ttl = 600
timeout = 5

[apis.github]
endpoint = "https://api.github.com"
auth_type = "none"

[apis.weather]
endpoint = "https://api.weather.test/data/2.5"
auth_type = "api_key"
key_param = "appid"
key = "weather-key"

[apis.search]
endpoint = "https://search.test"
auth_type = "api_header"
header_name = "X-API-Key"
key = "search-key"

[apis.legacy]
endpoint = "http://legacy.test:8080/api"
auth_type = "basic"
username = "svc"
password = "pa:ss"

[apis.private]
endpoint = "https://private.test"
auth_type = "bearer"
token = "T0k3n"

[template_vars]
site_name = "Demo Site"
default_user = "octocat"
"""


@pytest.fixture
def test_secret() -> bytes:
    """Return the raw test secret bytes."""
    return TEST_SECRET_RAW


def make_descriptor(
    url: str = "https://api.github.com/users/octocat",
    method: str = "GET",
    headers: Optional[Dict[str, str]] = None,
    body: Any = None,
) -> Dict[str, Any]:
    """Build a request descriptor in canonical key order."""
    return {"url": url, "method": method, "headers": headers or {}, "body": body}


def sign_body(body: bytes, secret: bytes) -> str:
    """Create HMAC-SHA256 signature for a body."""
    return hmac.new(secret, body, hashlib.sha256).hexdigest()


def encode_descriptor(descriptor: Dict[str, Any]) -> bytes:
    """Serialize the way JSON.stringify does: compact, insertion order."""
    return json.dumps(descriptor, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def signed_request(descriptor: Dict[str, Any], secret: bytes = TEST_SECRET_RAW) -> Dict[str, Any]:
    """Body and headers for a TestClient POST /proxy call."""
    body = encode_descriptor(descriptor)
    return {
        "content": body,
        "headers": {"Content-Type": "application/json", "X-Signature": sign_body(body, secret)},
    }


@pytest.fixture
def sample_profiles() -> Dict[str, ApiProfile]:
    """Sample API profiles, one per auth scheme."""
    profiles = [
        ApiProfile(name="github", endpoint="https://api.github.com"),
        ApiProfile(
            name="weather",
            endpoint="https://api.weather.test/data/2.5",
            auth_type="api_key",
            key_param="appid",
            key="weather-key",
        ),
        ApiProfile(
            name="search",
            endpoint="https://search.test",
            auth_type="api_header",
            header_name="X-API-Key",
            key="search-key",
        ),
        ApiProfile(
            name="legacy",
            endpoint="http://legacy.test:8080/api",
            auth_type="basic",
            username="svc",
            password="pa:ss",
        ),
        ApiProfile(name="private", endpoint="https://private.test", auth_type="bearer", token="T0k3n"),
    ]
    return {p.name: p for p in profiles}


@pytest.fixture
def sample_config(sample_profiles) -> Config:
    """Sample config for testing."""
    return Config(
        proxy=ProxySettings(port=3005, secret_ttl=600, timeout=5.0),
        apis=sample_profiles,
        template_vars={"site_name": "Demo Site", "default_user": "octocat"},
    )


@pytest.fixture
def sample_snapshot(sample_config) -> ProxySnapshot:
    return build_snapshot(sample_config)


@pytest.fixture
def temp_config_file(tmp_path) -> str:
    """Create a temporary config file for testing."""
    config_path = tmp_path / "htmz.toml"
    config_path.write_text(SAMPLE_CONFIG_TEXT)
    return str(config_path)


@pytest.fixture
def fresh_stats_collector() -> StatsCollector:
    """Create a fresh StatsCollector instance for testing."""
    return StatsCollector()


@pytest.fixture
def mock_app_state(sample_snapshot, test_secret) -> Generator[AppState, None, None]:
    """
    Set up app_state with test values and reset after test.
    """
    # Store original values
    original_snapshot = app_state.snapshot
    original_secret = app_state.secret
    original_client = app_state.http_client

    # Set test values
    app_state.snapshot = sample_snapshot
    app_state.secret = test_secret
    app_state.http_client = httpx.AsyncClient()

    yield app_state

    # Restore original values
    app_state.snapshot = original_snapshot
    app_state.secret = original_secret
    app_state.http_client = original_client


@pytest.fixture
def mock_env(temp_config_file, tmp_path, monkeypatch):
    """Set up environment variables for testing."""
    monkeypatch.setenv("HTMZ_CONFIG", temp_config_file)
    monkeypatch.setenv("HTMZ_SECRET_FILE", str(tmp_path / ".htmz-secret"))
    # Clear the cached config
    from htmz_proxy.config import get_config
    get_config.cache_clear()
    yield
    get_config.cache_clear()
