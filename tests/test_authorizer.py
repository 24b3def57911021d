"""
Tests for the endpoint authorizer - origin derivation and allow-list checks.
"""
import pytest

from htmz_proxy.services.authorizer import build_allow_list, is_allowed, origin_of
from htmz_proxy.services.config_loader import ApiProfile, load_config
from htmz_proxy.state import load_snapshot


class TestOriginOf:
    """Tests for origin_of function."""

    @pytest.mark.parametrize("url,origin", [
        ("https://api.github.com/users/octocat", "https://api.github.com"),
        ("https://API.GitHub.com", "https://api.github.com"),
        ("https://api.github.com:443/x", "https://api.github.com"),
        ("http://legacy.test:80/api", "http://legacy.test"),
        ("http://legacy.test:8080/api?x=1", "http://legacy.test:8080"),
        ("https://user:pw@api.github.com/x", "https://api.github.com"),
        ("http://[::1]:9001/x", "http://[::1]:9001"),
    ])
    def test_origin(self, url, origin):
        assert origin_of(url) == origin

    @pytest.mark.parametrize("url", [
        "/relative/path",
        "api.github.com/users",
        "ftp://files.test/x",
        "javascript:alert(1)",
        "file:///etc/passwd",
        "",
    ])
    def test_unparsable_or_unsupported(self, url):
        assert origin_of(url) is None


class TestBuildAllowList:
    """Tests for build_allow_list function."""

    def test_one_origin_per_profile(self, sample_profiles):
        allow_list = build_allow_list(sample_profiles.values())

        assert allow_list == {
            "https://api.github.com",
            "https://api.weather.test",
            "https://search.test",
            "http://legacy.test:8080",
            "https://private.test",
        }

    def test_unparsable_endpoint_skipped(self):
        profiles = [
            ApiProfile(name="good", endpoint="https://good.test/v1"),
            ApiProfile(name="bad", endpoint="not a url"),
        ]

        assert build_allow_list(profiles) == {"https://good.test"}

    def test_shared_host_collapses_to_one_origin(self):
        profiles = [
            ApiProfile(name="v1", endpoint="https://h.test/v1"),
            ApiProfile(name="v2", endpoint="https://h.test/v2"),
        ]

        assert build_allow_list(profiles) == {"https://h.test"}

    def test_empty(self):
        assert build_allow_list([]) == frozenset()


class TestIsAllowed:
    """Tests for is_allowed function."""

    @pytest.fixture
    def allow_list(self, sample_profiles):
        return build_allow_list(sample_profiles.values())

    def test_allowed_origin(self, allow_list):
        assert is_allowed("https://api.github.com/users/octocat", allow_list) is True

    def test_any_path_on_allowed_origin(self, allow_list):
        """The allow-list gates origins, not paths."""
        assert is_allowed("https://api.weather.test/other/path", allow_list) is True

    def test_unknown_host_blocked(self, allow_list):
        assert is_allowed("https://evil.example/steal", allow_list) is False

    def test_scheme_mismatch_blocked(self, allow_list):
        assert is_allowed("http://api.github.com/users/octocat", allow_list) is False

    def test_port_mismatch_blocked(self, allow_list):
        assert is_allowed("http://legacy.test:9090/api", allow_list) is False

    def test_lookalike_host_blocked(self, allow_list):
        assert is_allowed("https://api.github.com.evil.example/x", allow_list) is False

    def test_userinfo_trick_blocked(self, allow_list):
        assert is_allowed("https://api.github.com@evil.example/x", allow_list) is False

    def test_invalid_url_blocked(self, allow_list):
        assert is_allowed("not a url", allow_list) is False


class TestReloadIdempotence:
    """Reloading an unchanged file yields the same allow-list."""

    def test_same_file_same_allow_list(self, temp_config_file):
        first = load_snapshot(temp_config_file)
        second = load_snapshot(temp_config_file)

        assert first.allow_list == second.allow_list
        assert first.config == second.config

    def test_allow_list_reflects_config(self, temp_config_file):
        config = load_config(temp_config_file)
        snapshot = load_snapshot(temp_config_file)

        assert snapshot.allow_list == build_allow_list(config.apis.values())
