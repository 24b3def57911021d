"""
Tests for the proxy service - outbound request building and forwarding.
"""
import asyncio
import json
import time

import httpx
import pytest
from pytest_httpx import HTTPXMock

from htmz_proxy.errors import InternalError, UpstreamError
from htmz_proxy.services.proxy import (
    DEFAULT_USER_AGENT,
    OutboundRequest,
    build_outbound_request,
    encode_body,
    forward_request,
    map_upstream_error,
)


class TestBuildOutboundRequest:
    """Tests for build_outbound_request function."""

    def test_adds_default_user_agent(self):
        request = build_outbound_request("https://a.test/", "get", {}, None)

        assert request.headers == {"User-Agent": DEFAULT_USER_AGENT}
        assert request.method == "GET"

    def test_keeps_caller_user_agent(self):
        request = build_outbound_request("https://a.test/", "GET", {"user-agent": "mine/2"}, None)

        assert request.headers == {"user-agent": "mine/2"}

    def test_strips_hop_by_hop_and_signature_headers(self):
        request = build_outbound_request("https://a.test/", "GET", {
            "Host": "evil.example",
            "Content-Length": "99",
            "Connection": "close",
            "X-Signature": "abc",
            "Proxy-Authorization": "Basic x",
            "X-Custom": "kept",
        }, None)

        assert request.headers == {"X-Custom": "kept", "User-Agent": DEFAULT_USER_AGENT}


class TestEncodeBody:
    """Tests for encode_body function."""

    def test_get_drops_body(self):
        content, _ = encode_body(OutboundRequest("GET", "https://a.test/", {}, {"a": 1}))

        assert content is None

    def test_delete_drops_body(self):
        content, _ = encode_body(OutboundRequest("DELETE", "https://a.test/", {}, "x"))

        assert content is None

    def test_json_body_sets_content_type(self):
        content, headers = encode_body(OutboundRequest("POST", "https://a.test/", {}, {"a": [1, 2]}))

        assert json.loads(content) == {"a": [1, 2]}
        assert headers["Content-Type"] == "application/json"

    def test_existing_content_type_kept(self):
        _, headers = encode_body(
            OutboundRequest("PUT", "https://a.test/", {"content-type": "application/vnd.api+json"}, {"a": 1})
        )

        assert headers == {"content-type": "application/vnd.api+json"}

    def test_string_body_sent_verbatim(self):
        content, headers = encode_body(OutboundRequest("PATCH", "https://a.test/", {}, "name=x&y=ü"))

        assert content == "name=x&y=ü".encode("utf-8")
        assert "Content-Type" not in headers

    def test_null_body(self):
        content, _ = encode_body(OutboundRequest("POST", "https://a.test/", {}, None))

        assert content is None


class TestMapUpstreamError:
    """Tests for map_upstream_error function."""

    def test_timeout(self):
        error = map_upstream_error(httpx.ReadTimeout("slow"), "https://a.test/x")

        assert isinstance(error, UpstreamError)
        assert error.error_type == "UPSTREAM_TIMEOUT"
        assert error.status_code == 502

    def test_overall_deadline(self):
        error = map_upstream_error(asyncio.TimeoutError(), "https://a.test/x")

        assert isinstance(error, UpstreamError)
        assert error.error_type == "UPSTREAM_TIMEOUT"

    def test_connect_error(self):
        error = map_upstream_error(httpx.ConnectError("refused"), "https://a.test/x")

        assert isinstance(error, UpstreamError)
        assert error.error_type == "UPSTREAM_ERROR"
        assert "a.test" in error.message

    def test_unexpected_error(self):
        error = map_upstream_error(RuntimeError("boom"), "https://a.test/x")

        assert isinstance(error, InternalError)
        assert "boom" not in error.message


class TestForwardRequest:
    """Tests for forward_request function."""

    @pytest.fixture
    def http_client(self):
        """Create an HTTP client for tests."""
        return httpx.AsyncClient()

    async def test_json_response(self, httpx_mock: HTTPXMock, http_client):
        httpx_mock.add_response(
            url="https://api.github.com/users/octocat",
            content=b'{"login":"octocat"}',
            headers={"Content-Type": "application/json"},
        )

        response = await forward_request(
            OutboundRequest("GET", "https://api.github.com/users/octocat"), http_client, timeout=5
        )

        assert response.status_code == 200
        assert response.ok is True
        assert response.data == {"login": "octocat"}
        assert response.content_type == "application/json"
        assert response.bytes_received == len(b'{"login":"octocat"}')
        assert response.duration_ms >= 0

    async def test_text_response(self, httpx_mock: HTTPXMock, http_client):
        httpx_mock.add_response(url="https://a.test/text", text="hello", headers={"Content-Type": "text/plain"})

        response = await forward_request(OutboundRequest("GET", "https://a.test/text"), http_client, timeout=5)

        assert response.data == "hello"

    async def test_invalid_json_falls_back_to_text(self, httpx_mock: HTTPXMock, http_client):
        httpx_mock.add_response(
            url="https://a.test/bad",
            content=b"{not json",
            headers={"Content-Type": "application/json"},
        )

        response = await forward_request(OutboundRequest("GET", "https://a.test/bad"), http_client, timeout=5)

        assert response.data == "{not json"

    async def test_upstream_error_status_relayed(self, httpx_mock: HTTPXMock, http_client):
        """A 4xx/5xx from upstream is a response, not an exception."""
        httpx_mock.add_response(url="https://a.test/missing", status_code=404, json={"message": "Not Found"})

        response = await forward_request(OutboundRequest("GET", "https://a.test/missing"), http_client, timeout=5)

        assert response.status_code == 404
        assert response.ok is False
        assert response.reason_phrase == "Not Found"
        assert response.data == {"message": "Not Found"}

    async def test_sends_headers_and_body(self, httpx_mock: HTTPXMock, http_client):
        httpx_mock.add_response(url="https://a.test/items", method="POST", status_code=201, json={"id": 1})

        response = await forward_request(
            OutboundRequest("POST", "https://a.test/items", {"Authorization": "Bearer T"}, {"name": "w"}),
            http_client,
            timeout=5,
        )

        request = httpx_mock.get_request()
        assert request.headers["Authorization"] == "Bearer T"
        assert request.headers["Content-Type"] == "application/json"
        assert json.loads(request.content) == {"name": "w"}
        assert response.bytes_sent == len(request.content)

    async def test_redirect_not_followed(self, httpx_mock: HTTPXMock, http_client):
        httpx_mock.add_response(
            url="https://a.test/old",
            status_code=302,
            headers={"Location": "https://evil.example/"},
        )

        response = await forward_request(OutboundRequest("GET", "https://a.test/old"), http_client, timeout=5)

        assert response.status_code == 302
        assert response.headers["location"] == "https://evil.example/"
        assert len(httpx_mock.get_requests()) == 1

    async def test_set_cookie_not_relayed(self, httpx_mock: HTTPXMock, http_client):
        httpx_mock.add_response(
            url="https://a.test/",
            json={},
            headers={"Set-Cookie": "session=abc", "X-RateLimit-Remaining": "59"},
        )

        response = await forward_request(OutboundRequest("GET", "https://a.test/"), http_client, timeout=5)

        assert "set-cookie" not in response.headers
        assert response.headers["x-ratelimit-remaining"] == "59"

    async def test_timeout_maps_to_upstream_timeout(self, httpx_mock: HTTPXMock, http_client):
        httpx_mock.add_exception(httpx.ReadTimeout("timed out"), url="https://a.test/slow")

        with pytest.raises(UpstreamError) as exc_info:
            await forward_request(OutboundRequest("GET", "https://a.test/slow"), http_client, timeout=1)

        assert exc_info.value.error_type == "UPSTREAM_TIMEOUT"

    async def test_connection_error_maps_to_upstream_error(self, httpx_mock: HTTPXMock, http_client):
        httpx_mock.add_exception(httpx.ConnectError("refused"), url="https://a.test/down")

        with pytest.raises(UpstreamError) as exc_info:
            await forward_request(OutboundRequest("GET", "https://a.test/down"), http_client, timeout=5)

        assert exc_info.value.error_type == "UPSTREAM_ERROR"
        assert exc_info.value.status_code == 502

    async def test_trickling_body_bounded_by_total_timeout(self):
        """Each chunk arrives well inside the read timeout but the whole body does not."""
        async def trickle():
            for _ in range(40):
                await asyncio.sleep(0.05)
                yield b"x"

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, content=trickle())

        started = time.perf_counter()
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            with pytest.raises(UpstreamError) as exc_info:
                await forward_request(OutboundRequest("GET", "https://a.test/drip"), client, timeout=0.3)

        assert exc_info.value.error_type == "UPSTREAM_TIMEOUT"
        assert time.perf_counter() - started < 1.5
