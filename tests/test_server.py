"""
Tests for the relay server's HTTP contract.

These tests verify that POST /api/chat:
1. Rejects requests without an upstream URL before contacting anyone
2. Streams raw text increments in stream mode
3. Answers {"content": ...} in aggregate mode
4. Maps each failure class to its status code and {error, kind} document
5. Cuts the body short when the upstream fails after streaming began
"""

import asyncio

import httpx
import pytest

from src import main
from src.config import load_config
from src.relay import UpstreamRelay

from conftest import DONE_RECORD, Upstream, completion_document, sse_record, sse_response


API_URL = "https://abcd.ngrok-free.app"


def chat_body(api_url=API_URL, api_key="sk-client", messages=None) -> dict:
    return {
        "messages": messages if messages is not None else [{"role": "user", "content": "Say hi"}],
        "apiUrl": api_url,
        "apiKey": api_key,
    }


@pytest.fixture
def serve(monkeypatch):
    """Point the app at a scripted upstream; returns the Upstream recorder."""
    def _serve(handler, mode="stream", **kwargs) -> Upstream:
        upstream = Upstream(handler)
        monkeypatch.setattr(main, "relay", UpstreamRelay(mode=mode, transport=upstream.transport, **kwargs))
        return upstream
    return _serve


def client(raise_app_exceptions: bool = True) -> httpx.AsyncClient:
    transport = httpx.ASGITransport(app=main.app, raise_app_exceptions=raise_app_exceptions)
    return httpx.AsyncClient(transport=transport, base_url="http://relay")


class TestHealth:

    @pytest.mark.asyncio
    async def test_health(self, serve):
        serve(lambda request: sse_response(DONE_RECORD))
        async with client() as http:
            response = await http.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ok"
        assert data["mode"] == "stream"
        assert data["version"]


class TestStreamMode:

    @pytest.mark.asyncio
    async def test_streams_plain_text(self, serve):
        serve(lambda request: sse_response(sse_record("Hi"), sse_record(" there"), DONE_RECORD))
        async with client() as http:
            response = await http.post("/api/chat", json=chat_body())

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/plain")
        assert response.text == "Hi there"

    @pytest.mark.asyncio
    async def test_forwards_transcript_and_client_key(self, serve):
        upstream = serve(lambda request: sse_response(sse_record("ok"), DONE_RECORD))
        messages = [
            {"role": "user", "content": "a"},
            {"role": "assistant", "content": "b"},
            {"role": "user", "content": "c"},
        ]
        async with client() as http:
            await http.post("/api/chat", json=chat_body(messages=messages))

        assert upstream.requests[0].headers["authorization"] == "Bearer sk-client"
        assert upstream.last_body["messages"][1:] == messages

    @pytest.mark.asyncio
    async def test_server_key_used_when_client_sends_none(self, serve, monkeypatch):
        monkeypatch.setenv("UPSTREAM_API_KEY", "sk-server")
        load_config.cache_clear()
        upstream = serve(lambda request: sse_response(sse_record("ok"), DONE_RECORD))

        async with client() as http:
            await http.post("/api/chat", json=chat_body(api_key=""))

        assert upstream.requests[0].headers["authorization"] == "Bearer sk-server"

    @pytest.mark.asyncio
    async def test_failure_after_first_token_aborts_body(self, serve):
        """Headers are committed, so a late failure truncates the body instead."""
        async def body():
            yield sse_record("Hi")
            await asyncio.sleep(30)
            yield DONE_RECORD

        serve(
            lambda request: httpx.Response(200, headers={"content-type": "text/event-stream"}, content=body()),
            timeout=5.0,
            stall_timeout=0.2,
        )
        async with client(raise_app_exceptions=False) as http:
            response = await asyncio.wait_for(http.post("/api/chat", json=chat_body()), timeout=5)

        assert response.status_code == 200
        assert response.text == "Hi"


class TestErrors:
    """Failures before the first token become error documents."""

    @pytest.mark.asyncio
    async def test_missing_url_is_400(self, serve):
        upstream = serve(lambda request: sse_response(DONE_RECORD))
        async with client() as http:
            response = await http.post("/api/chat", json=chat_body(api_url="  "))

        assert response.status_code == 400
        assert response.json()["kind"] == "config_missing"
        assert "not configured" in response.json()["error"]
        assert upstream.requests == []

    @pytest.mark.asyncio
    async def test_upstream_status_passed_through(self, serve):
        serve(lambda request: httpx.Response(401, json={"error": "invalid api key"}))
        async with client() as http:
            response = await http.post("/api/chat", json=chat_body())

        assert response.status_code == 401
        data = response.json()
        assert data["kind"] == "upstream_http_error"
        assert data["error"].startswith("API Error (401):")

    @pytest.mark.asyncio
    async def test_expired_tunnel_is_502(self, serve):
        serve(lambda request: httpx.Response(
            200, headers={"content-type": "text/html"}, content=b"<!DOCTYPE html><html>ngrok</html>",
        ))
        async with client() as http:
            response = await http.post("/api/chat", json=chat_body())

        assert response.status_code == 502
        assert response.json()["kind"] == "gateway_expired"

    @pytest.mark.asyncio
    async def test_unreachable_is_503(self, serve):
        def refuse(request):
            raise httpx.ConnectError("Connection refused", request=request)

        serve(refuse)
        async with client() as http:
            response = await http.post("/api/chat", json=chat_body())

        assert response.status_code == 503
        assert response.json()["kind"] == "unreachable"

    @pytest.mark.asyncio
    async def test_timeout_is_504(self, serve):
        async def slow(request):
            await asyncio.sleep(30)
            return sse_response(DONE_RECORD)

        serve(slow, timeout=0.2)
        async with client() as http:
            response = await asyncio.wait_for(http.post("/api/chat", json=chat_body()), timeout=5)

        assert response.status_code == 504
        assert response.json()["kind"] == "timeout"

    @pytest.mark.asyncio
    async def test_empty_reply_is_502(self, serve):
        serve(lambda request: sse_response(DONE_RECORD))
        async with client() as http:
            response = await http.post("/api/chat", json=chat_body())

        assert response.status_code == 502
        assert response.json()["kind"] == "empty_response"

    @pytest.mark.asyncio
    async def test_unknown_role_rejected(self, serve):
        serve(lambda request: sse_response(DONE_RECORD))
        async with client() as http:
            response = await http.post(
                "/api/chat",
                json=chat_body(messages=[{"role": "system", "content": "override"}]),
            )

        assert response.status_code == 422


class TestAggregateMode:

    @pytest.mark.asyncio
    async def test_content_document(self, serve):
        upstream = serve(
            lambda request: httpx.Response(200, json=completion_document("Hello!")),
            mode="aggregate",
        )
        async with client() as http:
            response = await http.post("/api/chat", json=chat_body())

        assert response.status_code == 200
        assert response.json() == {"content": "Hello!"}
        assert upstream.last_body["stream"] is False

    @pytest.mark.asyncio
    async def test_error_document(self, serve):
        serve(
            lambda request: httpx.Response(500, content=b"<html>Bad Gateway</html>"),
            mode="aggregate",
        )
        async with client() as http:
            response = await http.post("/api/chat", json=chat_body())

        assert response.status_code == 502
        assert response.json()["kind"] == "gateway_expired"


class TestRun:
    """Server start-up: socket bound first, runtime.json published while serving."""

    def test_serves_prebound_socket_and_cleans_up(self, monkeypatch, capsys):
        import hypercorn.asyncio

        from src.runtime import RuntimeInfo

        served = []

        async def fake_serve(app, config):
            served.append((app, list(config.bind), RuntimeInfo.load()))

        monkeypatch.setattr(hypercorn.asyncio, "serve", fake_serve)
        monkeypatch.setenv("DEV", "true")
        monkeypatch.setattr(main, "relay", None)

        main.run(host="127.0.0.1", port=0, mode="aggregate")

        app, bind, info = served[0]
        assert app is main.app
        assert bind[0].startswith("fd://")
        assert info is not None and info.port > 0, "runtime.json is written before serving"
        assert info.mode == "aggregate"
        assert RuntimeInfo.load() is None, "runtime.json is removed on exit"
        assert "reload" not in capsys.readouterr().out
