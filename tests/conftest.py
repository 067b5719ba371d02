"""Shared fixtures: isolated settings directory and a scriptable upstream."""

import json

import httpx
import pytest

from src import config as config_module
from src import runtime as runtime_module


@pytest.fixture(autouse=True)
def data_dir(tmp_path, monkeypatch):
    """Keep settings and runtime.json out of the real user directory."""
    monkeypatch.setattr(config_module, "get_data_dir", lambda: tmp_path)
    monkeypatch.setattr(runtime_module, "get_data_dir", lambda: tmp_path)
    config_module.load_config.cache_clear()
    yield tmp_path
    config_module.load_config.cache_clear()


def sse_record(content: str) -> bytes:
    """One OpenAI-style streaming chunk carrying ``content``."""
    chunk = {"choices": [{"delta": {"content": content}}]}
    return f"data: {json.dumps(chunk)}\n\n".encode("utf-8")


DONE_RECORD = b"data: [DONE]\n\n"


def completion_document(content: str) -> dict:
    """A non-streaming completion body."""
    return {"choices": [{"message": {"role": "assistant", "content": content}}]}


class Upstream:
    """Records requests and answers them with a canned handler."""

    def __init__(self, handler):
        self.handler = handler
        self.requests: list[httpx.Request] = []

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        result = self.handler(request)
        if hasattr(result, "__await__"):
            result = await result
        return result

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)

    @property
    def last_body(self) -> dict:
        return json.loads(self.requests[-1].content)


def sse_response(*chunks: bytes, status_code: int = 200) -> httpx.Response:
    return httpx.Response(
        status_code,
        headers={"content-type": "text/event-stream"},
        content=b"".join(chunks),
    )
