"""Pytest fixtures: a scriptable fake OpenAI server and a proxy pointed at it."""
import asyncio
import json

import pytest
from aiohttp import web

from ollama_proxy.config import Config
from ollama_proxy.server import create_app


def sse(*payloads) -> bytes:
    """Encode payloads as an OpenAI SSE body."""
    lines = []
    for payload in payloads:
        data = payload if isinstance(payload, str) else json.dumps(payload)
        lines.append(f"data: {data}\n\n")
    return "".join(lines).encode("utf-8")


def delta(content=None, finish_reason=None, role=None, **extra) -> dict:
    """One chat.completion.chunk payload."""
    d = {}
    if role is not None:
        d["role"] = role
    if content is not None:
        d["content"] = content
    chunk = {
        "id": "chatcmpl-1",
        "object": "chat.completion.chunk",
        "created": 1700000000,
        "model": "gpt-4o",
        "choices": [{"index": 0, "delta": d, "finish_reason": finish_reason}],
    }
    chunk.update(extra)
    return chunk


def completion(content="Hello!", finish_reason="stop", **extra) -> dict:
    """A complete chat.completion payload."""
    resp = {
        "id": "chatcmpl-1",
        "object": "chat.completion",
        "created": 1700000000,
        "model": "gpt-4o",
        "choices": [{
            "index": 0,
            "message": {"role": "assistant", "content": content},
            "finish_reason": finish_reason,
        }],
    }
    resp.update(extra)
    return resp


class FakeUpstream:
    """OpenAI-compatible server whose chat behaviour is set per test."""

    def __init__(self):
        self.chat_requests = []
        self.chat_headers = []
        self.chat_handler = self.json_reply(completion())
        self.models = [
            {"id": "gpt-4o", "object": "model", "created": 1700000000, "owned_by": "openai"},
            {"id": "gpt-4o-mini", "object": "model", "created": 1700000100, "owned_by": "openai"},
        ]
        self.disconnected = asyncio.Event()
        self.server = None

    # ---- canned behaviours ----

    @staticmethod
    def json_reply(payload, status=200):
        async def handler(request):
            return web.json_response(payload, status=status)
        return handler

    def sse_reply(self, chunks, delay=0.01):
        """Send each element of `chunks` as a separate write."""
        async def handler(request):
            resp = web.StreamResponse(status=200)
            resp.content_type = "text/event-stream"
            await resp.prepare(request)
            for chunk in chunks:
                await resp.write(chunk)
                await asyncio.sleep(delay)
            await resp.write_eof()
            return resp
        return handler

    def endless_reply(self, interval=0.05, limit=200):
        """Keep sending content deltas until the reader goes away."""
        async def handler(request):
            resp = web.StreamResponse(status=200)
            resp.content_type = "text/event-stream"
            await resp.prepare(request)
            try:
                for _ in range(limit):
                    await resp.write(sse(delta("x")))
                    await asyncio.sleep(interval)
            except ConnectionResetError:
                self.disconnected.set()
                return resp
            except asyncio.CancelledError:
                self.disconnected.set()
                raise
            return resp
        return handler

    @staticmethod
    def broken_reply(chunk):
        """Send one chunk, then drop the connection mid-body."""
        async def handler(request):
            resp = web.StreamResponse(status=200)
            resp.content_type = "text/event-stream"
            await resp.prepare(request)
            await resp.write(chunk)
            await asyncio.sleep(0.05)
            request.transport.close()
            return resp
        return handler

    def slow_reply(self, seconds):
        async def handler(request):
            await asyncio.sleep(seconds)
            return web.json_response(completion())
        return handler

    # ---- routes ----

    async def handle_chat(self, request):
        self.chat_requests.append(await request.json())
        self.chat_headers.append(dict(request.headers))
        return await self.chat_handler(request)

    async def handle_models(self, request):
        return web.json_response({"object": "list", "data": self.models})

    async def handle_model(self, request):
        model_id = request.match_info["model"]
        for model in self.models:
            if model["id"] == model_id:
                return web.json_response(model)
        return web.json_response(
            {"error": {"message": f"The model '{model_id}' does not exist", "code": "model_not_found"}},
            status=404,
        )

    def make_app(self) -> web.Application:
        app = web.Application()
        app.router.add_post("/v1/chat/completions", self.handle_chat)
        app.router.add_get("/v1/models", self.handle_models)
        app.router.add_get("/v1/models/{model}", self.handle_model)
        return app


@pytest.fixture
async def upstream(aiohttp_server):
    fake = FakeUpstream()
    fake.server = await aiohttp_server(fake.make_app())
    return fake


@pytest.fixture
def make_proxy(aiohttp_client, upstream):
    async def factory(**overrides):
        config = Config(
            openai_host="http://127.0.0.1",
            openai_port=upstream.server.port,
            openai_key="sk-test",
            request_timeout=5.0,
        )
        for key, value in overrides.items():
            setattr(config, key, value)
        return await aiohttp_client(create_app(config))
    return factory


@pytest.fixture
async def proxy(make_proxy):
    return await make_proxy()
