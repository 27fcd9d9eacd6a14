"""
Ollama API Proxy - Ollama to OpenAI Protocol Converter

Exposes the Ollama HTTP API and forwards requests to an OpenAI-compatible
chat completions server.

Usage:
    python -m ollama_proxy --openai-key sk-xxx [--openai-host HOST] [--openai-port PORT]
"""

import asyncio
import json
import sys
import traceback
from typing import Any

from aiohttp import ClientError, ClientResponse, web

from .client import OpenAIClient, read_json
from .config import Config, ConfigError, debug_print
from .converter import OllamaConverter
from .errors import GatewayError, InvalidRequest, ParseError, StreamTransportError
from .models import iso_timestamp
from .streaming import ChatStreamProcessor

STREAM_HEADERS = {
    "Content-Type": "text/event-stream",
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}

MODEL_DETAILS = {
    "format": "openai",
    "family": "gpt",
    "families": ["gpt"],
    "parameter_size": "unknown",
    "quantization_level": "unknown",
}


def error_response(error: GatewayError) -> web.Response:
    body = error.to_dict()
    if isinstance(body, str):
        return web.Response(text=body, status=error.status)
    return web.json_response(body, status=error.status)


def _model_time(model: Any) -> str:
    created = model.get("created") if isinstance(model, dict) else None
    if isinstance(created, bool) or not isinstance(created, (int, float)):
        return iso_timestamp()
    return iso_timestamp(created)


class OllamaProxy:
    """HTTP handlers for the Ollama API."""

    def __init__(self, config: Config, client: OpenAIClient = None):
        self.config = config
        self.client = client or OpenAIClient(config)

    async def _read_body(self, request: web.Request) -> dict:
        try:
            body = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            raise InvalidRequest("Invalid JSON")
        if not isinstance(body, dict):
            raise InvalidRequest("Invalid JSON")
        return body

    # ============ Generate / Chat ============

    async def handle_generate(self, request: web.Request) -> web.Response:
        """Handle /api/generate (always answered with one JSON object)."""
        try:
            body = await self._read_body(request)
            canonical = OllamaConverter.to_canonical(body)
            canonical.stream = False
            openai_req = OllamaConverter.to_openai_request(canonical)
            debug_print(f"[Generate] model={openai_req['model']}, messages={len(canonical.messages)} "
                        f"from {canonical.message_source}")
            openai_resp = await self.client.chat_completion(openai_req)
            return web.json_response(OllamaConverter.to_generate(openai_resp))
        except GatewayError as e:
            debug_print(f"[Generate] {type(e).__name__}: {e.message}")
            return error_response(e)
        except Exception:
            traceback.print_exc()
            return error_response(GatewayError())

    async def handle_chat(self, request: web.Request) -> web.StreamResponse:
        """Handle /api/chat.

        Streams when the body asks for it or the client accepts
        text/event-stream, unless there were no messages to send.
        """
        try:
            body = await self._read_body(request)
            canonical = OllamaConverter.to_canonical(body)
            accept = request.headers.get("Accept", "")
            is_stream = canonical.stream or "text/event-stream" in accept
            if is_stream and canonical.message_source == "default":
                debug_print("[Chat] No messages in request, streaming disabled")
                is_stream = False
            canonical.stream = is_stream

            openai_req = OllamaConverter.to_openai_request(canonical)
            debug_print(f"[Chat] model={openai_req['model']}, messages={len(canonical.messages)} "
                        f"from {canonical.message_source}, is_stream={is_stream}")

            if not is_stream:
                openai_resp = await self.client.chat_completion(openai_req)
                return web.json_response(OllamaConverter.to_chat(openai_resp))

            upstream = await self.client.open_chat_stream(openai_req)
        except GatewayError as e:
            debug_print(f"[Chat] {type(e).__name__}: {e.message}")
            return error_response(e)
        except Exception:
            traceback.print_exc()
            return error_response(GatewayError())

        return await self._handle_chat_streaming(request, upstream, openai_req["model"])

    async def _safe_write(self, response: web.StreamResponse, data: str) -> bool:
        """Write to the client, return False if it disconnected."""
        if not data:
            return True
        try:
            await response.write(data.encode("utf-8"))
            return True
        except (ConnectionResetError, BrokenPipeError, ConnectionAbortedError):
            debug_print("[Stream] Client disconnected (connection reset)")
            return False

    async def _handle_chat_non_streaming_fallback(self, upstream: ClientResponse) -> web.Response:
        """Upstream ignored stream=true and sent one complete body."""
        debug_print(f"[Chat] Upstream returned {upstream.content_type} for a stream request, "
                    f"answering with a single object")
        try:
            openai_resp = await read_json(upstream)
            return web.json_response(OllamaConverter.to_chat(openai_resp))
        except GatewayError as e:
            return error_response(e)
        except Exception:
            traceback.print_exc()
            return error_response(GatewayError())

    async def _handle_chat_streaming(self, request: web.Request, upstream: ClientResponse,
                                     model: str) -> web.StreamResponse:
        """Pump the upstream SSE body through a ChatStreamProcessor."""
        async with upstream:
            if upstream.content_type != "text/event-stream":
                return await self._handle_chat_non_streaming_fallback(upstream)

            response = web.StreamResponse(status=200, headers=STREAM_HEADERS)
            await response.prepare(request)

            processor = ChatStreamProcessor(model)
            client_disconnected = False
            try:
                async for chunk in upstream.content.iter_any():
                    if not await self._safe_write(response, processor.feed(chunk)):
                        client_disconnected = True
                        break
                    if processor.terminated:
                        break
                else:
                    client_disconnected = not await self._safe_write(response, processor.finish())
            except (ClientError, asyncio.TimeoutError) as e:
                error = StreamTransportError(str(e) or type(e).__name__)
                client_disconnected = not await self._safe_write(response, processor.fail(error))
            except asyncio.CancelledError:
                processor.abort()
                upstream.close()
                raise
            except Exception:
                traceback.print_exc()
                client_disconnected = not await self._safe_write(response, processor.fail(GatewayError()))

            if client_disconnected:
                processor.abort()
                upstream.close()
                return response

        debug_print(f"[Stream] Finished, {processor.frames_sent} content frame(s)")
        try:
            await response.write_eof()
        except ConnectionResetError:
            debug_print("[Stream] Client disconnected before end of stream")
        return response

    # ============ Model management ============

    async def handle_pull(self, request: web.Request) -> web.Response:
        """Handle /api/pull. Nothing is downloaded."""
        try:
            body = await self._read_body(request)
        except GatewayError as e:
            return error_response(e)
        return web.json_response({"status": "success", "model": body.get("name") or body.get("model")})

    async def handle_tags(self, request: web.Request) -> web.Response:
        """Handle /api/tags (list upstream models)."""
        try:
            listing = await self.client.list_models()
            data = listing.get("data") if isinstance(listing, dict) else None
            if not isinstance(data, list):
                raise ParseError("Model listing has no data array")
            models = [
                {"name": m["id"], "modified_at": _model_time(m), "size": 0}
                for m in data
                if isinstance(m, dict) and m.get("id")
            ]
            return web.json_response({"models": models})
        except GatewayError as e:
            debug_print(f"[Tags] {type(e).__name__}: {e.message}")
            return error_response(e)
        except Exception:
            traceback.print_exc()
            return error_response(GatewayError())

    async def handle_show(self, request: web.Request) -> web.Response:
        """Handle /api/show (model metadata)."""
        try:
            body = await self._read_body(request)
            model = body.get("model") or body.get("name")
            if not isinstance(model, str) or not model:
                raise InvalidRequest("model is required")
            info = await self.client.get_model(model)
            return web.json_response({
                "model": model,
                "details": dict(MODEL_DETAILS),
                "modified_at": _model_time(info),
                "size": 0,
            })
        except GatewayError as e:
            debug_print(f"[Show] {type(e).__name__}: {e.message}")
            return error_response(e)
        except Exception:
            traceback.print_exc()
            return error_response(GatewayError())

    async def handle_health(self, request: web.Request) -> web.Response:
        return web.json_response({"status": "healthy"})


def create_app(config: Config, client: OpenAIClient = None) -> web.Application:
    """Create aiohttp application."""
    proxy = OllamaProxy(config, client)

    app = web.Application(client_max_size=100 * 1024 * 1024)
    app.router.add_post("/api/generate", proxy.handle_generate)
    app.router.add_post("/api/chat", proxy.handle_chat)
    app.router.add_post("/api/pull", proxy.handle_pull)
    app.router.add_get("/api/tags", proxy.handle_tags)
    app.router.add_post("/api/show", proxy.handle_show)
    app.router.add_get("/health", proxy.handle_health)

    async def on_cleanup(app):
        await proxy.client.close()

    app.on_cleanup.append(on_cleanup)
    return app


def main(argv: list = None):
    try:
        config = Config.from_argv(argv)
    except (ConfigError, ValueError, OSError) as e:
        print(f"Error: {e}")
        sys.exit(1)

    if not config.openai_key:
        print("Error: openai_key is required.")
        print("Set 'openai_key' in config.json or use --openai-key")
        sys.exit(1)

    async def run():
        app = create_app(config)
        runner = web.AppRunner(app)
        await runner.setup()
        site = web.TCPSite(runner, config.ollama_host, config.ollama_port)

        print(f"Starting Ollama Proxy on http://{config.ollama_host}:{config.ollama_port}")
        print(f"Forwarding requests to {config.openai_base_url}")
        print(f"API Key: {config.openai_key[:6]}...")
        print(f"Timeout: {config.request_timeout}s, debug: {'enabled' if config.debug else 'disabled'}")
        print("\nEndpoints:")
        print("  POST /api/generate  - Ollama generate (non-streaming)")
        print("  POST /api/chat      - Ollama chat (streaming and non-streaming)")
        print("  POST /api/pull      - Model pull (no-op)")
        print("  GET  /api/tags      - List models")
        print("  POST /api/show      - Model info")
        print("  GET  /health        - Health check")

        await site.start()
        try:
            while True:
                await asyncio.sleep(3600)
        finally:
            await runner.cleanup()

    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        print("\nShutting down...")


if __name__ == "__main__":
    main()
