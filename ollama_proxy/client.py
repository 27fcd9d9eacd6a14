"""
Async client for the upstream OpenAI-compatible server.
"""

import asyncio
import json
from typing import Any, Optional
from urllib.parse import quote

from aiohttp import ClientError, ClientResponse, ClientSession, ClientTimeout

from .config import Config, debug_print
from .errors import GatewayError, ModelNotFound, ParseError, UpstreamHTTPError, UpstreamTimeout

USER_AGENT = "ollama-proxy/1.0"


async def read_error_body(resp: ClientResponse) -> Any:
    """Upstream error body as JSON when possible, else text."""
    text = await resp.text(errors="replace")
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return text


async def read_json(resp: ClientResponse) -> Any:
    text = await resp.text(errors="replace")
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        raise ParseError(f"Invalid JSON from upstream: {text[:200]}")


class OpenAIClient:
    """OpenAI chat completions API client."""

    def __init__(self, config: Config):
        self.base_url = config.openai_base_url
        self.api_key = config.openai_key
        self.timeout = config.request_timeout
        self._session: Optional[ClientSession] = None

    async def _get_session(self) -> ClientSession:
        if self._session is None or self._session.closed:
            self._session = ClientSession()
        return self._session

    async def close(self):
        if self._session and not self._session.closed:
            await self._session.close()

    def _headers(self, stream: bool = False) -> dict:
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.api_key}",
            "User-Agent": USER_AGENT,
        }
        if stream:
            headers["Accept"] = "text/event-stream"
        return headers

    def _url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    async def _request_json(self, method: str, path: str, body: Optional[dict] = None) -> Any:
        """Single bounded request; returns the decoded JSON body."""
        session = await self._get_session()
        try:
            async with session.request(
                method,
                self._url(path),
                json=body,
                headers=self._headers(),
                timeout=ClientTimeout(total=self.timeout),
            ) as resp:
                if resp.status >= 400:
                    error_body = await read_error_body(resp)
                    debug_print(f"[Upstream] {method} {path} -> {resp.status}: {str(error_body)[:500]}")
                    raise UpstreamHTTPError(resp.status, error_body)
                return await read_json(resp)
        except asyncio.TimeoutError:
            debug_print(f"[Upstream] {method} {path} timed out after {self.timeout}s")
            raise UpstreamTimeout()
        except ClientError as e:
            debug_print(f"[Upstream] {method} {path} failed: {e!r}")
            raise GatewayError(str(e))

    async def chat_completion(self, body: dict) -> Any:
        return await self._request_json("POST", "/v1/chat/completions", body)

    async def open_chat_stream(self, body: dict) -> ClientResponse:
        """Start a streaming completion.

        Only the wait for response headers is time-bounded. The caller owns
        the returned response and must release or close it.
        """
        session = await self._get_session()

        async def post() -> ClientResponse:
            return await session.post(
                self._url("/v1/chat/completions"),
                json=body,
                headers=self._headers(stream=True),
                timeout=ClientTimeout(total=None),
            )

        try:
            resp = await asyncio.wait_for(post(), timeout=self.timeout)
        except asyncio.TimeoutError:
            debug_print(f"[Upstream] Stream did not start within {self.timeout}s")
            raise UpstreamTimeout()
        except ClientError as e:
            debug_print(f"[Upstream] Stream request failed: {e!r}")
            raise GatewayError(str(e))

        if resp.status >= 400:
            try:
                error_body = await read_error_body(resp)
            finally:
                await resp.release()
            debug_print(f"[Upstream] Stream request -> {resp.status}: {str(error_body)[:500]}")
            raise UpstreamHTTPError(resp.status, error_body)
        return resp

    async def list_models(self) -> Any:
        return await self._request_json("GET", "/v1/models")

    async def get_model(self, model: str) -> Any:
        try:
            return await self._request_json("GET", f"/v1/models/{quote(model, safe='')}")
        except UpstreamHTTPError as e:
            if e.status == 404:
                raise ModelNotFound(model)
            raise
