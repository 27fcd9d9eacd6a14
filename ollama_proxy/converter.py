"""
Ollama <-> OpenAI request and response conversion.
"""

from typing import Any, Optional

from .config import debug_print
from .errors import ParseError
from .models import (
    CanonicalRequest,
    DEFAULT_MODEL,
    GenerationOptions,
    ROLE_ASSISTANT,
    TokenUsage,
    duration_fields,
    iso_timestamp,
)
from .normalizer import normalize_messages


def _number(options: dict, key: str) -> Optional[float]:
    value = options.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        debug_print(f"[Convert] Ignoring non-numeric option {key}={value!r}")
        return None
    return value


def _response_format(body: dict, options: dict) -> Any:
    if options.get("response_format"):
        return options["response_format"]
    fmt = body.get("format")
    if fmt == "json":
        return {"type": "json_object"}
    if isinstance(fmt, dict) and fmt:
        return {"type": "json_schema", "json_schema": {"name": "response", "schema": fmt}}
    return None


class OllamaConverter:
    """Convert between Ollama API and OpenAI chat completions formats."""

    # ============ Request ============

    @staticmethod
    def parse_options(body: dict) -> GenerationOptions:
        options = body.get("options")
        if not isinstance(options, dict):
            options = {}

        max_tokens = options.get("num_predict")
        if isinstance(max_tokens, bool) or not isinstance(max_tokens, int) or max_tokens <= 0:
            # Ollama uses -1/-2 for "no limit"
            max_tokens = None

        repeat_penalty = _number(options, "repeat_penalty")
        frequency_penalty = repeat_penalty - 1 if repeat_penalty is not None else None

        seed = options.get("seed")
        if isinstance(seed, bool) or not isinstance(seed, int):
            seed = None

        stop = options.get("stop")
        if not (isinstance(stop, str) and stop) and not (isinstance(stop, list) and stop):
            stop = None

        tools = body.get("tools") or options.get("tools")
        if not isinstance(tools, list) or not tools:
            tools = None

        return GenerationOptions(
            temperature=_number(options, "temperature"),
            max_tokens=max_tokens,
            top_p=_number(options, "top_p"),
            frequency_penalty=frequency_penalty,
            presence_penalty=_number(options, "presence_penalty"),
            stop=stop,
            seed=seed,
            tools=tools,
            tool_choice=options.get("tool_choice") or None,
            response_format=_response_format(body, options),
        )

    @staticmethod
    def to_canonical(body: dict) -> CanonicalRequest:
        messages, source = normalize_messages(body)
        model = body.get("model")
        return CanonicalRequest(
            model=model if isinstance(model, str) and model else None,
            messages=messages,
            stream=bool(body.get("stream", False)),
            options=OllamaConverter.parse_options(body),
            message_source=source,
        )

    @staticmethod
    def to_openai_request(canonical: CanonicalRequest) -> dict:
        openai_req = {
            "model": canonical.model or DEFAULT_MODEL,
            "messages": [m.to_dict() for m in canonical.messages],
            "stream": canonical.stream,
        }
        openai_req.update(canonical.options.to_dict())
        return openai_req

    # ============ Response ============

    @staticmethod
    def _first_choice(openai_resp: Any) -> tuple[dict, dict]:
        if not isinstance(openai_resp, dict):
            raise ParseError("Upstream response is not an object")
        choices = openai_resp.get("choices")
        if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
            raise ParseError("Upstream response has no choices")
        message = choices[0].get("message")
        if not isinstance(message, dict):
            raise ParseError("Upstream choice has no message")
        return choices[0], message

    @staticmethod
    def _created_at(openai_resp: dict) -> str:
        created = openai_resp.get("created")
        if isinstance(created, bool) or not isinstance(created, (int, float)):
            created = 0
        return iso_timestamp(created, fallback=0)

    @staticmethod
    def _finish(openai_resp: dict, choice: dict, body: dict) -> dict:
        finish_reason = choice.get("finish_reason")
        body["done"] = finish_reason == "stop"
        if finish_reason:
            body["done_reason"] = finish_reason
        body.update(TokenUsage.from_response(openai_resp).to_ollama_dict())
        body.update(duration_fields(openai_resp))
        return body

    @staticmethod
    def to_generate(openai_resp: dict) -> dict:
        """Complete OpenAI response -> Ollama /api/generate reply."""
        choice, message = OllamaConverter._first_choice(openai_resp)
        body = {
            "model": openai_resp.get("model"),
            "created_at": OllamaConverter._created_at(openai_resp),
            "response": message.get("content") or "",
        }
        return OllamaConverter._finish(openai_resp, choice, body)

    @staticmethod
    def to_chat(openai_resp: dict) -> dict:
        """Complete OpenAI response -> Ollama /api/chat reply."""
        choice, message = OllamaConverter._first_choice(openai_resp)
        ollama_message = {
            "role": message.get("role") or ROLE_ASSISTANT,
            "content": message.get("content") or "",
        }
        tool_calls = message.get("tool_calls")
        if isinstance(tool_calls, list) and tool_calls:
            ollama_message["tool_calls"] = tool_calls
        body = {
            "model": openai_resp.get("model"),
            "created_at": OllamaConverter._created_at(openai_resp),
            "message": ollama_message,
        }
        return OllamaConverter._finish(openai_resp, choice, body)
