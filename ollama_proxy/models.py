"""
Data classes shared by the request and response translators.
"""

import math
import time
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from typing import Any, Optional

DEFAULT_MODEL = "gpt-3.5-turbo"

ROLE_SYSTEM = "system"
ROLE_USER = "user"
ROLE_ASSISTANT = "assistant"


@dataclass(frozen=True)
class Message:
    role: str
    content: str

    def to_dict(self) -> dict:
        return {"role": self.role, "content": self.content}


@dataclass
class GenerationOptions:
    """OpenAI generation parameters. None means "not set" and is never sent."""

    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    top_p: Optional[float] = None
    frequency_penalty: Optional[float] = None
    presence_penalty: Optional[float] = None
    stop: Any = None
    seed: Optional[int] = None
    tools: Optional[list] = None
    tool_choice: Any = None
    response_format: Any = None

    def to_dict(self) -> dict:
        return {f.name: getattr(self, f.name) for f in fields(self) if getattr(self, f.name) is not None}


@dataclass
class CanonicalRequest:
    model: Optional[str]
    messages: list
    stream: bool = False
    options: GenerationOptions = field(default_factory=GenerationOptions)
    # Which input field produced `messages` ("default" means a synthesized placeholder)
    message_source: str = "default"

    def __post_init__(self):
        if not self.messages:
            self.messages = [Message(ROLE_USER, "")]
            self.message_source = "default"


@dataclass
class TokenUsage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    @classmethod
    def from_response(cls, resp: dict) -> "TokenUsage":
        """Token counts from `usage`, else llama.cpp style `timings`, else zeros."""
        usage = resp.get("usage")
        if isinstance(usage, dict):
            prompt = _as_int(usage.get("prompt_tokens"))
            completion = _as_int(usage.get("completion_tokens"))
            total = usage.get("total_tokens")
            return cls(prompt, completion, _as_int(total) if total is not None else prompt + completion)
        timings = resp.get("timings")
        if isinstance(timings, dict):
            prompt = _as_int(timings.get("cache_n"))
            completion = _as_int(timings.get("predicted_n"))
            return cls(prompt, completion, prompt + completion)
        return cls()

    def to_ollama_dict(self) -> dict:
        return {
            "prompt_eval_count": self.prompt_tokens,
            "eval_count": self.completion_tokens,
            "total_tokens": self.total_tokens,
        }


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def _as_int(value: Any) -> int:
    return int(value) if _is_number(value) else 0


def duration_fields(resp: dict) -> dict:
    """Timing values copied from upstream `timings`; empty when unavailable."""
    timings = resp.get("timings")
    if not isinstance(timings, dict):
        return {}
    result = {}
    prompt_ms = timings.get("prompt_ms")
    predicted_ms = timings.get("predicted_ms")
    if prompt_ms is not None:
        result["prompt_eval_duration"] = prompt_ms
    if predicted_ms is not None:
        result["eval_duration"] = predicted_ms
    if _is_number(prompt_ms) and _is_number(predicted_ms):
        result["total_duration"] = prompt_ms + predicted_ms
    return result


def iso_timestamp(epoch_seconds: Optional[float] = None, fallback: Optional[float] = None) -> str:
    """ISO-8601 UTC timestamp with milliseconds, e.g. 2024-01-01T00:00:00.000Z.

    Values a datetime cannot hold (millisecond epochs, NaN) give `fallback`,
    or the current time when no fallback is set.
    """
    if epoch_seconds is None:
        epoch_seconds = time.time()
    try:
        dt = datetime.fromtimestamp(epoch_seconds, tz=timezone.utc)
    except (ValueError, OverflowError, OSError):
        dt = datetime.fromtimestamp(time.time() if fallback is None else fallback, tz=timezone.utc)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{dt.microsecond // 1000:03d}Z"
