"""
Re-frame an OpenAI SSE chat stream as an Ollama newline-delimited JSON stream.

The processor is fed raw transport chunks and returns the text to write to
the client for each one. It never writes by itself, so the caller decides
what happens when the client has gone away.
"""

import codecs
import json
from typing import Any, Optional

from .config import debug_print
from .errors import GatewayError, ParseError, StreamTransportError
from .models import ROLE_ASSISTANT, TokenUsage, duration_fields, iso_timestamp

DATA_PREFIX = "data:"
DONE_PAYLOAD = "[DONE]"
# Terminal marker written to the Ollama client
DONE_MARKER = "[DONE]\n"


def format_frame(frame: dict) -> str:
    return json.dumps(frame, ensure_ascii=False) + "\n"


class ChatStreamProcessor:
    """Per-request stream state for /api/chat.

    States: AWAITING_FIRST -> STREAMING -> TERMINATED. Once terminated every
    call returns "" so the terminal marker is written at most once.
    """

    AWAITING_FIRST, STREAMING, TERMINATED = "awaiting_first", "streaming", "terminated"

    def __init__(self, model: str):
        self.model = model
        self.state = self.AWAITING_FIRST
        self.line_buffer = ""
        self.first_frame_sent = False
        self.frames_sent = 0
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    @property
    def terminated(self) -> bool:
        return self.state == self.TERMINATED

    def feed(self, chunk: Any) -> str:
        """Process one transport chunk (bytes or str)."""
        if self.terminated:
            return ""
        if isinstance(chunk, (bytes, bytearray)):
            chunk = self._decoder.decode(bytes(chunk))
        if not chunk:
            return ""

        self.line_buffer += chunk
        lines = self.line_buffer.split("\n")
        self.line_buffer = lines.pop()
        return self._process_lines(lines)

    def finish(self) -> str:
        """Upstream ended. Flush the residual buffer, then end the stream."""
        if self.terminated:
            return ""
        residual = self.line_buffer + self._decoder.decode(b"", final=True)
        self.line_buffer = ""
        result = ""
        if residual.strip():
            debug_print(f"[Stream] Processing residual buffer ({len(residual)} chars)")
            result = self._process_lines(residual.split("\n"))
        return result + self._terminate()

    def fail(self, error: Optional[BaseException] = None) -> str:
        """Upstream transport failed mid-stream."""
        if self.terminated:
            return ""
        if not isinstance(error, GatewayError):
            error = StreamTransportError(str(error) if error else None)
        debug_print(f"[Stream] Upstream failed: {error.message}")
        return format_frame(error.to_dict()) + self._terminate()

    def abort(self):
        """Client went away. Stop without writing anything else."""
        self.state = self.TERMINATED
        self.line_buffer = ""

    # ============ Internals ============

    def _terminate(self) -> str:
        if self.terminated:
            return ""
        self.state = self.TERMINATED
        self.line_buffer = ""
        return DONE_MARKER

    def _process_lines(self, lines: list) -> str:
        result = []
        for line in lines:
            result.append(self._process_line(line))
            if self.terminated:
                break
        return "".join(result)

    def _process_line(self, line: str) -> str:
        line = line.rstrip("\r")
        if not line.startswith(DATA_PREFIX):
            return ""
        data = line[len(DATA_PREFIX):].strip()
        if not data:
            return ""
        if data == DONE_PAYLOAD:
            return self._terminate()

        try:
            payload = json.loads(data)
        except (json.JSONDecodeError, RecursionError):
            debug_print(f"[Stream] JSON decode error: {data[:100]}...")
            return self._parse_error()
        if not isinstance(payload, dict):
            return self._parse_error()

        if payload.get("error") is not None:
            return format_frame({"error": payload["error"]}) + self._terminate()

        choices = payload.get("choices")
        if not isinstance(choices, list) or (choices and not isinstance(choices[0], dict)):
            return self._parse_error()
        delta = {}
        if choices:
            delta = choices[0].get("delta")
            if delta is None:
                delta = choices[0].get("message") or {}
            if not isinstance(delta, dict):
                return self._parse_error()

        result = []
        created_at = self._created_at(payload)
        model = payload.get("model") or self.model

        if not self.first_frame_sent:
            self.first_frame_sent = True
            self.state = self.STREAMING
            result.append(format_frame({
                "model": model,
                "created_at": created_at,
                "message": {"role": ROLE_ASSISTANT, "content": ""},
                "done": False,
            }))

        if not choices:
            # Heartbeat or usage-only chunk
            return "".join(result)

        message = {
            "role": delta.get("role") or ROLE_ASSISTANT,
            "content": delta.get("content") or "",
        }
        tool_calls = delta.get("tool_calls")
        if isinstance(tool_calls, list) and tool_calls:
            message["tool_calls"] = tool_calls

        done = bool(choices[0].get("finish_reason"))
        frame = {"model": model, "created_at": created_at, "message": message, "done": done}
        if done:
            frame["done_reason"] = "stop"
            frame["context"] = []
            frame.update(TokenUsage.from_response(payload).to_ollama_dict())
            frame.update(duration_fields(payload))
        elif isinstance(payload.get("usage"), dict) or isinstance(payload.get("timings"), dict):
            frame.update(TokenUsage.from_response(payload).to_ollama_dict())

        if message["content"] or "tool_calls" in message or done:
            result.append(format_frame(frame))
            self.frames_sent += 1
        if done:
            result.append(self._terminate())
        return "".join(result)

    def _parse_error(self) -> str:
        return format_frame(ParseError().to_dict()) + self._terminate()

    @staticmethod
    def _created_at(payload: dict) -> str:
        created = payload.get("created")
        if isinstance(created, bool) or not isinstance(created, (int, float)):
            return iso_timestamp()
        return iso_timestamp(created)
