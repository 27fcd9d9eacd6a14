"""
Turn the many Ollama request shapes into one ordered list of chat messages.

Sources are tried in order and the first one that yields any message wins:
`messages`, `system`, `prompt`, `history`. If none does, a single empty
user message is returned.
"""

from typing import Any

from .config import debug_print
from .models import Message, ROLE_ASSISTANT, ROLE_SYSTEM, ROLE_USER

OPEN_TAGS = (("<user>", ROLE_USER), ("<assistant>", ROLE_ASSISTANT))
CLOSE_TAGS = ("</user>", "</assistant>")
HISTORY_ROLES = {ROLE_USER, ROLE_ASSISTANT}


def normalize_messages(body: Any) -> tuple[list, str]:
    """Return (messages, source) where source names the field that was used."""
    if not isinstance(body, dict):
        body = {}

    messages = _from_messages(body.get("messages"))
    if messages:
        return messages, "messages"

    system = body.get("system")
    if isinstance(system, str) and system:
        return [Message(ROLE_SYSTEM, system)], "system"

    prompt = body.get("prompt")
    if isinstance(prompt, str) and prompt:
        messages = parse_prompt(prompt)
        if messages:
            return messages, "prompt"

    messages = _from_history(body.get("history"))
    if messages:
        return messages, "history"

    return [Message(ROLE_USER, "")], "default"


def _from_messages(items: Any) -> list:
    if not isinstance(items, list):
        return []
    result = []
    for item in items:
        if not isinstance(item, dict):
            continue
        role = item.get("role")
        content = item.get("content")
        if role and content:
            result.append(Message(role, content))
    dropped = len(items) - len(result)
    if dropped:
        debug_print(f"[Normalize] Dropped {dropped} message(s) without role or content")
    return result


def _from_history(items: Any) -> list:
    if not isinstance(items, list):
        return []
    return [
        Message(item["role"], item.get("content") or "")
        for item in items
        if isinstance(item, dict) and item.get("role") in HISTORY_ROLES
    ]


def parse_prompt(prompt: str) -> list:
    """Parse a free-text prompt.

    Plain text becomes one user message. Text using <user>...</user> and
    <assistant>...</assistant> blocks becomes one message per block.
    """
    if not any(tag in prompt for tag, _ in OPEN_TAGS):
        return [Message(ROLE_USER, prompt)]

    parser = _TaggedPromptParser()
    for line in prompt.split("\n"):
        parser.feed_line(line)
    return parser.close()


class _TaggedPromptParser:
    """Line oriented parser for the <user>/<assistant> prompt format."""

    def __init__(self):
        self.messages = []
        self.role = None
        # Lines of the open block, None when no block is open
        self.lines = None

    def feed_line(self, line: str):
        text = line.lstrip()
        for tag, role in OPEN_TAGS:
            if text.startswith(tag):
                self._flush()
                self.role = role
                self.lines = []
                text = text[len(tag):]
                break
        else:
            if self.lines is None:
                # Outside any block
                return
            text = line

        closed = False
        stripped = text.rstrip()
        for tag in CLOSE_TAGS:
            if stripped.endswith(tag):
                text = stripped[:-len(tag)]
                closed = True
                break

        self.lines.append(text)
        if closed:
            self._flush()

    def close(self) -> list:
        self._flush()
        return self.messages

    def _flush(self):
        if self.lines is not None:
            content = "\n".join(self.lines).strip()
            if content:
                self.messages.append(Message(self.role, content))
        self.lines = None
