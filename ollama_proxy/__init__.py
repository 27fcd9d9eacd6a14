"""Ollama-compatible API proxy that forwards to an OpenAI chat completions server."""

__version__ = "1.0.0"
