"""
Configuration and console logging for the Ollama proxy.

Settings come from config.json (if present) and are then overridden by
command line flags.
"""

import json
import os
import sys
from dataclasses import dataclass
from typing import Optional

CONFIG_FILE = "config.json"

DEFAULT_OLLAMA_HOST = "localhost"
DEFAULT_OLLAMA_PORT = 11434
DEFAULT_OPENAI_HOST = "https://api.openai.com"
DEFAULT_OPENAI_PORT = 443
DEFAULT_REQUEST_TIMEOUT = 30.0


def find_config_file() -> str:
    """Find config file in current dir or next to the package."""
    candidates = [
        CONFIG_FILE,
        os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), CONFIG_FILE),
    ]
    for path in candidates:
        if os.path.exists(path):
            return path
    return CONFIG_FILE


# ============ Logging ============

_debug_enabled: bool = False


def debug_print(*args, **kwargs):
    """Print only when debug mode is enabled."""
    if _debug_enabled:
        print(*args, **kwargs)


def set_debug_enabled(enabled: bool):
    global _debug_enabled
    _debug_enabled = enabled


def is_debug_enabled() -> bool:
    return _debug_enabled


# ============ Config ============

# flag -> (field, converter)
CLI_FLAGS = {
    "--ollama-host": ("ollama_host", str),
    "--oh": ("ollama_host", str),
    "--ollama-port": ("ollama_port", int),
    "--op": ("ollama_port", int),
    "--openai-host": ("openai_host", str),
    "--oah": ("openai_host", str),
    "--openai-port": ("openai_port", int),
    "--oap": ("openai_port", int),
    "--openai-key": ("openai_key", str),
    "--oak": ("openai_key", str),
    "--timeout": ("request_timeout", float),
}

# Accepted spellings for --debug=VALUE
BOOL_VALUES = {"true": True, "1": True, "yes": True, "false": False, "0": False, "no": False}


class ConfigError(Exception):
    """Raised for unusable command line or config file values."""


@dataclass
class Config:
    # Exposed Ollama-compatible listener
    ollama_host: str = DEFAULT_OLLAMA_HOST
    ollama_port: int = DEFAULT_OLLAMA_PORT
    # Upstream OpenAI-compatible server
    openai_host: str = DEFAULT_OPENAI_HOST
    openai_port: int = DEFAULT_OPENAI_PORT
    openai_key: str = ""
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT
    debug: bool = False

    @property
    def openai_base_url(self) -> str:
        host = self.openai_host.rstrip("/")
        if not host.startswith(("http://", "https://")):
            host = f"http://{host}"
        return f"{host}:{self.openai_port}"

    @classmethod
    def load(cls, path: Optional[str] = None) -> "Config":
        config = cls()
        if path is None:
            path = find_config_file()
        if os.path.exists(path):
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
            if not isinstance(data, dict):
                raise ConfigError(f"{path} must contain a JSON object")
            config.ollama_host = data.get("ollama_host", config.ollama_host)
            config.ollama_port = int(data.get("ollama_port", config.ollama_port))
            config.openai_host = data.get("openai_host", config.openai_host)
            config.openai_port = int(data.get("openai_port", config.openai_port))
            config.openai_key = data.get("openai_key", config.openai_key)
            config.request_timeout = float(data.get("request_timeout", config.request_timeout))
            config.debug = bool(data.get("debug", config.debug))
        set_debug_enabled(config.debug)
        debug_print(f"[Config] Loaded from: {path if os.path.exists(path) else 'defaults'}")
        return config

    def apply_args(self, argv: list) -> "Config":
        """Apply command line overrides (argv without the program name)."""
        i = 0
        while i < len(argv):
            arg = argv[i]
            value = None
            if "=" in arg and arg.startswith("--"):
                arg, value = arg.split("=", 1)
            if arg == "--debug":
                if value is not None and value.lower() not in BOOL_VALUES:
                    raise ConfigError(f"Invalid value for --debug: {value}")
                self.debug = True if value is None else BOOL_VALUES[value.lower()]
                i += 1
                continue
            if arg == "--config":
                # Handled by from_argv before loading
                i += 1 if value is not None else 2
                continue
            if arg not in CLI_FLAGS:
                raise ConfigError(f"Unknown argument: {arg}")
            if value is None:
                if i + 1 >= len(argv):
                    raise ConfigError(f"Missing value for {arg}")
                value = argv[i + 1]
                i += 1
            field_name, convert = CLI_FLAGS[arg]
            try:
                setattr(self, field_name, convert(value))
            except ValueError:
                raise ConfigError(f"Invalid value for {arg}: {value}")
            i += 1
        set_debug_enabled(self.debug)
        return self

    @classmethod
    def from_argv(cls, argv: Optional[list] = None) -> "Config":
        if argv is None:
            argv = sys.argv[1:]
        path = None
        for i, arg in enumerate(argv):
            if arg == "--config" and i + 1 < len(argv):
                path = argv[i + 1]
            elif arg.startswith("--config="):
                path = arg.split("=", 1)[1]
        return cls.load(path).apply_args(argv)
