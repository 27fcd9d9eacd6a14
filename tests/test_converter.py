"""Tests for Ollama <-> OpenAI request and response conversion."""
import json

import pytest

from ollama_proxy.converter import OllamaConverter
from ollama_proxy.errors import ParseError
from ollama_proxy.models import TokenUsage, iso_timestamp

from conftest import completion


def to_openai(body):
    return OllamaConverter.to_openai_request(OllamaConverter.to_canonical(body))


# ===== Request =====

def test_minimal_request_defaults():
    req = to_openai({"prompt": "hi"})
    assert req == {
        "model": "gpt-3.5-turbo",
        "messages": [{"role": "user", "content": "hi"}],
        "stream": False,
    }


def test_options_mapping():
    req = to_openai({
        "model": "gpt-4o",
        "messages": [{"role": "user", "content": "hi"}],
        "stream": True,
        "options": {
            "temperature": 0.2,
            "num_predict": 128,
            "top_p": 0.9,
            "repeat_penalty": 1.5,
            "presence_penalty": 0.3,
            "stop": ["\n\n"],
            "seed": 42,
            "tool_choice": "auto",
            "response_format": {"type": "json_object"},
            "top_k": 40,
            "mirostat": 1,
        },
    })
    assert req == {
        "model": "gpt-4o",
        "messages": [{"role": "user", "content": "hi"}],
        "stream": True,
        "temperature": 0.2,
        "max_tokens": 128,
        "top_p": 0.9,
        "frequency_penalty": 0.5,
        "presence_penalty": 0.3,
        "stop": ["\n\n"],
        "seed": 42,
        "tool_choice": "auto",
        "response_format": {"type": "json_object"},
    }


def test_absent_options_are_omitted_not_null():
    req = to_openai({"messages": [{"role": "user", "content": "hi"}], "options": {}})
    for key in ("temperature", "max_tokens", "top_p", "frequency_penalty", "presence_penalty",
                "tools", "tool_choice", "response_format", "stop", "seed"):
        assert key not in req
    assert "null" not in json.dumps(req)


def test_zero_values_are_kept():
    req = to_openai({"prompt": "hi", "options": {"temperature": 0, "presence_penalty": 0, "repeat_penalty": 1}})
    assert req["temperature"] == 0
    assert req["presence_penalty"] == 0
    assert req["frequency_penalty"] == 0


def test_invalid_option_values_dropped():
    req = to_openai({"prompt": "hi", "options": {
        "temperature": "hot",
        "top_p": True,
        "num_predict": -1,
        "repeat_penalty": None,
    }})
    for key in ("temperature", "top_p", "max_tokens", "frequency_penalty"):
        assert key not in req


def test_tools_from_request_body():
    tools = [{"type": "function", "function": {"name": "get_weather", "parameters": {}}}]
    req = to_openai({"messages": [{"role": "user", "content": "weather?"}], "tools": tools})
    assert req["tools"] == tools
    assert "tools" not in to_openai({"prompt": "x", "tools": []})


def test_format_json_maps_to_response_format():
    assert to_openai({"prompt": "x", "format": "json"})["response_format"] == {"type": "json_object"}
    schema = {"type": "object", "properties": {"a": {"type": "string"}}}
    assert to_openai({"prompt": "x", "format": schema})["response_format"] == {
        "type": "json_schema",
        "json_schema": {"name": "response", "schema": schema},
    }


def test_canonical_request_records_source():
    canonical = OllamaConverter.to_canonical({"model": "", "history": [{"role": "user", "content": "q"}]})
    assert canonical.model is None
    assert canonical.message_source == "history"
    assert OllamaConverter.to_canonical({}).message_source == "default"


# ===== Response =====

def test_to_chat_with_usage():
    resp = completion("Hi there", usage={"prompt_tokens": 5, "completion_tokens": 3, "total_tokens": 8})
    assert OllamaConverter.to_chat(resp) == {
        "model": "gpt-4o",
        "created_at": "2023-11-14T22:13:20.000Z",
        "message": {"role": "assistant", "content": "Hi there"},
        "done": True,
        "done_reason": "stop",
        "prompt_eval_count": 5,
        "eval_count": 3,
        "total_tokens": 8,
    }


def test_to_generate_shape():
    resp = completion("Generated", finish_reason="length",
                      usage={"prompt_tokens": 2, "completion_tokens": 7, "total_tokens": 9})
    out = OllamaConverter.to_generate(resp)
    assert out["response"] == "Generated"
    assert "message" not in out
    assert out["done"] is False
    assert out["done_reason"] == "length"
    assert out["created_at"] == iso_timestamp(1700000000)
    assert (out["prompt_eval_count"], out["eval_count"], out["total_tokens"]) == (2, 7, 9)


def test_usage_wins_over_timings():
    resp = completion(usage={"prompt_tokens": 5, "completion_tokens": 3, "total_tokens": 8},
                      timings={"cache_n": 100, "predicted_n": 200, "prompt_ms": 1.5, "predicted_ms": 9.0})
    out = OllamaConverter.to_chat(resp)
    assert (out["prompt_eval_count"], out["eval_count"], out["total_tokens"]) == (5, 3, 8)
    assert out["prompt_eval_duration"] == 1.5
    assert out["eval_duration"] == 9.0
    assert out["total_duration"] == 10.5


def test_timings_fallback():
    resp = completion(timings={"cache_n": 12, "predicted_n": 30})
    out = OllamaConverter.to_generate(resp)
    assert (out["prompt_eval_count"], out["eval_count"], out["total_tokens"]) == (12, 30, 42)
    assert "total_duration" not in out


def test_no_usage_gives_zero_counts():
    out = OllamaConverter.to_chat(completion(usage=None))
    assert (out["prompt_eval_count"], out["eval_count"], out["total_tokens"]) == (0, 0, 0)
    assert "eval_duration" not in out


def test_token_usage_total_defaults_to_sum():
    usage = TokenUsage.from_response({"usage": {"prompt_tokens": 4, "completion_tokens": 6}})
    assert usage.total_tokens == 10


def test_tool_calls_copied_to_chat_message():
    tool_calls = [{"id": "call_1", "type": "function",
                   "function": {"name": "get_weather", "arguments": "{\"city\": \"Paris\"}"}}]
    resp = completion(content=None, finish_reason="tool_calls")
    resp["choices"][0]["message"]["tool_calls"] = tool_calls
    out = OllamaConverter.to_chat(resp)
    assert out["message"] == {"role": "assistant", "content": "", "tool_calls": tool_calls}
    assert out["done"] is False


def test_translation_is_idempotent():
    resp = completion("same", usage={"prompt_tokens": 1, "completion_tokens": 1, "total_tokens": 2})
    first = json.dumps(OllamaConverter.to_chat(resp))
    second = json.dumps(OllamaConverter.to_chat(resp))
    assert first == second
    assert json.dumps(OllamaConverter.to_generate(resp)) == json.dumps(OllamaConverter.to_generate(resp))


def test_missing_created_uses_epoch():
    resp = completion()
    del resp["created"]
    assert OllamaConverter.to_chat(resp)["created_at"] == "1970-01-01T00:00:00.000Z"


@pytest.mark.parametrize("resp", [
    {},
    {"choices": []},
    {"choices": [{"index": 0}]},
    ["not", "an", "object"],
])
def test_malformed_response_raises_parse_error(resp):
    with pytest.raises(ParseError):
        OllamaConverter.to_chat(resp)


def test_millisecond_created_falls_back_to_epoch():
    resp = completion(created=1700000000000)
    assert OllamaConverter.to_chat(resp)["created_at"] == "1970-01-01T00:00:00.000Z"
    assert OllamaConverter.to_generate(resp)["created_at"] == "1970-01-01T00:00:00.000Z"


def test_non_finite_counts_become_zero():
    resp = json.loads('{"usage": {"prompt_tokens": Infinity, "completion_tokens": 2, "total_tokens": NaN}}')
    assert TokenUsage.from_response(resp) == TokenUsage(0, 2, 0)
    resp = json.loads('{"timings": {"cache_n": NaN, "predicted_n": 4}}')
    assert TokenUsage.from_response(resp) == TokenUsage(0, 4, 4)


def test_iso_timestamp_out_of_range():
    assert iso_timestamp(1700000000000, fallback=0) == "1970-01-01T00:00:00.000Z"
    assert iso_timestamp(float("nan"), fallback=1700000000) == "2023-11-14T22:13:20.000Z"
    assert iso_timestamp(-1e20).endswith("Z")
