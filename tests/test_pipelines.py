from __future__ import annotations

import json
import logging
from typing import Any

import pytest

from copilot_override.config import ServiceConfig, RouteKind
from copilot_override.errors import MalformedPayload
from copilot_override.transform.pipelines import (
    RequestTransformer,
    RewriteRule,
    locale_instruction,
)


def _chat_transformer(**overrides: Any) -> RequestTransformer:
    config = ServiceConfig(
        chat_model_default="default-chat",
        chat_model_map={"gpt-4": "mapped-gpt-4"},
        chat_max_tokens=1000,
        chat_locale="en_US",
        **overrides,
    )
    return RequestTransformer(config.route(RouteKind.CHAT))


def _code_transformer(model: str, max_tokens: int = 500) -> RequestTransformer:
    config = ServiceConfig(code_instruct_model=model, codex_max_tokens=max_tokens)
    return RequestTransformer(config.route(RouteKind.CODE))


def _run(transformer: RequestTransformer, payload: dict[str, Any]) -> dict[str, Any]:
    return json.loads(transformer.transform(json.dumps(payload).encode("utf-8")))


def test_chat_maps_known_model() -> None:
    result = _run(_chat_transformer(), {"model": "gpt-4", "messages": []})
    assert result["model"] == "mapped-gpt-4"


@pytest.mark.parametrize("payload", [{"model": "unknown"}, {"model": 42}, {}])
def test_chat_falls_back_to_default_model(payload: dict[str, Any]) -> None:
    result = _run(_chat_transformer(), {**payload, "messages": []})
    assert result["model"] == "default-chat"


def test_chat_appends_locale_to_last_message() -> None:
    result = _run(
        _chat_transformer(),
        {
            "model": "gpt-4",
            "messages": [
                {"role": "system", "content": "be brief"},
                {"role": "user", "content": "Explain this."},
            ],
        },
    )
    assert result["messages"][0]["content"] == "be brief"
    assert result["messages"][1]["content"] == (
        "Explain this.Respond in the following locale: en_US."
    )


def test_chat_locale_injection_is_idempotent() -> None:
    transformer = _chat_transformer()
    first = transformer.transform(
        json.dumps({"messages": [{"role": "user", "content": "hi"}]}).encode()
    )
    second = transformer.transform(first)
    assert json.loads(second) == json.loads(first)
    content = json.loads(second)["messages"][0]["content"]
    assert content.count("Respond in the following locale") == 1


def test_chat_uses_builtin_locale_when_unset() -> None:
    assert locale_instruction("") == "Respond in the following locale: zh_CN."
    result = _run(
        _chat_transformer(),
        {"messages": [{"role": "user", "content": None}]},
    )
    assert result["messages"][0]["content"] == "Respond in the following locale: en_US."


def test_chat_skips_locale_when_function_call_present() -> None:
    result = _run(
        _chat_transformer(),
        {
            "function_call": "auto",
            "messages": [{"role": "user", "content": "call a tool"}],
        },
    )
    assert result["messages"][0]["content"] == "call a tool"


def test_chat_skips_locale_for_empty_messages() -> None:
    result = _run(_chat_transformer(), {"messages": []})
    assert result["messages"] == []


def test_chat_leaves_multipart_content_alone() -> None:
    parts = [{"type": "text", "text": "hi"}]
    result = _run(
        _chat_transformer(), {"messages": [{"role": "user", "content": parts}]}
    )
    assert result["messages"][0]["content"] == parts


def test_chat_strips_intent_fields() -> None:
    result = _run(
        _chat_transformer(),
        {
            "messages": [],
            "intent": True,
            "intent_threshold": 0.7,
            "intent_content": "x",
            "temperature": 0.1,
        },
    )
    assert "intent" not in result
    assert "intent_threshold" not in result
    assert "intent_content" not in result
    assert result["temperature"] == 0.1


@pytest.mark.parametrize(
    ("inbound", "expected"),
    [(5000, 1000), (1000, 1000), (10, 10)],
)
def test_chat_clamps_max_tokens(inbound: int, expected: int) -> None:
    result = _run(_chat_transformer(), {"messages": [], "max_tokens": inbound})
    assert result["max_tokens"] == expected


def test_chat_leaves_absent_max_tokens_absent() -> None:
    result = _run(_chat_transformer(), {"messages": []})
    assert "max_tokens" not in result


def test_chat_malformed_body_aborts(caplog: Any) -> None:
    with caplog.at_level(logging.ERROR, logger="uvicorn.error"):
        with pytest.raises(MalformedPayload):
            _chat_transformer().transform(b"{not json")
    assert "transform_required_edit_failed" in caplog.text


def test_code_removes_metadata_and_overrides_model() -> None:
    result = _run(
        _code_transformer("gpt-3.5-turbo-instruct"),
        {
            "model": "copilot-codex",
            "prompt": "def f():",
            "extra": {"language": "python"},
            "nwo": "octo/repo",
            "max_tokens": 9999,
            "n": 3,
        },
    )
    assert result == {
        "model": "gpt-3.5-turbo-instruct",
        "prompt": "def f():",
        "max_tokens": 500,
        "n": 3,
    }


def test_code_fill_in_middle_builds_single_message() -> None:
    transformer = _code_transformer("stable-code-3b")
    assert transformer.rule == RewriteRule.FILL_IN_MIDDLE_CODE
    raw = transformer.transform(
        json.dumps({"prompt": "foo", "suffix": "bar", "messages": [{"x": 1}]}).encode()
    )
    assert b"\\u003c" not in raw
    assert b"\\u003e" not in raw
    result = json.loads(raw)
    assert result["messages"] == [
        {"role": "user", "content": "<fim_prefix>foo<fim_suffix>bar<fim_middle>"}
    ]
    assert result["model"] == "stable-code-3b"


def test_code_fill_in_middle_treats_missing_fields_as_empty() -> None:
    result = _run(_code_transformer("stable-code-3b"), {})
    assert result["messages"][0]["content"] == "<fim_prefix><fim_suffix><fim_middle>"


def test_code_fill_in_middle_decodes_inbound_escaped_brackets() -> None:
    raw = _code_transformer("stable-code-3b").transform(
        b'{"prompt":"if a \\u003c b","suffix":""}'
    )
    assert b"\\u003c" not in raw
    assert "<fim_prefix>if a < b<fim_suffix>" in json.loads(raw)["messages"][0]["content"]


def test_code_fill_in_middle_keeps_escaped_backslash_before_u003c_text() -> None:
    body = json.dumps({"prompt": "s := \"\\u003c\"", "suffix": ""}).encode("utf-8")

    raw = _code_transformer("stable-code-3b").transform(body)

    content = json.loads(raw)["messages"][0]["content"]
    assert content == "<fim_prefix>s := \"\\u003c\"<fim_suffix><fim_middle>"


@pytest.mark.parametrize(
    "model", ["stable-code-3b", "deepseek-coder-6.7b", "codellama-7b"]
)
def test_code_routes_forward_lone_surrogates(model: str) -> None:
    raw = _code_transformer(model).transform(
        b'{"prompt":"x\\ud83d","suffix":"","extra":{},"max_tokens":10}'
    )

    result = json.loads(raw)
    assert result["prompt"] == "x\ud83d"
    assert "extra" not in result
    assert result["model"] == model


def test_chat_route_forwards_lone_surrogates() -> None:
    raw = _chat_transformer().transform(
        b'{"model":"gpt-4","intent":true,'
        b'"messages":[{"role":"user","content":"hi \\ud83d"}]}'
    )

    result = json.loads(raw)
    assert result["model"] == "mapped-gpt-4"
    assert "intent" not in result
    assert result["messages"][0]["content"].startswith("hi \ud83d")


@pytest.mark.parametrize(
    ("payload", "expected_n"),
    [({"n": 5}, 1), ({"n": 1}, 1), ({"n": 0}, 0), ({}, None)],
)
def test_code_single_sample_family_clamps_n(
    payload: dict[str, Any], expected_n: int | None
) -> None:
    transformer = _code_transformer("deepseek-coder-6.7b")
    assert transformer.rule == RewriteRule.SINGLE_SAMPLE_CODE
    result = _run(transformer, payload)
    assert result.get("n") == expected_n


def test_code_passthrough_family_leaves_n() -> None:
    transformer = _code_transformer("codellama-7b")
    assert transformer.rule == RewriteRule.PASSTHROUGH_CODE
    result = _run(transformer, {"n": 5, "prompt": "x"})
    assert result["n"] == 5
    assert "messages" not in result


def test_code_malformed_body_logs_cleanup_and_aborts_on_model(caplog: Any) -> None:
    with caplog.at_level(logging.WARNING, logger="uvicorn.error"):
        with pytest.raises(MalformedPayload):
            _code_transformer("codellama-7b").transform(b"garbage")
    assert "transform_cleanup_failed" in caplog.text
    assert "transform_required_edit_failed" in caplog.text


def test_chat_rule_is_selected_for_chat_route() -> None:
    assert _chat_transformer().rule == RewriteRule.CHAT
