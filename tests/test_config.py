from __future__ import annotations

import json
from pathlib import Path

import pytest

from copilot_override.config import (
    DEFAULT_API_BASE,
    DEFAULT_BIND,
    DEFAULT_INSTRUCT_MODEL,
    DEFAULT_LOCALE,
    DEFAULT_MAX_TOKENS,
    DEFAULT_REQUESTS_PER_SEC,
    DEFAULT_TIMEOUT_SECONDS,
    RouteKind,
    ServiceConfig,
    load_service_config,
    split_bind_address,
)


def test_empty_config_uses_defaults() -> None:
    config = ServiceConfig.model_validate({})

    assert config.bind == DEFAULT_BIND
    assert config.timeout == DEFAULT_TIMEOUT_SECONDS
    assert config.codex_api_base == DEFAULT_API_BASE
    assert config.chat_api_base == DEFAULT_API_BASE
    assert config.codex_max_tokens == DEFAULT_MAX_TOKENS
    assert config.chat_max_tokens == DEFAULT_MAX_TOKENS
    assert config.code_instruct_model == DEFAULT_INSTRUCT_MODEL
    assert config.chat_model_default == DEFAULT_INSTRUCT_MODEL
    assert config.chat_locale == DEFAULT_LOCALE
    assert config.requests_per_sec == DEFAULT_REQUESTS_PER_SEC
    assert config.auth_token == ""


def test_zero_blank_and_null_values_fall_back_to_defaults() -> None:
    config = ServiceConfig.model_validate(
        {
            "bind": "",
            "timeout": 0,
            "codex_max_tokens": -5,
            "chat_max_tokens": None,
            "requests_per_sec": 0,
            "chat_locale": "  ",
            "chat_model_default": None,
            "chat_api_key": None,
            "chat_model_map": None,
        }
    )

    assert config.bind == DEFAULT_BIND
    assert config.timeout == DEFAULT_TIMEOUT_SECONDS
    assert config.codex_max_tokens == DEFAULT_MAX_TOKENS
    assert config.chat_max_tokens == DEFAULT_MAX_TOKENS
    assert config.requests_per_sec == DEFAULT_REQUESTS_PER_SEC
    assert config.chat_locale == DEFAULT_LOCALE
    assert config.chat_model_default == DEFAULT_INSTRUCT_MODEL
    assert config.chat_api_key == ""
    assert config.chat_model_map == {}


def test_model_map_must_be_an_object() -> None:
    with pytest.raises(ValueError):
        ServiceConfig.model_validate({"chat_model_map": ["gpt-4"]})


def test_routes_are_derived_per_kind() -> None:
    config = ServiceConfig(
        codex_api_base="https://codex.example/v1/",
        codex_api_key="codex-key",
        codex_max_tokens=300,
        code_instruct_model="deepseek-coder-6.7b",
        chat_api_base="https://chat.example/v1",
        chat_api_key="chat-key",
        chat_api_project="proj-1",
        chat_max_tokens=700,
        chat_model_default="chat-default",
        chat_model_map={"gpt-4": "chat-large"},
        chat_locale="fr_FR",
    )

    chat = config.route(RouteKind.CHAT)
    assert chat.completions_url == "https://chat.example/v1/chat/completions"
    assert chat.api_key == "chat-key"
    assert chat.project == "proj-1"
    assert chat.max_tokens == 700
    assert chat.locale == "fr_FR"
    assert chat.model_mapping.resolve("gpt-4") == "chat-large"
    assert chat.model_mapping.resolve("gpt-3.5-turbo") == "chat-default"
    assert chat.model_mapping.resolve(None) == "chat-default"

    code = config.route(RouteKind.CODE)
    assert code.completions_url == "https://codex.example/v1/completions"
    assert code.api_key == "codex-key"
    assert code.max_tokens == 300
    assert code.model == "deepseek-coder-6.7b"


def test_available_models_are_deduplicated() -> None:
    config = ServiceConfig(
        chat_model_default="chat-default",
        chat_model_map={"gpt-4": "chat-default", "gpt-4o": "chat-large"},
        code_instruct_model="chat-large",
    )

    assert config.available_models() == ["chat-default", "chat-large"]


def test_describe_hides_secrets() -> None:
    config = ServiceConfig(
        codex_api_key="sk-codex",
        chat_api_key="sk-chat",
        auth_token="s3cret",
    )

    text = config.describe()

    assert "sk-codex" not in text
    assert "sk-chat" not in text
    assert "s3cret" not in text
    assert "> AuthToken: <set>" in text


def test_load_json_config(tmp_path: Path) -> None:
    path = tmp_path / "config.json"
    path.write_text(
        json.dumps({"bind": "0.0.0.0:9000", "chat_model_map": {"a": "b"}}),
        encoding="utf-8",
    )

    config = load_service_config(path)

    assert config.bind == "0.0.0.0:9000"
    assert config.chat_model_map == {"a": "b"}


def test_load_yaml_config(tmp_path: Path) -> None:
    path = tmp_path / "config.yaml"
    path.write_text(
        "bind: 127.0.0.1:9100\nrequests_per_sec: 5\nchat_model_map:\n  gpt-4: big\n",
        encoding="utf-8",
    )

    config = load_service_config(path)

    assert config.requests_per_sec == 5
    assert config.chat_model_map == {"gpt-4": "big"}


def test_missing_config_file_points_at_env_variable(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError) as excinfo:
        load_service_config(tmp_path / "absent.json")

    assert "SERVICE_CONFIG_PATH" in str(excinfo.value)


def test_non_object_config_is_rejected(tmp_path: Path) -> None:
    path = tmp_path / "config.json"
    path.write_text("[1, 2]", encoding="utf-8")

    with pytest.raises(ValueError):
        load_service_config(path)


@pytest.mark.parametrize(
    ("address", "expected"),
    [
        ("127.0.0.1:8181", ("127.0.0.1", 8181)),
        (":9000", ("0.0.0.0", 9000)),
        ("[::1]:8080", ("::1", 8080)),
    ],
)
def test_split_bind_address(address: str, expected: tuple[str, int]) -> None:
    assert split_bind_address(address) == expected


@pytest.mark.parametrize("address", ["localhost", "host:abc", "host:70000"])
def test_split_bind_address_rejects_bad_values(address: str) -> None:
    with pytest.raises(ValueError):
        split_bind_address(address)
