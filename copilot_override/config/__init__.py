from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Any, Mapping

import yaml
from pydantic import BaseModel, Field, ValidationInfo, field_validator

DEFAULT_BIND = "127.0.0.1:8181"
DEFAULT_TIMEOUT_SECONDS = 600
DEFAULT_API_BASE = "https://api.openai.com/v1"
DEFAULT_MAX_TOKENS = 2048
DEFAULT_INSTRUCT_MODEL = "gpt-3.5-turbo-instruct"
DEFAULT_LOCALE = "zh_CN"
DEFAULT_REQUESTS_PER_SEC = 32767


class RouteKind(str, Enum):
    CHAT = "chat"
    CODE = "code"


@dataclass(frozen=True, slots=True)
class ModelMapping:
    default: str
    entries: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "entries", MappingProxyType(dict(self.entries)))

    def resolve(self, model: str | None) -> str:
        if model is not None and model in self.entries:
            return self.entries[model]
        return self.default


@dataclass(frozen=True, slots=True)
class RouteConfig:
    kind: RouteKind
    base_url: str
    api_key: str
    organization: str
    project: str
    max_tokens: int
    model: str
    model_mapping: ModelMapping
    locale: str = DEFAULT_LOCALE

    @property
    def completions_url(self) -> str:
        suffix = "/chat/completions" if self.kind == RouteKind.CHAT else "/completions"
        return f"{self.base_url.rstrip('/')}{suffix}"


class ServiceConfig(BaseModel):
    bind: str = DEFAULT_BIND
    proxy_url: str = ""
    timeout: int = DEFAULT_TIMEOUT_SECONDS
    codex_api_base: str = DEFAULT_API_BASE
    codex_api_key: str = ""
    codex_api_organization: str = ""
    codex_api_project: str = ""
    codex_max_tokens: int = DEFAULT_MAX_TOKENS
    code_instruct_model: str = DEFAULT_INSTRUCT_MODEL
    chat_api_base: str = DEFAULT_API_BASE
    chat_api_key: str = ""
    chat_api_organization: str = ""
    chat_api_project: str = ""
    chat_max_tokens: int = DEFAULT_MAX_TOKENS
    chat_model_default: str = DEFAULT_INSTRUCT_MODEL
    chat_model_map: dict[str, str] = Field(default_factory=dict)
    chat_locale: str = DEFAULT_LOCALE
    auth_token: str = ""
    requests_per_sec: int = DEFAULT_REQUESTS_PER_SEC

    @field_validator(
        "bind",
        "codex_api_base",
        "code_instruct_model",
        "chat_api_base",
        "chat_model_default",
        "chat_locale",
        mode="before",
    )
    @classmethod
    def _default_blank_strings(cls, value: Any, info: ValidationInfo) -> Any:
        if value is None or (isinstance(value, str) and not value.strip()):
            return cls.model_fields[info.field_name].default
        return value

    @field_validator(
        "proxy_url",
        "codex_api_key",
        "codex_api_organization",
        "codex_api_project",
        "chat_api_key",
        "chat_api_organization",
        "chat_api_project",
        "auth_token",
        mode="before",
    )
    @classmethod
    def _empty_for_null(cls, value: Any) -> Any:
        return "" if value is None else value

    @field_validator(
        "timeout",
        "codex_max_tokens",
        "chat_max_tokens",
        "requests_per_sec",
        mode="before",
    )
    @classmethod
    def _default_null_numbers(cls, value: Any, info: ValidationInfo) -> Any:
        if value is None:
            return cls.model_fields[info.field_name].default
        return value

    @field_validator(
        "timeout",
        "codex_max_tokens",
        "chat_max_tokens",
        "requests_per_sec",
        mode="after",
    )
    @classmethod
    def _default_non_positive(cls, value: int, info: ValidationInfo) -> int:
        if value <= 0:
            return cls.model_fields[info.field_name].default
        return value

    @field_validator("chat_model_map", mode="before")
    @classmethod
    def _coerce_model_map(cls, value: Any) -> dict[str, str]:
        if value is None:
            return {}
        if not isinstance(value, dict):
            raise ValueError("chat_model_map must be an object of model -> model.")
        return {str(key): str(mapped) for key, mapped in value.items()}

    def route(self, kind: RouteKind) -> RouteConfig:
        if kind == RouteKind.CHAT:
            return RouteConfig(
                kind=kind,
                base_url=self.chat_api_base,
                api_key=self.chat_api_key,
                organization=self.chat_api_organization,
                project=self.chat_api_project,
                max_tokens=self.chat_max_tokens,
                model=self.chat_model_default,
                model_mapping=ModelMapping(
                    default=self.chat_model_default,
                    entries=self.chat_model_map,
                ),
                locale=self.chat_locale,
            )
        return RouteConfig(
            kind=kind,
            base_url=self.codex_api_base,
            api_key=self.codex_api_key,
            organization=self.codex_api_organization,
            project=self.codex_api_project,
            max_tokens=self.codex_max_tokens,
            model=self.code_instruct_model,
            model_mapping=ModelMapping(default=self.code_instruct_model),
            locale=self.chat_locale,
        )

    def available_models(self) -> list[str]:
        seen: set[str] = set()
        models: list[str] = []
        for model in [
            self.chat_model_default,
            *self.chat_model_map.values(),
            self.code_instruct_model,
        ]:
            if model in seen:
                continue
            seen.add(model)
            models.append(model)
        return models

    def describe(self) -> str:
        lines = [
            f"> Bind: {self.bind}",
            f"> ProxyUrl: {self.proxy_url}",
            f"> Timeout(Second): {self.timeout}",
            f"> TotalRequestsPerSec: {self.requests_per_sec}",
            f"> AuthToken: {'<set>' if self.auth_token else '<unset>'}",
            f"> CodexApiBase: {self.codex_api_base}",
            f"> CodexApiOrganization: {self.codex_api_organization}",
            f"> CodexApiProject: {self.codex_api_project}",
            f"> CodexMaxTokens: {self.codex_max_tokens}",
            f"> CodeInstructModel: {self.code_instruct_model}",
            f"> ChatApiBase: {self.chat_api_base}",
            f"> ChatApiOrganization: {self.chat_api_organization}",
            f"> ChatApiProject: {self.chat_api_project}",
            f"> ChatMaxTokens: {self.chat_max_tokens}",
            f"> ChatModelDefault: {self.chat_model_default}",
            f"> ChatModelMap: {self.chat_model_map}",
            f"> ChatLocale: {self.chat_locale}",
        ]
        return "\n".join(lines) + "\n"


class ServiceConfigLoader:
    def __init__(self, config_path: str | Path) -> None:
        self._path = Path(config_path)
        self._config_path = str(config_path)

    def load(self) -> ServiceConfig:
        if not self._path.exists():
            raise FileNotFoundError(
                f"Service config not found at '{self._config_path}'. "
                "Create it or set SERVICE_CONFIG_PATH.",
            )
        with self._path.open("r", encoding="utf-8") as handle:
            raw = yaml.safe_load(handle) or {}
        if not isinstance(raw, dict):
            raise ValueError(f"Expected a JSON/YAML object in '{self._config_path}'.")
        return ServiceConfig.model_validate(raw)


def load_service_config(config_path: str | Path) -> ServiceConfig:
    return ServiceConfigLoader(config_path).load()


def split_bind_address(address: str) -> tuple[str, int]:
    host, sep, port_text = address.strip().rpartition(":")
    if not sep:
        raise ValueError(f"Bind address '{address}' is missing a port.")
    try:
        port = int(port_text)
    except ValueError as exc:
        raise ValueError(f"Bind address '{address}' has an invalid port.") from exc
    if not 0 < port < 65536:
        raise ValueError(f"Bind address '{address}' has an out-of-range port.")
    return host.strip("[]") or "0.0.0.0", port
