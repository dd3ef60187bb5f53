from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Callable

from copilot_override.config import DEFAULT_LOCALE, RouteConfig, RouteKind
from copilot_override.errors import MalformedPayload
from copilot_override.transform.json_fields import (
    MISSING,
    delete_field,
    get_field,
    get_int,
    get_str,
    set_field,
)

logger = logging.getLogger("uvicorn.error")

FIM_MODEL_MARKER = "stable-code"
SINGLE_SAMPLE_MODEL_PREFIX = "deepseek-coder"
LOCALE_MARKER = "Respond in the following locale"
CHAT_INTENT_FIELDS = ("intent", "intent_threshold", "intent_content")
CODE_METADATA_FIELDS = ("extra", "nwo")


class RewriteRule(str, Enum):
    CHAT = "chat"
    FILL_IN_MIDDLE_CODE = "fill_in_middle_code"
    SINGLE_SAMPLE_CODE = "single_sample_code"
    PASSTHROUGH_CODE = "passthrough_code"


def select_rewrite_rule(route: RouteConfig) -> RewriteRule:
    if route.kind == RouteKind.CHAT:
        return RewriteRule.CHAT
    if FIM_MODEL_MARKER in route.model:
        return RewriteRule.FILL_IN_MIDDLE_CODE
    if route.model.startswith(SINGLE_SAMPLE_MODEL_PREFIX):
        return RewriteRule.SINGLE_SAMPLE_CODE
    return RewriteRule.PASSTHROUGH_CODE


def locale_instruction(locale: str | None) -> str:
    return f"{LOCALE_MARKER}: {locale or DEFAULT_LOCALE}."


def build_fim_prompt(prompt: str, suffix: str) -> str:
    return f"<fim_prefix>{prompt}<fim_suffix>{suffix}<fim_middle>"


class RequestTransformer:
    """Applies one route's ordered rewrite steps to a raw request body.

    The rewrite rule is fixed when the transformer is built, so requests only
    pay for the steps their route needs.
    """

    def __init__(self, route: RouteConfig) -> None:
        self.route = route
        self.rule = select_rewrite_rule(route)

    def transform(self, body: bytes) -> bytes:
        if self.rule == RewriteRule.CHAT:
            return self._transform_chat(body)
        return self._transform_code(body)

    def _transform_chat(self, body: bytes) -> bytes:
        body = self._required(body, "model", self._resolve_chat_model)
        body = self._inject_locale(body)
        for name in CHAT_INTENT_FIELDS:
            body = self._optional_delete(body, name)
        return self._clamp_max_tokens(body)

    def _transform_code(self, body: bytes) -> bytes:
        for name in CODE_METADATA_FIELDS:
            body = self._optional_delete(body, name)
        body = self._required(
            body, "model", lambda buf: set_field(buf, "model", self.route.model)
        )
        body = self._clamp_max_tokens(body)

        if self.rule == RewriteRule.FILL_IN_MIDDLE_CODE:
            return self._rewrite_fill_in_middle(body)
        if self.rule == RewriteRule.SINGLE_SAMPLE_CODE:
            if get_int(body, "n") > 1:
                body = self._required(body, "n", lambda buf: set_field(buf, "n", 1))
        return body

    def _resolve_chat_model(self, body: bytes) -> bytes:
        inbound_model = get_field(body, "model")
        model = self.route.model_mapping.resolve(
            inbound_model if isinstance(inbound_model, str) else None
        )
        return set_field(body, "model", model)

    def _inject_locale(self, body: bytes) -> bytes:
        if get_field(body, "function_call") is not MISSING:
            return body
        messages = get_field(body, "messages")
        if not isinstance(messages, list) or not messages:
            return body
        last_message = messages[-1]
        if not isinstance(last_message, dict):
            return body
        if not isinstance(last_message.get("content"), (str, type(None))):
            # multi-part content is left as-is
            return body
        path = f"messages.{len(messages) - 1}.content"
        content = get_str(body, path)
        if LOCALE_MARKER in content:
            return body
        updated = content + locale_instruction(self.route.locale)
        return self._required(body, path, lambda buf: set_field(buf, path, updated))

    def _clamp_max_tokens(self, body: bytes) -> bytes:
        if get_int(body, "max_tokens") <= self.route.max_tokens:
            return body
        return self._required(
            body,
            "max_tokens",
            lambda buf: set_field(buf, "max_tokens", self.route.max_tokens),
        )

    def _rewrite_fill_in_middle(self, body: bytes) -> bytes:
        content = build_fim_prompt(get_str(body, "prompt"), get_str(body, "suffix"))
        messages: list[dict[str, Any]] = [{"role": "user", "content": content}]
        return self._required(
            body, "messages", lambda buf: set_field(buf, "messages", messages)
        )

    def _required(
        self, body: bytes, field_name: str, edit: Callable[[bytes], bytes]
    ) -> bytes:
        try:
            return edit(body)
        except MalformedPayload as exc:
            logger.error(
                "transform_required_edit_failed route=%s field=%s error=%s",
                self.route.kind.value,
                field_name,
                exc,
            )
            raise

    def _optional_delete(self, body: bytes, field_name: str) -> bytes:
        try:
            return delete_field(body, field_name)
        except MalformedPayload as exc:
            logger.warning(
                "transform_cleanup_failed route=%s field=%s error=%s",
                self.route.kind.value,
                field_name,
                exc,
            )
            return body
