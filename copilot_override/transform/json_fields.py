"""Path-addressed edits on a raw JSON request body.

Paths are dotted strings where each segment is an object key or an array
index, e.g. ``messages.3.content``. A literal dot inside a key is written as
``\\.``. On ``set_field`` the index ``-1`` appends to an array.

Every edit returns a new, syntactically valid buffer or raises
``MalformedPayload``; the input buffer is never modified.
"""

from __future__ import annotations

import json
from typing import Any

from copilot_override.errors import MalformedPayload
from copilot_override.utils.numeric_utils import coerce_int


class _Missing:
    __slots__ = ()

    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False


MISSING: Any = _Missing()


def split_path(path: str) -> list[str]:
    segments: list[str] = []
    current: list[str] = []
    escaped = False
    for char in path:
        if escaped:
            current.append(char)
            escaped = False
        elif char == "\\":
            escaped = True
        elif char == ".":
            segments.append("".join(current))
            current = []
        else:
            current.append(char)
    if escaped:
        current.append("\\")
    segments.append("".join(current))
    if any(segment == "" for segment in segments):
        raise MalformedPayload(f"Invalid field path '{path}'.")
    return segments


def _as_index(segment: str) -> int | None:
    if segment == "-1":
        return -1
    if segment.isdigit():
        return int(segment)
    return None


def decode_payload(buffer: bytes) -> Any:
    try:
        return json.loads(buffer)
    except (UnicodeDecodeError, ValueError) as exc:
        raise MalformedPayload(f"Request body is not valid JSON: {exc}") from exc


def encode_payload(document: Any) -> bytes:
    """Compact UTF-8 JSON; ``<``, ``>`` and ``&`` are always written literally.

    Lone surrogates cannot be written as UTF-8, so a document holding one is
    written with ASCII escapes instead.
    """
    try:
        return json.dumps(
            document,
            ensure_ascii=False,
            separators=(",", ":"),
        ).encode("utf-8")
    except UnicodeEncodeError:
        return json.dumps(document, separators=(",", ":")).encode("ascii")


def _lookup(document: Any, segments: list[str]) -> Any:
    node = document
    for segment in segments:
        if isinstance(node, dict):
            if segment not in node:
                return MISSING
            node = node[segment]
            continue
        if isinstance(node, list):
            index = _as_index(segment)
            if index is None or index < 0 or index >= len(node):
                return MISSING
            node = node[index]
            continue
        return MISSING
    return node


def get_field(buffer: bytes, path: str) -> Any:
    """Return the value at ``path`` or ``MISSING`` when it does not exist."""
    return _lookup(decode_payload(buffer), split_path(path))


def get_int(buffer: bytes, path: str) -> int:
    value = get_field(buffer, path)
    if value is MISSING:
        return 0
    return coerce_int(value)


def get_str(buffer: bytes, path: str) -> str:
    value = get_field(buffer, path)
    if value is MISSING or value is None:
        return ""
    if isinstance(value, str):
        return value
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"))


def _new_container(next_segment: str) -> dict[str, Any] | list[Any]:
    return [] if _as_index(next_segment) is not None else {}


def _assign(container: Any, segment: str, value: Any, path: str) -> None:
    if isinstance(container, dict):
        container[segment] = value
        return
    if isinstance(container, list):
        index = _as_index(segment)
        if index is None:
            raise MalformedPayload(
                f"Cannot use key '{segment}' on an array at '{path}'."
            )
        if index == -1 or index == len(container):
            container.append(value)
            return
        while len(container) < index:
            container.append(None)
        if index == len(container):
            container.append(value)
        else:
            container[index] = value
        return
    raise MalformedPayload(f"Cannot set '{path}': parent is not an object or array.")


def set_field(buffer: bytes, path: str, value: Any) -> bytes:
    document = decode_payload(buffer)
    segments = split_path(path)
    if not isinstance(document, (dict, list)):
        raise MalformedPayload("Request body must be a JSON object.")

    node = document
    for position, segment in enumerate(segments[:-1]):
        child = _lookup(node, [segment])
        if not isinstance(child, (dict, list)):
            child = _new_container(segments[position + 1])
            _assign(node, segment, child, path)
            if isinstance(node, list) and _as_index(segment) == -1:
                child = node[-1]
        node = child
    _assign(node, segments[-1], value, path)

    try:
        return encode_payload(document)
    except (TypeError, ValueError) as exc:
        raise MalformedPayload(f"Cannot encode value for '{path}': {exc}") from exc


def delete_field(buffer: bytes, path: str) -> bytes:
    """Remove ``path``; a missing path leaves the document unchanged."""
    document = decode_payload(buffer)
    segments = split_path(path)
    parent = _lookup(document, segments[:-1])
    last = segments[-1]
    if isinstance(parent, dict):
        if last not in parent:
            return buffer
        del parent[last]
    elif isinstance(parent, list):
        index = _as_index(last)
        if index is None or index < 0 or index >= len(parent):
            return buffer
        del parent[index]
    else:
        return buffer

    try:
        return encode_payload(document)
    except (TypeError, ValueError) as exc:
        raise MalformedPayload(
            f"Cannot encode body after removing '{path}': {exc}"
        ) from exc
