"""Schema-driven conversion of generic JSON trees into API records.

The Struct definitions in :mod:`api_models` are the field tables: a field
without a default is mandatory, everything else is optional. Conversion is
strict and fail-fast per record; :func:`decode_updates` isolates failures to
the offending element.
"""

from __future__ import annotations

import functools
import re
import types
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Any, TypeVar, Union, get_args, get_origin

import msgspec

from ..errors import SchemaError
from ..logging import get_logger
from .api_models import Message, Update

logger = get_logger(__name__)

T = TypeVar("T")

# Nested Message levels kept (reply chains, pinned messages); deeper ones are
# treated as absent.
MAX_MESSAGE_DEPTH = 8

_MAX_LENIENT_ATTEMPTS = 64

_MISSING_RE = re.compile(
    r"^Object missing required field `(?P<name>[^`]+)`(?: - at `(?P<path>[^`]*)`)?$"
)
_EXPECTED_RE = re.compile(
    r"^Expected `(?P<expected>[^`]+)`, got `(?P<actual>[^`]+)`(?: - at `(?P<path>[^`]*)`)?$"
)
_PATH_RE = re.compile(r" - at `(?P<path>[^`]*)`$")
_SEGMENT_RE = re.compile(r"\.([^.\[]+)|\[(\d+)\]")

_MSGSPEC_TYPE_NAMES = {
    "int": "integer",
    "str": "string",
    "bool": "bool",
    "float": "real",
    "object": "object",
    "array": "array",
    "null": "null",
}

Segment = str | int


@dataclass(frozen=True, slots=True)
class _Failure:
    error: SchemaError
    segments: tuple[Segment, ...]


def json_type_name(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "bool"
    if isinstance(value, int):
        return "integer"
    if isinstance(value, float):
        return "real"
    if isinstance(value, str):
        return "string"
    if isinstance(value, dict):
        return "object"
    if isinstance(value, (list, tuple)):
        return "array"
    return type(value).__name__


def _is_struct(tp: Any) -> bool:
    return isinstance(tp, type) and issubclass(tp, msgspec.Struct)


def _unwrap_optional(tp: Any) -> tuple[Any, bool]:
    if get_origin(tp) in (Union, types.UnionType):
        args = get_args(tp)
        if type(None) in args:
            rest = tuple(arg for arg in args if arg is not type(None))
            if len(rest) == 1:
                return rest[0], True
            return Union[rest], True
    return tp, False


@functools.cache
def _struct_fields(cls: type) -> dict[str, msgspec.structs.FieldInfo]:
    return {info.encode_name: info for info in msgspec.structs.fields(cls)}


def _type_json_name(tp: Any) -> str:
    tp, _ = _unwrap_optional(tp)
    if tp is bool:
        return "bool"
    if tp is int:
        return "integer"
    if tp is float:
        return "real"
    if tp is str:
        return "string"
    if _is_struct(tp) or tp is dict or get_origin(tp) is dict:
        return "object"
    if tp is list or get_origin(tp) is list:
        return "array"
    return "value"


def _normalize_msgspec_types(text: str) -> str:
    names = [part.strip() for part in text.split("|")]
    mapped = [_MSGSPEC_TYPE_NAMES.get(name, name) for name in names if name != "null"]
    if not mapped:
        return "null"
    return " | ".join(mapped)


def _split_path(path: str | None) -> tuple[Segment, ...]:
    if not path or path == "$":
        return ()
    segments: list[Segment] = []
    for name, index in _SEGMENT_RE.findall(path[1:]):
        segments.append(int(index) if index else name)
    return tuple(segments)


def _format_path(segments: Sequence[Segment]) -> str:
    parts = ["$"]
    for segment in segments:
        if isinstance(segment, int):
            parts.append(f"[{segment}]")
        else:
            parts.append(f".{segment}")
    return "".join(parts)


def _resolve(root: Any, segments: Sequence[Segment]) -> list[tuple[Any, bool]]:
    """Walk the record schema along a JSON path.

    Returns one ``(type, optional)`` pair per segment that could be resolved.
    """
    steps: list[tuple[Any, bool]] = []
    current = root
    for segment in segments:
        if isinstance(segment, int):
            if get_origin(current) is not list:
                break
            (current,) = get_args(current)
            steps.append((current, False))
            continue
        if not _is_struct(current):
            break
        info = _struct_fields(current).get(segment)
        if info is None:
            break
        current, _ = _unwrap_optional(info.type)
        steps.append((info.type, not info.required))
    return steps


def _failure_from(exc: msgspec.ValidationError, root: Any) -> _Failure:
    message = str(exc)
    missing = _MISSING_RE.match(message)
    if missing is not None:
        segments = (*_split_path(missing.group("path")), missing.group("name"))
        steps = _resolve(root, segments)
        expected = (
            _type_json_name(steps[-1][0]) if len(steps) == len(segments) else "value"
        )
        error = SchemaError(_format_path(segments), expected, "absent")
        return _Failure(error=error, segments=segments)
    mismatch = _EXPECTED_RE.match(message)
    if mismatch is not None:
        segments = _split_path(mismatch.group("path"))
        error = SchemaError(
            _format_path(segments),
            _normalize_msgspec_types(mismatch.group("expected")),
            _normalize_msgspec_types(mismatch.group("actual")),
        )
        return _Failure(error=error, segments=segments)
    located = _PATH_RE.search(message)
    segments = _split_path(located.group("path") if located else None)
    detail = message[: located.start()] if located else message
    error = SchemaError(_format_path(segments), "valid value", detail)
    return _Failure(error=error, segments=segments)


def _deepest_optional(root: Any, segments: Sequence[Segment]) -> tuple[Segment, ...] | None:
    steps = _resolve(root, segments)
    for index in range(len(steps) - 1, -1, -1):
        if steps[index][1]:
            return tuple(segments[: index + 1])
    return None


def _without(value: Any, segments: Sequence[Segment]) -> Any:
    head, rest = segments[0], segments[1:]
    if isinstance(value, dict) and isinstance(head, str):
        copy = dict(value)
        if not rest:
            copy.pop(head, None)
        elif head in copy:
            copy[head] = _without(copy[head], rest)
        return copy
    if isinstance(value, list) and isinstance(head, int) and head < len(value):
        copy = list(value)
        if not rest:
            del copy[head]
        else:
            copy[head] = _without(copy[head], rest)
        return copy
    return value


def _trim_depth(value: Any, tp: Any, depth: int) -> Any:
    tp, _ = _unwrap_optional(tp)
    if _is_struct(tp):
        if not isinstance(value, dict):
            return value
        if tp is Message:
            depth += 1
        trimmed: dict[str, Any] | None = None
        for name, info in _struct_fields(tp).items():
            child = value.get(name)
            if not isinstance(child, (dict, list)):
                continue
            child_tp, _ = _unwrap_optional(info.type)
            if child_tp is Message and depth >= MAX_MESSAGE_DEPTH:
                if trimmed is None:
                    trimmed = dict(value)
                del trimmed[name]
                logger.debug("decode.depth.trimmed", field=name, depth=depth)
                continue
            new_child = _trim_depth(child, child_tp, depth)
            if new_child is not child:
                if trimmed is None:
                    trimmed = dict(value)
                trimmed[name] = new_child
        return value if trimmed is None else trimmed
    if get_origin(tp) is list and isinstance(value, list):
        (item_tp,) = get_args(tp)
        if not _is_struct(_unwrap_optional(item_tp)[0]):
            return value
        items = [_trim_depth(item, item_tp, depth) for item in value]
        if all(new is old for new, old in zip(items, value)):
            return value
        return items
    return value


def decode(value: Any, type_: type[T], *, lenient_optional: bool = False) -> T:
    """Convert a generic JSON value into ``type_``.

    Raises :class:`SchemaError` naming the JSON path of the first offending
    field. With ``lenient_optional`` a malformed optional field (or a
    malformed record inside one) is dropped and conversion retried, so only
    damage to mandatory data fails the record.
    """
    value = _trim_depth(value, type_, 0)
    attempts = 0
    while True:
        try:
            return msgspec.convert(value, type=type_)
        except msgspec.ValidationError as exc:
            failure = _failure_from(exc, type_)
            if not lenient_optional or attempts >= _MAX_LENIENT_ATTEMPTS:
                raise failure.error from exc
            drop = _deepest_optional(type_, failure.segments)
            if drop is None:
                raise failure.error from exc
            logger.debug(
                "decode.optional.dropped",
                field=_format_path(drop),
                error=str(failure.error),
            )
            value = _without(value, drop)
            attempts += 1


def raw_update_id(item: Any) -> int | None:
    if not isinstance(item, dict):
        return None
    update_id = item.get("update_id")
    if isinstance(update_id, bool) or not isinstance(update_id, int):
        return None
    return update_id


def decode_updates(
    value: Any,
    *,
    lenient_optional: bool = False,
    on_skip: Callable[[Any, SchemaError], None] | None = None,
) -> list[Update]:
    """Decode an updates array, dropping the elements that fail.

    ``on_skip`` is called with the raw element and its error for every
    dropped element.
    """
    if not isinstance(value, list):
        raise SchemaError("$", "array", json_type_name(value))
    updates: list[Update] = []
    for index, item in enumerate(value):
        try:
            updates.append(decode(item, Update, lenient_optional=lenient_optional))
        except SchemaError as exc:
            update_id = raw_update_id(item)
            if on_skip is not None:
                on_skip(item, exc)
            logger.warning(
                "decode.update.skipped",
                index=index,
                update_id=update_id,
                field=exc.field,
                expected=exc.expected,
                actual=exc.actual,
            )
            logger.debug("decode.update.data", index=index, data=item)
    return updates


def encode(record: msgspec.Struct) -> dict[str, Any]:
    return msgspec.to_builtins(record)
