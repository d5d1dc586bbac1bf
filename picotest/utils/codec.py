"""JSON and msgpack helpers for ledgers, config values and RPC payloads."""

import dataclasses
import json
from datetime import datetime
from pathlib import Path
from typing import Any, Mapping, Optional

import msgpack
from pydantic import BaseModel, ValidationError

from ..core.errors import SerializationError, DeserializationError


def to_json_string(obj: Any, indent: Optional[int] = 2) -> str:
    """Convert object to JSON string with custom serialization support."""
    try:
        return json.dumps(
            obj,
            indent=indent,
            sort_keys=True,
            default=_json_serializer,
            ensure_ascii=False,
        )
    except (TypeError, ValueError) as e:
        raise SerializationError(f"Failed to encode object to JSON: {e}") from e


def from_json_string(json_str: str) -> Any:
    try:
        return json.loads(json_str)
    except json.JSONDecodeError as e:
        raise DeserializationError(f"Failed to decode JSON string: {e}") from e


def _json_serializer(obj: Any) -> Any:
    """Custom JSON serializer for special types."""
    if isinstance(obj, datetime):
        return obj.isoformat()
    if isinstance(obj, Path):
        return str(obj)
    if isinstance(obj, BaseModel):
        return obj.model_dump(mode="json")
    if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
        return dataclasses.asdict(obj)
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def to_plain(obj: Any) -> Any:
    """Reduce models and dataclasses to msgpack-friendly builtins."""
    if isinstance(obj, BaseModel):
        return obj.model_dump(mode="python")
    if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
        return dataclasses.asdict(obj)
    if isinstance(obj, Mapping):
        return {key: to_plain(value) for key, value in obj.items()}
    if isinstance(obj, tuple):
        return [to_plain(item) for item in obj]
    if isinstance(obj, list):
        return [to_plain(item) for item in obj]
    return obj


def pack(obj: Any) -> bytes:
    """Serialize ``obj`` to msgpack."""
    try:
        return msgpack.packb(to_plain(obj), use_bin_type=True)
    except (TypeError, ValueError, OverflowError) as e:
        raise SerializationError(
            f"Failed to encode {type(obj).__name__} to msgpack: {e}"
        ) from e


def unpack(data: bytes) -> Any:
    """Deserialize one msgpack value."""
    try:
        return msgpack.unpackb(data, raw=False, strict_map_key=False)
    except (msgpack.ExtraData, msgpack.FormatError, msgpack.StackError,
            ValueError, TypeError) as e:
        raise DeserializationError(f"Failed to decode msgpack payload: {e}") from e


def convert(data: Any, target: Optional[Any]) -> Any:
    """Convert decoded data into ``target``.

    ``target`` may be a pydantic model, a dataclass type or any callable.
    Sequences are mapped positionally onto model/dataclass fields, since
    struct payloads are often encoded as arrays on the wire.
    """
    if target is None:
        return data
    try:
        if isinstance(target, type) and issubclass(target, BaseModel):
            if isinstance(data, (list, tuple)):
                data = dict(zip(target.model_fields.keys(), data))
            return target.model_validate(data)
        if dataclasses.is_dataclass(target):
            if isinstance(data, (list, tuple)):
                return target(*data)
            return target(**data)
        return target(data)
    except (ValidationError, TypeError, ValueError) as e:
        name = getattr(target, "__name__", repr(target))
        raise DeserializationError(f"Payload does not match {name}: {e}") from e
