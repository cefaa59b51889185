"""JSON codec shared by the REST and WebSocket layers."""

from __future__ import annotations

import json
from functools import lru_cache
from typing import Any
from typing import Type
from typing import TypeVar
from typing import Union

from pydantic import BaseModel
from pydantic import TypeAdapter
from pydantic import ValidationError

from twitchhelix.errors import DecodeError

T = TypeVar("T")


@lru_cache(maxsize=256)
def _adapter(tp: Any) -> TypeAdapter:
    return TypeAdapter(tp)


def encode(obj: Any) -> bytes:
    """Encode an object to JSON bytes.

    Args:
        obj: Pydantic model or JSON-compatible value

    Returns:
        UTF-8 encoded JSON
    """
    if isinstance(obj, BaseModel):
        return obj.model_dump_json(exclude_none=True).encode("utf-8")
    return json.dumps(obj, separators=(",", ":"), default=str).encode("utf-8")


def decode(data: Union[bytes, str], tp: Type[T]) -> T:
    """Decode JSON bytes into the given type.

    Args:
        data: Raw JSON
        tp: Target type (pydantic model, builtin or typing construct)

    Returns:
        Decoded value

    Raises:
        DecodeError: Malformed JSON or schema mismatch
    """
    try:
        return _adapter(tp).validate_json(data)
    except ValidationError as e:
        name = getattr(tp, "__name__", str(tp))
        raise DecodeError(f"Failed to decode {name}: {e.error_count()} validation error(s)", data=data) from e


def decode_value(value: Any, tp: Type[T]) -> T:
    """Validate an already parsed JSON value into the given type.

    Raises:
        DecodeError: Schema mismatch
    """
    try:
        return _adapter(tp).validate_python(value)
    except ValidationError as e:
        name = getattr(tp, "__name__", str(tp))
        raise DecodeError(f"Failed to decode {name}: {e.error_count()} validation error(s)", data=value) from e
