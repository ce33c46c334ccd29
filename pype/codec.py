"""JSON codec used by the Fitting pipeline.

Encoding goes through pydantic_core so datetimes, UUIDs, enums and models in
request parameters serialize without a custom default hook. Decoding is
shape-directed: callers name the result type and pydantic validates into it.
"""

from __future__ import annotations

from typing import Any, Mapping, TypeVar

from pydantic import TypeAdapter, ValidationError
from pydantic_core import PydanticSerializationError, to_json

T = TypeVar("T")

JSON_INDENT = 2


class CodecError(Exception):
    """Raised when a payload cannot be encoded or decoded."""


class JsonCodec:
    """Indented JSON encoder and type-directed decoder.

    TypeAdapters are cached per shape; building one compiles a validator.
    """

    def __init__(self, indent: int = JSON_INDENT) -> None:
        self._indent = indent
        self._adapters: dict[Any, TypeAdapter[Any]] = {}

    def encode(self, parameters: Mapping[str, Any] | None) -> str:
        """Serialize a parameters mapping to human-readable JSON text."""
        try:
            return to_json(parameters, indent=self._indent).decode("utf-8")
        except PydanticSerializationError as e:
            raise CodecError(f"Cannot encode parameters as JSON: {e}") from e

    def decode(self, text: str, shape: type[T] | None = None) -> T | Any:
        """Parse JSON text into shape, or into plain dicts/lists when shape is None.

        Whitespace-only text decodes to None.
        """
        if not text.strip():
            return None

        adapter = self._adapter_for(Any if shape is None else shape)
        try:
            return adapter.validate_json(text)
        except ValidationError as e:
            raise CodecError(f"Cannot decode response as {_shape_name(shape)}: {e}") from e

    def _adapter_for(self, shape: Any) -> TypeAdapter[Any]:
        adapter = self._adapters.get(shape)
        if adapter is None:
            adapter = TypeAdapter(shape)
            self._adapters[shape] = adapter
        return adapter


def _shape_name(shape: Any) -> str:
    if shape is None:
        return "JSON"
    return getattr(shape, "__name__", repr(shape))
