"""Message codec: typed message dicts to bytes and back.

Messages are plain dicts keyed by field name. On the wire they are compact
JSON objects keyed by decimal field number, emitted in ascending field
number order, so encoding the same value twice yields identical bytes.
"""

from __future__ import annotations

import base64
import binascii
import json
import math
from typing import Any, Protocol

from unarpc.error import CodecError
from unarpc.schema import FieldDefinition, MessageSchema, SchemaRegistry

Message = dict[str, Any]

_INT_RANGES = {
    "int32": (-(2**31), 2**31 - 1),
    "int64": (-(2**63), 2**63 - 1),
    "uint32": (0, 2**32 - 1),
    "uint64": (0, 2**64 - 1),
}


class Codec(Protocol):
    """Protocol for message serializers."""

    def encode(self, message: Message, schema: MessageSchema) -> bytes:
        """Encode a message under its schema.

        Raises:
            CodecError: If the message does not fit the schema
        """
        ...

    def decode(self, data: bytes, schema: MessageSchema) -> Message:
        """Decode bytes produced by encode().

        Raises:
            CodecError: If the bytes are malformed or mistyped
        """
        ...


class JsonCodec:
    """Deterministic JSON codec driven by a SchemaRegistry.

    Unknown field numbers are skipped on decode so that a peer on a newer
    schema revision can still talk to this one.
    """

    def __init__(self, registry: SchemaRegistry) -> None:
        self.registry = registry

    def encode(self, message: Message, schema: MessageSchema) -> bytes:
        try:
            obj = self._to_wire(message, schema)
        except RecursionError as e:
            msg = f"{schema.name}: message is nested too deeply"
            raise CodecError(msg) from e
        return json.dumps(obj, separators=(",", ":"), ensure_ascii=False, allow_nan=False).encode(
            "utf-8"
        )

    def decode(self, data: bytes, schema: MessageSchema) -> Message:
        # Oversized integers raise a plain ValueError; deep nesting RecursionError.
        try:
            obj = json.loads(data)
        except (ValueError, RecursionError) as e:
            msg = f"malformed {schema.name} payload: {e}"
            raise CodecError(msg) from e
        try:
            return self._from_wire(obj, schema)
        except RecursionError as e:
            msg = f"{schema.name}: payload is nested too deeply"
            raise CodecError(msg) from e

    # Encoding

    def _to_wire(self, message: Any, schema: MessageSchema) -> dict[str, Any]:
        if not isinstance(message, dict):
            msg = f"{schema.name}: expected a dict, got {type(message).__name__}"
            raise CodecError(msg)
        unknown = sorted(set(message) - {f.name for f in schema.fields})
        if unknown:
            msg = f"{schema.name}: unknown fields {unknown}"
            raise CodecError(msg)

        obj: dict[str, Any] = {}
        for f in sorted(schema.fields, key=lambda f: f.number):
            if f.name not in message:
                continue
            value = message[f.name]
            if f.repeated:
                if not isinstance(value, list | tuple):
                    msg = f"{schema.name}.{f.name}: expected a list"
                    raise CodecError(msg)
                obj[str(f.number)] = [self._value_to_wire(v, f, schema) for v in value]
            else:
                obj[str(f.number)] = self._value_to_wire(value, f, schema)
        return obj

    def _value_to_wire(self, value: Any, f: FieldDefinition, schema: MessageSchema) -> Any:
        where = f"{schema.name}.{f.name}"
        match f.type:
            case "string":
                if not isinstance(value, str):
                    raise _type_error(where, "str", value)
                return value
            case "bytes":
                if not isinstance(value, bytes | bytearray):
                    raise _type_error(where, "bytes", value)
                return base64.b64encode(value).decode("ascii")
            case "bool":
                if not isinstance(value, bool):
                    raise _type_error(where, "bool", value)
                return value
            case "int32" | "int64" | "uint32" | "uint64":
                if isinstance(value, bool) or not isinstance(value, int):
                    raise _type_error(where, "int", value)
                low, high = _INT_RANGES[f.type]
                if not low <= value <= high:
                    msg = f"{where}: {value} out of range for {f.type}"
                    raise CodecError(msg)
                return value
            case "float" | "double":
                if isinstance(value, bool) or not isinstance(value, int | float):
                    raise _type_error(where, "float", value)
                return _finite_float(where, value)
            case _:
                return self._to_wire(value, self._nested(f, where))

    # Decoding

    def _from_wire(self, obj: Any, schema: MessageSchema) -> Message:
        if not isinstance(obj, dict):
            msg = f"{schema.name}: expected an object, got {type(obj).__name__}"
            raise CodecError(msg)

        message: Message = {}
        for key, value in obj.items():
            try:
                number = int(key)
            except ValueError as e:
                msg = f"{schema.name}: invalid field number {key!r}"
                raise CodecError(msg) from e
            f = schema.by_number(number)
            if f is None:
                # Written by a newer schema revision.
                continue
            if f.repeated:
                if not isinstance(value, list):
                    msg = f"{schema.name}.{f.name}: expected a list"
                    raise CodecError(msg)
                message[f.name] = [self._value_from_wire(v, f, schema) for v in value]
            else:
                message[f.name] = self._value_from_wire(value, f, schema)
        return message

    def _value_from_wire(self, value: Any, f: FieldDefinition, schema: MessageSchema) -> Any:
        where = f"{schema.name}.{f.name}"
        match f.type:
            case "string":
                if not isinstance(value, str):
                    raise _type_error(where, "string", value)
                return value
            case "bytes":
                if not isinstance(value, str):
                    raise _type_error(where, "base64 string", value)
                try:
                    return base64.b64decode(value.encode("ascii"), validate=True)
                except (binascii.Error, UnicodeEncodeError) as e:
                    msg = f"{where}: invalid base64"
                    raise CodecError(msg) from e
            case "bool":
                if not isinstance(value, bool):
                    raise _type_error(where, "bool", value)
                return value
            case "int32" | "int64" | "uint32" | "uint64":
                if isinstance(value, bool) or not isinstance(value, int):
                    raise _type_error(where, "integer", value)
                low, high = _INT_RANGES[f.type]
                if not low <= value <= high:
                    msg = f"{where}: {value} out of range for {f.type}"
                    raise CodecError(msg)
                return value
            case "float" | "double":
                if isinstance(value, bool) or not isinstance(value, int | float):
                    raise _type_error(where, "number", value)
                return _finite_float(where, value)
            case _:
                return self._from_wire(value, self._nested(f, where))

    def _nested(self, f: FieldDefinition, where: str) -> MessageSchema:
        try:
            return self.registry.message(f.type)
        except KeyError as e:
            msg = f"{where}: unknown message type {f.type!r}"
            raise CodecError(msg) from e


def _type_error(where: str, expected: str, value: Any) -> CodecError:
    return CodecError(f"{where}: expected {expected}, got {type(value).__name__}")


def _finite_float(where: str, value: int | float) -> float:
    try:
        result = float(value)
    except OverflowError as e:
        msg = f"{where}: integer too large for a double"
        raise CodecError(msg) from e
    if not math.isfinite(result):
        msg = f"{where}: non-finite float {result!r}"
        raise CodecError(msg)
    return result
