"""Wire frames for unarpc.

Every frame is one binary transport message: a JSON header array on a
single line, a newline, then the raw encoded payload (possibly empty).
The payload length is whatever follows the header, so it is known before
the codec ever sees it.

    ["hello", protocol, service]
    ["welcome", protocol, service]
    ["refuse", code, message]
    ["request", id, service, method, timeout] + payload
    ["response", id] + payload
    ["error", id, code, message, data?]
    ["cancel", id]
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

from unarpc.error import CodecError

PROTOCOL_VERSION = "unarpc/1"

_SEPARATOR = b"\n"


@dataclass(frozen=True)
class WireHello:
    """Client greeting: ["hello", protocol, service]"""

    service: str
    protocol: str = PROTOCOL_VERSION

    def to_json(self) -> list[Any]:
        return ["hello", self.protocol, self.service]

    @staticmethod
    def from_json(arr: list[Any]) -> WireHello:
        if len(arr) != 3 or not isinstance(arr[1], str) or not isinstance(arr[2], str):
            msg = "hello requires a protocol and a service name"
            raise ValueError(msg)
        return WireHello(arr[2], arr[1])


@dataclass(frozen=True)
class WireWelcome:
    """Server acceptance: ["welcome", protocol, service]"""

    service: str
    protocol: str = PROTOCOL_VERSION

    def to_json(self) -> list[Any]:
        return ["welcome", self.protocol, self.service]

    @staticmethod
    def from_json(arr: list[Any]) -> WireWelcome:
        if len(arr) != 3 or not isinstance(arr[1], str) or not isinstance(arr[2], str):
            msg = "welcome requires a protocol and a service name"
            raise ValueError(msg)
        return WireWelcome(arr[2], arr[1])


@dataclass(frozen=True)
class WireRefuse:
    """Server refusal of a session: ["refuse", code, message]"""

    code: str
    message: str

    def to_json(self) -> list[Any]:
        return ["refuse", self.code, self.message]

    @staticmethod
    def from_json(arr: list[Any]) -> WireRefuse:
        if len(arr) != 3:
            msg = "refuse requires exactly 3 elements"
            raise ValueError(msg)
        return WireRefuse(str(arr[1]), str(arr[2]))


@dataclass(frozen=True)
class WireRequest:
    """Call request: ["request", id, service, method, timeout] + payload"""

    call_id: int
    service: str
    method: str
    timeout: float | None = None
    payload: bytes = field(default=b"", repr=False)

    def to_json(self) -> list[Any]:
        return ["request", self.call_id, self.service, self.method, self.timeout]

    @staticmethod
    def from_json(arr: list[Any], payload: bytes = b"") -> WireRequest:
        if len(arr) != 5:
            msg = "request requires exactly 5 elements"
            raise ValueError(msg)
        _, call_id, service, method, timeout = arr
        _check_call_id(call_id)
        if not isinstance(service, str) or not isinstance(method, str):
            msg = "request service and method must be strings"
            raise ValueError(msg)
        if timeout is not None and (isinstance(timeout, bool) or not isinstance(timeout, int | float)):
            msg = "request timeout must be a number or null"
            raise ValueError(msg)
        return WireRequest(call_id, service, method, timeout, payload)


@dataclass(frozen=True)
class WireResponse:
    """Call result: ["response", id] + payload"""

    call_id: int
    payload: bytes = field(default=b"", repr=False)

    def to_json(self) -> list[Any]:
        return ["response", self.call_id]

    @staticmethod
    def from_json(arr: list[Any], payload: bytes = b"") -> WireResponse:
        if len(arr) != 2:
            msg = "response requires exactly 2 elements"
            raise ValueError(msg)
        _check_call_id(arr[1])
        return WireResponse(arr[1], payload)


@dataclass(frozen=True)
class WireError:
    """Call failure: ["error", id, code, message, data?]"""

    call_id: int
    code: str
    message: str
    data: Any | None = None

    def to_json(self) -> list[Any]:
        result: list[Any] = ["error", self.call_id, self.code, self.message]
        if self.data is not None:
            result.append(self.data)
        return result

    @staticmethod
    def from_json(arr: list[Any]) -> WireError:
        if len(arr) not in (4, 5):
            msg = "error requires 4 or 5 elements"
            raise ValueError(msg)
        _check_call_id(arr[1])
        data = arr[4] if len(arr) == 5 else None
        return WireError(arr[1], str(arr[2]), str(arr[3]), data)


@dataclass(frozen=True)
class WireCancel:
    """Abandonment hint: ["cancel", id]"""

    call_id: int

    def to_json(self) -> list[Any]:
        return ["cancel", self.call_id]

    @staticmethod
    def from_json(arr: list[Any]) -> WireCancel:
        if len(arr) != 2:
            msg = "cancel requires exactly 2 elements"
            raise ValueError(msg)
        _check_call_id(arr[1])
        return WireCancel(arr[1])


WireFrame = WireHello | WireWelcome | WireRefuse | WireRequest | WireResponse | WireError | WireCancel


def _check_call_id(call_id: Any) -> None:
    if isinstance(call_id, bool) or not isinstance(call_id, int) or call_id < 1:
        msg = f"invalid call id: {call_id!r}"
        raise ValueError(msg)


def serialize_frame(frame: WireFrame) -> bytes:
    """Serialize a frame to its transport message."""
    header = json.dumps(frame.to_json(), separators=(",", ":")).encode("utf-8")
    payload = getattr(frame, "payload", b"")
    return header + _SEPARATOR + payload


def parse_frame(data: bytes) -> WireFrame:
    """Parse a transport message into a frame.

    Raises:
        CodecError: If the header is missing, not JSON, or not a known frame
    """
    header, sep, payload = data.partition(_SEPARATOR)
    if not sep:
        msg = "frame has no header terminator"
        raise CodecError(msg)
    # Oversized integers raise a plain ValueError; deep nesting RecursionError.
    try:
        arr = json.loads(header)
    except (ValueError, RecursionError) as e:
        msg = f"invalid frame header: {e}"
        raise CodecError(msg) from e
    if not isinstance(arr, list) or not arr or not isinstance(arr[0], str):
        msg = f"invalid frame header: {header[:100]!r}"
        raise CodecError(msg)

    kind = arr[0]
    try:
        match kind:
            case "request":
                return WireRequest.from_json(arr, payload)
            case "response":
                return WireResponse.from_json(arr, payload)
            case "error":
                return WireError.from_json(arr)
            case "cancel":
                return WireCancel.from_json(arr)
            case "hello":
                return WireHello.from_json(arr)
            case "welcome":
                return WireWelcome.from_json(arr)
            case "refuse":
                return WireRefuse.from_json(arr)
            case _:
                msg = f"unknown frame type: {kind}"
                raise ValueError(msg)
    except ValueError as e:
        raise CodecError(str(e)) from e


def call_id_of(data: bytes) -> int | None:
    """Best-effort recovery of the call id from a frame that failed to parse."""
    header, _, _ = data.partition(_SEPARATOR)
    try:
        arr = json.loads(header)
    except (ValueError, RecursionError):
        return None
    if isinstance(arr, list) and len(arr) > 1 and arr[0] == "request":
        call_id = arr[1]
        if isinstance(call_id, int) and not isinstance(call_id, bool) and call_id > 0:
            return call_id
    return None
