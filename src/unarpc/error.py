"""Error types for the unarpc protocol."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any


class UnaRpcError(Exception):
    """Base class for every error raised by unarpc."""


class ErrorCode(Enum):
    """Standard per-call error codes."""

    CANCELLED = "cancelled"
    UNKNOWN = "unknown"
    INVALID_ARGUMENT = "invalid_argument"
    DEADLINE_EXCEEDED = "deadline_exceeded"
    NOT_FOUND = "not_found"
    PERMISSION_DENIED = "permission_denied"
    UNIMPLEMENTED = "unimplemented"
    INTERNAL = "internal"
    UNAVAILABLE = "unavailable"

    def __str__(self) -> str:
        return self.value

    @staticmethod
    def parse(value: str) -> ErrorCode:
        """Map a wire code to an ErrorCode, falling back to UNKNOWN."""
        try:
            return ErrorCode(value)
        except ValueError:
            return ErrorCode.UNKNOWN


@dataclass(frozen=True)
class RpcError(UnaRpcError):
    """Per-call failure with code, message, and optional data.

    Handlers raise (or return) an RpcError to report a failure to the
    caller. The client never sees the handler's exception object; it gets a
    RemoteError carrying the same code, message and data.
    """

    code: ErrorCode
    message: str
    data: Any | None = None

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"

    @staticmethod
    def invalid_argument(message: str, data: Any | None = None) -> RpcError:
        """Create an INVALID_ARGUMENT error."""
        return RpcError(ErrorCode.INVALID_ARGUMENT, message, data)

    @staticmethod
    def not_found(message: str, data: Any | None = None) -> RpcError:
        """Create a NOT_FOUND error."""
        return RpcError(ErrorCode.NOT_FOUND, message, data)

    @staticmethod
    def permission_denied(message: str, data: Any | None = None) -> RpcError:
        """Create a PERMISSION_DENIED error."""
        return RpcError(ErrorCode.PERMISSION_DENIED, message, data)

    @staticmethod
    def unavailable(message: str, data: Any | None = None) -> RpcError:
        """Create an UNAVAILABLE error."""
        return RpcError(ErrorCode.UNAVAILABLE, message, data)

    @staticmethod
    def internal(message: str, data: Any | None = None) -> RpcError:
        """Create an INTERNAL error."""
        return RpcError(ErrorCode.INTERNAL, message, data)


class RemoteError(RpcError):
    """A failure reported by the remote peer for one call."""

    @staticmethod
    def from_wire(code: str, message: str, data: Any | None = None) -> RemoteError:
        """Rebuild the typed remote failure for a received error frame."""
        error_code = ErrorCode.parse(code)
        if error_code is ErrorCode.UNIMPLEMENTED:
            return UnimplementedMethod(message, data)
        return RemoteError(error_code, message, data)


class UnimplementedMethod(RemoteError):
    """The server has no handler for the requested (service, method)."""

    def __init__(self, message: str, data: Any | None = None) -> None:
        super().__init__(ErrorCode.UNIMPLEMENTED, message, data)


class DeadlineExceeded(RpcError):
    """The caller stopped waiting because the call's deadline elapsed."""

    def __init__(self, message: str = "deadline exceeded", data: Any | None = None) -> None:
        super().__init__(ErrorCode.DEADLINE_EXCEEDED, message, data)


class ConnectionClosed(RpcError):
    """The connection closed before the call produced an outcome."""

    def __init__(self, message: str = "connection closed", data: Any | None = None) -> None:
        super().__init__(ErrorCode.UNAVAILABLE, message, data)


class CancellationObserved(RpcError):
    """Raised by a handler that noticed its call was abandoned."""

    def __init__(self, message: str = "call cancelled", data: Any | None = None) -> None:
        super().__init__(ErrorCode.CANCELLED, message, data)


class SchemaConflict(UnaRpcError):
    """A service or message was (re)defined with an incompatible structure."""


class CodecError(UnaRpcError):
    """A message could not be encoded or decoded under its schema."""


class CredentialLoadError(UnaRpcError):
    """Certificate or key material is missing, unreadable, or invalid."""


class BindError(UnaRpcError):
    """The listener could not bind its address."""


class DialFailure(Enum):
    """Why a dial attempt failed."""

    UNREACHABLE = "unreachable"
    REFUSED = "refused"
    HANDSHAKE_FAILED = "handshake-failed"

    def __str__(self) -> str:
        return self.value


class DialError(UnaRpcError):
    """A client connection could not be established."""

    def __init__(self, kind: DialFailure, message: str) -> None:
        super().__init__(f"{kind}: {message}")
        self.kind = kind
        self.message = message

    @staticmethod
    def unreachable(message: str) -> DialError:
        """Create an UNREACHABLE dial error."""
        return DialError(DialFailure.UNREACHABLE, message)

    @staticmethod
    def refused(message: str) -> DialError:
        """Create a REFUSED dial error."""
        return DialError(DialFailure.REFUSED, message)

    @staticmethod
    def handshake_failed(message: str) -> DialError:
        """Create a HANDSHAKE_FAILED dial error."""
        return DialError(DialFailure.HANDSHAKE_FAILED, message)
