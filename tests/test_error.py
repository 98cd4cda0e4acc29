"""Tests for error types."""

import pytest

from unarpc.error import (
    BindError,
    CancellationObserved,
    ConnectionClosed,
    DeadlineExceeded,
    DialError,
    DialFailure,
    ErrorCode,
    RemoteError,
    RpcError,
    UnaRpcError,
    UnimplementedMethod,
)


class TestErrorCode:
    """Tests for ErrorCode enum."""

    def test_error_codes(self) -> None:
        """Test wire values of the error codes."""
        assert str(ErrorCode.INVALID_ARGUMENT) == "invalid_argument"
        assert str(ErrorCode.UNIMPLEMENTED) == "unimplemented"
        assert str(ErrorCode.DEADLINE_EXCEEDED) == "deadline_exceeded"
        assert str(ErrorCode.INTERNAL) == "internal"

    def test_parse_unknown_code(self) -> None:
        """Codes from a newer peer map to UNKNOWN instead of failing."""
        assert ErrorCode.parse("not_found") is ErrorCode.NOT_FOUND
        assert ErrorCode.parse("resource_exhausted") is ErrorCode.UNKNOWN


class TestRpcError:
    """Tests for RpcError."""

    def test_basic_error(self) -> None:
        """Test basic error creation."""
        error = RpcError(ErrorCode.INVALID_ARGUMENT, "Invalid input")
        assert error.code == ErrorCode.INVALID_ARGUMENT
        assert error.message == "Invalid input"
        assert error.data is None
        assert str(error) == "invalid_argument: Invalid input"

    def test_error_with_data(self) -> None:
        """Test error with additional data."""
        data = {"field": "greeting"}
        error = RpcError(ErrorCode.INVALID_ARGUMENT, "Invalid field", data)
        assert error.data == data

    def test_convenience_constructors(self) -> None:
        """Test the convenience constructors."""
        assert RpcError.invalid_argument("x").code == ErrorCode.INVALID_ARGUMENT
        assert RpcError.not_found("x").code == ErrorCode.NOT_FOUND
        assert RpcError.permission_denied("x").code == ErrorCode.PERMISSION_DENIED
        assert RpcError.unavailable("x").code == ErrorCode.UNAVAILABLE
        assert RpcError.internal("x").code == ErrorCode.INTERNAL

    def test_error_is_raisable(self) -> None:
        """Test that RpcError can be raised and caught."""
        with pytest.raises(RpcError) as exc_info:
            raise RpcError.not_found("missing")

        assert exc_info.value.message == "missing"
        assert isinstance(exc_info.value, UnaRpcError)


class TestCallOutcomes:
    """Tests for the per-call outcome types."""

    def test_remote_error_from_wire(self) -> None:
        """Error frames become RemoteError with the same code."""
        error = RemoteError.from_wire("invalid_argument", "bad", {"k": 1})
        assert type(error) is RemoteError
        assert error.code == ErrorCode.INVALID_ARGUMENT
        assert error.data == {"k": 1}

    def test_unimplemented_is_remote_error(self) -> None:
        """UNIMPLEMENTED frames become UnimplementedMethod, a RemoteError."""
        error = RemoteError.from_wire("unimplemented", "no handler")
        assert isinstance(error, UnimplementedMethod)
        assert isinstance(error, RemoteError)
        assert error.code == ErrorCode.UNIMPLEMENTED

    def test_local_outcomes_have_codes(self) -> None:
        """Deadline, closure and cancellation carry their own codes."""
        assert DeadlineExceeded().code == ErrorCode.DEADLINE_EXCEEDED
        assert ConnectionClosed().code == ErrorCode.UNAVAILABLE
        assert CancellationObserved().code == ErrorCode.CANCELLED
        assert not isinstance(DeadlineExceeded(), RemoteError)

    def test_outcomes_compare_by_type(self) -> None:
        """Equal fields but different outcome types are not equal."""
        assert ConnectionClosed("x") == ConnectionClosed("x")
        assert RpcError(ErrorCode.UNAVAILABLE, "x") != ConnectionClosed("x")


class TestSetupErrors:
    """Tests for connection setup errors."""

    def test_dial_error_kinds(self) -> None:
        """Each dial failure kind is distinguishable."""
        assert DialError.unreachable("x").kind is DialFailure.UNREACHABLE
        assert DialError.refused("x").kind is DialFailure.REFUSED
        error = DialError.handshake_failed("bad cert")
        assert error.kind is DialFailure.HANDSHAKE_FAILED
        assert str(error) == "handshake-failed: bad cert"
        assert error.message == "bad cert"

    def test_setup_errors_are_not_call_outcomes(self) -> None:
        """Setup failures are never RpcErrors."""
        assert not isinstance(BindError("in use"), RpcError)
        assert isinstance(BindError("in use"), UnaRpcError)
