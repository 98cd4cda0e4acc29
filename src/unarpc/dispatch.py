"""Call dispatch.

Server side, Dispatcher turns one request frame into exactly one response
or error frame. Client side, PendingCalls correlates response frames with
the calls waiting on them by correlation id, never by arrival order.
"""

from __future__ import annotations

import asyncio
import itertools
import json
import logging
import traceback
from typing import TYPE_CHECKING

from unarpc.error import (
    CancellationObserved,
    CodecError,
    ConnectionClosed,
    ErrorCode,
    RemoteError,
    RpcError,
)
from unarpc.handlers import ServiceHandlerSet
from unarpc.wire import WireError, WireRequest, WireResponse

if TYPE_CHECKING:
    from unarpc.codec import Codec
    from unarpc.context import CallContext
    from unarpc.schema import SchemaRegistry

logger = logging.getLogger(__name__)


class Dispatcher:
    """Routes decoded requests to the bound service handlers."""

    def __init__(
        self,
        handlers: ServiceHandlerSet,
        registry: SchemaRegistry,
        codec: Codec,
        include_stack_traces: bool = False,
    ) -> None:
        self.handlers = handlers
        self.registry = registry
        self.codec = codec
        self.include_stack_traces = include_stack_traces

    @property
    def service(self) -> str:
        return self.handlers.service.name

    async def dispatch(self, request: WireRequest, context: CallContext) -> WireResponse | WireError:
        """Run one call and produce its single terminal frame.

        Handler failures are returned as error frames; nothing raised by a
        handler escapes this method.
        """
        service = self.handlers.service
        # Unknown service, unknown method and unbound method look the same
        # to the caller.
        if request.service != service.name or request.method not in self.handlers:
            logger.warning(
                "Unimplemented method %s/%s (call %d)",
                request.service,
                request.method,
                request.call_id,
            )
            return WireError(
                request.call_id,
                ErrorCode.UNIMPLEMENTED.value,
                f"method {request.service}/{request.method} is not implemented",
            )

        method = service.method(request.method)
        try:
            message = self.codec.decode(request.payload, self.registry.request_schema(method))
        except CodecError as e:
            logger.warning("Bad request for %s: %s", method.full_name, e)
            return WireError(request.call_id, ErrorCode.INVALID_ARGUMENT.value, str(e))

        try:
            result = await self.handlers.handle(request.method, message, context)
            if isinstance(result, RpcError):
                return self._error_frame(request.call_id, result)
            payload = self.codec.encode(result, self.registry.response_schema(method))
        except CancellationObserved as e:
            logger.info("%s call %d observed cancellation", method.full_name, request.call_id)
            return self._error_frame(request.call_id, e)
        except RpcError as e:
            logger.info("%s call %d failed: %s", method.full_name, request.call_id, e)
            return self._error_frame(request.call_id, e)
        except CodecError as e:
            logger.error("%s returned an invalid response: %s", method.full_name, e)
            return self._internal_error(request.call_id, e, "handler returned an invalid response")
        except Exception as e:
            logger.exception("Handler %s raised", method.full_name)
            return self._internal_error(request.call_id, e, f"{type(e).__name__}: {e}")

        return WireResponse(request.call_id, payload)

    def _error_frame(self, call_id: int, error: RpcError) -> WireError:
        data = error.data
        if data is not None:
            try:
                json.dumps(data)
            except (TypeError, ValueError, RecursionError) as e:
                logger.warning("Dropping error data for call %d, not JSON serializable: %s", call_id, e)
                data = None
        return WireError(call_id, error.code.value, error.message, data)

    def _internal_error(self, call_id: int, error: Exception, message: str) -> WireError:
        data = None
        if self.include_stack_traces:
            data = {"traceback": "".join(traceback.format_exception(error))}
        return WireError(call_id, ErrorCode.INTERNAL.value, message, data)


class PendingCalls:
    """Correlation table of calls awaiting their response frame.

    Each entry resolves exactly once. Frames for ids that are no longer
    pending (abandoned after a deadline) are dropped.
    """

    def __init__(self) -> None:
        self._ids = itertools.count(1)
        self._pending: dict[int, asyncio.Future[WireResponse]] = {}
        self._closed = False

    def __len__(self) -> int:
        return len(self._pending)

    def __contains__(self, call_id: object) -> bool:
        return call_id in self._pending

    def open(self) -> tuple[int, asyncio.Future[WireResponse]]:
        """Allocate a fresh correlation id and the future that will carry its outcome.

        Raises:
            ConnectionClosed: If the table has been closed
        """
        if self._closed:
            raise ConnectionClosed
        call_id = next(self._ids)
        future: asyncio.Future[WireResponse] = asyncio.get_running_loop().create_future()
        self._pending[call_id] = future
        return call_id, future

    def abandon(self, call_id: int) -> None:
        """Forget a call whose caller stopped waiting."""
        future = self._pending.pop(call_id, None)
        if future is not None and not future.done():
            future.cancel()

    def resolve(self, frame: WireResponse | WireError) -> bool:
        """Complete the call a frame answers.

        Returns:
            False if no call with that id is pending
        """
        future = self._pending.pop(frame.call_id, None)
        if future is None or future.done():
            logger.debug("Dropping frame for unknown or abandoned call %d", frame.call_id)
            return False
        if isinstance(frame, WireError):
            future.set_exception(RemoteError.from_wire(frame.code, frame.message, frame.data))
        else:
            future.set_result(frame)
        return True

    def close(self, reason: str = "connection closed") -> None:
        """Fail every pending call with ConnectionClosed and refuse new ones."""
        self._closed = True
        pending, self._pending = self._pending, {}
        for future in pending.values():
            if not future.done():
                future.set_exception(ConnectionClosed(reason))
