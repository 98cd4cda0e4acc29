"""Client implementation for unarpc.

A ClientConnection is one logical connection to one server. Any number of
calls may be in flight on it at once; each waits on its own future, which
the background reader completes when the response frame with the matching
correlation id arrives.
"""

from __future__ import annotations

import asyncio
import errno
import logging
import ssl
from contextlib import suppress
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Self

import aiohttp

from unarpc.codec import Codec, JsonCodec, Message
from unarpc.connection import ConnectionState, Lifecycle, parse_address
from unarpc.dispatch import PendingCalls
from unarpc.error import CodecError, ConnectionClosed, DeadlineExceeded, DialError
from unarpc.handlers import snake_case
from unarpc.wire import (
    PROTOCOL_VERSION,
    WireCancel,
    WireError,
    WireFrame,
    WireHello,
    WireRefuse,
    WireRequest,
    WireResponse,
    WireWelcome,
    parse_frame,
    serialize_frame,
)

if TYPE_CHECKING:
    from unarpc.credentials import Credential
    from unarpc.schema import MethodDefinition, SchemaRegistry, ServiceDefinition

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ClientConfig:
    """Configuration for the unarpc client."""

    address: str
    credential: Credential | None = None  # must match the server's kind
    path: str = "/rpc"
    connect_timeout: float = 10.0
    default_timeout: float | None = None  # None waits forever
    max_frame_size: int = 4 * 1024 * 1024


class ClientConnection:
    """A dialed connection hosting many concurrent unary calls."""

    def __init__(
        self,
        config: ClientConfig,
        service: ServiceDefinition,
        registry: SchemaRegistry,
        codec: Codec | None = None,
    ) -> None:
        self.config = config
        self.service = service
        self.registry = registry
        self.codec = codec or JsonCodec(registry)
        self._lifecycle = Lifecycle(f"connection to {config.address}")
        self._pending = PendingCalls()
        self._session: aiohttp.ClientSession | None = None
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._reader: asyncio.Task[None] | None = None
        self._send_lock = asyncio.Lock()
        self._background: set[asyncio.Task[None]] = set()
        self._closed = asyncio.Event()

    async def __aenter__(self) -> Self:
        """Async context manager entry - dials the server unless dial() already did."""
        if self.state is ConnectionState.CREATED:
            await self.connect()
        return self

    async def __aexit__(self, *args: object) -> None:
        """Async context manager exit."""
        await self.close()

    @property
    def state(self) -> ConnectionState:
        return self._lifecycle.state

    @property
    def secure(self) -> bool:
        return self.config.credential is not None and self.config.credential.is_secure

    @property
    def in_flight(self) -> int:
        return len(self._pending)

    async def connect(self) -> Self:
        """Dial the server and complete the session handshake.

        Raises:
            DialError: UNREACHABLE, REFUSED or HANDSHAKE_FAILED. A TLS
                failure is never retried in plaintext.
        """
        self._lifecycle.advance(ConnectionState.CONNECTING)
        try:
            endpoint = parse_address(self.config.address)
        except ValueError as e:
            await self._teardown("dial failed")
            raise DialError.unreachable(str(e)) from e

        scheme = "wss" if self.secure else "ws"
        url = f"{scheme}://{endpoint.url_host}:{endpoint.port}{self.config.path}"
        options: dict[str, Any] = {"max_msg_size": self.config.max_frame_size}
        if self.secure:
            options["ssl"] = self.config.credential.client_ssl_context()  # type: ignore[union-attr]

        self._session = aiohttp.ClientSession()
        try:
            self._ws = await asyncio.wait_for(
                self._session.ws_connect(url, **options),
                timeout=self.config.connect_timeout,
            )
        except (aiohttp.ClientError, ssl.SSLError, OSError, TimeoutError) as e:
            await self._teardown("dial failed")
            raise _dial_error(url, e) from e

        self._lifecycle.advance(ConnectionState.HANDSHAKING)
        try:
            await self._handshake()
        except DialError:
            await self._teardown("handshake failed")
            raise

        self._lifecycle.advance(ConnectionState.READY)
        self._reader = asyncio.create_task(self._read_loop())
        logger.info("Connected to %s (%s)", url, "tls" if self.secure else "plaintext")
        return self

    async def _handshake(self) -> None:
        await self._send(WireHello(self.service.name))
        try:
            msg = await self._ws.receive(timeout=self.config.connect_timeout)  # type: ignore[union-attr]
        except TimeoutError:
            reason = "no welcome from server"
            raise DialError.handshake_failed(reason) from None

        if msg.type != aiohttp.WSMsgType.BINARY:
            reason = "server closed the connection during the handshake"
            raise DialError.handshake_failed(reason)
        try:
            frame = parse_frame(msg.data)
        except CodecError as e:
            raise DialError.handshake_failed(f"bad welcome: {e}") from e

        match frame:
            case WireWelcome(service, protocol) if service == self.service.name and protocol == PROTOCOL_VERSION:
                return
            case WireRefuse(code, message):
                raise DialError.handshake_failed(f"server refused: {code}: {message}")
            case _:
                raise DialError.handshake_failed(f"unexpected handshake reply {frame!r}")

    async def invoke(
        self,
        method: str | MethodDefinition,
        request: Message,
        timeout: float | None = None,
    ) -> Message:
        """Call a method and wait for its single outcome.

        Args:
            method: Method name or definition within this connection's service
            request: Request message (dict keyed by field name)
            timeout: Seconds to wait; defaults to config.default_timeout

        Returns:
            The decoded response message

        Raises:
            RemoteError: The handler (or the server) reported a failure;
                UnimplementedMethod if nothing is bound for the method
            DeadlineExceeded: No response within the timeout
            ConnectionClosed: The connection is, or became, closed
            CodecError: The request does not fit its schema, or the
                response could not be decoded
        """
        if self._lifecycle.is_closing:
            raise ConnectionClosed
        if not self._lifecycle.is_ready:
            msg = f"connection is {self.state}; call connect() first"
            raise RuntimeError(msg)

        definition = self.service.method(method) if isinstance(method, str) else method
        payload = self.codec.encode(request, self.registry.request_schema(definition))
        if timeout is None:
            timeout = self.config.default_timeout

        call_id, future = self._pending.open()
        try:
            await self._send(WireRequest(call_id, self.service.name, definition.name, timeout, payload))
        except ConnectionClosed:
            self._pending.abandon(call_id)
            raise
        logger.debug("Call %d %s sent", call_id, definition.full_name)

        try:
            response = await asyncio.wait_for(future, timeout)
        except TimeoutError:
            self._abandon(call_id)
            msg = f"{definition.full_name} did not complete within {timeout}s"
            raise DeadlineExceeded(msg) from None
        except asyncio.CancelledError:
            self._abandon(call_id)
            raise

        return self.codec.decode(response.payload, self.registry.response_schema(definition))

    def _abandon(self, call_id: int) -> None:
        """Stop waiting for a call and tell the server, best effort."""
        self._pending.abandon(call_id)
        if self._lifecycle.is_ready:
            task = asyncio.create_task(self._send_cancel(call_id))
            self._background.add(task)
            task.add_done_callback(self._background.discard)

    async def _send_cancel(self, call_id: int) -> None:
        try:
            await self._send(WireCancel(call_id))
        except ConnectionClosed:
            logger.debug("Cancel for call %d not sent: connection closed", call_id)

    async def _send(self, frame: WireFrame) -> None:
        data = serialize_frame(frame)
        async with self._send_lock:
            if self._ws is None or self._ws.closed:
                raise ConnectionClosed
            try:
                await self._ws.send_bytes(data)
            except ConnectionError as e:
                raise ConnectionClosed(str(e)) from e

    async def _read_loop(self) -> None:
        ws = self._ws
        assert ws is not None
        async for msg in ws:
            match msg.type:
                case aiohttp.WSMsgType.BINARY:
                    self._on_frame(msg.data)
                case aiohttp.WSMsgType.ERROR:
                    logger.error("Connection to %s failed: %s", self.config.address, ws.exception())
                    break
                case _:
                    logger.warning("Ignoring %s message from server", msg.type)

        if not self._lifecycle.is_closing:
            logger.info("Connection to %s closed by server", self.config.address)
            await self._teardown("connection closed by server")

    def _on_frame(self, data: bytes) -> None:
        try:
            frame = parse_frame(data)
        except CodecError as e:
            logger.warning("Malformed frame from server: %s", e)
            return

        match frame:
            case WireResponse() | WireError():
                if self._pending.resolve(frame):
                    logger.debug("Call %d resolved", frame.call_id)
            case _:
                logger.warning("Unexpected %s frame from server", type(frame).__name__)

    async def close(self) -> None:
        """Close the connection. Idempotent.

        Every call still waiting resolves with ConnectionClosed.
        """
        if self._lifecycle.is_closing:
            await self._closed.wait()
            return
        await self._teardown("connection closed")

    async def _teardown(self, reason: str) -> None:
        self._lifecycle.advance(ConnectionState.CLOSING)
        self._pending.close(reason)

        reader = self._reader
        if reader is not None and reader is not asyncio.current_task() and not reader.done():
            reader.cancel()
            with suppress(asyncio.CancelledError):
                await reader
        for task in list(self._background):
            task.cancel()

        if self._ws is not None:
            await self._ws.close()
        if self._session is not None:
            await self._session.close()
            self._session = None

        self._lifecycle.advance(ConnectionState.CLOSED)
        self._closed.set()


class ServiceClient:
    """Typed per-method access to a connection's service.

    Example:
        ```python
        greeter = ServiceClient(connection)
        reply = await greeter.SayHello({"greeting": "foo"}, timeout=1.0)
        reply = await greeter.say_hello({"greeting": "foo"})
        ```
    """

    def __init__(self, connection: ClientConnection) -> None:
        self._connection = connection
        self._names = {name: name for name in connection.service.method_names}
        self._names.update({snake_case(name): name for name in connection.service.method_names})

    @property
    def connection(self) -> ClientConnection:
        return self._connection

    def __getattr__(self, name: str) -> Any:
        if name.startswith("_") or name not in self._names:
            msg = f"{self._connection.service.name} has no method {name!r}"
            raise AttributeError(msg)
        method = self._connection.service.method(self._names[name])
        connection = self._connection

        async def stub(request: Message | None = None, *, timeout: float | None = None) -> Message:
            return await connection.invoke(method, request or {}, timeout=timeout)

        stub.__name__ = method.name
        stub.__qualname__ = method.full_name
        return stub

    def __dir__(self) -> list[str]:
        return sorted(set(super().__dir__()) | set(self._names))


def _dial_error(url: str, error: BaseException) -> DialError:
    """Classify a failed dial so callers can decide whether to retry."""
    match error:
        case aiohttp.ClientSSLError() | ssl.SSLError() | ssl.CertificateError():
            return DialError.handshake_failed(f"TLS handshake with {url} failed: {error}")
        case aiohttp.ClientConnectorError() if _is_refused(error.os_error):
            return DialError.refused(f"{url} refused the connection")
        case aiohttp.ClientConnectorError():
            return DialError.unreachable(f"cannot reach {url}: {error.os_error}")
        case aiohttp.ClientError():
            # The transport came up but the peer would not negotiate with
            # us: wrong security kind, wrong path, not a unarpc server.
            return DialError.handshake_failed(f"{url} rejected the connection: {error}")
        case TimeoutError():
            return DialError.unreachable(f"timed out connecting to {url}")
        case OSError() if _is_refused(error):
            return DialError.refused(f"{url} refused the connection")
        case _:
            return DialError.unreachable(f"cannot reach {url}: {error}")


def _is_refused(error: OSError) -> bool:
    return isinstance(error, ConnectionRefusedError) or error.errno == errno.ECONNREFUSED


async def dial(
    address: str,
    service: ServiceDefinition,
    registry: SchemaRegistry,
    credential: Credential | None = None,
    codec: Codec | None = None,
    **options: Any,
) -> ClientConnection:
    """Open one logical connection to a server.

    Args:
        address: "host:port"; for TLS the host must match the certificate
        service: The service the server is expected to host
        registry: Schema registry compiled from the shared schema text
        credential: TLS client credential, or None for plaintext
        codec: Message codec (defaults to JsonCodec)
        **options: Extra ClientConfig fields

    Raises:
        DialError: If the server is unreachable, refuses, or the handshake fails
    """
    config = ClientConfig(address=address, credential=credential, **options)
    return await ClientConnection(config, service, registry, codec).connect()
