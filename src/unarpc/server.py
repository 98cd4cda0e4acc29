"""Server implementation for unarpc.

The listener is an aiohttp application serving one WebSocket route. Each
accepted WebSocket is a ServerSession: it completes the session handshake
and then dispatches every request frame on its own task, so slow handlers
never hold up other calls or other sessions.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Self

import aiohttp
from aiohttp import web

from unarpc.codec import Codec, JsonCodec
from unarpc.connection import ConnectionState, Lifecycle, parse_address
from unarpc.context import CallContext
from unarpc.dispatch import Dispatcher
from unarpc.error import BindError, CodecError, CredentialLoadError, ErrorCode
from unarpc.wire import (
    PROTOCOL_VERSION,
    WireCancel,
    WireError,
    WireFrame,
    WireHello,
    WireRefuse,
    WireRequest,
    WireWelcome,
    call_id_of,
    parse_frame,
    serialize_frame,
)

if TYPE_CHECKING:
    from unarpc.credentials import Credential
    from unarpc.handlers import ServiceHandlerSet
    from unarpc.schema import SchemaRegistry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ServerConfig:
    """Configuration for the unarpc server."""

    host: str = "127.0.0.1"
    port: int = 0  # 0 picks a free port, see Server.port
    credential: Credential | None = None  # None or insecure: plaintext sessions
    path: str = "/rpc"
    max_frame_size: int = 4 * 1024 * 1024
    include_stack_traces: bool = False  # Security: disabled by default
    handshake_timeout: float = 10.0
    shutdown_timeout: float = 5.0


class ServerSession:
    """One accepted connection and the calls running on it."""

    def __init__(
        self,
        session_id: int,
        ws: web.WebSocketResponse,
        dispatcher: Dispatcher,
        peer: str | None,
        handshake_timeout: float,
    ) -> None:
        self.session_id = session_id
        self.peer = peer
        self._ws = ws
        self._dispatcher = dispatcher
        self._handshake_timeout = handshake_timeout
        self._lifecycle = Lifecycle(f"session {session_id}")
        self._send_lock = asyncio.Lock()
        self._calls: dict[int, tuple[asyncio.Task[None], CallContext]] = {}
        self._replies: set[asyncio.Task[None]] = set()

    @property
    def state(self) -> ConnectionState:
        return self._lifecycle.state

    @property
    def in_flight(self) -> int:
        return len(self._calls)

    async def run(self) -> None:
        """Handshake, then read frames until the peer or the server closes."""
        self._lifecycle.advance(ConnectionState.CONNECTING)
        try:
            self._lifecycle.advance(ConnectionState.HANDSHAKING)
            if not await self._handshake() or self._lifecycle.is_closing:
                return
            self._lifecycle.advance(ConnectionState.READY)
            logger.info("Session %d ready (peer %s)", self.session_id, self.peer)

            async for msg in self._ws:
                match msg.type:
                    case aiohttp.WSMsgType.BINARY:
                        self._on_frame(msg.data)
                    case aiohttp.WSMsgType.TEXT:
                        logger.warning("Session %d: ignoring text message", self.session_id)
                    case aiohttp.WSMsgType.ERROR:
                        logger.error("Session %d transport error: %s", self.session_id, self._ws.exception())
                        break
                    case _:
                        break
        finally:
            await self.close()

    async def _handshake(self) -> bool:
        try:
            msg = await self._ws.receive(timeout=self._handshake_timeout)
        except TimeoutError:
            await self._refuse(ErrorCode.DEADLINE_EXCEEDED, "no hello received")
            return False

        if msg.type != aiohttp.WSMsgType.BINARY:
            if msg.type not in (aiohttp.WSMsgType.CLOSE, aiohttp.WSMsgType.CLOSING, aiohttp.WSMsgType.CLOSED):
                await self._refuse(ErrorCode.INVALID_ARGUMENT, "expected a hello frame")
            return False
        try:
            frame = parse_frame(msg.data)
        except CodecError as e:
            await self._refuse(ErrorCode.INVALID_ARGUMENT, f"bad hello: {e}")
            return False

        if not isinstance(frame, WireHello):
            await self._refuse(ErrorCode.INVALID_ARGUMENT, "expected a hello frame")
            return False
        if frame.protocol != PROTOCOL_VERSION:
            await self._refuse(ErrorCode.UNIMPLEMENTED, f"unsupported protocol {frame.protocol!r}")
            return False
        if frame.service != self._dispatcher.service:
            await self._refuse(ErrorCode.UNIMPLEMENTED, f"service {frame.service!r} is not served here")
            return False

        await self.send(WireWelcome(self._dispatcher.service))
        return True

    async def _refuse(self, code: ErrorCode, message: str) -> None:
        logger.warning("Session %d refused (peer %s): %s", self.session_id, self.peer, message)
        await self.send(WireRefuse(code.value, message))

    def _on_frame(self, data: bytes) -> None:
        try:
            frame = parse_frame(data)
        except CodecError as e:
            call_id = call_id_of(data)
            logger.warning("Session %d: malformed frame: %s", self.session_id, e)
            if call_id is not None:
                self._spawn_reply(WireError(call_id, ErrorCode.INVALID_ARGUMENT.value, str(e)))
            return

        match frame:
            case WireRequest():
                self._start_call(frame)
            case WireCancel(call_id):
                entry = self._calls.get(call_id)
                if entry is not None:
                    logger.debug("Session %d: call %d cancelled by client", self.session_id, call_id)
                    entry[1].cancel()
            case _:
                logger.warning("Session %d: unexpected %s frame", self.session_id, type(frame).__name__)

    def _start_call(self, request: WireRequest) -> None:
        if request.call_id in self._calls:
            logger.warning("Session %d: duplicate call id %d", self.session_id, request.call_id)
            self._spawn_reply(
                WireError(request.call_id, ErrorCode.INVALID_ARGUMENT.value, "duplicate call id")
            )
            return

        context = CallContext(
            request.service,
            request.method,
            request.call_id,
            timeout=request.timeout,
            peer=self.peer,
        )
        task = asyncio.create_task(self._run_call(request, context))
        self._calls[request.call_id] = (task, context)
        task.add_done_callback(lambda _: self._calls.pop(request.call_id, None))

    async def _run_call(self, request: WireRequest, context: CallContext) -> None:
        logger.debug("Session %d: call %d %s/%s", self.session_id, request.call_id, request.service, request.method)
        try:
            frame = await self._dispatcher.dispatch(request, context)
            data = serialize_frame(frame)
        except Exception:
            # The call still gets its one terminal frame.
            logger.exception("Session %d: call %d produced no sendable reply", self.session_id, request.call_id)
            frame = WireError(request.call_id, ErrorCode.INTERNAL.value, "internal error")
            data = serialize_frame(frame)
        await self._send_data(data, frame)

    def _spawn_reply(self, frame: WireFrame) -> None:
        task = asyncio.create_task(self.send(frame))
        self._replies.add(task)
        task.add_done_callback(self._replies.discard)

    async def send(self, frame: WireFrame) -> None:
        """Send one frame; a frame is never interleaved with another."""
        await self._send_data(serialize_frame(frame), frame)

    async def _send_data(self, data: bytes, frame: WireFrame) -> None:
        async with self._send_lock:
            if self._ws.closed:
                logger.debug("Session %d: dropping %s, connection closed", self.session_id, type(frame).__name__)
                return
            try:
                await self._ws.send_bytes(data)
            except ConnectionError as e:
                logger.debug("Session %d: send failed: %s", self.session_id, e)

    async def close(self) -> None:
        """Tear the session down, cancelling its in-flight calls. Idempotent."""
        if self._lifecycle.is_closing:
            return
        self._lifecycle.advance(ConnectionState.CLOSING)

        calls = list(self._calls.values())
        for task, context in calls:
            context.cancel()
            task.cancel()
        tasks = [task for task, _ in calls] + list(self._replies)

        await self._ws.close()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        self._lifecycle.advance(ConnectionState.CLOSED)
        logger.info("Session %d closed", self.session_id)


class Server:
    """unarpc server: a listener hosting one service.

    The handler set is fixed at construction; nothing can be bound once
    the server is built, let alone once it is serving.

    Example:
        ```python
        registry = SchemaRegistry()
        registry.load(GREETER_SCHEMA)
        handlers = ServiceHandlerSet(registry.service("Greeter"), {"SayHello": say_hello})

        async with Server(ServerConfig(port=50051), handlers, registry) as server:
            await server.serve_forever()
        ```
    """

    def __init__(
        self,
        config: ServerConfig,
        handlers: ServiceHandlerSet,
        registry: SchemaRegistry,
        codec: Codec | None = None,
    ) -> None:
        self.config = config
        self.handlers = handlers
        self.registry = registry
        self.codec = codec or JsonCodec(registry)
        self._dispatcher = Dispatcher(handlers, registry, self.codec, config.include_stack_traces)
        self._lifecycle = Lifecycle(f"listener {config.host}:{config.port}")
        self._runner: web.AppRunner | None = None
        self._site: web.TCPSite | None = None
        self._sessions: set[ServerSession] = set()
        self._session_ids = itertools.count(1)
        self._closed = asyncio.Event()

    async def __aenter__(self) -> Self:
        """Enter async context manager - starts the server unless listen() already did."""
        if self.state is ConnectionState.CREATED:
            await self.start()
        return self

    async def __aexit__(self, *args: object) -> None:
        """Exit async context manager - stops the server."""
        await self.close()

    @property
    def state(self) -> ConnectionState:
        return self._lifecycle.state

    @property
    def secure(self) -> bool:
        return self.config.credential is not None and self.config.credential.is_secure

    @property
    def sessions(self) -> frozenset[ServerSession]:
        """Snapshot of the currently accepted sessions."""
        return frozenset(self._sessions)

    @property
    def port(self) -> int:
        """Get the actual bound port (useful when port=0 for dynamic allocation)."""
        if self._site is None:
            return self.config.port
        server = self._site._server
        if server is not None and server.sockets:  # type: ignore[union-attr]
            return server.sockets[0].getsockname()[1]  # type: ignore[union-attr]
        return self.config.port

    @property
    def address(self) -> str:
        host = f"[{self.config.host}]" if ":" in self.config.host else self.config.host
        return f"{host}:{self.port}"

    async def start(self) -> Self:
        """Bind the listening socket.

        Raises:
            BindError: If the address is in use or cannot be bound
            CredentialLoadError: If the TLS credential cannot be used
        """
        self._lifecycle.advance(ConnectionState.CONNECTING)

        ssl_context = None
        if self.secure:
            try:
                ssl_context = self.config.credential.server_ssl_context()  # type: ignore[union-attr]
            except CredentialLoadError:
                await self._abort_start()
                raise

        app = web.Application()
        app.router.add_get(self.config.path, self._handle_websocket)
        self._runner = web.AppRunner(app, handle_signals=False)
        await self._runner.setup()
        self._site = web.TCPSite(
            self._runner,
            self.config.host,
            self.config.port,
            ssl_context=ssl_context,
        )
        try:
            await self._site.start()
        except OSError as e:
            await self._abort_start()
            msg = f"cannot bind {self.config.host}:{self.config.port}: {e.strerror or e}"
            raise BindError(msg) from e

        self._lifecycle.advance(ConnectionState.READY)
        logger.info(
            "Serving %s on %s (%s)",
            self.handlers.service.name,
            self.address,
            "tls" if self.secure else "plaintext",
        )
        if self.handlers.unbound:
            logger.info("Methods without handlers: %s", ", ".join(self.handlers.unbound))
        return self

    async def _abort_start(self) -> None:
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
        self._site = None
        self._lifecycle.advance(ConnectionState.CLOSING)
        self._lifecycle.advance(ConnectionState.CLOSED)
        self._closed.set()

    async def serve_forever(self) -> None:
        """Serve until the server is closed.

        Sessions are accepted and handled concurrently by the listener
        itself; this only waits for close().
        """
        if self._lifecycle.state is ConnectionState.CREATED:
            await self.start()
        await self._closed.wait()

    async def close(self) -> None:
        """Stop accepting, tear down every session and release the socket.

        Idempotent: closing a closed (or closing) server waits for the
        first close to finish and never raises.
        """
        if self._lifecycle.is_closing:
            await self._closed.wait()
            return
        self._lifecycle.advance(ConnectionState.CLOSING)

        sessions = list(self._sessions)
        if sessions:
            _, still_open = await asyncio.wait(
                [asyncio.create_task(s.close()) for s in sessions],
                timeout=self.config.shutdown_timeout,
            )
            if still_open:
                logger.warning("%d sessions did not close in time", len(still_open))

        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
        self._site = None

        self._lifecycle.advance(ConnectionState.CLOSED)
        self._closed.set()
        logger.info("Listener %s closed", self.address)

    async def _handle_websocket(self, request: web.Request) -> web.StreamResponse:
        """Accept one session.

        Each connection already runs on its own task inside aiohttp, which
        is what lets sessions proceed independently of each other.
        """
        if not self._lifecycle.is_ready:
            return web.Response(status=503, text="server is shutting down")

        ws = web.WebSocketResponse(max_msg_size=self.config.max_frame_size)
        await ws.prepare(request)

        session = ServerSession(
            next(self._session_ids),
            ws,
            self._dispatcher,
            request.remote,
            self.config.handshake_timeout,
        )
        self._sessions.add(session)
        try:
            await session.run()
        finally:
            self._sessions.discard(session)
        return ws


async def listen(
    bind_address: str,
    handlers: ServiceHandlerSet,
    registry: SchemaRegistry,
    credential: Credential | None = None,
    codec: Codec | None = None,
    **options: object,
) -> Server:
    """Bind a listener for one service.

    Args:
        bind_address: "host:port" (port 0 for an ephemeral port)
        handlers: The immutable handler set to serve
        registry: Schema registry compiled from the shared schema text
        credential: TLS server credential, or None for plaintext
        codec: Message codec (defaults to JsonCodec)
        **options: Extra ServerConfig fields

    Raises:
        BindError: If the address is unparsable or cannot be bound
    """
    try:
        endpoint = parse_address(bind_address)
    except ValueError as e:
        raise BindError(str(e)) from e
    config = ServerConfig(host=endpoint.host, port=endpoint.port, credential=credential, **options)  # type: ignore[arg-type]
    server = Server(config, handlers, registry, codec)
    return await server.start()


async def serve(listener: Server) -> None:
    """Block until the listener is closed."""
    await listener.serve_forever()
