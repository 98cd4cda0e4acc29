"""Shared fixtures: the Greeter schema, its handlers, servers and certificates."""

from __future__ import annotations

import asyncio
import socket
from collections.abc import Callable
from pathlib import Path

import pytest

from unarpc import (
    CallContext,
    CancellationObserved,
    RpcError,
    SchemaRegistry,
    Server,
    ServerConfig,
    ServiceHandlerSet,
    dial,
    listen,
    server_credential,
)
from unarpc.certs import generate_self_signed_cert

GREETER_SCHEMA = """
// Greeter test service
message HelloRequest {
  string greeting = 1;
}

message HelloReply {
  string greeting = 1;
}

message SleepRequest {
  double seconds = 1;
  string tag = 2;
}

message Empty {}

service Greeter {
  rpc SayHello (HelloRequest) returns (HelloReply);
  rpc Fail (HelloRequest) returns (HelloReply);
  rpc Sleep (SleepRequest) returns (HelloReply);
  rpc Hang (Empty) returns (Empty);
  rpc Crash (Empty) returns (Empty);
  rpc Unbound (Empty) returns (Empty);
}
"""


class GreeterImpl:
    """Greeter handlers used across the integration tests."""

    def __init__(self) -> None:
        self.hang_started = asyncio.Event()
        self.hang_cancelled = asyncio.Event()

    async def say_hello(self, request: dict, context: CallContext) -> dict:
        if request.get("greeting") == "foo":
            return {"greeting": "bar"}
        return {"greeting": f"hello, {request.get('greeting', '')}"}

    async def fail(self, request: dict, context: CallContext) -> dict:
        msg = f"cannot greet {request.get('greeting')!r}"
        raise RpcError.invalid_argument(msg, {"greeting": request.get("greeting")})

    async def sleep(self, request: dict, context: CallContext) -> dict:
        await asyncio.sleep(request["seconds"])
        return {"greeting": request.get("tag", "")}

    async def hang(self, request: dict, context: CallContext) -> dict:
        self.hang_started.set()
        await context.wait_cancelled()
        self.hang_cancelled.set()
        raise CancellationObserved

    async def crash(self, request: dict, context: CallContext) -> dict:
        msg = "handler bug"
        raise ZeroDivisionError(msg)


def make_registry(text: str = GREETER_SCHEMA) -> SchemaRegistry:
    registry = SchemaRegistry()
    registry.load(text)
    return registry


async def wait_until(condition: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll until condition() holds or fail the test."""
    async with asyncio.timeout(timeout):
        while not condition():
            await asyncio.sleep(0.01)


def free_port() -> int:
    """Return a port nothing is listening on."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


@pytest.fixture
def registry() -> SchemaRegistry:
    return make_registry()


@pytest.fixture
def greeter(registry):
    return registry.service("Greeter")


@pytest.fixture
def impl() -> GreeterImpl:
    return GreeterImpl()


@pytest.fixture
def handlers(greeter, impl) -> ServiceHandlerSet:
    return ServiceHandlerSet.from_object(greeter, impl)


@pytest.fixture
async def server(handlers, registry):
    """Create and start a plaintext test server on an ephemeral port."""
    server_instance = await listen("127.0.0.1:0", handlers, registry)

    yield server_instance

    await server_instance.close()


@pytest.fixture
async def connection(server, greeter, registry):
    """Dial the plaintext test server."""
    conn = await dial(server.address, greeter, registry)

    yield conn

    await conn.close()


@pytest.fixture(scope="session")
def localhost_cert(tmp_path_factory) -> tuple[Path, Path]:
    """Self-signed certificate for localhost / 127.0.0.1."""
    return generate_self_signed_cert("localhost", output_dir=tmp_path_factory.mktemp("certs"))


@pytest.fixture(scope="session")
def other_cert(tmp_path_factory) -> tuple[Path, Path]:
    """Self-signed certificate for a host the tests never dial."""
    return generate_self_signed_cert("example.com", output_dir=tmp_path_factory.mktemp("other"))


@pytest.fixture
def server_config() -> Callable[..., ServerConfig]:
    def build(**kwargs) -> ServerConfig:
        return ServerConfig(**{"host": "127.0.0.1", "port": 0, **kwargs})

    return build


@pytest.fixture
async def tls_server(handlers, registry, localhost_cert, server_config):
    """Start a TLS test server presenting the localhost certificate."""
    credential = server_credential(*localhost_cert)
    async with Server(server_config(credential=credential), handlers, registry) as server_instance:
        yield server_instance
