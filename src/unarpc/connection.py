"""Connection lifecycle shared by client connections, listeners and sessions."""

from __future__ import annotations

import ipaddress
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Protocol

logger = logging.getLogger(__name__)


class Closeable(Protocol):
    """Anything with an idempotent async close (connections and listeners)."""

    async def close(self) -> None:
        ...


async def close(connection: Closeable) -> None:
    """Release a connection or listener. Safe to call more than once."""
    await connection.close()


class ConnectionState(Enum):
    """Lifecycle of a connection, listener or session.

    CREATED -> CONNECTING -> HANDSHAKING -> READY -> CLOSING -> CLOSED

    Any state other than CLOSED may move to CLOSING. CLOSED is terminal.
    """

    CREATED = "created"
    CONNECTING = "connecting"
    HANDSHAKING = "handshaking"
    READY = "ready"
    CLOSING = "closing"
    CLOSED = "closed"

    def __str__(self) -> str:
        return self.value


_TRANSITIONS: dict[ConnectionState, frozenset[ConnectionState]] = {
    ConnectionState.CREATED: frozenset({ConnectionState.CONNECTING, ConnectionState.CLOSING}),
    ConnectionState.CONNECTING: frozenset({
        ConnectionState.HANDSHAKING,
        ConnectionState.READY,
        ConnectionState.CLOSING,
    }),
    ConnectionState.HANDSHAKING: frozenset({ConnectionState.READY, ConnectionState.CLOSING}),
    ConnectionState.READY: frozenset({ConnectionState.CLOSING}),
    ConnectionState.CLOSING: frozenset({ConnectionState.CLOSED}),
    ConnectionState.CLOSED: frozenset(),
}


class Lifecycle:
    """Tracks a ConnectionState and rejects illegal transitions."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._state = ConnectionState.CREATED

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_ready(self) -> bool:
        return self._state is ConnectionState.READY

    @property
    def is_closing(self) -> bool:
        return self._state in (ConnectionState.CLOSING, ConnectionState.CLOSED)

    def advance(self, new_state: ConnectionState) -> None:
        """Move to new_state.

        Raises:
            RuntimeError: If the transition is not allowed
        """
        if new_state not in _TRANSITIONS[self._state]:
            msg = f"{self.name}: illegal transition {self._state} -> {new_state}"
            raise RuntimeError(msg)
        logger.debug("%s: %s -> %s", self.name, self._state, new_state)
        self._state = new_state


@dataclass(frozen=True)
class Endpoint:
    """A host and port pair."""

    host: str
    port: int

    @property
    def url_host(self) -> str:
        """Host as it must appear in a URL (IPv6 literals bracketed)."""
        return f"[{self.host}]" if ":" in self.host else self.host

    def __str__(self) -> str:
        return f"{self.url_host}:{self.port}"


def parse_address(address: str) -> Endpoint:
    """Parse "host:port" or "[ipv6]:port".

    Raises:
        ValueError: If the address is not a host and a port in 0-65535
    """
    address = address.strip()
    if address.startswith("["):
        host, bracket, rest = address[1:].partition("]")
        if not bracket or not rest.startswith(":"):
            msg = f"invalid address: {address!r}"
            raise ValueError(msg)
        try:
            ipaddress.IPv6Address(host)
        except ValueError as e:
            msg = f"invalid IPv6 address in {address!r}"
            raise ValueError(msg) from e
        port_text = rest[1:]
    else:
        host, colon, port_text = address.rpartition(":")
        if not colon or not host or ":" in host:
            msg = f"invalid address: {address!r} (expected host:port)"
            raise ValueError(msg)

    if not port_text.isdigit():
        msg = f"invalid port in {address!r}"
        raise ValueError(msg)
    port = int(port_text)
    if port > 65535:
        msg = f"port out of range in {address!r}"
        raise ValueError(msg)
    return Endpoint(host, port)
