"""Per-call context handed to service handlers."""

from __future__ import annotations

import asyncio
import threading
import time

from unarpc.error import CancellationObserved


class CallContext:
    """Deadline and cancellation signal for one call.

    The context exposes no transport objects. Cancellation is a best-effort
    hint: it is set when the client abandons the call (deadline or explicit
    cancel) or the session goes away, and handlers may poll it or wait on
    it. It is safe to read from a worker thread running a sync handler.
    """

    def __init__(
        self,
        service: str,
        method: str,
        call_id: int,
        timeout: float | None = None,
        peer: str | None = None,
    ) -> None:
        self.service = service
        self.method = method
        self.call_id = call_id
        self.peer = peer
        self.deadline = None if timeout is None else time.monotonic() + timeout
        self._cancelled = threading.Event()
        self._waiters: list[asyncio.Future[None]] = []

    def time_remaining(self) -> float | None:
        """Seconds until the client's deadline, or None without one."""
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    @property
    def expired(self) -> bool:
        return self.deadline is not None and time.monotonic() >= self.deadline

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def cancel(self) -> None:
        """Set the cancellation signal. Must be called on the event loop."""
        if self._cancelled.is_set():
            return
        self._cancelled.set()
        for waiter in self._waiters:
            if not waiter.done():
                waiter.set_result(None)
        self._waiters.clear()

    async def wait_cancelled(self) -> None:
        """Wait until the call is cancelled."""
        if self.cancelled:
            return
        waiter = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        await waiter

    def check_cancelled(self) -> None:
        """Raise CancellationObserved if the call was abandoned.

        Raises:
            CancellationObserved: If the cancellation signal is set
        """
        if self.cancelled:
            msg = f"{self.service}/{self.method} call {self.call_id} was cancelled"
            raise CancellationObserved(msg)

    def __repr__(self) -> str:
        return (
            f"CallContext({self.service}/{self.method} id={self.call_id} "
            f"remaining={self.time_remaining()} cancelled={self.cancelled})"
        )
