"""Service handler binding.

A ServiceHandlerSet is the immutable mapping from method name to handler
that a server is constructed with. It is built once, before serving, and
never mutated afterwards.
"""

from __future__ import annotations

import asyncio
import inspect
import re
from collections.abc import Awaitable, Callable, Iterator, Mapping
from types import MappingProxyType
from typing import Any

from unarpc.codec import Message
from unarpc.context import CallContext
from unarpc.error import RpcError
from unarpc.schema import ServiceDefinition

Handler = Callable[[Message, CallContext], "Message | RpcError | Awaitable[Message | RpcError]"]


class ServiceHandlerSet(Mapping[str, Handler]):
    """Immutable method-name -> handler mapping for one service."""

    def __init__(self, service: ServiceDefinition, handlers: Mapping[str, Handler] | None = None) -> None:
        handlers = dict(handlers or {})
        for name, handler in handlers.items():
            if not service.has_method(name):
                msg = f"service {service.name} has no method {name!r}"
                raise KeyError(msg)
            if not callable(handler):
                msg = f"handler for {service.name}/{name} is not callable"
                raise TypeError(msg)
        self.service = service
        self._handlers: Mapping[str, Handler] = MappingProxyType(handlers)

    def __getitem__(self, name: str) -> Handler:
        return self._handlers[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._handlers)

    def __len__(self) -> int:
        return len(self._handlers)

    def bind(self, name: str, handler: Handler) -> ServiceHandlerSet:
        """Return a new set with one more handler bound.

        Raises:
            KeyError: If the service has no such method
            ValueError: If the method already has a handler
        """
        if name in self._handlers:
            msg = f"{self.service.name}/{name} already has a handler"
            raise ValueError(msg)
        return ServiceHandlerSet(self.service, {**self._handlers, name: handler})

    async def handle(self, method: str, request: Message, context: CallContext) -> Message | RpcError:
        """Run the handler bound to method.

        Raises:
            KeyError: If nothing is bound to method
        """
        return await run_handler(self._handlers[method], request, context)

    @property
    def unbound(self) -> tuple[str, ...]:
        return tuple(n for n in self.service.method_names if n not in self._handlers)

    @staticmethod
    def from_object(service: ServiceDefinition, target: Any) -> ServiceHandlerSet:
        """Bind the methods of target that match the service's methods.

        A method named either exactly like the service method (SayHello)
        or in snake_case (say_hello) is bound. Names starting with an
        underscore are never bound.
        """
        handlers: dict[str, Handler] = {}
        for name in service.method_names:
            for candidate in (name, snake_case(name)):
                if candidate.startswith("_"):
                    continue
                attr = getattr(target, candidate, None)
                if callable(attr):
                    handlers[name] = attr
                    break
        return ServiceHandlerSet(service, handlers)


async def run_handler(handler: Handler, request: Message, context: CallContext) -> Message | RpcError:
    """Invoke a handler, awaiting coroutines and threading sync code.

    Synchronous handlers run in a worker thread so a blocking handler
    cannot stall other calls on the event loop.
    """
    if inspect.iscoroutinefunction(handler) or inspect.iscoroutinefunction(
        getattr(handler, "__call__", None)
    ):
        return await handler(request, context)

    result = await asyncio.to_thread(handler, request, context)
    if inspect.isawaitable(result):
        return await result
    return result


def snake_case(name: str) -> str:
    return re.sub(r"(?<=[a-z0-9])([A-Z])", r"_\1", name).lower()
