"""Service and message definitions shared by both peers.

The registry is the single source of wire meaning: a client and a server
must compile the same (or a compatibly revised) schema text before any call
is attempted. There is no runtime schema exchange.

Field numbers form the wire contract. Once a number has been given a name,
type and label in a message, no later revision may reuse it for anything
else, even if an intermediate revision dropped the field.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Final

from unarpc.error import SchemaConflict

logger = logging.getLogger(__name__)

SCALAR_TYPES: Final = frozenset({
    "string",
    "bytes",
    "bool",
    "int32",
    "int64",
    "uint32",
    "uint64",
    "float",
    "double",
})

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


@dataclass(frozen=True)
class FieldDefinition:
    """One field of a message: stable number, name, type and label."""

    number: int
    name: str
    type: str
    repeated: bool = False

    @property
    def is_scalar(self) -> bool:
        return self.type in SCALAR_TYPES

    def same_shape(self, other: FieldDefinition) -> bool:
        """Check whether two definitions of one field number agree."""
        return (self.name, self.type, self.repeated) == (
            other.name,
            other.type,
            other.repeated,
        )


@dataclass(frozen=True)
class MessageSchema:
    """A named, ordered field layout."""

    name: str
    fields: tuple[FieldDefinition, ...]
    revision: int = field(default=1, compare=False)

    def __post_init__(self) -> None:
        _check_identifier(self.name, "message")
        seen_numbers: set[int] = set()
        seen_names: set[str] = set()
        for f in self.fields:
            _check_identifier(f.name, f"field of {self.name}")
            if f.number < 1:
                msg = f"{self.name}.{f.name}: field numbers must be positive, got {f.number}"
                raise SchemaConflict(msg)
            if f.number in seen_numbers:
                msg = f"{self.name}: field number {f.number} used twice"
                raise SchemaConflict(msg)
            if f.name in seen_names:
                msg = f"{self.name}: field name {f.name!r} used twice"
                raise SchemaConflict(msg)
            seen_numbers.add(f.number)
            seen_names.add(f.name)

    def by_number(self, number: int) -> FieldDefinition | None:
        for f in self.fields:
            if f.number == number:
                return f
        return None

    def by_name(self, name: str) -> FieldDefinition | None:
        for f in self.fields:
            if f.name == name:
                return f
        return None


@dataclass(frozen=True)
class MethodDefinition:
    """A unary method: name plus request and response message type names."""

    name: str
    request_type: str
    response_type: str
    service: str = ""

    @property
    def full_name(self) -> str:
        return f"{self.service}/{self.name}"


@dataclass(frozen=True)
class ServiceDefinition:
    """A named, ordered list of methods. Immutable after registration."""

    name: str
    methods: tuple[MethodDefinition, ...]

    def __post_init__(self) -> None:
        _check_identifier(self.name, "service")
        names = [m.name for m in self.methods]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            msg = f"service {self.name}: duplicate methods {duplicates}"
            raise SchemaConflict(msg)
        # Bind each method to its owning service.
        bound = tuple(
            m if m.service == self.name else MethodDefinition(
                m.name, m.request_type, m.response_type, self.name
            )
            for m in self.methods
        )
        object.__setattr__(self, "methods", bound)

    def method(self, name: str) -> MethodDefinition:
        for m in self.methods:
            if m.name == name:
                return m
        msg = f"service {self.name} has no method {name!r}"
        raise KeyError(msg)

    def has_method(self, name: str) -> bool:
        return any(m.name == name for m in self.methods)

    @property
    def method_names(self) -> tuple[str, ...]:
        return tuple(m.name for m in self.methods)


class SchemaRegistry:
    """Name-indexed store of message schemas and service definitions."""

    def __init__(self) -> None:
        self._messages: dict[str, MessageSchema] = {}
        self._services: dict[str, ServiceDefinition] = {}
        # message name -> every field number ever assigned, across revisions
        self._field_history: dict[str, dict[int, FieldDefinition]] = {}

    def define_message(self, schema: MessageSchema) -> MessageSchema:
        """Register a message schema or a compatible revision of it.

        Args:
            schema: The message layout to register

        Returns:
            The registered schema (the existing one if unchanged)

        Raises:
            SchemaConflict: If a field number is reused with a different
                name, type or label, or a field references an unknown type
        """
        for f in schema.fields:
            if not f.is_scalar and f.type not in self._messages and f.type != schema.name:
                msg = f"{schema.name}.{f.name}: unknown field type {f.type!r}"
                raise SchemaConflict(msg)

        current = self._messages.get(schema.name)
        if current is not None and current.fields == schema.fields:
            return current

        history = self._field_history.get(schema.name, {})
        for f in schema.fields:
            previous = history.get(f.number)
            if previous is not None and not previous.same_shape(f):
                msg = (
                    f"{schema.name}: field number {f.number} was {previous.type} "
                    f"{previous.name!r}, cannot become {f.type} {f.name!r}"
                )
                raise SchemaConflict(msg)

        revision = 1 if current is None else current.revision + 1
        registered = MessageSchema(schema.name, schema.fields, revision)
        self._messages[schema.name] = registered
        merged = dict(history)
        merged.update({f.number: f for f in schema.fields})
        self._field_history[schema.name] = merged
        if revision > 1:
            logger.debug("Message %s revised to revision %d", schema.name, revision)
        return registered

    def define_service(self, service: ServiceDefinition) -> ServiceDefinition:
        """Register a service definition.

        Adding methods to an existing service is a compatible revision;
        changing the request or response type of an existing method is not.

        Raises:
            SchemaConflict: If a method signature changes or a method refers
                to an undefined message type
        """
        for m in service.methods:
            for type_name in (m.request_type, m.response_type):
                if type_name not in self._messages:
                    msg = f"{m.full_name}: unknown message type {type_name!r}"
                    raise SchemaConflict(msg)

        current = self._services.get(service.name)
        if current is not None:
            if current.methods == service.methods:
                return current
            for m in service.methods:
                if current.has_method(m.name) and current.method(m.name) != m:
                    msg = f"{m.full_name}: signature changed"
                    raise SchemaConflict(msg)

        self._services[service.name] = service
        return service

    def define(self, definition: MessageSchema | ServiceDefinition) -> MessageSchema | ServiceDefinition:
        """Register either kind of definition."""
        if isinstance(definition, MessageSchema):
            return self.define_message(definition)
        return self.define_service(definition)

    def load(self, text: str) -> list[MessageSchema | ServiceDefinition]:
        """Compile schema text into this registry.

        The text is applied as a whole: if any definition in it conflicts,
        the registry is left exactly as it was.

        Returns:
            The registered definitions, in source order

        Raises:
            SchemaSyntaxError: If the text is malformed
            SchemaConflict: If a definition conflicts or references an unknown type
        """
        from unarpc.idl import parse_schema

        definitions = parse_schema(text)
        staged = SchemaRegistry()
        staged._messages = dict(self._messages)
        staged._services = dict(self._services)
        staged._field_history = dict(self._field_history)
        registered = staged._load(definitions)

        self._messages = staged._messages
        self._services = staged._services
        self._field_history = staged._field_history
        return registered

    def _load(
        self, definitions: list[MessageSchema | ServiceDefinition]
    ) -> list[MessageSchema | ServiceDefinition]:
        registered: dict[int, MessageSchema | ServiceDefinition] = {}

        # Messages may reference messages declared later in the text.
        pending = [(i, d) for i, d in enumerate(definitions) if isinstance(d, MessageSchema)]
        while pending:
            ready = [
                (i, d)
                for i, d in pending
                if all(
                    f.is_scalar or f.type in self._messages or f.type == d.name
                    for f in d.fields
                )
            ]
            if not ready:
                # Nothing resolvable left; let define_message report the first one.
                ready = pending[:1]
            for i, d in ready:
                registered[i] = self.define_message(d)
            pending = [(i, d) for i, d in pending if i not in registered]

        for i, d in enumerate(definitions):
            if isinstance(d, ServiceDefinition):
                registered[i] = self.define_service(d)
        return [registered[i] for i in sorted(registered)]

    def message(self, name: str) -> MessageSchema:
        return self._messages[name]

    def service(self, name: str) -> ServiceDefinition:
        return self._services[name]

    def request_schema(self, method: MethodDefinition) -> MessageSchema:
        return self._messages[method.request_type]

    def response_schema(self, method: MethodDefinition) -> MessageSchema:
        return self._messages[method.response_type]

    def __contains__(self, name: object) -> bool:
        return name in self._messages or name in self._services

    @property
    def messages(self) -> tuple[str, ...]:
        return tuple(self._messages)

    @property
    def services(self) -> tuple[str, ...]:
        return tuple(self._services)


def _check_identifier(name: str, what: str) -> None:
    if not _IDENTIFIER.match(name):
        msg = f"invalid {what} name {name!r}"
        raise SchemaConflict(msg)
