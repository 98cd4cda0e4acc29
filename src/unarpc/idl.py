"""Parser for the human-authored schema text.

The format is a small proto-like language:

    // Greeter service, revision 2
    message HelloRequest {
      string greeting = 1;
    }

    message HelloReply {
      string greeting = 1;
      repeated int64 ids = 2;
    }

    service Greeter {
      rpc SayHello (HelloRequest) returns (HelloReply);
    }

Declarations may appear in any order; field types that name messages are
resolved by the registry when the definitions are registered.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from unarpc.schema import FieldDefinition, MessageSchema, MethodDefinition, ServiceDefinition

_TOKEN = re.compile(
    r"""
    (?P<comment>//[^\n]*|/\*.*?\*/)
    | (?P<newline>\n)
    | (?P<space>[ \t\r]+)
    | (?P<number>\d+)
    | (?P<ident>[A-Za-z_][A-Za-z0-9_.]*)
    | (?P<punct>[{}();=])
    """,
    re.VERBOSE | re.DOTALL,
)


class SchemaSyntaxError(ValueError):
    """The schema text is not well formed."""

    def __init__(self, message: str, line: int) -> None:
        super().__init__(f"line {line}: {message}")
        self.line = line


@dataclass(frozen=True)
class Token:
    kind: str
    value: str
    line: int


def tokenize(text: str) -> list[Token]:
    tokens: list[Token] = []
    line = 1
    pos = 0
    while pos < len(text):
        match = _TOKEN.match(text, pos)
        if match is None:
            msg = f"unexpected character {text[pos]!r}"
            raise SchemaSyntaxError(msg, line)
        kind = match.lastgroup
        value = match.group()
        if kind in ("number", "ident", "punct"):
            tokens.append(Token(kind, value, line))  # type: ignore[arg-type]
        line += value.count("\n")
        pos = match.end()
    return tokens


class _Parser:
    def __init__(self, tokens: list[Token]) -> None:
        self._tokens = tokens
        self._pos = 0

    def _peek(self) -> Token | None:
        return self._tokens[self._pos] if self._pos < len(self._tokens) else None

    def _line(self) -> int:
        token = self._peek()
        if token is not None:
            return token.line
        return self._tokens[-1].line if self._tokens else 1

    def _next(self, kind: str, value: str | None = None) -> Token:
        token = self._peek()
        if token is None:
            expected = value or kind
            msg = f"expected {expected!r}, got end of input"
            raise SchemaSyntaxError(msg, self._line())
        if token.kind != kind or (value is not None and token.value != value):
            expected = value or kind
            msg = f"expected {expected!r}, got {token.value!r}"
            raise SchemaSyntaxError(msg, token.line)
        self._pos += 1
        return token

    def _accept(self, value: str) -> bool:
        token = self._peek()
        if token is not None and token.value == value:
            self._pos += 1
            return True
        return False

    def parse(self) -> list[MessageSchema | ServiceDefinition]:
        definitions: list[MessageSchema | ServiceDefinition] = []
        while (token := self._peek()) is not None:
            match token.value:
                case "message":
                    definitions.append(self._message())
                case "service":
                    definitions.append(self._service())
                case "syntax" | "package":
                    self._pos += 1
                    while not self._accept(";"):
                        if self._peek() is None:
                            msg = "unterminated declaration"
                            raise SchemaSyntaxError(msg, token.line)
                        self._pos += 1
                case _:
                    msg = f"expected 'message' or 'service', got {token.value!r}"
                    raise SchemaSyntaxError(msg, token.line)
        return definitions

    def _message(self) -> MessageSchema:
        self._next("ident", "message")
        name = self._next("ident").value
        self._next("punct", "{")
        fields: list[FieldDefinition] = []
        while not self._accept("}"):
            repeated = self._accept("repeated")
            type_name = self._next("ident").value
            field_name = self._next("ident").value
            self._next("punct", "=")
            number = int(self._next("number").value)
            self._next("punct", ";")
            fields.append(FieldDefinition(number, field_name, type_name, repeated))
        return MessageSchema(name, tuple(fields))

    def _service(self) -> ServiceDefinition:
        self._next("ident", "service")
        name = self._next("ident").value
        self._next("punct", "{")
        methods: list[MethodDefinition] = []
        while not self._accept("}"):
            self._next("ident", "rpc")
            method_name = self._next("ident").value
            request_type = self._parenthesized()
            self._next("ident", "returns")
            response_type = self._parenthesized()
            self._next("punct", ";")
            methods.append(MethodDefinition(method_name, request_type, response_type, name))
        return ServiceDefinition(name, tuple(methods))

    def _parenthesized(self) -> str:
        self._next("punct", "(")
        if (token := self._peek()) is not None and token.value == "stream":
            msg = "streaming methods are not supported"
            raise SchemaSyntaxError(msg, token.line)
        value = self._next("ident").value
        self._next("punct", ")")
        return value


def parse_schema(text: str) -> list[MessageSchema | ServiceDefinition]:
    """Parse schema text into unregistered definitions.

    Raises:
        SchemaSyntaxError: If the text is malformed
        SchemaConflict: If a declaration is internally inconsistent
            (duplicate field numbers, duplicate methods, ...)
    """
    return _Parser(tokenize(text)).parse()
