"""unarpc - typed unary RPC over plaintext or TLS WebSockets.

A client invokes a named method of a remote service as if it were a local
coroutine. Both peers compile the same schema text into a SchemaRegistry;
requests and responses travel as schema-encoded messages tagged with a
correlation id.
"""

from unarpc.client import ClientConfig, ClientConnection, ServiceClient, dial
from unarpc.codec import Codec, JsonCodec
from unarpc.connection import ConnectionState, close
from unarpc.context import CallContext
from unarpc.credentials import (
    Credential,
    CredentialKind,
    client_credential,
    insecure_credential,
    server_credential,
)
from unarpc.error import (
    BindError,
    CancellationObserved,
    CodecError,
    ConnectionClosed,
    CredentialLoadError,
    DeadlineExceeded,
    DialError,
    DialFailure,
    ErrorCode,
    RemoteError,
    RpcError,
    SchemaConflict,
    UnaRpcError,
    UnimplementedMethod,
)
from unarpc.handlers import ServiceHandlerSet
from unarpc.idl import SchemaSyntaxError
from unarpc.schema import (
    FieldDefinition,
    MessageSchema,
    MethodDefinition,
    SchemaRegistry,
    ServiceDefinition,
)
from unarpc.server import Server, ServerConfig, listen, serve

__version__ = "0.1.0"

__all__ = [
    # Schema
    "SchemaRegistry",
    "MessageSchema",
    "FieldDefinition",
    "ServiceDefinition",
    "MethodDefinition",
    # Codec
    "Codec",
    "JsonCodec",
    # Credentials
    "Credential",
    "CredentialKind",
    "insecure_credential",
    "server_credential",
    "client_credential",
    # Server
    "Server",
    "ServerConfig",
    "ServiceHandlerSet",
    "CallContext",
    "listen",
    "serve",
    # Client
    "ClientConnection",
    "ClientConfig",
    "ServiceClient",
    "dial",
    # Lifecycle
    "ConnectionState",
    "close",
    # Errors
    "UnaRpcError",
    "RpcError",
    "ErrorCode",
    "RemoteError",
    "UnimplementedMethod",
    "DeadlineExceeded",
    "ConnectionClosed",
    "CancellationObserved",
    "SchemaConflict",
    "SchemaSyntaxError",
    "CodecError",
    "CredentialLoadError",
    "BindError",
    "DialError",
    "DialFailure",
]
