"""Greeter server.

Run (plaintext):
    python examples/greeter/server.py --address 127.0.0.1:50051

Run (TLS, generating a self-signed certificate first):
    python examples/greeter/server.py --generate-cert --cert localhost.crt --key localhost.key

Exits 0 on clean shutdown and 2 on any startup failure.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from unarpc import (
    BindError,
    CallContext,
    CredentialLoadError,
    SchemaConflict,
    SchemaRegistry,
    SchemaSyntaxError,
    ServiceHandlerSet,
    listen,
    serve,
    server_credential,
)
from unarpc.certs import generate_self_signed_cert

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

SCHEMA = Path(__file__).with_name("greeter.schema")


class Greeter:
    """Greeter service implementation."""

    async def say_hello(self, request: dict, context: CallContext) -> dict:
        greeting = request.get("greeting", "")
        logger.info("SayHello(%r) from %s", greeting, context.peer)
        return {"greeting": "bar" if greeting == "foo" else f"hello, {greeting}"}


async def main(args: argparse.Namespace) -> None:
    registry = SchemaRegistry()
    registry.load(Path(args.schema).read_text())
    handlers = ServiceHandlerSet.from_object(registry.service("Greeter"), Greeter())

    credential = None
    if args.cert:
        if args.generate_cert:
            generate_self_signed_cert("localhost", output_dir=Path(args.cert).parent)
        credential = server_credential(args.cert, args.key)

    listener = await listen(args.address, handlers, registry, credential=credential)
    try:
        await serve(listener)
    finally:
        await listener.close()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("--address", default="127.0.0.1:50051")
    parser.add_argument("--schema", default=str(SCHEMA), help="schema text declaring the Greeter service")
    parser.add_argument("--cert", help="PEM certificate (enables TLS)")
    parser.add_argument("--key", help="PEM private key")
    parser.add_argument("--generate-cert", action="store_true")
    args = parser.parse_args()
    if args.cert and not args.key:
        parser.error("--cert requires --key")

    try:
        asyncio.run(main(args))
    except BindError as e:
        print(f"bind error: {e}", file=sys.stderr)
        sys.exit(2)
    except (SchemaSyntaxError, SchemaConflict) as e:
        print(f"schema error: {e}", file=sys.stderr)
        sys.exit(2)
    except CredentialLoadError as e:
        print(f"credential error: {e}", file=sys.stderr)
        sys.exit(2)
    except KeyboardInterrupt:
        pass
