"""Greeter client.

Run:
    python examples/greeter/client.py --address 127.0.0.1:50051 foo
    python examples/greeter/client.py --address localhost:50051 --cert localhost.crt foo

Exits 0 on success, 1 if the call fails and 2 on any setup failure.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from unarpc import (
    CredentialLoadError,
    DialError,
    RpcError,
    SchemaConflict,
    SchemaRegistry,
    SchemaSyntaxError,
    ServiceClient,
    client_credential,
    dial,
)

logging.basicConfig(level=logging.WARNING)

SCHEMA = Path(__file__).with_name("greeter.schema")


async def main(args: argparse.Namespace) -> int:
    registry = SchemaRegistry()
    registry.load(Path(args.schema).read_text())

    credential = client_credential(args.cert) if args.cert else None
    connection = await dial(args.address, registry.service("Greeter"), registry, credential=credential)
    async with connection:
        greeter = ServiceClient(connection)
        try:
            reply = await greeter.SayHello({"greeting": args.greeting}, timeout=args.timeout)
        except RpcError as e:
            print(f"call failed: {e}", file=sys.stderr)
            return 1
    print(reply["greeting"])
    return 0


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("greeting")
    parser.add_argument("--address", default="127.0.0.1:50051")
    parser.add_argument("--cert", help="PEM certificate of the server (enables TLS)")
    parser.add_argument("--schema", default=str(SCHEMA), help="schema text declaring the Greeter service")
    parser.add_argument("--timeout", type=float, default=5.0)
    args = parser.parse_args()

    try:
        sys.exit(asyncio.run(main(args)))
    except DialError as e:
        print(f"dial error ({e.kind}): {e.message}", file=sys.stderr)
        sys.exit(2)
    except (SchemaSyntaxError, SchemaConflict) as e:
        print(f"schema error: {e}", file=sys.stderr)
        sys.exit(2)
    except CredentialLoadError as e:
        print(f"credential error: {e}", file=sys.stderr)
        sys.exit(2)
