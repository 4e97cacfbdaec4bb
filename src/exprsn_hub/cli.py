"""``exprsn-hub`` command line."""

from __future__ import annotations

import argparse
import sys
from collections.abc import Sequence

from exprsn_hub.core.errors import HubError
from exprsn_hub.core.logging import configure_logging
from exprsn_hub.core.settings import settings
from exprsn_hub.db.session import SessionLocal, create_tables
from exprsn_hub.models import OAuthClient
from exprsn_hub.services.bootstrap import ensure_directories
from exprsn_hub.services.cache import TTLCache
from exprsn_hub.services.jwks import KeyStore
from exprsn_hub.services.tokens import (
    GRANT_AUTHORIZATION_CODE,
    GRANT_REFRESH_TOKEN,
    TokenService,
)


def _token_service() -> TokenService:
    return TokenService(settings, TTLCache(settings.cache_ttl), KeyStore(settings.jwks_path))


def cmd_serve(args: argparse.Namespace) -> int:
    from exprsn_hub.main import serve

    return serve(settings, host=args.host)


def cmd_init_db(_args: argparse.Namespace) -> int:
    ensure_directories(settings)
    create_tables()
    print(f"Database ready at {settings.effective_database_url}")
    return 0


def cmd_create_client(args: argparse.Namespace) -> int:
    create_tables()
    with SessionLocal() as db:
        try:
            client, secret = _token_service().register_client(
                db,
                name=args.name,
                redirect_uris=args.redirect_uri,
                grant_types=args.grant or (GRANT_AUTHORIZATION_CODE, GRANT_REFRESH_TOKEN),
                scope=args.scope,
            )
        except HubError as exc:
            print(f"error: {exc.message}", file=sys.stderr)
            return 2
        print(f"client_id:     {client.id}")
        print(f"client_secret: {secret}")
        print("Store the secret now; it is not shown again.")
    return 0


def cmd_list_clients(_args: argparse.Namespace) -> int:
    create_tables()
    with SessionLocal() as db:
        clients = db.query(OAuthClient).order_by(OAuthClient.created_at.asc()).all()
        for client in clients:
            state = "active" if client.is_active else "inactive"
            owner = client.user_id if client.user_id is not None else "system"
            print(
                f"{client.id}\t{client.name}\t{state}\towner={owner}\t"
                f"grants={','.join(client.grant_types or [])}\tscope={client.scope}"
            )
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="exprsn-hub", description="Exprsn hub server")
    commands = parser.add_subparsers(dest="command")

    serve = commands.add_parser("serve", help="run the server (default)")
    serve.add_argument("--host", default="0.0.0.0")
    serve.set_defaults(handler=cmd_serve)

    init_db = commands.add_parser("init-db", help="create directories and tables")
    init_db.set_defaults(handler=cmd_init_db)

    create = commands.add_parser("create-client", help="register a system OAuth client")
    create.add_argument("name")
    create.add_argument(
        "--redirect-uri", action="append", default=[], required=True, help="repeatable"
    )
    create.add_argument("--grant", action="append", default=[], help="repeatable")
    create.add_argument("--scope", default="read")
    create.set_defaults(handler=cmd_create_client)

    list_clients = commands.add_parser("list-clients", help="list OAuth clients")
    list_clients.set_defaults(handler=cmd_list_clients)
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(settings.log_level)
    if args.command is None:
        args = parser.parse_args(["serve"])
    return args.handler(args)


if __name__ == "__main__":
    sys.exit(main())
