"""Command-line entry point of the Keycloak assistant."""

from __future__ import annotations
import argparse
import logging
import os
import sys
from typing import List, Optional, Sequence

from assistant.database import Database, resolve_database_path

logger = logging.getLogger("assistant.main")

COMMANDS = ("serve", "init-db")
DEFAULT_PORT = 8080


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Keycloak assistant")
    parser.set_defaults(command="serve")
    commands = parser.add_subparsers(dest="command")

    commands.add_parser("init-db", help="Create the SQLite schema and seed the service role exclusions")

    serve = commands.add_parser("serve", help="Run the web interface (default)")
    serve.add_argument("--host", default="0.0.0.0", help="Interface to listen on")
    serve.add_argument("--port", type=int, default=DEFAULT_PORT, help=f"TCP port (default: {DEFAULT_PORT})")
    serve.add_argument("--ssl-certfile", metavar="PEM", help="TLS certificate chain; requires --ssl-keyfile")
    serve.add_argument("--ssl-keyfile", metavar="PEM", help="TLS private key; requires --ssl-certfile")
    return parser


def _normalise_argv(argv: Sequence[str]) -> List[str]:
    """Prefix ``serve`` when the arguments start with one of its options."""

    args = list(argv)
    if not args:
        return ["serve"]
    if args[0] in COMMANDS or "-h" in args or "--help" in args:
        return args
    return ["serve", *args]


def _parse_args(argv: Optional[Sequence[str]]) -> argparse.Namespace:
    raw = sys.argv[1:] if argv is None else argv
    return _build_parser().parse_args(_normalise_argv(raw))


def _initialise_database() -> Database:
    database = Database(resolve_database_path(os.getenv("ASSISTANT_DB_PATH")))
    database.initialize()
    logger.info("Database ready at %s", database.path)
    return database


def _serve(args: argparse.Namespace) -> None:
    if bool(args.ssl_certfile) != bool(args.ssl_keyfile):
        raise SystemExit("--ssl-certfile and --ssl-keyfile have to be given together.")

    import uvicorn

    from assistant.application import create_application

    try:
        app = create_application()
    except (RuntimeError, ValueError) as exc:
        raise SystemExit(f"Invalid configuration: {exc}") from exc

    scheme = "https" if args.ssl_certfile else "http"
    logger.info("Keycloak assistant listening on %s://%s:%s", scheme, args.host, args.port)
    uvicorn.run(
        app,
        host=args.host,
        port=args.port,
        log_level="info",
        proxy_headers=True,
        ssl_certfile=args.ssl_certfile,
        ssl_keyfile=args.ssl_keyfile,
    )


def main(argv: Optional[Sequence[str]] = None) -> None:
    """Entry point for CLI usage."""

    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(message)s")

    args = _parse_args(argv)
    if args.command == "init-db":
        _initialise_database()
        print("Database initialisation complete.")
        return
    _serve(args)


if __name__ == "__main__":
    main()
