"""
Command-line interface for running and exercising an x402 facilitator.

``serve`` runs the HTTP server in-process; every other subcommand talks to a
running facilitator over HTTP and prints its JSON answer.
"""

from __future__ import annotations

import argparse
import base64
import binascii
import json
import logging
import sys
from typing import Any, Dict, Optional, Sequence, Tuple

import requests
import uvicorn

from .api import create_facilitator, create_facilitator_client
from .core.client import FacilitatorClient, FacilitatorHTTPError
from .core.config import ConfigError, FacilitatorConfig, load_facilitator_config
from .server import create_app

LOG_FORMAT = "%(asctime)s %(levelname)s %(message)s"


def _setting(value: str) -> Tuple[str, str]:
    name, sep, setting = value.partition("=")
    if not sep or not name.strip():
        raise argparse.ArgumentTypeError(f"Expected KEY=VALUE, got '{value}'")
    return name.strip(), setting


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="x402-facilitator",
        description="Run an x402 payment facilitator for Solana or talk to a running one",
    )
    parser.add_argument(
        "--env-file",
        default=".env",
        help="Read facilitator settings from this file (default: .env)",
    )
    parser.add_argument(
        "--set",
        dest="settings",
        action="append",
        type=_setting,
        default=[],
        metavar="KEY=VALUE",
        help="Set a configuration variable for this run; may be repeated",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=("DEBUG", "INFO", "WARNING", "ERROR"),
        type=str.upper,
        help="Logging verbosity (default: INFO)",
    )
    parser.add_argument(
        "--facilitator-url",
        help="Base URL of a running facilitator (default: http://HOST:PORT from config)",
    )

    commands = parser.add_subparsers(dest="command", required=True)

    serve = commands.add_parser("serve", help="Run the facilitator HTTP server")
    serve.add_argument("--host", help="Interface to bind (overrides HOST)")
    serve.add_argument("--port", type=int, help="Port to bind (overrides PORT)")

    verify = commands.add_parser("verify", help="Submit a transaction to /verify")
    verify.add_argument(
        "transaction",
        help="File holding the transaction as base64 text or raw bytes ('-' for stdin)",
    )
    verify.add_argument(
        "--settle",
        action="store_true",
        help="Settle the transaction right after it is verified",
    )

    settle = commands.add_parser("settle", help="Settle a verified transaction by id")
    settle.add_argument("id")

    status = commands.add_parser("status", help="Show the cached status of a transaction")
    status.add_argument("id")

    commands.add_parser("supported", help="Show facilitator capabilities")
    commands.add_parser("health", help="Check facilitator health")
    return parser


def _read_transaction(path: str) -> bytes:
    if path == "-":
        data = sys.stdin.buffer.read()
    else:
        with open(path, "rb") as handle:
            data = handle.read()
    try:
        return base64.b64decode(data.strip(), validate=True)
    except (binascii.Error, ValueError):
        return data


def _print(payload: Dict[str, Any]) -> None:
    print(json.dumps(payload, indent=2, sort_keys=True))


def _serve(config: FacilitatorConfig, log_level: str) -> int:
    app = create_app(create_facilitator(config=config))
    uvicorn.run(app, host=config.host, port=config.port, log_level=log_level.lower())
    return 0


def _settle(client: FacilitatorClient, entry_id: str) -> int:
    settlement = client.settle(entry_id)
    _print(settlement.raw)
    if settlement.success:
        logging.info("Payment settled. Transaction signature: %s", settlement.signature)
        return 0
    logging.error("Settlement of %s ended as %s", entry_id, settlement.status)
    return 1


def _verify(client: FacilitatorClient, args: argparse.Namespace) -> int:
    verified = client.verify(_read_transaction(args.transaction))
    logging.info("Facilitator verified transaction %s", verified.get("id"))
    _print(verified)
    return _settle(client, verified["id"]) if args.settle else 0


def _query(client: FacilitatorClient, args: argparse.Namespace) -> int:
    if args.command == "status":
        _print(client.status(args.id))
    elif args.command == "supported":
        _print(client.supported())
    else:
        _print(client.health())
    return 0


def _explicit_parameters(args: argparse.Namespace) -> Dict[str, Any]:
    if args.command != "serve":
        return {}
    pairs = (("host", args.host), ("port", args.port))
    return {name: value for name, value in pairs if value is not None}


def run_cli(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=getattr(logging, args.log_level), format=LOG_FORMAT)

    try:
        config = load_facilitator_config(
            env_file=args.env_file,
            overrides=dict(args.settings),
            **_explicit_parameters(args),
        )
    except (ConfigError, ValueError) as exc:
        logging.error("Invalid configuration: %s", exc)
        return 1

    if args.command == "serve":
        return _serve(config, args.log_level)

    client = create_facilitator_client(
        base_url=args.facilitator_url,
        config=config,
        session=requests.Session(),
    )
    try:
        if args.command == "verify":
            return _verify(client, args)
        if args.command == "settle":
            return _settle(client, args.id)
        return _query(client, args)
    except FacilitatorHTTPError as exc:
        logging.error("%s", exc)
        return 1
    except (OSError, requests.RequestException, RuntimeError) as exc:
        logging.error("Request failed: %s", exc)
        return 1


def main() -> None:
    sys.exit(run_cli())


if __name__ == "__main__":
    main()
