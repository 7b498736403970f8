"""
Minimal script that pays for a gated call through a running facilitator.

It builds [transfer, gated call], submits it to ``/verify`` and then
``/settle``. Signing is left to the wallet: pass ``--transaction-file`` with
a signed transaction, or let the script build an unsigned one for a dry run
with ``--verify-only``.
"""

from __future__ import annotations

import argparse
import logging
import sys

from x402_facilitator import (
    ConfigError,
    PaymentPolicy,
    build_payment_transaction,
    create_facilitator_client,
    gated_call,
    load_facilitator_config,
    payment_for_policy,
)
from x402_facilitator.core import FacilitatorHTTPError


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Send an x402 payment through a facilitator")
    parser.add_argument(
        "--env-file",
        default=".env",
        help="Path to the .env file containing facilitator settings",
    )
    parser.add_argument(
        "--facilitator-url",
        help="Facilitator base URL (default: http://HOST:PORT from config)",
    )
    parser.add_argument("--payer", help="Base58 payer address")
    parser.add_argument("--recipient", help="Base58 address receiving the payment")
    parser.add_argument("--program", help="Program id of the gated program")
    parser.add_argument("--method", default="premium_compute", help="Gated method name")
    parser.add_argument("--amount", type=int, default=1_000_000, help="Lamports to pay")
    parser.add_argument(
        "--blockhash",
        default="11111111111111111111111111111111",
        help="Recent blockhash (the facilitator refreshes it before broadcast)",
    )
    parser.add_argument(
        "--transaction-file",
        help="Binary file with an already signed transaction; skips building one",
    )
    parser.add_argument(
        "--verify-only",
        action="store_true",
        help="Stop after facilitator verification (no on-chain settlement)",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        help="Python logging level (default: INFO)",
    )
    return parser.parse_args()


def main() -> int:
    args = parse_args()
    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(message)s",
    )

    try:
        config = load_facilitator_config(env_file=args.env_file)
    except ConfigError as exc:
        logging.error("Invalid configuration: %s", exc)
        return 1
    client = create_facilitator_client(base_url=args.facilitator_url, config=config)

    if args.transaction_file:
        with open(args.transaction_file, "rb") as handle:
            transaction = handle.read()
    else:
        if not (args.payer and args.recipient and args.program):
            logging.error("--payer, --recipient and --program are required to build a transaction")
            return 1
        policy = PaymentPolicy(price=args.amount, recipient=args.recipient)
        transaction = build_payment_transaction(
            args.payer,
            payment_for_policy(policy, args.payer),
            gated_call(args.program, args.method),
            args.blockhash,
        )

    try:
        settlement = client.send(transaction, verify_only=args.verify_only)
    except FacilitatorHTTPError as exc:
        logging.error("Facilitator refused the payment: %s", exc)
        return 1

    if args.verify_only:
        logging.info("Verification succeeded as %s; skipping settlement.", settlement.id)
        return 0

    if settlement.success:
        logging.info("Payment settled. Transaction signature: %s", settlement.signature)
        return 0

    logging.error("Settlement failed: %s", settlement.raw)
    return 1


if __name__ == "__main__":
    sys.exit(main())
