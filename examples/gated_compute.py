"""
A compute service whose handlers are gated behind x402 payments.

Each handler receives the executing transaction and the index of its own
instruction; the decorator checks that the instruction right before it pays
the declared price to the treasury before the body runs.
"""

from __future__ import annotations

import argparse
import logging
import sys

from x402_facilitator import (
    GatedContext,
    PaymentPolicy,
    PolicyViolation,
    build_payment_transaction,
    gated_call,
    payment_for_policy,
    x402,
)

PROGRAM_ID = "9xwTdtTvo4h1tZWakCz3JPSpi4ePht9VHzujtr2Dywb1"
TREASURY = "ESPyXCB93a6CvrAE2btofpgXAswf4oE3NuziBsHVCAZa"


@x402(price=1_000_000, recipient=TREASURY)
def premium_compute(ctx: GatedContext) -> int:
    return 42


@x402(price=5_000_000, recipient=TREASURY)
def standard_compute(ctx: GatedContext) -> int:
    return 100


@x402(price=50_000_000, recipient=TREASURY)
def enterprise_compute(ctx: GatedContext) -> int:
    return 1000


def free_compute() -> int:
    return 0


HANDLERS = {
    "premium_compute": premium_compute,
    "standard_compute": standard_compute,
    "enterprise_compute": enterprise_compute,
}


def run(method: str, payer: str, amount: int, blockhash: str) -> int:
    handler = HANDLERS[method]
    policy: PaymentPolicy = handler.payment_policy
    tx = build_payment_transaction(
        payer,
        payment_for_policy(policy, payer, amount=amount),
        gated_call(PROGRAM_ID, method),
        blockhash,
    )
    return handler(GatedContext(tx, instruction_index=1))


def main() -> int:
    parser = argparse.ArgumentParser(description="Run a gated compute handler locally")
    parser.add_argument("method", choices=sorted(HANDLERS))
    parser.add_argument("--payer", required=True, help="Base58 payer address")
    parser.add_argument("--amount", type=int, required=True, help="Lamports to pay")
    parser.add_argument(
        "--blockhash",
        default="11111111111111111111111111111111",
        help="Recent blockhash to embed (default: all-zero placeholder)",
    )
    args = parser.parse_args()
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")

    try:
        result = run(args.method, args.payer, args.amount, args.blockhash)
    except PolicyViolation as exc:
        logging.error("Payment rejected: %s", exc)
        return 1
    logging.info("%s returned %s", args.method, result)
    return 0


if __name__ == "__main__":
    sys.exit(main())
