"""
Helpers for constructing x402 transactions and the JSON bodies sent to the facilitator.
"""

from __future__ import annotations

import base64
import hashlib
from typing import Any, Dict, Iterable, Optional, Union

from .policy import (
    SYSTEM_PROGRAM_ID,
    TOKEN_PROGRAM_ID,
    PaymentPolicy,
    SYSTEM_TRANSFER_TAG,
    TOKEN_TRANSFER_CHECKED_TAG,
    TOKEN_TRANSFER_TAG,
    SYSTEM_TRANSFER_LAYOUT,
    TOKEN_TRANSFER_LAYOUT,
    TOKEN_TRANSFER_CHECKED_LAYOUT,
)
from .transaction import (
    AccountMeta,
    Instruction,
    ParsedTransaction,
    compile_transaction,
    encode_transaction,
)

__all__ = [
    "anchor_discriminator",
    "build_payment_transaction",
    "build_verify_request",
    "gated_call",
    "payment_for_policy",
    "system_transfer",
    "token_transfer",
    "token_transfer_checked",
]


def system_transfer(source: str, destination: str, lamports: int) -> Instruction:
    """System program ``Transfer`` of ``lamports`` from ``source`` to ``destination``."""
    return Instruction(
        program_id=SYSTEM_PROGRAM_ID,
        accounts=(
            AccountMeta(source, is_signer=True, is_writable=True),
            AccountMeta(destination, is_signer=False, is_writable=True),
        ),
        data=SYSTEM_TRANSFER_LAYOUT.pack(SYSTEM_TRANSFER_TAG, lamports),
    )


def token_transfer(
    source: str,
    destination: str,
    owner: str,
    amount: int,
    *,
    program_id: str = TOKEN_PROGRAM_ID,
) -> Instruction:
    return Instruction(
        program_id=program_id,
        accounts=(
            AccountMeta(source, is_writable=True),
            AccountMeta(destination, is_writable=True),
            AccountMeta(owner, is_signer=True),
        ),
        data=TOKEN_TRANSFER_LAYOUT.pack(TOKEN_TRANSFER_TAG, amount),
    )


def token_transfer_checked(
    source: str,
    mint: str,
    destination: str,
    owner: str,
    amount: int,
    decimals: int,
    *,
    program_id: str = TOKEN_PROGRAM_ID,
) -> Instruction:
    return Instruction(
        program_id=program_id,
        accounts=(
            AccountMeta(source, is_writable=True),
            AccountMeta(mint),
            AccountMeta(destination, is_writable=True),
            AccountMeta(owner, is_signer=True),
        ),
        data=TOKEN_TRANSFER_CHECKED_LAYOUT.pack(TOKEN_TRANSFER_CHECKED_TAG, amount, decimals),
    )


def anchor_discriminator(method: str) -> bytes:
    """First eight bytes of ``sha256("global:<method>")``, as Anchor programs expect."""
    return hashlib.sha256(f"global:{method}".encode("utf-8")).digest()[:8]


def gated_call(
    program_id: str,
    method: str,
    accounts: Iterable[AccountMeta] = (),
    args: bytes = b"",
) -> Instruction:
    """Instruction invoking ``method`` on an Anchor program that gates it behind a payment."""
    return Instruction(
        program_id=program_id,
        accounts=tuple(accounts),
        data=anchor_discriminator(method) + args,
    )


def payment_for_policy(
    policy: PaymentPolicy,
    payer: str,
    *,
    amount: Optional[int] = None,
    source: Optional[str] = None,
    decimals: Optional[int] = None,
) -> Instruction:
    """
    Build the transfer that satisfies ``policy``.

    Native policies pay from ``payer`` directly. Token policies need the
    payer's token account as ``source``; ``decimals`` selects
    ``TransferChecked`` over a plain ``Transfer``.
    """
    amount = policy.price if amount is None else amount
    asset = policy.asset
    if asset is None or policy.is_native:
        return system_transfer(payer, policy.recipient, amount)
    if source is None:
        raise ValueError("Token payments need the payer's token account as source")
    if decimals is None:
        return token_transfer(source, policy.recipient, payer, amount)
    return token_transfer_checked(
        source, asset, policy.recipient, payer, amount, decimals
    )


def build_payment_transaction(
    payer: str,
    payment: Instruction,
    gated: Instruction,
    recent_blockhash: str,
    *,
    fee: Optional[Instruction] = None,
) -> ParsedTransaction:
    """Compile ``[fee?, payment, gated]`` into an unsigned transaction paid for by ``payer``."""
    instructions = [payment, gated] if fee is None else [fee, payment, gated]
    return compile_transaction(instructions, payer, recent_blockhash)


def build_verify_request(
    transaction: Union[ParsedTransaction, bytes],
    *,
    network: Optional[str] = None,
) -> Dict[str, Any]:
    """Build the body submitted to ``/verify``."""
    raw = (
        encode_transaction(transaction)
        if isinstance(transaction, ParsedTransaction)
        else bytes(transaction)
    )
    body: Dict[str, Any] = {"transaction": base64.b64encode(raw).decode("ascii")}
    if network is not None:
        body["network"] = network
    return body
