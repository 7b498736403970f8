"""
Payment policies and the validator that checks a transaction against one.

The validator is a pure function of its arguments: it never broadcasts, never
touches the settlement cache and never consults global state, so the
facilitator's optimistic pre-check and the gated program's own check can
share it.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass
from typing import Optional

from .errors import (
    InvalidFacilitatorFee,
    InvalidPaymentAmount,
    InvalidPaymentAsset,
    InvalidPaymentRecipient,
    MissingInstruction,
    UndecodableTransfer,
    WrongProgram,
)
from .transaction import Instruction, ParsedTransaction, decode_pubkey

__all__ = [
    "DEFAULT_PRICE",
    "FacilitatorFee",
    "NATIVE_MINT",
    "PaymentPolicy",
    "SYSTEM_PROGRAM_ID",
    "TOKEN_2022_PROGRAM_ID",
    "TOKEN_PROGRAM_ID",
    "TOKEN_PROGRAMS",
    "TRANSFER_PROGRAMS",
    "Transfer",
    "decode_transfer",
    "validate_gated_call",
    "validate_payment",
]

SYSTEM_PROGRAM_ID = "11111111111111111111111111111111"
TOKEN_PROGRAM_ID = "TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA"
TOKEN_2022_PROGRAM_ID = "TokenzQdBNbLqP5VEhdkAS6EPFLC1PHnBqCXEpPxuEb"

TOKEN_PROGRAMS = frozenset((TOKEN_PROGRAM_ID, TOKEN_2022_PROGRAM_ID))
TRANSFER_PROGRAMS = frozenset((SYSTEM_PROGRAM_ID,)) | TOKEN_PROGRAMS

# The native asset has no mint; the System program address stands in for it.
NATIVE_MINT = SYSTEM_PROGRAM_ID
DEFAULT_PRICE = 1_000_000

SYSTEM_TRANSFER_TAG = 2
TOKEN_TRANSFER_TAG = 3
TOKEN_TRANSFER_CHECKED_TAG = 12

SYSTEM_TRANSFER_LAYOUT = struct.Struct("<IQ")
TOKEN_TRANSFER_LAYOUT = struct.Struct("<BQ")
TOKEN_TRANSFER_CHECKED_LAYOUT = struct.Struct("<BQB")


@dataclass(frozen=True)
class FacilitatorFee:
    recipient: str
    amount: int
    mandatory: bool = False

    def __post_init__(self) -> None:
        if self.amount < 0:
            raise ValueError("Facilitator fee must not be negative")
        decode_pubkey(self.recipient)


@dataclass(frozen=True)
class PaymentPolicy:
    """
    What a gated function charges: ``price`` minor units paid to ``recipient``.

    ``asset`` is the token mint to pay in; ``None`` means the native asset
    moved by the System program. For token payments ``recipient`` is the
    destination token account.
    """

    price: int
    recipient: str
    asset: Optional[str] = None
    facilitator_fee: Optional[FacilitatorFee] = None

    def __post_init__(self) -> None:
        if self.price < 0:
            raise ValueError("Price must not be negative")
        if not self.recipient:
            raise ValueError("Recipient must be provided")
        decode_pubkey(self.recipient)
        if self.asset is not None:
            decode_pubkey(self.asset)

    @property
    def is_native(self) -> bool:
        return self.asset is None or self.asset == NATIVE_MINT

    def accepts_program(self, program_id: str) -> bool:
        if self.is_native:
            return program_id == SYSTEM_PROGRAM_ID
        return program_id in TOKEN_PROGRAMS


@dataclass(frozen=True)
class Transfer:
    kind: str
    source: str
    destination: str
    amount: int
    mint: Optional[str] = None
    owner: Optional[str] = None


def _require_accounts(instruction: Instruction, count: int, kind: str) -> None:
    if len(instruction.accounts) < count:
        raise UndecodableTransfer(
            f"{kind} needs {count} accounts, instruction has {len(instruction.accounts)}"
        )


def decode_transfer(instruction: Instruction) -> Transfer:
    """
    Decode amount and accounts from a System or SPL Token transfer.

    Raises :class:`WrongProgram` for any other program and
    :class:`UndecodableTransfer` when the payload is not a transfer.
    """
    data = instruction.data
    if instruction.program_id == SYSTEM_PROGRAM_ID:
        if len(data) != SYSTEM_TRANSFER_LAYOUT.size:
            raise UndecodableTransfer(
                f"System transfer data must be {SYSTEM_TRANSFER_LAYOUT.size} bytes, got {len(data)}"
            )
        tag, lamports = SYSTEM_TRANSFER_LAYOUT.unpack(data)
        if tag != SYSTEM_TRANSFER_TAG:
            raise UndecodableTransfer(f"System instruction {tag} is not a transfer")
        _require_accounts(instruction, 2, "System transfer")
        return Transfer(
            kind="system_transfer",
            source=instruction.accounts[0].pubkey,
            destination=instruction.accounts[1].pubkey,
            amount=lamports,
            mint=NATIVE_MINT,
            owner=instruction.accounts[0].pubkey,
        )

    if instruction.program_id in TOKEN_PROGRAMS:
        if not data:
            raise UndecodableTransfer("Token instruction has no data")
        tag = data[0]
        if tag == TOKEN_TRANSFER_TAG and len(data) == TOKEN_TRANSFER_LAYOUT.size:
            _, amount = TOKEN_TRANSFER_LAYOUT.unpack(data)
            _require_accounts(instruction, 3, "Token transfer")
            return Transfer(
                kind="token_transfer",
                source=instruction.accounts[0].pubkey,
                destination=instruction.accounts[1].pubkey,
                amount=amount,
                owner=instruction.accounts[2].pubkey,
            )
        if tag == TOKEN_TRANSFER_CHECKED_TAG and len(data) == TOKEN_TRANSFER_CHECKED_LAYOUT.size:
            _, amount, _decimals = TOKEN_TRANSFER_CHECKED_LAYOUT.unpack(data)
            _require_accounts(instruction, 4, "Token transferChecked")
            return Transfer(
                kind="token_transfer_checked",
                source=instruction.accounts[0].pubkey,
                destination=instruction.accounts[2].pubkey,
                amount=amount,
                mint=instruction.accounts[1].pubkey,
                owner=instruction.accounts[3].pubkey,
            )
        raise UndecodableTransfer(
            f"Token instruction {tag} with {len(data)} data bytes is not a transfer"
        )

    raise WrongProgram(f"Program {instruction.program_id} is not a transfer program")


def _find_fee_transfer(
    tx: ParsedTransaction, index: int, policy: PaymentPolicy, fee: FacilitatorFee
) -> Optional[Transfer]:
    for neighbour in (index - 1, index + 1):
        if not 0 <= neighbour < len(tx.instructions):
            continue
        candidate = tx.instructions[neighbour]
        if not policy.accepts_program(candidate.program_id):
            continue
        try:
            transfer = decode_transfer(candidate)
        except UndecodableTransfer:
            continue
        if transfer.destination == fee.recipient:
            return transfer
    return None


def validate_payment(
    tx: ParsedTransaction, instruction_index: int, policy: PaymentPolicy
) -> Transfer:
    """
    Check that the instruction at ``instruction_index`` pays ``policy``.

    Returns the decoded payment on success and raises a
    :class:`~x402_facilitator.core.errors.PolicyViolation` otherwise.
    """
    count = len(tx.instructions)
    if count < 2:
        raise MissingInstruction(
            f"Transaction has {count} instruction(s); a payment and a gated call are required"
        )
    if not 0 <= instruction_index < count:
        raise MissingInstruction(
            f"No instruction at index {instruction_index} (transaction has {count})"
        )

    candidate = tx.instructions[instruction_index]
    if not policy.accepts_program(candidate.program_id):
        expected = "System" if policy.is_native else "SPL Token"
        raise WrongProgram(
            f"Payment instruction targets {candidate.program_id}, expected the {expected} program"
        )

    payment = decode_transfer(candidate)

    if payment.destination != policy.recipient:
        raise InvalidPaymentRecipient(payment.destination, policy.recipient)
    if (
        not policy.is_native
        and payment.mint is not None
        and payment.mint != policy.asset
    ):
        raise InvalidPaymentAsset(payment.mint, policy.asset)
    if payment.amount < policy.price:
        raise InvalidPaymentAmount(payment.amount, policy.price)

    fee = policy.facilitator_fee
    if fee is not None:
        fee_transfer = _find_fee_transfer(tx, instruction_index, policy, fee)
        if fee_transfer is None:
            if fee.mandatory:
                raise InvalidFacilitatorFee(
                    f"No facilitator fee transfer to {fee.recipient} next to the payment"
                )
        elif fee_transfer.amount < fee.amount:
            raise InvalidFacilitatorFee(
                f"Facilitator fee of {fee_transfer.amount} is below the required {fee.amount}"
            )

    return payment


def validate_gated_call(
    tx: ParsedTransaction, gated_index: int, policy: PaymentPolicy
) -> Transfer:
    """
    Validate the payment for the gated call at ``gated_index``.

    Only the instruction immediately preceding the gated call counts as its
    payment; earlier transfers are never searched.
    """
    if gated_index <= 0:
        raise MissingInstruction("Gated call has no preceding payment instruction")
    if gated_index >= len(tx.instructions):
        raise MissingInstruction(
            f"No gated call at index {gated_index} (transaction has {len(tx.instructions)})"
        )
    return validate_payment(tx, gated_index - 1, policy)
