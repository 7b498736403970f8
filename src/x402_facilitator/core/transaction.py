"""
Instruction model and the Solana transaction wire codec.

Wire parsing and serialization go through ``solders``. ``decode_transaction``
maps the parsed message onto the plain :class:`ParsedTransaction` model and
adds the structural checks the parser leaves out (duplicate keys, header
consistency, account indices, address-table lookups). It never looks at what
the instructions mean. ``encode_transaction`` is its exact inverse, and
``compile_transaction`` builds a legacy transaction from a list of
instructions the same way wallets do.
"""

from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass, replace
from typing import Dict, Iterable, Optional, Sequence, Tuple, Union

import base58
from solders.hash import Hash
from solders.instruction import CompiledInstruction
from solders.message import Message, MessageV0
from solders.message import MessageHeader as SoldersMessageHeader
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction import VersionedTransaction

from .errors import MalformedTransaction

__all__ = [
    "AccountMeta",
    "Instruction",
    "MessageHeader",
    "ParsedTransaction",
    "compile_transaction",
    "decode_base64_transaction",
    "decode_pubkey",
    "decode_transaction",
    "encode_pubkey",
    "encode_transaction",
]

SIGNATURE_LENGTH = 64
PUBKEY_LENGTH = 32

Version = Union[str, int]


def encode_pubkey(raw: bytes) -> str:
    return base58.b58encode(raw).decode("ascii")


def decode_pubkey(value: str) -> bytes:
    """Decode a base58 address, requiring exactly 32 bytes."""
    try:
        raw = base58.b58decode(value)
    except ValueError as exc:
        raise ValueError(f"'{value}' is not valid base58") from exc
    if len(raw) != PUBKEY_LENGTH:
        raise ValueError(f"'{value}' does not decode to a 32-byte address")
    return raw


@dataclass(frozen=True)
class AccountMeta:
    pubkey: str
    is_signer: bool = False
    is_writable: bool = False


@dataclass(frozen=True)
class Instruction:
    program_id: str
    accounts: Tuple[AccountMeta, ...] = ()
    data: bytes = b""

    def account(self, position: int) -> Optional[str]:
        if 0 <= position < len(self.accounts):
            return self.accounts[position].pubkey
        return None


@dataclass(frozen=True)
class MessageHeader:
    num_required_signatures: int
    num_readonly_signed: int
    num_readonly_unsigned: int

    def is_signer(self, index: int) -> bool:
        return index < self.num_required_signatures

    def is_writable(self, index: int, key_count: int) -> bool:
        if index < self.num_required_signatures:
            return index < self.num_required_signatures - self.num_readonly_signed
        return index < key_count - self.num_readonly_unsigned


@dataclass(frozen=True)
class ParsedTransaction:
    signatures: Tuple[bytes, ...]
    header: MessageHeader
    account_keys: Tuple[str, ...]
    recent_blockhash: str
    instructions: Tuple[Instruction, ...]
    version: Version = "legacy"

    @property
    def fee_payer(self) -> Optional[str]:
        return self.account_keys[0] if self.account_keys else None

    @property
    def signature(self) -> Optional[str]:
        """The first signature in base58, which is the ledger's transaction id."""
        if not self.signatures:
            return None
        return encode_pubkey(self.signatures[0])

    @property
    def is_signed(self) -> bool:
        return any(any(sig) for sig in self.signatures)

    def with_blockhash(self, recent_blockhash: str) -> "ParsedTransaction":
        return replace(self, recent_blockhash=recent_blockhash)


def _check_header(header: MessageHeader, key_count: int) -> None:
    required = header.num_required_signatures
    if required > key_count:
        raise MalformedTransaction(
            f"Header requires {required} signers but only {key_count} accounts are listed"
        )
    if required and header.num_readonly_signed >= required:
        raise MalformedTransaction("Fee payer cannot be a read-only signer")
    if header.num_readonly_unsigned > key_count - required:
        raise MalformedTransaction("Header marks more read-only accounts than exist")


def _parse_wire(raw: bytes) -> VersionedTransaction:
    try:
        wire = VersionedTransaction.from_bytes(raw)
    except ValueError as exc:
        raise MalformedTransaction(f"Transaction could not be decoded: {exc}") from exc
    canonical = bytes(wire)
    if canonical != raw:
        if raw.startswith(canonical):
            raise MalformedTransaction(
                f"{len(raw) - len(canonical)} trailing bytes after message"
            )
        raise MalformedTransaction("Transaction is not canonically encoded")
    return wire


def decode_transaction(raw: bytes) -> ParsedTransaction:
    """
    Parse a serialized legacy or v0 transaction.

    Raises :class:`MalformedTransaction` for truncated buffers, trailing bytes,
    an inconsistent account table, or an unsupported message version.
    """
    if not raw:
        raise MalformedTransaction("Empty transaction")
    wire = _parse_wire(bytes(raw))
    message = wire.message

    version: Version = "legacy"
    if isinstance(message, MessageV0):
        version = 0
        if message.address_table_lookups:
            raise MalformedTransaction(
                "Address table lookups cannot be resolved without the ledger"
            )

    header = MessageHeader(
        num_required_signatures=message.header.num_required_signatures,
        num_readonly_signed=message.header.num_readonly_signed_accounts,
        num_readonly_unsigned=message.header.num_readonly_unsigned_accounts,
    )
    account_keys = tuple(str(key) for key in message.account_keys)
    key_count = len(account_keys)
    if len(set(account_keys)) != key_count:
        raise MalformedTransaction("Account key table contains duplicates")
    _check_header(header, key_count)
    signatures = tuple(bytes(signature) for signature in wire.signatures)
    if len(signatures) != header.num_required_signatures:
        raise MalformedTransaction(
            f"Transaction carries {len(signatures)} signatures but the header "
            f"requires {header.num_required_signatures}"
        )

    metas = tuple(
        AccountMeta(
            pubkey=key,
            is_signer=header.is_signer(index),
            is_writable=header.is_writable(index, key_count),
        )
        for index, key in enumerate(account_keys)
    )

    def _resolve(index: int) -> AccountMeta:
        if index >= key_count:
            raise MalformedTransaction(
                f"Account index {index} is outside the {key_count}-entry key table"
            )
        return metas[index]

    instructions = tuple(
        Instruction(
            program_id=_resolve(compiled.program_id_index).pubkey,
            accounts=tuple(_resolve(index) for index in bytes(compiled.accounts)),
            data=bytes(compiled.data),
        )
        for compiled in message.instructions
    )

    return ParsedTransaction(
        signatures=signatures,
        header=header,
        account_keys=account_keys,
        recent_blockhash=str(message.recent_blockhash),
        instructions=instructions,
        version=version,
    )


def decode_base64_transaction(payload: str) -> ParsedTransaction:
    try:
        raw = base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise MalformedTransaction("Transaction is not valid base64") from exc
    return decode_transaction(raw)


def encode_transaction(tx: ParsedTransaction) -> bytes:
    """Serialize ``tx`` back to wire bytes; the inverse of :func:`decode_transaction`."""
    index_of: Dict[str, int] = {key: i for i, key in enumerate(tx.account_keys)}
    try:
        compiled = [
            CompiledInstruction(
                index_of[instruction.program_id],
                bytes(instruction.data),
                bytes(index_of[meta.pubkey] for meta in instruction.accounts),
            )
            for instruction in tx.instructions
        ]
    except KeyError as exc:
        raise ValueError(f"Account {exc.args[0]} is missing from the key table") from exc

    if any(len(signature) != SIGNATURE_LENGTH for signature in tx.signatures):
        raise ValueError("Signatures must be 64 bytes")

    account_keys = [Pubkey.from_string(key) for key in tx.account_keys]
    blockhash = Hash.from_string(tx.recent_blockhash)
    header = tx.header
    if tx.version == "legacy":
        message = Message.new_with_compiled_instructions(
            header.num_required_signatures,
            header.num_readonly_signed,
            header.num_readonly_unsigned,
            account_keys,
            blockhash,
            compiled,
        )
    elif tx.version == 0:
        message = MessageV0(
            SoldersMessageHeader(
                header.num_required_signatures,
                header.num_readonly_signed,
                header.num_readonly_unsigned,
            ),
            account_keys,
            blockhash,
            compiled,
            [],
        )
    else:
        raise ValueError(f"Unsupported transaction version {tx.version}")

    signatures = [Signature(signature) for signature in tx.signatures]
    return bytes(VersionedTransaction.populate(message, signatures))


def _key_order(flags: Tuple[bool, bool]) -> int:
    is_signer, is_writable = flags
    if is_signer:
        return 0 if is_writable else 1
    return 2 if is_writable else 3


def compile_transaction(
    instructions: Iterable[Instruction],
    fee_payer: str,
    recent_blockhash: str,
    *,
    signatures: Optional[Sequence[bytes]] = None,
) -> ParsedTransaction:
    """
    Build a legacy transaction from ``instructions``.

    Keys are ordered fee payer first, then writable signers, read-only
    signers, writable non-signers and read-only non-signers. Signature slots
    are zero-filled unless ``signatures`` is given.
    """
    instructions = tuple(instructions)
    flags: Dict[str, Tuple[bool, bool]] = {fee_payer: (True, True)}
    for instruction in instructions:
        for meta in instruction.accounts:
            signer, writable = flags.get(meta.pubkey, (False, False))
            flags[meta.pubkey] = (signer or meta.is_signer, writable or meta.is_writable)
        flags.setdefault(instruction.program_id, (False, False))

    ordered = sorted(
        flags,
        key=lambda key: -1 if key == fee_payer else _key_order(flags[key]),
    )
    header = MessageHeader(
        num_required_signatures=sum(1 for key in ordered if flags[key][0]),
        num_readonly_signed=sum(1 for key in ordered if flags[key] == (True, False)),
        num_readonly_unsigned=sum(1 for key in ordered if flags[key] == (False, False)),
    )

    if signatures is None:
        signatures = [bytes(SIGNATURE_LENGTH)] * header.num_required_signatures
    elif len(signatures) != header.num_required_signatures:
        raise ValueError(
            f"Expected {header.num_required_signatures} signatures, got {len(signatures)}"
        )

    resolved = tuple(
        Instruction(
            program_id=instruction.program_id,
            accounts=tuple(
                AccountMeta(meta.pubkey, *flags[meta.pubkey]) for meta in instruction.accounts
            ),
            data=bytes(instruction.data),
        )
        for instruction in instructions
    )
    return ParsedTransaction(
        signatures=tuple(bytes(sig) for sig in signatures),
        header=header,
        account_keys=tuple(ordered),
        recent_blockhash=recent_blockhash,
        instructions=resolved,
    )
