"""Transaction codec: decoding, encoding and compiling the Solana wire format."""

import base64
from dataclasses import replace

import pytest
from solders.message import MessageV0
from solders.transaction import VersionedTransaction

from conftest import (
    BLOCKHASH,
    FRESH_BLOCKHASH,
    GATED_PROGRAM,
    PAYER,
    RECIPIENT,
    paid_transaction,
)
from x402_facilitator.core.errors import MalformedTransaction
from x402_facilitator.core.payloads import gated_call, system_transfer
from x402_facilitator.core.policy import SYSTEM_PROGRAM_ID
from x402_facilitator.core.transaction import (
    AccountMeta,
    Instruction,
    compile_transaction,
    decode_base64_transaction,
    decode_transaction,
    encode_transaction,
)

# One signature slot: 1 length byte + 64 signature bytes.
MESSAGE_OFFSET = 65


def test_round_trip_legacy_transaction():
    tx = paid_transaction()
    assert decode_transaction(encode_transaction(tx)) == tx


def test_round_trip_v0_transaction():
    tx = replace(paid_transaction(), version=0)
    raw = encode_transaction(tx)
    assert raw[MESSAGE_OFFSET] == 0x80
    assert decode_transaction(raw) == tx


def test_round_trip_keeps_signatures():
    tx = compile_transaction(
        [system_transfer(PAYER, RECIPIENT, 5)],
        PAYER,
        BLOCKHASH,
        signatures=[bytes(range(64))],
    )
    decoded = decode_transaction(encode_transaction(tx))
    assert decoded.signatures == (bytes(range(64)),)
    assert decoded.is_signed


def test_compile_orders_keys_and_derives_header():
    tx = paid_transaction()
    assert tx.account_keys == (PAYER, RECIPIENT, SYSTEM_PROGRAM_ID, GATED_PROGRAM)
    assert tx.header.num_required_signatures == 1
    assert tx.header.num_readonly_signed == 0
    assert tx.header.num_readonly_unsigned == 2
    assert tx.fee_payer == PAYER
    assert not tx.is_signed


def test_decoded_accounts_carry_header_flags():
    tx = decode_transaction(encode_transaction(paid_transaction()))
    payment = tx.instructions[0]
    assert payment.program_id == SYSTEM_PROGRAM_ID
    assert payment.accounts == (
        AccountMeta(PAYER, is_signer=True, is_writable=True),
        AccountMeta(RECIPIENT, is_signer=False, is_writable=True),
    )
    assert tx.instructions[1].program_id == GATED_PROGRAM


def test_compile_merges_flags_for_repeated_keys():
    readonly_use = Instruction(GATED_PROGRAM, (AccountMeta(RECIPIENT),), b"")
    tx = compile_transaction(
        [readonly_use, system_transfer(PAYER, RECIPIENT, 1)], PAYER, BLOCKHASH
    )
    assert tx.instructions[0].accounts[0].is_writable


def test_compile_rejects_wrong_signature_count():
    with pytest.raises(ValueError):
        compile_transaction(
            [system_transfer(PAYER, RECIPIENT, 1)], PAYER, BLOCKHASH, signatures=[]
        )


def test_with_blockhash_only_changes_the_freshness_token():
    tx = paid_transaction()
    refreshed = tx.with_blockhash(FRESH_BLOCKHASH)
    assert refreshed.recent_blockhash == FRESH_BLOCKHASH
    assert refreshed.instructions == tx.instructions
    assert refreshed.account_keys == tx.account_keys


def test_decode_is_deterministic():
    raw = encode_transaction(paid_transaction())
    assert decode_transaction(raw) == decode_transaction(raw)


def test_empty_buffer_is_malformed():
    with pytest.raises(MalformedTransaction):
        decode_transaction(b"")


def test_truncated_buffer_is_malformed():
    raw = encode_transaction(paid_transaction())
    with pytest.raises(MalformedTransaction, match="could not be decoded"):
        decode_transaction(raw[:-1])


def test_trailing_bytes_are_malformed():
    raw = encode_transaction(paid_transaction())
    with pytest.raises(MalformedTransaction):
        decode_transaction(raw + b"\x00")


def test_unsupported_version_is_malformed():
    raw = encode_transaction(paid_transaction())
    versioned = raw[:MESSAGE_OFFSET] + b"\x81" + raw[MESSAGE_OFFSET:]
    with pytest.raises(MalformedTransaction):
        decode_transaction(versioned)


def test_v0_address_table_lookups_are_rejected():
    raw = encode_transaction(replace(paid_transaction(), version=0))
    # One lookup: table address, one writable index, no read-only indices.
    lookup = b"\x01" + bytes(32) + b"\x01\x00" + b"\x00"
    with pytest.raises(MalformedTransaction, match="lookups"):
        decode_transaction(raw[:-1] + lookup)


def test_program_index_outside_key_table_is_malformed():
    tx = paid_transaction()
    raw = bytearray(encode_transaction(tx))
    first_program_index = MESSAGE_OFFSET + 3 + 1 + 32 * len(tx.account_keys) + 32 + 1
    raw[first_program_index] = 0xFF
    with pytest.raises(MalformedTransaction, match="outside"):
        decode_transaction(bytes(raw))


def test_signature_count_must_match_header():
    raw = bytearray(encode_transaction(paid_transaction()))
    raw[MESSAGE_OFFSET] = 2  # header now claims two signers
    with pytest.raises(MalformedTransaction, match="signatures"):
        decode_transaction(bytes(raw))


def test_duplicate_account_keys_are_malformed():
    tx = paid_transaction()
    duplicated = replace(
        tx,
        account_keys=tx.account_keys + (RECIPIENT,),
        header=replace(tx.header, num_readonly_unsigned=3),
    )
    raw = encode_transaction(duplicated)
    with pytest.raises(MalformedTransaction, match="duplicates"):
        decode_transaction(raw)


@pytest.mark.parametrize("raw", [b"\x80\x00", b"\xff\xff\xff\x01", b"\x00\x01"])
def test_garbage_bytes_are_malformed(raw):
    with pytest.raises(MalformedTransaction):
        decode_transaction(raw)


def test_decoder_output_matches_solders_parse():
    raw = encode_transaction(paid_transaction())
    wire = VersionedTransaction.from_bytes(raw)
    decoded = decode_transaction(raw)
    assert decoded.account_keys == tuple(str(key) for key in wire.message.account_keys)
    assert decoded.recent_blockhash == str(wire.message.recent_blockhash)
    assert [ix.data for ix in decoded.instructions] == [
        bytes(ix.data) for ix in wire.message.instructions
    ]


def test_encoded_v0_transaction_parses_as_message_v0():
    raw = encode_transaction(replace(paid_transaction(), version=0))
    wire = VersionedTransaction.from_bytes(raw)
    assert isinstance(wire.message, MessageV0)
    assert bytes(wire) == raw


def test_decode_base64_transaction():
    tx = paid_transaction()
    payload = base64.b64encode(encode_transaction(tx)).decode("ascii")
    assert decode_base64_transaction(payload) == tx


def test_decode_base64_rejects_garbage():
    with pytest.raises(MalformedTransaction, match="base64"):
        decode_base64_transaction("not base64!!")


def test_encode_rejects_accounts_missing_from_table():
    tx = paid_transaction()
    foreign = gated_call(RECIPIENT, "premium_compute", [AccountMeta(BLOCKHASH)])
    broken = replace(tx, instructions=tx.instructions + (foreign,))
    with pytest.raises(ValueError, match="missing from the key table"):
        encode_transaction(broken)
