"""Payment validator: policy matching against the instruction before a gated call."""

import struct

import pytest

from conftest import (
    BLOCKHASH,
    FEE_RECIPIENT,
    GATED_PROGRAM,
    MINT,
    OTHER_RECIPIENT,
    PAYER,
    PAYER_TOKEN_ACCOUNT,
    PRICE,
    RECIPIENT,
    address,
    paid_transaction,
)
from x402_facilitator.core.errors import (
    InvalidFacilitatorFee,
    InvalidPaymentAmount,
    InvalidPaymentAsset,
    InvalidPaymentRecipient,
    MissingInstruction,
    PolicyViolation,
    UndecodableTransfer,
    WrongProgram,
)
from x402_facilitator.core.payloads import (
    build_payment_transaction,
    gated_call,
    payment_for_policy,
    system_transfer,
    token_transfer,
    token_transfer_checked,
)
from x402_facilitator.core.policy import (
    SYSTEM_PROGRAM_ID,
    FacilitatorFee,
    PaymentPolicy,
    decode_transfer,
    validate_gated_call,
    validate_payment,
)
from x402_facilitator.core.transaction import Instruction, compile_transaction

NATIVE_POLICY = PaymentPolicy(price=PRICE, recipient=RECIPIENT)
TOKEN_POLICY = PaymentPolicy(price=PRICE, recipient=RECIPIENT, asset=MINT)
MEMO_PROGRAM = address(20)


def _with_payment(payment, *, fee=None):
    return build_payment_transaction(
        PAYER, payment, gated_call(GATED_PROGRAM, "premium_compute"), BLOCKHASH, fee=fee
    )


def test_exact_payment_is_accepted():
    transfer = validate_payment(paid_transaction(), 0, NATIVE_POLICY)
    assert transfer.amount == PRICE
    assert transfer.destination == RECIPIENT
    assert transfer.owner == PAYER


def test_underpayment_is_rejected():
    with pytest.raises(InvalidPaymentAmount) as excinfo:
        validate_payment(paid_transaction(amount=PRICE - 1), 0, NATIVE_POLICY)
    assert excinfo.value.amount == 999_999
    assert excinfo.value.price == PRICE


def test_wrong_recipient_is_rejected():
    with pytest.raises(InvalidPaymentRecipient):
        validate_payment(paid_transaction(recipient=OTHER_RECIPIENT), 0, NATIVE_POLICY)


def test_single_instruction_is_missing_a_payment():
    tx = compile_transaction([gated_call(GATED_PROGRAM, "premium_compute")], PAYER, BLOCKHASH)
    with pytest.raises(MissingInstruction):
        validate_payment(tx, 0, NATIVE_POLICY)
    with pytest.raises(MissingInstruction):
        validate_gated_call(tx, 0, NATIVE_POLICY)


@pytest.mark.parametrize("amount, accepted", [(PRICE - 1, False), (PRICE, True), (PRICE + 1, True)])
def test_amount_boundary(amount, accepted):
    tx = paid_transaction(amount=amount)
    if accepted:
        assert validate_gated_call(tx, 1, NATIVE_POLICY).amount == amount
    else:
        with pytest.raises(InvalidPaymentAmount):
            validate_gated_call(tx, 1, NATIVE_POLICY)


def test_zero_price_accepts_any_transfer_to_recipient():
    policy = PaymentPolicy(price=0, recipient=RECIPIENT)
    assert validate_payment(paid_transaction(amount=0), 0, policy).amount == 0


@pytest.mark.parametrize("index", [-1, 2, 7])
def test_index_out_of_range(index):
    with pytest.raises(MissingInstruction):
        validate_payment(paid_transaction(), index, NATIVE_POLICY)


def test_gated_call_as_candidate_is_wrong_program():
    with pytest.raises(WrongProgram):
        validate_payment(paid_transaction(), 1, NATIVE_POLICY)


def test_non_transfer_system_instruction_is_undecodable():
    allocate = Instruction(
        SYSTEM_PROGRAM_ID,
        system_transfer(PAYER, RECIPIENT, 1).accounts,
        struct.pack("<IQ", 8, PRICE),
    )
    with pytest.raises(UndecodableTransfer):
        validate_payment(_with_payment(allocate), 0, NATIVE_POLICY)


def test_short_system_payload_is_undecodable():
    truncated = Instruction(
        SYSTEM_PROGRAM_ID, system_transfer(PAYER, RECIPIENT, 1).accounts, b"\x02\x00\x00\x00"
    )
    with pytest.raises(UndecodableTransfer):
        validate_payment(_with_payment(truncated), 0, NATIVE_POLICY)


def test_only_the_instruction_before_the_gated_call_counts():
    tx = compile_transaction(
        [
            system_transfer(PAYER, RECIPIENT, PRICE),
            Instruction(MEMO_PROGRAM, (), b"hello"),
            gated_call(GATED_PROGRAM, "premium_compute"),
        ],
        PAYER,
        BLOCKHASH,
    )
    with pytest.raises(WrongProgram):
        validate_gated_call(tx, 2, NATIVE_POLICY)


def test_token_transfer_checked_with_matching_mint():
    payment = token_transfer_checked(PAYER_TOKEN_ACCOUNT, MINT, RECIPIENT, PAYER, PRICE, 6)
    transfer = validate_gated_call(_with_payment(payment), 1, TOKEN_POLICY)
    assert transfer.mint == MINT
    assert transfer.kind == "token_transfer_checked"


def test_token_transfer_checked_with_other_mint():
    payment = token_transfer_checked(
        PAYER_TOKEN_ACCOUNT, OTHER_RECIPIENT, RECIPIENT, PAYER, PRICE, 6
    )
    with pytest.raises(InvalidPaymentAsset):
        validate_gated_call(_with_payment(payment), 1, TOKEN_POLICY)


def test_plain_token_transfer_is_accepted():
    payment = token_transfer(PAYER_TOKEN_ACCOUNT, RECIPIENT, PAYER, PRICE)
    assert validate_gated_call(_with_payment(payment), 1, TOKEN_POLICY).amount == PRICE


def test_native_policy_refuses_token_transfer():
    payment = token_transfer(PAYER_TOKEN_ACCOUNT, RECIPIENT, PAYER, PRICE)
    with pytest.raises(WrongProgram):
        validate_gated_call(_with_payment(payment), 1, NATIVE_POLICY)


def test_token_policy_refuses_native_transfer():
    with pytest.raises(WrongProgram):
        validate_gated_call(paid_transaction(), 1, TOKEN_POLICY)


def test_mandatory_fee_must_be_present():
    policy = PaymentPolicy(
        price=PRICE,
        recipient=RECIPIENT,
        facilitator_fee=FacilitatorFee(FEE_RECIPIENT, 5_000, mandatory=True),
    )
    with pytest.raises(InvalidFacilitatorFee):
        validate_gated_call(paid_transaction(), 1, policy)


def test_optional_fee_may_be_absent():
    policy = PaymentPolicy(
        price=PRICE, recipient=RECIPIENT, facilitator_fee=FacilitatorFee(FEE_RECIPIENT, 5_000)
    )
    assert validate_gated_call(paid_transaction(), 1, policy).amount == PRICE


def test_fee_preceding_the_payment_is_checked():
    policy = PaymentPolicy(
        price=PRICE,
        recipient=RECIPIENT,
        facilitator_fee=FacilitatorFee(FEE_RECIPIENT, 5_000, mandatory=True),
    )
    paid = _with_payment(
        system_transfer(PAYER, RECIPIENT, PRICE),
        fee=system_transfer(PAYER, FEE_RECIPIENT, 5_000),
    )
    assert validate_gated_call(paid, 2, policy).destination == RECIPIENT

    short = _with_payment(
        system_transfer(PAYER, RECIPIENT, PRICE),
        fee=system_transfer(PAYER, FEE_RECIPIENT, 4_999),
    )
    with pytest.raises(InvalidFacilitatorFee):
        validate_gated_call(short, 2, policy)


def test_fee_following_the_payment_is_found():
    policy = PaymentPolicy(
        price=PRICE,
        recipient=RECIPIENT,
        facilitator_fee=FacilitatorFee(FEE_RECIPIENT, 5_000, mandatory=True),
    )
    paid = compile_transaction(
        [
            system_transfer(PAYER, RECIPIENT, PRICE),
            system_transfer(PAYER, FEE_RECIPIENT, 5_000),
            gated_call(GATED_PROGRAM, "premium_compute"),
        ],
        PAYER,
        BLOCKHASH,
    )
    assert validate_payment(paid, 0, policy).amount == PRICE


def test_payment_for_token_policy_carries_the_asset():
    payment = payment_for_policy(TOKEN_POLICY, PAYER, source=PAYER_TOKEN_ACCOUNT, decimals=6)
    transfer = decode_transfer(payment)
    assert transfer.kind == "token_transfer_checked"
    assert transfer.mint == MINT
    assert validate_gated_call(_with_payment(payment), 1, TOKEN_POLICY) == transfer


def test_payment_for_native_policy_is_a_system_transfer():
    payment = payment_for_policy(NATIVE_POLICY, PAYER)
    assert payment.program_id == SYSTEM_PROGRAM_ID
    assert decode_transfer(payment).amount == PRICE
    with pytest.raises(ValueError):
        payment_for_policy(TOKEN_POLICY, PAYER)


def test_policy_violations_share_a_base_class():
    with pytest.raises(PolicyViolation):
        validate_payment(paid_transaction(amount=1), 0, NATIVE_POLICY)


def test_decode_transfer_rejects_other_programs():
    with pytest.raises(WrongProgram):
        decode_transfer(gated_call(GATED_PROGRAM, "premium_compute"))


def test_policy_construction_is_validated():
    with pytest.raises(ValueError):
        PaymentPolicy(price=-1, recipient=RECIPIENT)
    with pytest.raises(ValueError):
        PaymentPolicy(price=1, recipient="")
    with pytest.raises(ValueError):
        PaymentPolicy(price=1, recipient="not-an-address")
    with pytest.raises(ValueError):
        FacilitatorFee(FEE_RECIPIENT, -5)
