"""
Core primitives that implement the x402 payment-validation protocol.
"""

from .cache import CacheEntry, SettlementCache, SettlementState
from .client import (
    FacilitatorClient,
    FacilitatorHTTPError,
    SettlementResult,
    settle_payment,
    verify_payment,
)
from .config import (
    ConfigError,
    FacilitatorConfig,
    FacilitatorParameters,
    load_facilitator_config,
)
from .environment import FacilitatorEnvironment, build_environment, load_env_file, read_env_file
from .errors import (
    AlreadyRejected,
    AlreadySettled,
    AlreadySettling,
    BroadcastTimeout,
    ErrorCategory,
    Expired,
    InvalidFacilitatorFee,
    InvalidPaymentAmount,
    InvalidPaymentAsset,
    InvalidPaymentRecipient,
    LedgerError,
    MalformedTransaction,
    MissingInstruction,
    NetworkMismatch,
    NotFound,
    PolicyViolation,
    SettlementFailed,
    UndecodableTransfer,
    WrongProgram,
    X402Error,
)
from .facilitator import Capabilities, Facilitator, SettleResult, StatusSnapshot, VerifyResult
from .gate import GatedContext, x402
from .ledger import BroadcastOptions, Ledger, SolanaRpcLedger
from .payloads import (
    anchor_discriminator,
    build_payment_transaction,
    build_verify_request,
    gated_call,
    payment_for_policy,
    system_transfer,
    token_transfer,
    token_transfer_checked,
)
from .policy import (
    SYSTEM_PROGRAM_ID,
    TOKEN_2022_PROGRAM_ID,
    TOKEN_PROGRAM_ID,
    FacilitatorFee,
    PaymentPolicy,
    Transfer,
    decode_transfer,
    validate_gated_call,
    validate_payment,
)
from .transaction import (
    AccountMeta,
    Instruction,
    MessageHeader,
    ParsedTransaction,
    compile_transaction,
    decode_base64_transaction,
    decode_transaction,
    encode_transaction,
)

__all__ = [
    "AccountMeta",
    "AlreadyRejected",
    "AlreadySettled",
    "AlreadySettling",
    "BroadcastOptions",
    "BroadcastTimeout",
    "CacheEntry",
    "Capabilities",
    "ConfigError",
    "ErrorCategory",
    "Expired",
    "Facilitator",
    "FacilitatorClient",
    "FacilitatorConfig",
    "FacilitatorEnvironment",
    "FacilitatorFee",
    "FacilitatorHTTPError",
    "FacilitatorParameters",
    "GatedContext",
    "Instruction",
    "InvalidFacilitatorFee",
    "InvalidPaymentAmount",
    "InvalidPaymentAsset",
    "InvalidPaymentRecipient",
    "Ledger",
    "LedgerError",
    "MalformedTransaction",
    "MessageHeader",
    "MissingInstruction",
    "NetworkMismatch",
    "NotFound",
    "ParsedTransaction",
    "PaymentPolicy",
    "PolicyViolation",
    "SYSTEM_PROGRAM_ID",
    "SettleResult",
    "SettlementCache",
    "SettlementFailed",
    "SettlementResult",
    "SettlementState",
    "SolanaRpcLedger",
    "StatusSnapshot",
    "TOKEN_2022_PROGRAM_ID",
    "TOKEN_PROGRAM_ID",
    "Transfer",
    "UndecodableTransfer",
    "VerifyResult",
    "WrongProgram",
    "X402Error",
    "anchor_discriminator",
    "build_environment",
    "build_payment_transaction",
    "build_verify_request",
    "compile_transaction",
    "decode_base64_transaction",
    "decode_transaction",
    "decode_transfer",
    "encode_transaction",
    "gated_call",
    "load_env_file",
    "read_env_file",
    "load_facilitator_config",
    "payment_for_policy",
    "settle_payment",
    "system_transfer",
    "token_transfer",
    "token_transfer_checked",
    "validate_gated_call",
    "validate_payment",
    "verify_payment",
    "x402",
]
