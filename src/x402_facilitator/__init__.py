"""
Public facade for the x402 facilitator package.

The module re-exports the most useful pieces for integrators so they can
``from x402_facilitator import ...`` without navigating the package.
"""

from .api import create_facilitator, create_facilitator_app, create_facilitator_client
from .core import (
    AccountMeta,
    BroadcastOptions,
    ConfigError,
    Facilitator,
    FacilitatorClient,
    FacilitatorConfig,
    FacilitatorFee,
    FacilitatorParameters,
    GatedContext,
    Instruction,
    ParsedTransaction,
    PaymentPolicy,
    PolicyViolation,
    SettlementCache,
    SettlementState,
    SolanaRpcLedger,
    X402Error,
    build_payment_transaction,
    build_verify_request,
    compile_transaction,
    decode_transaction,
    encode_transaction,
    gated_call,
    load_facilitator_config,
    payment_for_policy,
    system_transfer,
    validate_gated_call,
    validate_payment,
    x402,
)
from .server import create_app

__all__ = (
    "AccountMeta",
    "BroadcastOptions",
    "ConfigError",
    "Facilitator",
    "FacilitatorClient",
    "FacilitatorConfig",
    "FacilitatorFee",
    "FacilitatorParameters",
    "GatedContext",
    "Instruction",
    "ParsedTransaction",
    "PaymentPolicy",
    "PolicyViolation",
    "SettlementCache",
    "SettlementState",
    "SolanaRpcLedger",
    "X402Error",
    "build_payment_transaction",
    "build_verify_request",
    "compile_transaction",
    "create_app",
    "create_facilitator",
    "create_facilitator_app",
    "create_facilitator_client",
    "decode_transaction",
    "encode_transaction",
    "gated_call",
    "load_facilitator_config",
    "payment_for_policy",
    "system_transfer",
    "validate_gated_call",
    "validate_payment",
    "x402",
)
