"""
Error taxonomy for the x402 facilitator.

Every error names its category so callers can tell "resubmit the
transaction" (structural, policy) from "poll for the existing outcome"
(lifecycle) from "the broadcast failed for an on-chain reason"
(infrastructure).
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional

__all__ = [
    "AlreadyRejected",
    "AlreadySettled",
    "AlreadySettling",
    "BroadcastTimeout",
    "Conflict",
    "ErrorCategory",
    "Expired",
    "InvalidFacilitatorFee",
    "InvalidPaymentAmount",
    "InvalidPaymentAsset",
    "InvalidPaymentRecipient",
    "InvalidTransition",
    "LedgerError",
    "MalformedTransaction",
    "MissingInstruction",
    "NetworkMismatch",
    "NotFound",
    "PolicyViolation",
    "SettlementFailed",
    "UndecodableTransfer",
    "WrongProgram",
    "X402Error",
    "classify_ledger_error",
]


class ErrorCategory(str, Enum):
    STRUCTURAL = "structural"
    POLICY = "policy"
    LIFECYCLE = "lifecycle"
    INFRASTRUCTURE = "infrastructure"


class X402Error(Exception):
    """Base class for every error surfaced by the facilitator."""

    code = "X402_ERROR"
    category = ErrorCategory.STRUCTURAL
    http_status = 400
    retryable = False

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_response(self) -> Dict[str, Any]:
        return {
            "error": self.message,
            "code": self.code,
            "category": self.category.value,
            "retryable": self.retryable,
        }


# Structural and policy errors are raised by the validator, so they share
# one base that gated handlers can catch.


class PolicyViolation(X402Error):
    code = "POLICY_VIOLATION"
    category = ErrorCategory.POLICY


class MalformedTransaction(PolicyViolation):
    code = "MALFORMED_TRANSACTION"
    category = ErrorCategory.STRUCTURAL


class MissingInstruction(PolicyViolation):
    code = "MISSING_INSTRUCTION"
    category = ErrorCategory.STRUCTURAL


class WrongProgram(PolicyViolation):
    code = "WRONG_PROGRAM"
    category = ErrorCategory.STRUCTURAL


class UndecodableTransfer(PolicyViolation):
    code = "UNDECODABLE_TRANSFER"
    category = ErrorCategory.STRUCTURAL


class NetworkMismatch(X402Error):
    code = "NETWORK_MISMATCH"
    category = ErrorCategory.STRUCTURAL


class InvalidPaymentAmount(PolicyViolation):
    code = "INVALID_PAYMENT_AMOUNT"

    def __init__(self, amount: int, price: int) -> None:
        super().__init__(f"Payment of {amount} is below the required {price}")
        self.amount = amount
        self.price = price


class InvalidPaymentRecipient(PolicyViolation):
    code = "INVALID_PAYMENT_RECIPIENT"

    def __init__(self, actual: str, expected: str) -> None:
        super().__init__(f"Payment recipient {actual} is not {expected}")
        self.actual = actual
        self.expected = expected


class InvalidPaymentAsset(PolicyViolation):
    code = "INVALID_PAYMENT_ASSET"

    def __init__(self, actual: str, expected: str) -> None:
        super().__init__(f"Payment mint {actual} is not {expected}")
        self.actual = actual
        self.expected = expected


class InvalidFacilitatorFee(PolicyViolation):
    code = "INVALID_FACILITATOR_FEE"


class NotFound(X402Error):
    code = "NOT_FOUND"
    category = ErrorCategory.LIFECYCLE
    http_status = 404

    def __init__(self, entry_id: str) -> None:
        super().__init__(f"Transaction {entry_id} not found in cache")
        self.entry_id = entry_id


class AlreadySettling(X402Error):
    code = "ALREADY_SETTLING"
    category = ErrorCategory.LIFECYCLE
    http_status = 409
    retryable = True

    def __init__(self, entry_id: str) -> None:
        super().__init__("already settling")
        self.entry_id = entry_id


class AlreadySettled(X402Error):
    code = "ALREADY_SETTLED"
    category = ErrorCategory.LIFECYCLE
    http_status = 409

    def __init__(self, entry_id: str, signature: Optional[str] = None) -> None:
        super().__init__("already settled")
        self.entry_id = entry_id
        self.signature = signature


class AlreadyRejected(X402Error):
    code = "ALREADY_REJECTED"
    category = ErrorCategory.LIFECYCLE
    http_status = 409

    def __init__(self, entry_id: str, reason: Optional[str] = None) -> None:
        super().__init__("already rejected")
        self.entry_id = entry_id
        self.reason = reason


class Expired(X402Error):
    code = "EXPIRED"
    category = ErrorCategory.LIFECYCLE

    def __init__(self, entry_id: str) -> None:
        super().__init__(f"Transaction {entry_id} expired before settlement")
        self.entry_id = entry_id


# Failures after which a fresh transaction submitted through /verify may land.
_REVERIFY_REASONS = frozenset(("stale_blockhash", "ledger_unavailable", "timeout"))


class SettlementFailed(X402Error):
    """
    The ledger refused the broadcast; ``reason`` classifies why.

    The entry is already ``rejected`` when this is raised, so settling the
    same id again can only conflict. The response carries
    ``"action": "reverify"`` when resubmitting a new transaction may succeed.
    """

    code = "SETTLEMENT_FAILED"
    category = ErrorCategory.INFRASTRUCTURE

    def __init__(self, message: str, reason: str) -> None:
        super().__init__(message)
        self.reason = reason

    @property
    def action(self) -> Optional[str]:
        return "reverify" if self.reason in _REVERIFY_REASONS else None

    def to_response(self) -> Dict[str, Any]:
        body = super().to_response()
        body["reason"] = self.reason
        if self.action is not None:
            body["action"] = self.action
        return body


class BroadcastTimeout(SettlementFailed):
    code = "BROADCAST_TIMEOUT"

    def __init__(self, message: str = "Broadcast timed out") -> None:
        super().__init__(message, "timeout")


# Cache-level errors. The state machine translates these before they reach a
# caller.


class Conflict(Exception):
    def __init__(self, entry_id: str, expected: Any, actual: Any) -> None:
        super().__init__(
            f"Entry {entry_id} is {actual}, expected {expected}"
        )
        self.entry_id = entry_id
        self.expected = expected
        self.actual = actual


class InvalidTransition(ValueError):
    pass


class LedgerError(Exception):
    """Raised by ledger implementations when a call fails."""

    def __init__(self, message: str, reason: Optional[str] = None) -> None:
        super().__init__(message)
        self.reason = reason or classify_ledger_error(message)


_LEDGER_REASONS = (
    ("blockhash not found", "stale_blockhash"),
    ("block height exceeded", "stale_blockhash"),
    ("insufficient funds", "insufficient_funds"),
    ("insufficient lamports", "insufficient_funds"),
    ("insufficientfundsforfee", "insufficient_funds"),
    ("already been processed", "duplicate"),
    ("alreadyprocessed", "duplicate"),
)


def classify_ledger_error(message: str) -> str:
    lowered = message.lower()
    for needle, reason in _LEDGER_REASONS:
        if needle in lowered:
            return reason
    return "rejected"
