"""
The facilitator's verify -> settle state machine.

``verify`` is structural: it proves the transaction decodes and opens with a
recognized transfer, then caches it. ``settle`` broadcasts a cached
transaction at most once. Policy enforcement proper belongs to the gated
program, which re-runs the payment check when the transaction executes.
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from .cache import CacheEntry, SettlementCache, SettlementState
from .config import FacilitatorConfig
from .errors import (
    AlreadyRejected,
    AlreadySettled,
    AlreadySettling,
    Conflict,
    Expired,
    LedgerError,
    MissingInstruction,
    NetworkMismatch,
    SettlementFailed,
    WrongProgram,
    X402Error,
)
from .ledger import Ledger
from .policy import TRANSFER_PROGRAMS, PaymentPolicy, decode_transfer, validate_payment
from .transaction import decode_transaction, encode_transaction

__all__ = [
    "Capabilities",
    "Facilitator",
    "SettleResult",
    "StatusSnapshot",
    "VerifyResult",
]


def _millis(seconds: float) -> int:
    return int(round(seconds * 1000))


@dataclass(frozen=True)
class Capabilities:
    version: str
    scheme: str
    network: str
    fee_payer: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "scheme": self.scheme,
            "network": self.network,
            "feePayer": self.fee_payer,
        }


@dataclass(frozen=True)
class VerifyResult:
    id: str
    status: str
    timestamp: int

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "status": self.status, "timestamp": self.timestamp}


@dataclass(frozen=True)
class SettleResult:
    id: str
    signature: str
    status: str
    timestamp: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "signature": self.signature,
            "status": self.status,
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True)
class StatusSnapshot:
    id: str
    status: str
    timestamp: int
    age: int
    signature: Optional[str] = None
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "id": self.id,
            "status": self.status,
            "timestamp": self.timestamp,
            "age": self.age,
        }
        if self.signature is not None:
            body["signature"] = self.signature
        if self.reason is not None:
            body["reason"] = self.reason
        return body


class Facilitator:
    """
    Owns the settlement cache and drives every state change in it.

    ``clock`` returns unix seconds and ``id_factory`` returns fresh entry ids;
    both exist so tests can pin time and identifiers.
    """

    def __init__(
        self,
        ledger: Ledger,
        config: Optional[FacilitatorConfig] = None,
        *,
        cache: Optional[SettlementCache] = None,
        clock: Callable[[], float] = time.time,
        id_factory: Optional[Callable[[], str]] = None,
    ) -> None:
        self.config = config or FacilitatorConfig()
        self.ledger = ledger
        self.cache = cache or SettlementCache(
            ttl_seconds=self.config.cache_ttl_seconds,
            settled_grace_seconds=self.config.settled_grace_seconds,
        )
        self._clock = clock
        self._new_id = id_factory or (lambda: uuid.uuid4().hex)
        self._started_at = clock()
        self._capabilities = Capabilities(
            version=self.config.version,
            scheme=self.config.scheme,
            network=self.config.network,
            fee_payer=self.config.fee_payer,
        )
        if self.config.kora_rpc_enabled:
            logging.warning(
                "[x402] KORA_RPC_ENABLED is set, but gasless signing is not available; "
                "transactions are broadcast with the client's signatures"
            )

    def capabilities(self) -> Capabilities:
        return self._capabilities

    def health(self) -> Dict[str, Any]:
        return {"status": "ok", "uptime": self._clock() - self._started_at}

    def verify(
        self,
        raw: bytes,
        *,
        network: Optional[str] = None,
        policy: Optional[PaymentPolicy] = None,
    ) -> VerifyResult:
        """
        Structurally check ``raw`` and cache it as ``verified``.

        ``policy`` is for in-process callers that know which policy the gated
        call enforces; with it the full payment check runs on the first
        instruction.
        """
        if network is not None and network != self.config.network:
            raise NetworkMismatch(
                f"Facilitator serves {self.config.network}, transaction targets {network}"
            )

        tx = decode_transaction(raw)
        if len(tx.instructions) < 2:
            raise MissingInstruction(
                "Invalid x402 transaction: must have at least 2 instructions (payment + gated)"
            )
        payment = tx.instructions[0]
        if payment.program_id not in TRANSFER_PROGRAMS:
            raise WrongProgram(
                "First instruction must be a System or SPL Token transfer for x402 payment"
            )
        if policy is not None:
            validate_payment(tx, 0, policy)
        else:
            decode_transfer(payment)

        now = self._clock()
        entry = CacheEntry(
            id=self._new_id(),
            transaction=tx,
            raw=bytes(raw),
            state=SettlementState.VERIFIED,
            created_at=now,
            updated_at=now,
        )
        self.cache.put(entry)
        logging.info("[x402] Payment verified: %s", entry.id)
        return VerifyResult(entry.id, entry.state.value, _millis(now))

    def settle(self, entry_id: str) -> SettleResult:
        """
        Broadcast the transaction cached under ``entry_id``.

        Only the caller that moves the entry from ``verified`` to ``settling``
        broadcasts; everyone else gets the lifecycle error for the entry's
        current state. A failed broadcast leaves the entry ``rejected``.
        """
        now = self._clock()
        entry = self.cache.get(entry_id)
        if entry.state is SettlementState.VERIFIED and self.cache.is_expired(entry, now):
            try:
                self.cache.transition(
                    entry_id,
                    SettlementState.VERIFIED,
                    SettlementState.EXPIRED,
                    now=now,
                    reason="expired",
                )
            except Conflict:
                pass
            else:
                logging.info("[x402] Entry %s expired before settlement", entry_id)
                raise Expired(entry_id)

        try:
            entry = self.cache.transition(
                entry_id, SettlementState.VERIFIED, SettlementState.SETTLING, now=now
            )
        except Conflict:
            raise self._lifecycle_error(self.cache.get(entry_id)) from None

        logging.info("[x402] Settling %s", entry_id)
        try:
            signature = self._broadcast(entry)
        except SettlementFailed as exc:
            self._reject(entry_id, exc.reason, exc.code)
            raise
        except LedgerError as exc:
            failure = SettlementFailed(f"Transaction broadcast failed: {exc}", exc.reason)
            self._reject(entry_id, failure.reason, failure.code)
            raise failure from exc
        except Exception as exc:
            self._reject(entry_id, f"internal error: {exc}", "INTERNAL_ERROR")
            raise

        settled = self.cache.transition(
            entry_id,
            SettlementState.SETTLING,
            SettlementState.SETTLED,
            now=self._clock(),
            signature=signature,
        )
        logging.info("[x402] Payment settled: %s", signature)
        return SettleResult(
            id=entry_id,
            signature=signature,
            status=settled.state.value,
            timestamp=_millis(settled.updated_at),
        )

    def status(self, entry_id: str) -> StatusSnapshot:
        entry = self.cache.get(entry_id)
        now = self._clock()
        state = entry.state
        if state is SettlementState.VERIFIED and self.cache.is_expired(entry, now):
            state = SettlementState.EXPIRED
        return StatusSnapshot(
            id=entry.id,
            status=state.value,
            timestamp=_millis(entry.created_at),
            age=_millis(entry.age(now)),
            signature=entry.signature,
            reason=entry.reason,
        )

    def sweep(self, now: Optional[float] = None) -> int:
        evicted = self.cache.sweep_expired(self._clock() if now is None else now)
        if evicted:
            logging.info("[x402] Swept %d expired cache entries", len(evicted))
        return len(evicted)

    def _broadcast(self, entry: CacheEntry) -> str:
        raw = entry.raw
        tx = entry.transaction
        if self.config.refresh_blockhash and tx.is_signed:
            # A new blockhash would invalidate the client's signatures.
            logging.warning(
                "[x402] Broadcasting signed transaction %s with its own blockhash", entry.id
            )
        elif self.config.refresh_blockhash:
            blockhash = self.ledger.get_latest_blockhash()
            if blockhash != tx.recent_blockhash:
                raw = encode_transaction(tx.with_blockhash(blockhash))
        return self.ledger.send_transaction(raw, self.config.broadcast_options())

    def _reject(self, entry_id: str, reason: str, code: str) -> None:
        self.cache.transition(
            entry_id,
            SettlementState.SETTLING,
            SettlementState.REJECTED,
            now=self._clock(),
            reason=reason,
            error_code=code,
        )
        logging.error("[x402] Settlement of %s rejected: %s", entry_id, reason)

    @staticmethod
    def _lifecycle_error(entry: CacheEntry) -> X402Error:
        if entry.state is SettlementState.SETTLED:
            return AlreadySettled(entry.id, entry.signature)
        if entry.state is SettlementState.REJECTED:
            return AlreadyRejected(entry.id, entry.reason)
        if entry.state is SettlementState.EXPIRED:
            return Expired(entry.id)
        return AlreadySettling(entry.id)
