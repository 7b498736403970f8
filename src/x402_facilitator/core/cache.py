"""
In-process settlement cache.

Entries are immutable snapshots. :meth:`SettlementCache.transition` is the
only way to change an entry's state, and it only succeeds when the entry is
still in the state the caller expects, which is what gives settlement its
exactly-once behaviour.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterator, List, Optional, Tuple

from .errors import Conflict, InvalidTransition, NotFound
from .transaction import ParsedTransaction

__all__ = [
    "CacheEntry",
    "SettlementCache",
    "SettlementState",
    "TERMINAL_STATES",
]


class SettlementState(str, Enum):
    VERIFIED = "verified"
    SETTLING = "settling"
    SETTLED = "settled"
    REJECTED = "rejected"
    EXPIRED = "expired"


TERMINAL_STATES: FrozenSet[SettlementState] = frozenset(
    (SettlementState.SETTLED, SettlementState.REJECTED, SettlementState.EXPIRED)
)

_TRANSITIONS: FrozenSet[Tuple[SettlementState, SettlementState]] = frozenset(
    (
        (SettlementState.VERIFIED, SettlementState.SETTLING),
        (SettlementState.VERIFIED, SettlementState.SETTLED),
        (SettlementState.VERIFIED, SettlementState.REJECTED),
        (SettlementState.VERIFIED, SettlementState.EXPIRED),
        (SettlementState.SETTLING, SettlementState.SETTLED),
        (SettlementState.SETTLING, SettlementState.REJECTED),
    )
)


@dataclass(frozen=True)
class CacheEntry:
    id: str
    transaction: ParsedTransaction
    raw: bytes
    state: SettlementState
    created_at: float
    updated_at: float
    signature: Optional[str] = None
    reason: Optional[str] = None
    error_code: Optional[str] = None

    def age(self, now: float) -> float:
        return max(0.0, now - self.created_at)

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES


class SettlementCache:
    """
    Keyed store of verified transactions with TTL-based expiry.

    Writers for the same id are serialized by one of ``stripes`` locks;
    readers never lock and always see a whole entry.
    """

    def __init__(
        self,
        *,
        ttl_seconds: float = 300.0,
        settled_grace_seconds: float = 600.0,
        stripes: int = 16,
    ) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        if settled_grace_seconds < 0:
            raise ValueError("settled_grace_seconds must not be negative")
        self.ttl_seconds = ttl_seconds
        self.settled_grace_seconds = settled_grace_seconds
        self._entries: Dict[str, CacheEntry] = {}
        self._locks = [threading.Lock() for _ in range(max(1, stripes))]

    def _lock_for(self, entry_id: str) -> threading.Lock:
        return self._locks[hash(entry_id) % len(self._locks)]

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, entry_id: object) -> bool:
        return entry_id in self._entries

    def __iter__(self) -> Iterator[CacheEntry]:
        return iter(list(self._entries.values()))

    def put(self, entry: CacheEntry) -> None:
        with self._lock_for(entry.id):
            if entry.id in self._entries:
                raise Conflict(entry.id, None, self._entries[entry.id].state)
            self._entries[entry.id] = entry

    def get(self, entry_id: str) -> CacheEntry:
        try:
            return self._entries[entry_id]
        except KeyError:
            raise NotFound(entry_id) from None

    def transition(
        self,
        entry_id: str,
        from_state: SettlementState,
        to_state: SettlementState,
        *,
        now: Optional[float] = None,
        **changes: Any,
    ) -> CacheEntry:
        """
        Move ``entry_id`` from ``from_state`` to ``to_state``.

        Raises :class:`Conflict` when the entry is no longer in ``from_state``
        and :class:`InvalidTransition` for a pair the lifecycle does not allow.
        ``changes`` are applied to the entry in the same step.
        """
        if (from_state, to_state) not in _TRANSITIONS:
            raise InvalidTransition(f"{from_state.value} -> {to_state.value} is not allowed")
        with self._lock_for(entry_id):
            current = self.get(entry_id)
            if current.state is not from_state:
                raise Conflict(entry_id, from_state, current.state)
            updated = replace(
                current,
                state=to_state,
                updated_at=time.time() if now is None else now,
                **changes,
            )
            self._entries[entry_id] = updated
            return updated

    def is_expired(self, entry: CacheEntry, now: float) -> bool:
        if entry.state is SettlementState.SETTLING:
            return False
        limit = self.ttl_seconds
        if entry.state is SettlementState.SETTLED:
            limit += self.settled_grace_seconds
        return entry.age(now) > limit

    def evict(self, entry_id: str) -> bool:
        with self._lock_for(entry_id):
            return self._entries.pop(entry_id, None) is not None

    def sweep_expired(self, now: Optional[float] = None) -> List[str]:
        """Evict every entry past its TTL and return the evicted ids."""
        now = time.time() if now is None else now
        evicted: List[str] = []
        for entry in list(self._entries.values()):
            if not self.is_expired(entry, now):
                continue
            with self._lock_for(entry.id):
                current = self._entries.get(entry.id)
                if current is not None and self.is_expired(current, now):
                    del self._entries[entry.id]
                    evicted.append(entry.id)
        return evicted
