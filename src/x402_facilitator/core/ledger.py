"""
Ledger collaborator: the narrow slice of the chain the facilitator needs.

:class:`SolanaRpcLedger` talks JSON-RPC 2.0 to a Solana node over a shared
:class:`requests.Session`. Anything else that implements :class:`Ledger`
(a test double, another transport) can be handed to the facilitator instead.
"""

from __future__ import annotations

import base64
import itertools
import json
import logging
import threading
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol

import requests

from .errors import BroadcastTimeout, LedgerError

__all__ = [
    "BroadcastOptions",
    "Ledger",
    "SolanaRpcLedger",
]


@dataclass(frozen=True)
class BroadcastOptions:
    skip_preflight: bool = False
    commitment: str = "confirmed"
    timeout: float = 30.0


class Ledger(Protocol):
    def get_balance(self, address: str) -> int:
        ...

    def get_latest_blockhash(self) -> str:
        ...

    def send_transaction(self, raw: bytes, options: BroadcastOptions) -> str:
        ...


class SolanaRpcLedger:
    """
    Minimal Solana JSON-RPC client built on :mod:`requests`.

    Transport timeouts on ``sendTransaction`` raise :class:`BroadcastTimeout`;
    every other failure raises :class:`LedgerError` with a classified reason.
    """

    def __init__(
        self,
        rpc_url: str,
        *,
        session: Optional[requests.Session] = None,
        commitment: str = "confirmed",
        timeout: float = 30.0,
    ) -> None:
        self.rpc_url = rpc_url
        self.session = session or requests.Session()
        self.commitment = commitment
        self.timeout = timeout
        self._ids = itertools.count(1)
        self._ids_lock = threading.Lock()

    def _next_id(self) -> int:
        with self._ids_lock:
            return next(self._ids)

    def _rpc(
        self,
        method: str,
        params: Optional[List[Any]] = None,
        *,
        timeout: Optional[float] = None,
    ) -> Any:
        payload = {
            "jsonrpc": "2.0",
            "id": self._next_id(),
            "method": method,
            "params": params or [],
        }
        try:
            response = self.session.post(
                self.rpc_url,
                json=payload,
                timeout=self.timeout if timeout is None else timeout,
            )
        except requests.Timeout:
            raise
        except requests.RequestException as exc:
            raise LedgerError(
                f"RPC {method} to {self.rpc_url} failed: {exc}", "ledger_unavailable"
            ) from exc

        if response.status_code >= 400:
            raise LedgerError(
                f"RPC node responded with {response.status_code}: {response.text}",
                "ledger_unavailable",
            )
        try:
            data: Dict[str, Any] = response.json()
        except json.JSONDecodeError as exc:
            raise LedgerError(
                f"Failed to parse JSON from RPC node at {self.rpc_url}: {response.text}",
                "ledger_unavailable",
            ) from exc

        error = data.get("error")
        if error:
            message = error.get("message", "Unknown RPC error")
            logs = (error.get("data") or {}).get("logs") or []
            detail = "; ".join(str(line) for line in logs)
            raise LedgerError(f"{message} {detail}".strip())
        return data.get("result")

    def get_balance(self, address: str) -> int:
        try:
            result = self._rpc("getBalance", [address, {"commitment": self.commitment}])
        except requests.Timeout as exc:
            raise LedgerError(f"getBalance timed out: {exc}", "ledger_unavailable") from exc
        return int(result["value"])

    def get_latest_blockhash(self) -> str:
        try:
            result = self._rpc("getLatestBlockhash", [{"commitment": self.commitment}])
        except requests.Timeout as exc:
            raise LedgerError(
                f"getLatestBlockhash timed out: {exc}", "ledger_unavailable"
            ) from exc
        return result["value"]["blockhash"]

    def send_transaction(self, raw: bytes, options: BroadcastOptions) -> str:
        params = [
            base64.b64encode(raw).decode("ascii"),
            {
                "encoding": "base64",
                "skipPreflight": options.skip_preflight,
                "preflightCommitment": options.commitment,
            },
        ]
        try:
            signature = self._rpc("sendTransaction", params, timeout=options.timeout)
        except requests.Timeout as exc:
            raise BroadcastTimeout(
                f"sendTransaction did not answer within {options.timeout}s"
            ) from exc
        logging.info("[x402] Transaction sent: %s", signature)
        return str(signature)

    def close(self) -> None:
        self.session.close()
