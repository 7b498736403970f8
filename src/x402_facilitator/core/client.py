"""
HTTP client helpers for talking to a running x402 facilitator.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

import requests

from .payloads import build_verify_request
from .transaction import ParsedTransaction

__all__ = [
    "FacilitatorClient",
    "FacilitatorHTTPError",
    "SettlementResult",
    "settle_payment",
    "verify_payment",
]


class FacilitatorHTTPError(RuntimeError):
    """The facilitator answered with an error status."""

    def __init__(self, status_code: int, body: Any, url: str) -> None:
        message = body.get("error") if isinstance(body, dict) else body
        super().__init__(f"Facilitator responded with {status_code} at {url}: {message}")
        self.status_code = status_code
        self.body = body
        self.url = url

    @property
    def code(self) -> Optional[str]:
        if isinstance(self.body, dict):
            return self.body.get("code")
        return None


def _parse(response: requests.Response, url: str) -> Dict[str, Any]:
    try:
        payload = response.json()
    except json.JSONDecodeError as exc:
        if response.status_code >= 400:
            raise FacilitatorHTTPError(response.status_code, response.text, url) from exc
        raise RuntimeError(
            f"Failed to parse JSON from facilitator at {url}: {response.text}"
        ) from exc
    if response.status_code >= 400:
        raise FacilitatorHTTPError(response.status_code, payload, url)
    return payload


def _post_json(
    session: requests.Session, url: str, body: Dict[str, Any], timeout: float
) -> Dict[str, Any]:
    return _parse(session.post(url, json=body, timeout=timeout), url)


def _get_json(session: requests.Session, url: str, timeout: float) -> Dict[str, Any]:
    return _parse(session.get(url, timeout=timeout), url)


def verify_payment(
    session: requests.Session,
    base_url: str,
    body: Dict[str, Any],
    *,
    timeout: float = 30,
) -> Dict[str, Any]:
    verify_url = f"{base_url}/verify"
    logging.info("Submitting transaction for verification to %s", verify_url)
    return _post_json(session, verify_url, body, timeout)


@dataclass(frozen=True)
class SettlementResult:
    success: bool
    id: Optional[str]
    signature: Optional[str]
    status: Optional[str]
    raw: Dict[str, Any]

    @classmethod
    def from_response(cls, payload: Dict[str, Any]) -> "SettlementResult":
        return cls(
            success=payload.get("status") == "settled",
            id=payload.get("id"),
            signature=payload.get("signature"),
            status=payload.get("status"),
            raw=payload,
        )


def settle_payment(
    session: requests.Session,
    base_url: str,
    entry_id: str,
    *,
    timeout: float = 30,
) -> SettlementResult:
    settle_url = f"{base_url}/settle"
    logging.info("Requesting settlement of %s from %s", entry_id, settle_url)
    payload = _post_json(session, settle_url, {"id": entry_id}, timeout)
    return SettlementResult.from_response(payload)


class FacilitatorClient:
    """
    Thin convenience wrapper around the facilitator endpoints.
    """

    def __init__(
        self,
        base_url: str,
        *,
        session: Optional[requests.Session] = None,
        timeout: float = 30,
        network: Optional[str] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()
        self.timeout = timeout
        self.network = network

    def verify(self, transaction: Union[ParsedTransaction, bytes]) -> Dict[str, Any]:
        body = build_verify_request(transaction, network=self.network)
        return verify_payment(self.session, self.base_url, body, timeout=self.timeout)

    def settle(self, entry_id: str) -> SettlementResult:
        return settle_payment(self.session, self.base_url, entry_id, timeout=self.timeout)

    def status(self, entry_id: str) -> Dict[str, Any]:
        return _get_json(self.session, f"{self.base_url}/status/{entry_id}", self.timeout)

    def supported(self) -> Dict[str, Any]:
        return _get_json(self.session, f"{self.base_url}/supported", self.timeout)

    def health(self) -> Dict[str, Any]:
        return _get_json(self.session, f"{self.base_url}/health", self.timeout)

    def send(
        self,
        transaction: Union[ParsedTransaction, bytes],
        *,
        verify_only: bool = False,
    ) -> SettlementResult:
        """Verify ``transaction`` and, unless ``verify_only``, settle it."""
        verify_response = self.verify(transaction)
        entry_id = verify_response.get("id")
        if verify_response.get("status") != "verified" or not entry_id:
            raise RuntimeError(f"Payment rejected: {verify_response}")

        if verify_only:
            return SettlementResult(
                success=True,
                id=entry_id,
                signature=None,
                status="verified",
                raw={"verifyOnly": True, "response": verify_response},
            )

        return self.settle(entry_id)
