"""Shared fixtures: deterministic addresses, a controllable clock and an in-memory ledger."""

import json
import threading
import time

import pytest

from x402_facilitator.core.config import FacilitatorConfig, _PARAMETER_TO_ENV_KEY
from x402_facilitator.core.facilitator import Facilitator
from x402_facilitator.core.ledger import BroadcastOptions
from x402_facilitator.core.payloads import (
    build_payment_transaction,
    gated_call,
    system_transfer,
)
from x402_facilitator.core.transaction import encode_pubkey


def address(seed: int) -> str:
    return encode_pubkey(bytes([seed]) * 32)


PAYER = address(1)
RECIPIENT = address(2)
OTHER_RECIPIENT = address(3)
GATED_PROGRAM = address(4)
FEE_RECIPIENT = address(5)
MINT = address(6)
PAYER_TOKEN_ACCOUNT = address(7)
BLOCKHASH = address(8)
FRESH_BLOCKHASH = address(9)
SIGNATURE = encode_pubkey(bytes([10]) * 64)
PRICE = 1_000_000


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeLedger:
    def __init__(self, *, blockhash=FRESH_BLOCKHASH, signature=SIGNATURE, error=None, delay=0.0):
        self.blockhash = blockhash
        self.signature = signature
        self.error = error
        self.delay = delay
        self.balances = {}
        self.sent = []
        self.blockhash_calls = 0
        self._lock = threading.Lock()

    def get_balance(self, address: str) -> int:
        return self.balances.get(address, 0)

    def get_latest_blockhash(self) -> str:
        self.blockhash_calls += 1
        return self.blockhash

    def send_transaction(self, raw: bytes, options: BroadcastOptions) -> str:
        with self._lock:
            self.sent.append((raw, options))
        if self.delay:
            time.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.signature


class FakeResponse:
    def __init__(self, status_code=200, payload=None, text=None):
        self.status_code = status_code
        self._payload = payload
        self.text = text if text is not None else json.dumps(payload)

    def json(self):
        if self._payload is None:
            raise json.JSONDecodeError("Expecting value", self.text, 0)
        return self._payload


class FakeSession:
    """Records requests and answers them from a queue of responses or exceptions."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []

    def _next(self):
        outcome = self.responses.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    def post(self, url, json=None, timeout=None):
        self.calls.append(("POST", url, json, timeout))
        return self._next()

    def get(self, url, timeout=None):
        self.calls.append(("GET", url, None, timeout))
        return self._next()

    def close(self):
        pass


def paid_transaction(amount=PRICE, recipient=RECIPIENT, blockhash=BLOCKHASH):
    return build_payment_transaction(
        PAYER,
        system_transfer(PAYER, recipient, amount),
        gated_call(GATED_PROGRAM, "premium_compute"),
        blockhash,
    )


@pytest.fixture(autouse=True)
def _isolate_environment(monkeypatch):
    for key in _PARAMETER_TO_ENV_KEY.values():
        monkeypatch.delenv(key, raising=False)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def ledger():
    return FakeLedger()


@pytest.fixture
def config():
    return FacilitatorConfig(cache_ttl_seconds=60, settled_grace_seconds=120)


@pytest.fixture
def facilitator(ledger, config, clock):
    ids = iter(f"entry-{n}" for n in range(1, 10_000))
    return Facilitator(ledger, config, clock=clock, id_factory=lambda: next(ids))
