import base64

import pytest
from fastapi.testclient import TestClient

from conftest import SIGNATURE, FakeLedger, paid_transaction
from x402_facilitator.core.errors import BroadcastTimeout, LedgerError
from x402_facilitator.core.facilitator import Facilitator
from x402_facilitator.core.transaction import encode_transaction
from x402_facilitator.server import create_app


def _body(tx=None, **extra):
    raw = encode_transaction(tx if tx is not None else paid_transaction())
    return {"transaction": base64.b64encode(raw).decode("ascii"), **extra}


@pytest.fixture
def client(facilitator):
    with TestClient(create_app(facilitator, sweep=False)) as test_client:
        yield test_client


def test_verify_then_settle(client):
    verified = client.post("/verify", json=_body())
    assert verified.status_code == 201
    assert verified.json()["status"] == "verified"
    entry_id = verified.json()["id"]

    settled = client.post("/settle", json={"id": entry_id})
    assert settled.status_code == 200
    assert settled.json()["signature"] == SIGNATURE
    assert settled.json()["status"] == "settled"

    again = client.post("/settle", json={"id": entry_id})
    assert again.status_code == 409
    assert again.json()["code"] == "ALREADY_SETTLED"
    assert again.json()["category"] == "lifecycle"


def test_verify_rejects_bad_base64(client):
    response = client.post("/verify", json={"transaction": "%%%"})
    assert response.status_code == 400
    assert response.json() == {
        "error": "Invalid transaction format",
        "code": "MALFORMED_TRANSACTION",
        "category": "structural",
        "retryable": False,
    }


def test_verify_rejects_missing_field(client):
    response = client.post("/verify", json={})
    assert response.status_code == 400
    body = response.json()
    assert body["code"] == "VALIDATION_ERROR"
    assert body["details"][0]["field"] == "body.transaction"


def test_verify_rejects_wrong_network(client):
    response = client.post("/verify", json=_body(network="solana-mainnet"))
    assert response.status_code == 400
    assert response.json()["code"] == "NETWORK_MISMATCH"


def test_settle_unknown_id(client):
    response = client.post("/settle", json={"id": "nope"})
    assert response.status_code == 400
    assert response.json()["code"] == "NOT_FOUND"
    assert response.json()["error"] == "Transaction nope not found in cache"


def test_settle_failure_is_a_bad_request(clock, config):
    ledger = FakeLedger(error=LedgerError("Blockhash not found"))
    app = create_app(Facilitator(ledger, config, clock=clock), sweep=False)
    client = TestClient(app)
    entry_id = client.post("/verify", json=_body()).json()["id"]

    response = client.post("/settle", json={"id": entry_id})
    assert response.status_code == 400
    assert response.json()["reason"] == "stale_blockhash"
    assert response.json()["retryable"] is False
    assert response.json()["action"] == "reverify"

    again = client.post("/settle", json={"id": entry_id})
    assert again.status_code == 409
    assert again.json()["code"] == "ALREADY_REJECTED"

    status = client.get(f"/status/{entry_id}").json()
    assert status["status"] == "rejected"
    assert status["reason"] == "stale_blockhash"


def test_unexpected_errors_are_opaque(clock, config):
    ledger = FakeLedger(error=RuntimeError("secret detail"))
    app = create_app(Facilitator(ledger, config, clock=clock), sweep=False)
    client = TestClient(app, raise_server_exceptions=False)
    entry_id = client.post("/verify", json=_body()).json()["id"]

    response = client.post("/settle", json={"id": entry_id})
    assert response.status_code == 500
    assert response.json() == {"error": "Internal server error", "code": "INTERNAL_ERROR"}


def test_status_reports_age(client, clock):
    entry_id = client.post("/verify", json=_body()).json()["id"]
    clock.advance(1.5)
    body = client.get(f"/status/{entry_id}").json()
    assert body["status"] == "verified"
    assert body["age"] == 1500


def test_status_expired_entry_before_sweep(client, clock):
    entry_id = client.post("/verify", json=_body()).json()["id"]
    clock.advance(61)
    assert client.get(f"/status/{entry_id}").json()["status"] == "expired"
    response = client.post("/settle", json={"id": entry_id})
    assert response.status_code == 400
    assert response.json()["code"] == "EXPIRED"


def test_supported(client):
    assert client.get("/supported").json() == {
        "version": "1.0.0",
        "scheme": "x402:sol",
        "network": "solana-devnet",
        "feePayer": "unknown",
    }


def test_health(client):
    body = client.get("/health").json()
    assert body["status"] == "ok"
    assert body["uptime"] == 0


def test_status_unknown_id_is_not_found(client):
    response = client.get("/status/nope")
    assert response.status_code == 404
    assert response.json()["code"] == "NOT_FOUND"


def test_settle_timeout_hint_matches_follow_up(clock, config):
    ledger = FakeLedger(error=BroadcastTimeout())
    client = TestClient(create_app(Facilitator(ledger, config, clock=clock), sweep=False))
    entry_id = client.post("/verify", json=_body()).json()["id"]

    first = client.post("/settle", json={"id": entry_id})
    assert first.status_code == 400
    assert first.json()["code"] == "BROADCAST_TIMEOUT"
    assert first.json()["retryable"] is False
    assert first.json()["action"] == "reverify"

    second = client.post("/settle", json={"id": entry_id})
    assert second.status_code == 409
    assert second.json()["retryable"] is False
    assert len(ledger.sent) == 1


def test_settle_only_answers_with_allowed_codes(client, clock):
    settled = client.post("/verify", json=_body()).json()["id"]
    stale = client.post("/verify", json=_body()).json()["id"]
    codes = [client.post("/settle", json={"id": settled}).status_code]
    codes.append(client.post("/settle", json={"id": settled}).status_code)
    clock.advance(61)
    codes.append(client.post("/settle", json={"id": stale}).status_code)
    codes.append(client.post("/settle", json={"id": "missing"}).status_code)
    assert codes == [200, 409, 400, 400]
