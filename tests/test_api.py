"""Tests for the HTTP API."""

import pytest
from fastapi.testclient import TestClient

from conftest import SENDER, TOKEN, UNIT
from relayb0t.api.app import create_app


@pytest.fixture
def client(engine):
    with TestClient(create_app(engine, start_engine=False)) as test_client:
        yield test_client


def _payload(intent, priority=0):
    return {**intent.to_dict(), "priority": priority}


def test_root(client):
    response = client.get("/")

    assert response.status_code == 200
    assert response.json()["name"] == "RelayB0T"


def test_submit_and_query_intent(client, make_intent):
    response = client.post("/intents", json=_payload(make_intent()))

    assert response.status_code == 202
    body = response.json()
    assert body["status"] == "queued"

    status = client.get(f"/intents/{body['intentId']}").json()
    assert status["status"] == "queued"
    assert status["computedFee"] == 1_500_000
    assert status["attemptCount"] == 0


def test_bad_signature(client, make_intent):
    payload = _payload(make_intent())
    payload["amount"] = 200 * UNIT

    response = client.post("/intents", json=payload)

    assert response.status_code == 422
    assert response.json()["cause"] == "bad_signature"


def test_malformed_body(client):
    response = client.post("/intents", json={"asset": TOKEN})

    assert response.status_code == 422
    assert response.json()["cause"] == "malformed"


def test_replay_conflict(client, ledger, make_intent):
    ledger.last_nonce[(TOKEN, SENDER)] = 4

    response = client.post("/intents", json=_payload(make_intent(nonce=2)))

    assert response.status_code == 409
    assert response.json()["error"] == "replay"


def test_fee_above_signed_maximum(client, make_intent):
    response = client.post("/intents", json=_payload(make_intent(max_fee=UNIT)))

    assert response.status_code == 400
    assert response.json()["error"] == "fee_exceeds_maximum"


def test_ledger_unreachable_for_new_sender(client, ledger, make_intent):
    ledger.online = False

    response = client.post("/intents", json=_payload(make_intent()))

    assert response.status_code == 503


def test_unknown_intent(client):
    response = client.get("/intents/missing")

    assert response.status_code == 404
    assert response.json()["error"] == "not_found"


def test_fee_estimate(client):
    response = client.post("/fees/estimate", json={"asset": TOKEN, "amount": 100 * UNIT})

    assert response.status_code == 200
    body = response.json()
    assert body["feeInAsset"] == 1_500_000
    assert body["amountAfterFee"] == 98_500_000
    assert body["maxRecommendedFee"] == 2_250_000
    assert body["estimatedInclusionSeconds"] == 2.0


def test_cancel_then_resubmit(client, make_intent):
    intent_id = client.post("/intents", json=_payload(make_intent())).json()["intentId"]

    cancelled = client.post(f"/intents/{intent_id}/cancel")
    assert cancelled.status_code == 200
    assert cancelled.json()["status"] == "rejected"
    assert cancelled.json()["lastError"] == "cancelled"

    again = client.post(f"/intents/{intent_id}/cancel")
    assert again.status_code == 409

    resubmit = client.post(f"/intents/{intent_id}/resubmit")
    assert resubmit.status_code == 409
    assert resubmit.json()["error"] == "invalid_state"


def test_supported_assets(client, registry):
    registry.set_paused(TOKEN, True)

    body = client.get("/assets").json()

    assert [a["symbol"] for a in body["assets"]] == ["USDX"]
    assert body["paused"] == [TOKEN]
    assert body["version"] == 2


def test_health(client, engine):
    assert client.get("/health").status_code == 200

    engine.health.mark_degraded("settlement layer unavailable")
    response = client.get("/health")

    assert response.status_code == 503
    assert response.json()["degraded"] is True


def test_queue_snapshot(client, make_intent):
    client.post("/intents", json=_payload(make_intent(nonce=0)))
    client.post("/intents", json=_payload(make_intent(nonce=1)))

    body = client.get("/queue").json()

    assert body["depth"] == 1
    assert body["senders"][f"{TOKEN}:{SENDER}"]["held"] == [1]
