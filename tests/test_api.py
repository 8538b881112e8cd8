from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

import main
from main import app
from billwatch.api import alerts as alerts_api
from billwatch.api import ops as ops_api
from billwatch.api import scope_proofs as scope_proofs_api
from billwatch.integrations.source_records import ReceiptRecord
from tests.conftest import PAID_ACCOUNT


@pytest.fixture()
def client(db, engine, scope_service, sweep, monkeypatch):
    monkeypatch.setattr(alerts_api, "get_alert_engine", lambda: engine)
    monkeypatch.setattr(scope_proofs_api, "get_scope_proof_service", lambda: scope_service)
    monkeypatch.setattr(ops_api, "get_sweep", lambda: sweep)
    return TestClient(app)


def _create_proof(client, **overrides):
    body = {
        "account_id": PAID_ACCOUNT,
        "description": "Reframe closet doorway",
        "estimated_cost": "410.25",
        "client_email": "dana@client.test",
        "photos": ["closet-1.jpg", "closet-2.jpg"],
    }
    body.update(overrides)
    return client.post("/api/scope-proofs", json=body)


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


def test_business_event_creates_alert(client, source_records):
    source_records.receipts["rcpt-1"] = ReceiptRecord(
        id="rcpt-1", account_id=PAID_ACCOUNT, total=Decimal("450"), billable=True
    )

    response = client.post(
        "/api/alerts/events",
        json={"account_id": PAID_ACCOUNT, "event_type": "RECEIPT_CREATED", "source_id": "rcpt-1"},
    )
    assert response.status_code == 202

    listing = client.get("/api/alerts", params={"account_id": PAID_ACCOUNT}).json()
    assert listing["count"] == 1
    alert = listing["alerts"][0]
    assert alert["kind"] == "UnbilledReceipt"
    assert alert["estimated_amount"] == "450"
    assert alert["confidence"] == 90

    summary = client.get("/api/alerts/summary", params={"account_id": PAID_ACCOUNT}).json()
    assert summary["count"] == 1
    assert summary["total_estimated_amount"] == "450.00"

    detail = client.get(f"/api/alerts/{alert['id']}").json()
    assert [e["action"] for e in detail["events"]] == ["CREATED"]

    resolved = client.post(f"/api/alerts/{alert['id']}/resolve", json={"reason": "billed_in_person"})
    assert resolved.status_code == 200
    assert resolved.json()["alert"]["status"] == "fixed"
    assert client.get("/api/alerts", params={"account_id": PAID_ACCOUNT}).json()["count"] == 0


def test_unknown_event_type_is_accepted_and_ignored(client):
    response = client.post(
        "/api/alerts/events",
        json={"account_id": PAID_ACCOUNT, "event_type": "SOMETHING_ELSE", "source_id": "x"},
    )
    assert response.status_code == 202
    assert client.get("/api/alerts", params={"account_id": PAID_ACCOUNT}).json()["count"] == 0


def test_unknown_alert_is_404(client):
    response = client.get("/api/alerts/ALR-missing")
    assert response.status_code == 404
    assert response.json()["error"] == "ALERT_NOT_FOUND"


def test_scope_proof_lifecycle(client):
    created = _create_proof(client)
    assert created.status_code == 201
    proof = created.json()["scope_proof"]
    assert proof["status"] == "draft"
    assert proof["estimated_cost"] == "410.25"

    listing = client.get("/api/scope-proofs", params={"account_id": PAID_ACCOUNT, "status": "draft"}).json()
    assert [p["id"] for p in listing["scope_proofs"]] == [proof["id"]]

    grant = client.post(f"/api/scope-proofs/{proof['id']}/request-approval").json()
    assert grant["approval_url"].endswith(grant["token"])
    assert "token" not in client.get(f"/api/scope-proofs/{proof['id']}").json()["scope_proof"]

    approved = client.post(f"/api/scope-proofs/approve/{grant['token']}", json={"approved_by": "Dana"})
    assert approved.status_code == 200
    assert approved.json()["status"] == "approved"
    assert approved.json()["approved_by"] == "Dana"

    reused = client.post(f"/api/scope-proofs/approve/{grant['token']}")
    assert reused.status_code == 410
    assert reused.json()["error"] == "INVALID_APPROVAL_STATE"


def test_approval_token_is_not_logged(client, monkeypatch):
    logged = []
    monkeypatch.setattr(main, "log_request", lambda **fields: logged.append(fields["path"]))
    monkeypatch.setattr(main.logger, "info", lambda msg, *args, **kwargs: logged.append(msg % args))

    proof = _create_proof(client).json()["scope_proof"]
    grant = client.post(f"/api/scope-proofs/{proof['id']}/request-approval").json()
    assert client.post(f"/api/scope-proofs/approve/{grant['token']}").status_code == 200
    assert client.post(f"/api/scope-proofs/approve/{grant['token']}").status_code == 410

    assert "/api/scope-proofs/approve/{token}" in logged
    assert any("rejected: INVALID_APPROVAL_STATE" in line for line in logged)
    assert not [line for line in logged if grant["token"] in line]


def test_client_can_decline(client):
    proof = _create_proof(client).json()["scope_proof"]
    grant = client.post(f"/api/scope-proofs/{proof['id']}/request-approval").json()

    declined = client.post(f"/api/scope-proofs/approve/{grant['token']}", json={"decision": "decline"})
    assert declined.status_code == 200
    assert declined.json()["status"] == "expired"
    assert declined.json()["decision"] == "declined"


def test_scope_proof_validation_errors(client):
    too_many = _create_proof(client, photos=[f"p{i}.jpg" for i in range(6)])
    assert too_many.status_code == 400
    assert too_many.json()["context"]["field"] == "photos"

    negative = _create_proof(client, estimated_cost="-1")
    assert negative.status_code == 400

    unknown_field = _create_proof(client, discount="10")
    assert unknown_field.status_code == 422


def test_delete_only_drafts(client):
    draft = _create_proof(client).json()["scope_proof"]
    assert client.delete(f"/api/scope-proofs/{draft['id']}").status_code == 200
    assert client.get(f"/api/scope-proofs/{draft['id']}").status_code == 404

    pending = _create_proof(client).json()["scope_proof"]
    client.post(f"/api/scope-proofs/{pending['id']}/request-approval")
    assert client.delete(f"/api/scope-proofs/{pending['id']}").status_code == 410


def test_api_key_guards_contractor_routes(client, monkeypatch):
    monkeypatch.setenv("API_KEY", "s3cret")

    assert client.get("/api/alerts", params={"account_id": PAID_ACCOUNT}).status_code == 401
    assert client.get(
        "/api/alerts", params={"account_id": PAID_ACCOUNT}, headers={"X-API-Key": "wrong"}
    ).status_code == 403

    headers = {"X-API-Key": "s3cret"}
    proof = _create_proof_with_headers(client, headers)
    grant = client.post(f"/api/scope-proofs/{proof['id']}/request-approval", headers=headers).json()

    # The client approval link carries no API key.
    assert client.post(f"/api/scope-proofs/approve/{grant['token']}").status_code == 200


def _create_proof_with_headers(client, headers):
    response = client.post(
        "/api/scope-proofs",
        json={
            "account_id": PAID_ACCOUNT,
            "description": "Swap vanity light",
            "estimated_cost": "95",
            "client_email": "dana@client.test",
        },
        headers=headers,
    )
    assert response.status_code == 201
    return response.json()["scope_proof"]


def test_ops_sweep_endpoints(client):
    triggered = client.post("/api/ops/sweep")
    assert triggered.status_code == 200
    assert triggered.json()["results"]["reminder"]["status"] == "completed"

    status = client.get("/api/ops/sweep").json()
    assert {row["pass_name"] for row in status["passes"]} == {"reminder", "expiry", "draft_invoice", "alert_recheck"}
    assert "state" in status["runner"]


def test_api_key_rotation_accepts_either_key(client, monkeypatch):
    monkeypatch.setenv("API_KEY", "old-key, new-key")
    for key in ("old-key", "new-key"):
        response = client.get("/api/alerts", params={"account_id": PAID_ACCOUNT}, headers={"X-API-Key": key})
        assert response.status_code == 200
    assert client.get(
        "/api/alerts", params={"account_id": PAID_ACCOUNT}, headers={"X-API-Key": "old-key, new-key"}
    ).status_code == 403
