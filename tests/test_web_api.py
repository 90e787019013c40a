"""
Tests for the HTTP API

Tests covering:
1. Health and token endpoints
2. Caller resolution from bearer tokens
3. Error-to-status mapping
4. Rental and escrow flows over HTTP
"""

import pytest
from fastapi.testclient import TestClient

from tenancy import InMemoryRecordStore, build_engine
from web.app import create_app
from web.auth import create_session, sign_session, verify_session

from conftest import DAY, make_config


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def clock_value():
    return {"now": 1_700_000_000 * 10**9}


@pytest.fixture
def client(clock_value):
    config = make_config()
    engine = build_engine(config, store=InMemoryRecordStore(), clock=lambda: clock_value["now"])
    return TestClient(create_app(config, engine))


def _token(client, principal):
    response = client.post("/auth/token", json={"principal": principal})
    assert response.status_code == 200
    return response.json()["token"]


def _auth(client, principal):
    return {"Authorization": f"Bearer {_token(client, principal)}"}


@pytest.fixture
def landlord(client):
    headers = _auth(client, "landlord-alice")
    assert client.post("/users/register", json={"role": "landlord"}, headers=headers).status_code == 201
    return headers


@pytest.fixture
def tenant(client):
    headers = _auth(client, "tenant-bob")
    assert client.post("/users/register", json={"role": "tenant"}, headers=headers).status_code == 201
    return headers


@pytest.fixture
def property_id(client, landlord):
    response = client.post(
        "/properties",
        json={
            "title": "Sunny Flat",
            "address": "12 MG Road, Bengaluru",
            "rent_amount": 1000,
            "deposit_amount": 500,
        },
        headers=landlord,
    )
    assert response.status_code == 201
    return response.json()["id"]


@pytest.fixture
def rental_id(client, tenant, property_id, clock_value):
    start = clock_value["now"] + DAY
    response = client.post(
        "/rentals/",
        json={"property_id": property_id, "start_date": start, "end_date": start + 30 * DAY},
        headers=tenant,
    )
    assert response.status_code == 201
    return response.json()["id"]


# =============================================================================
# Token Tests
# =============================================================================


class TestTokens:
    """Tests for signed caller tokens."""

    def test_health(self, client):
        assert client.get("/health").json()["status"] == "healthy"

    def test_token_round_trip(self):
        session = create_session("alice")
        token = sign_session(session, "secret")
        assert verify_session(token, "secret").principal == "alice"

    def test_forged_token_rejected(self):
        token = sign_session(create_session("alice"), "secret")
        assert verify_session(token, "other-secret") is None
        assert verify_session("garbage", "secret") is None

    def test_expired_token_rejected(self):
        token = sign_session(create_session("alice", duration_hours=-1), "secret")
        assert verify_session(token, "secret") is None

    def test_anonymous_principal_refused(self, client):
        assert client.post("/auth/token", json={"principal": "anonymous"}).status_code == 400

    def test_dev_tokens_can_be_disabled(self):
        config = make_config(allow_dev_tokens=False)
        app = create_app(config, build_engine(config, store=InMemoryRecordStore()))
        response = TestClient(app).post("/auth/token", json={"principal": "alice"})
        assert response.status_code == 403


# =============================================================================
# Error Mapping Tests
# =============================================================================


class TestErrorMapping:
    """Lifecycle errors map to HTTP statuses."""

    def test_missing_token_is_401(self, client, rental_id):
        response = client.post(f"/rentals/{rental_id}/approve")
        assert response.status_code == 401
        assert response.json()["error"] == "UNAUTHENTICATED"

    def test_invalid_token_is_anonymous(self, client, rental_id):
        response = client.get(f"/rentals/{rental_id}", headers={"Authorization": "Bearer nope"})
        assert response.status_code == 401

    def test_wrong_party_is_403(self, client, tenant, rental_id):
        response = client.post(f"/rentals/{rental_id}/approve", headers=tenant)
        assert response.status_code == 403

    def test_unknown_rental_is_404(self, client, landlord):
        assert client.post("/rentals/999/approve", headers=landlord).status_code == 404

    def test_outsider_cannot_open_escrow(self, client, property_id, rental_id):
        response = client.post(
            "/escrows/",
            json={
                "rental_id": rental_id,
                "property_id": property_id,
                "landlord": "mallory",
                "tenant": "tenant-bob",
                "amount": 1,
            },
            headers=_auth(client, "mallory"),
        )
        assert response.status_code == 403

    def test_invalid_state_is_409(self, client, tenant, rental_id):
        response = client.post(f"/rentals/{rental_id}/confirm", headers=tenant)
        assert response.status_code == 409
        assert response.json()["current_status"] == "requested"

    def test_bad_dates_are_400(self, client, tenant, property_id):
        response = client.post(
            "/rentals/",
            json={"property_id": property_id, "start_date": 10, "end_date": 5},
            headers=tenant,
        )
        assert response.status_code == 400
        assert response.json()["error"] == "INVALID_REQUEST"


# =============================================================================
# Flow Tests
# =============================================================================


class TestFlows:
    """End-to-end flows over HTTP."""

    def test_rental_and_escrow_flow(self, client, landlord, tenant, rental_id, clock_value):
        assert client.post(f"/rentals/{rental_id}/approve", headers=landlord).json()["status"] == "approved"

        confirmed = client.post(f"/rentals/{rental_id}/confirm", headers=tenant).json()
        assert confirmed["status"] == "confirmed"
        assert confirmed["nft_id"] is not None

        escrows = client.get("/escrows/", params={"role": "tenant"}, headers=tenant).json()
        assert len(escrows) == 1
        escrow_id = escrows[0]["id"]
        assert escrows[0]["amount"] == 500

        response = client.post(f"/escrows/{escrow_id}/deposit", json={"tx_ref": "0xabc"}, headers=tenant)
        assert response.json()["status"] == "under_review"

        clock_value["now"] += DAY
        assert client.post(f"/escrows/{escrow_id}/expire", headers=tenant).status_code == 409

        response = client.post(f"/escrows/{escrow_id}/approve", json={"custody_ref": "c-1"}, headers=landlord)
        assert response.json()["status"] == "funds_secured"

        timeline = client.get(f"/escrows/{escrow_id}/timeline", headers=landlord).json()
        assert [e["event_type"] for e in timeline] == ["created", "deposit_submitted", "landlord_approval"]
        assert client.get(f"/escrows/{escrow_id}/timeline/verify", headers=landlord).json()["valid"] is True

        stats = client.get("/escrows/statistics", params={"role": "tenant"}, headers=tenant).json()
        assert stats["active"] == 1
        assert stats["amount_held"] == 500

    def test_escrow_hidden_from_strangers(self, client, landlord, tenant, rental_id):
        client.post(f"/rentals/{rental_id}/confirm", headers=landlord)
        escrow_id = client.get("/escrows/", headers=tenant).json()[0]["id"]

        stranger = _auth(client, "stranger")
        assert client.get(f"/escrows/{escrow_id}", headers=stranger).status_code == 404
        assert client.get(f"/escrows/{escrow_id}/timeline", headers=stranger).json() == []

    def test_receipt_visible_to_holder_only(self, client, landlord, tenant, rental_id):
        receipt_id = client.post(f"/rentals/{rental_id}/confirm", headers=landlord).json()["nft_id"]

        receipt = client.get(f"/receipts/{receipt_id}", headers=tenant).json()
        assert receipt["rental_id"] == rental_id
        assert receipt["revoked"] is False
        traits = {a["trait_type"]: a["value"] for a in receipt["attributes"]}
        assert traits["Start Date"] == "2023-11-15T22:13:20+00:00"

        assert client.get(f"/receipts/{receipt_id}", headers=landlord).status_code == 404

    def test_pending_requests(self, client, landlord, rental_id):
        pending = client.get("/rentals/pending", headers=landlord).json()
        assert [r["id"] for r in pending] == [rental_id]

    def test_properties_listing_reflects_availability(self, client, property_id, rental_id):
        assert client.get("/properties").json() == []
