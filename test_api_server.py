"""Tests for the HTTP API: routing, authentication and error mapping."""

import pytest
from fastapi.testclient import TestClient

from admin_review import AdminReviewService
from api_server import create_app
from conftest import ADMIN, CUSTOMER, DESIGNER, ITEM, STRANGER
from identity import JWTIdentityProvider
from models import Party, Role

PAYMENT = {
    "transaction_reference": "tx-77",
    "customer_wallet": "cust-wallet",
    "designer_wallet": "des-wallet",
}


@pytest.fixture
def identity():
    return JWTIdentityProvider("api-test-secret")


@pytest.fixture
def client(store, service, disputes, kyc, identity, config):
    admin = AdminReviewService(store, service, disputes, kyc)
    app = create_app(store, service, disputes, kyc, admin, identity, config)
    with TestClient(app) as client:
        yield client


@pytest.fixture
def auth(identity):
    def headers(party):
        return {"Authorization": f"Bearer {identity.issue_token(party.party_id, party.role)}"}
    return headers


def place(client, auth, amount="120.00"):
    response = client.post("/orders", headers=auth(CUSTOMER), json={
        "item_id": ITEM.item_id,
        "designer_id": DESIGNER.party_id,
        "amount": amount,
        "currency": "USD",
        "delivery_address": "12 Loom Street",
    })
    assert response.status_code == 201
    return response.json()


def ship(client, auth):
    order = place(client, auth)
    order_id = order["order_id"]
    assert client.post(f"/orders/{order_id}/payment", headers=auth(CUSTOMER), json=PAYMENT).status_code == 200
    response = client.post(f"/orders/{order_id}/ship", headers=auth(DESIGNER), json={"carrier": "DHL"})
    assert response.status_code == 200
    return order_id


def test_info_endpoints(client):
    assert client.get("/").json()["status"] == "running"
    health = client.get("/health").json()
    assert health["status"] == "healthy"
    assert health["store"] == "InMemoryOrderStore"


def test_missing_or_bad_token(client):
    response = client.get("/orders")
    assert response.status_code == 401
    assert response.json()["error"] == "unauthenticated"

    response = client.get("/orders", headers={"Authorization": "Bearer nonsense"})
    assert response.status_code == 401


def test_full_lifecycle(client, auth):
    order_id = ship(client, auth)

    response = client.post(
        f"/orders/{order_id}/confirm-delivery", headers=auth(CUSTOMER), json={"rating": 4, "review": "Lovely"}
    )
    assert response.status_code == 200
    assert response.json()["state"] == "released"

    detail = client.get(f"/orders/{order_id}", headers=auth(DESIGNER)).json()
    assert detail["escrow"]["status"] == "released"
    assert detail["escrow"]["settled_amount"] == "120.00"

    history = client.get(f"/orders/{order_id}/history", headers=auth(CUSTOMER)).json()
    assert [e["to_state"] for e in history] == ["created", "paid", "shipped", "delivered", "released"]


def test_customer_id_comes_from_token(client, auth):
    order = place(client, auth)
    assert order["customer_id"] == CUSTOMER.party_id
    assert order["state"] == "created"

    mine = client.get("/orders", headers=auth(CUSTOMER)).json()
    assert [o["order_id"] for o in mine] == [order["order_id"]]
    assert client.get("/orders", headers=auth(STRANGER)).json() == []


@pytest.mark.parametrize("body", [
    {"item_id": "item-1", "designer_id": "designer-1", "amount": "0", "currency": "USD"},
    {"item_id": "item-1", "designer_id": "designer-1", "amount": "10", "currency": "GBP"},
    {"item_id": "item-1", "designer_id": "designer-1", "currency": "USD"},
])
def test_bad_order_input_is_400(client, auth, body):
    response = client.post("/orders", headers=auth(CUSTOMER), json=body)
    assert response.status_code == 400
    assert response.json()["error"] == "validation_error"


def test_error_mapping(client, auth):
    order_id = place(client, auth)["order_id"]

    response = client.get("/orders/ORD_missing", headers=auth(CUSTOMER))
    assert response.status_code == 404
    assert response.json()["error"] == "order_not_found"

    response = client.post(f"/orders/{order_id}/ship", headers=auth(CUSTOMER), json={})
    assert response.status_code == 403

    response = client.post(f"/orders/{order_id}/ship", headers=auth(DESIGNER), json={})
    assert response.status_code == 409
    assert response.json()["error"] == "invalid_transition"

    response = client.get("/disputes/DSP_missing", headers=auth(CUSTOMER))
    assert response.status_code == 404
    assert response.json()["error"] == "dispute_not_found"


def test_dispute_flow(client, auth):
    order_id = ship(client, auth)

    response = client.post(f"/orders/{order_id}/disputes", headers=auth(CUSTOMER), json={
        "reason": "damaged_item", "description": "Zip broken",
    })
    assert response.status_code == 201
    dispute_id = response.json()["dispute_id"]

    response = client.post(f"/orders/{order_id}/disputes", headers=auth(DESIGNER), json={
        "reason": "other", "description": "Arrived fine",
    })
    assert response.status_code == 409
    assert response.json()["error"] == "duplicate_dispute"

    assert [d["dispute_id"] for d in client.get("/admin/disputes", headers=auth(ADMIN)).json()] == [dispute_id]
    assert client.get("/admin/disputes", headers=auth(CUSTOMER)).status_code == 403

    response = client.post(f"/admin/disputes/{dispute_id}/resolve", headers=auth(ADMIN), json={
        "outcome": "refund", "notes": "Photos confirm",
    })
    assert response.status_code == 200
    assert response.json()["state"] == "refunded"

    response = client.post(f"/admin/disputes/{dispute_id}/resolve", headers=auth(ADMIN), json={
        "outcome": "refund",
    })
    assert response.status_code == 409
    assert response.json()["error"] == "already_resolved"

    overview = client.get(f"/admin/orders/{order_id}", headers=auth(ADMIN)).json()
    assert overview["escrow"]["status"] == "refunded"
    assert overview["disputes"][0]["status"] == "resolved"


def test_invalid_dispute_reason_is_400(client, auth):
    order_id = ship(client, auth)
    response = client.post(f"/orders/{order_id}/disputes", headers=auth(CUSTOMER), json={
        "reason": "changed_my_mind", "description": "x",
    })
    assert response.status_code == 400


def test_cancel_and_summary(client, auth):
    order_id = place(client, auth)["order_id"]
    client.post(f"/orders/{order_id}/payment", headers=auth(CUSTOMER), json=PAYMENT)

    response = client.post(f"/admin/orders/{order_id}/cancel", headers=auth(ADMIN), json={"reason": "Fraud"})
    assert response.status_code == 200
    assert response.json()["state"] == "cancelled"

    summary = client.get("/admin/summary", headers=auth(ADMIN)).json()
    assert summary["total_orders"] == 1
    assert summary["orders_by_state"]["cancelled"] == 1
    assert float(summary["escrow_totals"]["USD"]["refunded"]) == 120.0


def test_notifications_are_empty_without_emitter(client, auth):
    assert client.get("/notifications", headers=auth(DESIGNER)).json() == []
    assert client.post("/notifications/read", headers=auth(DESIGNER), json={}).json() == {"marked": 0}


def test_kyc_endpoints(client, auth):
    response = client.post("/kyc", headers=auth(DESIGNER), json={
        "full_name": "Ada Designer", "document_references": ["passport-1"],
    })
    assert response.status_code == 201
    assert client.get("/kyc/me", headers=auth(DESIGNER)).json()["approved"] is False

    pending = client.get("/admin/kyc", params={"status": "pending"}, headers=auth(ADMIN)).json()
    assert [r["party_id"] for r in pending] == [DESIGNER.party_id]

    response = client.post(f"/admin/kyc/{DESIGNER.party_id}/review", headers=auth(ADMIN), json={"approve": True})
    assert response.json()["status"] == "approved"
    assert client.get("/kyc/me", headers=auth(DESIGNER)).json()["approved"] is True

    assert client.post("/kyc", headers=auth(CUSTOMER), json={
        "full_name": "Cara", "document_references": ["id"],
    }).status_code == 403


def test_system_role_token_rejected(client, identity):
    token = identity.issue_token("scheduler", Role.CUSTOMER, extra_claims={"app_metadata": {"role": "system"}})
    response = client.get("/orders", headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == 401


def test_designer_lists_item_then_customer_orders_it(client, auth):
    response = client.post("/items", headers=auth(DESIGNER), json={
        "name": "Silk Kimono", "price": "89.50", "currency": "usdc",
    })
    assert response.status_code == 201
    item = response.json()
    assert item["designer_id"] == DESIGNER.party_id
    assert item["currency"] == "USDC"

    assert client.get(f"/items/{item['item_id']}", headers=auth(CUSTOMER)).json()["name"] == "Silk Kimono"
    response = client.get("/items/ITM_missing", headers=auth(CUSTOMER))
    assert response.status_code == 404
    assert response.json()["error"] == "item_not_found"

    response = client.post("/orders", headers=auth(CUSTOMER), json={
        "item_id": item["item_id"], "designer_id": DESIGNER.party_id, "amount": "89.50", "currency": "USDC",
    })
    assert response.status_code == 201

    assert client.post("/items", headers=auth(CUSTOMER), json={
        "name": "Knock-off", "price": "1", "currency": "USD",
    }).status_code == 403


def test_order_must_match_item_price(client, auth):
    for amount, currency in (("0.01", "SOL"), ("0.01", "USD"), ("120.00", "SOL")):
        response = client.post("/orders", headers=auth(CUSTOMER), json={
            "item_id": ITEM.item_id, "designer_id": DESIGNER.party_id,
            "amount": amount, "currency": currency,
        })
        assert response.status_code == 400
        assert response.json()["error"] == "validation_error"

    response = client.post("/orders", headers=auth(CUSTOMER), json={
        "item_id": ITEM.item_id, "designer_id": DESIGNER.party_id,
        "amount": "240.00", "currency": "USD", "quantity": 2,
    })
    assert response.status_code == 201
    assert response.json()["quantity"] == 2

    assert client.get("/orders", headers=auth(CUSTOMER)).json()[0]["amount"] == "240.00"


def test_designer_edits_and_withdraws_item(client, auth):
    rival = Party(party_id="designer-2", role=Role.DESIGNER)

    response = client.patch(f"/items/{ITEM.item_id}", headers=auth(rival), json={"price": "1.00"})
    assert response.status_code == 403
    assert response.json()["error"] == "unauthorized"

    response = client.patch(f"/items/{ITEM.item_id}", headers=auth(DESIGNER), json={"available": False})
    assert response.status_code == 200
    assert response.json()["available"] is False
    assert response.json()["price"] == "120.00"

    listed = client.get("/items", params={"available": "true"}, headers=auth(CUSTOMER)).json()
    assert ITEM.item_id not in [i["item_id"] for i in listed]

    response = client.post("/orders", headers=auth(CUSTOMER), json={
        "item_id": ITEM.item_id, "designer_id": DESIGNER.party_id, "amount": "120.00", "currency": "USD",
    })
    assert response.status_code == 400

    assert client.delete(f"/items/{ITEM.item_id}", headers=auth(rival)).status_code == 403
    assert client.delete(f"/items/{ITEM.item_id}", headers=auth(DESIGNER)).status_code == 204
    assert client.get(f"/items/{ITEM.item_id}", headers=auth(CUSTOMER)).json()["error"] == "item_not_found"
    assert client.delete(f"/items/{ITEM.item_id}", headers=auth(DESIGNER)).status_code == 404


def test_list_items_by_designer(client, auth):
    listed = client.get("/items", params={"designer_id": DESIGNER.party_id}, headers=auth(CUSTOMER)).json()
    assert {i["item_id"] for i in listed} == {"item-1", "item-2"}
    assert client.get("/items", params={"designer_id": "designer-9"}, headers=auth(CUSTOMER)).json() == []


@pytest.mark.parametrize("path, params", [
    ("/orders", {"limit": 0}),
    ("/orders", {"limit": 501}),
    ("/orders", {"offset": -1}),
    ("/items", {"limit": 10000}),
    ("/admin/orders", {"limit": 501}),
    ("/admin/orders", {"offset": -5}),
])
def test_paging_is_bounded(client, auth, path, params):
    response = client.get(path, params=params, headers=auth(ADMIN))
    assert response.status_code == 400
    assert response.json()["error"] == "validation_error"

    assert client.get(path, params={"limit": 500, "offset": 0}, headers=auth(ADMIN)).status_code == 200
