"""
Scenario: normal flow over HTTP.

Customer creates an order -> admin approves (checkout link) -> provider webhook pays it ->
driver logs in, accepts, records pickup proof, starts, records delivery proof, completes.

Expect every step to return 2xx, the public order view to end in `completed` with no further
transitions, and the duplicate / out-of-order / unauthorised variants to be refused with the
documented status codes.
"""
from decimal import Decimal

from _helper import ADMIN_KEY, OPS_KEY, auth, checkout_completed_event, signed_event

ORDER_BODY = {
    "service_type": "courier",
    "customer_name": "Dana Client",
    "customer_email": "dana@example.test",
    "pickup_address": "1 Pickup St",
    "delivery_address": "9 Dropoff Ave",
    "total_amount": "25.00",
}


def _create_order(client) -> dict:
    resp = client.post("/orders", json=ORDER_BODY)
    assert resp.status_code == 201, resp.text
    return resp.json()


def _approve(client, order_id: str) -> dict:
    resp = client.post(f"/admin/orders/{order_id}/approve", headers=auth(ADMIN_KEY))
    assert resp.status_code == 200, resp.text
    return resp.json()


def _pay(client, order_id: str, session_id: str = "cs_test_1"):
    payload, signature = signed_event(checkout_completed_event(order_id, session_id=session_id))
    return client.post("/webhooks/stripe", content=payload,
                       headers={"Stripe-Signature": signature, "Content-Type": "application/json"})


def _driver_token(client, name: str = "Sam Driver", email: str = "sam@drivers.test", verified: bool = True) -> str:
    resp = client.post("/admin/drivers", headers=auth(ADMIN_KEY),
                       json={"name": name, "email": email, "verified": verified})
    assert resp.status_code == 201, resp.text
    resp = client.post("/driver/login", json={"email": email})
    assert resp.status_code == 200, resp.text
    return resp.json()["token"]


def _ready_order(client) -> str:
    order = _create_order(client)
    _approve(client, order["id"])
    assert _pay(client, order["id"]).status_code == 200
    return order["id"]


def test_order_goes_from_request_to_delivery(client):
    order = _create_order(client)
    assert order["status"] == "pending_admin_review"
    assert order["allowed_transitions"] == ["approved_pending_payment", "rejected"]
    assert Decimal(str(order["total_amount"])) == Decimal("25.00")
    assert order["currency"] == "usd"

    resp = client.post(f"/admin/orders/{order['id']}/approve", headers=auth(ADMIN_KEY),
                       json={"total_amount": "46.25"})
    assert resp.status_code == 200, resp.text
    approved = resp.json()
    assert approved["status"] == "approved_pending_payment"
    assert approved["checkout_url"].startswith("https://checkout.test/")
    assert Decimal(str(approved["total_amount"])) == Decimal("46.25")

    resp = _pay(client, order["id"], session_id=approved["stripe_session_id"])
    assert resp.status_code == 200
    assert resp.json() == {"received": True, "outcome": "applied", "order_id": order["id"]}

    token = _driver_token(client)
    listing = client.get("/driver/orders", headers=auth(token)).json()["orders"]
    assert [o["id"] for o in listing] == [order["id"]]

    steps = [
        ("accept", None, "assigned"),
        ("proof", {"kind": "pickup", "photo_url": "https://img.test/p.jpg"}, "assigned"),
        ("start", None, "en_route"),
        ("proof", {"kind": "delivery", "confirmed": True}, "en_route"),
        ("complete", None, "completed"),
    ]
    for action, body, expected in steps:
        resp = client.post(f"/driver/orders/{order['id']}/{action}", headers=auth(token), json=body)
        assert resp.status_code == 200, f"{action}: {resp.text}"
        assert resp.json()["status"] == expected

    final = client.get(f"/orders/{order['id']}").json()
    assert final["status"] == "completed"
    assert final["payment_status"] == "paid"
    assert final["allowed_transitions"] == []
    assert final["delivered_at"] is not None
    assert "stripe_session_id" not in final


def test_duplicate_webhook_is_acknowledged_without_effect(client):
    order = _create_order(client)
    _approve(client, order["id"])

    first = _pay(client, order["id"])
    second = _pay(client, order["id"])

    assert first.json()["outcome"] == "applied"
    assert second.status_code == 200
    assert second.json()["outcome"] == "duplicate"


def test_webhook_with_bad_signature_is_400(client):
    order = _create_order(client)
    payload, _ = signed_event(checkout_completed_event(order["id"]))
    _, foreign_signature = signed_event(checkout_completed_event(order["id"]), secret="whsec_other")

    resp = client.post("/webhooks/stripe", content=payload, headers={"Stripe-Signature": foreign_signature})
    assert resp.status_code == 400
    assert resp.json()["error"] == "authentication_failed"

    resp = client.post("/webhooks/stripe", content=payload)
    assert resp.status_code == 400


def test_webhook_for_unrelated_event_is_acknowledged(client):
    event = checkout_completed_event("whatever")
    event["type"] = "charge.refunded"
    payload, signature = signed_event(event)

    resp = client.post("/webhooks/stripe", content=payload, headers={"Stripe-Signature": signature})

    assert resp.status_code == 200
    assert resp.json()["outcome"] == "ignored"


def test_second_driver_gets_409(client):
    order_id = _ready_order(client)
    first = _driver_token(client, "Ann Driver", "ann@drivers.test")
    second = _driver_token(client, "Ben Driver", "ben@drivers.test")

    assert client.post(f"/driver/orders/{order_id}/accept", headers=auth(first)).status_code == 200
    resp = client.post(f"/driver/orders/{order_id}/accept", headers=auth(second))

    assert resp.status_code == 409
    body = resp.json()
    assert body["error"] == "conflict"
    assert body["current_status"] == "assigned"
    assert body["allowed_transitions"] == ["en_route"]


def test_invalid_transition_is_400_with_allowed_set(client):
    order_id = _ready_order(client)

    resp = client.post(f"/admin/orders/{order_id}/reject", headers=auth(ADMIN_KEY), json={"reason": "late"})

    assert resp.status_code == 400
    body = resp.json()
    assert body["error"] == "invalid_transition"
    assert body["current_status"] == "ready_for_dispatch"
    assert body["allowed_transitions"] == ["assigned"]


def test_start_without_proof_is_412(client):
    order_id = _ready_order(client)
    token = _driver_token(client)
    client.post(f"/driver/orders/{order_id}/accept", headers=auth(token))

    resp = client.post(f"/driver/orders/{order_id}/start", headers=auth(token))

    assert resp.status_code == 412
    assert resp.json()["error"] == "proof_required"


def test_delivery_proof_while_assigned_is_400(client):
    order_id = _ready_order(client)
    token = _driver_token(client)
    client.post(f"/driver/orders/{order_id}/accept", headers=auth(token))

    resp = client.post(f"/driver/orders/{order_id}/proof", headers=auth(token),
                       json={"kind": "delivery", "confirmed": True})

    assert resp.status_code == 400
    body = resp.json()
    assert body["error"] == "proof_out_of_order"
    assert body["current_status"] == "assigned"
    assert body["required_status"] == "en_route"


def test_unverified_driver_is_403(client):
    order_id = _ready_order(client)
    token = _driver_token(client, verified=False)

    resp = client.post(f"/driver/orders/{order_id}/accept", headers=auth(token))

    assert resp.status_code == 403
    assert resp.json()["error"] == "not_verified"


def test_admin_endpoints_check_role(client):
    order = _create_order(client)

    assert client.post(f"/admin/orders/{order['id']}/approve").status_code == 401
    assert client.post(f"/admin/orders/{order['id']}/approve", headers=auth("nope")).status_code == 401
    assert client.post(f"/admin/orders/{order['id']}/approve", headers=auth(OPS_KEY)).status_code == 403
    assert client.get("/admin/orders", headers=auth(OPS_KEY)).status_code == 200


def test_ops_can_push_assign(client):
    order_id = _ready_order(client)
    _driver_token(client)

    resp = client.post(f"/admin/orders/{order_id}/assign", headers=auth(OPS_KEY))

    assert resp.status_code == 200
    assert resp.json()["status"] == "assigned"


def test_assign_without_drivers_is_409(client):
    order_id = _ready_order(client)

    resp = client.post(f"/admin/orders/{order_id}/assign", headers=auth(ADMIN_KEY), json={})

    assert resp.status_code == 409
    assert resp.json()["error"] == "no_driver_available"


def test_manual_payment_over_http(client):
    order = _create_order(client)
    _approve(client, order["id"])

    resp = client.post(f"/admin/orders/{order['id']}/mark-paid", headers=auth(ADMIN_KEY), json={"note": "Cash"})
    assert resp.status_code == 200
    assert resp.json()["paid_via"] == "manual"

    again = client.post(f"/admin/orders/{order['id']}/mark-paid", headers=auth(ADMIN_KEY), json={"note": "Cash"})
    assert again.status_code == 409

    blank = client.post(f"/admin/orders/{order['id']}/mark-paid", headers=auth(ADMIN_KEY), json={"note": "  "})
    assert blank.status_code == 422


def test_admin_order_with_prepaid_note_skips_review(client):
    resp = client.post("/admin/orders", headers=auth(ADMIN_KEY),
                       json={**ORDER_BODY, "service_type": "notary", "prepaid_note": "Invoice 7"})

    assert resp.status_code == 201
    assert resp.json()["status"] == "ready_for_dispatch"
    assert resp.json()["paid_via"] == "manual"


def test_admin_order_with_blank_prepaid_note_is_422(client):
    resp = client.post("/admin/orders", headers=auth(ADMIN_KEY),
                       json={**ORDER_BODY, "prepaid_note": "   "})

    assert resp.status_code == 422
    assert client.get("/admin/orders", headers=auth(ADMIN_KEY)).json()["orders"] == []


def test_dashboard_groups_open_orders(client):
    _create_order(client)
    _ready_order(client)

    resp = client.get("/admin/dashboard", headers=auth(ADMIN_KEY))

    assert resp.status_code == 200
    assert resp.json()["stats"] == {"action_required": 1, "awaiting_payment": 0, "dispatch": 1, "active": 0}


def test_list_orders_accepts_paid_alias(client):
    order_id = _ready_order(client)
    _create_order(client)

    resp = client.get("/admin/orders", params={"status": "paid"}, headers=auth(ADMIN_KEY))
    assert [o["id"] for o in resp.json()["orders"]] == [order_id]

    bad = client.get("/admin/orders", params={"status": "shipped"}, headers=auth(ADMIN_KEY))
    assert bad.status_code == 422


def test_courier_order_needs_pickup_address(client):
    resp = client.post("/orders", json={**ORDER_BODY, "pickup_address": None})
    assert resp.status_code == 422


def test_unknown_order_is_404(client):
    resp = client.get("/orders/does-not-exist")
    assert resp.status_code == 404
    assert resp.json()["error"] == "not_found"


def test_logged_out_driver_is_rejected(client):
    token = _driver_token(client)

    assert client.post("/driver/logout", headers=auth(token)).json() == {"revoked": True}
    assert client.get("/driver/orders", headers=auth(token)).status_code == 401


def test_disabled_driver_is_403(client):
    token = _driver_token(client)
    driver_id = client.post("/driver/login", json={"email": "sam@drivers.test"}).json()["driver_id"]

    client.patch(f"/admin/drivers/{driver_id}", headers=auth(ADMIN_KEY), json={"active": False})

    assert client.get("/driver/orders", headers=auth(token)).status_code == 403


def test_location_ping(client, container):
    token = _driver_token(client)

    resp = client.post("/driver/location", headers=auth(token), json={"lat": 51.5, "lng": -0.12})

    assert resp.status_code == 200
    assert container.drivers.locations[-1]["longitude"] == Decimal("-0.12")


def test_health_and_metrics(client):
    assert client.get("/health").json() == {"status": "ok"}
    metrics = client.get("/metrics")
    assert metrics.status_code == 200
    assert "order_transitions_total" in metrics.text
