import json
import os
import uuid

import httpx
import pytest
from fastapi.testclient import TestClient

from tackletarts.mockpay import SIGNATURE_HEADER, sign_payload, MOCK_SECRET
from tackletarts.server import app


@pytest.fixture(scope="module")
def client():
    with TestClient(app) as c:
        yield c


@pytest.fixture
def admin(client):
    r = client.post("/admin/login", data={
        "username": os.environ["ADMIN_USERNAME"],
        "password": os.environ["ADMIN_PASSWORD"],
    })
    assert r.status_code == 200
    return client


def _create(admin, capacity=5, instant=2, price=150, **kw):
    body = {"name": f"comp-{uuid.uuid4().hex[:6]}", "capacity": capacity,
            "instant_win_count": instant, "ticket_price": price}
    body.update(kw)
    r = admin.post("/api/admin/competitions", json=body)
    assert r.status_code == 200, r.text
    return r.json()["competition"]


def _checkout(client, cid, qty=1, email="buyer@example.com"):
    r = client.post(f"/api/competitions/{cid}/checkout",
                    json={"customer_email": email, "qty": qty})
    assert r.status_code == 200, r.text
    j = r.json()
    return j["order_id"], j["redirect_url"].rsplit("/", 1)[-1]


def _webhook(client, psid, cid, owner, qty, kind="succeeded", secret=MOCK_SECRET):
    body = json.dumps({
        "type": f"payment.{kind}",
        "payment_session_id": psid,
        "competition_id": cid,
        "owner_id": owner,
        "quantity": qty,
        "idempotency_key": f"evt_{uuid.uuid4().hex}",
    }).encode()
    return client.post("/payments/webhook", content=body, headers={
        SIGNATURE_HEADER: sign_payload(body, secret),
        "content-type": "application/json",
    })


def test_health(client):
    assert client.get("/api/health").json() == {"ok": True}


def test_admin_routes_require_login(client):
    client.get("/admin/logout")
    r = client.post("/api/admin/competitions", json={"name": "x"})
    assert r.status_code == 401
    assert client.get("/api/admin/orders").status_code == 401


def test_bad_admin_credentials(client):
    r = client.post("/admin/login", data={"username": "admin", "password": "nope"})
    assert r.status_code == 401


def test_public_competition_hides_instant_wins(admin):
    comp = _create(admin, capacity=10, instant=3)
    public = admin.get(f"/api/competitions/{comp['id']}").json()
    assert public["capacity"] == 10
    assert public["available"] == 10
    assert "instant_wins" not in public

    detail = admin.get(f"/api/admin/competitions/{comp['id']}").json()
    assert len(detail["instant_wins"]) == 3
    assert detail["instant_win_hits"] == []

    listed = admin.get("/api/competitions").json()["items"]
    assert comp["id"] in {c["id"] for c in listed}


def test_checkout_then_duplicate_webhooks(admin):
    comp = _create(admin, capacity=5, instant=2)
    order_id, psid = _checkout(admin, comp["id"], qty=2, email="Fish@Example.com")

    page = admin.get(f"/mockpay/{psid}").json()
    assert page["qty"] == 2
    assert page["amount"] == "3.00"

    first = _webhook(admin, psid, comp["id"], "fish@example.com", 2)
    second = _webhook(admin, psid, comp["id"], "fish@example.com", 2)
    assert first.status_code == second.status_code == 200
    assert first.json()["order_status"] == "fulfilled"
    assert first.json()["tickets"] == second.json()["tickets"]

    order = admin.get(f"/api/orders/{order_id}").json()
    assert order["status"] == "fulfilled"
    assert len(order["tickets"]) == 2
    assert {t["owner_id"] for t in order["tickets"]} == {"fish@example.com"}

    mine = admin.get("/api/my-tickets").json()["items"]
    assert {t["id"] for t in order["tickets"]} <= {t["id"] for t in mine}

    assert admin.get(f"/api/competitions/{comp['id']}").json()["sold"] == 2


def test_webhook_rejects_bad_signature(admin):
    comp = _create(admin)
    order_id, psid = _checkout(admin, comp["id"], qty=2)

    r = _webhook(admin, psid, comp["id"], "buyer@example.com", 2, secret="wrong")
    assert r.status_code == 401
    assert r.json()["error"] == "unauthenticated_notification"

    # nothing changed
    order = admin.get(f"/api/orders/{order_id}").json()
    assert order["status"] == "created"
    assert order["tickets"] == []
    assert admin.get(f"/api/competitions/{comp['id']}").json()["sold"] == 0


def test_sold_out_payment_answers_ok_and_marks_failed(admin):
    comp = _create(admin, capacity=2, instant=0)
    _, psid_a = _checkout(admin, comp["id"], qty=2, email="a@example.com")
    order_b, psid_b = _checkout(admin, comp["id"], qty=2, email="b@example.com")

    assert _webhook(admin, psid_a, comp["id"], "a@example.com", 2).json()[
        "order_status"] == "fulfilled"
    r = _webhook(admin, psid_b, comp["id"], "b@example.com", 2)
    assert r.status_code == 200
    assert r.json()["order_status"] == "failed"
    assert r.json()["reason"] == "sold_out"

    order = admin.get(f"/api/orders/{order_b}").json()
    assert order["status"] == "failed"
    assert order["tickets"] == []

    r = admin.post(f"/api/competitions/{comp['id']}/checkout",
                   json={"customer_email": "c@example.com", "qty": 1})
    assert r.status_code == 409
    assert r.json()["error"] == "sold_out"


def test_canceled_payment(admin):
    comp = _create(admin)
    order_id, psid = _checkout(admin, comp["id"])
    r = _webhook(admin, psid, comp["id"], "buyer@example.com", 1, kind="canceled")
    assert r.json()["order_status"] == "canceled"
    assert admin.get(f"/api/orders/{order_id}").json()["status"] == "canceled"


def test_mockpay_emit_delivers_signed_event(admin):
    comp = _create(admin)
    order_id, psid = _checkout(admin, comp["id"], qty=1)

    original = app.state.http
    app.state.http = httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app), base_url="http://testserver"
    )
    try:
        r = admin.post(f"/mockpay/{psid}/emit", data={"t": "succeeded"})
    finally:
        app.state.http = original
    assert r.status_code == 200
    assert r.json()["ok"] is True

    order = admin.get(f"/api/orders/{order_id}").json()
    assert order["status"] == "fulfilled"
    assert len(order["tickets"]) == 1


def test_emit_rejects_unknown_kind(admin):
    comp = _create(admin)
    _, psid = _checkout(admin, comp["id"])
    assert admin.post(f"/mockpay/{psid}/emit", data={"t": "refunded"}).status_code == 400


def test_checkout_validation(client, admin):
    comp = _create(admin)
    r = client.post(f"/api/competitions/{comp['id']}/checkout",
                    json={"customer_email": "nope", "qty": 1})
    assert r.status_code == 400
    r = client.post(f"/api/competitions/{comp['id']}/checkout",
                    json={"customer_email": "a@example.com", "qty": 0})
    assert r.status_code == 400
    r = client.post("/api/competitions/999999/checkout",
                    json={"customer_email": "a@example.com", "qty": 1})
    assert r.status_code == 404
    assert r.json()["error"] == "not_found"


def test_grant_close_and_end_draw(admin):
    comp = _create(admin, capacity=4, instant=4)
    r = admin.post(f"/api/admin/competitions/{comp['id']}/grant",
                   json={"owner_id": "Lucky@Example.com", "qty": 3})
    assert r.status_code == 200
    granted = r.json()["tickets"]
    assert len(granted) == 3
    assert all(t["result"] == "instant_win" for t in granted)
    assert all(t["owner_id"] == "lucky@example.com" for t in granted)

    r = admin.post(f"/api/admin/competitions/{comp['id']}/close")
    assert r.json()["competition"]["status"] == "closed"
    r = admin.post(f"/api/admin/competitions/{comp['id']}/close")
    assert r.status_code == 409
    assert r.json()["error"] == "already_closed"

    r = admin.post(f"/api/admin/competitions/{comp['id']}/end-draw")
    assert r.status_code == 200
    winner = r.json()["winner"]
    assert winner["id"] in {t["id"] for t in granted}

    r = admin.post(f"/api/admin/competitions/{comp['id']}/end-draw")
    assert r.status_code == 409
    assert r.json()["error"] == "already_drawn"

    detail = admin.get(f"/api/admin/competitions/{comp['id']}").json()
    assert detail["end_winner"]["id"] == winner["id"]
    assert len(detail["instant_win_hits"]) == 3


def test_admin_views(admin):
    comp = _create(admin)
    _checkout(admin, comp["id"])
    pending = admin.get("/api/pending").json()
    assert pending["total"] >= 1
    assert all(o["status"] == "created" for o in pending["items"])

    orders = admin.get("/api/admin/orders").json()
    assert orders["total"] >= pending["total"]

    inventory = admin.get("/api/inventory").json()
    assert inventory[str(comp["id"])]["available"] == comp["capacity"]

    kinds = {t["kind"] for t in admin.get("/api/admin/timings").json()["items"]}
    assert "checkout.open_order" in kinds
