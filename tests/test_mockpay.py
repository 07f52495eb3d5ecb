import json

import pytest

from tackletarts.errors import InvalidNotificationError, UnauthenticatedNotificationError
from tackletarts.mockpay import SIGNATURE_HEADER, MockPay, sign_payload


@pytest.fixture
def pay():
    return MockPay(secret="s3cret")


def _event(**kw):
    event = {
        "type": "payment.succeeded",
        "payment_session_id": "mock_abc",
        "competition_id": 4,
        "owner_id": "a@x.io",
        "quantity": 2,
        "idempotency_key": "evt_1",
    }
    event.update(kw)
    return event


def test_session_ids_are_unique_and_point_at_mock_page(pay):
    a = pay.create_session_id_and_url()
    b = pay.create_session_id_and_url()
    assert a["payment_session_id"] != b["payment_session_id"]
    assert a["redirect_url"] == f"/mockpay/{a['payment_session_id']}"


def test_verify_accepts_signed_payload(pay):
    body = json.dumps(_event()).encode()
    event = pay.verify_webhook(body, {SIGNATURE_HEADER: sign_payload(body, "s3cret")})
    assert pay.event_kind(event) == "succeeded"
    assert pay.event_ids(event) == ("mock_abc", "evt_1")
    assert pay.event_purchase(event) == (4, "a@x.io", 2)


@pytest.mark.parametrize("headers", [{}, {SIGNATURE_HEADER: "bogus"}])
def test_verify_rejects_bad_signature(pay, headers):
    with pytest.raises(UnauthenticatedNotificationError):
        pay.verify_webhook(json.dumps(_event()).encode(), headers)


def test_signature_depends_on_secret(pay):
    body = json.dumps(_event()).encode()
    with pytest.raises(UnauthenticatedNotificationError):
        pay.verify_webhook(body, {SIGNATURE_HEADER: sign_payload(body, "other")})


def test_verify_rejects_non_json(pay):
    body = b"not json"
    with pytest.raises(InvalidNotificationError):
        pay.verify_webhook(body, {SIGNATURE_HEADER: pay.sign(body)})


@pytest.mark.parametrize("patch", [
    {"quantity": 0},
    {"quantity": "many"},
    {"owner_id": ""},
    {"competition_id": None},
])
def test_event_purchase_requires_metadata(pay, patch):
    with pytest.raises(InvalidNotificationError):
        pay.event_purchase(_event(**patch))
