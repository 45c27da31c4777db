from unittest.mock import MagicMock

import pytest
import requests

from paypal_client import LIVE_BASE_URL, SANDBOX_BASE_URL, PayPalClient, PayPalError


def fake_response(status_code=200, payload=None):
    response = MagicMock()
    response.status_code = status_code
    response.content = b"{}"
    response.json.return_value = payload or {}
    if status_code >= 400:
        response.raise_for_status.side_effect = requests.HTTPError(f"{status_code} error")
    return response


@pytest.fixture
def session():
    mock = MagicMock(spec=requests.Session)
    mock.post.return_value = fake_response(payload={"access_token": "TOKEN", "expires_in": 3600})
    return mock


@pytest.fixture
def client(session):
    return PayPalClient("client-id", "secret", "sandbox", session=session)


def test_environment_selects_base_url():
    assert PayPalClient("a", "b", "sandbox").base_url == SANDBOX_BASE_URL
    assert PayPalClient("a", "b", "live").base_url == LIVE_BASE_URL


def test_access_token_is_cached(client, session):
    assert client.get_access_token() == "TOKEN"
    assert client.get_access_token() == "TOKEN"
    assert session.post.call_count == 1


def test_missing_credentials_raise():
    with pytest.raises(PayPalError):
        PayPalClient("", "").get_access_token()


def test_create_order_sends_discount_breakdown(client, session):
    session.request.return_value = fake_response(
        payload={
            "id": "PP-1",
            "status": "CREATED",
            "links": [{"rel": "approve", "href": "https://paypal.example/approve"}],
        }
    )
    order = {
        "_id": "abc123",
        "order_number": "PD-2025-001",
        "total_promo_discount": 5.0,
        "items": [{"product_name": "Card", "product_id": "p1", "quantity": 2, "unit_price": 10.0}],
    }

    created = client.create_order(order, "https://shop/ok", "https://shop/cancel")

    assert created == {"id": "PP-1", "status": "CREATED", "approvalUrl": "https://paypal.example/approve"}
    payload = session.request.call_args.kwargs["json"]
    unit = payload["purchase_units"][0]
    assert unit["amount"]["value"] == "15.00"
    assert unit["amount"]["breakdown"]["discount"]["value"] == "5.00"
    assert unit["custom_id"] == "abc123"


def test_capture_extracts_capture_details(client, session):
    session.request.return_value = fake_response(
        payload={
            "id": "PP-1",
            "status": "COMPLETED",
            "purchase_units": [
                {"payments": {"captures": [{"id": "CAP-1", "status": "COMPLETED", "amount": {"value": "15.00"}}]}}
            ],
            "payer": {"payer_id": "P1", "email_address": "buyer@example.com", "name": {"given_name": "Sara", "surname": "Ali"}},
        }
    )
    capture = client.capture_order("PP-1")
    assert capture["captureId"] == "CAP-1"
    assert capture["payer"]["name"] == "Sara Ali"


def test_refund_failure_is_reported_not_raised(client, session):
    session.request.return_value = fake_response(422, {"message": "Capture already refunded"})
    refund = client.refund_capture("CAP-1", 15.0)
    assert refund["success"] is False
    assert refund["error"] == "Capture already refunded"


def test_webhook_verification_skipped_without_webhook_id(client, session):
    assert client.verify_webhook_signature({}, {"id": "WH-1"}) is True
    session.request.assert_not_called()


def test_refund_retries_reuse_the_request_id(client, session):
    session.request.return_value = fake_response(payload={"id": "REFUND-1", "status": "COMPLETED"})

    client.refund_capture("CAP-1", 15.0, request_id="refund-order-1")
    client.refund_capture("CAP-1", 15.0, request_id="refund-order-1")
    client.refund_capture("CAP-2")

    request_ids = [call.kwargs["headers"]["PayPal-Request-Id"] for call in session.request.call_args_list]
    assert request_ids == ["refund-order-1", "refund-order-1", "refund-CAP-2"]
