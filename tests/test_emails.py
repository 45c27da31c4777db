from datetime import datetime
from unittest.mock import patch

import pytest
import resend

from emails import Mailer, build_email_html, send_email_via_resend


@pytest.fixture
def resend_send():
    with patch("resend.Emails.send", return_value={"id": "email-1"}) as send:
        yield send


@pytest.fixture
def mailer():
    return Mailer("re_test_key", "orders@example.com", "https://shop.example.com/", "owner@example.com")


def order(**overrides):
    document = {
        "_id": "order-1",
        "order_number": "PD-2025-001",
        "customer_email": "sara@example.com",
        "customer_name": "Sara",
        "total_price": 25.0,
        "items": [{"product_name": "Logo", "quantity": 1, "total_price": 25.0}],
    }
    document.update(overrides)
    return document


def test_missing_api_key_is_reported_without_sending(resend_send):
    assert send_email_via_resend({"to": ["a@example.com"]}, "  ") == (False, "Resend API key is not configured.")
    resend_send.assert_not_called()


def test_send_restores_previous_api_key(resend_send):
    resend.api_key = "previous"
    try:
        assert send_email_via_resend({"to": ["a@example.com"]}, "re_key") == (True, None)
        assert resend.api_key == "previous"
    finally:
        resend.api_key = None


def test_transport_error_is_returned(resend_send):
    resend_send.side_effect = RuntimeError("connection reset")
    assert send_email_via_resend({}, "re_key") == (False, "connection reset")


def test_response_without_id_is_a_failure(resend_send):
    resend_send.return_value = {"message": "domain not verified"}
    sent, error = send_email_via_resend({}, "re_key")
    assert sent is False
    assert "domain not verified" in error


def test_html_escapes_customer_text():
    html = build_email_html(
        "<b>Title</b>",
        ["<script>alert(1)</script>"],
        [{"fileName": "<img src=x>", "url": 'https://x.example.com/a"b'}],
    )
    assert "<script>" not in html
    assert "&lt;script&gt;alert(1)&lt;/script&gt;" in html
    assert "&lt;b&gt;Title&lt;/b&gt;" in html
    assert 'href="https://x.example.com/a&quot;b"' in html
    assert 'dir="rtl"' in html


def test_missing_recipient_is_not_sent(mailer, resend_send):
    assert mailer.send("", "Subject", "<p></p>", "") == (False, "Missing recipient email.")
    resend_send.assert_not_called()


def test_completed_email_lists_download_links(mailer, resend_send):
    links = [{"fileName": "logo.zip", "url": "https://api.example.com/file?token=abc"}]
    sent, _ = mailer.send_order_completed(order(download_expiry=datetime(2025, 7, 1)), links)

    assert sent is True
    payload = resend_send.call_args.args[0]
    assert payload["from"] == "orders@example.com"
    assert payload["to"] == ["sara@example.com"]
    assert payload["subject"] == "تم إكمال الطلب - PD-2025-001"
    assert "logo.zip: https://api.example.com/file?token=abc" in payload["text"]
    assert "2025-07-01" in payload["text"]


def test_free_order_email_uses_free_subject(mailer, resend_send):
    mailer.send_order_completed(order(), [], is_free=True)
    assert resend_send.call_args.args[0]["subject"] == "تم قبول الطلب المجاني - PD-2025-001"


def test_customer_name_is_escaped_in_completed_email(mailer, resend_send):
    mailer.send_order_completed(order(customer_name="<script>x</script>"), [])
    html = resend_send.call_args.args[0]["html"]
    assert "<script>x</script>" not in html
    assert "&lt;script&gt;x&lt;/script&gt;" in html


def test_cancelled_email_mentions_refund_only_when_refunded(mailer, resend_send):
    mailer.send_order_cancelled(order(), "Out of stock", 25.0)
    refunded_text = resend_send.call_args.args[0]["text"]
    mailer.send_order_cancelled(order())
    plain_text = resend_send.call_args.args[0]["text"]

    assert "$25.00" in refunded_text
    assert "السبب: Out of stock" in refunded_text
    assert "PayPal" not in plain_text


def test_customization_email_links_to_order(mailer, resend_send):
    mailer.send_customization_processing(order())
    assert "https://shop.example.com/orders/order-1" in resend_send.call_args.args[0]["text"]


def test_admin_notification_needs_an_address(resend_send):
    quiet = Mailer("re_test_key", "orders@example.com")
    assert quiet.send_admin_new_order(order()) == (False, "Admin notification email is not configured.")
    resend_send.assert_not_called()


def test_admin_notification_summarizes_items(mailer, resend_send):
    mailer.send_admin_new_order(order())
    payload = resend_send.call_args.args[0]
    assert payload["to"] == ["owner@example.com"]
    assert "Logo x1 ($25.00)" in payload["text"]


def test_failed_send_is_reported_to_caller(mailer, resend_send):
    resend_send.side_effect = RuntimeError("rate limited")
    assert mailer.send_custom_message(order(), "Update", "line one\nline two") == (False, "rate limited")
