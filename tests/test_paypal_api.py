from conftest import create_order, make_design_file, make_product


def pending_order(client, db, headers, **product_overrides):
    product = make_product(db, **product_overrides)
    make_design_file(db, product)
    return create_order(client, headers, [{"productId": str(product["_id"])}]).get_json()["order"]


def start_checkout(client, headers, order):
    return client.post("/api/paypal/create-order", json={"orderId": order["id"]}, headers=headers)


def test_create_paypal_order_stores_reference(client, db, paypal, customer_headers):
    order = pending_order(client, db, customer_headers)
    response = start_checkout(client, customer_headers, order)

    assert response.status_code == 200
    body = response.get_json()
    assert body["paypalOrderId"] == "PAYPAL-ORDER-1"
    assert body["approvalUrl"].startswith("https://www.sandbox.paypal.com/")
    kwargs = paypal.create_order.call_args.kwargs
    assert kwargs["return_url"] == f"https://shop.example.com/checkout/success?orderId={order['id']}"
    assert db.orders.find_one({"order_number": order["orderNumber"]})["paypal_order_id"] == "PAYPAL-ORDER-1"


def test_free_order_does_not_go_to_paypal(client, db, paypal, customer_headers):
    order = pending_order(client, db, customer_headers, price=0.0, final_price=0.0)
    response = start_checkout(client, customer_headers, order)
    assert response.status_code == 400
    paypal.create_order.assert_not_called()


def test_capture_marks_paid_and_delivers(client, db, mailer, customer_headers):
    order = pending_order(client, db, customer_headers)
    start_checkout(client, customer_headers, order)

    response = client.post(
        "/api/paypal/capture-payment",
        json={"orderId": order["id"], "paypalOrderId": "PAYPAL-ORDER-1"},
        headers=customer_headers,
    )

    assert response.status_code == 200
    body = response.get_json()
    assert body["transactionId"] == "CAPTURE-1"
    assert body["order"]["paymentStatus"] == "paid"
    assert body["order"]["orderStatus"] == "completed"
    statuses = [entry["status"] for entry in body["order"]["orderHistory"]]
    assert statuses[:3] == ["pending", "paid", "completed"]
    mailer.send_order_completed.assert_called_once()
    mailer.send_admin_new_order.assert_called_once()
    assert db.products.find_one({})["purchase_count"] == 1


def test_capture_twice_is_idempotent(client, db, paypal, customer_headers):
    order = pending_order(client, db, customer_headers)
    start_checkout(client, customer_headers, order)
    payload = {"orderId": order["id"], "paypalOrderId": "PAYPAL-ORDER-1"}

    client.post("/api/paypal/capture-payment", json=payload, headers=customer_headers)
    second = client.post("/api/paypal/capture-payment", json=payload, headers=customer_headers)

    assert second.status_code == 200
    assert second.get_json()["message"] == "Order is already paid"
    assert paypal.capture_order.call_count == 1


def test_capture_with_mismatched_paypal_id(client, db, customer_headers):
    order = pending_order(client, db, customer_headers)
    start_checkout(client, customer_headers, order)
    response = client.post(
        "/api/paypal/capture-payment",
        json={"orderId": order["id"], "paypalOrderId": "SOMETHING-ELSE"},
        headers=customer_headers,
    )
    assert response.status_code == 400
    assert response.get_json()["error"] == "PayPal Order ID mismatch"


def test_failed_capture_records_history(client, db, paypal, customer_headers):
    paypal.capture_order.return_value = {"id": "PAYPAL-ORDER-1", "status": "PAYER_ACTION_REQUIRED", "payer": {}}
    order = pending_order(client, db, customer_headers)
    start_checkout(client, customer_headers, order)

    response = client.post(
        "/api/paypal/capture-payment",
        json={"orderId": order["id"], "paypalOrderId": "PAYPAL-ORDER-1"},
        headers=customer_headers,
    )

    assert response.status_code == 400
    stored = db.orders.find_one({"order_number": order["orderNumber"]})
    assert stored["payment_status"] == "failed"
    assert stored["order_history"][-1]["status"] == "payment_failed"


def webhook_event(event_id, event_type, paypal_order_id="PAYPAL-ORDER-1"):
    return {
        "id": event_id,
        "event_type": event_type,
        "resource": {
            "id": "CAPTURE-9",
            "supplementary_data": {"related_ids": {"order_id": paypal_order_id}},
        },
    }


def test_webhook_completes_payment_once(client, db, mailer, customer_headers):
    order = pending_order(client, db, customer_headers)
    start_checkout(client, customer_headers, order)
    event = webhook_event("WH-1", "PAYMENT.CAPTURE.COMPLETED")

    first = client.post("/api/paypal/webhook", json=event)
    second = client.post("/api/paypal/webhook", json=event)

    assert first.get_json()["processed"] is True
    assert second.get_json()["duplicate"] is True
    stored = db.orders.find_one({"order_number": order["orderNumber"]})
    assert stored["payment_status"] == "paid"
    assert stored["paypal_transaction_id"] == "CAPTURE-9"
    assert [entry["status"] for entry in stored["order_history"]].count("paid") == 1


def test_webhook_with_bad_signature_is_rejected(client, paypal):
    paypal.verify_webhook_signature.return_value = False
    response = client.post("/api/paypal/webhook", json=webhook_event("WH-2", "PAYMENT.CAPTURE.COMPLETED"))
    assert response.status_code == 400


def test_webhook_refund_marks_order_refunded(client, db, customer_headers):
    order = pending_order(client, db, customer_headers)
    start_checkout(client, customer_headers, order)
    client.post("/api/paypal/webhook", json=webhook_event("WH-3", "PAYMENT.CAPTURE.COMPLETED"))
    client.post("/api/paypal/webhook", json=webhook_event("WH-4", "PAYMENT.CAPTURE.REFUNDED"))

    stored = db.orders.find_one({"order_number": order["orderNumber"]})
    assert stored["payment_status"] == "refunded"
    assert stored["order_status"] == "refunded"


def test_reused_order_drops_stale_paypal_reference(client, db, paypal, customer_headers):
    product = make_product(db)
    make_design_file(db, product)
    order = create_order(client, customer_headers, [{"productId": str(product["_id"])}]).get_json()["order"]
    start_checkout(client, customer_headers, order)

    reused = create_order(client, customer_headers, [{"productId": str(product["_id"]), "quantity": 5}])
    assert reused.status_code == 200
    assert reused.get_json()["order"]["totalPrice"] == 50.0
    assert "paypal_order_id" not in db.orders.find_one({"order_number": order["orderNumber"]})

    response = client.post(
        "/api/paypal/capture-payment",
        json={"orderId": order["id"], "paypalOrderId": "PAYPAL-ORDER-1"},
        headers=customer_headers,
    )

    assert response.status_code == 400
    assert response.get_json()["error"] == "PayPal Order ID mismatch"
    paypal.capture_order.assert_not_called()
    assert db.orders.find_one({"order_number": order["orderNumber"]})["payment_status"] == "pending"


def test_capture_for_wrong_amount_is_not_marked_paid(client, db, paypal, mailer, customer_headers):
    order = pending_order(client, db, customer_headers, price=50.0, final_price=50.0)
    start_checkout(client, customer_headers, order)

    response = client.post(
        "/api/paypal/capture-payment",
        json={"orderId": order["id"], "paypalOrderId": "PAYPAL-ORDER-1"},
        headers=customer_headers,
    )

    assert response.status_code == 400
    assert response.get_json()["error"] == "Captured amount does not match order total"
    stored = db.orders.find_one({"order_number": order["orderNumber"]})
    assert stored["payment_status"] == "failed"
    assert stored["order_status"] == "pending"
    assert stored["order_history"][-1]["status"] == "payment_failed"
    mailer.send_order_completed.assert_not_called()


def test_webhook_with_short_amount_is_not_applied(client, db, customer_headers):
    order = pending_order(client, db, customer_headers)
    start_checkout(client, customer_headers, order)
    event = webhook_event("WH-5", "PAYMENT.CAPTURE.COMPLETED")
    event["resource"]["amount"] = {"currency_code": "USD", "value": "1.00"}

    response = client.post("/api/paypal/webhook", json=event)

    assert response.status_code == 200
    assert response.get_json()["processed"] is False
    stored = db.orders.find_one({"order_number": order["orderNumber"]})
    assert stored["payment_status"] == "failed"
