import io
import time
from datetime import datetime, timedelta
from unittest.mock import patch

from itsdangerous import TimestampSigner

from delivery import download_serializer

from conftest import auth_headers, create_order, make_design_file, make_product, make_user

API_BASE_URL = "https://api.example.com"


def completed_free_order(client, db, headers, **file_overrides):
    product = make_product(db, price=0.0, final_price=0.0)
    design_file = make_design_file(db, product, **file_overrides)
    order = create_order(client, headers, [{"productId": str(product["_id"])}]).get_json()["order"]
    client.post("/api/orders/complete-free-order", json={"orderId": order["id"]}, headers=headers)
    return order, design_file


def download(client, design_file, headers):
    return client.get(f"/api/design-files/{design_file['_id']}/download", headers=headers)


def test_owner_can_download_and_count_is_recorded(client, db, customer_headers):
    order, design_file = completed_free_order(client, db, customer_headers)

    response = download(client, design_file, customer_headers)

    assert response.status_code == 200
    body = response.get_json()
    assert body["downloadUrl"].startswith(
        f"https://api.example.com/api/design-files/{design_file['_id']}/file?token="
    )

    assert body["fileName"] == "design.zip"
    access = db.order_design_files.find_one({"design_file_id": design_file["_id"]})
    assert access["download_count"] == 1
    assert access["first_downloaded_at"] is not None


def test_stranger_gets_forbidden(app, client, db, customer_headers):
    _, design_file = completed_free_order(client, db, customer_headers)
    make_user(db, "stranger@example.com")
    response = download(client, design_file, auth_headers(app, "stranger@example.com"))
    assert response.status_code == 403


def test_expired_file_is_gone(client, db, customer_headers):
    _, design_file = completed_free_order(
        client, db, customer_headers, expires_at=datetime.utcnow() - timedelta(days=1)
    )
    assert download(client, design_file, customer_headers).status_code == 410


def test_download_limit_is_enforced(client, db, customer_headers):
    _, design_file = completed_free_order(client, db, customer_headers, max_downloads=1)
    assert download(client, design_file, customer_headers).status_code == 200
    assert download(client, design_file, customer_headers).status_code == 429


def test_cancelled_order_loses_access(client, db, customer_headers, admin_headers):
    order, design_file = completed_free_order(client, db, customer_headers)
    client.delete(f"/api/admin/orders/{order['id']}", json={}, headers=admin_headers)
    assert download(client, design_file, customer_headers).status_code == 403


def test_unknown_file_is_not_found(client, customer_headers):
    response = client.get("/api/design-files/000000000000000000000000/download", headers=customer_headers)
    assert response.status_code == 404


def link_path(download_url):
    assert download_url.startswith(API_BASE_URL)
    return download_url[len(API_BASE_URL):]


def test_signed_link_redirects_to_hosted_file(client, db, customer_headers):
    _, design_file = completed_free_order(client, db, customer_headers)
    download_url = download(client, design_file, customer_headers).get_json()["downloadUrl"]

    response = client.get(link_path(download_url))

    assert response.status_code == 302
    assert response.headers["Location"] == design_file["file_url"]


def test_forged_link_is_rejected(client, db, customer_headers):
    _, design_file = completed_free_order(client, db, customer_headers)
    url = f"/api/design-files/{design_file['_id']}/file"

    assert client.get(url).status_code == 403
    assert client.get(f"{url}?token=bogus").status_code == 403


def test_link_for_another_file_is_rejected(app, client, db, customer_headers):
    _, design_file = completed_free_order(client, db, customer_headers)
    other = make_design_file(db, make_product(db, name="Other"))
    token = download_serializer(app.config["JWT_SECRET_KEY"]).dumps({"file": str(other["_id"])})

    response = client.get(f"/api/design-files/{design_file['_id']}/file?token={token}")
    assert response.status_code == 403


def test_link_older_than_a_day_is_gone(app, client, db, customer_headers):
    _, design_file = completed_free_order(client, db, customer_headers)
    issued = int(time.time()) - int(timedelta(hours=25).total_seconds())
    with patch.object(TimestampSigner, "get_timestamp", return_value=issued):
        token = download_serializer(app.config["JWT_SECRET_KEY"]).dumps({"file": str(design_file["_id"])})

    response = client.get(f"/api/design-files/{design_file['_id']}/file?token={token}")
    assert response.status_code == 410


def test_uploaded_order_file_is_only_served_through_signed_link(
    client, db, customer_headers, admin_headers
):
    product = make_product(db, enable_customizations=True)
    order = create_order(
        client, customer_headers, [{"productId": str(product["_id"]), "hasCustomizations": True}]
    ).get_json()["order"]
    db.orders.update_one({"order_number": order["orderNumber"]}, {"$set": {"payment_status": "paid"}})
    uploaded = client.post(
        f"/api/admin/orders/{order['id']}/upload-files",
        data={"file": (io.BytesIO(b"secret-design"), "final.pdf"), "productId": str(product["_id"])},
        content_type="multipart/form-data",
        headers=admin_headers,
    ).get_json()["designFile"]

    assert client.get(uploaded["fileUrl"]).status_code == 404

    link = client.get(f"/api/design-files/{uploaded['id']}/download", headers=customer_headers)
    assert link.status_code == 200
    response = client.get(link_path(link.get_json()["downloadUrl"]))
    assert response.status_code == 200
    assert response.get_data() == b"secret-design"
    response.close()
