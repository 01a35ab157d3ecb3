from decimal import Decimal

import pytest

from storefront.models import AdminSession, Order, OrderStatus, Product


@pytest.fixture
def paid_order(db_session, products, place_order):
    service, receipt = place_order([(products[0].productID, 1)])
    service.process_payment_success(receipt.order_id)
    return receipt


# ---------------------------------------------
# Authentication
# ---------------------------------------------
def test_login_returns_bearer_token(client, db_session, admin_user):
    response = client.post("/admin/login", json={"username": "admin", "password": "s3cret-pass"})

    data = response.get_json()["data"]
    assert response.status_code == 200
    assert data["user"]["username"] == "admin"
    assert db_session.query(AdminSession).filter_by(token=data["token"]).count() == 1


@pytest.mark.parametrize(
    "credentials",
    [
        {"username": "admin", "password": "wrong-password"},
        {"username": "ghost", "password": "s3cret-pass"},
    ],
)
def test_login_failures_share_one_message(client, admin_user, credentials):
    response = client.post("/admin/login", json=credentials)
    assert response.status_code == 401
    assert response.get_json()["message"] == "Invalid credentials"


@pytest.mark.parametrize("payload", [{"username": 123, "password": "s3cret-pass"}, {"username": "admin", "password": 7}])
def test_login_with_non_string_credentials_is_a_validation_error(client, admin_user, payload):
    response = client.post("/admin/login", json=payload)
    assert response.status_code == 400
    assert response.get_json()["success"] is False


def test_login_is_rate_limited_after_three_attempts(client, admin_user):
    for _ in range(3):
        assert client.post("/admin/login", json={"username": "admin", "password": "nope-nope"}).status_code == 401

    response = client.post("/admin/login", json={"username": "admin", "password": "s3cret-pass"})

    assert response.status_code == 429
    assert response.headers["Retry-After"] == "900"


def test_successful_login_clears_failed_attempts(client, admin_user):
    for _ in range(2):
        client.post("/admin/login", json={"username": "admin", "password": "nope-nope"})
    assert client.post("/admin/login", json={"username": "admin", "password": "s3cret-pass"}).status_code == 200

    for _ in range(2):
        assert client.post("/admin/login", json={"username": "admin", "password": "nope-nope"}).status_code == 401


@pytest.mark.parametrize(
    "headers",
    [{}, {"Authorization": "Bearer not-a-token"}, {"Authorization": "Basic abc"}],
)
def test_admin_routes_require_bearer_token(client, headers):
    response = client.get("/admin/orders", headers=headers)
    assert response.status_code == 401
    assert response.get_json()["success"] is False


def test_logout_revokes_token(client, admin_headers):
    assert client.post("/admin/logout", headers=admin_headers).status_code == 200
    assert client.get("/admin/dashboard", headers=admin_headers).status_code == 401


# ---------------------------------------------
# Orders
# ---------------------------------------------
def test_dashboard_summarises_orders_and_products(client, admin_headers, paid_order):
    data = client.get("/admin/dashboard", headers=admin_headers).get_json()["data"]

    assert data["orders"]["total_orders"] == 1
    assert data["orders"]["by_status"]["reserved"] == 1
    assert data["orders"]["total_revenue"] == 63.54
    assert data["products"]["total_products"] == 2
    assert data["products"]["reserved_units"] == 1
    assert data["recent_orders"][0]["order_number"] == paid_order.order_number
    assert data["last_sync"] is None


def test_list_orders_filters_and_paginates(client, admin_headers, products, place_order, paid_order):
    place_order([(products[1].productID, 1)], email="second@example.com")

    everything = client.get("/admin/orders?page_size=1", headers=admin_headers).get_json()["data"]
    assert everything["pagination"]["total"] == 2
    assert everything["pagination"]["has_next"] is True
    assert len(everything["orders"]) == 1

    reserved = client.get("/admin/orders?status=reserved", headers=admin_headers).get_json()["data"]
    assert [o["order_number"] for o in reserved["orders"]] == [paid_order.order_number]

    searched = client.get("/admin/orders?search=second@", headers=admin_headers).get_json()["data"]
    assert searched["pagination"]["total"] == 1

    assert client.get("/admin/orders?status=lost", headers=admin_headers).status_code == 400


def test_order_detail_includes_internal_fields(client, admin_headers, paid_order):
    data = client.get(f"/admin/orders/{paid_order.order_id}", headers=admin_headers).get_json()["data"]

    assert data["status"] == "reserved"
    assert data["guest_email"] == "guest@example.com"
    assert data["reservations"][0]["status"] == "reserved"
    assert data["reservations"][0]["warehouse"] == "BR001"
    assert data["items"][0]["vendor_article_id"] == "1028-131512_BR001"


def test_status_update_and_invalid_transition(client, admin_headers, paid_order):
    url = f"/admin/orders/{paid_order.order_id}/status"

    ok = client.put(url, json={"status": "processing", "admin_notes": "Packed"}, headers=admin_headers)
    assert ok.status_code == 200
    assert ok.get_json()["data"]["admin_notes"] == "Packed"

    conflict = client.put(url, json={"status": "delivered"}, headers=admin_headers)
    assert conflict.status_code == 409

    missing = client.put(url, json={}, headers=admin_headers)
    assert missing.status_code == 400


def test_cancel_endpoint(client, db_session, vendor, admin_headers, paid_order):
    response = client.post(
        f"/admin/orders/{paid_order.order_id}/cancel",
        json={"reason": "Customer called"},
        headers=admin_headers,
    )

    assert response.status_code == 200
    assert response.get_json()["data"]["status"] == "cancelled"
    assert len(vendor.removed) == 1

    order = db_session.get(Order, paid_order.order_id)
    order.status = OrderStatus.SHIPPED
    db_session.commit()
    again = client.post(f"/admin/orders/{paid_order.order_id}/cancel", headers=admin_headers)
    assert again.status_code == 409


# ---------------------------------------------
# Pricing & settings
# ---------------------------------------------
def test_pricing_endpoints_reprice_catalogue(client, db_session, admin_headers, products, category, brand):
    phone, _ = products

    response = client.put("/admin/pricing/global", json={"markup_value": 15}, headers=admin_headers)
    assert response.status_code == 200
    assert response.get_json()["data"]["products_repriced"] == 2

    category_rule = client.put(
        f"/admin/pricing/category/{category.categoryID}",
        json={"markup_value": 20},
        headers=admin_headers,
    ).get_json()["data"]
    client.put(
        f"/admin/pricing/brand/{brand.brandID}",
        json={"markup_value": 5, "markup_type": "fixed"},
        headers=admin_headers,
    )

    rules = client.get("/admin/pricing", headers=admin_headers).get_json()["data"]
    assert {rule["rule_type"] for rule in rules} == {"global", "category", "brand"}

    db_session.expire_all()
    assert db_session.get(Product, phone.productID).price == Decimal("54.00")

    deleted = client.delete(f"/admin/pricing/rules/{category_rule['id']}", headers=admin_headers)
    assert deleted.status_code == 200
    db_session.expire_all()
    assert db_session.get(Product, phone.productID).price == Decimal("50.00")

    recalculated = client.post("/admin/pricing/recalculate", headers=admin_headers).get_json()["data"]
    assert recalculated == {"products_updated": 0}


def test_pricing_validation(client, admin_headers, category):
    assert client.put("/admin/pricing/global", json={}, headers=admin_headers).status_code == 400
    assert client.put("/admin/pricing/global", json={"markup_value": "x"}, headers=admin_headers).status_code == 400
    assert client.put("/admin/pricing/category/999", json={"markup_value": 5}, headers=admin_headers).status_code == 404


def test_settings_roundtrip(client, admin_headers):
    response = client.put(
        "/admin/settings",
        json={"shipping_cost": 4.95, "order_notification_email": "ops@example.com"},
        headers=admin_headers,
    )
    assert response.status_code == 200

    settings = client.get("/admin/settings", headers=admin_headers).get_json()["data"]
    assert settings["shipping_cost"] == 4.95
    assert settings["order_notification_email"] == "ops@example.com"

    public = client.get("/settings/public").get_json()["data"]
    assert public["shipping_cost"] == 4.95
    assert "order_notification_email" not in public

    assert client.put("/admin/settings", json={"nope": 1}, headers=admin_headers).status_code == 400


# ---------------------------------------------
# Vendor jobs & metrics
# ---------------------------------------------
def test_product_sync_and_status(client, vendor, admin_headers):
    vendor.stock = [{"id": "NEW-1_BR002", "name": "Pixel 9", "price": "500", "stock": 3}]

    response = client.post("/admin/sync/products", headers=admin_headers)
    assert response.status_code == 200
    assert response.get_json()["data"]["added"] == 1

    status = client.get("/admin/sync/status", headers=admin_headers).get_json()["data"]
    assert status["status"] == "completed"
    assert status["products_synced"] == 1


def test_vendor_sales_order_endpoint(client, vendor, admin_headers, paid_order):
    response = client.post("/admin/vendor/create-sales-order", headers=admin_headers)

    data = response.get_json()["data"]
    assert response.status_code == 200
    assert data["success"] is True
    assert data["orders_processed"] == 1
    assert data["processed_orders"] == [paid_order.order_number]

    again = client.post("/admin/vendor/create-sales-order", headers=admin_headers).get_json()["data"]
    assert again["orders_processed"] == 0


def test_metrics_snapshot_is_admin_only(client, admin_headers):
    assert client.get("/admin/metrics").status_code == 401

    data = client.get("/admin/metrics", headers=admin_headers).get_json()["data"]
    assert "http_requests_total" in data["counters"]
    assert "events" in data
