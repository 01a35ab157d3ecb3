import pytest

from conftest import make_product
from storefront.errors import CarrierApiError
from storefront.models import Order, OrderStatus, ProductSource

ADDRESS = {
    "first_name": "Ada",
    "last_name": "Lovelace",
    "address_line1": "Main Street 1",
    "city": "Berlin",
    "postal_code": "10115",
    "country": "DE",
    "phone": "+49 30 123456",
}


@pytest.fixture
def processing_order(db_session, category, place_order):
    product = make_product(db_session, "OWN-HUB", "39.00", stock=3, category=category, product_source=ProductSource.OWN)
    service, receipt = place_order([(product.productID, 1)], email="buyer@example.com")
    service.process_payment_success(receipt.order_id)
    return receipt


def _ship(client, admin_headers, order_id, **payload):
    return client.post(f"/admin/orders/{order_id}/tracking", json=payload, headers=admin_headers)


def test_admin_records_tracking_and_ships_order(client, admin_headers, db_session, processing_order):
    response = _ship(client, admin_headers, processing_order.order_id, tracking_number="1Z999AA10123456784")

    data = response.get_json()["data"]
    assert response.status_code == 200
    assert data["status"] == "shipped"
    assert data["tracking_number"] == "1Z999AA10123456784"
    assert data["shipping_carrier"] == "UPS"
    assert data["shipped_at"] is not None
    assert OrderStatus(db_session.get(Order, processing_order.order_id).status) == OrderStatus.SHIPPED


def test_admin_tracking_requires_number(client, admin_headers, processing_order):
    response = _ship(client, admin_headers, processing_order.order_id, carrier="DHL")
    assert response.status_code == 400
    assert response.get_json()["errors"] == {"tracking_number": "Required"}


def test_admin_cannot_ship_unpaid_order(client, admin_headers, products, place_order):
    _, receipt = place_order([(products[0].productID, 1)])
    response = _ship(client, admin_headers, receipt.order_id, tracking_number="1Z1")
    assert response.status_code == 409


def test_customer_tracking_before_shipment_is_not_found(client, processing_order):
    response = client.get(f"/orders/{processing_order.order_number}/tracking?email=buyer@example.com")
    assert response.status_code == 404
    assert response.get_json()["message"] == "No tracking information available for this order"


def test_customer_tracking_after_shipment(client, admin_headers, carrier, processing_order):
    _ship(client, admin_headers, processing_order.order_id, tracking_number="1Z-LIVE", carrier="UPS")

    response = client.get(
        f"/orders/{processing_order.order_number}/tracking",
        headers={"X-Guest-Token": processing_order.guest_token},
    )

    data = response.get_json()["data"]
    assert response.status_code == 200
    assert data["tracking_number"] == "1Z-LIVE"
    assert data["status_description"] == "In Transit"
    assert carrier.tracked == ["1Z-LIVE"]


def test_customer_tracking_checks_access(client, admin_headers, processing_order):
    _ship(client, admin_headers, processing_order.order_id, tracking_number="1Z-LIVE")
    response = client.get(f"/orders/{processing_order.order_number}/tracking?email=someone@example.com")
    assert response.status_code == 403


def test_admin_raw_tracking_lookup_surfaces_carrier_errors(client, admin_headers, carrier):
    carrier.outcomes["BAD"] = CarrierApiError("Carrier API error: Invalid tracking number")
    response = client.get("/admin/shipping/track/BAD", headers=admin_headers)
    assert response.status_code == 502
    assert response.get_json()["success"] is False


def test_shipping_quote(client, products):
    phone, _ = products
    response = client.post(
        "/shipping/calculate",
        json={"shipping_address": ADDRESS, "items": [{"product_id": phone.productID, "quantity": 1}]},
    )

    data = response.get_json()["data"]
    assert response.status_code == 200
    assert data["shipping_cost"] == 9.99
    assert data["service_type"] == "ground"
    assert data["currency"] == "EUR"


def test_shipping_quote_validates_input(client, products):
    response = client.post("/shipping/calculate", json={"items": []})
    assert response.status_code == 400
    assert "shipping_address" in response.get_json()["errors"]
