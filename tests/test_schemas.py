from decimal import Decimal

import pytest

from storefront.errors import ValidationError
from storefront.schemas import (
    AddressInput,
    CartLine,
    CheckoutRequest,
    ProductFilters,
    ProductInput,
    TaxonomyInput,
    sanitize_text,
)


def _billing(**overrides):
    payload = {
        "first_name": "Ada",
        "last_name": "Lovelace",
        "address_line1": "Main Street 1",
        "city": "Berlin",
        "postal_code": "10115",
        "country": "de",
        "phone": "+49 30 123456",
    }
    payload.update(overrides)
    return payload


def _checkout(**overrides):
    payload = {
        "cart_items": [{"product_id": 1, "quantity": 2}],
        "billing_address": _billing(),
        "payment_method": "card",
        "guest_email": "Guest@Example.com",
    }
    payload.update(overrides)
    return payload


def test_sanitize_text_strips_markup():
    assert sanitize_text("  <script>alert(1)</script>Hello ") == "alert(1)Hello"
    assert sanitize_text("   ") is None
    assert sanitize_text("abcdef", max_length=3) == "abc"
    assert sanitize_text(None) is None


def test_cart_lines_parse_and_validate():
    assert CartLine.list_from_payload([{"product_id": "3", "quantity": 1}]) == [CartLine(3, 1)]

    with pytest.raises(ValidationError) as exc_info:
        CartLine.list_from_payload([{"product_id": 1, "quantity": 0}, "x", {"quantity": 1.5}])
    errors = exc_info.value.errors
    assert set(errors) == {
        "cart_items.0.quantity",
        "cart_items.1",
        "cart_items.2.product_id",
        "cart_items.2.quantity",
    }


@pytest.mark.parametrize("payload", [None, [], {}, "1,2"])
def test_empty_cart_is_rejected(payload):
    with pytest.raises(ValidationError) as exc_info:
        CartLine.list_from_payload(payload)
    assert "cart_items" in exc_info.value.errors


def test_address_requires_fields_and_normalises_country():
    address = AddressInput.from_payload(_billing(country="deu", company="<i>ACME</i>"))
    assert address.country == "DE"
    assert address.company == "ACME"

    with pytest.raises(ValidationError) as exc_info:
        AddressInput.from_payload(_billing(city="", phone=None), "shipping_address")
    assert set(exc_info.value.errors) == {"shipping_address.city", "shipping_address.phone"}


def test_checkout_request_builds_typed_records():
    request = CheckoutRequest.from_payload(_checkout(notes="<b>Leave at door</b>"), ip_address="1.2.3.4", user_agent="pytest")

    assert request.cart_items == [CartLine(1, 2)]
    assert request.order.guest_email == "guest@example.com"
    assert request.order.notes == "Leave at door"
    assert request.order.ip_address == "1.2.3.4"
    assert request.shipping_address is None
    assert request.billing_address.city == "Berlin"


def test_checkout_request_collects_all_field_errors():
    with pytest.raises(ValidationError) as exc_info:
        CheckoutRequest.from_payload(
            _checkout(cart_items=[], billing_address={"first_name": "Ada"}, payment_method="", guest_email="nope")
        )
    errors = exc_info.value.errors
    assert "cart_items" in errors
    assert "billing_address.city" in errors
    assert "payment_method" in errors
    assert errors["guest_email"] == "Invalid email address"


def test_guest_email_required_only_for_guests():
    payload = _checkout()
    del payload["guest_email"]

    with pytest.raises(ValidationError) as exc_info:
        CheckoutRequest.from_payload(payload)
    assert "guest_email" in exc_info.value.errors

    request = CheckoutRequest.from_payload(payload, user_id=5)
    assert request.order.user_id == 5
    assert request.order.guest_email is None


def test_checkout_body_must_be_an_object():
    with pytest.raises(ValidationError):
        CheckoutRequest.from_payload(["not", "a", "dict"])


def test_product_filters_parse_query_args():
    filters = ProductFilters.from_args(
        {"category_id": "3", "min_price": "10.5", "is_available": "1", "is_featured": "1", "sort": "price", "order": "ASC"}
    )

    assert filters.category_id == 3
    assert filters.min_price == Decimal("10.5")
    assert filters.is_available is True
    assert filters.is_featured is True
    assert filters.sort == "price"
    assert filters.descending is False


def test_product_filters_fall_back_to_newest_first():
    filters = ProductFilters.from_args({"sort": "productID; DROP TABLE", "is_available": ""})
    assert filters.sort == "created_at"
    assert filters.descending is True
    assert filters.is_available is None


def test_product_filters_report_every_bad_arg():
    with pytest.raises(ValidationError) as exc_info:
        ProductFilters.from_args({"brand_id": "x", "max_price": "-1", "is_available": "sometimes"})
    assert set(exc_info.value.errors) == {"brand_id", "max_price", "is_available"}


def test_product_input_create_requires_core_fields():
    with pytest.raises(ValidationError) as exc_info:
        ProductInput.from_payload({"name": "<i></i>", "stock_quantity": -2})
    assert exc_info.value.errors == {
        "name": "Required",
        "sku": "Required",
        "base_price": "Required",
        "stock_quantity": "Must be a non-negative integer",
    }


def test_product_input_partial_keeps_only_sent_fields():
    data = ProductInput.from_payload({"stock_quantity": 0, "brand_id": None, "is_featured": "yes"}, partial=True)

    assert data.provided == {"stock_quantity", "brand_id", "is_featured"}
    assert data.values == {"stock_quantity": 0, "brand_id": None, "is_featured": True}


def test_product_input_partial_rejects_blanked_name():
    with pytest.raises(ValidationError) as exc_info:
        ProductInput.from_payload({"name": "  "}, partial=True)
    assert exc_info.value.errors == {"name": "Required"}


def test_taxonomy_input_validates_flags_and_order():
    with pytest.raises(ValidationError) as exc_info:
        TaxonomyInput.from_payload({"name": "Tablets", "is_active": "perhaps", "sort_order": "-1"})
    assert set(exc_info.value.errors) == {"is_active", "sort_order"}

    with pytest.raises(ValidationError):
        TaxonomyInput.from_payload({}, partial=True)
