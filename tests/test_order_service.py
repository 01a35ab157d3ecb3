from datetime import datetime, timezone
from decimal import Decimal

import pytest

from conftest import address, guest_order_input
from storefront.errors import AuthorizationError, NotFoundError, StockUnavailable, ValidationError
from storefront.models import Address, Order, OrderItem, OrderStatus, PaymentStatus
from storefront.observability import get_counter_value
from storefront.schemas import CartLine, OrderInput
from storefront.services.order_service import (
    OrderService,
    calculate_totals,
    generate_guest_token,
    verify_guest_token,
)


def test_calculate_totals_rounds_each_step(order_settings):
    totals = calculate_totals([Decimal("45.00") * 2, Decimal("12.50")], order_settings)

    assert totals.subtotal == Decimal("102.50")
    assert totals.tax == Decimal("19.48")
    assert totals.shipping == Decimal("0.00")
    assert totals.total == Decimal("121.98")


def test_free_shipping_threshold_is_inclusive(order_settings):
    assert calculate_totals([Decimal("100.00")], order_settings).shipping == Decimal("0.00")
    below = calculate_totals([Decimal("99.99")], order_settings)
    assert below.shipping == Decimal("9.99")
    assert below.total == Decimal("128.98")


def test_create_order_persists_snapshot_and_totals(db_session, products, place_order):
    phone, case = products
    _, receipt = place_order([(phone.productID, 2), (case.productID, 1)])

    order = db_session.get(Order, receipt.order_id)
    assert OrderStatus(order.status) == OrderStatus.PENDING
    assert PaymentStatus(order.payment_status) == PaymentStatus.UNPAID
    assert order.subtotal == Decimal("102.50")
    assert order.total == Decimal("121.98")
    assert order.guest_email == "guest@example.com"
    assert order.billingAddressID == order.shippingAddressID

    items = {item.productID: item for item in order.items}
    assert items[phone.productID].price == Decimal("45.00")
    assert items[phone.productID].subtotal == Decimal("90.00")
    assert items[phone.productID].vendor_article_id == "1028-131512_BR001"
    assert items[case.productID].quantity == 1

    assert receipt.total == Decimal("121.98")
    assert receipt.guest_token == generate_guest_token(order.order_number, "guest@example.com", "test-app-key")
    assert {line["product_id"] for line in receipt.items_for_reservation} == {phone.productID, case.productID}
    assert get_counter_value("orders_created_total") == 1


def test_order_item_prices_are_frozen_at_checkout(db_session, products, place_order):
    phone, _ = products
    _, receipt = place_order([(phone.productID, 1)])

    phone.price = Decimal("999.00")
    db_session.commit()

    item = db_session.query(OrderItem).filter_by(orderID=receipt.order_id).one()
    assert item.price == Decimal("45.00")


def test_separate_shipping_address_is_stored(db_session, products, vendor, order_settings):
    service = OrderService(db_session, vendor, settings=order_settings)
    receipt = service.create_order(
        guest_order_input(),
        [CartLine(products[1].productID, 1)],
        address(),
        address(city="Hamburg", postal_code="20095"),
    )
    order = db_session.get(Order, receipt.order_id)
    assert order.billing_address.city == "Berlin"
    assert order.shipping_address.city == "Hamburg"


@pytest.mark.parametrize(
    "lines",
    [
        [(999, 1)],
        [("phone", 6)],
        [("phone", 3), ("phone", 3)],
    ],
)
def test_stock_problems_write_nothing(db_session, products, place_order, lines):
    phone, _ = products
    resolved = [(phone.productID if pid == "phone" else pid, qty) for pid, qty in lines]

    with pytest.raises(StockUnavailable):
        place_order(resolved)

    assert db_session.query(Order).count() == 0
    assert db_session.query(OrderItem).count() == 0
    assert db_session.query(Address).count() == 0


@pytest.mark.parametrize("failure_point", ["order_item", "commit"])
def test_failure_inside_transaction_rolls_back_every_row(db_session, products, place_order, monkeypatch, failure_point):
    phone, case = products

    def explode(*args, **kwargs):
        raise RuntimeError("disk full")

    if failure_point == "order_item":
        monkeypatch.setattr("storefront.services.order_service.OrderItem", explode)
    else:
        monkeypatch.setattr(db_session, "commit", explode)

    with pytest.raises(RuntimeError, match="disk full"):
        place_order([(phone.productID, 1), (case.productID, 2)])

    monkeypatch.undo()
    assert db_session.query(Order).count() == 0
    assert db_session.query(OrderItem).count() == 0
    assert db_session.query(Address).count() == 0
    assert get_counter_value("orders_created_total") == 0


def test_unavailable_product_is_rejected(db_session, products, place_order):
    phone, _ = products
    phone.is_available = False
    db_session.commit()

    with pytest.raises(StockUnavailable) as exc_info:
        place_order([(phone.productID, 1)])
    assert exc_info.value.product_id == phone.productID


def test_guest_checkout_requires_email(db_session, products, vendor, order_settings):
    service = OrderService(db_session, vendor, settings=order_settings)
    with pytest.raises(ValidationError):
        service.create_order(OrderInput(payment_method="card"), [CartLine(products[0].productID, 1)], address())


def test_registered_user_order_has_no_guest_token(db_session, products, vendor, order_settings):
    service = OrderService(db_session, vendor, settings=order_settings)
    receipt = service.create_order(
        OrderInput(payment_method="card", user_id=7),
        [CartLine(products[0].productID, 1)],
        address(),
    )
    assert receipt.guest_token is None
    assert service.get_order_for_customer(receipt.order_number, user_id=7).orderID == receipt.order_id
    with pytest.raises(AuthorizationError):
        service.get_order_for_customer(receipt.order_number, user_id=8)


def test_order_number_format_and_uniqueness(db_session, vendor, order_settings):
    service = OrderService(db_session, vendor, settings=order_settings)
    day = datetime(2024, 3, 5, tzinfo=timezone.utc)
    numbers = {service.generate_order_number(today=day) for _ in range(50)}

    assert len(numbers) == 50
    for number in numbers:
        assert number.startswith("SF240305")
        suffix = number[len("SF240305"):]
        assert len(suffix) == 6
        assert suffix == suffix.upper()
        int(suffix, 16)


def test_customer_access_by_email_or_token(db_session, products, place_order):
    service, receipt = place_order([(products[0].productID, 1)], email="Buyer@Example.com")
    order_number = receipt.order_number

    assert service.get_order_for_customer(order_number, guest_email="buyer@example.com").orderID == receipt.order_id
    assert service.get_order_for_customer(order_number, guest_token=receipt.guest_token).orderID == receipt.order_id
    with pytest.raises(AuthorizationError):
        service.get_order_for_customer(order_number, guest_email="other@example.com")
    with pytest.raises(AuthorizationError):
        service.get_order_for_customer(order_number, guest_token="0" * 64)
    with pytest.raises(NotFoundError):
        service.get_order_for_customer("SF000000ABCDEF", guest_email="buyer@example.com")


def test_guest_token_is_bound_to_order_and_email(db_session, products, place_order):
    _, receipt = place_order([(products[0].productID, 1)])
    order = db_session.get(Order, receipt.order_id)

    assert verify_guest_token(order, receipt.guest_token, "test-app-key")
    assert not verify_guest_token(order, receipt.guest_token, "another-key")
    assert not verify_guest_token(order, None, "test-app-key")
    assert generate_guest_token("SF1", "A@B.com", "k") == generate_guest_token("SF1", "a@b.com", "k")


def test_calculate_totals_for_cart_uses_live_prices(db_session, products, vendor, order_settings):
    service = OrderService(db_session, vendor, settings=order_settings)
    totals = service.calculate_totals([CartLine(products[1].productID, 2)])
    assert totals.to_dict() == {"subtotal": 25.0, "tax": 4.75, "shipping": 9.99, "total": 39.74}
