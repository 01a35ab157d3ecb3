# tests/conftest.py
"""
Shared fixtures: a throwaway SQLite database, catalogue rows, stub vendor and
carrier clients and an authenticated admin test client.
"""

import os
import tempfile
from decimal import Decimal

import pytest

# Must be set before anything under storefront is imported
_TEST_DIR = tempfile.mkdtemp(prefix="storefront-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_TEST_DIR, 'test.db')}"
os.environ["RATE_LIMIT_STORE_PATH"] = os.path.join(_TEST_DIR, "rate_limit_cache.json")
os.environ["STRUCTURED_LOGS_ENABLED"] = "false"
os.environ["VENDOR_API_LOGGING_ENABLED"] = "false"
os.environ["FLASK_DEBUG"] = "false"
os.environ["APP_ENV"] = "testing"
os.environ["APP_KEY"] = "test-app-key"
os.environ["TAX_RATE_PERCENT"] = "19.0"
os.environ["FREE_SHIPPING_THRESHOLD"] = "100.00"
os.environ["SHIPPING_COST"] = "9.99"

from storefront.database import Base, SessionLocal, engine  # noqa: E402
from storefront.models import (  # noqa: E402
    Brand,
    Category,
    MarkupType,
    PricingRule,
    PricingRuleType,
    Product,
    ProductSource,
)
from storefront.observability import reset_metrics  # noqa: E402
from storefront.schemas import AddressInput, CartLine, OrderInput  # noqa: E402
from storefront.services.rate_limiter import RateLimiter  # noqa: E402
from storefront.services.settings_service import OrderSettings  # noqa: E402


class StubVendorClient:
    """Stands in for VendorApiClient; records calls and returns canned responses."""

    def __init__(self):
        self.reserve_calls = []
        self.removed = []
        self.sales_orders = []
        # vendor_article_id -> response dict or exception instance
        self.reserve_outcomes = {}
        self.remove_outcome = {"status": "ok"}
        # vendor reservation ids whose sales order the vendor rejects
        self.rejected_reservations = set()
        self.stock = []
        self._next_id = 1000

    def reserve_article(self, gensoft_id, warehouse, amount):
        self.reserve_calls.append((gensoft_id, warehouse, amount))
        outcome = self.reserve_outcomes.get(gensoft_id)
        if isinstance(outcome, Exception):
            raise outcome
        if outcome is not None:
            return outcome
        self._next_id += 1
        return {"status": "ok", "ReturnVal": f"RES-{self._next_id}"}

    def remove_reserved_article(self, reservation_id):
        self.removed.append(reservation_id)
        if isinstance(self.remove_outcome, Exception):
            raise self.remove_outcome
        return self.remove_outcome

    def create_sales_order(self, reservations, pay_with="Wire", insurance="no"):
        reservations = list(reservations)
        self.sales_orders.append({"reservations": reservations, "pay_with": pay_with, "insurance": insurance})
        if self.rejected_reservations.intersection(reservations):
            return {"error": 1, "error_msg": "Reservation expired"}
        return {"status": "ok", "ReturnVal": f"VO-{len(self.sales_orders)}"}

    def get_current_stock(self, selected_type="Array"):
        if isinstance(self.stock, Exception):
            raise self.stock
        return self.stock

    def check_health(self):
        return True


class StubCarrierClient:
    """Stands in for UpsTrackingClient; returns canned tracking per number."""

    def __init__(self):
        self.tracked = []
        # tracking number -> tracking dict or exception instance
        self.outcomes = {}

    def track(self, tracking_number):
        self.tracked.append(tracking_number)
        outcome = self.outcomes.get(tracking_number)
        if isinstance(outcome, Exception):
            raise outcome
        if outcome is not None:
            return dict(outcome)
        return {
            "tracking_number": tracking_number,
            "status": "i",
            "status_description": "In Transit",
            "carrier": "UPS",
            "estimated_delivery": "20261024",
            "delivered": False,
            "delivered_at": None,
            "activities": [],
        }


@pytest.fixture(autouse=True)
def fresh_schema():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    reset_metrics()
    yield


@pytest.fixture
def db_session():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def vendor():
    return StubVendorClient()


@pytest.fixture
def carrier():
    return StubCarrierClient()


@pytest.fixture
def order_settings():
    return OrderSettings(
        tax_rate_percent=Decimal("19.0"),
        free_shipping_threshold=Decimal("100.00"),
        shipping_cost=Decimal("9.99"),
        currency="EUR",
    )


@pytest.fixture
def category(db_session):
    category = Category(vendor_id="CAT-PHONES", name="Smartphones", slug="smartphones")
    db_session.add(category)
    db_session.commit()
    return category


@pytest.fixture
def brand(db_session):
    brand = Brand(vendor_id="BR-APPLE", name="Apple", slug="apple")
    db_session.add(brand)
    db_session.commit()
    return brand


def make_product(
    db_session, vendor_article_id, price, stock=10, category=None, brand=None, name=None, product_source=ProductSource.VENDOR
):
    product = Product(
        product_source=product_source,
        vendor_article_id=vendor_article_id,
        sku=f"SKU-{vendor_article_id}",
        name=name or f"Device {vendor_article_id}",
        slug=f"device-{vendor_article_id.lower().replace('_', '-')}",
        base_price=Decimal(str(price)),
        price=Decimal(str(price)),
        stock_quantity=stock,
        available_quantity=stock,
        reserved_quantity=0,
        is_available=stock > 0,
        categoryID=category.categoryID if category else None,
        brandID=brand.brandID if brand else None,
    )
    db_session.add(product)
    db_session.commit()
    return product


@pytest.fixture
def products(db_session, category, brand):
    phone = make_product(db_session, "1028-131512_BR001", "45.00", stock=5, category=category, brand=brand)
    case = make_product(db_session, "2044-000001", "12.50", stock=20, category=category)
    return phone, case


@pytest.fixture
def global_rule(db_session):
    rule = PricingRule(
        rule_type=PricingRuleType.GLOBAL,
        markup_type=MarkupType.PERCENTAGE,
        markup_value=Decimal("15.00"),
        priority=0,
        is_active=True,
    )
    db_session.add(rule)
    db_session.commit()
    return rule


def address(**overrides):
    values = {
        "first_name": "Ada",
        "last_name": "Lovelace",
        "address_line1": "Main Street 1",
        "city": "Berlin",
        "postal_code": "10115",
        "country": "DE",
        "phone": "+49 30 123456",
    }
    values.update(overrides)
    return AddressInput(**values)


def guest_order_input(email="guest@example.com"):
    return OrderInput(payment_method="card", guest_email=email)


@pytest.fixture
def place_order(db_session, vendor, order_settings):
    """Create an order through OrderService and return (service, receipt)."""
    from storefront.services.order_service import OrderService

    def _place(lines, email="guest@example.com"):
        service = OrderService(db_session, vendor, settings=order_settings)
        receipt = service.create_order(
            guest_order_input(email),
            [CartLine(product_id=pid, quantity=qty) for pid, qty in lines],
            address(),
        )
        return service, receipt

    return _place


# ---------------------------------------------
# HTTP fixtures
# ---------------------------------------------
@pytest.fixture
def app(vendor, carrier, tmp_path):
    from storefront.main import app as flask_app

    flask_app.config["TESTING"] = True
    original_vendor = flask_app.extensions["vendor_client"]
    original_limiter = flask_app.extensions["rate_limiter"]
    original_carrier = flask_app.extensions["carrier_client"]
    flask_app.extensions["vendor_client"] = vendor
    flask_app.extensions["rate_limiter"] = RateLimiter(tmp_path / "rate_limit.json")
    flask_app.extensions["carrier_client"] = carrier
    try:
        yield flask_app
    finally:
        flask_app.extensions["vendor_client"] = original_vendor
        flask_app.extensions["rate_limiter"] = original_limiter
        flask_app.extensions["carrier_client"] = original_carrier


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def admin_user(db_session):
    from storefront.services.auth_service import AuthService

    return AuthService(db_session).create_admin("admin", "s3cret-pass", email="admin@example.com")


@pytest.fixture
def admin_headers(client, admin_user):
    response = client.post("/admin/login", json={"username": "admin", "password": "s3cret-pass"})
    assert response.status_code == 200
    token = response.get_json()["data"]["token"]
    return {"Authorization": f"Bearer {token}"}
