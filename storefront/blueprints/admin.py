"""Admin API: authentication, orders and shipments, catalogue, pricing, settings and vendor jobs."""
from __future__ import annotations

from typing import Optional

from flask import Blueprint, g, request

from storefront.blueprints import get_carrier_client, get_rate_limiter, get_vendor_client, json_body, page_args
from storefront.blueprints.serializers import (
    serialize_brand,
    serialize_category,
    serialize_order,
    serialize_order_summary,
    serialize_product,
    serialize_sync_log,
)
from storefront.config import Config
from storefront.database import get_db
from storefront.errors import ValidationError
from storefront.models import MarkupType, utcnow
from storefront.observability import get_metrics_snapshot
from storefront.responses import success_response
from storefront.schemas import ProductInput, TaxonomyInput, sanitize_text
from storefront.services.auth_service import AuthService
from storefront.services.catalog_service import CatalogService
from storefront.services.inventory_service import InventoryService
from storefront.services.order_history_service import OrderHistoryService
from storefront.services.order_service import OrderService
from storefront.services.pricing_service import PricingService
from storefront.services.product_sync_service import ProductSyncService
from storefront.services.rate_limiter import client_identifier
from storefront.services.settings_service import SettingsService
from storefront.services.shipping_service import ShippingService

admin_bp = Blueprint("admin", __name__, url_prefix="/admin")

LOGIN_ACTION = "admin_login"
_PUBLIC_ENDPOINTS = {"admin.login"}


def _bearer_token() -> Optional[str]:
    header = request.headers.get("Authorization", "")
    if header.lower().startswith("bearer "):
        return header[7:].strip() or None
    return None


def _get_order_service() -> OrderService:
    db = get_db()
    return OrderService(db, get_vendor_client(), settings=SettingsService(db).order_settings())


def _get_shipping_service() -> ShippingService:
    db = get_db()
    return ShippingService(db, get_carrier_client(), settings=SettingsService(db).order_settings())


def _get_catalog_service() -> CatalogService:
    return CatalogService(get_db())


def _get_pricing_service() -> PricingService:
    return PricingService(get_db())


def _markup_payload():
    payload = json_body()
    if "markup_value" not in payload:
        raise ValidationError("markup_value is required", errors={"markup_value": "Required"})
    return payload["markup_value"], payload.get("markup_type", MarkupType.PERCENTAGE.value)


@admin_bp.before_request
def require_admin():
    if request.endpoint in _PUBLIC_ENDPOINTS:
        return None
    g.admin_user = AuthService(get_db()).verify_token(_bearer_token())
    return None


# ---------------------------------------------
# Authentication
# ---------------------------------------------
@admin_bp.route("/login", methods=["POST"])
def login():
    identifier = client_identifier(request)
    limiter = get_rate_limiter()
    limiter.enforce(
        identifier,
        LOGIN_ACTION,
        max_attempts=Config.ADMIN_LOGIN_MAX_ATTEMPTS,
        window_seconds=Config.ADMIN_LOGIN_WINDOW_SECONDS,
    )

    payload = json_body()
    admin, admin_session = AuthService(get_db()).login(payload.get("username"), payload.get("password"))
    limiter.clear_limit(identifier, LOGIN_ACTION)
    return success_response(
        {
            "token": admin_session.token,
            "expires_in": Config.ADMIN_TOKEN_EXPIRY,
            "user": {"id": admin.adminUserID, "username": admin.username, "email": admin.email},
        },
        "Login successful",
    )


@admin_bp.route("/logout", methods=["POST"])
def logout():
    AuthService(get_db()).logout(_bearer_token())
    return success_response(message="Logged out")


# ---------------------------------------------
# Dashboard & orders
# ---------------------------------------------
@admin_bp.route("/dashboard", methods=["GET"])
def dashboard():
    db = get_db()
    history = OrderHistoryService(db)
    data = {
        "orders": history.get_statistics(),
        "products": InventoryService(db).summarize(),
        "recent_orders": [serialize_order_summary(order) for order in history.recent_orders(limit=10)],
        "last_sync": serialize_sync_log(ProductSyncService(db, get_vendor_client()).get_last_sync()),
        "generated_at": utcnow().isoformat(),
    }
    return success_response(data, "Dashboard retrieved")


@admin_bp.route("/orders", methods=["GET"])
def list_orders():
    page, page_size = page_args(Config.ORDER_PAGE_SIZE)
    result = OrderHistoryService(get_db()).list_orders(
        status=request.args.get("status") or None,
        payment_status=request.args.get("payment_status") or None,
        search=sanitize_text(request.args.get("search"), max_length=100),
        page=page,
        page_size=page_size,
    )
    result["orders"] = [serialize_order_summary(order) for order in result["orders"]]
    return success_response(result, "Orders retrieved")


@admin_bp.route("/orders/<int:order_id>", methods=["GET"])
def get_order(order_id: int):
    order = _get_order_service().get_order(order_id)
    return success_response(serialize_order(order, internal=True), "Order retrieved")


@admin_bp.route("/orders/<int:order_id>/status", methods=["PUT"])
def update_order_status(order_id: int):
    payload = json_body()
    if not payload.get("status"):
        raise ValidationError("status is required", errors={"status": "Required"})
    order = _get_order_service().update_status(
        order_id,
        payload["status"],
        admin_notes=sanitize_text(payload.get("admin_notes"), max_length=2000),
    )
    return success_response(serialize_order(order, internal=True), "Order status updated")


@admin_bp.route("/orders/<int:order_id>/cancel", methods=["POST"])
def cancel_order(order_id: int):
    reason = sanitize_text(json_body().get("reason"), max_length=500)
    order = _get_order_service().cancel_order(order_id, reason=reason)
    return success_response(serialize_order(order, internal=True), "Order cancelled")


@admin_bp.route("/orders/<int:order_id>/tracking", methods=["POST"])
def update_order_tracking(order_id: int):
    payload = json_body()
    order = _get_shipping_service().record_shipment(
        order_id,
        payload.get("tracking_number"),
        payload.get("carrier"),
    )
    return success_response(serialize_order(order, internal=True), "Tracking information updated")


@admin_bp.route("/shipping/track/<tracking_number>", methods=["GET"])
def track_shipment(tracking_number: str):
    tracking = get_carrier_client().track(sanitize_text(tracking_number, max_length=100))
    return success_response(tracking, "Tracking retrieved")


# ---------------------------------------------
# Catalogue
# ---------------------------------------------
@admin_bp.route("/products", methods=["GET"])
def list_products():
    page, page_size = page_args(Config.ADMIN_PRODUCT_PAGE_SIZE)
    available = request.args.get("is_available")
    result = _get_catalog_service().admin_products(
        is_available=None if available in (None, "") else available.strip().lower() in ("1", "true", "yes"),
        search=sanitize_text(request.args.get("search"), max_length=100),
        product_source=request.args.get("product_source") or None,
        page=page,
        page_size=page_size,
    )
    result["products"] = [serialize_product(product, internal=True) for product in result["products"]]
    return success_response(result, "Products retrieved")


@admin_bp.route("/products", methods=["POST"])
def create_product():
    product = _get_catalog_service().create_product(ProductInput.from_payload(request.get_json(silent=True)))
    return success_response(serialize_product(product, internal=True), "Product created", 201)


@admin_bp.route("/products/<int:product_id>", methods=["PUT"])
def update_product(product_id: int):
    data = ProductInput.from_payload(request.get_json(silent=True), partial=True)
    product = _get_catalog_service().update_product(product_id, data)
    return success_response(serialize_product(product, internal=True), "Product updated")


@admin_bp.route("/categories", methods=["GET"])
def list_categories():
    rows = _get_catalog_service().list_categories(include_inactive=True)
    return success_response([serialize_category(c, count) for c, count in rows], "Categories retrieved")


@admin_bp.route("/categories", methods=["POST"])
def create_category():
    category = _get_catalog_service().create_category(TaxonomyInput.from_payload(request.get_json(silent=True)))
    return success_response(serialize_category(category), "Category created", 201)


@admin_bp.route("/categories/<int:category_id>", methods=["PUT"])
def update_category(category_id: int):
    data = TaxonomyInput.from_payload(request.get_json(silent=True), partial=True)
    category = _get_catalog_service().update_category(category_id, data)
    return success_response(serialize_category(category), "Category updated")


@admin_bp.route("/categories/<int:category_id>", methods=["DELETE"])
def delete_category(category_id: int):
    _get_catalog_service().delete_category(category_id)
    return success_response(message="Category deleted")


@admin_bp.route("/brands", methods=["GET"])
def list_brands():
    rows = _get_catalog_service().list_brands(include_inactive=True)
    return success_response([serialize_brand(b, count) for b, count in rows], "Brands retrieved")


@admin_bp.route("/brands", methods=["POST"])
def create_brand():
    brand = _get_catalog_service().create_brand(TaxonomyInput.from_payload(request.get_json(silent=True)))
    return success_response(serialize_brand(brand), "Brand created", 201)


@admin_bp.route("/brands/<int:brand_id>", methods=["PUT"])
def update_brand(brand_id: int):
    data = TaxonomyInput.from_payload(request.get_json(silent=True), partial=True)
    brand = _get_catalog_service().update_brand(brand_id, data)
    return success_response(serialize_brand(brand), "Brand updated")


@admin_bp.route("/brands/<int:brand_id>", methods=["DELETE"])
def delete_brand(brand_id: int):
    _get_catalog_service().delete_brand(brand_id)
    return success_response(message="Brand deleted")


# ---------------------------------------------
# Pricing
# ---------------------------------------------
@admin_bp.route("/pricing", methods=["GET"])
def pricing_rules():
    return success_response(_get_pricing_service().get_all_rules(), "Pricing rules retrieved")


@admin_bp.route("/pricing/global", methods=["PUT"])
def update_global_markup():
    markup_value, _ = _markup_payload()
    rule = _get_pricing_service().update_global_markup(markup_value)
    return success_response(rule, "Global markup updated")


@admin_bp.route("/pricing/category/<int:category_id>", methods=["PUT"])
def update_category_markup(category_id: int):
    markup_value, markup_type = _markup_payload()
    rule = _get_pricing_service().set_category_markup(category_id, markup_value, markup_type)
    return success_response(rule, "Category markup updated")


@admin_bp.route("/pricing/brand/<int:brand_id>", methods=["PUT"])
def update_brand_markup(brand_id: int):
    markup_value, markup_type = _markup_payload()
    rule = _get_pricing_service().set_brand_markup(brand_id, markup_value, markup_type)
    return success_response(rule, "Brand markup updated")


@admin_bp.route("/pricing/rules/<int:rule_id>", methods=["DELETE"])
def delete_pricing_rule(rule_id: int):
    repriced = _get_pricing_service().delete_rule(rule_id)
    return success_response({"products_repriced": repriced}, "Pricing rule deleted")


@admin_bp.route("/pricing/recalculate", methods=["POST"])
def recalculate_prices():
    updated = _get_pricing_service().recalculate_all_prices()
    return success_response({"products_updated": updated}, "Prices recalculated")


# ---------------------------------------------
# Settings
# ---------------------------------------------
@admin_bp.route("/settings", methods=["GET"])
def get_settings():
    service = SettingsService(get_db())
    data = service.get_public()
    data.update(service.get_all())
    return success_response(data, "Settings retrieved")


@admin_bp.route("/settings", methods=["PUT"])
def update_settings():
    updated = SettingsService(get_db()).update_many(json_body())
    return success_response(updated, "Settings updated")


# ---------------------------------------------
# Vendor jobs
# ---------------------------------------------
@admin_bp.route("/sync/products", methods=["POST"])
def sync_products():
    stats = ProductSyncService(get_db(), get_vendor_client()).sync_products()
    return success_response(stats, "Product sync completed")


@admin_bp.route("/sync/status", methods=["GET"])
def sync_status():
    last_sync = ProductSyncService(get_db(), get_vendor_client()).get_last_sync()
    return success_response(serialize_sync_log(last_sync), "Sync status retrieved")


@admin_bp.route("/vendor/create-sales-order", methods=["POST"])
def create_vendor_sales_order():
    result = _get_order_service().create_vendor_sales_order()
    message = (
        f"Processed {result.orders_processed} orders"
        if result.success
        else f"Processed {result.orders_processed} orders with {len(result.errors)} errors"
    )
    return success_response(result.to_dict(), message)


@admin_bp.route("/metrics", methods=["GET"])
def metrics():
    return success_response(get_metrics_snapshot(), "Metrics snapshot")
