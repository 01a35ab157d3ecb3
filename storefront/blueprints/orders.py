"""Customer-facing checkout, payment callbacks and shipment tracking."""
from __future__ import annotations

from flask import Blueprint, request

from storefront.blueprints import get_carrier_client, get_rate_limiter, get_vendor_client, json_body
from storefront.blueprints.serializers import serialize_order
from storefront.config import Config
from storefront.database import get_db
from storefront.errors import NotFoundError
from storefront.money import money_to_float
from storefront.responses import success_response
from storefront.schemas import AddressInput, CartLine, CheckoutRequest, sanitize_text
from storefront.services.order_service import OrderService
from storefront.services.rate_limiter import client_identifier
from storefront.services.settings_service import SettingsService
from storefront.services.shipping_service import ShippingService

orders_bp = Blueprint("orders", __name__)

GUEST_TOKEN_HEADER = "X-Guest-Token"


def _get_order_service() -> OrderService:
    db = get_db()
    return OrderService(
        db,
        get_vendor_client(),
        settings=SettingsService(db).order_settings(),
    )


def _get_shipping_service() -> ShippingService:
    db = get_db()
    return ShippingService(db, get_carrier_client(), settings=SettingsService(db).order_settings())


@orders_bp.route("/orders", methods=["POST"])
def create_order():
    get_rate_limiter().enforce(
        client_identifier(request),
        "order_create",
        max_attempts=Config.ORDER_CREATE_MAX_ATTEMPTS,
        window_seconds=Config.ORDER_CREATE_WINDOW_SECONDS,
    )

    checkout = CheckoutRequest.from_payload(
        request.get_json(silent=True),
        ip_address=client_identifier(request),
        user_agent=request.headers.get("User-Agent"),
    )
    receipt = _get_order_service().create_order(
        checkout.order,
        checkout.cart_items,
        checkout.billing_address,
        checkout.shipping_address,
    )

    data = {
        "order_id": receipt.order_id,
        "order_number": receipt.order_number,
        "total": money_to_float(receipt.total),
        "status": receipt.status,
        "items_for_reservation": receipt.items_for_reservation,
    }
    if receipt.guest_token:
        data["guest_token"] = receipt.guest_token
    return success_response(data, "Order created successfully", 201)


@orders_bp.route("/orders/<order_ref>", methods=["GET"])
def get_order(order_ref: str):
    order = _get_order_service().get_order_for_customer(
        order_ref,
        guest_email=request.args.get("email"),
        guest_token=request.args.get("token") or request.headers.get(GUEST_TOKEN_HEADER),
    )
    return success_response(serialize_order(order), "Order retrieved")


@orders_bp.route("/orders/<order_ref>/tracking", methods=["GET"])
def order_tracking(order_ref: str):
    order = _get_order_service().get_order_for_customer(
        order_ref,
        guest_email=request.args.get("email"),
        guest_token=request.args.get("token") or request.headers.get(GUEST_TOKEN_HEADER),
    )
    tracking = _get_shipping_service().get_order_tracking(order)
    if tracking is None:
        raise NotFoundError("No tracking information available for this order")
    return success_response(tracking, "Tracking retrieved")


@orders_bp.route("/shipping/calculate", methods=["POST"])
def calculate_shipping():
    payload = json_body()
    shipping_address = AddressInput.from_payload(payload.get("shipping_address"), "shipping_address")
    cart_items = CartLine.list_from_payload(payload.get("items"))
    service_type = sanitize_text(payload.get("service_type"), max_length=50) or "ground"
    quote = _get_shipping_service().quote(cart_items, shipping_address, service_type=service_type)
    return success_response(quote, "Shipping calculated")


@orders_bp.route("/orders/<int:order_id>/payment-success", methods=["POST"])
def payment_success(order_id: int):
    payload = json_body()
    transaction_id = sanitize_text(payload.get("transaction_id"), max_length=255)
    order = _get_order_service().process_payment_success(order_id, transaction_id)
    return success_response(
        serialize_order(order),
        "Payment successful and products reserved",
    )


@orders_bp.route("/orders/<int:order_id>/payment-failed", methods=["POST"])
def payment_failed(order_id: int):
    reason = sanitize_text(json_body().get("reason"), max_length=500)
    order = _get_order_service().process_payment_failure(order_id, reason)
    return success_response(serialize_order(order), "Payment failure recorded")


@orders_bp.route("/settings/public", methods=["GET"])
def public_settings():
    return success_response(SettingsService(get_db()).get_public(), "Settings retrieved")
