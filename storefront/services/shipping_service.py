"""
Shipment tracking and shipping quotes.

Tracking goes through the UPS Track API: an OAuth client-credentials token
from ``/security/v1/oauth/token``, then ``GET /api/track/v1/details/<n>``.
Quotes use the shop's own flat-rate settings; there is no carrier rate API.
"""
from __future__ import annotations

import logging
import time
import uuid
from typing import Any, Dict, Iterable, List, Optional

import requests
from sqlalchemy.orm import Session

from storefront.config import Config
from storefront.errors import CarrierApiError, InvalidStateTransition, NotFoundError, ValidationError
from storefront.models import Order, OrderStatus, utcnow
from storefront.money import money_to_float
from storefront.observability import increment_counter, observe_latency, record_event
from storefront.schemas import AddressInput, CartLine
from storefront.services.inventory_service import InventoryService
from storefront.services.order_service import calculate_totals
from storefront.services.settings_service import OrderSettings

UPS_BASE_URLS = {
    "production": "https://onlinetools.ups.com",
    "sandbox": "https://wwwcie.ups.com",
}
TOKEN_PATH = "/security/v1/oauth/token"
TRACK_PATH = "/api/track/v1/details/"
TRANSACTION_SOURCE = "storefront"
# Refresh the token this many seconds before UPS says it expires
_TOKEN_LEEWAY = 60


def parse_tracking_response(response: Any, carrier: str = "UPS") -> Dict[str, Any]:
    """Flatten a Track API payload to the fields the storefront shows."""
    tracking: Dict[str, Any] = {
        "tracking_number": "",
        "status": "unknown",
        "status_description": "",
        "carrier": carrier,
        "estimated_delivery": None,
        "delivered": False,
        "delivered_at": None,
        "activities": [],
    }
    try:
        package = response["trackResponse"]["shipment"][0]["package"][0]
    except (KeyError, IndexError, TypeError):
        return tracking

    tracking["tracking_number"] = package.get("trackingNumber") or ""
    activities = package.get("activity") or []
    latest = activities[0] if activities else {}
    status = latest.get("status") or {}
    if status.get("type"):
        tracking["status"] = str(status["type"]).lower()
        tracking["delivered"] = tracking["status"] == "d"
    tracking["status_description"] = status.get("description") or ""
    if tracking["delivered"]:
        tracking["delivered_at"] = latest.get("date")

    delivery_dates = package.get("deliveryDate") or []
    if isinstance(delivery_dates, dict):
        delivery_dates = [delivery_dates]
    if delivery_dates:
        tracking["estimated_delivery"] = delivery_dates[0].get("date")

    for activity in activities:
        address = (activity.get("location") or {}).get("address") or {}
        activity_status = activity.get("status") or {}
        tracking["activities"].append(
            {
                "date": activity.get("date"),
                "time": activity.get("time"),
                "location": address.get("city") or "Unknown",
                "description": activity_status.get("description") or "",
                "type": activity_status.get("type") or "",
            }
        )
    return tracking


class UpsTrackingClient:
    def __init__(
        self,
        client_id: str,
        client_secret: str,
        environment: str = "sandbox",
        timeout: float = 30,
        http_session: Optional[requests.Session] = None,
        clock=time.monotonic,
    ) -> None:
        self.client_id = client_id
        self.client_secret = client_secret
        self.base_url = UPS_BASE_URLS["production" if environment == "production" else "sandbox"]
        self.timeout = timeout
        self.http = http_session or requests.Session()
        self.clock = clock
        self._token: Optional[str] = None
        self._token_expires_at = 0.0
        self.logger = logging.getLogger(__name__)

    @classmethod
    def from_config(
        cls,
        config: type[Config] = Config,
        http_session: Optional[requests.Session] = None,
    ) -> "UpsTrackingClient":
        return cls(
            client_id=config.UPS_CLIENT_ID,
            client_secret=config.UPS_CLIENT_SECRET,
            environment=config.UPS_ENVIRONMENT,
            timeout=config.UPS_API_TIMEOUT,
            http_session=http_session,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.client_id and self.client_secret)

    def track(self, tracking_number: str) -> Dict[str, Any]:
        if not tracking_number:
            raise ValidationError("Tracking number is required", errors={"tracking_number": "Required"})

        headers = {
            "Authorization": f"Bearer {self._access_token()}",
            "transId": uuid.uuid4().hex,
            "transactionSrc": TRANSACTION_SOURCE,
        }
        body = self._send("track", "GET", f"{self.base_url}{TRACK_PATH}{tracking_number}", headers=headers)
        return parse_tracking_response(body)

    def _access_token(self) -> str:
        if not self.is_configured:
            raise CarrierApiError("Carrier credentials are not configured")
        if self._token and self.clock() < self._token_expires_at:
            return self._token

        body = self._send(
            "oauth_token",
            "POST",
            f"{self.base_url}{TOKEN_PATH}",
            headers={"x-merchant-id": self.client_id},
            data={"grant_type": "client_credentials"},
            auth=(self.client_id, self.client_secret),
        )
        token = body.get("access_token") if isinstance(body, dict) else None
        if not token:
            raise CarrierApiError("Invalid response from carrier authentication")
        try:
            lifetime = int(body.get("expires_in") or 0)
        except (TypeError, ValueError):
            lifetime = 0
        self._token = token
        self._token_expires_at = self.clock() + max(0, lifetime - _TOKEN_LEEWAY)
        return token

    def _send(self, operation: str, method: str, url: str, **kwargs: Any) -> Any:
        started = time.perf_counter()
        try:
            response = self.http.request(method, url, timeout=self.timeout, **kwargs)
        except requests.RequestException as exc:
            self._count(operation, "error", started)
            self.logger.error("Carrier API %s transport error: %s", operation, exc)
            raise CarrierApiError(f"Carrier API request failed: {exc}") from exc

        try:
            body = response.json()
        except ValueError:
            body = None

        if response.status_code >= 400:
            self._count(operation, "rejected", started)
            if response.status_code == 401:
                self._token = None
            message = _carrier_error(body)
            self.logger.error(
                "Carrier API %s returned HTTP %s",
                operation,
                response.status_code,
                extra={"carrier_message": message},
            )
            raise CarrierApiError(f"Carrier API error: {message}")

        self._count(operation, "ok", started)
        return body

    @staticmethod
    def _count(operation: str, outcome: str, started: float) -> None:
        increment_counter("carrier_api_calls_total", labels={"operation": operation, "outcome": outcome})
        observe_latency(
            "carrier_api_latency_ms",
            (time.perf_counter() - started) * 1000,
            labels={"operation": operation},
        )


def _carrier_error(body: Any) -> str:
    try:
        return str(body["response"]["errors"][0]["message"])
    except (KeyError, IndexError, TypeError):
        return "Unknown error"


class ShippingService:
    """Attaches shipments to orders and reports where they are."""

    def __init__(
        self,
        db_session: Session,
        carrier_client: Optional[UpsTrackingClient] = None,
        settings: Optional[OrderSettings] = None,
        config: type[Config] = Config,
    ) -> None:
        self.db = db_session
        self.config = config
        self.carrier = carrier_client or UpsTrackingClient.from_config(config)
        self.settings = settings or OrderSettings.from_config(config)
        self.logger = logging.getLogger(__name__)

    def record_shipment(self, order_id: int, tracking_number: Any, carrier: Any = None) -> Order:
        """
        Store the tracking number and mark the order shipped.

        A ``processing`` order moves to ``shipped``. A ``shipped`` order only
        has its tracking details corrected; ``shipped_at`` is kept.
        """
        tracking_number = (str(tracking_number).strip() if isinstance(tracking_number, str) else "")[:100]
        if not tracking_number:
            raise ValidationError("Validation failed", errors={"tracking_number": "Required"})
        carrier = (str(carrier).strip() if isinstance(carrier, str) else "")[:50] or self.config.DEFAULT_CARRIER

        order = self.db.get(Order, order_id)
        if order is None:
            raise NotFoundError("Order not found")

        status = OrderStatus(order.status)
        if status == OrderStatus.PROCESSING:
            order.transition_to(OrderStatus.SHIPPED)
            order.shipped_at = utcnow()
        elif status != OrderStatus.SHIPPED:
            raise InvalidStateTransition(
                f"Order {order.order_number} cannot ship from {status.value}",
                current=status.value,
                target=OrderStatus.SHIPPED.value,
            )
        order.tracking_number = tracking_number
        order.shipping_carrier = carrier
        self.db.commit()

        increment_counter("orders_shipped_total", labels={"carrier": carrier})
        record_event("order_shipped", {"order_number": order.order_number, "carrier": carrier})
        self.logger.info(
            "Order %s shipped",
            order.order_number,
            extra={"tracking_number": tracking_number, "carrier": carrier},
        )
        return order

    def get_order_tracking(self, order: Order) -> Optional[Dict[str, Any]]:
        """
        Live tracking for the order's shipment, or None before it ships.

        A carrier failure still returns the stored tracking number with the
        error attached, so the customer sees something useful.
        """
        if not order.tracking_number:
            return None
        carrier = order.shipping_carrier or self.config.DEFAULT_CARRIER
        try:
            tracking = self.carrier.track(order.tracking_number)
        except CarrierApiError as exc:
            self.logger.warning("Tracking lookup failed for order %s: %s", order.order_number, exc.message)
            return {
                "tracking_number": order.tracking_number,
                "carrier": carrier,
                "status": "unknown",
                "error": exc.message,
            }
        tracking["carrier"] = carrier
        if not tracking["tracking_number"]:
            tracking["tracking_number"] = order.tracking_number
        return tracking

    def quote(self, cart_items: Iterable[CartLine], shipping_address: AddressInput, service_type: str = "ground") -> Dict[str, Any]:
        """Flat-rate shipping for a cart, free from the configured threshold."""
        lines: List[CartLine] = list(cart_items)
        products = InventoryService(self.db).load_products_for_cart(lines)
        totals = calculate_totals(
            (products[line.product_id].price * line.quantity for line in lines),
            self.settings,
        )
        self.logger.info(
            "Shipping quoted",
            extra={"country": shipping_address.country, "subtotal": str(totals.subtotal)},
        )
        return {
            "shipping_cost": money_to_float(totals.shipping),
            "free_shipping_threshold": money_to_float(self.settings.free_shipping_threshold),
            "service_type": service_type,
            "currency": self.settings.currency,
        }


__all__ = ["ShippingService", "UpsTrackingClient", "parse_tracking_response", "UPS_BASE_URLS"]
