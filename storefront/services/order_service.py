from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy.orm import Session, joinedload

from storefront.config import Config
from storefront.errors import (
    AuthorizationError,
    InvalidStateTransition,
    NotFoundError,
    ReservationFailure,
    StorefrontError,
    ValidationError,
    VendorApiError,
)
from storefront.models import (
    Address,
    Order,
    OrderItem,
    OrderStatus,
    PaymentStatus,
    ProductSource,
    Reservation,
    ReservationStatus,
    utcnow,
)
from storefront.money import money_to_float, round_money, to_decimal
from storefront.observability import increment_counter, record_event
from storefront.schemas import AddressInput, CartLine, OrderInput
from storefront.services.inventory_service import InventoryService
from storefront.services.reservation_service import ReservationService
from storefront.services.settings_service import OrderSettings
from storefront.services.vendor_client import (
    VendorApiClient,
    error_message,
    extract_return_value,
    is_success,
)

_ORDER_NUMBER_ATTEMPTS = 10


@dataclass(frozen=True)
class OrderTotals:
    subtotal: Decimal
    tax: Decimal
    shipping: Decimal
    total: Decimal

    def to_dict(self) -> Dict[str, float]:
        return {
            "subtotal": money_to_float(self.subtotal),
            "tax": money_to_float(self.tax),
            "shipping": money_to_float(self.shipping),
            "total": money_to_float(self.total),
        }


@dataclass
class OrderReceipt:
    """What the customer gets back from checkout."""

    order_id: int
    order_number: str
    total: Decimal
    status: str
    guest_token: Optional[str] = None
    items_for_reservation: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class VendorSubmissionResult:
    processed_orders: List[str] = field(default_factory=list)
    errors: List[Dict[str, str]] = field(default_factory=list)

    @property
    def orders_processed(self) -> int:
        return len(self.processed_orders)

    @property
    def success(self) -> bool:
        return not self.errors

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "orders_processed": self.orders_processed,
            "processed_orders": list(self.processed_orders),
            "errors": list(self.errors),
        }


def calculate_totals(line_subtotals: Iterable[Decimal], settings: OrderSettings) -> OrderTotals:
    """
    Order totals, rounded half-up to cents at every step.

    Free shipping applies from the threshold inclusive.
    """
    subtotal = round_money(sum((round_money(value) for value in line_subtotals), Decimal("0")))
    tax = round_money(subtotal * settings.tax_rate)
    shipping = Decimal("0.00") if subtotal >= settings.free_shipping_threshold else round_money(settings.shipping_cost)
    total = round_money(subtotal + tax + shipping)
    return OrderTotals(subtotal=subtotal, tax=tax, shipping=shipping, total=total)


def generate_guest_token(order_number: str, guest_email: str, app_key: str) -> str:
    message = f"{order_number}|{guest_email.strip().lower()}".encode("utf-8")
    return hmac.new(app_key.encode("utf-8"), message, hashlib.sha256).hexdigest()


def verify_guest_token(order: Order, token: Optional[str], app_key: str) -> bool:
    if not token or not order.guest_email:
        return False
    expected = generate_guest_token(order.order_number, order.guest_email, app_key)
    return hmac.compare_digest(expected, token)


class OrderService:
    """Order aggregate: checkout, payment outcomes, cancellation and vendor hand-off."""

    def __init__(
        self,
        db_session: Session,
        vendor_client: VendorApiClient,
        settings: Optional[OrderSettings] = None,
        config: type[Config] = Config,
        reservation_service: Optional[ReservationService] = None,
        inventory_service: Optional[InventoryService] = None,
    ) -> None:
        self.db = db_session
        self.config = config
        self.settings = settings or OrderSettings.from_config(config)
        self.vendor = vendor_client
        self.inventory = inventory_service or InventoryService(db_session)
        self.reservations = reservation_service or ReservationService(
            db_session,
            vendor_client,
            config=config,
            inventory_service=self.inventory,
        )
        self.logger = logging.getLogger(__name__)

    # ------------------------------------------------------------------
    # Checkout
    # ------------------------------------------------------------------
    def create_order(
        self,
        order_input: OrderInput,
        cart_items: Iterable[CartLine],
        billing_address: AddressInput,
        shipping_address: Optional[AddressInput] = None,
    ) -> OrderReceipt:
        lines = list(cart_items)
        if not lines:
            raise ValidationError("Cart is empty", errors={"cart_items": "At least one cart item is required"})
        if order_input.user_id is None and not order_input.guest_email:
            raise ValidationError("Email is required for guest checkout", errors={"guest_email": "Required"})

        # Fails before anything is written
        products = self.inventory.load_products_for_cart(lines)

        line_subtotals = [
            round_money(to_decimal(products[line.product_id].price) * line.quantity) for line in lines
        ]
        totals = calculate_totals(line_subtotals, self.settings)

        try:
            billing = Address(**billing_address.to_dict(), user_id=order_input.user_id)
            self.db.add(billing)
            if shipping_address is not None:
                shipping = Address(**shipping_address.to_dict(), user_id=order_input.user_id)
                self.db.add(shipping)
            else:
                shipping = billing
            self.db.flush()

            order = Order(
                order_number=self.generate_order_number(),
                user_id=order_input.user_id,
                guest_email=order_input.guest_email,
                status=OrderStatus.PENDING,
                payment_status=PaymentStatus.UNPAID,
                payment_method=order_input.payment_method,
                subtotal=totals.subtotal,
                tax=totals.tax,
                shipping_cost=totals.shipping,
                total=totals.total,
                currency=self.settings.currency,
                billingAddressID=billing.addressID,
                shippingAddressID=shipping.addressID,
                notes=order_input.notes,
                ip_address=order_input.ip_address,
                user_agent=order_input.user_agent,
            )
            self.db.add(order)
            self.db.flush()

            for line, line_subtotal in zip(lines, line_subtotals):
                product = products[line.product_id]
                self.db.add(
                    OrderItem(
                        orderID=order.orderID,
                        productID=product.productID,
                        product_name=product.name,
                        product_sku=product.sku,
                        vendor_article_id=product.vendor_article_id,
                        product_source=product.product_source or ProductSource.VENDOR,
                        quantity=line.quantity,
                        base_price=round_money(product.base_price),
                        price=round_money(product.price),
                        subtotal=line_subtotal,
                        fulfillment_status="pending",
                    )
                )
            self.db.commit()
        except Exception:
            self.db.rollback()
            self.logger.exception("Order creation rolled back")
            raise

        increment_counter("orders_created_total")
        record_event(
            "order_created",
            {"order_number": order.order_number, "total": str(totals.total), "items": len(lines)},
        )
        self.logger.info(
            "Order %s created",
            order.order_number,
            extra={"order_id": order.orderID, "total": str(totals.total), "guest": order.user_id is None},
        )

        guest_token = None
        if order.user_id is None and order.guest_email:
            guest_token = generate_guest_token(order.order_number, order.guest_email, self.config.APP_KEY)

        return OrderReceipt(
            order_id=order.orderID,
            order_number=order.order_number,
            total=totals.total,
            status=OrderStatus.PENDING.value,
            guest_token=guest_token,
            items_for_reservation=[
                {
                    "product_id": line.product_id,
                    "vendor_article_id": products[line.product_id].vendor_article_id,
                    "quantity": line.quantity,
                }
                for line in lines
                if not products[line.product_id].is_own_stock
            ],
        )

    def calculate_totals(self, cart_items: Iterable[CartLine]) -> OrderTotals:
        """Price a cart against live product prices without placing an order."""
        lines = list(cart_items)
        products = self.inventory.load_products_for_cart(lines)
        return calculate_totals(
            (round_money(to_decimal(products[line.product_id].price) * line.quantity) for line in lines),
            self.settings,
        )

    def generate_order_number(self, today: Optional[datetime] = None) -> str:
        today = today or utcnow()
        prefix = f"{self.config.ORDER_NUMBER_PREFIX}{today:%y%m%d}"
        for _ in range(_ORDER_NUMBER_ATTEMPTS):
            candidate = f"{prefix}{secrets.token_hex(3).upper()}"
            exists = self.db.query(Order.orderID).filter(Order.order_number == candidate).first()
            if exists is None:
                return candidate
        raise StorefrontError("Could not allocate a unique order number")

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------
    def get_order(self, order_id: int) -> Order:
        order = (
            self.db.query(Order)
            .options(joinedload(Order.items), joinedload(Order.reservations))
            .filter(Order.orderID == order_id)
            .first()
        )
        if order is None:
            raise NotFoundError("Order not found")
        return order

    def get_order_by_number(self, order_number: str) -> Order:
        order = self.db.query(Order).filter(Order.order_number == order_number).first()
        if order is None:
            raise NotFoundError("Order not found")
        return order

    def get_order_for_customer(
        self,
        order_ref: str,
        user_id: Optional[int] = None,
        guest_email: Optional[str] = None,
        guest_token: Optional[str] = None,
    ) -> Order:
        """Fetch by order number (or numeric id) and check the caller may see it."""
        if order_ref.isdigit():
            order = self.get_order(int(order_ref))
        else:
            order = self.get_order_by_number(order_ref)

        if user_id is not None and order.user_id == user_id:
            return order
        if order.guest_email:
            if guest_email and guest_email.strip().lower() == order.guest_email.lower():
                return order
            if verify_guest_token(order, guest_token, self.config.APP_KEY):
                return order
        raise AuthorizationError("You do not have access to this order")

    # ------------------------------------------------------------------
    # Payment outcomes
    # ------------------------------------------------------------------
    def process_payment_success(self, order_id: int, transaction_id: Optional[str] = None) -> Order:
        """
        Capture the payment, then secure stock for every line.

        Vendor lines are reserved with the vendor; own-stock lines are
        deducted from local stock once every vendor line is held. An order
        without vendor lines goes straight on to ``processing``. Any shortfall
        parks the order in ``payment_pending`` and raises ReservationFailure.
        """
        order = self.get_order(order_id)
        status = OrderStatus(order.status)
        if status not in (OrderStatus.PENDING, OrderStatus.PAYMENT_PENDING):
            raise InvalidStateTransition(
                f"Order {order.order_number} cannot accept a payment in status {status.value}",
                current=status.value,
                target=OrderStatus.RESERVED.value,
            )

        order.payment_status = PaymentStatus.PAID
        if transaction_id:
            order.payment_transaction_id = transaction_id
        if order.paid_at is None:
            order.paid_at = utcnow()
        self.db.commit()
        increment_counter("payments_succeeded_total")
        self.logger.info("Payment captured for order %s", order.order_number, extra={"transaction_id": transaction_id})

        has_vendor_items = bool(order.vendor_items)
        if has_vendor_items:
            try:
                self.reservations.reserve_order_products(order)
            except Exception as exc:
                self.db.rollback()
                self.logger.exception("Reservation raised for order %s", order.order_number)
                self._park_as_payment_pending(order_id)
                raise ReservationFailure(failures=[{"error": str(exc)}]) from exc

            self.db.refresh(order)
            if not self.reservations.is_order_fully_reserved(order):
                failures = [
                    {"reservation_id": r.reservationID, "vendor_article_id": r.vendor_article_id, "error": r.error_message}
                    for r in order.reservations
                    if ReservationStatus(r.status) == ReservationStatus.FAILED
                ]
                self._park_as_payment_pending(order_id)
                self.logger.error(
                    "Order %s paid but not fully reserved",
                    order.order_number,
                    extra={"failures": failures},
                )
                raise ReservationFailure(failures=failures)

        shortages = self._own_stock_shortages(order)
        if shortages:
            self._park_as_payment_pending(order_id)
            self.logger.error(
                "Order %s paid but own stock ran short",
                order.order_number,
                extra={"failures": shortages},
            )
            raise ReservationFailure(failures=shortages)

        self._deduct_own_stock(order)
        order.transition_to(OrderStatus.RESERVED)
        if not has_vendor_items:
            # Nothing to hand to the vendor; the shop ships from its own shelf
            order.transition_to(OrderStatus.PROCESSING)
        self.db.commit()
        record_event(
            "order_reserved",
            {"order_number": order.order_number, "status": OrderStatus(order.status).value},
        )
        return order

    def _own_stock_shortages(self, order: Order) -> List[Dict[str, int]]:
        wanted: Dict[int, int] = {}
        for item in order.own_items:
            if item.productID is not None and item.fulfillment_status != "stock_deducted":
                wanted[item.productID] = wanted.get(item.productID, 0) + item.quantity
        return self.inventory.shortages(wanted)

    def _deduct_own_stock(self, order: Order) -> None:
        for item in order.own_items:
            if item.fulfillment_status == "stock_deducted":
                continue
            if item.productID is not None:
                self.inventory.deduct_stock(item.productID, item.quantity)
            item.fulfillment_status = "stock_deducted"

    def _restock_own_items(self, order: Order) -> int:
        restocked = 0
        for item in order.own_items:
            if item.fulfillment_status != "stock_deducted":
                continue
            if item.productID is not None:
                self.inventory.restock(item.productID, item.quantity)
            item.fulfillment_status = "restocked"
            restocked += 1
        return restocked

    def _park_as_payment_pending(self, order_id: int) -> None:
        order = self.db.get(Order, order_id)
        if OrderStatus(order.status) != OrderStatus.PAYMENT_PENDING:
            order.transition_to(OrderStatus.PAYMENT_PENDING)
        self.db.commit()
        increment_counter("orders_payment_pending_total")
        record_event("order_payment_pending", {"order_number": order.order_number})

    def process_payment_failure(self, order_id: int, reason: Optional[str] = None) -> Order:
        """
        Record a declined payment and cancel the order.

        Only unpaid orders qualify. A ``payment_pending`` order has already
        been charged; support closes it through ``cancel_order``, which
        records the refund.
        """
        order = self.get_order(order_id)
        status = OrderStatus(order.status)
        if status != OrderStatus.PENDING:
            raise InvalidStateTransition(
                f"Order {order.order_number} cannot record a payment failure in status {status.value}",
                current=status.value,
                target=OrderStatus.CANCELLED.value,
            )

        order.payment_status = PaymentStatus.FAILED
        self.db.commit()
        self.reservations.unreserve_order_products(order)
        order.transition_to(OrderStatus.CANCELLED)
        if reason:
            order.admin_notes = self._append_note(order.admin_notes, f"Payment failed: {reason}")
        self.db.commit()

        increment_counter("payments_failed_total")
        self.logger.warning("Payment failed for order %s", order.order_number, extra={"reason": reason})
        return order

    # ------------------------------------------------------------------
    # Cancellation & status
    # ------------------------------------------------------------------
    def cancel_order(self, order_id: int, reason: Optional[str] = None) -> Order:
        order = self.get_order(order_id)
        status = OrderStatus(order.status)
        if status not in Order.CANCELLABLE_STATUSES:
            raise InvalidStateTransition(
                "Order cannot be cancelled at this stage",
                current=status.value,
                target=OrderStatus.CANCELLED.value,
            )

        released = self.reservations.unreserve_order_products(order)
        restocked = self._restock_own_items(order)
        order.transition_to(OrderStatus.CANCELLED)
        if PaymentStatus(order.payment_status) == PaymentStatus.PAID:
            # Records intent only; the refund itself happens outside this system
            order.payment_status = PaymentStatus.REFUNDED
        if reason:
            order.admin_notes = self._append_note(order.admin_notes, f"Cancelled: {reason}")
        self.db.commit()

        increment_counter("orders_cancelled_total")
        self.logger.info(
            "Order %s cancelled",
            order.order_number,
            extra={"released_reservations": released, "restocked_items": restocked, "reason": reason},
        )
        return order

    def update_status(self, order_id: int, new_status: Any, admin_notes: Optional[str] = None) -> Order:
        try:
            target = OrderStatus(new_status)
        except ValueError as exc:
            raise ValidationError(
                "Invalid status",
                errors={"status": f"Must be one of: {', '.join(s.value for s in OrderStatus)}"},
            ) from exc

        if target == OrderStatus.CANCELLED:
            return self.cancel_order(order_id, reason=admin_notes)

        order = self.get_order(order_id)
        order.transition_to(target)
        if admin_notes:
            order.admin_notes = self._append_note(order.admin_notes, admin_notes)
        self.db.commit()
        self.logger.info("Order %s moved to %s", order.order_number, target.value)
        return order

    @staticmethod
    def _append_note(existing: Optional[str], note: str) -> str:
        return f"{existing}\n{note}" if existing else note

    # ------------------------------------------------------------------
    # Vendor sales orders
    # ------------------------------------------------------------------
    def create_vendor_sales_order(self) -> VendorSubmissionResult:
        """
        Submit every fully reserved order to the vendor as a sales order.

        Orders with any reservation still pending or failed are left for
        manual follow-up. A failure on one order is recorded and the batch
        carries on with the next.
        """
        result = VendorSubmissionResult()
        orders = (
            self.db.query(Order)
            .filter(Order.status == OrderStatus.RESERVED)
            .filter(Order.vendor_order_id.is_(None))
            .order_by(Order.orderID)
            .all()
        )

        for order in orders:
            if not self.reservations.is_order_fully_reserved(order):
                continue
            order_number = order.order_number
            try:
                vendor_order_id = self._submit_vendor_order(order)
            except Exception as exc:
                self.db.rollback()
                message = exc.message if isinstance(exc, StorefrontError) else str(exc)
                result.errors.append({"order_number": order_number, "error": message})
                increment_counter("vendor_sales_orders_total", labels={"outcome": "failed"})
                self.logger.error(
                    "Vendor sales order failed for %s: %s",
                    order_number,
                    message,
                    exc_info=not isinstance(exc, StorefrontError),
                )
                continue

            result.processed_orders.append(order_number)
            increment_counter("vendor_sales_orders_total", labels={"outcome": "created"})
            self.logger.info(
                "Vendor sales order %s created for %s",
                vendor_order_id,
                order_number,
            )

        record_event(
            "vendor_sales_orders_submitted",
            {"processed": result.orders_processed, "errors": len(result.errors)},
        )
        return result

    def _submit_vendor_order(self, order: Order) -> str:
        reservations: List[Reservation] = [
            r for r in order.reservations if ReservationStatus(r.status) == ReservationStatus.RESERVED
        ]
        if not reservations:
            raise ValidationError("No reserved items to submit")

        response = self.vendor.create_sales_order(
            [r.vendor_reservation_id for r in reservations],
            pay_with=self.config.VENDOR_PAY_WITH,
            insurance=self.config.VENDOR_INSURANCE,
        )
        vendor_order_id = extract_return_value(response, "orderId", "order_id", "id")
        if not is_success(response):
            raise VendorApiError(error_message(response, "Vendor order creation failed"))
        if vendor_order_id is None:
            raise VendorApiError("Vendor did not return an order id")

        order.vendor_order_id = str(vendor_order_id)
        order.vendor_order_created_at = utcnow()
        order.transition_to(OrderStatus.PROCESSING)
        self.reservations.mark_as_ordered(reservations)
        for item in order.vendor_items:
            item.fulfillment_status = "vendor_ordered"
        self.db.commit()
        return order.vendor_order_id


__all__ = [
    "OrderService",
    "OrderTotals",
    "OrderReceipt",
    "VendorSubmissionResult",
    "calculate_totals",
    "generate_guest_token",
    "verify_guest_token",
]
