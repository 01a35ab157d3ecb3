from __future__ import annotations

import json
import logging
from typing import Dict, List, Optional

from sqlalchemy.orm import Session

from storefront.config import Config
from storefront.errors import StorefrontError
from storefront.models import (
    Order,
    OrderItem,
    Reservation,
    ReservationStatus,
    utcnow,
)
from storefront.observability import increment_counter, record_event
from storefront.services.inventory_service import InventoryService
from storefront.services.vendor_client import (
    VendorApiClient,
    error_message,
    extract_return_value,
    is_success,
)


def warehouse_for(vendor_article_id: Optional[str], default: str) -> str:
    """Vendor article ids carry their warehouse as a suffix, e.g. ``1028-131512_BR001``."""
    if vendor_article_id and "_" in vendor_article_id:
        suffix = vendor_article_id.rsplit("_", 1)[1]
        if suffix:
            return suffix
    return default


class ReservationService:
    """Holds vendor stock for the lines of a paid order."""

    def __init__(
        self,
        db_session: Session,
        vendor_client: VendorApiClient,
        config: type[Config] = Config,
        inventory_service: Optional[InventoryService] = None,
    ) -> None:
        self.db = db_session
        self.vendor = vendor_client
        self.config = config
        self.inventory = inventory_service or InventoryService(db_session)
        self.logger = logging.getLogger(__name__)

    def reserve_order_products(self, order: Order) -> List[Reservation]:
        """
        Reserve every vendor-sourced line of the order with the vendor.

        A failing line is recorded as ``failed`` and the remaining lines are
        still attempted. Lines that already hold a reservation are skipped,
        so calling this again after a partial failure only retries the gaps.
        Own-stock lines are never sent to the vendor. Callers decide what a
        partial result means for the order.
        """
        existing = self._reservations_by_item(order.orderID)
        results: List[Reservation] = []

        for item in order.vendor_items:
            reservation = existing.get(item.orderItemID)
            if reservation is not None and ReservationStatus(reservation.status) in (
                ReservationStatus.RESERVED,
                ReservationStatus.ORDERED,
            ):
                results.append(reservation)
                continue
            results.append(self._reserve_item(order, item, reservation))

        return results

    def _reserve_item(
        self,
        order: Order,
        item: OrderItem,
        reservation: Optional[Reservation],
    ) -> Reservation:
        warehouse = warehouse_for(item.vendor_article_id, self.config.VENDOR_DEFAULT_WAREHOUSE)
        if reservation is None:
            reservation = Reservation(
                orderID=order.orderID,
                orderItemID=item.orderItemID,
                productID=item.productID,
                vendor_article_id=item.vendor_article_id,
                quantity=item.quantity,
            )
            self.db.add(reservation)
        reservation.warehouse = warehouse
        reservation.status = ReservationStatus.PENDING
        reservation.error_message = None
        self.db.commit()

        if not item.vendor_article_id:
            reservation.mark_failed("Product has no vendor article id")
            self.db.commit()
            self._count(ReservationStatus.FAILED)
            return reservation

        try:
            response = self.vendor.reserve_article(item.vendor_article_id, warehouse, item.quantity)
        except StorefrontError as exc:
            reservation.mark_failed(exc.message)
            self.db.commit()
            self._count(ReservationStatus.FAILED)
            self.logger.warning(
                "Reservation failed for order %s item %s: %s",
                order.order_number,
                item.orderItemID,
                exc.message,
            )
            return reservation

        vendor_reservation_id = extract_return_value(response, "reservationId", "reservation_id", "id")
        if not is_success(response) or vendor_reservation_id is None:
            reason = error_message(response, default="Reservation failed")
            reservation.mark_failed(reason)
            reservation.vendor_response = json.dumps(response, default=str)
            self.db.commit()
            self._count(ReservationStatus.FAILED)
            self.logger.warning(
                "Vendor rejected reservation for order %s item %s: %s",
                order.order_number,
                item.orderItemID,
                reason,
            )
            return reservation

        reservation.mark_reserved(str(vendor_reservation_id), json.dumps(response, default=str))
        if item.productID is not None:
            self.inventory.reserve_stock(item.productID, item.quantity)
        item.fulfillment_status = "reserved"
        item.reserved_at = utcnow()
        self.db.commit()
        self._count(ReservationStatus.RESERVED)
        self.logger.info(
            "Reserved %s x %s for order %s",
            item.quantity,
            item.vendor_article_id,
            order.order_number,
            extra={"vendor_reservation_id": reservation.vendor_reservation_id, "warehouse": warehouse},
        )
        return reservation

    def unreserve_order_products(self, order: Order) -> int:
        """
        Release every granted reservation of the order.

        Best effort: a vendor failure is logged on the reservation and the
        loop carries on, so local cancellation is never blocked by it.
        Returns how many reservations were released.
        """
        released = 0
        reservations = (
            self.db.query(Reservation)
            .filter(Reservation.orderID == order.orderID)
            .filter(Reservation.status == ReservationStatus.RESERVED)
            .all()
        )
        for reservation in reservations:
            if self._release(order, reservation):
                released += 1
        return released

    def _release(self, order: Order, reservation: Reservation) -> bool:
        if reservation.vendor_reservation_id:
            try:
                response = self.vendor.remove_reserved_article(reservation.vendor_reservation_id)
            except StorefrontError as exc:
                reason = exc.message
            else:
                reason = None if is_success(response) else error_message(response, "Release rejected")
            if reason is not None:
                reservation.error_message = reason
                self.db.commit()
                self.logger.error(
                    "Could not release vendor reservation %s for order %s: %s",
                    reservation.vendor_reservation_id,
                    order.order_number,
                    reason,
                )
                return False

        reservation.mark_released()
        if reservation.productID is not None:
            self.inventory.release_stock(reservation.productID, reservation.quantity)
        self.db.commit()
        self._count(ReservationStatus.RELEASED)
        record_event(
            "reservation_released",
            {"order_number": order.order_number, "reservation_id": reservation.reservationID},
        )
        return True

    def get_reservation_status(self, order_id: int) -> Dict[str, object]:
        reservations = self.db.query(Reservation).filter(Reservation.orderID == order_id).all()
        status: Dict[str, object] = {member.value: 0 for member in ReservationStatus}
        for reservation in reservations:
            key = ReservationStatus(reservation.status).value
            status[key] = int(status[key]) + 1
        status["total"] = len(reservations)
        status["all_reserved"] = bool(reservations) and status[ReservationStatus.RESERVED.value] == len(reservations)
        return status

    def is_order_fully_reserved(self, order: Order) -> bool:
        """True when every vendor-sourced line holds a granted reservation."""
        vendor_items = order.vendor_items
        if not vendor_items:
            return False
        by_item = self._reservations_by_item(order.orderID)
        return all(
            item.orderItemID in by_item
            and ReservationStatus(by_item[item.orderItemID].status) == ReservationStatus.RESERVED
            for item in vendor_items
        )

    def mark_as_ordered(self, reservations: List[Reservation]) -> None:
        for reservation in reservations:
            reservation.mark_ordered()

    def _reservations_by_item(self, order_id: int) -> Dict[int, Reservation]:
        rows = (
            self.db.query(Reservation)
            .filter(Reservation.orderID == order_id)
            .order_by(Reservation.reservationID)
            .all()
        )
        by_item: Dict[int, Reservation] = {}
        for row in rows:
            # Released rows belong to an earlier attempt
            if ReservationStatus(row.status) == ReservationStatus.RELEASED:
                continue
            by_item[row.orderItemID] = row
        return by_item

    @staticmethod
    def _count(status: ReservationStatus) -> None:
        increment_counter("reservations_total", labels={"status": status.value})
