"""
Order listing and statistics for the admin back office.

Keeps the filtering, searching and pagination logic out of the
blueprints so the controllers never touch the query layer directly.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import func, or_
from sqlalchemy.orm import Query, Session

from storefront.config import Config
from storefront.errors import ValidationError
from storefront.models import Order, OrderStatus, PaymentStatus
from storefront.money import money_to_float

MAX_PAGE_SIZE = 100


class OrderHistoryService:
    def __init__(self, db_session: Session, page_size: Optional[int] = None) -> None:
        self.db = db_session
        self.page_size = page_size or Config.ORDER_PAGE_SIZE
        self.logger = logging.getLogger(__name__)

    def list_orders(
        self,
        status: Optional[str] = None,
        payment_status: Optional[str] = None,
        search: Optional[str] = None,
        page: int = 1,
        page_size: Optional[int] = None,
    ) -> Dict[str, Any]:
        """
        Filtered, newest-first page of orders.

        Returns ``orders`` (Order rows) plus ``pagination`` metadata and the
        filters that were applied.
        """
        page = max(1, int(page or 1))
        page_size = min(MAX_PAGE_SIZE, max(1, int(page_size or self.page_size)))

        query = self.db.query(Order)
        query = self._apply_status_filter(query, status)
        query = self._apply_payment_filter(query, payment_status)
        query = self._apply_search(query, search)

        total = query.count()
        orders = (
            query.order_by(Order.created_at.desc(), Order.orderID.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
            .all()
        )
        total_pages = (total + page_size - 1) // page_size if total else 0

        return {
            "orders": orders,
            "pagination": {
                "page": page,
                "page_size": page_size,
                "total": total,
                "total_pages": total_pages,
                "has_next": page < total_pages,
                "has_prev": page > 1,
            },
            "filters_applied": {
                "status": status,
                "payment_status": payment_status,
                "search": search,
            },
        }

    def recent_orders(self, limit: int = 10) -> List[Order]:
        return (
            self.db.query(Order)
            .order_by(Order.created_at.desc(), Order.orderID.desc())
            .limit(limit)
            .all()
        )

    def get_statistics(self) -> Dict[str, Any]:
        by_status = {status.value: 0 for status in OrderStatus}
        for status, count in self.db.query(Order.status, func.count(Order.orderID)).group_by(Order.status).all():
            by_status[OrderStatus(status).value] = count

        revenue = (
            self.db.query(func.coalesce(func.sum(Order.total), 0))
            .filter(Order.payment_status == PaymentStatus.PAID)
            .scalar()
        )
        return {
            "total_orders": sum(by_status.values()),
            "by_status": by_status,
            "pending_orders": by_status[OrderStatus.PENDING.value],
            "awaiting_support": by_status[OrderStatus.PAYMENT_PENDING.value],
            "total_revenue": money_to_float(revenue),
        }

    # ------------------------------------------------------------------
    # Filters
    # ------------------------------------------------------------------
    @staticmethod
    def _apply_status_filter(query: Query, status: Optional[str]) -> Query:
        if not status:
            return query
        try:
            return query.filter(Order.status == OrderStatus(status))
        except ValueError as exc:
            raise ValidationError("Invalid status filter", errors={"status": status}) from exc

    @staticmethod
    def _apply_payment_filter(query: Query, payment_status: Optional[str]) -> Query:
        if not payment_status:
            return query
        try:
            return query.filter(Order.payment_status == PaymentStatus(payment_status))
        except ValueError as exc:
            raise ValidationError("Invalid payment status filter", errors={"payment_status": payment_status}) from exc

    @staticmethod
    def _apply_search(query: Query, search: Optional[str]) -> Query:
        if not search:
            return query
        term = f"%{search.strip()}%"
        return query.filter(
            or_(
                Order.order_number.ilike(term),
                Order.guest_email.ilike(term),
            )
        )
