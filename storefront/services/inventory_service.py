from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Optional

from sqlalchemy.orm import Session

from storefront.errors import StockUnavailable
from storefront.models import Product
from storefront.observability import record_event
from storefront.schemas import CartLine


class InventoryService:
    """
    Local stock bookkeeping.

    `available_quantity` is what the storefront may still sell;
    `reserved_quantity` is held by vendor reservations for paid orders.
    Own-stock products never hold reservations: a sale deducts from
    `stock_quantity` and `available_quantity` directly.
    """

    def __init__(self, db_session: Session) -> None:
        self.db = db_session
        self.logger = logging.getLogger(__name__)

    def load_products_for_cart(self, lines: Iterable[CartLine]) -> Dict[int, Product]:
        """
        Fetch every product in the cart and verify it can be sold.

        Raises StockUnavailable for the first line that is missing, disabled
        or short on stock. Nothing is written.
        """
        lines = list(lines)
        ids = {line.product_id for line in lines}
        products = {
            product.productID: product
            for product in self.db.query(Product).filter(Product.productID.in_(ids)).all()
        }

        requested: Dict[int, int] = {}
        for line in lines:
            requested[line.product_id] = requested.get(line.product_id, 0) + line.quantity

        for product_id, quantity in requested.items():
            product = products.get(product_id)
            if product is None:
                raise StockUnavailable(f"Product {product_id} not found", product_id=product_id)
            if not product.is_available:
                raise StockUnavailable(f"Product '{product.name}' is not available", product_id=product_id)
            if (product.available_quantity or 0) < quantity:
                raise StockUnavailable(
                    f"Insufficient stock for '{product.name}'. Available: {product.available_quantity or 0}",
                    product_id=product_id,
                )
        return products

    def reserve_stock(self, product_id: int, quantity: int) -> Optional[int]:
        """Move units from available to reserved; returns the new available quantity."""
        product = self.db.get(Product, product_id)
        if not product:
            return None

        old_available = product.available_quantity or 0
        moved = min(old_available, quantity)
        product.available_quantity = old_available - moved
        product.reserved_quantity = (product.reserved_quantity or 0) + moved

        record_event(
            "inventory_updated",
            {
                "product_id": product_id,
                "old_available": old_available,
                "new_available": product.available_quantity,
                "reason": "reservation",
            },
        )
        self.logger.info(
            "Stock reserved for product %d: %d -> %d",
            product_id,
            old_available,
            product.available_quantity,
        )
        return product.available_quantity

    def release_stock(self, product_id: int, quantity: int) -> Optional[int]:
        """Return reserved units to the sellable pool."""
        product = self.db.get(Product, product_id)
        if not product:
            return None

        old_available = product.available_quantity or 0
        moved = min(product.reserved_quantity or 0, quantity)
        product.reserved_quantity = (product.reserved_quantity or 0) - moved
        product.available_quantity = old_available + moved

        record_event(
            "inventory_updated",
            {
                "product_id": product_id,
                "old_available": old_available,
                "new_available": product.available_quantity,
                "reason": "release",
            },
        )
        self.logger.info(
            "Stock released for product %d: %d -> %d",
            product_id,
            old_available,
            product.available_quantity,
        )
        return product.available_quantity

    def deduct_stock(self, product_id: int, quantity: int) -> Optional[int]:
        """Take sold units of an own-stock product off the shelf."""
        product = self.db.get(Product, product_id)
        if not product:
            return None

        old_available = product.available_quantity or 0
        moved = min(old_available, quantity)
        product.available_quantity = old_available - moved
        product.stock_quantity = max(0, (product.stock_quantity or 0) - moved)

        record_event(
            "inventory_updated",
            {
                "product_id": product_id,
                "old_available": old_available,
                "new_available": product.available_quantity,
                "reason": "sale",
            },
        )
        self.logger.info("Stock deducted for product %d: %d -> %d", product_id, old_available, product.available_quantity)
        return product.available_quantity

    def restock(self, product_id: int, quantity: int) -> Optional[int]:
        product = self.db.get(Product, product_id)
        if not product:
            return None

        old_available = product.available_quantity or 0
        product.available_quantity = old_available + quantity
        product.stock_quantity = (product.stock_quantity or 0) + quantity

        record_event(
            "inventory_updated",
            {
                "product_id": product_id,
                "old_available": old_available,
                "new_available": product.available_quantity,
                "reason": "restock",
            },
        )
        self.logger.info("Stock returned for product %d: %d -> %d", product_id, old_available, product.available_quantity)
        return product.available_quantity

    def shortages(self, quantities: Dict[int, int]) -> List[Dict[str, int]]:
        """Lines whose product no longer has the requested units on hand."""
        short = []
        for product_id, quantity in quantities.items():
            product = self.db.get(Product, product_id)
            available = (product.available_quantity or 0) if product else 0
            if available < quantity:
                short.append({"product_id": product_id, "requested": quantity, "available": available})
        return short

    def summarize(self) -> Dict[str, int]:
        """Product counts for the admin dashboard."""
        products: List[Product] = self.db.query(Product).all()
        return {
            "total_products": len(products),
            "available_products": sum(1 for p in products if p.is_available),
            "out_of_stock": sum(1 for p in products if (p.available_quantity or 0) <= 0),
            "reserved_units": sum(p.reserved_quantity or 0 for p in products),
        }
