from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Dict, Optional

from storefront.models import (
    Address,
    Brand,
    Category,
    Order,
    OrderItem,
    OrderStatus,
    PaymentStatus,
    Product,
    ProductSource,
    Reservation,
    ReservationStatus,
    VendorSyncLog,
    as_utc,
)
from storefront.money import money_to_float


def _iso(value: Optional[datetime]) -> Optional[str]:
    value = as_utc(value)
    return value.isoformat() if value else None


def _address(address: Optional[Address]) -> Optional[Dict[str, Any]]:
    return address.to_dict() if address is not None else None


def serialize_item(item: OrderItem, internal: bool = False) -> Dict[str, Any]:
    payload = {
        "id": item.orderItemID,
        "product_id": item.productID,
        "product_name": item.product_name,
        "product_sku": item.product_sku,
        "quantity": item.quantity,
        "price": money_to_float(item.price),
        "subtotal": money_to_float(item.subtotal),
    }
    if internal:
        payload.update(
            {
                "vendor_article_id": item.vendor_article_id,
                "product_source": ProductSource(item.product_source or ProductSource.VENDOR).value,
                "base_price": money_to_float(item.base_price),
                "fulfillment_status": item.fulfillment_status,
                "reserved_at": _iso(item.reserved_at),
            }
        )
    return payload


def serialize_reservation(reservation: Reservation) -> Dict[str, Any]:
    return {
        "id": reservation.reservationID,
        "order_item_id": reservation.orderItemID,
        "product_id": reservation.productID,
        "vendor_article_id": reservation.vendor_article_id,
        "warehouse": reservation.warehouse,
        "quantity": reservation.quantity,
        "status": ReservationStatus(reservation.status).value,
        "vendor_reservation_id": reservation.vendor_reservation_id,
        "error_message": reservation.error_message,
        "reserved_at": _iso(reservation.reserved_at),
        "released_at": _iso(reservation.released_at),
        "ordered_at": _iso(reservation.ordered_at),
    }


def serialize_order_summary(order: Order) -> Dict[str, Any]:
    return {
        "id": order.orderID,
        "order_number": order.order_number,
        "status": OrderStatus(order.status).value,
        "payment_status": PaymentStatus(order.payment_status).value,
        "total": money_to_float(order.total),
        "currency": order.currency,
        "guest_email": order.guest_email,
        "user_id": order.user_id,
        "created_at": _iso(order.created_at),
    }


def serialize_order(order: Order, internal: bool = False) -> Dict[str, Any]:
    """Full order view; `internal` adds the fields only staff may see."""
    payload = {
        "id": order.orderID,
        "order_number": order.order_number,
        "status": OrderStatus(order.status).value,
        "payment_status": PaymentStatus(order.payment_status).value,
        "payment_method": order.payment_method,
        "subtotal": money_to_float(order.subtotal),
        "tax": money_to_float(order.tax),
        "shipping_cost": money_to_float(order.shipping_cost),
        "total": money_to_float(order.total),
        "currency": order.currency,
        "notes": order.notes,
        "billing_address": _address(order.billing_address),
        "shipping_address": _address(order.shipping_address),
        "items": [serialize_item(item, internal=internal) for item in order.items],
        "tracking_number": order.tracking_number,
        "shipping_carrier": order.shipping_carrier,
        "created_at": _iso(order.created_at),
        "paid_at": _iso(order.paid_at),
        "shipped_at": _iso(order.shipped_at),
        "cancelled_at": _iso(order.cancelled_at),
    }
    if internal:
        payload.update(
            {
                "user_id": order.user_id,
                "guest_email": order.guest_email,
                "payment_transaction_id": order.payment_transaction_id,
                "admin_notes": order.admin_notes,
                "ip_address": order.ip_address,
                "vendor_order_id": order.vendor_order_id,
                "vendor_order_created_at": _iso(order.vendor_order_created_at),
                "reservations": [serialize_reservation(r) for r in order.reservations],
            }
        )
    return payload


def _specifications(raw: Optional[str]) -> Any:
    if not raw:
        return None
    try:
        return json.loads(raw)
    except ValueError:
        return raw


def serialize_category(category: Optional[Category], product_count: Optional[int] = None) -> Optional[Dict[str, Any]]:
    if category is None:
        return None
    payload = {
        "id": category.categoryID,
        "name": category.name,
        "slug": category.slug,
        "description": category.description,
        "sort_order": category.sort_order,
        "is_active": bool(category.is_active),
    }
    if product_count is not None:
        payload["product_count"] = product_count
    return payload


def serialize_brand(brand: Optional[Brand], product_count: Optional[int] = None) -> Optional[Dict[str, Any]]:
    if brand is None:
        return None
    payload = {
        "id": brand.brandID,
        "name": brand.name,
        "slug": brand.slug,
        "logo_url": brand.logo_url,
        "description": brand.description,
        "is_active": bool(brand.is_active),
    }
    if product_count is not None:
        payload["product_count"] = product_count
    return payload


def serialize_product(product: Product, internal: bool = False) -> Dict[str, Any]:
    """Catalogue view; `internal` adds cost price, vendor ids and stock split."""
    payload = {
        "id": product.productID,
        "sku": product.sku,
        "ean": product.ean,
        "name": product.name,
        "slug": product.slug,
        "description": product.description,
        "price": money_to_float(product.price),
        "currency": product.currency,
        "is_available": bool(product.is_available),
        "in_stock": (product.available_quantity or 0) > 0,
        "is_featured": bool(product.is_featured),
        "color": product.color,
        "storage": product.storage,
        "ram": product.ram,
        "specifications": _specifications(product.specifications),
        "category": serialize_category(product.category),
        "brand": serialize_brand(product.brand),
    }
    if internal:
        payload.update(
            {
                "vendor_article_id": product.vendor_article_id,
                "product_source": ProductSource(product.product_source or ProductSource.VENDOR).value,
                "base_price": money_to_float(product.base_price),
                "stock_quantity": product.stock_quantity,
                "available_quantity": product.available_quantity,
                "reserved_quantity": product.reserved_quantity,
                "last_synced_at": _iso(product.last_synced_at),
            }
        )
    return payload


def serialize_sync_log(sync_log: Optional[VendorSyncLog]) -> Optional[Dict[str, Any]]:
    if sync_log is None:
        return None
    return {
        "id": sync_log.syncLogID,
        "sync_type": sync_log.sync_type,
        "status": sync_log.status.value if hasattr(sync_log.status, "value") else sync_log.status,
        "products_synced": sync_log.products_synced,
        "products_added": sync_log.products_added,
        "products_updated": sync_log.products_updated,
        "products_disabled": sync_log.products_disabled,
        "error_message": sync_log.error_message,
        "started_at": _iso(sync_log.started_at),
        "completed_at": _iso(sync_log.completed_at),
        "duration_seconds": sync_log.duration_seconds,
    }
