"""
Vendor catalogue sync.

Pulls the vendor's current stock list, normalises each entry, and upserts
it into the local catalogue keyed by vendor article id. Sell prices are
computed through the pricing resolver at write time.
"""
from __future__ import annotations

import json
import logging
import re
import unicodedata
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple, Type

import bleach
from sqlalchemy.orm import Session

from storefront.errors import VendorApiError
from storefront.models import (
    Brand,
    Category,
    Product,
    ProductSource,
    SyncStatus,
    VendorSyncLog,
    as_utc,
    utcnow,
)
from storefront.observability import increment_counter, record_event, set_gauge
from storefront.services.pricing_service import PricingService
from storefront.services.vendor_client import VendorApiClient, error_message

_SLUG_STRIP = re.compile(r"[^a-z0-9]+")


def slugify(text: Any) -> str:
    normalized = unicodedata.normalize("NFKD", str(text or "")).encode("ascii", "ignore").decode("ascii")
    return _SLUG_STRIP.sub("-", normalized.lower()).strip("-")


def unique_slug(
    db: Session,
    model: Type[Any],
    text: Any,
    fallback: str,
    taken: Iterable[str] = (),
    exclude_id: Optional[int] = None,
) -> str:
    """First free ``base``, ``base-1``, ``base-2``... for the model's slug column."""
    taken = set(taken)
    pk = model.__mapper__.primary_key[0]
    base = slugify(text) or slugify(fallback) or "item"
    slug = base
    counter = 1
    while True:
        query = db.query(model).filter(model.slug == slug)
        if exclude_id is not None:
            query = query.filter(pk != exclude_id)
        if slug not in taken and query.first() is None:
            return slug
        slug = f"{base}-{counter}"
        counter += 1


def _clean(value: Any, max_length: int = 255) -> Optional[str]:
    if value is None:
        return None
    cleaned = bleach.clean(str(value), tags=[], strip=True).strip()
    return cleaned[:max_length] or None


class ProductSyncService:
    def __init__(
        self,
        db_session: Session,
        vendor_client: VendorApiClient,
        pricing_service: Optional[PricingService] = None,
    ) -> None:
        self.db = db_session
        self.vendor = vendor_client
        self.pricing = pricing_service or PricingService(db_session)
        self.logger = logging.getLogger(__name__)
        self._slugs_in_run: Set[Tuple[str, str]] = set()

    def sync_products(self) -> Dict[str, int]:
        """
        Run a full sync and return counts (synced/added/updated/disabled).

        A single malformed vendor product is logged and skipped; a failure
        to fetch the feed or to write marks the sync log ``failed`` and is
        re-raised.
        """
        sync_log = VendorSyncLog(sync_type="full", status=SyncStatus.IN_PROGRESS, started_at=utcnow())
        self.db.add(sync_log)
        self.db.commit()
        log_id = sync_log.syncLogID
        self._slugs_in_run = set()

        stats = {"synced": 0, "added": 0, "updated": 0, "disabled": 0, "skipped": 0}
        try:
            vendor_products = self._fetch_vendor_products()
            seen_ids: List[str] = []
            for raw in vendor_products:
                try:
                    normalized = self._normalize(raw)
                except (KeyError, TypeError, ValueError) as exc:
                    stats["skipped"] += 1
                    self.logger.warning("Skipping vendor product %r: %s", self._raw_id(raw), exc)
                    continue
                created = self._upsert(normalized)
                seen_ids.append(normalized["vendor_article_id"])
                stats["synced"] += 1
                stats["added" if created else "updated"] += 1

            stats["disabled"] = self._disable_missing(seen_ids)
            self.db.commit()
        except Exception as exc:
            self.db.rollback()
            message = getattr(exc, "message", None) or str(exc)
            self._finish_log(log_id, SyncStatus.FAILED, stats, message)
            increment_counter("product_sync_total", labels={"status": SyncStatus.FAILED.value})
            self.logger.error("Product sync failed: %s", message)
            raise

        self._finish_log(log_id, SyncStatus.COMPLETED, stats, None)
        increment_counter("product_sync_total", labels={"status": SyncStatus.COMPLETED.value})
        record_event("product_sync_completed", dict(stats))
        set_gauge(
            "catalogue_available_products",
            self.db.query(Product)
            .filter(Product.product_source == ProductSource.VENDOR)
            .filter(Product.is_available.is_(True))
            .count(),
            labels={"source": ProductSource.VENDOR.value},
        )
        self.logger.info("Product sync completed", extra={"stats": stats})
        return stats

    def get_last_sync(self) -> Optional[VendorSyncLog]:
        return self.db.query(VendorSyncLog).order_by(VendorSyncLog.syncLogID.desc()).first()

    # ------------------------------------------------------------------
    # Feed handling
    # ------------------------------------------------------------------
    def _fetch_vendor_products(self) -> List[Dict[str, Any]]:
        response = self.vendor.get_current_stock()
        if isinstance(response, list):
            return response
        if isinstance(response, dict):
            for key in ("products", "ReturnVal"):
                if isinstance(response.get(key), list):
                    return response[key]
        raise VendorApiError(f"Invalid stock data received from vendor: {error_message(response, 'no product list')}")

    @staticmethod
    def _raw_id(raw: Any) -> Any:
        return raw.get("id") if isinstance(raw, dict) else None

    def _normalize(self, raw: Dict[str, Any]) -> Dict[str, Any]:
        if not isinstance(raw, dict):
            raise TypeError("vendor product is not an object")
        vendor_article_id = _clean(raw.get("id") or raw.get("gensoft_id"), 100)
        if not vendor_article_id:
            raise ValueError("missing vendor article id")

        base_price = float(raw.get("price") or 0)
        if base_price < 0:
            raise ValueError("negative price")
        stock = max(0, int(raw.get("stock") or raw.get("quantity") or 0))

        specifications = raw.get("specifications")
        return {
            "vendor_article_id": vendor_article_id,
            "sku": _clean(raw.get("sku"), 100) or vendor_article_id,
            "ean": _clean(raw.get("ean"), 50),
            "name": _clean(raw.get("name")) or "Unnamed Product",
            "description": _clean(raw.get("description"), 10000),
            "category": raw.get("category"),
            "brand": raw.get("brand"),
            "base_price": base_price,
            "currency": _clean(raw.get("currency"), 3) or "EUR",
            "stock": stock,
            "color": _clean(raw.get("color"), 100),
            "storage": _clean(raw.get("storage"), 100),
            "ram": _clean(raw.get("ram"), 100),
            "specifications": json.dumps(specifications) if specifications else None,
        }

    def _upsert(self, data: Dict[str, Any]) -> bool:
        category_id = self._get_or_create(Category, data["category"], "Uncategorized")
        brand_id = self._get_or_create(Brand, data["brand"], "Unknown Brand")

        product = (
            self.db.query(Product)
            .filter(Product.vendor_article_id == data["vendor_article_id"])
            .first()
        )
        created = product is None
        if created:
            product = Product(
                vendor_article_id=data["vendor_article_id"],
                slug=self._unique_slug(Product, data["name"], fallback=f"product-{data['vendor_article_id']}"),
                reserved_quantity=0,
            )
            self.db.add(product)

        product.sku = data["sku"]
        product.ean = data["ean"]
        product.name = data["name"]
        product.description = data["description"]
        product.categoryID = category_id
        product.brandID = brand_id
        product.base_price = data["base_price"]
        product.currency = data["currency"]
        product.stock_quantity = data["stock"]
        product.available_quantity = data["stock"]
        product.is_available = data["stock"] > 0
        product.color = data["color"]
        product.storage = data["storage"]
        product.ram = data["ram"]
        product.specifications = data["specifications"]
        product.last_synced_at = utcnow()
        self.db.flush()

        product.price = self.pricing.calculate_price(
            data["base_price"],
            category_id=category_id,
            brand_id=brand_id,
            product_id=product.productID,
        )
        return created

    def _get_or_create(self, model: Type[Any], payload: Any, default_name: str) -> Optional[int]:
        if not payload:
            return None
        if isinstance(payload, dict):
            vendor_id = _clean(payload.get("id"), 100)
            name = _clean(payload.get("name")) or default_name
        else:
            vendor_id = _clean(payload, 100)
            name = vendor_id or default_name
        vendor_id = vendor_id or name

        existing = self.db.query(model).filter(model.vendor_id == vendor_id).first()
        if existing is not None:
            return existing.categoryID if model is Category else existing.brandID

        entity = model(
            vendor_id=vendor_id,
            name=name,
            slug=self._unique_slug(model, name, fallback=f"{model.__tablename__.lower()}-{vendor_id}"),
            is_active=True,
        )
        if model is Brand and isinstance(payload, dict):
            entity.logo_url = _clean(payload.get("logo"), 512)
        self.db.add(entity)
        self.db.flush()
        return entity.categoryID if model is Category else entity.brandID

    def _unique_slug(self, model: Type[Any], text: str, fallback: str) -> str:
        taken = {slug for table, slug in self._slugs_in_run if table == model.__tablename__}
        slug = unique_slug(self.db, model, text, fallback, taken=taken)
        self._slugs_in_run.add((model.__tablename__, slug))
        return slug

    def _disable_missing(self, seen_ids: List[str]) -> int:
        if not seen_ids:
            return 0
        stale = (
            self.db.query(Product)
            .filter(Product.product_source == ProductSource.VENDOR)
            .filter(Product.vendor_article_id.isnot(None))
            .filter(Product.vendor_article_id.notin_(seen_ids))
            .filter(Product.is_available.is_(True))
            .all()
        )
        for product in stale:
            product.is_available = False
        return len(stale)

    def _finish_log(self, log_id: int, status: SyncStatus, stats: Dict[str, int], error: Optional[str]) -> None:
        sync_log = self.db.get(VendorSyncLog, log_id)
        completed = utcnow()
        sync_log.status = status
        sync_log.products_synced = stats["synced"]
        sync_log.products_added = stats["added"]
        sync_log.products_updated = stats["updated"]
        sync_log.products_disabled = stats["disabled"]
        sync_log.error_message = error
        sync_log.completed_at = completed
        sync_log.duration_seconds = int((completed - as_utc(sync_log.started_at)).total_seconds())
        self.db.commit()
