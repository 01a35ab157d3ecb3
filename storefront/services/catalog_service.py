"""
Product catalogue: storefront browsing and the admin catalogue screens.

Public listings only show active categories and brands. Vendor products
are owned by the sync job, so admins may only toggle their visibility;
own-stock products are created and maintained here in full.
"""
from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional, Tuple, Type, Union

from sqlalchemy import func, or_
from sqlalchemy.orm import Query, Session, joinedload

from storefront.config import Config
from storefront.errors import ConflictError, NotFoundError, ValidationError
from storefront.models import (
    Brand,
    Category,
    PricingRule,
    PricingRuleType,
    Product,
    ProductSource,
)
from storefront.money import money_to_float, round_money
from storefront.observability import increment_counter, record_event
from storefront.schemas import ProductFilters, ProductInput, TaxonomyInput
from storefront.services.pricing_service import PricingService
from storefront.services.product_sync_service import unique_slug

MAX_PAGE_SIZE = 100

_SORT_COLUMNS = {
    "price": Product.price,
    "name": Product.name,
    "created_at": Product.created_at,
    "stock_quantity": Product.stock_quantity,
}
# Fields an admin may change on a product fed by the vendor sync
_VENDOR_EDITABLE = frozenset({"is_available", "is_featured"})

Taxonomy = Union[Category, Brand]


def paginate(query: Query, page: int, page_size: int) -> Tuple[List[Any], Dict[str, Any]]:
    page = max(1, int(page or 1))
    page_size = min(MAX_PAGE_SIZE, max(1, int(page_size)))
    total = query.order_by(None).count()
    rows = query.offset((page - 1) * page_size).limit(page_size).all()
    total_pages = (total + page_size - 1) // page_size if total else 0
    return rows, {
        "page": page,
        "page_size": page_size,
        "total": total,
        "total_pages": total_pages,
        "has_next": page < total_pages,
        "has_prev": page > 1,
    }


class CatalogService:
    def __init__(
        self,
        db_session: Session,
        pricing_service: Optional[PricingService] = None,
        config: type[Config] = Config,
    ) -> None:
        self.db = db_session
        self.config = config
        self.pricing = pricing_service or PricingService(db_session)
        self.logger = logging.getLogger(__name__)

    # ------------------------------------------------------------------
    # Storefront reads
    # ------------------------------------------------------------------
    def list_products(
        self,
        filters: Optional[ProductFilters] = None,
        page: int = 1,
        page_size: Optional[int] = None,
    ) -> Dict[str, Any]:
        """Filtered, sorted page of products plus ``pagination`` metadata."""
        filters = filters or ProductFilters()
        query = self._apply_filters(self._product_query(), filters)

        column = _SORT_COLUMNS[filters.sort]
        ordering = column.desc() if filters.descending else column.asc()
        tie_break = Product.productID.desc() if filters.descending else Product.productID.asc()
        products, pagination = paginate(
            query.order_by(ordering, tie_break),
            page,
            page_size or self.config.CATALOG_PAGE_SIZE,
        )
        return {"products": products, "pagination": pagination}

    def search(self, term: Optional[str], page: int = 1, page_size: Optional[int] = None) -> Dict[str, Any]:
        if not term:
            raise ValidationError("Search query is required", errors={"q": "Required"})
        result = self.list_products(ProductFilters(search=term), page, page_size)
        result["query"] = term
        return result

    def get_product(self, ref: str) -> Product:
        """Look a product up by numeric id or by slug."""
        query = self._product_query()
        if str(ref).isdigit():
            product = query.filter(Product.productID == int(ref)).first()
        else:
            product = query.filter(func.lower(Product.slug) == str(ref).lower()).first()
        if product is None:
            raise NotFoundError("Product not found")
        return product

    def filter_options(self) -> Dict[str, Any]:
        """Distinct attribute values and the price range over sellable products."""
        options: Dict[str, Any] = {}
        for name in ("color", "storage", "ram"):
            column = getattr(Product, name)
            rows = (
                self.db.query(column)
                .filter(column.isnot(None))
                .filter(Product.is_available.is_(True))
                .distinct()
                .order_by(column)
                .all()
            )
            options[name] = [value for (value,) in rows]
        low, high = (
            self.db.query(func.min(Product.price), func.max(Product.price))
            .filter(Product.is_available.is_(True))
            .one()
        )
        options["price_range"] = {
            "min": money_to_float(low) if low is not None else None,
            "max": money_to_float(high) if high is not None else None,
        }
        return options

    def list_categories(self, include_inactive: bool = False) -> List[Tuple[Category, int]]:
        query = self.db.query(Category)
        if not include_inactive:
            query = query.filter(Category.is_active.is_(True))
        categories = query.order_by(Category.sort_order, Category.name).all()
        counts = self._available_counts(Product.categoryID)
        return [(category, counts.get(category.categoryID, 0)) for category in categories]

    def list_brands(self, include_inactive: bool = False) -> List[Tuple[Brand, int]]:
        query = self.db.query(Brand)
        if not include_inactive:
            query = query.filter(Brand.is_active.is_(True))
        brands = query.order_by(Brand.name).all()
        counts = self._available_counts(Product.brandID)
        return [(brand, counts.get(brand.brandID, 0)) for brand in brands]

    def get_category_by_slug(self, slug: str) -> Category:
        category = (
            self.db.query(Category)
            .filter(func.lower(Category.slug) == slug.lower())
            .filter(Category.is_active.is_(True))
            .first()
        )
        if category is None:
            raise NotFoundError("Category not found")
        return category

    def get_brand_by_slug(self, slug: str) -> Brand:
        brand = (
            self.db.query(Brand)
            .filter(func.lower(Brand.slug) == slug.lower())
            .filter(Brand.is_active.is_(True))
            .first()
        )
        if brand is None:
            raise NotFoundError("Brand not found")
        return brand

    def products_in_category(self, slug: str, page: int = 1, page_size: Optional[int] = None) -> Dict[str, Any]:
        category = self.get_category_by_slug(slug)
        result = self.list_products(ProductFilters(category_id=category.categoryID, is_available=True), page, page_size)
        result["category"] = category
        return result

    def products_for_brand(self, slug: str, page: int = 1, page_size: Optional[int] = None) -> Dict[str, Any]:
        brand = self.get_brand_by_slug(slug)
        result = self.list_products(ProductFilters(brand_id=brand.brandID, is_available=True), page, page_size)
        result["brand"] = brand
        return result

    # ------------------------------------------------------------------
    # Admin: products
    # ------------------------------------------------------------------
    def create_product(self, data: ProductInput) -> Product:
        """Add an own-stock product; its sell price comes from the pricing rules."""
        values = data.values
        self._check_references(values)
        stock = values.get("stock_quantity") or 0
        product = Product(
            product_source=ProductSource.OWN,
            vendor_article_id=None,
            name=values["name"],
            sku=values["sku"],
            ean=values.get("ean"),
            description=values.get("description"),
            slug=unique_slug(self.db, Product, values["name"], fallback=f"product-{values['sku']}"),
            categoryID=values.get("category_id"),
            brandID=values.get("brand_id"),
            base_price=round_money(values["base_price"]),
            currency=self.config.CURRENCY,
            stock_quantity=stock,
            available_quantity=stock,
            reserved_quantity=0,
            is_available=values["is_available"] if values.get("is_available") is not None else stock > 0,
            is_featured=bool(values.get("is_featured")),
            color=values.get("color"),
            storage=values.get("storage"),
            ram=values.get("ram"),
            specifications=_dump_specifications(values.get("specifications")),
        )
        self.db.add(product)
        self.db.flush()
        product.price = self.pricing.price_for_product(product)
        self.db.commit()

        increment_counter("catalogue_changes_total", labels={"entity": "product", "action": "created"})
        record_event("product_created", {"product_id": product.productID, "sku": product.sku})
        self.logger.info("Own-stock product %s created", product.sku, extra={"product_id": product.productID})
        return product

    def update_product(self, product_id: int, data: ProductInput) -> Product:
        product = self._get(Product, product_id, "Product not found")
        values = data.values

        if not product.is_own_stock:
            locked = sorted(data.provided - _VENDOR_EDITABLE)
            if locked:
                raise ValidationError(
                    "Vendor products take these fields from the vendor feed",
                    errors={name: "Not editable for vendor products" for name in locked},
                )
        self._check_references(values)

        for name in ("name", "sku", "ean", "description", "color", "storage", "ram", "is_featured"):
            if name in values:
                setattr(product, name, values[name])
        if "is_available" in values:
            product.is_available = values["is_available"]
        if "category_id" in values:
            product.categoryID = values["category_id"]
        if "brand_id" in values:
            product.brandID = values["brand_id"]
        if "specifications" in values:
            product.specifications = _dump_specifications(values["specifications"])
        if "stock_quantity" in values:
            # Reserved units stay reserved; the rest of the shelf is sellable
            product.stock_quantity = values["stock_quantity"]
            product.available_quantity = max(0, values["stock_quantity"] - (product.reserved_quantity or 0))
        if "base_price" in values:
            product.base_price = round_money(values["base_price"])
        if data.provided & {"base_price", "category_id", "brand_id"}:
            product.price = self.pricing.price_for_product(product)
        self.db.commit()

        increment_counter("catalogue_changes_total", labels={"entity": "product", "action": "updated"})
        self.logger.info(
            "Product %s updated",
            product.productID,
            extra={"fields": sorted(data.provided)},
        )
        return product

    def admin_products(
        self,
        is_available: Optional[bool] = None,
        search: Optional[str] = None,
        product_source: Optional[str] = None,
        page: int = 1,
        page_size: Optional[int] = None,
    ) -> Dict[str, Any]:
        query = self._apply_filters(self._product_query(), ProductFilters(search=search, is_available=is_available))
        if product_source:
            try:
                query = query.filter(Product.product_source == ProductSource(product_source))
            except ValueError as exc:
                raise ValidationError("Invalid product source", errors={"product_source": product_source}) from exc
        products, pagination = paginate(
            query.order_by(Product.created_at.desc(), Product.productID.desc()),
            page,
            page_size or self.config.ADMIN_PRODUCT_PAGE_SIZE,
        )
        return {"products": products, "pagination": pagination}

    # ------------------------------------------------------------------
    # Admin: categories & brands
    # ------------------------------------------------------------------
    def create_category(self, data: TaxonomyInput) -> Category:
        return self._create_taxonomy(Category, data)

    def update_category(self, category_id: int, data: TaxonomyInput) -> Category:
        return self._update_taxonomy(Category, category_id, data)

    def delete_category(self, category_id: int) -> None:
        self._delete_taxonomy(Category, category_id, Product.categoryID, PricingRuleType.CATEGORY)

    def create_brand(self, data: TaxonomyInput) -> Brand:
        return self._create_taxonomy(Brand, data)

    def update_brand(self, brand_id: int, data: TaxonomyInput) -> Brand:
        return self._update_taxonomy(Brand, brand_id, data)

    def delete_brand(self, brand_id: int) -> None:
        self._delete_taxonomy(Brand, brand_id, Product.brandID, PricingRuleType.BRAND)

    def _create_taxonomy(self, model: Type[Taxonomy], data: TaxonomyInput) -> Taxonomy:
        values = data.values
        entity = model(
            name=values["name"],
            slug=unique_slug(self.db, model, values.get("slug") or values["name"], fallback=model.__tablename__.lower()),
            description=values.get("description"),
            is_active=values["is_active"] if values.get("is_active") is not None else True,
        )
        self._apply_taxonomy_extras(entity, values)
        self.db.add(entity)
        self.db.commit()

        label = model.__tablename__.lower()
        increment_counter("catalogue_changes_total", labels={"entity": label, "action": "created"})
        self.logger.info("%s %s created", model.__tablename__, entity.slug)
        return entity

    def _update_taxonomy(self, model: Type[Taxonomy], entity_id: int, data: TaxonomyInput) -> Taxonomy:
        entity = self._get(model, entity_id, f"{model.__tablename__} not found")
        values = data.values
        if "name" in values:
            entity.name = values["name"]
        if values.get("slug"):
            entity.slug = unique_slug(self.db, model, values["slug"], fallback=entity.slug, exclude_id=entity_id)
        if "description" in values:
            entity.description = values["description"]
        if values.get("is_active") is not None:
            entity.is_active = values["is_active"]
        self._apply_taxonomy_extras(entity, values)
        self.db.commit()

        label = model.__tablename__.lower()
        increment_counter("catalogue_changes_total", labels={"entity": label, "action": "updated"})
        self.logger.info("%s %s updated", model.__tablename__, entity.slug)
        return entity

    def _delete_taxonomy(self, model: Type[Taxonomy], entity_id: int, product_column, rule_type: PricingRuleType) -> None:
        entity = self._get(model, entity_id, f"{model.__tablename__} not found")
        linked = self.db.query(func.count(Product.productID)).filter(product_column == entity_id).scalar()
        if linked:
            raise ConflictError(
                f"{model.__tablename__} still has {linked} products",
                errors={"product_count": linked},
            )

        self.db.query(PricingRule).filter(PricingRule.rule_type == rule_type).filter(
            PricingRule.entity_id == entity_id
        ).delete(synchronize_session=False)
        self.db.delete(entity)
        self.db.commit()

        label = model.__tablename__.lower()
        increment_counter("catalogue_changes_total", labels={"entity": label, "action": "deleted"})
        self.logger.info("%s %s deleted", model.__tablename__, entity_id)

    @staticmethod
    def _apply_taxonomy_extras(entity: Taxonomy, values: Dict[str, Any]) -> None:
        if isinstance(entity, Category) and values.get("sort_order") is not None:
            entity.sort_order = values["sort_order"]
        if isinstance(entity, Brand) and "logo_url" in values:
            entity.logo_url = values["logo_url"]

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _product_query(self) -> Query:
        return self.db.query(Product).options(joinedload(Product.category), joinedload(Product.brand))

    @staticmethod
    def _apply_filters(query: Query, filters: ProductFilters) -> Query:
        if filters.category_id:
            query = query.filter(Product.categoryID == filters.category_id)
        if filters.brand_id:
            query = query.filter(Product.brandID == filters.brand_id)
        if filters.is_available is not None:
            query = query.filter(Product.is_available.is_(filters.is_available))
        if filters.min_price is not None:
            query = query.filter(Product.price >= filters.min_price)
        if filters.max_price is not None:
            query = query.filter(Product.price <= filters.max_price)
        for name in ("color", "storage", "ram"):
            value = getattr(filters, name)
            if value:
                query = query.filter(getattr(Product, name) == value)
        if filters.is_featured:
            query = query.filter(Product.is_featured.is_(True))
        if filters.search:
            term = f"%{filters.search.strip()}%"
            query = query.filter(or_(Product.name.ilike(term), Product.sku.ilike(term), Product.ean.ilike(term)))
        return query

    def _available_counts(self, column) -> Dict[int, int]:
        rows = (
            self.db.query(column, func.count(Product.productID))
            .filter(Product.is_available.is_(True))
            .filter(column.isnot(None))
            .group_by(column)
            .all()
        )
        return {entity_id: count for entity_id, count in rows}

    def _check_references(self, values: Dict[str, Any]) -> None:
        if values.get("category_id") is not None:
            self._get(Category, values["category_id"], "Category not found")
        if values.get("brand_id") is not None:
            self._get(Brand, values["brand_id"], "Brand not found")

    def _get(self, model: Type[Any], entity_id: int, message: str) -> Any:
        entity = self.db.get(model, entity_id)
        if entity is None:
            raise NotFoundError(message)
        return entity


def _dump_specifications(value: Any) -> Optional[str]:
    return json.dumps(value) if value else None


__all__ = ["CatalogService", "paginate", "MAX_PAGE_SIZE"]
