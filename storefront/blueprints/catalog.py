"""Public catalogue: product listings, search, categories and brands."""
from __future__ import annotations

from flask import Blueprint, request

from storefront.blueprints import page_args
from storefront.blueprints.serializers import serialize_brand, serialize_category, serialize_product
from storefront.database import get_db
from storefront.responses import success_response
from storefront.schemas import ProductFilters, sanitize_text
from storefront.services.catalog_service import CatalogService

catalog_bp = Blueprint("catalog", __name__)


def _get_catalog_service() -> CatalogService:
    return CatalogService(get_db())


def _product_page(result):
    result["products"] = [serialize_product(product) for product in result["products"]]
    return result


@catalog_bp.route("/products", methods=["GET"])
def list_products():
    service = _get_catalog_service()
    page, page_size = page_args()
    result = _product_page(service.list_products(ProductFilters.from_args(request.args), page, page_size))
    result["filters"] = service.filter_options()
    return success_response(result, "Products retrieved")


@catalog_bp.route("/products/search", methods=["GET"])
def search_products():
    page, page_size = page_args()
    term = sanitize_text(request.args.get("q"), max_length=100)
    result = _product_page(_get_catalog_service().search(term, page, page_size))
    return success_response(result, "Search results")


@catalog_bp.route("/products/<ref>", methods=["GET"])
def get_product(ref: str):
    product = _get_catalog_service().get_product(ref)
    return success_response(serialize_product(product), "Product retrieved")


@catalog_bp.route("/categories", methods=["GET"])
def list_categories():
    categories = [serialize_category(c, count) for c, count in _get_catalog_service().list_categories()]
    return success_response(categories, "Categories retrieved")


@catalog_bp.route("/categories/<slug>/products", methods=["GET"])
def category_products(slug: str):
    page, page_size = page_args()
    result = _product_page(_get_catalog_service().products_in_category(slug, page, page_size))
    result["category"] = serialize_category(result["category"])
    return success_response(result, "Products retrieved")


@catalog_bp.route("/brands", methods=["GET"])
def list_brands():
    brands = [serialize_brand(b, count) for b, count in _get_catalog_service().list_brands()]
    return success_response(brands, "Brands retrieved")


@catalog_bp.route("/brands/<slug>/products", methods=["GET"])
def brand_products(slug: str):
    page, page_size = page_args()
    result = _product_page(_get_catalog_service().products_for_brand(slug, page, page_size))
    result["brand"] = serialize_brand(result["brand"])
    return success_response(result, "Products retrieved")
