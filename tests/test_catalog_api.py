import pytest

from storefront.models import Category, Product, ProductSource


# ---------------------------------------------
# Public catalogue
# ---------------------------------------------
def test_product_listing_hides_cost_price(client, products):
    response = client.get("/products?sort=price&order=asc")

    data = response.get_json()["data"]
    assert response.status_code == 200
    assert [p["sku"] for p in data["products"]] == ["SKU-2044-000001", "SKU-1028-131512_BR001"]
    first = data["products"][0]
    assert first["category"]["slug"] == "smartphones"
    assert first["in_stock"] is True
    assert "base_price" not in first
    assert "vendor_article_id" not in first
    assert data["pagination"]["total"] == 2
    assert data["filters"]["price_range"] == {"min": 12.5, "max": 45.0}


def test_product_listing_accepts_limit_alias(client, products):
    data = client.get("/products?limit=1&page=2").get_json()["data"]
    assert data["pagination"]["page_size"] == 1
    assert data["pagination"]["has_prev"] is True
    assert len(data["products"]) == 1


@pytest.mark.parametrize("query", ["min_price=abc", "category_id=-1", "is_available=maybe", "page=x"])
def test_product_listing_rejects_bad_filters(client, products, query):
    response = client.get(f"/products?{query}")
    assert response.status_code == 400
    assert response.get_json()["success"] is False


def test_search_requires_query(client):
    response = client.get("/products/search")
    assert response.status_code == 400
    assert response.get_json()["errors"] == {"q": "Required"}


def test_search_returns_matches(client, products):
    data = client.get("/products/search?q=2044").get_json()["data"]
    assert [p["sku"] for p in data["products"]] == ["SKU-2044-000001"]
    assert data["query"] == "2044"


def test_product_detail_by_slug_and_missing(client, products):
    phone, _ = products
    response = client.get(f"/products/{phone.slug}")
    assert response.status_code == 200
    assert response.get_json()["data"]["id"] == phone.productID

    missing = client.get("/products/does-not-exist")
    assert missing.status_code == 404
    assert missing.get_json()["message"] == "Product not found"


def test_categories_and_brands_with_counts(client, products):
    categories = client.get("/categories").get_json()["data"]
    brands = client.get("/brands").get_json()["data"]

    assert [(c["slug"], c["product_count"]) for c in categories] == [("smartphones", 2)]
    assert [(b["slug"], b["product_count"]) for b in brands] == [("apple", 1)]


def test_category_products_page(client, products):
    response = client.get("/categories/smartphones/products")
    data = response.get_json()["data"]
    assert response.status_code == 200
    assert data["category"]["name"] == "Smartphones"
    assert data["pagination"]["total"] == 2


def test_inactive_brand_is_not_browsable(client, db_session, brand, products):
    brand.is_active = False
    db_session.commit()
    assert client.get("/brands/apple/products").status_code == 404
    assert client.get("/brands").get_json()["data"] == []


# ---------------------------------------------
# Admin catalogue
# ---------------------------------------------
def test_admin_catalogue_requires_token(client):
    assert client.get("/admin/products").status_code == 401
    assert client.post("/admin/categories", json={"name": "Tablets"}).status_code == 401


def test_admin_product_list_shows_stock_split(client, admin_headers, products):
    response = client.get("/admin/products?product_source=vendor", headers=admin_headers)

    data = response.get_json()["data"]
    assert response.status_code == 200
    assert {p["product_source"] for p in data["products"]} == {"vendor"}
    assert "reserved_quantity" in data["products"][0]
    assert data["pagination"]["page_size"] == 50


def test_admin_creates_and_updates_own_product(client, admin_headers, db_session, category):
    created = client.post(
        "/admin/products",
        json={"name": "Screen Protector", "sku": "SP-1", "base_price": 4.5, "stock_quantity": 30, "category_id": category.categoryID},
        headers=admin_headers,
    )
    assert created.status_code == 201
    product = created.get_json()["data"]
    assert product["product_source"] == "own"
    assert product["price"] == 4.5

    updated = client.put(
        f"/admin/products/{product['id']}",
        json={"stock_quantity": 0, "is_available": False},
        headers=admin_headers,
    )
    assert updated.status_code == 200
    assert updated.get_json()["data"]["available_quantity"] == 0
    assert db_session.get(Product, product["id"]).is_available is False


def test_admin_product_create_reports_missing_fields(client, admin_headers):
    response = client.post("/admin/products", json={"sku": "X"}, headers=admin_headers)
    assert response.status_code == 400
    assert set(response.get_json()["errors"]) == {"name", "base_price"}


def test_admin_cannot_rename_vendor_product(client, admin_headers, products):
    phone, _ = products
    response = client.put(f"/admin/products/{phone.productID}", json={"base_price": 1}, headers=admin_headers)
    assert response.status_code == 400
    assert response.get_json()["errors"] == {"base_price": "Not editable for vendor products"}


def test_admin_category_lifecycle(client, admin_headers, db_session):
    created = client.post("/admin/categories", json={"name": "Tablets", "description": "<b>Big</b> screens"}, headers=admin_headers)
    assert created.status_code == 201
    category = created.get_json()["data"]
    assert category["slug"] == "tablets"
    assert category["description"] == "Big screens"

    hidden = client.put(f"/admin/categories/{category['id']}", json={"is_active": False}, headers=admin_headers)
    assert hidden.get_json()["data"]["is_active"] is False
    listed = client.get("/admin/categories", headers=admin_headers).get_json()["data"]
    assert [(c["slug"], c["is_active"]) for c in listed] == [("tablets", False)]

    deleted = client.delete(f"/admin/categories/{category['id']}", headers=admin_headers)
    assert deleted.status_code == 200
    assert db_session.query(Category).count() == 0


def test_admin_cannot_delete_brand_in_use(client, admin_headers, brand, products):
    response = client.delete(f"/admin/brands/{brand.brandID}", headers=admin_headers)
    assert response.status_code == 409
    assert response.get_json()["errors"] == {"product_count": 1}


def test_admin_brand_update_needs_fields(client, admin_headers, brand):
    response = client.put(f"/admin/brands/{brand.brandID}", json={}, headers=admin_headers)
    assert response.status_code == 400
    assert response.get_json()["message"] == "No valid fields to update"


def test_own_products_listed_by_source(client, admin_headers, db_session):
    db_session.add(
        Product(product_source=ProductSource.OWN, sku="OWN-9", name="Shelf", slug="shelf", base_price=1, price=1)
    )
    db_session.commit()
    data = client.get("/admin/products?product_source=own", headers=admin_headers).get_json()["data"]
    assert [p["sku"] for p in data["products"]] == ["OWN-9"]
