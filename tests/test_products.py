import pytest
from bson import ObjectId

from conftest import bearer


def test_create_product_defaults_to_sample_values(make_product, admin):
    product = make_product()

    assert product["name"] == "Sample product"
    assert product["brand"] == "Sample brand"
    assert product["price"] == 0
    assert product["count_in_stock"] == 0
    assert product["image"] == "/images/sample.jpg"
    assert product["user"] == admin["id"]
    assert product["reviews"] == []
    assert product["num_reviews"] == 0


def test_create_product_requires_admin(client, user_headers):
    response = client.post("/api/products", json={"name": "Nope"}, headers=user_headers)

    assert response.status_code == 403


def test_update_product(client, make_product, admin_headers):
    product = make_product(name="Old name", price=10)

    response = client.put(
        f"/api/products/{product['id']}",
        json={"name": "New name", "price": 12.5, "count_in_stock": 4},
        headers=admin_headers,
    )

    assert response.status_code == 200
    body = response.get_json()
    assert body["name"] == "New name"
    assert body["price"] == 12.5
    assert body["count_in_stock"] == 4


def test_update_product_rejects_negative_price(client, make_product, admin_headers):
    product = make_product()

    response = client.put(
        f"/api/products/{product['id']}", json={"price": -3}, headers=admin_headers
    )

    assert response.status_code == 400


def test_delete_product(client, make_product, admin_headers):
    product = make_product()

    deleted = client.delete(f"/api/products/{product['id']}", headers=admin_headers)
    missing = client.get(f"/api/products/{product['id']}")

    assert deleted.status_code == 200
    assert missing.status_code == 404


def test_get_product_with_malformed_id(client):
    response = client.get("/api/products/not-an-id")

    assert response.status_code == 400
    assert response.get_json()["message"] == "Invalid product identifier."


def test_get_unknown_product(client):
    response = client.get(f"/api/products/{ObjectId()}")

    assert response.status_code == 404
    assert response.get_json()["message"] == "Product not found."


def test_list_products_paginates(client, make_product):
    for index in range(6):
        make_product(name=f"Widget {index}")

    first = client.get("/api/products").get_json()
    second = client.get("/api/products?pageNumber=2").get_json()

    assert first["pages"] == 2
    assert first["page"] == 1
    assert [item["name"] for item in first["products"]] == [
        "Widget 0",
        "Widget 1",
        "Widget 2",
        "Widget 3",
    ]
    assert [item["name"] for item in second["products"]] == ["Widget 4", "Widget 5"]
    assert first["fallback"] is False


def test_list_products_keyword_is_case_insensitive_substring(client, make_product):
    make_product(name="Wireless Mouse")
    make_product(name="Gaming MOUSE pad")
    make_product(name="Keyboard")

    body = client.get("/api/products?keyword=mouse").get_json()

    assert body["fallback"] is False
    assert "message" not in body
    assert body["pages"] == 1
    assert sorted(item["name"] for item in body["products"]) == [
        "Gaming MOUSE pad",
        "Wireless Mouse",
    ]


def test_list_products_keyword_with_regex_characters(client, make_product):
    make_product(name="USB-C (2m) cable")
    make_product(name="Lamp")

    body = client.get("/api/products?keyword=(2m)").get_json()

    assert [item["name"] for item in body["products"]] == ["USB-C (2m) cable"]


def test_list_products_without_matches_falls_back_to_full_catalog(client, make_product):
    for index in range(5):
        make_product(name=f"Lamp {index}")

    body = client.get("/api/products?keyword=submarine").get_json()

    assert body["fallback"] is True
    assert body["message"]
    assert body["pages"] == 2
    assert len(body["products"]) == 4


def test_top_products_are_highest_rated(client, database, make_product):
    ratings = {"A": 2.0, "B": 4.5, "C": 3.0, "D": 5.0}
    for name, rating in ratings.items():
        product = make_product(name=name)
        database.products.update_one(
            {"_id": ObjectId(product["id"])}, {"$set": {"rating": rating}}
        )

    response = client.get("/api/products/top")

    assert response.status_code == 200
    assert [item["name"] for item in response.get_json()] == ["D", "B", "C"]


def test_product_routes_require_token_for_writes(client, make_product):
    product = make_product()

    response = client.delete(f"/api/products/{product['id']}", headers=bearer("junk"))

    assert response.status_code == 401


def test_product_stock_accepts_camel_case_key(client, make_product, admin_headers):
    product = make_product(countInStock=3)

    response = client.put(
        f"/api/products/{product['id']}",
        json={"countInStock": 9},
        headers=admin_headers,
    )

    assert product["count_in_stock"] == 3
    assert response.status_code == 200
    assert response.get_json()["count_in_stock"] == 9


@pytest.mark.parametrize("page_number", ["1e30", "99999999999999999999"])
def test_list_products_with_huge_page_number_is_empty(client, make_product, page_number):
    make_product(name="Widget")

    response = client.get(f"/api/products?pageNumber={page_number}")

    assert response.status_code == 200
    assert response.get_json()["products"] == []


def test_list_products_with_infinite_page_number_uses_first_page(client, make_product):
    make_product(name="Widget")

    response = client.get("/api/products?pageNumber=inf")

    assert response.status_code == 200
    assert response.get_json()["page"] == 1
    assert [item["name"] for item in response.get_json()["products"]] == ["Widget"]
