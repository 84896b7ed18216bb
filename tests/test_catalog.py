"""Tests for products, reviews and categories."""

from datetime import timedelta

import pytest

import database
from conftest import auth_headers


class TestListProducts:
    def test_defaults(self, client, make_product):
        for i in range(3):
            make_product(name=f"Item {i}")
        body = client.get("/api/products").json()
        assert body["success"] is True
        assert body["count"] == 3
        assert body["pagination"] == {
            "currentPage": 1, "totalPages": 1, "totalProducts": 3, "hasNext": False, "hasPrev": False,
        }

    def test_pagination(self, client, make_product):
        for i in range(5):
            make_product(name=f"Item {i}")
        body = client.get("/api/products", params={"page": 2, "limit": 2}).json()
        assert body["count"] == 2
        assert body["pagination"]["totalPages"] == 3
        assert body["pagination"]["hasNext"] is True
        assert body["pagination"]["hasPrev"] is True

    def test_out_of_range_limit_falls_back(self, client, make_product):
        make_product()
        body = client.get("/api/products", params={"limit": 500, "page": 0}).json()
        assert body["pagination"]["currentPage"] == 1
        assert body["count"] == 1

    def test_inactive_products_are_hidden(self, client, make_product):
        make_product(name="Visible")
        make_product(name="Retired", is_active=False)
        names = [p["name"] for p in client.get("/api/products").json()["data"]]
        assert names == ["Visible"]

    def test_search_is_case_insensitive_and_literal(self, client, make_product):
        make_product(name="Blue Kettle")
        make_product(name="Red Lamp")
        make_product(name="Lamp (2-pack)")
        assert [p["name"] for p in client.get("/api/products", params={"search": "kettle"}).json()["data"]] == \
            ["Blue Kettle"]
        assert [p["name"] for p in client.get("/api/products", params={"search": "(2"}).json()["data"]] == \
            ["Lamp (2-pack)"]

    def test_price_range_and_sort(self, client, make_product):
        make_product(name="Cheap", price=5.0)
        make_product(name="Middle", price=15.0)
        make_product(name="Pricey", price=50.0)
        body = client.get("/api/products",
                          params={"minPrice": 10, "maxPrice": 60, "sort": "price-high"}).json()
        assert [p["name"] for p in body["data"]] == ["Pricey", "Middle"]

    def test_newest_first(self, client, make_product):
        now = database.utcnow()
        make_product(name="Old", created_at=now - timedelta(days=2))
        make_product(name="New", created_at=now)
        assert [p["name"] for p in client.get("/api/products").json()["data"]] == ["New", "Old"]

    def test_category_filter(self, client, make_product):
        make_product(name="Pan")
        make_product(name="Shirt", category="Clothing")
        body = client.get("/api/products", params={"category": "clothing"}).json()
        assert [p["name"] for p in body["data"]] == ["Shirt"]


class TestProductDetail:
    def test_get(self, client, make_product):
        product = make_product(name="Tea Pot")
        response = client.get(f"/api/products/{product['_id']}")
        assert response.status_code == 200
        assert response.json()["data"]["name"] == "Tea Pot"
        assert response.json()["data"]["reviews"] == []

    def test_inactive_is_not_found(self, client, make_product):
        product = make_product(is_active=False)
        assert client.get(f"/api/products/{product['_id']}").status_code == 404

    def test_malformed_id(self, client):
        response = client.get("/api/products/not-an-id")
        assert response.status_code == 404
        assert response.json()["success"] is False


class TestManageProducts:
    def test_seller_creates(self, client, seller):
        response = client.post("/api/products", json={"name": "Desk", "price": 120.0, "stock": 3},
                               headers=auth_headers(seller))
        assert response.status_code == 201
        data = response.json()["data"]
        assert data["sellerId"] == str(seller["_id"])
        assert data["sold"] == 0
        assert data["ratings"] == {"average": 0, "count": 0}

    def test_customer_cannot_create(self, client, customer):
        response = client.post("/api/products", json={"name": "Desk", "price": 120.0},
                               headers=auth_headers(customer))
        assert response.status_code == 403
        assert response.json()["message"] == "User role customer is not authorized to access this route"

    def test_negative_price_rejected(self, client, seller):
        response = client.post("/api/products", json={"name": "Desk", "price": -1},
                               headers=auth_headers(seller))
        assert response.status_code == 400

    def test_owner_updates(self, client, seller, make_product):
        product = make_product(seller=seller)
        response = client.put(f"/api/products/{product['_id']}", json={"price": 11.5, "stock": 7},
                              headers=auth_headers(seller))
        assert response.json()["data"]["price"] == 11.5
        assert response.json()["data"]["stock"] == 7

    def test_other_seller_cannot_update(self, client, seller, make_user, make_product):
        product = make_product(seller=seller)
        rival = make_user(name="Rita Rival", email="rita@example.com", role="seller")
        response = client.put(f"/api/products/{product['_id']}", json={"price": 1.0},
                              headers=auth_headers(rival))
        assert response.status_code == 401
        assert response.json()["message"] == "Not authorized to update this product"

    def test_admin_can_update_any(self, client, seller, admin, make_product):
        product = make_product(seller=seller)
        response = client.put(f"/api/products/{product['_id']}", json={"name": "Renamed"},
                              headers=auth_headers(admin))
        assert response.json()["data"]["name"] == "Renamed"

    def test_delete_hides_product(self, client, db, seller, make_product):
        product = make_product(seller=seller)
        response = client.delete(f"/api/products/{product['_id']}", headers=auth_headers(seller))
        assert response.status_code == 200
        assert db["product"].find_one({"_id": product["_id"]})["is_active"] is False
        assert client.get("/api/products").json()["count"] == 0

    def test_products_by_seller(self, client, seller, customer, make_product):
        make_product(name="One", seller=seller)
        make_product(name="Two", seller=seller)
        make_product(name="Elsewhere")
        body = client.get(f"/api/products/seller/{seller['_id']}", headers=auth_headers(customer)).json()
        assert body["count"] == 2


class TestReviews:
    def test_ratings_are_recomputed(self, client, customer, make_user, make_product):
        product = make_product()
        other = make_user(name="Bob", email="bob@example.com")
        client.post(f"/api/products/{product['_id']}/reviews", json={"rating": 5, "comment": "Great"},
                    headers=auth_headers(customer))
        response = client.post(f"/api/products/{product['_id']}/reviews", json={"rating": 2},
                               headers=auth_headers(other))
        assert response.status_code == 201
        assert response.json()["data"]["ratings"] == {"average": 3.5, "count": 2}

        detail = client.get(f"/api/products/{product['_id']}").json()["data"]
        assert len(detail["reviews"]) == 2

    def test_one_review_per_user(self, client, customer, make_product):
        product = make_product()
        headers = auth_headers(customer)
        client.post(f"/api/products/{product['_id']}/reviews", json={"rating": 4}, headers=headers)
        response = client.post(f"/api/products/{product['_id']}/reviews", json={"rating": 1}, headers=headers)
        assert response.status_code == 400
        assert response.json()["message"] == "You already reviewed this product"

    @pytest.mark.parametrize("rating", [0, 6])
    def test_rating_bounds(self, client, customer, make_product, rating):
        product = make_product()
        response = client.post(f"/api/products/{product['_id']}/reviews", json={"rating": rating},
                               headers=auth_headers(customer))
        assert response.status_code == 400


class TestSellerStats:
    def test_counts_only_own_lines(self, client, customer, seller, make_product, place_order):
        mine = make_product(name="Mine", price=10.0, stock=10, seller=seller)
        make_product(name="Second", price=4.0, stock=2, seller=seller, is_active=False)
        place_order(customer, mine, quantity=3)

        response = client.get(f"/api/products/seller/{seller['_id']}/stats", headers=auth_headers(seller))
        stats = response.json()["data"]
        assert stats["totalProducts"] == 2
        assert stats["activeProducts"] == 1
        assert stats["totalStock"] == 9
        assert stats["totalSold"] == 3
        assert stats["unitsOrdered"] == 3
        assert stats["totalOrders"] == 1
        assert stats["totalRevenue"] == pytest.approx(30.0)

    def test_other_seller_is_refused(self, client, seller, make_user):
        rival = make_user(name="Rita Rival", email="rita@example.com", role="seller")
        response = client.get(f"/api/products/seller/{seller['_id']}/stats", headers=auth_headers(rival))
        assert response.status_code == 401


class TestCategories:
    def test_admin_crud(self, client, admin):
        headers = auth_headers(admin)
        response = client.post("/api/categories", json={"name": "Garden"}, headers=headers)
        assert response.status_code == 201
        category_id = response.json()["data"]["id"]

        response = client.put(f"/api/categories/{category_id}", json={"description": "Outdoor things"},
                              headers=headers)
        assert response.json()["data"]["description"] == "Outdoor things"

        assert client.get("/api/categories").json()["count"] == 1
        assert client.get(f"/api/categories/{category_id}").json()["data"]["name"] == "Garden"
        assert client.delete(f"/api/categories/{category_id}", headers=headers).status_code == 200
        assert client.get(f"/api/categories/{category_id}").status_code == 404

    def test_duplicate_name(self, client, admin):
        headers = auth_headers(admin)
        client.post("/api/categories", json={"name": "Garden"}, headers=headers)
        response = client.post("/api/categories", json={"name": "Garden"}, headers=headers)
        assert response.status_code == 400
        assert response.json()["message"] == "Category Garden already exists"

    def test_inactive_categories_hidden(self, client, admin):
        headers = auth_headers(admin)
        category_id = client.post("/api/categories", json={"name": "Old"}, headers=headers).json()["data"]["id"]
        client.put(f"/api/categories/{category_id}", json={"isActive": False}, headers=headers)
        assert client.get("/api/categories").json()["count"] == 0

    def test_seller_cannot_create(self, client, seller):
        response = client.post("/api/categories", json={"name": "Garden"}, headers=auth_headers(seller))
        assert response.status_code == 403
