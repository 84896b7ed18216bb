"""Tests for the wishlist endpoints."""

from conftest import auth_headers


def add(client, user, product):
    return client.post("/api/wishlist", json={"productId": str(product["_id"])}, headers=auth_headers(user))


class TestWishlist:
    def test_empty_when_missing(self, client, customer):
        response = client.get("/api/wishlist", headers=auth_headers(customer))
        assert response.status_code == 200
        assert response.json()["data"]["items"] == []

    def test_add_is_idempotent(self, client, customer, make_product):
        product = make_product(name="Tea Pot", price=15.0)
        add(client, customer, product)
        response = add(client, customer, product)
        data = response.json()["data"]
        assert data["productIds"] == [str(product["_id"])]
        assert data["items"][0]["name"] == "Tea Pot"
        assert data["items"][0]["price"] == 15.0

    def test_unknown_product(self, client, customer, make_product):
        retired = make_product(is_active=False)
        response = add(client, customer, retired)
        assert response.status_code == 404
        assert response.json()["message"] == "Product not found"

    def test_remove(self, client, customer, make_product):
        keep, drop = make_product(name="Keep"), make_product(name="Drop")
        add(client, customer, keep)
        add(client, customer, drop)
        response = client.delete(f"/api/wishlist/{drop['_id']}", headers=auth_headers(customer))
        assert [i["name"] for i in response.json()["data"]["items"]] == ["Keep"]

    def test_remove_missing(self, client, customer, make_product):
        add(client, customer, make_product(name="Keep"))
        other = make_product(name="Other")
        response = client.delete(f"/api/wishlist/{other['_id']}", headers=auth_headers(customer))
        assert response.status_code == 404
        assert response.json()["message"] == "Item not found in wishlist"

    def test_clear(self, client, customer, make_product):
        add(client, customer, make_product())
        response = client.delete("/api/wishlist", headers=auth_headers(customer))
        assert response.json()["data"]["items"] == []

    def test_clear_without_wishlist(self, client, customer):
        response = client.delete("/api/wishlist", headers=auth_headers(customer))
        assert response.status_code == 404
        assert response.json()["message"] == "Wishlist not found"

    def test_lists_are_per_user(self, client, customer, make_user, make_product):
        add(client, customer, make_product())
        other = make_user(name="Bob", email="bob@example.com")
        assert client.get("/api/wishlist", headers=auth_headers(other)).json()["data"]["items"] == []
