"""Per-user shopping cart.

Totals are recomputed from the lines after every change. Adding a product
that is already in the cart merges the quantities and re-captures the
current product price for the whole line.
"""
import logging
from typing import Any, Dict, List

from pymongo import ReturnDocument

import config
import database
import orders
from errors import InsufficientStock, NotFoundError, ValidationError

logger = logging.getLogger(__name__)


def _product(product_id: str) -> Dict[str, Any]:
    product = database.db["product"].find_one({"_id": database.object_id(product_id, "Product")})
    if not product or product.get("is_active") is False:
        raise NotFoundError("Product not found")
    return product


def _check_stock(product: Dict[str, Any], quantity: int) -> None:
    if product.get("stock", 0) < quantity:
        raise InsufficientStock(f"Only {product.get('stock', 0)} items available in stock")


def _totals(items: List[Dict[str, Any]]) -> Dict[str, Any]:
    return {
        "total_items": sum(i["quantity"] for i in items),
        "total_price": round(sum(i["price"] * i["quantity"] for i in items), 2),
    }


def _save(cart: Dict[str, Any], items: List[Dict[str, Any]]) -> Dict[str, Any]:
    cart.update({"items": items, **_totals(items), "updated_at": database.utcnow()})
    database.db["cart"].update_one(
        {"_id": cart["_id"]},
        {"$set": {"items": items, "total_items": cart["total_items"],
                  "total_price": cart["total_price"], "updated_at": cart["updated_at"]}},
    )
    return cart


def _find(user_id: str) -> Dict[str, Any]:
    cart = database.db["cart"].find_one({"user_id": user_id})
    if not cart:
        raise NotFoundError("Cart not found")
    return cart


def _populate(cart: Dict[str, Any]) -> Dict[str, Any]:
    ids = [database.object_id(i["product_id"], "Product") for i in cart.get("items", [])]
    products = {str(p["_id"]): p for p in database.db["product"].find({"_id": {"$in": ids}})}
    for item in cart.get("items", []):
        p = products.get(item["product_id"])
        if p:
            item["product"] = {"id": str(p["_id"]), "name": p["name"], "price": p["price"],
                               "images": p.get("images", [])}
    return cart


def get_cart(user_id: str) -> Dict[str, Any]:
    cart = database.db["cart"].find_one({"user_id": user_id})
    if not cart:
        return {"user_id": user_id, "items": [], "total_items": 0, "total_price": 0}
    return _populate(cart)


def add_item(user_id: str, product_id: str, quantity: int) -> Dict[str, Any]:
    product = _product(product_id)
    # checked against the requested quantity, not the merged line
    _check_stock(product, quantity)

    cart = database.db["cart"].find_one_and_update(
        {"user_id": user_id},
        {"$setOnInsert": {"user_id": user_id, "items": [], "total_items": 0, "total_price": 0,
                          "created_at": database.utcnow()}},
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )
    items = cart.get("items", [])
    product_id = str(product["_id"])
    for item in items:
        if item["product_id"] == product_id:
            item["quantity"] += quantity
            item["price"] = float(product["price"])
            break
    else:
        items.append({"product_id": product_id, "quantity": quantity, "price": float(product["price"])})
    return _populate(_save(cart, items))


def update_item(user_id: str, product_id: str, quantity: int) -> Dict[str, Any]:
    cart = _find(user_id)
    product = _product(product_id)
    _check_stock(product, quantity)

    items = cart.get("items", [])
    product_id = str(product["_id"])
    for index, item in enumerate(items):
        if item["product_id"] == product_id:
            break
    else:
        raise NotFoundError("Item not found in cart")

    if quantity <= 0:
        items.pop(index)
    else:
        items[index]["quantity"] = quantity
        items[index]["price"] = float(product["price"])
    return _populate(_save(cart, items))


def remove_item(user_id: str, product_id: str) -> Dict[str, Any]:
    cart = _find(user_id)
    items = cart.get("items", [])
    remaining = [i for i in items if i["product_id"] != product_id]
    if len(remaining) == len(items):
        raise NotFoundError("Item not found in cart")
    return _populate(_save(cart, remaining))


def clear(user_id: str) -> Dict[str, Any]:
    return _save(_find(user_id), [])


def checkout(user: Dict[str, Any], shipping_address: Dict[str, Any], payment_method: str) -> Dict[str, Any]:
    """Place an order for everything in the cart and empty it."""
    if not shipping_address:
        raise ValidationError("Shipping address is required")
    if not payment_method:
        raise ValidationError("Payment method is required")

    user_id = str(user["_id"])
    cart = database.db["cart"].find_one({"user_id": user_id})
    if not cart or not cart.get("items"):
        raise ValidationError("Cart is empty")

    items = [{"product_id": i["product_id"], "quantity": i["quantity"]} for i in cart["items"]]
    items_price = round(sum(i["price"] * i["quantity"] for i in cart["items"]), 2)
    order = orders.create_order(user, items, shipping_address, payment_method,
                                tax_price=None, shipping_price=config.SHIPPING_PRICE,
                                items_price=items_price)
    _save(cart, [])
    logger.info("Cart of user %s checked out into order %s", user_id, order["_id"])
    return order
