"""Per-user wishlist of product ids."""
from typing import Any, Dict

from pymongo import ReturnDocument

import database
from errors import NotFoundError


def _populate(wishlist: Dict[str, Any]) -> Dict[str, Any]:
    ids = [database.object_id(pid, "Product") for pid in wishlist.get("product_ids", [])]
    products = {str(p["_id"]): p for p in database.db["product"].find({"_id": {"$in": ids}})}
    wishlist["items"] = [
        {"id": pid, "name": products[pid]["name"], "price": products[pid]["price"],
         "images": products[pid].get("images", [])}
        for pid in wishlist.get("product_ids", []) if pid in products
    ]
    return wishlist


def get_wishlist(user_id: str) -> Dict[str, Any]:
    wishlist = database.db["wishlist"].find_one({"user_id": user_id})
    if not wishlist:
        return {"user_id": user_id, "product_ids": [], "items": []}
    return _populate(wishlist)


def add(user_id: str, product_id: str) -> Dict[str, Any]:
    product = database.db["product"].find_one({"_id": database.object_id(product_id, "Product")})
    if not product or product.get("is_active") is False:
        raise NotFoundError("Product not found")
    wishlist = database.db["wishlist"].find_one_and_update(
        {"user_id": user_id},
        {
            "$addToSet": {"product_ids": str(product["_id"])},
            "$set": {"updated_at": database.utcnow()},
            "$setOnInsert": {"created_at": database.utcnow()},
        },
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )
    return _populate(wishlist)


def remove(user_id: str, product_id: str) -> Dict[str, Any]:
    wishlist = database.db["wishlist"].find_one_and_update(
        {"user_id": user_id, "product_ids": product_id},
        {"$pull": {"product_ids": product_id}, "$set": {"updated_at": database.utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    if not wishlist:
        raise NotFoundError("Item not found in wishlist")
    return _populate(wishlist)


def clear(user_id: str) -> Dict[str, Any]:
    wishlist = database.db["wishlist"].find_one_and_update(
        {"user_id": user_id},
        {"$set": {"product_ids": [], "updated_at": database.utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    if not wishlist:
        raise NotFoundError("Wishlist not found")
    return _populate(wishlist)
