"""Products, reviews and categories."""
import logging
import math
import re
from typing import Any, Dict, List, Optional

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

import database
from errors import AuthorizationError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 60
MAX_LIMIT = 100

# products stored before the flag existed count as active
ACTIVE = {"$or": [{"is_active": True}, {"is_active": {"$exists": False}}]}

SORTS = {
    "newest": [("created_at", -1)],
    "price-low": [("price", 1)],
    "price-high": [("price", -1)],
    "rating": [("ratings.average", -1), ("created_at", -1)],
    "featured": [("ratings.average", -1), ("created_at", -1)],
}


# --- Products ---

def list_products(search: Optional[str] = None, category: Optional[str] = None,
                  min_price: Optional[float] = None, max_price: Optional[float] = None,
                  sort: Optional[str] = None, page: int = 1, limit: int = DEFAULT_LIMIT) -> Dict[str, Any]:
    if page < 1:
        page = 1
    if limit < 1 or limit > MAX_LIMIT:
        limit = DEFAULT_LIMIT

    conditions: List[Dict[str, Any]] = [ACTIVE]
    if search:
        pattern = re.escape(search)
        conditions.append({"$or": [
            {"name": {"$regex": pattern, "$options": "i"}},
            {"description": {"$regex": pattern, "$options": "i"}},
        ]})
    if category:
        conditions.append({"category": {"$regex": re.escape(category), "$options": "i"}})
    price: Dict[str, float] = {}
    if min_price is not None:
        price["$gte"] = min_price
    if max_price is not None:
        price["$lte"] = max_price
    if price:
        conditions.append({"price": price})
    query = conditions[0] if len(conditions) == 1 else {"$and": conditions}

    products = database.db["product"]
    total = products.count_documents(query)
    cursor = products.find(query).sort(SORTS.get(sort or "newest", SORTS["newest"]))
    items = list(cursor.skip((page - 1) * limit).limit(limit))

    total_pages = math.ceil(total / limit)
    return {
        "items": items,
        "pagination": {
            "currentPage": page,
            "totalPages": total_pages,
            "totalProducts": total,
            "hasNext": page < total_pages,
            "hasPrev": page > 1,
        },
    }


def _load_product(product_id: str) -> Dict[str, Any]:
    product = database.db["product"].find_one({"_id": database.object_id(product_id, "Product")})
    if not product:
        raise NotFoundError(f"Product not found with id of {product_id}")
    return product


def get_product(product_id: str) -> Dict[str, Any]:
    product = _load_product(product_id)
    if product.get("is_active") is False:
        raise NotFoundError(f"Product not found with id of {product_id}")
    product["reviews"] = database.get_documents("review", {"product_id": str(product["_id"])},
                                                sort=[("created_at", -1)])
    return product


def create_product(data: Dict[str, Any], user: Dict[str, Any]) -> Dict[str, Any]:
    doc = dict(data)
    doc.update({
        "seller_id": str(user["_id"]),
        "sold": 0,
        "ratings": {"average": 0, "count": 0},
        "is_active": True,
    })
    product_id = database.create_document("product", doc)
    logger.info("Product %s created by %s", product_id, user["_id"])
    return _load_product(product_id)


def _check_owner(product: Dict[str, Any], user: Dict[str, Any], action: str) -> None:
    if user.get("role") != "admin" and product.get("seller_id") != str(user["_id"]):
        raise AuthorizationError(f"Not authorized to {action} this product", status_code=401)


def update_product(product_id: str, changes: Dict[str, Any], user: Dict[str, Any]) -> Dict[str, Any]:
    product = _load_product(product_id)
    _check_owner(product, user, "update")
    changes = {k: v for k, v in changes.items() if v is not None}
    changes["updated_at"] = database.utcnow()
    return database.db["product"].find_one_and_update(
        {"_id": product["_id"]}, {"$set": changes}, return_document=ReturnDocument.AFTER,
    )


def delete_product(product_id: str, user: Dict[str, Any]) -> None:
    """Hide the product from the catalog.

    Orders keep a snapshot of their lines, so the document stays around.
    """
    product = _load_product(product_id)
    _check_owner(product, user, "delete")
    database.db["product"].update_one(
        {"_id": product["_id"]},
        {"$set": {"is_active": False, "updated_at": database.utcnow()}},
    )
    logger.info("Product %s deactivated by %s", product_id, user["_id"])


def products_by_seller(seller_id: str) -> List[Dict[str, Any]]:
    return database.get_documents("product", {"seller_id": seller_id}, sort=[("created_at", -1)])


def seller_stats(seller_id: str, user: Dict[str, Any]) -> Dict[str, Any]:
    if user.get("role") != "admin" and str(user["_id"]) != seller_id:
        raise AuthorizationError("Not authorized to view these statistics", status_code=401)

    products = products_by_seller(seller_id)
    revenue = 0.0
    units = 0
    order_count = 0
    for order in database.db["order"].find({"seller_ids": seller_id, "status": {"$ne": "cancelled"}}):
        lines = [i for i in order.get("order_items", []) if i.get("seller_id") == seller_id]
        if not lines:
            continue
        order_count += 1
        units += sum(i["quantity"] for i in lines)
        revenue += sum(i["price"] * i["quantity"] for i in lines)

    return {
        "totalProducts": len(products),
        "activeProducts": sum(1 for p in products if p.get("is_active", True)),
        "totalStock": sum(p.get("stock", 0) for p in products),
        "totalSold": sum(p.get("sold", 0) for p in products),
        "unitsOrdered": units,
        "totalOrders": order_count,
        "totalRevenue": round(revenue, 2),
    }


# --- Reviews ---

def add_review(product_id: str, rating: int, comment: Optional[str], user: Dict[str, Any]) -> Dict[str, Any]:
    product = _load_product(product_id)
    product_id = str(product["_id"])
    try:
        database.create_document("review", {
            "product_id": product_id,
            "user_id": str(user["_id"]),
            "user_name": user.get("name", ""),
            "rating": rating,
            "comment": comment,
        })
    except DuplicateKeyError:
        raise ValidationError("You already reviewed this product")

    pipeline = [
        {"$match": {"product_id": product_id}},
        {"$group": {"_id": "$product_id", "avg": {"$avg": "$rating"}, "count": {"$sum": 1}}},
    ]
    agg = list(database.db["review"].aggregate(pipeline))
    ratings = {"average": round(agg[0]["avg"], 2), "count": agg[0]["count"]} if agg else {"average": 0, "count": 0}
    return database.db["product"].find_one_and_update(
        {"_id": product["_id"]},
        {"$set": {"ratings": ratings, "updated_at": database.utcnow()}},
        return_document=ReturnDocument.AFTER,
    )


# --- Categories ---

def list_categories() -> List[Dict[str, Any]]:
    return database.get_documents("category", {"is_active": {"$ne": False}}, sort=[("name", 1)])


def get_category(category_id: str) -> Dict[str, Any]:
    category = database.db["category"].find_one({"_id": database.object_id(category_id, "Category")})
    if not category:
        raise NotFoundError(f"Category not found with id of {category_id}")
    return category


def create_category(data: Dict[str, Any]) -> Dict[str, Any]:
    try:
        category_id = database.create_document("category", {**data, "is_active": True})
    except DuplicateKeyError:
        raise ValidationError(f"Category {data.get('name')} already exists")
    return get_category(category_id)


def update_category(category_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
    category = get_category(category_id)
    changes = {k: v for k, v in changes.items() if v is not None}
    changes["updated_at"] = database.utcnow()
    try:
        return database.db["category"].find_one_and_update(
            {"_id": category["_id"]}, {"$set": changes}, return_document=ReturnDocument.AFTER,
        )
    except DuplicateKeyError:
        raise ValidationError(f"Category {changes.get('name')} already exists")


def delete_category(category_id: str) -> None:
    category = get_category(category_id)
    database.db["category"].delete_one({"_id": category["_id"]})
