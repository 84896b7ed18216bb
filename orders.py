"""
Order lifecycle: creation, stock reservation and status transitions.

The ``status`` field is the only stored delivery state. The legacy
``isDelivered`` / ``isSent`` / ``isReceived`` flags are derived from it
(see ``schemas.Order``), while the ``*_at`` timestamps record when each
state was entered.

Status graph::

    pending    -> processing | cancelled
    processing -> shipped | sent | cancelled
    shipped    -> sent | delivered | cancelled (admin only)
    sent       -> delivered | cancelled (admin only)
    sent       -> received (order owner only)

``delivered``, ``received`` and ``cancelled`` are terminal.
"""
import logging
from typing import Any, Dict, List, Optional, Set

from pymongo import ReturnDocument
from pymongo.errors import PyMongoError

import config
import database
import notifications
from errors import (
    AuthorizationError,
    InsufficientStock,
    InvalidTransition,
    NotFoundError,
    ValidationError,
)

logger = logging.getLogger(__name__)

ORDER_STATUSES = ("pending", "processing", "shipped", "sent", "delivered", "received", "cancelled")
TERMINAL_STATUSES = frozenset({"delivered", "received", "cancelled"})

# payment methods that are settled outside the card flow and ship as paid
PREPAID_METHODS = frozenset({"cash on delivery", "mobile banking", "account balance"})

STAFF_TRANSITIONS = {
    "pending": {"processing", "cancelled"},
    "processing": {"shipped", "sent", "cancelled"},
    "shipped": {"sent", "delivered"},
    "sent": {"delivered"},
}
OWNER_TRANSITIONS = {
    "sent": {"received"},
}
ADMIN_ONLY_CANCELLATION = frozenset({"shipped", "sent"})

STATUS_TIMESTAMPS = {
    "shipped": ("shipped_at",),
    "sent": ("sent_at",),
    "delivered": ("delivered_at",),
    "received": ("received_at", "delivered_at"),
    "cancelled": ("cancelled_at",),
}


def _money(value: float) -> float:
    return round(value, 2)


# --- Access ---

def is_owner(order: Dict[str, Any], user: Dict[str, Any]) -> bool:
    return order.get("user_id") == str(user["_id"])


def is_related_seller(order: Dict[str, Any], user: Dict[str, Any]) -> bool:
    return user.get("role") == "seller" and str(user["_id"]) in order.get("seller_ids", [])


def can_view(order: Dict[str, Any], user: Dict[str, Any]) -> bool:
    return user.get("role") == "admin" or is_owner(order, user) or is_related_seller(order, user)


def load_order(order_id: str) -> Dict[str, Any]:
    order = database.db["order"].find_one({"_id": database.object_id(order_id, "Order")})
    if not order:
        raise NotFoundError(f"Order not found with id of {order_id}")
    return order


def get_order(order_id: str, user: Dict[str, Any]) -> Dict[str, Any]:
    order = load_order(order_id)
    if not can_view(order, user):
        raise AuthorizationError("Not authorized to view this order", status_code=401)
    return order


# --- State machine ---

def allowed_targets(status: str, user: Dict[str, Any], order: Optional[Dict[str, Any]] = None) -> Set[str]:
    """Statuses ``user`` may move an order to from ``status``."""
    if status in TERMINAL_STATUSES:
        return set()
    targets: Set[str] = set()
    role = user.get("role")
    if role == "admin":
        targets |= STAFF_TRANSITIONS.get(status, set())
        targets.add("cancelled")
    elif role == "seller" and (order is None or is_related_seller(order, user)):
        targets |= STAFF_TRANSITIONS.get(status, set())
        if status in ADMIN_ONLY_CANCELLATION:
            targets.discard("cancelled")
    if order is None or is_owner(order, user):
        targets |= OWNER_TRANSITIONS.get(status, set())
    return targets


def check_transition(order: Dict[str, Any], target: str, user: Dict[str, Any]) -> None:
    current = order.get("status", "pending")
    if target not in ORDER_STATUSES:
        raise ValidationError(f"Invalid status: {target}")
    if current in TERMINAL_STATUSES:
        raise InvalidTransition(current, target, f"Order is already {current}")
    if target not in allowed_targets(current, user, order):
        raise InvalidTransition(current, target)


def transition(order: Dict[str, Any], target: str, user: Dict[str, Any]) -> Dict[str, Any]:
    """Move ``order`` to ``target`` and queue a status notification.

    The update only applies while the stored status still equals the one
    the check ran against, so two racing updates cannot both succeed.
    """
    check_transition(order, target, user)
    current = order.get("status", "pending")
    now = database.utcnow()
    changes = {"status": target, "updated_at": now}
    for field in STATUS_TIMESTAMPS.get(target, ()):
        changes[field] = now

    updated = database.db["order"].find_one_and_update(
        {"_id": order["_id"], "status": current},
        {"$set": changes},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        raise InvalidTransition(current, target, "Order status was changed by another request, please retry")

    logger.info("Order %s moved %s -> %s by %s", order["_id"], current, target, user["_id"])
    _notify_status(updated)
    return updated


def _notify_status(order: Dict[str, Any]) -> None:
    owner = database.db["user"].find_one({"_id": database.object_id(order["user_id"], "User")})
    if owner:
        notifications.order_status(order, owner)


def seller_update(order_id: str, status: str, user: Dict[str, Any]) -> Dict[str, Any]:
    if status not in ORDER_STATUSES:
        raise ValidationError(f"Invalid status. Allowed values: {', '.join(ORDER_STATUSES)}")
    order = load_order(order_id)
    if user.get("role") != "admin" and not is_related_seller(order, user):
        raise AuthorizationError("Not authorized to update this order")
    if status == "delivered" and order.get("status") not in ("shipped", "sent"):
        raise InvalidTransition(
            order.get("status"), status,
            "Order must be shipped or sent before it can be marked as delivered",
        )
    return transition(order, status, user)


def mark_sent(order_id: str, user: Dict[str, Any]) -> Dict[str, Any]:
    return seller_update(order_id, "sent", user)


def mark_received(order_id: str, user: Dict[str, Any]) -> Dict[str, Any]:
    order = load_order(order_id)
    if not is_owner(order, user):
        raise AuthorizationError("Not authorized to update this order", status_code=401)
    if order.get("status") in ("delivered", "received"):
        raise ValidationError("Order has already been delivered")
    return transition(order, "received", user)


def admin_update(order_id: str, user: Dict[str, Any], status: Optional[str] = None,
                 is_paid: Optional[bool] = None, is_delivered: Optional[bool] = None) -> Dict[str, Any]:
    order = load_order(order_id)
    if status and status != order.get("status"):
        order = transition(order, status, user)
    if is_delivered and order.get("status") not in ("delivered", "received"):
        order = transition(order, "delivered", user)
    if is_paid and not order.get("is_paid"):
        now = database.utcnow()
        order = database.db["order"].find_one_and_update(
            {"_id": order["_id"]},
            {"$set": {"is_paid": True, "paid_at": now, "updated_at": now}},
            return_document=ReturnDocument.AFTER,
        )
    return order


def delete_order(order_id: str) -> None:
    result = database.db["order"].delete_one({"_id": database.object_id(order_id, "Order")})
    if result.deleted_count == 0:
        raise NotFoundError(f"Order not found with id of {order_id}")


# --- Stock ---

def reserve_stock(lines: List[Dict[str, Any]]) -> None:
    """Take ``quantity`` units of every line out of stock, all or nothing.

    Each decrement is a single conditional update that only matches while
    enough stock is left. If any line fails the ones already applied are
    put back before ``InsufficientStock`` is raised.
    """
    products = database.db["product"]
    applied: List[Dict[str, Any]] = []
    try:
        for line in lines:
            result = products.update_one(
                {"_id": line["_id"], "stock": {"$gte": line["quantity"]}},
                {"$inc": {"stock": -line["quantity"], "sold": line["quantity"]}},
            )
            if result.modified_count != 1:
                current = products.find_one({"_id": line["_id"]}, {"stock": 1}) or {}
                raise InsufficientStock(
                    f"Only {current.get('stock', 0)} {line['name']} available in stock"
                )
            applied.append(line)
    except (InsufficientStock, PyMongoError):
        release_stock(applied)
        raise


def release_stock(lines: List[Dict[str, Any]]) -> None:
    for line in lines:
        logger.info("Returning %d units of product %s to stock", line["quantity"], line["_id"])
        database.db["product"].update_one(
            {"_id": line["_id"]},
            {"$inc": {"stock": line["quantity"], "sold": -line["quantity"]}},
        )


# --- Creation ---

def _load_lines(items: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    lines = []
    for item in items:
        product_id = item["product_id"]
        product = database.db["product"].find_one({"_id": database.object_id(product_id, "Product")})
        if not product or product.get("is_active") is False:
            raise NotFoundError(f"Product not found with id of {product_id}")
        if product.get("stock", 0) < item["quantity"]:
            raise InsufficientStock(f"Only {product.get('stock', 0)} {product['name']} available in stock")
        images = product.get("images") or []
        lines.append({
            "_id": product["_id"],
            "name": product["name"],
            "quantity": item["quantity"],
            "price": float(product["price"]),
            "image": images[0] if images else None,
            "seller_id": product.get("seller_id"),
        })
    return lines


def create_order(user: Dict[str, Any], items: List[Dict[str, Any]], shipping_address: Dict[str, Any],
                 payment_method: str, tax_price: Optional[float], shipping_price: float,
                 items_price: Optional[float] = None) -> Dict[str, Any]:
    """Turn a list of ``{product_id, quantity}`` lines into an order.

    ``items_price`` is recomputed from current product prices; a value sent
    by the client is only compared against it. Without an explicit
    ``tax_price`` tax is charged at ``TAX_RATE`` on the recomputed subtotal.
    Stock is reserved before the order is written and returned if the write
    fails.
    """
    if not items:
        raise ValidationError("No order items")
    if (tax_price is not None and tax_price < 0) or shipping_price < 0:
        raise ValidationError("Prices cannot be negative")

    lines = _load_lines(items)
    computed_items_price = _money(sum(line["price"] * line["quantity"] for line in lines))
    if items_price is not None and abs(items_price - computed_items_price) > config.PRICE_TOLERANCE:
        logger.warning(
            "Client items price %.2f differs from catalog price %.2f for user %s",
            items_price, computed_items_price, user["_id"],
        )
    if tax_price is None:
        tax_price = computed_items_price * config.TAX_RATE
    tax_price = _money(tax_price)
    shipping_price = _money(shipping_price)
    total_price = _money(computed_items_price + tax_price + shipping_price)

    reserve_stock(lines)

    now = database.utcnow()
    prepaid = payment_method in PREPAID_METHODS
    order = {
        "user_id": str(user["_id"]),
        "order_items": [
            {
                "product_id": str(line["_id"]),
                "name": line["name"],
                "quantity": line["quantity"],
                "price": line["price"],
                "image": line["image"],
                "seller_id": line["seller_id"],
            }
            for line in lines
        ],
        "seller_ids": sorted({line["seller_id"] for line in lines if line["seller_id"]}),
        "shipping_address": shipping_address,
        "payment_method": payment_method,
        "items_price": computed_items_price,
        "tax_price": tax_price,
        "shipping_price": shipping_price,
        "total_price": total_price,
        "is_paid": prepaid,
        "paid_at": now if prepaid else None,
        "payment_result": None,
        "status": "pending",
        "created_at": now,
        "updated_at": now,
    }
    try:
        result = database.db["order"].insert_one(order)
    except PyMongoError:
        logger.exception("Could not store order for user %s, releasing stock", user["_id"])
        release_stock(lines)
        raise
    order["_id"] = result.inserted_id
    logger.info("Order %s created for user %s (%s, %.2f)", order["_id"], user["_id"], payment_method, total_price)

    # card orders are confirmed by the payment webhook instead
    if payment_method != "card":
        notifications.order_confirmation(order, user)
    return order


# --- Listings ---

def _with_buyers(orders: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    ids = {database.object_id(o["user_id"], "User") for o in orders if o.get("user_id")}
    buyers = {
        str(u["_id"]): {"id": str(u["_id"]), "name": u.get("name"), "email": u.get("email")}
        for u in database.db["user"].find({"_id": {"$in": list(ids)}})
    }
    for o in orders:
        o["user"] = buyers.get(o.get("user_id"))
    return orders


def all_orders(limit: Optional[int] = None) -> List[Dict[str, Any]]:
    """Newest first, each with its buyer's name and email."""
    return _with_buyers(database.get_documents("order", sort=[("created_at", -1)], limit=limit))


def my_orders(user: Dict[str, Any]) -> List[Dict[str, Any]]:
    return database.get_documents("order", {"user_id": str(user["_id"])}, sort=[("created_at", -1)])


def seller_orders(user: Dict[str, Any]) -> List[Dict[str, Any]]:
    return _with_buyers(
        database.get_documents("order", {"seller_ids": str(user["_id"])}, sort=[("created_at", -1)])
    )
