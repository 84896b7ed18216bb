"""
Payment adapters.

* card: a Stripe PaymentIntent is created for the order; the order stays
  unpaid until the signed ``payment_intent.succeeded`` webhook arrives.
* account balance: the user's stored balance is debited with one
  conditional update and the order is settled on the spot.
* mobile wallet: a simulated redirect flow. ``initiate`` opens a payment
  session, ``verify`` confirms it with the customer's PIN.
* cash on delivery / mobile banking: settled when the customer confirms
  the payment.

Refunds are not supported.
"""
import json
import logging
import re
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import stripe
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

import config
import database
import notifications
import orders
from errors import InsufficientFunds, NotFoundError, UpstreamError, ValidationError

logger = logging.getLogger(__name__)

PLACEHOLDER_KEYS = {"", "your_stripe_secret_key", "sk_test_..."}
PIN_PATTERN = re.compile(r"^\d{4,6}$")


def receipt_urls(order_id: Any) -> Dict[str, str]:
    return {
        "receiptUrl": f"/api/receipt/{order_id}/receipt",
        "downloadReceiptUrl": f"/api/receipt/{order_id}/receipt?download=true",
    }


def _owned_order(order_id: str, user: Dict[str, Any]) -> Dict[str, Any]:
    order = database.db["order"].find_one({
        "_id": database.object_id(order_id, "Order"),
        "user_id": str(user["_id"]),
    })
    if not order:
        raise NotFoundError("Order not found or does not belong to user")
    return order


def _check_amount(order: Dict[str, Any], amount: float) -> None:
    if abs(order["total_price"] - amount) > config.PRICE_TOLERANCE:
        raise ValidationError("Payment amount does not match order total")


def settle(order: Dict[str, Any], payment_result: Dict[str, Any], extra_filter: Optional[Dict[str, Any]] = None) -> Optional[Dict[str, Any]]:
    """Mark ``order`` paid and store the settlement record.

    Returns the updated order, or ``None`` when ``extra_filter`` no longer
    matches (the order was settled by someone else in the meantime).
    """
    now = database.utcnow()
    changes = {"is_paid": True, "payment_result": payment_result, "updated_at": now}
    if not order.get("paid_at"):
        changes["paid_at"] = now
    query = {"_id": order["_id"]}
    query.update(extra_filter or {})
    return database.db["order"].find_one_and_update(query, {"$set": changes}, return_document=ReturnDocument.AFTER)


# --- Card (Stripe) ---

def _stripe_ready() -> None:
    if config.STRIPE_SECRET_KEY in PLACEHOLDER_KEYS:
        raise UpstreamError("Payment gateway not configured properly. Please contact administrator.")
    stripe.api_key = config.STRIPE_SECRET_KEY


def process_payment(order_id: str, amount: float, user: Dict[str, Any]) -> Dict[str, Any]:
    order = _owned_order(order_id, user)
    method = order["payment_method"]

    if method in ("cash on delivery", "mobile banking"):
        if order.get("payment_result"):
            raise ValidationError("Order has already been paid")
        result = {
            "id": f"payment_{int(database.utcnow().timestamp() * 1000)}",
            "status": "completed",
            "update_time": database.utcnow(),
            "email_address": user.get("email"),
        }
        order = settle(order, result, {"payment_result": None})
        if order is None:
            raise ValidationError("Order has already been paid")
        notifications.payment_confirmation(order, user)
        return {"message": "Payment processed successfully",
                "data": {"orderId": str(order["_id"]), "isPaid": True, **receipt_urls(order["_id"])}}

    if method == "card":
        _stripe_ready()
        if order.get("is_paid"):
            raise ValidationError("Order is already paid")
        _check_amount(order, amount)
        try:
            intent = stripe.PaymentIntent.create(
                amount=int(round(order["total_price"] * 100)),
                currency=config.STRIPE_CURRENCY,
                metadata={"userId": str(user["_id"]), "orderId": str(order["_id"])},
            )
        except stripe.StripeError as e:
            logger.error("Creating payment intent for order %s failed: %s", order["_id"], e)
            raise UpstreamError(getattr(e, "user_message", None) or "Payment processing failed")
        return {"client_secret": intent["client_secret"], **receipt_urls(order["_id"])}

    raise ValidationError("Invalid payment method")


def handle_webhook(payload: bytes, signature: Optional[str]) -> None:
    """Verify and apply a Stripe webhook delivery.

    Invalid signatures raise ``ValidationError`` before anything is read.
    Deliveries are deduplicated by event id, and an order is only settled
    while it is still unpaid, so replays leave ``paid_at`` untouched.
    """
    if not config.STRIPE_WEBHOOK_SECRET:
        raise UpstreamError("Server configuration error")
    try:
        stripe.Webhook.construct_event(payload, signature or "", config.STRIPE_WEBHOOK_SECRET)
    except (ValueError, stripe.SignatureVerificationError) as e:
        logger.warning("Webhook signature verification failed: %s", e)
        raise ValidationError(f"Webhook Error: {e}")

    event = json.loads(payload)
    if event.get("type") != "payment_intent.succeeded":
        logger.info("Ignoring webhook event %s of type %s", event.get("id"), event.get("type"))
        return

    events = database.db["webhook_event"]
    if events.find_one({"_id": event["id"]}):
        logger.info("Webhook event %s already processed", event["id"])
        return

    intent = event["data"]["object"]
    order_id = (intent.get("metadata") or {}).get("orderId")
    order = database.db["order"].find_one({"_id": database.object_id(order_id, "Order")}) if order_id else None
    if not order:
        logger.warning("Payment intent %s references unknown order %s", intent.get("id"), order_id)
        _record_event(event)
        return

    created = intent.get("created")
    result = {
        "id": intent["id"],
        "status": intent.get("status", "succeeded"),
        "update_time": datetime.fromtimestamp(created, tz=timezone.utc) if created else database.utcnow(),
        "email_address": intent.get("receipt_email"),
    }
    # a retried delivery may land here again, the is_paid filter keeps it a no-op
    updated = settle(order, result, {"is_paid": False})
    if updated is None:
        logger.info("Order %s already paid, ignoring payment intent %s", order["_id"], intent["id"])
        _record_event(event)
        return

    logger.info("Order %s paid by card (%s)", order["_id"], intent["id"])
    user = database.db["user"].find_one({"_id": database.object_id(order["user_id"], "User")})
    if user:
        notifications.payment_confirmation(updated, user)
    _record_event(event)


def _record_event(event: Dict[str, Any]) -> None:
    """Remember a fully applied event so later deliveries are skipped."""
    try:
        database.db["webhook_event"].insert_one({
            "_id": event["id"], "type": event["type"], "received_at": database.utcnow(),
        })
    except DuplicateKeyError:
        logger.info("Webhook event %s was recorded concurrently", event["id"])


# --- Account balance ---

def _user(user_id: Any) -> Dict[str, Any]:
    user = database.db["user"].find_one({"_id": user_id})
    if not user:
        raise NotFoundError("User not found")
    return user


def balance(user: Dict[str, Any]) -> float:
    return round(_user(user["_id"]).get("account_balance", 0), 2)


def add_funds(user: Dict[str, Any], amount: float) -> float:
    if amount <= 0:
        raise ValidationError("Amount is required and must be greater than 0")
    updated = database.db["user"].find_one_and_update(
        {"_id": user["_id"]},
        {"$inc": {"account_balance": amount}, "$set": {"updated_at": database.utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    if not updated:
        raise NotFoundError("User not found")
    return round(updated["account_balance"], 2)


def debit(user_id: Any, amount: float, message: str) -> Dict[str, Any]:
    """Take ``amount`` off a balance in one conditional update."""
    updated = database.db["user"].find_one_and_update(
        {"_id": user_id, "account_balance": {"$gte": amount}},
        {"$inc": {"account_balance": -amount}, "$set": {"updated_at": database.utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        _user(user_id)
        raise InsufficientFunds(message)
    return updated


def withdraw_funds(user: Dict[str, Any], amount: float) -> float:
    if amount <= 0:
        raise ValidationError("Amount is required and must be greater than 0")
    return round(debit(user["_id"], amount, "Insufficient funds in account")["account_balance"], 2)


def pay_with_balance(user: Dict[str, Any], order_id: str, amount: float) -> Dict[str, Any]:
    order = _owned_order(order_id, user)
    _check_amount(order, amount)
    if order.get("payment_result"):
        raise ValidationError("Order has already been paid")

    amount = order["total_price"]
    payer = debit(user["_id"], amount, "Insufficient funds in account for this payment")
    result = {
        "id": f"account_payment_{int(database.utcnow().timestamp() * 1000)}",
        "status": "completed",
        "update_time": database.utcnow(),
        "email_address": payer.get("email"),
    }
    try:
        paid = settle(order, result, {"payment_result": None})
    except PyMongoError:
        paid = None
        logger.exception("Settling order %s failed after debit", order["_id"])
    if paid is None:
        database.db["user"].update_one({"_id": user["_id"]}, {"$inc": {"account_balance": amount}})
        logger.warning("Refunded %.2f to user %s, order %s could not be settled", amount, user["_id"], order["_id"])
        raise ValidationError("Order has already been paid")

    notifications.payment_confirmation(paid, payer)
    return {
        "orderId": str(paid["_id"]),
        "isPaid": True,
        **receipt_urls(paid["_id"]),
        "remainingBalance": round(payer["account_balance"], 2),
    }


# --- Mobile wallet (simulated) ---

def initiate_mobile_payment(user: Dict[str, Any], order_id: str, amount: float,
                            phone_number: Optional[str] = None) -> Dict[str, Any]:
    order = _owned_order(order_id, user)
    _check_amount(order, amount)
    if order.get("payment_result"):
        raise ValidationError("Order has already been paid")

    now = database.utcnow()
    session_id = database.create_document("payment_session", {
        "order_id": str(order["_id"]),
        "user_id": str(user["_id"]),
        "amount": round(amount, 2),
        "phone_number": phone_number,
        "status": "pending",
        "expires_at": now + timedelta(minutes=config.MOBILE_SESSION_EXPIRE_MINUTES),
    })
    return {
        "sessionId": session_id,
        "redirectUrl": f"/telebirr-payment-demo?sessionId={session_id}&orderId={order['_id']}&amount={order['total_price']}",
        "expiresAt": now + timedelta(minutes=config.MOBILE_SESSION_EXPIRE_MINUTES),
    }


def verify_mobile_payment(user: Dict[str, Any], session_id: str, pin: str, amount: float) -> Dict[str, Any]:
    sessions = database.db["payment_session"]
    session = sessions.find_one({
        "_id": database.object_id(session_id, "Payment session"),
        "user_id": str(user["_id"]),
    })
    if not session:
        raise NotFoundError("Payment session not found")
    if session["status"] != "pending":
        raise ValidationError("Payment session is no longer active")
    if database.as_utc(session["expires_at"]) <= database.utcnow():
        sessions.update_one({"_id": session["_id"]}, {"$set": {"status": "expired"}})
        raise ValidationError("Payment session has expired")
    if not PIN_PATTERN.match(pin or ""):
        raise ValidationError("Invalid PIN")
    if abs(session["amount"] - amount) > config.PRICE_TOLERANCE:
        raise ValidationError("Payment amount does not match order total")

    claimed = sessions.update_one({"_id": session["_id"], "status": "pending"},
                                  {"$set": {"status": "completed", "completed_at": database.utcnow()}})
    if claimed.modified_count != 1:
        raise ValidationError("Payment session is no longer active")

    order = orders.load_order(session["order_id"])
    result = {
        "id": f"telebirr_{session_id}",
        "status": "completed",
        "update_time": database.utcnow(),
        "email_address": user.get("email"),
    }
    paid = settle(order, result)
    notifications.payment_confirmation(paid, user)
    return {"orderId": str(paid["_id"]), "isPaid": True, "transactionId": result["id"], **receipt_urls(paid["_id"])}
