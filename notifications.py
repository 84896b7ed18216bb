"""
Transactional email.

State changes never send mail inline. They append an entry to the
``outbox`` collection after their own write has landed, and
``deliver_pending`` (run as a background task once the response is out)
renders and sends whatever is waiting. A failed send is logged and retried
on the next run until ``NOTIFICATION_MAX_ATTEMPTS`` is reached. Entries left
in ``sending`` longer than ``NOTIFICATION_CLAIM_TIMEOUT_SECONDS`` are put
back in the queue.

Password reset mail is the exception: the caller needs to know whether the
message left, so ``send_email`` is called directly there.
"""
import logging
import smtplib
from datetime import timedelta
from email.message import EmailMessage
from typing import Any, Dict, Optional

from jinja2 import Environment, DictLoader, StrictUndefined
from pymongo import ReturnDocument
from pymongo.errors import PyMongoError

import config
import database

logger = logging.getLogger(__name__)

TEMPLATES = {
    "order_confirmation.subject": "Order Confirmation - #{{ order_id }}",
    "order_confirmation.body": (
        "Hello {{ name }},\n\n"
        "Thank you for your order. We have received order #{{ order_id }}.\n\n"
        "{% for item in items %}"
        "  {{ item.name }} x {{ item.quantity }} @ ${{ '%.2f' | format(item.price) }}\n"
        "{% endfor %}\n"
        "Items: ${{ '%.2f' | format(items_price) }}\n"
        "Tax: ${{ '%.2f' | format(tax_price) }}\n"
        "Shipping: ${{ '%.2f' | format(shipping_price) }}\n"
        "Total: ${{ '%.2f' | format(total_price) }}\n\n"
        "Payment method: {{ payment_method }}\n"
        "Receipt: {{ receipt_url }}\n"
    ),
    "order_status.subject": "Order #{{ order_id }} is now {{ status }}",
    "order_status.body": (
        "Hello {{ name }},\n\n"
        "The status of your order #{{ order_id }} changed to: {{ status }}.\n"
    ),
    "payment_confirmation.subject": "Payment received for order #{{ order_id }}",
    "payment_confirmation.body": (
        "Hello {{ name }},\n\n"
        "We received your payment of ${{ '%.2f' | format(total_price) }} for order #{{ order_id }}.\n"
        "Transaction: {{ transaction_id }}\n"
        "Receipt: {{ receipt_url }}\n"
    ),
    "password_reset.subject": "Password reset token",
    "password_reset.body": (
        "You are receiving this email because you (or someone else) has requested "
        "the reset of a password. Please make a PUT request to:\n\n{{ reset_url }}\n\n"
        "The link expires in {{ minutes }} minutes.\n"
    ),
    "password_otp.subject": "Password Reset OTP",
    "password_otp.body": (
        "You are receiving this email because you (or someone else) has requested "
        "to reset your password. Your OTP (One Time Password) is:\n\n{{ otp }}\n\n"
        "This OTP is valid for {{ minutes }} minutes only.\n"
    ),
}

env = Environment(loader=DictLoader(TEMPLATES), undefined=StrictUndefined, autoescape=False)


def render(kind: str, context: Dict[str, Any]) -> tuple:
    subject = env.get_template(f"{kind}.subject").render(**context)
    body = env.get_template(f"{kind}.body").render(**context)
    return subject, body


def send_email(to: str, subject: str, body: str) -> None:
    """Send a plain-text message through the configured SMTP relay."""
    message = EmailMessage()
    message["From"] = f"{config.SMTP_FROM_NAME} <{config.SMTP_FROM_EMAIL}>"
    message["To"] = to
    message["Subject"] = subject
    message.set_content(body)

    with smtplib.SMTP(config.SMTP_HOST, config.SMTP_PORT, timeout=config.SMTP_TIMEOUT) as smtp:
        if config.SMTP_EMAIL:
            smtp.starttls()
            smtp.login(config.SMTP_EMAIL, config.SMTP_PASSWORD)
        smtp.send_message(message)


def enqueue(kind: str, to: Optional[str], context: Dict[str, Any]) -> Optional[str]:
    if not to:
        logger.warning("Dropping %s notification without a recipient", kind)
        return None
    try:
        return database.create_document("outbox", {
            "kind": kind,
            "to": to,
            "context": context,
            "status": "pending",
            "attempts": 0,
            "last_error": None,
        })
    except PyMongoError:
        logger.exception("Could not queue %s notification for %s", kind, to)
        return None


def reclaim_stale(timeout_seconds: Optional[int] = None) -> int:
    """Put entries whose sender died mid-send back in the queue."""
    timeout = config.NOTIFICATION_CLAIM_TIMEOUT_SECONDS if timeout_seconds is None else timeout_seconds
    cutoff = database.utcnow() - timedelta(seconds=timeout)
    result = database.db["outbox"].update_many(
        {"status": "sending", "updated_at": {"$lt": cutoff}},
        {"$set": {"status": "pending", "updated_at": database.utcnow()}},
    )
    if result.modified_count:
        logger.warning("Reclaimed %d stale outbox entries", result.modified_count)
    return result.modified_count


def deliver_pending(limit: int = 50) -> int:
    """Send up to ``limit`` waiting messages and return how many went out."""
    reclaim_stale()
    outbox = database.db["outbox"]
    sent = 0
    for _ in range(limit):
        # claim one entry so concurrent workers never send it twice
        entry = outbox.find_one_and_update(
            {"status": "pending"},
            {"$set": {"status": "sending", "updated_at": database.utcnow()}},
            sort=[("created_at", 1)],
            return_document=ReturnDocument.AFTER,
        )
        if entry is None:
            break
        try:
            subject, body = render(entry["kind"], entry["context"])
            send_email(entry["to"], subject, body)
        except Exception as exc:
            attempts = entry.get("attempts", 0) + 1
            status = "failed" if attempts >= config.NOTIFICATION_MAX_ATTEMPTS else "pending"
            logger.warning("Sending %s to %s failed (attempt %d): %s", entry["kind"], entry["to"], attempts, exc)
            outbox.update_one(
                {"_id": entry["_id"]},
                {"$set": {"status": status, "attempts": attempts, "last_error": str(exc),
                          "updated_at": database.utcnow()}},
            )
            # leave the rest for the next run
            break
        outbox.update_one(
            {"_id": entry["_id"]},
            {"$set": {"status": "sent", "attempts": entry.get("attempts", 0) + 1,
                      "sent_at": database.utcnow(), "updated_at": database.utcnow()}},
        )
        sent += 1
    return sent


def _order_context(order: Dict[str, Any], user: Dict[str, Any]) -> Dict[str, Any]:
    order_id = str(order["_id"])
    return {
        "name": user.get("name", ""),
        "order_id": order_id,
        "items": [{"name": i["name"], "quantity": i["quantity"], "price": i["price"]} for i in order["order_items"]],
        "items_price": order["items_price"],
        "tax_price": order["tax_price"],
        "shipping_price": order["shipping_price"],
        "total_price": order["total_price"],
        "payment_method": order["payment_method"],
        "status": order.get("status", "pending"),
        "receipt_url": f"/api/receipt/{order_id}/receipt",
    }


def order_confirmation(order: Dict[str, Any], user: Dict[str, Any]) -> Optional[str]:
    return enqueue("order_confirmation", user.get("email"), _order_context(order, user))


def order_status(order: Dict[str, Any], user: Dict[str, Any]) -> Optional[str]:
    return enqueue("order_status", user.get("email"), _order_context(order, user))


def payment_confirmation(order: Dict[str, Any], user: Dict[str, Any]) -> Optional[str]:
    context = _order_context(order, user)
    context["transaction_id"] = (order.get("payment_result") or {}).get("id", "")
    return enqueue("payment_confirmation", user.get("email"), context)
