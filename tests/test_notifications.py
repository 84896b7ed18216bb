"""Tests for the email outbox."""

import smtplib
from datetime import timedelta

from bson import ObjectId

import config
import database
import notifications


def queue_status(db, entry_id):
    return db["outbox"].find_one({"_id": ObjectId(entry_id)})


class TestRender:
    def test_order_confirmation(self):
        subject, body = notifications.render("order_confirmation", {
            "name": "Jane", "order_id": "abc123",
            "items": [{"name": "Mug", "quantity": 2, "price": 4.5}],
            "items_price": 9.0, "tax_price": 1.35, "shipping_price": 0.0, "total_price": 10.35,
            "payment_method": "card", "receipt_url": "/api/receipt/abc123/receipt",
        })
        assert subject == "Order Confirmation - #abc123"
        assert "Mug x 2 @ $4.50" in body
        assert "Total: $10.35" in body


class TestOutbox:
    def test_enqueue_without_recipient(self, db):
        assert notifications.enqueue("order_status", None, {}) is None
        assert db["outbox"].count_documents({}) == 0

    def test_deliver_pending(self, db, mailbox):
        entry_id = notifications.enqueue("order_status", "jane@example.com",
                                         {"name": "Jane", "order_id": "abc", "status": "shipped"})
        assert notifications.deliver_pending() == 1
        assert mailbox[0]["to"] == "jane@example.com"
        assert mailbox[0]["subject"] == "Order #abc is now shipped"
        stored = queue_status(db, entry_id)
        assert stored["status"] == "sent"
        assert stored["attempts"] == 1

        # nothing left to send
        assert notifications.deliver_pending() == 0
        assert len(mailbox) == 1

    def test_failed_send_is_retried_then_given_up(self, db, monkeypatch):
        monkeypatch.setattr(config, "NOTIFICATION_MAX_ATTEMPTS", 2)

        def fail(to, subject, body):
            raise smtplib.SMTPException("relay down")

        monkeypatch.setattr(notifications, "send_email", fail)
        entry_id = notifications.enqueue("order_status", "jane@example.com",
                                         {"name": "Jane", "order_id": "abc", "status": "sent"})

        assert notifications.deliver_pending() == 0
        stored = queue_status(db, entry_id)
        assert stored["status"] == "pending"
        assert stored["attempts"] == 1
        assert "relay down" in stored["last_error"]

        notifications.deliver_pending()
        assert queue_status(db, entry_id)["status"] == "failed"
        assert notifications.deliver_pending() == 0

    def test_stale_claim_is_resent(self, db, mailbox):
        stale_id = notifications.enqueue("order_status", "jane@example.com",
                                         {"name": "Jane", "order_id": "abc", "status": "shipped"})
        fresh_id = notifications.enqueue("order_status", "john@example.com",
                                         {"name": "John", "order_id": "def", "status": "shipped"})
        long_ago = database.utcnow() - timedelta(seconds=config.NOTIFICATION_CLAIM_TIMEOUT_SECONDS + 60)
        db["outbox"].update_one({"_id": ObjectId(stale_id)}, {"$set": {"status": "sending", "updated_at": long_ago}})
        db["outbox"].update_one({"_id": ObjectId(fresh_id)},
                                {"$set": {"status": "sending", "updated_at": database.utcnow()}})

        assert notifications.deliver_pending() == 1
        assert [m["to"] for m in mailbox] == ["jane@example.com"]
        assert queue_status(db, stale_id)["status"] == "sent"
        # a claim still inside the timeout belongs to its worker
        assert queue_status(db, fresh_id)["status"] == "sending"

    def test_order_placement_sends_confirmation(self, client, customer, make_product, place_order, mailbox):
        place_order(customer, make_product(name="Tea Pot"), quantity=1)
        assert [m["to"] for m in mailbox] == [customer["email"]]
        assert mailbox[0]["subject"].startswith("Order Confirmation - #")

    def test_card_orders_wait_for_payment(self, client, customer, make_product, place_order, mailbox):
        place_order(customer, make_product(), quantity=1, payment_method="card")
        assert mailbox == []
