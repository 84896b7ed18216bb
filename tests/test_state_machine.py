"""Tests for the order status rules."""

import pytest
from bson import ObjectId

import orders
from errors import InvalidTransition, ValidationError


def user(role="customer"):
    return {"_id": ObjectId(), "role": role}


def order_for(owner, seller=None, status="pending"):
    return {
        "_id": ObjectId(),
        "user_id": str(owner["_id"]),
        "seller_ids": [str(seller["_id"])] if seller else [],
        "status": status,
        "order_items": [],
        "payment_method": "cash on delivery",
        "items_price": 0.0,
        "tax_price": 0.0,
        "shipping_price": 0.0,
        "total_price": 0.0,
    }


class TestAllowedTargets:
    @pytest.mark.parametrize("status", ["delivered", "received", "cancelled"])
    def test_terminal_states_have_no_exits(self, status):
        owner, seller, admin = user(), user("seller"), user("admin")
        order = order_for(owner, seller, status)
        for actor in (owner, seller, admin):
            assert orders.allowed_targets(status, actor, order) == set()

    def test_seller_cannot_cancel_after_shipping(self):
        seller = user("seller")
        order = order_for(user(), seller, "shipped")
        assert "cancelled" not in orders.allowed_targets("shipped", seller, order)
        assert orders.allowed_targets("processing", seller, order) == {"shipped", "sent", "cancelled"}

    def test_admin_can_cancel_any_open_order(self):
        admin = user("admin")
        for status in ("pending", "processing", "shipped", "sent"):
            assert "cancelled" in orders.allowed_targets(status, admin, order_for(user(), status=status))

    def test_owner_only_receives_sent_orders(self):
        owner = user()
        assert orders.allowed_targets("sent", owner, order_for(owner, status="sent")) == {"received"}
        assert orders.allowed_targets("shipped", owner, order_for(owner, status="shipped")) == set()

    def test_unrelated_seller_gets_nothing(self):
        order = order_for(user(), user("seller"), "pending")
        assert orders.allowed_targets("pending", user("seller"), order) == set()


class TestCheckTransition:
    def test_unknown_status(self):
        with pytest.raises(ValidationError):
            orders.check_transition(order_for(user()), "lost", user("admin"))

    def test_skipping_states_is_rejected(self):
        with pytest.raises(InvalidTransition) as exc:
            orders.check_transition(order_for(user()), "shipped", user("admin"))
        assert exc.value.current == "pending"
        assert exc.value.target == "shipped"

    def test_leaving_terminal_state(self):
        with pytest.raises(InvalidTransition, match="Order is already delivered"):
            orders.check_transition(order_for(user(), status="delivered"), "sent", user("admin"))


class TestTransition:
    def test_stamps_timestamp(self, db, customer):
        order = order_for(customer)
        db["order"].insert_one(order)
        updated = orders.transition(order, "cancelled", user("admin"))
        assert updated["status"] == "cancelled"
        assert updated["cancelled_at"] is not None

    def test_stale_read_loses(self, db, customer):
        order = order_for(customer)
        db["order"].insert_one(dict(order))
        db["order"].update_one({"_id": order["_id"]}, {"$set": {"status": "processing"}})
        with pytest.raises(InvalidTransition, match="changed by another request"):
            orders.transition(order, "cancelled", user("admin"))
        assert db["order"].find_one({"_id": order["_id"]})["status"] == "processing"
