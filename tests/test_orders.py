"""
Order lifecycle: checkout, admin transitions, assignment, partner delivery,
customer cancellation and the compare-and-set transition loop.
"""

from datetime import timedelta

import pytest

import courier
import database
import orders
from errors import ConflictError, ExternalServiceError, InvalidTransitionError

ADDRESS = {"address": "12 MG Road", "city": "Pune", "postal_code": "411001", "country": "India"}


def _order(order_id):
    return database.get_document_by_id("order", order_id)


def _age(order, days=2):
    database.collection("order").update_one(
        {"_id": database.to_object_id(order["_id"])},
        {"$set": {"created_at": database.utcnow() - timedelta(days=days)}},
    )


# ============================================================================
# Checkout
# ============================================================================

class TestCheckout:

    def test_totals_persisted_verbatim_and_cart_cleared(self, client, auth, customer, make_product):
        ladoo = make_product(name="Motichoor Ladoo", original_price=150, images=["/img/ladoo.png"])
        barfi = make_product(name="Kaju Barfi", original_price=300)
        database.update_document("user", customer["_id"], {"cart": [
            {"product_id": ladoo["_id"], "qty": 2, "variant_index": 0},
            {"product_id": barfi["_id"], "qty": 1, "variant_index": 0},
        ]})

        res = client.post("/user/checkout", headers=auth(customer), json={
            "shipping_address": ADDRESS,
            "payment_method": "COD",
            "tax_price": 10,
            "shipping_price": 50,
            "total_price": 660,
        })

        assert res.status_code == 201
        order = res.json()["order"]
        assert order["total_price"] == 660
        assert order["items_price"] == 600
        assert order["status"] == "placed"
        assert order["is_paid"] is False
        assert order["is_delivered"] is False
        assert [(i["name"], i["price"], i["qty"]) for i in order["order_items"]] == [
            ("Motichoor Ladoo", 150, 2),
            ("Kaju Barfi", 300, 1),
        ]
        assert order["order_items"][0]["image"] == "/img/ladoo.png"
        assert database.get_document_by_id("user", customer["_id"])["cart"] == []

    def test_supplied_total_wins_over_computed(self, client, auth, customer, make_product):
        product = make_product(original_price=100)
        res = client.post("/user/checkout", headers=auth(customer), json={
            "order_items": [{"product_id": product["_id"], "qty": 1}],
            "shipping_address": ADDRESS,
            "payment_method": "COD",
            "total_price": 1,
        })
        assert res.status_code == 201
        assert res.json()["order"]["total_price"] == 1

    def test_variant_snapshot(self, client, auth, customer, make_product):
        product = make_product(name="Soan Papdi", variants=[
            {"type": "weight", "value": "250g", "original_price": 120},
            {"type": "weight", "value": "500g", "original_price": 240, "offer_price": 210},
        ])
        res = client.post("/user/checkout", headers=auth(customer), json={
            "order_items": [{"product_id": product["_id"], "qty": 1, "variant_index": 1}],
            "shipping_address": ADDRESS,
            "payment_method": "UPI",
            "total_price": 210,
        })
        item = res.json()["order"]["order_items"][0]
        assert item["name"] == "Soan Papdi (500g)"
        assert item["price"] == 210
        assert item["variant_index"] == 1

    def test_snapshot_not_resynced_after_price_change(self, client, auth, customer, make_product):
        product = make_product(original_price=150)
        res = client.post("/user/checkout", headers=auth(customer), json={
            "order_items": [{"product_id": product["_id"], "qty": 1}],
            "shipping_address": ADDRESS,
            "payment_method": "COD",
            "total_price": 150,
        })
        database.update_document("product", product["_id"], {"original_price": 999})
        order_id = res.json()["order"]["_id"]
        assert client.get(f"/user/orders/{order_id}", headers=auth(customer)).json()["order_items"][0]["price"] == 150

    def test_empty_cart_rejected(self, client, auth, customer):
        res = client.post("/user/checkout", headers=auth(customer), json={
            "shipping_address": ADDRESS, "payment_method": "COD", "total_price": 0,
        })
        assert res.status_code == 400
        assert res.json() == {"message": "No order items"}

    def test_incomplete_address_rejected(self, client, auth, customer, make_product):
        product = make_product()
        res = client.post("/user/checkout", headers=auth(customer), json={
            "order_items": [{"product_id": product["_id"], "qty": 1}],
            "shipping_address": {"address": "12 MG Road", "postal_code": "411001"},
            "payment_method": "COD",
            "total_price": 150,
        })
        assert res.status_code == 400
        assert "city" in res.json()["message"]

    def test_missing_payment_method_rejected(self, client, auth, customer, make_product):
        product = make_product()
        res = client.post("/user/checkout", headers=auth(customer), json={
            "order_items": [{"product_id": product["_id"], "qty": 1}],
            "shipping_address": ADDRESS,
            "total_price": 150,
        })
        assert res.status_code == 400
        assert "payment_method" in res.json()["message"]

    def test_inactive_product_rejected(self, client, auth, customer, make_product):
        product = make_product(is_active=False)
        res = client.post("/user/checkout", headers=auth(customer), json={
            "order_items": [{"product_id": product["_id"], "qty": 1}],
            "shipping_address": ADDRESS,
            "payment_method": "COD",
            "total_price": 150,
        })
        assert res.status_code == 400
        assert database.count_documents("order") == 0

    def test_routing_filled_from_nearest_store(self, client, auth, customer, make_product, store_settings):
        product = make_product()
        res = client.post("/user/checkout", headers=auth(customer), json={
            "order_items": [{"product_id": product["_id"], "qty": 1}],
            "shipping_address": dict(ADDRESS, latitude=18.52, longitude=73.85),
            "payment_method": "COD",
            "total_price": 150,
        })
        order = res.json()["order"]
        assert order["nearest_store"] == "Shivajinagar"
        assert order["distance"] < 2

    def test_requires_login(self, client):
        res = client.post("/user/checkout", json={})
        assert res.status_code == 401
        assert res.json() == {"message": "Not authorized, no token"}


# ============================================================================
# Customer reads and cancellation
# ============================================================================

class TestCustomerOrders:

    def test_lists_only_own_orders(self, client, auth, customer, make_user, make_order):
        mine = make_order()
        make_order(user=make_user())
        res = client.get("/user/orders", headers=auth(customer))
        assert [o["_id"] for o in res.json()] == [mine["_id"]]

    def test_other_users_order_is_forbidden(self, client, auth, make_user, make_order):
        order = make_order()
        res = client.get(f"/user/orders/{order['_id']}", headers=auth(make_user()))
        assert res.status_code == 403

    def test_unknown_order_is_404(self, client, auth, customer):
        res = client.get(f"/user/orders/{database.new_id()}", headers=auth(customer))
        assert res.status_code == 404
        assert res.json() == {"message": "Order not found"}

    @pytest.mark.parametrize("status", ["placed", "confirmed"])
    def test_cancel(self, client, auth, customer, make_order, status):
        order = make_order(status=status)
        res = client.put(f"/user/orders/{order['_id']}/cancel", headers=auth(customer), json={"reason": "Ordered twice"})
        assert res.status_code == 200
        stored = _order(order["_id"])
        assert stored["status"] == "cancelled"
        assert stored["cancel_reason"] == "Ordered twice"
        assert stored["cancelled_at"] is not None

    @pytest.mark.parametrize("reason", ["", "   ", None])
    def test_cancel_requires_reason(self, client, auth, customer, make_order, reason):
        order = make_order()
        res = client.put(f"/user/orders/{order['_id']}/cancel", headers=auth(customer), json={"reason": reason})
        assert res.status_code == 400
        assert res.json() == {"message": "Cancellation reason is required"}
        assert _order(order["_id"])["status"] == "placed"

    @pytest.mark.parametrize("status", ["out_for_delivery", "delivered", "cancelled"])
    def test_cancel_rejected_once_dispatched(self, client, auth, customer, make_order, status):
        order = make_order(status=status)
        res = client.put(f"/user/orders/{order['_id']}/cancel", headers=auth(customer), json={"reason": "Too late"})
        assert res.status_code == 400
        assert res.json() == {"message": "Order cannot be cancelled"}
        assert _order(order["_id"])["status"] == status

    def test_cancel_other_users_order_forbidden(self, client, auth, make_user, make_order):
        order = make_order()
        res = client.put(f"/user/orders/{order['_id']}/cancel", headers=auth(make_user()), json={"reason": "Mine now"})
        assert res.status_code == 403
        assert _order(order["_id"])["status"] == "placed"


# ============================================================================
# Admin transitions
# ============================================================================

class TestAdminStatus:

    def test_confirm_marks_paid(self, client, auth, admin, make_order):
        order = make_order()
        res = client.put(f"/admin/orders/{order['_id']}/status", headers=auth(admin), json={"status": "confirmed"})
        assert res.status_code == 200
        assert res.json()["status"] == "confirmed"
        assert res.json()["is_paid"] is True
        assert _order(order["_id"])["paid_at"] is not None

    def test_deliver_sets_timestamp_at_transition(self, client, auth, admin, make_order):
        order = make_order(status="out_for_delivery")
        _age(order)
        before = database.utcnow() - timedelta(seconds=1)
        res = client.put(f"/admin/orders/{order['_id']}/status", headers=auth(admin), json={"status": "delivered"})
        assert res.json()["is_delivered"] is True
        stored = _order(order["_id"])
        assert stored["delivered_at"] >= before
        assert stored["delivered_at"] > stored["created_at"]

    def test_cancel_releases_assignment(self, client, auth, admin, partner, make_order):
        order = make_order(status="confirmed", delivery_person=partner["_id"], eta="30 mins")
        res = client.put(f"/admin/orders/{order['_id']}/status", headers=auth(admin), json={"status": "cancelled"})
        body = res.json()
        assert body["status"] == "cancelled"
        assert body["cancel_reason"] == "Cancelled by admin"
        assert body["delivery_person"] is None
        assert body["eta"] is None

    def test_cancel_with_reason(self, client, auth, admin, make_order):
        order = make_order()
        res = client.put(f"/admin/orders/{order['_id']}/status", headers=auth(admin), json={"status": "cancelled", "reason": "Out of stock"})
        assert res.json()["cancel_reason"] == "Out of stock"

    @pytest.mark.parametrize("terminal", ["delivered", "cancelled"])
    def test_terminal_orders_are_frozen(self, client, auth, admin, make_order, terminal):
        order = make_order(status=terminal)
        res = client.put(f"/admin/orders/{order['_id']}/status", headers=auth(admin), json={"status": "confirmed"})
        assert res.status_code == 400
        assert _order(order["_id"])["status"] == terminal

    def test_same_status_is_noop(self, client, auth, admin, make_order):
        order = make_order(status="confirmed")
        res = client.put(f"/admin/orders/{order['_id']}/status", headers=auth(admin), json={"status": "confirmed"})
        assert res.status_code == 200
        assert _order(order["_id"])["version"] == order["version"]

    def test_unknown_status_rejected(self, client, auth, admin, make_order):
        order = make_order()
        res = client.put(f"/admin/orders/{order['_id']}/status", headers=auth(admin), json={"status": "shipped"})
        assert res.status_code == 400
        assert res.json()["message"].startswith("status:")

    def test_customer_cannot_update_status(self, client, auth, customer, make_order):
        order = make_order()
        res = client.put(f"/admin/orders/{order['_id']}/status", headers=auth(customer), json={"status": "confirmed"})
        assert res.status_code == 403

    def test_cancel_calls_courier(self, client, auth, admin, make_order, monkeypatch):
        calls = []
        monkeypatch.setattr(courier, "cancel_task", lambda task_id: calls.append(task_id) or {})
        order = make_order(status="confirmed", uengage={"task_id": "T-9", "vendor_order_id": "V-9"})
        client.put(f"/admin/orders/{order['_id']}/status", headers=auth(admin), json={"status": "cancelled"})
        assert calls == ["T-9"]
        assert _order(order["_id"])["uengage"]["status_code"] == "CANCELLED"

    def test_courier_cancel_failure_is_recorded(self, client, auth, admin, make_order, monkeypatch):
        def fail(task_id):
            raise ExternalServiceError("Courier request failed: cancelTask")

        monkeypatch.setattr(courier, "cancel_task", fail)
        order = make_order(status="confirmed", uengage={"task_id": "T-9"})
        res = client.put(f"/admin/orders/{order['_id']}/status", headers=auth(admin), json={"status": "cancelled"})
        assert res.status_code == 200
        stored = _order(order["_id"])
        assert stored["status"] == "cancelled"
        assert stored["uengage"]["status_code"] == "CANCEL_FAILED"
        assert stored["uengage"]["task_id"] == "T-9"

    def test_admin_list_filters_and_attaches_people(self, client, auth, admin, customer, make_order):
        make_order(status="placed")
        confirmed = make_order(status="confirmed")
        res = client.get("/admin/orders", params={"status": "confirmed"}, headers=auth(admin))
        body = res.json()
        assert [o["_id"] for o in body] == [confirmed["_id"]]
        assert body[0]["customer"]["username"] == customer["username"]
        assert "password_hash" not in body[0]["customer"]


class TestLegacyDeliveryFlag:

    def test_true_delivers(self, client, auth, admin, make_order):
        order = make_order(status="out_for_delivery")
        res = client.put(f"/admin/orders/{order['_id']}/delivery", headers=auth(admin), json={"is_delivered": True})
        assert res.json()["status"] == "delivered"
        assert res.json()["is_delivered"] is True

    def test_false_on_delivered_rejected(self, client, auth, admin, make_order):
        order = make_order(status="delivered", delivered_at=database.utcnow())
        res = client.put(f"/admin/orders/{order['_id']}/delivery", headers=auth(admin), json={"is_delivered": False})
        assert res.status_code == 400
        assert _order(order["_id"])["status"] == "delivered"

    def test_false_on_open_order_is_noop(self, client, auth, admin, make_order):
        order = make_order(status="confirmed")
        res = client.put(f"/admin/orders/{order['_id']}/delivery", headers=auth(admin), json={"is_delivered": False})
        assert res.status_code == 200
        assert res.json()["status"] == "confirmed"


# ============================================================================
# Assignment and partner delivery
# ============================================================================

class TestAssignment:

    def test_assign_confirms_placed_order(self, client, auth, admin, partner, make_order):
        order = make_order()
        res = client.put(f"/admin/orders/{order['_id']}/assign-delivery", headers=auth(admin), json={
            "delivery_person_id": partner["_id"], "eta": "30 mins",
        })
        assert res.status_code == 200
        stored = _order(order["_id"])
        assert stored["status"] == "confirmed"
        assert stored["delivery_person"] == partner["_id"]
        assert stored["eta"] == "30 mins"

    @pytest.mark.parametrize("role", ["user", "admin", "delivery-pending"])
    def test_assign_requires_delivery_role(self, client, auth, admin, make_user, make_order, role):
        order = make_order()
        person = make_user(role=role)
        res = client.put(f"/admin/orders/{order['_id']}/assign-delivery", headers=auth(admin), json={
            "delivery_person_id": person["_id"], "eta": "30 mins",
        })
        assert res.status_code == 400
        assert res.json() == {"message": "Invalid delivery person ID or not a delivery role"}
        assert _order(order["_id"])["delivery_person"] is None

    def test_assign_unknown_person_rejected(self, client, auth, admin, make_order):
        order = make_order()
        res = client.put(f"/admin/orders/{order['_id']}/assign-delivery", headers=auth(admin), json={
            "delivery_person_id": database.new_id(), "eta": "30 mins",
        })
        assert res.status_code == 400

    def test_assign_never_regresses_status(self, client, auth, admin, partner, make_order):
        order = make_order(status="out_for_delivery")
        client.put(f"/admin/orders/{order['_id']}/assign-delivery", headers=auth(admin), json={
            "delivery_person_id": partner["_id"], "eta": "10 mins",
        })
        assert _order(order["_id"])["status"] == "out_for_delivery"

    def test_assign_on_cancelled_rejected(self, client, auth, admin, partner, make_order):
        order = make_order(status="cancelled")
        res = client.put(f"/admin/orders/{order['_id']}/assign-delivery", headers=auth(admin), json={
            "delivery_person_id": partner["_id"], "eta": "10 mins",
        })
        assert res.status_code == 400


class TestPartnerDelivery:

    def test_assigned_partner_delivers(self, client, auth, partner, make_order):
        order = make_order(status="out_for_delivery", delivery_person=partner["_id"])
        res = client.put(f"/delivery/orders/{order['_id']}/deliver", headers=auth(partner))
        assert res.status_code == 200
        assert res.json()["status"] == "delivered"
        assert res.json()["delivered_at"] is not None

    def test_other_partner_forbidden(self, client, auth, partner, make_user, make_order):
        order = make_order(status="out_for_delivery", delivery_person=partner["_id"])
        res = client.put(f"/delivery/orders/{order['_id']}/deliver", headers=auth(make_user(role="delivery")))
        assert res.status_code == 403
        assert res.json() == {"message": "Not authorized to deliver this order"}

    def test_customer_forbidden(self, client, auth, customer, make_order):
        order = make_order(status="out_for_delivery")
        res = client.put(f"/delivery/orders/{order['_id']}/deliver", headers=auth(customer))
        assert res.status_code == 403

    def test_cancelled_order_cannot_be_delivered(self, client, auth, partner, make_order):
        order = make_order(status="cancelled", delivery_person=partner["_id"])
        res = client.put(f"/delivery/orders/{order['_id']}/deliver", headers=auth(partner))
        assert res.status_code == 400

    def test_lists_assigned_orders(self, client, auth, partner, make_order):
        mine = make_order(status="confirmed", delivery_person=partner["_id"])
        make_order(status="confirmed")
        res = client.get("/delivery/orders", headers=auth(partner))
        assert [o["_id"] for o in res.json()] == [mine["_id"]]


# ============================================================================
# Invariants and the transition loop
# ============================================================================

class TestTransitionEngine:

    def test_delivered_at_tracks_is_delivered(self, admin, partner, make_order):
        order = make_order()
        for step in (
            lambda: orders.assign_delivery_person(order["_id"], partner["_id"], "20 mins"),
            lambda: orders.admin_update_status(order["_id"], "out_for_delivery"),
            lambda: orders.mark_delivered(order["_id"], partner),
        ):
            current = step()
            assert (current["delivered_at"] is not None) == current["is_delivered"]
        assert current["status"] == "delivered"

    def test_lost_race_is_rechecked(self, customer, make_order, monkeypatch):
        order = make_order(status="confirmed")
        real_update = database.update_versioned
        raced = []

        def racing_update(collection_name, doc, changes, extra_filter=None):
            if not raced:
                raced.append(True)
                database.collection("order").update_one(
                    {"_id": database.to_object_id(doc["_id"])},
                    {"$set": {"status": "out_for_delivery"}, "$inc": {"version": 1}},
                )
            return real_update(collection_name, doc, changes, extra_filter)

        monkeypatch.setattr(database, "update_versioned", racing_update)
        with pytest.raises(InvalidTransitionError):
            orders.cancel_by_customer(order["_id"], customer, "Changed my mind")
        assert _order(order["_id"])["status"] == "out_for_delivery"

    def test_persistent_conflict_raises(self, make_order, monkeypatch):
        order = make_order()
        monkeypatch.setattr(database, "update_versioned", lambda *args, **kwargs: None)
        with pytest.raises(ConflictError):
            orders.admin_update_status(order["_id"], "confirmed")

    def test_projection_is_derived(self):
        projected = orders.project_order({"status": "delivered", "paid_at": None})
        assert projected["is_delivered"] is True
        assert projected["is_paid"] is False


# ============================================================================
# Stock bookkeeping
# ============================================================================

def _stocked(make_product, quantity, location="shivajinagar", **extra):
    return make_product(inventory=[{"location": location, "stock": [{"variant_index": 0, "quantity": quantity}]}], **extra)


def _on_hand(product):
    return database.get_document_by_id("product", product["_id"])["inventory"][0]["stock"][0]["quantity"]


def _checkout(client, headers, *lines):
    return client.post("/user/checkout", headers=headers, json={
        "order_items": [{"product_id": p["_id"], "qty": qty} for p, qty in lines],
        "shipping_address": ADDRESS,
        "payment_method": "COD",
        "total_price": 150,
        "nearest_store": "Shivajinagar",
    })


class TestStock:

    def test_checkout_takes_stock_from_store(self, client, auth, customer, make_product):
        product = _stocked(make_product, 3)
        res = _checkout(client, auth(customer), (product, 1))
        assert res.status_code == 201
        assert res.json()["order"]["stock_location"] == "shivajinagar"
        assert _on_hand(product) == 2

    def test_insufficient_stock_rejected(self, client, auth, customer, make_product):
        product = _stocked(make_product, 1, name="Rasmalai")
        res = _checkout(client, auth(customer), (product, 5))
        assert res.status_code == 400
        assert res.json() == {"message": "Insufficient stock for Rasmalai"}
        assert _on_hand(product) == 1
        assert database.count_documents("order") == 0

    def test_store_without_inventory_rejected(self, client, auth, customer, make_product):
        product = _stocked(make_product, 10, location="kothrud", name="Shrikhand")
        res = _checkout(client, auth(customer), (product, 1))
        assert res.status_code == 400
        assert res.json() == {"message": "Inventory not found for Shrikhand"}

    def test_shortfall_puts_earlier_lines_back(self, client, auth, customer, make_product):
        plenty = _stocked(make_product, 5)
        scarce = _stocked(make_product, 0)
        res = _checkout(client, auth(customer), (plenty, 2), (scarce, 1))
        assert res.status_code == 400
        assert _on_hand(plenty) == 5

    def test_untracked_product_is_not_limited(self, client, auth, customer, make_product):
        product = make_product()
        assert _checkout(client, auth(customer), (product, 50)).status_code == 201

    def test_customer_cancel_restores_stock(self, client, auth, customer, make_product):
        product = _stocked(make_product, 3)
        order_id = _checkout(client, auth(customer), (product, 2)).json()["order"]["_id"]
        assert _on_hand(product) == 1
        client.put(f"/user/orders/{order_id}/cancel", headers=auth(customer), json={"reason": "Ordered twice"})
        assert _on_hand(product) == 3

    def test_admin_cancel_restores_stock(self, client, auth, admin, customer, make_product):
        product = _stocked(make_product, 3)
        order_id = _checkout(client, auth(customer), (product, 2)).json()["order"]["_id"]
        client.put(f"/admin/orders/{order_id}/status", headers=auth(admin), json={"status": "cancelled"})
        assert _on_hand(product) == 3

    def test_rejected_cancel_leaves_stock(self, client, auth, admin, customer, make_product):
        product = _stocked(make_product, 3)
        order_id = _checkout(client, auth(customer), (product, 2)).json()["order"]["_id"]
        client.put(f"/admin/orders/{order_id}/status", headers=auth(admin), json={"status": "delivered"})
        res = client.put(f"/admin/orders/{order_id}/status", headers=auth(admin), json={"status": "cancelled"})
        assert res.status_code == 400
        assert _on_hand(product) == 1
