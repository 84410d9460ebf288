"""Tests for checkout and payment orchestration."""

import cart as carts
import catalog
from conftest import ADDRESS, sign


def _create_payment(client, headers, **extra):
    return client.post("/payment/create-order", json={"shipping_address": ADDRESS, **extra}, headers=headers)


def _verify(client, headers, gateway_order_id, payment_id="pay_test1", signature=None):
    return client.post(
        "/payment/verify-payment",
        json={
            "razorpay_order_id": gateway_order_id,
            "razorpay_payment_id": payment_id,
            "razorpay_signature": signature if signature is not None else sign(gateway_order_id, payment_id),
        },
        headers=headers,
    )


class TestCashOnDelivery:
    def test_places_order(self, client, db, auth_headers, place_cod_order, make_product):
        product = make_product(price=150.0, stock=5)
        order = place_cod_order(product, 2)

        assert order["order_id"].startswith("SE")
        assert order["order_status"] == "Placed"
        assert order["payment_status"] == "Pending"
        assert order["payment_method"] == "COD"
        assert order["subtotal"] == 300
        assert order["delivery_charge"] == 0
        assert order["total_amount"] == 300
        assert order["delivery_updates"][0]["status"] == "Order Placed"
        assert order["expected_delivery"] is not None
        assert order["requires_bank_details"] is False

        assert db["product"].find_one({"_id": product["_id"]})["stock"] == 3
        assert client.get("/cart", headers=auth_headers).json()["items"] == []
        assert db["checkout"].find_one({})["status"] == "OrderCreated"

    def test_order_notifies_buyer(self, client, auth_headers, place_cod_order, make_product):
        place_cod_order(make_product())
        titles = [n["title"] for n in client.get("/notifications", headers=auth_headers).json()]
        assert "Order Placed Successfully" in titles

    def test_empty_cart(self, client, auth_headers):
        resp = client.post("/orders", json={"shipping_address": ADDRESS, "payment_method": "COD"},
                           headers=auth_headers)
        assert resp.status_code == 400
        assert resp.json()["detail"] == "Cart is empty"

    def test_stock_race_rolls_back(self, client, db, auth_headers, add_to_cart, make_product, monkeypatch):
        first = make_product(name="Scarf", stock=5)
        second = make_product(name="Shawl", stock=5)
        add_to_cart(first, 2)
        add_to_cart(second, 1)

        real_decrement = catalog.decrement_stock_if_sufficient

        def sold_out_second(database, product_id, quantity):
            if str(product_id) == str(second["_id"]):
                return False
            return real_decrement(database, product_id, quantity)

        monkeypatch.setattr(catalog, "decrement_stock_if_sufficient", sold_out_second)
        resp = client.post("/orders", json={"shipping_address": ADDRESS, "payment_method": "COD"},
                           headers=auth_headers)

        assert resp.status_code == 400
        assert resp.json()["code"] == "insufficient_stock"
        assert db["product"].find_one({"_id": first["_id"]})["stock"] == 5
        assert db["order"].count_documents({}) == 0
        assert len(client.get("/cart", headers=auth_headers).json()["items"]) == 2
        assert db["checkout"].find_one({})["status"] == "PaymentFailed"

    def test_item_added_during_checkout_stays_in_cart(self, client, db, user, auth_headers, add_to_cart,
                                                      make_product, monkeypatch):
        kurta = make_product(name="Kurta", stock=5)
        scarf = make_product(name="Scarf", stock=5)
        add_to_cart(kurta, 1)

        real_decrement = catalog.decrement_stock_if_sufficient

        def add_scarf_midway(database, product_id, quantity):
            carts.add_item(database, str(user["_id"]), str(scarf["_id"]), 1)
            return real_decrement(database, product_id, quantity)

        monkeypatch.setattr(catalog, "decrement_stock_if_sufficient", add_scarf_midway)
        resp = client.post("/orders", json={"shipping_address": ADDRESS, "payment_method": "COD"},
                           headers=auth_headers)
        assert resp.status_code == 201
        assert [i["name"] for i in resp.json()["items"]] == ["Kurta"]

        monkeypatch.setattr(catalog, "decrement_stock_if_sufficient", real_decrement)
        remaining = client.get("/cart", headers=auth_headers).json()["items"]
        assert [(i["name"], i["quantity"]) for i in remaining] == [("Scarf", 1)]

    def test_snapshot_survives_catalog_edit(self, client, auth_headers, admin_headers, place_cod_order,
                                            make_product):
        product = make_product(name="Silk Saree", price=250.0)
        order = place_cod_order(product)
        resp = client.put(f"/products/{product['_id']}", json={"price": 999.0, "name": "Renamed"},
                          headers=admin_headers)
        assert resp.status_code == 200

        fetched = client.get(f"/orders/{order['id']}", headers=auth_headers).json()
        assert fetched["items"][0]["price"] == 250
        assert fetched["items"][0]["name"] == "Silk Saree"

    def test_online_method_needs_verified_payment(self, client, auth_headers, add_to_cart, make_product):
        add_to_cart(make_product(), 1)
        resp = client.post("/orders", json={"shipping_address": ADDRESS, "payment_method": "Razorpay"},
                           headers=auth_headers)
        assert resp.status_code == 400


class TestOnlinePayment:
    def test_create_payment_order(self, client, db, auth_headers, add_to_cart, make_product, gateway):
        add_to_cart(make_product(price=499.99), 1)
        resp = _create_payment(client, auth_headers)
        assert resp.status_code == 200
        body = resp.json()
        assert body["key_id"] == "rzp_test_key"
        assert body["order"] == {"id": "order_test1", "amount": 49999, "currency": "INR"}
        assert gateway.created[0]["amount"] == 49999
        assert db["checkout"].find_one({})["status"] == "AwaitingPayment"

    def test_cod_does_not_need_payment_order(self, client, auth_headers, add_to_cart, make_product):
        add_to_cart(make_product(), 1)
        resp = _create_payment(client, auth_headers, payment_method="COD")
        assert resp.status_code == 400

    def test_verified_payment_places_paid_order(self, client, db, auth_headers, add_to_cart, make_product):
        product = make_product(price=300.0, stock=4)
        add_to_cart(product, 1)
        gateway_order_id = _create_payment(client, auth_headers).json()["order"]["id"]

        resp = _verify(client, auth_headers, gateway_order_id)
        assert resp.status_code == 200
        order = resp.json()["order"]
        assert order["payment_status"] == "Paid"
        assert order["payment_method"] == "Razorpay"
        assert order["gateway_order_id"] == gateway_order_id
        assert order["gateway_payment_id"] == "pay_test1"
        assert db["product"].find_one({"_id": product["_id"]})["stock"] == 3
        assert db["checkout"].find_one({})["status"] == "OrderCreated"

    def test_repeated_verification_is_idempotent(self, client, db, auth_headers, add_to_cart, make_product):
        add_to_cart(make_product(), 1)
        gateway_order_id = _create_payment(client, auth_headers).json()["order"]["id"]
        first = _verify(client, auth_headers, gateway_order_id).json()["order"]
        second = _verify(client, auth_headers, gateway_order_id)
        assert second.status_code == 200
        assert second.json()["order"]["id"] == first["id"]
        assert db["order"].count_documents({}) == 1

    def test_bad_signature(self, client, db, auth_headers, add_to_cart, make_product):
        add_to_cart(make_product(), 1)
        gateway_order_id = _create_payment(client, auth_headers).json()["order"]["id"]
        resp = _verify(client, auth_headers, gateway_order_id, signature="0" * 64)
        assert resp.status_code == 400
        assert resp.json()["code"] == "invalid_payment_signature"
        assert db["order"].count_documents({}) == 0
        assert db["checkout"].find_one({})["status"] == "PaymentFailed"
        assert len(client.get("/cart", headers=auth_headers).json()["items"]) == 1

    def test_valid_callback_after_bad_one(self, client, auth_headers, add_to_cart, make_product):
        add_to_cart(make_product(), 1)
        gateway_order_id = _create_payment(client, auth_headers).json()["order"]["id"]
        _verify(client, auth_headers, gateway_order_id, signature="bogus")
        resp = _verify(client, auth_headers, gateway_order_id)
        assert resp.status_code == 200
        assert resp.json()["order"]["payment_status"] == "Paid"

    def test_missing_gateway_secret_fails_closed(self, client, auth_headers, add_to_cart, make_product,
                                                 monkeypatch):
        from config import config

        add_to_cart(make_product(), 1)
        gateway_order_id = _create_payment(client, auth_headers).json()["order"]["id"]
        signature = sign(gateway_order_id, "pay_test1")
        monkeypatch.setattr(config, "RAZORPAY_KEY_SECRET", "")
        resp = _verify(client, auth_headers, gateway_order_id, signature=signature)
        assert resp.status_code == 400

    def test_unknown_gateway_order(self, client, auth_headers):
        resp = _verify(client, auth_headers, "order_missing")
        assert resp.status_code == 404

    def test_other_users_session_is_hidden(self, client, auth_headers, other_headers, add_to_cart, make_product):
        add_to_cart(make_product(), 1)
        gateway_order_id = _create_payment(client, auth_headers).json()["order"]["id"]
        resp = _verify(client, other_headers, gateway_order_id)
        assert resp.status_code == 404

    def test_cart_changed_after_initiation(self, client, db, auth_headers, add_to_cart, make_product):
        add_to_cart(make_product(name="Tee", price=300.0), 1)
        gateway_order_id = _create_payment(client, auth_headers).json()["order"]["id"]
        add_to_cart(make_product(name="Cap", price=50.0), 1)

        resp = _verify(client, auth_headers, gateway_order_id)
        assert resp.status_code == 400
        assert resp.json()["detail"] == "Cart changed after payment was initiated"
        assert db["order"].count_documents({}) == 0
        assert db["checkout"].find_one({})["status"] == "PaymentFailed"

    def test_idempotency_key_reuses_attempt(self, client, db, auth_headers, add_to_cart, make_product, gateway):
        add_to_cart(make_product(), 1)
        first = _create_payment(client, auth_headers, idempotency_key="checkout-1").json()
        second = _create_payment(client, auth_headers, idempotency_key="checkout-1").json()
        assert first["order"]["id"] == second["order"]["id"]
        assert len(gateway.created) == 1
        assert db["checkout"].count_documents({}) == 1

    def test_idempotency_key_is_per_user(self, client, db, auth_headers, other_headers, add_to_cart,
                                         make_product, gateway):
        product = make_product(stock=5)
        add_to_cart(product, 1)
        add_to_cart(product, 1, headers=other_headers)
        mine = _create_payment(client, auth_headers, idempotency_key="k1")
        theirs = _create_payment(client, other_headers, idempotency_key="k1")
        assert mine.status_code == 200
        assert theirs.status_code == 200
        assert mine.json()["order"]["id"] != theirs.json()["order"]["id"]
        assert db["checkout"].count_documents({"idempotency_key": "k1"}) == 2

    def test_idempotency_key_header(self, client, auth_headers, add_to_cart, make_product, gateway):
        add_to_cart(make_product(), 1)
        headers = dict(auth_headers, **{"Idempotency-Key": "hdr-1"})
        _create_payment(client, headers)
        _create_payment(client, headers)
        assert len(gateway.created) == 1

    def test_gateway_failure(self, client, db, auth_headers, add_to_cart, make_product, gateway):
        gateway.fail = True
        add_to_cart(make_product(), 1)
        resp = _create_payment(client, auth_headers)
        assert resp.status_code == 502
        assert resp.json()["code"] == "payment_gateway_error"
        assert db["checkout"].find_one({})["status"] == "PaymentFailed"

    def test_cancel_payment(self, client, db, auth_headers, add_to_cart, make_product):
        add_to_cart(make_product(), 1)
        gateway_order_id = _create_payment(client, auth_headers).json()["order"]["id"]
        resp = client.post("/payment/cancel", json={"razorpay_order_id": gateway_order_id}, headers=auth_headers)
        assert resp.status_code == 200
        assert resp.json()["status"] == "Cancelled"

        again = _verify(client, auth_headers, gateway_order_id)
        assert again.status_code == 400
        assert db["order"].count_documents({}) == 0
