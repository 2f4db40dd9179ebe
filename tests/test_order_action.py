import pytest
from bson import ObjectId

import orders


@pytest.fixture
def place_order(client, order_payload):
    def _place(*lines, **overrides):
        res = client.post("/api/orders", json=order_payload(*lines, **overrides))
        assert res.status_code == 201, res.json()
        return res.json()["orderId"]
    return _place


def product(db, pid):
    return db["product"].find_one({"_id": ObjectId(pid)})


def act(client, headers, order_id, action):
    return client.post("/api/orders/action", json={"orderId": order_id, "action": action}, headers=headers)


def test_accept_decrements_stock_once(client, db, make_product, place_order, staff_headers):
    pid = make_product(quantity=5)
    order_id = place_order((pid, 3, None))

    res = act(client, staff_headers, order_id, "accept")
    assert res.status_code == 200
    body = res.json()
    assert body["success"] is True
    assert body["order"]["orderId"] == order_id
    assert body["order"]["status"] == "accepted"
    assert body["order"]["updatedAt"]
    assert product(db, pid)["quantity"] == 2

    res = act(client, staff_headers, order_id, "accept")
    assert res.status_code == 400
    assert res.json()["error"] == "Order is already accepted"
    assert product(db, pid)["quantity"] == 2


def test_accept_decrements_size_and_aggregate(client, db, make_product, place_order, staff_headers):
    pid = make_product(
        sizeRequirement="Mandatory",
        sizes=[{"name": "M", "quantity": 4}, {"name": "L", "quantity": 3}],
        quantity=7,
    )
    order_id = place_order((pid, 3, "M"))

    assert act(client, staff_headers, order_id, "accept").status_code == 200
    doc = product(db, pid)
    sizes = {s["name"]: s["quantity"] for s in doc["sizes"]}
    assert sizes == {"M": 1, "L": 3}
    assert doc["quantity"] == 4


def test_failed_validation_touches_no_stock(client, db, make_product, place_order, staff_headers):
    plenty = make_product(title="Kurta", quantity=10)
    scarce = make_product(title="Shawl", quantity=4)
    sized = make_product(title="Saree", sizeRequirement="Mandatory", sizes=[{"name": "Free", "quantity": 2}], quantity=2)
    order_id = place_order((plenty, 2, None), (scarce, 3, None), (sized, 2, "Free"))

    db["product"].update_one({"_id": ObjectId(scarce)}, {"$set": {"quantity": 1}})
    db["product"].update_one({"_id": ObjectId(sized)}, {"$set": {"sizes": [{"name": "Free", "quantity": 1}]}})

    res = act(client, staff_headers, order_id, "accept")
    assert res.status_code == 400
    body = res.json()
    assert body["error"] == "Cannot accept order"
    assert len(body["details"]) == 2
    assert any('"Shawl"' in d for d in body["details"])
    assert any('"Saree" size "Free"' in d for d in body["details"])

    assert product(db, plenty)["quantity"] == 10
    assert product(db, scarce)["quantity"] == 1
    assert db["order"].find_one({"orderId": order_id})["status"] == "pending"


def test_affiliate_and_unavailable_products_block_acceptance(client, db, make_product, place_order, staff_headers):
    affiliate = make_product(title="Partner Watch", productType="Affiliate", quantity=9)
    gone = make_product(title="Leather Bag", quantity=9)
    order_id = place_order((affiliate, 1, None), (gone, 1, None))
    db["product"].update_one({"_id": ObjectId(gone)}, {"$set": {"availability": "OutOfStock"}})

    res = act(client, staff_headers, order_id, "accept")
    assert res.status_code == 400
    details = res.json()["details"]
    assert any("affiliate" in d for d in details)
    assert any("out of stock" in d for d in details)
    assert product(db, affiliate)["quantity"] == 9


def test_reject_leaves_stock_and_cannot_repeat(client, db, make_product, place_order, staff_headers):
    pid = make_product(quantity=5)
    order_id = place_order((pid, 2, None))

    res = act(client, staff_headers, order_id, "reject")
    assert res.status_code == 200
    assert res.json()["order"]["status"] == "rejected"
    assert product(db, pid)["quantity"] == 5

    res = act(client, staff_headers, order_id, "reject")
    assert res.status_code == 400
    assert res.json()["error"] == "Order is already rejected"

    res = act(client, staff_headers, order_id, "accept")
    assert res.status_code == 400
    assert res.json()["error"] == "Cannot accept an order that is rejected"
    assert product(db, pid)["quantity"] == 5


def test_pending_payment_order_can_be_accepted(client, db, make_product, place_order, staff_headers, order_payload):
    pid = make_product(quantity=2)
    payload = order_payload((pid, 1, None), paymentMethod="bkash")
    payload["customerInfo"].update({"bkashNumber": "01812345678", "transactionId": "TX99"})
    order_id = client.post("/api/orders", json=payload).json()["orderId"]
    assert act(client, staff_headers, order_id, "accept").json()["order"]["status"] == "accepted"
    assert product(db, pid)["quantity"] == 1


def test_unknown_order_and_bad_action(client, staff_headers):
    res = act(client, staff_headers, "ORD-NOPE", "accept")
    assert res.status_code == 404
    assert res.json()["error"] == "Order not found"

    res = act(client, staff_headers, "ORD-NOPE", "ship")
    assert res.status_code == 400


def test_action_requires_staff(client, make_user, headers_for, make_product, place_order):
    pid = make_product()
    order_id = place_order((pid, 1, None))
    assert act(client, {}, order_id, "accept").status_code == 401
    assert act(client, headers_for(make_user("user")), order_id, "accept").status_code == 403


def test_lost_race_releases_earlier_reservations(db, make_product, place_order, monkeypatch):
    first = make_product(title="Kurta", quantity=5)
    second = make_product(title="Shawl", quantity=5)
    order_id = place_order((first, 2, None), (second, 3, None))

    # Validation sees the stock read before another accept took the Shawls.
    stale = {pid: product(db, pid) for pid in (first, second)}
    db["product"].update_one({"_id": ObjectId(second)}, {"$set": {"quantity": 1}})
    monkeypatch.setattr(orders, "find_product", lambda _db, pid: stale.get(pid))

    with pytest.raises(orders.OrderError) as exc:
        orders.apply_action(db, order_id, "accept")
    assert "changed while accepting" in exc.value.details[0]
    assert product(db, first)["quantity"] == 5
    assert product(db, second)["quantity"] == 1
    assert db["order"].find_one({"orderId": order_id})["status"] == "pending"


def test_concurrent_status_change_releases_stock(db, make_product, place_order):
    pid = make_product(quantity=5)
    order_id = place_order((pid, 2, None))
    snapshot = db["order"].find_one({"orderId": order_id})
    db["order"].update_one({"orderId": order_id}, {"$set": {"status": "cancelled"}})

    with pytest.raises(orders.OrderError) as exc:
        orders._accept(db, snapshot)
    assert exc.value.message == "Order was modified by another request"
    assert product(db, pid)["quantity"] == 5
    assert db["order"].find_one({"orderId": order_id})["status"] == "cancelled"


def test_sized_release_restores_size_entry(db, make_product):
    pid = make_product(sizeRequirement="Mandatory", sizes=[{"name": "S", "quantity": 1}], quantity=1)
    doc = product(db, pid)
    line = {"productId": pid, "title": "Cotton Panjabi", "size": "S", "quantity": 1}

    assert orders._reserve(db, doc, line) is True
    assert orders._reserve(db, doc, line) is False
    orders._release(db, [(doc, line)], "ORD-X")
    after = product(db, pid)
    assert after["sizes"][0]["quantity"] == 1
    assert after["quantity"] == 1


def test_stock_report_lists_every_line(client, make_product, staff_headers):
    ok = make_product(title="Kurta", quantity=5)
    short = make_product(title="Shawl", quantity=1)
    res = client.post("/api/products/validate", headers=staff_headers, json={
        "orderId": "ORD-1001",
        "products": [
            {"productId": ok, "title": "Kurta", "quantity": 2, "price": 900},
            {"productId": short, "title": "Shawl", "quantity": 2, "price": 700},
        ],
    })
    assert res.status_code == 200
    body = res.json()
    assert body["isValid"] is False
    assert body["issues"][0] == '"Kurta" - 2 units available'
    assert "Shawl" in body["issues"][1]
