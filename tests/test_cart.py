from bson import ObjectId

from royal_jewels import cart

from tests.conftest import make_product


def test_first_access_creates_empty_cart(client, db, user, auth_headers):
    resp = client.get("/api/cart", headers=auth_headers)
    assert resp.status_code == 200
    assert resp.json() == []
    assert db["cart"].count_documents({"user_id": str(user["_id"])}) == 1


def test_add_resolves_product_details(client, db, auth_headers):
    pid = make_product(db, name="Pearl Studs", price=7800.0)
    resp = client.post("/api/cart", json={"productId": pid, "quantity": 2}, headers=auth_headers)
    assert resp.status_code == 200
    [line] = resp.json()
    assert line["quantity"] == 2
    assert line["product"]["name"] == "Pearl Studs"
    assert line["product"]["price"] == 7800.0


def test_duplicate_add_replaces_quantity(db, ctx):
    pid = make_product(db)
    cart.add_or_update(db, ctx, pid, 2)
    lines = cart.add_or_update(db, ctx, pid, 5)
    assert len(lines) == 1
    assert lines[0]["quantity"] == 5


def test_add_unknown_product(client, auth_headers):
    resp = client.post("/api/cart", json={"productId": str(ObjectId()), "quantity": 1}, headers=auth_headers)
    assert resp.status_code == 404


def test_add_malformed_product_id(client, auth_headers):
    resp = client.post("/api/cart", json={"productId": "not-an-id", "quantity": 1}, headers=auth_headers)
    assert resp.status_code == 400


def test_quantity_must_be_positive(client, db, auth_headers):
    pid = make_product(db)
    resp = client.post("/api/cart", json={"productId": pid, "quantity": 0}, headers=auth_headers)
    assert resp.status_code == 400


def test_update_quantity_by_line_id(client, db, ctx, auth_headers):
    pid = make_product(db)
    [line] = cart.add_or_update(db, ctx, pid, 1)
    resp = client.put(f"/api/cart/{line['id']}", json={"quantity": 3}, headers=auth_headers)
    assert resp.status_code == 200
    assert resp.json()[0]["quantity"] == 3


def test_update_missing_line(client, db, ctx, auth_headers):
    resp = client.put("/api/cart/nothing-here", json={"quantity": 3}, headers=auth_headers)
    assert resp.status_code == 404
    assert resp.json()["detail"] == "Cart not found"

    cart.get_cart(db, ctx)
    resp = client.put("/api/cart/nothing-here", json={"quantity": 3}, headers=auth_headers)
    assert resp.status_code == 404
    assert resp.json()["detail"] == "Item not found in cart"


def test_remove_is_idempotent(client, db, ctx, auth_headers):
    keep = make_product(db, name="Keep")
    drop = make_product(db, name="Drop")
    cart.add_or_update(db, ctx, keep, 1)
    cart.add_or_update(db, ctx, drop, 1)

    resp = client.delete(f"/api/cart/{drop}", headers=auth_headers)
    assert resp.status_code == 200
    assert [line["product_id"] for line in resp.json()] == [keep]

    again = client.delete(f"/api/cart/{drop}", headers=auth_headers)
    assert again.status_code == 200
    assert len(again.json()) == 1


def test_remove_by_line_id(db, ctx):
    pid = make_product(db)
    [line] = cart.add_or_update(db, ctx, pid, 1)
    assert cart.remove(db, ctx, line["id"]) == []


def test_deleted_product_shows_as_missing(db, ctx):
    pid = make_product(db)
    cart.add_or_update(db, ctx, pid, 1)
    db["product"].delete_one({"_id": ObjectId(pid)})
    [line] = cart.get_cart(db, ctx)
    assert line["product"] is None
