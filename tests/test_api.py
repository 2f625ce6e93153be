import pytest
from fastapi.testclient import TestClient

from database import get_db
from main import app


def auth(token):
    return {"Authorization": f"Bearer {token}"}


ADMIN = auth("admin-token")
ALICE = auth("alice-token")
BOB = auth("bob-token")

ADDRESS = {
    "address_line1": "1 Main St",
    "city": "Springfield",
    "postal_code": "12345",
    "country": "US",
    "is_default": True,
}


@pytest.fixture
def mouse_id(client):
    category = client.post("/api/categories", json={"name": "Electronics"}, headers=ADMIN)
    assert category.status_code == 201
    product = client.post("/api/products", headers=ADMIN, json={
        "name": "Wireless Mouse",
        "price": "19.99",
        "category_id": category.json()["id"],
        "stock_quantity": 10,
    })
    assert product.status_code == 201
    return product.json()["id"]


def test_root(client):
    assert client.get("/").json() == {"message": "E-commerce API running successfully!"}
    assert client.get("/api").status_code == 200


def test_missing_token_is_rejected(client):
    res = client.get("/api/cart")
    assert res.status_code == 401
    assert res.json() == {"message": "No token provided"}


def test_unknown_token_is_rejected(client):
    res = client.get("/api/cart", headers=auth("forged"))
    assert res.status_code == 401
    assert res.json() == {"message": "Invalid token"}


def test_customers_cannot_manage_catalog(client):
    res = client.post("/api/categories", json={"name": "Toys"}, headers=ALICE)
    assert res.status_code == 403
    assert res.json() == {"message": "Admin access required"}


def test_validation_errors_list_fields(client, mouse_id):
    res = client.post("/api/products", headers=ADMIN, json={"name": "Broken", "price": "-1", "category_id": 1})

    assert res.status_code == 400
    body = res.json()
    assert body["message"] == "Validation error"
    assert "price" in [e["field"] for e in body["errors"]]


def test_query_validation_uses_the_same_format(client):
    res = client.get("/api/products", params={"page": 0})

    assert res.status_code == 400
    assert res.json()["errors"][0]["field"] == "page"


def test_business_errors_map_to_400(client, mouse_id):
    res = client.post("/api/cart", json={"product_id": mouse_id, "quantity": 11}, headers=ALICE)

    assert res.status_code == 400
    assert res.json() == {"message": "Only 10 items available"}


def test_checkout_journey(client, mouse_id, gateway, notifier):
    product = client.get("/api/products/wireless-mouse").json()
    assert product["status"] == "Low Stock"
    assert product["category"]["name"] == "Electronics"

    cart = client.post("/api/cart", json={"product_id": mouse_id, "quantity": 2}, headers=ALICE).json()
    assert cart["total"] == 39.98

    address = client.post("/api/addresses", json=ADDRESS, headers=ALICE)
    assert address.status_code == 201

    res = client.post("/api/orders", json={"shipping_address_id": address.json()["id"]}, headers=ALICE)
    assert res.status_code == 201
    order = res.json()
    assert order["status"] == "pending"
    assert order["total_amount"] == 39.98
    assert order["items"][0]["unit_price"] == 19.99
    assert len(gateway.charges) == 1

    assert client.get(f"/api/products/{mouse_id}").json()["stock_quantity"] == 8
    assert client.get("/api/cart", headers=ALICE).json()["itemCount"] == 0

    shipped = client.put(f"/api/orders/{order['id']}/status", json={"status": "shipped"}, headers=ADMIN)
    assert shipped.status_code == 200
    assert client.get(f"/api/orders/{order['id']}", headers=ALICE).json()["status"] == "shipped"
    assert [kind for kind, _, _ in notifier.sent] == ["confirmation", "status"]

    other = client.get(f"/api/orders/{order['id']}", headers=BOB)
    assert other.status_code == 404
    assert other.json() == {"message": "Order not found"}


def test_empty_cart_checkout(client):
    address = client.post("/api/addresses", json=ADDRESS, headers=ALICE).json()

    res = client.post("/api/orders", json={"shipping_address_id": address["id"]}, headers=ALICE)

    assert res.status_code == 400
    assert res.json() == {"message": "Cart is empty"}


def test_idempotency_key_header(client, mouse_id, gateway):
    client.post("/api/cart", json={"product_id": mouse_id}, headers=ALICE)
    address = client.post("/api/addresses", json=ADDRESS, headers=ALICE).json()
    headers = dict(ALICE, **{"Idempotency-Key": "checkout-42"})

    first = client.post("/api/orders", json={"shipping_address_id": address["id"]}, headers=headers)
    second = client.post("/api/orders", json={"shipping_address_id": address["id"]}, headers=headers)

    assert first.status_code == second.status_code == 201
    assert first.json()["id"] == second.json()["id"]
    assert len(gateway.charges) == 1


def test_pay_order(client, mouse_id):
    client.post("/api/cart", json={"product_id": mouse_id}, headers=ALICE)
    address = client.post("/api/addresses", json=ADDRESS, headers=ALICE).json()
    order = client.post("/api/orders", json={"shipping_address_id": address["id"]}, headers=ALICE).json()

    assert client.put(f"/api/orders/{order['id']}/pay", headers=ALICE).json()["status"] == "paid"
    again = client.put(f"/api/orders/{order['id']}/pay", headers=ALICE)
    assert again.status_code == 400
    assert again.json() == {"message": "Order already paid"}


def test_admin_order_listing(client, mouse_id):
    assert client.get("/api/orders/admin/all", headers=ALICE).status_code == 403

    res = client.get("/api/orders/admin/all", headers=ADMIN)
    assert res.status_code == 200
    assert res.json()["total"] == 0


def test_product_listing_query_params(client, mouse_id):
    res = client.get("/api/products", params={"minPrice": "10", "maxPrice": "20", "status": "Low Stock"})

    assert res.status_code == 200
    assert [p["id"] for p in res.json()["products"]] == [mouse_id]
    assert client.get("/api/products", params={"maxPrice": "10"}).json()["total"] == 0


def test_product_categories_are_seeded(client):
    res = client.get("/api/products/categories")

    assert res.json() == ["Books", "Clothing", "Electronics", "Home & Kitchen", "Toys"]


def test_reviews_endpoint(client, mouse_id):
    res = client.post(f"/api/products/{mouse_id}/reviews", json={"rating": 4, "comment": "Solid"}, headers=ALICE)
    assert res.status_code == 201

    top = client.get("/api/products/top").json()
    assert top[0]["id"] == mouse_id
    assert top[0]["averageRating"] == 4


def test_upload_image(client, storage):
    ok = client.post("/api/products/upload-image", headers=ADMIN,
                     files={"image": ("photo.png", b"\x89PNG...", "image/png")})
    assert ok.status_code == 200
    assert ok.json()["imageUrl"].endswith(".png")
    assert storage.uploads[0][2] == "image/png"

    bad = client.post("/api/products/upload-image", headers=ADMIN,
                      files={"image": ("notes.txt", b"hello", "text/plain")})
    assert bad.status_code == 400
    assert bad.json()["message"].startswith("Invalid file type")


def test_profile_lifecycle(client, db, notifier):
    db["user_profile"].delete_one({"_id": "alice"})
    payload = {"id": "alice", "email": "alice@example.com", "first_name": "Alice"}

    mismatch = client.post("/api/users/profile", json=dict(payload, id="bob"), headers=ALICE)
    assert mismatch.status_code == 403
    assert mismatch.json() == {"message": "Unauthorized"}

    created = client.post("/api/users/profile", json=payload, headers=ALICE)
    assert created.status_code == 201
    assert created.json()["role"] == "customer"
    assert notifier.sent[0][0] == "welcome"

    duplicate = client.post("/api/users/profile", json=payload, headers=ALICE)
    assert duplicate.status_code == 400
    assert duplicate.json() == {"message": "Profile already exists"}

    updated = client.put("/api/users/profile", json={"first_name": "Alicia"}, headers=ALICE)
    assert updated.json()["first_name"] == "Alicia"
    assert client.get("/api/users/profile", headers=ALICE).json()["first_name"] == "Alicia"


def test_admin_lists_users(client):
    assert len(client.get("/api/users", headers=ADMIN).json()) == 3
    assert client.get("/api/users", headers=BOB).status_code == 403


def test_unexpected_errors_return_500(client):
    def broken_db():
        raise RuntimeError("boom")

    app.dependency_overrides[get_db] = broken_db
    res = TestClient(app, raise_server_exceptions=False).get("/api/categories")

    assert res.status_code == 500
    assert res.json() == {"message": "boom"}
