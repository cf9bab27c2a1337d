import io
from urllib.parse import urlparse

import pytest
from bson import ObjectId

from conftest import bearer, user_payload

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 64


@pytest.mark.parametrize(
    "method, path, payload",
    [
        ("get", "/dashboard/admin", None),
        ("post", "/dashboard/admin", {"username": "x"}),
        ("patch", "/dashboard/admin/000000000000000000000000", {"admin": True}),
        ("delete", "/dashboard/admin/000000000000000000000000", None),
        ("get", "/dashboard/users", None),
        ("get", "/dashboard/products", None),
        ("post", "/dashboard/products", {"name": "Shirt", "category": "Clothes", "price": 20}),
        ("patch", "/dashboard/products/000000000000000000000000", {"price": "bad"}),
        ("delete", "/dashboard/products/000000000000000000000000", None),
    ],
)
def test_non_admin_is_forbidden(client, user_token, method, path, payload):
    response = getattr(client, method)(path, json=payload, headers=bearer(user_token))

    assert response.status_code == 403
    assert response.get_json()["message"] == "Only admins are allowed!"


def test_dashboard_requires_token(client):
    assert client.get("/dashboard/admin").status_code == 401


def test_list_admins_filters_and_strips_password(client, register, admin_token):
    register()

    response = client.get("/dashboard/admin", headers=bearer(admin_token))

    assert response.status_code == 200
    admins = response.get_json()
    assert [admin["email"] for admin in admins] == ["root@x.com"]
    assert all("password" not in admin for admin in admins)


def test_create_admin_forces_flag(client, db, admin_token):
    response = client.post(
        "/dashboard/admin",
        json=user_payload(username="carol", email="c@x.com"),
        headers=bearer(admin_token),
    )

    assert response.status_code == 201
    assert response.get_json()["admin"] is True
    assert db.users.find_one({"email": "c@x.com"})["admin"] is True


def test_create_admin_rejects_existing_email(client, admin_token):
    response = client.post(
        "/dashboard/admin",
        json=user_payload(username="other", email="root@x.com"),
        headers=bearer(admin_token),
    )

    assert response.status_code == 400


def test_promote_and_demote(client, db, register, admin_token):
    created = register()
    path = f"/dashboard/admin/{created['_id']}"

    promoted = client.patch(path, json={"admin": True}, headers=bearer(admin_token))
    assert promoted.status_code == 200
    assert promoted.get_json()["admin"] is True
    assert "password" not in promoted.get_json()

    demoted = client.patch(path, json={"admin": False}, headers=bearer(admin_token))
    assert demoted.get_json()["admin"] is False
    assert db.users.find_one({"_id": ObjectId(created["_id"])})["admin"] is False


@pytest.mark.parametrize("value", ["true", 1, None])
def test_promote_requires_strict_boolean(client, register, admin_token, value):
    created = register()

    response = client.patch(
        f"/dashboard/admin/{created['_id']}", json={"admin": value}, headers=bearer(admin_token)
    )

    assert response.status_code == 400


def test_promote_unknown_user(client, admin_token):
    response = client.patch(
        f"/dashboard/admin/{ObjectId()}", json={"admin": True}, headers=bearer(admin_token)
    )

    assert response.status_code == 404


def test_invalid_identifier(client, admin_token):
    response = client.delete("/dashboard/admin/not-an-id", headers=bearer(admin_token))

    assert response.status_code == 400


def test_delete_account(client, db, register, admin_token):
    created = register()

    response = client.delete(f"/dashboard/users/{created['_id']}", headers=bearer(admin_token))

    assert response.status_code == 200
    assert db.users.find_one({"_id": ObjectId(created["_id"])}) is None
    assert client.delete(
        f"/dashboard/admin/{created['_id']}", headers=bearer(admin_token)
    ).status_code == 404


def test_list_users(client, register, admin_token):
    register()

    users = client.get("/dashboard/users", headers=bearer(admin_token)).get_json()

    assert sorted(user["email"] for user in users) == ["a@x.com", "root@x.com"]


def test_product_lifecycle(client, admin_token):
    headers = bearer(admin_token)

    created = client.post(
        "/dashboard/products",
        json={"name": "Shirt", "category": "Clothes", "price": 20},
        headers=headers,
    )
    assert created.status_code == 201
    product = created.get_json()
    assert product["count"] == 1
    assert client.get("/products").get_json() == [product]

    updated = client.patch(
        f"/dashboard/products/{product['_id']}", json={"price": 25, "count": 3}, headers=headers
    )
    assert updated.status_code == 200
    assert updated.get_json()["price"] == 25
    assert updated.get_json()["count"] == 3
    assert updated.get_json()["name"] == "Shirt"

    deleted = client.delete(f"/dashboard/products/{product['_id']}", headers=headers)
    assert deleted.get_json() == {"message": "Product has been deleted successfully"}
    assert client.get("/products").get_json() == []


def test_product_edits_do_not_touch_cart_snapshots(client, admin_token, user_token):
    product = client.post(
        "/dashboard/products",
        json={"name": "Shirt", "category": "Clothes", "price": 20},
        headers=bearer(admin_token),
    ).get_json()
    client.post(
        "/products",
        json={"name": "Shirt", "category": "Clothes", "price": 20, "productImage": {"url": "u1"}},
        headers=bearer(user_token),
    )

    client.patch(
        f"/dashboard/products/{product['_id']}", json={"price": 99}, headers=bearer(admin_token)
    )
    client.delete(f"/dashboard/products/{product['_id']}", headers=bearer(admin_token))

    cart = client.get("/cart", headers=bearer(user_token)).get_json()
    assert cart[0]["price"] == 20


def test_create_product_validates(client, admin_token):
    response = client.post(
        "/dashboard/products", json={"name": "Shirt"}, headers=bearer(admin_token)
    )

    assert response.status_code == 400


def test_missing_product(client, admin_token):
    headers = bearer(admin_token)
    missing = ObjectId()

    assert client.patch(
        f"/dashboard/products/{missing}", json={"price": 1}, headers=headers
    ).status_code == 404
    assert client.delete(f"/dashboard/products/{missing}", headers=headers).status_code == 404


def test_product_image_upload(client, admin_token):
    response = client.post(
        "/dashboard/products",
        data={
            "name": "Shirt",
            "category": "Clothes",
            "price": "20",
            "productImage": (io.BytesIO(PNG_BYTES), "shirt.png"),
        },
        content_type="multipart/form-data",
        headers=bearer(admin_token),
    )

    assert response.status_code == 201
    image = response.get_json()["productImage"]
    assert image["public_id"].startswith("products/")
    assert image["public_id"].endswith(".png")

    served = client.get(urlparse(image["url"]).path)
    assert served.status_code == 200
    assert served.data == PNG_BYTES


def test_product_image_rejects_unsupported_type(client, admin_token):
    response = client.post(
        "/dashboard/products",
        data={
            "name": "Shirt",
            "category": "Clothes",
            "price": "20",
            "productImage": (io.BytesIO(b"GIF89a"), "shirt.gif"),
        },
        content_type="multipart/form-data",
        headers=bearer(admin_token),
    )

    assert response.status_code == 400
    assert response.get_json()["message"] == "Only jpg, png, svg files are supported"
