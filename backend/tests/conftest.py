import mongomock
import pytest
from bson import ObjectId

from app import create_app

TEST_SECRET = "test-secret-key-that-is-long-enough-for-hs256"


@pytest.fixture
def db():
    return mongomock.MongoClient().get_database("blisscet_test")


@pytest.fixture
def app(db, tmp_path):
    return create_app(
        {
            "TESTING": True,
            "JWT_SECRET_KEY": TEST_SECRET,
            "BCRYPT_ROUNDS": 4,
            "UPLOAD_FOLDER": str(tmp_path / "uploads"),
        },
        db=db,
    )


@pytest.fixture
def client(app):
    return app.test_client()


def user_payload(**overrides):
    payload = {
        "username": "alice",
        "firstName": "Alice",
        "lastName": "Smith",
        "email": "a@x.com",
        "password": "Passw0rd",
    }
    payload.update(overrides)
    return payload


def bearer(token):
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def register(client):
    def _register(**overrides):
        response = client.post("/register", json=user_payload(**overrides))
        assert response.status_code == 201, response.get_json()
        return response.get_json()

    return _register


@pytest.fixture
def user_token(register):
    return register()["token"]


@pytest.fixture
def admin_account(client, db, register):
    created = register(username="root", email="root@x.com")
    db.users.update_one({"_id": ObjectId(created["_id"])}, {"$set": {"admin": True}})
    response = client.post(
        "/login", json={"email": "root@x.com", "password": "Passw0rd"}
    )
    assert response.status_code == 200
    return response.get_json()


@pytest.fixture
def admin_token(admin_account):
    return admin_account["token"]
