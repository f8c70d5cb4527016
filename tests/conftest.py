import os

os.environ.setdefault("JWT_SECRET", "test-secret")

import mongomock
import pytest
from fastapi.testclient import TestClient

import main
from database import create_document, ensure_indexes
from schemas import User as UserSchema


@pytest.fixture
def db():
    database = mongomock.MongoClient()["product_testing_test"]
    ensure_indexes(database)
    return database


@pytest.fixture
def client(db):
    main.app.dependency_overrides[main.get_db] = lambda: db
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()


@pytest.fixture
def make_user(client, db):
    """Register a user through the API (Admins are inserted directly) and return id, token and headers."""
    counter = {"n": 0}

    def _make(role="Tester", **profile):
        counter["n"] += 1
        email = f"{role.lower()}{counter['n']}@example.com"
        if role == "Admin":
            doc = create_document(db, "user", UserSchema(
                name="Admin", email=email, password_hash=main.hash_password("secret1"), role="Admin",
            ))
            user_id, token = str(doc["_id"]), main.create_access_token(doc)
        else:
            res = client.post("/users/register", json={
                "name": f"{role} {counter['n']}", "email": email, "password": "secret1", "role": role,
            })
            assert res.status_code == 201, res.text
            user_id, token = res.json()["user"]["id"], res.json()["token"]
        if profile:
            client.put("/users/profile", json=profile, headers={"Authorization": f"Bearer {token}"})
        return {"id": user_id, "email": email, "token": token, "headers": {"Authorization": f"Bearer {token}"}}

    return _make


@pytest.fixture
def make_product(client):
    def _make(brand, **overrides):
        body = {
            "title": "Cold Brew Kit",
            "description": "Slow-steeped coffee at home",
            "category": "Beverage",
            "link": "https://brew.example.com/try",
            "price": 499,
            "inventory": 3,
        }
        body.update(overrides)
        res = client.post("/products", json=body, headers=brand["headers"])
        assert res.status_code == 201, res.text
        return res.json()["data"]

    return _make
