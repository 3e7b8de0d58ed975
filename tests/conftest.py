import os

os.environ["JWT_SECRET"] = "test-secret-key"
os.environ["DATABASE_URL"] = "mongodb://localhost:27017"
os.environ["DATABASE_NAME"] = "tragicbricks_test"
os.environ["CLOUDINARY_CLOUD_NAME"] = "demo"
os.environ["CLOUDINARY_API_KEY"] = "key"
os.environ["CLOUDINARY_API_SECRET"] = "secret"

import mongomock
import pymongo

# The app connects at import time, so the client class is swapped first.
pymongo.MongoClient = mongomock.MongoClient

import pytest
from fastapi.testclient import TestClient

import database
import main

PASSWORD = "Spooky@123"


@pytest.fixture(autouse=True)
def clean_db():
    for name in database.db.list_collection_names():
        database.db.drop_collection(name)
    database.ensure_indexes()
    yield


@pytest.fixture
def db():
    return database.db


@pytest.fixture
def client():
    return TestClient(main.app)


@pytest.fixture
def register(client):
    def _register(username="alice", email=None, password=PASSWORD):
        res = client.post("/auth/register", json={
            "username": username,
            "email": email or f"{username}@example.com",
            "password": password,
        })
        assert res.status_code == 201, res.text
        body = res.json()
        return body["token"], body["user"]
    return _register


def auth_header(token):
    return {"Authorization": f"Bearer {token}"}


def location_payload(**overrides):
    payload = {
        "name": "Old Mill",
        "description": "A crumbling stone mill by the river, empty since 1952.",
        "type": "abandoned",
        "address": {"street": "1 Mill Lane", "city": "Salem", "state": "MA", "country": "USA"},
        "coordinates": {"latitude": 42.52, "longitude": -70.89},
        "images": ["https://x/a.jpg"],
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def make_location(client):
    def _make(token, **overrides):
        res = client.post("/locations", json=location_payload(**overrides), headers=auth_header(token))
        assert res.status_code == 201, res.text
        return res.json()["location"]
    return _make
