import asyncio
import os
import subprocess
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

from bson import ObjectId
from jose import jwt

import auth
from conftest import PASSWORD, auth_header


def test_register_returns_token_and_public_profile(client, register):
    token, user = register("alice")
    assert token
    assert user["username"] == "alice"
    assert user["email"] == "alice@example.com"
    assert user["role"] == "user"
    assert "password" not in user and "password_hash" not in user


def test_register_duplicate_email_and_username(client, register):
    register("alice")
    res = client.post("/auth/register", json={"username": "alice2", "email": "alice@example.com", "password": PASSWORD})
    assert res.status_code == 409
    assert res.json() == {"error": "Email already registered"}
    res = client.post("/auth/register", json={"username": "alice", "email": "other@example.com", "password": PASSWORD})
    assert res.status_code == 409


def test_register_rejects_weak_password(client):
    res = client.post("/auth/register", json={"username": "bob", "email": "bob@example.com", "password": "short"})
    assert res.status_code == 400
    assert "Password" in res.json()["error"]


def test_register_rejects_bad_email(client):
    res = client.post("/auth/register", json={"username": "bob", "email": "not-an-email", "password": PASSWORD})
    assert res.status_code == 400
    assert "error" in res.json()


def test_login(client, register):
    register("alice")
    res = client.post("/auth/login", json={"email": "alice@example.com", "password": PASSWORD})
    assert res.status_code == 200
    body = res.json()
    assert body["user"]["username"] == "alice"
    me = client.get("/auth/me", headers=auth_header(body["token"]))
    assert me.status_code == 200
    assert me.json()["user"]["email"] == "alice@example.com"


def test_login_wrong_password_or_unknown_email(client, register):
    register("alice")
    wrong = client.post("/auth/login", json={"email": "alice@example.com", "password": "Wrong@1234"})
    unknown = client.post("/auth/login", json={"email": "nobody@example.com", "password": PASSWORD})
    assert wrong.status_code == unknown.status_code == 401
    assert wrong.json() == unknown.json() == {"error": "Invalid credentials"}


def test_token_carries_identity_claims(register):
    token, user = register("alice")
    payload = jwt.decode(token, auth.SECRET_KEY, algorithms=[auth.ALGORITHM])
    assert payload["sub"] == user["id"]
    assert payload["username"] == "alice"
    assert payload["email"] == "alice@example.com"
    assert payload["role"] == "user"
    expected = datetime.now(timezone.utc).timestamp() + 7 * 86400
    assert abs(payload["exp"] - expected) < 60


def test_extract_token_is_case_sensitive():
    assert auth.extract_token("Bearer abc") == "abc"
    assert auth.extract_token("bearer abc") is None
    assert auth.extract_token("Token abc") is None
    assert auth.extract_token("Bearer ") is None
    assert auth.extract_token(None) is None


def test_missing_and_malformed_headers_rejected_uniformly(client, register):
    token, _ = register("alice")
    responses = [
        client.get("/auth/me"),
        client.get("/auth/me", headers={"Authorization": f"bearer {token}"}),
        client.get("/auth/me", headers={"Authorization": token}),
        client.get("/auth/me", headers={"Authorization": "Bearer not.a.token"}),
    ]
    for res in responses:
        assert res.status_code == 401
        assert res.json() == {"error": "Authentication required"}


def test_expired_token_rejected(client, db, register):
    _, user = register("alice")
    doc = db["user"].find_one({"_id": ObjectId(user["id"])})
    expired = auth.create_access_token(doc, expires_delta=timedelta(seconds=-30))
    res = client.get("/auth/me", headers=auth_header(expired))
    assert res.status_code == 401
    assert res.json() == {"error": "Authentication required"}


def test_token_signed_with_other_key_rejected(client, register):
    token, _ = register("alice")
    claims = jwt.get_unverified_claims(token)
    forged = jwt.encode(claims, "some-other-key", algorithm="HS256")
    res = client.get("/auth/me", headers=auth_header(forged))
    assert res.status_code == 401
    assert res.json() == {"error": "Authentication required"}


def test_token_missing_claims_rejected(client, register):
    token, user = register("alice")
    partial = jwt.encode({"sub": user["id"], "email": user["email"]}, auth.SECRET_KEY, algorithm=auth.ALGORITHM)
    res = client.get("/auth/me", headers=auth_header(partial))
    assert res.status_code == 401


def test_deleted_user_token_rejected_like_bad_token(client, db, register):
    token, user = register("alice")
    db["user"].delete_one({"_id": ObjectId(user["id"])})
    res = client.get("/auth/me", headers=auth_header(token))
    assert res.status_code == 401
    assert res.json() == {"error": "Authentication required"}


def test_identity_reflects_current_store(db, register):
    token, user = register("alice")
    db["user"].update_one({"_id": ObjectId(user["id"])}, {"$set": {"role": "admin"}})
    identity = auth.resolve_identity(f"Bearer {token}")
    assert identity.role == "admin"
    assert identity.is_admin


def test_import_without_secret_refuses_to_start():
    root = Path(__file__).resolve().parent.parent
    env = {k: v for k, v in os.environ.items() if k not in ("JWT_SECRET", "DATABASE_URL", "DATABASE_NAME")}
    proc = subprocess.run([sys.executable, "-c", "import auth"], cwd=root, env=env, capture_output=True, text=True)
    assert proc.returncode != 0
    assert "JWT_SECRET" in proc.stderr


def test_user_lookup_runs_off_event_loop(monkeypatch, client, register):
    token, _ = register("alice")
    lookups = []
    real_collection = auth.collection

    def recording_collection(name):
        try:
            asyncio.get_running_loop()
            lookups.append((name, "event loop"))
        except RuntimeError:
            lookups.append((name, "worker thread"))
        return real_collection(name)

    monkeypatch.setattr(auth, "collection", recording_collection)
    res = client.get("/auth/me", headers=auth_header(token))
    assert res.status_code == 200
    assert lookups
    assert all(where == "worker thread" for _, where in lookups)


def test_user_record_without_identity_fields_rejected(client, db):
    user_id = db["user"].insert_one({"email": "ghost@example.com", "role": "admin"}).inserted_id
    token = jwt.encode(
        {"sub": str(user_id), "email": "ghost@example.com", "username": "ghost", "role": "admin"},
        auth.SECRET_KEY, algorithm=auth.ALGORITHM,
    )
    res = client.get("/auth/me", headers=auth_header(token))
    assert res.status_code == 401
    assert res.json() == {"error": "Authentication required"}
