import os
import re
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from bson import ObjectId
from bson.errors import InvalidId
from fastapi import Header
from jose import jwt, JWTError
from passlib.context import CryptContext
from pydantic import BaseModel
from pymongo.errors import DuplicateKeyError

from database import collection
from errors import AuthenticationError, ConflictError, NotFoundError, ValidationError
from schemas import User as UserSchema

logger = logging.getLogger(__name__)

# Auth setup
SECRET_KEY = os.getenv("JWT_SECRET")
if not SECRET_KEY:
    raise RuntimeError("JWT_SECRET environment variable is not set; refusing to start")
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_DAYS = 7
BEARER_PREFIX = "Bearer "

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


class Identity(BaseModel):
    """Authenticated caller, handed explicitly to every operation that needs one."""
    id: str
    username: str
    email: str
    role: str

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def public_user(doc: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": str(doc["_id"]),
        "username": doc.get("username"),
        "email": doc.get("email"),
        "role": doc.get("role", "user"),
        "profilePicture": doc.get("profile_picture"),
        "createdAt": doc.get("created_at"),
    }


def verify_password_policy(password: str) -> None:
    # 8-64 chars, at least one uppercase and one special char
    if not (8 <= len(password) <= 64):
        raise ValidationError("Password must be 8-64 characters long")
    if not re.search(r"[A-Z]", password):
        raise ValidationError("Password must include at least one uppercase letter")
    if not re.search(r"[^A-Za-z0-9]", password):
        raise ValidationError("Password must include at least one special character")


def hash_password(password: str) -> str:
    verify_password_policy(password)
    return pwd_context.hash(password)


def verify_password(password: str, hashed: str) -> bool:
    if not hashed:
        return False
    return pwd_context.verify(password, hashed)


def create_access_token(user: Dict[str, Any], expires_delta: Optional[timedelta] = None) -> str:
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(days=ACCESS_TOKEN_EXPIRE_DAYS))
    to_encode = {
        "sub": str(user["_id"]),
        "email": user["email"],
        "username": user["username"],
        "role": user.get("role", "user"),
        "exp": expire,
    }
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def extract_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization or not authorization.startswith(BEARER_PREFIX):
        return None
    token = authorization[len(BEARER_PREFIX):].strip()
    return token or None


def decode_token(token: str) -> Optional[Dict[str, Any]]:
    """Payload of a live, untampered token carrying a full identity, else None."""
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError:
        return None
    for claim in ("sub", "email", "username", "role"):
        if not isinstance(payload.get(claim), str):
            return None
    return payload


def resolve_identity(authorization: Optional[str]) -> Identity:
    token = extract_token(authorization)
    if token is None:
        raise AuthenticationError()
    payload = decode_token(token)
    if payload is None:
        raise AuthenticationError()
    try:
        user_id = ObjectId(payload["sub"])
    except (InvalidId, TypeError):
        raise AuthenticationError()
    user = collection("user").find_one({"_id": user_id})
    if not user or not user.get("username") or not user.get("email"):
        raise AuthenticationError()
    return Identity(id=str(user["_id"]), username=user["username"], email=user["email"], role=user.get("role", "user"))


def get_current_user(authorization: Optional[str] = Header(None)) -> Identity:
    return resolve_identity(authorization)


# Account operations

def register_user(username: str, email: str, password: str) -> Dict[str, Any]:
    users = collection("user")
    email = email.lower()
    if users.find_one({"email": email}):
        raise ConflictError("Email already registered")
    if users.find_one({"username": username}):
        raise ConflictError("Username already taken")
    user_doc = UserSchema(
        username=username,
        email=email,
        password_hash=hash_password(password),
        role="user",
    ).model_dump()
    now = datetime.now(timezone.utc)
    user_doc["created_at"] = now
    user_doc["updated_at"] = now
    try:
        res = users.insert_one(user_doc)
    except DuplicateKeyError:
        raise ConflictError("Email or username already registered")
    user_doc["_id"] = res.inserted_id
    logger.info("Registered user %s", username)
    return {"token": create_access_token(user_doc), "user": public_user(user_doc)}


def authenticate(email: str, password: str) -> Dict[str, Any]:
    user = collection("user").find_one({"email": email.lower()})
    if not user or not verify_password(password, user.get("password_hash", "")):
        logger.info("Failed login for %s", email)
        raise AuthenticationError("Invalid credentials")
    return {"token": create_access_token(user), "user": public_user(user)}


def get_profile(identity: Identity) -> Dict[str, Any]:
    user = collection("user").find_one({"_id": ObjectId(identity.id)})
    if not user:
        raise NotFoundError("User not found")
    return public_user(user)


def update_profile(identity: Identity, username: Optional[str] = None, email: Optional[str] = None,
                   profile_picture: Optional[str] = None) -> Dict[str, Any]:
    users = collection("user")
    user = users.find_one({"_id": ObjectId(identity.id)})
    if not user:
        raise NotFoundError("User not found")
    changes: Dict[str, Any] = {}
    if username and username != user.get("username"):
        if users.find_one({"username": username, "_id": {"$ne": user["_id"]}}):
            raise ConflictError("Username already taken")
        changes["username"] = username
    if email and email.lower() != user.get("email"):
        email = email.lower()
        if users.find_one({"email": email, "_id": {"$ne": user["_id"]}}):
            raise ConflictError("Email already registered")
        changes["email"] = email
    if profile_picture:
        changes["profile_picture"] = profile_picture
    if changes:
        changes["updated_at"] = datetime.now(timezone.utc)
        try:
            users.update_one({"_id": user["_id"]}, {"$set": changes})
        except DuplicateKeyError:
            raise ConflictError("Email or username already registered")
        user.update(changes)
    return public_user(user)
