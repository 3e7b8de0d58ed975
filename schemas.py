"""
Database Schemas for TragicBricks

MongoDB collections are defined below using Pydantic models. Each class name is
converted to lowercase for the collection name (User -> "user").

We will use these collections:
- user: registered explorers (user, admin)
- location: haunted / abandoned places submitted by users
- review: one rating per user per location, unique on (location_id, user_id)
"""

import re
from typing import List, Literal, Optional

from pydantic import BaseModel, EmailStr, Field

Role = Literal["admin", "user"]

LOCATION_TYPES = ("abandoned", "haunted", "historical", "mysterious")
# Older records and the first browse page used "unknown".
LEGACY_TYPES = {"unknown": "mysterious"}

URL_PATTERN = re.compile(r"^https?://\S+$", re.IGNORECASE)


def normalize_type(value: str) -> str:
    t = (value or "").strip().lower()
    t = LEGACY_TYPES.get(t, t)
    if t not in LOCATION_TYPES:
        raise ValueError(f"type must be one of: {', '.join(LOCATION_TYPES)}")
    return t


def check_image_urls(urls: List[str]) -> List[str]:
    cleaned = []
    for url in urls:
        url = url.strip()
        if not URL_PATTERN.match(url):
            raise ValueError(f"Invalid image URL: {url}")
        cleaned.append(url)
    return cleaned


class User(BaseModel):
    username: str = Field(..., min_length=3, max_length=30)
    email: EmailStr
    password_hash: str = Field(..., description="BCrypt hash of password")
    role: Role = Field("user")
    profile_picture: Optional[str] = None


class Address(BaseModel):
    street: Optional[str] = Field(None, max_length=200)
    city: str = Field(..., min_length=1, max_length=100)
    state: str = Field(..., min_length=1, max_length=100)
    country: str = Field(..., min_length=1, max_length=100)


class Coordinates(BaseModel):
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)


class Location(BaseModel):
    name: str = Field(..., min_length=3, max_length=120)
    description: str = Field(..., min_length=20, max_length=5000)
    type: str = Field(..., description="One of LOCATION_TYPES")
    address: Address
    coordinates: Coordinates
    images: List[str] = Field(..., min_length=1)
    discovered_by: str = Field(..., description="Reference to user _id")
    average_rating: float = Field(0, ge=0, le=5)
    review_count: int = Field(0, ge=0)
    verified: bool = False


class Review(BaseModel):
    location_id: str = Field(...)
    user_id: str = Field(...)
    rating: int = Field(..., ge=1, le=5)
    comment: str = Field(..., min_length=10, max_length=2000)
    images: List[str] = Field(default_factory=list)
