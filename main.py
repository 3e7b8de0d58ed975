import os
import logging
from contextlib import asynccontextmanager
from typing import Optional, List, Any, Dict

from fastapi import FastAPI, HTTPException, Depends, Query, UploadFile, File, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field, EmailStr, field_validator
from starlette.exceptions import HTTPException as StarletteHTTPException

import ledger
import relay
from auth import Identity, get_current_user, register_user, authenticate, get_profile, update_profile
from database import db, ensure_indexes
from schemas import Address, Coordinates, normalize_type, check_image_urls

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger("tragicbricks")

SEARCH_LIMIT = 20


@asynccontextmanager
async def lifespan(app: FastAPI):
    ensure_indexes()
    yield


# App and CORS
app = FastAPI(title="TragicBricks API", version="1.0.0", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",")],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Error envelope: every failure leaves as {"error": message}
@app.exception_handler(StarletteHTTPException)
async def http_error(request: Request, exc: StarletteHTTPException):
    return JSONResponse(status_code=exc.status_code, content={"error": exc.detail}, headers=getattr(exc, "headers", None))


@app.exception_handler(RequestValidationError)
async def validation_error(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    message = "Invalid request"
    if errors:
        first = errors[0]
        field = ".".join(str(p) for p in first.get("loc", ()) if p not in ("body", "query", "path"))
        message = f"{field}: {first.get('msg')}" if field else first.get("msg", message)
    return JSONResponse(status_code=400, content={"error": message})


@app.exception_handler(Exception)
async def unhandled_error(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


# Request/Response Models
class RegisterRequest(BaseModel):
    username: str = Field(..., min_length=3, max_length=30, pattern=r"^[A-Za-z0-9_.-]+$")
    email: EmailStr
    password: str


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class TokenResponse(BaseModel):
    token: str
    user: Dict[str, Any]


class UpdateProfileRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    username: Optional[str] = Field(None, min_length=3, max_length=30, pattern=r"^[A-Za-z0-9_.-]+$")
    email: Optional[EmailStr] = None
    profile_picture: Optional[str] = Field(None, alias="profilePicture")

    @field_validator("profile_picture")
    @classmethod
    def picture_url(cls, v):
        if v is None:
            return v
        return check_image_urls([v])[0]


class CreateLocationRequest(BaseModel):
    name: str = Field(..., min_length=3, max_length=120)
    description: str = Field(..., min_length=20, max_length=5000)
    type: str
    address: Address
    coordinates: Coordinates
    images: List[str] = Field(..., min_length=1)

    @field_validator("name", "description", mode="before")
    @classmethod
    def strip_text(cls, v):
        return v.strip() if isinstance(v, str) else v

    @field_validator("type")
    @classmethod
    def known_type(cls, v):
        return normalize_type(v)

    @field_validator("images")
    @classmethod
    def image_urls(cls, v):
        return check_image_urls(v)


class ReviewRequest(BaseModel):
    rating: int = Field(..., ge=1, le=5, strict=True)
    comment: str = Field(..., min_length=10, max_length=2000)
    images: List[str] = Field(default_factory=list)

    @field_validator("comment", mode="before")
    @classmethod
    def strip_comment(cls, v):
        return v.strip() if isinstance(v, str) else v

    @field_validator("images")
    @classmethod
    def image_urls(cls, v):
        return check_image_urls(v)


class UpdateReviewRequest(BaseModel):
    rating: Optional[int] = Field(None, ge=1, le=5, strict=True)
    comment: Optional[str] = Field(None, min_length=10, max_length=2000)
    images: Optional[List[str]] = None

    @field_validator("comment", mode="before")
    @classmethod
    def strip_comment(cls, v):
        return v.strip() if isinstance(v, str) else v

    @field_validator("images")
    @classmethod
    def image_urls(cls, v):
        return check_image_urls(v) if v is not None else v


# Auth Routes
@app.post("/auth/register", response_model=TokenResponse, status_code=201)
def register(payload: RegisterRequest):
    return register_user(payload.username, payload.email, payload.password)


@app.post("/auth/login", response_model=TokenResponse)
def login(payload: LoginRequest):
    return authenticate(payload.email, payload.password)


@app.get("/auth/me")
def me(current_user: Identity = Depends(get_current_user)):
    return {"user": get_profile(current_user)}


# Locations
@app.get("/locations")
def list_locations(
    type: Optional[str] = None,
    search: Optional[str] = None,
    query: Optional[str] = None,
    sort: Optional[str] = Query("recent"),
):
    return {"locations": ledger.list_locations(type=type, query=search or query, sort=sort)}


@app.post("/locations", status_code=201)
def create_location(payload: CreateLocationRequest, current_user: Identity = Depends(get_current_user)):
    location = ledger.create_location(current_user, payload)
    return {"message": "Location created successfully", "location": location}


@app.get("/locations/{location_id}")
def get_location(location_id: str):
    return {"location": ledger.get_location(location_id)}


@app.post("/locations/{location_id}", deprecated=True)
def add_review_legacy(location_id: str, payload: ReviewRequest, current_user: Identity = Depends(get_current_user)):
    review = ledger.add_review(current_user, location_id, payload)
    return {"message": "Review added successfully", "review": review}


# Reviews
@app.get("/locations/{location_id}/reviews")
def list_reviews(location_id: str):
    return {"reviews": ledger.list_reviews(location_id)}


@app.post("/locations/{location_id}/reviews", status_code=201)
def add_review(location_id: str, payload: ReviewRequest, current_user: Identity = Depends(get_current_user)):
    return {"review": ledger.add_review(current_user, location_id, payload)}


@app.put("/locations/{location_id}/reviews/{review_id}")
def update_review(location_id: str, review_id: str, payload: UpdateReviewRequest,
                  current_user: Identity = Depends(get_current_user)):
    review = ledger.update_review(current_user, location_id, review_id, payload)
    return {"message": "Review updated successfully", "review": review}


@app.delete("/locations/{location_id}/reviews/{review_id}")
def delete_review(location_id: str, review_id: str, current_user: Identity = Depends(get_current_user)):
    ledger.delete_review(current_user, location_id, review_id)
    return {"message": "Review deleted successfully"}


# Current user
@app.get("/user/locations")
def my_locations(type: Optional[str] = None, current_user: Identity = Depends(get_current_user)):
    return {"locations": ledger.list_user_locations(current_user, type=type)}


@app.get("/user/profile")
def my_profile(current_user: Identity = Depends(get_current_user)):
    return {"user": get_profile(current_user)}


@app.put("/user/profile")
def edit_profile(payload: UpdateProfileRequest, current_user: Identity = Depends(get_current_user)):
    user = update_profile(current_user, username=payload.username, email=payload.email,
                          profile_picture=payload.profile_picture)
    return {"message": "Profile updated successfully", "user": user}


@app.get("/user/reviews")
def my_reviews(current_user: Identity = Depends(get_current_user)):
    return {"reviews": ledger.list_user_reviews(current_user)}


# Uploads
@app.post("/upload")
async def upload(file: Optional[UploadFile] = File(None), current_user: Identity = Depends(get_current_user)):
    if file is None:
        raise HTTPException(status_code=400, detail="No file provided")
    relay.check_content_type(file.content_type)
    # one byte past the limit is enough to tell an oversized body apart
    data = await file.read(relay.MAX_UPLOAD_BYTES + 1)
    return await run_in_threadpool(relay.upload_image, data, file.content_type)


# Search
@app.get("/search")
def search(q: Optional[str] = None, type: Optional[str] = None, sort: Optional[str] = Query("recent")):
    if not (q and q.strip()) and not type:
        raise HTTPException(status_code=400, detail="Search query or type is required")
    locations = ledger.list_locations(type=type, query=q, sort=sort, limit=SEARCH_LIMIT)
    return {"locations": locations, "total": len(locations)}


# Utility endpoints
@app.get("/")
def root():
    return {"message": "TragicBricks API running"}


@app.get("/test")
def test_database():
    try:
        if db is None:
            return {"backend": "ok", "database": "missing"}
        db.list_collection_names()
        return {"backend": "ok", "database": "ok"}
    except Exception:
        logger.exception("Database check failed")
        return {"backend": "ok", "database": "error"}


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
