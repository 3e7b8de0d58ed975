"""
Locations and their reviews.

Reviews live in their own collection and reference the location and the author
by id. A unique index on (location_id, user_id) keeps one review per user per
location even when two submissions race. Every review mutation finishes with
recompute_aggregate(), which rebuilds average_rating and review_count from a
fresh read of the review collection.
"""

import re
import math
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from bson import ObjectId
from pymongo.errors import DuplicateKeyError

from auth import Identity
from database import collection, create_document, get_documents
from errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from schemas import Location as LocationSchema, Review as ReviewSchema, normalize_type

logger = logging.getLogger(__name__)

SORTS = {
    "recent": [("created_at", -1), ("_id", -1)],
    "oldest": [("created_at", 1), ("_id", 1)],
    "rating": [("average_rating", -1), ("_id", -1)],
    "reviews": [("review_count", -1), ("_id", -1)],
}
SEARCH_FIELDS = ("name", "description", "address.street", "address.city", "address.state", "address.country")


def to_obj_id(id_str: str) -> ObjectId:
    try:
        return ObjectId(id_str)
    except Exception:
        raise ValidationError("Invalid id")


def round_half_up(value: float, digits: int = 1) -> float:
    factor = 10 ** digits
    return math.floor(value * factor + 0.5) / factor


# Serializers

def user_ref(doc: Optional[Dict[str, Any]], user_id: str) -> Dict[str, Any]:
    if not doc:
        return {"id": user_id, "username": None, "profilePicture": None}
    return {"id": str(doc["_id"]), "username": doc.get("username"), "profilePicture": doc.get("profile_picture")}


def load_users(user_ids) -> Dict[str, Dict[str, Any]]:
    oids = [ObjectId(u) for u in set(user_ids) if ObjectId.is_valid(u)]
    if not oids:
        return {}
    return {str(u["_id"]): u for u in collection("user").find({"_id": {"$in": oids}})}


def serialize_review(doc: Dict[str, Any], users: Dict[str, Dict[str, Any]]) -> Dict[str, Any]:
    return {
        "id": str(doc["_id"]),
        "location": doc["location_id"],
        "user": user_ref(users.get(doc["user_id"]), doc["user_id"]),
        "rating": doc["rating"],
        "comment": doc["comment"],
        "images": doc.get("images", []),
        "createdAt": doc.get("created_at"),
        "updatedAt": doc.get("updated_at"),
    }


def serialize_location(doc: Dict[str, Any], users: Dict[str, Dict[str, Any]]) -> Dict[str, Any]:
    return {
        "id": str(doc["_id"]),
        "name": doc["name"],
        "description": doc["description"],
        "type": doc["type"],
        "address": doc["address"],
        "coordinates": doc["coordinates"],
        "images": doc.get("images", []),
        "discoveredBy": user_ref(users.get(doc["discovered_by"]), doc["discovered_by"]),
        "averageRating": doc.get("average_rating", 0),
        "reviewCount": doc.get("review_count", 0),
        "verified": doc.get("verified", False),
        "createdAt": doc.get("created_at"),
    }


def serialize_locations(docs: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    users = load_users(d["discovered_by"] for d in docs)
    return [serialize_location(d, users) for d in docs]


# Locations

def find_location(location_id: str) -> Dict[str, Any]:
    loc = collection("location").find_one({"_id": to_obj_id(location_id)})
    if not loc:
        raise NotFoundError("Location not found")
    return loc


def create_location(identity: Identity, payload) -> Dict[str, Any]:
    # Owner always comes from the credential, never from the body.
    location = LocationSchema(
        name=payload.name,
        description=payload.description,
        type=payload.type,
        address=payload.address,
        coordinates=payload.coordinates,
        images=payload.images,
        discovered_by=identity.id,
    )
    location_id = create_document("location", location)
    logger.info("Location %s created by %s", location_id, identity.username)
    return serialize_locations([find_location(location_id)])[0]


def build_filter(type: Optional[str] = None, query: Optional[str] = None) -> Dict[str, Any]:
    filt: Dict[str, Any] = {}
    if type:
        try:
            filt["type"] = normalize_type(type)
        except ValueError as e:
            raise ValidationError(str(e))
    if query and query.strip():
        pattern = re.escape(query.strip())
        filt["$or"] = [{field: {"$regex": pattern, "$options": "i"}} for field in SEARCH_FIELDS]
    return filt


def list_locations(type: Optional[str] = None, query: Optional[str] = None, sort: Optional[str] = None,
                   limit: Optional[int] = None, discovered_by: Optional[str] = None) -> List[Dict[str, Any]]:
    filt = build_filter(type, query)
    if discovered_by:
        filt["discovered_by"] = discovered_by
    sort_key = sort or "recent"
    if sort_key not in SORTS:
        raise ValidationError(f"sort must be one of: {', '.join(SORTS)}")
    cursor = collection("location").find(filt).sort(SORTS[sort_key])
    if limit:
        cursor = cursor.limit(limit)
    return serialize_locations(list(cursor))


def reviews_for(location_id: str) -> List[Dict[str, Any]]:
    return list(collection("review").find({"location_id": location_id}).sort([("created_at", -1), ("_id", -1)]))


def get_location(location_id: str) -> Dict[str, Any]:
    loc = find_location(location_id)
    reviews = reviews_for(str(loc["_id"]))
    users = load_users([loc["discovered_by"]] + [r["user_id"] for r in reviews])
    result = serialize_location(loc, users)
    result["reviews"] = [serialize_review(r, users) for r in reviews]
    return result


def list_user_locations(identity: Identity, type: Optional[str] = None) -> List[Dict[str, Any]]:
    return list_locations(type=type, discovered_by=identity.id)


# Reviews

def recompute_aggregate(location_id: str) -> float:
    """Rebuild average_rating/review_count for a location from its reviews."""
    agg = list(collection("review").aggregate([
        {"$match": {"location_id": location_id}},
        {"$group": {"_id": "$location_id", "total": {"$sum": "$rating"}, "count": {"$sum": 1}}},
    ]))
    count = agg[0]["count"] if agg else 0
    average = round_half_up(agg[0]["total"] / count) if count else 0
    collection("location").update_one(
        {"_id": ObjectId(location_id)},
        {"$set": {"average_rating": average, "review_count": count, "updated_at": datetime.now(timezone.utc)}},
    )
    return average


def list_reviews(location_id: str) -> List[Dict[str, Any]]:
    loc = find_location(location_id)
    reviews = reviews_for(str(loc["_id"]))
    users = load_users(r["user_id"] for r in reviews)
    return [serialize_review(r, users) for r in reviews]


def _review_out(review_id) -> Dict[str, Any]:
    doc = collection("review").find_one({"_id": review_id})
    return serialize_review(doc, load_users([doc["user_id"]]))


def add_review(identity: Identity, location_id: str, payload) -> Dict[str, Any]:
    loc = find_location(location_id)
    lid = str(loc["_id"])
    review = ReviewSchema(
        location_id=lid,
        user_id=identity.id,
        rating=payload.rating,
        comment=payload.comment,
        images=payload.images,
    )
    try:
        review_id = create_document("review", review)
    except DuplicateKeyError:
        raise ConflictError("You have already reviewed this location")
    try:
        recompute_aggregate(lid)
    except Exception:
        logger.warning("Rolling back review %s on location %s", review_id, lid)
        collection("review").delete_one({"_id": ObjectId(review_id)})
        raise
    logger.info("Review %s added to location %s by %s", review_id, lid, identity.username)
    return _review_out(ObjectId(review_id))


def find_review(location_id: str, review_id: str) -> Dict[str, Any]:
    loc = find_location(location_id)
    review = collection("review").find_one({"_id": to_obj_id(review_id), "location_id": str(loc["_id"])})
    if not review:
        raise NotFoundError("Review not found")
    return review


def update_review(identity: Identity, location_id: str, review_id: str, payload) -> Dict[str, Any]:
    review = find_review(location_id, review_id)
    if review["user_id"] != identity.id:
        raise AuthorizationError("Not authorized to update this review")
    changes: Dict[str, Any] = {}
    if payload.rating is not None:
        changes["rating"] = payload.rating
    if payload.comment is not None:
        changes["comment"] = payload.comment
    if payload.images is not None:
        changes["images"] = payload.images
    if not changes:
        return _review_out(review["_id"])
    previous = {k: review.get(k) for k in list(changes) + ["updated_at"]}
    changes["updated_at"] = datetime.now(timezone.utc)
    reviews = collection("review")
    reviews.update_one({"_id": review["_id"]}, {"$set": changes})
    try:
        recompute_aggregate(review["location_id"])
    except Exception:
        logger.warning("Restoring review %s after failed aggregate update", review["_id"])
        reviews.update_one({"_id": review["_id"]}, {"$set": previous})
        raise
    logger.info("Review %s updated by %s", review["_id"], identity.username)
    return _review_out(review["_id"])


def delete_review(identity: Identity, location_id: str, review_id: str) -> None:
    review = find_review(location_id, review_id)
    if review["user_id"] != identity.id and not identity.is_admin:
        raise AuthorizationError("Not authorized to delete this review")
    reviews = collection("review")
    reviews.delete_one({"_id": review["_id"]})
    try:
        recompute_aggregate(review["location_id"])
    except Exception:
        logger.warning("Re-inserting review %s after failed aggregate update", review["_id"])
        reviews.insert_one(review)
        raise
    logger.info("Review %s deleted by %s", review["_id"], identity.username)


def list_user_reviews(identity: Identity) -> List[Dict[str, Any]]:
    reviews = list(collection("review").find({"user_id": identity.id}).sort([("created_at", -1), ("_id", -1)]))
    loc_ids = list({ObjectId(r["location_id"]) for r in reviews})
    names = {str(l["_id"]): l["name"] for l in get_documents("location", {"_id": {"$in": loc_ids}})} if loc_ids else {}
    users = load_users([identity.id])
    result = []
    for r in reviews:
        item = serialize_review(r, users)
        item["locationId"] = r["location_id"]
        item["locationName"] = names.get(r["location_id"])
        result.append(item)
    return result
