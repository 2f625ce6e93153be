import logging
from typing import Any, Dict, List

from pymongo import DESCENDING
from pymongo.errors import DuplicateKeyError

from database import get_documents, serialize_doc, utcnow
from errors import Forbidden, NotFound, ProfileExists
from notifications import Notifier
from schemas import UserProfileCreate, UserProfileUpdate

logger = logging.getLogger(__name__)


def get_profile(db, user_id: str) -> Dict[str, Any]:
    profile = db["user_profile"].find_one({"_id": user_id})
    if not profile:
        raise NotFound("Profile")
    return serialize_doc(profile)


def create_profile(db, user_id: str, data: UserProfileCreate, notifier: Notifier) -> Dict[str, Any]:
    if data.id != user_id:
        raise Forbidden("Unauthorized")
    now = utcnow()
    doc = {
        "_id": user_id,
        "email": data.email,
        "first_name": data.first_name or "",
        "last_name": data.last_name or "",
        "role": "customer",
        "created_at": now,
        "updated_at": now,
    }
    try:
        db["user_profile"].insert_one(doc)
    except DuplicateKeyError:
        raise ProfileExists()

    profile = serialize_doc(doc)
    try:
        notifier.send_welcome(profile)
    except Exception:
        logger.exception("Error sending welcome email to %s", user_id)
    return profile


def update_profile(db, user_id: str, data: UserProfileUpdate) -> Dict[str, Any]:
    changes = {
        "first_name": data.first_name or "",
        "last_name": data.last_name or "",
        "updated_at": utcnow(),
    }
    result = db["user_profile"].update_one({"_id": user_id}, {"$set": changes})
    if result.matched_count == 0:
        raise NotFound("Profile")
    return get_profile(db, user_id)


def list_profiles(db, limit: int = 100) -> List[Dict[str, Any]]:
    profiles = get_documents(db, "user_profile", limit=limit, sort=[("created_at", DESCENDING)])
    return [serialize_doc(p) for p in profiles]


def get_role(db, user_id: str) -> str:
    profile = db["user_profile"].find_one({"_id": user_id}, {"role": 1})
    return profile.get("role", "customer") if profile else "customer"
