"""
Address store

Every operation is scoped to the owning user; another user's address is
reported as not found. At most one address per user has ``is_default``.
"""
from typing import Any, Dict, List

from pymongo import DESCENDING

from database import new_document, serialize_doc, transaction, utcnow
from errors import AddressInUse, NotFound
from schemas import AddressCreate, AddressUpdate


def _owned(db, address_id: int, user_id: str, session=None) -> Dict[str, Any]:
    address = db["address"].find_one({"_id": address_id, "user_id": user_id}, session=session)
    if not address:
        raise NotFound("Address")
    return address


def _unset_defaults(uow, user_id: str, keep_id=None) -> None:
    query = {"user_id": user_id, "is_default": True}
    if keep_id is not None:
        query["_id"] = {"$ne": keep_id}
    previous = [a["_id"] for a in uow.db["address"].find(query, {"_id": 1}, session=uow.session)]
    if not previous:
        return
    uow.db["address"].update_many(
        {"_id": {"$in": previous}}, {"$set": {"is_default": False}}, session=uow.session
    )
    uow.on_rollback(uow.db["address"].update_many, {"_id": {"$in": previous}}, {"$set": {"is_default": True}})


def list_addresses(db, user_id: str) -> List[Dict[str, Any]]:
    cursor = db["address"].find({"user_id": user_id}).sort(
        [("is_default", DESCENDING), ("created_at", DESCENDING), ("_id", DESCENDING)]
    )
    return [serialize_doc(a) for a in cursor]


def get_address(db, address_id: int, user_id: str) -> Dict[str, Any]:
    return serialize_doc(_owned(db, address_id, user_id))


def create_address(db, user_id: str, data: AddressCreate) -> Dict[str, Any]:
    doc = new_document(db, "address", dict(data.model_dump(), user_id=user_id))
    with transaction(db) as uow:
        if data.is_default:
            _unset_defaults(uow, user_id)
        uow.insert_one("address", doc)
    return serialize_doc(doc)


def update_address(db, address_id: int, user_id: str, data: AddressUpdate) -> Dict[str, Any]:
    address = _owned(db, address_id, user_id)
    changes = data.model_dump(exclude_unset=True)
    for required in ("address_line1", "city", "postal_code", "country", "is_default"):
        if changes.get(required) is None:
            changes.pop(required, None)
    changes["updated_at"] = utcnow()

    with transaction(db) as uow:
        if changes.get("is_default") and not address.get("is_default"):
            _unset_defaults(uow, user_id, keep_id=address_id)
        uow.db["address"].update_one({"_id": address_id}, {"$set": changes}, session=uow.session)
        uow.on_rollback(uow.db["address"].replace_one, {"_id": address_id}, address)
    return get_address(db, address_id, user_id)


def set_default(db, address_id: int, user_id: str) -> Dict[str, Any]:
    """Make one address the default; the swap is a single unit of work."""
    with transaction(db) as uow:
        address = _owned(db, address_id, user_id, session=uow.session)
        _unset_defaults(uow, user_id, keep_id=address_id)
        if not address.get("is_default"):
            uow.db["address"].update_one(
                {"_id": address_id},
                {"$set": {"is_default": True, "updated_at": utcnow()}},
                session=uow.session,
            )
            uow.on_rollback(uow.db["address"].replace_one, {"_id": address_id}, address)
    return get_address(db, address_id, user_id)


def delete_address(db, address_id: int, user_id: str) -> Dict[str, Any]:
    _owned(db, address_id, user_id)
    if db["order"].find_one({"shipping_address_id": address_id}):
        raise AddressInUse()
    db["address"].delete_one({"_id": address_id, "user_id": user_id})
    return {"message": "Address removed"}
