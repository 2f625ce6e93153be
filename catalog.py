"""
Catalog store

Products, categories and product reviews. Listing and detail reads go through
the product cache; every product write invalidates it.
"""
import logging
import math
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union

from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError
from slugify import slugify

from cache import ProductCache, product_cache
from database import create_document, get_documents, new_document, serialize_doc, to_cents, utcnow
from errors import CategoryInUse, DuplicateSlug, NotFound, ValidationFailed
from schemas import CategoryCreate, CategoryUpdate, ProductCreate, ProductFilter, ProductUpdate, ReviewCreate

logger = logging.getLogger(__name__)

LOW_STOCK_THRESHOLD = 20

STANDARD_CATEGORIES = [
    ("Electronics", "electronics"),
    ("Clothing", "clothing"),
    ("Home & Kitchen", "home-kitchen"),
    ("Books", "books"),
    ("Toys", "toys"),
]

SORTS = {
    "newest": [("created_at", DESCENDING), ("_id", DESCENDING)],
    "price_asc": [("price_cents", ASCENDING), ("_id", ASCENDING)],
    "price_desc": [("price_cents", DESCENDING), ("_id", ASCENDING)],
    "name_asc": [("name", ASCENDING), ("_id", ASCENDING)],
    "name_desc": [("name", DESCENDING), ("_id", ASCENDING)],
}

STATUS_QUERIES = {
    "In Stock": {"$gt": LOW_STOCK_THRESHOLD},
    "Low Stock": {"$gt": 0, "$lte": LOW_STOCK_THRESHOLD},
    "Out of Stock": {"$lte": 0},
}

SEARCH_FIELDS = ("name", "description", "sku")

_DIGITS = re.compile(r"[0-9]+")
_UNSAFE_SEARCH_CHARS = re.compile(r"[;'\"\\]")


def calculate_status(stock_quantity: Optional[int]) -> str:
    if not stock_quantity or stock_quantity <= 0:
        return "Out of Stock"
    if stock_quantity <= LOW_STOCK_THRESHOLD:
        return "Low Stock"
    return "In Stock"


def sanitize_search(query: str) -> str:
    return _UNSAFE_SEARCH_CHARS.sub("", query).strip()


def make_slug(name: str) -> str:
    return slugify(name)


@dataclass(frozen=True)
class LookupRef:
    """Either a numeric primary key or a slug, decided once at the boundary."""

    kind: str
    value: Union[int, str]

    @classmethod
    def parse(cls, raw: Union[int, str]) -> "LookupRef":
        text = str(raw).strip()
        if _DIGITS.fullmatch(text):
            return cls("id", int(text))
        return cls("slug", text)

    def query(self) -> Dict[str, Any]:
        return {"_id": self.value} if self.kind == "id" else {"slug": self.value}


def _category_summary(category: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not category:
        return None
    return {"id": category["_id"], "name": category["name"], "slug": category["slug"]}


def serialize_product(doc: Dict[str, Any], category: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    out = serialize_doc(doc)
    out["status"] = calculate_status(doc.get("stock_quantity"))
    if category is not None:
        out["category"] = _category_summary(category)
    return out


def categories_by_id(db, category_ids) -> Dict[int, Dict[str, Any]]:
    ids = list({cid for cid in category_ids if cid is not None})
    if not ids:
        return {}
    return {c["_id"]: c for c in db["category"].find({"_id": {"$in": ids}})}


def products_by_id(db, product_ids, session=None) -> Dict[int, Dict[str, Any]]:
    ids = list(set(product_ids))
    if not ids:
        return {}
    return {p["_id"]: p for p in db["product"].find({"_id": {"$in": ids}}, session=session)}


def _require_category(db, category_id: int) -> None:
    if not db["category"].find_one({"_id": category_id}):
        raise ValidationFailed([{"field": "category_id", "message": "Category does not exist"}])


def _slug_for(name: str) -> str:
    slug = make_slug(name)
    if not slug:
        raise ValidationFailed([{"field": "name", "message": "Name must contain letters or digits"}])
    return slug


# Products

def list_products(db, filters: ProductFilter, cache: ProductCache = product_cache) -> Dict[str, Any]:
    search = sanitize_search(filters.search) if filters.search else None
    params = filters.model_dump()
    params["search"] = search
    cache_key = cache.list_key(params)
    cached = cache.get(cache_key)
    if cached is not None:
        return cached

    query: Dict[str, Any] = {}
    if filters.category:
        category = db["category"].find_one({"slug": filters.category})
        if not category:
            return {"products": [], "page": filters.page, "pages": 0, "total": 0}
        query["category_id"] = category["_id"]

    price: Dict[str, int] = {}
    if filters.min_price is not None:
        price["$gte"] = to_cents(filters.min_price)
    if filters.max_price is not None:
        price["$lte"] = to_cents(filters.max_price)
    if price:
        query["price_cents"] = price

    if search:
        pattern = re.escape(search)
        query["$or"] = [{field: {"$regex": pattern, "$options": "i"}} for field in SEARCH_FIELDS]

    if filters.status:
        query["stock_quantity"] = STATUS_QUERIES[filters.status]

    total = db["product"].count_documents(query)
    docs = list(
        db["product"].find(query)
        .sort(SORTS[filters.sort])
        .skip((filters.page - 1) * filters.limit)
        .limit(filters.limit)
    )
    categories = categories_by_id(db, (d.get("category_id") for d in docs))
    result = {
        "products": [serialize_product(d, categories.get(d.get("category_id"))) for d in docs],
        "page": filters.page,
        "pages": math.ceil(total / filters.limit),
        "total": total,
    }
    cache.set(cache_key, result)
    return result


def _reviews_for(db, product_id: int) -> List[Dict[str, Any]]:
    reviews = list(db["review"].find({"product_id": product_id}).sort([("created_at", DESCENDING)]))
    user_ids = list({r["user_id"] for r in reviews})
    users = {u["_id"]: u for u in db["user_profile"].find({"_id": {"$in": user_ids}})} if user_ids else {}
    out = []
    for review in reviews:
        item = serialize_doc(review)
        user = users.get(review["user_id"])
        item["user"] = {
            "id": review["user_id"],
            "first_name": user.get("first_name") if user else None,
            "last_name": user.get("last_name") if user else None,
        }
        out.append(item)
    return out


def get_product(db, identifier: Union[int, str], cache: ProductCache = product_cache) -> Dict[str, Any]:
    cache_key = cache.item_key(identifier)
    cached = cache.get(cache_key)
    if cached is not None:
        return cached

    doc = db["product"].find_one(LookupRef.parse(identifier).query())
    if not doc:
        raise NotFound("Product")
    category = db["category"].find_one({"_id": doc.get("category_id")})
    product = serialize_product(doc, category)
    product["reviews"] = _reviews_for(db, doc["_id"])
    cache.set(cache_key, product)
    return product


def create_product(db, data: ProductCreate, cache: ProductCache = product_cache) -> Dict[str, Any]:
    slug = _slug_for(data.name)
    if db["product"].find_one({"slug": slug}):
        raise DuplicateSlug("Product with this name already exists")
    _require_category(db, data.category_id)

    fields = data.model_dump(exclude={"price"})
    fields["price_cents"] = to_cents(data.price)
    fields["slug"] = slug
    doc = new_document(db, "product", fields)
    try:
        db["product"].insert_one(doc)
    except DuplicateKeyError:
        raise DuplicateSlug("Product with this name already exists")

    cache.invalidate_product(doc["_id"], slug)
    logger.info("Product %s created (%s)", doc["_id"], slug)
    return serialize_product(doc)


def update_product(db, product_id: int, data: ProductUpdate, cache: ProductCache = product_cache) -> Dict[str, Any]:
    product = db["product"].find_one({"_id": product_id})
    if not product:
        raise NotFound("Product")

    changes = data.model_dump(exclude_unset=True, exclude_none=True)
    if "price" in changes:
        changes["price_cents"] = to_cents(changes.pop("price"))
    if "name" in changes and changes["name"] != product["name"]:
        slug = _slug_for(changes["name"])
        if db["product"].find_one({"slug": slug, "_id": {"$ne": product_id}}):
            raise DuplicateSlug("Product with this name already exists")
        changes["slug"] = slug
    if "category_id" in changes:
        _require_category(db, changes["category_id"])
    changes["updated_at"] = utcnow()

    try:
        updated = db["product"].find_one_and_update(
            {"_id": product_id}, {"$set": changes}, return_document=ReturnDocument.AFTER
        )
    except DuplicateKeyError:
        raise DuplicateSlug("Product with this name already exists")

    cache.invalidate_product(product_id, product["slug"], updated["slug"])
    return serialize_product(updated)


def delete_product(db, product_id: int, cache: ProductCache = product_cache) -> Dict[str, Any]:
    product = db["product"].find_one({"_id": product_id})
    if not product:
        raise NotFound("Product")

    if db["order_item"].find_one({"product_id": product_id}):
        # Historical orders keep pointing at this row.
        db["product"].update_one(
            {"_id": product_id}, {"$set": {"stock_quantity": 0, "updated_at": utcnow()}}
        )
        cache.invalidate_product(product_id, product["slug"])
        return {"message": "Product is in orders. Marked as out of stock instead.", "deleted": False}

    db["product"].delete_one({"_id": product_id})
    db["cart_item"].delete_many({"product_id": product_id})
    db["review"].delete_many({"product_id": product_id})
    cache.invalidate_product(product_id, product["slug"])
    logger.info("Product %s deleted", product_id)
    return {"message": "Product removed", "deleted": True}


def top_products(db, limit: int = 5) -> List[Dict[str, Any]]:
    pipeline = [
        {"$group": {
            "_id": "$product_id",
            "averageRating": {"$avg": "$rating"},
            "reviewCount": {"$sum": 1},
        }},
        {"$sort": {"averageRating": -1, "reviewCount": -1}},
        {"$limit": limit},
    ]
    rows = list(db["review"].aggregate(pipeline))
    products = products_by_id(db, (r["_id"] for r in rows))
    out = []
    for row in rows:
        product = products.get(row["_id"])
        if not product:
            continue
        item = serialize_product(product)
        item["averageRating"] = round(row["averageRating"], 2)
        item["reviewCount"] = row["reviewCount"]
        out.append(item)
    return out


def add_review(db, product_id: int, user_id: str, data: ReviewCreate,
               cache: ProductCache = product_cache) -> Dict[str, Any]:
    product = db["product"].find_one({"_id": product_id})
    if not product:
        raise NotFound("Product")
    review_id = create_document(db, "review", {
        "product_id": product_id,
        "user_id": user_id,
        "rating": data.rating,
        "comment": data.comment,
    })
    cache.invalidate_product(product_id, product["slug"])
    return serialize_doc(db["review"].find_one({"_id": review_id}))


# Categories

def list_categories(db) -> List[Dict[str, Any]]:
    return [serialize_doc(c) for c in get_documents(db, "category", sort=[("name", ASCENDING)])]


def get_category(db, identifier: Union[int, str]) -> Dict[str, Any]:
    category = db["category"].find_one(LookupRef.parse(identifier).query())
    if not category:
        raise NotFound("Category")
    out = serialize_doc(category)
    products = db["product"].find({"category_id": category["_id"]}).sort(SORTS["newest"]).limit(10)
    out["products"] = [serialize_product(p) for p in products]
    return out


def create_category(db, data: CategoryCreate) -> Dict[str, Any]:
    slug = _slug_for(data.name)
    if db["category"].find_one({"slug": slug}):
        raise DuplicateSlug("Category with this name already exists")
    doc = new_document(db, "category", {"name": data.name, "slug": slug, "description": data.description})
    try:
        db["category"].insert_one(doc)
    except DuplicateKeyError:
        raise DuplicateSlug("Category with this name already exists")
    return serialize_doc(doc)


def update_category(db, category_id: int, data: CategoryUpdate) -> Dict[str, Any]:
    category = db["category"].find_one({"_id": category_id})
    if not category:
        raise NotFound("Category")

    changes = data.model_dump(exclude_unset=True)
    if changes.get("name") is None:
        changes.pop("name", None)
    elif changes["name"] != category["name"]:
        slug = _slug_for(changes["name"])
        if db["category"].find_one({"slug": slug, "_id": {"$ne": category_id}}):
            raise DuplicateSlug("Category with this name already exists")
        changes["slug"] = slug
    changes["updated_at"] = utcnow()

    try:
        updated = db["category"].find_one_and_update(
            {"_id": category_id}, {"$set": changes}, return_document=ReturnDocument.AFTER
        )
    except DuplicateKeyError:
        raise DuplicateSlug("Category with this name already exists")
    return serialize_doc(updated)


def delete_category(db, category_id: int) -> Dict[str, Any]:
    if not db["category"].find_one({"_id": category_id}):
        raise NotFound("Category")
    product_count = db["product"].count_documents({"category_id": category_id})
    if product_count > 0:
        raise CategoryInUse(product_count)
    db["category"].delete_one({"_id": category_id})
    return {"message": "Category removed"}


def ensure_standard_categories(db) -> int:
    """Create any missing standard category; returns how many were created."""
    created = 0
    for name, slug in STANDARD_CATEGORIES:
        if db["category"].find_one({"slug": slug}):
            continue
        try:
            db["category"].insert_one(new_document(db, "category", {"name": name, "slug": slug, "description": None}))
            created += 1
        except DuplicateKeyError:
            logger.debug("Category %s created concurrently", slug)
    if created:
        logger.info("Created %d standard categories", created)
    return created


def category_names(db) -> List[str]:
    ensure_standard_categories(db)
    return [c["name"] for c in db["category"].find({}, {"name": 1}).sort([("name", ASCENDING)])]
