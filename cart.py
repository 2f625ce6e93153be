"""
Cart store

One ``cart_item`` document per (user, product). Quantities are checked
against the product's live stock on every mutation; totals use live prices.
"""
import logging
from decimal import Decimal
from typing import Any, Dict

from pymongo import ASCENDING
from pymongo.errors import DuplicateKeyError

from catalog import categories_by_id, products_by_id, serialize_product
from database import create_document, from_cents, utcnow
from errors import InsufficientStock, NotFound, OutOfStock

logger = logging.getLogger(__name__)


def read_cart(db, user_id: str) -> Dict[str, Any]:
    items = list(db["cart_item"].find({"user_id": user_id}).sort([("created_at", ASCENDING), ("_id", ASCENDING)]))
    products = products_by_id(db, (i["product_id"] for i in items))
    categories = categories_by_id(db, (p.get("category_id") for p in products.values()))

    lines = []
    total = Decimal("0.00")
    for item in items:
        product = products.get(item["product_id"])
        if not product:
            continue
        price = from_cents(product["price_cents"])
        subtotal = price * item["quantity"]
        total += subtotal
        lines.append({
            "id": item["_id"],
            "product_id": item["product_id"],
            "quantity": item["quantity"],
            "product": serialize_product(product, categories.get(product.get("category_id"))),
            "price": price,
            "subtotal": subtotal,
        })
    return {"items": lines, "itemCount": len(lines), "total": total}


def add_item(db, user_id: str, product_id: int, quantity: int = 1) -> Dict[str, Any]:
    product = db["product"].find_one({"_id": product_id})
    if not product:
        raise NotFound("Product")
    stock = product.get("stock_quantity", 0)
    if stock < 1:
        raise OutOfStock()
    if quantity > stock:
        raise InsufficientStock(product["name"], stock, f"Only {stock} items available")

    existing = db["cart_item"].find_one({"user_id": user_id, "product_id": product_id})
    if existing is None:
        try:
            create_document(db, "cart_item", {"user_id": user_id, "product_id": product_id, "quantity": quantity})
            return read_cart(db, user_id)
        except DuplicateKeyError:
            # A concurrent add created the row first; treat this one as a repeat add.
            existing = db["cart_item"].find_one({"user_id": user_id, "product_id": product_id})

    new_quantity = existing["quantity"] + quantity
    if new_quantity > stock:
        raise InsufficientStock(product["name"], stock, f"Cannot add more. Only {stock} items available")
    db["cart_item"].update_one(
        {"_id": existing["_id"]},
        {"$set": {"quantity": new_quantity, "updated_at": utcnow()}},
    )
    return read_cart(db, user_id)


def update_item(db, cart_item_id: int, user_id: str, quantity: int) -> Dict[str, Any]:
    item = db["cart_item"].find_one({"_id": cart_item_id, "user_id": user_id})
    if not item:
        raise NotFound("Cart item")
    product = db["product"].find_one({"_id": item["product_id"]})
    if not product:
        raise NotFound("Product")
    stock = product.get("stock_quantity", 0)
    if quantity > stock:
        raise InsufficientStock(product["name"], stock, f"Only {stock} items available")

    db["cart_item"].update_one({"_id": cart_item_id}, {"$set": {"quantity": quantity, "updated_at": utcnow()}})
    return read_cart(db, user_id)


def remove_item(db, cart_item_id: int, user_id: str) -> Dict[str, Any]:
    result = db["cart_item"].delete_one({"_id": cart_item_id, "user_id": user_id})
    if result.deleted_count == 0:
        raise NotFound("Cart item")
    return read_cart(db, user_id)


def clear(db, user_id: str) -> Dict[str, Any]:
    result = db["cart_item"].delete_many({"user_id": user_id})
    logger.debug("Cleared %d cart items for %s", result.deleted_count, user_id)
    return {"message": "Cart cleared"}
