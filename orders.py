"""
Order placement workflow and order status management.

``place_order`` turns the user's cart into an order in one unit of work:

1. read the cart with its products, check the address and the stock;
2. charge the payment gateway;
3. insert the order and its items (prices frozen), decrement stock, clear
   the cart;
4. commit, then notify the customer on a best-effort basis.

If anything fails after a successful charge, including the commit itself,
the charge is refunded before the error propagates. Stock decrements are
guarded by ``stock_quantity >= quantity`` so two orders racing for the last
units cannot both succeed. A unit of work that MongoDB aborts as transient
is run again from the start, up to three times.

An idempotency key is claimed before the gateway is charged and bound to
the order on commit. A repeated request replays the order; one that arrives
while the first is still in flight gets ``OrderConflict``.
"""
import logging
import math
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pymongo import ASCENDING, DESCENDING
from pymongo.errors import DuplicateKeyError

from catalog import products_by_id, serialize_product
from database import (
    from_cents,
    is_transient,
    new_document,
    retry_on_transient_abort,
    serialize_doc,
    to_cents,
    transaction,
    utcnow,
)
from errors import (
    EmptyCart,
    InsufficientStock,
    InvalidAddress,
    InvalidStatus,
    NotFound,
    OrderAlreadyPaid,
    OrderConflict,
    PaymentFailed,
)
from notifications import Notifier
from payments import PaymentGateway, PaymentResult

logger = logging.getLogger(__name__)

# Card used when the client does not send one; the gateway is a stub.
TEST_CARD = {"number": "4242424242424242", "expiry": "12/25", "cvc": "123"}

ADMIN_STATUSES = ("pending", "processing", "shipped", "delivered", "cancelled")

TRANSITIONS = {
    "pending": {"paid", "processing", "shipped", "delivered", "cancelled"},
    "paid": {"processing", "shipped", "delivered", "cancelled"},
    "processing": {"shipped", "delivered", "cancelled"},
    "shipped": {"delivered", "cancelled"},
    "delivered": set(),
    "cancelled": set(),
}


def can_transition(current: str, new: str) -> bool:
    return new in TRANSITIONS.get(current, set())


# Reads

def _user_summary(user: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not user:
        return None
    return {
        "id": user["_id"],
        "email": user.get("email"),
        "first_name": user.get("first_name"),
        "last_name": user.get("last_name"),
    }


def _hydrate(db, orders: List[Dict[str, Any]], with_address: bool = True) -> List[Dict[str, Any]]:
    order_ids = [o["_id"] for o in orders]
    items = list(db["order_item"].find({"order_id": {"$in": order_ids}}).sort([("_id", ASCENDING)])) if order_ids else []
    products = products_by_id(db, (i["product_id"] for i in items))
    addresses = {}
    if with_address:
        address_ids = [o.get("shipping_address_id") for o in orders if o.get("shipping_address_id") is not None]
        if address_ids:
            addresses = {a["_id"]: a for a in db["address"].find({"_id": {"$in": address_ids}})}

    items_by_order: Dict[int, List[Dict[str, Any]]] = {oid: [] for oid in order_ids}
    for item in items:
        line = serialize_doc(item)
        line["subtotal"] = from_cents(item["unit_price_cents"] * item["quantity"])
        product = products.get(item["product_id"])
        line["product"] = serialize_product(product) if product else None
        items_by_order[item["order_id"]].append(line)

    out = []
    for order in orders:
        data = serialize_doc(order)
        data["items"] = items_by_order[order["_id"]]
        if with_address:
            address = addresses.get(order.get("shipping_address_id"))
            data["shipping_address"] = serialize_doc(address) if address else None
        out.append(data)
    return out


def get_order(db, order_id: int, user_id: str) -> Dict[str, Any]:
    order = db["order"].find_one({"_id": order_id, "user_id": user_id})
    if not order:
        raise NotFound("Order")
    return _hydrate(db, [order])[0]


def list_orders(db, user_id: str) -> List[Dict[str, Any]]:
    orders = list(db["order"].find({"user_id": user_id}).sort([("created_at", DESCENDING), ("_id", DESCENDING)]))
    return _hydrate(db, orders, with_address=False)


def list_all_orders(db, page: int = 1, limit: int = 10) -> Dict[str, Any]:
    total = db["order"].count_documents({})
    orders = list(
        db["order"].find({})
        .sort([("created_at", DESCENDING), ("_id", DESCENDING)])
        .skip((page - 1) * limit)
        .limit(limit)
    )
    user_ids = list({o["user_id"] for o in orders})
    users = {u["_id"]: u for u in db["user_profile"].find({"_id": {"$in": user_ids}})} if user_ids else {}
    rows = []
    for order in orders:
        data = serialize_doc(order)
        data["user"] = _user_summary(users.get(order["user_id"]))
        rows.append(data)
    return {"orders": rows, "page": page, "pages": math.ceil(total / limit), "total": total}


# Placement

def _cart_lines(db, user_id: str, session) -> List[Dict[str, Any]]:
    items = list(db["cart_item"].find({"user_id": user_id}, session=session).sort([("_id", ASCENDING)]))
    products = products_by_id(db, (i["product_id"] for i in items), session=session)
    lines = []
    for item in items:
        product = products.get(item["product_id"])
        if product is None:
            raise NotFound("Product")
        lines.append({"item": item, "product": product, "quantity": item["quantity"]})
    return lines


def _decrement_stock(uow, line: Dict[str, Any]) -> None:
    products = uow.db["product"]
    product, quantity = line["product"], line["quantity"]
    result = products.update_one(
        {"_id": product["_id"], "stock_quantity": {"$gte": quantity}},
        {"$inc": {"stock_quantity": -quantity}, "$set": {"updated_at": utcnow()}},
        session=uow.session,
    )
    if result.modified_count == 0:
        # Read outside the session to get the committed stock.
        current = products.find_one({"_id": product["_id"]}) or {}
        raise InsufficientStock(product["name"], current.get("stock_quantity", 0))
    uow.on_rollback(products.update_one, {"_id": product["_id"]}, {"$inc": {"stock_quantity": quantity}})


def _clear_cart(uow, user_id: str, lines: List[Dict[str, Any]]) -> None:
    uow.db["cart_item"].delete_many({"user_id": user_id}, session=uow.session)
    for line in lines:
        uow.on_rollback(uow.db["cart_item"].insert_one, line["item"])


def _refund(gateway: PaymentGateway, payment: PaymentResult, amount: Decimal) -> None:
    try:
        gateway.refund_payment(payment.transaction_id, amount)
    except Exception:
        logger.exception("Refund of payment %s failed; manual follow-up required", payment.transaction_id)


def _notify(db, notifier: Notifier, user_id: str, order: Dict[str, Any], kind: str) -> None:
    try:
        user = db["user_profile"].find_one({"_id": user_id})
        if not user:
            logger.warning("No profile for user %s; skipping %s notification for order %s", user_id, kind, order["id"])
            return
        recipient = serialize_doc(user)
        if kind == "confirmation":
            notifier.send_order_confirmation(recipient, order)
        else:
            notifier.send_status_update(recipient, order)
    except Exception:
        logger.exception("Error sending %s notification for order %s", kind, order["id"])


def _claim_key(db, user_id: str, idempotency_key: str) -> Optional[Dict[str, Any]]:
    """Reserve the key before charging; returns the earlier order if the key was already used."""
    try:
        db["idempotency_key"].insert_one(new_document(db, "idempotency_key", {
            "user_id": user_id,
            "key": idempotency_key,
            "order_id": None,
        }))
        return None
    except DuplicateKeyError:
        record = db["idempotency_key"].find_one({"user_id": user_id, "key": idempotency_key})
    if record and record.get("order_id") is not None:
        logger.info("Replaying order %s for idempotency key", record["order_id"])
        return get_order(db, record["order_id"], user_id)
    raise OrderConflict("An order with this idempotency key is already being placed")


def _release_key(db, user_id: str, idempotency_key: str) -> None:
    # Keys bound to a committed order are never released.
    db["idempotency_key"].delete_one({"user_id": user_id, "key": idempotency_key, "order_id": None})


@retry_on_transient_abort()
def _place_once(db, user_id: str, shipping_address_id: int, gateway: PaymentGateway,
                card: Optional[Dict[str, Any]], idempotency_key: Optional[str]) -> Dict[str, Any]:
    payment: Optional[PaymentResult] = None
    total = Decimal("0.00")
    try:
        with transaction(db) as uow:
            session = uow.session
            lines = _cart_lines(db, user_id, session)
            if not lines:
                raise EmptyCart()

            address = db["address"].find_one({"_id": shipping_address_id, "user_id": user_id}, session=session)
            if not address:
                raise InvalidAddress()

            for line in lines:
                line["unit_price_cents"] = line["product"]["price_cents"]
            total = from_cents(sum(line["unit_price_cents"] * line["quantity"] for line in lines))

            for line in lines:
                available = line["product"].get("stock_quantity", 0)
                if available < line["quantity"]:
                    raise InsufficientStock(line["product"]["name"], available)

            payment = gateway.process_payment(total, card or TEST_CARD, idempotency_key=idempotency_key)
            if not payment.success:
                raise PaymentFailed(f"Payment failed: {payment.error}" if payment.error else None)

            order = uow.insert_one("order", new_document(db, "order", {
                "user_id": user_id,
                "status": "pending",
                "total_amount_cents": to_cents(total),
                "shipping_address_id": shipping_address_id,
                "payment_intent_id": payment.transaction_id,
            }))
            for line in lines:
                uow.insert_one("order_item", new_document(db, "order_item", {
                    "order_id": order["_id"],
                    "product_id": line["product"]["_id"],
                    "quantity": line["quantity"],
                    "unit_price_cents": line["unit_price_cents"],
                }))
            for line in lines:
                _decrement_stock(uow, line)
            _clear_cart(uow, user_id, lines)
            if idempotency_key:
                keys = db["idempotency_key"]
                claim = {"user_id": user_id, "key": idempotency_key}
                keys.update_one(claim, {"$set": {"order_id": order["_id"], "updated_at": utcnow()}}, session=session)
                uow.on_rollback(keys.update_one, claim, {"$set": {"order_id": None}})
    except Exception:
        if payment is not None and payment.success:
            _refund(gateway, payment, total)
        raise

    logger.info("Order %s placed by %s for %s", order["_id"], user_id, total)
    return order


def place_order(db, user_id: str, shipping_address_id: int, gateway: PaymentGateway, notifier: Notifier,
                card: Optional[Dict[str, Any]] = None, idempotency_key: Optional[str] = None) -> Dict[str, Any]:
    if idempotency_key:
        replayed = _claim_key(db, user_id, idempotency_key)
        if replayed is not None:
            return replayed

    try:
        order = _place_once(db, user_id, shipping_address_id, gateway, card, idempotency_key)
    except Exception as exc:
        if idempotency_key:
            _release_key(db, user_id, idempotency_key)
        if is_transient(exc):
            raise OrderConflict() from exc
        raise

    created = get_order(db, order["_id"], user_id)
    _notify(db, notifier, user_id, created, "confirmation")
    return created


# Status changes

def _set_status(db, order: Dict[str, Any], status: str) -> Dict[str, Any]:
    db["order"].update_one({"_id": order["_id"]}, {"$set": {"status": status, "updated_at": utcnow()}})
    return serialize_doc(db["order"].find_one({"_id": order["_id"]}))


def mark_paid(db, order_id: int, user_id: str, notifier: Notifier) -> Dict[str, Any]:
    order = db["order"].find_one({"_id": order_id, "user_id": user_id})
    if not order:
        raise NotFound("Order")
    if order["status"] == "paid":
        raise OrderAlreadyPaid()
    if not can_transition(order["status"], "paid"):
        raise InvalidStatus(f"Cannot mark a {order['status']} order as paid")
    updated = _set_status(db, order, "paid")
    _notify(db, notifier, user_id, updated, "confirmation")
    return updated


def update_status(db, order_id: int, status: str, notifier: Notifier) -> Dict[str, Any]:
    if status not in ADMIN_STATUSES:
        raise InvalidStatus(f"Invalid status. Must be one of: {', '.join(ADMIN_STATUSES)}")
    order = db["order"].find_one({"_id": order_id})
    if not order:
        raise NotFound("Order")
    if not can_transition(order["status"], status):
        raise InvalidStatus(f"Cannot change order status from {order['status']} to {status}")
    updated = _set_status(db, order, status)
    _notify(db, notifier, order["user_id"], updated, "status")
    return updated

