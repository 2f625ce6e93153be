import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from decimal import Decimal
from functools import lru_cache
from typing import Optional

from fastapi import Depends, FastAPI, File, Header, Query, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pymongo.errors import PyMongoError

import addresses
import cart
import catalog
import orders
import users
from auth import get_current_user, require_admin
from config import get_settings, validate_env
from database import ensure_indexes, get_db
from errors import StoreError
from notifications import ConsoleNotifier
from payments import build_gateway
from schemas import (
    AddressCreate,
    AddressUpdate,
    CartItemCreate,
    CartItemUpdate,
    CategoryCreate,
    CategoryUpdate,
    CurrentUser,
    OrderCreate,
    OrderStatusUpdate,
    ProductCreate,
    ProductFilter,
    ProductSort,
    ProductUpdate,
    ReviewCreate,
    StockStatus,
    UserProfileCreate,
    UserProfileUpdate,
)
from storage import SupabaseStorage, make_file_name, validate_image

settings = get_settings()

logging.basicConfig(level=settings.log_level, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    validate_env()
    try:
        db = get_db()
        ensure_indexes(db)
        catalog.ensure_standard_categories(db)
        logger.info("Database ready, standard categories initialized.")
    except PyMongoError:
        logger.exception("Unable to connect to the database or initialize categories")
    yield


app = FastAPI(title="Storefront API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Collaborators

@lru_cache()
def get_payment_gateway():
    return build_gateway(settings)


@lru_cache()
def get_notifier():
    return ConsoleNotifier()


def get_storage():
    return SupabaseStorage(settings.supabase_url, settings.supabase_service_key, settings.storage_bucket)


# Errors

def _request_details(request: Request, exc: Exception) -> dict:
    return {
        "name": type(exc).__name__,
        "path": request.url.path,
        "method": request.method,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@app.exception_handler(StoreError)
async def store_error_handler(request: Request, exc: StoreError):
    if exc.status_code >= 500:
        logger.error("Request failed: %s", _request_details(request, exc))
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = []
    for err in exc.errors():
        loc = [str(p) for p in err.get("loc", ()) if p not in ("body", "query", "path", "header")]
        errors.append({"field": ".".join(loc), "message": err.get("msg", "Invalid value")})
    return JSONResponse(status_code=400, content={"message": "Validation error", "errors": errors})


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    details = _request_details(request, exc)
    if settings.is_production:
        logger.error("Production error: %s", details)
        message = "An unexpected error occurred"
    else:
        logger.error("Error details: %s", details, exc_info=exc)
        message = str(exc) or "An unexpected error occurred"
    return JSONResponse(status_code=500, content={"message": message})


# Health

@app.get("/")
def read_root():
    return {"message": "E-commerce API running successfully!"}


@app.get("/api")
def api_root():
    return {"message": "E-commerce API is available"}


@app.get("/test")
def test_database(db=Depends(get_db)):
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": [],
    }
    try:
        response["database_name"] = db.name
        response["collections"] = db.list_collection_names()[:10]
        response["connection_status"] = "Connected"
        response["database"] = "✅ Connected & Working"
    except PyMongoError as e:
        response["database"] = f"⚠️  Error: {str(e)[:50]}"
    return response


# Products

@app.get("/api/products")
def list_products(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    category: Optional[str] = None,
    min_price: Optional[Decimal] = Query(None, alias="minPrice", ge=0),
    max_price: Optional[Decimal] = Query(None, alias="maxPrice", ge=0),
    search: Optional[str] = None,
    sort: ProductSort = "newest",
    status: Optional[StockStatus] = None,
    db=Depends(get_db),
):
    filters = ProductFilter(page=page, limit=limit, category=category, min_price=min_price,
                            max_price=max_price, search=search, sort=sort, status=status)
    return catalog.list_products(db, filters)


@app.get("/api/products/top")
def top_products(limit: int = Query(5, ge=1, le=50), db=Depends(get_db)):
    return catalog.top_products(db, limit)


@app.get("/api/products/categories")
def product_categories(db=Depends(get_db)):
    return catalog.category_names(db)


@app.get("/api/products/{identifier}")
def get_product(identifier: str, db=Depends(get_db)):
    return catalog.get_product(db, identifier)


@app.post("/api/products", status_code=201)
def create_product(payload: ProductCreate, db=Depends(get_db), admin: CurrentUser = Depends(require_admin)):
    return catalog.create_product(db, payload)


@app.put("/api/products/{product_id}")
def update_product(product_id: int, payload: ProductUpdate, db=Depends(get_db),
                   admin: CurrentUser = Depends(require_admin)):
    return catalog.update_product(db, product_id, payload)


@app.delete("/api/products/{product_id}")
def delete_product(product_id: int, db=Depends(get_db), admin: CurrentUser = Depends(require_admin)):
    return catalog.delete_product(db, product_id)


@app.post("/api/products/upload-image")
def upload_product_image(image: UploadFile = File(...), storage=Depends(get_storage),
                         admin: CurrentUser = Depends(require_admin)):
    data = image.file.read()
    validate_image(image.content_type, len(data))
    url = storage.upload(make_file_name(image.filename), data, image.content_type)
    return {"imageUrl": url}


@app.post("/api/products/{product_id}/reviews", status_code=201)
def add_review(product_id: int, payload: ReviewCreate, db=Depends(get_db),
               user: CurrentUser = Depends(get_current_user)):
    return catalog.add_review(db, product_id, user.id, payload)


# Categories

@app.get("/api/categories")
def list_categories(db=Depends(get_db)):
    return catalog.list_categories(db)


@app.get("/api/categories/{identifier}")
def get_category(identifier: str, db=Depends(get_db)):
    return catalog.get_category(db, identifier)


@app.post("/api/categories", status_code=201)
def create_category(payload: CategoryCreate, db=Depends(get_db), admin: CurrentUser = Depends(require_admin)):
    return catalog.create_category(db, payload)


@app.put("/api/categories/{category_id}")
def update_category(category_id: int, payload: CategoryUpdate, db=Depends(get_db),
                    admin: CurrentUser = Depends(require_admin)):
    return catalog.update_category(db, category_id, payload)


@app.delete("/api/categories/{category_id}")
def delete_category(category_id: int, db=Depends(get_db), admin: CurrentUser = Depends(require_admin)):
    return catalog.delete_category(db, category_id)


# Cart

@app.get("/api/cart")
def get_cart(db=Depends(get_db), user: CurrentUser = Depends(get_current_user)):
    return cart.read_cart(db, user.id)


@app.post("/api/cart")
def add_to_cart(payload: CartItemCreate, db=Depends(get_db), user: CurrentUser = Depends(get_current_user)):
    return cart.add_item(db, user.id, payload.product_id, payload.quantity)


@app.put("/api/cart/{cart_item_id}")
def update_cart_item(cart_item_id: int, payload: CartItemUpdate, db=Depends(get_db),
                     user: CurrentUser = Depends(get_current_user)):
    return cart.update_item(db, cart_item_id, user.id, payload.quantity)


@app.delete("/api/cart/{cart_item_id}")
def remove_from_cart(cart_item_id: int, db=Depends(get_db), user: CurrentUser = Depends(get_current_user)):
    return cart.remove_item(db, cart_item_id, user.id)


@app.delete("/api/cart")
def clear_cart(db=Depends(get_db), user: CurrentUser = Depends(get_current_user)):
    return cart.clear(db, user.id)


# Orders

@app.post("/api/orders", status_code=201)
def create_order(
    payload: OrderCreate,
    idempotency_key: Optional[str] = Header(None),
    db=Depends(get_db),
    user: CurrentUser = Depends(get_current_user),
    gateway=Depends(get_payment_gateway),
    notifier=Depends(get_notifier),
):
    card = payload.payment.model_dump() if payload.payment else None
    return orders.place_order(db, user.id, payload.shipping_address_id, gateway, notifier,
                              card=card, idempotency_key=idempotency_key)


@app.get("/api/orders")
def list_my_orders(db=Depends(get_db), user: CurrentUser = Depends(get_current_user)):
    return orders.list_orders(db, user.id)


@app.get("/api/orders/admin/all")
def list_all_orders(page: int = Query(1, ge=1), limit: int = Query(10, ge=1, le=100), db=Depends(get_db),
                    admin: CurrentUser = Depends(require_admin)):
    return orders.list_all_orders(db, page, limit)


@app.get("/api/orders/{order_id}")
def get_order(order_id: int, db=Depends(get_db), user: CurrentUser = Depends(get_current_user)):
    return orders.get_order(db, order_id, user.id)


@app.put("/api/orders/{order_id}/pay")
def pay_order(order_id: int, db=Depends(get_db), user: CurrentUser = Depends(get_current_user),
              notifier=Depends(get_notifier)):
    return orders.mark_paid(db, order_id, user.id, notifier)


@app.put("/api/orders/{order_id}/status")
def update_order_status(order_id: int, payload: OrderStatusUpdate, db=Depends(get_db),
                        admin: CurrentUser = Depends(require_admin), notifier=Depends(get_notifier)):
    return orders.update_status(db, order_id, payload.status, notifier)


# Addresses

@app.get("/api/addresses")
def list_addresses(db=Depends(get_db), user: CurrentUser = Depends(get_current_user)):
    return addresses.list_addresses(db, user.id)


@app.get("/api/addresses/{address_id}")
def get_address(address_id: int, db=Depends(get_db), user: CurrentUser = Depends(get_current_user)):
    return addresses.get_address(db, address_id, user.id)


@app.post("/api/addresses", status_code=201)
def create_address(payload: AddressCreate, db=Depends(get_db), user: CurrentUser = Depends(get_current_user)):
    return addresses.create_address(db, user.id, payload)


@app.put("/api/addresses/{address_id}")
def update_address(address_id: int, payload: AddressUpdate, db=Depends(get_db),
                   user: CurrentUser = Depends(get_current_user)):
    return addresses.update_address(db, address_id, user.id, payload)


@app.delete("/api/addresses/{address_id}")
def delete_address(address_id: int, db=Depends(get_db), user: CurrentUser = Depends(get_current_user)):
    return addresses.delete_address(db, address_id, user.id)


@app.put("/api/addresses/{address_id}/default")
def set_default_address(address_id: int, db=Depends(get_db), user: CurrentUser = Depends(get_current_user)):
    return addresses.set_default(db, address_id, user.id)


# Users

@app.post("/api/users/profile", status_code=201)
def create_user_profile(payload: UserProfileCreate, db=Depends(get_db),
                        user: CurrentUser = Depends(get_current_user), notifier=Depends(get_notifier)):
    return users.create_profile(db, user.id, payload, notifier)


@app.get("/api/users/profile")
def get_user_profile(db=Depends(get_db), user: CurrentUser = Depends(get_current_user)):
    return users.get_profile(db, user.id)


@app.put("/api/users/profile")
def update_user_profile(payload: UserProfileUpdate, db=Depends(get_db),
                        user: CurrentUser = Depends(get_current_user)):
    return users.update_profile(db, user.id, payload)


@app.get("/api/users")
def list_users(db=Depends(get_db), admin: CurrentUser = Depends(require_admin)):
    return users.list_profiles(db)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.port)
